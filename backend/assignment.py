# assignment.py
"""Courier side of the lifecycle: exclusive acceptance and delivery progress."""
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

import config
import geo
from database import atomic
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from matching import get_volunteer
from models import (
    ApprovalStatus,
    DeliveryType,
    Order,
    OrderStatus,
    PaymentStatus,
    Volunteer,
    utcnow,
)
from notifier import notifier as default_notifier
from transitions import transition_order

logger = logging.getLogger(__name__)


def accept(db: Session, order_id: int, user_id: str, notify=None) -> Order:
    """Assign a confirmed delivery order to the calling volunteer.

    Only one volunteer can ever win: the UPDATE requires the order to still be
    confirmed with no volunteer, so a concurrent loser matches zero rows.
    """
    notify = notify or default_notifier
    volunteer = get_volunteer(db, user_id)
    if volunteer.approval_status != ApprovalStatus.APPROVED:
        raise AuthorizationError("You are not an approved volunteer", kind="volunteer_not_eligible")

    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if (
        order.order_status != OrderStatus.CONFIRMED
        or order.volunteer_id is not None
        or order.delivery_type != DeliveryType.DELIVERY
        or order.payment_status != PaymentStatus.COMPLETED
        or order.destination is None
    ):
        raise ConflictError("Order is not available for assignment", kind="order_not_available")

    pricing = geo.price_order(
        order.medicine_total,
        geo.distance_km(order.pharmacy.coordinates, order.destination),
    )
    with atomic(db):
        try:
            transition_order(
                db, order, OrderStatus.ASSIGNED,
                Order.volunteer_id.is_(None),
                volunteer_id=user_id,
                delivery_distance=pricing.distance_km,
                delivery_charges=pricing.delivery_charges,
            )
        except ConflictError:
            raise ConflictError("Order already assigned to another volunteer", kind="order_not_available")
    db.refresh(order)
    logger.info("Order %s accepted by volunteer %s (%.2fkm, charges %s)",
                order.id, user_id, pricing.distance_km, pricing.delivery_charges)
    notify.emit("status_changed", order, volunteer=user_id)
    return order


def _courier_step(db: Session, order_id: int, user_id: str, expected: str, target: str, notify) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.volunteer_id != user_id:
        raise AuthorizationError("Order is not assigned to you", kind="unauthorized")
    if order.order_status != expected:
        raise ConflictError(f"Order is {order.order_status}, expected {expected}", kind="invalid_transition")

    with atomic(db):
        transition_order(db, order, target, Order.volunteer_id == user_id)
        if target == OrderStatus.DELIVERED:
            db.execute(
                update(Volunteer)
                .where(Volunteer.user_id == user_id)
                .values(total_deliveries=Volunteer.total_deliveries + 1)
                .execution_options(synchronize_session=False)
            )
    db.refresh(order)
    notify.emit("status_changed", order)
    return order


def mark_picked_up(db: Session, order_id: int, user_id: str, notify=None) -> Order:
    return _courier_step(db, order_id, user_id, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP,
                         notify or default_notifier)


def mark_out_for_delivery(db: Session, order_id: int, user_id: str, notify=None) -> Order:
    return _courier_step(db, order_id, user_id, OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY,
                         notify or default_notifier)


def mark_delivered(db: Session, order_id: int, user_id: str, notify=None) -> Order:
    return _courier_step(db, order_id, user_id, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED,
                         notify or default_notifier)


# ==========================================
# VOLUNTEER PROFILE
# ==========================================

def register_volunteer(db: Session, user_id: str, data) -> Volunteer:
    if db.query(Volunteer.id).filter(Volunteer.user_id == user_id).first():
        raise ConflictError("Volunteer profile already exists", kind="already_registered")
    volunteer = Volunteer(
        user_id=user_id,
        vehicle_type=data.vehicle_type,
        vehicle_number=data.vehicle_number,
        service_city=data.service_city,
        service_radius_km=data.service_radius_km or config.DEFAULT_SERVICE_RADIUS_KM,
        approval_status=ApprovalStatus.PENDING,
    )
    db.add(volunteer)
    db.commit()
    db.refresh(volunteer)
    logger.info("Volunteer %s registered, awaiting approval", user_id)
    return volunteer


def volunteer_profile(volunteer: Volunteer) -> dict:
    return {
        "id": volunteer.id,
        "user_id": volunteer.user_id,
        "vehicle_type": volunteer.vehicle_type,
        "vehicle_number": volunteer.vehicle_number,
        "service_city": volunteer.service_city,
        "service_radius_km": volunteer.service_radius_km,
        "current_latitude": volunteer.current_latitude,
        "current_longitude": volunteer.current_longitude,
        "last_location_update": volunteer.last_location_update,
        "is_online": volunteer.is_online,
        "is_available": volunteer.is_available,
        "approval_status": volunteer.approval_status,
        "total_deliveries": volunteer.total_deliveries,
        "active_order_ids": [o.id for o in volunteer.active_orders],
    }


def list_my_deliveries(db: Session, user_id: str, status: Optional[str] = None) -> List[Order]:
    if status and status not in OrderStatus.ALL:
        raise ValidationError(f"Unknown order status: {status}")
    query = db.query(Order).filter(Order.volunteer_id == user_id)
    if status:
        query = query.filter(Order.order_status == status)
    return query.order_by(Order.assigned_at.desc(), Order.id.desc()).all()


def update_location(db: Session, user_id: str, latitude, longitude) -> Volunteer:
    point = geo.validate_coordinate(latitude, longitude)
    volunteer = get_volunteer(db, user_id)
    volunteer.current_latitude = point.latitude
    volunteer.current_longitude = point.longitude
    volunteer.last_location_update = utcnow()
    db.commit()
    db.refresh(volunteer)
    return volunteer


def set_availability(db: Session, user_id: str, is_available: bool) -> Volunteer:
    volunteer = get_volunteer(db, user_id)
    if volunteer.approval_status != ApprovalStatus.APPROVED:
        raise AuthorizationError("Only approved volunteers can change availability")
    if not is_available and volunteer.active_orders:
        raise ConflictError(
            f"Cannot go offline while having {len(volunteer.active_orders)} active deliveries",
            kind="active_deliveries",
        )
    volunteer.is_online = is_available
    db.commit()
    db.refresh(volunteer)
    logger.info("Volunteer %s is now %s", user_id, "online" if is_available else "offline")
    return volunteer


def set_volunteer_approval(db: Session, volunteer_id: int, status: str) -> Volunteer:
    if status not in ApprovalStatus.ALL:
        raise ValidationError("Invalid approval status")
    volunteer = db.get(Volunteer, volunteer_id)
    if volunteer is None:
        raise NotFoundError("Volunteer not found")
    volunteer.approval_status = status
    db.commit()
    db.refresh(volunteer)
    return volunteer
