# orders.py
"""Order placement and the customer / vendor side of the order lifecycle."""
import hmac
import logging
import secrets
import string
from typing import List, Optional, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy import update
from sqlalchemy.orm import Session

import config
import geo
import inventory
import payments
import uploads
from database import atomic
from errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from models import (
    ApprovalStatus,
    DeliveryType,
    Order,
    OrderLineItem,
    OrderStatus,
    Pharmacy,
    PrescriptionStatus,
)
from notifier import notifier as default_notifier
from schemas import parse_cart
from transitions import transition_order

logger = logging.getLogger(__name__)

PICKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
PICKUP_CODE_LENGTH = 6
PICKUP_CODE_ATTEMPTS = 3

PROGRESS = {
    OrderStatus.PENDING: 10,
    OrderStatus.CONFIRMED: 25,
    OrderStatus.ASSIGNED: 40,
    OrderStatus.PICKED_UP: 60,
    OrderStatus.READY_FOR_PICKUP: 70,
    OrderStatus.OUT_FOR_DELIVERY: 80,
    OrderStatus.DELIVERED: 100,
    OrderStatus.COMPLETED: 100,
    OrderStatus.CANCELLED: 0,
}

DELIVERY_TIMELINE = (
    (OrderStatus.PENDING, "placed_at"),
    (OrderStatus.CONFIRMED, "confirmed_at"),
    (OrderStatus.ASSIGNED, "assigned_at"),
    (OrderStatus.PICKED_UP, "picked_up_at"),
    (OrderStatus.OUT_FOR_DELIVERY, "out_for_delivery_at"),
    (OrderStatus.DELIVERED, "delivered_at"),
)

PICKUP_TIMELINE = (
    (OrderStatus.PENDING, "placed_at"),
    (OrderStatus.CONFIRMED, "confirmed_at"),
    (OrderStatus.READY_FOR_PICKUP, "ready_for_pickup_at"),
    (OrderStatus.COMPLETED, "picked_up_by_customer_at"),
)


def is_sensitive(medicine_name: str) -> bool:
    name = medicine_name.lower()
    return any(keyword in name for keyword in config.SENSITIVE_MEDICINE_KEYWORDS)


def generate_pickup_code(db: Session, pharmacy_id: int, attempts: int = 10) -> str:
    """Random code, unique among the pharmacy's open pickup orders."""
    for _ in range(attempts):
        code = "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(PICKUP_CODE_LENGTH))
        clash = (
            db.query(Order.id)
            .filter(
                Order.pharmacy_id == pharmacy_id,
                Order.pickup_code == code,
                Order.order_status.notin_(OrderStatus.TERMINAL),
            )
            .first()
        )
        if clash is None:
            return code
    raise ConflictError("Could not allocate a pickup code, please retry", kind="pickup_code_exhausted")


def place_order(
    db: Session,
    customer_id: str,
    pharmacy_id: int,
    medicines,
    delivery_type: str,
    contact_number: str,
    delivery_address: Optional[str] = None,
    latitude=None,
    longitude=None,
    prescription_file: Optional[Tuple[str, bytes]] = None,
    client=None,
    notify=None,
) -> Tuple[Order, Optional[str]]:
    """Validate and price a cart, create the pending order and its payment intent.

    Returns the order and the processor order reference (None while the
    prescription gate holds payment back).
    """
    notify = notify or default_notifier
    if delivery_type not in DeliveryType.ALL:
        raise ValidationError("Delivery type must be 'delivery' or 'pickup'")
    cart = parse_cart(medicines)
    if not contact_number or not contact_number.strip():
        raise ValidationError("Contact number is required")

    pharmacy = db.get(Pharmacy, pharmacy_id)
    if pharmacy is None or pharmacy.approval_status != ApprovalStatus.APPROVED:
        raise NotFoundError("Pharmacy not found")

    priced, medicine_total = inventory.price_and_validate(pharmacy, cart)
    needs_prescription = any(is_sensitive(line.medicine_name) for line in priced)
    if needs_prescription and not prescription_file:
        raise ValidationError(
            "A prescription is required for one or more medicines in this order",
            kind="prescription_required",
        )

    destination = None
    pickup_code = None
    if delivery_type == DeliveryType.DELIVERY:
        if not delivery_address or not delivery_address.strip():
            raise ValidationError("Delivery address is required for delivery orders")
        destination = geo.validate_coordinate(latitude, longitude)
        pricing = geo.price_order(medicine_total, geo.distance_km(pharmacy.coordinates, destination))
    else:
        pricing = geo.price_order(medicine_total, None)
        pickup_code = generate_pickup_code(db, pharmacy.id)

    prescription_ref = None
    if needs_prescription:
        prescription_ref = uploads.save_prescription(*prescription_file)

    order = Order(
        customer_id=customer_id,
        pharmacy_id=pharmacy.id,
        vendor_id=pharmacy.owner_id,
        delivery_type=delivery_type,
        delivery_address=delivery_address.strip() if destination else None,
        delivery_latitude=destination.latitude if destination else None,
        delivery_longitude=destination.longitude if destination else None,
        contact_number=contact_number.strip(),
        pickup_code=pickup_code,
        medicine_total=medicine_total,
        delivery_charges=pricing.delivery_charges,
        delivery_distance=pricing.distance_km,
        needs_prescription=needs_prescription,
        prescription_image=prescription_ref,
        prescription_status=PrescriptionStatus.PENDING if needs_prescription else None,
    )
    order.items = [
        OrderLineItem(
            position=i,
            medicine_name=line.medicine_name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line.line_total,
        )
        for i, line in enumerate(priced)
    ]
    for attempt in range(PICKUP_CODE_ATTEMPTS):
        try:
            with atomic(db):
                db.add(order)
            break
        except sa_exc.IntegrityError:
            # A concurrent placement took the same pickup code
            if pickup_code is None or attempt == PICKUP_CODE_ATTEMPTS - 1:
                raise
            order.pickup_code = generate_pickup_code(db, pharmacy.id)
            logger.info("Pickup code clash at pharmacy %s, retrying with a new code", pharmacy.id)
    db.refresh(order)
    logger.info("Order %s placed by %s at pharmacy %s (total %s)",
                order.id, customer_id, pharmacy.id, order.total_amount)
    notify.emit("order_placed", order)

    if payments.payment_blocked(order):
        return order, None
    try:
        processor_ref = payments.create_intent(db, order, client or payments.default_client())
    except UpstreamError as e:
        # The order stays pending; the customer retries the payment intent
        raise UpstreamError(f"{e.message} (order {order.id} saved as pending)", kind=e.kind)
    return order, processor_ref


def retry_payment_intent(db: Session, order_id: int, customer_id: str, client=None) -> Tuple[Order, str]:
    order = get_customer_order(db, order_id, customer_id)
    processor_ref = payments.create_intent(db, order, client or payments.default_client())
    return order, processor_ref


# ==========================================
# CUSTOMER
# ==========================================

def _check_status_filter(status: Optional[str]) -> None:
    if status and status not in OrderStatus.ALL:
        raise ValidationError(f"Unknown order status: {status}")


def list_customer_orders(db: Session, customer_id: str, status: Optional[str] = None) -> List[Order]:
    _check_status_filter(status)
    query = db.query(Order).filter(Order.customer_id == customer_id)
    if status:
        query = query.filter(Order.order_status == status)
    return query.order_by(Order.placed_at.desc(), Order.id.desc()).all()


def get_customer_order(db: Session, order_id: int, customer_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None or order.customer_id != customer_id:
        raise NotFoundError("Order not found")
    return order


def tracking_detail(order: Order) -> dict:
    steps = DELIVERY_TIMELINE if order.delivery_type == DeliveryType.DELIVERY else PICKUP_TIMELINE
    timeline = []
    for status, field in steps:
        at = getattr(order, field)
        timeline.append({"status": status, "at": at, "completed": at is not None})
    if order.order_status == OrderStatus.CANCELLED:
        timeline.append({"status": OrderStatus.CANCELLED, "at": order.cancelled_at, "completed": True})

    return {
        "order_id": order.id,
        "order_status": order.order_status,
        "delivery_type": order.delivery_type,
        "progress": PROGRESS.get(order.order_status, 0),
        "timeline": timeline,
        "volunteer_id": order.volunteer_id,
        "pickup_code": order.pickup_code,
        "total_amount": order.total_amount,
    }


def _cancel(db: Session, order: Order) -> None:
    """Cancel inside the caller's transaction, restocking what was reserved."""
    if order.is_terminal:
        raise ConflictError(
            f"Cannot cancel order. Current status: {order.order_status}",
            kind="invalid_transition",
        )
    reserved = order.stock_reserved
    held = order.payment_held
    payment_id = order.processor_payment_id
    items = list(order.items)
    pharmacy_id = order.pharmacy_id
    transition_order(
        db, order, OrderStatus.CANCELLED,
        Order.stock_reserved.is_(reserved),
        Order.payment_held.is_(held),
        stock_reserved=False,
        payment_held=False,
    )
    if reserved:
        inventory.release(db, pharmacy_id, items)
    if held:
        logger.warning("Order %s cancelled after payment %s was captured; refund required", order.id, payment_id)


def cancel_order(db: Session, order_id: int, customer_id: str, notify=None) -> Order:
    notify = notify or default_notifier
    order = get_customer_order(db, order_id, customer_id)
    with atomic(db):
        _cancel(db, order)
    db.refresh(order)
    notify.emit("status_changed", order)
    return order


# ==========================================
# VENDOR
# ==========================================

def list_vendor_orders(db: Session, vendor_id: str, status: Optional[str] = None) -> List[Order]:
    _check_status_filter(status)
    query = db.query(Order).filter(Order.vendor_id == vendor_id)
    if status:
        query = query.filter(Order.order_status == status)
    return query.order_by(Order.placed_at.desc(), Order.id.desc()).all()


def get_vendor_order(db: Session, order_id: int, vendor_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None or order.vendor_id != vendor_id:
        raise NotFoundError("Order not found or unauthorized")
    return order


def vendor_update_status(db: Session, order_id: int, vendor_id: str, new_status: str, notify=None) -> Order:
    """Vendors may cancel an order or mark a pickup order ready.

    Courier progress and pickup completion have their own operations.
    """
    notify = notify or default_notifier
    if new_status not in OrderStatus.ALL:
        raise ValidationError("Invalid order status")
    if new_status == OrderStatus.READY_FOR_PICKUP:
        return mark_ready_for_pickup(db, order_id, vendor_id, notify=notify)
    if new_status != OrderStatus.CANCELLED:
        raise ConflictError(f"Vendors cannot move an order to {new_status}", kind="invalid_transition")

    order = get_vendor_order(db, order_id, vendor_id)
    with atomic(db):
        _cancel(db, order)
    db.refresh(order)
    notify.emit("status_changed", order)
    return order


def review_prescription(db: Session, order_id: int, vendor_id: str, status: str,
                        note: Optional[str] = None, notify=None) -> Order:
    notify = notify or default_notifier
    if status not in (PrescriptionStatus.APPROVED, PrescriptionStatus.REJECTED):
        raise ValidationError("Prescription status must be 'approved' or 'rejected'")
    order = get_vendor_order(db, order_id, vendor_id)
    if not order.needs_prescription:
        raise ConflictError("This order does not need a prescription", kind="no_prescription")
    if order.prescription_status != PrescriptionStatus.PENDING or order.order_status != OrderStatus.PENDING:
        raise ConflictError("Prescription has already been reviewed", kind="already_reviewed")

    held = order.payment_held
    with atomic(db):
        stmt = (
            update(Order)
            .where(Order.id == order.id, Order.prescription_status == PrescriptionStatus.PENDING)
            .values(prescription_status=status, prescription_note=note)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            raise ConflictError("Prescription has already been reviewed", kind="already_reviewed")
        db.expire(order)

        if status == PrescriptionStatus.REJECTED:
            _cancel(db, order)
    db.refresh(order)
    logger.info("Prescription for order %s %s by %s", order.id, status, vendor_id)
    notify.emit("prescription_reviewed", order, prescription=status)

    if status == PrescriptionStatus.APPROVED and held:
        try:
            with atomic(db):
                payments.apply_payment(db, order, order.processor_payment_id, order.processor_signature)
        except ConflictError as e:
            # The approval stands; the payment stays held for a later callback or a cancel
            logger.warning("Held payment for order %s not applied: %s", order.id, e.message)
            raise ConflictError(
                f"Prescription approved but the held payment could not be applied: {e.message}",
                kind=e.kind,
            )
        db.refresh(order)
        notify.emit("order_confirmed", order)
    return order


def mark_ready_for_pickup(db: Session, order_id: int, vendor_id: str, notify=None) -> Order:
    notify = notify or default_notifier
    order = get_vendor_order(db, order_id, vendor_id)
    if order.delivery_type != DeliveryType.PICKUP:
        raise ConflictError("This order is not a pickup order", kind="not_pickup")
    with atomic(db):
        transition_order(db, order, OrderStatus.READY_FOR_PICKUP)
    db.refresh(order)
    notify.emit("ready_for_pickup", order)
    return order


def confirm_pickup(db: Session, order_id: int, vendor_id: str, pickup_code: str, notify=None) -> Order:
    notify = notify or default_notifier
    order = get_vendor_order(db, order_id, vendor_id)
    if order.delivery_type != DeliveryType.PICKUP:
        raise ConflictError("This order is not a pickup order", kind="not_pickup")
    if order.order_status != OrderStatus.READY_FOR_PICKUP:
        raise ConflictError(f"Order is {order.order_status}, not ready for pickup", kind="invalid_transition")
    submitted = (pickup_code or "").strip().upper()
    if not hmac.compare_digest(submitted.encode(), (order.pickup_code or "").encode()):
        raise ValidationError("Invalid pickup code", kind="invalid_pickup_code")

    with atomic(db):
        transition_order(db, order, OrderStatus.COMPLETED)
    db.refresh(order)
    notify.emit("status_changed", order)
    return order
