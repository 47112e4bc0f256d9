# matching.py
"""Proximity matching: pharmacies near a customer, orders near a courier."""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload
from thefuzz import process

import config
import geo
from errors import AuthorizationError, NotFoundError, ValidationError
from models import (
    ApprovalStatus,
    DeliveryType,
    InventoryItem,
    Order,
    OrderStatus,
    PaymentStatus,
    Pharmacy,
    Volunteer,
)

logger = logging.getLogger(__name__)

SUGGESTION_MIN_SCORE = 60


def _matching_lines(db: Session, medicine_name: str):
    """First in-stock line per approved pharmacy whose name contains the query."""
    rows = (
        db.query(Pharmacy, InventoryItem)
        .join(InventoryItem, InventoryItem.pharmacy_id == Pharmacy.id)
        .filter(
            Pharmacy.approval_status == ApprovalStatus.APPROVED,
            InventoryItem.stock > 0,
            InventoryItem.name_key.contains(medicine_name.lower(), autoescape=True),
        )
        .order_by(Pharmacy.id, InventoryItem.id)
        .all()
    )
    matches = {}
    for pharmacy, item in rows:
        matches.setdefault(pharmacy.id, (pharmacy, item))
    return list(matches.values())


def suggest_medicine_names(db: Session, medicine_name: str, limit: int = 5) -> List[str]:
    names = [
        row.medicine_name
        for row in (
            db.query(InventoryItem.medicine_name)
            .join(Pharmacy, InventoryItem.pharmacy_id == Pharmacy.id)
            .filter(Pharmacy.approval_status == ApprovalStatus.APPROVED, InventoryItem.stock > 0)
            .distinct()
            .all()
        )
    ]
    if not names:
        return []
    return [name for name, score in process.extract(medicine_name, names, limit=limit)
            if score >= SUGGESTION_MIN_SCORE]


def find_pharmacies_with_medicine(db: Session, latitude, longitude, medicine_name: str,
                                  radius_km: Optional[float] = None) -> dict:
    """Pharmacies stocking a medicine, nearest first.

    Pharmacies inside ``radius_km`` are returned when there are any; otherwise
    the closest few anywhere. Stock levels are never exposed.
    """
    if not medicine_name or not medicine_name.strip():
        raise ValidationError("Medicine name required")
    medicine_name = medicine_name.strip()
    origin = geo.validate_coordinate(latitude, longitude)
    radius = config.DEFAULT_SEARCH_RADIUS_KM if radius_km is None else radius_km
    if radius <= 0:
        raise ValidationError("Radius must be positive")

    candidates = []
    for pharmacy, item in _matching_lines(db, medicine_name):
        distance = geo.distance_km(origin, pharmacy.coordinates)
        candidates.append((distance, {
            "pharmacy_id": pharmacy.id,
            "pharmacy_name": pharmacy.name,
            "address": pharmacy.address,
            "contact_number": pharmacy.contact_number,
            "medicine_name": item.medicine_name,
            "price": item.selling_price,
            "is_available": True,
            "distance_km": round(distance, 2),
            "latitude": pharmacy.latitude,
            "longitude": pharmacy.longitude,
        }))
    candidates.sort(key=lambda c: (c[0], c[1]["pharmacy_id"]))

    within = [result for distance, result in candidates if distance <= radius]
    if within:
        search_type = "within_radius"
        results = within
        message = f"Found {len(results)} pharmacy(ies) within {radius:g}km"
    else:
        search_type = "nearest_available"
        results = [result for _, result in candidates[:config.NEAREST_FALLBACK_LIMIT]]
        if results:
            message = f"Medicine not found within {radius:g}km. Showing nearest available pharmacies."
        else:
            message = "No pharmacies found with this medicine"

    suggestions = [] if results else suggest_medicine_names(db, medicine_name)
    logger.info("Search %r near (%.4f, %.4f): %s, %d result(s)",
                medicine_name, origin.latitude, origin.longitude, search_type, len(results))
    return {
        "search_type": search_type,
        "radius_km": radius,
        "total_results": len(results),
        "message": message,
        "pharmacies": results,
        "suggestions": suggestions,
    }


def get_volunteer(db: Session, user_id: str) -> Volunteer:
    volunteer = db.query(Volunteer).filter(Volunteer.user_id == user_id).first()
    if volunteer is None:
        raise NotFoundError("Volunteer profile not found")
    return volunteer


def find_orders_for_volunteer(db: Session, user_id: str) -> List[dict]:
    """Unassigned paid delivery orders whose trip fits the volunteer's radius.

    Oldest orders come first so earlier customers are served first.
    """
    volunteer = get_volunteer(db, user_id)
    if volunteer.approval_status != ApprovalStatus.APPROVED or not volunteer.is_available:
        raise AuthorizationError("You are not an approved and available volunteer")

    candidates = (
        db.query(Order)
        .options(joinedload(Order.pharmacy))
        .filter(
            Order.order_status == OrderStatus.CONFIRMED,
            Order.payment_status == PaymentStatus.COMPLETED,
            Order.volunteer_id.is_(None),
            Order.delivery_type == DeliveryType.DELIVERY,
            Order.delivery_latitude.isnot(None),
            Order.delivery_longitude.isnot(None),
        )
        .order_by(Order.placed_at.asc(), Order.id.asc())
        .all()
    )

    summaries = []
    for order in candidates:
        distance = geo.distance_km(order.pharmacy.coordinates, order.destination)
        if distance > volunteer.service_radius_km:
            continue
        pricing = geo.price_order(order.medicine_total, distance)
        summaries.append({
            "order_id": order.id,
            "pharmacy_id": order.pharmacy_id,
            "pharmacy_name": order.pharmacy.name,
            "pharmacy_address": order.pharmacy.address,
            "items": [
                {"medicine_name": i.medicine_name, "quantity": i.quantity,
                 "unit_price": i.unit_price, "line_total": i.line_total}
                for i in order.items
            ],
            "delivery_address": order.delivery_address,
            "delivery_latitude": order.delivery_latitude,
            "delivery_longitude": order.delivery_longitude,
            "contact_number": order.contact_number,
            "medicine_total": order.medicine_total,
            "distance_km": round(pricing.distance_km, 2),
            "delivery_charges": pricing.delivery_charges,
            "total_amount": pricing.total_amount,
            "placed_at": order.placed_at,
        })
    logger.info("Volunteer %s: %d of %d open order(s) within %.1fkm",
                user_id, len(summaries), len(candidates), volunteer.service_radius_km)
    return summaries
