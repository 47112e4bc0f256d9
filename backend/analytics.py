# analytics.py
"""Vendor dashboard numbers computed from a pharmacy's order history."""
from decimal import Decimal

from sqlalchemy.orm import Session

from inventory import get_owned_pharmacy
from models import Order, OrderStatus

FINISHED = (OrderStatus.DELIVERED, OrderStatus.COMPLETED)
IN_PROGRESS = (
    OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.ASSIGNED,
    OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.READY_FOR_PICKUP,
)
# Flat margin used until purchase prices are tracked per sale
PROFIT_MARGIN = Decimal("0.25")


def dashboard(db: Session, pharmacy_id: int, vendor_id: str) -> dict:
    pharmacy = get_owned_pharmacy(db, pharmacy_id, vendor_id)
    orders = db.query(Order).filter(Order.pharmacy_id == pharmacy.id).all()
    finished = [o for o in orders if o.order_status in FINISHED]
    revenue = sum(o.total_amount for o in finished)

    return {
        "pharmacy": {"id": pharmacy.id, "name": pharmacy.name, "address": pharmacy.address},
        "stats": {
            "total_orders": len(orders),
            "completed_orders": len(finished),
            "pending_orders": sum(1 for o in orders if o.order_status in IN_PROGRESS),
            "cancelled_orders": sum(1 for o in orders if o.order_status == OrderStatus.CANCELLED),
            "total_revenue": round(revenue),
            "net_profit": round(revenue * PROFIT_MARGIN),
            "total_medicines_sold": sum(item.quantity for o in finished for item in o.items),
        },
    }


def sales_report(db: Session, pharmacy_id: int, vendor_id: str) -> dict:
    pharmacy = get_owned_pharmacy(db, pharmacy_id, vendor_id)
    orders = (
        db.query(Order)
        .filter(Order.pharmacy_id == pharmacy.id)
        .order_by(Order.placed_at.desc(), Order.id.desc())
        .all()
    )
    return {
        "pharmacy": {"id": pharmacy.id, "name": pharmacy.name},
        "total_orders": len(orders),
        "orders": [
            {
                "order_id": o.id,
                "customer_id": o.customer_id,
                "total_amount": o.total_amount,
                "order_status": o.order_status,
                "delivery_type": o.delivery_type,
                "order_date": o.placed_at.date().isoformat(),
                "medicine_count": len(o.items),
            }
            for o in orders
        ],
    }


def top_medicines(db: Session, pharmacy_id: int, vendor_id: str, limit: int = 10) -> dict:
    pharmacy = get_owned_pharmacy(db, pharmacy_id, vendor_id)
    orders = (
        db.query(Order)
        .filter(Order.pharmacy_id == pharmacy.id, Order.order_status.in_(FINISHED))
        .all()
    )
    stats = {}
    for order in orders:
        for item in order.items:
            entry = stats.setdefault(item.medicine_name, {
                "name": item.medicine_name, "total_quantity": 0, "total_revenue": 0,
            })
            entry["total_quantity"] += item.quantity
            entry["total_revenue"] += item.line_total

    ranked = sorted(stats.values(), key=lambda s: s["total_revenue"], reverse=True)
    return {"pharmacy": {"id": pharmacy.id, "name": pharmacy.name}, "top_medicines": ranked[:limit]}
