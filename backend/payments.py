# payments.py
"""Payment intents with the external processor and callback verification."""
import hashlib
import hmac
import logging

import requests
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

import config
import inventory
from database import atomic
from errors import ConflictError, IntegrityError, NotFoundError, UpstreamError
from models import Order, OrderStatus, PaymentStatus, PrescriptionStatus
from notifier import notifier as default_notifier
from transitions import transition_order

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Minimal client for the processor's order endpoint."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = None, timeout: float = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = (base_url or config.RAZORPAY_API_URL).rstrip("/")
        self.timeout = timeout or config.PROCESSOR_TIMEOUT_SECONDS

    def create_order(self, amount_minor_units: int, currency: str, metadata: dict) -> dict:
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": f"order_{metadata.get('order_id')}",
            "notes": metadata,
        }
        try:
            response = requests.post(
                f"{self.base_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Payment processor call failed: %s", e)
            raise UpstreamError("Payment processor unavailable, please retry", kind="processor_unavailable")
        if not data.get("id"):
            logger.error("Payment processor returned no order id: %s", data)
            raise UpstreamError("Payment processor unavailable, please retry", kind="processor_unavailable")
        return data


def default_client() -> RazorpayClient:
    return RazorpayClient(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def sign(processor_order_id: str, processor_payment_id: str, secret: str) -> str:
    body = f"{processor_order_id}|{processor_payment_id}"
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(processor_order_id: str, processor_payment_id: str, signature: str, secret: str) -> bool:
    expected = sign(processor_order_id, processor_payment_id, secret)
    return hmac.compare_digest(expected, signature or "")


def payment_blocked(order: Order) -> bool:
    """True while the prescription gate forbids taking payment at all."""
    return (
        order.needs_prescription
        and order.prescription_status != PrescriptionStatus.APPROVED
        and config.PRESCRIPTION_GATE != "hold"
    )


def create_intent(db: Session, order: Order, client) -> str:
    if order.order_status != OrderStatus.PENDING or order.payment_status != PaymentStatus.PENDING:
        raise ConflictError("Order is not awaiting payment", kind="not_awaiting_payment")
    if order.prescription_status == PrescriptionStatus.REJECTED:
        raise ConflictError("Prescription was rejected", kind="prescription_rejected")
    if payment_blocked(order):
        raise ConflictError("Prescription must be approved before payment", kind="prescription_pending")
    if order.processor_order_id:
        return order.processor_order_id

    result = client.create_order(
        to_minor_units(order.total_amount),
        config.CURRENCY,
        {"order_id": str(order.id), "pharmacy_id": str(order.pharmacy_id), "customer_id": order.customer_id},
    )
    order.processor_order_id = result["id"]
    db.commit()
    logger.info("Payment intent %s created for order %s", order.processor_order_id, order.id)
    return order.processor_order_id


def apply_payment(db: Session, order: Order, processor_payment_id: str, signature: str) -> None:
    """Complete payment, confirm the order and reserve its stock.

    Runs inside the caller's transaction so the three happen together or not
    at all.
    """
    if order.needs_prescription and order.prescription_status != PrescriptionStatus.APPROVED:
        raise ConflictError("Prescription must be approved before confirmation", kind="prescription_pending")

    items = list(order.items)
    pharmacy_id = order.pharmacy_id
    transition_order(
        db, order, OrderStatus.CONFIRMED,
        Order.payment_status == PaymentStatus.PENDING,
        or_(Order.needs_prescription.is_(False), Order.prescription_status == PrescriptionStatus.APPROVED),
        payment_status=PaymentStatus.COMPLETED,
        processor_payment_id=processor_payment_id,
        processor_signature=signature,
        payment_held=False,
        stock_reserved=True,
    )
    inventory.reserve(db, pharmacy_id, items)


def confirm_payment(db: Session, processor_order_id: str, processor_payment_id: str,
                    signature: str, secret: str = None, notify=None) -> Order:
    notify = notify or default_notifier
    order = db.query(Order).filter(Order.processor_order_id == processor_order_id).first()
    if order is None:
        raise NotFoundError("Order not found")

    if not verify_signature(processor_order_id, processor_payment_id, signature,
                            secret if secret is not None else config.RAZORPAY_KEY_SECRET):
        logger.warning("Invalid payment signature for order %s (processor ref %s)", order.id, processor_order_id)
        raise IntegrityError("Invalid payment signature", kind="invalid_signature")

    if order.payment_status == PaymentStatus.COMPLETED:
        # Repeated callback for the same payment
        if order.processor_payment_id == processor_payment_id:
            return order
        raise ConflictError("Order is already paid", kind="already_paid")
    if order.order_status != OrderStatus.PENDING:
        raise ConflictError(f"Order is {order.order_status}, payment not accepted", kind="not_awaiting_payment")

    if order.payment_held:
        if order.processor_payment_id != processor_payment_id:
            raise ConflictError("Order is already paid", kind="already_paid")
        if order.prescription_status != PrescriptionStatus.APPROVED:
            return order
        # Approved, but stock ran out when the held payment was first applied
    elif order.needs_prescription and order.prescription_status != PrescriptionStatus.APPROVED:
        if order.prescription_status == PrescriptionStatus.REJECTED or config.PRESCRIPTION_GATE != "hold":
            raise ConflictError("Prescription must be approved before payment", kind="prescription_pending")
        hold_payment(db, order, processor_payment_id, signature)
        return order

    with atomic(db):
        apply_payment(db, order, processor_payment_id, signature)
    db.refresh(order)
    notify.emit("order_confirmed", order)
    return order


def hold_payment(db: Session, order: Order, processor_payment_id: str, signature: str) -> None:
    """Record a captured payment against an order still under prescription review."""
    with atomic(db):
        stmt = (
            update(Order)
            .where(
                Order.id == order.id,
                Order.order_status == OrderStatus.PENDING,
                Order.payment_held.is_(False),
            )
            .values(processor_payment_id=processor_payment_id, processor_signature=signature, payment_held=True)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount != 1:
            raise ConflictError("Order is already paid", kind="already_paid")
    db.refresh(order)
    logger.info("Payment %s for order %s held until prescription review", processor_payment_id, order.id)
