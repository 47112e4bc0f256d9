# backend/models.py
import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship

from database import Base

# Rupees with paise; read back as Decimal
Money = Numeric(10, 2)


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class ApprovalStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (PENDING, APPROVED, REJECTED)


class DeliveryType:
    DELIVERY = "delivery"
    PICKUP = "pickup"

    ALL = (DELIVERY, PICKUP)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    ALL = (
        PENDING, CONFIRMED, ASSIGNED, PICKED_UP, OUT_FOR_DELIVERY,
        DELIVERED, READY_FOR_PICKUP, COMPLETED, CANCELLED,
    )
    TERMINAL = (DELIVERED, COMPLETED, CANCELLED)
    # Orders a courier is currently carrying
    IN_TRANSIT = (ASSIGNED, PICKED_UP, OUT_FOR_DELIVERY)


class PaymentStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PrescriptionStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Legal (from, to) moves of Order.order_status
ORDER_TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED),
    (OrderStatus.CONFIRMED, OrderStatus.ASSIGNED),
    (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP),
    (OrderStatus.PICKED_UP, OrderStatus.OUT_FOR_DELIVERY),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
    (OrderStatus.CONFIRMED, OrderStatus.READY_FOR_PICKUP),
    (OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED),
} | {
    (status, OrderStatus.CANCELLED)
    for status in OrderStatus.ALL
    if status not in OrderStatus.TERMINAL
}

# Timestamp column stamped when an order enters a status
STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.OUT_FOR_DELIVERY: "out_for_delivery_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.READY_FOR_PICKUP: "ready_for_pickup_at",
    OrderStatus.COMPLETED: "picked_up_by_customer_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: str, target: str) -> bool:
    return (current, target) in ORDER_TRANSITIONS


# 1. Pharmacy Table
class Pharmacy(Base):
    __tablename__ = "pharmacies"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, index=True, nullable=False)  # vendor
    name = Column(String, nullable=False)
    address = Column(String, nullable=False)
    contact_number = Column(String, nullable=True)
    license_number = Column(String, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    approval_status = Column(String, default=ApprovalStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    inventory = relationship(
        "InventoryItem",
        back_populates="pharmacy",
        cascade="all, delete-orphan",
        order_by="InventoryItem.id",
    )

    @property
    def coordinates(self):
        return (self.latitude, self.longitude)


# 2. Inventory lines, one per medicine per pharmacy
class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("pharmacy_id", "name_key", name="uq_inventory_medicine"),
        CheckConstraint("stock >= 0", name="ck_inventory_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    pharmacy_id = Column(Integer, ForeignKey("pharmacies.id"), nullable=False, index=True)
    medicine_name = Column(String, nullable=False)
    # Lowercased name, the case-insensitive key within a pharmacy
    name_key = Column(String, nullable=False)
    selling_price = Column(Money, nullable=False)
    purchase_price = Column(Money, default=0)
    stock = Column(Integer, nullable=False, default=0)

    pharmacy = relationship("Pharmacy", back_populates="inventory")


# 3. Volunteer couriers
class Volunteer(Base):
    __tablename__ = "volunteers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=False)
    vehicle_type = Column(String, nullable=False)
    vehicle_number = Column(String, nullable=False)
    service_city = Column(String, nullable=False)
    service_radius_km = Column(Float, nullable=False, default=10.0)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    last_location_update = Column(DateTime, nullable=True)
    # The volunteer's own on/off duty switch
    is_online = Column(Boolean, default=True, nullable=False)
    approval_status = Column(String, default=ApprovalStatus.PENDING, nullable=False)
    total_deliveries = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    active_orders = relationship(
        "Order",
        primaryjoin=(
            "and_(Volunteer.user_id == foreign(Order.volunteer_id), "
            "Order.order_status.in_(['assigned', 'picked_up', 'out_for_delivery']))"
        ),
        viewonly=True,
        order_by="Order.assigned_at",
    )

    @property
    def is_available(self) -> bool:
        return bool(self.is_online) and not self.active_orders

    @property
    def current_location(self):
        if self.current_latitude is None or self.current_longitude is None:
            return None
        return (self.current_latitude, self.current_longitude)


# 4. Orders
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        # Pickup codes only need to be unique while the order is open
        Index(
            "uq_orders_open_pickup_code",
            "pharmacy_id",
            "pickup_code",
            unique=True,
            sqlite_where=text("order_status NOT IN ('delivered', 'completed', 'cancelled')"),
            postgresql_where=text("order_status NOT IN ('delivered', 'completed', 'cancelled')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String, index=True, nullable=False)
    pharmacy_id = Column(Integer, ForeignKey("pharmacies.id"), nullable=False, index=True)
    vendor_id = Column(String, index=True, nullable=False)
    volunteer_id = Column(String, index=True, nullable=True)

    delivery_type = Column(String, nullable=False, default=DeliveryType.DELIVERY)
    delivery_address = Column(String, nullable=True)
    delivery_latitude = Column(Float, nullable=True)
    delivery_longitude = Column(Float, nullable=True)
    contact_number = Column(String, nullable=False)
    pickup_code = Column(String(6), nullable=True, index=True)

    # Pricing
    medicine_total = Column(Money, nullable=False, default=0)
    delivery_charges = Column(Money, nullable=False, default=0)
    delivery_distance = Column(Float, nullable=True)  # km

    # Status management
    order_status = Column(String, nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING)
    stock_reserved = Column(Boolean, nullable=False, default=False)

    # Prescription
    needs_prescription = Column(Boolean, nullable=False, default=False)
    prescription_image = Column(String, nullable=True)
    prescription_status = Column(String, nullable=True)
    prescription_note = Column(Text, nullable=True)

    # Payment processor references
    processor_order_id = Column(String, nullable=True, unique=True, index=True)
    processor_payment_id = Column(String, nullable=True)
    processor_signature = Column(String, nullable=True)
    # Verified payment parked until the prescription is approved
    payment_held = Column(Boolean, nullable=False, default=False)

    # Timeline
    placed_at = Column(DateTime, default=utcnow, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    out_for_delivery_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    ready_for_pickup_at = Column(DateTime, nullable=True)
    picked_up_by_customer_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    pharmacy = relationship("Pharmacy")
    items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.position",
    )

    @hybrid_property
    def total_amount(self):
        return self.medicine_total + self.delivery_charges

    @property
    def destination(self):
        if self.delivery_latitude is None or self.delivery_longitude is None:
            return None
        return (self.delivery_latitude, self.delivery_longitude)

    @property
    def is_terminal(self) -> bool:
        return self.order_status in OrderStatus.TERMINAL


class OrderLineItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_item_quantity"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    medicine_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    # Snapshot of the selling price when the order was placed
    unit_price = Column(Money, nullable=False)
    line_total = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")
