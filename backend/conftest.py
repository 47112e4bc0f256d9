import itertools
import math
import os

# Keep the app engine off the developer database
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

import config
import orders
import payments
from database import init_db, make_engine
from errors import UpstreamError
from models import ApprovalStatus, InventoryItem, Pharmacy, Volunteer

SECRET = "test_secret"
ORIGIN = (12.9716, 77.5946)
KM_PER_DEGREE = 6371.0 * math.pi / 180


def north_of(point, km):
    """A point ``km`` due north of ``point`` (distance along a meridian is exact)."""
    return (point[0] + km / KM_PER_DEGREE, point[1])


class FakeProcessor:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []
        self._ids = itertools.count(1)

    def create_order(self, amount_minor_units, currency, metadata):
        self.calls.append((amount_minor_units, currency, metadata))
        if self.fail:
            raise UpstreamError("Payment processor unavailable, please retry", kind="processor_unavailable")
        return {"id": f"order_rzp_{next(self._ids)}", "amount": amount_minor_units}


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def emit(self, event, order, **extra):
        self.events.append((event, order.id))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "RAZORPAY_KEY_SECRET", SECRET)
    monkeypatch.setattr(config, "PRESCRIPTION_GATE", "block")
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(config, "TELEGRAM_BOT_TOKEN", None)
    return config


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def notify():
    return RecordingNotifier()


def add_pharmacy(db, name="City Pharmacy", point=ORIGIN, owner="vendor-1",
                 status=ApprovalStatus.APPROVED, stock=None):
    pharmacy = Pharmacy(
        owner_id=owner, name=name, address=f"{name}, MG Road", contact_number="9000000000",
        license_number="LIC-1", latitude=point[0], longitude=point[1], approval_status=status,
    )
    for medicine_name, price, qty in stock or ():
        pharmacy.inventory.append(InventoryItem(
            medicine_name=medicine_name, name_key=medicine_name.lower(),
            selling_price=price, stock=qty, purchase_price=price * 0.7,
        ))
    db.add(pharmacy)
    db.commit()
    db.refresh(pharmacy)
    return pharmacy


def add_volunteer(db, user_id="courier-1", radius=10.0, status=ApprovalStatus.APPROVED):
    volunteer = Volunteer(
        user_id=user_id, vehicle_type="motorcycle", vehicle_number="KA01AB1234",
        service_city="Bengaluru", service_radius_km=radius, approval_status=status,
    )
    db.add(volunteer)
    db.commit()
    db.refresh(volunteer)
    return volunteer


def stock_of(db, pharmacy_id, medicine_name):
    db.expire_all()
    item = (
        db.query(InventoryItem)
        .filter(InventoryItem.pharmacy_id == pharmacy_id, InventoryItem.name_key == medicine_name.lower())
        .one()
    )
    return item.stock


@pytest.fixture
def pharmacy(db):
    return add_pharmacy(db, stock=[
        ("Paracetamol 500", 50, 10),
        ("Tramadol 50mg", 120, 5),
        ("Cetirizine 10", 15, 0),
    ])


@pytest.fixture
def volunteer(db):
    return add_volunteer(db)


@pytest.fixture
def place(db, pharmacy, processor, notify):
    """Place an order against the default pharmacy with sensible defaults."""

    def _place(medicines=None, delivery_type="delivery", km=3.0, customer="cust-1",
               prescription_file=None, pharmacy_id=None):
        destination = north_of(ORIGIN, km)
        return orders.place_order(
            db,
            customer,
            pharmacy_id or pharmacy.id,
            medicines or [{"medicine_name": "Paracetamol 500", "quantity": 2}],
            delivery_type,
            "9876543210",
            delivery_address="12 Residency Road" if delivery_type == "delivery" else None,
            latitude=destination[0] if delivery_type == "delivery" else None,
            longitude=destination[1] if delivery_type == "delivery" else None,
            prescription_file=prescription_file,
            client=processor,
            notify=notify,
        )

    return _place


@pytest.fixture
def pay(db, notify):
    """Confirm payment for an order with a correctly signed callback."""

    def _pay(order, payment_id="pay_1"):
        signature = payments.sign(order.processor_order_id, payment_id, SECRET)
        return payments.confirm_payment(db, order.processor_order_id, payment_id, signature, notify=notify)

    return _pay
