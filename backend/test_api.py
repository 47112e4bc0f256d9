import json

import pytest
from fastapi.testclient import TestClient

import config
import payments
from conftest import ORIGIN, SECRET, FakeProcessor, north_of
from database import get_db
from main import app, get_notifier, get_payment_client


def as_(user, role):
    return {"X-Actor-Id": user, "X-Actor-Role": role}


CUSTOMER = as_("cust-1", "customer")
VENDOR = as_("vendor-1", "vendor")
COURIER = as_("courier-1", "volunteer")
ADMIN = as_("admin-1", "admin")


@pytest.fixture
def client(session_factory, processor, notify):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_payment_client] = lambda: processor
    app.dependency_overrides[get_notifier] = lambda: notify
    yield TestClient(app)
    app.dependency_overrides.clear()


def order_form(pharmacy_id, medicines, delivery_type="delivery", km=3.0):
    lat, lon = north_of(ORIGIN, km)
    form = {
        "pharmacy_id": str(pharmacy_id),
        "medicines": json.dumps(medicines),
        "contact_number": "9876543210",
        "delivery_type": delivery_type,
    }
    if delivery_type == "delivery":
        form.update(delivery_address="12 Residency Road", latitude=str(lat), longitude=str(lon))
    return form


def verify(client, processor_order_id, payment_id="pay_1", signature=None):
    return client.post("/orders/verify-payment", headers=CUSTOMER, json={
        "processor_order_id": processor_order_id,
        "processor_payment_id": payment_id,
        "signature": signature or payments.sign(processor_order_id, payment_id, SECRET),
    })


def test_home(client):
    assert client.get("/").json() == {"message": "MediSarthi Backend Running"}


def test_order_to_doorstep(client, notify):
    # Vendor onboarding
    res = client.post("/pharmacies", headers=VENDOR, json={
        "name": "City Pharmacy", "address": "MG Road", "latitude": ORIGIN[0], "longitude": ORIGIN[1],
        "license_number": "LIC-1", "contact_number": "9000000000",
    })
    assert res.status_code == 201
    pharmacy_id = res.json()["id"]
    assert res.json()["approval_status"] == "pending"

    res = client.put(f"/admin/pharmacies/{pharmacy_id}/approval", headers=ADMIN,
                     json={"approval_status": "approved"})
    assert res.json()["approval_status"] == "approved"

    res = client.post(f"/pharmacies/{pharmacy_id}/inventory", headers=VENDOR, json={
        "medicine_name": "Paracetamol 500", "selling_price": 50, "stock": 10,
    })
    assert res.status_code == 200

    # Customer finds and orders
    res = client.get("/pharmacies/search", params={
        "medicine_name": "paracetamol", "latitude": ORIGIN[0], "longitude": ORIGIN[1],
    })
    assert res.json()["search_type"] == "within_radius"
    assert res.json()["pharmacies"][0]["pharmacy_id"] == pharmacy_id

    res = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy_id, [{"medicineName": "Paracetamol 500", "quantity": 2}],
    ))
    assert res.status_code == 201, res.text
    placed = res.json()
    order_id = placed["order"]["id"]
    assert placed["order"]["total_amount"] == 130
    assert placed["amount"] == 130
    assert placed["processor_order_id"] == "order_rzp_1"

    res = verify(client, "order_rzp_1")
    assert res.status_code == 200
    assert res.json()["order_status"] == "confirmed"

    # Courier onboarding and delivery
    res = client.post("/volunteers", headers=COURIER, json={
        "vehicle_type": "motorcycle", "vehicle_number": "KA01AB1234", "service_city": "Bengaluru",
    })
    assert res.status_code == 201
    volunteer_id = res.json()["id"]
    assert client.get("/volunteers/available-orders", headers=COURIER).status_code == 403

    client.put(f"/admin/volunteers/{volunteer_id}/approval", headers=ADMIN, json={"approval_status": "approved"})
    res = client.get("/volunteers/available-orders", headers=COURIER)
    assert [o["order_id"] for o in res.json()] == [order_id]
    assert res.json()[0]["delivery_charges"] == 30

    for step, status in (("accept", "assigned"), ("picked-up", "picked_up"),
                         ("out-for-delivery", "out_for_delivery"), ("delivered", "delivered")):
        res = client.put(f"/volunteers/orders/{order_id}/{step}", headers=COURIER)
        assert res.status_code == 200, res.text
        assert res.json()["order_status"] == status

    track = client.get(f"/orders/{order_id}/track", headers=CUSTOMER).json()
    assert track["progress"] == 100
    assert all(step["completed"] for step in track["timeline"])
    assert track["volunteer_id"] == "courier-1"

    profile = client.get("/volunteers/profile", headers=COURIER).json()
    assert profile["total_deliveries"] == 1
    assert profile["is_available"] is True

    stats = client.get(f"/vendor/pharmacies/{pharmacy_id}/dashboard", headers=VENDOR).json()["stats"]
    assert stats["total_revenue"] == 130
    assert [name for name, _ in notify.events][:2] == ["order_placed", "order_confirmed"]


def test_tampered_signature_is_rejected(client, pharmacy):
    placed = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 1}],
    )).json()
    ref = placed["processor_order_id"]

    res = verify(client, ref, signature=payments.sign(ref, "pay_other", SECRET))
    assert res.status_code == 400
    assert res.json()["kind"] == "invalid_signature"

    order = client.get(f"/orders/{placed['order']['id']}", headers=CUSTOMER).json()
    assert order["order_status"] == "pending"
    assert order["payment_status"] == "pending"


def test_prescription_upload_and_review(client, pharmacy):
    res = client.post(
        "/orders",
        headers=CUSTOMER,
        data=order_form(pharmacy.id, [{"medicine_name": "Tramadol 50mg", "quantity": 1}]),
        files={"prescription": ("rx.jpg", b"scanned", "image/jpeg")},
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["processor_order_id"] is None
    assert body["order"]["prescription_status"] == "pending"
    order_id = body["order"]["id"]

    res = client.post(f"/orders/{order_id}/payment-intent", headers=CUSTOMER)
    assert res.status_code == 409
    assert res.json()["kind"] == "prescription_pending"

    res = client.put(f"/vendor/orders/{order_id}/prescription", headers=VENDOR, json={"status": "approved"})
    assert res.json()["prescription_status"] == "approved"

    res = client.post(f"/orders/{order_id}/payment-intent", headers=CUSTOMER)
    assert res.status_code == 200
    assert res.json()["processor_order_id"] == "order_rzp_1"


def test_missing_prescription(client, pharmacy):
    res = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Tramadol 50mg", "quantity": 1}],
    ))
    assert res.status_code == 400
    assert res.json()["kind"] == "prescription_required"


def test_processor_outage(client, pharmacy):
    app.dependency_overrides[get_payment_client] = lambda: FakeProcessor(fail=True)
    res = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 1}],
    ))
    assert res.status_code == 502
    assert res.json()["kind"] == "processor_unavailable"
    assert "saved as pending" in res.json()["detail"]

    mine = client.get("/orders/my-orders", headers=CUSTOMER).json()
    assert [o["order_status"] for o in mine] == ["pending"]


def test_pickup_code_flow(client, pharmacy):
    placed = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 1}], delivery_type="pickup",
    )).json()
    order_id = placed["order"]["id"]
    code = placed["order"]["pickup_code"]
    assert placed["order"]["delivery_charges"] == 0
    verify(client, placed["processor_order_id"])

    res = client.put(f"/vendor/orders/{order_id}/ready-for-pickup", headers=VENDOR)
    assert res.json()["order_status"] == "ready_for_pickup"
    assert "pickup_code" not in res.json()

    res = client.put(f"/vendor/orders/{order_id}/confirm-pickup", headers=VENDOR, json={"pickup_code": "WRONG1"})
    assert res.status_code == 400
    assert res.json()["kind"] == "invalid_pickup_code"

    res = client.put(f"/vendor/orders/{order_id}/confirm-pickup", headers=VENDOR, json={"pickup_code": code})
    assert res.json()["order_status"] == "completed"


def test_cancel_restocks(client, pharmacy):
    placed = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 4}],
    )).json()
    verify(client, placed["processor_order_id"])

    res = client.put(f"/orders/{placed['order']['id']}/cancel", headers=CUSTOMER)
    assert res.json()["order_status"] == "cancelled"

    stock = {i["medicine_name"]: i["stock"] for i in
             client.get(f"/pharmacies/{pharmacy.id}/inventory", headers=VENDOR).json()}
    assert stock["Paracetamol 500"] == 10

    res = client.put(f"/orders/{placed['order']['id']}/cancel", headers=CUSTOMER)
    assert res.status_code == 409


def test_vendor_cannot_deliver(client, pharmacy):
    placed = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 1}],
    )).json()
    res = client.put(f"/vendor/orders/{placed['order']['id']}/status", headers=VENDOR,
                     json={"order_status": "delivered"})
    assert res.status_code == 409


@pytest.mark.parametrize("headers,status,kind", [
    ({}, 401, "unauthenticated"),
    (as_("someone", "hacker"), 401, "unknown_role"),
    (VENDOR, 403, "forbidden"),
    (COURIER, 403, "forbidden"),
])
def test_customer_routes_need_customer(client, headers, status, kind):
    res = client.get("/orders/my-orders", headers=headers)
    assert res.status_code == status
    assert res.json()["kind"] == kind
    assert res.json()["detail"]


def test_other_customers_orders_are_hidden(client, pharmacy):
    placed = client.post("/orders", headers=CUSTOMER, data=order_form(
        pharmacy.id, [{"medicine_name": "Paracetamol 500", "quantity": 1}],
    )).json()
    res = client.get(f"/orders/{placed['order']['id']}", headers=as_("cust-2", "customer"))
    assert res.status_code == 404


def test_request_validation(client):
    res = client.put("/vendor/orders/1/prescription", headers=VENDOR, json={"status": "maybe"})
    assert res.status_code == 422


def test_location_lookup_without_provider(client, monkeypatch):
    monkeypatch.setattr(config, "OPENCAGE_API_KEY", None)
    res = client.get("/pharmacies/location", params={"city": "Bengaluru"})
    assert res.status_code == 502
