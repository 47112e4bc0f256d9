# main.py
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

import analytics
import assignment
import config
import geo
import inventory
import matching
import orders
import payments
import pharmacies
from auth import Actor, require_role
from database import get_db, init_db
from errors import IntegrityError, ServiceError
from notifier import notifier
from schemas import (
    ApprovalUpdate,
    AvailabilityUpdate,
    InventoryItemOut,
    InventoryUpsert,
    LocationUpdate,
    OrderOut,
    PaymentVerification,
    PharmacyCreate,
    PharmacyOut,
    PharmacySearchOut,
    PickupConfirmation,
    PlacedOrderOut,
    PrescriptionReview,
    StatusUpdate,
    TrackingOut,
    VendorOrderOut,
    VolunteerCreate,
    VolunteerOrderSummary,
    VolunteerOut,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ==========================================
# 🚀 FASTAPI APP SETUP
# ==========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="MediSarthi API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if isinstance(exc, IntegrityError):
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


# --- Collaborators (overridden in tests) ---
def get_payment_client():
    return payments.default_client()


def get_notifier():
    return notifier


customer_only = require_role("customer")
vendor_only = require_role("vendor")
volunteer_only = require_role("volunteer")
admin_only = require_role("admin")
any_actor = require_role("customer", "vendor", "volunteer", "admin")


@app.get("/")
def home():
    return {"message": "MediSarthi Backend Running"}


# ==========================================
# 🛒 CUSTOMER ORDERS
# ==========================================

# 1. PLACE ORDER (cart + optional prescription upload)
@app.post("/orders", response_model=PlacedOrderOut, status_code=201)
async def place_order(
    pharmacy_id: int = Form(...),
    medicines: str = Form(...),
    contact_number: str = Form(...),
    delivery_type: str = Form("delivery"),
    delivery_address: Optional[str] = Form(None),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    prescription: Optional[UploadFile] = File(None),
    actor: Actor = Depends(customer_only),
    db: Session = Depends(get_db),
    client=Depends(get_payment_client),
    notify=Depends(get_notifier),
):
    prescription_file = None
    if prescription is not None and prescription.filename:
        prescription_file = (prescription.filename, await prescription.read())

    order, processor_ref = await run_in_threadpool(
        orders.place_order,
        db, actor.id, pharmacy_id, medicines, delivery_type, contact_number,
        delivery_address=delivery_address,
        latitude=latitude,
        longitude=longitude,
        prescription_file=prescription_file,
        client=client,
        notify=notify,
    )
    if processor_ref:
        message = "Order created, proceed to payment"
    else:
        message = "Order created, payment opens once the pharmacy approves your prescription"
    return {
        "order": OrderOut.model_validate(order),
        "processor_order_id": processor_ref,
        "amount": order.total_amount,
        "currency": config.CURRENCY,
        "key_id": config.RAZORPAY_KEY_ID,
        "message": message,
    }


# 2. RETRY / OPEN PAYMENT
@app.post("/orders/{order_id}/payment-intent", response_model=PlacedOrderOut)
def create_payment_intent(order_id: int, actor: Actor = Depends(customer_only),
                          db: Session = Depends(get_db), client=Depends(get_payment_client)):
    order, processor_ref = orders.retry_payment_intent(db, order_id, actor.id, client=client)
    return {
        "order": OrderOut.model_validate(order),
        "processor_order_id": processor_ref,
        "amount": order.total_amount,
        "currency": config.CURRENCY,
        "key_id": config.RAZORPAY_KEY_ID,
        "message": "Proceed to payment",
    }


# 3. PAYMENT CALLBACK
@app.post("/orders/verify-payment", response_model=OrderOut)
def verify_payment(data: PaymentVerification, actor: Actor = Depends(any_actor),
                   db: Session = Depends(get_db), notify=Depends(get_notifier)):
    order = payments.confirm_payment(
        db, data.processor_order_id, data.processor_payment_id, data.signature, notify=notify,
    )
    return OrderOut.model_validate(order)


# 4. MY ORDERS
@app.get("/orders/my-orders", response_model=List[OrderOut])
def my_orders(status: Optional[str] = None, actor: Actor = Depends(customer_only),
              db: Session = Depends(get_db)):
    return [OrderOut.model_validate(o) for o in orders.list_customer_orders(db, actor.id, status)]


# 5. ORDER DETAIL
@app.get("/orders/{order_id}", response_model=OrderOut)
def order_detail(order_id: int, actor: Actor = Depends(customer_only), db: Session = Depends(get_db)):
    return OrderOut.model_validate(orders.get_customer_order(db, order_id, actor.id))


# 6. TRACKING
@app.get("/orders/{order_id}/track", response_model=TrackingOut)
def track_order(order_id: int, actor: Actor = Depends(customer_only), db: Session = Depends(get_db)):
    return orders.tracking_detail(orders.get_customer_order(db, order_id, actor.id))


# 7. CANCEL
@app.put("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, actor: Actor = Depends(customer_only),
                 db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return OrderOut.model_validate(orders.cancel_order(db, order_id, actor.id, notify=notify))


# ==========================================
# 🏪 VENDOR
# ==========================================

@app.get("/vendor/orders", response_model=List[VendorOrderOut])
def vendor_orders(status: Optional[str] = None, actor: Actor = Depends(vendor_only),
                  db: Session = Depends(get_db)):
    return [VendorOrderOut.model_validate(o) for o in orders.list_vendor_orders(db, actor.id, status)]


@app.put("/vendor/orders/{order_id}/status", response_model=VendorOrderOut)
def vendor_update_status(order_id: int, data: StatusUpdate, actor: Actor = Depends(vendor_only),
                         db: Session = Depends(get_db), notify=Depends(get_notifier)):
    order = orders.vendor_update_status(db, order_id, actor.id, data.order_status, notify=notify)
    return VendorOrderOut.model_validate(order)


@app.put("/vendor/orders/{order_id}/prescription", response_model=VendorOrderOut)
def review_prescription(order_id: int, data: PrescriptionReview, actor: Actor = Depends(vendor_only),
                        db: Session = Depends(get_db), notify=Depends(get_notifier)):
    order = orders.review_prescription(db, order_id, actor.id, data.status, data.note, notify=notify)
    return VendorOrderOut.model_validate(order)


@app.put("/vendor/orders/{order_id}/ready-for-pickup", response_model=VendorOrderOut)
def ready_for_pickup(order_id: int, actor: Actor = Depends(vendor_only),
                     db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return VendorOrderOut.model_validate(orders.mark_ready_for_pickup(db, order_id, actor.id, notify=notify))


@app.put("/vendor/orders/{order_id}/confirm-pickup", response_model=VendorOrderOut)
def confirm_pickup(order_id: int, data: PickupConfirmation, actor: Actor = Depends(vendor_only),
                   db: Session = Depends(get_db), notify=Depends(get_notifier)):
    order = orders.confirm_pickup(db, order_id, actor.id, data.pickup_code, notify=notify)
    return VendorOrderOut.model_validate(order)


@app.get("/vendor/pharmacies", response_model=List[PharmacyOut])
def vendor_pharmacies(actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return [PharmacyOut.model_validate(p) for p in pharmacies.list_vendor_pharmacies(db, actor.id)]


@app.get("/vendor/pharmacies/{pharmacy_id}/dashboard")
def pharmacy_dashboard(pharmacy_id: int, actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return analytics.dashboard(db, pharmacy_id, actor.id)


@app.get("/vendor/pharmacies/{pharmacy_id}/sales-report")
def pharmacy_sales_report(pharmacy_id: int, actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return analytics.sales_report(db, pharmacy_id, actor.id)


@app.get("/vendor/pharmacies/{pharmacy_id}/top-medicines")
def pharmacy_top_medicines(pharmacy_id: int, actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return analytics.top_medicines(db, pharmacy_id, actor.id)


# ==========================================
# 💊 PHARMACIES & SEARCH
# ==========================================

@app.post("/pharmacies", response_model=PharmacyOut, status_code=201)
def register_pharmacy(data: PharmacyCreate, actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return PharmacyOut.model_validate(pharmacies.register_pharmacy(db, actor.id, data))


@app.get("/pharmacies/{pharmacy_id}/inventory", response_model=List[InventoryItemOut])
def pharmacy_inventory(pharmacy_id: int, actor: Actor = Depends(vendor_only), db: Session = Depends(get_db)):
    return [InventoryItemOut.model_validate(i) for i in inventory.list_inventory(db, pharmacy_id, actor.id)]


@app.post("/pharmacies/{pharmacy_id}/inventory", response_model=InventoryItemOut)
def upsert_inventory(pharmacy_id: int, data: InventoryUpsert, actor: Actor = Depends(vendor_only),
                     db: Session = Depends(get_db)):
    return InventoryItemOut.model_validate(inventory.upsert_item(db, pharmacy_id, actor.id, data))


@app.get("/pharmacies/search", response_model=PharmacySearchOut)
def search_medicine(medicine_name: str, latitude: float, longitude: float,
                    radius_km: Optional[float] = None, db: Session = Depends(get_db)):
    return matching.find_pharmacies_with_medicine(db, latitude, longitude, medicine_name, radius_km)


@app.get("/pharmacies/location")
def location_lookup(address: Optional[str] = None, city: Optional[str] = None, state: Optional[str] = None):
    query = " ".join(part for part in (address, city, state) if part)
    return {"locations": geo.geocode(query)}


# ==========================================
# 🛵 VOLUNTEERS
# ==========================================

@app.post("/volunteers", response_model=VolunteerOut, status_code=201)
def register_volunteer(data: VolunteerCreate, actor: Actor = Depends(volunteer_only),
                       db: Session = Depends(get_db)):
    return assignment.volunteer_profile(assignment.register_volunteer(db, actor.id, data))


@app.get("/volunteers/profile", response_model=VolunteerOut)
def volunteer_profile(actor: Actor = Depends(volunteer_only), db: Session = Depends(get_db)):
    return assignment.volunteer_profile(matching.get_volunteer(db, actor.id))


@app.get("/volunteers/available-orders", response_model=List[VolunteerOrderSummary])
def available_orders(actor: Actor = Depends(volunteer_only), db: Session = Depends(get_db)):
    return matching.find_orders_for_volunteer(db, actor.id)


@app.put("/volunteers/orders/{order_id}/accept", response_model=VendorOrderOut)
def accept_order(order_id: int, actor: Actor = Depends(volunteer_only),
                 db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return VendorOrderOut.model_validate(assignment.accept(db, order_id, actor.id, notify=notify))


@app.put("/volunteers/orders/{order_id}/picked-up", response_model=VendorOrderOut)
def picked_up(order_id: int, actor: Actor = Depends(volunteer_only),
              db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return VendorOrderOut.model_validate(assignment.mark_picked_up(db, order_id, actor.id, notify=notify))


@app.put("/volunteers/orders/{order_id}/out-for-delivery", response_model=VendorOrderOut)
def out_for_delivery(order_id: int, actor: Actor = Depends(volunteer_only),
                     db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return VendorOrderOut.model_validate(assignment.mark_out_for_delivery(db, order_id, actor.id, notify=notify))


@app.put("/volunteers/orders/{order_id}/delivered", response_model=VendorOrderOut)
def delivered(order_id: int, actor: Actor = Depends(volunteer_only),
              db: Session = Depends(get_db), notify=Depends(get_notifier)):
    return VendorOrderOut.model_validate(assignment.mark_delivered(db, order_id, actor.id, notify=notify))


@app.get("/volunteers/my-deliveries", response_model=List[VendorOrderOut])
def my_deliveries(status: Optional[str] = None, actor: Actor = Depends(volunteer_only),
                  db: Session = Depends(get_db)):
    return [VendorOrderOut.model_validate(o) for o in assignment.list_my_deliveries(db, actor.id, status)]


@app.put("/volunteers/location", response_model=VolunteerOut)
def update_location(data: LocationUpdate, actor: Actor = Depends(volunteer_only), db: Session = Depends(get_db)):
    volunteer = assignment.update_location(db, actor.id, data.latitude, data.longitude)
    return assignment.volunteer_profile(volunteer)


@app.put("/volunteers/availability", response_model=VolunteerOut)
def toggle_availability(data: AvailabilityUpdate, actor: Actor = Depends(volunteer_only),
                        db: Session = Depends(get_db)):
    return assignment.volunteer_profile(assignment.set_availability(db, actor.id, data.is_available))


# ==========================================
# 🔐 ADMIN APPROVALS
# ==========================================

@app.put("/admin/pharmacies/{pharmacy_id}/approval", response_model=PharmacyOut)
def approve_pharmacy(pharmacy_id: int, data: ApprovalUpdate, actor: Actor = Depends(admin_only),
                     db: Session = Depends(get_db)):
    return PharmacyOut.model_validate(pharmacies.set_pharmacy_approval(db, pharmacy_id, data.approval_status))


@app.put("/admin/volunteers/{volunteer_id}/approval", response_model=VolunteerOut)
def approve_volunteer(volunteer_id: int, data: ApprovalUpdate, actor: Actor = Depends(admin_only),
                      db: Session = Depends(get_db)):
    volunteer = assignment.set_volunteer_approval(db, volunteer_id, data.approval_status)
    return assignment.volunteer_profile(volunteer)


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
