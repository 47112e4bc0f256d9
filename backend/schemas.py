# schemas.py
"""Request / response models and the cart parsing adapter."""
import datetime
import json
from typing import List, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from errors import ValidationError


# --- Cart ---
class CartLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    medicine_name: str = Field(..., min_length=1, alias="medicineName")
    quantity: int = Field(..., gt=0)


def parse_cart(raw: Union[str, list, None]) -> List[CartLine]:
    """Normalize a cart that arrives either as a list or a JSON-encoded string.

    Lines naming the same medicine (case-insensitively) are merged so stock is
    checked against the combined quantity.
    """
    if raw is None or raw == "":
        raise ValidationError("Pharmacy and medicines are required")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise ValidationError("Medicines must be a JSON list")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Pharmacy and medicines are required")

    merged = {}
    for entry in raw:
        if isinstance(entry, CartLine):
            line = entry
        else:
            try:
                line = CartLine.model_validate(entry)
            except pydantic.ValidationError:
                raise ValidationError("Each medicine needs a name and a positive quantity")
        key = line.medicine_name.lower()
        if key in merged:
            merged[key].quantity += line.quantity
        else:
            merged[key] = line.model_copy()
    return list(merged.values())


# --- Orders ---
class OrderLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    medicine_name: str
    quantity: int
    unit_price: float
    line_total: float


class VendorOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str
    pharmacy_id: int
    vendor_id: str
    volunteer_id: Optional[str] = None
    delivery_type: str
    delivery_address: Optional[str] = None
    delivery_latitude: Optional[float] = None
    delivery_longitude: Optional[float] = None
    contact_number: str
    items: List[OrderLineOut]
    medicine_total: float
    delivery_charges: float
    delivery_distance: Optional[float] = None
    total_amount: float
    order_status: str
    payment_status: str
    needs_prescription: bool
    prescription_image: Optional[str] = None
    prescription_status: Optional[str] = None
    prescription_note: Optional[str] = None
    placed_at: datetime.datetime


class OrderOut(VendorOrderOut):
    pickup_code: Optional[str] = None
    processor_order_id: Optional[str] = None


class PlacedOrderOut(BaseModel):
    order: OrderOut
    processor_order_id: Optional[str] = None
    amount: float
    currency: str
    key_id: str
    message: str


class PaymentVerification(BaseModel):
    processor_order_id: str = Field(..., min_length=1)
    processor_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    order_status: str


class PrescriptionReview(BaseModel):
    status: Literal["approved", "rejected"]
    note: Optional[str] = None


class PickupConfirmation(BaseModel):
    pickup_code: str = Field(..., min_length=1)


class TimelineEntry(BaseModel):
    status: str
    at: Optional[datetime.datetime] = None
    completed: bool


class TrackingOut(BaseModel):
    order_id: int
    order_status: str
    delivery_type: str
    progress: int
    timeline: List[TimelineEntry]
    volunteer_id: Optional[str] = None
    pickup_code: Optional[str] = None
    total_amount: float


# --- Pharmacies ---
class PharmacyCreate(BaseModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    license_number: str = Field(..., min_length=1)
    contact_number: str = Field(..., min_length=1)


class PharmacyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str
    address: str
    contact_number: Optional[str] = None
    latitude: float
    longitude: float
    approval_status: str


class InventoryUpsert(BaseModel):
    medicine_name: str = Field(..., min_length=1)
    selling_price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    purchase_price: Optional[float] = Field(None, ge=0)


class InventoryItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    medicine_name: str
    selling_price: float
    purchase_price: Optional[float] = None
    stock: int


class PharmacyMatch(BaseModel):
    pharmacy_id: int
    pharmacy_name: str
    address: str
    contact_number: Optional[str] = None
    medicine_name: str
    price: float
    is_available: bool = True
    distance_km: float
    latitude: float
    longitude: float


class PharmacySearchOut(BaseModel):
    search_type: Literal["within_radius", "nearest_available"]
    radius_km: float
    total_results: int
    message: str
    pharmacies: List[PharmacyMatch]
    suggestions: List[str] = []


# --- Volunteers ---
class VolunteerCreate(BaseModel):
    vehicle_type: Literal["bicycle", "motorcycle", "car", "auto"]
    vehicle_number: str = Field(..., min_length=1)
    service_city: str = Field(..., min_length=1)
    service_radius_km: Optional[float] = Field(None, gt=0)


class VolunteerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    vehicle_type: str
    vehicle_number: str
    service_city: str
    service_radius_km: float
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    last_location_update: Optional[datetime.datetime] = None
    is_online: bool
    is_available: bool
    approval_status: str
    total_deliveries: int
    active_order_ids: List[int] = []


class VolunteerOrderSummary(BaseModel):
    order_id: int
    pharmacy_id: int
    pharmacy_name: str
    pharmacy_address: str
    items: List[OrderLineOut]
    delivery_address: Optional[str] = None
    delivery_latitude: float
    delivery_longitude: float
    contact_number: str
    medicine_total: float
    distance_km: float
    delivery_charges: float
    total_amount: float
    placed_at: datetime.datetime


class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AvailabilityUpdate(BaseModel):
    is_available: bool


class ApprovalUpdate(BaseModel):
    approval_status: Literal["pending", "approved", "rejected"]
