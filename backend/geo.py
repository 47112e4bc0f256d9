# geo.py
"""Distances, delivery pricing and address lookup."""
import logging
import math
from decimal import Decimal
from typing import List, NamedTuple, Optional

import requests

import config
from errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# (upper bound in km, flat charge), checked in order
DELIVERY_TIERS = ((2, 20), (5, 30), (10, 50), (15, 70))
PER_KM_BEYOND_TIERS = 5


class Coordinate(NamedTuple):
    latitude: float
    longitude: float


class Pricing(NamedTuple):
    distance_km: Optional[float]
    delivery_charges: int
    total_amount: Decimal


def validate_coordinate(latitude, longitude) -> Coordinate:
    if latitude is None or longitude is None:
        raise ValidationError("Latitude and longitude are required")
    try:
        lat, lon = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("Invalid coordinates provided")
    if math.isnan(lat) or math.isnan(lon) or not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise ValidationError("Coordinates out of range")
    return Coordinate(lat, lon)


def distance_km(a, b) -> float:
    """Great-circle distance between two (latitude, longitude) points in km."""
    lat1, lon1 = math.radians(a[0]), math.radians(a[1])
    lat2, lon2 = math.radians(b[0]), math.radians(b[1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def delivery_charge(distance: float) -> int:
    for limit, charge in DELIVERY_TIERS:
        if distance <= limit:
            return charge
    return math.ceil(distance * PER_KM_BEYOND_TIERS)


def price_order(medicine_total: Decimal, distance: Optional[float]) -> Pricing:
    """The only place an order total is computed.

    ``distance`` is None for pickup orders, which carry no delivery charge.
    """
    if distance is None:
        return Pricing(None, 0, medicine_total)
    charges = delivery_charge(distance)
    return Pricing(distance, charges, medicine_total + charges)


def geocode(query: str) -> List[dict]:
    """Resolve a free-text address to candidate coordinates via OpenCage."""
    if not query or not query.strip():
        raise ValidationError("Address or city required")
    if not config.OPENCAGE_API_KEY:
        raise UpstreamError("Geocoding is not configured")

    try:
        response = requests.get(
            "https://api.opencagedata.com/geocode/v1/json",
            params={"q": query.strip(), "key": config.OPENCAGE_API_KEY, "limit": 5},
            timeout=config.GEOCODE_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("Geocoding failed for %r: %s", query, e)
        raise UpstreamError("Location service unavailable, please retry")

    places = []
    for result in data.get("results", []):
        components = result.get("components", {})
        places.append({
            "display_name": result.get("formatted"),
            "latitude": result["geometry"]["lat"],
            "longitude": result["geometry"]["lng"],
            "city": components.get("city") or components.get("town") or components.get("village"),
            "state": components.get("state"),
            "country": components.get("country"),
        })
    return places
