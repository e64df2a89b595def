"""
shared/utils/geo.py
Distance math and ashram location-QR parsing for self check-in.
"""

import json
import math
from dataclasses import dataclass
from typing import Optional

from config.settings import settings

EARTH_RADIUS_METERS = 6_371_000

# Plain-text QR payloads printed before the JSON format existed
LEGACY_LOCATION_CODES = {"ASHRAM_MAIN", "ASHRAM", "MAIN"}


@dataclass
class LocationQR:
    location_id: str
    location_name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_METERS * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def parse_location_qr(qr_data: str) -> Optional[LocationQR]:
    """
    Decode a scanned location QR.
    Accepts the JSON payload from build_location_qr() or one of the legacy plain codes.
    Returns None for anything that is not an ashram location.
    """
    raw = qr_data.strip()
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        if payload.get("locationId") != settings.ASHRAM_LOCATION_ID:
            return None
        return LocationQR(
            location_id=payload["locationId"],
            location_name=payload.get("locationName") or settings.ASHRAM_NAME,
            latitude=_as_float(payload.get("latitude")),
            longitude=_as_float(payload.get("longitude")),
        )

    if raw.upper() in LEGACY_LOCATION_CODES:
        return LocationQR(
            location_id=settings.ASHRAM_LOCATION_ID,
            location_name=settings.ASHRAM_NAME,
            latitude=settings.ASHRAM_LATITUDE,
            longitude=settings.ASHRAM_LONGITUDE,
        )
    return None


def build_location_qr(location_id: Optional[str] = None) -> dict:
    """Payload to encode into the QR code printed at a check-in point."""
    return {
        "locationId": location_id or settings.ASHRAM_LOCATION_ID,
        "locationName": settings.ASHRAM_NAME,
        "latitude": settings.ASHRAM_LATITUDE,
        "longitude": settings.ASHRAM_LONGITUDE,
        "type": "ashram_checkin",
    }


def _as_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
