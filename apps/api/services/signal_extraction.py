"""
Ride Signal Extraction

Turns raw ride evidence into partial observations:
- Screenshot receipts (vision model, OpenAI chat completions)
- Push-notification text (regex parsing)
- GPS traces (haversine distance, duration, internal consistency)

Nothing here persists anything. Extraction never raises on bad evidence: a
field that cannot be read is simply absent, and scoring treats it as neutral.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Protocol

from core.config import settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass
class PartialObservation:
    """Subset of observation fields one signal source was able to populate."""
    quoted_price: Optional[float] = None
    final_price: Optional[float] = None
    quoted_eta_minutes: Optional[float] = None
    actual_pickup_minutes: Optional[float] = None
    driver_cancelled: Optional[bool] = None
    cancellation_count: Optional[int] = None
    expected_distance_km: Optional[float] = None
    actual_distance_km: Optional[float] = None
    expected_duration_min: Optional[float] = None
    actual_duration_min: Optional[float] = None
    support_resolved: Optional[bool] = None
    support_outcome: Optional[str] = None
    provider_name: Optional[str] = None

    def populated(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def overlay(self, other: Optional["PartialObservation"]) -> "PartialObservation":
        """Return a copy where every field populated in `other` replaces ours."""
        merged = PartialObservation(**{f.name: getattr(self, f.name) for f in fields(self)})
        if other is None:
            return merged
        for name, value in other.populated().items():
            setattr(merged, name, value)
        return merged


@dataclass(frozen=True)
class GpsPoint:
    lat: float
    lng: float
    timestamp: float  # epoch milliseconds
    speed: Optional[float] = None


@dataclass
class GpsAnalysis:
    distance_km: float
    duration_min: float
    is_consistent: bool
    suspicious_jumps: int = 0


# Field name -> coercion for values coming back from the vision model
_SCREENSHOT_FIELDS = {
    "quotedPrice": ("quoted_price", float),
    "finalPrice": ("final_price", float),
    "quotedEtaMinutes": ("quoted_eta_minutes", float),
    "actualPickupMinutes": ("actual_pickup_minutes", float),
    "driverCancelled": ("driver_cancelled", bool),
    "cancellationCount": ("cancellation_count", int),
    "expectedDistanceKm": ("expected_distance_km", float),
    "actualDistanceKm": ("actual_distance_km", float),
    "expectedDurationMin": ("expected_duration_min", float),
    "actualDurationMin": ("actual_duration_min", float),
    "supportResolved": ("support_resolved", bool),
    "supportOutcome": ("support_outcome", str),
    "providerName": ("provider_name", str),
}

SCREENSHOT_SYSTEM_PROMPT = """You are a ride receipt analyzer. Extract ride details from screenshots of ride-hailing app receipts. Return ONLY a JSON object with these fields (use null for unavailable data):
{
  "quotedPrice": number or null,
  "finalPrice": number or null,
  "quotedEtaMinutes": number or null,
  "actualPickupMinutes": number or null,
  "driverCancelled": boolean or null,
  "cancellationCount": number or null,
  "expectedDistanceKm": number or null,
  "actualDistanceKm": number or null,
  "expectedDurationMin": number or null,
  "actualDurationMin": number or null,
  "supportResolved": boolean or null,
  "supportOutcome": string or null,
  "providerName": string or null
}
Do NOT infer or guess values. Only extract what is clearly visible."""


class ScreenshotExtractor(Protocol):
    def __call__(self, screenshot_base64: str) -> PartialObservation: ...


def parse_screenshot_response(content: str) -> PartialObservation:
    """Parse the vision model's JSON reply. Unreadable fields are dropped."""
    match = re.search(r"\{[\s\S]*\}", content or "")
    if not match:
        return PartialObservation()
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"Screenshot extraction returned invalid JSON: {e}")
        return PartialObservation()
    if not isinstance(parsed, dict):
        return PartialObservation()

    result = PartialObservation()
    for key, (attr, cast) in _SCREENSHOT_FIELDS.items():
        value = parsed.get(key)
        if value is None:
            continue
        try:
            setattr(result, attr, cast(value))
        except (TypeError, ValueError):
            logger.info(f"Screenshot field {key} unreadable: {value!r}")
    return result


_openai_client = None


def _get_openai_client():
    global _openai_client
    if _openai_client is None:
        from openai import OpenAI
        _openai_client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _openai_client


def extract_signals_from_screenshot(screenshot_base64: str) -> PartialObservation:
    """
    Default screenshot extractor: one vision chat completion, temperature 0.

    Returns an empty partial observation when no API key is configured or the
    call fails; the failure is logged, never raised.
    """
    if not settings.OPENAI_API_KEY:
        logger.info("Screenshot extraction skipped: OPENAI_API_KEY not configured")
        return PartialObservation()
    try:
        response = _get_openai_client().chat.completions.create(
            model=settings.SCREENSHOT_MODEL,
            messages=[
                {"role": "system", "content": SCREENSHOT_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Extract ride details from this receipt screenshot:"},
                        {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{screenshot_base64}"}},
                    ],
                },
            ],
            max_tokens=settings.SCREENSHOT_MAX_TOKENS,
            temperature=0,
        )
        content = response.choices[0].message.content or "{}"
    except Exception as e:
        logger.error(f"Screenshot extraction failed: {e}")
        return PartialObservation()
    return parse_screenshot_response(content)


_PRICE_RE = re.compile(r"(?:fare|price|charged|total|amount)[:\s]*[$£€₹]?\s*([\d,.]+)", re.IGNORECASE)
_ETA_RE = re.compile(r"(?:arriving in|eta|pickup in)[:\s]*(\d+)\s*(?:min|minutes)", re.IGNORECASE)
_CANCEL_RE = re.compile(r"(?:driver\s+cancel|ride\s+cancel|trip\s+cancel)", re.IGNORECASE)
_DISTANCE_RE = re.compile(r"([\d.]+)\s*(km|kilometers|miles)", re.IGNORECASE)

KM_PER_MILE = 1.609344


def extract_signals_from_notification(notification_text: str) -> PartialObservation:
    """Parse a ride-app push notification for fare, ETA, cancellation and distance."""
    signals = PartialObservation()
    if not notification_text:
        return signals

    price = _PRICE_RE.search(notification_text)
    if price:
        try:
            signals.final_price = float(price.group(1).replace(",", "").rstrip("."))
        except ValueError:
            pass

    eta = _ETA_RE.search(notification_text)
    if eta:
        signals.quoted_eta_minutes = float(eta.group(1))

    if _CANCEL_RE.search(notification_text):
        signals.driver_cancelled = True

    distance = _DISTANCE_RE.search(notification_text)
    if distance:
        try:
            value = float(distance.group(1))
        except ValueError:
            value = None
        if value is not None:
            if distance.group(2).lower() == "miles":
                value = round(value * KM_PER_MILE, 2)
            signals.expected_distance_km = value

    return signals


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def segment_speed_kmh(a: GpsPoint, b: GpsPoint) -> Optional[float]:
    """Implied speed between two fixes, or None when no time elapsed."""
    seconds = (b.timestamp - a.timestamp) / 1000.0
    if seconds <= 0:
        return None
    return haversine_km(a.lat, a.lng, b.lat, b.lng) / seconds * 3600.0


def count_teleports(trace: List[GpsPoint]) -> int:
    """Segments whose implied speed is physically impossible for a car."""
    teleports = 0
    for prev, cur in zip(trace, trace[1:]):
        speed = segment_speed_kmh(prev, cur)
        if speed is not None and speed > settings.GPS_MAX_SPEED_KMH:
            teleports += 1
    return teleports


def too_many_teleports(teleports: int, segments: int) -> bool:
    return teleports > segments * settings.GPS_TELEPORT_FRACTION


def analyze_gps_trace(trace: List[GpsPoint]) -> GpsAnalysis:
    """
    Derive travelled distance and duration from a trace.

    The trace is consistent when it has at least two fixes, time moves forward
    across it, and no more than the configured fraction of segments imply an
    impossible speed. The fraud gate applies the same teleport threshold.
    """
    if len(trace) < 2:
        return GpsAnalysis(distance_km=0.0, duration_min=0.0, is_consistent=False)

    total_km = 0.0
    monotonic = True
    for prev, cur in zip(trace, trace[1:]):
        total_km += haversine_km(prev.lat, prev.lng, cur.lat, cur.lng)
        if cur.timestamp <= prev.timestamp:
            monotonic = False

    suspicious = count_teleports(trace)
    segments = len(trace) - 1
    duration_min = (trace[-1].timestamp - trace[0].timestamp) / 60000.0
    is_consistent = (
        monotonic
        and duration_min > 0
        and not too_many_teleports(suspicious, segments)
    )
    return GpsAnalysis(
        distance_km=round(total_km, 3),
        duration_min=round(duration_min, 2),
        is_consistent=is_consistent,
        suspicious_jumps=suspicious,
    )
