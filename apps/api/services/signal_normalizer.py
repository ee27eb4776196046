"""
Signal Normalizer

Merges independently-sourced signal fragments into one canonical field set.

Precedence (lowest to highest):
    1. pre-parsed fields sent by the client ("manual")
    2. screenshot-derived fields
    3. notification-derived fields (overwrite anything both sources populate)
    4. post-ride answers (only the fields the user explicitly corrected)

A GPS trace is analyzed on its own. Its measured distance/duration replace the
actual_* fields only when the analysis reports the trace as consistent.

Each source is only consulted when the user granted the matching capability.
The normalizer performs no persistence.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from models import TruthConsent
from services.signal_extraction import (
    GpsAnalysis,
    GpsPoint,
    PartialObservation,
    ScreenshotExtractor,
    analyze_gps_trace,
    extract_signals_from_notification,
    extract_signals_from_screenshot,
)

logger = logging.getLogger(__name__)


@dataclass
class PostRideAnswers:
    """Answers to the post-ride questionnaire. None means the question was skipped."""
    price_matched: Optional[bool] = None
    quoted_price: Optional[float] = None
    driver_cancelled: Optional[bool] = None
    arrived_on_time: Optional[bool] = None
    actual_wait_min: Optional[float] = None

    def corrections(self) -> PartialObservation:
        corrected = PartialObservation()
        if self.price_matched is False and self.quoted_price is not None:
            corrected.quoted_price = self.quoted_price
        if self.driver_cancelled is True:
            corrected.driver_cancelled = True
        if self.arrived_on_time is False and self.actual_wait_min is not None:
            corrected.actual_pickup_minutes = self.actual_wait_min
        return corrected


@dataclass
class RawSignals:
    """Everything a rider submitted for one ride, before normalization."""
    reported: PartialObservation = field(default_factory=PartialObservation)
    screenshot_base64: Optional[str] = None
    notification_text: Optional[str] = None
    gps_trace: List[GpsPoint] = field(default_factory=list)
    post_ride_answers: Optional[PostRideAnswers] = None
    ride_date: Optional[datetime] = None


@dataclass
class NormalizedSignals:
    fields: PartialObservation
    extraction_method: str
    sources: List[str]
    gps_analysis: Optional[GpsAnalysis] = None
    gps_trace: List[GpsPoint] = field(default_factory=list)
    screenshot_used: bool = False
    notification_text: Optional[str] = None

    @property
    def proof_of_ride(self) -> bool:
        return self.screenshot_used or bool(self.gps_analysis and self.gps_analysis.is_consistent)


def merge_signals(
    reported: Optional[PartialObservation] = None,
    screenshot: Optional[PartialObservation] = None,
    notification: Optional[PartialObservation] = None,
    answers: Optional[PostRideAnswers] = None,
    gps: Optional[GpsAnalysis] = None,
) -> PartialObservation:
    """Ordered merge of typed partial observations. Pure."""
    merged = (reported or PartialObservation()).overlay(screenshot).overlay(notification)
    if answers is not None:
        merged = merged.overlay(answers.corrections())
    if gps is not None and gps.is_consistent and gps.distance_km > 0:
        merged.actual_distance_km = gps.distance_km
        merged.actual_duration_min = gps.duration_min
    return merged


def normalize_signals(
    raw: RawSignals,
    consent: TruthConsent,
    screenshot_extractor: Optional[ScreenshotExtractor] = None,
) -> NormalizedSignals:
    """Run the permitted extractors for a submission and merge their output."""
    extractor = screenshot_extractor or extract_signals_from_screenshot
    sources: List[str] = []

    screenshot = None
    if raw.screenshot_base64:
        if consent.screenshot_capture:
            screenshot = extractor(raw.screenshot_base64)
            sources.append("screenshot_ai")
        else:
            logger.info(f"Ignoring screenshot for user {consent.user_id}: capability not granted")

    notification = None
    notification_text = None
    if raw.notification_text:
        if consent.notification_parsing:
            notification = extract_signals_from_notification(raw.notification_text)
            notification_text = raw.notification_text
            sources.append("notification")
        else:
            logger.info(f"Ignoring notification for user {consent.user_id}: capability not granted")

    answers = None
    if raw.post_ride_answers is not None:
        if consent.post_ride_confirmation:
            answers = raw.post_ride_answers
            sources.append("post_ride")
        else:
            logger.info(f"Ignoring post-ride answers for user {consent.user_id}: capability not granted")

    gps_analysis = None
    gps_trace: List[GpsPoint] = []
    if raw.gps_trace:
        if consent.gps_tracking:
            gps_trace = list(raw.gps_trace)
            gps_analysis = analyze_gps_trace(gps_trace)
            if gps_analysis.is_consistent:
                sources.append("gps")
        else:
            logger.info(f"Ignoring GPS trace for user {consent.user_id}: capability not granted")

    merged = merge_signals(raw.reported, screenshot, notification, answers, gps_analysis)

    return NormalizedSignals(
        fields=merged,
        extraction_method="+".join(sources) if sources else "manual",
        sources=sources,
        gps_analysis=gps_analysis,
        gps_trace=gps_trace,
        screenshot_used=screenshot is not None,
        notification_text=notification_text,
    )
