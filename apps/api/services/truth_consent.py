"""
Truth Consent Ledger

Per-user grant for each signal-collection capability:
    screenshot_capture, notification_parsing, gps_tracking, post_ride_confirmation

- check_consent(db, user_id)          -> {"has_consent": bool}
- require_consent(db, user_id)        -> TruthConsent (raises ConsentRequiredError)
- grant_consent(db, user_id, ...)     upsert, status=granted
- revoke_consent(db, user_id, ...)    status=revoked, observations kept
- delete_user_data(db, user_id)       cascade: scores -> signals -> rides -> consent

Every grant/revoke/delete writes to truth_consent_audit_log, even when the
action is idempotent. delete_user_data is one transaction: any failure rolls
back the whole cascade.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import ConsentRequiredError
from models import TruthConsent, TruthConsentAuditLog, TruthRide, TruthScore, TruthSignal

logger = logging.getLogger(__name__)

STATUS_GRANTED = "granted"
STATUS_REVOKED = "revoked"

CAPABILITIES = (
    "screenshot_capture",
    "notification_parsing",
    "gps_tracking",
    "post_ride_confirmation",
)


def get_active_consent(db: Session, user_id: UUID) -> Optional[TruthConsent]:
    return (
        db.query(TruthConsent)
        .filter(TruthConsent.user_id == user_id, TruthConsent.status == STATUS_GRANTED)
        .first()
    )


def check_consent(db: Session, user_id: UUID) -> Dict[str, bool]:
    return {"has_consent": get_active_consent(db, user_id) is not None}


def require_consent(db: Session, user_id: UUID) -> TruthConsent:
    """Gate for every signal-ingesting operation. Runs before any write."""
    consent = get_active_consent(db, user_id)
    if consent is None:
        logger.info(f"Truth submission refused: no active consent for user={user_id}")
        raise ConsentRequiredError()
    return consent


def get_consent(db: Session, user_id: UUID) -> Optional[TruthConsent]:
    """The user's consent row regardless of status."""
    return db.query(TruthConsent).filter(TruthConsent.user_id == user_id).first()


def grant_consent(
    db: Session,
    user_id: UUID,
    screenshot_capture: bool = False,
    notification_parsing: bool = False,
    gps_tracking: bool = False,
    post_ride_confirmation: bool = True,
    source: str = "api",
) -> TruthConsent:
    """
    Grant (or re-grant) consent with the given capability set.

    Existing rows are updated in place, so a user always has at most one
    consent record. granted_at is reset and revoked_at cleared.
    """
    now = datetime.now(timezone.utc)
    capabilities = {
        "screenshot_capture": screenshot_capture,
        "notification_parsing": notification_parsing,
        "gps_tracking": gps_tracking,
        "post_ride_confirmation": post_ride_confirmation,
    }

    consent = get_consent(db, user_id)
    if consent is None:
        consent = TruthConsent(user_id=user_id)
        db.add(consent)

    for name, value in capabilities.items():
        setattr(consent, name, value)
    consent.status = STATUS_GRANTED
    consent.granted_at = now
    consent.revoked_at = None
    consent.updated_at = now

    _write_audit_log(db, user_id, STATUS_GRANTED, capabilities, source)
    db.commit()
    logger.info(f"Truth consent granted: user={user_id} source={source} capabilities={capabilities}")
    return consent


def revoke_consent(db: Session, user_id: UUID, source: str = "api") -> Optional[TruthConsent]:
    """
    Revoke consent. New submissions are refused immediately; existing
    observations are kept until the user asks for deletion.
    """
    now = datetime.now(timezone.utc)
    consent = get_consent(db, user_id)
    if consent is not None:
        consent.status = STATUS_REVOKED
        consent.revoked_at = now
        consent.updated_at = now

    _write_audit_log(db, user_id, STATUS_REVOKED, None, source)
    db.commit()
    logger.info(f"Truth consent revoked: user={user_id} source={source}")
    return consent


def delete_user_data(db: Session, user_id: UUID, now: Optional[datetime] = None) -> int:
    """
    Remove every observation the user submitted, with scores and signal rows,
    then the consent record itself. Aggregation contexts the user contributed
    to are recomputed in the same transaction.

    Returns the number of observations deleted.
    """
    from services.truth_aggregation import refresh_context_caches

    try:
        rides = db.query(TruthRide).filter(TruthRide.user_id == user_id).all()
        ride_ids = [r.id for r in rides]
        contexts: Set[Tuple[UUID, str, Optional[str], Optional[str]]] = {
            (r.provider_id, r.city_name, r.time_block, r.route_type) for r in rides
        }

        if ride_ids:
            db.query(TruthScore).filter(TruthScore.truth_ride_id.in_(ride_ids)).delete(synchronize_session=False)
            db.query(TruthSignal).filter(TruthSignal.truth_ride_id.in_(ride_ids)).delete(synchronize_session=False)
            db.query(TruthRide).filter(TruthRide.id.in_(ride_ids)).delete(synchronize_session=False)
        db.query(TruthConsent).filter(TruthConsent.user_id == user_id).delete(synchronize_session=False)
        db.flush()
        db.expire_all()

        for provider_id, city_name, time_block, route_type in contexts:
            refresh_context_caches(db, provider_id, city_name, time_block, route_type, now=now)

        _write_audit_log(db, user_id, "data_deleted", {"observations": len(ride_ids)}, "api")
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(f"Truth data deletion failed for user={user_id}; rolled back")
        raise

    logger.info(f"Truth data deleted: user={user_id} observations={len(ride_ids)} contexts={len(contexts)}")
    return len(ride_ids)


def _write_audit_log(
    db: Session,
    user_id: UUID,
    action: str,
    capabilities: Optional[dict],
    source: str,
) -> None:
    db.add(TruthConsentAuditLog(
        user_id=user_id,
        action=action,
        capabilities=capabilities,
        source=source,
    ))
