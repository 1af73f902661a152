"""Notification outbox - persisted facts and their dispatch to the notification service"""

import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import (
    NOTIFICATION_BATCH_SIZE,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_SERVICE_TOKEN,
    NOTIFICATION_SERVICE_URL,
)
from ...models_payment import NotificationEvent

logger = logging.getLogger(__name__)

# A claimed row whose dispatcher died is retried after this long
CLAIM_TIMEOUT = timedelta(minutes=5)


def emit(
    db: Session,
    kind: str,
    audience: str,
    recipient_id: str,
    dedupe_key: str,
    appointment_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    payload: Optional[dict] = None,
) -> Optional[NotificationEvent]:
    """
    Stage a notification fact in the caller's transaction.

    Returns None when a fact with the same dedupe_key already exists. The row is
    flushed (not committed) so later emits in the same transaction see it.
    """
    existing = db.query(NotificationEvent.id).filter(NotificationEvent.dedupe_key == dedupe_key).first()
    if existing:
        logger.debug(f"Skipping duplicate notification {dedupe_key}")
        return None

    event = NotificationEvent(
        kind=kind,
        audience=audience,
        recipient_id=recipient_id,
        appointment_id=appointment_id,
        subscription_id=subscription_id,
        payload=payload or {},
        dedupe_key=dedupe_key,
    )
    db.add(event)
    db.flush()
    return event


def appointment_payload(appointment) -> dict:
    """Fields the notification service needs to render an appointment message"""
    day = appointment.effective_date
    return {
        "appointment_id": appointment.id,
        "client_id": appointment.client_id,
        "provider_id": appointment.provider_id,
        "session_date": day.isoformat() if day else None,
        "start_time": appointment.effective_start_time,
        "end_time": appointment.effective_end_time,
        "consultation_method": appointment.consultation_method,
        "session_format": appointment.session_format,
        "status": appointment.status,
        "channel_name": appointment.channel_name,
    }


def emit_for_both(db: Session, kind: str, appointment, key_suffix: str = "", payload: Optional[dict] = None) -> int:
    """Emit one fact per audience for an appointment; returns how many were new"""
    body = appointment_payload(appointment)
    if payload:
        body.update(payload)

    emitted = 0
    for audience, recipient in (("client", appointment.client_id), ("provider", appointment.provider_id)):
        key = f"{kind}:appointment:{appointment.id}:{audience}{key_suffix}"
        if emit(db, kind, audience, recipient, key, appointment_id=appointment.id, payload=body):
            emitted += 1
    return emitted


def to_message(event: NotificationEvent) -> dict:
    return {
        "id": event.id,
        "kind": event.kind,
        "audience": event.audience,
        "recipient_id": event.recipient_id,
        "appointment_id": event.appointment_id,
        "subscription_id": event.subscription_id,
        "payload": event.payload,
    }


async def dispatch_notifications(
    db: Session, now: datetime, client: Optional[httpx.AsyncClient] = None, batch_size: int = None
) -> dict:
    """
    Deliver undispatched outbox rows to the notification service.

    Each row is claimed with a conditional update before it is sent, so
    concurrent dispatchers never post the same fact twice.
    """
    summary = {"dispatched": 0, "failed": 0, "skipped": 0}

    if not NOTIFICATION_SERVICE_URL:
        logger.warning("⚠️ NOTIFICATION_SERVICE_URL not configured - leaving outbox untouched")
        return summary

    stale_claim = now - CLAIM_TIMEOUT
    candidates = (
        db.query(NotificationEvent.id)
        .filter(
            NotificationEvent.dispatched_at.is_(None),
            NotificationEvent.attempts < NOTIFICATION_MAX_ATTEMPTS,
            or_(NotificationEvent.claimed_at.is_(None), NotificationEvent.claimed_at < stale_claim),
        )
        .order_by(NotificationEvent.id)
        .limit(batch_size or NOTIFICATION_BATCH_SIZE)
        .all()
    )

    headers = {"Content-Type": "application/json"}
    if NOTIFICATION_SERVICE_TOKEN:
        headers["Authorization"] = f"Bearer {NOTIFICATION_SERVICE_TOKEN}"

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=10.0)

    try:
        for (event_id,) in candidates:
            claimed = (
                db.query(NotificationEvent)
                .filter(
                    NotificationEvent.id == event_id,
                    NotificationEvent.dispatched_at.is_(None),
                    or_(NotificationEvent.claimed_at.is_(None), NotificationEvent.claimed_at < stale_claim),
                )
                .update({"claimed_at": now}, synchronize_session=False)
            )
            db.commit()
            if claimed != 1:
                summary["skipped"] += 1
                continue

            event = db.query(NotificationEvent).filter(NotificationEvent.id == event_id).first()
            try:
                response = await client.post(NOTIFICATION_SERVICE_URL, json=to_message(event), headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as e:
                event.attempts += 1
                event.last_error = str(e)[:1000]
                event.claimed_at = None
                db.commit()
                summary["failed"] += 1
                logger.warning(f"⚠️ Notification {event_id} delivery failed (attempt {event.attempts}): {e}")
                continue

            event.attempts += 1
            event.dispatched_at = now
            event.last_error = None
            db.commit()
            summary["dispatched"] += 1
    finally:
        if owns_client:
            await client.aclose()

    if summary["dispatched"] or summary["failed"]:
        logger.info(f"✅ Notification dispatch: {summary}")
    return summary
