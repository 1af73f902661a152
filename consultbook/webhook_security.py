"""
Webhook Security Module

Signature verification for the payment gateway's Standard Webhooks deliveries:
- Constant-time signature comparison
- Timestamp validation (rejects replays)
- Raw body returned alongside the verdict so the caller parses exactly what was signed
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def extract_svix_signing_key(secret: str) -> bytes:
    """
    Extract Standard Webhooks signing key bytes from a "whsec_" style secret.

    The HMAC key is the base64-decoded part after "whsec_". Secrets that are not
    valid base64 are used as raw UTF-8 bytes.
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:])
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: float = None) -> bool:
    """True when the webhook timestamp is within max_age seconds of now"""
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    age = abs(int(now if now is not None else time.time()) - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def compute_standard_signature(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    """Base64 HMAC-SHA256 over webhook-id.webhook-timestamp.payload"""
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), raw_body])
    return base64.b64encode(
        hmac.new(extract_svix_signing_key(secret), signed_message, hashlib.sha256).digest()
    ).decode("utf-8")


def check_standard_signature(
    secret: str, webhook_id: str, timestamp: str, signature_header: str, raw_body: bytes
) -> None:
    """
    Raise WebhookSignatureError unless one of the "v1,<sig>" entries matches.

    The header may carry several space-separated signatures during secret rotation.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature")
    if not verify_timestamp(timestamp):
        raise WebhookSignatureError("Webhook timestamp expired or invalid")

    expected = compute_standard_signature(secret, webhook_id, timestamp, raw_body)
    for entry in signature_header.split():
        version, _, received = entry.partition(",")
        if version == "v1" and constant_time_compare(expected, received):
            return

    raise WebhookSignatureError("Invalid webhook signature")


async def verify_dodo_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a Dodo Payments webhook (Standard Webhooks).

    Args:
        request: FastAPI request object
        secret: Webhook secret from the Dodo dashboard
        raise_on_failure: If True, raises HTTPException(401) on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    # Raw body before any parsing - the signature covers these exact bytes
    raw_body = await request.body()

    signature_header = request.headers.get("webhook-signature", "")
    timestamp = request.headers.get("webhook-timestamp", "")
    webhook_id = request.headers.get("webhook-id", "")

    logger.info(f"📥 Dodo webhook received: id={webhook_id or 'unknown'}")

    try:
        check_standard_signature(secret, webhook_id, timestamp, signature_header, raw_body)
    except WebhookSignatureError as e:
        logger.error(f"❌ Dodo webhook rejected ({webhook_id or 'unknown'}): {e}")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail=str(e)) from e
        return False, raw_body

    logger.info(f"✅ Dodo webhook signature verified successfully: {webhook_id}")
    return True, raw_body


def create_webhook_headers(secret: str, payload: bytes, webhook_id: str = "msg_test", timestamp: int = None) -> dict:
    """Build signed Standard Webhooks headers (for testing or replaying deliveries)"""
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = compute_standard_signature(secret, webhook_id, ts, payload)
    return {"webhook-id": webhook_id, "webhook-timestamp": ts, "webhook-signature": f"v1,{signature}"}
