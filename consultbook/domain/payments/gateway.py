"""Dodo Payments gateway - checkout creation and payment lookups"""

import asyncio
import logging
from typing import Optional

from dodopayments import APIError, AsyncDodoPayments  # type: ignore

from ...config import (
    DODO_ADHOC_PRODUCT_ID,
    DODO_PAYMENTS_API_KEY,
    DODO_PAYMENTS_ENVIRONMENT,
    PAYMENT_GATEWAY_TIMEOUT_SECONDS,
)
from ...errors import ExternalDependencyError

logger = logging.getLogger(__name__)


def normalize_dodo_environment(env: Optional[str]) -> str:
    """Normalize Dodo environment value to expected format"""
    value = (env or "test_mode").strip().lower()
    if value in {"live", "production", "prod"}:
        return "live_mode"
    if value in {"test", "sandbox", "staging", "dev", "development"}:
        return "test_mode"
    if value in {"test_mode", "live_mode"}:
        return value
    logger.warning(f"Unknown DODO environment '{env}', defaulting to test_mode")
    return "test_mode"


def to_lowest_unit(amount: float) -> int:
    """Major units to the gateway's lowest currency unit (e.g. rupees to paise)"""
    return int(round(amount * 100))


def _field(obj, name: str):
    """SDK responses are models; webhook payloads and test doubles are dicts"""
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class DodoPaymentsGateway:
    """Gateway client; every call is bounded by PAYMENT_GATEWAY_TIMEOUT_SECONDS"""

    def __init__(self, client=None, timeout: float = PAYMENT_GATEWAY_TIMEOUT_SECONDS):
        self.environment = normalize_dodo_environment(DODO_PAYMENTS_ENVIRONMENT)
        self.timeout = timeout
        self.client = client

        if self.client is None:
            if not DODO_PAYMENTS_API_KEY:
                logger.warning("DODO_PAYMENTS_API_KEY not set; payment endpoints will fail until configured")
            else:
                self.client = AsyncDodoPayments(bearer_token=DODO_PAYMENTS_API_KEY, environment=self.environment)
                logger.info(f"Dodo Payments client initialized (env={self.environment})")

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"❌ Dodo {operation} timed out after {self.timeout}s")
            raise ExternalDependencyError(f"Payment gateway timed out during {operation}", code="gateway_timeout") from e
        except APIError as e:
            logger.error(f"❌ Dodo {operation} failed: {e}")
            raise ExternalDependencyError(f"Payment gateway error during {operation}", code="gateway_error") from e

    async def create_checkout(
        self,
        amount: float,
        reference: str,
        return_url: str,
        metadata: Optional[dict] = None,
        customer: Optional[dict] = None,
    ) -> dict:
        """Checkout session for the ad-hoc product with a dynamic amount; returns session id and URL"""
        if not self.client:
            raise ExternalDependencyError("Payment system not configured", code="gateway_unavailable")
        if not DODO_ADHOC_PRODUCT_ID:
            raise ExternalDependencyError("Adhoc product not configured", code="gateway_unavailable")

        session_data = {
            "product_cart": [
                {
                    "product_id": DODO_ADHOC_PRODUCT_ID,
                    "quantity": 1,
                    # Dynamic amount in lowest currency unit
                    "amount": to_lowest_unit(amount),
                }
            ],
            "metadata": {**(metadata or {}), "payment_ref": reference},
            "return_url": return_url,
        }
        if customer:
            session_data["customer"] = customer

        logger.info(f"Creating checkout session for payment_ref={reference} amount={amount}")
        session = await self._call("checkout creation", self.client.checkout_sessions.create(**session_data))

        session_id = _field(session, "session_id")
        checkout_url = _field(session, "checkout_url")
        if not session_id or not checkout_url:
            raise ExternalDependencyError("Payment gateway returned an incomplete checkout session", code="gateway_error")
        return {"session_id": session_id, "checkout_url": checkout_url}

    async def retrieve_payment(self, payment_id: str) -> dict:
        """Current state of a payment as the gateway reports it"""
        if not self.client:
            raise ExternalDependencyError("Payment system not configured", code="gateway_unavailable")

        payment = await self._call("payment lookup", self.client.payments.retrieve(payment_id))
        status = _field(payment, "status")
        return {
            "payment_id": _field(payment, "payment_id") or payment_id,
            "status": getattr(status, "value", status),
            "metadata": _field(payment, "metadata") or {},
        }


_gateway: Optional[DodoPaymentsGateway] = None


def get_payment_gateway() -> DodoPaymentsGateway:
    """Process-wide gateway (FastAPI dependency; overridden in tests)"""
    global _gateway
    if _gateway is None:
        _gateway = DodoPaymentsGateway()
    return _gateway
