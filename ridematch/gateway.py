"""Payment provider clients used by settlement."""
from dataclasses import dataclass
from typing import Optional
import logging
import uuid
import httpx

from .config import settings

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    success: bool
    reference: Optional[str] = None
    message: Optional[str] = None


class HttpPaymentGateway:
    """Charges through an external provider: ``POST {base_url}/charges``.

    A transport error, a non-2xx response or a status other than ``succeeded``
    is reported as a failed charge, never raised.
    """
    name = "http"

    def __init__(self, base_url: str, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.PAYMENT_PROVIDER_TIMEOUT_SEC
        self.transport = transport

    async def charge(self, payer_id: int, amount: float, currency: str, description: str,
                     idempotency_key: str = None) -> ChargeResult:
        body = {
            "payer_id": payer_id,
            "amount": round(amount, 2),
            "currency": currency,
            "description": description,
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}/charges", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("charge_failed: payer=%s amount=%s error=%s", payer_id, amount, e)
            return ChargeResult(False, message=f"payment provider unreachable: {e}")

        if resp.status_code >= 300:
            logger.warning("charge_declined: payer=%s amount=%s status_code=%s", payer_id, amount, resp.status_code)
            return ChargeResult(False, message=f"payment provider returned {resp.status_code}")
        try:
            data = resp.json() or {}
        except ValueError:
            return ChargeResult(False, message="payment provider returned a malformed response")
        if data.get("status") != "succeeded":
            return ChargeResult(False, reference=data.get("id"),
                                message=data.get("message") or f"charge {data.get('status')}")
        logger.info("charge_succeeded: payer=%s amount=%s reference=%s", payer_id, amount, data.get("id"))
        return ChargeResult(True, reference=data.get("id"))


class SimulatedPaymentGateway:
    """Always succeeds; used when no provider URL is configured."""
    name = "simulated"

    async def charge(self, payer_id: int, amount: float, currency: str, description: str,
                     idempotency_key: str = None) -> ChargeResult:
        reference = f"sim_{uuid.uuid4().hex[:16]}"
        logger.info("simulate_charge: payer=%s amount=%s %s reference=%s", payer_id, amount, currency, reference)
        return ChargeResult(True, reference=reference)


def get_gateway():
    if settings.PAYMENT_PROVIDER_URL:
        return HttpPaymentGateway(settings.PAYMENT_PROVIDER_URL)
    return SimulatedPaymentGateway()
