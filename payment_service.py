import hashlib
import hmac
import secrets
import time
from typing import Any, Dict, Optional

import httpx

from config import PAYSTACK_BASE_URL, PAYSTACK_SECRET_KEY, PAYSTACK_TIMEOUT_SECONDS
from errors import PaymentError
from logger import setup_logger
from models.payment_models import GatewayVerification

logger = setup_logger(__name__)

if not PAYSTACK_SECRET_KEY:
    logger.warning("PAYSTACK_SECRET_KEY not set; gateway payments will be rejected")


def generate_reference(order_id: str) -> str:
    """Unique gateway reference for one commitment fee attempt"""
    return f"SWAP_FEE_{order_id}_{int(time.time() * 1000)}_{secrets.token_hex(3).upper()}"


class PaystackClient:
    """Thin async client for the Paystack transaction API.

    Amounts are passed in minor units (kobo / cents), which is what Paystack
    expects on the wire.
    """

    def __init__(self, secret_key: str = PAYSTACK_SECRET_KEY, base_url: str = PAYSTACK_BASE_URL,
                 timeout: float = PAYSTACK_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.secret_key = secret_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self.transport) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Paystack %s %s failed: %s", method, path, e)
            raise PaymentError("Payment provider is unavailable, please retry") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Payment provider returned {response.status_code}"
            logger.warning("Paystack %s %s rejected: %s", method, path, message)
            raise PaymentError(message)
        return body.get("data") or {}

    async def initialize_payment(self, email: str, amount_minor: int, reference: str,
                                 callback_url: Optional[str] = None,
                                 metadata: Optional[Dict[str, Any]] = None) -> str:
        """Start a transaction and return the authorization URL the payer is sent to."""
        payload = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url
        data = await self._request("POST", "/transaction/initialize", json=payload)
        authorization_url = data.get("authorization_url")
        if not authorization_url:
            raise PaymentError("Payment provider did not return an authorization URL")
        return authorization_url

    async def verify_payment(self, reference: str) -> GatewayVerification:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        return GatewayVerification(
            reference=data.get("reference", reference),
            status=data.get("status", "unknown"),
            amount_minor=int(data.get("amount") or 0),
            currency=data.get("currency"),
            paid_at=data.get("paid_at"),
        )

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode(), payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
