"""
Payment gateway client: PayMongo v1 REST API (cards, GCash, GrabPay, Maya in PHP).
Docs: https://developers.paymongo.com/reference
"""
import logging
import uuid
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

EWALLET_SOURCE_TYPES = ("gcash", "grab_pay", "paymaya")


class GatewayError(Exception):
    """The gateway was unreachable or answered with an error payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _centavos(amount: float) -> int:
    return int(round(amount * 100))


def _simulated_id(prefix: str) -> str:
    return f"{prefix}_sim_{uuid.uuid4().hex[:16]}"


class PayMongoGateway:
    """
    Every call returns the `data` object of the PayMongo response ({id, type, attributes}).
    Without PAYMONGO_SECRET_KEY the client runs in simulated mode and never hits the network.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.PAYMONGO_SECRET_KEY
        self.base_url   = (base_url or settings.PAYMONGO_BASE_URL).rstrip("/")
        self.timeout    = timeout or settings.PAYMONGO_TIMEOUT
        self._transport = transport

    @property
    def simulated(self) -> bool:
        return not self.secret_key

    async def _request(self, method: str, path: str, attributes: Optional[dict] = None) -> dict:
        body = {"data": {"attributes": attributes}} if attributes is not None else None
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, json=body)
        except httpx.HTTPError as e:
            logger.error(f"PayMongo network error on {method} {path}: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.is_error:
            errors = payload.get("errors") or [{}]
            detail = errors[0].get("detail") or f"HTTP {resp.status_code}"
            logger.error(f"PayMongo error on {method} {path}: {payload}")
            raise GatewayError(detail, status_code=resp.status_code)
        return payload.get("data", {})

    # ── Payment intents ────────────────────────────────────────────────────
    async def create_payment_intent(
        self, amount: float, currency: str = "PHP", metadata: Optional[dict] = None,
    ) -> dict:
        metadata = metadata or {}
        if self.simulated:
            logger.warning("PayMongo not configured, simulated payment intent")
            intent_id = _simulated_id("pi")
            return {
                "id": intent_id,
                "type": "payment_intent",
                "attributes": {
                    "amount":     _centavos(amount),
                    "currency":   currency,
                    "status":     "awaiting_payment_method",
                    "client_key": f"{intent_id}_client_sim",
                    "metadata":   metadata,
                    "simulated":  True,
                },
            }
        return await self._request("POST", "/payment_intents", {
            "amount":                 _centavos(amount),
            "currency":               currency,
            "payment_method_allowed": ["card", *EWALLET_SOURCE_TYPES],
            "payment_method_options": {"card": {"request_three_d_secure": "automatic"}},
            "description":            f"Payment for Delivery {metadata.get('delivery_id', '')}".strip(),
            "statement_descriptor":   "TRUCKING_SERVICE",
            "metadata":               metadata,
        })

    async def get_payment_intent(self, intent_id: str) -> dict:
        if self.simulated:
            return {
                "id": intent_id,
                "type": "payment_intent",
                "attributes": {"status": "succeeded", "payment_method_type": "card", "simulated": True},
            }
        return await self._request("GET", f"/payment_intents/{intent_id}")

    async def cancel_payment_intent(self, intent_id: str) -> dict:
        """
        PayMongo has no cancel call for intents: an unused intent simply expires.
        A succeeded intent cannot be cancelled.
        """
        if self.simulated:
            return {"id": intent_id, "cancelled": True, "simulated": True}
        intent = await self.get_payment_intent(intent_id)
        status = intent.get("attributes", {}).get("status")
        if status == "succeeded":
            raise GatewayError("Cannot cancel a succeeded payment intent")
        return {"id": intent_id, "cancelled": True, "status": status}

    # ── Sources (e-wallets) ────────────────────────────────────────────────
    async def create_source(
        self, amount: float, source_type: str, redirect: dict, currency: str = "PHP",
    ) -> dict:
        if source_type not in EWALLET_SOURCE_TYPES:
            raise GatewayError(f"Unsupported source type: {source_type}")
        if self.simulated:
            logger.warning("PayMongo not configured, simulated source")
            source_id = _simulated_id("src")
            return {
                "id": source_id,
                "type": "source",
                "attributes": {
                    "amount":   _centavos(amount),
                    "currency": currency,
                    "type":     source_type,
                    "status":   "pending",
                    "redirect": {
                        **redirect,
                        "checkout_url": f"https://pay.example.com/sources/{source_id}",
                    },
                    "simulated": True,
                },
            }
        return await self._request("POST", "/sources", {
            "amount":   _centavos(amount),
            "currency": currency,
            "type":     source_type,
            "redirect": redirect,
        })

    async def get_source(self, source_id: str) -> dict:
        if self.simulated:
            return {"id": source_id, "type": "source", "attributes": {"status": "chargeable", "simulated": True}}
        return await self._request("GET", f"/sources/{source_id}")

    async def create_payment_from_source(
        self, source_id: str, amount: float, currency: str = "PHP", description: str = "E-wallet payment",
    ) -> dict:
        if self.simulated:
            return {
                "id": _simulated_id("pay"),
                "type": "payment",
                "attributes": {"amount": _centavos(amount), "status": "paid", "simulated": True},
            }
        return await self._request("POST", "/payments", {
            "amount":      _centavos(amount),
            "currency":    currency,
            "description": description,
            "source":      {"id": source_id, "type": "source"},
        })

    # ── Links ──────────────────────────────────────────────────────────────
    async def create_link(self, amount: float, description: str, remarks: str = "") -> dict:
        if self.simulated:
            link_id = _simulated_id("link")
            return {
                "id": link_id,
                "type": "link",
                "attributes": {
                    "amount":       _centavos(amount),
                    "checkout_url": f"https://pay.example.com/links/{link_id}",
                    "status":       "unpaid",
                    "simulated":    True,
                },
            }
        return await self._request("POST", "/links", {
            "amount":      _centavos(amount),
            "description": description,
            "remarks":     remarks,
        })
