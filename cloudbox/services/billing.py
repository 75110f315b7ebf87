from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Mapping, Optional

import httpx

from cloudbox.core.exceptions import BillingProviderError, InvalidInput, ServiceUnavailable, SignatureInvalid
from cloudbox.models import BillingCycle, PlanId

logger = logging.getLogger("cloudbox.billing")


@dataclass(frozen=True)
class PlanPriceTable:
    # plan -> provider price id, one table per billing cycle.
    monthly: Mapping[PlanId, str]
    yearly: Mapping[PlanId, str] = field(default_factory=dict)

    def price_for(self, plan_id: str, billing_cycle: str = BillingCycle.MONTHLY) -> Optional[str]:
        try:
            plan = PlanId(plan_id)
            cycle = BillingCycle(billing_cycle)
        except ValueError:
            return None
        table = self.yearly if cycle is BillingCycle.YEARLY else self.monthly
        return table.get(plan) or None

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanId]:
        if not price_id:
            return None
        for table in (self.monthly, self.yearly):
            for plan, candidate in table.items():
                if candidate and candidate == price_id:
                    return PlanId(plan)
        return None


@dataclass(frozen=True)
class BillingEvent:
    id: str
    type: str
    created: int
    data_object: dict[str, Any]


def build_billing_signature(secret: str, timestamp: int | str, payload: bytes) -> str:
    # HMAC SHA256 over "<timestamp>.<raw body>", the provider's signing scheme.
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> tuple[Optional[str], list[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_and_parse_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> BillingEvent:
    if not signature_header:
        raise SignatureInvalid("Missing signature header")
    timestamp, signatures = _parse_signature_header(signature_header)
    if not timestamp or not signatures:
        raise SignatureInvalid("Malformed signature header")
    try:
        issued_at = int(timestamp)
    except ValueError:
        raise SignatureInvalid("Malformed signature timestamp")

    expected = build_billing_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalid()
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - issued_at) > tolerance_seconds:
        raise SignatureInvalid("Signature timestamp outside the tolerance window")

    try:
        body = json.loads(payload)
    except ValueError:
        raise SignatureInvalid("Payload is not valid JSON")
    data_object = (body.get("data") or {}).get("object") if isinstance(body, dict) else None
    if not isinstance(data_object, dict) or not body.get("type"):
        raise SignatureInvalid("Payload is not a billing event")
    return BillingEvent(
        id=str(body.get("id", "")),
        type=str(body["type"]),
        created=int(body.get("created") or issued_at),
        data_object=data_object,
    )


class StripeBillingClient:
    """Hosted checkout and portal sessions over the provider's REST API, plus webhook decoding."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        prices: PlanPriceTable,
        *,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        webhook_tolerance_seconds: int = 300,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.prices = prices
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self._transport = transport

    def _post(self, path: str, form: dict[str, str]) -> dict[str, Any]:
        start = time.monotonic()
        try:
            with httpx.Client(
                base_url=self.api_base,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = client.post(path, data=form)
        except httpx.TimeoutException as exc:
            logger.warning("event=billing_call_timeout path=%s", path)
            raise ServiceUnavailable("Billing provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("event=billing_call_failed path=%s error=%s", path, exc)
            raise BillingProviderError(str(exc)) from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            logger.warning(
                "event=billing_call_rejected path=%s status=%s latency_ms=%.1f",
                path,
                response.status_code,
                latency_ms,
            )
            try:
                message = response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                message = f"Billing provider responded with status {response.status_code}"
            raise BillingProviderError(message)
        logger.info("event=billing_call_ok path=%s latency_ms=%.1f", path, latency_ms)
        return response.json()

    def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
    ) -> str:
        price_id = self.prices.price_for(plan_id, billing_cycle)
        if not price_id:
            raise InvalidInput("Invalid plan ID")
        form = {
            "mode": "subscription",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": "1",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "allow_promotion_codes": "true",
            "billing_address_collection": "required",
        }
        for prefix in ("metadata", "subscription_data[metadata]"):
            form[f"{prefix}[userId]"] = user_id
            form[f"{prefix}[planId]"] = str(PlanId(plan_id).value)
            form[f"{prefix}[billingCycle]"] = str(BillingCycle(billing_cycle).value)
        if customer_id:
            form["customer"] = customer_id
        session = self._post("/v1/checkout/sessions", form)
        logger.info("event=checkout_session_created user_id=%s plan_id=%s cycle=%s", user_id, plan_id, billing_cycle)
        return session["url"]

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = self._post("/v1/billing_portal/sessions", {"customer": customer_id, "return_url": return_url})
        return session["url"]

    def verify_and_parse_event(self, raw_payload: bytes, signature_header: Optional[str]) -> BillingEvent:
        return verify_and_parse_event(
            raw_payload,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        )
