from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from cloudbox.api.deps import get_billing_client, get_metadata_store, get_principal, get_reconciler
from cloudbox.config import APP_URL
from cloudbox.core.exceptions import InvalidInput, NotFound, ServiceUnavailable
from cloudbox.metadata import SUBSCRIPTIONS, MetadataStoreError, SqlMetadataStore
from cloudbox.models import BillingCycle, SubscriptionRecord
from cloudbox.services.billing import StripeBillingClient
from cloudbox.services.reconciler import SubscriptionReconciler
from cloudbox.services.sessions import AuthenticatedPrincipal
from cloudbox.services.stats import PLAN_CATALOGUE, effective_plan_id, plan_limits

router = APIRouter()

logger = logging.getLogger("cloudbox.billing")

SIGNATURE_HEADER = "stripe-signature"


class CheckoutRequest(BaseModel):
    planId: Optional[str] = None
    billingCycle: str = BillingCycle.MONTHLY.value
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class PortalRequest(BaseModel):
    returnUrl: Optional[str] = None


class TrialRequest(BaseModel):
    planId: Optional[str] = None


def _load_subscription(store: SqlMetadataStore, user_id: str) -> Optional[SubscriptionRecord]:
    try:
        return store.get_document(SUBSCRIPTIONS, user_id)
    except MetadataStoreError as exc:
        raise ServiceUnavailable("Subscription lookup failed") from exc


@router.post("/api/stripe/create-checkout-session")
def create_checkout_session(
    body: CheckoutRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    client: StripeBillingClient = Depends(get_billing_client),
    store: SqlMetadataStore = Depends(get_metadata_store),
):
    if not body.planId:
        raise InvalidInput("Plan ID is required")
    current = _load_subscription(store, principal.user_id)
    url = client.create_checkout_session(
        principal.user_id,
        body.planId,
        body.billingCycle,
        body.successUrl or f"{APP_URL}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        body.cancelUrl or f"{APP_URL}/pricing?canceled=true",
        customer_id=current.provider_customer_id if current else None,
    )
    return {"success": True, "url": url}


@router.post("/api/stripe/create-portal-session")
def create_portal_session(
    body: Optional[PortalRequest] = None,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    client: StripeBillingClient = Depends(get_billing_client),
    store: SqlMetadataStore = Depends(get_metadata_store),
):
    current = _load_subscription(store, principal.user_id)
    if current is None or not current.provider_customer_id:
        raise NotFound("No billing account found")
    return_url = (body.returnUrl if body else None) or f"{APP_URL}/dashboard"
    return {"success": True, "url": client.create_portal_session(current.provider_customer_id, return_url)}


@router.get("/api/plans")
def list_plans():
    return {"success": True, "plans": [plan.to_public() for plan in PLAN_CATALOGUE.values()]}


@router.get("/api/subscription")
def get_subscription(
    principal: AuthenticatedPrincipal = Depends(get_principal),
    store: SqlMetadataStore = Depends(get_metadata_store),
):
    current = _load_subscription(store, principal.user_id)
    plan = plan_limits(effective_plan_id(current))
    return {
        "success": True,
        "subscription": current.to_public() if current is not None else None,
        "plan": plan.to_public(),
    }


@router.post("/api/subscription/trial")
def start_trial(
    body: TrialRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    if not body.planId:
        raise InvalidInput("Plan ID is required")
    record = reconciler.start_trial(principal.user_id, body.planId)
    return {"success": True, "subscription": record.to_public()}


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    client: StripeBillingClient = Depends(get_billing_client),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    # Any non-2xx answer makes the provider redeliver, so the 200 is only
    # sent once the event has been applied or deliberately ignored.
    payload = await request.body()
    event = client.verify_and_parse_event(payload, request.headers.get(SIGNATURE_HEADER))
    logger.info("event=webhook_received type=%s id=%s", event.type, event.id)
    result = await run_in_threadpool(reconciler.reconcile, event)
    return {"received": True, "outcome": result.outcome.value}
