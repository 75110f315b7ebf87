"""Converges local SubscriptionRecords to the billing provider's view.

Every handled event is read as a full snapshot of what the provider knows
about one subscription. Records are upserted by ``user_id`` under a per-user
lock, so redelivered events are idempotent and concurrent events for the same
user cannot lose each other's writes. Events are not ordered against each
other: a stale snapshot that still describes a legal transition is applied
(last write wins). Illegal transitions, such as leaving ``canceled`` for the
same subscription, are dropped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from cloudbox.core.exceptions import InvalidEvent, InvalidInput, MetadataWriteFailed, ServiceUnavailable, UnresolvedUser
from cloudbox.core.locks import UserLockRegistry
from cloudbox.core.metrics import MetricsStore, metrics as default_metrics
from cloudbox.metadata import SUBSCRIPTIONS, MetadataStoreError, MetadataStoreUnavailable, SqlMetadataStore
from cloudbox.models import PlanId, SubscriptionRecord, SubscriptionStatus, utcnow
from cloudbox.services.billing import BillingEvent, PlanPriceTable

logger = logging.getLogger("cloudbox.reconciler")

Status = SubscriptionStatus

# Provider subscription states -> local states.
STATUS_MAP = {
    "active": Status.ACTIVE,
    "trialing": Status.TRIALING,
    "past_due": Status.PAST_DUE,
    "unpaid": Status.PAST_DUE,
    "paused": Status.PAST_DUE,
    "canceled": Status.CANCELED,
    "incomplete": Status.INCOMPLETE,
    "incomplete_expired": Status.CANCELED,
}

ALLOWED_TRANSITIONS = {
    None: set(Status),
    Status.INCOMPLETE: {Status.TRIALING, Status.ACTIVE, Status.PAST_DUE, Status.CANCELED},
    Status.TRIALING: {Status.ACTIVE, Status.PAST_DUE, Status.CANCELED},
    Status.ACTIVE: {Status.PAST_DUE, Status.CANCELED},
    Status.PAST_DUE: {Status.ACTIVE, Status.CANCELED},
    Status.CANCELED: set(),
}

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.payment_succeeded"
INVOICE_FAILED = "invoice.payment_failed"

TRIAL_DAYS = 14


def can_transition(current: Optional[str], target: str) -> bool:
    current_status = Status(current) if current else None
    target_status = Status(target)
    return current_status == target_status or target_status in ALLOWED_TRANSITIONS[current_status]


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    event_id: str
    event_type: str
    outcome: ReconcileOutcome
    user_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class _Ignore:
    reason: str


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    customer_id: Optional[str]
    status: Status
    price_id: Optional[str]
    metadata: dict
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    cancel_at_period_end: bool

    @property
    def has_trial(self) -> bool:
        return self.trial_start is not None and self.trial_end is not None


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        raise InvalidEvent(f"Invalid timestamp: {value!r}")


def _ref_id(value: Any) -> Optional[str]:
    # Provider references arrive either as an id string or as an expanded object.
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items and isinstance(items[0], dict) else {}


def snapshot_from_subscription(obj: dict) -> SubscriptionSnapshot:
    subscription_id = obj.get("id")
    if not subscription_id:
        raise InvalidEvent("Subscription object has no id")
    status = STATUS_MAP.get(obj.get("status") or "")
    if status is None:
        raise InvalidEvent(f"Unknown subscription status: {obj.get('status')!r}")
    item = _first_item(obj)
    price_id = _ref_id(item.get("price")) or _ref_id(obj.get("plan"))
    return SubscriptionSnapshot(
        subscription_id=subscription_id,
        customer_id=_ref_id(obj.get("customer")),
        status=status,
        price_id=price_id,
        metadata=dict(obj.get("metadata") or {}),
        # Newer API versions only carry the period on the subscription item.
        period_start=_ts(obj.get("current_period_start") or item.get("current_period_start")),
        period_end=_ts(obj.get("current_period_end") or item.get("current_period_end")),
        trial_start=_ts(obj.get("trial_start")),
        trial_end=_ts(obj.get("trial_end")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
    )


def _period_fields(snapshot: SubscriptionSnapshot, current: Optional[SubscriptionRecord]) -> dict:
    """Period and trial fields, only when they differ from what is stored."""
    fields = {
        "current_period_start": snapshot.period_start,
        "current_period_end": snapshot.period_end,
        "is_trial": snapshot.has_trial,
        "trial_start": snapshot.trial_start if snapshot.has_trial else None,
        "trial_end": snapshot.trial_end if snapshot.has_trial else None,
    }
    if current is None:
        return fields
    if all(getattr(current, key) == value for key, value in fields.items()):
        return {}
    return fields


class SubscriptionReconciler:
    def __init__(
        self,
        metadata_store: SqlMetadataStore,
        prices: PlanPriceTable,
        locks: UserLockRegistry,
        metrics: MetricsStore = default_metrics,
    ) -> None:
        self.store = metadata_store
        self.prices = prices
        self.locks = locks
        self.metrics = metrics
        self._handlers: dict[str, Callable[[BillingEvent], ReconcileResult]] = {
            CHECKOUT_COMPLETED: self._checkout_completed,
            SUBSCRIPTION_CREATED: self._subscription_changed,
            SUBSCRIPTION_UPDATED: self._subscription_changed,
            SUBSCRIPTION_DELETED: self._subscription_deleted,
            INVOICE_PAID: self._invoice_paid,
            INVOICE_FAILED: self._invoice_failed,
        }

    def reconcile(self, event: BillingEvent) -> ReconcileResult:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("event=webhook_unhandled type=%s id=%s", event.type, event.id)
            return self._finish(event, ReconcileResult(event.id, event.type, ReconcileOutcome.IGNORED, reason="unhandled event type"))
        try:
            result = handler(event)
        except MetadataStoreUnavailable as exc:
            raise ServiceUnavailable("Subscription store unavailable") from exc
        except MetadataStoreError as exc:
            raise MetadataWriteFailed(f"Subscription store failure: {exc}") from exc
        return self._finish(event, result)

    def _finish(self, event: BillingEvent, result: ReconcileResult) -> ReconcileResult:
        if result.outcome is ReconcileOutcome.IGNORED:
            self.metrics.increment("webhook_ignored")
            logger.warning(
                "event=webhook_ignored type=%s id=%s user_id=%s reason=%s",
                event.type,
                event.id,
                result.user_id,
                result.reason,
            )
        else:
            self.metrics.increment("webhook_applied")
            logger.info(
                "event=webhook_reconciled type=%s id=%s user_id=%s outcome=%s status=%s",
                event.type,
                event.id,
                result.user_id,
                result.outcome.value,
                result.status,
            )
        return result

    # -- resolution -------------------------------------------------------

    def _find_one(self, **filters: Any) -> Optional[SubscriptionRecord]:
        matches = self.store.query_documents(SUBSCRIPTIONS, **filters)
        return matches[0] if len(matches) == 1 else None

    def _resolve_user(
        self,
        metadata: dict,
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> str:
        user_id = metadata.get("userId")
        if user_id:
            return str(user_id)
        for key, value in (("provider_subscription_id", subscription_id), ("provider_customer_id", customer_id)):
            if value:
                record = self._find_one(**{key: value})
                if record is not None:
                    return record.user_id
        raise UnresolvedUser(f"No user could be resolved for subscription {subscription_id or '<none>'}")

    def _resolve_plan(self, price_id: Optional[str], metadata: dict, fallback: Optional[str] = None) -> Optional[str]:
        plan = self.prices.plan_for_price(price_id)
        if plan is not None:
            return plan.value
        try:
            return PlanId(metadata.get("planId")).value
        except ValueError:
            return fallback

    # -- write path -------------------------------------------------------

    def _apply(
        self,
        event: BillingEvent,
        user_id: str,
        decide: Callable[[Optional[SubscriptionRecord]], dict | _Ignore],
    ) -> ReconcileResult:
        with self.locks.hold(user_id):
            current = self.store.get_document(SUBSCRIPTIONS, user_id)
            decision = decide(current)
            if isinstance(decision, _Ignore):
                return ReconcileResult(
                    event.id,
                    event.type,
                    ReconcileOutcome.IGNORED,
                    user_id=user_id,
                    status=current.status if current else None,
                    reason=decision.reason,
                )
            changes = {
                key: value
                for key, value in decision.items()
                if current is None or getattr(current, key) != value
            }
            if not changes:
                return ReconcileResult(event.id, event.type, ReconcileOutcome.UNCHANGED, user_id, current.status)
            now = utcnow()
            changes["updated_at"] = now
            if current is None:
                changes["created_at"] = now
            record = self.store.upsert_document(SUBSCRIPTIONS, user_id, changes)
            return ReconcileResult(event.id, event.type, ReconcileOutcome.APPLIED, user_id, record.status)

    # -- handlers ---------------------------------------------------------

    def _checkout_completed(self, event: BillingEvent) -> ReconcileResult:
        session = event.data_object
        if session.get("mode") not in (None, "subscription"):
            return ReconcileResult(event.id, event.type, ReconcileOutcome.IGNORED, reason="not a subscription checkout")
        metadata = dict(session.get("metadata") or {})
        user_id = metadata.get("userId") or session.get("client_reference_id")
        if not user_id:
            raise UnresolvedUser(f"Checkout session {session.get('id')} carries no user id")

        subscription = session.get("subscription")
        snapshot = snapshot_from_subscription(subscription) if isinstance(subscription, dict) else None
        subscription_id = snapshot.subscription_id if snapshot else _ref_id(subscription)
        if not subscription_id:
            raise InvalidEvent(f"Checkout session {session.get('id')} has no subscription")
        plan_id = self._resolve_plan(snapshot.price_id if snapshot else None, metadata)
        if plan_id is None:
            raise InvalidEvent(f"Checkout session {session.get('id')} has no resolvable plan")

        trial = snapshot is not None and (snapshot.has_trial or snapshot.status is Status.TRIALING)
        status = Status.TRIALING if trial else Status.ACTIVE
        customer_id = _ref_id(session.get("customer")) or (snapshot.customer_id if snapshot else None)

        def decide(current: Optional[SubscriptionRecord]) -> dict | _Ignore:
            same_instance = current is not None and current.provider_subscription_id == subscription_id
            fields = {
                "plan_id": plan_id,
                "provider_subscription_id": subscription_id,
                "provider_customer_id": customer_id or (current.provider_customer_id if current else None),
            }
            if snapshot is None and same_instance:
                # A bare subscription id says nothing about the current state;
                # the subscription and invoice events already recorded it.
                return fields
            if same_instance and not can_transition(current.status, status):
                return _Ignore(f"illegal transition {current.status} -> {status.value}")
            fields["status"] = status.value
            if snapshot is not None:
                fields.update(_period_fields(snapshot, current if same_instance else None))
                fields["cancel_at_period_end"] = snapshot.cancel_at_period_end
            else:
                fields.update(
                    current_period_start=_ts(event.created),
                    current_period_end=None,
                    is_trial=False,
                    trial_start=None,
                    trial_end=None,
                    cancel_at_period_end=False,
                )
            return fields

        return self._apply(event, str(user_id), decide)

    def _subscription_changed(self, event: BillingEvent) -> ReconcileResult:
        snapshot = snapshot_from_subscription(event.data_object)
        user_id = self._resolve_user(snapshot.metadata, snapshot.subscription_id, snapshot.customer_id)
        starts_instance = event.type == SUBSCRIPTION_CREATED

        def decide(current: Optional[SubscriptionRecord]) -> dict | _Ignore:
            same_instance = current is not None and current.provider_subscription_id in (
                None,
                snapshot.subscription_id,
            )
            if current is not None and not same_instance and not starts_instance:
                return _Ignore(
                    f"update for subscription {snapshot.subscription_id} "
                    f"but record tracks {current.provider_subscription_id}"
                )
            if same_instance and not can_transition(current.status, snapshot.status):
                return _Ignore(f"illegal transition {current.status} -> {snapshot.status.value}")

            plan_id = self._resolve_plan(
                snapshot.price_id,
                snapshot.metadata,
                fallback=current.plan_id if same_instance else None,
            )
            if plan_id is None:
                raise InvalidEvent(f"Subscription {snapshot.subscription_id} has no resolvable plan")
            fields = {
                "plan_id": plan_id,
                "status": snapshot.status.value,
                "cancel_at_period_end": (
                    False if snapshot.status is Status.CANCELED else snapshot.cancel_at_period_end
                ),
                "provider_subscription_id": snapshot.subscription_id,
                "provider_customer_id": snapshot.customer_id
                or (current.provider_customer_id if same_instance else None),
            }
            fields.update(_period_fields(snapshot, current if same_instance else None))
            return fields

        return self._apply(event, user_id, decide)

    def _subscription_deleted(self, event: BillingEvent) -> ReconcileResult:
        obj = event.data_object
        subscription_id = obj.get("id")
        if not subscription_id:
            raise InvalidEvent("Subscription object has no id")
        user_id = self._resolve_user(dict(obj.get("metadata") or {}), subscription_id, _ref_id(obj.get("customer")))

        def decide(current: Optional[SubscriptionRecord]) -> dict | _Ignore:
            if current is None:
                return _Ignore("no subscription record to cancel")
            if current.provider_subscription_id not in (None, subscription_id):
                return _Ignore(f"record tracks {current.provider_subscription_id}, not {subscription_id}")
            return {
                "status": Status.CANCELED.value,
                "cancel_at_period_end": False,
                "provider_subscription_id": subscription_id,
            }

        return self._apply(event, user_id, decide)

    def _invoice_target(self, invoice: dict) -> tuple[Optional[str], Optional[datetime], Optional[datetime]]:
        subscription_id = _ref_id(invoice.get("subscription"))
        parent = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription_id = subscription_id or _ref_id(parent.get("subscription"))
        lines = (invoice.get("lines") or {}).get("data") or []
        period = next(
            (line.get("period") for line in lines if isinstance(line, dict) and line.get("period")),
            None,
        ) or {}
        return subscription_id, _ts(period.get("start")), _ts(period.get("end"))

    def _invoice_user(self, invoice: dict, subscription_id: str) -> str:
        record = self._find_one(provider_subscription_id=subscription_id)
        if record is not None:
            return record.user_id
        parent = (invoice.get("parent") or {}).get("subscription_details") or {}
        return self._resolve_user(dict(parent.get("metadata") or {}), None, None)

    def _invoice_paid(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.data_object
        subscription_id, period_start, period_end = self._invoice_target(invoice)
        if not subscription_id:
            return ReconcileResult(event.id, event.type, ReconcileOutcome.IGNORED, reason="invoice has no subscription")
        user_id = self._invoice_user(invoice, subscription_id)

        def decide(current: Optional[SubscriptionRecord]) -> dict | _Ignore:
            if current is None or current.provider_subscription_id != subscription_id:
                return _Ignore(f"no record tracks subscription {subscription_id}")
            if current.status == Status.CANCELED:
                return _Ignore("subscription already canceled")
            fields: dict = {}
            if current.status == Status.PAST_DUE:
                fields["status"] = Status.ACTIVE.value
            if period_start and period_end:
                fields.update(current_period_start=period_start, current_period_end=period_end)
            return fields

        return self._apply(event, user_id, decide)

    def _invoice_failed(self, event: BillingEvent) -> ReconcileResult:
        invoice = event.data_object
        subscription_id, _, _ = self._invoice_target(invoice)
        if not subscription_id:
            return ReconcileResult(event.id, event.type, ReconcileOutcome.IGNORED, reason="invoice has no subscription")
        user_id = self._invoice_user(invoice, subscription_id)

        def decide(current: Optional[SubscriptionRecord]) -> dict | _Ignore:
            if current is None or current.provider_subscription_id != subscription_id:
                return _Ignore(f"no record tracks subscription {subscription_id}")
            if current.status in (Status.ACTIVE, Status.TRIALING):
                return {"status": Status.PAST_DUE.value}
            if current.status == Status.CANCELED:
                return _Ignore("subscription already canceled")
            return {}

        return self._apply(event, user_id, decide)

    # -- manual provisioning ----------------------------------------------

    def start_trial(self, user_id: str, plan_id: str, days: int = TRIAL_DAYS) -> SubscriptionRecord:
        """Provision a provider-less trial; refused while a live subscription exists."""
        try:
            plan = PlanId(plan_id)
        except ValueError:
            raise InvalidInput("Invalid plan")
        try:
            record = self._provision_trial(user_id, plan, days)
        except MetadataStoreUnavailable as exc:
            raise ServiceUnavailable("Subscription store unavailable") from exc
        except MetadataStoreError as exc:
            raise MetadataWriteFailed(f"Subscription store failure: {exc}") from exc
        logger.info("event=trial_started user_id=%s plan_id=%s days=%s", user_id, plan.value, days)
        return record

    def _provision_trial(self, user_id: str, plan: PlanId, days: int) -> SubscriptionRecord:
        with self.locks.hold(user_id):
            current = self.store.get_document(SUBSCRIPTIONS, user_id)
            if current is not None and current.status != Status.CANCELED:
                raise InvalidInput("You already have an active subscription")
            start = utcnow()
            end = start + timedelta(days=days)
            fields = {
                "plan_id": plan.value,
                "status": Status.TRIALING.value,
                "is_trial": True,
                "current_period_start": start,
                "current_period_end": end,
                "trial_start": start,
                "trial_end": end,
                "cancel_at_period_end": False,
                "provider_subscription_id": None,
                "provider_customer_id": current.provider_customer_id if current else None,
                "updated_at": start,
            }
            if current is None:
                fields["created_at"] = start
            return self.store.upsert_document(SUBSCRIPTIONS, user_id, fields)
