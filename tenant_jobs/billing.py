"""Payment webhook ingestion and subscription reconciliation.

The payment processor delivers events at least once, possibly duplicated and
out of order. Every event is recorded in the ``webhook_events`` ledger in the
same transaction that applies it, so each ``external_event_id`` mutates state
at most once and a redelivery returns the outcome recorded the first time.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import asyncpg
import stripe
from pydantic import BaseModel

from tenant_jobs.cache import CacheLayer
from tenant_jobs.config import TenantJobsConfig
from tenant_jobs.errors import DuplicateEvent, InvalidEvent, InvalidSignature, TransientError
from tenant_jobs.models import Subscription, SubscriptionStatus, WebhookEvent, utcnow
from tenant_jobs.quota import QuotaStore, is_daily
from tenant_jobs.subscriptions import SubscriptionStore

CHECKOUT_COMPLETED = "checkout.completed"
SUBSCRIPTION_UPDATED = "subscription.updated"
SUBSCRIPTION_DELETED = "subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

HANDLED_EVENT_TYPES = frozenset(
    {
        CHECKOUT_COMPLETED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_DELETED,
        INVOICE_PAID,
        INVOICE_PAYMENT_FAILED,
    }
)

# Processor event names mapped to the names the state machine understands
EVENT_TYPE_ALIASES = {
    "checkout.session.completed": CHECKOUT_COMPLETED,
    "customer.subscription.created": SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SUBSCRIPTION_DELETED,
}

PROCESSOR_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Outcomes recorded on the ledger
APPLIED = "applied"
IGNORED_STALE = "ignored_stale"
IGNORED_MISMATCH = "ignored_mismatch"
IGNORED_UNHANDLED = "ignored_unhandled"
IGNORED_UNKNOWN_TENANT = "ignored_unknown_tenant"
IGNORED_TERMINAL = "ignored_terminal"
IGNORED_INCOMPLETE = "ignored_incomplete"

# Not recorded: the transaction rolls back and the processor redelivers
DEFERRED = "deferred"

DEFAULT_PERIOD = timedelta(days=30)

# Cache domains derived from the subscription
BILLING_CACHE_DOMAINS = ("subscription", "plan", "quota")


def sign_payload(raw_body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``raw_body``, as the processor would."""
    if timestamp is None:
        timestamp = int(time.time())
    signature = stripe.WebhookSignature._compute_signature(
        f"{timestamp}.{raw_body.decode('utf-8')}", secret
    )
    return f"t={timestamp},{stripe.WebhookSignature.EXPECTED_SCHEME}={signature}"


def verify_signature(
    raw_body: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
) -> bool:
    """
    Verify a processor signature header over the raw request body.

    Any ``v1`` digest in the header may match; headers signed more than
    ``tolerance`` seconds ago are rejected.
    """
    if not header or not secret:
        return False
    try:
        stripe.WebhookSignature.verify_header(
            raw_body.decode("utf-8"), header, secret, tolerance=tolerance
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError):
        return False
    return True


class PaymentEvent(BaseModel):
    """A processor event reduced to the fields reconciliation needs."""

    id: str
    type: str
    created: datetime
    tenant_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidEvent(f"Invalid timestamp {value!r}") from e


def _subscription_id(value: Any) -> Optional[str]:
    # Expanded objects carry the id inside
    if isinstance(value, dict):
        return value.get("id")
    return value


def parse_event(raw_body: bytes) -> PaymentEvent:
    """
    Parse a processor event body.

    Raises:
        InvalidEvent: If the body is not a JSON event with an id, type and creation time
    """
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidEvent(f"Event body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidEvent("Event body must be a JSON object")

    event_id = data.get("id")
    raw_type = data.get("type")
    if not event_id or not raw_type:
        raise InvalidEvent("Event is missing id or type")
    if data.get("created") is None:
        raise InvalidEvent(f"Event {event_id} is missing its creation time")

    event_type = EVENT_TYPE_ALIASES.get(raw_type, raw_type)
    obj = (data.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    tenant_id = (
        metadata.get("tenant_id")
        or metadata.get("tenantId")
        or obj.get("client_reference_id")
    )
    plan_id = metadata.get("plan_id") or metadata.get("planId")
    if not plan_id:
        plan_id = ((obj.get("plan") or {}).get("metadata") or {}).get("plan_id")

    if event_type in (SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
        external_subscription_id = obj.get("id")
        period_start = _timestamp(obj.get("current_period_start"))
        period_end = _timestamp(obj.get("current_period_end"))
    else:
        external_subscription_id = _subscription_id(obj.get("subscription"))
        period_start = _timestamp(obj.get("period_start"))
        period_end = _timestamp(obj.get("period_end"))

    status = None
    if obj.get("status") in PROCESSOR_STATUSES and event_type == SUBSCRIPTION_UPDATED:
        status = PROCESSOR_STATUSES[obj["status"]]

    return PaymentEvent(
        id=event_id,
        type=event_type,
        created=_timestamp(data["created"]),
        tenant_id=tenant_id,
        external_subscription_id=external_subscription_id,
        plan_id=plan_id,
        status=status,
        period_start=period_start,
        period_end=period_end,
    )


class Transition(BaseModel):
    """Result of applying one event to the current subscription."""

    outcome: str
    subscription: Optional[Subscription] = None
    previous_status: Optional[SubscriptionStatus] = None
    period_advanced: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED


def _applied(
    current: Optional[Subscription], subscription: Subscription
) -> Transition:
    previous_start = current.current_period_start if current else None
    new_start = subscription.current_period_start
    advanced = new_start is not None and (previous_start is None or new_start > previous_start)
    return Transition(
        outcome=APPLIED,
        subscription=subscription,
        previous_status=current.status if current else None,
        period_advanced=advanced,
    )


def _created_from_update(event: PaymentEvent) -> Transition:
    period_start = event.period_start or event.created
    return _applied(
        None,
        Subscription(
            tenant_id=event.tenant_id,
            plan_id=event.plan_id,
            external_subscription_id=event.external_subscription_id,
            status=event.status or SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=event.period_end or period_start + DEFAULT_PERIOD,
            last_event_at=event.created,
            updated_at=event.created,
        ),
    )


def reconcile(current: Optional[Subscription], event: PaymentEvent) -> Transition:
    """
    Compute the subscription state after ``event``.

    Pure: no I/O, no clock. Events older than the last applied one are
    stale and change nothing, so an older ``past_due`` update arriving after
    a newer payment cannot undo it.

    Without a subscription on file only a checkout, or a subscription update
    carrying tenant, plan and subscription id, can create one. Any other
    event is :data:`DEFERRED` until the creating event has been applied.
    """
    if event.type not in HANDLED_EVENT_TYPES:
        return Transition(outcome=IGNORED_UNHANDLED)

    if current and current.last_event_at and event.created < current.last_event_at:
        return Transition(outcome=IGNORED_STALE)

    if event.type == CHECKOUT_COMPLETED:
        tenant_id = event.tenant_id or (current.tenant_id if current else None)
        if not tenant_id:
            return Transition(outcome=IGNORED_UNKNOWN_TENANT)
        plan_id = event.plan_id or (current.plan_id if current else None)
        external_id = event.external_subscription_id or (
            current.external_subscription_id if current else None
        )
        if not plan_id or not external_id:
            return Transition(outcome=IGNORED_INCOMPLETE)
        if (
            current
            and current.status == SubscriptionStatus.CANCELED
            and current.external_subscription_id == external_id
        ):
            # Only a new subscription reactivates a canceled tenant
            return Transition(outcome=IGNORED_TERMINAL, previous_status=current.status)

        period_start = event.period_start or event.created
        period_end = event.period_end or period_start + DEFAULT_PERIOD
        if (
            current
            and current.is_live
            and current.external_subscription_id == external_id
            and current.current_period_start
        ):
            # Checkout for the subscription already on file keeps its period
            period_start = current.current_period_start
            period_end = current.current_period_end or period_end

        return _applied(
            current,
            Subscription(
                tenant_id=tenant_id,
                plan_id=plan_id,
                external_subscription_id=external_id,
                status=event.status or SubscriptionStatus.ACTIVE,
                current_period_start=period_start,
                current_period_end=period_end,
                last_event_at=event.created,
                updated_at=event.created,
            ),
        )

    if current is None:
        if (
            event.type == SUBSCRIPTION_UPDATED
            and event.tenant_id
            and event.plan_id
            and event.external_subscription_id
        ):
            return _created_from_update(event)
        # Arrived ahead of the checkout that creates the subscription
        return Transition(outcome=DEFERRED)

    if (
        event.external_subscription_id
        and event.external_subscription_id != current.external_subscription_id
    ):
        return Transition(outcome=IGNORED_MISMATCH)

    if current.status == SubscriptionStatus.CANCELED:
        return Transition(outcome=IGNORED_TERMINAL, previous_status=current.status)

    updates: dict[str, Any] = {"last_event_at": event.created, "updated_at": event.created}

    if event.type == SUBSCRIPTION_UPDATED:
        if event.status is not None:
            updates["status"] = event.status
        if event.plan_id:
            updates["plan_id"] = event.plan_id
    elif event.type == INVOICE_PAID:
        updates["status"] = SubscriptionStatus.ACTIVE
    elif event.type == INVOICE_PAYMENT_FAILED:
        updates["status"] = SubscriptionStatus.PAST_DUE
    elif event.type == SUBSCRIPTION_DELETED:
        updates["status"] = SubscriptionStatus.CANCELED

    if event.type != SUBSCRIPTION_DELETED and event.period_start and event.period_end:
        updates["current_period_start"] = event.period_start
        updates["current_period_end"] = event.period_end

    return _applied(current, current.model_copy(update=updates))


class WebhookEventStore:
    """The idempotency ledger."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def claim(
        self, conn: asyncpg.Connection, event: PaymentEvent, received_at: datetime
    ) -> bool:
        """Insert the ledger row; False when the event was already recorded."""
        inserted = await conn.fetchval(
            """
            INSERT INTO webhook_events (external_event_id, type, tenant_id, received_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (external_event_id) DO NOTHING
            RETURNING external_event_id
            """,
            event.id,
            event.type,
            event.tenant_id,
            received_at,
        )
        return inserted is not None

    async def recorded_outcome(
        self, conn: asyncpg.Connection, external_event_id: str
    ) -> tuple[Optional[str], Optional[str]]:
        """Outcome and tenant recorded for an event, ``(None, None)`` when unknown."""
        row = await conn.fetchrow(
            "SELECT outcome, tenant_id FROM webhook_events WHERE external_event_id = $1",
            external_event_id,
        )
        if row is None:
            return None, None
        return row["outcome"], row["tenant_id"]

    async def record_outcome(
        self,
        conn: asyncpg.Connection,
        external_event_id: str,
        tenant_id: Optional[str],
        outcome: str,
        processed_at: datetime,
    ) -> None:
        await conn.execute(
            """
            UPDATE webhook_events
            SET tenant_id = COALESCE($2, tenant_id), outcome = $3, processed_at = $4
            WHERE external_event_id = $1
            """,
            external_event_id,
            tenant_id,
            outcome,
            processed_at,
        )

    async def get(self, external_event_id: str) -> Optional[WebhookEvent]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM webhook_events WHERE external_event_id = $1",
                external_event_id,
            )
        if row is None:
            return None
        return WebhookEvent(
            external_event_id=row["external_event_id"],
            type=row["type"],
            tenant_id=row["tenant_id"],
            received_at=row["received_at"],
            processed_at=row["processed_at"],
            outcome=row["outcome"],
        )


class WebhookReconciler:
    """Verify, ledger and apply payment processor events."""

    def __init__(
        self,
        config: TenantJobsConfig,
        db_pool: asyncpg.Pool,
        cache: CacheLayer,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.db_pool = db_pool
        self.cache = cache
        self.logger = logger or logging.getLogger(__name__)
        self.events = WebhookEventStore(db_pool)
        self.subscriptions = SubscriptionStore(db_pool)
        self.quotas = QuotaStore(db_pool)

    async def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> str:
        """
        Process one delivery and return its outcome.

        Raises:
            InvalidSignature: If the signature does not verify; nothing is recorded
            InvalidEvent: If the verified body is not a usable event
            TransientError: If processing exceeded the webhook timeout, or the event
                is for a subscription not on file yet; nothing is recorded and the
                processor should redeliver
        """
        if not self.config.webhook_secret:
            raise InvalidSignature("Webhook secret is not configured")
        if not verify_signature(
            raw_body,
            signature_header,
            self.config.webhook_secret,
            tolerance=self.config.webhook_tolerance_seconds,
        ):
            raise InvalidSignature("Webhook signature verification failed")

        event = parse_event(raw_body)

        try:
            transition = await asyncio.wait_for(
                self._process(event), timeout=self.config.webhook_timeout_seconds
            )
        except DuplicateEvent as e:
            self.logger.info(f"Duplicate event {e.external_event_id}, outcome {e.outcome}")
            if e.outcome == APPLIED and e.tenant_id:
                # The first delivery may have failed before invalidating
                await self.cache.invalidate_tenant(e.tenant_id, domains=BILLING_CACHE_DOMAINS)
            return e.outcome
        except asyncio.TimeoutError as e:
            self.logger.error(f"Processing event {event.id} timed out, rolled back")
            raise TransientError(f"Timed out processing event {event.id}") from e

        if transition.applied:
            tenant_id = transition.subscription.tenant_id
            await self.cache.invalidate_tenant(tenant_id, domains=BILLING_CACHE_DOMAINS)
            self.logger.info(
                f"Event {event.id} ({event.type}) moved tenant {tenant_id} "
                f"from {transition.previous_status.value if transition.previous_status else 'none'} "
                f"to {transition.subscription.status.value}"
            )
        else:
            self.logger.info(f"Event {event.id} ({event.type}) {transition.outcome}")

        return transition.outcome

    async def _process(self, event: PaymentEvent) -> Transition:
        now = utcnow()
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                if not await self.events.claim(conn, event, now):
                    outcome, tenant_id = await self.events.recorded_outcome(conn, event.id)
                    raise DuplicateEvent(event.id, outcome, tenant_id=tenant_id)

                current = await self.subscriptions.lock_for_update(
                    conn, event.tenant_id, event.external_subscription_id
                )
                transition = reconcile(current, event)
                if transition.outcome == DEFERRED:
                    self.logger.warning(
                        f"Deferring event {event.id} ({event.type}), no subscription on file"
                    )
                    raise TransientError(
                        f"Event {event.id} ({event.type}) is for a subscription not on file yet"
                    )

                tenant_id = event.tenant_id or (current.tenant_id if current else None)
                if transition.applied:
                    subscription = transition.subscription
                    tenant_id = subscription.tenant_id
                    await self.subscriptions.upsert(conn, subscription)
                    if transition.period_advanced:
                        await self._rollover_quotas(conn, subscription)

                await self.events.record_outcome(
                    conn, event.id, tenant_id, transition.outcome, utcnow()
                )
        return transition

    async def _rollover_quotas(self, conn: asyncpg.Connection, subscription: Subscription) -> None:
        plan = self.config.get_plan(subscription.plan_id)
        quota_types = [quota_type for quota_type in plan.quotas if not is_daily(quota_type)]
        opened = await self.quotas.open_period(
            conn,
            subscription.tenant_id,
            quota_types,
            subscription.current_period_start,
            subscription.current_period_end,
        )
        self.logger.info(
            f"Opened {opened} quota counters for tenant {subscription.tenant_id} "
            f"period starting {subscription.current_period_start}"
        )

    async def get_event(self, external_event_id: str) -> Optional[WebhookEvent]:
        """Ledger row of an event, for operator inspection."""
        return await self.events.get(external_event_id)
