"""
Reconciliation engine.

Single entry point for every change to a subscription record, whether it
comes from a provider webhook or from a REST mutation:

    processed? -> lock(subscription) -> load (or fall back to the provider)
    -> transition + project snapshot -> ledger / quota -> atomic commit

Convergence does not depend on delivery order. Status follows the provider
(see state_machine), billing periods only move forward, and ledger and quota
writes are idempotent per invoice and per period. The commit writes the
record together with the ProcessedEvent marker, so a crash anywhere before it
is repaired by redelivery.
"""

import dataclasses
import logging
import hashlib
from datetime import datetime, timezone
from typing import Optional

from billing.deadline import Deadline
from billing.errors import PermanentConflict
from billing.events import INVOICE_KINDS
from billing.fallback import ReconciliationFallback
from billing.ledger import BillingLedger
from billing.locks import SubscriptionLock
from billing.models import (
    BillingRecord,
    DomainEvent,
    EventKind,
    LedgerOutcome,
    ProviderSubscription,
    ReconciliationResult,
    Subscription,
)
from billing.quota import UsageQuotaTracker
from billing.state_machine import CANCELED, PENDING, next_status
from billing.store import OUTCOME_CONFLICT, OUTCOME_NOOP, ProcessedEventStore, SubscriptionStore
from shared.constants import (
    DEFAULT_PLAN_ID,
    PLANS,
    PROVISIONAL_PERIOD_DAYS,
    plan_for_price,
    video_limit_for_plan,
)

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    def __init__(
        self,
        store: SubscriptionStore,
        events: ProcessedEventStore,
        lock: SubscriptionLock,
        ledger: BillingLedger,
        quota: UsageQuotaTracker,
        fallback: ReconciliationFallback,
    ):
        self.store = store
        self.events = events
        self.lock = lock
        self.ledger = ledger
        self.quota = quota
        self.fallback = fallback
        fallback.attach(self)

    def apply(self, event: DomainEvent, deadline: Optional[Deadline] = None) -> ReconciliationResult:
        """Reconcile one event into the local subscription record.

        Returns:
            CREATED or UPDATED when the record was written, NOOP for replays,
            unknown kinds and events that change nothing.

        Raises:
            TransientProviderError: (or LockTimeout, DeadlineExceeded,
                ConcurrentModification) nothing was committed; redeliver.
            PermanentConflict: the event was marked processed with outcome
                conflict; retrying will not help.
        """
        if self.events.is_processed(event.event_id):
            logger.info(f"Event {event.event_id} already processed, skipping")
            return ReconciliationResult.NOOP

        if event.kind is EventKind.UNKNOWN:
            self.events.mark(event, OUTCOME_NOOP)
            return ReconciliationResult.NOOP

        if event.kind in INVOICE_KINDS and not event.subscription_key:
            logger.info(f"Invoice {event.invoice_key} is not for a subscription, ignoring")
            self.events.mark(event, OUTCOME_NOOP)
            return ReconciliationResult.NOOP

        deadline = deadline or Deadline.from_context(None)
        key = event.subscription_key
        snapshot = event.subscription

        if not key:
            if not event.customer_key:
                logger.warning(f"Event {event.event_id} ({event.provider_type}) names no subscription or customer")
                self.events.mark(event, OUTCOME_NOOP)
                return ReconciliationResult.NOOP

            # Degraded case: only a customer id; resolve before locking
            deadline.check("customer resolution")
            snapshot = self.fallback.resolve(customer_id=event.customer_key, hint_id=event.payment_hint)
            if snapshot is None:
                self._conflict(event, "no_subscription_for_customer", f"No subscription for customer {event.customer_key}")
            key = snapshot.id

        with self.lock.hold(key, deadline):
            # A concurrent delivery may have committed while we waited
            if self.events.is_processed(event.event_id):
                logger.info(f"Event {event.event_id} processed while waiting for lock")
                return ReconciliationResult.NOOP
            return self._apply_locked(event, key, snapshot, deadline)

    def _apply_locked(
        self,
        event: DomainEvent,
        key: str,
        snapshot: Optional[ProviderSubscription],
        deadline: Deadline,
    ) -> ReconciliationResult:
        current = self.store.get(key)

        if current is None:
            if event.kind is EventKind.SUBSCRIPTION_DELETED:
                logger.info(f"Deleted event for unknown subscription {key}, nothing to cancel")
                self.events.mark(event, OUTCOME_NOOP)
                return ReconciliationResult.NOOP

            if snapshot is None:
                deadline.check("provider fetch")
                snapshot = self.fallback.resolve(subscription_id=key)
                if snapshot is None:
                    self._conflict(event, "subscription_not_found", f"Provider has no subscription {key}")
                logger.info(f"Materialising {key} from provider for {event.provider_type}")

            owner_id = event.owner_hint or snapshot.metadata.get("user_id")
            if not owner_id:
                self._conflict(event, "missing_owner", f"Subscription {key} has no owner metadata")
            subscription = self._new_record(snapshot, owner_id, event)
            previous_status = None
            created = True
        else:
            if current.status == CANCELED:
                # Terminal; invoices are still written to the ledger for audit
                self._record_invoice(event, current, deadline)
                logger.info(f"Subscription {key} is canceled, {event.provider_type} changes nothing")
                self.events.mark(event, OUTCOME_NOOP)
                return ReconciliationResult.NOOP
            subscription = dataclasses.replace(current)
            previous_status = current.status
            created = False

        status_kind = event.kind
        if event.kind in INVOICE_KINDS and not self._invoice_moves_status(event, subscription, created, deadline):
            status_kind = EventKind.UNKNOWN

        provider_status = snapshot.status if snapshot else None
        if snapshot is not None and not created:
            if self._is_older_period(subscription, snapshot):
                # Periods only move forward; the status is still mirrored
                snapshot = None
            elif self._is_replay(subscription, snapshot, event):
                # Same period, older event: a late copy of an earlier state
                snapshot = None
                provider_status = None
        subscription.status = next_status(previous_status, status_kind, provider_status)
        if snapshot is not None:
            self._project_snapshot(subscription, snapshot, event)
        if subscription.status == CANCELED and subscription.canceled_at is None:
            subscription.canceled_at = int(datetime.now(timezone.utc).timestamp())
        if status_kind in INVOICE_KINDS:
            subscription.last_event_created = max(subscription.last_event_created, event.created)

        quota_reset = False
        if event.kind is EventKind.INVOICE_PAID and event.invoice:
            quota_reset = self._advance_period_from_invoice(subscription, event, created)

        # A newer event that changes nothing else is not worth a write
        if not created and not quota_reset and dataclasses.replace(
            subscription, last_event_created=current.last_event_created
        ) == current:
            logger.info(f"Event {event.event_id} leaves {key} unchanged")
            self.events.mark(event, OUTCOME_NOOP)
            return ReconciliationResult.NOOP

        pointer = self.store.get_owner_pointer(subscription.owner_id)
        if created and self._owner_has_other_live(subscription, pointer):
            self._conflict(
                event,
                "owner_has_live_subscription",
                f"Owner {subscription.owner_id} already has live subscription {pointer['provider_subscription_id']}",
            )

        deadline.check("commit")
        subscription.updated_at = datetime.now(timezone.utc).isoformat()
        if not self.store.commit(subscription, created=created, event=event, pointer=pointer):
            return ReconciliationResult.NOOP

        if previous_status != subscription.status:
            logger.info(f"Subscription {key} status {previous_status or '(new)'} -> {subscription.status}")

        result = ReconciliationResult.CREATED if created else ReconciliationResult.UPDATED
        logger.info(f"Applied {event.provider_type} to {key}: {result.value}")
        return result

    def _new_record(self, snapshot: ProviderSubscription, owner_id: str, event: DomainEvent) -> Subscription:
        now = datetime.now(timezone.utc).isoformat()
        period_start, period_end = self._initial_period(snapshot)
        plan_id = self._plan_for(snapshot, event, None)
        return Subscription(
            # Derived from the provider id so a retried creation reuses the same local id
            id=f"subs_{hashlib.sha256(snapshot.id.encode()).hexdigest()[:24]}",
            owner_id=owner_id,
            plan_id=plan_id,
            status=PENDING,
            provider_subscription_id=snapshot.id,
            provider_customer_id=snapshot.customer_id or event.customer_key,
            current_period_start=period_start,
            current_period_end=period_end,
            video_limit=video_limit_for_plan(plan_id),
            video_count=0,
            created_at=now,
            updated_at=now,
            # The count starts at zero, which is the reset for the first period
            usage_reset_period_start=period_start,
        )

    @staticmethod
    def _initial_period(snapshot: ProviderSubscription) -> tuple[int, int]:
        """The period to store before the provider has billed anything.

        Incomplete subscriptions can arrive without a period; a provisional
        one runs to the trial end or PROVISIONAL_PERIOD_DAYS from creation and
        is replaced by the first real snapshot or paid invoice.
        """
        start = snapshot.current_period_start or snapshot.created or int(datetime.now(timezone.utc).timestamp())
        end = snapshot.current_period_end
        if end and end > start:
            return start, end
        if snapshot.trial_end and snapshot.trial_end > start:
            return start, snapshot.trial_end
        return start, start + PROVISIONAL_PERIOD_DAYS * 86400

    @staticmethod
    def _plan_for(snapshot: ProviderSubscription, event: DomainEvent, current_plan: Optional[str]) -> str:
        plan_id = plan_for_price(snapshot.price_id)
        if plan_id:
            return plan_id
        if snapshot.price_id:
            logger.warning(f"Unknown price {snapshot.price_id} on {snapshot.id}")
        hinted = event.plan_hint or snapshot.metadata.get("plan_id")
        if hinted in PLANS:
            return hinted
        return current_plan or DEFAULT_PLAN_ID

    @staticmethod
    def _is_older_period(subscription: Subscription, snapshot: ProviderSubscription) -> bool:
        incoming_start = snapshot.current_period_start or 0
        if incoming_start and incoming_start < subscription.current_period_start:
            logger.info(f"Stale snapshot for {snapshot.id}: period {incoming_start} < {subscription.current_period_start}")
            return True
        return False

    @staticmethod
    def _is_replay(subscription: Subscription, snapshot: ProviderSubscription, event: DomainEvent) -> bool:
        """True if a same-period snapshot comes from an event older than the last one applied."""
        if (snapshot.current_period_start or 0) != subscription.current_period_start:
            return False
        if event.created < subscription.last_event_created:
            logger.info(f"Stale snapshot for {snapshot.id}: event {event.created} < {subscription.last_event_created}")
            return True
        return False

    def _project_snapshot(self, subscription: Subscription, snapshot: ProviderSubscription, event: DomainEvent) -> None:
        """Overwrite mirrored fields from a fresh provider snapshot."""
        if (
            snapshot.current_period_start
            and snapshot.current_period_end
            and snapshot.current_period_start < snapshot.current_period_end
        ):
            subscription.current_period_start = snapshot.current_period_start
            subscription.current_period_end = snapshot.current_period_end

        subscription.cancel_at_period_end = snapshot.cancel_at_period_end
        if snapshot.canceled_at is not None:
            subscription.canceled_at = snapshot.canceled_at
        if snapshot.customer_id:
            subscription.provider_customer_id = snapshot.customer_id

        plan_id = self._plan_for(snapshot, event, subscription.plan_id)
        if plan_id != subscription.plan_id:
            logger.info(f"Plan change on {snapshot.id}: {subscription.plan_id} -> {plan_id}")
        subscription.plan_id = plan_id
        subscription.video_limit = video_limit_for_plan(plan_id)
        subscription.last_event_created = max(subscription.last_event_created, event.created)

    def _invoice_moves_status(
        self, event: DomainEvent, subscription: Subscription, created: bool, deadline: Deadline
    ) -> bool:
        """Write the invoice to the ledger and say whether it may drive the status.

        An invoice older than the last applied event, or one whose outcome the
        ledger refused (a late failure for an invoice that already succeeded),
        leaves the status alone so every delivery order ends in the same place.
        """
        stored = self._record_invoice(event, subscription, deadline)
        if stored is not None and stored.outcome != self._invoice_outcome(event):
            logger.info(f"Invoice {stored.provider_invoice_id} is {stored.outcome}, ignoring {event.provider_type}")
            return False
        if not created and event.created < subscription.last_event_created:
            logger.info(f"Stale invoice event {event.event_id}: {event.created} < {subscription.last_event_created}")
            return False
        return True

    @staticmethod
    def _invoice_outcome(event: DomainEvent) -> str:
        return LedgerOutcome.SUCCEEDED if event.kind is EventKind.INVOICE_PAID else LedgerOutcome.FAILED

    def _record_invoice(
        self, event: DomainEvent, subscription: Subscription, deadline: Deadline
    ) -> Optional[BillingRecord]:
        if event.kind not in INVOICE_KINDS or event.invoice is None:
            return None
        invoice = event.invoice
        deadline.check("ledger write")
        return self.ledger.record(
            invoice.id,
            invoice.amount,
            self._invoice_outcome(event),
            (invoice.period_start, invoice.period_end),
            invoice.currency,
            subscription.id,
        )

    def _advance_period_from_invoice(self, subscription: Subscription, event: DomainEvent, created: bool) -> bool:
        """Reset the quota and move the period forward for a paid invoice of a new period.

        Returns True if a stored quota was reset.
        """
        invoice = event.invoice
        if not invoice.period_start:
            return False

        reset = False
        if invoice.period_start > subscription.usage_reset_period_start:
            if created:
                # Not stored yet; the count is already zero in the new record
                subscription.usage_reset_period_start = invoice.period_start
            else:
                reset = self.quota.reset_for_new_period(
                    subscription.provider_subscription_id, invoice.period_start, invoice.period_end
                )
                if reset:
                    subscription.video_count = 0
                    subscription.usage_reset_period_start = invoice.period_start

        if (
            invoice.period_end
            and invoice.period_start > subscription.current_period_start
            and invoice.period_start < invoice.period_end
        ):
            subscription.current_period_start = invoice.period_start
            subscription.current_period_end = invoice.period_end

        return reset

    @staticmethod
    def _owner_has_other_live(subscription: Subscription, pointer: Optional[dict]) -> bool:
        if not pointer or subscription.status == CANCELED:
            return False
        return (
            pointer.get("provider_subscription_id") != subscription.provider_subscription_id
            and pointer.get("status") != CANCELED
        )

    def _conflict(self, event: DomainEvent, reason: str, message: str) -> None:
        """Mark the event processed with outcome conflict and raise PermanentConflict."""
        logger.error(f"Reconciliation conflict for {event.event_id} ({event.provider_type}): {message}")
        self.events.mark(event, OUTCOME_CONFLICT)
        raise PermanentConflict(message, reason=reason, event_id=event.event_id)
