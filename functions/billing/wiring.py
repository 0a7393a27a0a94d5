"""
Explicit construction of the reconciliation components.

Handlers call `get_engine()`; the instance is cached per Lambda container
(the lock's in-process table must be shared by every caller in the process).
Tests build their own with `build_engine(provider=...)`.
"""

from typing import Optional

from billing.engine import ReconciliationEngine
from billing.fallback import ReconciliationFallback
from billing.ledger import BillingLedger
from billing.locks import SubscriptionLock
from billing.provider import StripeProvider
from billing.quota import UsageQuotaTracker
from billing.store import ProcessedEventStore, SubscriptionStore

_engine: Optional[ReconciliationEngine] = None


def build_engine(provider=None, lock: Optional[SubscriptionLock] = None) -> ReconciliationEngine:
    provider = provider or StripeProvider()
    lock = lock or SubscriptionLock()
    events = ProcessedEventStore()
    store = SubscriptionStore(events=events)
    return ReconciliationEngine(
        store=store,
        events=events,
        lock=lock,
        ledger=BillingLedger(),
        quota=UsageQuotaTracker(lock),
        fallback=ReconciliationFallback(provider, store),
    )


def get_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_provider():
    """The provider adapter the cached engine's fallback uses."""
    return get_engine().fallback.provider


def set_engine(engine: Optional[ReconciliationEngine]) -> None:
    """Replace (or clear) the cached engine. Used in tests."""
    global _engine
    _engine = engine
