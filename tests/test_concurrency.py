"""
Concurrency tests: parallel deliveries against one subscription.

Threads share one engine (one Lambda container); the in-process lock queues
them and the DynamoDB lease plus conditional writes keep the outcome single.
"""

import threading

import pytest

from billing.errors import ConcurrentModification
from billing.events import classify, local_event
from billing.models import EventKind, ReconciliationResult
from billing.wiring import build_engine
from conftest import invoice_object, make_snapshot, provider_event, subscription_object


def _run_concurrently(fn, args_list):
    results = []
    errors = []
    barrier = threading.Barrier(len(args_list))

    def worker(args):
        barrier.wait()
        try:
            results.append(fn(*args))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(args,)) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


class TestParallelDeliveries:
    def test_same_event_applied_once(self, engine):
        """Concurrent deliveries of one event should commit exactly once."""
        event = classify(provider_event("evt_1", "customer.subscription.created", subscription_object()))

        results, errors = _run_concurrently(engine.apply, [(event,)] * 5)

        assert errors == []
        assert results.count(ReconciliationResult.CREATED) == 1
        assert results.count(ReconciliationResult.NOOP) == 4
        assert engine.store.get("sub_123").version == 1

    def test_different_events_converge(self, engine, fake_provider):
        """Concurrent distinct events should all be applied without lost updates."""
        fake_provider.add(make_snapshot(price_id="price_growth"))
        events = [
            classify(provider_event("evt_created", "customer.subscription.created", subscription_object(), 1767300000)),
            classify(
                provider_event(
                    "evt_updated",
                    "customer.subscription.updated",
                    subscription_object(price_id="price_growth"),
                    1767300010,
                )
            ),
            classify(provider_event("evt_paid", "invoice.paid", invoice_object(), 1767300005)),
        ]

        results, errors = _run_concurrently(engine.apply, [(e,) for e in events])

        assert errors == []
        assert results.count(ReconciliationResult.CREATED) == 1
        subscription = engine.store.get("sub_123")
        assert subscription.status == "active"
        assert subscription.plan_id == "growth"
        assert subscription.video_limit == 4
        assert len(engine.ledger.history(subscription.id)) == 1
        for event in events:
            assert engine.events.is_processed(event.event_id)

    def test_rest_creation_races_provider_webhook(self, engine, fake_provider):
        """The REST creation path and the creation webhook should yield one record."""
        snapshot = fake_provider.add(make_snapshot(status="incomplete"))
        webhook = classify(
            provider_event(
                "evt_created", "customer.subscription.created", subscription_object(status="incomplete"), 1767300000
            )
        )
        local = local_event(EventKind.SUBSCRIPTION_CREATED, snapshot, "user_1", "basic")

        results, errors = _run_concurrently(engine.apply, [(webhook,), (local,)])

        assert errors == []
        assert sorted(r.value for r in results) == ["created", "noop"]
        assert engine.store.get("sub_123").status == "incomplete"

    def test_usage_and_renewal_interleave(self, engine):
        """Video usage and a renewal invoice should not overwrite each other."""
        created = subscription_object(price_id="price_growth")
        engine.apply(classify(provider_event("evt_1", "customer.subscription.created", created)))
        renewal = classify(
            provider_event(
                "evt_renew",
                "invoice.paid",
                invoice_object(invoice_id="in_feb", period_start=1769904000, period_end=1772323200),
            )
        )

        calls = [(engine.quota.increment, ("sub_123",))] * 3 + [(engine.apply, (renewal,))]
        results, errors = _run_concurrently(lambda fn, args: fn(*args), calls)

        assert errors == []
        subscription = engine.store.get("sub_123")
        # Whatever the interleaving, the count never exceeds what was consumed
        assert 0 <= subscription.video_count <= 3
        assert subscription.current_period_start == 1769904000


class TestSeparateContainers:
    def test_second_container_honours_processed_marker(self, engine, mock_dynamodb, fake_provider):
        """An engine in another container should skip events already processed."""
        event = classify(provider_event("evt_1", "customer.subscription.created", subscription_object()))
        other_container = build_engine(provider=fake_provider)

        assert engine.apply(event) is ReconciliationResult.CREATED
        assert other_container.apply(event) is ReconciliationResult.NOOP

    def test_stale_version_from_other_container_is_rejected(self, engine, mock_dynamodb, fake_provider):
        """A commit based on an outdated version should be refused as transient."""
        engine.apply(classify(provider_event("evt_1", "customer.subscription.created", subscription_object(), 1767300000)))
        stale_copy = engine.store.get("sub_123")

        engine.apply(
            classify(
                provider_event(
                    "evt_2", "customer.subscription.updated", subscription_object(price_id="price_growth"), 1767300010
                )
            )
        )

        stale_copy.plan_id = "professional"
        with pytest.raises(ConcurrentModification):
            engine.store.commit(
                stale_copy,
                created=False,
                event=classify(provider_event("evt_3", "customer.subscription.updated", subscription_object())),
                pointer=engine.store.get_owner_pointer("user_1"),
            )
        assert engine.store.get("sub_123").plan_id == "growth"
        assert not engine.events.is_processed("evt_3")
