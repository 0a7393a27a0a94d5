"""
Tests for per-subscription locking.
"""

import threading
import time

import pytest
from freezegun import freeze_time

from billing.deadline import Deadline
from billing.errors import LockTimeout
from billing.locks import LOCK_SK, SubscriptionLock, calculate_poll_delay


@pytest.fixture
def lock(mock_dynamodb):
    return SubscriptionLock(lease_seconds=30, wait_seconds=0.5)


def _lease(mock_dynamodb, key):
    return mock_dynamodb.Table("billing-locks").get_item(Key={"pk": key, "sk": LOCK_SK}).get("Item")


class TestPollDelay:
    def test_grows_and_caps(self):
        """Poll delay should grow exponentially up to the cap."""
        assert 0.05 <= calculate_poll_delay(0) <= 0.065
        assert 0.5 <= calculate_poll_delay(10) <= 0.65


class TestHold:
    def test_lease_written_and_removed(self, mock_dynamodb, lock):
        """Holding the lock should write a lease and release should delete it."""
        with lock.hold("sub_1"):
            assert _lease(mock_dynamodb, "sub_1") is not None
            assert lock.is_held("sub_1")
        assert _lease(mock_dynamodb, "sub_1") is None
        assert not lock.is_held("sub_1")

    def test_reentrant_for_same_thread(self, mock_dynamodb, lock):
        """The holding thread should be able to re-enter the lock."""
        with lock.hold("sub_1"):
            with lock.hold("sub_1"):
                assert lock.is_held("sub_1")
            # Inner exit keeps the outer hold
            assert _lease(mock_dynamodb, "sub_1") is not None
        assert _lease(mock_dynamodb, "sub_1") is None

    def test_released_on_exception(self, mock_dynamodb, lock):
        """The lease should be released when the block raises."""
        with pytest.raises(RuntimeError):
            with lock.hold("sub_1"):
                raise RuntimeError("boom")
        assert _lease(mock_dynamodb, "sub_1") is None

    def test_different_keys_do_not_contend(self, mock_dynamodb, lock):
        """Locks on different subscriptions should be independent."""
        with lock.hold("sub_1"):
            with lock.hold("sub_2"):
                assert lock.is_held("sub_1") and lock.is_held("sub_2")

    def test_registry_drops_released_keys(self, mock_dynamodb, lock):
        """Per-key in-process locks do not pile up in a warm container."""
        for i in range(20):
            with lock.hold(f"sub_{i}"):
                assert lock._local_locks[f"sub_{i}"][1] == 1

        assert lock._local_locks == {}

    def test_threads_are_serialised(self, mock_dynamodb):
        """Threads holding the same key should never overlap."""
        lock = SubscriptionLock(wait_seconds=5)
        inside = []
        overlaps = []

        def work():
            with lock.hold("sub_1"):
                if inside:
                    overlaps.append(True)
                inside.append(True)
                time.sleep(0.02)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert lock._local_locks == {}


class TestLeaseContention:
    def test_times_out_while_other_process_holds_lease(self, mock_dynamodb, lock):
        """Should time out while another process holds a live lease."""
        # Another Lambda's live lease
        mock_dynamodb.Table("billing-locks").put_item(
            Item={"pk": "sub_1", "sk": LOCK_SK, "owner_token": "other", "expires_at": int(time.time()) + 60}
        )

        with pytest.raises(LockTimeout):
            with lock.hold("sub_1"):
                pass

        # The in-process lock was released and dropped despite the timeout
        assert lock._local_locks == {}

    def test_deadline_shortens_wait(self, mock_dynamodb, lock):
        """A short deadline should cut the wait for the lease."""
        mock_dynamodb.Table("billing-locks").put_item(
            Item={"pk": "sub_1", "sk": LOCK_SK, "owner_token": "other", "expires_at": int(time.time()) + 60}
        )
        started = time.monotonic()
        with pytest.raises(LockTimeout):
            lock.acquire("sub_1", Deadline(0.1))
        assert time.monotonic() - started < 0.5

    def test_expired_lease_is_taken_over(self, mock_dynamodb, lock):
        """An expired lease from a crashed holder should be taken over."""
        with freeze_time("2026-03-01 12:00:00"):
            mock_dynamodb.Table("billing-locks").put_item(
                Item={"pk": "sub_1", "sk": LOCK_SK, "owner_token": "crashed", "expires_at": int(time.time()) - 1}
            )
            token = lock.acquire("sub_1")

        assert _lease(mock_dynamodb, "sub_1")["owner_token"] == token
        lock.release("sub_1", token)

    def test_release_after_takeover_leaves_new_lease(self, mock_dynamodb, lock):
        """Releasing an expired lease should not delete the new holder's lease."""
        token = lock.acquire("sub_1")
        # Lease expired and another process took it over
        mock_dynamodb.Table("billing-locks").put_item(
            Item={"pk": "sub_1", "sk": LOCK_SK, "owner_token": "newer", "expires_at": int(time.time()) + 60}
        )

        lock.release("sub_1", token)

        assert _lease(mock_dynamodb, "sub_1")["owner_token"] == "newer"
