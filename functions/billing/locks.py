"""
Per-subscription mutual exclusion.

Two layers, always taken in this order:

1. An in-process keyed threading.Lock, so threads in one process queue up
   without hammering DynamoDB.
2. A DynamoDB lease item (conditional put on `attribute_not_exists(pk) OR
   expires_at < :now`), so concurrent Lambda invocations exclude each other.
   A crashed holder's lease simply expires.

`hold()` is re-entrant for the thread that already holds the key, which lets
REST handlers keep the lock across the provider call and `engine.apply()`.
Different keys never contend.
"""

import logging
import os
import random
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from botocore.exceptions import ClientError

from billing.deadline import Deadline
from billing.errors import LockTimeout
from shared.aws_clients import get_dynamodb

logger = logging.getLogger(__name__)

LOCKS_TABLE = os.environ.get("LOCKS_TABLE", "billing-locks")
LOCK_LEASE_SECONDS = int(os.environ.get("LOCK_LEASE_SECONDS", "30"))
LOCK_WAIT_SECONDS = float(os.environ.get("LOCK_WAIT_SECONDS", "10"))

LOCK_SK = "LOCK"

BASE_POLL_DELAY = 0.05
MAX_POLL_DELAY = 0.5


def calculate_poll_delay(attempt: int) -> float:
    """Exponential backoff with jitter for lease polling."""
    delay = min(BASE_POLL_DELAY * (2**attempt), MAX_POLL_DELAY)
    return delay + random.uniform(0, delay * 0.3)


class SubscriptionLock:
    def __init__(
        self,
        table_name: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        wait_seconds: Optional[float] = None,
    ):
        self.table_name = table_name or LOCKS_TABLE
        self.lease_seconds = lease_seconds if lease_seconds is not None else LOCK_LEASE_SECONDS
        self.wait_seconds = wait_seconds if wait_seconds is not None else LOCK_WAIT_SECONDS
        self._registry_guard = threading.Lock()
        # key -> [lock, holders + waiters]; dropped when nobody uses the key
        self._local_locks: dict[str, list] = {}
        self._held = threading.local()

    def _checkout_local(self, key: str) -> threading.Lock:
        with self._registry_guard:
            entry = self._local_locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._local_locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin_local(self, key: str, release: bool) -> None:
        with self._registry_guard:
            entry = self._local_locks[key]
            if release:
                entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._local_locks[key]

    def _held_keys(self) -> dict:
        held = getattr(self._held, "keys", None)
        if held is None:
            held = {}
            self._held.keys = held
        return held

    def is_held(self, key: str) -> bool:
        """True if the calling thread currently holds `key`."""
        return key in self._held_keys()

    def _budget(self, deadline: Optional[Deadline]) -> float:
        if deadline is None:
            return self.wait_seconds
        return min(self.wait_seconds, deadline.remaining())

    def _try_put_lease(self, key: str, token: str) -> bool:
        now = int(time.time())
        expires_at = now + self.lease_seconds
        table = get_dynamodb().Table(self.table_name)
        try:
            table.put_item(
                Item={
                    "pk": key,
                    "sk": LOCK_SK,
                    "owner_token": token,
                    "expires_at": expires_at,
                    "ttl": expires_at + 3600,
                },
                ConditionExpression="attribute_not_exists(pk) OR expires_at < :now",
                ExpressionAttributeValues={":now": now},
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def _delete_lease(self, key: str, token: str) -> None:
        table = get_dynamodb().Table(self.table_name)
        try:
            table.delete_item(
                Key={"pk": key, "sk": LOCK_SK},
                ConditionExpression="owner_token = :token",
                ExpressionAttributeValues={":token": token},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"Lease for {key} expired before release and was taken over")
                return
            raise

    def acquire(self, key: str, deadline: Optional[Deadline] = None) -> str:
        """Acquire the lock for `key` and return the lease token.

        Raises:
            LockTimeout: lock not obtained within LOCK_WAIT_SECONDS (or the
                deadline, whichever comes first).
        """
        started = time.monotonic()
        budget = self._budget(deadline)
        local_lock = self._checkout_local(key)

        if not local_lock.acquire(timeout=max(budget, 0.0)):
            self._checkin_local(key, release=False)
            raise LockTimeout(f"Timed out waiting for in-process lock on {key}")

        token = uuid.uuid4().hex
        attempt = 0
        try:
            while not self._try_put_lease(key, token):
                elapsed = time.monotonic() - started
                if elapsed >= budget:
                    raise LockTimeout(f"Timed out waiting for lease on {key} after {elapsed:.2f}s")
                delay = min(calculate_poll_delay(attempt), budget - elapsed)
                time.sleep(delay)
                attempt += 1
        except BaseException:
            self._checkin_local(key, release=True)
            raise

        if attempt:
            logger.info(f"Acquired lease on {key} after {attempt} retries")
        return token

    def release(self, key: str, token: str) -> None:
        try:
            self._delete_lease(key, token)
        finally:
            self._checkin_local(key, release=True)

    @contextmanager
    def hold(self, key: str, deadline: Optional[Deadline] = None) -> Iterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        held = self._held_keys()
        if key in held:
            held[key]["depth"] += 1
            try:
                yield
            finally:
                held[key]["depth"] -= 1
            return

        token = self.acquire(key, deadline)
        held[key] = {"token": token, "depth": 1}
        try:
            yield
        finally:
            del held[key]
            self.release(key, token)
