"""
Durable subscription store.

Writers use optimistic concurrency: every record carries a version and
``compare_and_set`` only succeeds against the version the caller read.
The SQLite store runs each write in a ``BEGIN IMMEDIATE`` transaction so
the check and the update are atomic across threads and processes, and
keeps bodies encrypted; only id, status, version, permit digest and a
keyed payer tag are stored in the clear.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, Protocol

from .encryption import SubscriptionCipher
from .errors import StoreCorruptionError, StoreError, SubscriptionNotFoundError, VersionConflictError
from .permit import permit_digest
from .storage import connect_sqlite, init_sqlite
from .subscription import AttemptOutcome, ChargeAttempt, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionStore(Protocol):
    def get(self, subscription_id: str) -> Subscription: ...

    def put(self, subscription: Subscription) -> Subscription: ...

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Subscription: ...

    def list(
        self,
        status: Optional[SubscriptionStatus] = None,
        payer: Optional[str] = None,
    ) -> list[Subscription]: ...

    def record_attempt(self, attempt: ChargeAttempt) -> None: ...

    def attempts(self, subscription_id: str) -> list[ChargeAttempt]: ...


class SqliteSubscriptionStore:
    """Encrypted subscription documents keyed by id, with version and permit digest columns."""

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
        cipher: Optional[SubscriptionCipher] = None,
    ):
        self.db_path = db_path
        self.cipher = cipher or SubscriptionCipher.load()
        self._clock = clock
        init_sqlite(
            db_path,
            [
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    payer_tag TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    permit_digest TEXT NOT NULL,
                    body TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS charge_attempts (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    subscription_id TEXT NOT NULL,
                    charge_index INTEGER NOT NULL,
                    attempt_no INTEGER NOT NULL,
                    outcome TEXT NOT NULL,
                    at REAL NOT NULL,
                    amount INTEGER NOT NULL,
                    reference TEXT,
                    reason TEXT,
                    detail TEXT
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_attempts_subscription
                ON charge_attempts (subscription_id, seq)
                """,
            ],
        )

    @contextmanager
    def _connect(self):
        conn = connect_sqlite(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def get(self, subscription_id: str) -> Subscription:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)).fetchone()
        if row is None:
            raise SubscriptionNotFoundError(subscription_id)
        return self._row_to_subscription(row)

    def put(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription at version 1."""
        _check_invariants(subscription)
        stored = dataclasses.replace(subscription, version=1)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = conn.execute(
                    "SELECT 1 FROM subscriptions WHERE id = ?", (stored.id,)
                ).fetchone()
                if existing is not None:
                    raise StoreError(f"Subscription already exists: {stored.id}")
                conn.execute(
                    """
                    INSERT INTO subscriptions (id, payer_tag, status, version, permit_digest, body, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        self.cipher.payer_tag(stored.payer),
                        stored.status.value,
                        stored.version,
                        permit_digest(stored.permit),
                        self._seal(stored),
                        self._clock(),
                    ),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return stored

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Subscription:
        """Write ``subscription`` if the stored version is still ``expected_version``."""
        _check_invariants(subscription)
        stored = dataclasses.replace(subscription, version=expected_version + 1)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT version, permit_digest FROM subscriptions WHERE id = ?",
                    (stored.id,),
                ).fetchone()
                if row is None:
                    raise SubscriptionNotFoundError(stored.id)
                if row["version"] != expected_version:
                    raise VersionConflictError(stored.id, expected_version, row["version"])
                if row["permit_digest"] != permit_digest(stored.permit):
                    raise StoreError(f"Permit of {stored.id} is immutable")
                conn.execute(
                    """
                    UPDATE subscriptions
                    SET status = ?, version = ?, body = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        stored.status.value,
                        stored.version,
                        self._seal(stored),
                        self._clock(),
                        stored.id,
                        expected_version,
                    ),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return stored

    def list(
        self,
        status: Optional[SubscriptionStatus] = None,
        payer: Optional[str] = None,
    ) -> list[Subscription]:
        query = "SELECT * FROM subscriptions WHERE 1 = 1"
        params: list = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if payer is not None:
            query += " AND payer_tag = ?"
            params.append(self.cipher.payer_tag(payer))
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    def record_attempt(self, attempt: ChargeAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO charge_attempts (
                    subscription_id, charge_index, attempt_no, outcome, at, amount, reference, reason, detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.subscription_id,
                    attempt.charge_index,
                    attempt.attempt_no,
                    attempt.outcome.value,
                    attempt.at,
                    attempt.amount,
                    attempt.reference,
                    attempt.reason,
                    attempt.detail,
                ),
            )

    def attempts(self, subscription_id: str) -> list[ChargeAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM charge_attempts WHERE subscription_id = ? ORDER BY seq",
                (subscription_id,),
            ).fetchall()
        return [
            ChargeAttempt(
                subscription_id=row["subscription_id"],
                charge_index=row["charge_index"],
                attempt_no=row["attempt_no"],
                outcome=AttemptOutcome(row["outcome"]),
                at=row["at"],
                amount=row["amount"],
                reference=row["reference"],
                reason=row["reason"],
                detail=row["detail"],
            )
            for row in rows
        ]

    def _seal(self, subscription: Subscription) -> str:
        return self.cipher.seal(json.dumps(subscription.to_dict(), sort_keys=True), subscription.id)

    def _row_to_subscription(self, row) -> Subscription:
        body = self.cipher.open(row["body"], row["id"])
        try:
            subscription = Subscription.from_dict(json.loads(body))
        except Exception as e:
            raise StoreCorruptionError(f"Subscription {row['id']} is unreadable: {e}") from e
        if subscription.id != row["id"] or subscription.version != row["version"]:
            raise StoreCorruptionError(f"Subscription {row['id']} body does not match its key")
        if permit_digest(subscription.permit) != row["permit_digest"]:
            raise StoreCorruptionError(f"Subscription {row['id']} permit digest mismatch")
        _check_invariants(subscription, corrupt=True)
        return subscription


class InMemorySubscriptionStore:
    """Process-local store for tests. Records are copied on every read and write."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[str, dict] = {}
        self._attempts: list[ChargeAttempt] = []

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            record = self._records.get(subscription_id)
        if record is None:
            raise SubscriptionNotFoundError(subscription_id)
        return Subscription.from_dict(record)

    def put(self, subscription: Subscription) -> Subscription:
        _check_invariants(subscription)
        stored = dataclasses.replace(subscription, version=1)
        with self._lock:
            if stored.id in self._records:
                raise StoreError(f"Subscription already exists: {stored.id}")
            self._records[stored.id] = stored.to_dict()
        return stored

    def compare_and_set(self, subscription: Subscription, expected_version: int) -> Subscription:
        _check_invariants(subscription)
        stored = dataclasses.replace(subscription, version=expected_version + 1)
        with self._lock:
            current = self._records.get(stored.id)
            if current is None:
                raise SubscriptionNotFoundError(stored.id)
            if current["version"] != expected_version:
                raise VersionConflictError(stored.id, expected_version, current["version"])
            if current["permit"] != stored.permit.to_dict():
                raise StoreError(f"Permit of {stored.id} is immutable")
            self._records[stored.id] = stored.to_dict()
        return stored

    def list(
        self,
        status: Optional[SubscriptionStatus] = None,
        payer: Optional[str] = None,
    ) -> list[Subscription]:
        with self._lock:
            records = [self._records[k] for k in sorted(self._records)]
        subs = [Subscription.from_dict(r) for r in records]
        if status is not None:
            subs = [s for s in subs if s.status == status]
        if payer is not None:
            subs = [s for s in subs if s.payer == payer.lower()]
        return subs

    def record_attempt(self, attempt: ChargeAttempt) -> None:
        with self._lock:
            self._attempts.append(dataclasses.replace(attempt))

    def attempts(self, subscription_id: str) -> list[ChargeAttempt]:
        with self._lock:
            return [dataclasses.replace(a) for a in self._attempts if a.subscription_id == subscription_id]


def _check_invariants(subscription: Subscription, corrupt: bool = False) -> None:
    problem = None
    if subscription.charges_completed < 0 or subscription.charges_completed > subscription.total_charges:
        problem = (
            f"charges_completed {subscription.charges_completed} outside 0..{subscription.total_charges}"
        )
    elif (subscription.status == SubscriptionStatus.COMPLETED) != (
        subscription.charges_completed == subscription.total_charges
    ):
        problem = f"status {subscription.status.value} inconsistent with progress"
    if problem is None:
        return
    message = f"Subscription {subscription.id}: {problem}"
    if corrupt:
        raise StoreCorruptionError(message)
    raise StoreError(message)
