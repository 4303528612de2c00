"""
Nullifier ledger: one-time tags that must never be consumed twice.

``mark_used`` is a test-and-set. The SQLite ledger relies on the primary
key constraint so concurrent writers in any thread or process race on a
single INSERT and exactly one wins.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from eth_utils import keccak

from .errors import AlreadyUsedError
from .permit import Permit, normalize_address, normalize_bytes32, permit_digest
from .storage import connect_sqlite, init_sqlite

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NullifierRecord:
    tag: str
    consumed_at: float
    reference: Optional[str] = None
    context: Optional[str] = None


class NullifierLedger(Protocol):
    def is_used(self, tag: str) -> bool: ...

    def mark_used(
        self,
        tag: str,
        reference: Optional[str] = None,
        context: Optional[str] = None,
    ) -> NullifierRecord: ...

    def lookup(self, tag: str) -> Optional[NullifierRecord]: ...


class SqliteNullifierLedger:
    """Durable ledger backed by a SQLite table keyed on the tag."""

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        init_sqlite(
            db_path,
            [
                """
                CREATE TABLE IF NOT EXISTS nullifiers (
                    tag TEXT PRIMARY KEY,
                    consumed_at REAL NOT NULL,
                    reference TEXT,
                    context TEXT
                )
                """
            ],
        )

    @contextmanager
    def _connect(self):
        conn = connect_sqlite(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def is_used(self, tag: str) -> bool:
        return self.lookup(tag) is not None

    def mark_used(
        self,
        tag: str,
        reference: Optional[str] = None,
        context: Optional[str] = None,
    ) -> NullifierRecord:
        record = NullifierRecord(
            tag=normalize_bytes32(tag, "tag"),
            consumed_at=self._clock(),
            reference=reference,
            context=context,
        )
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO nullifiers (tag, consumed_at, reference, context) VALUES (?, ?, ?, ?)",
                    (record.tag, record.consumed_at, record.reference, record.context),
                )
            except sqlite3.IntegrityError:
                raise AlreadyUsedError(record.tag) from None
        logger.debug("Marked tag %s used (%s)", record.tag, context or "-")
        return record

    def lookup(self, tag: str) -> Optional[NullifierRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT tag, consumed_at, reference, context FROM nullifiers WHERE tag = ?",
                (normalize_bytes32(tag, "tag"),),
            ).fetchone()
        if row is None:
            return None
        return NullifierRecord(
            tag=row["tag"],
            consumed_at=row["consumed_at"],
            reference=row["reference"],
            context=row["context"],
        )


class InMemoryNullifierLedger:
    """Process-local ledger for tests. Loses history on restart."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, NullifierRecord] = {}

    def is_used(self, tag: str) -> bool:
        return self.lookup(tag) is not None

    def mark_used(
        self,
        tag: str,
        reference: Optional[str] = None,
        context: Optional[str] = None,
    ) -> NullifierRecord:
        key = normalize_bytes32(tag, "tag")
        with self._lock:
            if key in self._records:
                raise AlreadyUsedError(key)
            record = NullifierRecord(key, self._clock(), reference, context)
            self._records[key] = record
        return record

    def lookup(self, tag: str) -> Optional[NullifierRecord]:
        with self._lock:
            return self._records.get(normalize_bytes32(tag, "tag"))


def derive_nullifier(leaf: str, counter: int, secret: Optional[str] = None) -> str:
    """
    Per-charge nullifier: keccak(leaf || uint256(counter) [|| secret]).

    With a per-subscription secret, nullifiers of the same delegation
    cannot be linked to each other on-chain.
    """
    if counter < 0:
        raise ValueError("counter must be non-negative")
    packed = _bytes32(leaf) + counter.to_bytes(32, "big")
    if secret is not None:
        packed += _bytes32(secret)
    return "0x" + keccak(packed).hex()


def subscription_secret(payer: str, subscription_id: str) -> str:
    payer_bytes = bytes.fromhex(normalize_address(payer)[2:])
    return "0x" + keccak(payer_bytes + subscription_id.encode("utf-8")).hex()


def charge_tag(permit: Permit, charge_index: int) -> str:
    """At-most-once marker for charge ``charge_index`` under ``permit``."""
    if charge_index < 0:
        raise ValueError("charge_index must be non-negative")
    return "0x" + keccak(_bytes32(permit_digest(permit)) + charge_index.to_bytes(32, "big")).hex()


def _bytes32(value: str) -> bytes:
    return bytes.fromhex(normalize_bytes32(value, "bytes32")[2:])
