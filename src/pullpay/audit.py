"""
Audit trail for subscription and charge events.

Every lifecycle transition and charge attempt is appended to a JSONL
file. Each record is sealed with an HMAC over the previous record's
seal, so edits, deletions and reordering all surface as a broken chain
when the file is read back. The scheduler and CLI may both write;
appends are serialized with an exclusive flock on the file.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .errors import AuditChainError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".pullpay" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".pullpay-secrets" / "audit_hmac.key"
AUDIT_HMAC_KEY_ENV = "PULLPAY_AUDIT_HMAC_KEY"

_SEAL_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    PERMIT_SIGNED = "permit_signed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_COMPLETED = "subscription_completed"
    SUBSCRIPTION_FAILED = "subscription_failed"
    CHARGE_INITIATED = "charge_initiated"
    CHARGE_SUBMITTED = "charge_submitted"
    CHARGE_SETTLED = "charge_settled"
    CHARGE_REJECTED = "charge_rejected"
    CHARGE_RETRY = "charge_retry"
    DELEGATION_AUTHORIZED = "delegation_authorized"


@dataclass
class AuditEvent:
    """One sealed audit record."""

    event_type: str
    timestamp: float
    subscription_id: Optional[str] = None
    payer: Optional[str] = None
    payee: Optional[str] = None
    amount: Optional[int] = None
    charge_index: Optional[int] = None
    reference: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> AuditEvent:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in record.items() if k in known})

    def body(self) -> dict:
        """Fields covered by the seal, with unset values dropped."""
        return {
            k: v for k, v in asdict(self).items()
            if v is not None and k not in _SEAL_FIELDS
        }

    def to_json(self) -> str:
        record = self.body()
        if self.prev_hash:
            record["prev_hash"] = self.prev_hash
        record["event_hash"] = self.event_hash
        return json.dumps(record, separators=(",", ":"))


class AuditTrail:
    """Append-only, HMAC-chained audit log shared by scheduler and CLI."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH
        self._clock = clock
        self._lock = threading.Lock()

        for directory in (self.path.parent, self.key_path.parent):
            ensure_private_dir(directory)
        ensure_private_file(self.path)

        self._key = self._resolve_key()
        self._tail = self._tail_hash()
        self._size_seen = self.path.stat().st_size

    def _resolve_key(self) -> bytes:
        from_env = os.getenv(AUDIT_HMAC_KEY_ENV)
        if from_env:
            return from_env.encode()
        try:
            stored = self.key_path.read_bytes().strip()
        except FileNotFoundError:
            stored = b""
        if stored:
            return stored
        fresh = secrets.token_hex(32).encode()
        self.key_path.write_bytes(fresh)
        ensure_private_file(self.key_path)
        return fresh

    def _tail_hash(self) -> str:
        lines = [ln for ln in self.path.read_text().splitlines() if ln.strip()]
        if not lines:
            return ""
        return json.loads(lines[-1]).get("event_hash", "")

    def _seal(self, body: dict, prev_hash: str) -> str:
        mac = hmac.new(self._key, digestmod=hashlib.sha256)
        mac.update(prev_hash.encode())
        mac.update(b"\n")
        mac.update(json.dumps(body, sort_keys=True, separators=(",", ":")).encode())
        return mac.hexdigest()

    @contextmanager
    def _exclusive_append(self) -> Iterator:
        with self._lock, open(self.path, "a") as handle:
            fd = handle.fileno()
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                if os.fstat(fd).st_size != self._size_seen:
                    # Another writer extended the chain.
                    self._tail = self._tail_hash()
                yield handle
                handle.flush()
                os.fsync(fd)
                self._size_seen = os.fstat(fd).st_size
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)

    def log(
        self,
        event_type: EventType,
        subscription_id: Optional[str] = None,
        payer: Optional[str] = None,
        payee: Optional[str] = None,
        amount: Optional[int] = None,
        charge_index: Optional[int] = None,
        reference: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type.value,
            timestamp=self._clock(),
            subscription_id=subscription_id,
            payer=payer,
            payee=payee,
            amount=amount,
            charge_index=charge_index,
            reference=reference,
            success=success,
            reason=reason,
            details=details,
        )
        with self._exclusive_append() as handle:
            event.prev_hash = self._tail or None
            event.event_hash = self._seal(event.body(), self._tail)
            handle.write(event.to_json() + "\n")
            self._tail = event.event_hash
        return event

    def _verified(self) -> Iterator[AuditEvent]:
        """Yield events in file order, raising on the first broken link."""
        expected_prev = ""
        with open(self.path, "r") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                event = AuditEvent.from_record(json.loads(line))
                if (event.prev_hash or "") != expected_prev:
                    raise AuditChainError(line_no, "previous hash mismatch")
                if not hmac.compare_digest(self._seal(event.body(), expected_prev), event.event_hash or ""):
                    raise AuditChainError(line_no, "event hash mismatch")
                expected_prev = event.event_hash
                yield event

    def verify(self) -> int:
        """Check the whole chain and return the number of events in it."""
        return sum(1 for _ in self._verified())

    def read_events(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return the newest matching events, oldest first.

        The full chain is verified even when filters select a subset.
        """
        if not self.path.exists():
            return []
        newest: deque[AuditEvent] = deque(maxlen=limit)
        for event in self._verified():
            if subscription_id and event.subscription_id != subscription_id:
                continue
            if event_type and event.event_type != event_type.value:
                continue
            if since is not None and event.timestamp < since:
                continue
            newest.append(event)
        return list(newest)

    def summary(self, subscription_id: Optional[str] = None) -> dict:
        events = self.read_events(subscription_id=subscription_id, limit=10_000)
        settled = [e for e in events if e.event_type == EventType.CHARGE_SETTLED.value]
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "charges_settled": len(settled),
            "settled_amount": sum(e.amount or 0 for e in settled),
            "last_event": events[-1].to_json() if events else None,
        }
