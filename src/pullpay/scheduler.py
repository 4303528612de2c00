"""
Recurring-charge scheduler.

Each Active subscription owns at most one armed timer. Whoever holds
that timer owns the next wake-up, and a per-subscription lock keeps
attempts for one subscription strictly sequential. Different
subscriptions charge concurrently on their own timer threads.

State changes go through the store with compare-and-set, re-reading on
conflict, so a pause or cancel racing an in-flight charge is never lost.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Callable, Optional, Protocol

from .audit import AuditTrail, EventType
from .config import RetryPolicy
from .errors import StoreError, SubscriptionStateError, VersionConflictError
from .executor import ChargeOutcome, PaymentExecutor, Rejected, Settled, TransientFailure
from .store import SubscriptionStore
from .subscription import AttemptOutcome, ChargeAttempt, Subscription, SubscriptionStatus
from .verifier import RejectReason

logger = logging.getLogger(__name__)

MAX_CAS_RETRIES = 16


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(max(0.0, delay), fn)
    timer.daemon = True
    timer.start()
    return timer


class _Arming:
    """Identity token for one armed wake-up."""

    __slots__ = ("handle",)

    def __init__(self):
        self.handle: Optional[TimerHandle] = None


def update_subscription(
    store: SubscriptionStore,
    subscription_id: str,
    mutate: Callable[[Subscription], bool],
) -> tuple[Subscription, bool]:
    """Read-modify-write with compare-and-set. ``mutate`` returns False for no change."""
    for _ in range(MAX_CAS_RETRIES):
        current = store.get(subscription_id)
        candidate = dataclasses.replace(current)
        if not mutate(candidate):
            return current, False
        try:
            return store.compare_and_set(candidate, current.version), True
        except VersionConflictError:
            logger.debug("CAS conflict on %s, retrying", subscription_id)
    raise StoreError(f"Gave up updating {subscription_id} after {MAX_CAS_RETRIES} version conflicts")


def create_subscription(store: SubscriptionStore, audit: AuditTrail, subscription: Subscription) -> Subscription:
    """Persist a validated subscription and record its creation."""
    stored = store.put(subscription)
    audit.log(
        EventType.SUBSCRIPTION_CREATED,
        subscription_id=stored.id,
        payer=stored.payer,
        payee=stored.payee,
        amount=stored.charge_amount,
        details={
            "interval": stored.interval,
            "total_charges": stored.total_charges,
            "mode": stored.mode.value,
        },
    )
    logger.info("Subscription %s created (%d x %d)", stored.id, stored.total_charges, stored.charge_amount)
    return stored


def pause_subscription(store: SubscriptionStore, audit: AuditTrail, subscription_id: str) -> tuple[Subscription, bool]:
    """Active -> Paused. Pausing a paused subscription is a no-op."""

    def mutate(s: Subscription) -> bool:
        if s.status == SubscriptionStatus.PAUSED:
            return False
        if s.status != SubscriptionStatus.ACTIVE:
            raise SubscriptionStateError(f"Cannot pause {s.id} in status {s.status.value}")
        s.status = SubscriptionStatus.PAUSED
        return True

    subscription, changed = update_subscription(store, subscription_id, mutate)
    if changed:
        audit.log(EventType.SUBSCRIPTION_PAUSED, subscription_id=subscription_id)
        logger.info("Subscription %s paused", subscription_id)
    return subscription, changed


def resume_subscription(store: SubscriptionStore, audit: AuditTrail, subscription_id: str) -> tuple[Subscription, bool]:
    """Paused -> Active. Resuming an active subscription is a no-op."""

    def mutate(s: Subscription) -> bool:
        if s.status == SubscriptionStatus.ACTIVE:
            return False
        if s.status != SubscriptionStatus.PAUSED:
            raise SubscriptionStateError(f"Cannot resume {s.id} in status {s.status.value}")
        s.status = SubscriptionStatus.ACTIVE
        return True

    subscription, changed = update_subscription(store, subscription_id, mutate)
    if changed:
        audit.log(EventType.SUBSCRIPTION_RESUMED, subscription_id=subscription_id)
        logger.info("Subscription %s resumed", subscription_id)
    return subscription, changed


def cancel_subscription(store: SubscriptionStore, audit: AuditTrail, subscription_id: str) -> tuple[Subscription, bool]:
    """Active/Paused -> Cancelled. The record is archived, never deleted."""

    def mutate(s: Subscription) -> bool:
        if s.status == SubscriptionStatus.CANCELLED:
            return False
        if s.status.is_terminal:
            raise SubscriptionStateError(f"Cannot cancel {s.id} in status {s.status.value}")
        s.status = SubscriptionStatus.CANCELLED
        return True

    subscription, changed = update_subscription(store, subscription_id, mutate)
    if changed:
        audit.log(EventType.SUBSCRIPTION_CANCELLED, subscription_id=subscription_id)
        logger.info("Subscription %s cancelled", subscription_id)
    return subscription, changed


class SubscriptionScheduler:
    def __init__(
        self,
        store: SubscriptionStore,
        executor: PaymentExecutor,
        audit: AuditTrail,
        *,
        clock: Callable[[], float] = time.time,
        timer_factory: TimerFactory = thread_timer,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.executor = executor
        self.audit = audit
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timers: dict[str, _Arming] = {}
        self._charge_locks: dict[str, threading.Lock] = {}
        self._closed = False

    # ── Public operations ────────────────────────────────────────

    def add(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription and arm its first charge (due immediately)."""
        stored = create_subscription(self.store, self.audit, subscription)
        if stored.status == SubscriptionStatus.ACTIVE:
            self._arm(stored)
        return stored

    def start(self) -> int:
        """Re-arm every Active subscription in the store. Returns how many were armed."""
        armed = 0
        for subscription in self.store.list(status=SubscriptionStatus.ACTIVE):
            self._arm(subscription)
            self.executor.prepare_proofs(subscription)
            armed += 1
        logger.info("Scheduler started with %d active subscriptions", armed)
        return armed

    def pause(self, subscription_id: str) -> Subscription:
        """Stop future charges without touching progress."""
        subscription, _ = pause_subscription(self.store, self.audit, subscription_id)
        self._disarm(subscription_id)
        return subscription

    def resume(self, subscription_id: str) -> Subscription:
        """Re-arm for the remaining wait, or now if overdue. A running retry backoff still applies."""
        subscription, changed = resume_subscription(self.store, self.audit, subscription_id)
        if changed:
            self._arm(subscription)
        return subscription

    def cancel(self, subscription_id: str) -> Subscription:
        """Archive the subscription. An in-flight attempt still runs to completion."""
        subscription, _ = cancel_subscription(self.store, self.audit, subscription_id)
        self._disarm(subscription_id)
        return subscription

    def reconcile(self) -> int:
        """
        Bring timers in line with stored status.

        Picks up pause/resume/cancel made by another process and re-arms
        Active subscriptions whose task crashed. Returns the number of
        timers armed or disarmed.
        """
        changes = 0
        for subscription in self.store.list():
            armed = self.is_armed(subscription.id)
            if subscription.status == SubscriptionStatus.ACTIVE and not armed:
                if self._is_charging(subscription.id):
                    continue
                self._arm(subscription)
                changes += 1
            elif subscription.status != SubscriptionStatus.ACTIVE and armed:
                self._disarm(subscription.id)
                changes += 1
        return changes

    def run_now(self, subscription_id: str) -> Optional[ChargeOutcome]:
        """Charge a due subscription on the caller's thread. Faults propagate."""
        self._disarm(subscription_id)
        return self._charge(subscription_id)

    def is_armed(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._timers

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            armings = list(self._timers.values())
            self._timers.clear()
        for arming in armings:
            if arming.handle is not None:
                arming.handle.cancel()

    # ── Timers ───────────────────────────────────────────────────

    def _due_at(self, subscription: Subscription) -> float:
        """Next wake-up: the period boundary, or later while a retry backoff is running."""
        due = subscription.next_charge_at
        if subscription.attempts_in_period > 0:
            tried = [
                a.at for a in self.store.attempts(subscription.id)
                if a.charge_index == subscription.charges_completed
            ]
            if tried:
                due = max(due, max(tried) + self.retry_policy.delay_for(subscription.attempts_in_period))
        return due

    def _arm(self, subscription: Subscription, delay: Optional[float] = None) -> None:
        if delay is None:
            delay = max(0.0, self._due_at(subscription) - self._clock())
        arming = _Arming()
        with self._lock:
            if self._closed:
                return
            previous = self._timers.pop(subscription.id, None)
            if previous is not None and previous.handle is not None:
                previous.handle.cancel()
            self._timers[subscription.id] = arming
            arming.handle = self._timer_factory(delay, lambda: self._on_wake(subscription.id, arming))
        logger.debug("Armed %s in %.1fs", subscription.id, delay)

    def _disarm(self, subscription_id: str) -> None:
        with self._lock:
            arming = self._timers.pop(subscription_id, None)
        if arming is not None and arming.handle is not None:
            arming.handle.cancel()

    def _on_wake(self, subscription_id: str, arming: _Arming) -> None:
        with self._lock:
            if self._timers.get(subscription_id) is not arming:
                return
            del self._timers[subscription_id]
        try:
            self._charge(subscription_id)
        except Exception:
            logger.exception("Charge task for %s crashed; subscription left as stored", subscription_id)

    def _charge_lock(self, subscription_id: str) -> threading.Lock:
        with self._lock:
            return self._charge_locks.setdefault(subscription_id, threading.Lock())

    def _is_charging(self, subscription_id: str) -> bool:
        return self._charge_lock(subscription_id).locked()

    # ── Charging ─────────────────────────────────────────────────

    def _charge(self, subscription_id: str) -> Optional[ChargeOutcome]:
        with self._charge_lock(subscription_id):
            if self.is_armed(subscription_id):
                # Re-armed while we waited for the lock; that timer owns the next wake-up.
                return None

            subscription = self.store.get(subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                logger.debug("Skipping %s: status %s", subscription_id, subscription.status.value)
                return None
            started = self._clock()
            if started < subscription.next_charge_at:
                self._arm(subscription)
                return None

            attempt_no = subscription.attempts_in_period + 1

            def claim(s: Subscription) -> bool:
                if s.status != SubscriptionStatus.ACTIVE:
                    return False
                s.attempts_in_period = attempt_no
                return True

            subscription, claimed = update_subscription(self.store, subscription_id, claim)
            if not claimed:
                return None

            charge_index = subscription.charges_completed
            outcome = self.executor.execute(
                subscription,
                attempt_no,
                now=started,
                on_submitted=lambda tx_hash: self._record_pending(subscription_id, tx_hash),
            )
            finished = self._clock()
            self._record_attempt(subscription, charge_index, attempt_no, outcome, finished)

            if isinstance(outcome, Settled):
                self._apply_settled(subscription_id, charge_index, finished)
            elif isinstance(outcome, Rejected):
                self._fail(subscription_id, outcome.reason, outcome.detail)
            else:
                self._apply_transient(subscription_id, attempt_no, outcome)
            return outcome

    def _apply_settled(self, subscription_id: str, charge_index: int, settled_at: float) -> None:
        def mutate(s: Subscription) -> bool:
            if s.charges_completed != charge_index:
                return False
            s.charges_completed += 1
            s.last_charged_at = settled_at
            s.next_charge_at = settled_at + s.interval
            s.attempts_in_period = 0
            s.pending_reference = None
            s.failure_reason = None
            s.failure_detail = None
            if s.charges_completed == s.total_charges:
                s.status = SubscriptionStatus.COMPLETED
            return True

        subscription, _ = update_subscription(self.store, subscription_id, mutate)
        logger.info(
            "Subscription %s charged %d/%d",
            subscription_id,
            subscription.charges_completed,
            subscription.total_charges,
        )
        if subscription.status == SubscriptionStatus.COMPLETED:
            self.audit.log(
                EventType.SUBSCRIPTION_COMPLETED,
                subscription_id=subscription_id,
                details={"charges_completed": subscription.charges_completed},
            )
        elif subscription.status == SubscriptionStatus.ACTIVE:
            self._arm(subscription)
            self.executor.prepare_proofs(subscription)

    def _apply_transient(self, subscription_id: str, attempt_no: int, outcome: TransientFailure) -> None:
        if self.retry_policy.exhausted(attempt_no):
            self._fail(
                subscription_id,
                RejectReason.RETRIES_EXHAUSTED,
                f"{attempt_no} attempts failed; last error: {outcome.detail}",
            )
            return
        delay = max(self.retry_policy.delay_for(attempt_no), outcome.retry_after)
        delay = min(delay, self.retry_policy.max_delay_seconds)
        self.audit.log(
            EventType.CHARGE_RETRY,
            subscription_id=subscription_id,
            success=False,
            reason=outcome.detail,
            details={"attempt_no": attempt_no, "retry_in": delay},
        )
        logger.warning(
            "Charge for %s failed transiently (attempt %d), retrying in %.1fs: %s",
            subscription_id,
            attempt_no,
            delay,
            outcome.detail,
        )
        subscription = self.store.get(subscription_id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            self._arm(subscription, delay=delay)

    def _fail(self, subscription_id: str, reason: RejectReason, detail: str) -> None:
        def mutate(s: Subscription) -> bool:
            if s.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED}:
                s.status = SubscriptionStatus.FAILED
            s.failure_reason = reason.value
            s.failure_detail = detail
            return True

        subscription, _ = update_subscription(self.store, subscription_id, mutate)
        self._disarm(subscription_id)
        self.audit.log(
            EventType.SUBSCRIPTION_FAILED,
            subscription_id=subscription_id,
            success=False,
            reason=reason.value,
            details={
                "detail": detail,
                "charges_completed": subscription.charges_completed,
                "pending_reference": subscription.pending_reference,
            },
        )
        logger.warning(
            "Subscription %s failed after %d charges: %s (%s)",
            subscription_id,
            subscription.charges_completed,
            reason.value,
            detail,
        )

    def _record_pending(self, subscription_id: str, tx_hash: str) -> None:
        def mutate(s: Subscription) -> bool:
            s.pending_reference = tx_hash
            return True

        update_subscription(self.store, subscription_id, mutate)

    def _record_attempt(
        self,
        subscription: Subscription,
        charge_index: int,
        attempt_no: int,
        outcome: ChargeOutcome,
        at: float,
    ) -> None:
        if isinstance(outcome, Settled):
            attempt = ChargeAttempt(
                subscription.id, charge_index, attempt_no, AttemptOutcome.SETTLED, at,
                subscription.charge_amount, reference=outcome.reference,
            )
        elif isinstance(outcome, Rejected):
            attempt = ChargeAttempt(
                subscription.id, charge_index, attempt_no, AttemptOutcome.REJECTED, at,
                subscription.charge_amount, reason=outcome.reason.value, detail=outcome.detail,
            )
        else:
            attempt = ChargeAttempt(
                subscription.id, charge_index, attempt_no, AttemptOutcome.TRANSIENT, at,
                subscription.charge_amount, detail=outcome.detail,
            )
        self.store.record_attempt(attempt)
