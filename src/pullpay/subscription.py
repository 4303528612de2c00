"""
Subscription records and intake validation.

A Subscription embeds the payer's permit and tracks billing progress.
``new_subscription`` validates everything up front so malformed input
never reaches the scheduler.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from eth_utils import keccak

from .errors import InvalidInputError
from .permit import CapMode, Permit, is_address, normalize_address, normalize_bytes32, verify_permit_signature
from .proofs import ProofBundle


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {SubscriptionStatus.COMPLETED, SubscriptionStatus.FAILED, SubscriptionStatus.CANCELLED}


class SettlementMode(str, Enum):
    PUBLIC = "public"
    SHIELDED = "shielded"
    DELEGATED = "delegated"


class AttemptOutcome(str, Enum):
    SETTLED = "settled"
    REJECTED = "rejected"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class DelegationBinding:
    """Leaf commitment of the payer's private policy. The policy stays off-chain."""

    leaf: str
    policy_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return {"leaf": self.leaf, "policy_ref": self.policy_ref}

    @classmethod
    def from_dict(cls, d: dict) -> DelegationBinding:
        return cls(leaf=normalize_bytes32(d["leaf"], "leaf"), policy_ref=d.get("policy_ref"))


@dataclass
class ChargeAttempt:
    """One execution of one period's charge."""

    subscription_id: str
    charge_index: int
    attempt_no: int
    outcome: AttemptOutcome
    at: float
    amount: int
    reference: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "charge_index": self.charge_index,
            "attempt_no": self.attempt_no,
            "outcome": self.outcome.value,
            "at": self.at,
            "amount": self.amount,
            "reference": self.reference,
            "reason": self.reason,
            "detail": self.detail,
        }


@dataclass
class Subscription:
    id: str
    payer: str
    payee: str
    charge_amount: int
    interval: float
    total_charges: int
    permit: Permit
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    mode: SettlementMode = SettlementMode.PUBLIC
    charges_completed: int = 0
    next_charge_at: float = 0.0
    last_charged_at: Optional[float] = None
    proof_bundle: Optional[ProofBundle] = None
    delegation: Optional[DelegationBinding] = None
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    attempts_in_period: int = 0
    pending_reference: Optional[str] = None
    version: int = 0
    created_at: float = 0.0

    @property
    def remaining_charges(self) -> int:
        return self.total_charges - self.charges_completed

    @property
    def spent(self) -> int:
        """Sum of settled charges under this permit."""
        return self.charges_completed * self.charge_amount

    @property
    def next_charge_index(self) -> int:
        return self.charges_completed

    def is_due(self, now: float) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and now >= self.next_charge_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payer": self.payer,
            "payee": self.payee,
            "charge_amount": self.charge_amount,
            "interval": self.interval,
            "total_charges": self.total_charges,
            "permit": self.permit.to_dict(),
            "status": self.status.value,
            "mode": self.mode.value,
            "charges_completed": self.charges_completed,
            "next_charge_at": self.next_charge_at,
            "last_charged_at": self.last_charged_at,
            "proof_bundle": self.proof_bundle.to_dict() if self.proof_bundle else None,
            "delegation": self.delegation.to_dict() if self.delegation else None,
            "failure_reason": self.failure_reason,
            "failure_detail": self.failure_detail,
            "attempts_in_period": self.attempts_in_period,
            "pending_reference": self.pending_reference,
            "version": self.version,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Subscription:
        return cls(
            id=d["id"],
            payer=d["payer"],
            payee=d["payee"],
            charge_amount=int(d["charge_amount"]),
            interval=float(d["interval"]),
            total_charges=int(d["total_charges"]),
            permit=Permit.from_dict(d["permit"]),
            status=SubscriptionStatus(d["status"]),
            mode=SettlementMode(d.get("mode", SettlementMode.PUBLIC.value)),
            charges_completed=int(d.get("charges_completed", 0)),
            next_charge_at=float(d.get("next_charge_at", 0.0)),
            last_charged_at=d.get("last_charged_at"),
            proof_bundle=ProofBundle.from_dict(d["proof_bundle"]) if d.get("proof_bundle") else None,
            delegation=DelegationBinding.from_dict(d["delegation"]) if d.get("delegation") else None,
            failure_reason=d.get("failure_reason"),
            failure_detail=d.get("failure_detail"),
            attempts_in_period=int(d.get("attempts_in_period", 0)),
            pending_reference=d.get("pending_reference"),
            version=int(d.get("version", 0)),
            created_at=float(d.get("created_at", 0.0)),
        )


def subscription_id(payer: str, created_at: float, salt: Optional[bytes] = None) -> str:
    """``sub_`` + 16 hex chars of keccak(payer || timestamp || salt); reveals nothing about the payer."""
    salt = salt if salt is not None else secrets.token_bytes(32)
    packed = bytes.fromhex(normalize_address(payer)[2:]) + int(created_at).to_bytes(32, "big") + salt
    return "sub_" + keccak(packed).hex()[:16]


def new_subscription(
    permit: Permit,
    payer: str,
    payee: str,
    charge_amount: int,
    interval: float,
    total_charges: int,
    now: float,
    *,
    proof_bundle: Optional[ProofBundle] = None,
    delegation: Optional[DelegationBinding] = None,
    salt: Optional[bytes] = None,
) -> Subscription:
    """Validate a payer's authorization and return an Active subscription due immediately."""
    payer = normalize_address(payer)

    if isinstance(charge_amount, bool) or not isinstance(charge_amount, int) or charge_amount <= 0:
        raise InvalidInputError("charge_amount must be a positive integer")
    if isinstance(total_charges, bool) or not isinstance(total_charges, int) or total_charges <= 0:
        raise InvalidInputError("total_charges must be a positive integer")
    if interval <= 0:
        raise InvalidInputError("interval must be positive")

    if permit.expiry <= now:
        raise InvalidInputError(f"Permit already expired at {permit.expiry}")

    ok, reason = verify_permit_signature(permit, payer)
    if not ok:
        raise InvalidInputError(reason)

    if permit.cap_mode == CapMode.LIFETIME:
        if charge_amount * total_charges > permit.max_amount:
            raise InvalidInputError(
                f"{total_charges} charges of {charge_amount} exceed the permit's lifetime cap {permit.max_amount}"
            )
    elif charge_amount > permit.max_amount:
        raise InvalidInputError(f"charge_amount {charge_amount} exceeds per-charge cap {permit.max_amount}")

    if permit.is_shielded:
        payee = normalize_bytes32(payee, "payee")
        if payee != permit.payee_commitment:
            raise InvalidInputError("payee must equal the permit's payee commitment")
        mode = SettlementMode.DELEGATED if delegation is not None else SettlementMode.SHIELDED
    else:
        if not is_address(payee):
            raise InvalidInputError("Permit pays a public address; payee must be an address")
        payee = normalize_address(payee)
        if payee != permit.payee:
            raise InvalidInputError("payee must equal the permit's payee")
        if delegation is not None:
            raise InvalidInputError("Delegation-anchored subscriptions require a payee commitment")
        mode = SettlementMode.PUBLIC

    if proof_bundle is not None:
        proof_bundle.validate()

    return Subscription(
        id=subscription_id(payer, now, salt),
        payer=payer,
        payee=payee,
        charge_amount=charge_amount,
        interval=float(interval),
        total_charges=total_charges,
        permit=permit,
        status=SubscriptionStatus.ACTIVE,
        mode=mode,
        next_charge_at=now,
        proof_bundle=proof_bundle,
        delegation=delegation,
        created_at=now,
    )
