"""
Permit verification.

``PermitVerifier.verify`` is a pure predicate: it never touches the
nullifier ledger or the network, and it reports expected rejections as a
``VerificationResult`` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import InvalidInputError
from .permit import CapMode, ExecutionDomain, Permit, ZERO_ADDRESS, is_address, normalize_address


class RejectReason(str, Enum):
    EXPIRED = "expired"
    AMOUNT_OVER_CAP = "amount_over_cap"
    INVALID_RECIPIENT = "invalid_recipient"
    DOMAIN_MISMATCH = "domain_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    NULLIFIER_USED = "nullifier_used"
    STALE_OR_UNKNOWN_ROOT = "stale_or_unknown_root"
    BAD_ATTESTATION = "bad_attestation"
    PROOF_INVALID = "proof_invalid"
    PROOF_FAILED = "proof_failed"
    DELEGATION_UNAVAILABLE = "delegation_unavailable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REVERTED = "reverted"


class Route(str, Enum):
    PUBLIC = "public"
    SHIELDED = "shielded"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: Optional[RejectReason] = None
    detail: str = ""
    route: Optional[Route] = None

    @classmethod
    def accept(cls, route: Route) -> VerificationResult:
        return cls(ok=True, route=route, detail="Permit usable")

    @classmethod
    def reject(cls, reason: RejectReason, detail: str) -> VerificationResult:
        return cls(ok=False, reason=reason, detail=detail)


class PermitVerifier:
    """
    Checks a stored permit against one proposed charge.

    The cap interpretation comes from the execution domain version, so a
    deployment enforces exactly one mode. In lifetime mode the caller
    passes ``spent_so_far`` (sum of settled charges under this permit).
    """

    def __init__(self, domain: ExecutionDomain):
        self.domain = domain
        self.cap_mode = domain.cap_mode

    def verify(
        self,
        permit: Permit,
        proposed_amount: int,
        proposed_payee: Optional[str],
        now: float,
        *,
        spent_so_far: int = 0,
    ) -> VerificationResult:
        if now > permit.expiry:
            return VerificationResult.reject(
                RejectReason.EXPIRED,
                f"Permit expired at {permit.expiry}",
            )

        # Malformed amounts are caller errors, but only for a live permit.
        if proposed_amount <= 0:
            raise InvalidInputError("proposed_amount must be positive")
        if spent_so_far < 0:
            raise InvalidInputError("spent_so_far must be non-negative")

        if self.cap_mode == CapMode.LIFETIME:
            if spent_so_far + proposed_amount > permit.max_amount:
                return VerificationResult.reject(
                    RejectReason.AMOUNT_OVER_CAP,
                    f"Charge {proposed_amount} after {spent_so_far} spent exceeds lifetime cap {permit.max_amount}",
                )
        elif proposed_amount > permit.max_amount:
            return VerificationResult.reject(
                RejectReason.AMOUNT_OVER_CAP,
                f"Charge {proposed_amount} exceeds per-charge cap {permit.max_amount}",
            )

        if permit.is_shielded:
            route = Route.SHIELDED
        else:
            ok, detail = _check_public_payee(permit, proposed_payee)
            if not ok:
                return VerificationResult.reject(RejectReason.INVALID_RECIPIENT, detail)
            route = Route.PUBLIC

        if not _same_domain(permit.domain, self.domain):
            return VerificationResult.reject(
                RejectReason.DOMAIN_MISMATCH,
                f"Permit domain {permit.domain.to_eip712()} does not match {self.domain.to_eip712()}",
            )

        return VerificationResult.accept(route)


def _check_public_payee(permit: Permit, proposed_payee: Optional[str]) -> tuple[bool, str]:
    if proposed_payee is None or not is_address(proposed_payee):
        return False, "Permit pays a public address but no public payee address was supplied"
    payee = normalize_address(proposed_payee)
    if payee == ZERO_ADDRESS:
        return False, "Public payee cannot be the zero address"
    if payee != permit.payee:
        return False, f"Payee {payee} is not the payee authorized by the permit"
    return True, ""


def _same_domain(a: ExecutionDomain, b: ExecutionDomain) -> bool:
    return (
        a.protocol_name == b.protocol_name
        and a.version == b.version
        and a.chain_id == b.chain_id
        and a.verifying_contract.lower() == b.verifying_contract.lower()
    )
