"""
Charge execution against the transfer primitive.

Flow for one attempt:
1. Replay check: a charge tag already in the ledger means this period settled
2. Resolve a submission left pending by an earlier attempt
3. Verify the permit against the proposed charge
4. Delegation anchor check (delegated subscriptions only)
5. Obtain a proof bundle
6. Build the transfer call and hand it to the relayer
7. Record the charge tag with the settlement reference
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .audit import AuditTrail, EventType
from .delegation import ActionDescriptor, DelegationAnchor, DelegationMaterialSource, RootSource
from .errors import (
    AlreadyUsedError,
    AttestationDeniedError,
    ProofGenerationError,
    RetryableError,
    TransactionRevertedError,
)
from .nullifiers import NullifierLedger, charge_tag, subscription_secret
from .permit import CapMode, ZERO_BYTES32
from .proofs import ProofBundle, ProofRequest, ProofSource
from .relayer import RelayerGateway
from .subscription import SettlementMode, Subscription
from .transfer import TAKE, TAKE_SHIELDED, TAKE_WITH_DELEGATION_ANCHOR, ChargeCall, classify_revert
from .verifier import PermitVerifier, RejectReason, Route

logger = logging.getLogger(__name__)

# Delegation counters are charge_index * stride + attempt_no, so a retry
# never reuses a (leaf, counter) pair consumed by an earlier attempt.
DELEGATION_COUNTER_STRIDE = 2**16


@dataclass(frozen=True)
class Settled:
    reference: str
    block_number: Optional[int] = None
    replayed: bool = False


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    detail: str = ""


@dataclass(frozen=True)
class TransientFailure:
    detail: str
    retry_after: float = 0.0


ChargeOutcome = Union[Settled, Rejected, TransientFailure]


def delegation_counter(charge_index: int, attempt_no: int) -> int:
    if not 0 < attempt_no < DELEGATION_COUNTER_STRIDE:
        raise ValueError(f"attempt_no must be in 1..{DELEGATION_COUNTER_STRIDE - 1}")
    return charge_index * DELEGATION_COUNTER_STRIDE + attempt_no


@dataclass
class _DelegationGrant:
    leaf: str
    nullifier: str
    root: str
    merkle_proof: list[str] = field(default_factory=list)
    attestation: str = ""


class PaymentExecutor:
    """Runs one charge attempt and classifies the result."""

    def __init__(
        self,
        verifier: PermitVerifier,
        relayer: RelayerGateway,
        proofs: ProofSource,
        ledger: NullifierLedger,
        audit: AuditTrail,
        *,
        anchor: Optional[DelegationAnchor] = None,
        root_source: Optional[RootSource] = None,
        delegation_source: Optional[DelegationMaterialSource] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.verifier = verifier
        self.relayer = relayer
        self.proofs = proofs
        self.ledger = ledger
        self.audit = audit
        self.anchor = anchor
        self.root_source = root_source
        self.delegation_source = delegation_source
        self._clock = clock

    @property
    def adapter_address(self) -> str:
        return self.verifier.domain.verifying_contract

    def execute(
        self,
        subscription: Subscription,
        attempt_no: int,
        *,
        now: Optional[float] = None,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> ChargeOutcome:
        now = self._clock() if now is None else now
        charge_index = subscription.charges_completed
        amount = subscription.charge_amount
        tag = charge_tag(subscription.permit, charge_index)

        settled = self.ledger.lookup(tag)
        if settled is not None:
            logger.warning(
                "Charge %s#%d already settled as %s; not charging again",
                subscription.id,
                charge_index,
                settled.reference,
            )
            return Settled(reference=settled.reference or "", replayed=True)

        if subscription.pending_reference:
            outcome = self._resolve_pending(subscription, charge_index, tag)
            if outcome is not None:
                return outcome

        self.audit.log(
            EventType.CHARGE_INITIATED,
            subscription_id=subscription.id,
            payee=subscription.payee,
            amount=amount,
            charge_index=charge_index,
            details={"attempt_no": attempt_no, "mode": subscription.mode.value},
        )

        verification = self.verifier.verify(
            subscription.permit,
            amount,
            subscription.payee,
            now,
            spent_so_far=subscription.spent,
        )
        if not verification.ok:
            return self._rejected(subscription, charge_index, verification.reason, verification.detail)

        delegated = subscription.mode == SettlementMode.DELEGATED
        if delegated and verification.route != Route.SHIELDED:
            return self._rejected(
                subscription,
                charge_index,
                RejectReason.INVALID_RECIPIENT,
                "Delegated settlement requires a payee commitment",
            )

        grant: Optional[_DelegationGrant] = None
        if delegated:
            result = self._authorize_delegation(subscription, charge_index, attempt_no)
            if not isinstance(result, _DelegationGrant):
                return result
            grant = result

        request = self._proof_request(subscription, grant.root if grant else None)
        try:
            bundle = self.proofs.obtain(
                request,
                charge_index=charge_index,
                initial_bundle=subscription.proof_bundle,
            )
        except ProofGenerationError as e:
            return self._rejected(subscription, charge_index, RejectReason.PROOF_FAILED, str(e))
        except RetryableError as e:
            return TransientFailure(detail=f"Proof unavailable: {e}", retry_after=e.retry_after)

        call = self.build_call(subscription, verification.route, bundle, grant)

        def _submitted(tx_hash: str) -> None:
            self.audit.log(
                EventType.CHARGE_SUBMITTED,
                subscription_id=subscription.id,
                amount=amount,
                charge_index=charge_index,
                reference=tx_hash,
            )
            if on_submitted is not None:
                on_submitted(tx_hash)

        try:
            receipt = self.relayer.submit(call, on_submitted=_submitted)
        except TransactionRevertedError as e:
            return self._rejected(subscription, charge_index, classify_revert(e.reason), e.reason)
        except RetryableError as e:
            logger.warning("Transient failure charging %s: %s", call.label, e)
            return TransientFailure(detail=str(e), retry_after=e.retry_after)

        self._record_settlement(subscription, charge_index, tag, receipt.tx_hash)
        return Settled(reference=receipt.tx_hash, block_number=receipt.block_number)

    def build_call(
        self,
        subscription: Subscription,
        route: Route,
        bundle: ProofBundle,
        grant: Optional[_DelegationGrant] = None,
    ) -> ChargeCall:
        permit = subscription.permit
        head = (
            bytes.fromhex(bundle.proof[2:]),
            [_b32(v) for v in bundle.public_inputs],
            permit.as_call_tuple(),
        )
        if grant is not None:
            method = TAKE_WITH_DELEGATION_ANCHOR
            args = head + (
                _b32(permit.payee_commitment),
                subscription.charge_amount,
                _b32(grant.leaf),
                _b32(grant.nullifier),
                [_b32(p) for p in grant.merkle_proof],
                bytes.fromhex(grant.attestation[2:]),
            )
        elif route == Route.SHIELDED:
            method = TAKE_SHIELDED
            args = head + (
                _b32(permit.payee_commitment),
                subscription.charge_amount,
                bundle.range_min or 0,
                bundle.range_max or 0,
                _b32(bundle.amount_commitment or ZERO_BYTES32),
            )
        else:
            method = TAKE
            args = head + (subscription.payee, subscription.charge_amount)
        return ChargeCall(
            to=self.adapter_address,
            method=method,
            args=args,
            subscription_id=subscription.id,
            charge_index=subscription.charges_completed,
        )

    def _resolve_pending(
        self,
        subscription: Subscription,
        charge_index: int,
        tag: str,
    ) -> Optional[ChargeOutcome]:
        """Adopt the outcome of a broadcast whose receipt we never saw."""
        reference = subscription.pending_reference
        try:
            receipt = self.relayer.transaction_status(reference)
        except RetryableError as e:
            return TransientFailure(detail=f"Cannot check pending {reference}: {e}", retry_after=e.retry_after)
        if receipt is None:
            return TransientFailure(detail=f"Submission {reference} still pending")
        if receipt.succeeded:
            self._record_settlement(subscription, charge_index, tag, receipt.tx_hash)
            return Settled(reference=receipt.tx_hash, block_number=receipt.block_number, replayed=True)
        reason = receipt.revert_reason or "execution reverted"
        return self._rejected(subscription, charge_index, classify_revert(reason), reason)

    def _authorize_delegation(
        self,
        subscription: Subscription,
        charge_index: int,
        attempt_no: int,
    ) -> Union[_DelegationGrant, ChargeOutcome]:
        if self.anchor is None or self.root_source is None or self.delegation_source is None:
            return self._rejected(
                subscription,
                charge_index,
                RejectReason.DELEGATION_UNAVAILABLE,
                "Executor has no delegation anchor configured",
            )
        if subscription.delegation is None:
            return self._rejected(
                subscription,
                charge_index,
                RejectReason.DELEGATION_UNAVAILABLE,
                "Subscription has no delegation leaf",
            )

        leaf = subscription.delegation.leaf
        action = ActionDescriptor(
            method=TAKE_WITH_DELEGATION_ANCHOR,
            recipient_or_commitment=subscription.permit.payee_commitment,
            amount=subscription.charge_amount,
            chain_id=self.verifier.domain.chain_id,
            adapter=self.adapter_address,
        )
        try:
            root = self.root_source.current_root()
            material = self.delegation_source.material_for(leaf, action)
        except AttestationDeniedError as e:
            return self._rejected(subscription, charge_index, RejectReason.BAD_ATTESTATION, str(e))
        except RetryableError as e:
            return TransientFailure(detail=f"Delegation material unavailable: {e}", retry_after=e.retry_after)

        result = self.anchor.authorize(
            leaf,
            delegation_counter(charge_index, attempt_no),
            root,
            material.merkle_proof,
            material.attestation,
            action=action,
            secret=subscription_secret(subscription.payer, subscription.id),
        )
        if not result.ok:
            return self._rejected(subscription, charge_index, result.reason, result.detail)

        self.audit.log(
            EventType.DELEGATION_AUTHORIZED,
            subscription_id=subscription.id,
            charge_index=charge_index,
            details={"attempt_no": attempt_no, "root": root},
        )
        return _DelegationGrant(
            leaf=leaf,
            nullifier=result.nullifier,
            root=root,
            merkle_proof=list(material.merkle_proof),
            attestation=material.attestation.signature,
        )

    def _record_settlement(self, subscription: Subscription, charge_index: int, tag: str, tx_hash: str) -> None:
        try:
            self.ledger.mark_used(tag, reference=tx_hash, context=f"{subscription.id}#{charge_index}")
        except AlreadyUsedError:
            existing = self.ledger.lookup(tag)
            logger.error(
                "Charge %s#%d settled as %s but was already recorded as %s",
                subscription.id,
                charge_index,
                tx_hash,
                existing.reference if existing else "?",
            )
        self.audit.log(
            EventType.CHARGE_SETTLED,
            subscription_id=subscription.id,
            payee=subscription.payee,
            amount=subscription.charge_amount,
            charge_index=charge_index,
            reference=tx_hash,
        )

    def _rejected(
        self,
        subscription: Subscription,
        charge_index: int,
        reason: RejectReason,
        detail: str,
    ) -> Rejected:
        logger.info("Charge %s#%d rejected: %s (%s)", subscription.id, charge_index, reason.value, detail)
        self.audit.log(
            EventType.CHARGE_REJECTED,
            subscription_id=subscription.id,
            amount=subscription.charge_amount,
            charge_index=charge_index,
            success=False,
            reason=reason.value,
            details={"detail": detail},
        )
        return Rejected(reason=reason, detail=detail)

    def _proof_request(self, subscription: Subscription, merkle_root: Optional[str] = None) -> ProofRequest:
        return ProofRequest(
            note_id=subscription.permit.note_id,
            amount=subscription.charge_amount,
            remaining_balance=self._remaining_authorization(subscription),
            nonce=subscription.permit.nonce,
            merkle_root=merkle_root,
        )

    def prepare_proofs(self, subscription: Subscription, depth: int = 1) -> int:
        """
        Pre-generate the proof for the subscription's next charge.

        Only the POOL strategy stores anything. Delegated charges and a
        first charge covered by the subscribe-time bundle are skipped.
        Prover errors are logged; the charge then proves fresh.
        """
        if subscription.mode == SettlementMode.DELEGATED or subscription.remaining_charges <= 0:
            return 0
        if subscription.next_charge_index == 0 and subscription.proof_bundle is not None:
            return 0
        try:
            return self.proofs.prepare(self._proof_request(subscription), depth)
        except (ProofGenerationError, RetryableError) as e:
            logger.warning("Could not pre-generate proof for %s: %s", subscription.id, e)
            return 0

    def _remaining_authorization(self, subscription: Subscription) -> int:
        permit = subscription.permit
        if permit.cap_mode == CapMode.LIFETIME:
            return max(0, permit.max_amount - subscription.spent - subscription.charge_amount)
        return max(0, permit.max_amount - subscription.charge_amount)


def _b32(value: str) -> bytes:
    return bytes.fromhex(value[2:])
