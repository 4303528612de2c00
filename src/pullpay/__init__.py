"""
PullPay — Recurring pull payments against payer-signed permits.

Payer signs one bounded permit → Scheduler pulls each period →
Every charge verified, settled at most once, and audited.
"""

__version__ = "0.1.0"

from .permit import (
    CapMode,
    ExecutionDomain,
    LocalKeySigner,
    Permit,
    build_permit,
    permit_digest,
    recover_permit_signer,
    verify_permit_signature,
)
from .verifier import PermitVerifier, RejectReason, Route, VerificationResult
from .nullifiers import InMemoryNullifierLedger, SqliteNullifierLedger, charge_tag, derive_nullifier
from .delegation import ActionDescriptor, Attestation, DelegationAnchor, AuthorizationResult
from .proofs import ProofBundle, ProofSource, ProofStrategy, PrecomputedProofPool
from .subscription import (
    DelegationBinding,
    SettlementMode,
    Subscription,
    SubscriptionStatus,
    new_subscription,
)
from .encryption import SubscriptionCipher
from .store import InMemorySubscriptionStore, SqliteSubscriptionStore
from .relayer import Receipt, RelayerGateway
from .executor import PaymentExecutor, Rejected, Settled, TransientFailure
from .scheduler import SubscriptionScheduler
from .config import PullPayConfig, RetryPolicy
from .audit import AuditTrail, EventType

__all__ = [
    "CapMode", "ExecutionDomain", "LocalKeySigner", "Permit", "build_permit",
    "permit_digest", "recover_permit_signer", "verify_permit_signature",
    "PermitVerifier", "RejectReason", "Route", "VerificationResult",
    "InMemoryNullifierLedger", "SqliteNullifierLedger", "charge_tag", "derive_nullifier",
    "ActionDescriptor", "Attestation", "DelegationAnchor", "AuthorizationResult",
    "ProofBundle", "ProofSource", "ProofStrategy", "PrecomputedProofPool",
    "DelegationBinding", "SettlementMode", "Subscription", "SubscriptionStatus", "new_subscription",
    "InMemorySubscriptionStore", "SqliteSubscriptionStore", "SubscriptionCipher",
    "Receipt", "RelayerGateway",
    "PaymentExecutor", "Rejected", "Settled", "TransientFailure",
    "SubscriptionScheduler",
    "PullPayConfig", "RetryPolicy",
    "AuditTrail", "EventType",
]
