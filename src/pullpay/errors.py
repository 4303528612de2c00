"""
PullPay error types.

Expected rejections are returned as typed results, not raised. These
exceptions cover input errors, infrastructure failures and faults so
callers can decide to retry, fail the subscription or crash the task.
"""


class PullPayError(Exception):
    """Base error for all PullPay operations."""
    pass


# Input / configuration errors
class InvalidInputError(PullPayError, ValueError):
    """Malformed field or violated invariant detected before scheduling."""
    pass


class ConfigError(PullPayError):
    """Configuration is missing or malformed."""
    pass


class SigningRejectedError(PullPayError):
    """The signing agent declined to sign the permit."""
    pass


# Store errors
class StoreError(PullPayError):
    """Base error for durable store failures."""
    pass


class SubscriptionNotFoundError(StoreError):
    """No subscription stored under the given id."""
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class VersionConflictError(StoreError):
    """Compare-and-set lost against a concurrent writer."""
    def __init__(self, subscription_id: str, expected: int, actual: int):
        self.subscription_id = subscription_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {subscription_id}: expected {expected}, found {actual}"
        )


class StoreCorruptionError(StoreError):
    """Stored record failed its integrity check."""
    pass


class AlreadyUsedError(PullPayError):
    """A nullifier or nonce tag has already been consumed."""
    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(f"Tag already used: {tag}")


class SubscriptionStateError(PullPayError):
    """Requested lifecycle transition is not allowed from the current status."""
    pass


# Settlement errors
class RetryableError(PullPayError):
    """Error that may succeed if retried."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class ProofUnavailableError(RetryableError):
    """Proof subsystem is temporarily unreachable or overloaded."""
    pass


class RelayerTransientError(RetryableError):
    """Network, fee-estimation or congestion failure while relaying."""
    pass


class ProofGenerationError(PullPayError):
    """Proof generation failed permanently for this input set."""
    pass


class TransactionRevertedError(PullPayError):
    """The transfer primitive reverted the charge transaction."""
    def __init__(self, reason: str, tx_hash: str | None = None):
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"Transaction reverted: {reason}")


# Delegation errors
class DelegationUnavailableError(RetryableError):
    """Delegation material (Merkle proof, attestation) temporarily unavailable."""
    pass


class AttestationDeniedError(PullPayError):
    """The policy evaluator refused to attest the requested action."""
    pass


# Audit errors
class AuditChainError(PullPayError, RuntimeError):
    """The audit log failed hash-chain verification."""
    def __init__(self, line_no: int, problem: str):
        self.line_no = line_no
        self.problem = problem
        super().__init__(f"Audit chain broken at line {line_no}: {problem}")
