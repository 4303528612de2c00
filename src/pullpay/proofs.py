"""
Adapters for the external zero-knowledge proof subsystem.

Proof generation is opaque and slow. A permanent failure is permanent
for that input set; only unavailability (timeouts, 429, 5xx) is retried.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

import httpx

from .errors import InvalidInputError, ProofGenerationError, ProofUnavailableError
from .permit import normalize_bytes32

logger = logging.getLogger(__name__)

PUBLIC_INPUT_COUNT = 4


@dataclass(frozen=True)
class ProofBundle:
    """Proof plus public inputs ``[root, signedAmount, extDataHash, nullifier]``."""

    proof: str
    public_inputs: tuple[str, ...]
    amount: Optional[int] = None
    range_min: Optional[int] = None
    range_max: Optional[int] = None
    amount_commitment: Optional[str] = None

    @property
    def root(self) -> str:
        return self.public_inputs[0]

    @property
    def signed_amount(self) -> str:
        return self.public_inputs[1]

    @property
    def ext_data_hash(self) -> str:
        return self.public_inputs[2]

    @property
    def nullifier(self) -> str:
        return self.public_inputs[3]

    @property
    def has_range(self) -> bool:
        return self.range_min is not None and self.range_max is not None

    def validate(self) -> None:
        """Raise InvalidInputError if the bundle is malformed."""
        if not isinstance(self.proof, str) or not self.proof.startswith("0x") or len(self.proof) <= 2:
            raise InvalidInputError("proof must be non-empty 0x-prefixed hex")
        try:
            bytes.fromhex(self.proof[2:])
        except ValueError:
            raise InvalidInputError("proof must be hex encoded") from None
        if len(self.public_inputs) != PUBLIC_INPUT_COUNT:
            raise InvalidInputError(
                f"publicInputs must have {PUBLIC_INPUT_COUNT} entries, got {len(self.public_inputs)}"
            )
        for value in self.public_inputs:
            normalize_bytes32(value, "public_inputs")
        if (self.range_min is None) != (self.range_max is None):
            raise InvalidInputError("range bounds must be supplied together")
        if self.has_range:
            if self.range_min < 0 or self.range_min > self.range_max:
                raise InvalidInputError("range_min must be between 0 and range_max")
            if self.amount_commitment is None:
                raise InvalidInputError("range bounds require an amount commitment")
            normalize_bytes32(self.amount_commitment, "amount_commitment")

    def to_dict(self) -> dict:
        return {
            "proof": self.proof,
            "publicInputs": list(self.public_inputs),
            "amount": self.amount,
            "rangeMin": self.range_min,
            "rangeMax": self.range_max,
            "amountCommitment": self.amount_commitment,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ProofBundle:
        def _opt_int(key: str) -> Optional[int]:
            value = d.get(key)
            return int(value) if value is not None else None

        bundle = cls(
            proof=str(d.get("proof", "")),
            public_inputs=tuple(normalize_bytes32(v, "public_inputs") for v in d.get("publicInputs", [])),
            amount=_opt_int("amount"),
            range_min=_opt_int("rangeMin"),
            range_max=_opt_int("rangeMax"),
            amount_commitment=d.get("amountCommitment"),
        )
        bundle.validate()
        return bundle


@dataclass(frozen=True)
class ProofRequest:
    note_id: str
    amount: int
    remaining_balance: int
    nonce: int
    merkle_root: Optional[str] = None

    def to_dict(self) -> dict:
        body = {
            "noteId": self.note_id,
            "amount": str(self.amount),
            "remainingBalance": str(self.remaining_balance),
            "nonce": str(self.nonce),
        }
        if self.merkle_root is not None:
            body["merkleRoot"] = self.merkle_root
        return body


class ProofProvider(Protocol):
    def generate_proof(self, request: ProofRequest) -> ProofBundle: ...


class HttpProofProvider:
    """Calls a remote prover over HTTP."""

    def __init__(self, base_url: str, timeout_seconds: float = 120.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def generate_proof(self, request: ProofRequest) -> ProofBundle:
        logger.info("Requesting proof for note %s amount=%s", request.note_id[:10], request.amount)
        try:
            response = self._client.post(f"{self.base_url}/prove", json=request.to_dict())
        except httpx.TimeoutException as e:
            raise ProofUnavailableError(f"Prover timed out: {e}", retry_after=5.0) from e
        except httpx.HTTPError as e:
            raise ProofUnavailableError(f"Prover unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProofUnavailableError(f"Prover returned {response.status_code}")
        if response.status_code >= 400:
            raise ProofGenerationError(
                f"Prover rejected inputs ({response.status_code}): {response.text[:200]}"
            )

        try:
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("expected a JSON object")
            if payload.get("amount") is None:
                payload["amount"] = request.amount
            bundle = ProofBundle.from_dict(payload)
        except (ValueError, InvalidInputError) as e:
            raise ProofGenerationError(f"Prover returned a malformed bundle: {e}") from e
        return bundle


def truncated_ladder(balance: int) -> list[int]:
    """Power-of-two buckets 1, 2, 4, ... not exceeding ``balance``."""
    if balance <= 0:
        raise ValueError("balance must be a positive integer")
    buckets = []
    bucket = 1
    while bucket <= balance:
        buckets.append(bucket)
        bucket *= 2
    return buckets


class PrecomputedProofPool:
    """Pre-generated proofs keyed by (note, exact amount)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pool: dict[tuple[str, int], list[ProofBundle]] = {}

    def add(self, note_id: str, bundle: ProofBundle) -> None:
        if bundle.amount is None:
            raise InvalidInputError("pooled proofs must declare the amount they prove")
        bundle.validate()
        key = (normalize_bytes32(note_id, "note_id"), bundle.amount)
        with self._lock:
            self._pool.setdefault(key, []).append(bundle)

    def take(self, note_id: str, amount: int) -> Optional[ProofBundle]:
        key = (normalize_bytes32(note_id, "note_id"), amount)
        with self._lock:
            bundles = self._pool.get(key)
            if not bundles:
                return None
            bundle = bundles.pop(0)
            if not bundles:
                del self._pool[key]
            return bundle

    def available(self, note_id: str) -> dict[int, int]:
        note = normalize_bytes32(note_id, "note_id")
        with self._lock:
            return {amount: len(b) for (n, amount), b in self._pool.items() if n == note}

    def _generate(self, provider: ProofProvider, request: ProofRequest) -> None:
        bundle = provider.generate_proof(request)
        if bundle.amount is None:
            bundle = dataclasses.replace(bundle, amount=request.amount)
        self.add(request.note_id, bundle)

    def precompute(
        self,
        provider: ProofProvider,
        note_id: str,
        nonce: int,
        balance: int,
        amounts: Iterable[int] = (),
    ) -> int:
        """
        Generate one proof per ladder bucket for ``note_id``, plus one for
        each exact amount in ``amounts`` that is not already a bucket.
        Returns the count added.
        """
        ladder = truncated_ladder(balance)
        extra = sorted({a for a in amounts if 0 < a <= balance} - set(ladder))
        for amount in ladder + extra:
            self._generate(
                provider,
                ProofRequest(note_id=note_id, amount=amount, remaining_balance=balance - amount, nonce=nonce),
            )
        added = len(ladder) + len(extra)
        logger.info("Precomputed %d proofs for note %s", added, note_id[:10])
        return added

    def stock(self, provider: ProofProvider, request: ProofRequest, depth: int = 1) -> int:
        """Top up proofs for the exact ``request.amount`` until ``depth`` are pooled."""
        missing = depth - self.available(request.note_id).get(request.amount, 0)
        for _ in range(missing):
            self._generate(provider, request)
        return max(0, missing)


class ProofStrategy(str, Enum):
    FRESH = "fresh"
    POOL = "pool"


class ProofSource:
    """
    Chooses the proof for a charge.

    The bundle supplied at subscription creation only covers charge 0.
    Later charges get a freshly generated proof, or with the POOL
    strategy a pooled proof for the exact amount when one is available.
    Delegated charges always prove fresh against the current anchor root.
    """

    def __init__(
        self,
        provider: ProofProvider,
        strategy: ProofStrategy = ProofStrategy.FRESH,
        pool: Optional[PrecomputedProofPool] = None,
    ):
        if strategy == ProofStrategy.POOL and pool is None:
            raise InvalidInputError("POOL strategy requires a PrecomputedProofPool")
        self.provider = provider
        self.strategy = strategy
        self.pool = pool

    def obtain(
        self,
        request: ProofRequest,
        *,
        charge_index: int,
        initial_bundle: Optional[ProofBundle] = None,
    ) -> ProofBundle:
        if charge_index == 0 and initial_bundle is not None:
            return initial_bundle
        if self._pooling(request):
            pooled = self.pool.take(request.note_id, request.amount)
            if pooled is not None:
                return pooled
            logger.info("No pooled proof for amount %s, generating fresh", request.amount)
        return self.provider.generate_proof(request)

    def _pooling(self, request: ProofRequest) -> bool:
        return self.strategy == ProofStrategy.POOL and self.pool is not None and request.merkle_root is None

    def prepare(self, request: ProofRequest, depth: int = 1) -> int:
        """Pre-generate the proof for an upcoming charge. No-op unless pooling."""
        if not self._pooling(request):
            return 0
        added = self.pool.stock(self.provider, request, depth)
        if added:
            logger.info("Stocked %d proof(s) for note %s amount=%s", added, request.note_id[:10], request.amount)
        return added
