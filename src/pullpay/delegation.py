"""
Delegation anchor: private spending policies committed to a Merkle root.

The payer keeps the policy off-chain and publishes only a root. Each
charge is sanctioned by (a) a Merkle proof that the policy leaf is in
the published tree and (b) an attestation from the policy evaluator
over ``(leaf, actionHash)``. The anchor never sees the policy itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import keccak

from .errors import AlreadyUsedError, AttestationDeniedError, DelegationUnavailableError
from .nullifiers import NullifierLedger, derive_nullifier
from .permit import ZERO_BYTES32, normalize_address, normalize_bytes32
from .verifier import RejectReason

logger = logging.getLogger(__name__)

LATEST_ROOT_SELECTOR = keccak(text="latestRoot()")[:4]


def build_leaf(policy_digest: str, salt: str) -> str:
    """leaf = keccak(policyDigest || salt)."""
    return _hash(_b32(policy_digest) + _b32(salt))


@dataclass(frozen=True)
class ActionDescriptor:
    """The concrete charge an attestation sanctions."""

    method: str
    recipient_or_commitment: str
    amount: int
    chain_id: int
    adapter: str

    def hash(self) -> str:
        return action_hash(
            self.method,
            self.recipient_or_commitment,
            self.amount,
            self.chain_id,
            self.adapter,
        )

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "recipientOrCommitment": self.recipient_or_commitment,
            "amount": str(self.amount),
            "chainId": self.chain_id,
            "adapter": self.adapter,
        }


def action_hash(method: str, recipient_or_commitment: str, amount: int, chain_id: int, adapter: str) -> str:
    """keccak(abi.encode(string, bytes32, uint256, uint256, address))."""
    encoded = abi_encode(
        ["string", "bytes32", "uint256", "uint256", "address"],
        [method, _recipient_word(recipient_or_commitment), amount, chain_id, normalize_address(adapter)],
    )
    return _hash(encoded)


# ── Merkle tree (sorted-pair keccak) ─────────────────────────────

def hash_pair(a: str, b: str) -> str:
    left, right = sorted((_b32(a), _b32(b)))
    return _hash(left + right)


def _layers(leaves: list[str]) -> list[list[str]]:
    if not leaves:
        raise ValueError("Merkle tree needs at least one leaf")
    layers = [[normalize_bytes32(leaf, "leaf") for leaf in leaves]]
    while len(layers[-1]) > 1:
        current = layers[-1]
        nxt = []
        for i in range(0, len(current), 2):
            if i + 1 < len(current):
                nxt.append(hash_pair(current[i], current[i + 1]))
            else:
                # Odd node is promoted unchanged.
                nxt.append(current[i])
        layers.append(nxt)
    return layers


def merkle_root(leaves: list[str]) -> str:
    return _layers(leaves)[-1][0]


def merkle_proof(leaves: list[str], index: int) -> list[str]:
    if index < 0 or index >= len(leaves):
        raise IndexError(f"Leaf index {index} out of range")
    proof = []
    for layer in _layers(leaves)[:-1]:
        sibling = index ^ 1
        if sibling < len(layer):
            proof.append(layer[sibling])
        index //= 2
    return proof


def compute_root(leaf: str, proof: list[str]) -> str:
    node = normalize_bytes32(leaf, "leaf")
    for sibling in proof:
        node = hash_pair(node, sibling)
    return node


# ── Attestations ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Attestation:
    """EIP-191 signature by the policy evaluator over keccak(leaf || actionHash)."""

    signature: str

    def to_dict(self) -> dict:
        return {"signature": self.signature}


def attestation_digest(leaf: str, action: str) -> bytes:
    return keccak(_b32(leaf) + _b32(action))


def sign_attestation(private_key: str, leaf: str, action: str) -> Attestation:
    signed = Account.sign_message(encode_defunct(primitive=attestation_digest(leaf, action)), private_key)
    return Attestation(signature="0x" + bytes(signed.signature).hex())


def recover_attester(attestation: Attestation, leaf: str, action: str) -> str:
    signature = attestation.signature
    if signature.startswith("0x"):
        signature = signature[2:]
    recovered = Account.recover_message(
        encode_defunct(primitive=attestation_digest(leaf, action)),
        signature=bytes.fromhex(signature),
    )
    return normalize_address(recovered)


# ── Anchor ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class AuthorizationResult:
    ok: bool
    reason: Optional[RejectReason] = None
    detail: str = ""
    nullifier: Optional[str] = None


class DelegationAnchor:
    """Gatekeeper for delegation-anchored charges."""

    def __init__(self, ledger: NullifierLedger, attester_address: str):
        self.ledger = ledger
        self.attester_address = normalize_address(attester_address)

    def authorize(
        self,
        leaf: str,
        counter: int,
        root: str,
        merkle_proof: list[str],
        attestation: Attestation,
        *,
        action: ActionDescriptor,
        secret: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Check membership, replay, and attestation, then consume the nullifier.

        ``root`` is the currently published root. Nothing is marked used
        unless every check passes.
        """
        published = normalize_bytes32(root, "root")
        if published == ZERO_BYTES32:
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.STALE_OR_UNKNOWN_ROOT,
                detail="No delegation root has been published",
            )
        computed = compute_root(leaf, merkle_proof)
        if computed != published:
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.STALE_OR_UNKNOWN_ROOT,
                detail=f"Proof resolves to {computed}, published root is {published}",
            )

        nullifier = derive_nullifier(leaf, counter, secret)
        if self.ledger.is_used(nullifier):
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.NULLIFIER_USED,
                detail=f"Nullifier for counter {counter} already consumed",
                nullifier=nullifier,
            )

        try:
            attester = recover_attester(attestation, leaf, action.hash())
        except Exception as e:
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.BAD_ATTESTATION,
                detail=f"Attestation unreadable: {e}",
                nullifier=nullifier,
            )
        if attester != self.attester_address:
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.BAD_ATTESTATION,
                detail=f"Attestation signed by {attester}, expected {self.attester_address}",
                nullifier=nullifier,
            )

        try:
            self.ledger.mark_used(nullifier, context=f"delegation:{counter}")
        except AlreadyUsedError:
            return AuthorizationResult(
                ok=False,
                reason=RejectReason.NULLIFIER_USED,
                detail=f"Nullifier for counter {counter} consumed concurrently",
                nullifier=nullifier,
            )
        return AuthorizationResult(ok=True, detail="Delegation authorized", nullifier=nullifier)


# ── Collaborators ────────────────────────────────────────────────

class RootSource(Protocol):
    def current_root(self) -> str: ...


class StaticRootSource:
    """Root held in memory; ``rotate`` publishes a new one."""

    def __init__(self, root: str):
        self._root = normalize_bytes32(root, "root")

    def current_root(self) -> str:
        return self._root

    def rotate(self, root: str) -> None:
        self._root = normalize_bytes32(root, "root")


class ChainRootSource:
    """Reads ``latestRoot()`` from the on-chain anchor contract."""

    def __init__(self, chain: Any, anchor_address: str):
        self.chain = chain
        self.anchor_address = normalize_address(anchor_address)

    def current_root(self) -> str:
        result = self.chain.call(self.anchor_address, LATEST_ROOT_SELECTOR)
        if len(result) < 32:
            raise DelegationUnavailableError("latestRoot() returned short data")
        return "0x" + bytes(result[:32]).hex()


@dataclass(frozen=True)
class DelegationMaterial:
    attestation: Attestation
    merkle_proof: list[str] = field(default_factory=list)


class DelegationMaterialSource(Protocol):
    def material_for(self, leaf: str, action: ActionDescriptor) -> DelegationMaterial: ...


class HttpDelegationSource:
    """Fetches Merkle proofs and policy attestations from the payer's delegation service."""

    def __init__(self, base_url: str, timeout_seconds: float = 30.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def material_for(self, leaf: str, action: ActionDescriptor) -> DelegationMaterial:
        body = {"leaf": normalize_bytes32(leaf, "leaf"), "action": action.to_dict()}
        try:
            response = self._client.post(f"{self.base_url}/attest", json=body)
        except httpx.HTTPError as e:
            raise DelegationUnavailableError(f"Delegation service unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise DelegationUnavailableError(
                f"Delegation service returned {response.status_code}",
                retry_after=_retry_after(response),
            )
        if response.status_code >= 400:
            raise AttestationDeniedError(
                f"Policy evaluator refused action ({response.status_code}): {response.text[:200]}"
            )

        payload = response.json()
        return DelegationMaterial(
            attestation=Attestation(signature=str(payload.get("attestation", ""))),
            merkle_proof=[normalize_bytes32(p, "merkle_proof") for p in payload.get("merkleProof", [])],
        )


def _retry_after(response: httpx.Response) -> float:
    try:
        return float(response.headers.get("retry-after", "1"))
    except ValueError:
        return 1.0


def _recipient_word(value: str) -> bytes:
    """Left-pad a public address to 32 bytes; commitments pass through."""
    if len(value.strip()) == 42:
        return b"\x00" * 12 + bytes.fromhex(normalize_address(value)[2:])
    return _b32(value)


def _b32(value: str) -> bytes:
    return bytes.fromhex(normalize_bytes32(value, "bytes32")[2:])


def _hash(data: bytes) -> str:
    return "0x" + keccak(data).hex()
