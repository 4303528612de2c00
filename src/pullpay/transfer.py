"""
Calls into the on-chain transfer primitive.

Three entry points match the three settlement variants. ``ChargeCall``
carries a method plus its arguments and encodes the calldata; revert
strings coming back from the primitive are mapped onto RejectReason.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import encode as abi_encode
from eth_utils import keccak

from .permit import normalize_address
from .verifier import RejectReason


PERMIT_TUPLE = "(bytes32,address,uint256,uint256,uint256,bytes,bytes32)"

TAKE = "take"
TAKE_SHIELDED = "takeShielded"
TAKE_WITH_DELEGATION_ANCHOR = "takeWithDelegationAnchor"

METHOD_ARG_TYPES = {
    TAKE: ["bytes", "bytes32[]", PERMIT_TUPLE, "address", "uint256"],
    TAKE_SHIELDED: [
        "bytes", "bytes32[]", PERMIT_TUPLE, "bytes32", "uint256",
        "uint256", "uint256", "bytes32",
    ],
    TAKE_WITH_DELEGATION_ANCHOR: [
        "bytes", "bytes32[]", PERMIT_TUPLE, "bytes32", "uint256",
        "bytes32", "bytes32", "bytes32[]", "bytes",
    ],
}


def method_signature(method: str) -> str:
    return f"{method}({','.join(METHOD_ARG_TYPES[method])})"


def method_selector(method: str) -> bytes:
    return keccak(text=method_signature(method))[:4]


@dataclass(frozen=True)
class ChargeCall:
    """One transfer-primitive invocation, ready for the relayer."""

    to: str
    method: str
    args: tuple[Any, ...]
    subscription_id: str = ""
    charge_index: int = 0

    def __post_init__(self) -> None:
        if self.method not in METHOD_ARG_TYPES:
            raise ValueError(f"Unknown transfer method: {self.method}")
        object.__setattr__(self, "to", normalize_address(self.to))

    def encode(self) -> bytes:
        return method_selector(self.method) + abi_encode(METHOD_ARG_TYPES[self.method], list(self.args))

    @property
    def label(self) -> str:
        return f"{self.method}[{self.subscription_id}#{self.charge_index}]"


_REVERT_KEYWORDS: list[tuple[tuple[str, ...], RejectReason]] = [
    (("expired", "deadline"), RejectReason.EXPIRED),
    (("exceeds max", "over cap", "maxamount", "cap exceeded"), RejectReason.AMOUNT_OVER_CAP),
    (("nullifier", "nonce used", "already used", "already spent"), RejectReason.NULLIFIER_USED),
    (("root",), RejectReason.STALE_OR_UNKNOWN_ROOT),
    (("attestation", "attester"), RejectReason.BAD_ATTESTATION),
    (("signature", "bad sig", "invalid signer"), RejectReason.SIGNATURE_INVALID),
    (("recipient", "merchant", "commitment mismatch"), RejectReason.INVALID_RECIPIENT),
    (("domain", "chainid"), RejectReason.DOMAIN_MISMATCH),
    (("proof", "verifier"), RejectReason.PROOF_INVALID),
]


def classify_revert(reason: str) -> RejectReason:
    """Map a revert string to the rejection taxonomy (first keyword match wins)."""
    lowered = (reason or "").lower()
    for keywords, mapped in _REVERT_KEYWORDS:
        if any(k in lowered for k in keywords):
            return mapped
    return RejectReason.REVERTED
