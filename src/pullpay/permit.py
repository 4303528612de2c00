"""
Permit construction, signing, and signer recovery.

A Permit is a payer-signed EIP-712 authorization letting one payee pull
funds from a note, bounded by ``max_amount`` and ``expiry``. The wire
field names (``merchant``, ``merchantCommitment``) and their order are
fixed for compatibility with external signing agents.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak

from .errors import InvalidInputError


ZERO_ADDRESS = "0x" + "00" * 20
ZERO_BYTES32 = "0x" + "00" * 32
UINT256_MAX = 2**256 - 1

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX_RE = re.compile(r"^0x[a-fA-F0-9]*$")

PERMIT_TYPES = {
    "Permit": [
        {"name": "noteId", "type": "bytes32"},
        {"name": "merchant", "type": "address"},
        {"name": "maxAmount", "type": "uint256"},
        {"name": "expiry", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "merchantCommitment", "type": "bytes32"},
    ],
}


class CapMode(str, Enum):
    """How ``maxAmount`` bounds spending. Fixed by the domain version."""

    PER_CHARGE = "per_charge"
    LIFETIME = "lifetime"


_CAP_MODE_BY_VERSION = {
    "1": CapMode.PER_CHARGE,
    "2": CapMode.LIFETIME,
}


@dataclass(frozen=True)
class ExecutionDomain:
    """EIP-712 domain separator of the execution environment."""

    protocol_name: str
    version: str
    chain_id: int
    verifying_contract: str

    @property
    def cap_mode(self) -> CapMode:
        try:
            return _CAP_MODE_BY_VERSION[self.version]
        except KeyError:
            raise InvalidInputError(f"Unsupported permit domain version: {self.version}") from None

    def to_eip712(self) -> dict:
        return {
            "name": self.protocol_name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> ExecutionDomain:
        return cls(
            protocol_name=str(d["protocol_name"]),
            version=str(d["version"]),
            chain_id=int(d["chain_id"]),
            verifying_contract=normalize_address(d["verifying_contract"]),
        )


@dataclass(frozen=True)
class Permit:
    """A payer-signed pull authorization. Immutable once signed."""

    note_id: str
    payee: str
    max_amount: int
    expiry: int
    nonce: int
    domain: ExecutionDomain
    signature: str = ""
    payee_commitment: str = ZERO_BYTES32

    @property
    def is_shielded(self) -> bool:
        return int(self.payee_commitment, 16) != 0

    @property
    def cap_mode(self) -> CapMode:
        return self.domain.cap_mode

    def message(self) -> dict:
        return {
            "noteId": self.note_id,
            "merchant": self.payee,
            "maxAmount": self.max_amount,
            "expiry": self.expiry,
            "nonce": self.nonce,
            "merchantCommitment": self.payee_commitment,
        }

    def to_eip712_message(self) -> dict:
        return {
            "types": PERMIT_TYPES,
            "primaryType": "Permit",
            "domain": self.domain.to_eip712(),
            "message": self.message(),
        }

    def as_call_tuple(self) -> tuple:
        """Struct layout expected by the transfer primitive."""
        return (
            bytes.fromhex(self.note_id[2:]),
            self.payee,
            self.max_amount,
            self.expiry,
            self.nonce,
            bytes.fromhex(_strip_0x(self.signature)),
            bytes.fromhex(self.payee_commitment[2:]),
        )

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d["domain"] = self.domain.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Permit:
        return cls(
            note_id=normalize_bytes32(d["note_id"], "note_id"),
            payee=normalize_address(d["payee"]),
            max_amount=_uint256(d["max_amount"], "max_amount"),
            expiry=_uint256(d["expiry"], "expiry"),
            nonce=_uint256(d["nonce"], "nonce"),
            domain=ExecutionDomain.from_dict(d["domain"]),
            signature=str(d.get("signature") or ""),
            payee_commitment=normalize_bytes32(d.get("payee_commitment") or ZERO_BYTES32, "payee_commitment"),
        )


class PermitSigner(Protocol):
    """Signing agent: a wallet flow or a programmatic key holder."""

    @property
    def address(self) -> str: ...

    def sign_permit(self, domain: ExecutionDomain, message: dict) -> str:
        """Return a 0x-prefixed 65-byte signature or raise SigningRejectedError."""
        ...


class LocalKeySigner:
    """Programmatic signer holding a private key in process memory."""

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return normalize_address(self._account.address)

    def sign_permit(self, domain: ExecutionDomain, message: dict) -> str:
        signed = Account.sign_typed_data(
            self._account.key,
            domain.to_eip712(),
            PERMIT_TYPES,
            message,
        )
        return "0x" + bytes(signed.signature).hex()


def build_permit(
    signer: PermitSigner,
    domain: ExecutionDomain,
    note_id: str,
    payee: str,
    max_amount: int,
    expiry: int,
    nonce: int,
    payee_commitment: str = ZERO_BYTES32,
) -> Permit:
    """Validate fields, ask the signing agent for a signature, return the permit."""
    unsigned = Permit(
        note_id=normalize_bytes32(note_id, "note_id"),
        payee=normalize_address(payee),
        max_amount=_uint256(max_amount, "max_amount"),
        expiry=_uint256(expiry, "expiry"),
        nonce=_uint256(nonce, "nonce"),
        domain=domain,
        payee_commitment=normalize_bytes32(payee_commitment, "payee_commitment"),
    )
    if unsigned.max_amount == 0:
        raise InvalidInputError("max_amount must be positive")
    # Raises SigningRejectedError when a human declines.
    signature = signer.sign_permit(domain, unsigned.message())
    return dataclasses.replace(unsigned, signature=_normalize_signature(signature))


def permit_digest(permit: Permit) -> str:
    """EIP-712 digest of the permit (what the payer actually signed)."""
    signable = _signable(permit)
    digest = keccak(b"\x19" + signable.version + signable.header + signable.body)
    return "0x" + digest.hex()


def recover_permit_signer(permit: Permit) -> str:
    if not permit.signature:
        raise InvalidInputError("Permit is unsigned")
    recovered = Account.recover_message(
        _signable(permit),
        signature=bytes.fromhex(_strip_0x(permit.signature)),
    )
    return normalize_address(recovered)


def verify_permit_signature(permit: Permit, expected_signer: str) -> tuple[bool, str]:
    """Check the permit signature recovers to ``expected_signer``."""
    try:
        recovered = recover_permit_signer(permit)
    except Exception as e:
        return False, f"Signature verification failed: {e}"
    if recovered != normalize_address(expected_signer):
        return False, f"Signer mismatch: expected {expected_signer}, got {recovered}"
    return True, "Signature valid"


def normalize_address(address: Any) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    if not isinstance(address, str):
        raise InvalidInputError(f"Invalid Ethereum address: {address!r}")
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise InvalidInputError(f"Invalid Ethereum address: {address}")
    return candidate.lower()


def is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def normalize_bytes32(value: Any, field_name: str) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = "0x" + bytes(value).hex()
    if not isinstance(value, str):
        raise InvalidInputError(f"{field_name} must be a hex string")
    candidate = value.strip().lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not _HEX_RE.match(candidate) or len(candidate) != 66:
        raise InvalidInputError(f"{field_name} must be 32 bytes (0x + 64 hex chars)")
    return candidate


def _normalize_signature(signature: str) -> str:
    if not isinstance(signature, str):
        raise InvalidInputError("signature must be a hex string")
    candidate = signature.strip()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    if not _HEX_RE.match(candidate) or len(candidate) != 132:
        raise InvalidInputError("signature must be 65 bytes (0x + 130 hex chars)")
    return candidate.lower()


def _uint256(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{field_name} must be an integer") from None
    if number < 0 or number > UINT256_MAX:
        raise InvalidInputError(f"{field_name} out of uint256 range")
    return number


def _signable(permit: Permit):
    typed = permit.to_eip712_message()
    return encode_typed_data(typed["domain"], typed["types"], typed["message"])


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value
