"""
Encryption at rest for stored subscriptions.

Subscription bodies hold the payer address, the signed permit, proof
bundles and delegation leaves. They are sealed with AES-256-GCM under a
key taken from ``PULLPAY_SUBSCRIPTION_KEY`` (a passphrase, stretched with
scrypt) or from a private key file that is created on first use. The
subscription id is bound as associated data so a body cannot be moved
to another row. Payer lookups go through a keyed tag instead of the
address itself.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import secrets
from pathlib import Path
from typing import Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import ConfigError, StoreCorruptionError
from .storage import ensure_private_dir, ensure_private_file

SUBSCRIPTION_KEY_ENV = "PULLPAY_SUBSCRIPTION_KEY"
DEFAULT_SUBSCRIPTION_KEY_PATH = Path.home() / ".pullpay-secrets" / "subscription.key"

ENVELOPE_VERSION = "v1"
NONCE_BYTES = 12
_PASSPHRASE_SALT = b"pullpay-subscriptions"


def _stretch(passphrase: str) -> bytes:
    kdf = Scrypt(salt=_PASSPHRASE_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(passphrase.encode("utf-8"))


def _subkey(master: bytes, purpose: bytes) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=purpose).derive(master)


class SubscriptionCipher:
    """Seals subscription bodies and derives payer lookup tags."""

    def __init__(self, master_key: bytes):
        if len(master_key) != 32:
            raise ConfigError("Subscription key must be 32 bytes")
        self._aead = AESGCM(_subkey(master_key, b"pullpay subscription body"))
        self._tag_key = _subkey(master_key, b"pullpay payer tag")

    @classmethod
    def load(
        cls,
        key_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SubscriptionCipher:
        env = os.environ if environ is None else environ
        passphrase = env.get(SUBSCRIPTION_KEY_ENV)
        if passphrase:
            return cls(_stretch(passphrase))

        path = key_path or DEFAULT_SUBSCRIPTION_KEY_PATH
        ensure_private_dir(path.parent)
        if path.exists() and path.stat().st_size > 0:
            try:
                return cls(bytes.fromhex(path.read_text().strip()))
            except ValueError as e:
                raise ConfigError(f"Subscription key file {path} is not hex: {e}") from e
        key = secrets.token_bytes(32)
        path.write_text(key.hex())
        ensure_private_file(path)
        return cls(key)

    def seal(self, plaintext: str, subscription_id: str) -> str:
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), subscription_id.encode())
        return f"{ENVELOPE_VERSION}:{nonce.hex()}:{sealed.hex()}"

    def open(self, envelope: str, subscription_id: str) -> str:
        try:
            version, nonce_hex, sealed_hex = envelope.split(":")
            if version != ENVELOPE_VERSION:
                raise ValueError(f"unknown envelope version {version!r}")
            plaintext = self._aead.decrypt(
                bytes.fromhex(nonce_hex), bytes.fromhex(sealed_hex), subscription_id.encode()
            )
        except (ValueError, InvalidTag) as e:
            raise StoreCorruptionError(
                f"Subscription {subscription_id} is unreadable: cannot decrypt ({type(e).__name__})"
            ) from e
        return plaintext.decode("utf-8")

    def payer_tag(self, payer: str) -> str:
        return hmac.new(self._tag_key, payer.lower().encode(), hashlib.sha256).hexdigest()
