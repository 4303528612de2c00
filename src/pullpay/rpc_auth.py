"""
Bearer-JWT authentication for hosted RPC endpoints.

The scheduler talks to a hosted node that expects every JSON-RPC POST to
carry a short-lived token signed with the operator's API key. Key
material is looked up in call arguments, then the environment, then a
1Password item via the ``op`` CLI.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
import secrets
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Union
from urllib.parse import urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from .errors import ConfigError

RPC_API_KEY_ID_ENV = "PULLPAY_RPC_API_KEY_ID"
RPC_API_KEY_SECRET_ENV = "PULLPAY_RPC_API_KEY_SECRET"
RPC_OP_ITEM_ENV = "PULLPAY_RPC_OP_ITEM"
RPC_OP_VAULT_ENV = "PULLPAY_RPC_OP_VAULT"

OP_KEY_ID_LABEL = "rpc_api_key_id"
OP_KEY_SECRET_LABEL = "rpc_api_key_secret"
DEFAULT_AUDIENCE = ("rpc_service",)
TOKEN_ISSUER = "pullpay"

# A cached token is replaced once less than this much lifetime remains.
_REFRESH_MARGIN_SECONDS = 15

PrivateKey = Union[ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]


@dataclass(frozen=True)
class RpcApiCredentials:
    api_key_id: str
    api_key_secret: str


@dataclass(frozen=True)
class SigningKey:
    key: PrivateKey
    algorithm: str

    @classmethod
    def parse(cls, secret: str) -> SigningKey:
        """Accept a PEM (EC or Ed25519) key or a base64 raw Ed25519 seed."""
        # Unquoted env vars often carry literal '\n' sequences.
        text = secret.replace("\\n", "\n")
        if "-----BEGIN" in text:
            return cls._from_pem(text)
        return cls._from_base64(text)

    @classmethod
    def _from_pem(cls, text: str) -> SigningKey:
        try:
            key = serialization.load_pem_private_key(text.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"RPC API key secret is not a readable PEM key: {e}") from e
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return cls(key, "ES256")
        if isinstance(key, ed25519.Ed25519PrivateKey):
            return cls(key, "EdDSA")
        raise ConfigError("PEM RPC API key must be EC or Ed25519")

    @classmethod
    def _from_base64(cls, text: str) -> SigningKey:
        try:
            raw = base64.b64decode(text, validate=True)
        except binascii.Error as e:
            raise ConfigError("RPC API key secret must be a PEM key or base64 Ed25519 key") from e
        # 64-byte form is seed followed by public key.
        if len(raw) not in (32, 64):
            raise ConfigError("base64 Ed25519 key must decode to 32 or 64 bytes")
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(raw[:32]), "EdDSA")


def endpoint_scope(method: str, url: str) -> str:
    """``POST host/path`` form used in the token's ``uris`` claim."""
    parsed = urlparse(url)
    return f"{method.upper()} {parsed.netloc}{parsed.path or '/'}"


class RpcJwtAuth:
    """Signs endpoint-scoped bearer tokens, reusing one until it nears expiry."""

    def __init__(
        self,
        api_key_id: str,
        api_key_secret: str,
        audience: tuple[str, ...] = DEFAULT_AUDIENCE,
        expires_in_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        if not api_key_id:
            raise ConfigError("RPC API key ID is required")
        if not api_key_secret:
            raise ConfigError("RPC API key secret is required")
        self.api_key_id = api_key_id
        self._signing_key = SigningKey.parse(api_key_secret)
        self._audience = list(audience)
        self._lifetime = expires_in_seconds
        self._clock = clock
        self._cache: dict[str, tuple[str, int]] = {}
        self._lock = threading.Lock()

    def _mint(self, scope: str, issued_at: int) -> str:
        claims = {
            "sub": self.api_key_id,
            "iss": TOKEN_ISSUER,
            "aud": self._audience,
            "nbf": issued_at,
            "exp": issued_at + self._lifetime,
            "uris": [scope],
        }
        header = {"kid": self.api_key_id, "typ": "JWT", "nonce": secrets.token_hex(8)}
        return jwt.encode(
            claims, self._signing_key.key, algorithm=self._signing_key.algorithm, headers=header
        )

    def token(self, method: str, url: str) -> str:
        scope = endpoint_scope(method, url)
        now = int(self._clock())
        with self._lock:
            cached = self._cache.get(scope)
            if cached and cached[1] - now > _REFRESH_MARGIN_SECONDS:
                return cached[0]
            fresh = self._mint(scope, now)
            self._cache[scope] = (fresh, now + self._lifetime)
            return fresh

    def headers(self, method: str, url: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token(method, url)}"}


def _op_item_fields(item: str, vault: str, timeout_seconds: float) -> dict[str, str]:
    """Fetch a 1Password item and index its non-empty fields by lowercase label."""
    completed = subprocess.run(
        ["op", "item", "get", item, "--vault", vault, "--format", "json"],
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )
    if completed.returncode != 0:
        raise ConfigError(f"1Password error: {completed.stderr.strip()}")
    found = {}
    for field in json.loads(completed.stdout).get("fields", []):
        label = str(field.get("label") or "").lower()
        value = str(field.get("value") or "")
        if label and value:
            found[label] = value
    return found


def load_rpc_credentials(
    *,
    api_key_id: str | None = None,
    api_key_secret: str | None = None,
    op_item: str | None = None,
    op_vault: str | None = None,
    timeout_seconds: float = 10.0,
) -> RpcApiCredentials | None:
    """Resolve RPC API credentials.

    Explicit arguments win, then ``PULLPAY_RPC_API_KEY_ID`` /
    ``PULLPAY_RPC_API_KEY_SECRET``, then the 1Password item named by
    ``PULLPAY_RPC_OP_ITEM`` in ``PULLPAY_RPC_OP_VAULT``. Returns None when
    nothing is configured, which means the RPC endpoint is unauthenticated.
    Raises ConfigError when only half of a key pair can be found.
    """
    key_id = api_key_id or os.getenv(RPC_API_KEY_ID_ENV)
    key_secret = api_key_secret or os.getenv(RPC_API_KEY_SECRET_ENV)

    item = op_item or os.getenv(RPC_OP_ITEM_ENV)
    vault = op_vault or os.getenv(RPC_OP_VAULT_ENV)
    if not (key_id and key_secret) and item and vault:
        stored = _op_item_fields(item, vault, timeout_seconds)
        key_id = key_id or stored.get(OP_KEY_ID_LABEL)
        key_secret = key_secret or stored.get(OP_KEY_SECRET_LABEL)

    if key_id and key_secret:
        return RpcApiCredentials(key_id, key_secret)
    if key_id or key_secret:
        raise ConfigError(
            f"Incomplete RPC credentials. Set {RPC_API_KEY_ID_ENV}/{RPC_API_KEY_SECRET_ENV} or "
            f"configure {RPC_OP_ITEM_ENV} + {RPC_OP_VAULT_ENV}."
        )
    return None
