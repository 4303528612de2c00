"""
Runtime configuration.

Values come from ``PULLPAY_*`` environment variables. Secrets are never
read from the environment directly when an ``op://`` reference is given;
those are resolved through the 1Password CLI at use time.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError
from .permit import ExecutionDomain, normalize_address


DEFAULT_DATA_DIR = Path.home() / ".pullpay"
DEFAULT_PROTOCOL_NAME = "PullPay"
DEFAULT_PROTOCOL_VERSION = "2"

_URL_RE = re.compile(r"^https?://")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient failures within one period."""

    max_attempts: int = 5
    base_delay_seconds: float = 5.0
    multiplier: float = 2.0
    max_delay_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ConfigError("retry delays must be non-negative")
        if self.multiplier < 1:
            raise ConfigError("retry multiplier must be >= 1")

    def delay_for(self, attempt_no: int) -> float:
        """Backoff to wait after failed attempt ``attempt_no`` (1-based)."""
        delay = self.base_delay_seconds * (self.multiplier ** max(0, attempt_no - 1))
        return min(delay, self.max_delay_seconds)

    def exhausted(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts


@dataclass
class PullPayConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    rpc_url: Optional[str] = None
    chain_id: int = 84532
    adapter_address: Optional[str] = None
    protocol_name: str = DEFAULT_PROTOCOL_NAME
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    anchor_address: Optional[str] = None
    attester_address: Optional[str] = None
    prover_url: Optional[str] = None
    delegation_url: Optional[str] = None
    relayer_key_ref: Optional[str] = None
    gas_buffer: float = 1.2
    receipt_timeout_seconds: float = 120.0
    receipt_poll_seconds: float = 2.0
    reconcile_interval_seconds: float = 15.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def subscriptions_db(self) -> Path:
        return self.data_dir / "subscriptions.sqlite3"

    @property
    def nullifiers_db(self) -> Path:
        return self.data_dir / "nullifiers.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    @property
    def secrets_dir(self) -> Path:
        return self.data_dir.parent / f"{self.data_dir.name}-secrets"

    @property
    def audit_key_path(self) -> Path:
        return self.secrets_dir / "audit_hmac.key"

    @property
    def subscription_key_path(self) -> Path:
        return self.secrets_dir / "subscription.key"

    def execution_domain(self) -> ExecutionDomain:
        if not self.adapter_address:
            raise ConfigError("PULLPAY_ADAPTER_ADDRESS is required")
        return ExecutionDomain(
            protocol_name=self.protocol_name,
            version=self.protocol_version,
            chain_id=self.chain_id,
            verifying_contract=self.adapter_address,
        )

    def relayer_key(self) -> str:
        if not self.relayer_key_ref:
            raise ConfigError("PULLPAY_RELAYER_KEY is required to submit transactions")
        return resolve_private_key(self.relayer_key_ref)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> PullPayConfig:
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(f"PULLPAY_{name}")
            return value.strip() if value and value.strip() else None

        retry = RetryPolicy(
            max_attempts=_int(get("RETRY_MAX_ATTEMPTS"), "RETRY_MAX_ATTEMPTS", 5),
            base_delay_seconds=_float(get("RETRY_BASE_DELAY"), "RETRY_BASE_DELAY", 5.0),
            multiplier=_float(get("RETRY_MULTIPLIER"), "RETRY_MULTIPLIER", 2.0),
            max_delay_seconds=_float(get("RETRY_MAX_DELAY"), "RETRY_MAX_DELAY", 300.0),
        )
        config = cls(
            data_dir=Path(get("DATA_DIR")).expanduser() if get("DATA_DIR") else DEFAULT_DATA_DIR,
            rpc_url=_url(get("RPC_URL"), "RPC_URL"),
            chain_id=_int(get("CHAIN_ID"), "CHAIN_ID", 84532),
            adapter_address=_address(get("ADAPTER_ADDRESS"), "ADAPTER_ADDRESS"),
            protocol_name=get("PROTOCOL_NAME") or DEFAULT_PROTOCOL_NAME,
            protocol_version=get("PROTOCOL_VERSION") or DEFAULT_PROTOCOL_VERSION,
            anchor_address=_address(get("ANCHOR_ADDRESS"), "ANCHOR_ADDRESS"),
            attester_address=_address(get("ATTESTER_ADDRESS"), "ATTESTER_ADDRESS"),
            prover_url=_url(get("PROVER_URL"), "PROVER_URL"),
            delegation_url=_url(get("DELEGATION_URL"), "DELEGATION_URL"),
            relayer_key_ref=get("RELAYER_KEY"),
            gas_buffer=_float(get("GAS_BUFFER"), "GAS_BUFFER", 1.2),
            receipt_timeout_seconds=_float(get("RECEIPT_TIMEOUT"), "RECEIPT_TIMEOUT", 120.0),
            receipt_poll_seconds=_float(get("RECEIPT_POLL"), "RECEIPT_POLL", 2.0),
            reconcile_interval_seconds=_float(get("RECONCILE_INTERVAL"), "RECONCILE_INTERVAL", 15.0),
            retry=retry,
        )
        if config.gas_buffer < 1.0:
            raise ConfigError("PULLPAY_GAS_BUFFER must be >= 1.0")
        if config.protocol_version not in {"1", "2"}:
            raise ConfigError("PULLPAY_PROTOCOL_VERSION must be '1' (per-charge) or '2' (lifetime)")
        return config


def resolve_private_key(key_input: str, timeout_seconds: float = 10.0) -> str:
    """Return a 0x-prefixed private key from raw hex or an ``op://`` reference."""
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
        if result.returncode != 0:
            raise ConfigError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ConfigError("Private key must be a 32-byte hex string or valid op:// reference")
    try:
        int(candidate, 16)
    except ValueError as exc:
        raise ConfigError("Private key must be hex encoded") from exc
    return "0x" + candidate


def _int(raw: Optional[str], name: str, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"PULLPAY_{name} must be an integer, got {raw!r}") from exc


def _float(raw: Optional[str], name: str, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"PULLPAY_{name} must be a number, got {raw!r}") from exc


def _address(raw: Optional[str], name: str) -> Optional[str]:
    if raw is None:
        return None
    try:
        return normalize_address(raw)
    except ValueError as exc:
        raise ConfigError(f"PULLPAY_{name}: {exc}") from exc


def _url(raw: Optional[str], name: str) -> Optional[str]:
    if raw is None:
        return None
    if not _URL_RE.match(raw):
        raise ConfigError(f"PULLPAY_{name} must be an http(s) URL, got {raw!r}")
    return raw.rstrip("/")
