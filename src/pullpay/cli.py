"""
PullPay CLI — Recurring pull payments against signed permits.

Commands:
    pullpay sign-permit   Sign a permit as the payer
    pullpay subscribe     Register a subscription backed by a permit
    pullpay list          List subscriptions
    pullpay status        Show progress and attempt history
    pullpay pause         Pause future charges
    pullpay resume        Resume a paused subscription
    pullpay cancel        Cancel and archive a subscription
    pullpay audit         View audit trail
    pullpay run           Run the charge scheduler
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from .audit import AuditTrail, EventType
from .config import PullPayConfig, resolve_private_key
from .delegation import ChainRootSource, DelegationAnchor, HttpDelegationSource
from .encryption import SubscriptionCipher
from .errors import ConfigError, PullPayError
from .executor import PaymentExecutor, Rejected, Settled
from .money import amount_to_cents, format_cents, limit_to_cents
from .nullifiers import SqliteNullifierLedger
from .permit import ZERO_ADDRESS, ZERO_BYTES32, LocalKeySigner, Permit, build_permit
from .proofs import HttpProofProvider, PrecomputedProofPool, ProofBundle, ProofSource, ProofStrategy
from .relayer import RelayerGateway
from .rpc import JsonRpcChainClient
from .rpc_auth import RpcJwtAuth, load_rpc_credentials
from .scheduler import (
    SubscriptionScheduler,
    cancel_subscription,
    create_subscription,
    pause_subscription,
    resume_subscription,
)
from .store import SqliteSubscriptionStore
from .subscription import DelegationBinding, SubscriptionStatus, new_subscription
from .verifier import PermitVerifier

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────────

def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _load_config() -> PullPayConfig:
    try:
        return PullPayConfig.from_env()
    except ConfigError as e:
        _fail(f"Invalid configuration: {e}")


def _store(config: PullPayConfig) -> SqliteSubscriptionStore:
    return SqliteSubscriptionStore(
        config.subscriptions_db, cipher=SubscriptionCipher.load(config.subscription_key_path)
    )


def _audit(config: PullPayConfig) -> AuditTrail:
    return AuditTrail(config.audit_path, config.audit_key_path)


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 90s, 72h, 30d, 4w)")
    seconds = int(raw[:-1]) * units[raw[-1]]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value}")
    return seconds


def _refuse_key_from_argv(param_name: str, flag: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param_name) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        _fail(
            f"Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk."
        )


def _format_time(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def _build_scheduler(
    config: PullPayConfig,
    store: SqliteSubscriptionStore,
    audit: AuditTrail,
    proof_strategy: ProofStrategy,
) -> tuple[SubscriptionScheduler, RelayerGateway]:
    if not config.rpc_url:
        raise ConfigError("PULLPAY_RPC_URL is required")
    if not config.prover_url:
        raise ConfigError("PULLPAY_PROVER_URL is required")

    credentials = load_rpc_credentials()
    auth = RpcJwtAuth(credentials.api_key_id, credentials.api_key_secret) if credentials else None
    chain = JsonRpcChainClient(
        config.rpc_url,
        auth=auth,
        poll_interval_seconds=config.receipt_poll_seconds,
    )
    relayer = RelayerGateway(
        chain,
        config.relayer_key(),
        config.chain_id,
        gas_buffer=config.gas_buffer,
        receipt_timeout_seconds=config.receipt_timeout_seconds,
    )
    pool = PrecomputedProofPool() if proof_strategy == ProofStrategy.POOL else None
    proofs = ProofSource(HttpProofProvider(config.prover_url), proof_strategy, pool)
    ledger = SqliteNullifierLedger(config.nullifiers_db)

    anchor = root_source = delegation_source = None
    if config.anchor_address and config.attester_address and config.delegation_url:
        anchor = DelegationAnchor(ledger, config.attester_address)
        root_source = ChainRootSource(chain, config.anchor_address)
        delegation_source = HttpDelegationSource(config.delegation_url)
    else:
        logger.info("Delegation anchor not configured; delegated subscriptions will be rejected")

    executor = PaymentExecutor(
        PermitVerifier(config.execution_domain()),
        relayer,
        proofs,
        ledger,
        audit,
        anchor=anchor,
        root_source=root_source,
        delegation_source=delegation_source,
    )
    scheduler = SubscriptionScheduler(store, executor, audit, retry_policy=config.retry)
    return scheduler, relayer


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """PullPay — Recurring pull payments against payer-signed permits."""
    pass


@main.command("sign-permit")
@click.option("--payer-key", prompt=True, hide_input=True,
              help="Payer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --payer-key via argv (unsafe; can leak in shell/process history).",
)
@click.option("--note-id", required=True, help="Funding note identifier (bytes32 hex)")
@click.option("--payee", default=None, help="Public payee address")
@click.option("--payee-commitment", default=None, help="Shielded payee commitment (bytes32 hex)")
@click.option("--max-amount", required=True, help="Spending cap in USD (lifetime or per charge, per domain version)")
@click.option("--expires-in", default="365d", help="Permit lifetime (e.g. 72h, 30d)")
@click.option("--nonce", type=int, default=None, help="Nonce override (default: current timestamp)")
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the signed permit JSON here instead of stdout")
def sign_permit(
    payer_key: str,
    unsafe_allow_key_arg: bool,
    note_id: str,
    payee: Optional[str],
    payee_commitment: Optional[str],
    max_amount: str,
    expires_in: str,
    nonce: Optional[int],
    out_path: Optional[Path],
):
    """Sign a pull-payment permit with the payer's key."""
    _refuse_key_from_argv("payer_key", "--payer-key", unsafe_allow_key_arg)

    if bool(payee) == bool(payee_commitment):
        _fail("Supply exactly one of --payee or --payee-commitment.")

    config = _load_config()
    try:
        domain = config.execution_domain()
        signer = LocalKeySigner(resolve_private_key(payer_key))
        permit = build_permit(
            signer,
            domain,
            note_id=note_id,
            payee=payee or ZERO_ADDRESS,
            max_amount=limit_to_cents(max_amount),
            expiry=int(time.time()) + _parse_duration_to_seconds(expires_in),
            nonce=nonce if nonce is not None else int(time.time()),
            payee_commitment=payee_commitment or ZERO_BYTES32,
        )
    except (PullPayError, ValueError) as e:
        _fail(f"Failed to sign permit: {e}")

    _audit(config).log(
        EventType.PERMIT_SIGNED,
        payer=signer.address,
        payee=payee_commitment or permit.payee,
        amount=permit.max_amount,
        details={"expiry": permit.expiry, "nonce": permit.nonce, "domain_version": domain.version},
    )

    payload = json.dumps(permit.to_dict(), indent=2)
    if out_path is None:
        click.echo(payload)
        return
    out_path.write_text(payload + "\n")
    click.echo(f"✅ Permit signed by {signer.address}")
    click.echo(f"   Cap:      {format_cents(permit.max_amount)} ({permit.cap_mode.value})")
    click.echo(f"   Expires:  {_format_time(permit.expiry)}")
    click.echo(f"   Saved to: {out_path}")


@main.command()
@click.option("--permit", "permit_path", required=True,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Signed permit JSON")
@click.option("--payer", required=True, help="Payer address (must have signed the permit)")
@click.option("--payee", default=None, help="Payee address or commitment (default: from the permit)")
@click.option("--amount", required=True, help="Charge amount per period in USD")
@click.option("--interval", required=True, help="Billing interval (e.g. 30d, 1w)")
@click.option("--count", type=int, required=True, help="Total number of charges")
@click.option("--proof-bundle", "proof_path", default=None,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Proof bundle JSON for the first charge")
@click.option("--delegation-leaf", default=None, help="Delegation policy leaf (bytes32 hex)")
@click.option("--policy-ref", default=None, help="Off-chain policy reference for the delegation leaf")
def subscribe(
    permit_path: Path,
    payer: str,
    payee: Optional[str],
    amount: str,
    interval: str,
    count: int,
    proof_path: Optional[Path],
    delegation_leaf: Optional[str],
    policy_ref: Optional[str],
):
    """Register a recurring subscription. The first charge is due immediately."""
    config = _load_config()
    try:
        permit = Permit.from_dict(json.loads(permit_path.read_text()))
        bundle = ProofBundle.from_dict(json.loads(proof_path.read_text())) if proof_path else None
        delegation = DelegationBinding.from_dict({"leaf": delegation_leaf, "policy_ref": policy_ref}) \
            if delegation_leaf else None
        if payee is None:
            payee = permit.payee_commitment if permit.is_shielded else permit.payee
        subscription = new_subscription(
            permit,
            payer,
            payee,
            amount_to_cents(amount),
            _parse_duration_to_seconds(interval),
            count,
            time.time(),
            proof_bundle=bundle,
            delegation=delegation,
        )
        stored = create_subscription(_store(config), _audit(config), subscription)
    except (PullPayError, ValueError) as e:
        _fail(f"Failed to create subscription: {e}")

    click.echo(f"✅ Subscription created: {stored.id}")
    click.echo(f"   Payer:    {stored.payer}")
    click.echo(f"   Payee:    {stored.payee}")
    click.echo(f"   Charges:  {stored.total_charges} x {format_cents(stored.charge_amount)}")
    click.echo(f"   Interval: {interval}")
    click.echo(f"   Mode:     {stored.mode.value}")


@main.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in SubscriptionStatus], case_sensitive=False),
    default=None,
    help="Filter by status",
)
@click.option("--payer", default=None, help="Filter by payer address")
def list_subscriptions(status: Optional[str], payer: Optional[str]):
    """List subscriptions."""
    config = _load_config()
    try:
        subscriptions = _store(config).list(
            status=SubscriptionStatus(status.lower()) if status else None,
            payer=payer,
        )
    except PullPayError as e:
        _fail(f"Failed to list subscriptions: {e}")

    if not subscriptions:
        click.echo("No subscriptions found.")
        return

    for sub in subscriptions:
        click.echo(
            f"  {sub.id}  {sub.status.value:<9}  {sub.charges_completed}/{sub.total_charges}"
            f"  {format_cents(sub.charge_amount)}  next {_format_time(sub.next_charge_at)}"
        )


@main.command()
@click.argument("subscription_id")
@click.option("--attempts", "attempt_limit", type=int, default=10, help="Number of attempts to show")
def status(subscription_id: str, attempt_limit: int):
    """Show progress, failure reason and attempt history for a subscription."""
    config = _load_config()
    store = _store(config)
    try:
        sub = store.get(subscription_id)
        attempts = store.attempts(subscription_id)
    except PullPayError as e:
        _fail(str(e))

    click.echo(f"📊 Subscription {sub.id}")
    click.echo(f"   Status:    {sub.status.value}")
    click.echo(f"   Mode:      {sub.mode.value}")
    click.echo(f"   Progress:  {sub.charges_completed}/{sub.total_charges} charges")
    click.echo(f"   Spent:     {format_cents(sub.spent)} of {format_cents(sub.permit.max_amount)}")
    click.echo(f"   Next due:  {_format_time(sub.next_charge_at) if not sub.status.is_terminal else '-'}")
    click.echo(f"   Last paid: {_format_time(sub.last_charged_at)}")
    if sub.pending_reference:
        click.echo(f"   Pending:   {sub.pending_reference}")
    if sub.failure_reason:
        click.echo(f"   Failure:   {sub.failure_reason} ({sub.failure_detail})")

    if attempts:
        click.echo("   Attempts:")
        for attempt in attempts[-attempt_limit:]:
            ts = time.strftime("%H:%M:%S", time.localtime(attempt.at))
            detail = attempt.reference or attempt.reason or attempt.detail or ""
            click.echo(
                f"     {ts} #{attempt.charge_index}.{attempt.attempt_no} {attempt.outcome.value} {detail}"
            )


@main.command()
@click.argument("subscription_id")
def pause(subscription_id: str):
    """Pause future charges."""
    config = _load_config()
    try:
        sub, changed = pause_subscription(_store(config), _audit(config), subscription_id)
    except PullPayError as e:
        _fail(f"Failed to pause: {e}")
    click.echo(f"✅ {sub.id} paused" if changed else f"{sub.id} already paused")


@main.command()
@click.argument("subscription_id")
def resume(subscription_id: str):
    """Resume a paused subscription."""
    config = _load_config()
    try:
        sub, changed = resume_subscription(_store(config), _audit(config), subscription_id)
    except PullPayError as e:
        _fail(f"Failed to resume: {e}")
    click.echo(f"✅ {sub.id} resumed" if changed else f"{sub.id} already active")


@main.command()
@click.argument("subscription_id")
@click.confirmation_option(prompt="Cancel this subscription? Future charges will stop.")
def cancel(subscription_id: str):
    """Cancel a subscription. The record is kept for the audit trail."""
    config = _load_config()
    try:
        sub, changed = cancel_subscription(_store(config), _audit(config), subscription_id)
    except PullPayError as e:
        _fail(f"Failed to cancel: {e}")
    click.echo(f"✅ {sub.id} cancelled" if changed else f"{sub.id} already cancelled")


@main.command()
@click.option("--subscription-id", default=None, help="Filter by subscription ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", is_flag=True, help="Only check the hash chain")
def audit(subscription_id: Optional[str], limit: int, verify: bool):
    """View the audit trail."""
    config = _load_config()
    trail = _audit(config)
    try:
        if verify:
            click.echo(f"✅ Audit chain intact ({trail.verify()} events)")
            return
        events = trail.read_events(subscription_id=subscription_id, limit=limit)
    except RuntimeError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_cents(event.amount)}" if event.amount else ""
        target = f" [{event.subscription_id}]" if event.subscription_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{target}{amount}{reason}")


@main.command()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Logging verbosity",
)
@click.option(
    "--proof-strategy",
    type=click.Choice([s.value for s in ProofStrategy], case_sensitive=False),
    default=ProofStrategy.FRESH.value,
    help="How proofs for charges after the first are obtained (pool pre-generates each next charge's proof)",
)
@click.option("--once", is_flag=True, help="Charge every due subscription once, then exit")
def run(log_level: str, proof_strategy: str, once: bool):
    """Run the scheduler until interrupted."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = _load_config()
    store = _store(config)
    audit_trail = _audit(config)
    try:
        scheduler, relayer = _build_scheduler(config, store, audit_trail, ProofStrategy(proof_strategy.lower()))
    except PullPayError as e:
        _fail(f"Cannot start scheduler: {e}")

    try:
        if once:
            _run_due_once(scheduler, store)
            return
        armed = scheduler.start()
        click.echo(f"🚀 Scheduler running ({armed} active subscriptions). Ctrl-C to stop.")
        while True:
            time.sleep(config.reconcile_interval_seconds)
            changes = scheduler.reconcile()
            if changes:
                logger.info("Reconciled %d timers with the store", changes)
    except KeyboardInterrupt:
        click.echo("Stopping scheduler...")
    finally:
        scheduler.shutdown()
        relayer.shutdown()


def _run_due_once(scheduler: SubscriptionScheduler, store: SqliteSubscriptionStore) -> None:
    now = time.time()
    due = [s for s in store.list(status=SubscriptionStatus.ACTIVE) if s.is_due(now)]
    if not due:
        click.echo("No subscriptions due.")
        return
    for sub in due:
        outcome = scheduler.run_now(sub.id)
        if isinstance(outcome, Settled):
            click.echo(f"  ✅ {sub.id} charged {format_cents(sub.charge_amount)} ({outcome.reference})")
        elif isinstance(outcome, Rejected):
            click.echo(f"  ❌ {sub.id} rejected: {outcome.reason.value}")
        elif outcome is not None:
            click.echo(f"  ⏳ {sub.id} will retry: {outcome.detail}")


if __name__ == "__main__":
    main()
