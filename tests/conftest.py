"""Shared fixtures: deterministic clock and timers, fake chain node and prover."""

import threading

import pytest
from eth_account import Account
from eth_utils import keccak

from pullpay.audit import AuditTrail
from pullpay.encryption import SubscriptionCipher
from pullpay.errors import RelayerTransientError, TransactionRevertedError
from pullpay.executor import PaymentExecutor
from pullpay.nullifiers import InMemoryNullifierLedger
from pullpay.permit import ZERO_ADDRESS, ZERO_BYTES32, ExecutionDomain, LocalKeySigner, build_permit
from pullpay.proofs import ProofBundle, ProofSource
from pullpay.relayer import Receipt, RelayerGateway
from pullpay.store import InMemorySubscriptionStore
from pullpay.verifier import PermitVerifier


T0 = 1_700_000_000.0
DAY = 86_400.0
ADAPTER = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
PAYEE = "0x1234567890123456789012345678901234567890"
COMMITMENT = "0x" + "ab" * 32
NOTE_ID = "0x" + "0c" * 32


def private_key(account) -> str:
    return "0x" + bytes(account.key).hex()


def make_bundle(amount=None, marker: str = "aa") -> ProofBundle:
    return ProofBundle(
        proof="0x" + marker * 64,
        public_inputs=(
            "0x" + "11" * 32,
            "0x" + "22" * 32,
            "0x" + "33" * 32,
            "0x" + marker * 32,
        ),
        amount=amount,
    )


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer:
    def __init__(self, due: float, fn):
        self.due = due
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimers:
    """Timer factory whose timers only fire when the test says so."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.timers: list[ManualTimer] = []

    def __call__(self, delay, fn):
        timer = ManualTimer(self.clock() + max(0.0, delay), fn)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def run_next(self) -> bool:
        """Advance the clock to the earliest pending timer and fire it."""
        pending = self.pending()
        if not pending:
            return False
        timer = min(pending, key=lambda t: t.due)
        if timer.due > self.clock.now:
            self.clock.now = timer.due
        timer.fired = True
        timer.fn()
        return True

    def run_all(self, limit: int = 500) -> int:
        fired = 0
        while fired < limit and self.run_next():
            fired += 1
        return fired


class FakeChain:
    """
    In-memory chain node.

    ``script`` holds one action per submission: ``"ok"``, ``"transient"``
    (broadcast fails), ``"timeout"`` (mined, but the receipt shows up only
    on a later lookup), ``("revert", reason)`` (mined with status 0) or
    ``("estimate_revert", reason)`` (fee estimation reverts).
    """

    def __init__(self, script=None, start_nonce: int = 7):
        self.script = list(script or [])
        self.start_nonce = start_nonce
        self.sent: list[bytes] = []
        self.nonce_reads = 0
        self.calls: list[tuple[str, bytes]] = []
        self.call_result = b""
        self._receipts: dict[str, Receipt] = {}
        self._late: set[str] = set()
        self._action = "ok"
        self._block = 100
        self._lock = threading.Lock()

    def pending_nonce(self, address: str) -> int:
        self.nonce_reads += 1
        return self.start_nonce + len(self.sent)

    def gas_price(self) -> int:
        return 1_000_000_000

    def estimate_gas(self, tx: dict) -> int:
        with self._lock:
            self._action = self.script.pop(0) if self.script else "ok"
        if isinstance(self._action, tuple) and self._action[0] == "estimate_revert":
            raise TransactionRevertedError(self._action[1])
        return 100_000

    def send_raw_transaction(self, raw: bytes) -> str:
        action = self._action
        if action == "transient":
            raise RelayerTransientError("connection reset by peer")
        tx_hash = "0x" + keccak(bytes(raw)).hex()
        with self._lock:
            self.sent.append(bytes(raw))
            self._block += 1
            if isinstance(action, tuple) and action[0] == "revert":
                receipt = Receipt(tx_hash, 0, self._block, 90_000, action[1])
            else:
                receipt = Receipt(tx_hash, 1, self._block, 90_000)
            self._receipts[tx_hash] = receipt
            if action == "timeout":
                self._late.add(tx_hash)
        return tx_hash

    def get_receipt(self, tx_hash: str):
        return self._receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float):
        if tx_hash in self._late:
            return None
        return self._receipts.get(tx_hash)

    def call(self, to: str, data: bytes) -> bytes:
        self.calls.append((to, bytes(data)))
        return self.call_result


class FakeProver:
    """Proof provider that raises queued errors first, then succeeds."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.requests = []

    def generate_proof(self, request):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return make_bundle(amount=request.amount, marker="ee")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers(clock):
    return ManualTimers(clock)


@pytest.fixture
def domain():
    return ExecutionDomain("PullPay", "2", 84532, ADAPTER)


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def make_permit(payer, domain, clock):
    def _make(
        max_amount: int = 12_000,
        payee: str = PAYEE,
        payee_commitment: str = ZERO_BYTES32,
        expiry=None,
        nonce: int = 1,
        permit_domain=None,
        signer=None,
    ):
        return build_permit(
            signer or LocalKeySigner(private_key(payer)),
            permit_domain or domain,
            note_id=NOTE_ID,
            payee=payee,
            max_amount=max_amount,
            expiry=int(expiry if expiry is not None else clock() + 400 * DAY),
            nonce=nonce,
            payee_commitment=payee_commitment,
        )

    return _make


@pytest.fixture
def shielded_permit(make_permit):
    return make_permit(payee=ZERO_ADDRESS, payee_commitment=COMMITMENT)


@pytest.fixture
def audit(tmp_path, clock):
    return AuditTrail(tmp_path / "audit.jsonl", tmp_path / "secrets" / "audit_hmac.key", clock=clock)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def relayer(chain):
    gateway = RelayerGateway(chain, private_key(Account.create()), 84532, receipt_timeout_seconds=30)
    yield gateway
    gateway.shutdown()


@pytest.fixture
def prover():
    return FakeProver()


@pytest.fixture
def ledger(clock):
    return InMemoryNullifierLedger(clock)


@pytest.fixture
def cipher():
    return SubscriptionCipher(bytes(range(32)))


@pytest.fixture
def store():
    return InMemorySubscriptionStore()


@pytest.fixture
def executor(domain, relayer, prover, ledger, audit, clock):
    return PaymentExecutor(
        PermitVerifier(domain),
        relayer,
        ProofSource(prover),
        ledger,
        audit,
        clock=clock,
    )
