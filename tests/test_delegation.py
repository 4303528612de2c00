"""Tests for delegation anchor authorization and its helpers."""

import httpx
import pytest
from eth_account import Account

from pullpay.delegation import (
    LATEST_ROOT_SELECTOR,
    ActionDescriptor,
    Attestation,
    ChainRootSource,
    DelegationAnchor,
    HttpDelegationSource,
    StaticRootSource,
    build_leaf,
    compute_root,
    merkle_proof,
    merkle_root,
    sign_attestation,
)
from pullpay.errors import AttestationDeniedError, DelegationUnavailableError
from pullpay.nullifiers import InMemoryNullifierLedger, derive_nullifier
from pullpay.permit import ZERO_BYTES32
from pullpay.verifier import RejectReason

from conftest import ADAPTER, COMMITMENT, FakeChain, private_key


def _leaves(n: int) -> list[str]:
    return [build_leaf("0x" + f"{i:02x}" * 32, "0x" + "5a" * 32) for i in range(1, n + 1)]


@pytest.fixture
def attester():
    return Account.create()


@pytest.fixture
def action():
    return ActionDescriptor("takeWithDelegationAnchor", COMMITMENT, 500, 84532, ADAPTER)


@pytest.fixture
def anchor(attester):
    return DelegationAnchor(InMemoryNullifierLedger(), attester.address)


class TestMerkle:
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8])
    def test_every_leaf_proves_to_root(self, size):
        leaves = _leaves(size)
        root = merkle_root(leaves)

        for i, leaf in enumerate(leaves):
            assert compute_root(leaf, merkle_proof(leaves, i)) == root

    def test_foreign_leaf_does_not_prove(self):
        leaves = _leaves(4)
        outsider = _leaves(5)[4]

        assert compute_root(outsider, merkle_proof(leaves, 0)) != merkle_root(leaves)

    def test_index_out_of_range(self):
        with pytest.raises(IndexError):
            merkle_proof(_leaves(2), 2)


class TestAuthorize:
    def test_valid_delegation_consumes_nullifier(self, anchor, attester, action):
        leaves = _leaves(4)
        leaf = leaves[2]
        attestation = sign_attestation(private_key(attester), leaf, action.hash())

        result = anchor.authorize(leaf, 1, merkle_root(leaves), merkle_proof(leaves, 2), attestation, action=action)

        assert result.ok
        assert result.nullifier == derive_nullifier(leaf, 1)
        assert anchor.ledger.is_used(result.nullifier)

    def test_replayed_counter_rejected(self, anchor, attester, action):
        leaves = _leaves(2)
        attestation = sign_attestation(private_key(attester), leaves[0], action.hash())
        args = (leaves[0], 7, merkle_root(leaves), merkle_proof(leaves, 0), attestation)

        assert anchor.authorize(*args, action=action).ok
        replay = anchor.authorize(*args, action=action)

        assert not replay.ok
        assert replay.reason == RejectReason.NULLIFIER_USED

    def test_rotated_root_rejects_and_marks_nothing(self, anchor, attester, action):
        old_leaves = _leaves(3)
        leaf = old_leaves[0]
        proof = merkle_proof(old_leaves, 0)
        roots = StaticRootSource(merkle_root(old_leaves))
        roots.rotate(merkle_root(_leaves(6)[3:]))
        attestation = sign_attestation(private_key(attester), leaf, action.hash())

        result = anchor.authorize(leaf, 1, roots.current_root(), proof, attestation, action=action)

        assert result.reason == RejectReason.STALE_OR_UNKNOWN_ROOT
        assert not anchor.ledger.is_used(derive_nullifier(leaf, 1))

    def test_zero_root_rejected(self, anchor, attester, action):
        leaf = _leaves(1)[0]
        attestation = sign_attestation(private_key(attester), leaf, action.hash())

        result = anchor.authorize(leaf, 1, ZERO_BYTES32, [], attestation, action=action)
        assert result.reason == RejectReason.STALE_OR_UNKNOWN_ROOT

    def test_attestation_from_wrong_key(self, anchor, action):
        leaves = _leaves(2)
        forged = sign_attestation(private_key(Account.create()), leaves[0], action.hash())

        result = anchor.authorize(leaves[0], 1, merkle_root(leaves), merkle_proof(leaves, 0), forged, action=action)

        assert result.reason == RejectReason.BAD_ATTESTATION
        assert not anchor.ledger.is_used(derive_nullifier(leaves[0], 1))

    def test_attestation_bound_to_action(self, anchor, attester, action):
        leaves = _leaves(2)
        other = ActionDescriptor(action.method, action.recipient_or_commitment, 999_999, 84532, ADAPTER)
        attestation = sign_attestation(private_key(attester), leaves[0], other.hash())

        result = anchor.authorize(
            leaves[0], 1, merkle_root(leaves), merkle_proof(leaves, 0), attestation, action=action
        )
        assert result.reason == RejectReason.BAD_ATTESTATION

    def test_garbage_attestation(self, anchor, action):
        leaves = _leaves(2)
        result = anchor.authorize(
            leaves[0], 1, merkle_root(leaves), merkle_proof(leaves, 0), Attestation("0x1234"), action=action
        )
        assert result.reason == RejectReason.BAD_ATTESTATION


class TestActionHash:
    def test_public_recipient_padded(self):
        a = ActionDescriptor("take", "0x" + "12" * 20, 1, 84532, ADAPTER)
        b = ActionDescriptor("take", "0x" + "00" * 12 + "12" * 20, 1, 84532, ADAPTER)
        assert a.hash() == b.hash()

    def test_amount_changes_hash(self, action):
        other = ActionDescriptor(action.method, action.recipient_or_commitment, 501, 84532, ADAPTER)
        assert other.hash() != action.hash()


class TestRootSources:
    def test_chain_root_source_reads_latest_root(self):
        chain = FakeChain()
        chain.call_result = bytes.fromhex("77" * 32)

        root = ChainRootSource(chain, "0x" + "aa" * 20).current_root()

        assert root == "0x" + "77" * 32
        assert chain.calls == [("0x" + "aa" * 20, LATEST_ROOT_SELECTOR)]

    def test_short_result_is_transient(self):
        with pytest.raises(DelegationUnavailableError):
            ChainRootSource(FakeChain(), "0x" + "aa" * 20).current_root()


class TestHttpDelegationSource:
    def _source(self, handler):
        return HttpDelegationSource("https://policy.example", client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_returns_material(self, action):
        leaf = _leaves(1)[0]
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"attestation": "0xabcd", "merkleProof": ["0x" + "01" * 32]})

        material = self._source(handler).material_for(leaf, action)

        assert seen["path"] == "/attest"
        assert material.attestation.signature == "0xabcd"
        assert material.merkle_proof == ["0x" + "01" * 32]

    def test_server_error_is_retryable(self, action):
        source = self._source(lambda request: httpx.Response(503, headers={"retry-after": "7"}))

        with pytest.raises(DelegationUnavailableError) as exc:
            source.material_for(_leaves(1)[0], action)
        assert exc.value.retry_after == 7.0

    def test_refusal_is_permanent(self, action):
        source = self._source(lambda request: httpx.Response(403, text="policy denies"))

        with pytest.raises(AttestationDeniedError):
            source.material_for(_leaves(1)[0], action)
