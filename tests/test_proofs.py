"""Tests for proof bundles, the HTTP prover adapter and proof selection."""

import dataclasses

import httpx
import pytest

from pullpay.errors import InvalidInputError, ProofGenerationError, ProofUnavailableError
from pullpay.proofs import (
    HttpProofProvider,
    PrecomputedProofPool,
    ProofBundle,
    ProofRequest,
    ProofSource,
    ProofStrategy,
    truncated_ladder,
)

from conftest import NOTE_ID, FakeProver, make_bundle


REQUEST = ProofRequest(note_id=NOTE_ID, amount=500, remaining_balance=1_500, nonce=3)


class TestProofBundle:
    def test_valid_bundle(self):
        bundle = make_bundle()
        bundle.validate()
        assert bundle.nullifier == "0x" + "aa" * 32

    def test_wrong_public_input_count(self):
        bundle = dataclasses.replace(make_bundle(), public_inputs=("0x" + "11" * 32,))
        with pytest.raises(InvalidInputError, match="publicInputs"):
            bundle.validate()

    def test_range_requires_commitment(self):
        bundle = dataclasses.replace(make_bundle(), range_min=1, range_max=10)
        with pytest.raises(InvalidInputError, match="commitment"):
            bundle.validate()

    def test_dict_uses_camel_case(self):
        d = make_bundle(amount=5).to_dict()
        assert set(d) == {"proof", "publicInputs", "amount", "rangeMin", "rangeMax", "amountCommitment"}
        assert ProofBundle.from_dict(d) == make_bundle(amount=5)


class TestHttpProofProvider:
    def _provider(self, handler):
        return HttpProofProvider("https://prover.example/", client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_success(self):
        def handler(request):
            assert request.url.path == "/prove"
            return httpx.Response(200, json=make_bundle().to_dict() | {"amount": None})

        bundle = self._provider(handler).generate_proof(REQUEST)
        assert bundle.amount == 500

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_unavailable_is_retryable(self, status):
        with pytest.raises(ProofUnavailableError):
            self._provider(lambda request: httpx.Response(status)).generate_proof(REQUEST)

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow prover", request=request)

        with pytest.raises(ProofUnavailableError) as exc:
            self._provider(handler).generate_proof(REQUEST)
        assert exc.value.retry_after == 5.0

    def test_bad_inputs_are_permanent(self):
        with pytest.raises(ProofGenerationError):
            self._provider(lambda request: httpx.Response(422, text="balance too low")).generate_proof(REQUEST)

    def test_malformed_bundle_is_permanent(self):
        def handler(request):
            return httpx.Response(200, json={"proof": "0x", "publicInputs": []})

        with pytest.raises(ProofGenerationError, match="malformed"):
            self._provider(handler).generate_proof(REQUEST)


class TestLadderAndPool:
    def test_ladder_truncated_at_balance(self):
        assert truncated_ladder(10) == [1, 2, 4, 8]
        assert truncated_ladder(8) == [1, 2, 4, 8]

    def test_ladder_requires_positive_balance(self):
        with pytest.raises(ValueError):
            truncated_ladder(0)

    def test_precompute_fills_every_bucket(self):
        pool = PrecomputedProofPool()
        prover = FakeProver()

        added = pool.precompute(prover, NOTE_ID, nonce=1, balance=16)

        assert added == 5
        assert pool.available(NOTE_ID) == {1: 1, 2: 1, 4: 1, 8: 1, 16: 1}
        assert [r.remaining_balance for r in prover.requests] == [15, 14, 12, 8, 0]

    def test_take_matches_exact_amount_only(self):
        pool = PrecomputedProofPool()
        pool.add(NOTE_ID, make_bundle(amount=4))

        assert pool.take(NOTE_ID, 3) is None
        assert pool.take(NOTE_ID, 4) is not None
        assert pool.take(NOTE_ID, 4) is None

    def test_pool_rejects_bundle_without_amount(self):
        with pytest.raises(InvalidInputError):
            PrecomputedProofPool().add(NOTE_ID, make_bundle())

    def test_precompute_adds_exact_charge_amount(self):
        pool = PrecomputedProofPool()

        added = pool.precompute(FakeProver(), NOTE_ID, nonce=1, balance=12_000, amounts=[1_000, 1_024])

        assert added == 15
        assert pool.available(NOTE_ID)[1_000] == 1
        assert pool.available(NOTE_ID)[1_024] == 1

    def test_stock_tops_up_to_depth(self):
        pool = PrecomputedProofPool()
        prover = FakeProver()

        assert pool.stock(prover, REQUEST, depth=2) == 2
        assert pool.stock(prover, REQUEST, depth=2) == 0
        pool.take(NOTE_ID, 500)
        assert pool.stock(prover, REQUEST, depth=2) == 1
        assert len(prover.requests) == 3


class TestProofSource:
    def test_initial_bundle_only_for_first_charge(self):
        prover = FakeProver()
        source = ProofSource(prover)
        initial = make_bundle(marker="01")

        assert source.obtain(REQUEST, charge_index=0, initial_bundle=initial) is initial
        later = source.obtain(REQUEST, charge_index=1, initial_bundle=initial)

        assert later is not initial
        assert len(prover.requests) == 1

    def test_pool_strategy_prefers_pool_then_falls_back(self):
        prover = FakeProver()
        pool = PrecomputedProofPool()
        pooled = make_bundle(amount=500, marker="02")
        pool.add(NOTE_ID, pooled)
        source = ProofSource(prover, ProofStrategy.POOL, pool)

        assert source.obtain(REQUEST, charge_index=1) == pooled
        assert prover.requests == []
        source.obtain(REQUEST, charge_index=2)
        assert len(prover.requests) == 1

    def test_pool_strategy_needs_pool(self):
        with pytest.raises(InvalidInputError):
            ProofSource(FakeProver(), ProofStrategy.POOL)

    def test_pooled_charge_served_without_prover(self):
        prover = FakeProver()
        pool = PrecomputedProofPool()
        pool.precompute(prover, NOTE_ID, nonce=1, balance=12_000, amounts=[1_000])
        generated = len(prover.requests)
        source = ProofSource(prover, ProofStrategy.POOL, pool)

        bundle = source.obtain(
            ProofRequest(note_id=NOTE_ID, amount=1_000, remaining_balance=10_000, nonce=1),
            charge_index=1,
        )

        assert bundle.amount == 1_000
        assert len(prover.requests) == generated

    def test_prepare_stocks_only_when_pooling(self):
        prover = FakeProver()
        assert ProofSource(prover).prepare(REQUEST) == 0
        assert prover.requests == []

        pool = PrecomputedProofPool()
        source = ProofSource(prover, ProofStrategy.POOL, pool)
        assert source.prepare(REQUEST) == 1
        assert source.obtain(REQUEST, charge_index=1).amount == 500
        assert len(prover.requests) == 1

    def test_anchored_requests_bypass_pool(self):
        prover = FakeProver()
        pool = PrecomputedProofPool()
        pool.add(NOTE_ID, make_bundle(amount=500, marker="02"))
        source = ProofSource(prover, ProofStrategy.POOL, pool)
        anchored = dataclasses.replace(REQUEST, merkle_root="0x" + "99" * 32)

        assert source.prepare(anchored) == 0
        source.obtain(anchored, charge_index=1)

        assert prover.requests == [anchored]
        assert pool.available(NOTE_ID) == {500: 1}
