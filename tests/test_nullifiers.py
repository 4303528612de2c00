"""Tests for the nullifier ledger test-and-set."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from pullpay.errors import AlreadyUsedError
from pullpay.nullifiers import (
    InMemoryNullifierLedger,
    SqliteNullifierLedger,
    charge_tag,
    derive_nullifier,
    subscription_secret,
)


TAG = "0x" + "5a" * 32
LEAF = "0x" + "1e" * 32


@pytest.fixture(params=["sqlite", "memory"])
def any_ledger(request, tmp_path, clock):
    if request.param == "sqlite":
        return SqliteNullifierLedger(tmp_path / "nullifiers.sqlite3", clock)
    return InMemoryNullifierLedger(clock)


class TestLedger:
    def test_mark_then_used(self, any_ledger, clock):
        assert not any_ledger.is_used(TAG)
        record = any_ledger.mark_used(TAG, reference="0xtx", context="sub_1#0")

        assert any_ledger.is_used(TAG)
        assert record.consumed_at == clock()
        assert any_ledger.lookup(TAG).reference == "0xtx"

    def test_second_mark_raises(self, any_ledger):
        any_ledger.mark_used(TAG)
        with pytest.raises(AlreadyUsedError) as exc:
            any_ledger.mark_used(TAG)
        assert exc.value.tag == TAG

    def test_tags_are_case_insensitive(self, any_ledger):
        any_ledger.mark_used(TAG.upper().replace("0X", "0x"))
        assert any_ledger.is_used(TAG)

    def test_concurrent_marks_exactly_one_wins(self, any_ledger):
        def attempt(_):
            try:
                any_ledger.mark_used(TAG)
                return True
            except AlreadyUsedError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(32)))

        assert results.count(True) == 1

    def test_sqlite_ledger_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "nullifiers.sqlite3"
        SqliteNullifierLedger(path, clock).mark_used(TAG, reference="0xabc")

        reopened = SqliteNullifierLedger(path, clock)
        assert reopened.lookup(TAG).reference == "0xabc"


class TestDerivation:
    def test_counter_changes_nullifier(self):
        assert derive_nullifier(LEAF, 1) != derive_nullifier(LEAF, 2)
        assert derive_nullifier(LEAF, 1) == derive_nullifier(LEAF, 1)

    def test_secret_unlinks_subscriptions(self, payer):
        a = subscription_secret(payer.address, "sub_a")
        b = subscription_secret(payer.address, "sub_b")

        assert derive_nullifier(LEAF, 1, a) != derive_nullifier(LEAF, 1, b)

    def test_negative_counter_rejected(self):
        with pytest.raises(ValueError):
            derive_nullifier(LEAF, -1)

    def test_charge_tag_unique_per_index_and_permit(self, make_permit):
        first = make_permit(nonce=1)
        second = make_permit(nonce=2)

        tags = {charge_tag(first, 0), charge_tag(first, 1), charge_tag(second, 0)}
        assert len(tags) == 3
