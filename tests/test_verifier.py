"""Tests for permit verification against a proposed charge."""

import dataclasses

import pytest
from eth_account import Account

from pullpay.errors import InvalidInputError
from pullpay.permit import ZERO_ADDRESS, ExecutionDomain
from pullpay.verifier import PermitVerifier, RejectReason, Route

from conftest import ADAPTER, PAYEE


class TestExpiry:
    def test_expired_permit_rejected(self, make_permit, domain, clock):
        permit = make_permit(expiry=clock() + 10)
        result = PermitVerifier(domain).verify(permit, 100, PAYEE, clock() + 11)

        assert not result.ok
        assert result.reason == RejectReason.EXPIRED

    def test_expiry_instant_is_still_valid(self, make_permit, domain, clock):
        permit = make_permit(expiry=clock() + 10)
        result = PermitVerifier(domain).verify(permit, 100, PAYEE, clock() + 10)

        assert result.ok
        assert result.route == Route.PUBLIC

    def test_expiry_checked_before_cap(self, make_permit, domain, clock):
        permit = make_permit(max_amount=10, expiry=clock() + 1)
        result = PermitVerifier(domain).verify(permit, 1_000, PAYEE, clock() + 5)

        assert result.reason == RejectReason.EXPIRED

    @pytest.mark.parametrize("amount", [0, -5])
    def test_expired_permit_rejected_regardless_of_amount(self, make_permit, domain, clock, amount):
        permit = make_permit(expiry=clock() + 1)
        result = PermitVerifier(domain).verify(permit, amount, PAYEE, clock() + 2)

        assert result.reason == RejectReason.EXPIRED


class TestCap:
    def test_lifetime_cap_boundary_is_inclusive(self, make_permit, domain, clock):
        permit = make_permit(max_amount=3_000)
        verifier = PermitVerifier(domain)

        assert verifier.verify(permit, 1_000, PAYEE, clock(), spent_so_far=2_000).ok
        over = verifier.verify(permit, 1_000, PAYEE, clock(), spent_so_far=2_001)
        assert over.reason == RejectReason.AMOUNT_OVER_CAP

    def test_per_charge_cap_ignores_history(self, make_permit, domain, clock):
        v1 = dataclasses.replace(domain, version="1")
        permit = make_permit(max_amount=500, permit_domain=v1)
        verifier = PermitVerifier(v1)

        assert verifier.verify(permit, 500, PAYEE, clock(), spent_so_far=10_000).ok
        assert verifier.verify(permit, 501, PAYEE, clock()).reason == RejectReason.AMOUNT_OVER_CAP

    def test_non_positive_amount_raises(self, make_permit, domain, clock):
        with pytest.raises(InvalidInputError):
            PermitVerifier(domain).verify(make_permit(), 0, PAYEE, clock())


class TestRecipient:
    def test_public_payee_must_match(self, make_permit, domain, clock):
        result = PermitVerifier(domain).verify(make_permit(), 100, Account.create().address, clock())

        assert result.reason == RejectReason.INVALID_RECIPIENT

    def test_missing_or_zero_payee_rejected(self, make_permit, domain, clock):
        verifier = PermitVerifier(domain)
        permit = make_permit()

        assert verifier.verify(permit, 100, None, clock()).reason == RejectReason.INVALID_RECIPIENT
        assert verifier.verify(permit, 100, ZERO_ADDRESS, clock()).reason == RejectReason.INVALID_RECIPIENT

    def test_zero_address_permit_cannot_be_charged_publicly(self, make_permit, domain, clock):
        permit = make_permit(payee=ZERO_ADDRESS)
        result = PermitVerifier(domain).verify(permit, 100, ZERO_ADDRESS, clock())

        assert result.reason == RejectReason.INVALID_RECIPIENT

    def test_commitment_routes_shielded_without_payee(self, shielded_permit, domain, clock):
        result = PermitVerifier(domain).verify(shielded_permit, 100, None, clock())

        assert result.ok
        assert result.route == Route.SHIELDED

    def test_payee_case_insensitive(self, make_permit, domain, clock):
        payee = Account.create().address
        permit = make_permit(payee=payee.lower())

        assert PermitVerifier(domain).verify(permit, 100, payee, clock()).ok


class TestDomain:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("chain_id", 1),
            ("protocol_name", "Other"),
            ("verifying_contract", "0x" + "99" * 20),
        ],
    )
    def test_domain_mismatch(self, make_permit, domain, clock, field, value):
        deployment = dataclasses.replace(domain, **{field: value})
        result = PermitVerifier(deployment).verify(make_permit(), 100, PAYEE, clock())

        assert not result.ok
        assert result.reason == RejectReason.DOMAIN_MISMATCH

    def test_version_mismatch(self, make_permit, clock):
        v1 = ExecutionDomain("PullPay", "1", 84532, ADAPTER)
        result = PermitVerifier(v1).verify(make_permit(max_amount=100), 100, PAYEE, clock())

        assert result.reason == RejectReason.DOMAIN_MISMATCH

    def test_verify_is_repeatable(self, make_permit, domain, clock):
        verifier = PermitVerifier(domain)
        permit = make_permit()

        first = verifier.verify(permit, 100, PAYEE, clock())
        second = verifier.verify(permit, 100, PAYEE, clock())
        assert first == second
