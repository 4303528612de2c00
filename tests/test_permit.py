"""Tests for permit signing, recovery and serialization."""

import dataclasses

import pytest
from eth_account import Account

from pullpay.errors import InvalidInputError, SigningRejectedError
from pullpay.permit import (
    CapMode,
    ExecutionDomain,
    LocalKeySigner,
    Permit,
    build_permit,
    normalize_address,
    normalize_bytes32,
    permit_digest,
    recover_permit_signer,
    verify_permit_signature,
)

from conftest import ADAPTER, COMMITMENT, NOTE_ID, PAYEE, private_key


class TestPermitSigning:
    def test_signature_recovers_to_payer(self, make_permit, payer):
        permit = make_permit()

        assert recover_permit_signer(permit) == payer.address.lower()
        ok, reason = verify_permit_signature(permit, payer.address)
        assert ok, reason

    def test_wrong_expected_signer_is_reported(self, make_permit):
        permit = make_permit()
        ok, reason = verify_permit_signature(permit, Account.create().address)

        assert not ok
        assert "Signer mismatch" in reason

    def test_tampered_field_breaks_signature(self, make_permit, payer):
        permit = make_permit(max_amount=1_000)
        tampered = dataclasses.replace(permit, max_amount=1_000_000)

        ok, _ = verify_permit_signature(tampered, payer.address)
        assert not ok

    def test_unsigned_permit_fails_verification(self, make_permit, payer):
        unsigned = dataclasses.replace(make_permit(), signature="")

        with pytest.raises(InvalidInputError, match="unsigned"):
            recover_permit_signer(unsigned)
        ok, _ = verify_permit_signature(unsigned, payer.address)
        assert not ok

    def test_digest_depends_on_domain(self, make_permit, domain):
        other = ExecutionDomain(domain.protocol_name, domain.version, 8453, domain.verifying_contract)
        assert permit_digest(make_permit()) != permit_digest(make_permit(permit_domain=other))

    def test_zero_cap_rejected(self, payer, domain):
        with pytest.raises(InvalidInputError, match="max_amount"):
            build_permit(LocalKeySigner(private_key(payer)), domain, NOTE_ID, PAYEE, 0, 2_000_000_000, 1)

    def test_malformed_payee_rejected(self, payer, domain):
        with pytest.raises(InvalidInputError, match="Invalid Ethereum address"):
            build_permit(LocalKeySigner(private_key(payer)), domain, NOTE_ID, "0x1234", 100, 2_000_000_000, 1)

    def test_declining_signer_propagates(self, domain):
        class Declines:
            address = PAYEE

            def sign_permit(self, domain, message):
                raise SigningRejectedError("user rejected the request")

        with pytest.raises(SigningRejectedError):
            build_permit(Declines(), domain, NOTE_ID, PAYEE, 100, 2_000_000_000, 1)

    def test_shielded_permit_flags(self, shielded_permit):
        assert shielded_permit.is_shielded
        assert shielded_permit.payee_commitment == COMMITMENT


class TestPermitSerialization:
    def test_dict_round_trip_preserves_signature_validity(self, make_permit, payer):
        permit = make_permit()
        restored = Permit.from_dict(permit.to_dict())

        assert restored == permit
        assert verify_permit_signature(restored, payer.address)[0]

    def test_eip712_message_uses_wire_field_names(self, make_permit):
        typed = make_permit().to_eip712_message()

        names = [f["name"] for f in typed["types"]["Permit"]]
        assert names == ["noteId", "merchant", "maxAmount", "expiry", "nonce", "merchantCommitment"]
        assert typed["domain"]["verifyingContract"] == ADAPTER

    def test_call_tuple_layout(self, make_permit):
        permit = make_permit()
        note, payee, cap, expiry, nonce, signature, commitment = permit.as_call_tuple()

        assert note == bytes.fromhex(NOTE_ID[2:])
        assert payee == PAYEE
        assert cap == permit.max_amount
        assert len(signature) == 65
        assert commitment == b"\x00" * 32


class TestDomain:
    def test_cap_mode_follows_version(self, domain):
        assert domain.cap_mode == CapMode.LIFETIME
        assert dataclasses.replace(domain, version="1").cap_mode == CapMode.PER_CHARGE

    def test_unknown_version_rejected(self, domain):
        with pytest.raises(InvalidInputError, match="Unsupported"):
            dataclasses.replace(domain, version="9").cap_mode


class TestNormalization:
    def test_address_lowercased(self):
        assert normalize_address("  0xABCDEF0123456789ABCDEF0123456789ABCDEF01 ") == (
            "0xabcdef0123456789abcdef0123456789abcdef01"
        )

    def test_bytes32_accepts_raw_bytes_and_missing_prefix(self):
        assert normalize_bytes32(b"\x01" * 32, "x") == "0x" + "01" * 32
        assert normalize_bytes32("AB" * 32, "x") == "0x" + "ab" * 32

    def test_bytes32_wrong_length(self):
        with pytest.raises(InvalidInputError, match="32 bytes"):
            normalize_bytes32("0x1234", "note_id")
