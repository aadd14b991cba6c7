from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import serialization

from parcelfi.core import canonical_json_bytes, jsonable, parse_iso8601, quantize_money, to_decimal
from parcelfi.proofs import (
    SigningKey,
    add_proof,
    b58decode,
    b58encode,
    b64url_encode,
    did_key_from_ed25519_public_key,
    ed25519_public_key_from_did_key,
    verify_proof,
)
from parcelfi.schema import LOAN_TERMS_SCHEMA, validate_against_schema
from parcelfi.settlement.models import LoanKind, LoanTerms


def _terms(**overrides):
    data = {
        "principal": "10000",
        "rate_bps": 850,
        "duration_months": 12,
        "collateral_ratio_bps": 5000,
    }
    data.update(overrides)
    return data


# =============================================================================
# Canonical JSON and amounts
# =============================================================================

def test_canonical_json_sorts_keys_without_whitespace():
    assert canonical_json_bytes({"b": 1, "a": [True, None]}) == b'{"a":[true,null],"b":1}'


def test_canonical_json_rejects_floats():
    with pytest.raises(ValueError, match="Float not allowed"):
        canonical_json_bytes({"amount": 1.5})


def test_decimals_travel_as_strings():
    assert canonical_json_bytes({"amount": Decimal("10070.83")}) == b'{"amount":"10070.83"}'
    assert jsonable({"when": parse_iso8601("2026-01-01T00:00:00Z")}) == {"when": "2026-01-01T00:00:00.000Z"}


@pytest.mark.parametrize("value", [1.5, True, "abc", "NaN", "Infinity"])
def test_to_decimal_rejects(value):
    with pytest.raises(ValueError):
        to_decimal(value)


def test_quantize_money_rounds_half_up():
    assert quantize_money(Decimal("70.835")) == Decimal("70.84")
    assert quantize_money(Decimal("70.8333")) == Decimal("70.83")


def test_parse_iso8601():
    assert parse_iso8601("2026-02-15T00:00:00Z").tzinfo is not None
    assert parse_iso8601("not a date") is None


# =============================================================================
# Loan terms schema
# =============================================================================

def test_valid_terms():
    assert validate_against_schema(_terms(), LOAN_TERMS_SCHEMA) == []
    terms = LoanTerms.from_dict(_terms(kind="express", grace_period_days=5))
    assert terms.principal == Decimal("10000")
    assert terms.kind == LoanKind.EXPRESS
    assert terms.grace_period_days == 5


def test_integer_principal_is_accepted():
    assert LoanTerms.from_dict(_terms(principal=5000)).principal == Decimal("5000")


@pytest.mark.parametrize("overrides", [
    {"principal": 10000.5},
    {"principal": "-5"},
    {"principal": "1e5"},
    {"rate_bps": 10001},
    {"duration_months": 0},
    {"kind": "margin"},
    {"unexpected": True},
])
def test_invalid_terms(overrides):
    with pytest.raises(ValueError):
        LoanTerms.from_dict(_terms(**overrides))


def test_missing_field_is_reported():
    data = _terms()
    del data["rate_bps"]
    errors = validate_against_schema(data, LOAN_TERMS_SCHEMA)
    assert len(errors) == 1
    assert "rate_bps" in errors[0]


def test_terms_round_trip_through_dict():
    terms = LoanTerms.from_dict(_terms(description="orchard parcel"))
    assert LoanTerms.from_dict(terms.to_dict()) == terms


# =============================================================================
# Proofs
# =============================================================================

def test_proof_verifies():
    key = SigningKey.generate()
    envelope = add_proof({"event_id": "evt-1", "metadata": {"principal": "10000"}}, key)
    assert envelope["proof"]["verificationMethod"] == key.verification_method
    assert verify_proof(envelope) == (True, "")


def test_tampering_is_detected():
    envelope = add_proof({"event_id": "evt-1", "total": "10070.83"}, SigningKey.generate())
    envelope["total"] = "1.00"
    ok, error = verify_proof(envelope)
    assert not ok


def test_proof_from_another_key_is_rejected():
    envelope = add_proof({"event_id": "evt-1"}, SigningKey.generate())
    other = SigningKey.generate()
    envelope["proof"]["verificationMethod"] = other.verification_method
    ok, _ = verify_proof(envelope)
    assert not ok


def test_missing_and_foreign_proofs():
    assert verify_proof({"event_id": "evt-1"}) == (False, "missing proof")
    envelope = add_proof({"event_id": "evt-1"}, SigningKey.generate())
    envelope["proof"]["type"] = "Ed25519Signature2020"
    ok, error = verify_proof(envelope)
    assert not ok
    assert "Unsupported" in error


def test_signing_key_from_jwk():
    generated = SigningKey.generate()
    d = generated.private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    x = generated.private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    key = SigningKey.from_jwk({"kty": "OKP", "crv": "Ed25519", "d": b64url_encode(d), "x": b64url_encode(x), "kid": "ops"})
    assert key.verification_method == generated.verification_method.replace("#key-1", "#ops")
    with pytest.raises(ValueError):
        SigningKey.from_jwk({"kty": "RSA"})


def test_did_key_round_trip():
    public_key = SigningKey.generate().private_key.public_key()
    pub = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    did = did_key_from_ed25519_public_key(pub)
    assert did.startswith("did:key:z6Mk")
    parsed = ed25519_public_key_from_did_key(did + "#key-1")
    assert parsed.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    ) == pub


def test_base58_preserves_leading_zeros():
    data = b"\x00\x00\x01\x02"
    assert b58decode(b58encode(data)) == data
