from __future__ import annotations

import hashlib

import pytest

from services import password_service
from services.password_service import (
    LegacyCredential,
    ModernCredential,
    hash_password,
    parse_credential,
    verify_password,
)


def test_hash_then_verify_round_trip() -> None:
    stored = hash_password("correct horse")

    result = verify_password("correct horse", stored)

    assert result.verified is True
    assert result.needs_rehash is False
    assert result.new_credential is None


def test_hash_uses_scrypt_format_with_fresh_salt() -> None:
    first = hash_password("secret")
    second = hash_password("secret")

    assert first.startswith("scrypt$")
    assert len(first.split("$")) == 3
    assert first != second
    credential = parse_credential(first)
    assert isinstance(credential, ModernCredential)
    assert len(credential.salt) == password_service.SCRYPT_SALT_BYTES
    assert len(credential.key) == password_service.SCRYPT_KEY_BYTES


def test_wrong_password_is_rejected() -> None:
    stored = hash_password("alpha")

    assert verify_password("beta", stored).verified is False


def test_legacy_digest_verifies_and_requests_rehash() -> None:
    legacy = hashlib.sha256(b"secret").hexdigest()

    result = verify_password("secret", legacy)

    assert result.verified is True
    assert result.needs_rehash is True
    assert result.new_credential is not None
    assert verify_password("secret", result.new_credential).verified is True


def test_legacy_digest_with_wrong_password() -> None:
    legacy = hashlib.sha256(b"secret").hexdigest()

    result = verify_password("Secret", legacy)

    assert result.verified is False
    assert result.needs_rehash is False


def test_uppercase_legacy_digest_is_accepted() -> None:
    legacy = hashlib.sha256(b"secret").hexdigest().upper()

    assert isinstance(parse_credential(legacy), LegacyCredential)
    assert verify_password("secret", legacy).verified is True


@pytest.mark.parametrize(
    "stored",
    [
        None,
        "",
        hashlib.sha256(b"secret").hexdigest()[:63],
        "z" * 64,
        "scrypt$onlyonefield",
        "scrypt$a$b$c",
        "scrypt$!!!$???",
        "bcrypt$abc$def",
    ],
)
def test_malformed_credentials_fail_without_raising(stored) -> None:
    assert verify_password("secret", stored).verified is False


def test_none_password_never_verifies() -> None:
    assert verify_password(None, hash_password("secret")).verified is False


@pytest.mark.parametrize("stored", [hash_password("secret"), hashlib.sha256(b"secret").hexdigest()])
def test_unencodable_password_fails_without_raising(stored) -> None:
    assert verify_password("\ud800", stored).verified is False


def test_hash_rejects_unencodable_password() -> None:
    with pytest.raises(ValueError):
        hash_password("se\udfffcret")


def test_constant_time_equals_fails_fast_on_length_mismatch(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_compare(*_args):
        raise AssertionError("compare_digest should not run on length mismatch")

    monkeypatch.setattr(password_service.hmac, "compare_digest", fail_compare)

    assert password_service._constant_time_equals(b"abc", b"abcd") is False
