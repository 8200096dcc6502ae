"""Access-password hashing with a legacy-digest migration path.

Stored credentials come in two shapes:

* ``scrypt$<salt b64>$<key b64>`` -- the current format, always produced by
  :func:`hash_password`.
* a bare 64-character hex SHA-256 digest without salt -- written by older
  releases and only ever verified, never produced.

The scrypt cost parameters are frozen. Changing them would invalidate every
stored credential, so a parameter change needs a new scheme prefix and a
re-hash on the next successful verification.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from core.logging import get_logger

logger = get_logger(__name__)

SCRYPT_SCHEME = "scrypt"
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_SALT_BYTES = 16
SCRYPT_KEY_BYTES = 32
_SCRYPT_MAXMEM = 64 * 1024 * 1024

_LEGACY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ModernCredential:
    salt: bytes
    key: bytes


@dataclass(frozen=True)
class LegacyCredential:
    digest: str


Credential = Union[ModernCredential, LegacyCredential]


@dataclass(frozen=True)
class VerifyResult:
    verified: bool
    needs_rehash: bool = False
    new_credential: Optional[str] = None


_MISMATCH = VerifyResult(verified=False)


def _encode(password: str) -> Optional[bytes]:
    try:
        return password.encode("utf-8")
    except UnicodeEncodeError:
        return None


def _derive(secret: bytes, salt: bytes, length: int) -> bytes:
    return hashlib.scrypt(
        secret,
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        maxmem=_SCRYPT_MAXMEM,
        dklen=length,
    )


def _constant_time_equals(actual: bytes, expected: bytes) -> bool:
    if len(actual) != len(expected):
        return False
    return hmac.compare_digest(actual, expected)


def parse_credential(stored: Optional[str]) -> Optional[Credential]:
    """Classify a stored credential, returning ``None`` when it is unusable."""

    if not stored:
        return None
    if stored.startswith(f"{SCRYPT_SCHEME}$"):
        parts = stored.split("$")
        if len(parts) != 3:
            return None
        try:
            salt = base64.b64decode(parts[1], validate=True)
            key = base64.b64decode(parts[2], validate=True)
        except (binascii.Error, ValueError):
            return None
        if not salt or not key:
            return None
        return ModernCredential(salt=salt, key=key)
    if _LEGACY_PATTERN.match(stored):
        return LegacyCredential(digest=stored.lower())
    return None


def encode_credential(credential: ModernCredential) -> str:
    salt = base64.b64encode(credential.salt).decode("ascii")
    key = base64.b64encode(credential.key).decode("ascii")
    return f"{SCRYPT_SCHEME}${salt}${key}"


def hash_password(password: str) -> str:
    """Hash ``password`` with a fresh salt in the current scheme."""

    secret = _encode(password)
    if secret is None:
        raise ValueError("Password is not valid UTF-8 text")
    salt = secrets.token_bytes(SCRYPT_SALT_BYTES)
    key = _derive(secret, salt, SCRYPT_KEY_BYTES)
    return encode_credential(ModernCredential(salt=salt, key=key))


def verify_password(password: Optional[str], stored: Optional[str]) -> VerifyResult:
    """Check ``password`` against ``stored``; never raises for malformed input."""

    secret = _encode(password) if password is not None else None
    if secret is None:
        return _MISMATCH
    credential = parse_credential(stored)
    if credential is None:
        if stored:
            logger.debug("Stored credential has an unrecognised format.")
        return _MISMATCH

    if isinstance(credential, ModernCredential):
        actual = _derive(secret, credential.salt, len(credential.key))
        return VerifyResult(verified=_constant_time_equals(actual, credential.key))

    digest = hashlib.sha256(secret).hexdigest()
    if not _constant_time_equals(digest.encode("ascii"), credential.digest.encode("ascii")):
        return _MISMATCH
    return VerifyResult(verified=True, needs_rehash=True, new_credential=hash_password(password))


__all__ = [
    "Credential",
    "LegacyCredential",
    "ModernCredential",
    "VerifyResult",
    "encode_credential",
    "hash_password",
    "parse_credential",
    "verify_password",
]
