"""Short, human-typeable codes for uploads and shares."""

from __future__ import annotations

import secrets
import string
from typing import Callable, Optional

from core.config import CODE_MAX_ATTEMPTS, SHARE_CODE_LENGTH, UPLOAD_CODE_LENGTH
from core.errors import CodeSpaceExhausted
from core.logging import get_logger
from services import metrics

logger = get_logger(__name__)

NUMERIC_ALPHABET = string.digits
SHARE_ALPHABET = string.ascii_lowercase + string.digits


def generate(alphabet: str, length: int) -> str:
    """Return ``length`` characters drawn uniformly from ``alphabet`` using a CSPRNG."""

    if not alphabet:
        raise ValueError("alphabet must not be empty")
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_upload_code() -> str:
    return generate(NUMERIC_ALPHABET, UPLOAD_CODE_LENGTH)


def generate_share_code() -> str:
    return generate(SHARE_ALPHABET, SHARE_CODE_LENGTH)


def is_valid_upload_code(code: Optional[str]) -> bool:
    return bool(code) and len(code) == UPLOAD_CODE_LENGTH and all(ch in NUMERIC_ALPHABET for ch in code)


def is_valid_share_code(code: Optional[str]) -> bool:
    return bool(code) and len(code) == SHARE_CODE_LENGTH and all(ch in SHARE_ALPHABET for ch in code)


def reserve(
    generate_fn: Callable[[], str],
    exists_check: Callable[[str], bool],
    max_attempts: int = CODE_MAX_ATTEMPTS,
    *,
    persist: Optional[Callable[[str], bool]] = None,
    namespace: str = "default",
) -> str:
    """Generate codes until one is unused, or raise ``CodeSpaceExhausted``.

    ``exists_check`` is a read against the metadata store. When ``persist`` is
    given, it is called with the candidate after the existence check and must
    return ``False`` when the store's unique constraint rejected the insert; that
    collision counts as a spent attempt and the loop retries with a new code.
    """

    for attempt in range(1, max_attempts + 1):
        candidate = generate_fn()
        if exists_check(candidate):
            logger.debug("Code collision on %s (attempt %d/%d).", namespace, attempt, max_attempts)
            continue
        if persist is not None and not persist(candidate):
            logger.debug("Code lost persist race on %s (attempt %d/%d).", namespace, attempt, max_attempts)
            continue
        return candidate

    metrics.record_code_space_exhausted(namespace)
    logger.warning("Code space exhausted for %s after %d attempts.", namespace, max_attempts)
    raise CodeSpaceExhausted()


__all__ = [
    "NUMERIC_ALPHABET",
    "SHARE_ALPHABET",
    "generate",
    "generate_share_code",
    "generate_upload_code",
    "is_valid_share_code",
    "is_valid_upload_code",
    "reserve",
]
