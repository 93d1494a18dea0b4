"""Short human-readable ids printed on finished splints.

Ids are four Crockford Base32 characters (``0-9`` and ``A-Z`` without ``I``,
``L``, ``O`` and ``U``), giving 2**20 combinations.  Readers may type them in
lower case or confuse ``O``/``0`` and ``I``/``L``/``1``; :func:`normalize_object_id`
undoes those mistakes before lookups.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from typing import Callable

import base32_crockford

logger = logging.getLogger(__name__)

CROCKFORD_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
OBJECT_ID_LENGTH = 4
MAX_RETRIES = 10

_VALID_PATTERN = re.compile(r"^[0-9A-Za-z]+$")


class ObjectIdExhaustedError(RuntimeError):
    """Raised when no free id was found within :data:`MAX_RETRIES` attempts."""


def encode_object_id(value: int) -> str:
    """Encode ``value`` and left-pad it with zeros to :data:`OBJECT_ID_LENGTH`."""

    return base32_crockford.encode(value).rjust(OBJECT_ID_LENGTH, "0")


def normalize_object_id(object_id: str) -> str:
    """Upper-case ``object_id`` and map ``O`` to ``0`` and ``I``/``L`` to ``1``.

    Raises:
        ValueError: If a character is outside the Crockford alphabet.
    """

    return base32_crockford.normalize(object_id.strip())


def is_valid_object_id(object_id: object) -> bool:
    """Accept four or more alphanumeric characters (room for longer ids later)."""

    if not isinstance(object_id, str) or len(object_id) < OBJECT_ID_LENGTH:
        return False
    return bool(_VALID_PATTERN.match(object_id))


def random_object_id() -> str:
    return encode_object_id(secrets.randbits(5 * OBJECT_ID_LENGTH))


def generate_object_id(exists: Callable[[str], bool]) -> str:
    """Return a random id for which ``exists`` is false.

    Raises:
        ObjectIdExhaustedError: After :data:`MAX_RETRIES` collisions.
    """

    for attempt in range(MAX_RETRIES):
        candidate = random_object_id()
        if not exists(candidate):
            return candidate
        logger.warning(
            "ObjectID collision detected: %s (attempt %d/%d)",
            candidate,
            attempt + 1,
            MAX_RETRIES,
        )
    raise ObjectIdExhaustedError(
        f"Failed to generate unique objectID after {MAX_RETRIES} attempts"
    )


def debug_object_id(now: float | None = None) -> str:
    """Id for debug reprocessing requests, e.g. ``debug-1718000000000``."""

    millis = int((time.time() if now is None else now) * 1000)
    return f"debug-{millis}"


__all__ = [
    "CROCKFORD_ALPHABET",
    "MAX_RETRIES",
    "OBJECT_ID_LENGTH",
    "ObjectIdExhaustedError",
    "debug_object_id",
    "encode_object_id",
    "generate_object_id",
    "is_valid_object_id",
    "normalize_object_id",
]
