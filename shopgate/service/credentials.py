from __future__ import annotations

import base64
import binascii
import hmac
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from argon2 import Type
from argon2.low_level import hash_secret_raw

from shopgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class KDFParameters:
    time_cost: int
    memory_cost: int  # KiB
    parallelism: int
    hash_len: int
    salt_len: int


# Stored hashes are tagged "v<N>$<b64>" with the set that produced them.
# Add a new version here (never edit an existing one) and raise KDF_VERSION
# to migrate; old hashes keep verifying and are rehashed on next login.
KDF_PARAMETER_SETS: Dict[int, KDFParameters] = {
    1: KDFParameters(
        time_cost=3, memory_cost=64 * 1024, parallelism=2, hash_len=32, salt_len=16
    ),
}

DEFAULT_KDF_VERSION = 1

_VERSION_SEPARATOR = "$"


class MalformedSaltError(ValueError):
    """Stored salt or hash could not be decoded, or names an unknown KDF version."""


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.b64decode(value + padding, validate=True)


def _parameters(version: int) -> KDFParameters:
    try:
        return KDF_PARAMETER_SETS[version]
    except KeyError as exc:
        raise MalformedSaltError(f"unknown KDF version: {version}") from exc


def _split_hash(stored_hash: str) -> Tuple[int, str]:
    """Return ``(version, b64 digest)``; untagged hashes are version 1."""
    if _VERSION_SEPARATOR not in stored_hash:
        return DEFAULT_KDF_VERSION, stored_hash
    tag, digest = stored_hash.split(_VERSION_SEPARATOR, 1)
    if not tag.startswith("v") or not tag[1:].isdigit():
        raise MalformedSaltError(f"malformed KDF version tag: {tag!r}")
    return int(tag[1:]), digest


def _derive(password: str, salt: bytes, params: KDFParameters) -> bytes:
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost,
        parallelism=params.parallelism,
        hash_len=params.hash_len,
        type=Type.ID,
    )


def hash_password(
    password: str, salt: Optional[str] = None, *, version: int = DEFAULT_KDF_VERSION
) -> Tuple[str, str]:
    """Hash ``password`` with argon2id.

    Args:
        password: Plain text password.
        salt: Existing base64 salt to reuse; a fresh random salt is generated
            when omitted.
        version: Parameter set from :data:`KDF_PARAMETER_SETS`.

    Returns:
        ``(tagged_hash, salt)`` both base64 without padding.
    """
    params = _parameters(version)
    if salt is None:
        salt_bytes = os.urandom(params.salt_len)
    else:
        try:
            salt_bytes = _b64decode(salt)
        except (binascii.Error, ValueError) as exc:
            raise MalformedSaltError("salt is not valid base64") from exc
    digest = _derive(password, salt_bytes, params)
    return f"v{version}{_VERSION_SEPARATOR}{_b64encode(digest)}", _b64encode(salt_bytes)


def compare_hash_passwords(password: str, stored_hash: str, salt: str) -> bool:
    """Check ``password`` against a stored hash in constant time.

    Raises :class:`MalformedSaltError` only when the stored values cannot be
    decoded; a wrong password simply returns False.
    """
    version, digest_b64 = _split_hash(stored_hash)
    params = _parameters(version)
    try:
        salt_bytes = _b64decode(salt)
        expected = _b64decode(digest_b64)
    except (binascii.Error, ValueError) as exc:
        raise MalformedSaltError("stored salt or hash is not valid base64") from exc
    actual = _derive(password, salt_bytes, params)
    return hmac.compare_digest(actual, expected)


def needs_rehash(stored_hash: str, current_version: int = DEFAULT_KDF_VERSION) -> bool:
    try:
        version, _ = _split_hash(stored_hash)
    except MalformedSaltError:
        logger.warning("password_hash_version_unreadable")
        return True
    return version < current_version


__all__ = [
    "KDFParameters",
    "KDF_PARAMETER_SETS",
    "DEFAULT_KDF_VERSION",
    "MalformedSaltError",
    "hash_password",
    "compare_hash_passwords",
    "needs_rehash",
]
