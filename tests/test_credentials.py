"""Unit tests for the argon2id credential codec.

Tests for:
- Hash/compare round trip with random and supplied salts
- Version-tagged hashes and legacy untagged hashes
- Malformed stored values
- Rehash detection when the parameter set changes
"""

import base64

import pytest

from shopgate.service import credentials
from shopgate.service.credentials import (
    KDFParameters,
    MalformedSaltError,
    compare_hash_passwords,
    hash_password,
    needs_rehash,
)

PASSWORD = "Secret-Pass-1"


@pytest.fixture(scope="module")
def stored():
    """One hash for the module; argon2id at 64 MiB is slow to compute."""
    return hash_password(PASSWORD)


@pytest.fixture
def cheap_v2(monkeypatch):
    """Register a low-cost parameter set as version 2."""
    monkeypatch.setitem(
        credentials.KDF_PARAMETER_SETS,
        2,
        KDFParameters(time_cost=1, memory_cost=8, parallelism=1, hash_len=32, salt_len=16),
    )
    return 2


class TestHashPassword:
    def test_hash_is_tagged_with_version(self, stored):
        password_hash, _ = stored
        assert password_hash.startswith("v1$")

    def test_salt_is_unpadded_base64_of_configured_length(self, stored):
        _, salt = stored
        assert "=" not in salt
        padded = salt + "=" * ((4 - len(salt) % 4) % 4)
        assert len(base64.b64decode(padded)) == 16

    def test_digest_is_unpadded_base64_of_hash_len(self, stored):
        password_hash, _ = stored
        digest = password_hash.split("$", 1)[1]
        assert "=" not in digest
        padded = digest + "=" * ((4 - len(digest) % 4) % 4)
        assert len(base64.b64decode(padded)) == 32

    def test_same_salt_is_deterministic(self, stored):
        password_hash, salt = stored
        again, same_salt = hash_password(PASSWORD, salt)
        assert again == password_hash
        assert same_salt == salt

    def test_fresh_salts_differ(self, cheap_v2):
        first, salt_one = hash_password(PASSWORD, version=cheap_v2)
        second, salt_two = hash_password(PASSWORD, version=cheap_v2)
        assert salt_one != salt_two
        assert first != second

    def test_unknown_version_is_rejected(self):
        with pytest.raises(MalformedSaltError):
            hash_password(PASSWORD, version=99)

    def test_invalid_salt_is_rejected(self):
        with pytest.raises(MalformedSaltError):
            hash_password(PASSWORD, "not base64!")


class TestComparePasswords:
    def test_matching_password(self, stored):
        password_hash, salt = stored
        assert compare_hash_passwords(PASSWORD, password_hash, salt) is True

    def test_wrong_password(self, stored):
        password_hash, salt = stored
        assert compare_hash_passwords("Secret-Pass-2", password_hash, salt) is False

    def test_untagged_hash_is_read_as_version_one(self, stored):
        password_hash, salt = stored
        legacy = password_hash.split("$", 1)[1]
        assert compare_hash_passwords(PASSWORD, legacy, salt) is True

    def test_other_version_verifies_with_its_own_parameters(self, cheap_v2):
        password_hash, salt = hash_password(PASSWORD, version=cheap_v2)
        assert password_hash.startswith("v2$")
        assert compare_hash_passwords(PASSWORD, password_hash, salt) is True

    def test_malformed_salt_raises(self, stored):
        password_hash, _ = stored
        with pytest.raises(MalformedSaltError):
            compare_hash_passwords(PASSWORD, password_hash, "!!!")

    def test_malformed_digest_raises(self, stored):
        _, salt = stored
        with pytest.raises(MalformedSaltError):
            compare_hash_passwords(PASSWORD, "v1$***", salt)

    def test_unknown_version_tag_raises(self, stored):
        _, salt = stored
        with pytest.raises(MalformedSaltError):
            compare_hash_passwords(PASSWORD, "v9$abcd", salt)

    def test_unreadable_version_tag_raises(self, stored):
        _, salt = stored
        with pytest.raises(MalformedSaltError):
            compare_hash_passwords(PASSWORD, "argon$abcd", salt)


class TestNeedsRehash:
    def test_current_version(self):
        assert needs_rehash("v1$abcd", 1) is False

    def test_older_version(self):
        assert needs_rehash("v1$abcd", 2) is True

    def test_untagged_counts_as_version_one(self):
        assert needs_rehash("abcd", 1) is False
        assert needs_rehash("abcd", 2) is True

    def test_unreadable_tag_asks_for_rehash(self):
        assert needs_rehash("bogus$abcd", 1) is True
