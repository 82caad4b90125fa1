import importlib.util
from pathlib import Path

import pytest

from shopgate.service.credentials import compare_hash_passwords
from shopgate.service.errors import ValidationError
from shopgate.storage.memory import MemoryStore

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


@pytest.fixture
def store():
    return MemoryStore()


def test_creates_admin(store):
    result = bootstrap.bootstrap_admin(store, "root_admin", "Admin@Example.com", "Secure-Pass-42")

    assert result["status"] == "created"
    account = store.get_account(result["account_id"])
    assert account.role == "admin"
    assert account.email == "admin@example.com"
    assert account.registration_method == "bootstrap script"
    assert compare_hash_passwords("Secure-Pass-42", account.password_hash, account.password_salt)


def test_existing_admin_is_left_alone(store):
    first = bootstrap.bootstrap_admin(store, "root_admin", "admin@example.com", "Secure-Pass-42")
    second = bootstrap.bootstrap_admin(store, "root_admin", "admin@example.com", "Secure-Pass-42")

    assert second["status"] == "already_admin"
    assert second["account_id"] == first["account_id"]
    assert len(store.accounts) == 1


def test_existing_user_is_not_promoted(store):
    store.create_account("root_admin", "someone@example.com", "v1$hash", "salt")
    with pytest.raises(ValueError):
        bootstrap.bootstrap_admin(store, "root_admin", "admin@example.com", "Secure-Pass-42")


def test_dry_run_writes_nothing(store):
    result = bootstrap.bootstrap_admin(
        store, "root_admin", "admin@example.com", "Secure-Pass-42", dry_run=True
    )
    assert result["status"] == "dry_run"
    assert store.accounts == {}


def test_invalid_fields_are_rejected(store):
    with pytest.raises(ValidationError) as excinfo:
        bootstrap.bootstrap_admin(store, "root admin", "admin@example.com", "Secure-Pass-42")
    assert excinfo.value.description.startswith("Nickname: the value contains a space")
