import importlib.util
from pathlib import Path

import pytest

from medhub.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module.bootstrap_admin


def test_creates_verified_admin(bootstrap):
    result = bootstrap("Root@Medhub.example", "Abcdef1!", "Root", "Admin")

    assert result["status"] == "created"
    account = get_runtime().store.get_account(result["account_id"])
    assert account.email == "root@medhub.example"
    assert account.roles == ["Admin"]
    assert account.email_verified
    assert get_runtime().passwords.verify(account.password_hash, "Abcdef1!")


def test_second_admin_is_not_created(bootstrap):
    bootstrap("root@medhub.example", "Abcdef1!", "Root", "Admin")

    result = bootstrap("other@medhub.example", "Abcdef1!", "Other", "Admin")

    assert result["status"] == "admin_exists"
    assert get_runtime().store.get_account_by_email("other@medhub.example") is None


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap("root@medhub.example", "Abcdef1!", "Root", "Admin", dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.list_accounts() == []


def test_existing_email_is_reported(bootstrap):
    runtime = get_runtime()
    runtime.store.create_account("root@medhub.example", "hash", "Pat", "Ient", ["Patient"])

    result = bootstrap("root@medhub.example", "Abcdef1!", "Root", "Admin", force=True)

    assert result["status"] == "email_taken"
