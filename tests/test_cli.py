"""Tests for the command-line entry point (main.py).

Covers:
- visibility prints the merged map, capabilities, locks and layout as JSON
- can-access exit codes; unknown roles and bad overrides are usage errors
- status answers from the account store named by --db-url
- login runs the first-login password change with prompted input
- recover, wired by build_machine, sets the new password at the identity provider
"""

import json

import pytest
import requests

import main
from auth import otc
from auth.models import AccountRecord
from auth.oracle import AccountStatusOracle
from auth.otc import LocalOtcService
from auth.session import AuthStatus, SessionStateMachine
from auth.store import AccountStore
from core.config import Settings


def test_visibility_json(capsys):
    assert main.main(["visibility", "finance_admin"]) == main.EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert report["visibility"]["finance"]["income"] is True
    assert report["capabilities"] == {"can_create_users": False}
    assert "user_management" in report["locked"]
    assert report["restricted_layout"] == "finance"


def test_visibility_with_override(capsys):
    assert main.main(["visibility", "admin", "--override", '{"people": {"birthdays": false}}']) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["visibility"]["people"]["birthdays"] is False
    assert report["visibility"]["people"]["attendance"] is True


@pytest.mark.parametrize(
    ("argv", "code"),
    [
        (["can-access", "attendance_rep", "/people/attendance"], main.EXIT_OK),
        (["can-access", "attendance_rep", "/finance"], main.EXIT_DENIED),
        (["can-access", "read", "/events", "--override", '{"events": true}'], main.EXIT_OK),
        (["can-access", "superuser", "/events"], main.EXIT_USAGE),
        (["visibility", "admin", "--override", "{not json"], main.EXIT_USAGE),
        (["visibility", "admin", "--override", '{"payroll": true}'], main.EXIT_USAGE),
    ],
)
def test_exit_codes(argv, code, capsys):
    assert main.main(argv) == code


def test_status(tmp_path, capsys):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    store = AccountStore(url)
    store.create_account(AccountRecord(identity_id="user-1", email="member@example.org", is_active=False))
    store.close()

    assert main.main(["--db-url", url, "status", "--email", "member@example.org"]) == main.EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"exists": True, "is_active": False}

    assert main.main(["--db-url", url, "status", "--id", "nobody"]) == main.EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"exists": False, "is_active": False}


def test_login_with_first_login_change(monkeypatch, tmp_path, capsys, gateway, sender):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    built = {}

    def build_machine(settings, store):
        store.create_account(AccountRecord(identity_id="user-1", email="member@example.org"))
        machine = SessionStateMachine(gateway, LocalOtcService(store, sender), AccountStatusOracle(store), store)
        built["machine"] = machine
        return machine

    gateway.add_user("member@example.org", "Old-pass1!", "user-1")
    answers = iter(["Old-pass1!", "Str0ng!pass", "Str0ng!pass"])
    monkeypatch.setattr(main, "build_machine", build_machine)
    monkeypatch.setattr(main, "getpass", lambda prompt="": next(answers))

    assert main.main(["--db-url", url, "login", "member@example.org"]) == main.EXIT_OK
    out = capsys.readouterr().out
    assert "First login" in out
    assert "Password updated." in out
    assert built["machine"].current_state().status is AuthStatus.authenticated_active
    assert gateway.updated_passwords == ["Str0ng!pass"]
    assert gateway.closed


def test_login_wrong_password(monkeypatch, tmp_path, capsys, gateway, sender):
    def build_machine(settings, store):
        return SessionStateMachine(gateway, LocalOtcService(store, sender), AccountStatusOracle(store), store)

    monkeypatch.setattr(main, "build_machine", build_machine)
    monkeypatch.setattr(main, "getpass", lambda prompt="": "wrong")
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main.main(["--db-url", url, "login", "member@example.org"]) == main.EXIT_FAILURE
    assert "Invalid email or password." in capsys.readouterr().out


@pytest.fixture
def provider_cli(monkeypatch, tmp_path, provider, sender):
    """Run the real build_machine against the fake identity provider."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    store = AccountStore(url)
    store.create_account(AccountRecord(identity_id="user-1", email="member@example.org", is_first_login=False))
    store.close()
    provider.add_user("member@example.org", "Old-pass1!", "user-1")

    settings = Settings(debug=True, identity_provider_url="https://id.example.org", service_key=provider.service_key)
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    monkeypatch.setattr(requests, "Session", lambda: provider)
    monkeypatch.setattr(otc, "build_code_sender", lambda settings: sender)
    monkeypatch.setattr("builtins.input", lambda prompt="": sender.last_code("member@example.org"))
    return url


def test_recover_sets_new_password(provider_cli, monkeypatch, capsys, provider):
    answers = iter(["Str0ng!pass", "Str0ng!pass"])
    monkeypatch.setattr(main, "getpass", lambda prompt="": next(answers))

    assert main.main(["--db-url", provider_cli, "recover", "member@example.org"]) == main.EXIT_OK
    out = capsys.readouterr().out
    assert "3 code request(s) left" in out
    assert "Password updated." in out
    assert provider.password_of("member@example.org") == "Str0ng!pass"
    assert ("POST", "/auth/v1/admin/generate_link") in provider.calls
    assert provider.closed


def test_recover_with_wrong_code(provider_cli, monkeypatch, capsys, provider, sender):
    def wrong_code(prompt=""):
        code = sender.last_code("member@example.org")
        return str((int(code) + 1) % 1_000_000).zfill(6)

    monkeypatch.setattr("builtins.input", wrong_code)
    assert main.main(["--db-url", provider_cli, "recover", "member@example.org"]) == main.EXIT_FAILURE
    assert "Invalid or expired verification code." in capsys.readouterr().out
    assert provider.password_of("member@example.org") == "Old-pass1!"
