#!/usr/bin/env python3
"""
orgaccess -- session lifecycle and role-based access policy, from the command line.

Usage:
  python main.py visibility finance_admin
  python main.py visibility admin --override '{"people": {"birthdays": false}}'
  python main.py can-access attendance_rep /people/attendance
  python main.py status --email someone@example.org
  python main.py login someone@example.org
  python main.py recover someone@example.org

Environment variables (see core/config.py for the full list):
  IDENTITY_PROVIDER_URL  Base URL of the identity provider (login, recover).
  SERVICE_KEY            Service-level bearer credential.
  OTC_ENDPOINT_URL       Verification endpoint. When unset, codes are issued
                         in-process and delivered by email (or to the log).
  DATABASE_URL           Account store (SQLAlchemy URL).
"""

import argparse
import json
import logging
import sys
from getpass import getpass
from typing import Any, Optional

from access.pages import can_access_path
from access.policy import (
    InvalidOverrideError,
    choose_restricted_layout,
    effective_capabilities,
    effective_visibility,
    locked_keys,
)
from auth.gateway import HttpCredentialGateway
from auth.oracle import AccountStatusOracle
from auth.otc import LocalOtcService, RemoteOtcService
from auth.session import AuthOutcome, AuthStatus, PasswordUpdateKind, SessionStateMachine
from auth.store import AccountStore, StoreError
from core.config import Settings, get_settings

logger = logging.getLogger("orgaccess.cli")

EXIT_OK = 0
EXIT_DENIED = 1
EXIT_USAGE = 2
EXIT_FAILURE = 3


def _parse_override(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidOverrideError(f"--override is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise InvalidOverrideError("--override must be a JSON object")
    return value


def build_machine(settings: Settings, store: AccountStore) -> SessionStateMachine:
    """Wire gateway, OTC service and oracle into a state machine."""
    gateway = HttpCredentialGateway(
        settings.identity_provider_url,
        settings.service_key,
        timeout=settings.http_timeout_seconds,
    )
    if settings.otc_endpoint_url:
        otc = RemoteOtcService(settings.otc_endpoint_url, settings.service_key, timeout=settings.http_timeout_seconds)
    else:
        # Verified codes are exchanged for provider sessions, so the password
        # update that follows recovery is accepted by the provider.
        otc = LocalOtcService.from_settings(store, settings, session_issuer=gateway)
    machine = SessionStateMachine(gateway, otc, AccountStatusOracle(store), store)
    if isinstance(otc, RemoteOtcService):
        # Bearer falls back to the service key while nobody is signed in.
        otc.token_provider = lambda: machine.access_token
    return machine


def _report(outcome: AuthOutcome) -> None:
    if outcome.error is not None:
        print(f"  [!] {outcome.message}")
    elif outcome.message:
        print(f"  {outcome.message}")
    print(f"  State: {outcome.state.status.value}")


def _prompt_new_password() -> Optional[str]:
    first = getpass("  New password: ")
    second = getpass("  Repeat new password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _change_password(machine: SessionStateMachine, kind: PasswordUpdateKind) -> int:
    new_password = _prompt_new_password()
    if new_password is None:
        return EXIT_FAILURE
    outcome = machine.update_password(new_password, kind)
    _report(outcome)
    return EXIT_OK if outcome.ok else EXIT_FAILURE


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def cmd_visibility(args: argparse.Namespace) -> int:
    override = _parse_override(args.override)
    report = {
        "role": args.role,
        "visibility": effective_visibility(args.role, override),
        "capabilities": effective_capabilities(args.role),
        "locked": locked_keys(args.role),
        "restricted_layout": choose_restricted_layout(args.role, override),
    }
    print(json.dumps(report, indent=2))
    return EXIT_OK


def cmd_can_access(args: argparse.Namespace) -> int:
    allowed = can_access_path(args.role, _parse_override(args.override), args.path)
    print("allowed" if allowed else "denied")
    return EXIT_OK if allowed else EXIT_DENIED


def cmd_status(args: argparse.Namespace, store: AccountStore) -> int:
    status = AccountStatusOracle(store).check_status(identity_id=args.id, email=args.email)
    if status.error is not None:
        print(f"  [!] {status.error.message}")
        return EXIT_FAILURE
    print(json.dumps({"exists": status.exists, "is_active": status.is_active}))
    return EXIT_OK


def cmd_login(args: argparse.Namespace, machine: SessionStateMachine) -> int:
    outcome = machine.sign_in(args.email, getpass("  Password: "))
    _report(outcome)
    if not outcome.ok:
        return EXIT_FAILURE
    if outcome.state.status is AuthStatus.authenticated_first_login:
        print("  First login: choose a new password.")
        return _change_password(machine, PasswordUpdateKind.first_time_login)
    return EXIT_OK


def cmd_recover(args: argparse.Namespace, machine: SessionStateMachine) -> int:
    outcome = machine.request_code(args.email)
    _report(outcome)
    if not outcome.ok:
        return EXIT_FAILURE
    if outcome.remaining_requests is not None:
        print(f"  {outcome.remaining_requests} code request(s) left in this window.")
    outcome = machine.verify_code(input("  Code: ").strip())
    _report(outcome)
    if not outcome.ok:
        return EXIT_FAILURE
    kind = (
        PasswordUpdateKind.first_time_login
        if outcome.state.status is AuthStatus.authenticated_first_login
        else PasswordUpdateKind.password_reset
    )
    return _change_password(machine, kind)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orgaccess",
        description="Session lifecycle and role-based access policy.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db-url", metavar="URL", help="Account store URL (default: DATABASE_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("visibility", help="Print the effective visibility for a role")
    p.add_argument("role")
    p.add_argument("--override", metavar="JSON", help="Visibility override as a JSON object")

    p = sub.add_parser("can-access", help="Exit 0 if PATH is reachable for ROLE, 1 otherwise")
    p.add_argument("role")
    p.add_argument("path")
    p.add_argument("--override", metavar="JSON", help="Visibility override as a JSON object")

    p = sub.add_parser("status", help="Ask the Account Status Oracle about an account")
    who = p.add_mutually_exclusive_group(required=True)
    who.add_argument("--email")
    who.add_argument("--id")

    p = sub.add_parser("login", help="Sign in with a password")
    p.add_argument("email")

    p = sub.add_parser("recover", help="Recover access with a one-time code")
    p.add_argument("email")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.command == "visibility":
            return cmd_visibility(args)
        if args.command == "can-access":
            return cmd_can_access(args)
    except ValueError as e:
        # UnknownRoleError, InvalidOverrideError and LockedSectionError are ValueErrors.
        print(f"  [!] {e}")
        return EXIT_USAGE

    settings = get_settings()
    try:
        store = AccountStore(args.db_url or settings.database_url)
    except StoreError as e:
        print(f"  [!] Account store unavailable: {e}")
        return EXIT_FAILURE
    try:
        if args.command == "status":
            return cmd_status(args, store)
        try:
            machine = build_machine(settings, store)
        except ValueError as e:
            print(f"  [!] {e}")
            return EXIT_USAGE
        try:
            machine.init()
            if args.command == "login":
                return cmd_login(args, machine)
            return cmd_recover(args, machine)
        finally:
            machine.teardown()
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
