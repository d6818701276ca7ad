"""
auth/guards.py -- Route and capability guards.

Thin, pure predicates over two inputs: the state machine's current AuthState
and the caller's current OrganizationMembership (chosen outside this
package). A guard either admits the path or names where to redirect.

Redirect rules, first match wins:
  /login, /password-reset  -- signed-in users go to ?next (if safe) or /dashboard
  /new-password            -- needs a session, first-login or not
  everything else          -- no session: /login?next=<path>
                              first login: /new-password
                              no usable membership: /select-organization
                              section hidden for the membership: /dashboard

A first-login session is a real session, but it unlocks nothing except the
password change; capability_allowed() is False for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from access.models import OrganizationMembership
from access.pages import can_access_path
from access.policy import has_capability
from auth.session import AuthState, AuthStatus

LOGIN_PATH = "/login"
PASSWORD_RESET_PATH = "/password-reset"
NEW_PASSWORD_PATH = "/new-password"
SELECT_ORGANIZATION_PATH = "/select-organization"
DASHBOARD_PATH = "/dashboard"

PUBLIC_AUTH_PATHS = (LOGIN_PATH, PASSWORD_RESET_PATH)
_AUTH_PAGES = PUBLIC_AUTH_PATHS + (NEW_PASSWORD_PATH,)


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect: Optional[str] = None


_ALLOW = GuardDecision(allowed=True)


def _redirect(path: str) -> GuardDecision:
    return GuardDecision(allowed=False, redirect=path)


def safe_next(next_path: Optional[str]) -> Optional[str]:
    """Return next_path if it is a local, non-auth path; None otherwise."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//") or "\\" in next_path:
        return None
    if next_path.split("?", 1)[0] in _AUTH_PAGES:
        return None
    return next_path


def _usable(state: AuthState, membership: Optional[OrganizationMembership]) -> bool:
    if membership is None or not membership.is_active:
        return False
    return membership.identity_id == state.identity_id


def guard_route(
    state: AuthState,
    path: str,
    membership: Optional[OrganizationMembership] = None,
    next_path: Optional[str] = None,
) -> GuardDecision:
    if path in PUBLIC_AUTH_PATHS:
        if state.status is AuthStatus.authenticated_active:
            return _redirect(safe_next(next_path) or DASHBOARD_PATH)
        if state.status is AuthStatus.authenticated_first_login:
            return _redirect(NEW_PASSWORD_PATH)
        return _ALLOW

    if path == NEW_PASSWORD_PATH:
        return _ALLOW if state.is_authenticated else _redirect(LOGIN_PATH)

    if not state.is_authenticated:
        return _redirect(f"{LOGIN_PATH}?next={quote(path, safe='/')}")
    if state.status is AuthStatus.authenticated_first_login:
        return _redirect(NEW_PASSWORD_PATH)
    if path == SELECT_ORGANIZATION_PATH:
        return _ALLOW
    if not _usable(state, membership):
        return _redirect(SELECT_ORGANIZATION_PATH)
    if not can_access_path(membership.role, membership.visibility_overrides, path):
        return _redirect(DASHBOARD_PATH)
    return _ALLOW


def path_allowed(state: AuthState, path: str, membership: Optional[OrganizationMembership] = None) -> bool:
    return guard_route(state, path, membership).allowed


def capability_allowed(state: AuthState, membership: Optional[OrganizationMembership], name: str) -> bool:
    """True only for a fully authenticated session with a usable membership holding the capability."""
    if state.status is not AuthStatus.authenticated_active or not _usable(state, membership):
        return False
    return has_capability(membership.role, name, membership.capability_flags())
