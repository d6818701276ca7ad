"""Tests for auth/store.py -- AccountStore repository.

Covers:
- account CRUD; email lookup is case-insensitive; missing rows return None/False
- record_login / complete_first_login reset the OTC counter
- consume_otc_slot(): quota, cooldown, window reset, progressive waits
- consume_otc_slot() under concurrent callers never grants more than the quota
- membership CRUD with override validation and capability flags
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from access.models import OrganizationMembership
from access.policy import InvalidOverrideError, LockedSectionError, Role
from auth.models import AccountRecord
from auth.store import OtcLimits, StoreError

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
LIMITS = OtcLimits(max_requests=4, window_minutes=60)

# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def test_create_and_get_account(store, make_account):
    record = make_account("user-1", "Member@Example.org", display_name="Ama")
    assert record.id is not None
    assert record.email == "member@example.org"
    assert record.display_name == "Ama"
    assert record.created_at
    assert store.get_account_by_email("MEMBER@example.org ").identity_id == "user-1"


def test_missing_account_is_none_not_error(store):
    assert store.get_account("nobody") is None
    assert store.get_account_by_email("nobody@example.org") is None
    assert store.set_active("nobody", False) is False
    assert store.record_login("nobody") is False


def test_duplicate_email_raises_store_error(store, make_account):
    make_account("user-1", "member@example.org")
    with pytest.raises(StoreError):
        store.create_account(AccountRecord(identity_id="user-2", email="MEMBER@example.org"))


def test_set_active(store, make_account):
    make_account("user-1")
    assert store.set_active("user-1", False) is True
    assert store.get_account("user-1").is_active is False


def test_record_login_resets_counter(store, make_account):
    make_account("user-1", otp_requests_count=3)
    assert store.record_login("user-1", T0)
    record = store.get_account("user-1")
    assert record.otp_requests_count == 0
    assert record.last_login.startswith("2026-03-01T09:00:00")


def test_complete_first_login(store, make_account):
    make_account("user-1", is_first_login=True, otp_requests_count=2)
    assert store.complete_first_login("user-1", T0)
    record = store.get_account("user-1")
    assert record.is_first_login is False
    assert record.password_updated is True
    assert record.otp_requests_count == 0


def test_ping(store):
    assert store.ping() is True


# ---------------------------------------------------------------------------
# OTC quota
# ---------------------------------------------------------------------------


def test_unknown_email_has_no_slot(store):
    assert store.consume_otc_slot("nobody@example.org", T0, LIMITS) is None


def test_quota_then_cooldown(store, make_account):
    make_account("user-1")
    granted = [store.consume_otc_slot("member@example.org", T0 + timedelta(minutes=i), LIMITS) for i in range(4)]
    assert [s.granted for s in granted] == [True] * 4
    assert [s.remaining_requests for s in granted] == [3, 2, 1, 0]

    refused = store.consume_otc_slot("member@example.org", T0 + timedelta(minutes=10), LIMITS)
    assert refused.granted is False
    assert refused.remaining_requests == 0
    # Last request at T0+3min, window 60min: 53 minutes left.
    assert refused.cooldown_seconds == 53 * 60
    assert store.get_account("user-1").otp_requests_count == 4


def test_cooldown_rounds_up_to_whole_minutes(store, make_account):
    make_account("user-1")
    for _ in range(4):
        store.consume_otc_slot("member@example.org", T0, LIMITS)
    refused = store.consume_otc_slot("member@example.org", T0 + timedelta(minutes=59, seconds=30), LIMITS)
    assert refused.cooldown_seconds == 60


def test_window_elapsed_restarts_counter(store, make_account):
    make_account("user-1")
    for _ in range(4):
        store.consume_otc_slot("member@example.org", T0, LIMITS)
    slot = store.consume_otc_slot("member@example.org", T0 + timedelta(minutes=60), LIMITS)
    assert slot.granted is True
    assert slot.request_count == 1
    assert slot.remaining_requests == 3


def test_full_login_reopens_quota_inside_window(store, make_account):
    make_account("user-1")
    for _ in range(4):
        store.consume_otc_slot("member@example.org", T0, LIMITS)
    store.record_login("user-1", T0 + timedelta(minutes=1))
    slot = store.consume_otc_slot("member@example.org", T0 + timedelta(minutes=2), LIMITS)
    assert slot.granted is True
    assert slot.request_count == 1


def test_progressive_cooldown_steps(store, make_account):
    make_account("user-1")
    limits = OtcLimits(max_requests=4, window_minutes=60, cooldown_steps_minutes=(1, 5))
    email = "member@example.org"
    assert store.consume_otc_slot(email, T0, limits).granted

    early = store.consume_otc_slot(email, T0 + timedelta(seconds=30), limits)
    assert early.granted is False
    assert early.cooldown_seconds == 60
    assert early.remaining_requests == 3

    assert store.consume_otc_slot(email, T0 + timedelta(seconds=61), limits).granted
    later = store.consume_otc_slot(email, T0 + timedelta(minutes=2), limits)
    assert later.granted is False
    assert later.cooldown_seconds == 5 * 60
    assert later.remaining_requests == 2


def test_step_after():
    limits = OtcLimits(cooldown_steps_minutes=(1, 5, 15))
    assert [limits.step_after(n) for n in range(0, 6)] == [0, 1, 5, 15, 15, 15]
    assert OtcLimits().step_after(3) == 0


def test_concurrent_requests_never_exceed_quota(file_store):
    file_store.create_account(AccountRecord(identity_id="user-1", email="member@example.org"))
    barrier = threading.Barrier(8)
    results = []
    errors = []

    def worker():
        barrier.wait()
        try:
            results.append(file_store.consume_otc_slot("member@example.org", T0, LIMITS))
        except StoreError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert sum(1 for s in results if s.granted) == 4
    assert file_store.get_account("user-1").otp_requests_count == 4


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------


def _membership(**kwargs):
    kwargs.setdefault("identity_id", "user-1")
    kwargs.setdefault("organization_id", "org-1")
    kwargs.setdefault("role", Role.admin)
    return OrganizationMembership(**kwargs)


def test_create_membership_round_trips_override(store):
    membership_id = store.create_membership(_membership(visibility_overrides={"people": {"birthdays": False}}))
    stored = store.get_membership(membership_id)
    assert stored.role is Role.admin
    assert stored.visibility_overrides == {"sections": {"people": {"birthdays": False}}}
    assert stored.can_create_users is None


def test_create_membership_rejects_locked_override(store):
    with pytest.raises(LockedSectionError):
        store.create_membership(_membership(role=Role.write, visibility_overrides={"user_management": True}))
    assert store.get_memberships("user-1") == []


def test_duplicate_membership_raises(store):
    store.create_membership(_membership())
    with pytest.raises(StoreError):
        store.create_membership(_membership(role=Role.read))


def test_get_memberships_oldest_first(store):
    store.create_membership(_membership(organization_id="org-1"))
    store.create_membership(_membership(organization_id="org-2", role=Role.read))
    assert [m.organization_id for m in store.get_memberships("user-1")] == ["org-1", "org-2"]


def test_update_visibility_override(store):
    membership_id = store.create_membership(_membership())
    assert store.update_visibility_override(membership_id, {"events": False})
    assert store.get_membership(membership_id).visibility_overrides == {"sections": {"events": False}}
    assert store.update_visibility_override(membership_id, None)
    assert store.get_membership(membership_id).visibility_overrides == {}
    with pytest.raises(LockedSectionError):
        store.update_visibility_override(membership_id, {"user_management": False})
    assert store.update_visibility_override(9999, {"events": False}) is False


def test_update_capabilities(store):
    membership_id = store.create_membership(_membership(role=Role.read))
    assert store.update_capabilities(membership_id, can_create_users=True)
    assert store.get_membership(membership_id).can_create_users is True
    assert store.update_capabilities(membership_id, can_create_users=None)
    assert store.get_membership(membership_id).can_create_users is None
    with pytest.raises(InvalidOverrideError):
        store.update_capabilities(membership_id, can_delete_everything=True)


def test_set_membership_active(store):
    membership_id = store.create_membership(_membership())
    assert store.set_membership_active(membership_id, False)
    assert store.get_membership(membership_id).is_active is False
    assert store.set_membership_active(9999, False) is False
