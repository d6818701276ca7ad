"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and memberships.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_membership are the
mappers. The oracle, OTC services and state machine never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  [H1] consume_otc_slot() is one conditional UPDATE. The WHERE clause only
       matches while the window still allows another request, so two racing
       calls cannot both pass a read-then-write check: the database
       serializes the writes and the loser's UPDATE matches zero rows.

Failures:
  Every SQLAlchemy error is re-raised as StoreError. "Not found" is never an
  error: lookups return None and updates return False.

Emails are stored lower-cased; every lookup lower-cases its argument, which
makes email matching case-insensitive.

DB path: auth/orgaccess_accounts.db unless DATABASE_URL says otherwise.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    case,
    create_engine,
    event,
    or_,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from access.models import OrganizationMembership
from access.policy import CAPABILITY_NAMES, InvalidOverrideError, parse_role, validate_override
from auth.models import AccountRecord, OtcSlot
from core.config import Settings

logger = logging.getLogger("orgaccess.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", String(64), nullable=False, unique=True),  # identity provider's user id
    Column("email", String(320), nullable=False, unique=True),  # lower-cased
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_first_login", Integer, nullable=False, server_default="1"),
    Column("password_updated", Integer, nullable=False, server_default="0"),
    Column("otp_requests_count", Integer, nullable=False, server_default="0"),
    Column("last_otp_request", String(40)),  # ISO 8601, microsecond precision
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
)

_memberships = Table(
    "memberships",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", String(64), nullable=False, index=True),
    Column("organization_id", String(64), nullable=False),
    Column("role", String(30), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("visibility_overrides", Text),  # JSON: {"sections": {...}}
    Column("can_create_users", Integer),  # NULL = follow the role default
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("identity_id", "organization_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class StoreError(Exception):
    """The record store could not answer. Distinct from "not found"."""


@dataclass(frozen=True)
class OtcLimits:
    """Thresholds for consume_otc_slot().

    cooldown_steps_minutes[i] is the wait required after the (i+1)-th request
    of a window; the last element applies to every later request.
    """

    max_requests: int = 4
    window_minutes: int = 60
    cooldown_steps_minutes: tuple[int, ...] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> "OtcLimits":
        return cls(
            max_requests=settings.otc_max_requests,
            window_minutes=settings.otc_window_minutes,
            cooldown_steps_minutes=tuple(settings.otc_cooldown_steps_minutes),
        )

    def step_after(self, request_count: int) -> int:
        """Minutes to wait after the request_count-th request (0 if no steps)."""
        if not self.cooldown_steps_minutes or request_count < 1:
            return 0
        index = min(request_count, len(self.cooldown_steps_minutes)) - 1
        return self.cooldown_steps_minutes[index]


def _iso(moment: datetime) -> str:
    # Fixed precision keeps ISO strings comparable as text in SQL.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _whole_minutes_in_seconds(delta: timedelta) -> int:
    """Round a wait up to whole minutes, expressed in seconds (at least one minute)."""
    return max(1, math.ceil(delta.total_seconds() / 60)) * 60


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for AccountRecord and OrganizationMembership rows.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        store.create_account(AccountRecord(identity_id="u-1", email="a@example.org"))
        record = store.get_account_by_email("A@example.org")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not initialize account store: {exc}") from exc

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Account store failure: %s", exc)
            raise StoreError(str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Account store failure: %s", exc)
            raise StoreError(str(exc)) from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreError:
            return False
        return True

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, record: AccountRecord, now: Optional[datetime] = None) -> int:
        """Insert an account row and return its database ID.

        Raises StoreError if the identity id or email already exists.
        """
        with self._transaction() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    identity_id=record.identity_id,
                    email=record.email.strip().lower(),
                    display_name=record.display_name,
                    is_active=1 if record.is_active else 0,
                    is_first_login=1 if record.is_first_login else 0,
                    password_updated=1 if record.password_updated else 0,
                    otp_requests_count=record.otp_requests_count,
                    last_otp_request=record.last_otp_request,
                    last_login=record.last_login,
                    created_at=_iso(now or _now()),
                )
            )
            return result.inserted_primary_key[0]

    def get_account(self, identity_id: str) -> AccountRecord | None:
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.identity_id == identity_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> AccountRecord | None:
        with self._connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def set_active(self, identity_id: str, active: bool) -> bool:
        """Activate or deactivate an account. Returns False if it does not exist."""
        with self._transaction() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.identity_id == identity_id).values(is_active=1 if active else 0)
            )
        if not active and result.rowcount:
            logger.info("Account %s deactivated", identity_id)
        return result.rowcount > 0

    def record_login(self, identity_id: str, now: Optional[datetime] = None) -> bool:
        """Full login: reset the OTC counter and stamp last_login."""
        with self._transaction() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.identity_id == identity_id)
                .values(otp_requests_count=0, last_login=_iso(now or _now()))
            )
        return result.rowcount > 0

    def complete_first_login(self, identity_id: str, now: Optional[datetime] = None) -> bool:
        """Clear is_first_login, set password_updated and reset the OTC counter."""
        with self._transaction() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.identity_id == identity_id)
                .values(
                    is_first_login=0,
                    password_updated=1,
                    otp_requests_count=0,
                    last_login=_iso(now or _now()),
                )
            )
        return result.rowcount > 0

    def consume_otc_slot(self, email: str, now: datetime, limits: OtcLimits) -> OtcSlot | None:
        """Atomically count one code request against the email's quota [H1].

        A request is granted when the last one is older than the window (the
        counter restarts at 1) or when the counter is below the quota and the
        progressive wait after the previous request has passed. Both cases
        are folded into the WHERE clause of a single UPDATE; the new count is
        read back inside the same transaction.

        Returns None if no account has this email.
        """
        key = email.strip().lower()
        window_start = _iso(now - timedelta(minutes=limits.window_minutes))
        last = _accounts.c.last_otp_request
        count = _accounts.c.otp_requests_count

        window_over = or_(last.is_(None), last <= window_start)
        # count == 0 inside a window happens after a full login reset.
        below_quota = [count == 0] + [
            and_(count == n, last <= _iso(now - timedelta(minutes=limits.step_after(n))))
            for n in range(1, limits.max_requests)
        ]
        allowed = or_(window_over, and_(last > window_start, or_(*below_quota)))

        with self._transaction() as conn:
            result = conn.execute(
                _accounts.update()
                .where(and_(_accounts.c.email == key, allowed))
                .values(
                    otp_requests_count=case((window_over, 1), else_=count + 1),
                    last_otp_request=_iso(now),
                )
            )
            row = conn.execute(
                _accounts.select().where(_accounts.c.email == key)
            ).fetchone()

        if row is None:
            return None
        if result.rowcount:
            return OtcSlot(
                granted=True,
                request_count=row.otp_requests_count,
                remaining_requests=max(0, limits.max_requests - row.otp_requests_count),
            )

        last_request = datetime.fromisoformat(row.last_otp_request)
        if row.otp_requests_count >= limits.max_requests:
            wait = last_request + timedelta(minutes=limits.window_minutes) - now
            remaining = 0
        else:
            wait = last_request + timedelta(minutes=limits.step_after(row.otp_requests_count)) - now
            remaining = limits.max_requests - row.otp_requests_count
        return OtcSlot(
            granted=False,
            request_count=row.otp_requests_count,
            remaining_requests=remaining,
            cooldown_seconds=_whole_minutes_in_seconds(wait),
        )

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def create_membership(self, membership: OrganizationMembership, now: Optional[datetime] = None) -> int:
        """Insert a membership row and return its ID.

        The role and any visibility override are validated by the policy
        engine first; a locked section in the override raises
        LockedSectionError and nothing is written.
        """
        role = parse_role(membership.role)
        sections = validate_override(role, membership.visibility_overrides)
        with self._transaction() as conn:
            result = conn.execute(
                _memberships.insert().values(
                    identity_id=membership.identity_id,
                    organization_id=membership.organization_id,
                    role=role.value,
                    is_active=1 if membership.is_active else 0,
                    visibility_overrides=json.dumps({"sections": sections}) if sections else None,
                    can_create_users=_flag_to_int(membership.can_create_users),
                    created_at=_iso(now or _now()),
                )
            )
            return result.inserted_primary_key[0]

    def get_membership(self, membership_id: int) -> OrganizationMembership | None:
        with self._connect() as conn:
            row = conn.execute(_memberships.select().where(_memberships.c.id == membership_id)).fetchone()
        return _row_to_membership(row) if row is not None else None

    def get_memberships(self, identity_id: str) -> list[OrganizationMembership]:
        """Return every membership of the identity, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _memberships.select().where(_memberships.c.identity_id == identity_id).order_by(_memberships.c.id)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def set_membership_active(self, membership_id: int, active: bool) -> bool:
        with self._transaction() as conn:
            result = conn.execute(
                _memberships.update().where(_memberships.c.id == membership_id).values(is_active=1 if active else 0)
            )
        return result.rowcount > 0

    def update_visibility_override(self, membership_id: int, override: Optional[dict[str, Any]]) -> bool:
        """Replace the stored override after validating it against the membership's role.

        Passing None or {} clears the override. Returns False if the
        membership does not exist.
        """
        membership = self.get_membership(membership_id)
        if membership is None:
            return False
        sections = validate_override(membership.role, override)
        with self._transaction() as conn:
            result = conn.execute(
                _memberships.update()
                .where(_memberships.c.id == membership_id)
                .values(visibility_overrides=json.dumps({"sections": sections}) if sections else None)
            )
        return result.rowcount > 0

    def update_capabilities(self, membership_id: int, **flags: Optional[bool]) -> bool:
        """Set per-membership capability flags; None restores the role default.

        Only names in CAPABILITY_NAMES are accepted. Unknown names raise
        InvalidOverrideError rather than being silently ignored.
        """
        unknown = set(flags) - set(CAPABILITY_NAMES)
        if unknown:
            raise InvalidOverrideError(f"Unknown capabilities: {sorted(unknown)!r}")
        for name, value in flags.items():
            if value is not None and not isinstance(value, bool):
                raise InvalidOverrideError(f"Capability {name!r} must be a boolean or None")
        if not flags:
            return self.get_membership(membership_id) is not None
        values = {name: _flag_to_int(value) for name, value in flags.items()}
        with self._transaction() as conn:
            result = conn.execute(_memberships.update().where(_memberships.c.id == membership_id).values(**values))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _flag_to_int(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def _row_to_account(row) -> AccountRecord:
    return AccountRecord(
        id=row.id,
        identity_id=row.identity_id,
        email=row.email,
        display_name=row.display_name or "",
        is_active=bool(row.is_active),
        is_first_login=bool(row.is_first_login),
        password_updated=bool(row.password_updated),
        otp_requests_count=row.otp_requests_count,
        last_otp_request=row.last_otp_request,
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_membership(row) -> OrganizationMembership:
    overrides = json.loads(row.visibility_overrides) if row.visibility_overrides else {}
    return OrganizationMembership(
        id=row.id,
        identity_id=row.identity_id,
        organization_id=row.organization_id,
        role=parse_role(row.role),
        is_active=bool(row.is_active),
        visibility_overrides=overrides,
        can_create_users=None if row.can_create_users is None else bool(row.can_create_users),
        created_at=row.created_at,
    )
