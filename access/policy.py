"""
access/policy.py -- Authorization Policy Engine.

Maps {role, explicit overrides} -> {visible sections, enabled capabilities}.
Every function is pure and deterministic; call sites pass in whatever the
record store returned and get plain dicts back.

Design decisions:
  Role rank: a single lookup table (ROLE_RANK) is the only source of the role
      hierarchy. has_at_least() compares ranks; nothing else compares role
      strings. Unknown roles raise UnknownRoleError -- they are never treated
      as the lowest privilege.

  Section defaults: an explicit table per role, NOT derived from rank.
      finance_admin ranks below branch_admin yet sees finance, and sees
      nothing of People. That carve-out is a product decision and is listed
      in SCOPED_ROLES / CARVE_OUT_SECTIONS so tests can tell a deliberate
      exception from a mistake.

  Overrides: merged at the leaf. {"people": {"attendance": false}} changes
      one leaf and leaves people.enabled at the role default. A bare bool on
      a nested section applies to every leaf of that section.

  Locks: some toggles are pinned per role. The UI disables them; this module
      also ignores them in effective_visibility() and rejects them in
      validate_override().

Layer rule: stdlib only.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class UnknownRoleError(ValueError):
    """Raised for a role string that is not in ROLE_RANK."""


class InvalidOverrideError(ValueError):
    """Raised for a malformed visibility override or an unknown capability."""


class LockedSectionError(InvalidOverrideError):
    """Raised when an override tries to change a toggle locked for the role."""

    def __init__(self, role: "Role", keys: Iterable[str]) -> None:
        self.role = role
        self.keys = sorted(keys)
        super().__init__(f"Sections locked for role {role.value!r}: {', '.join(self.keys)}")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class Role(str, Enum):
    owner = "owner"
    admin = "admin"
    branch_admin = "branch_admin"
    finance_admin = "finance_admin"
    attendance_manager = "attendance_manager"
    attendance_rep = "attendance_rep"
    write = "write"
    read = "read"


ROLE_RANK: dict[Role, int] = {
    Role.owner: 8,
    Role.admin: 7,
    Role.branch_admin: 6,
    Role.finance_admin: 5,
    Role.attendance_manager: 4,
    Role.attendance_rep: 3,
    Role.write: 2,
    Role.read: 1,
}


def parse_role(value: "Role | str") -> Role:
    """Return the Role for a role string. Raises UnknownRoleError otherwise."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        raise UnknownRoleError(f"Unknown role: {value!r}") from None


def role_rank(role: "Role | str") -> int:
    return ROLE_RANK[parse_role(role)]


def has_at_least(role: "Role | str", threshold: "Role | str") -> bool:
    """True if role is at least as privileged as threshold in the hierarchy."""
    return role_rank(role) >= role_rank(threshold)


# Role-set predicates used across the application. These are explicit sets,
# not rank comparisons: can_view_all_data includes finance_admin and write but
# skips the attendance roles in between.
_MANAGE_ALL_DATA = frozenset({Role.owner, Role.admin})
_VIEW_ALL_DATA = frozenset({Role.owner, Role.admin, Role.branch_admin, Role.finance_admin, Role.write})
_MANAGE_BRANCH_DATA = _VIEW_ALL_DATA
_MANAGE_USER_DATA = frozenset({Role.owner, Role.admin, Role.branch_admin})
_WRITE = frozenset({Role.owner, Role.admin, Role.branch_admin, Role.write})
_READ = frozenset({Role.owner, Role.admin, Role.branch_admin, Role.write, Role.read})


def can_manage_all_data(role: "Role | str") -> bool:
    return parse_role(role) in _MANAGE_ALL_DATA


def can_view_all_data(role: "Role | str") -> bool:
    return parse_role(role) in _VIEW_ALL_DATA


def can_manage_branch_data(role: "Role | str") -> bool:
    return parse_role(role) in _MANAGE_BRANCH_DATA


def can_manage_user_data(role: "Role | str") -> bool:
    return parse_role(role) in _MANAGE_USER_DATA


def can_write(role: "Role | str") -> bool:
    return parse_role(role) in _WRITE


def can_read(role: "Role | str") -> bool:
    return parse_role(role) in _READ


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

NESTED_SECTIONS: dict[str, tuple[str, ...]] = {
    "people": ("enabled", "attendance", "tags_groups", "membership", "form_builder", "birthdays"),
    "finance": ("enabled", "insights", "income", "expenses", "contributions", "pledges"),
}
FLAT_SECTIONS: tuple[str, ...] = ("branches", "events", "announcements", "assets", "user_management", "settings")
SECTION_KEYS: tuple[str, ...] = tuple(NESTED_SECTIONS) + FLAT_SECTIONS

PEOPLE_CHILDREN: tuple[str, ...] = NESTED_SECTIONS["people"][1:]
FINANCE_CHILDREN: tuple[str, ...] = NESTED_SECTIONS["finance"][1:]


def leaf_keys() -> list[str]:
    """Every dotted leaf key of a visibility map, e.g. 'people.attendance', 'branches'."""
    keys: list[str] = []
    for section, leaves in NESTED_SECTIONS.items():
        keys.extend(f"{section}.{leaf}" for leaf in leaves)
    keys.extend(FLAT_SECTIONS)
    return keys


def flatten(visibility: Mapping[str, Any]) -> dict[str, bool]:
    """Flatten a full visibility map into {dotted leaf key: bool}."""
    flat: dict[str, bool] = {}
    for section, leaves in NESTED_SECTIONS.items():
        for leaf in leaves:
            flat[f"{section}.{leaf}"] = bool(visibility[section][leaf])
    for section in FLAT_SECTIONS:
        flat[section] = bool(visibility[section])
    return flat


def _nested(section: str, enabled: bool = False, *, all_leaves: bool = False, **leaves: bool) -> dict[str, bool]:
    if all_leaves:
        return {leaf: True for leaf in NESTED_SECTIONS[section]}
    result = {leaf: False for leaf in NESTED_SECTIONS[section]}
    result["enabled"] = enabled
    result.update(leaves)
    return result


def _flat(enabled: Iterable[str] = ()) -> dict[str, bool]:
    on = set(enabled)
    return {section: section in on for section in FLAT_SECTIONS}


_BRANCH_ADMIN_FLAT = ("events", "announcements", "assets", "user_management", "settings")

# Explicit per-role defaults. Keep as a table: see module docstring.
_ROLE_DEFAULTS: dict[Role, dict[str, Any]] = {
    Role.owner: {
        "people": _nested("people", all_leaves=True),
        "finance": _nested("finance", all_leaves=True),
        **_flat(FLAT_SECTIONS),
    },
    Role.admin: {
        "people": _nested("people", all_leaves=True),
        "finance": _nested("finance"),
        **_flat(FLAT_SECTIONS),
    },
    Role.branch_admin: {
        "people": _nested("people", all_leaves=True),
        "finance": _nested("finance"),
        **_flat(_BRANCH_ADMIN_FLAT),
    },
    Role.finance_admin: {
        "people": _nested("people"),
        "finance": _nested("finance", all_leaves=True),
        **_flat(),
    },
    Role.attendance_manager: {
        "people": _nested("people", enabled=True, attendance=True),
        "finance": _nested("finance"),
        **_flat(),
    },
    Role.attendance_rep: {
        "people": _nested("people", attendance=True),
        "finance": _nested("finance"),
        **_flat(),
    },
    Role.write: {
        "people": _nested("people"),
        "finance": _nested("finance"),
        **_flat(),
    },
    Role.read: {
        "people": _nested("people"),
        "finance": _nested("finance"),
        **_flat(),
    },
}

# Roles whose defaults are scoped to one area regardless of rank: a scoped
# role need not see everything a lower-ranked role sees.
SCOPED_ROLES: frozenset[Role] = frozenset({Role.finance_admin})

# Sections a lower-ranked role may see although a higher-ranked role does not.
CARVE_OUT_SECTIONS: dict[Role, frozenset[str]] = {
    Role.finance_admin: frozenset({"finance"}),
}


def default_sections_for_role(role: "Role | str") -> dict[str, Any]:
    """Return a fresh copy of the default visibility map for role."""
    return copy.deepcopy(_ROLE_DEFAULTS[parse_role(role)])


# ---------------------------------------------------------------------------
# Toggle locks
# ---------------------------------------------------------------------------

# A bare section name locks every leaf of that section.
_TOGGLE_LOCKS: dict[Role, frozenset[str]] = {
    Role.owner: frozenset(),
    Role.admin: frozenset({"user_management"}),
    Role.branch_admin: frozenset({"branches", "user_management"}),
    Role.finance_admin: frozenset({"branches", "user_management", "settings", "finance"}),
    Role.attendance_manager: frozenset(
        {"branches", "finance", "events", "announcements", "assets", "user_management", "settings"}
    ),
    Role.attendance_rep: frozenset(
        {"branches", "finance", "events", "announcements", "assets", "user_management", "settings", "people.enabled"}
    ),
    Role.write: frozenset({"user_management"}),
    Role.read: frozenset({"user_management"}),
}


def _check_key(section_key: str) -> tuple[str, Optional[str]]:
    section, _, leaf = section_key.partition(".")
    if section in FLAT_SECTIONS and not leaf:
        return section, None
    if section in NESTED_SECTIONS and (not leaf or leaf in NESTED_SECTIONS[section]):
        return section, leaf or None
    raise InvalidOverrideError(f"Unknown section key: {section_key!r}")


def toggle_is_locked(role: "Role | str", section_key: str) -> bool:
    """True if the visibility toggle for section_key is pinned for role.

    section_key is a bare section ('finance', 'branches') or a dotted leaf
    ('people.enabled'). A leaf is locked when either the leaf itself or its
    whole section is locked.
    """
    locks = _TOGGLE_LOCKS[parse_role(role)]
    section, leaf = _check_key(section_key)
    if section in locks:
        return True
    if leaf is None:
        # Bare nested section: locked only when every leaf is.
        return section in NESTED_SECTIONS and all(f"{section}.{name}" in locks for name in NESTED_SECTIONS[section])
    return f"{section}.{leaf}" in locks


def locked_keys(role: "Role | str") -> list[str]:
    """Every dotted leaf key that is locked for role."""
    return [key for key in leaf_keys() if toggle_is_locked(role, key)]


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def override_sections(override: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Return the sections map of an override.

    Accepts None, a bare sections map, or the stored {"sections": {...}}
    envelope.
    """
    if not override:
        return {}
    if not isinstance(override, Mapping):
        raise InvalidOverrideError(f"Visibility override must be a mapping, got {type(override).__name__}")
    if "sections" in override:
        sections = override["sections"] or {}
        if not isinstance(sections, Mapping):
            raise InvalidOverrideError("'sections' must be a mapping")
        return dict(sections)
    return dict(override)


def has_any_override(override: Optional[Mapping[str, Any]]) -> bool:
    return bool(override_sections(override))


def _as_flag(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidOverrideError(f"Override for {key!r} must be a boolean, got {value!r}")
    return value


def _override_leaves(override: Optional[Mapping[str, Any]]) -> dict[str, bool]:
    """Normalize an override into {dotted leaf key: bool}."""
    leaves: dict[str, bool] = {}
    for section, value in override_sections(override).items():
        if section in NESTED_SECTIONS:
            if isinstance(value, Mapping):
                for leaf, flag in value.items():
                    if leaf not in NESTED_SECTIONS[section]:
                        raise InvalidOverrideError(f"Unknown section key: '{section}.{leaf}'")
                    leaves[f"{section}.{leaf}"] = _as_flag(f"{section}.{leaf}", flag)
            else:
                flag = _as_flag(section, value)
                for leaf in NESTED_SECTIONS[section]:
                    leaves[f"{section}.{leaf}"] = flag
        elif section in FLAT_SECTIONS:
            leaves[section] = _as_flag(section, value)
        else:
            raise InvalidOverrideError(f"Unknown section key: {section!r}")
    return leaves


def effective_visibility(role: "Role | str", override: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Merge override into the role defaults at the leaf.

    Keys absent from the override keep the role default. Locked keys keep
    the role default whatever the override says.
    """
    role = parse_role(role)
    result = default_sections_for_role(role)
    for key, flag in _override_leaves(override).items():
        if toggle_is_locked(role, key):
            continue
        section, _, leaf = key.partition(".")
        if leaf:
            result[section][leaf] = flag
        else:
            result[section] = flag
    return result


def validate_override(role: "Role | str", override: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Validate an override before it is stored and return its sections map.

    Raises InvalidOverrideError for unknown keys or non-boolean values and
    LockedSectionError when a locked toggle is set to anything other than the
    role default (submitting the default of a disabled control is allowed).
    """
    role = parse_role(role)
    defaults = flatten(default_sections_for_role(role))
    violations = [
        key
        for key, flag in _override_leaves(override).items()
        if toggle_is_locked(role, key) and flag != defaults[key]
    ]
    if violations:
        raise LockedSectionError(role, violations)
    return override_sections(override)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------

CAPABILITY_NAMES: tuple[str, ...] = ("can_create_users",)

_CREATE_USERS = frozenset({Role.owner, Role.admin, Role.branch_admin})


def default_capabilities(role: "Role | str") -> dict[str, bool]:
    role = parse_role(role)
    return {"can_create_users": role in _CREATE_USERS}


def effective_capabilities(
    role: "Role | str", flags: Optional[Mapping[str, Optional[bool]]] = None
) -> dict[str, bool]:
    """Role default capabilities with stored per-membership flags applied.

    A flag of None means "follow the role default".
    """
    result = default_capabilities(role)
    for name, value in (flags or {}).items():
        if name not in CAPABILITY_NAMES:
            raise InvalidOverrideError(f"Unknown capability: {name!r}")
        if value is not None:
            result[name] = _as_flag(name, value)
    return result


def has_capability(role: "Role | str", name: str, flags: Optional[Mapping[str, Optional[bool]]] = None) -> bool:
    if name not in CAPABILITY_NAMES:
        raise InvalidOverrideError(f"Unknown capability: {name!r}")
    return effective_capabilities(role, flags)[name]


# ---------------------------------------------------------------------------
# Restricted layouts
# ---------------------------------------------------------------------------


def _finance_only(sections: Mapping[str, Any]) -> bool:
    finance = sections.get("finance")
    people = sections.get("people")
    finance_on = finance is True or (isinstance(finance, Mapping) and finance.get("enabled") is True)
    if isinstance(people, Mapping):
        people_any = any(people.get(leaf) for leaf in NESTED_SECTIONS["people"])
    else:
        people_any = people is True
    others = any(sections.get(section) for section in FLAT_SECTIONS)
    return finance_on and not people_any and not others


def _attendance_only(sections: Mapping[str, Any]) -> bool:
    finance = sections.get("finance")
    people = sections.get("people")
    if not isinstance(people, Mapping):
        return False
    finance_on = finance is True or (isinstance(finance, Mapping) and bool(finance.get("enabled")))
    others = any(sections.get(section) for section in FLAT_SECTIONS)
    other_children = any(people.get(child) for child in PEOPLE_CHILDREN if child != "attendance")
    return (
        not finance_on
        and not others
        and not people.get("enabled")
        and bool(people.get("attendance"))
        and not other_children
    )


def choose_restricted_layout(role: "Role | str", override: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """Pick the reduced navigation layout for narrowly scoped memberships.

    With an override present the override alone decides; otherwise the role
    does. Returns 'finance', 'attendance_manager', 'attendance_rep' or None.
    """
    role = parse_role(role)
    sections = override_sections(override)
    if sections:
        if _finance_only(sections):
            return "finance"
        if _attendance_only(sections):
            return "attendance_rep" if role is Role.attendance_rep else "attendance_manager"
        return None
    if role is Role.finance_admin:
        return "finance"
    if role is Role.attendance_rep:
        return "attendance_rep"
    if role is Role.attendance_manager:
        return "attendance_manager"
    return None
