"""
access/pages.py -- Page registry and path-level visibility checks.

Each application page is bound to at most one section (and optionally one
child of a nested section). Path checks pick the registered page with the
longest matching prefix, so '/people/attendance/marking' is governed by its
own entry and '/people/attendance/2024' falls back to '/people/attendance'.

Unregistered paths and pages without a section are reachable by everyone
who is signed in; gating those is the guard layer's job, not this module's.

Layer rule: stdlib + access.policy only.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from access.policy import NESTED_SECTIONS, PEOPLE_CHILDREN, Role, effective_visibility


@dataclass(frozen=True)
class Page:
    path: str
    label: str
    section: Optional[str] = None
    child: Optional[str] = None
    protected: bool = True
    nav: bool = True


PAGES: tuple[Page, ...] = (
    Page("/dashboard", "Dashboard"),
    Page("/branches", "Branches", section="branches"),
    # people
    Page("/people", "People", section="people"),
    Page("/people/attendance", "Attendance", section="people", child="attendance"),
    Page("/people/membership", "Membership", section="people", child="membership"),
    Page("/people/tags", "Tags", section="people", child="tags_groups"),
    Page("/people/groups", "Groups", section="people", child="tags_groups"),
    Page("/people/form-builder", "Form Builder", section="people", child="form_builder"),
    Page("/people/attendance/marking", "Mark Attendance", section="people", child="attendance", nav=False),
    Page("/people/birthdays", "Birthdays", section="people", child="birthdays"),
    # finance
    Page("/finance", "Finance", section="finance"),
    Page("/finance/insights", "Insights", section="finance", child="insights"),
    Page("/finance/income", "Income", section="finance", child="income"),
    Page("/finance/expenses", "Expenses", section="finance", child="expenses"),
    Page("/finance/contributions", "Contributions", section="finance", child="contributions"),
    Page("/finance/pledges", "Pledges", section="finance", child="pledges"),
    # others
    Page("/events", "Events and Activities", section="events"),
    Page("/announcements", "Announcements", section="announcements"),
    Page("/assets", "Assets", section="assets"),
    Page("/user-management", "Users", section="user_management"),
    Page("/settings", "Settings", section="settings"),
)


def find_page(path: str) -> Optional[Page]:
    """Return the registered page governing path (longest prefix match), or None."""
    best: Optional[Page] = None
    for page in PAGES:
        if path == page.path or (page.path != "/" and path.startswith(page.path + "/")):
            if best is None or len(page.path) > len(best.path):
                best = page
    return best


# ---------------------------------------------------------------------------
# Checks over an effective visibility map
# ---------------------------------------------------------------------------


def can_access_section(visibility: Mapping[str, Any], section: str) -> bool:
    value = visibility[section]
    if section in NESTED_SECTIONS:
        return bool(value["enabled"])
    return bool(value)


def can_access_child(visibility: Mapping[str, Any], section: str, child: Optional[str] = None) -> bool:
    """Visibility of one child page of a section.

    People children are visible when People itself is enabled or when the
    child leaf is on (attendance reps see Attendance without People).
    Finance children need both the Finance section and the leaf.
    """
    if child is None or section not in NESTED_SECTIONS:
        return can_access_section(visibility, section)
    leaves = visibility[section]
    if child not in leaves or child == "enabled":
        raise ValueError(f"Unknown child {child!r} of section {section!r}")
    if section == "people":
        return bool(leaves["enabled"]) or bool(leaves[child])
    return bool(leaves["enabled"]) and bool(leaves[child])


def path_visible(visibility: Mapping[str, Any], path: str) -> bool:
    page = find_page(path)
    if page is None or page.section is None:
        return True
    if page.section == "people" and page.child is None:
        # The People landing page is reachable through any visible child.
        return can_access_section(visibility, "people") or any(
            can_access_child(visibility, "people", child) for child in PEOPLE_CHILDREN
        )
    return can_access_child(visibility, page.section, page.child)


def can_access_path(role: "Role | str", override: Optional[Mapping[str, Any]], path: str) -> bool:
    """True if path is reachable for a membership with role and override."""
    return path_visible(effective_visibility(role, override), path)


def nav_pages(role: "Role | str", override: Optional[Mapping[str, Any]] = None) -> list[Page]:
    """Navigation entries visible to the membership, in registry order."""
    visibility = effective_visibility(role, override)
    return [page for page in PAGES if page.nav and path_visible(visibility, page.path)]
