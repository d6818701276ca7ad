"""
access/models.py -- Domain dataclasses for organization membership.

Pattern: Data class (pure data container, zero logic). The policy engine in
access/policy.py does the work; stores build these from rows.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from access.policy import Role


@dataclass
class OrganizationMembership:
    """One (identity, organization, role) tuple.

    visibility_overrides is the raw per-membership deviation from the role's
    default section visibility, either a bare sections map or the stored
    {"sections": {...}} envelope. can_create_users is None when the membership
    follows the role default.

    Which membership is "current" for a client is chosen outside this package.
    """

    identity_id: str
    organization_id: str
    role: Role
    id: int | None = None
    is_active: bool = True
    visibility_overrides: dict[str, Any] = field(default_factory=dict)
    can_create_users: bool | None = None
    created_at: str | None = None

    def capability_flags(self) -> dict[str, bool | None]:
        return {"can_create_users": self.can_create_users}
