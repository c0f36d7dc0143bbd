"""Helper utilities used by the install preflight."""
from __future__ import annotations

from .group_membership import (
    GroupMembershipAction,
    GroupMembershipPlan,
    GroupMembershipSpec,
    GroupMembershipStatus,
    apply_group_membership_plan,
    inspect_group_membership,
    plan_group_membership,
    resolve_invoking_user,
)
from .preflight import (
    DependencyInstallError,
    DependencyResult,
    DependencyStatus,
    Preflight,
    PreflightReport,
    ensure_dependency,
)

__all__ = [
    # group membership helpers
    "GroupMembershipAction",
    "GroupMembershipPlan",
    "GroupMembershipSpec",
    "GroupMembershipStatus",
    "apply_group_membership_plan",
    "inspect_group_membership",
    "plan_group_membership",
    "resolve_invoking_user",
    # preflight
    "DependencyInstallError",
    "DependencyResult",
    "DependencyStatus",
    "Preflight",
    "PreflightReport",
    "ensure_dependency",
]
