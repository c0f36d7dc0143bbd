"""Plan and apply membership of the invoking user in the container group."""
from __future__ import annotations

import grp
import os
import pwd
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Literal


@dataclass(slots=True)
class GroupMembershipSpec:
    """Desired membership of *user* in *group*."""

    user: str
    group: str = "docker"


@dataclass(slots=True)
class GroupMembershipStatus:
    """Current state of the user and group on the host."""

    user_exists: bool
    group_exists: bool
    is_member: bool
    primary_group: str | None = None


@dataclass(slots=True)
class GroupMembershipAction:
    """Single remediation step required to satisfy the desired state."""

    kind: Literal["add-member", "warn"]
    description: str
    command: list[str] | None = None


@dataclass(slots=True)
class GroupMembershipPlan:
    """Actions and warnings required to satisfy the spec."""

    spec: GroupMembershipSpec
    status: GroupMembershipStatus
    actions: list[GroupMembershipAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changes_pending(self) -> bool:
        """Return whether applying the plan would modify the host."""
        return any(action.command for action in self.actions)


def resolve_invoking_user(env: Mapping[str, str] | None = None) -> str | None:
    """Return the human user behind this process, looking through ``sudo``."""
    values = os.environ if env is None else env
    for key in ("SUDO_USER", "USER", "LOGNAME"):
        candidate = (values.get(key) or "").strip()
        if candidate:
            return candidate
    try:
        return pwd.getpwuid(os.getuid()).pw_name
    except KeyError:
        return None


def inspect_group_membership(spec: GroupMembershipSpec) -> GroupMembershipStatus:
    """Return the current membership status from passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.user)
    except KeyError:
        pw_entry = None

    try:
        group_entry = grp.getgrnam(spec.group)
    except KeyError:
        group_entry = None

    primary_group: str | None = None
    if pw_entry is not None:
        try:
            primary_group = grp.getgrgid(pw_entry.pw_gid).gr_name
        except KeyError:
            primary_group = None

    is_member = False
    if pw_entry is not None and group_entry is not None:
        is_member = spec.user in group_entry.gr_mem or pw_entry.pw_gid == group_entry.gr_gid

    return GroupMembershipStatus(
        user_exists=pw_entry is not None,
        group_exists=group_entry is not None,
        is_member=is_member,
        primary_group=primary_group,
    )


def plan_group_membership(
    spec: GroupMembershipSpec,
    *,
    usermod_bin: str = "usermod",
) -> GroupMembershipPlan:
    """Return a plan describing how to satisfy *spec* on the current host."""
    status = inspect_group_membership(spec)
    plan = GroupMembershipPlan(spec=spec, status=status)

    if spec.user == "root":
        return plan
    if not status.user_exists:
        plan.warnings.append(f"User '{spec.user}' does not exist; skipping group membership.")
        return plan
    if not status.group_exists:
        plan.warnings.append(
            f"Group '{spec.group}' does not exist yet; install the container runtime first."
        )
        return plan
    if status.is_member:
        return plan

    plan.actions.append(
        GroupMembershipAction(
            kind="add-member",
            description=f"Add user '{spec.user}' to group '{spec.group}'.",
            command=[usermod_bin, "-aG", spec.group, spec.user],
        )
    )
    plan.warnings.append(
        f"Membership of '{spec.group}' takes effect after '{spec.user}' logs out and back in."
    )
    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def apply_group_membership_plan(
    plan: GroupMembershipPlan,
    *,
    runner: Runner | None = None,
) -> None:
    """Execute the commands described by *plan*."""
    if runner is None:
        runner = _default_runner

    for action in plan.actions:
        if action.command is None:
            continue
        runner(action.command)


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


__all__ = [
    "GroupMembershipAction",
    "GroupMembershipPlan",
    "GroupMembershipSpec",
    "GroupMembershipStatus",
    "apply_group_membership_plan",
    "inspect_group_membership",
    "plan_group_membership",
    "resolve_invoking_user",
]
