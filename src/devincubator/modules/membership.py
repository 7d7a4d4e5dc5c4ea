"""Supplementary group membership via getent and usermod."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from devincubator.errors import CheckFailure
from devincubator.modules.base import (
    CurrentState,
    ModuleContext,
    StateModule,
    query_command,
    require_success,
    run_command,
)
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion


class MembershipParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    user: str
    group: str


def group_members(group: str, ctx: ModuleContext) -> list[str] | None:
    """Members listed in the group database, or None if the group does not exist."""
    result = query_command(["getent", "group", group], ctx)
    if result.returncode == 2:
        return None
    if not result.ok:
        raise CheckFailure(f"getent group {group} failed: {result.tail()}")
    # name:password:gid:member1,member2
    fields = result.stdout.strip().split(":")
    if len(fields) < 4 or not fields[3]:
        return []
    return fields[3].split(",")


class GroupMembershipModule(StateModule):
    kind = "group_membership"
    params_model = MembershipParams

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        if self.desired(assertion) == "absent":
            return ("getent", "gpasswd")
        return ("getent", "usermod")

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        members = group_members(params.group, ctx)
        desired = self.desired(assertion)
        expected = f"{params.user} {'in' if desired == 'present' else 'not in'} group {params.group}"
        if members is None:
            return CurrentState(
                satisfied=desired == "absent",
                observed=f"group {params.group} does not exist",
                expected=expected,
            )
        is_member = params.user in members
        observed = f"{params.user} {'in' if is_member else 'not in'} group {params.group}"
        return CurrentState(
            satisfied=is_member == (desired == "present"),
            observed=observed,
            expected=expected,
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        if self.desired(assertion) == "present":
            argv = ["usermod", "-aG", params.group, params.user]
            message = f"added {params.user} to {params.group}"
        else:
            argv = ["gpasswd", "-d", params.user, params.group]
            message = f"removed {params.user} from {params.group}"
        require_success(run_command(argv, ctx), argv[0])
        return self.changed(assertion, message)
