"""Arbitrary commands, guarded by a ``creates`` path or declared change-free."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, model_validator

from devincubator.modules.base import (
    CurrentState,
    ModuleContext,
    StateModule,
    require_success,
    run_command,
)
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion


class CommandParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    argv: list[str] = []
    cmd: str | None = None
    creates: str | None = None
    changed: bool = True
    env: dict[str, str] = {}

    @model_validator(mode="after")
    def exactly_one_form(self) -> CommandParams:
        if bool(self.argv) == bool(self.cmd):
            raise ValueError("command needs exactly one of 'argv' or 'cmd'")
        if self.changed and self.creates is None:
            raise ValueError("a command that reports changes needs 'creates'; set changed: false otherwise")
        return self


class CommandModule(StateModule):
    kind = "command"
    params_model = CommandParams
    states = ("run",)

    def reports_change(self, assertion: StateAssertion) -> bool:
        return self.parse_params(assertion).changed

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        if params.creates is None:
            return CurrentState(satisfied=False, observed="not run yet", expected="command run")
        exists = Path(params.creates).exists()
        return CurrentState(
            satisfied=exists,
            observed=f"{params.creates} {'exists' if exists else 'missing'}",
            expected=f"{params.creates} exists",
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        if params.cmd is not None:
            result = run_command([params.cmd], ctx, env=params.env or None, shell=True)
            label = params.cmd
        else:
            result = run_command(params.argv, ctx, env=params.env or None)
            label = " ".join(params.argv)
        require_success(result, label)
        return Outcome(
            assertion_identifier=assertion.identifier,
            group=assertion.group,
            changed=params.changed,
            message=f"ran {label}",
        )
