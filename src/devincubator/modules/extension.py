"""Editor extensions managed through the editor's CLI (VS Code by default).

Extensions live in a user's profile, so the CLI runs as ``user`` when one
is given; under sudo that is the desktop user, not root.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from devincubator.errors import CheckFailure
from devincubator.modules.base import (
    CurrentState,
    ModuleContext,
    StateModule,
    as_user,
    query_command,
    require_success,
    run_command,
)
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion


class ExtensionParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    id: str
    cli: str = "code"
    user: str | None = None


def list_extensions(cli: str, ctx: ModuleContext, user: str | None = None) -> list[str]:
    result = query_command(as_user([cli, "--list-extensions"], user), ctx)
    if not result.ok:
        # Typically no GUI session available
        raise CheckFailure(f"{cli} --list-extensions failed: {result.tail() or 'no output'}")
    return [line.strip().replace("\r", "") for line in result.stdout.splitlines() if line.strip()]


class ExtensionModule(StateModule):
    kind = "extension"
    params_model = ExtensionParams

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        params = self.parse_params(assertion)
        argv = as_user([params.cli], params.user)
        return ("runuser",) if argv[0] == "runuser" else ()

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        installed = {e.lower() for e in list_extensions(params.cli, ctx, params.user)}
        present = params.id.lower() in installed
        desired = self.desired(assertion)
        return CurrentState(
            satisfied=present == (desired == "present"),
            observed=f"{params.id} {'installed' if present else 'not installed'}",
            expected=f"{params.id} {'installed' if desired == 'present' else 'not installed'}",
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        if self.desired(assertion) == "present":
            argv = [params.cli, "--install-extension", params.id, "--force"]
            message = f"installed extension {params.id}"
        else:
            argv = [params.cli, "--uninstall-extension", params.id]
            message = f"uninstalled extension {params.id}"
        require_success(run_command(as_user(argv, params.user), ctx), f"{params.cli} {argv[1]}")
        if params.user:
            message += f" for {params.user}"
        return self.changed(assertion, message)
