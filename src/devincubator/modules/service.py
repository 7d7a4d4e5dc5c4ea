"""systemd unit state via systemctl."""

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


class ServiceParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    enabled: bool | None = None


def unit_properties(name: str, ctx: ModuleContext) -> dict[str, str]:
    result = query_command(
        ["systemctl", "show", name, "--property=UnitFileState,ActiveState,LoadState"], ctx
    )
    if not result.ok:
        raise CheckFailure(f"systemctl show {name} failed: {result.tail()}")
    props = {}
    for line in result.stdout.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            props[key] = value.strip()
    return props


class ServiceModule(StateModule):
    kind = "service"
    params_model = ServiceParams
    states = ("started", "stopped")

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        return ("systemctl",)

    def _pending(self, assertion: StateAssertion, ctx: ModuleContext) -> tuple[list[str], str]:
        params = self.parse_params(assertion)
        props = unit_properties(params.name, ctx)
        active = props.get("ActiveState", "unknown")
        unit_file = props.get("UnitFileState", "unknown")
        observed = f"{active}, {unit_file or 'no unit file'}"

        pending = []
        want_running = self.desired(assertion) == "started"
        if want_running and active != "active":
            pending.append("start")
        elif not want_running and active in ("active", "activating", "reloading"):
            pending.append("stop")
        if params.enabled is True and unit_file not in ("enabled", "static", "alias"):
            pending.append("enable")
        elif params.enabled is False and unit_file == "enabled":
            pending.append("disable")
        return pending, observed

    def _expected(self, assertion: StateAssertion) -> str:
        params = self.parse_params(assertion)
        expected = "active" if self.desired(assertion) == "started" else "inactive"
        if params.enabled is not None:
            expected += ", enabled" if params.enabled else ", disabled"
        return expected

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        pending, observed = self._pending(assertion, ctx)
        return CurrentState(
            satisfied=not pending, observed=observed, expected=self._expected(assertion)
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        pending, _ = self._pending(assertion, ctx)
        for action in pending:
            require_success(
                run_command(["systemctl", action, params.name], ctx),
                f"systemctl {action} {params.name}",
            )
        return self.changed(assertion, f"{', '.join(pending)} {params.name}")


class RestartServiceModule(ServiceModule):
    """Unconditional restart, used as a handler after configuration changes."""

    kind = "service_restart"
    states = ("restarted",)

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        return CurrentState(satisfied=False, observed="restart requested", expected="restarted")

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        require_success(
            run_command(["systemctl", "restart", params.name], ctx),
            f"systemctl restart {params.name}",
        )
        return self.changed(assertion, f"restarted {params.name}")
