"""Base module interface shared by every assertion kind."""

from __future__ import annotations

import logging
import os
import pwd
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, TYPE_CHECKING

from pydantic import BaseModel

from devincubator.errors import ApplyFailure, CheckFailure
from devincubator.plan import thaw
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion


@dataclass(frozen=True)
class CurrentState:
    """What a module's check observed, and whether it matches the desired state."""

    satisfied: bool
    observed: str = ""
    expected: str = ""


@dataclass
class ModuleContext:
    logger: logging.Logger
    timeout: int | None = None
    check_mode: bool = False


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 200) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-limit:]


def run_command(
    argv: list[str],
    ctx: ModuleContext,
    *,
    error: type[Exception] = ApplyFailure,
    env: dict[str, str] | None = None,
    shell: bool = False,
) -> CommandResult:
    """Run an external command, logging its output at debug level.

    A missing executable or an expired timeout raises *error*; a non-zero
    exit code does not, callers decide what it means.
    """
    ctx.logger.debug(f"Running: {' '.join(argv)}")
    full_env = {**os.environ, **env} if env else None
    try:
        proc = subprocess.run(
            argv[0] if shell else argv,
            shell=shell,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=ctx.timeout,
            env=full_env,
            check=False,
            # Own session: a terminal Ctrl+C must not kill the command in flight
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise error(f"command not found: {argv[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise error(f"'{' '.join(argv)}' timed out after {ctx.timeout}s") from exc

    ctx.logger.debug(f"Exit code {proc.returncode}")
    if proc.stdout:
        ctx.logger.debug(f"stdout: {proc.stdout.rstrip()}")
    if proc.stderr:
        ctx.logger.debug(f"stderr: {proc.stderr.rstrip()}")
    return CommandResult(argv=list(argv), returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def current_user() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


def as_user(argv: list[str], user: str | None) -> list[str]:
    """Wrap *argv* with runuser when it must run as someone other than us."""
    if not user or user == current_user():
        return list(argv)
    return ["runuser", "-u", user, "--", *argv]


def require_success(result: CommandResult, what: str) -> CommandResult:
    if not result.ok:
        raise ApplyFailure(f"{what} failed (exit code {result.returncode}): {result.tail()}")
    return result


def query_command(argv: list[str], ctx: ModuleContext) -> CommandResult:
    """Run a read-only query; problems running it surface as CheckFailure."""
    return run_command(argv, ctx, error=CheckFailure)


class StateModule(ABC):
    """Abstract base class that all state modules must implement.

    ``check`` must never change the system; all side effects belong in
    ``apply``, which is only called when ``check`` reports the desired state
    is not yet reached.
    """

    kind: ClassVar[str]
    params_model: ClassVar[type[BaseModel]]
    states: ClassVar[tuple[str, ...]] = ("present", "absent")

    def parse_params(self, assertion: StateAssertion) -> BaseModel:
        return self.params_model.model_validate(thaw(assertion.parameters))

    def desired(self, assertion: StateAssertion) -> str:
        return assertion.desired_state or self.states[0]

    @abstractmethod
    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        """Report the current state of the system for this assertion."""
        ...

    @abstractmethod
    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        """Bring the system to the desired state, raising ApplyFailure on error."""
        ...

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        """Executables that must exist before the run starts."""
        return ()

    def reports_change(self, assertion: StateAssertion) -> bool:
        """Whether applying this assertion counts as a change."""
        return True

    def changed(self, assertion: StateAssertion, message: str) -> Outcome:
        return Outcome(
            assertion_identifier=assertion.identifier,
            group=assertion.group,
            changed=True,
            message=message,
        )
