"""Debian package presence via dpkg-query and apt-get."""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, model_validator

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

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

# Touched by apt's periodic job and by APT::Update::Post-Invoke-Success hooks
APT_UPDATE_STAMP = Path("/var/lib/apt/periodic/update-success-stamp")
APT_LISTS_DIR = Path("/var/lib/apt/lists")

UPGRADE_COMMANDS = {"dist": "dist-upgrade", "safe": "upgrade"}


class PackageParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str | None = None
    names: list[str] = []
    update_cache: bool = False
    cache_valid_time: int | None = None
    upgrade: Literal["dist", "safe"] | None = None

    @model_validator(mode="after")
    def collect_names(self) -> PackageParams:
        if self.name:
            self.names = [self.name, *[n for n in self.names if n != self.name]]
        if not self.names and self.upgrade is None:
            raise ValueError("package assertion needs 'name', 'names' or 'upgrade'")
        if self.cache_valid_time is not None:
            if self.cache_valid_time <= 0:
                raise ValueError("cache_valid_time must be a positive number of seconds")
            self.update_cache = True
        return self


def installed_packages(names: list[str], ctx: ModuleContext) -> set[str]:
    """Return the subset of *names* that dpkg reports as fully installed."""
    result = query_command(
        ["dpkg-query", "-W", "-f=${Package} ${db:Status-Status}\\n", *names], ctx
    )
    # dpkg-query exits 1 when some names are unknown but still lists the known ones
    if result.returncode not in (0, 1):
        raise CheckFailure(f"dpkg-query failed: {result.tail()}")
    installed = set()
    for line in result.stdout.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1] == "installed":
            installed.add(parts[0].split(":")[0])
    return installed


def pending_upgrades(mode: str, ctx: ModuleContext) -> list[str]:
    """Packages an ``apt-get upgrade``/``dist-upgrade`` would install, by simulation."""
    result = query_command(["apt-get", "-s", UPGRADE_COMMANDS[mode]], ctx)
    if not result.ok:
        raise CheckFailure(f"apt-get -s {UPGRADE_COMMANDS[mode]} failed: {result.tail()}")
    return [line.split()[1] for line in result.stdout.splitlines() if line.startswith("Inst ")]


def cache_age() -> float | None:
    """Seconds since the last successful ``apt-get update``, None if unknown."""
    for stamp in (APT_UPDATE_STAMP, APT_LISTS_DIR):
        if stamp.exists():
            return time.time() - stamp.stat().st_mtime
    return None


class PackageModule(StateModule):
    kind = "package"
    params_model = PackageParams

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        return ("dpkg-query", "apt-get")

    def _missing(self, assertion: StateAssertion, ctx: ModuleContext) -> list[str]:
        params = self.parse_params(assertion)
        if not params.names:
            return []
        installed = installed_packages(params.names, ctx)
        if self.desired(assertion) == "present":
            return [n for n in params.names if n not in installed]
        return [n for n in params.names if n in installed]

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        pending = self._missing(assertion, ctx)
        upgrades = pending_upgrades(params.upgrade, ctx) if params.upgrade else []
        desired = self.desired(assertion)

        expected = []
        if params.names:
            expected.append(f"{', '.join(params.names)} {'installed' if desired == 'present' else 'removed'}")
        if params.upgrade:
            expected.append("no pending upgrades")
        if not pending and not upgrades:
            return CurrentState(satisfied=True, observed="; ".join(expected), expected="; ".join(expected))

        observed = []
        if pending:
            verb = "not installed" if desired == "present" else "still installed"
            observed.append(f"{', '.join(pending)} {verb}")
        if upgrades:
            observed.append(f"{len(upgrades)} upgrade(s) pending")
        return CurrentState(satisfied=False, observed="; ".join(observed), expected="; ".join(expected))

    def _cache_is_fresh(self, params: PackageParams, ctx: ModuleContext) -> bool:
        if params.cache_valid_time is None:
            return False
        age = cache_age()
        if age is not None and age < params.cache_valid_time:
            ctx.logger.debug(f"APT cache updated {int(age)}s ago, skipping apt-get update")
            return True
        return False

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        done = []
        if params.update_cache and not self._cache_is_fresh(params, ctx):
            require_success(
                run_command(["apt-get", "update"], ctx, env=APT_ENV), "apt-get update"
            )
            done.append("package cache updated")

        pending = self._missing(assertion, ctx)
        if pending:
            if self.desired(assertion) == "present":
                argv = ["apt-get", "install", "-y", "--no-install-recommends", *pending]
                verb = "installed"
            else:
                argv = ["apt-get", "remove", "-y", *pending]
                verb = "removed"
            require_success(run_command(argv, ctx, env=APT_ENV), f"apt-get {argv[1]}")
            ctx.logger.info(f"{verb}: {', '.join(pending)}")
            done.append(f"{verb} {', '.join(pending)}")

        if params.upgrade:
            upgrades = pending_upgrades(params.upgrade, ctx)
            if upgrades:
                command = UPGRADE_COMMANDS[params.upgrade]
                require_success(
                    run_command(["apt-get", command, "-y"], ctx, env=APT_ENV), f"apt-get {command}"
                )
                ctx.logger.info(f"upgraded: {', '.join(upgrades)}")
                done.append(f"upgraded {len(upgrades)} package(s)")

        if not done:
            return Outcome(
                assertion_identifier=assertion.identifier,
                group=assertion.group,
                message="nothing to do",
            )
        return self.changed(assertion, "; ".join(done))
