"""APT source registration under sources.list.d, with an optional signing key."""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, field_validator

from devincubator.errors import ApplyFailure, CheckFailure
from devincubator.modules.base import (
    CurrentState,
    ModuleContext,
    StateModule,
    require_success,
    run_command,
)
from devincubator.modules.file import download
from devincubator.modules.package import APT_ENV
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion

SOURCES_DIR = Path("/etc/apt/sources.list.d")
KEYRING_DIR = Path("/etc/apt/keyrings")


class RepositoryParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    repo: str
    filename: str
    key_url: str | None = None
    keyring: str | None = None
    update_cache: bool = True

    @field_validator("repo")
    @classmethod
    def repo_must_be_source_line(cls, v: str) -> str:
        v = " ".join(v.split())
        if not re.match(r"^deb(-src)?\s", v):
            raise ValueError(f"repo must be an APT source line starting with 'deb', got '{v}'")
        return v

    @field_validator("filename")
    @classmethod
    def filename_must_be_plain(cls, v: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_.-]+", v):
            raise ValueError(f"filename '{v}' may only contain letters, digits, '_', '.', '-'")
        return v


def _normalize(line: str) -> str:
    return " ".join(line.split())


class RepositoryModule(StateModule):
    kind = "repository"
    params_model = RepositoryParams

    def required_tools(self, assertion: StateAssertion) -> tuple[str, ...]:
        return ("apt-get",)

    def _paths(self, params: RepositoryParams) -> tuple[Path, Path | None]:
        source = SOURCES_DIR / f"{params.filename}.list"
        keyring = None
        if params.key_url:
            keyring = Path(params.keyring) if params.keyring else KEYRING_DIR / f"{params.filename}.asc"
        return source, keyring

    def _registered(self, source: Path, line: str) -> bool:
        if not source.exists():
            return False
        try:
            lines = source.read_text().splitlines()
        except OSError as exc:
            raise CheckFailure(f"cannot read {source}: {exc}") from exc
        return any(_normalize(existing) == line for existing in lines)

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        source, keyring = self._paths(params)
        registered = self._registered(source, params.repo)
        if self.desired(assertion) == "absent":
            return CurrentState(
                satisfied=not registered,
                observed="registered" if registered else "not registered",
                expected=f"'{params.repo}' absent from {source}",
            )

        missing = []
        if not registered:
            missing.append(f"source line missing from {source}")
        if keyring is not None and not keyring.exists():
            missing.append(f"signing key missing at {keyring}")
        return CurrentState(
            satisfied=not missing,
            observed="; ".join(missing) or "registered",
            expected=f"'{params.repo}' in {source}",
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        source, keyring = self._paths(params)
        try:
            if self.desired(assertion) == "absent":
                remaining = [
                    l for l in source.read_text().splitlines() if _normalize(l) != params.repo
                ]
                if any(l.strip() for l in remaining):
                    source.write_text("\n".join(remaining) + "\n")
                else:
                    source.unlink()
                message = f"removed repository from {source}"
            else:
                if keyring is not None and not keyring.exists():
                    ctx.logger.info(f"Fetching signing key {params.key_url}")
                    data = download(params.key_url, ctx.timeout)
                    keyring.parent.mkdir(parents=True, exist_ok=True)
                    keyring.write_bytes(data)
                    keyring.chmod(0o644)
                if not self._registered(source, params.repo):
                    source.parent.mkdir(parents=True, exist_ok=True)
                    existing = source.read_text() if source.exists() else ""
                    if existing and not existing.endswith("\n"):
                        existing += "\n"
                    source.write_text(existing + params.repo + "\n")
                message = f"registered repository in {source}"
        except OSError as exc:
            raise ApplyFailure(f"cannot update {source}: {exc}") from exc
        except CheckFailure as exc:
            raise ApplyFailure(str(exc)) from exc

        if params.update_cache:
            require_success(
                run_command(["apt-get", "update"], ctx, env=APT_ENV), "apt-get update"
            )
        return self.changed(assertion, message)
