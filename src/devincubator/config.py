from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from expandvars import expandvars
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from devincubator.errors import ConfigError


class AssertionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    id: str
    kind: str
    params: dict[str, Any] = {}
    state: str | None = None
    tags: list[str] = []
    timeout: int | None = None
    notify: list[str] = []
    verify: bool = True
    loop: list[Any] | str | None = None

    @field_validator("id")
    @classmethod
    def id_must_be_plain(cls, v: str) -> str:
        if not v or "/" in v:
            raise ValueError(f"Assertion id '{v}' must be non-empty and must not contain '/'")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_must_be_positive(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        return v


class ToolCheck(BaseModel):
    model_config = ConfigDict(extra="forbid")
    tool: str
    name: str | None = None
    version_args: list[str] = ["--version"]
    hint: str | None = None
    timeout: int = 30


class SocketCheck(BaseModel):
    model_config = ConfigDict(extra="forbid")
    socket: str
    name: str | None = None
    hint: str | None = None


class CommandCheck(BaseModel):
    model_config = ConfigDict(extra="forbid")
    command: str
    name: str | None = None
    expected_exit_code: int = 0
    hint: str | None = None
    timeout: int = 120


Check = ToolCheck | SocketCheck | CommandCheck


class GroupConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    tags: list[str] = []
    assertions: list[AssertionConfig] = []
    handlers: list[AssertionConfig] = []
    checks: list[Check] = []

    @field_validator("name")
    @classmethod
    def name_must_be_plain(cls, v: str) -> str:
        if not v or "/" in v or "," in v:
            raise ValueError(f"Group name '{v}' must be non-empty and contain no '/' or ','")
        return v

    @model_validator(mode="after")
    def group_must_not_be_empty(self) -> GroupConfig:
        if not self.assertions and not self.checks:
            raise ValueError(f"group '{self.name}' has no assertions and no checks")
        return self


class PlanConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = "plan"
    vars: dict[str, Any] = {}
    requires: list[str] = []
    groups: list[GroupConfig]

    @model_validator(mode="after")
    def groups_must_be_unique(self) -> PlanConfig:
        if not self.groups:
            raise ValueError("groups must not be empty")
        seen: set[str] = set()
        for group in self.groups:
            if group.name in seen:
                raise ValueError(f"Duplicate group name '{group.name}'")
            seen.add(group.name)
        return self


# Shell text keeps its $VAR references for the shell to expand at run time
SHELL_TEXT_FIELDS = re.compile(
    r"groups\[\d+\]\.((assertions|handlers)\[\d+\]\.params\.cmd|checks\[\d+\]\.command)"
)


def _expand_env(value: Any, missing: list[str], where: str = "") -> Any:
    """Expand ${VAR} and ${VAR:-default} in every string leaf of *value*.

    Shell commands are left untouched, see SHELL_TEXT_FIELDS.
    """
    if isinstance(value, str):
        if SHELL_TEXT_FIELDS.fullmatch(where):
            return value
        try:
            return expandvars(value, nounset=True)
        except Exception:
            # Variable is missing and has no default
            missing.append(f"  {where or '<root>'}: {value}")
            return value
    if isinstance(value, dict):
        return {
            k: _expand_env(v, missing, f"{where}.{k}" if where else str(k))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_expand_env(v, missing, f"{where}[{i}]") for i, v in enumerate(value)]
    return value


def parse_var_overrides(pairs: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are read as YAML scalars or lists."""
    result: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigError(f"Invalid variable override '{pair}', expected key=value")
        try:
            result[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid value for variable '{key}': {exc}") from exc
    return result


def _read_yaml(path: Path) -> Any:
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc


def load_config(
    path: Path,
    extra_vars: dict[str, Any] | None = None,
    vars_files: list[Path] | None = None,
) -> PlanConfig:
    """Load and validate a plan from a YAML file.

    Variable precedence, lowest first: the plan's ``vars``, each vars file in
    order, then *extra_vars*.
    """
    config_dir = path.parent.resolve()

    raw = _read_yaml(path)
    if not isinstance(raw, dict):
        raise ConfigError(f"Plan {path} must be a YAML mapping")

    missing: list[str] = []
    raw = _expand_env(raw, missing)
    if missing:
        details = "\n".join(missing)
        raise ConfigError(f"Plan {path} references unset environment variables:\n{details}")

    config = PlanConfig(**raw)

    for vars_file in vars_files or []:
        file_vars = _read_yaml(vars_file) or {}
        if not isinstance(file_vars, dict):
            raise ConfigError(f"Vars file {vars_file} must be a YAML mapping")
        config.vars.update(file_vars)
    if extra_vars:
        config.vars.update(extra_vars)

    # Resolve relative file sources relative to the plan file location
    for group in config.groups:
        for assertion in [*group.assertions, *group.handlers]:
            src = assertion.params.get("src")
            if assertion.kind == "file" and isinstance(src, str) and "{{" not in src:
                src_path = Path(src)
                if not src_path.is_absolute():
                    assertion.params["src"] = str((config_dir / src_path).resolve())

    return config
