"""Pytest configuration and fixtures."""

import logging
import textwrap
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from pydantic import BaseModel, ConfigDict

from devincubator.config import load_config
from devincubator.errors import ApplyFailure, CheckFailure
from devincubator.modules import ModuleRegistry
from devincubator.modules.base import CurrentState, StateModule
from devincubator.plan import build_plan
from devincubator.results import Outcome

FACTS = {"user": "dev", "home": "/home/dev", "machine": "x86_64", "arch": "amd64", "distro": "ubuntu", "codename": "jammy"}


@pytest.fixture(autouse=True)
def cleanup_loggers():
    """Clean up devincubator loggers after each test to prevent name collisions."""
    yield

    loggers_to_remove = [
        name
        for name in logging.Logger.manager.loggerDict.keys()
        if name.startswith("devincubator")
    ]

    for name in loggers_to_remove:
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()
        del logging.Logger.manager.loggerDict[name]


# ---------------------------------------------------------------------------
# In-memory system and fake modules
# ---------------------------------------------------------------------------


@dataclass
class FakeSystem:
    """Stands in for the live OS: repositories, packages and a call log."""

    repos: set = field(default_factory=set)
    packages: set = field(default_factory=set)
    calls: list = field(default_factory=list)

    def applied(self) -> list[str]:
        return [ident for op, ident in self.calls if op == "apply"]

    def touched(self) -> list[str]:
        return list(dict.fromkeys(ident for _, ident in self.calls))


class RepoParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    fail: bool = False


class PkgParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str
    from_repo: str | None = None
    flaky_check: bool = False
    explode: bool = False


class FakeRepoModule(StateModule):
    kind = "repo"
    params_model = RepoParams

    def __init__(self, system: FakeSystem):
        self.system = system

    def check(self, assertion, ctx):
        self.system.calls.append(("check", assertion.qualified_name))
        params = self.parse_params(assertion)
        present = params.name in self.system.repos
        return CurrentState(
            satisfied=present,
            observed="registered" if present else "not registered",
            expected="registered",
        )

    def apply(self, assertion, ctx):
        self.system.calls.append(("apply", assertion.qualified_name))
        params = self.parse_params(assertion)
        if params.fail:
            raise ApplyFailure("network unavailable")
        self.system.repos.add(params.name)
        return self.changed(assertion, f"added {params.name}")


class FakePackageModule(StateModule):
    kind = "pkg"
    params_model = PkgParams

    def __init__(self, system: FakeSystem):
        self.system = system

    def required_tools(self, assertion):
        return ("sh",)

    def check(self, assertion, ctx):
        self.system.calls.append(("check", assertion.qualified_name))
        params = self.parse_params(assertion)
        if params.flaky_check:
            raise CheckFailure("package database locked")
        present = params.name in self.system.packages
        return CurrentState(
            satisfied=present,
            observed="installed" if present else "not installed",
            expected="installed",
        )

    def apply(self, assertion, ctx):
        self.system.calls.append(("apply", assertion.qualified_name))
        params = self.parse_params(assertion)
        if params.explode:
            raise RuntimeError("boom")
        if params.from_repo and params.from_repo not in self.system.repos:
            raise ApplyFailure(f"repository {params.from_repo} not registered")
        self.system.packages.add(params.name)
        return self.changed(assertion, f"installed {params.name}")


class FakeTouchModule(StateModule):
    """Never satisfied: every apply reports a change (not idempotent)."""

    kind = "touch"
    params_model = RepoParams
    states = ("run",)

    def __init__(self, system: FakeSystem):
        self.system = system

    def check(self, assertion, ctx):
        self.system.calls.append(("check", assertion.qualified_name))
        return CurrentState(satisfied=False, observed="stale", expected="fresh")

    def apply(self, assertion, ctx):
        self.system.calls.append(("apply", assertion.qualified_name))
        return Outcome(assertion_identifier=assertion.identifier, group=assertion.group, changed=True, message="touched")


@pytest.fixture
def facts():
    return dict(FACTS)


@pytest.fixture
def system():
    return FakeSystem()


@pytest.fixture
def registry(system):
    reg = ModuleRegistry()
    reg.register("repo", FakeRepoModule(system))
    reg.register("pkg", FakePackageModule(system))
    reg.register("touch", FakeTouchModule(system))
    return reg


@pytest.fixture()
def tmp_yaml(tmp_path):
    """Helper that writes YAML content to a temp file and returns its path."""

    def _write(content: str, name: str = "plan.yaml") -> Path:
        p = tmp_path / name
        p.write_text(textwrap.dedent(content))
        return p

    return _write


@pytest.fixture()
def make_plan(tmp_yaml, registry):
    """Load, render and validate a plan against the fake registry."""

    def _make(content: str, reg=None, **load_kwargs):
        config = load_config(tmp_yaml(content), **load_kwargs)
        return build_plan(config, reg or registry, facts=dict(FACTS))

    return _make


@pytest.fixture
def test_logger():
    logger = logging.getLogger("devincubator_test")
    logger.setLevel(logging.DEBUG)
    return logger
