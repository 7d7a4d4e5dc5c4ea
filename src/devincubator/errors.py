"""Error hierarchy shared by the plan loader, engine and harness."""

from __future__ import annotations


class DevincubatorError(Exception):
    """Base class for all devincubator errors."""


class ConfigError(DevincubatorError, ValueError):
    """The plan file is malformed or fails validation."""


class UnknownKindError(ConfigError):
    """An assertion references a kind with no registered module."""

    def __init__(self, kind: str, available: list[str] | None = None):
        self.kind = kind
        self.available = sorted(available or [])
        msg = f"Unknown assertion kind: {kind!r}"
        if self.available:
            msg += f". Available: {', '.join(self.available)}"
        super().__init__(msg)


class ApplyFailure(DevincubatorError):
    """A module could not bring the system to the desired state."""


class CheckFailure(DevincubatorError):
    """A module or probe could not determine the current state."""


class ExternalToolMissing(DevincubatorError):
    """A tool the plan depends on is not installed."""

    def __init__(self, tools: list[str]):
        self.tools = list(tools)
        details = "\n".join(f"  {t}" for t in self.tools)
        super().__init__(f"Required tools not found on PATH:\n{details}")


class RunLockedError(DevincubatorError):
    """Another convergence run holds the advisory lock."""
