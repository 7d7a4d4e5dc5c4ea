"""Result records produced by the convergence engine and the verification harness."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Outcome:
    """Result of converging a single assertion.

    Attributes:
        assertion_identifier: Identifier of the assertion within its group.
        group: Name of the group the assertion belongs to.
        changed: Whether the system was (or, in check mode, would be) changed.
        failed: Whether the module failed to reach the desired state.
        message: Human-readable detail, including expected vs observed state
            on failure.
        indeterminate: The module's check could not determine the current state.
        duration_seconds: Wall-clock time spent on check and apply.
    """

    assertion_identifier: str
    changed: bool = False
    failed: bool = False
    message: str = ""
    group: str = ""
    indeterminate: bool = False
    duration_seconds: float = 0.0

    @property
    def qualified_name(self) -> str:
        if self.group:
            return f"{self.group}/{self.assertion_identifier}"
        return self.assertion_identifier

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RunStatus(str, Enum):
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunReport:
    outcomes: list[Outcome] = field(default_factory=list)
    check_mode: bool = False
    cancelled: bool = False
    skipped: list[str] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.changed)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def overall_status(self) -> RunStatus:
        if self.failed_count:
            return RunStatus.FAILED
        if self.cancelled:
            return RunStatus.CANCELLED
        if self.changed_count:
            return RunStatus.CHANGED
        return RunStatus.OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcomes": [o.to_dict() for o in self.outcomes],
            "check_mode": self.check_mode,
            "cancelled": self.cancelled,
            "skipped": list(self.skipped),
            "overall_status": self.overall_status.value,
        }


@dataclass(frozen=True)
class VerificationResult:
    """Result of probing the live system for one check.

    ``passed`` is ``None`` when the probe could not determine the state.
    """

    check_name: str
    passed: bool | None
    detail: str = ""
    group: str = ""

    @property
    def indeterminate(self) -> bool:
        return self.passed is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
