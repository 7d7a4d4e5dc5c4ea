from __future__ import annotations

import fcntl
import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, Iterator

from devincubator.errors import (
    ApplyFailure,
    CheckFailure,
    ExternalToolMissing,
    RunLockedError,
)
from devincubator.modules import ModuleContext, ModuleRegistry, StateModule
from devincubator.plan import Group, Plan, StateAssertion, select, validate_plan
from devincubator.reporting.summary import format_outcome
from devincubator.results import Outcome, RunReport

DEFAULT_LOCK_FILE = Path.home() / ".cache" / "devincubator" / "converge.lock"


@contextmanager
def converge_lock(path: Path = DEFAULT_LOCK_FILE) -> Iterator[Path]:
    """Hold an exclusive advisory lock for the duration of a convergence run."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise RunLockedError(
                f"Another convergence run holds the lock {path}"
            ) from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class Converger:
    """Walks a plan in order and brings the system to the desired state."""

    def __init__(
        self,
        registry: ModuleRegistry,
        logger: logging.Logger | None = None,
        on_outcome: Callable[[Outcome], None] | None = None,
    ):
        self.registry = registry
        self.logger = logger or logging.getLogger("devincubator.engine")
        self.on_outcome = on_outcome

    def preflight(self, groups: Iterable[Group], requires: Iterable[str] = ()) -> None:
        """Raise ExternalToolMissing listing every required tool not on PATH."""
        tools: list[str] = list(requires)
        for group in groups:
            for assertion in [*group.assertions, *group.handlers]:
                module = self.registry.resolve(assertion.kind)
                tools.extend(module.required_tools(assertion))

        missing = []
        for tool in dict.fromkeys(tools):
            if shutil.which(tool) is None:
                missing.append(tool)
        if missing:
            raise ExternalToolMissing(missing)

    def converge(
        self,
        plan: Plan | Iterable[Group],
        selected_tags: set[str] | None = None,
        *,
        skip_tags: set[str] | None = None,
        check_mode: bool = False,
        default_timeout: int | None = None,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        """Apply every selected assertion of *plan* and return the run report.

        A failed assertion stops the rest of its group; later groups still run.
        """
        validate_plan(plan, self.registry)
        requires = plan.requires if isinstance(plan, Plan) else ()
        groups = select(plan, selected_tags, skip_tags)
        self.preflight(groups, requires)

        report = RunReport(check_mode=check_mode)
        mode = "check mode" if check_mode else "apply mode"
        self.logger.debug(
            f"Converging {sum(len(g.assertions) for g in groups)} assertion(s) "
            f"in {len(groups)} group(s), {mode}"
        )

        for gi, group in enumerate(groups):
            self.logger.debug(f"Group '{group.name}'")
            notified: set[str] = set()
            group_failed = False

            for ai, assertion in enumerate(group.assertions):
                if cancel is not None and cancel.is_set():
                    self._cancel(report, group.assertions[ai:], groups[gi + 1:])
                    return report

                outcome = self._process(assertion, check_mode, default_timeout)
                self._record(report, outcome)

                if outcome.failed:
                    rest = [a.qualified_name for a in group.assertions[ai + 1:]]
                    if rest:
                        self.logger.info(
                            f"Skipping {len(rest)} remaining assertion(s) in group '{group.name}'"
                        )
                    report.skipped.extend(rest)
                    group_failed = True
                    break
                if outcome.changed:
                    notified.update(assertion.notify)

            if group_failed or not notified:
                continue
            pending = [h for h in group.handlers if h.identifier in notified]
            for hi, handler in enumerate(pending):
                if cancel is not None and cancel.is_set():
                    self._cancel(report, pending[hi:], groups[gi + 1:])
                    return report
                self._record(report, self._process(handler, check_mode, default_timeout))

        return report

    def _cancel(
        self,
        report: RunReport,
        pending: Iterable[StateAssertion],
        later_groups: Iterable[Group],
    ) -> None:
        report.cancelled = True
        report.skipped.extend(a.qualified_name for a in pending)
        for group in later_groups:
            report.skipped.extend(a.qualified_name for a in group.assertions)
        self.logger.warning(
            f"Run cancelled; {len(report.skipped)} assertion(s) not attempted"
        )

    def _record(self, report: RunReport, outcome: Outcome) -> None:
        report.outcomes.append(outcome)
        self.logger.info(format_outcome(outcome, check_mode=report.check_mode))
        if self.on_outcome is not None:
            self.on_outcome(outcome)

    def _process(
        self,
        assertion: StateAssertion,
        check_mode: bool,
        default_timeout: int | None,
    ) -> Outcome:
        module = self.registry.resolve(assertion.kind)
        ctx = ModuleContext(
            logger=self.logger,
            timeout=assertion.timeout or default_timeout,
            check_mode=check_mode,
        )
        start = time.monotonic()
        outcome = self._check_then_apply(module, assertion, ctx)
        return replace(outcome, duration_seconds=round(time.monotonic() - start, 3))

    def _check_then_apply(
        self,
        module: StateModule,
        assertion: StateAssertion,
        ctx: ModuleContext,
    ) -> Outcome:
        self.logger.debug(f"Checking {assertion.qualified_name} ({assertion.kind})")

        expected = observed = "unknown"
        indeterminate = False
        try:
            state = module.check(assertion, ctx)
            expected, observed = state.expected, state.observed
            if state.satisfied:
                return Outcome(
                    assertion_identifier=assertion.identifier,
                    group=assertion.group,
                    message=observed or "ok",
                )
        except CheckFailure as e:
            indeterminate = True
            observed = f"indeterminate ({e})"
            self.logger.warning(f"Check of {assertion.qualified_name} was indeterminate: {e}")
        except Exception as e:
            self.logger.error(f"Check of {assertion.qualified_name} raised: {e}")
            return Outcome(
                assertion_identifier=assertion.identifier,
                group=assertion.group,
                failed=True,
                message=f"check error: {e}",
            )

        if ctx.check_mode:
            return Outcome(
                assertion_identifier=assertion.identifier,
                group=assertion.group,
                changed=module.reports_change(assertion) and not indeterminate,
                indeterminate=indeterminate,
                message=f"would change: expected {expected}, observed {observed}",
            )

        try:
            outcome = module.apply(assertion, ctx)
        except (ApplyFailure, CheckFailure) as e:
            self.logger.error(f"Apply of {assertion.qualified_name} failed: {e}")
            return Outcome(
                assertion_identifier=assertion.identifier,
                group=assertion.group,
                failed=True,
                indeterminate=indeterminate,
                message=f"{e} (expected {expected}, observed {observed})",
            )
        except Exception as e:
            self.logger.error(f"Apply of {assertion.qualified_name} raised: {e}")
            return Outcome(
                assertion_identifier=assertion.identifier,
                group=assertion.group,
                failed=True,
                indeterminate=indeterminate,
                message=f"unexpected error: {e} (expected {expected}, observed {observed})",
            )
        return replace(outcome, indeterminate=indeterminate)
