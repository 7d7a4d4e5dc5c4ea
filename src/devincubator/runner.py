from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import yaml

from devincubator.engine import DEFAULT_LOCK_FILE, Converger, converge_lock
from devincubator.modules import ModuleRegistry, default_registry
from devincubator.plan import Plan
from devincubator.reporting.summary import (
    EXIT_FAILED,
    Summary,
    aggregate,
    format_outcome,
    format_result,
    format_summary,
)
from devincubator.results import Outcome, RunReport, VerificationResult
from devincubator.verbose import setup_logger
from devincubator.verification import Harness


@dataclass
class SessionResult:
    run_dir: Path
    summary: Summary
    report: RunReport | None = None
    results: list[VerificationResult] | None = None


class Runner:
    """Orchestrates convergence and verification runs and writes the run directory."""

    def __init__(
        self,
        plan: Plan,
        output_dir: Path,
        tags: set[str] | None = None,
        skip_tags: set[str] | None = None,
        check_mode: bool = False,
        verbose: bool = False,
        timeout: int | None = None,
        lock_file: Path = DEFAULT_LOCK_FILE,
        strict: bool = False,
        registry: ModuleRegistry | None = None,
    ):
        self.plan = plan
        self.output_dir = output_dir
        self.tags = tags or None
        self.skip_tags = skip_tags or None
        self.check_mode = check_mode
        self.verbose = verbose
        self.timeout = timeout
        self.lock_file = lock_file
        self.strict = strict
        self.registry = registry or default_registry()
        self.interrupted = False
        self._cancel = threading.Event()

    def execute(self, converge: bool = True, verify: bool = False) -> SessionResult:
        """Converge and/or verify the plan. Returns the session result."""
        mode = "+".join(m for m, on in (("converge", converge), ("verify", verify)) if on)
        run_dir, logger = self._start(mode)

        report = None
        results = None
        if converge:
            report = self._converge(logger)
        if verify and not self.interrupted:
            results = self._verify(logger)

        summary = aggregate(report, results, strict=self.strict)
        self._finish(run_dir, mode, summary, report, results)
        return SessionResult(run_dir=run_dir, summary=summary, report=report, results=results)

    def idempotence(self) -> SessionResult:
        """Converge twice; the second run must change nothing and fail nothing."""
        run_dir, logger = self._start("idempotence")

        print("First run...")
        first = self._converge(logger)
        second = None
        if not self.interrupted:
            print("Second run (expect no changes)...")
            second = self._converge(logger)

        final = second or first
        summary = aggregate(final, None, strict=self.strict)
        if second is not None:
            not_idempotent = [
                f"{o.qualified_name}: changed again on second run ({o.message})"
                for o in second.outcomes
                if o.changed and not o.failed
            ]
            if not_idempotent:
                summary = replace(
                    summary,
                    overall_ok=False,
                    failures=[*summary.failures, *not_idempotent],
                    exit_code=EXIT_FAILED,
                )
        self._finish(run_dir, "idempotence", summary, final, None)
        return SessionResult(run_dir=run_dir, summary=summary, report=final)

    def _start(self, mode: str):
        run_id = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
        run_dir = self.output_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        logger = setup_logger(
            run_dir / "debug.log", verbose=self.verbose, logger_name="devincubator_main"
        )
        logger.debug(f"Starting {mode} of plan '{self.plan.name}'")
        return run_dir, logger

    def _converge(self, logger) -> RunReport:
        def _print(outcome: Outcome) -> None:
            print(format_outcome(outcome, check_mode=self.check_mode))

        converger = Converger(self.registry, logger=logger, on_outcome=_print)
        with converge_lock(self.lock_file), self._interruptible(logger):
            report = converger.converge(
                self.plan,
                self.tags,
                skip_tags=self.skip_tags,
                check_mode=self.check_mode,
                default_timeout=self.timeout,
                cancel=self._cancel,
            )
        if report.cancelled:
            self.interrupted = True
        return report

    def _verify(self, logger) -> list[VerificationResult]:
        print("[INFO] Verifying live system state")
        harness = Harness(logger=logger, on_result=lambda r: print(format_result(r)))
        return harness.verify(self.plan, self.tags, self.skip_tags)

    @contextmanager
    def _interruptible(self, logger) -> Iterator[None]:
        """Turn Ctrl+C into a cooperative cancel for the duration of a run."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _handler(signum, frame):
            if self._cancel.is_set():
                raise KeyboardInterrupt
            logger.warning(
                "Interrupted; finishing the current assertion. Press Ctrl+C again to abort."
            )
            print("[INFO] Cancelling after the current assertion...")
            self._cancel.set()

        previous = signal.signal(signal.SIGINT, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def _finish(
        self,
        run_dir: Path,
        mode: str,
        summary: Summary,
        report: RunReport | None,
        results: list[VerificationResult] | None,
    ) -> None:
        from devincubator.reporting.junit import generate_report, write_junit

        for line in format_summary(summary, report):
            print(line)

        write_junit(run_dir, report, results)

        try:
            import importlib.metadata

            version = importlib.metadata.version("devincubator")
        except Exception:
            version = "unknown"

        meta: dict[str, Any] = {
            "run_id": run_dir.name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "plan": self.plan.name,
            "mode": mode,
            "check_mode": self.check_mode,
            "tags": sorted(self.tags or []),
            "skip_tags": sorted(self.skip_tags or []),
            "overall_ok": summary.overall_ok,
            "failures": list(summary.failures),
            "indeterminate": list(summary.indeterminate),
            "devincubator_version": version,
        }
        if report is not None:
            meta["status"] = report.overall_status.value
            meta["skipped"] = list(report.skipped)
        if self.interrupted:
            meta["interrupted"] = True

        (run_dir / "meta.yaml").write_text(yaml.dump(meta, default_flow_style=False))
        generate_report(run_dir)
