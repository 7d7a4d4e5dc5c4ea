"""Aggregate run outcomes and verification results into a single summary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from devincubator.results import Outcome, RunReport, VerificationResult

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INDETERMINATE = 2


@dataclass(frozen=True)
class Summary:
    """Combined verdict of a run and/or a verification pass.

    Attributes:
        overall_ok: True iff no outcome failed and no verification result
            failed. Indeterminate results do not fail the summary.
        failures: One description per failure, in input order (outcomes
            first, then verification results).
        indeterminate: Descriptions of results that could not be decided.
        exit_code: Process exit code for this summary.
    """

    overall_ok: bool
    failures: list[str] = field(default_factory=list)
    indeterminate: list[str] = field(default_factory=list)
    exit_code: int = EXIT_OK


def describe_outcome(outcome: Outcome) -> str:
    return f"{outcome.qualified_name}: {outcome.message}"


def describe_result(result: VerificationResult) -> str:
    name = f"{result.group}/{result.check_name}" if result.group else result.check_name
    return f"{name}: {result.detail}"


def aggregate(
    report: RunReport | None,
    results: Iterable[VerificationResult] | None,
    strict: bool = False,
) -> Summary:
    """Merge a run report and verification results into a Summary.

    With *strict*, indeterminate results alone produce EXIT_INDETERMINATE.
    """
    failures: list[str] = []
    indeterminate: list[str] = []

    if report is not None:
        for outcome in report.outcomes:
            if outcome.failed:
                failures.append(describe_outcome(outcome))
    for result in results or []:
        if result.passed is False:
            failures.append(describe_result(result))
        elif result.passed is None:
            indeterminate.append(describe_result(result))

    overall_ok = not failures
    if not overall_ok:
        exit_code = EXIT_FAILED
    elif strict and indeterminate:
        exit_code = EXIT_INDETERMINATE
    else:
        exit_code = EXIT_OK
    return Summary(
        overall_ok=overall_ok,
        failures=failures,
        indeterminate=indeterminate,
        exit_code=exit_code,
    )


def format_outcome(outcome: Outcome, check_mode: bool = False) -> str:
    """One greppable line per outcome: ``[PASS]``, ``[FAIL]`` or ``[INFO]``."""
    if outcome.failed:
        return f"[FAIL] {describe_outcome(outcome)}"
    if outcome.indeterminate and not outcome.changed:
        return f"[INFO] {outcome.qualified_name}: indeterminate ({outcome.message})"
    if outcome.changed:
        label = "would change" if check_mode else "changed"
        return f"[PASS] {outcome.qualified_name}: {label} ({outcome.message})"
    return f"[PASS] {outcome.qualified_name}: ok"


def format_result(result: VerificationResult) -> str:
    if result.passed is None:
        return f"[INFO] {describe_result(result)}"
    if result.passed:
        return f"[PASS] {describe_result(result)}"
    return f"[FAIL] {describe_result(result)}"


def format_summary(summary: Summary, report: RunReport | None = None) -> list[str]:
    """Closing banner lines for the terminal."""
    rule = "-" * 67
    lines = [rule]
    if report is not None:
        lines.append(
            f"{len(report.outcomes)} assertion(s): {report.changed_count} changed, "
            f"{report.failed_count} failed, {len(report.skipped)} skipped"
            + (" (check mode)" if report.check_mode else "")
        )
    if summary.overall_ok:
        lines.append("ALL CHECKS PASSED")
        if summary.indeterminate:
            lines.append(f"{len(summary.indeterminate)} check(s) indeterminate (see [INFO] lines).")
    else:
        lines.append(f"{len(summary.failures)} FAILURE(S):")
        lines.extend(f"  {f}" for f in summary.failures)
        lines.append("Re-run a specific area with --tags, e.g.: devincubator run plan.yaml --tags docker")
    lines.append(rule)
    return lines
