from __future__ import annotations

import logging
from typing import Callable, Iterable

from devincubator.plan import Group, Plan, StateAssertion, select, thaw
from devincubator.reporting.summary import format_result
from devincubator.results import VerificationResult
from devincubator.verification.probes import (
    DEFAULT_STATES,
    PROBES,
    Probe,
    ProbeResult,
    ProbeUnavailable,
    check_name,
    indeterminate,
    run_group_check,
)


class Harness:
    """Probes the live system against a plan without changing anything."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        probes: dict[str, Probe] | None = None,
        on_result: Callable[[VerificationResult], None] | None = None,
    ):
        self.logger = logger or logging.getLogger("devincubator.verification")
        self.probes = dict(PROBES) if probes is None else probes
        self.on_result = on_result

    def verify(
        self,
        plan: Plan | Iterable[Group],
        selected_tags: set[str] | None = None,
        skip_tags: set[str] | None = None,
    ) -> list[VerificationResult]:
        """Return one result per probed assertion and group check, in plan order."""
        results: list[VerificationResult] = []
        for group in select(plan, selected_tags, skip_tags):
            self.logger.debug(f"Verifying group '{group.name}'")
            for assertion in group.assertions:
                if not assertion.verify:
                    continue
                probed = self._probe_assertion(assertion)
                if probed is None:
                    continue
                self._record(
                    results,
                    VerificationResult(
                        check_name=assertion.identifier,
                        passed=probed.passed,
                        detail=probed.detail,
                        group=group.name,
                    ),
                )
            for check in group.checks:
                probed = self._guard(check_name(check), lambda: run_group_check(check))
                self._record(
                    results,
                    VerificationResult(
                        check_name=check_name(check),
                        passed=probed.passed,
                        detail=probed.detail,
                        group=group.name,
                    ),
                )
        return results

    def _probe_assertion(self, assertion: StateAssertion) -> ProbeResult | None:
        probe = self.probes.get(assertion.kind)
        if probe is None:
            return indeterminate(f"no probe for kind '{assertion.kind}'")
        desired = assertion.desired_state or DEFAULT_STATES.get(assertion.kind, "present")
        params = thaw(assertion.parameters)
        return self._guard(assertion.qualified_name, lambda: probe(params, desired))

    def _guard(self, name: str, fn: Callable[[], ProbeResult | None]) -> ProbeResult | None:
        try:
            return fn()
        except ProbeUnavailable as e:
            return indeterminate(str(e))
        except Exception as e:
            self.logger.error(f"Probe for {name} raised: {e}")
            return indeterminate(f"probe error: {e}")

    def _record(self, results: list[VerificationResult], result: VerificationResult) -> None:
        results.append(result)
        self.logger.info(format_result(result))
        if self.on_result is not None:
            self.on_result(result)
