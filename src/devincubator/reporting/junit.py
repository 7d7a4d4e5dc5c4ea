from __future__ import annotations

from pathlib import Path
from typing import Iterable

from junitparser import Failure, JUnitXml, Skipped, TestCase, TestSuite

from devincubator.results import RunReport, VerificationResult


def write_junit(
    run_dir: Path,
    report: RunReport | None = None,
    results: Iterable[VerificationResult] | None = None,
) -> Path:
    """Write junit.xml for a run and/or verification pass, return path.

    One suite per group and phase (``converge / <group>``, ``verify / <group>``),
    one test case per outcome or verification result.
    """
    xml = JUnitXml()
    suites: dict[str, TestSuite] = {}
    times: dict[str, float] = {}

    def _suite(name: str) -> TestSuite:
        if name not in suites:
            suites[name] = TestSuite(name)
            times[name] = 0.0
        return suites[name]

    if report is not None:
        for outcome in report.outcomes:
            name = f"converge / {outcome.group or 'plan'}"
            suite = _suite(name)
            case = TestCase(outcome.assertion_identifier)
            case.classname = outcome.group
            case.time = outcome.duration_seconds
            if outcome.failed:
                case.result = [Failure(outcome.message)]
            elif outcome.indeterminate and not outcome.changed:
                case.result = [Skipped(outcome.message)]
            case.system_out = outcome.message
            suite.add_testcase(case)
            times[name] += outcome.duration_seconds
        for name in list(suites):
            group_outcomes = [
                o for o in report.outcomes if f"converge / {o.group or 'plan'}" == name
            ]
            suites[name].add_property("changed", str(sum(1 for o in group_outcomes if o.changed)))
            suites[name].add_property("failed", str(sum(1 for o in group_outcomes if o.failed)))
            suites[name].add_property("check_mode", str(report.check_mode).lower())

    for result in results or []:
        name = f"verify / {result.group or 'plan'}"
        suite = _suite(name)
        case = TestCase(result.check_name)
        case.classname = result.group
        if result.passed is False:
            case.result = [Failure(result.detail)]
        elif result.passed is None:
            case.result = [Skipped(result.detail)]
        case.system_out = result.detail
        suite.add_testcase(case)

    for name, suite in suites.items():
        # Set time after add_testcase (add_testcase resets it via update_statistics)
        suite.time = round(times[name], 3)
        # Use append (not +=) to preserve properties and time
        xml.append(suite)

    junit_path = run_dir / "junit.xml"
    xml.write(str(junit_path), pretty=True)
    return junit_path


def generate_report(run_dir: Path) -> Path:
    """Render junit.xml → report.html using Jinja2 template, return path."""
    import yaml
    from jinja2 import Environment, FileSystemLoader

    junit_path = run_dir / "junit.xml"
    report_path = run_dir / "report.html"

    # Load run metadata
    meta: dict = {}
    meta_path = run_dir / "meta.yaml"
    if meta_path.exists():
        meta = yaml.safe_load(meta_path.read_text()) or {}

    xml = JUnitXml.fromfile(str(junit_path))

    suites = []
    for suite in xml:
        cases = []
        for case in suite:
            status = "passed"
            message = case.system_out or ""
            if case.result:
                status = "failed" if isinstance(case.result[0], Failure) else "skipped"
                message = case.result[0].message or message
            cases.append({"name": case.name, "status": status, "message": message})
        suites.append(
            {
                "name": suite.name,
                "tests": suite.tests,
                "failures": suite.failures,
                "skipped": suite.skipped,
                "time": suite.time,
                "properties": {p.name: p.value for p in suite.properties()},
                "cases": cases,
            }
        )

    debug_log = ""
    debug_path = run_dir / "debug.log"
    if debug_path.exists():
        debug_log = debug_path.read_text(encoding="utf-8", errors="replace")

    tmpl_dir = Path(__file__).parent / "templates"
    env = Environment(loader=FileSystemLoader(str(tmpl_dir)), autoescape=True)
    template = env.get_template("report.html.j2")

    html = template.render(
        suites=suites,
        total_tests=sum(s["tests"] for s in suites),
        total_failures=sum(s["failures"] for s in suites),
        total_skipped=sum(s["skipped"] for s in suites),
        run_dir=str(run_dir),
        meta=meta,
        debug_log=debug_log,
    )
    report_path.write_text(html, encoding="utf-8")
    return report_path
