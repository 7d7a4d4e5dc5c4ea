import json
import textwrap
from pathlib import Path

from typer.testing import CliRunner

from devincubator.cli import app

runner = CliRunner()


def _write_plan(tmp_path: Path, body: str) -> Path:
    plan = tmp_path / "plan.yaml"
    plan.write_text(textwrap.dedent(body))
    return plan


def _file_plan(tmp_path: Path) -> Path:
    return _write_plan(
        tmp_path,
        f"""\
        name: cli-test
        groups:
          - name: files
            tags: [files]
            assertions:
              - id: marker
                kind: file
                params:
                  path: {tmp_path / "target" / "marker"}
                  content: "hello\\n"
          - name: other
            tags: [other]
            assertions:
              - id: other-marker
                kind: file
                params:
                  path: {tmp_path / "target" / "other"}
        """,
    )


def _run_args(tmp_path: Path, *args: str) -> list[str]:
    return [
        *args,
        "--output-dir",
        str(tmp_path / "runs"),
    ]


def _lock_args(tmp_path: Path) -> list[str]:
    return ["--lock-file", str(tmp_path / "converge.lock")]


def test_init_creates_example_plan(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (tmp_path / "devincubator" / "plan.yaml").exists()


def test_init_with_custom_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init", "--dir", "my-custom-dir"])
    assert result.exit_code == 0
    assert (tmp_path / "my-custom-dir" / "plan.yaml").exists()


def test_init_with_existing_plan(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "devincubator").mkdir()
    (tmp_path / "devincubator" / "plan.yaml").write_text("name: mine\n")
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert "already exists" in result.output
    assert (tmp_path / "devincubator" / "plan.yaml").read_text() == "name: mine\n"


def test_init_plan_validates(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["validate", "devincubator/plan.yaml"])
    assert result.exit_code == 0
    assert "Plan 'workstation' is valid: 2 group(s)" in result.output
    assert "docker [docker]: 3 assertion(s), 1 handler(s), 2 check(s)" in result.output


def test_validate_missing_plan():
    result = runner.invoke(app, ["validate", "nonexistent.yaml"])
    assert result.exit_code == 1
    assert "plan file not found" in result.output


def test_validate_invalid_yaml(tmp_path):
    plan = _write_plan(tmp_path, "groups: [\n")
    result = runner.invoke(app, ["validate", str(plan)])
    assert result.exit_code == 1
    assert "Invalid YAML" in result.output


def test_validate_unknown_kind(tmp_path):
    plan = _write_plan(
        tmp_path,
        """\
        groups:
          - name: g
            assertions:
              - id: a
                kind: teleport
        """,
    )
    result = runner.invoke(app, ["validate", str(plan)])
    assert result.exit_code == 1
    assert "Unknown assertion kind: 'teleport'" in result.output


def test_validate_with_var_override(tmp_path):
    plan = _write_plan(
        tmp_path,
        """\
        vars:
          pkg: git
        groups:
          - name: g
            assertions:
              - id: a
                kind: package
                params: {name: "{{ pkg }}"}
        """,
    )
    result = runner.invoke(app, ["validate", str(plan), "--var", "pkg=curl"])
    assert result.exit_code == 0

    result = runner.invoke(app, ["validate", str(plan), "--var", "broken"])
    assert result.exit_code == 1
    assert "key=value" in result.output


def test_run_missing_config():
    result = runner.invoke(app, ["run", "nonexistent.yaml"])
    assert result.exit_code != 0


def test_run_check_mode_changes_nothing(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(app, _run_args(tmp_path, "run", str(plan), "--check", *_lock_args(tmp_path)))
    assert result.exit_code == 0
    assert "would change" in result.output
    assert not (tmp_path / "target").exists()


def test_run_converges_and_reports(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(app, _run_args(tmp_path, "run", str(plan), "--verify", *_lock_args(tmp_path)))
    assert result.exit_code == 0
    assert (tmp_path / "target" / "marker").read_text() == "hello\n"
    assert "ALL CHECKS PASSED" in result.output
    assert "Run directory:" in result.output
    assert "report.html" in result.output


def test_run_with_tags(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(
        app, _run_args(tmp_path, "run", str(plan), "--tags", "other", *_lock_args(tmp_path))
    )
    assert result.exit_code == 0
    assert (tmp_path / "target" / "other").exists()
    assert not (tmp_path / "target" / "marker").exists()


def test_run_with_skip_tags(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(
        app, _run_args(tmp_path, "run", str(plan), "--skip-tags", "other,nothing", *_lock_args(tmp_path))
    )
    assert result.exit_code == 0
    assert (tmp_path / "target" / "marker").exists()
    assert not (tmp_path / "target" / "other").exists()


def test_run_failure_exits_one(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    plan = _write_plan(
        tmp_path,
        f"""\
        groups:
          - name: g
            assertions:
              - id: nested
                kind: file
                params:
                  path: {blocker / "child"}
                  content: x
        """,
    )
    result = runner.invoke(app, _run_args(tmp_path, "run", str(plan), *_lock_args(tmp_path)))
    assert result.exit_code == 1
    assert "[FAIL] g/nested" in result.output
    assert "1 FAILURE(S):" in result.output


def test_run_missing_tool_exits_one(tmp_path):
    plan = _write_plan(
        tmp_path,
        f"""\
        requires: [definitely-not-a-real-tool-xyz]
        groups:
          - name: g
            assertions:
              - id: a
                kind: file
                params: {{path: {tmp_path / "x"}}}
        """,
    )
    result = runner.invoke(app, _run_args(tmp_path, "run", str(plan), *_lock_args(tmp_path)))
    assert result.exit_code == 1
    assert "definitely-not-a-real-tool-xyz" in result.output
    assert not (tmp_path / "x").exists()


def test_verify_reports_drift(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(app, _run_args(tmp_path, "verify", str(plan)))
    assert result.exit_code == 1
    assert "[FAIL] files/marker" in result.output


def test_verify_strict_indeterminate_exits_two(tmp_path):
    plan = _write_plan(
        tmp_path,
        """\
        groups:
          - name: g
            assertions:
              - id: ext
                kind: extension
                params: {id: a.b, cli: definitely-not-a-real-editor-xyz}
        """,
    )
    result = runner.invoke(app, _run_args(tmp_path, "verify", str(plan)))
    assert result.exit_code == 0
    assert "[INFO] g/ext" in result.output

    result = runner.invoke(app, _run_args(tmp_path, "verify", str(plan), "--strict"))
    assert result.exit_code == 2


def test_idempotence_command(tmp_path):
    plan = _file_plan(tmp_path)
    result = runner.invoke(app, _run_args(tmp_path, "idempotence", str(plan), *_lock_args(tmp_path)))
    assert result.exit_code == 0
    assert "Second run (expect no changes)..." in result.output


def test_report_missing_dir():
    result = runner.invoke(app, ["report", "/tmp/nonexistent-run-dir"])
    assert result.exit_code != 0


def test_report_command_regeneration(tmp_path):
    plan = _file_plan(tmp_path)
    runner.invoke(app, _run_args(tmp_path, "run", str(plan), *_lock_args(tmp_path)))
    run_dir = next((tmp_path / "runs").iterdir())
    (run_dir / "report.html").unlink()

    result = runner.invoke(app, ["report", str(run_dir)])
    assert result.exit_code == 0
    assert (run_dir / "report.html").exists()


def test_report_command_with_open_flag(tmp_path, mocker):
    plan = _file_plan(tmp_path)
    runner.invoke(app, _run_args(tmp_path, "run", str(plan), *_lock_args(tmp_path)))
    run_dir = next((tmp_path / "runs").iterdir())
    mock_open = mocker.patch("webbrowser.open")

    result = runner.invoke(app, ["report", str(run_dir), "--open"])
    assert result.exit_code == 0
    mock_open.assert_called_once()


def test_schema_generate_command_writes_files(tmp_path):
    out = tmp_path / "schema.json"
    doc = tmp_path / "schema.md"
    result = runner.invoke(
        app, ["schema", "generate", "--out", str(out), "--doc", str(doc)]
    )
    assert result.exit_code == 0
    schema = json.loads(out.read_text())
    assert "groups" in schema["properties"]
    assert "group_membership" in doc.read_text()


def test_schema_generate_defaults_to_init_directory(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["schema", "generate"])
    assert result.exit_code == 0
    assert (tmp_path / "devincubator" / "schemas" / "plan.schema.json").exists()
    assert (tmp_path / "devincubator" / "docs" / "schema.md").exists()
