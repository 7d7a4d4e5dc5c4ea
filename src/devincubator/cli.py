from __future__ import annotations

from pathlib import Path

import typer

app = typer.Typer(name="devincubator", help="Converge and verify a development workstation")
schema_app = typer.Typer(name="schema", help="Generate schema tooling for plan files")
app.add_typer(schema_app, name="schema")


def _split_tags(value: str | None) -> set[str] | None:
    if not value:
        return None
    tags = {t.strip() for t in value.split(",") if t.strip()}
    return tags or None


def _load_plan(plan: str, var: list[str] | None, vars_file: list[str] | None):
    from devincubator.config import load_config, parse_var_overrides
    from devincubator.modules import default_registry
    from devincubator.plan import build_plan

    plan_path = Path(plan)
    if not plan_path.exists():
        typer.echo(f"Error: plan file not found: {plan}", err=True)
        raise typer.Exit(1)

    try:
        config = load_config(
            plan_path,
            extra_vars=parse_var_overrides(var or []),
            vars_files=[Path(f) for f in vars_file or []],
        )
        registry = default_registry()
        return build_plan(config, registry), registry
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _execute(runner, action):
    from devincubator.errors import DevincubatorError

    try:
        session = action()
    except (DevincubatorError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if runner.interrupted:
        typer.echo(f"Partial run saved: {session.run_dir}")
        raise typer.Exit(1)
    typer.echo(f"Run directory: {session.run_dir}")
    typer.echo(f"Report: {session.run_dir / 'report.html'}")
    if session.summary.exit_code:
        raise typer.Exit(session.summary.exit_code)


@app.command()
def run(
    plan: str = typer.Argument(help="Path to plan YAML"),
    tags: str | None = typer.Option(None, "--tags", "-t", help="Only run assertions with these comma-separated tags"),
    skip_tags: str | None = typer.Option(None, "--skip-tags", help="Skip assertions with these comma-separated tags"),
    check: bool = typer.Option(False, "--check", help="Only check; report what would change"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Alias for --check"),
    var: list[str] | None = typer.Option(None, "--var", "-e", help="Override a plan variable (key=value)"),
    vars_file: list[str] | None = typer.Option(None, "--vars-file", help="YAML file of variable overrides"),
    timeout: int | None = typer.Option(None, "--timeout", min=1, help="Default per-assertion timeout in seconds"),
    verify: bool = typer.Option(False, "--verify", help="Verify the live system after converging"),
    lock_file: str | None = typer.Option(None, "--lock-file", help="Advisory lock file path"),
    output_dir: str = typer.Option("runs", help="Output directory for run results"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output to terminal"),
):
    """Converge the system to the plan."""
    from devincubator.engine import DEFAULT_LOCK_FILE
    from devincubator.runner import Runner

    loaded_plan, registry = _load_plan(plan, var, vars_file)
    runner = Runner(
        plan=loaded_plan,
        output_dir=Path(output_dir),
        tags=_split_tags(tags),
        skip_tags=_split_tags(skip_tags),
        check_mode=check or dry_run,
        verbose=verbose,
        timeout=timeout,
        lock_file=Path(lock_file) if lock_file else DEFAULT_LOCK_FILE,
        registry=registry,
    )
    _execute(runner, lambda: runner.execute(converge=True, verify=verify))


@app.command()
def verify(
    plan: str = typer.Argument(help="Path to plan YAML"),
    tags: str | None = typer.Option(None, "--tags", "-t", help="Only verify assertions with these comma-separated tags"),
    skip_tags: str | None = typer.Option(None, "--skip-tags", help="Skip assertions with these comma-separated tags"),
    var: list[str] | None = typer.Option(None, "--var", "-e", help="Override a plan variable (key=value)"),
    vars_file: list[str] | None = typer.Option(None, "--vars-file", help="YAML file of variable overrides"),
    strict: bool = typer.Option(False, "--strict", help="Exit 2 when some checks are indeterminate"),
    output_dir: str = typer.Option("runs", help="Output directory for run results"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output to terminal"),
):
    """Verify the live system against the plan without changing it."""
    from devincubator.runner import Runner

    loaded_plan, registry = _load_plan(plan, var, vars_file)
    runner = Runner(
        plan=loaded_plan,
        output_dir=Path(output_dir),
        tags=_split_tags(tags),
        skip_tags=_split_tags(skip_tags),
        verbose=verbose,
        strict=strict,
        registry=registry,
    )
    _execute(runner, lambda: runner.execute(converge=False, verify=True))


@app.command()
def idempotence(
    plan: str = typer.Argument(help="Path to plan YAML"),
    tags: str | None = typer.Option(None, "--tags", "-t", help="Only run assertions with these comma-separated tags"),
    skip_tags: str | None = typer.Option(None, "--skip-tags", help="Skip assertions with these comma-separated tags"),
    var: list[str] | None = typer.Option(None, "--var", "-e", help="Override a plan variable (key=value)"),
    vars_file: list[str] | None = typer.Option(None, "--vars-file", help="YAML file of variable overrides"),
    timeout: int | None = typer.Option(None, "--timeout", min=1, help="Default per-assertion timeout in seconds"),
    lock_file: str | None = typer.Option(None, "--lock-file", help="Advisory lock file path"),
    output_dir: str = typer.Option("runs", help="Output directory for run results"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug output to terminal"),
):
    """Converge twice and fail unless the second run changes nothing."""
    from devincubator.engine import DEFAULT_LOCK_FILE
    from devincubator.runner import Runner

    loaded_plan, registry = _load_plan(plan, var, vars_file)
    runner = Runner(
        plan=loaded_plan,
        output_dir=Path(output_dir),
        tags=_split_tags(tags),
        skip_tags=_split_tags(skip_tags),
        verbose=verbose,
        timeout=timeout,
        lock_file=Path(lock_file) if lock_file else DEFAULT_LOCK_FILE,
        registry=registry,
    )
    _execute(runner, runner.idempotence)


@app.command()
def validate(
    plan: str = typer.Argument(help="Path to plan YAML"),
    var: list[str] | None = typer.Option(None, "--var", "-e", help="Override a plan variable (key=value)"),
    vars_file: list[str] | None = typer.Option(None, "--vars-file", help="YAML file of variable overrides"),
):
    """Load and validate a plan without touching the system."""
    loaded_plan, _ = _load_plan(plan, var, vars_file)
    total = sum(len(g.assertions) for g in loaded_plan)
    typer.echo(f"Plan '{loaded_plan.name}' is valid: {len(loaded_plan)} group(s), {total} assertion(s)")
    for group in loaded_plan:
        tags = f" [{', '.join(sorted(group.tags))}]" if group.tags else ""
        typer.echo(
            f"  {group.name}{tags}: {len(group.assertions)} assertion(s), "
            f"{len(group.handlers)} handler(s), {len(group.checks)} check(s)"
        )


@app.command()
def report(
    run_dir: str = typer.Argument(help="Path to run output directory"),
    open_report: bool = typer.Option(
        False, "--open", help="Open report.html in browser after generating"
    ),
):
    """Regenerate the HTML report from a previous run."""
    from devincubator.reporting.junit import generate_report

    run_path = Path(run_dir)
    if not run_path.exists() or not (run_path / "junit.xml").exists():
        typer.echo(f"Error: not a valid run directory: {run_dir}", err=True)
        raise typer.Exit(1)

    report_path = generate_report(run_path)
    typer.echo(f"Report generated: {report_path}")

    if open_report:
        import webbrowser

        webbrowser.open(report_path.resolve().as_uri())


EXAMPLE_PLAN = """\
name: workstation

vars:
  docker_users: ["{{ user }}"]

requires: [apt-get, systemctl]

groups:
  - name: base
    tags: [base]
    assertions:
      - id: base-packages
        kind: package
        params:
          names: [build-essential, curl, git, jq, tmux]
          update_cache: true
      - id: time-sync
        kind: service
        state: started
        params:
          name: systemd-timesyncd
          enabled: true

  - name: docker
    tags: [docker]
    assertions:
      - id: docker-repo
        kind: repository
        params:
          repo: "deb [arch={{ arch }} signed-by=/etc/apt/keyrings/docker.asc] https://download.docker.com/linux/ubuntu {{ codename }} stable"
          filename: docker
          key_url: https://download.docker.com/linux/ubuntu/gpg
      - id: docker-packages
        kind: package
        params:
          names: [docker-ce, docker-ce-cli, containerd.io]
        notify: [restart-docker]
      - id: docker-group
        kind: group_membership
        loop: "{{ docker_users }}"
        params:
          user: "{{ item }}"
          group: docker
    handlers:
      - id: restart-docker
        kind: service_restart
        params:
          name: docker
    checks:
      - tool: docker
      - socket: /var/run/docker.sock
"""


@app.command()
def init(
    dir: str = typer.Option(
        "devincubator", "--dir", help="Directory to write the example plan into"
    ),
):
    """Initialize a directory with an example workstation plan."""
    project_dir = Path(dir)
    project_dir.mkdir(parents=True, exist_ok=True)

    example = project_dir / "plan.yaml"
    if example.exists():
        typer.echo(f"plan.yaml already exists in {dir}, skipping.")
        return

    example.write_text(EXAMPLE_PLAN)
    typer.echo(f"Initialized plan in {dir}:")
    typer.echo("  plan.yaml  - example workstation plan")
    typer.echo(f"Next: devincubator validate {example}")


@schema_app.command("generate")
def schema_generate(
    dir: str = typer.Option(
        "devincubator", "--dir", help="Project directory for default schema/doc outputs"
    ),
    out: str | None = typer.Option(
        None,
        help="Output path for JSON Schema (defaults to <dir>/schemas/plan.schema.json)",
    ),
    doc: str | None = typer.Option(
        None, help="Output path for schema docs (defaults to <dir>/docs/schema.md)"
    ),
):
    """Generate JSON Schema and docs for the plan YAML format."""
    from devincubator.schema import write_json_schema, write_schema_doc

    project_dir = Path(dir)
    out_path = (
        Path(out) if out is not None else project_dir / "schemas" / "plan.schema.json"
    )
    doc_path = Path(doc) if doc is not None else project_dir / "docs" / "schema.md"
    write_json_schema(out_path)
    write_schema_doc(doc_path)
    typer.echo(f"Wrote schema: {out_path}")
    typer.echo(f"Wrote docs: {doc_path}")
