"""Read-only probes of the live system, one per assertion kind.

These deliberately do not reuse the state modules: each probe asks the
system through a different query than the module that enforces the state,
so a bug in one is not masked by the same bug in the other.
"""

from __future__ import annotations

import os
import pwd
import shutil
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from devincubator.config import CommandCheck, SocketCheck, ToolCheck

APT_SOURCES_LIST = Path("/etc/apt/sources.list")
APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")
APT_KEYRING_DIR = Path("/etc/apt/keyrings")

DEFAULT_TIMEOUT = 60


@dataclass(frozen=True)
class ProbeResult:
    """``passed`` is None when the probe could not decide."""

    passed: bool | None
    detail: str


def indeterminate(reason: str) -> ProbeResult:
    return ProbeResult(passed=None, detail=f"indeterminate: {reason}")


class ProbeUnavailable(Exception):
    """The query needed by a probe could not be run."""


def _run(argv: list[str] | str, timeout: int = DEFAULT_TIMEOUT, shell: bool = False) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            argv,
            shell=shell,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        name = argv if isinstance(argv, str) else argv[0]
        raise ProbeUnavailable(f"{name} not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise ProbeUnavailable(f"timed out after {timeout}s") from exc


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _dpkg_status(stdout: str) -> str:
    """Package state from a ``Status: <want> <flag> <state>`` line."""
    for line in stdout.splitlines():
        if line.startswith("Status:"):
            return line.split()[-1]
    return ""


def probe_package(params: dict[str, Any], desired: str) -> ProbeResult | None:
    names = list(dict.fromkeys(([params["name"]] if params.get("name") else []) + list(params.get("names", []))))
    if not names:
        # upgrade-only: what is pending changes with every mirror sync
        return None
    installed, missing = [], []
    for name in names:
        proc = _run(["dpkg", "-s", name])
        if proc.returncode == 0 and _dpkg_status(proc.stdout) == "installed":
            installed.append(name)
        else:
            missing.append(name)
    if desired == "absent":
        if installed:
            return ProbeResult(False, f"still installed: {', '.join(installed)}")
        return ProbeResult(True, f"{len(names)} package(s) absent")
    if missing:
        return ProbeResult(False, f"missing: {', '.join(missing)}")
    return ProbeResult(True, f"{len(names)} package(s) installed")


def probe_service(params: dict[str, Any], desired: str) -> ProbeResult:
    name = params["name"]
    proc = _run(["systemctl", "is-active", name])
    active = proc.stdout.strip()
    if not active:
        # No state word at all: the service manager itself did not answer
        return indeterminate(f"systemctl is-active {name}: {proc.stderr.strip()[-200:] or 'no output'}")
    problems = []
    want_active = desired in ("started", "restarted")
    if want_active and active != "active":
        problems.append(f"not active ({active})")
    elif not want_active and active == "active":
        problems.append("still active")

    enabled = params.get("enabled")
    if enabled is not None:
        state = _run(["systemctl", "is-enabled", name]).stdout.strip() or "unknown"
        is_enabled = state in ("enabled", "static", "alias")
        if enabled and not is_enabled:
            problems.append(f"not enabled ({state})")
        elif not enabled and state == "enabled":
            problems.append("still enabled")

    if problems:
        return ProbeResult(False, f"{name} " + ", ".join(problems))
    return ProbeResult(True, f"{name} {active}")


def probe_file(params: dict[str, Any], desired: str) -> ProbeResult:
    path = params["path"]
    if desired == "absent":
        if os.path.lexists(path):
            return ProbeResult(False, f"{path} still exists")
        return ProbeResult(True, f"{path} absent")

    if not os.path.exists(path):
        return ProbeResult(False, f"{path} missing")
    kind = params.get("type", "file")
    if kind == "directory" and not os.path.isdir(path):
        return ProbeResult(False, f"{path} is not a directory")
    if kind == "file" and not os.path.isfile(path):
        return ProbeResult(False, f"{path} is not a regular file")
    if params.get("content") is not None:
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                if f.read() != params["content"]:
                    return ProbeResult(False, f"{path} content differs")
        except PermissionError:
            return indeterminate(f"{path} not readable")
    if params.get("mode") is not None:
        mode = stat.S_IMODE(os.stat(path).st_mode)
        if mode != int(params["mode"], 8):
            return ProbeResult(False, f"{path} has mode {mode:04o}, expected {params['mode']}")
    return ProbeResult(True, f"{path} present")


def probe_group_membership(params: dict[str, Any], desired: str) -> ProbeResult:
    user, group = params["user"], params["group"]
    proc = _run(["id", "-nG", user])
    if proc.returncode != 0:
        if desired == "absent":
            return ProbeResult(True, f"user {user} does not exist")
        return ProbeResult(False, f"user {user} does not exist")
    member = group in proc.stdout.split()
    if member == (desired == "present"):
        return ProbeResult(True, f"{user} {'in' if member else 'not in'} group {group}")
    if member:
        return ProbeResult(False, f"{user} still in group {group}")
    return ProbeResult(
        False, f"{user} not in group {group} (run: sudo usermod -aG {group} {user} && newgrp {group})"
    )


def _source_files() -> list[Path]:
    files = [APT_SOURCES_LIST] if APT_SOURCES_LIST.exists() else []
    if APT_SOURCES_DIR.is_dir():
        files.extend(sorted(APT_SOURCES_DIR.glob("*.list")))
    return files


def probe_repository(params: dict[str, Any], desired: str) -> ProbeResult:
    wanted = " ".join(params["repo"].split())
    found_in = None
    for source in _source_files():
        for line in source.read_text(errors="replace").splitlines():
            if " ".join(line.split()) == wanted:
                found_in = source
                break
        if found_in:
            break

    if desired == "absent":
        if found_in:
            return ProbeResult(False, f"still registered in {found_in}")
        return ProbeResult(True, "not registered")
    if found_in is None:
        return ProbeResult(False, f"'{wanted}' not found in any APT source")
    if params.get("key_url"):
        keyring = Path(params.get("keyring") or APT_KEYRING_DIR / f"{params['filename']}.asc")
        if not keyring.exists():
            return ProbeResult(False, f"signing key {keyring} missing")
    return ProbeResult(True, f"registered in {found_in}")


def probe_extension(params: dict[str, Any], desired: str) -> ProbeResult:
    cli = params.get("cli", "code")
    ext = params["id"]
    argv = [cli, "--list-extensions"]
    user = params.get("user")
    if user and user != pwd.getpwuid(os.geteuid()).pw_name:
        argv = ["runuser", "-u", user, "--", *argv]
    proc = _run(argv)
    if proc.returncode != 0:
        return indeterminate(
            f"{cli} --list-extensions failed (likely no GUI session); launch the editor once, then re-run"
        )
    installed = {line.strip().lower() for line in proc.stdout.splitlines()}
    present = ext.lower() in installed
    if present == (desired == "present"):
        return ProbeResult(True, f"{ext} {'installed' if present else 'not installed'}")
    return ProbeResult(False, f"extension {ext} {'still installed' if present else 'missing'}")


def probe_command(params: dict[str, Any], desired: str) -> ProbeResult | None:
    creates = params.get("creates")
    if not creates:
        return None
    if os.path.exists(creates):
        return ProbeResult(True, f"{creates} exists")
    return ProbeResult(False, f"{creates} missing")


Probe = Callable[[dict[str, Any], str], "ProbeResult | None"]

PROBES: dict[str, Probe] = {
    "command": probe_command,
    "extension": probe_extension,
    "file": probe_file,
    "group_membership": probe_group_membership,
    "package": probe_package,
    "repository": probe_repository,
    "service": probe_service,
    "service_restart": probe_service,
}

# Desired state each kind assumes when the plan leaves it unset
DEFAULT_STATES: dict[str, str] = {
    "command": "run",
    "service": "started",
    "service_restart": "restarted",
}


def _with_hint(detail: str, hint: str | None) -> str:
    return f"{detail} (hint: {hint})" if hint else detail


def run_tool_check(check: ToolCheck) -> ProbeResult:
    path = shutil.which(check.tool)
    if path is None:
        return ProbeResult(False, _with_hint(f"{check.tool} missing", check.hint))
    try:
        proc = _run([path, *check.version_args], timeout=check.timeout)
    except ProbeUnavailable:
        return ProbeResult(True, f"{check.tool} present (version unknown)")
    version = _first_line(proc.stdout) or _first_line(proc.stderr)
    return ProbeResult(True, f"{check.tool}: {version}" if version else f"{check.tool} present")


def run_socket_check(check: SocketCheck) -> ProbeResult:
    path = Path(check.socket)
    if not path.exists():
        return ProbeResult(False, _with_hint(f"{path} missing", check.hint))
    if not stat.S_ISSOCK(path.stat().st_mode):
        return ProbeResult(False, _with_hint(f"{path} is not a socket", check.hint))
    return ProbeResult(True, f"{path} present")


def run_command_check(check: CommandCheck) -> ProbeResult:
    try:
        proc = _run(check.command, timeout=check.timeout, shell=True)
    except ProbeUnavailable as exc:
        return indeterminate(str(exc))
    if proc.returncode == check.expected_exit_code:
        return ProbeResult(True, f"exit code {proc.returncode}")
    output = (proc.stderr or proc.stdout).strip()[-200:]
    detail = f"exit code {proc.returncode}, expected {check.expected_exit_code}"
    if output:
        detail += f": {output}"
    return ProbeResult(False, _with_hint(detail, check.hint))


def check_name(check: ToolCheck | SocketCheck | CommandCheck) -> str:
    if check.name:
        return check.name
    if isinstance(check, ToolCheck):
        return f"tool:{check.tool}"
    if isinstance(check, SocketCheck):
        return f"socket:{check.socket}"
    return f"command:{check.command}"


def run_group_check(check: ToolCheck | SocketCheck | CommandCheck) -> ProbeResult:
    if isinstance(check, ToolCheck):
        return run_tool_check(check)
    if isinstance(check, SocketCheck):
        return run_socket_check(check)
    return run_command_check(check)
