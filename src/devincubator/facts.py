"""Host facts exposed to plan templates."""

from __future__ import annotations

import getpass
import platform
from pathlib import Path

OS_RELEASE = Path("/etc/os-release")

_DEB_ARCH = {"x86_64": "amd64", "aarch64": "arm64", "armv7l": "armhf"}


def _os_release(path: Path = OS_RELEASE) -> dict[str, str]:
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text(errors="replace").splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


def gather_facts(os_release: Path = OS_RELEASE) -> dict[str, str]:
    """Return the facts available to ``{{ ... }}`` expressions in a plan."""
    release = _os_release(os_release)
    machine = platform.machine()
    return {
        "user": getpass.getuser(),
        "home": str(Path.home()),
        "machine": machine,
        "arch": _DEB_ARCH.get(machine, "amd64"),
        "distro": release.get("ID", ""),
        "codename": release.get("VERSION_CODENAME", release.get("UBUNTU_CODENAME", "")),
    }
