"""Files and directories: presence, literal content, downloads and mode."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
import urllib.error
import urllib.request
from pathlib import Path
from typing import Literal, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from devincubator.errors import ApplyFailure, CheckFailure
from devincubator.modules.base import CurrentState, ModuleContext, StateModule
from devincubator.results import Outcome

if TYPE_CHECKING:
    from devincubator.plan import StateAssertion


class FileParams(BaseModel):
    model_config = ConfigDict(extra="forbid")
    path: str
    type: Literal["file", "directory"] = "file"
    content: str | None = None
    src: str | None = None
    url: str | None = None
    mode: str | None = None

    @field_validator("mode")
    @classmethod
    def mode_must_be_octal(cls, v: str | None) -> str | None:
        if v is not None:
            int(v, 8)
        return v

    @model_validator(mode="after")
    def one_source(self) -> FileParams:
        sources = [s for s in (self.content, self.src, self.url) if s is not None]
        if len(sources) > 1:
            raise ValueError("use only one of content, src, url")
        if self.type == "directory" and sources:
            raise ValueError("directories take no content, src or url")
        return self


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _current_mode(path: Path) -> str:
    return oct(path.stat().st_mode & 0o7777)[2:].zfill(4)


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def download(url: str, timeout: int | None) -> bytes:
    try:
        with urllib.request.urlopen(url, timeout=timeout or 60) as resp:
            return resp.read()
    except (urllib.error.URLError, OSError) as exc:
        raise ApplyFailure(f"download of {url} failed: {exc}") from exc


class FileModule(StateModule):
    kind = "file"
    params_model = FileParams

    def _desired_bytes(self, params: FileParams) -> bytes | None:
        if params.content is not None:
            return params.content.encode()
        if params.src is not None:
            src = Path(params.src)
            if not src.is_file():
                raise CheckFailure(f"source file {src} not found")
            return src.read_bytes()
        # Downloads are fetched only when the target is missing
        return None

    def _differences(self, params: FileParams, desired: str) -> list[str]:
        path = Path(params.path)
        if desired == "absent":
            return ["exists"] if path.exists() or path.is_symlink() else []
        if not path.exists():
            return ["missing"]
        if params.type == "directory" and not path.is_dir():
            return ["not a directory"]
        if params.type == "file" and not path.is_file():
            return ["not a regular file"]

        diffs = []
        want = self._desired_bytes(params)
        if want is not None and _digest(path.read_bytes()) != _digest(want):
            diffs.append("content differs")
        if params.mode is not None and _current_mode(path) != params.mode.zfill(4):
            diffs.append(f"mode {_current_mode(path)}")
        return diffs

    def check(self, assertion: StateAssertion, ctx: ModuleContext) -> CurrentState:
        params = self.parse_params(assertion)
        desired = self.desired(assertion)
        try:
            diffs = self._differences(params, desired)
        except PermissionError as exc:
            raise CheckFailure(f"cannot read {params.path}: {exc}") from exc
        expected = f"{params.type} {params.path} {desired}"
        if params.mode and desired == "present":
            expected += f" (mode {params.mode})"
        return CurrentState(
            satisfied=not diffs,
            observed=", ".join(diffs) or "as expected",
            expected=expected,
        )

    def apply(self, assertion: StateAssertion, ctx: ModuleContext) -> Outcome:
        params = self.parse_params(assertion)
        path = Path(params.path)
        try:
            if self.desired(assertion) == "absent":
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
                return self.changed(assertion, f"removed {path}")

            if params.type == "directory":
                path.mkdir(parents=True, exist_ok=True)
            else:
                data = self._desired_bytes(params)
                if data is None and params.url is not None and not path.exists():
                    ctx.logger.info(f"Downloading {params.url} -> {path}")
                    data = download(params.url, ctx.timeout)
                if data is None and not path.exists():
                    data = b""
                if data is not None:
                    _write_atomic(path, data)
            if params.mode is not None:
                path.chmod(int(params.mode, 8))
        except CheckFailure as exc:
            raise ApplyFailure(str(exc)) from exc
        except OSError as exc:
            raise ApplyFailure(f"cannot update {path}: {exc}") from exc
        return self.changed(assertion, f"{params.type} {path} updated")
