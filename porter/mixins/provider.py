"""Mixin discovery and the subprocess protocol.

A mixin is an executable at ``<mixins_dir>/<name>/<name>``. Every command
is one subprocess: porter writes a YAML document to stdin, collects stdout
and demultiplexes stderr into the ``porter.mixins`` logger. An invocation
moves through ``Spawned -> Streaming -> (Completed | Failed | Cancelled)``
and nothing about it is persisted here.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import IO, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from porter.cnab.bundle import BUILTIN_ACTIONS
from porter.core.context import Context
from porter.errors import CanceledError, MixinFailure, NotFoundError, PorterError, ValidationError
from porter.manifest import Manifest, Step
from porter.mixins.outputs import extract_outputs, parse_assignments

logger = logging.getLogger(__name__)
mixin_logger = logging.getLogger("porter.mixins")

STDERR_TAIL_LINES = 20
_POLL_INTERVAL = 0.05


class InvocationState(str, Enum):
    """Lifecycle of a single mixin invocation."""

    SPAWNED = "spawned"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MixinMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    dir: Path


class LintLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    action: str = ""
    step_number: int = Field(default=0, alias="stepNumber")
    step_description: str = Field(default="", alias="stepDescription")
    mixin: str = ""


class LintResult(BaseModel):
    """One finding reported by a mixin's ``lint`` command."""

    model_config = ConfigDict(extra="allow")

    level: str = "error"
    code: str = ""
    title: str = ""
    message: str = ""
    url: str = ""
    location: LintLocation = Field(default_factory=LintLocation)

    def __str__(self) -> str:
        where = f"{self.location.action} step {self.location.step_number}" if self.location.action else ""
        prefix = f"{self.level}({self.code})" if self.code else self.level
        parts = [f"{prefix} - {self.title}"]
        if where:
            parts.append(where)
        if self.message:
            parts.append(self.message)
        return ": ".join(parts)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    """Signal the mixin and anything it spawned (it leads its own session)."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        logger.debug("mixin process %d already exited", proc.pid)


def _group_alive(proc: subprocess.Popen) -> bool:
    """True while the mixin or anything left in its process group is running."""
    proc.poll()
    try:
        os.killpg(proc.pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def action_command(action: str) -> list[str]:
    """Built-in actions are mixin commands; custom ones go through ``invoke``."""
    if action in BUILTIN_ACTIONS:
        return [action]
    return ["invoke", "--action", action]


class _Invocation:
    """A running mixin subprocess and the threads pumping its pipes."""

    def __init__(self, proc: subprocess.Popen, name: str, stdin: bytes) -> None:
        self.proc = proc
        self.name = name
        self.state = InvocationState.SPAWNED
        self.stdout = bytearray()
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._threads = [
            threading.Thread(target=self._feed, args=(stdin,), daemon=True),
            threading.Thread(target=self._read_stdout, daemon=True),
            threading.Thread(target=self._read_stderr, daemon=True),
        ]

    def start(self) -> None:
        for thread in self._threads:
            thread.start()
        self.state = InvocationState.STREAMING

    def _feed(self, data: bytes) -> None:
        stream = self.proc.stdin
        if stream is None:
            return
        try:
            with stream:
                stream.write(data)
        except OSError as exc:
            # The mixin exited without reading its input; its exit code says why
            logger.debug("mixin %s closed stdin early: %s", self.name, exc)

    def _read_stdout(self) -> None:
        stream: IO[bytes] | None = self.proc.stdout
        if stream is None:
            return
        for chunk in iter(lambda: stream.read1(65536), b""):
            self.stdout.extend(chunk)

    def _read_stderr(self) -> None:
        stream: IO[bytes] | None = self.proc.stderr
        if stream is None:
            return
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self.stderr_tail.append(line)
            mixin_logger.debug("%s: %s", self.name, line)

    def join(self) -> None:
        for thread in self._threads:
            thread.join()

    def release(self) -> None:
        if self.proc.poll() is None:
            _signal_group(self.proc, signal.SIGKILL)
            self.proc.wait()
        self.join()
        for stream in (self.proc.stdout, self.proc.stderr):
            if stream is not None:
                stream.close()


class MixinProvider:
    """Finds installed mixins and runs their commands.

    Parameters
    ----------
    mixins_dir:
        Directory holding one ``<name>/<name>`` executable per mixin.
    grace_period:
        Seconds between SIGTERM and SIGKILL when a run is canceled.
    """

    def __init__(self, mixins_dir: Path, grace_period: float = 5.0) -> None:
        self.mixins_dir = Path(mixins_dir)
        self.grace_period = grace_period

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list(self) -> list[MixinMetadata]:
        if not self.mixins_dir.is_dir():
            return []
        found = []
        for entry in sorted(self.mixins_dir.iterdir()):
            binary = entry / entry.name
            if entry.is_dir() and binary.is_file() and os.access(binary, os.X_OK):
                found.append(MixinMetadata(name=entry.name, path=binary, dir=entry))
        return found

    def get_path(self, name: str) -> Path:
        binary = self.mixins_dir / name / name
        if not (binary.is_file() and os.access(binary, os.X_OK)):
            raise NotFoundError(f"mixin {name} is not installed ({binary})")
        return binary

    # ------------------------------------------------------------------
    # Subprocess protocol
    # ------------------------------------------------------------------

    def run(
        self,
        ctx: Context,
        name: str,
        command: list[str],
        stdin: bytes | str = b"",
        file: Path | None = None,
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> bytes:
        """Run one mixin command and return its stdout.

        Raises
        ------
        MixinFailure
            The mixin exited nonzero.
        CanceledError
            ``ctx`` fired; the child was terminated, then killed after the
            grace period.
        """
        ctx.raise_if_cancelled()
        binary = self.get_path(name)
        argv = [str(binary), *command]
        if file is not None:
            argv += ["--file", str(file)]
        data = stdin.encode("utf-8") if isinstance(stdin, str) else stdin

        logger.debug("Running mixin %s: %s", name, " ".join(argv[1:]))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env={**os.environ, **env} if env else None,
                start_new_session=True,
            )
        except OSError as exc:
            raise PorterError(f"could not run mixin command {name} {' '.join(command)}: {exc}") from exc

        invocation = _Invocation(proc, name, data)
        try:
            invocation.start()
            if self._wait(ctx, proc):
                invocation.state = InvocationState.CANCELLED
                self._terminate(proc, name)
                invocation.join()
                raise CanceledError(f"mixin {name} canceled: {ctx.reason or 'operation canceled'}")
            invocation.join()
            if proc.returncode != 0:
                invocation.state = InvocationState.FAILED
                raise MixinFailure(
                    name,
                    command,
                    proc.returncode,
                    "\n".join(invocation.stderr_tail),
                    bytes(invocation.stdout),
                )
            invocation.state = InvocationState.COMPLETED
            return bytes(invocation.stdout)
        finally:
            invocation.release()
            logger.debug("mixin %s %s: %s", name, command[0] if command else "", invocation.state.value)

    @staticmethod
    def _wait(ctx: Context, proc: subprocess.Popen) -> bool:
        """Wait for the child; True when ``ctx`` fired first."""
        while proc.poll() is None:
            if ctx.wait(_POLL_INTERVAL):
                return proc.poll() is None
        return False

    def _terminate(self, proc: subprocess.Popen, name: str) -> None:
        logger.info("Stopping mixin %s", name)
        _signal_group(proc, signal.SIGTERM)
        # The mixin may exit on SIGTERM while a command it started keeps running
        deadline = time.monotonic() + self.grace_period
        while _group_alive(proc) and time.monotonic() < deadline:
            time.sleep(_POLL_INTERVAL)
        if _group_alive(proc):
            logger.warning("mixin %s did not exit within %.1fs, killing it", name, self.grace_period)
            _signal_group(proc, signal.SIGKILL)
        proc.wait()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def get_version(self, ctx: Context, name: str) -> str:
        out = self.run(ctx, name, ["version", "--output", "json"])
        try:
            data = json.loads(out)
        except ValueError:
            return out.decode("utf-8", errors="replace").strip()
        if isinstance(data, dict):
            return str(data.get("version", ""))
        return str(data)

    def get_schema(self, ctx: Context, name: str) -> dict[str, Any]:
        out = self.run(ctx, name, ["schema"])
        try:
            return json.loads(out)
        except ValueError as exc:
            raise ValidationError(f"mixin {name} returned an invalid schema: {exc}") from exc

    @staticmethod
    def build_input(manifest: Manifest, name: str) -> bytes:
        """``{config, actions}`` for one mixin: only the steps that use it."""
        actions: dict[str, list[dict[str, Any]]] = {}
        for action in manifest.list_actions():
            steps = [s.to_dict() for s in manifest.get_steps(action) if s.mixin_name == name]
            if steps:
                actions[action] = steps
        document: dict[str, Any] = {"actions": actions}
        config = manifest.get_mixin_config(name)
        if config is not None:
            document["config"] = config
        return yaml.safe_dump(document, sort_keys=False).encode("utf-8")

    def build_fragments(self, ctx: Context, manifest: Manifest) -> list[bytes]:
        """Dockerfile lines from every declared mixin, in manifest order."""
        fragments = []
        for name in manifest.mixin_names:
            try:
                fragments.append(self.run(ctx, name, ["build"], self.build_input(manifest, name)))
            except MixinFailure as exc:
                raise PorterError(f"unable to generate the build instructions of mixin {name}: {exc}") from exc
        return fragments

    def lint(self, ctx: Context, manifest: Manifest) -> list[LintResult]:
        """Collect lint findings; mixins that do not implement ``lint`` are skipped."""
        results: list[LintResult] = []
        for name in manifest.mixin_names:
            try:
                out = self.run(ctx, name, ["lint", "--output", "json"], self.build_input(manifest, name))
            except MixinFailure as exc:
                logger.debug("mixin %s did not lint the manifest: %s", name, exc)
                continue
            if not out.strip():
                continue
            try:
                raw = json.loads(out)
                results.extend(LintResult.model_validate(item) for item in raw or [])
            except (ValueError, TypeError, PydanticValidationError) as exc:
                raise ValidationError(f"unable to parse lint results from mixin {name}: {exc}") from exc
        return results

    def execute_step(
        self,
        ctx: Context,
        mixin: str,
        action: str,
        step: Step,
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Run one resolved step and return its outputs.

        The step document goes to stdin and to the file named by ``--file``.
        ``KEY=VALUE`` lines printed by the mixin win over outputs extracted
        by porter for the same name.
        """
        document = yaml.safe_dump({action: [step.to_dict()]}, sort_keys=False)
        with tempfile.TemporaryDirectory(prefix="porter-step-") as tmp:
            path = Path(tmp) / "step.yaml"
            path.write_text(document, encoding="utf-8")
            stdout = self.run(ctx, mixin, action_command(action), document, path, cwd=cwd, env=env)
        outputs = extract_outputs(step.outputs, stdout, working_dir=cwd)
        outputs.update(parse_assignments(stdout))
        return outputs
