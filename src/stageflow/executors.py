# executors.py
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from .model import Command

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecResult:
    exit_status: int | None
    logs_ref: str | None = None
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out and not self.cancelled


class CommandExecutor(Protocol):
    """Runs a stage's opaque command contract. Must honour `timeout` and `cancel`."""

    def execute(
        self,
        command: Command,
        timeout: float,
        cancel: threading.Event,
        *,
        label: str = "",
    ) -> ExecResult: ...


def _safe(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", label).strip("_") or "stage"


class ShellExecutor:
    """
    Run commands as local subprocesses.

    A single-element argv is handed to the shell (like a workflow `run:`
    line); anything longer is executed directly. Output goes to one log
    file per invocation under `log_dir`, and that path is the logs_ref.
    """

    poll_interval = 0.1
    term_grace = 2.0

    def __init__(self, repo_root: str | Path = ".", log_dir: str | Path = ".stageflow/logs"):
        self.repo_root = Path(repo_root).resolve()
        self.log_dir = Path(log_dir)
        self._counter = 0
        self._counter_lock = threading.Lock()

    def build_argv(self, command: Command) -> List[str] | str:
        if len(command.argv) == 1:
            return command.argv[0]
        return list(command.argv)

    def _log_path(self, label: str) -> Path:
        with self._counter_lock:
            self._counter += 1
            n = self._counter
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir / f"{_safe(label)}-{n}.log"

    def execute(
        self,
        command: Command,
        timeout: float,
        cancel: threading.Event,
        *,
        label: str = "",
    ) -> ExecResult:
        cwd = (self.repo_root / (command.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{label}] cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(command.env or {})

        return self._run(self.build_argv(command), cwd, env, timeout, cancel, label or command.display())

    def _run(
        self,
        argv: List[str] | str,
        cwd: Path,
        env: Dict[str, str],
        timeout: float,
        cancel: threading.Event,
        label: str,
        on_kill: Optional[Callable[[], None]] = None,
    ) -> ExecResult:
        log_path = self._log_path(label)
        log.debug("exec label=%s argv=%r cwd=%s", label, argv, cwd)

        with open(log_path, "w", encoding="utf-8") as out:
            # the child leads its own process group; _kill signals the group
            proc = subprocess.Popen(
                argv,
                shell=isinstance(argv, str),
                cwd=str(cwd),
                env=env,
                stdout=out,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )
            deadline = time.monotonic() + timeout
            while True:
                try:
                    code = proc.wait(timeout=self.poll_interval)
                    return ExecResult(exit_status=code, logs_ref=str(log_path))
                except subprocess.TimeoutExpired:
                    pass
                if cancel.is_set():
                    self._kill(proc, on_kill)
                    return ExecResult(exit_status=None, logs_ref=str(log_path), cancelled=True)
                if time.monotonic() >= deadline:
                    self._kill(proc, on_kill)
                    out.write(f"\n[stageflow] killed after {timeout:.0f}s timeout\n")
                    return ExecResult(exit_status=None, logs_ref=str(log_path), timed_out=True)

    def _kill(self, proc: subprocess.Popen, on_kill: Optional[Callable[[], None]] = None) -> None:
        """SIGTERM the whole process group, then SIGKILL whatever is left."""
        # start_new_session made the child a group leader: pgid == pid
        pgid = proc.pid
        self._signal_group(pgid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.term_grace)
        except subprocess.TimeoutExpired:
            log.warning("process group %s ignored SIGTERM, killing", pgid)
        self._signal_group(pgid, signal.SIGKILL)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            log.warning("process %s did not exit after kill", proc.pid)
        if on_kill is not None:
            on_kill()

    @staticmethod
    def _signal_group(pgid: int, sig: signal.Signals) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            pass


class LocalExecutor:
    """Dispatch to docker for commands that name an image, else the host shell."""

    def __init__(self, repo_root: str | Path = ".", log_dir: str | Path = ".stageflow/logs"):
        # import here to avoid circular import
        from .step_workflows.docker import DockerExecutor

        self.shell = ShellExecutor(repo_root, log_dir)
        self.docker = DockerExecutor(repo_root, log_dir)

    def execute(
        self,
        command: Command,
        timeout: float,
        cancel: threading.Event,
        *,
        label: str = "",
    ) -> ExecResult:
        if command.image:
            return self.docker.execute(command, timeout, cancel, label=label)
        return self.shell.execute(command, timeout, cancel, label=label)
