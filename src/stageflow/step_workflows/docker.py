# step_workflows/docker.py
from __future__ import annotations

import logging
import os
import subprocess
import threading
import uuid
from pathlib import Path
from typing import List

from ..errors import InvalidStageError
from ..executors import ExecResult, ShellExecutor, _safe
from ..model import Command

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Docker execution
# ---------------------------------------------------------------------

class DockerExecutor(ShellExecutor):
    """
    Run a command inside a throwaway container.

    The repo root is mounted at /workspace and the command's cwd is
    resolved inside it. Only the command's own env is forwarded; the
    host environment stays on the host.
    """

    container_workdir = "/workspace"

    def __init__(self, repo_root: str | Path = ".", log_dir: str | Path = ".stageflow/logs", *, volumes: List[str] | None = None, user: str | None = None):
        super().__init__(repo_root, log_dir)
        self.volumes = list(volumes or [])
        self.user = user
        self._checked = False

    def _check_docker_available(self) -> None:
        if self._checked:
            return
        try:
            subprocess.run(["docker", "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError):
            raise InvalidStageError("Docker is not available. Install Docker and ensure the daemon is running.")
        self._checked = True

    def build_argv(self, command: Command, *, name: str | None = None) -> List[str]:
        if not command.image:
            raise InvalidStageError(f"docker command has no image: {command.display()}")

        self._check_docker_available()

        cmd = ["docker", "run", "--rm"]
        if name:
            cmd.extend(["--name", name])

        # Volume mount: repo_root -> /workspace
        cmd.extend(["-v", f"{self.repo_root}:{self.container_workdir}"])
        for vol in self.volumes:
            cmd.extend(["-v", vol])

        # Working directory: /workspace/<relative_cwd>
        step_cwd = command.cwd or "."
        container_cwd = f"{self.container_workdir}/{step_cwd}".replace("//", "/")
        cmd.extend(["-w", container_cwd])

        for key, value in (command.env or {}).items():
            cmd.extend(["-e", f"{key}={value}"])

        if self.user:
            cmd.extend(["--user", self.user])

        cmd.append(command.image)
        if len(command.argv) == 1:
            cmd.extend(["sh", "-c", command.argv[0]])
        else:
            cmd.extend(command.argv)
        return cmd

    def execute(
        self,
        command: Command,
        timeout: float,
        cancel: threading.Event,
        *,
        label: str = "",
    ) -> ExecResult:
        label = label or command.display()
        name = f"stageflow-{_safe(label)}-{uuid.uuid4().hex[:8]}"
        argv = self.build_argv(command, name=name)
        # killing the docker client does not stop the container
        return self._run(
            argv, self.repo_root, os.environ.copy(), timeout, cancel, label,
            on_kill=lambda: self._remove_container(name),
        )

    def _remove_container(self, name: str) -> None:
        res = subprocess.run(["docker", "rm", "-f", name], capture_output=True, text=True)
        if res.returncode != 0:
            log.warning("could not remove container %s: %s", name, res.stderr.strip())
