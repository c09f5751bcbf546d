from __future__ import annotations

import json
import subprocess
import sys
import threading
from pathlib import Path

import pytest

from stageflow.environments import ProbeResult
from stageflow.errors import UnknownEnvironmentError
from stageflow.executors import LocalExecutor, ShellExecutor
from stageflow.kube import KubectlOrchestrator, KubeTarget, parse_rollout_status
from stageflow.model import Command
from stageflow.step_workflows.docker import DockerExecutor

from fakes import wait_until


@pytest.fixture
def shell(tmp_path):
    return ShellExecutor(repo_root=tmp_path, log_dir=tmp_path / "logs")


def test_shell_success_writes_log(shell):
    res = shell.execute(Command(argv=("echo hello; echo $GREETING",), env={"GREETING": "hi"}), 10, threading.Event(), label="r1-build")

    assert res.ok
    log = Path(res.logs_ref).read_text()
    assert "hello" in log and "hi" in log
    assert Path(res.logs_ref).name.startswith("r1-build")


def test_shell_exit_status(shell):
    res = shell.execute(Command(argv=("exit 3",)), 10, threading.Event())
    assert not res.ok
    assert res.exit_status == 3


def test_shell_argv_form_skips_the_shell(shell):
    res = shell.execute(Command(argv=("echo", "$HOME")), 10, threading.Event())
    assert "$HOME" in Path(res.logs_ref).read_text()


def test_shell_timeout(shell):
    res = shell.execute(Command(argv=("sleep 5",)), 0.2, threading.Event())
    assert res.timed_out
    assert not res.ok
    assert "timeout" in Path(res.logs_ref).read_text()


def test_shell_cancel(shell):
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()
    res = shell.execute(Command(argv=("sleep 5",)), 10, cancel)
    assert res.cancelled


def alive(pid: int) -> bool:
    """True while `pid` exists and is not a zombie."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads /proc")
@pytest.mark.parametrize("how", ["timeout", "cancel"])
def test_shell_kill_reaches_forked_children(shell, tmp_path, how):
    cancel = threading.Event()
    timeout = 0.5 if how == "timeout" else 10
    if how == "cancel":
        threading.Timer(0.3, cancel.set).start()

    res = shell.execute(Command(argv=("sleep 30 & echo $! > child.pid; wait",)), timeout, cancel)

    assert res.timed_out if how == "timeout" else res.cancelled
    child = int((tmp_path / "child.pid").read_text())
    assert wait_until(lambda: not alive(child), timeout=3)


def test_shell_missing_cwd(shell):
    with pytest.raises(FileNotFoundError):
        shell.execute(Command(argv=("true",), cwd="nope"), 10, threading.Event())


def test_docker_argv(tmp_path):
    ex = DockerExecutor(repo_root=tmp_path, volumes=["cache:/root/.cache"], user="1000")
    ex._checked = True

    argv = ex.build_argv(Command(argv=("pytest -q",), cwd="svc", env={"CI": "1"}, image="python:3.12"))

    assert argv == [
        "docker", "run", "--rm",
        "-v", f"{tmp_path.resolve()}:/workspace",
        "-v", "cache:/root/.cache",
        "-w", "/workspace/svc",
        "-e", "CI=1",
        "--user", "1000",
        "python:3.12", "sh", "-c", "pytest -q",
    ]


def test_docker_argv_names_the_container(tmp_path):
    ex = DockerExecutor(repo_root=tmp_path)
    ex._checked = True

    argv = ex.build_argv(Command(argv=("true",), image="alpine"), name="stageflow-r1-build-1")
    assert argv[:5] == ["docker", "run", "--rm", "--name", "stageflow-r1-build-1"]


def test_docker_timeout_removes_the_container(tmp_path, monkeypatch):
    ex = DockerExecutor(repo_root=tmp_path, log_dir=tmp_path / "logs")
    names = []

    def fake_build_argv(command, *, name=None):
        names.append(name)
        return ["sleep", "5"]

    removed = []
    monkeypatch.setattr(ex, "build_argv", fake_build_argv)
    monkeypatch.setattr(ex, "_remove_container", removed.append)

    res = ex.execute(Command(argv=("make",), image="alpine"), 0.2, threading.Event(), label="r1-build")

    assert res.timed_out
    assert names[0].startswith("stageflow-r1-build-")
    assert removed == names


def test_docker_success_leaves_container_alone(tmp_path, monkeypatch):
    ex = DockerExecutor(repo_root=tmp_path, log_dir=tmp_path / "logs")
    removed = []
    monkeypatch.setattr(ex, "build_argv", lambda command, *, name=None: ["true"])
    monkeypatch.setattr(ex, "_remove_container", removed.append)

    assert ex.execute(Command(argv=("make",), image="alpine"), 5, threading.Event()).ok
    assert removed == []


def test_local_executor_dispatches_on_image(tmp_path, monkeypatch):
    local = LocalExecutor(repo_root=tmp_path, log_dir=tmp_path / "logs")
    used = []
    monkeypatch.setattr(local.docker, "execute", lambda *a, **k: used.append("docker"))
    monkeypatch.setattr(local.shell, "execute", lambda *a, **k: used.append("shell"))

    local.execute(Command(argv=("make",), image="alpine"), 1, threading.Event())
    local.execute(Command(argv=("make",)), 1, threading.Event())
    assert used == ["docker", "shell"]


DEPLOYMENT = {
    "metadata": {"generation": 4},
    "spec": {"replicas": 3},
    "status": {"observedGeneration": 4, "updatedReplicas": 3, "readyReplicas": 3, "availableReplicas": 3},
}


def test_parse_rollout_status():
    assert parse_rollout_status(DEPLOYMENT).available

    stale = {**DEPLOYMENT, "status": {**DEPLOYMENT["status"], "observedGeneration": 3}}
    assert not parse_rollout_status(stale).available

    partial = {**DEPLOYMENT, "status": {**DEPLOYMENT["status"], "readyReplicas": 1}}
    status = parse_rollout_status(partial)
    assert not status.available
    assert (status.ready_replicas, status.replicas) == (1, 3)


def test_kubectl_orchestrator(monkeypatch):
    calls = []

    def fake_check_output(cmd, **kwargs):
        calls.append(cmd)
        if "get" in cmd:
            return json.dumps(DEPLOYMENT)
        return ""

    monkeypatch.setattr(subprocess, "check_output", fake_check_output)
    orch = KubectlOrchestrator({
        "production": KubeTarget("prod", "shop", "app", "https://shop.example.com", context="prod-cluster"),
    })

    orch.set_image("production", "shop:v2")
    assert calls[0] == [
        "kubectl", "--context", "prod-cluster", "-n", "prod",
        "set", "image", "deployment/shop", "app=shop:v2",
    ]
    assert orch.get_rollout_status("production").available

    with pytest.raises(UnknownEnvironmentError):
        orch.set_image("staging", "shop:v2")


def test_probe_of_unreachable_host_is_not_ok():
    orch = KubectlOrchestrator(
        {"local": KubeTarget("ns", "d", "c", "http://127.0.0.1:9")},
        probe_timeout=1,
    )
    assert orch.health_probe("local", "/healthz") == ProbeResult(ok=False, status_code=None)
