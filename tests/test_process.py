"""Tests for the managed process model and launchers."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from artifact_reloader.process import (
    CommandLauncher,
    ContainerLauncher,
    ExitIntent,
    ManagedProcess,
    ProcessRegistry,
    ProcessState,
    detect_runtime,
)


@pytest.mark.parametrize(
    "returncode,expected",
    [
        (0, ExitIntent.NORMAL),
        (42, ExitIntent.RESTART),
        (1, ExitIntent.FATAL),
        (2, ExitIntent.FATAL),
        (137, ExitIntent.FATAL),
        (-9, ExitIntent.FATAL),
        (-15, ExitIntent.FATAL),
    ],
    ids=["Clean", "Restart", "Error", "Usage", "Killed137", "SIGKILL", "SIGTERM"],
)
def test_exit_intent_classify(returncode: int, expected: ExitIntent) -> None:
    assert ExitIntent.classify(returncode) is expected


def test_exit_intent_codes() -> None:
    assert ExitIntent.NORMAL.code == 0
    assert ExitIntent.RESTART.code == 42
    assert ExitIntent.FATAL.code != 0


def _process(identity: str = "server") -> ManagedProcess:
    return ManagedProcess(identity, CommandLauncher(["true"]), Path("."), "model.bin")


def test_lifecycle_transitions() -> None:
    process = _process()
    assert process.state == ProcessState.STOPPED

    for state in (
        ProcessState.STARTING,
        ProcessState.RUNNING,
        ProcessState.CRASHED,
        ProcessState.STARTING,
        ProcessState.RUNNING,
        ProcessState.STOPPING,
        ProcessState.STOPPED,
    ):
        process.transition(state)
        assert process.state == state


@pytest.mark.parametrize(
    "path",
    [
        (ProcessState.RUNNING,),
        (ProcessState.STOPPING,),
        (ProcessState.CRASHED,),
        (ProcessState.STARTING, ProcessState.STOPPED),
    ],
    ids=["StoppedToRunning", "StoppedToStopping", "StoppedToCrashed", "StartingToStopped"],
)
def test_invalid_transitions_rejected(path: tuple) -> None:
    process = _process()
    *allowed, invalid = path
    for state in allowed:
        process.transition(state)
    with pytest.raises(RuntimeError, match="invalid transition"):
        process.transition(invalid)


def test_same_state_transition_is_noop() -> None:
    process = _process()
    process.transition(ProcessState.STOPPED)
    assert process.state == ProcessState.STOPPED


def test_registry() -> None:
    registry = ProcessRegistry()
    a = registry.register(_process("a"))
    registry.register(_process("b"))

    assert "a" in registry
    assert len(registry) == 2
    assert registry.get("a") is a
    assert [p.identity for p in registry] == ["a", "b"]

    with pytest.raises(ValueError, match="already registered"):
        registry.register(_process("a"))
    with pytest.raises(KeyError, match="Unknown managed process"):
        registry.get("missing")

    assert registry.remove("a") is a
    assert "a" not in registry
    assert registry.remove("a") is None


def test_registries_are_independent() -> None:
    first = ProcessRegistry()
    second = ProcessRegistry()
    first.register(_process("server"))
    second.register(_process("server"))

    assert first.get("server") is not second.get("server")


@pytest.mark.parametrize(
    "installed,preferred,expected",
    [
        ({"podman", "docker"}, None, "podman"),
        ({"docker"}, None, "docker"),
        (set(), None, None),
        ({"podman", "docker"}, "docker", "docker"),
        ({"podman"}, "docker", None),
    ],
    ids=["PreferPodman", "DockerOnly", "None", "ExplicitDocker", "ExplicitMissing"],
)
def test_detect_runtime(installed: set, preferred: str, expected: str) -> None:
    with patch("artifact_reloader.process.shutil.which", side_effect=lambda name: name if name in installed else None):
        assert detect_runtime(preferred) == expected


def test_container_command(temp_dir: Path) -> None:
    launcher = ContainerLauncher("podman", "artifact-server:latest", mount_point="/app/artifacts/", verbose=True)

    argv = launcher.build_command("artifact-server", temp_dir, "model.bin")

    assert argv == [
        "podman", "run",
        "--name", "artifact-server",
        "--rm",
        "-i",
        "-v", f"{temp_dir}:/app/artifacts:ro",
        "-e", "ARTIFACT_PATH=/app/artifacts/model.bin",
        "-e", "RELOADER_VERBOSE=true",
        "artifact-server:latest",
    ]


def test_container_command_without_verbose(temp_dir: Path) -> None:
    launcher = ContainerLauncher("docker", "img:1", extra_args=["--network", "none"])

    argv = launcher.build_command("srv", temp_dir, "a.dll")

    assert "RELOADER_VERBOSE=true" not in argv
    assert argv[-3:] == ["--network", "none", "img:1"]


@patch("artifact_reloader.process.subprocess.Popen")
@patch("artifact_reloader.process.subprocess.run")
def test_container_launch_removes_leftover(mock_run: MagicMock, mock_popen: MagicMock, temp_dir: Path) -> None:
    launcher = ContainerLauncher("podman", "img")

    launcher.launch("srv", temp_dir, "model.bin")

    assert mock_run.call_args_list[0].args[0] == ["podman", "rm", "-f", "srv"]
    assert mock_popen.call_args.args[0][:2] == ["podman", "run"]


@patch("artifact_reloader.process.subprocess.run")
def test_container_stop_and_kill_use_runtime(mock_run: MagicMock) -> None:
    launcher = ContainerLauncher("docker", "img")
    handle = MagicMock()
    handle.poll.return_value = None

    launcher.terminate(handle, "srv", 5.0)
    assert mock_run.call_args.args[0] == ["docker", "stop", "-t", "5", "srv"]

    launcher.kill(handle, "srv")
    assert mock_run.call_args.args[0] == ["docker", "kill", "srv"]
    handle.kill.assert_called_once()


@patch("artifact_reloader.process.subprocess.run")
def test_container_liveness(mock_run: MagicMock) -> None:
    launcher = ContainerLauncher("podman", "img")
    handle = MagicMock()
    handle.poll.return_value = None

    mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="true\n", stderr="")
    assert launcher.is_live(handle, "srv", 0.1)
    assert mock_run.call_args.args[0] == ["podman", "inspect", "-f", "{{.State.Running}}", "srv"]

    mock_run.return_value = subprocess.CompletedProcess([], 0, stdout="false\n", stderr="")
    assert not launcher.is_live(handle, "srv", 0.1)

    mock_run.side_effect = OSError("runtime vanished")
    assert not launcher.is_live(handle, "srv", 0.1)

    handle.poll.return_value = 1
    assert not launcher.is_live(handle, "srv", 0.1)


def test_command_launcher_requires_command() -> None:
    with pytest.raises(ValueError):
        CommandLauncher([])


def test_command_render(temp_dir: Path) -> None:
    launcher = CommandLauncher(["server", "--artifact", "{artifact_path}", "--dir={directory}", "{filename}"])

    assert launcher.render(temp_dir, "model.bin") == [
        "server",
        "--artifact",
        str(temp_dir / "model.bin"),
        f"--dir={temp_dir}",
        "model.bin",
    ]


def test_command_launch_exports_artifact_path(artifact_file: Path) -> None:
    out = artifact_file.parent / "seen.txt"
    launcher = CommandLauncher(
        [
            sys.executable,
            "-c",
            "import os, sys; open(sys.argv[1], 'w').write(os.environ['ARTIFACT_PATH'])",
            str(out),
        ]
    )

    handle = launcher.launch("srv", artifact_file.parent, artifact_file.name)
    try:
        assert handle.wait(timeout=30) == 0
    finally:
        if handle.poll() is None:
            handle.kill()

    assert out.read_text() == str(artifact_file)


def test_command_liveness() -> None:
    handle = MagicMock()
    handle.poll.return_value = None
    launcher = CommandLauncher(["server"], ready_after=0.5)

    assert not launcher.is_live(handle, "srv", 0.1)
    assert launcher.is_live(handle, "srv", 0.6)

    launcher.liveness_probe = lambda h: False
    assert not launcher.is_live(handle, "srv", 10.0)

    handle.poll.return_value = 0
    launcher.liveness_probe = None
    assert not launcher.is_live(handle, "srv", 10.0)
