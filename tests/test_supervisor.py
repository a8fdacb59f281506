"""Tests for launching and tearing down tunnels and background commands."""

from __future__ import annotations

import socket
import subprocess
import time
from pathlib import Path

import pytest

from backup_runctl import supervisor as supervisor_module
from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.config import AlertSettings, ExitCode, InternalError, OnError
from backup_runctl.supervisor import (
    RemoteCommandHandle,
    Supervisor,
    TunnelError,
    TunnelHandle,
    port_is_open,
)

SLEEP = ["sleep", "30"]


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the once-a-second tunnel poll fast."""
    real_sleep = time.sleep
    monkeypatch.setattr(supervisor_module.time, "sleep", lambda _s: real_sleep(0.01))


@pytest.fixture
def children(monkeypatch: pytest.MonkeyPatch) -> list[subprocess.Popen]:
    """Every child process started during the test."""
    started: list[subprocess.Popen] = []

    class RecordingPopen(subprocess.Popen):
        def __init__(self, *args, **kwargs) -> None:
            super().__init__(*args, **kwargs)
            started.append(self)

    monkeypatch.setattr(supervisor_module.subprocess, "Popen", RecordingPopen)
    return started


@pytest.fixture
def listener():
    """A local port that accepts connections."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(5)
    yield sock.getsockname()[1]
    sock.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _supervisor(tmp_path: Path, sent: list[str]) -> Supervisor:
    alerts = AlertChannel(
        AlertSettings(statuslog=str(tmp_path / "status.log"), mailto="root"),
        body=lambda: "",
        mailer=lambda _subject, _to, body: sent.append(body),
    )
    return Supervisor(ExitCallbackRegistry(), alerts)


def test_port_is_open(listener: int) -> None:
    """The probe sees a listening socket and nothing on a free port."""
    assert port_is_open(listener)
    assert not port_is_open(_free_port())


def test_open_and_close_tunnel(tmp_path: Path, listener: int) -> None:
    """A tunnel whose port opens is returned alive and registered for cleanup."""
    sent: list[str] = []
    sup = _supervisor(tmp_path, sent)
    handle = sup.open_tunnel("db", SLEEP, listener, 5)
    assert isinstance(handle, TunnelHandle)
    assert handle.alive
    assert len(sup.registry) == 1
    assert sup.handles == {"tunnel": handle}
    assert "SSH tunnel for db established" in (tmp_path / "status.log").read_text()

    sup.close_tunnel(handle)
    assert not handle.alive
    assert sup.handles == {}
    assert handle.process is not None
    assert handle.process.returncode is not None
    assert len(sup.registry) == 0

    sup.close_tunnel(handle)
    statuslog = (tmp_path / "status.log").read_text()
    assert "SSH tunnel for db closed" in statuslog
    assert "SSH tunnel for db was already closed" in statuslog
    assert sent == []


def test_tunnel_timeout(tmp_path: Path, children: list[subprocess.Popen]) -> None:
    """A tunnel that never opens its port is killed after the timeout."""
    sent: list[str] = []
    sup = _supervisor(tmp_path, sent)
    error = sup.open_tunnel("db", SLEEP, _free_port(), 3, on_error=OnError.PHASE)
    assert isinstance(error, TunnelError)
    assert error.timed_out
    assert "could not establish SSH tunnel for db (timed out)" in error.message
    assert len(sent) == 1
    assert "(timed out)" in sent[0]
    assert len(sup.registry) == 0
    assert sup.handles == {}
    assert len(children) == 1
    assert children[0].poll() is not None


def test_tunnel_process_exits(tmp_path: Path) -> None:
    """A tunnel process that dies is reported with its status code."""
    sent: list[str] = []
    sup = _supervisor(tmp_path, sent)
    error = sup.open_tunnel(
        "files",
        ["sh", "-c", "exit 1"],
        _free_port(),
        1000,
        on_error=OnError.PHASE,
    )
    assert isinstance(error, TunnelError)
    assert not error.timed_out
    assert error.returncode == 1
    assert "could not establish SSH tunnel for files (status code 1)" in error.message
    assert "(status code 1)" in sent[0]


def test_tunnel_failure_exits(tmp_path: Path) -> None:
    """With OnError.EXIT a failed tunnel ends the program with the tunnel exit code."""
    sent: list[str] = []
    sup = _supervisor(tmp_path, sent)
    with pytest.raises(SystemExit) as exc:
        sup.open_tunnel("db", ["sh", "-c", "exit 2"], _free_port(), 1000)
    assert exc.value.code == ExitCode.SSH_TUNNEL_ERROR
    assert len(sent) == 1


def test_exit_kills_children_before_older_callbacks(tmp_path: Path, listener: int) -> None:
    """The tunnel, registered last, is dead by the time earlier callbacks run."""
    sup = _supervisor(tmp_path, [])
    handles: dict[str, TunnelHandle] = {}
    seen: list[int | None] = []

    def release_lock() -> None:
        process = handles["tunnel"].process
        assert process is not None
        seen.append(process.poll())

    sup.registry.register(release_lock)
    handle = sup.open_tunnel("db", SLEEP, listener, 5)
    assert isinstance(handle, TunnelHandle)
    handles["tunnel"] = handle

    with pytest.raises(SystemExit):
        sup.registry.exit(0)
    assert len(seen) == 1
    assert seen[0] is not None
    assert not handle.alive


def test_remote_background(tmp_path: Path) -> None:
    """Background commands are killed on request, and killing twice is safe."""
    sup = _supervisor(tmp_path, [])
    handle = sup.run_remote_background("remote df", SLEEP)
    assert isinstance(handle, RemoteCommandHandle)
    assert handle.alive
    assert len(sup.registry) == 1

    returncode = sup.kill_remote_background(handle)
    assert returncode is not None
    assert returncode < 0
    assert not handle.alive
    assert len(sup.registry) == 0
    assert "remote" not in sup.handles
    assert sup.kill_remote_background(handle) == returncode


def test_remote_background_already_exited(tmp_path: Path) -> None:
    """A command that finished on its own is reaped without a signal."""
    sup = _supervisor(tmp_path, [])
    handle = sup.run_remote_background("true", ["true"])
    assert handle.process is not None
    handle.process.wait()
    assert sup.kill_remote_background(handle) == 0
    assert len(sup.registry) == 0


def test_output_receives_child_output(tmp_path: Path) -> None:
    """Children write into the output stream."""
    with open(tmp_path / "out.log", "w") as output:
        alerts = AlertChannel(AlertSettings(), mailer=lambda *_: None)
        sup = Supervisor(ExitCallbackRegistry(), alerts, output=output)
        handle = sup.run_remote_background("echo", ["sh", "-c", "echo hello; echo oops >&2"])
        assert handle.process is not None
        handle.process.wait()
        sup.kill_remote_background(handle)
    text = (tmp_path / "out.log").read_text()
    assert "running remote command for echo" in text
    assert "hello" in text
    assert "oops" in text


def test_invalid_slot(tmp_path: Path) -> None:
    """Slot names must be identifiers."""
    sup = _supervisor(tmp_path, [])
    with pytest.raises(InternalError) as exc:
        sup.run_remote_background("bad", SLEEP, slot="not a name")
    assert exc.value.exit_code == ExitCode.BAD_VARIABLE_NAME
    assert len(sup.registry) == 0
