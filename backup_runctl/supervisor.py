"""Lifecycle of the child processes we launch: ssh tunnels and background remote commands.

Every child is registered with the exit-callback stack as soon as it is
forked, so it is killed and reaped on any controlled exit, and we only
ever signal processes we started ourselves.
"""
from __future__ import annotations

import socket
import subprocess
import time
from dataclasses import dataclass, field
from typing import IO, Any, Callable

from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.config import ExitCode, InternalError, OnError

Probe = Callable[[int], bool]


def port_is_open(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """Return True if something accepts TCP connections on ``host:port``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@dataclass
class ProcessHandle:
    """A child process we forked, tracked until it is confirmed dead."""

    label: str
    slot: str
    process: subprocess.Popen[Any] | None = field(default=None, repr=False)
    pid: int | None = None
    returncode: int | None = None

    @property
    def alive(self) -> bool:
        """True while we believe the process is running."""
        return self.pid is not None

    def kill(self) -> int | None:
        """Terminate and reap the process; safe to call more than once."""
        if self.process is None or self.pid is None:
            return self.returncode
        if self.process.poll() is None:
            self.process.terminate()
        self.returncode = self.process.wait()
        self.pid = None
        return self.returncode


class TunnelHandle(ProcessHandle):
    """An ssh port-forwarding process."""


class RemoteCommandHandle(ProcessHandle):
    """A backgrounded remote command."""


@dataclass
class TunnelError:
    """Why a tunnel could not be established."""

    label: str
    message: str
    timed_out: bool
    returncode: int | None = None


class Supervisor:
    """Launch, health-check and tear down child processes.

    ``output`` receives the children's stdout and stderr (normally the
    output log); ``probe`` checks whether a local tunnel port is open.
    """

    def __init__(
        self,
        registry: ExitCallbackRegistry,
        alerts: AlertChannel,
        *,
        output: IO[Any] | None = None,
        probe: Probe = port_is_open,
        tunnel_exit_code: int = ExitCode.SSH_TUNNEL_ERROR,
    ) -> None:
        self.registry = registry
        self.alerts = alerts
        self.output = output
        self.probe = probe
        self.tunnel_exit_code = tunnel_exit_code
        self.handles: dict[str, ProcessHandle] = {}

    def _note(self, message: str) -> None:
        """Log to the status log and echo into the output stream."""
        self.alerts.log_status_quiet(message)
        if self.output is not None:
            self.output.write(f"{message}\n")
            self.output.flush()

    def _launch(self, handle: ProcessHandle, cmd: list[str]) -> ProcessHandle:
        if not handle.slot.isidentifier():
            msg = f"invalid process slot name '{handle.slot}'"
            raise InternalError(msg, ExitCode.BAD_VARIABLE_NAME)
        handle.process = subprocess.Popen(  # noqa: S603
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=self.output,
            stderr=subprocess.STDOUT if self.output is not None else None,
        )
        handle.pid = handle.process.pid
        self.registry.register(handle.kill)
        self.handles[handle.slot] = handle
        return handle

    def _release(self, handle: ProcessHandle) -> int | None:
        """Kill and reap ``handle`` and drop its exit callback."""
        returncode = handle.kill()
        self.registry.unregister(handle.kill)
        if self.handles.get(handle.slot) is handle:
            del self.handles[handle.slot]
        return returncode

    def open_tunnel(
        self,
        label: str,
        cmd: list[str],
        local_port: int,
        timeout: int,
        *,
        on_error: OnError = OnError.EXIT,
        slot: str = "tunnel",
    ) -> TunnelHandle | TunnelError:
        """Start a tunnel and wait up to ``timeout`` seconds for ``local_port`` to open.

        On failure an alert is sent that says whether the tunnel timed out
        or exited with a status code; then, with ``OnError.EXIT`` the
        program exits with the tunnel exit code, otherwise a
        :class:`TunnelError` is returned so the caller can skip this phase.
        """
        self._note(f"running SSH tunnel command for {label}")
        handle = self._launch(TunnelHandle(label, slot), cmd)
        assert isinstance(handle, TunnelHandle)
        assert handle.process is not None

        waited = 0
        while True:
            time.sleep(1)
            if self.probe(local_port):
                break

            if handle.process.poll() is None:
                waited += 1
                if waited < timeout:
                    continue
                self._release(handle)
                error = TunnelError(
                    label,
                    f"could not establish SSH tunnel for {label} (timed out); exiting",
                    timed_out=True,
                )
            else:
                returncode = self._release(handle)
                error = TunnelError(
                    label,
                    f"could not establish SSH tunnel for {label} (status code {returncode}); exiting",
                    timed_out=False,
                    returncode=returncode,
                )
            self.alerts.send_alert(error.message, log=True)
            if on_error == OnError.EXIT:
                self.registry.exit(self.tunnel_exit_code)
            return error

        self.alerts.log_status(f"SSH tunnel for {label} established")
        return handle

    def close_tunnel(self, handle: TunnelHandle) -> None:
        """Kill the tunnel, or note that it was already closed."""
        if handle.alive:
            self._release(handle)
            self.alerts.log_status(f"SSH tunnel for {handle.label} closed")
        else:
            self.alerts.log_status(f"SSH tunnel for {handle.label} was already closed")

    def run_remote_background(
        self,
        label: str,
        cmd: list[str],
        *,
        slot: str = "remote",
    ) -> RemoteCommandHandle:
        """Start a remote command in the background; it is killed on exit if still running."""
        self._note(f"running remote command for {label}")
        handle = self._launch(RemoteCommandHandle(label, slot), cmd)
        assert isinstance(handle, RemoteCommandHandle)
        return handle

    def kill_remote_background(self, handle: RemoteCommandHandle) -> int | None:
        """Kill and reap a background remote command; safe if it already exited."""
        if not handle.alive:
            return self._release(handle)
        returncode = self._release(handle)
        self.alerts.log_status(f"remote command for {handle.label} stopped")
        return returncode
