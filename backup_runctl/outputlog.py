"""The output log: one stream that collects the output of every command we run.

Commands write into a named pipe in the lock directory; a reader child
copies the pipe into the output log file (and the terminal, unless
quiet). Old output logs are rotated and pruned before a new one starts.
"""
from __future__ import annotations

import errno
import os
import subprocess
import time
from datetime import datetime
from typing import IO

from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.config import Layout, OutputLogSettings
from backup_runctl.gate import touch
from backup_runctl.naming import ArtifactFamily, artifact_path
from backup_runctl.rotation import rotate_prune


def output_log_family(settings: OutputLogSettings) -> ArtifactFamily:
    return ArtifactFamily(settings.outputlog, settings.sep)


def rotate_prune_output_logs(settings: OutputLogSettings, alerts: AlertChannel) -> list[str]:
    """Rotate and prune old output logs; returns the pruned paths."""
    if not settings.outputlog:
        alerts.log_status("output logging is off; not rotating logs")
        return []
    if settings.layout == Layout.APPEND:
        alerts.log_status("output logs are being appended to a single file; not rotating logs")
        return []
    alerts.log_status("rotating logs")
    return rotate_prune(
        settings.layout.value,
        output_log_family(settings),
        settings.numlogs,
        settings.dayslogs,
    )


def reader_command(path: str, fifo: str, *, quiet: bool, truncate: bool) -> list[str]:
    """Return the shell command copying ``fifo`` into ``path`` (and maybe stdout)."""
    if not path:
        script = 'exec cat > /dev/null < "$2"' if quiet else 'exec cat < "$2"'
    elif quiet:
        script = 'exec cat > "$1" < "$2"' if truncate else 'exec cat >> "$1" < "$2"'
    else:
        script = 'exec tee "$1" < "$2"' if truncate else 'exec tee -a "$1" < "$2"'
    return ["sh", "-c", script, "sh", path, fifo]


class OutputLog:
    """The named pipe, its reader child and the writer end we hand to commands."""

    def __init__(
        self,
        settings: OutputLogSettings,
        fifo: str,
        registry: ExitCallbackRegistry,
        alerts: AlertChannel,
        *,
        quiet: bool = True,
    ) -> None:
        self.settings = settings
        self.fifo = fifo
        self.registry = registry
        self.alerts = alerts
        self.quiet = quiet
        self.filename = ""
        self.stream: IO[str] | None = None
        self.reader: subprocess.Popen[bytes] | None = None

    def start(self, now: datetime | None = None) -> IO[str]:
        """Rotate old logs, start the reader and return the stream to write to."""
        settings = self.settings
        if settings.outputlog:
            self.filename = artifact_path(
                output_log_family(settings),
                settings.layout.value,
                settings.date_format,
                now,
            )
            if settings.layout == Layout.DATE:
                # the new log must exist to be counted when pruning
                touch(self.filename)

        os.mkfifo(self.fifo)
        rotate_prune_output_logs(settings, self.alerts)

        truncate = settings.layout == Layout.SINGLE
        self.reader = subprocess.Popen(  # noqa: S603
            reader_command(self.filename, self.fifo, quiet=self.quiet, truncate=truncate),
        )
        self.registry.register(self.stop)
        self.stream = os.fdopen(self._open_writer(), "w")
        return self.stream

    def _open_writer(self) -> int:
        """Open the writing end of the pipe once the reader has opened its end.

        A non-blocking open fails with ENXIO until there is a reader; if
        the reader exits first (e.g. it could not open the log file) we
        raise instead of waiting forever.
        """
        assert self.reader is not None
        while True:
            try:
                fd = os.open(self.fifo, os.O_WRONLY | os.O_NONBLOCK)
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise
            else:
                os.set_blocking(fd, True)
                return fd
            returncode = self.reader.poll()
            if returncode is not None:
                msg = f"output log reader exited with status {returncode} before opening the pipe"
                raise OSError(msg)
            time.sleep(0.01)

    def write(self, line: str) -> None:
        """Write one line into the output log."""
        if self.stream is not None:
            self.stream.write(f"{line}\n")
            self.stream.flush()

    def stop(self) -> None:
        """Close the pipe, let the reader drain it and remove the pipe."""
        if self.stream is not None:
            self.stream.close()
            self.stream = None
        if self.reader is not None:
            self.reader.wait()
            self.reader = None
        if os.path.exists(self.fifo):
            os.remove(self.fifo)
        self.registry.unregister(self.stop)
