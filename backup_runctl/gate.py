"""Decide whether a run may start: interval check, lock directory and lock alerts.

The lock is a directory because ``mkdir`` is atomic: of any number of
concurrent invocations exactly one creates it. Semaphore files inside
the lock directory record manual state (disabled, alerts silenced), so
they disappear together with the lock.
"""
from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from typing import Callable, NamedTuple, NoReturn

from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.config import ExitCode, GateSettings

DISABLED_MARKER = "scriptdisabled"
SILENCED_MARKER = "lfalertssilenced"
LOG_FIFO = "logfifo"


class RunState(NamedTuple):
    """The on-disk state shared between invocations."""

    lock_dir: str
    started_file: str
    alert_file: str

    @property
    def disabled_marker(self) -> str:
        return os.path.join(self.lock_dir, DISABLED_MARKER)

    @property
    def silenced_marker(self) -> str:
        return os.path.join(self.lock_dir, SILENCED_MARKER)

    @property
    def log_fifo(self) -> str:
        return os.path.join(self.lock_dir, LOG_FIFO)

    @classmethod
    def from_settings(cls, settings: GateSettings) -> RunState:
        return cls(settings.lockfile, settings.startedfile, settings.alertfile)


def newer_than(path: str, minutes: int, now: float | None = None) -> bool:
    """True if ``path`` was modified strictly less than ``minutes`` ago."""
    if now is None:
        now = time.time()
    return now - os.stat(path).st_mtime < minutes * 60


def touch(path: str) -> None:
    """Create ``path`` or update its modification time."""
    Path(path).touch()


class RunGate:
    """The lock/interval/disable state machine for one invocation."""

    def __init__(
        self,
        settings: GateSettings,
        registry: ExitCallbackRegistry,
        alerts: AlertChannel,
        *,
        exit_code: Callable[[ExitCode], int] = int,
    ) -> None:
        self.settings = settings
        self.state = RunState.from_settings(settings)
        self.registry = registry
        self.alerts = alerts
        self.exit_code = exit_code

    def _exit(self, code: ExitCode) -> NoReturn:
        self.registry.exit(self.exit_code(code))

    def _lock_message(self) -> str:
        purpose, plural = self.settings.purpose, self.settings.purpose_plural
        if os.path.isfile(self.state.disabled_marker):
            return f"{plural} have been manually disabled; exiting"
        return f"could not create lockfile (previous {purpose} still running or failed?); exiting"

    def check_status(self) -> None:
        """Return if this run may proceed; otherwise log, maybe alert, and exit.

        Exits with ``NO_ERROR`` when the run interval has not expired and
        with ``LOCKFILE_ERROR`` when the lock is held or the runs are
        disabled.
        """
        self.check_interval()
        if self.acquire_lock():
            return
        self.handle_contention()

    def check_interval(self) -> None:
        """Exit with ``NO_ERROR`` if the previous run started less than ``runevery`` minutes ago."""
        purpose = self.settings.purpose
        if self.settings.runevery == 0:
            self.alerts.log_status("interval checking has been disabled; continuing")
            return
        started = self.state.started_file
        if os.path.isfile(started) and newer_than(started, self.settings.runevery):
            self.alerts.log_status(f"{purpose} interval has not expired; exiting")
            self._exit(ExitCode.NO_ERROR)
        self.alerts.log_status(f"{purpose} interval has expired; continuing")

    def acquire_lock(self) -> bool:
        """Atomically create the lock directory; True if we now hold it."""
        try:
            os.mkdir(self.state.lock_dir)
        except FileExistsError:
            return False
        self.registry.register(self.release_lock)
        if os.path.isfile(self.state.alert_file):
            os.remove(self.state.alert_file)
            self.alerts.send_alert("lockfile created; cancelling previous alert status", log=True)
        return True

    def release_lock(self) -> None:
        """Remove the lock directory, unless the runs were disabled meanwhile."""
        if os.path.isfile(self.state.disabled_marker):
            plural = self.settings.purpose_plural
            self.alerts.log_status(f"{plural} are disabled; leaving the lockfile in place")
            return
        if os.path.isdir(self.state.lock_dir):
            shutil.rmtree(self.state.lock_dir)

    def handle_contention(self) -> NoReturn:
        """Log and (rate-limited) email that the lock is held, then exit."""
        message = self._lock_message()
        self.alerts.log_alert(message)

        if not os.path.isfile(self.state.alert_file):
            touch(self.state.alert_file)
            self.alerts.send_alert(message)
            self._exit(ExitCode.LOCKFILE_ERROR)

        if self.settings.ifrunning == 0:
            self.alerts.log_alert("ifrunning=0; no email sent")
        elif os.path.isfile(self.state.silenced_marker):
            self.alerts.log_alert("alerts have been silenced; no email sent")
        elif newer_than(self.state.alert_file, self.settings.ifrunning):
            self.alerts.log_alert("alert interval has not expired; no email sent")
        else:
            touch(self.state.alert_file)
            self.alerts.send_alert(message)
        self._exit(ExitCode.LOCKFILE_ERROR)

    def start(self) -> None:
        """Record that a run has started."""
        self.alerts.log_status(f"starting {self.settings.purpose}")
        touch(self.state.started_file)

    def finish(self) -> None:
        self.alerts.log_status(f"{self.settings.purpose} finished")

    # -------------------------------------------------------------------------
    # Manual actions; each prints what happened and exits.
    # -------------------------------------------------------------------------

    def _manual_done(self, printed: list[str], status: str) -> NoReturn:
        for line in printed:
            print(line)
        # the terminal already got the message above
        self.alerts.log_status_quiet(status)
        self._exit(ExitCode.NO_ERROR)

    def _manual_noop(self, message: str) -> NoReturn:
        print(message)
        self._exit(ExitCode.STARTUP_ERROR)

    def silence(self) -> NoReturn:
        """Stop repeated lock alerts until the lock directory is removed."""
        lock_dir = self.state.lock_dir
        if not os.path.isdir(lock_dir):
            self._manual_noop("lockfile directory doesn't exist; nothing to silence")
        if os.path.isfile(self.state.silenced_marker):
            self._manual_noop("lockfile alerts were already silenced")
        touch(self.state.silenced_marker)
        self._manual_done(
            ["lockfile alerts have been silenced"],
            f"lockfile alerts have been silenced, lockfile='{lock_dir}'",
        )

    def unsilence(self) -> NoReturn:
        """Allow repeated lock alerts again."""
        if not os.path.isfile(self.state.silenced_marker):
            self._manual_noop("lockfile alerts were already unsilenced")
        os.remove(self.state.silenced_marker)
        self._manual_done(
            ["lockfile alerts have been unsilenced"],
            f"lockfile alerts have been unsilenced, lockfile='{self.state.lock_dir}'",
        )

    def disable(self) -> NoReturn:
        """Prevent future runs; a running one finishes but keeps the lock."""
        article, purpose, plural = (
            self.settings.article,
            self.settings.purpose,
            self.settings.purpose_plural,
        )
        if os.path.isfile(self.state.disabled_marker):
            self._manual_noop(f"{plural} were already disabled")
        printed = []
        if os.path.isdir(self.state.lock_dir):
            printed += [
                f"lockfile directory exists; {article} {purpose} is probably running",
                f"disable command will take effect after the current {purpose} finishes",
            ]
        os.makedirs(self.state.lock_dir, exist_ok=True)
        touch(self.state.disabled_marker)
        printed.append(f"{plural} have been disabled; remember to re-enable them later!")
        self._manual_done(
            printed,
            f"{plural} have been disabled, lockfile='{self.state.lock_dir}'",
        )

    def enable(self) -> NoReturn:
        """Undo :meth:`disable`; the lock directory itself is left for ``unlock``."""
        article, purpose, plural = (
            self.settings.article,
            self.settings.purpose,
            self.settings.purpose_plural,
        )
        if not os.path.isfile(self.state.disabled_marker):
            self._manual_noop(f"{plural} were already enabled")
        os.remove(self.state.disabled_marker)
        self._manual_done(
            [
                f"{plural} have been re-enabled",
                f"if {article} {purpose} is not currently running, you should now remove the lockfile",
                "with the unlock command",
            ],
            f"{plural} have been re-enabled, lockfile='{self.state.lock_dir}'",
        )

    def clear_lock(self, confirm: Callable[[], str] | None = None) -> NoReturn:
        """Forcibly remove the lock directory after a typed 'y'."""
        article, purpose = self.settings.article, self.settings.purpose
        lock_dir = self.state.lock_dir
        if not os.path.isdir(lock_dir):
            self._manual_noop("lockfile has already been removed")
        print(f"WARNING: the lockfile should only be removed if you're sure {article} {purpose} is not")
        print("currently running.")
        print("Type 'y' (without the quotes) to continue.")
        answer = confirm() if confirm is not None else input()
        if answer.strip() != "y":
            print("Exiting.")
            self._exit(ExitCode.NO_ERROR)
        shutil.rmtree(lock_dir)
        self._manual_done(
            ["lockfile has been removed"],
            f"lockfile '{lock_dir}' has been manually removed",
        )
