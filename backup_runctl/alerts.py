"""Operator-facing notifications: terminal, status log, syslog and email."""
from __future__ import annotations

import os
import socket
import subprocess
import time
from typing import Callable

from backup_runctl.config import AlertSettings
from backup_runctl.log import log_info, log_warn

Mailer = Callable[[str, list[str], str], None]


def mailx(subject: str, recipients: list[str], body: str) -> None:
    """Send ``body`` with the ``mailx`` command."""
    subprocess.run(
        ["mailx", "-s", subject, *recipients],
        input=body,
        text=True,
        check=True,
    )


def logger(message: str, priority: str = "", tag: str = "") -> None:
    """Send ``message`` to syslog with the ``logger`` command."""
    cmd = ["logger", "-i"]
    if priority:
        cmd += ["-p", priority]
    if tag:
        cmd += ["-t", tag]
    subprocess.run([*cmd, "--", message], check=True)


def default_body() -> str:
    """Context appended to every alert email."""
    return f"\nhost: {socket.gethostname()}\npid: {os.getpid()}\n"


class AlertChannel:
    """Deliver status lines and alerts according to :class:`AlertSettings`.

    ``body`` supplies the text appended to alert emails; ``mailer`` and
    ``syslogger`` can be replaced to deliver somewhere other than the
    ``mailx`` and ``logger`` commands.
    """

    def __init__(
        self,
        settings: AlertSettings,
        *,
        body: Callable[[], str] = default_body,
        mailer: Mailer = mailx,
        syslogger: Callable[[str, str, str], None] = logger,
    ) -> None:
        self.settings = settings
        self.body = body
        self.mailer = mailer
        self.syslogger = syslogger

    @property
    def recipients(self) -> list[str]:
        return self.settings.mailto.replace(",", " ").split()

    def _wants_syslog(self, scope: str) -> bool:
        usesyslog = self.settings.usesyslog
        if scope == "all":
            return usesyslog == "all"
        return usesyslog != "no"

    def _syslog(self, message: str, priority: str, scope: str) -> None:
        if not self._wants_syslog(scope):
            return
        try:
            self.syslogger(message, priority, self.settings.syslogtag)
        except (OSError, subprocess.CalledProcessError) as e:
            log_warn(f"could not send syslog message: {e}")

    def log_statlog(self, message: str) -> None:
        """Append a timestamped, pid-tagged line to the status log."""
        if not self.settings.statuslog:
            return
        with open(self.settings.statuslog, "a") as f:
            f.write(f"{time.ctime()} [{os.getpid()}]: {message}\n")

    def log_status(self, message: str, scope: str = "", *, quiet: bool = False) -> None:
        """Log a status message to syslog, stdout and the status log."""
        self._syslog(message, self.settings.syslogstat, scope)
        if not (quiet or self.settings.quiet):
            log_info(message)
        self.log_statlog(message)

    def log_alert(self, message: str, scope: str = "", *, quiet: bool = False) -> None:
        """Log an alert message to syslog, stderr and the status log."""
        self._syslog(message, self.settings.syslogerr, scope)
        if not (quiet or self.settings.quiet):
            log_warn(message)
        self.log_statlog(message)

    def log_status_quiet(self, message: str, scope: str = "") -> None:
        """Like :meth:`log_status`, but never to the terminal."""
        self.log_status(message, scope, quiet=True)

    def log_alert_quiet(self, message: str, scope: str = "") -> None:
        """Like :meth:`log_alert`, but never to the terminal."""
        self.log_alert(message, scope, quiet=True)

    def send_alert(self, message: str, *, log: bool = False) -> None:
        """Email ``message`` plus the context body, and log that it was sent.

        With ``log=True`` the message itself is also logged as an alert.
        The "sent" line is logged even if delivery failed, after a warning.
        """
        if not self.settings.suppressemail:
            try:
                self.mailer(self.settings.subject, self.recipients, f"{message}\n{self.body()}")
            except (OSError, subprocess.CalledProcessError) as e:
                self.log_alert(f"alert email delivery failed: {e}")

        if log:
            self.log_alert(message)

        if not self.settings.suppressemail:
            self.log_alert(f"alert email sent to {self.settings.mailto}")
