"""Tests for status logging and alert delivery."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from backup_runctl.alerts import AlertChannel
from backup_runctl.config import AlertSettings


class FakeMailer:
    """Collects the emails that would have been sent."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str, list[str], str]] = []
        self.fail = fail

    def __call__(self, subject: str, recipients: list[str], body: str) -> None:
        if self.fail:
            raise subprocess.CalledProcessError(1, ["mailx"])
        self.sent.append((subject, recipients, body))


def _channel(tmp_path: Path, **kwargs) -> tuple[AlertChannel, FakeMailer, list[tuple[str, str, str]]]:
    settings = AlertSettings(
        statuslog=str(tmp_path / "status.log"),
        mailto="root, ops@example.com",
        **kwargs,
    )
    mailer = FakeMailer()
    syslog: list[tuple[str, str, str]] = []
    channel = AlertChannel(
        settings,
        body=lambda: "context\n",
        mailer=mailer,
        syslogger=lambda *args: syslog.append(args),
    )
    return channel, mailer, syslog


def test_status_log_lines(tmp_path: Path) -> None:
    """Status log lines carry the pid."""
    channel, _, _ = _channel(tmp_path)
    channel.log_status("hello")
    channel.log_alert("oops")
    lines = (tmp_path / "status.log").read_text().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith(f"[{os.getpid()}]: hello")
    assert lines[1].endswith(f"[{os.getpid()}]: oops")


def test_no_status_log(tmp_path: Path) -> None:
    """Without a status log nothing is written."""
    channel = AlertChannel(AlertSettings(), mailer=FakeMailer())
    channel.log_status("hello")
    assert os.listdir(tmp_path) == []


def test_quiet(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    """Quiet settings keep the terminal silent."""
    channel, _, _ = _channel(tmp_path, quiet=True)
    channel.log_status("status message")
    channel.log_alert("alert message")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == ""


def test_not_quiet(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    """Status goes to stdout and alerts to stderr."""
    channel, _, _ = _channel(tmp_path, quiet=False)
    channel.log_status("status message")
    channel.log_alert("alert message")
    channel.log_status_quiet("hidden status")
    channel.log_alert_quiet("hidden alert")
    captured = capsys.readouterr()
    assert "status message" in captured.out
    assert "alert message" in captured.err
    assert "hidden" not in captured.out + captured.err
    assert "hidden status" in (tmp_path / "status.log").read_text()


@pytest.mark.parametrize(
    ("usesyslog", "normal", "all_scope"),
    [("no", 0, 0), ("yes", 1, 0), ("all", 1, 1)],
)
def test_syslog_scopes(tmp_path: Path, usesyslog: str, normal: int, all_scope: int) -> None:
    """Messages with scope 'all' reach syslog only when usesyslog=all."""
    channel, _, syslog = _channel(tmp_path, usesyslog=usesyslog, syslogtag="tag")
    channel.log_status("normal")
    assert len(syslog) == normal
    syslog.clear()
    channel.log_status("verbose", "all")
    assert len(syslog) == all_scope
    if syslog:
        assert syslog[0] == ("verbose", "user.info", "tag")


def test_syslog_priorities(tmp_path: Path) -> None:
    """Alerts use the error priority."""
    channel, _, syslog = _channel(tmp_path, usesyslog="yes")
    channel.log_alert("bad")
    assert syslog == [("bad", "user.err", "backup-runctl")]


def test_send_alert(tmp_path: Path) -> None:
    """Alerts are emailed with the context body and the sending is logged."""
    channel, mailer, _ = _channel(tmp_path, subject="subj")
    channel.send_alert("something broke")
    assert mailer.sent == [("subj", ["root", "ops@example.com"], "something broke\ncontext\n")]
    statuslog = (tmp_path / "status.log").read_text()
    assert "alert email sent to root, ops@example.com" in statuslog
    assert "something broke" not in statuslog


def test_send_alert_and_log(tmp_path: Path) -> None:
    """With log=True the message is also logged."""
    channel, mailer, _ = _channel(tmp_path)
    channel.send_alert("something broke", log=True)
    assert len(mailer.sent) == 1
    lines = (tmp_path / "status.log").read_text().splitlines()
    assert lines[0].endswith("something broke")
    assert lines[1].endswith("alert email sent to root, ops@example.com")


def test_send_alert_suppressed(tmp_path: Path) -> None:
    """Suppressed email means no mail and no 'sent' line."""
    channel, mailer, _ = _channel(tmp_path, suppressemail=True)
    channel.send_alert("something broke", log=True)
    assert mailer.sent == []
    statuslog = (tmp_path / "status.log").read_text()
    assert "something broke" in statuslog
    assert "alert email sent" not in statuslog


def test_send_alert_delivery_failure(tmp_path: Path) -> None:
    """A failing mailer is logged, not raised."""
    settings = AlertSettings(statuslog=str(tmp_path / "status.log"), mailto="root")
    channel = AlertChannel(settings, mailer=FakeMailer(fail=True))
    channel.send_alert("something broke")
    statuslog = (tmp_path / "status.log").read_text()
    assert "alert email delivery failed" in statuslog
    assert "alert email sent to root" in statuslog
