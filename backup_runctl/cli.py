"""Command-line interface for backup-runctl."""
from __future__ import annotations

import argparse
import os
import signal
import socket
import sys
from dataclasses import replace
from typing import TYPE_CHECKING, NoReturn

from backup_runctl import __version__
from backup_runctl import log as _log
from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.commands import check_external_commands
from backup_runctl.config import (
    DEFAULT_CONFIG_PATH,
    PROG_NAME,
    ConfigError,
    ExitCode,
    InternalError,
    Settings,
    describe,
    load_settings,
    write_blank_config,
)
from backup_runctl.gate import RunGate
from backup_runctl.job import BackupJob
from backup_runctl.log import log_error, log_info, style

if TYPE_CHECKING:
    from types import FrameType

ACTIONS = (
    "run",
    "silence",
    "unsilence",
    "disable",
    "enable",
    "unlock",
    "check",
    "config",
    "blank-config",
)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and return the parsed arguments."""
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Run scheduled backups with locking, log rotation and alerting.",
    )
    parser.add_argument(
        "action",
        nargs="?",
        default="run",
        choices=ACTIONS,
        help="What to do. Default: run",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help=f"Path to the INI config file. Default: {DEFAULT_CONFIG_PATH}",
    )
    parser.add_argument(
        "--no-config",
        action="store_true",
        help="Don't read a config file; all settings come from --set.",
    )
    parser.add_argument(
        "-s",
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override a config setting; may be given more than once.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Echo every command that is run and its output.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def alert_body(settings: Settings) -> str:
    """Context appended to alert emails."""
    lines = [
        "",
        f"program: {PROG_NAME}",
        f"host: {socket.gethostname()}",
        f"pid: {os.getpid()}",
        f"lockfile: {settings.gate.lockfile}",
        f"startedfile: {settings.gate.startedfile}",
        f"alertfile: {settings.gate.alertfile}",
        f"outputlog: {settings.outputlog.outputlog or '(none)'}",
    ]
    return "\n".join(lines) + "\n"


def install_signal_handlers(registry: ExitCallbackRegistry) -> None:
    """Make SIGINT and SIGTERM run the exit callbacks."""

    def terminate(signal_number: int, _frame: FrameType | None) -> None:
        log_info(f"{signal.Signals(signal_number).name} caught.")
        registry.exit(ExitCode.STARTUP_ERROR)

    signal.signal(signal.SIGINT, terminate)
    signal.signal(signal.SIGTERM, terminate)


def check_commands() -> int:
    """Print which external commands are in the PATH."""
    found = check_external_commands()
    width = max(len(name) for name in found)
    log_info("checking for commands in the PATH...")
    for name, present in found.items():
        status = style("was found", "green") if present else style("was NOT found", "red")
        print(f"{name:<{width}} {status}")
    return ExitCode.NO_ERROR


def main(argv: list[str] | None = None) -> NoReturn:
    """Main function."""
    args = parse_arguments(argv)
    _log.VERBOSE = args.verbose

    if args.action == "check":
        sys.exit(check_commands())
    if args.action == "blank-config":
        try:
            write_blank_config(args.config)
        except ConfigError as e:
            log_error(str(e))
            sys.exit(ExitCode.STARTUP_ERROR)
        log_info(f"Wrote a blank config file to '{args.config}'")
        sys.exit(ExitCode.NO_ERROR)

    try:
        settings = load_settings(None if args.no_config else args.config, args.overrides)
    except ConfigError as e:
        log_error(str(e))
        sys.exit(ExitCode.STARTUP_ERROR)

    if args.action == "config":
        for line in describe(settings):
            print(line)
        sys.exit(settings.exit_code(ExitCode.NO_ERROR))

    registry = ExitCallbackRegistry()
    install_signal_handlers(registry)
    alerts = AlertChannel(settings.alerts, body=lambda: alert_body(settings))
    try:
        if args.action == "run":
            BackupJob(settings, registry, alerts).run()
        manual(args.action, settings, registry, alerts)
    except InternalError as e:
        alerts.send_alert(f"internal error: {e}; exiting", log=True)
        registry.exit(settings.exit_code(e.exit_code))
    except Exception as e:  # noqa: BLE001
        alerts.send_alert(f"unexpected error: {e}; exiting", log=True)
        registry.exit(settings.exit_code(ExitCode.STARTUP_ERROR))


def manual(
    action: str,
    settings: Settings,
    registry: ExitCallbackRegistry,
    alerts: AlertChannel,
) -> NoReturn:
    """Run one of the manual lock-administration actions."""
    # print to the terminal ourselves; only the status log gets the details
    quiet_alerts = AlertChannel(
        replace(settings.alerts, quiet=True),
        body=alerts.body,
        mailer=alerts.mailer,
        syslogger=alerts.syslogger,
    )
    gate = RunGate(settings.gate, registry, quiet_alerts, exit_code=settings.exit_code)
    actions = {
        "silence": gate.silence,
        "unsilence": gate.unsilence,
        "disable": gate.disable,
        "enable": gate.enable,
        "unlock": gate.clear_lock,
    }
    actions[action]()


if __name__ == "__main__":
    main()
