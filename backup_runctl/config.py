"""Settings, exit codes and the INI configuration layer."""
from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

PROG_NAME = "backup-runctl"

DEFAULT_CONFIG_PATH = (
    Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    / PROG_NAME
    / "config.ini"
)


class ExitCode(IntEnum):
    """Process exit values; overridable from the ``[exitcodes]`` section."""

    NO_ERROR = 0
    STARTUP_ERROR = 1
    LOCKFILE_ERROR = 2
    SSH_TUNNEL_ERROR = 3
    BAD_VARIABLE_NAME = 10
    NO_DELIMITER_FOUND = 11


class ConfigError(ValueError):
    """A setting is missing or has an invalid value."""


class InternalError(RuntimeError):
    """A programming error; never retried, always fatal."""

    def __init__(self, message: str, exit_code: ExitCode) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class Layout(str, Enum):
    """How a family of artifacts (output logs, dumps) is laid out on disk."""

    SINGLE = "single"
    NUMBER = "number"
    DATE = "date"
    APPEND = "append"


class OnError(str, Enum):
    """What to do when a tunnel cannot be established."""

    EXIT = "exit"
    PHASE = "phase"


SYSLOG_MODES = ("no", "yes", "all")
RSYNC_MODES = ("tunnel", "direct", "nodaemon", "local")
DBMS_NAMES = ("mysql", "postgresql")


@dataclass
class GateSettings:
    """Everything the run gate needs: lock paths and interval policy."""

    lockfile: str = ""
    startedfile: str = ""
    alertfile: str = ""
    runevery: int = 0  # minutes, 0 = no interval checking
    ifrunning: int = 0  # minutes between repeated lock alerts, 0 = never repeat
    purpose: str = "backup"
    purpose_plural: str = "backups"
    article: str = "a"


@dataclass
class AlertSettings:
    """Delivery policy for status lines and alerts."""

    quiet: bool = True
    statuslog: str = ""
    usesyslog: str = "no"
    syslogstat: str = "user.info"
    syslogerr: str = "user.err"
    syslogtag: str = PROG_NAME
    suppressemail: bool = False
    mailto: str = ""
    subject: str = f"{PROG_NAME} alert"


@dataclass
class OutputLogSettings:
    """Where subprocess output goes and how old output logs are kept."""

    outputlog: str = ""
    layout: Layout = Layout.NUMBER
    sep: str = "."
    date_format: str = "%Y-%m-%d-%H%M%S"
    numlogs: int = 10
    dayslogs: int = 0


@dataclass
class SshTarget:
    """How to reach a remote host with ssh."""

    host: str = ""
    user: str = ""
    port: str = ""
    keyfile: str = ""
    options: list[str] = field(default_factory=list)


@dataclass
class TunnelSpec:
    """A local-to-remote port forward."""

    label: str = ""
    local_port: int = 0
    remote_port: int = 0
    timeout: int = 20  # seconds
    ssh: SshTarget = field(default_factory=SshTarget)


@dataclass
class RsyncSpec:
    """Arguments for the file-sync phase."""

    mode: str = "local"
    source: list[str] = field(default_factory=list)
    dest: str = ""
    pwfile: str = ""
    port: str = ""
    filterfile: str = ""
    options: list[str] = field(default_factory=lambda: ["-a", "--delete"])
    add: list[str] = field(default_factory=list)
    ssh: SshTarget = field(default_factory=SshTarget)
    tunnel: TunnelSpec | None = None


@dataclass
class DatabaseSpec:
    """Arguments for the database-dump phase."""

    dbms: str = "mysql"
    user: str = ""
    pwfile: str = ""
    protocol: str = ""
    host: str = ""
    port: str = ""
    socketfile: str = ""
    dbname: str = ""
    options: list[str] = field(default_factory=list)
    dump_options: list[str] = field(default_factory=list)
    dumpdir: str = ""
    layout: Layout = Layout.NUMBER
    sep: str = "."
    date_format: str = "%Y-%m-%d-%H%M%S"
    numdumps: int = 10
    daysdumps: int = 0
    exclude: list[str] = field(default_factory=list)
    tunnel: TunnelSpec | None = None


@dataclass
class Settings:
    """All settings for one invocation."""

    gate: GateSettings = field(default_factory=GateSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    outputlog: OutputLogSettings = field(default_factory=OutputLogSettings)
    rsync: RsyncSpec | None = None
    database: DatabaseSpec | None = None
    on_tunnel_error: OnError = OnError.EXIT
    exitcodes: dict[str, int] = field(default_factory=dict)

    def exit_code(self, code: ExitCode) -> int:
        """Return the configured value for ``code``."""
        return self.exitcodes.get(code.name.lower(), int(code))


# -----------------------------------------------------------------------------
# Parsing helpers
# -----------------------------------------------------------------------------


def _as_bool(section: str, key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "yes", "true", "on"}:
        return True
    if lowered in {"0", "no", "false", "off", ""}:
        return False
    msg = f"{section}.{key} must be a yes/no value, got '{value}'"
    raise ConfigError(msg)


def _as_count(section: str, key: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        msg = f"{section}.{key} must be a non-negative integer, got '{value}'"
        raise ConfigError(msg) from None
    if number < 0:
        msg = f"{section}.{key} must be a non-negative integer, got '{value}'"
        raise ConfigError(msg)
    return number


def _as_choice(section: str, key: str, value: str, choices: tuple[str, ...]) -> str:
    if value not in choices:
        msg = f"{section}.{key} must be one of {', '.join(choices)}; got '{value}'"
        raise ConfigError(msg)
    return value


def _as_list(value: str) -> list[str]:
    return value.split()


def _coerce(section: str, key: str, value: str, default: Any) -> Any:
    """Convert a raw INI string to the type of the dataclass default."""
    if isinstance(default, bool):
        return _as_bool(section, key, value)
    if isinstance(default, Layout):
        choices = tuple(layout.value for layout in Layout)
        return Layout(_as_choice(section, key, value, choices))
    if isinstance(default, int):
        return _as_count(section, key, value)
    if isinstance(default, list):
        return _as_list(value)
    return value


def _fill(obj: Any, section: str, values: dict[str, str]) -> Any:
    """Return a copy of dataclass ``obj`` updated from ``values``."""
    known = {f.name: getattr(obj, f.name) for f in fields(obj)}
    changes = {}
    for key, raw in values.items():
        if key not in known:
            msg = f"unknown setting '{section}.{key}'"
            raise ConfigError(msg)
        default = known[key]
        if isinstance(default, (SshTarget, TunnelSpec)) or default is None:
            msg = f"setting '{section}.{key}' cannot be set directly"
            raise ConfigError(msg)
        changes[key] = _coerce(section, key, raw, default)
    return replace(obj, **changes)


def _split_prefixed(values: dict[str, str], prefix: str) -> tuple[dict[str, str], dict[str, str]]:
    """Split ``values`` into (keys starting with ``prefix``, the rest)."""
    matched = {k[len(prefix) :]: v for k, v in values.items() if k.startswith(prefix)}
    rest = {k: v for k, v in values.items() if not k.startswith(prefix)}
    return matched, rest


def _parse_tunnel(section: str, values: dict[str, str]) -> TunnelSpec | None:
    tunnel_values, _ = _split_prefixed(values, "tunnel_")
    if not tunnel_values:
        return None
    ssh_values, rest = _split_prefixed(tunnel_values, "ssh")
    tunnel = _fill(TunnelSpec(), section, rest)
    tunnel.ssh = _fill(SshTarget(), section, ssh_values)
    if not tunnel.label:
        tunnel.label = section
    return tunnel


def parse_settings(parser: configparser.ConfigParser) -> Settings:
    """Build a :class:`Settings` from a loaded ``ConfigParser``."""
    settings = Settings()
    for section in parser.sections():
        values = dict(parser.items(section))
        if section == "run":
            on_err = values.pop("on_tunnel_error", None)
            if on_err is not None:
                choices = tuple(o.value for o in OnError)
                settings.on_tunnel_error = OnError(
                    _as_choice(section, "on_tunnel_error", on_err, choices),
                )
            settings.gate = _fill(settings.gate, section, values)
        elif section == "alerts":
            settings.alerts = _fill(settings.alerts, section, values)
            _as_choice(section, "usesyslog", settings.alerts.usesyslog, SYSLOG_MODES)
        elif section == "outputlog":
            settings.outputlog = _fill(settings.outputlog, section, values)
        elif section == "rsync":
            ssh_values, rest = _split_prefixed(values, "ssh_")
            tunnel = _parse_tunnel(section, rest)
            rest = {k: v for k, v in rest.items() if not k.startswith("tunnel_")}
            spec = _fill(RsyncSpec(), section, rest)
            spec.ssh = _fill(SshTarget(), section, ssh_values)
            spec.tunnel = tunnel
            _as_choice(section, "mode", spec.mode, RSYNC_MODES)
            settings.rsync = spec
        elif section == "database":
            tunnel = _parse_tunnel(section, values)
            rest = {k: v for k, v in values.items() if not k.startswith("tunnel_")}
            spec = _fill(DatabaseSpec(), section, rest)
            spec.tunnel = tunnel
            _as_choice(section, "dbms", spec.dbms, DBMS_NAMES)
            settings.database = spec
        elif section == "exitcodes":
            valid = {code.name.lower() for code in ExitCode}
            for key, raw in values.items():
                _as_choice(section, key, key, tuple(sorted(valid)))
                settings.exitcodes[key] = _as_count(section, key, raw)
        else:
            msg = f"unknown config section '[{section}]'"
            raise ConfigError(msg)
    return settings


def apply_overrides(parser: configparser.ConfigParser, overrides: list[str]) -> None:
    """Apply ``section.key=value`` overrides from the command line."""
    for override in overrides:
        name, sep, value = override.partition("=")
        section, dot, key = name.partition(".")
        if not sep or not dot or not section or not key:
            msg = f"override '{override}' is not of the form section.key=value"
            raise ConfigError(msg)
        if not parser.has_section(section):
            parser.add_section(section)
        parser.set(section, key, value)


def _check_parent(key: str, path: str) -> None:
    """Raise unless the directory that will hold ``path`` exists and is writable."""
    parent = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(parent) or not os.access(parent, os.W_OK | os.X_OK):
        msg = f"parent directory of {key} '{parent}' is not a writable directory"
        raise ConfigError(msg)


def validate(settings: Settings) -> None:
    """Check settings that only make sense in combination."""
    gate = settings.gate
    for key in ("lockfile", "startedfile", "alertfile"):
        if not getattr(gate, key):
            msg = f"run.{key} must not be blank"
            raise ConfigError(msg)
    _check_parent("run.lockfile", gate.lockfile)
    if not settings.alerts.suppressemail and not settings.alerts.mailto:
        msg = "alerts.mailto must not be blank unless alerts.suppressemail is set"
        raise ConfigError(msg)
    if settings.outputlog.outputlog and not settings.outputlog.sep and (
        settings.outputlog.layout in (Layout.NUMBER, Layout.DATE)
    ):
        msg = "outputlog.sep must not be blank for number/date layouts"
        raise ConfigError(msg)
    for spec in (settings.rsync, settings.database):
        tunnel = spec.tunnel if spec is not None else None
        if tunnel is not None and (not tunnel.local_port or not tunnel.ssh.host):
            msg = "tunnels need tunnel_local_port and tunnel_sshhost"
            raise ConfigError(msg)
    if settings.rsync is not None and (not settings.rsync.source or not settings.rsync.dest):
        msg = "rsync.source and rsync.dest must not be blank"
        raise ConfigError(msg)
    if settings.database is not None and not settings.database.dumpdir:
        msg = "database.dumpdir must not be blank"
        raise ConfigError(msg)
    created = {
        "run.startedfile": gate.startedfile,
        "run.alertfile": gate.alertfile,
        "alerts.statuslog": settings.alerts.statuslog,
        "outputlog.outputlog": settings.outputlog.outputlog,
        "database.dumpdir": settings.database.dumpdir if settings.database is not None else "",
    }
    for key, path in created.items():
        if path:
            _check_parent(key, path)


def load_settings(
    path: str | Path | None,
    overrides: list[str] | None = None,
) -> Settings:
    """Read the config file (if any), apply overrides, validate."""
    parser = configparser.ConfigParser(interpolation=None)
    if path is not None:
        path = Path(path).expanduser()
        if not path.is_file() or not os.access(path, os.R_OK):
            msg = f"config file '{path}' is not a readable file"
            raise ConfigError(msg)
        try:
            parser.read(path)
        except configparser.Error as e:
            msg = f"could not parse config file '{path}': {e}"
            raise ConfigError(msg) from e
    apply_overrides(parser, overrides or [])
    settings = parse_settings(parser)
    validate(settings)
    return settings


def describe(settings: Settings) -> list[str]:
    """Return ``section.key='value'`` lines for the effective settings."""
    lines = [f"run.on_tunnel_error='{settings.on_tunnel_error.value}'"]
    sections: list[tuple[str, Any]] = [
        ("run", settings.gate),
        ("alerts", settings.alerts),
        ("outputlog", settings.outputlog),
        ("rsync", settings.rsync),
        ("database", settings.database),
    ]
    for name, obj in sections:
        if obj is None:
            continue
        for f in fields(obj):
            value = getattr(obj, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, list):
                value = " ".join(value)
            elif isinstance(value, (SshTarget, TunnelSpec)) or value is None:
                continue
            lines.append(f"{name}.{f.name}='{value}'")
    for code in ExitCode:
        lines.append(f"exitcodes.{code.name.lower()}='{settings.exit_code(code)}'")
    return lines


CONFIG_TEMPLATE = f"""\
# {PROG_NAME} configuration

[run]
lockfile = /var/lock/{PROG_NAME}
startedfile = /var/lib/{PROG_NAME}/started
alertfile = /var/lib/{PROG_NAME}/alert
# minimum minutes between runs (0 = no interval checking)
runevery = 0
# minutes between repeated "lockfile exists" emails (0 = only the first)
ifrunning = 0
# exit or phase
on_tunnel_error = exit

[alerts]
quiet = yes
statuslog =
# no, yes, all
usesyslog = no
suppressemail = no
mailto = root

[outputlog]
outputlog =
# single, number, date, append
layout = number
sep = .
numlogs = 10
dayslogs = 0

# [rsync]
# mode = local
# source = /home/
# dest = /backup/home/
# options = -a --delete

# [database]
# dbms = mysql
# pwfile = /root/.my.cnf
# dumpdir = /backup/db
# layout = number
# numdumps = 10
# tunnel_local_port = 3307
# tunnel_remote_port = 3306
# tunnel_sshhost = db.example.com
"""


def write_blank_config(path: str | Path) -> None:
    """Write the commented config template, refusing to overwrite."""
    path = Path(path).expanduser()
    if path.exists():
        msg = f"'{path}' already exists; not overwriting"
        raise ConfigError(msg)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CONFIG_TEMPLATE)
