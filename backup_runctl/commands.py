"""Invocation contracts of the external tools: ssh, rsync and database clients."""
from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import replace
from typing import Callable, NamedTuple

from backup_runctl import log as _log
from backup_runctl.config import DatabaseSpec, RsyncSpec, SshTarget, TunnelSpec
from backup_runctl.log import log_error, log_info, style

EXTERNAL_COMMANDS = (
    "ssh",
    "rsync",
    "mysql",
    "mysqldump",
    "psql",
    "pg_dump",
    "mailx",
    "logger",
    "tee",
    "cat",
)


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


async def async_run_cmd(
    cmd: list[str],
    env: dict[str, str] | None = None,
) -> CmdResult:
    """Run a command and collect its output."""
    if _log.VERBOSE:
        log_info(f"Running command: {style(' '.join(cmd), 'green', bold=True)}")

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, **env} if env else None,
    )

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    stdout, stderr = await asyncio.gather(
        read_stream(process.stdout, log_info, "magenta"),
        read_stream(process.stderr, log_info, "red"),
    )

    await process.wait()
    assert process.returncode is not None, "Process has not returned"

    if _log.VERBOSE and process.returncode != 0:
        msg = style(str(process.returncode), "red", bold=True)
        log_error(f"Command exit code: {msg}")
    return CmdResult(stdout, stderr, process.returncode)


async def read_stream(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None],
    color: str,
) -> str:
    """Read each line from the stream and pass it to the callback."""
    output = []
    while True:
        line = await stream.readline()
        if line:
            line_str = line.decode("utf-8", "replace").rstrip("\n")
            output.append(line_str)
            if _log.VERBOSE:
                callback(f"Command output: {style(line_str, color, bold=True)}")
        else:
            break
    return "\n".join(output)


def run_cmd(cmd: list[str], env: dict[str, str] | None = None) -> CmdResult:
    """Synchronously run a command."""
    return asyncio.run(async_run_cmd(cmd, env))


def check_external_commands(names: tuple[str, ...] = EXTERNAL_COMMANDS) -> dict[str, bool]:
    """Return whether each external command is found in the PATH."""
    return {name: shutil.which(name) is not None for name in names}


# -----------------------------------------------------------------------------
# ssh
# -----------------------------------------------------------------------------


def _ssh_connection_args(target: SshTarget) -> list[str]:
    args = []
    if target.port:
        args += ["-p", str(target.port)]
    if target.keyfile:
        args += ["-i", target.keyfile]
    args += target.options
    if target.user:
        args += ["-l", target.user]
    return args


def ssh_command(target: SshTarget, remote_command: list[str]) -> list[str]:
    """Return the argument vector running ``remote_command`` on ``target``."""
    return ["ssh", *_ssh_connection_args(target), target.host, *remote_command]


def ssh_tunnel_command(tunnel: TunnelSpec) -> list[str]:
    """Return the argument vector forwarding the tunnel's local port to its remote port."""
    return [
        "ssh",
        "-L",
        f"{tunnel.local_port}:localhost:{tunnel.remote_port}",
        "-N",
        *_ssh_connection_args(tunnel.ssh),
        tunnel.ssh.host,
    ]


# -----------------------------------------------------------------------------
# rsync
# -----------------------------------------------------------------------------


def rsync_command(spec: RsyncSpec) -> list[str]:
    """Return the rsync argument vector for ``spec.mode``.

    ``tunnel`` and ``direct`` talk to an rsync daemon (through a tunnel the
    caller opened, or straight to the host); ``nodaemon`` runs rsync over
    ssh; ``local`` copies between local paths. Only the transport differs.
    """
    cmd = ["rsync"]
    if spec.mode in ("tunnel", "direct"):
        if spec.pwfile:
            cmd.append(f"--password-file={spec.pwfile}")
        if spec.mode == "tunnel" and spec.tunnel is not None:
            cmd.append(f"--port={spec.tunnel.local_port}")
        elif spec.port:
            cmd.append(f"--port={spec.port}")
    elif spec.mode == "nodaemon":
        # the user belongs in the source or dest, not in the -e command
        transport = replace(spec.ssh, user="")
        cmd += ["-e", " ".join(["ssh", *_ssh_connection_args(transport)])]
    if spec.filterfile:
        cmd += ["-f", f"merge {spec.filterfile}"]
    return [*cmd, *spec.options, *spec.add, *spec.source, spec.dest]


# -----------------------------------------------------------------------------
# databases
# -----------------------------------------------------------------------------


def _mysql_connection_args(spec: DatabaseSpec) -> list[str]:
    args = []
    # --defaults-extra-file must come first
    if spec.pwfile:
        args.append(f"--defaults-extra-file={spec.pwfile}")
    if spec.user:
        args += ["-u", spec.user]
    if spec.protocol:
        args.append(f"--protocol={spec.protocol}")
    if spec.host:
        args += ["-h", spec.host]
    if spec.port:
        args += ["-P", str(spec.port)]
    if spec.socketfile:
        args += ["-S", spec.socketfile]
    return args


def _postgresql_connection_args(spec: DatabaseSpec) -> list[str]:
    args = []
    if spec.user:
        args += ["-U", spec.user]
    host = spec.socketfile or spec.host
    if host:
        args += ["-h", host]
    if spec.port:
        args += ["-p", str(spec.port)]
    # the password comes from the file named by PGPASSFILE, see db_env()
    args.append("-w")
    return args


def _connection_args(spec: DatabaseSpec) -> list[str]:
    if spec.dbms == "postgresql":
        return _postgresql_connection_args(spec)
    return _mysql_connection_args(spec)


def db_env(spec: DatabaseSpec) -> dict[str, str]:
    """Extra environment for the database client (PostgreSQL password file)."""
    if spec.dbms == "postgresql" and spec.pwfile:
        return {"PGPASSFILE": spec.pwfile}
    return {}


def db_command(spec: DatabaseSpec, statement: str, dbname: str = "") -> list[str]:
    """Return the client argument vector running ``statement``."""
    dbname = dbname or spec.dbname
    if spec.dbms == "postgresql":
        cmd = ["psql", *_connection_args(spec), *spec.options]
        if dbname:
            cmd += ["-d", dbname]
        return [*cmd, "-c", statement]
    cmd = ["mysql", *_connection_args(spec), *spec.options]
    if dbname:
        cmd.append(dbname)
    return [*cmd, "-e", statement]


def db_list_command(spec: DatabaseSpec) -> list[str]:
    """Return the client argument vector listing all databases, one per line."""
    if spec.dbms == "postgresql":
        return [
            "psql",
            *_connection_args(spec),
            *spec.options,
            "-At",
            "-d",
            spec.dbname or "postgres",
            "-c",
            "SELECT datname FROM pg_database WHERE datallowconn ORDER BY datname;",
        ]
    return ["mysql", *_connection_args(spec), *spec.options, "-BN", "-e", "SHOW DATABASES;"]


def db_dump_command(spec: DatabaseSpec, dbname: str) -> list[str]:
    """Return the dump tool argument vector for one database (output on stdout)."""
    if spec.dbms == "postgresql":
        return ["pg_dump", *_connection_args(spec), *spec.dump_options, dbname]
    return ["mysqldump", *_connection_args(spec), *spec.dump_options, "--databases", dbname]


_MYSQL_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "0": "\0"}


def db_unescape(name: str, dbms: str) -> str:
    r"""Turn a database name from list output back into the real name.

    MySQL batch output escapes ``\n``, ``\t``, ``\0`` and ``\\``;
    PostgreSQL unaligned output is not escaped.
    """
    if dbms != "mysql":
        return name
    chars = []
    i = 0
    while i < len(name):
        char = name[i]
        if char == "\\" and i + 1 < len(name) and name[i + 1] in _MYSQL_ESCAPES:
            chars.append(_MYSQL_ESCAPES[name[i + 1]])
            i += 2
            continue
        chars.append(char)
        i += 1
    return "".join(chars)


def list_databases(spec: DatabaseSpec) -> CmdResult | list[str]:
    """List the databases on the server; the failed result if the client failed."""
    result = run_cmd(db_list_command(spec), db_env(spec))
    if result.returncode != 0:
        return result
    return [db_unescape(line, spec.dbms) for line in result.stdout.splitlines() if line]
