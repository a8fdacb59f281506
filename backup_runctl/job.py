"""The ``run`` action: gate, output log, database dumps, rsync, cleanup."""
from __future__ import annotations

import os
import subprocess
import time
from dataclasses import replace
from datetime import datetime
from typing import NoReturn

from backup_runctl.alerts import AlertChannel
from backup_runctl.callbacks import ExitCallbackRegistry
from backup_runctl.commands import (
    CmdResult,
    db_dump_command,
    db_env,
    list_databases,
    rsync_command,
    ssh_tunnel_command,
)
from backup_runctl.config import DatabaseSpec, ExitCode, RsyncSpec, Settings, TunnelSpec
from backup_runctl.gate import RunGate, RunState
from backup_runctl.naming import ArtifactFamily, artifact_path
from backup_runctl.outputlog import OutputLog
from backup_runctl.rotation import remove_with_compressed, rotate_prune
from backup_runctl.supervisor import Supervisor, TunnelError, TunnelHandle


class BackupJob:
    """One scheduled run, built from :class:`Settings`."""

    def __init__(
        self,
        settings: Settings,
        registry: ExitCallbackRegistry,
        alerts: AlertChannel,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.alerts = alerts
        self.gate = RunGate(settings.gate, registry, alerts, exit_code=settings.exit_code)
        self.output = OutputLog(
            settings.outputlog,
            RunState.from_settings(settings.gate).log_fifo,
            registry,
            alerts,
            quiet=settings.alerts.quiet,
        )
        self.supervisor: Supervisor | None = None
        self.failed_phases: list[str] = []

    def run(self) -> NoReturn:
        """Run every configured phase and exit through the callback stack."""
        self.gate.check_status()
        stream = self.output.start()
        self.supervisor = Supervisor(
            self.registry,
            self.alerts,
            output=stream,
            tunnel_exit_code=self.settings.exit_code(ExitCode.SSH_TUNNEL_ERROR),
        )
        self.gate.start()
        self.output.write(f"{self.settings.gate.purpose} started {time.ctime()}")

        if self.settings.database is not None:
            self.database_phase(self.settings.database)
        if self.settings.rsync is not None:
            self.rsync_phase(self.settings.rsync)

        self.gate.finish()
        self.output.write(f"{self.settings.gate.purpose} finished {time.ctime()}")
        code = ExitCode.STARTUP_ERROR if self.failed_phases else ExitCode.NO_ERROR
        self.registry.exit(self.settings.exit_code(code))

    def _fail_phase(self, phase: str, message: str) -> None:
        self.failed_phases.append(phase)
        self.alerts.send_alert(message, log=True)

    def _open_tunnel(self, tunnel: TunnelSpec, slot: str) -> TunnelHandle | TunnelError:
        assert self.supervisor is not None
        return self.supervisor.open_tunnel(
            tunnel.label,
            ssh_tunnel_command(tunnel),
            tunnel.local_port,
            tunnel.timeout,
            on_error=self.settings.on_tunnel_error,
            slot=slot,
        )

    def _run_to_output(self, cmd: list[str], stdout: int | None = None, env: dict[str, str] | None = None) -> int:
        """Run ``cmd`` to completion with its output going to the output log."""
        stream = self.output.stream
        self.output.write(f"running: {' '.join(cmd)}")
        try:
            proc = subprocess.run(  # noqa: S603
                cmd,
                stdout=stdout if stdout is not None else stream,
                stderr=stream,
                env={**os.environ, **env} if env else None,
                check=False,
            )
        except OSError as e:
            self.output.write(f"could not run {cmd[0]}: {e}")
            return 127
        return proc.returncode

    # -------------------------------------------------------------------------
    # database phase
    # -------------------------------------------------------------------------

    def database_phase(self, spec: DatabaseSpec) -> None:
        """Dump every database into its own rotated dump family."""
        tunnel: TunnelHandle | TunnelError | None = None
        if spec.tunnel is not None:
            tunnel = self._open_tunnel(spec.tunnel, "dbtunnel")
            if isinstance(tunnel, TunnelError):
                self.failed_phases.append("database")
                return
            spec = replace(spec, host="127.0.0.1", port=str(spec.tunnel.local_port), socketfile="")
            if spec.dbms == "mysql":
                spec = replace(spec, protocol="tcp")

        try:
            databases: CmdResult | list[str] = list_databases(spec)
        except OSError as e:
            databases = CmdResult("", str(e), 127)
        if isinstance(databases, CmdResult):
            self._fail_phase(
                "database",
                f"could not list databases (status code {databases.returncode}): {databases.stderr.strip()}",
            )
        else:
            for dbname in databases:
                if dbname in spec.exclude:
                    self.alerts.log_status(f"skipping database '{dbname}'")
                    continue
                self.dump_database(spec, dbname)

        if isinstance(tunnel, TunnelHandle):
            assert self.supervisor is not None
            self.supervisor.close_tunnel(tunnel)

    def dump_family(self, spec: DatabaseSpec, dbname: str) -> ArtifactFamily:
        # "/" can't appear in a filename
        safe_name = dbname.replace("/", "_")
        return ArtifactFamily(os.path.join(spec.dumpdir, safe_name), spec.sep, ".sql")

    def dump_database(self, spec: DatabaseSpec, dbname: str, now: datetime | None = None) -> bool:
        """Rotate old dumps of ``dbname`` and write a new one."""
        family = self.dump_family(spec, dbname)
        layout = spec.layout.value
        path = artifact_path(family, layout, spec.date_format, now)
        self.alerts.log_status_quiet(f"dumping database '{dbname}'")
        mode = "a" if layout == "append" else "w"
        try:
            rotate_prune(layout, family, spec.numdumps, spec.daysdumps)
            if layout == "single":
                remove_with_compressed(path)
            f = open(path, mode)  # noqa: SIM115
        except OSError as e:
            self._fail_phase("database", f"could not write dump of database '{dbname}': {e}")
            return False
        with f:
            returncode = self._run_to_output(db_dump_command(spec, dbname), stdout=f.fileno(), env=db_env(spec))
        if returncode != 0:
            self._fail_phase("database", f"dump of database '{dbname}' failed (status code {returncode})")
            return False
        self.alerts.log_status(f"database '{dbname}' dumped to {path}")
        return True

    # -------------------------------------------------------------------------
    # rsync phase
    # -------------------------------------------------------------------------

    def rsync_phase(self, spec: RsyncSpec) -> None:
        """Sync files, through a tunnel in ``tunnel`` mode."""
        tunnel: TunnelHandle | TunnelError | None = None
        if spec.mode == "tunnel" and spec.tunnel is not None:
            tunnel = self._open_tunnel(spec.tunnel, "rsynctunnel")
            if isinstance(tunnel, TunnelError):
                self.failed_phases.append("rsync")
                return

        self.alerts.log_status("starting rsync")
        returncode = self._run_to_output(rsync_command(spec))
        if returncode != 0:
            self._fail_phase("rsync", f"rsync failed (status code {returncode})")
        else:
            self.alerts.log_status("rsync finished")

        if isinstance(tunnel, TunnelHandle):
            assert self.supervisor is not None
            self.supervisor.close_tunnel(tunnel)
