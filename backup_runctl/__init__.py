"""backup-runctl: run-control for unattended backups (locking, rotation, tunnels, alerts)."""
from __future__ import annotations

__version__ = "2026.10.0"
