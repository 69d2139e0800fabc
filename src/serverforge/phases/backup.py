"""Backup phase: restic repository, backup script and schedule."""
from __future__ import annotations

import logging
import secrets

from ..config import BackupFrequency, ServerRole
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

CRON_SCHEDULES = {
    BackupFrequency.HOURLY: "0 * * * *",
    BackupFrequency.DAILY: "0 2 * * *",
    BackupFrequency.WEEKLY: "0 2 * * 0",
}

BACKUP_DIRECTORIES: dict[ServerRole, tuple[str, ...]] = {
    ServerRole.WEB: ("/var/www", "/etc/nginx", "/etc/apache2"),
    ServerRole.DATABASE: ("/var/lib/mysql", "/var/lib/postgresql"),
    ServerRole.APPLICATION: ("/opt/myapp", "/etc/myapp"),
}

BACKUP_LOG = "/var/log/restic.log"


def setup_backup_system(ctx: PhaseContext) -> None:
    """Install restic, initialise its repository and schedule backups."""
    LOGGER.info("Setting up backup system...")
    ctx.install("restic")
    configure_backup_schedule(ctx)
    setup_backup_locations(ctx)
    LOGGER.info("Backup system setup completed")


def configure_backup_schedule(ctx: PhaseContext) -> None:
    """Write the cron entry running the backup script at the configured frequency."""
    ctx.render(
        "cron/restic-backup.j2",
        ctx.config.backup.cron_file,
        {
            "schedule": CRON_SCHEDULES[ctx.server.backup_frequency],
            "script": str(ctx.config.backup.script),
            "log_file": BACKUP_LOG,
        },
        mode=0o644,
    )


def setup_backup_locations(ctx: PhaseContext) -> None:
    """Create the repository and the script backing up the role's directories."""
    backup = ctx.config.backup
    if not backup.password_file.exists():
        ctx.write_file(backup.password_file, secrets.token_urlsafe(32) + "\n", mode=0o600)
    ctx.run(
        "restic",
        "init",
        "--repo",
        str(backup.repository),
        "--password-file",
        str(backup.password_file),
    )
    ctx.render(
        "backup/run-backup.sh.j2",
        backup.script,
        {
            "repository": str(backup.repository),
            "password_file": str(backup.password_file),
            "directories": list(BACKUP_DIRECTORIES[ctx.server.server_role]),
        },
        mode=0o755,
    )


__all__ = ["BACKUP_DIRECTORIES", "CRON_SCHEDULES", "setup_backup_system"]
