"""Security phase: fail2ban, MAC frameworks, rootkit detection, scans."""
from __future__ import annotations

import logging
from pathlib import Path

from ..config import Distro, SecurityLevel
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

FAIL2BAN_JAIL = Path("/etc/fail2ban/jail.local")
SELINUX_CONFIG = Path("/etc/selinux/config")
SCAN_SCRIPT = Path("/usr/local/bin/security_scan.sh")
SCAN_CRON = Path("/etc/cron.d/security_scan")
SCAN_LOG = Path("/var/log/security_scan.log")


def implement_security_measures(ctx: PhaseContext) -> None:
    """Apply every security measure for the configured level."""
    LOGGER.info("Implementing security measures...")
    configure_fail2ban(ctx)
    setup_advanced_security(ctx)
    setup_rootkit_detection(ctx)
    setup_security_scans(ctx)
    LOGGER.info("Security measures implemented")


def configure_fail2ban(ctx: PhaseContext) -> None:
    """Install fail2ban with an sshd jail."""
    ctx.install("fail2ban")
    auth_log = "/var/log/secure" if ctx.server.linux_distro.is_rpm_based else "/var/log/auth.log"
    ctx.render(
        "fail2ban/jail.local.j2",
        FAIL2BAN_JAIL,
        {
            "ssh_port": ctx.server.ssh_port,
            "auth_log": auth_log,
            "maxretry": 3,
            "bantime": 3600,
        },
    )
    ctx.systemd.enable("fail2ban")
    ctx.systemd.start("fail2ban")


def setup_advanced_security(ctx: PhaseContext) -> None:
    """Enforce AppArmor (Ubuntu) or SELinux (CentOS/Fedora) at the advanced level."""
    if ctx.server.security_level is not SecurityLevel.ADVANCED:
        return
    if ctx.server.linux_distro is Distro.UBUNTU:
        ctx.install("apparmor", "apparmor-utils")
        ctx.run("aa-enforce", "/etc/apparmor.d/")
        return
    ctx.install("selinux-policy", "selinux-policy-targeted")
    ctx.render("selinux/config.j2", SELINUX_CONFIG)


def setup_rootkit_detection(ctx: PhaseContext) -> None:
    """Install rkhunter and chkrootkit and seed the rkhunter database."""
    ctx.install("rkhunter", "chkrootkit")
    # rkhunter --update exits 2 when no update was needed.
    ctx.run("rkhunter", "--update", check=False)
    ctx.run("rkhunter", "--propupd")


def setup_security_scans(ctx: PhaseContext) -> None:
    """Schedule a weekly rootkit scan."""
    ctx.render("security/security_scan.sh.j2", SCAN_SCRIPT, mode=0o755)
    ctx.render(
        "cron/security_scan.j2",
        SCAN_CRON,
        {"script": str(SCAN_SCRIPT), "log_file": str(SCAN_LOG)},
        mode=0o644,
    )


__all__ = ["implement_security_measures"]
