"""Initial setup phase: system update, essential packages, firewall, SSH."""
from __future__ import annotations

import logging
from pathlib import Path

from ..config import Distro
from ..providers.packages import PackageManager
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

ESSENTIAL_PACKAGES: tuple[str, ...] = ("curl", "wget", "vim", "ufw", "fail2ban")
APT_ONLY_PACKAGES: tuple[str, ...] = (
    "apt-listchanges",
    "needrestart",
    "debsums",
    "apt-show-versions",
)
SSHD_CONFIG = Path("/etc/ssh/sshd_config")


def initial_setup(ctx: PhaseContext) -> None:
    """Bring a fresh host to a patched, firewalled, key-only SSH baseline."""
    LOGGER.info("Performing initial setup...")
    _check_distro(ctx)
    update_system(ctx)
    install_essential_packages(ctx)
    setup_firewall(ctx)
    setup_ssh(ctx)
    LOGGER.info("Initial setup completed")


def update_system(ctx: PhaseContext) -> None:
    """Refresh package metadata and upgrade installed packages."""
    ctx.tools.packages.update(manager=ctx.package_manager())


def install_essential_packages(ctx: PhaseContext) -> None:
    """Install the baseline tool set."""
    packages = list(ESSENTIAL_PACKAGES)
    if ctx.package_manager() is PackageManager.APT:
        packages.extend(APT_ONLY_PACKAGES)
    for package in packages:
        ctx.install(package)


def setup_firewall(ctx: PhaseContext) -> None:
    """Default-deny inbound traffic, allowing SSH and the custom rules."""
    rules = ctx.server.custom_firewall_rules
    if ctx.server.linux_distro is Distro.UBUNTU:
        ctx.run("ufw", "default", "deny", "incoming")
        ctx.run("ufw", "default", "allow", "outgoing")
        ctx.run("ufw", "allow", "OpenSSH")
        ctx.run("ufw", "allow", f"{ctx.server.ssh_port}/tcp")
        for rule in rules:
            ctx.run("ufw", "allow", rule)
        ctx.run("ufw", "--force", "enable")
        return

    ctx.systemd.start_and_enable("firewalld")
    ctx.run("firewall-cmd", "--zone=public", "--add-service=ssh", "--permanent")
    ctx.run("firewall-cmd", "--zone=public", f"--add-port={ctx.server.ssh_port}/tcp", "--permanent")
    for rule in rules:
        ctx.run("firewall-cmd", "--zone=public", f"--add-port={rule}", "--permanent")
    ctx.run("firewall-cmd", "--reload")


def setup_ssh(ctx: PhaseContext, sshd_config: Path = SSHD_CONFIG) -> None:
    """Disable root and password logins and move sshd to the configured port."""
    changed = ctx.edit_file(
        sshd_config,
        {
            "PermitRootLogin yes": "PermitRootLogin no",
            "#PasswordAuthentication yes": "PasswordAuthentication no",
            "#Port 22": f"Port {ctx.server.ssh_port}",
        },
    )
    if changed or ctx.dry_run:
        ctx.systemd.restart("sshd")


def _check_distro(ctx: PhaseContext) -> None:
    expected = PackageManager.for_distro(ctx.server.linux_distro)
    detected = ctx.package_manager()
    if detected is not expected:
        LOGGER.warning(
            "Configured distribution %s expects %s but the host provides %s.",
            ctx.server.linux_distro.value,
            expected.value,
            detected.value,
        )


__all__ = ["initial_setup", "setup_firewall", "setup_ssh"]
