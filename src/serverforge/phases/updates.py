"""Automatic updates phase."""
from __future__ import annotations

import logging
from pathlib import Path

from ..config import Distro, UpdateSchedule
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

UNATTENDED_UPGRADES_CONF = Path("/etc/apt/apt.conf.d/50unattended-upgrades")
AUTO_UPGRADES_CONF = Path("/etc/apt/apt.conf.d/20auto-upgrades")
YUM_CRON_CONF = Path("/etc/yum/yum-cron.conf")
DNF_AUTOMATIC_CONF = Path("/etc/dnf/automatic.conf")

PERIOD_DAYS = {
    UpdateSchedule.DAILY: 1,
    UpdateSchedule.WEEKLY: 7,
    UpdateSchedule.MONTHLY: 30,
}

_APPLY_UPDATES = {"apply_updates = no": "apply_updates = yes"}


def setup_automatic_updates(ctx: PhaseContext) -> None:
    """Configure the distribution's unattended update mechanism."""
    LOGGER.info("Setting up automatic updates...")
    distro = ctx.server.linux_distro
    if distro is Distro.UBUNTU:
        setup_ubuntu_updates(ctx)
    elif distro is Distro.CENTOS:
        setup_centos_updates(ctx)
    else:
        setup_fedora_updates(ctx)
    LOGGER.info("Automatic updates configured")


def setup_ubuntu_updates(ctx: PhaseContext) -> None:
    """Install and schedule unattended-upgrades."""
    ctx.install("unattended-upgrades", "apt-listchanges")
    ctx.render("updates/50unattended-upgrades.j2", UNATTENDED_UPGRADES_CONF)
    ctx.render(
        "updates/20auto-upgrades.j2",
        AUTO_UPGRADES_CONF,
        {"period_days": PERIOD_DAYS[ctx.server.update_schedule]},
    )
    ctx.systemd.enable("unattended-upgrades")
    ctx.systemd.start("unattended-upgrades")


def setup_centos_updates(ctx: PhaseContext) -> None:
    """Install yum-cron and let it apply updates."""
    ctx.install("yum-cron")
    ctx.edit_file(YUM_CRON_CONF, _APPLY_UPDATES)
    ctx.systemd.enable("yum-cron")
    ctx.systemd.start("yum-cron")


def setup_fedora_updates(ctx: PhaseContext) -> None:
    """Install dnf-automatic and enable its timer."""
    ctx.install("dnf-automatic")
    ctx.edit_file(DNF_AUTOMATIC_CONF, _APPLY_UPDATES)
    ctx.systemd.enable("dnf-automatic.timer")
    ctx.systemd.start("dnf-automatic.timer")


__all__ = ["PERIOD_DAYS", "setup_automatic_updates"]
