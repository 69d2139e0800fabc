"""Package manager provider (apt, yum, dnf)."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..commands import Runner
from ..config import Distro


class PackageManagerError(RuntimeError):
    """Raised when no supported package manager is available."""


class PackageManager(str, Enum):
    """Package managers understood by serverforge."""

    APT = "apt"
    YUM = "yum"
    DNF = "dnf"

    @classmethod
    def for_distro(cls, distro: Distro) -> PackageManager:
        """Return the package manager shipped with *distro*."""
        return _DISTRO_MANAGERS[distro]

    def install_args(self, packages: Sequence[str]) -> list[str]:
        """Return the argument vector installing *packages*."""
        return ["install", "-y", *packages]

    def remove_args(self, packages: Sequence[str]) -> list[str]:
        """Return the argument vector removing *packages*."""
        return ["remove", "-y", *packages]

    def query_argv(self, package: str) -> list[str]:
        """Return the command asking the package database about *package*."""
        if self is PackageManager.APT:
            return ["dpkg-query", "-W", "-f=${Status}", package]
        return ["rpm", "-q", package]

    def update_steps(self) -> list[list[str]]:
        """Return the argument vectors that bring the system up to date."""
        if self is PackageManager.APT:
            return [["update"], ["upgrade", "-y"]]
        if self is PackageManager.YUM:
            return [["update", "-y"]]
        return [["upgrade", "-y"]]


_DISTRO_MANAGERS = {
    Distro.UBUNTU: PackageManager.APT,
    Distro.CENTOS: PackageManager.YUM,
    Distro.FEDORA: PackageManager.DNF,
}

# Probe order matters: hosts with both yum and dnf report yum.
DEFAULT_PROBES: tuple[tuple[PackageManager, Path], ...] = (
    (PackageManager.APT, Path("/usr/bin/apt")),
    (PackageManager.YUM, Path("/usr/bin/yum")),
    (PackageManager.DNF, Path("/usr/bin/dnf")),
)


@dataclass(slots=True)
class PackageProvider:
    """Install, remove and update packages through the host package manager."""

    runner: Runner
    probes: tuple[tuple[PackageManager, Path], ...] = DEFAULT_PROBES

    def detect(self) -> PackageManager:
        """Return the package manager present on the host."""
        for manager, path in self.probes:
            if path.exists():
                return manager
        raise PackageManagerError("Unsupported package manager: none of apt, yum or dnf found.")

    def install(
        self,
        *packages: str,
        manager: PackageManager | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Install *packages* in a single package manager transaction."""
        selected = manager or self.detect()
        return self._invoke(selected, selected.install_args(packages))

    def uninstall(
        self,
        *packages: str,
        manager: PackageManager | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Remove *packages*."""
        selected = manager or self.detect()
        return self._invoke(selected, selected.remove_args(packages))

    def is_installed(self, package: str, *, manager: PackageManager | None = None) -> bool:
        """Return ``True`` when *package* is already installed on the host.

        dpkg keeps removed packages with leftover config files in its
        database, so apt hosts also check the reported status.
        """
        selected = manager or self.detect()
        command, *args = selected.query_argv(package)
        result = self.runner.run(command, *args, check=False)
        if result.returncode != 0:
            return False
        if selected is PackageManager.APT:
            return "install ok installed" in (result.stdout or "")
        return True

    def update(self, *, manager: PackageManager | None = None) -> None:
        """Refresh package metadata and upgrade installed packages."""
        selected = manager or self.detect()
        for args in selected.update_steps():
            self._invoke(selected, args)

    def _invoke(
        self,
        manager: PackageManager,
        args: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        return self.runner.run(manager.value, *args)


__all__ = ["PackageManager", "PackageManagerError", "PackageProvider"]
