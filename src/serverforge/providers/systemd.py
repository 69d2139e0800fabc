"""Systemd provider for managing the services serverforge installs."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..commands import Runner


@dataclass(slots=True)
class SystemdProvider:
    """Start, enable and reload service units via ``systemctl``."""

    runner: Runner
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_name(self, service: str) -> str:
        """Return the unit name for *service* (``.service`` unless typed)."""
        if "." in service:
            return service
        return f"{service}.service"

    def unit_path(self, service: str) -> Path:
        """Return the full path for a unit file owned by serverforge."""
        return self.systemd_dir / self.unit_name(service)

    def enable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", service)

    def disable(self, service: str) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", service)

    def start(self, service: str) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", service)

    def stop(self, service: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", service)

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", service)

    def reload(self, service: str) -> subprocess.CompletedProcess[str]:
        """Reload the unit configuration without restarting it."""
        return self._systemctl("reload", service)

    def start_and_enable(self, service: str) -> None:
        """Start the unit now and on every boot."""
        self.start(service)
        self.enable(service)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        service: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [command]
        if service is not None:
            args.append(self.unit_name(service))
        return self.runner.run(self.systemctl_bin, *args)


__all__ = ["SystemdProvider"]
