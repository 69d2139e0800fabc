"""Per-phase context handed to every provisioning phase body."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..commands import Runner
from ..config import AppConfig, ServerConfig
from ..providers.packages import PackageManager, PackageProvider
from ..providers.systemd import SystemdProvider
from ..rollback import FileChangeError, RollbackManager
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Toolbox:
    """Collaborators shared by all phases of one run."""

    runner: Runner
    packages: PackageProvider
    systemd: SystemdProvider
    templates: TemplateEngine
    dry_run: bool = False


@dataclass(slots=True)
class PhaseContext:
    """Everything a phase needs, bound to the phase's open snapshot.

    Mutations go through :meth:`install`, :meth:`write_file`, :meth:`render`
    and :meth:`edit_file` so each one lands in the snapshot and can be undone.
    """

    phase: str
    config: AppConfig
    rollback: RollbackManager
    snapshot_id: int
    tools: Toolbox
    _manager: PackageManager | None = field(default=None, init=False, repr=False)

    @property
    def server(self) -> ServerConfig:
        """Return the declarative server settings."""
        return self.config.server

    @property
    def systemd(self) -> SystemdProvider:
        """Return the systemd provider."""
        return self.tools.systemd

    @property
    def dry_run(self) -> bool:
        """Return ``True`` when nothing should be written to disk."""
        return self.tools.dry_run

    def package_manager(self) -> PackageManager:
        """Return the host package manager (detected once per phase)."""
        if self._manager is None:
            self._manager = self.tools.packages.detect()
        return self._manager

    # Reversible primitives ---------------------------------------------
    def install(self, *packages: str) -> None:
        """Install *packages*, then record the ones that were not present before.

        Packages already on the host are installed again but never recorded,
        so rollback does not remove them. Dry runs record nothing.
        """
        if not packages:
            return
        manager = self.package_manager()
        wanted = list(dict.fromkeys(packages))
        absent: list[str] = []
        if not self.dry_run:
            absent = [
                name
                for name in wanted
                if not self.tools.packages.is_installed(name, manager=manager)
            ]
        self.tools.packages.install(*wanted, manager=manager)
        for name in absent:
            self.rollback.record_package_installed(self.snapshot_id, name)

    def track_file(self, path: str | os.PathLike[str]) -> Path:
        """Capture the prior state of *path* before an external command writes it."""
        target = Path(path)
        if not self.dry_run:
            self.rollback.record_file_change(self.snapshot_id, target)
        return target

    def write_file(
        self,
        path: str | os.PathLike[str],
        content: str | bytes,
        *,
        mode: int | None = None,
    ) -> Path:
        """Capture the prior state of *path*, then replace its contents."""
        target = Path(path)
        if self.dry_run:
            LOGGER.info("Dry run: would write %s", target)
            return target
        self.rollback.record_file_change(self.snapshot_id, target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(target, mode)
        LOGGER.info("Wrote %s", target)
        return target

    def render(
        self,
        template_name: str,
        path: str | os.PathLike[str],
        context: Mapping[str, object] | None = None,
        *,
        mode: int | None = None,
    ) -> Path:
        """Render *template_name* into *path* through :meth:`write_file`."""
        content = self.tools.templates.render_to_string(template_name, context or {})
        return self.write_file(path, content, mode=mode)

    def edit_file(
        self,
        path: str | os.PathLike[str],
        replacements: Mapping[str, str],
    ) -> bool:
        """Apply literal *replacements* to an existing file.

        Returns ``True`` when the content changed.
        """
        target = Path(path)
        try:
            original = target.read_text(encoding="utf-8")
        except OSError as exc:
            if self.dry_run:
                LOGGER.info("Dry run: cannot read %s (%s)", target, exc.strerror or exc)
                return False
            raise FileChangeError(target, exc.strerror or str(exc)) from exc
        updated = original
        for old, new in replacements.items():
            updated = updated.replace(old, new)
        if updated == original:
            return False
        self.write_file(target, updated)
        return True

    def download(
        self,
        url: str,
        path: str | os.PathLike[str],
        *,
        mode: int | None = None,
    ) -> Path:
        """Fetch *url* into *path* with curl, capturing the prior state first."""
        target = self.track_file(path)
        self.run("curl", "-fsSL", "-o", str(target), url)
        if mode is not None and not self.dry_run:
            os.chmod(target, mode)
        return target

    # Plain commands ------------------------------------------------------
    def run(
        self,
        command: str,
        *args: str,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run an external command; not recorded for rollback."""
        return self.tools.runner.run(command, *args, check=check, input_text=input_text)

    def service(self, action: str, unit: str) -> subprocess.CompletedProcess[str]:
        """Run ``systemctl <action> <unit>``."""
        return self.tools.runner.run(self.systemd.systemctl_bin, action, self.systemd.unit_name(unit))


__all__ = ["PhaseContext", "Toolbox"]
