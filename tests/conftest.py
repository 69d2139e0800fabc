"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

import pytest

from serverforge.commands import CommandError
from serverforge.config import AppConfig, load_config
from serverforge.phases import PhaseContext, Toolbox
from serverforge.providers import PackageManager, PackageProvider, SystemdProvider
from serverforge.rollback import RollbackManager
from serverforge.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class RecordingRunner:
    """Command runner double that records invocations instead of running them.

    ``failures`` maps an argv prefix to the exit code the command should
    report; ``outputs`` maps a full argv to the stdout it should return.
    Package database queries are answered from ``installed`` and kept in
    ``queries`` rather than ``calls``; successful installs add to it.
    """

    def __init__(
        self,
        failures: Mapping[tuple[str, ...], int] | None = None,
        outputs: Mapping[tuple[str, ...], str] | None = None,
        installed: Iterable[str] = (),
    ) -> None:
        """Initialise the double."""
        self.calls: list[tuple[str, ...]] = []
        self.inputs: list[str | None] = []
        self.queries: list[tuple[str, ...]] = []
        self.failures = dict(failures or {})
        self.outputs = dict(outputs or {})
        self.installed = set(installed)

    def run(
        self,
        command: str,
        *args: str,
        check: bool = True,
        capture_output: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        argv = (command, *args)
        if command in ("dpkg-query", "rpm"):
            return self._query(argv)
        self.calls.append(argv)
        self.inputs.append(input_text)
        for prefix, returncode in self.failures.items():
            if argv[: len(prefix)] == prefix:
                if check:
                    raise CommandError(command, args, returncode=returncode, stderr="boom")
                return subprocess.CompletedProcess(list(argv), returncode, "", "boom")
        if args[:2] == ("install", "-y") and command in ("apt", "yum", "dnf"):
            self.installed.update(args[2:])
        return subprocess.CompletedProcess(list(argv), 0, self.outputs.get(argv, ""), "")

    def _query(self, argv: tuple[str, ...]) -> subprocess.CompletedProcess[str]:
        self.queries.append(argv)
        if argv[-1] in self.installed:
            return subprocess.CompletedProcess(list(argv), 0, "install ok installed", "")
        return subprocess.CompletedProcess(list(argv), 1, "", f"package {argv[-1]} is not installed")

    def commands(self, name: str) -> list[tuple[str, ...]]:
        """Return every recorded invocation of *name*."""
        return [call for call in self.calls if call[0] == name]


def make_probes(
    tmp_path: Path,
    present: PackageManager | None,
) -> tuple[tuple[PackageManager, Path], ...]:
    """Return probe paths under *tmp_path* where only *present* exists."""
    bin_dir = tmp_path / "probe-bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    probes = []
    for manager in (PackageManager.APT, PackageManager.YUM, PackageManager.DNF):
        path = bin_dir / manager.value
        if manager is present:
            path.write_text("", encoding="utf-8")
        probes.append((manager, path))
    return tuple(probes)


def make_config(tmp_path: Path, **server: object) -> AppConfig:
    """Build an :class:`AppConfig` rooted under *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "config_snapshot": str(tmp_path / "server_setup_config.json"),
            "report_path": str(tmp_path / "server_setup_report.txt"),
            "backup": {
                "repository": str(tmp_path / "restic-repo"),
                "password_file": str(tmp_path / "restic_password"),
                "script": str(tmp_path / "run-backup.sh"),
                "cron_file": str(tmp_path / "cron" / "restic-backup"),
            },
            "server": dict(server),
        },
    )


ContextFactory = Callable[..., PhaseContext]


@pytest.fixture
def runner() -> RecordingRunner:
    """Return a fresh recording runner."""
    return RecordingRunner()


@pytest.fixture
def make_context(tmp_path: Path, runner: RecordingRunner) -> ContextFactory:
    """Return a factory building a phase context bound to a new snapshot."""

    def factory(
        *,
        manager: PackageManager = PackageManager.APT,
        dry_run: bool = False,
        rollback: RollbackManager | None = None,
        **server: object,
    ) -> PhaseContext:
        packages = PackageProvider(runner, probes=make_probes(tmp_path, manager))
        tools = Toolbox(
            runner=runner,
            packages=packages,
            systemd=SystemdProvider(runner, systemd_dir=tmp_path / "systemd"),
            templates=TemplateEngine.with_overrides(None),
            dry_run=dry_run,
        )
        manager_ = rollback or RollbackManager(packages)
        snapshot_id = manager_.create_snapshot("test")
        return PhaseContext(
            phase="test",
            config=make_config(tmp_path, **server),
            rollback=manager_,
            snapshot_id=snapshot_id,
            tools=tools,
        )

    return factory
