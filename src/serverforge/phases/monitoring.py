"""Monitoring phase: Prometheus, Grafana and the node exporter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..providers.packages import PackageManager
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

PROMETHEUS_CONFIG = Path("/etc/prometheus/prometheus.yml")
GRAFANA_KEYRING = Path("/usr/share/keyrings/grafana.key")
GRAFANA_APT_SOURCE = Path("/etc/apt/sources.list.d/grafana.list")
GRAFANA_YUM_REPO = Path("/etc/yum.repos.d/grafana.repo")
GRAFANA_KEY_URL = "https://packages.grafana.com/gpg.key"
GRAFANA_REPO_URL = "https://packages.grafana.com/oss/rpm/grafana.repo"
GRAFANA_APT_LINE = (
    f"deb [signed-by={GRAFANA_KEYRING}] https://packages.grafana.com/oss/deb stable main\n"
)
DOWNLOAD_DIR = Path("/tmp")


@dataclass(frozen=True)
class Release:
    """A release tarball for hosts without distribution packages."""

    name: str
    version: str
    binaries: tuple[str, ...]
    arguments: tuple[str, ...] = ()

    @property
    def stem(self) -> str:
        return f"{self.name}-{self.version}.linux-amd64"

    @property
    def url(self) -> str:
        return (
            f"https://github.com/prometheus/{self.name}/releases/download/"
            f"v{self.version}/{self.stem}.tar.gz"
        )


PROMETHEUS_RELEASE = Release(
    name="prometheus",
    version="2.30.3",
    binaries=("prometheus", "promtool"),
    arguments=(
        "--config.file /etc/prometheus/prometheus.yml",
        "--storage.tsdb.path /var/lib/prometheus/",
        "--web.console.templates=/etc/prometheus/consoles",
        "--web.console.libraries=/etc/prometheus/console_libraries",
    ),
)
NODE_EXPORTER_RELEASE = Release(
    name="node_exporter",
    version="1.2.2",
    binaries=("node_exporter",),
)


def setup_monitoring(ctx: PhaseContext) -> None:
    """Install and start the monitoring stack when it is enabled."""
    if not ctx.server.monitoring:
        LOGGER.info("Monitoring is disabled; skipping monitoring setup")
        return
    LOGGER.info("Setting up monitoring tools...")
    install_prometheus(ctx)
    install_grafana(ctx)
    configure_prometheus(ctx)
    setup_node_exporter(ctx)
    ctx.systemd.start_and_enable("grafana-server")
    LOGGER.info("Monitoring tools setup completed")


def install_prometheus(ctx: PhaseContext) -> None:
    """Install Prometheus from apt or from the release tarball."""
    if ctx.package_manager() is PackageManager.APT:
        ctx.install("prometheus")
        return
    install_release(ctx, PROMETHEUS_RELEASE, data_dirs=("/etc/prometheus", "/var/lib/prometheus"))
    unpacked = DOWNLOAD_DIR / PROMETHEUS_RELEASE.stem
    ctx.run(
        "cp",
        "-r",
        str(unpacked / "consoles"),
        str(unpacked / "console_libraries"),
        "/etc/prometheus/",
    )


def install_grafana(ctx: PhaseContext) -> None:
    """Add the Grafana vendor repository and install the package."""
    if ctx.package_manager() is PackageManager.APT:
        ctx.install("apt-transport-https", "software-properties-common", "curl")
        ctx.download(GRAFANA_KEY_URL, GRAFANA_KEYRING)
        ctx.write_file(GRAFANA_APT_SOURCE, GRAFANA_APT_LINE)
        ctx.tools.packages.update(manager=PackageManager.APT)
    else:
        ctx.download(GRAFANA_REPO_URL, GRAFANA_YUM_REPO)
    ctx.install("grafana")


def configure_prometheus(ctx: PhaseContext) -> None:
    """Scrape the local node exporter and restart Prometheus."""
    ctx.render(
        "monitoring/prometheus.yml.j2",
        PROMETHEUS_CONFIG,
        {"scrape_interval": "15s", "node_exporter_target": "localhost:9100"},
    )
    ctx.systemd.restart("prometheus")
    ctx.systemd.enable("prometheus")


def setup_node_exporter(ctx: PhaseContext) -> None:
    """Install the node exporter and start its service."""
    if ctx.package_manager() is PackageManager.APT:
        ctx.install("prometheus-node-exporter")
        service = "prometheus-node-exporter"
    else:
        install_release(ctx, NODE_EXPORTER_RELEASE)
        service = "node_exporter"
    ctx.systemd.start_and_enable(service)


def install_release(
    ctx: PhaseContext,
    release: Release,
    *,
    data_dirs: tuple[str, ...] = (),
) -> None:
    """Install *release* from its tarball and register a systemd unit for it."""
    archive = DOWNLOAD_DIR / f"{release.stem}.tar.gz"
    ctx.run("wget", "-q", "-O", str(archive), release.url)
    ctx.run("tar", "-xzf", str(archive), "-C", str(DOWNLOAD_DIR))
    # useradd exits 9 when the account already exists.
    ctx.run("useradd", "--no-create-home", "--shell", "/bin/false", release.name, check=False)
    for directory in data_dirs:
        ctx.run("mkdir", "-p", directory)
        ctx.run("chown", f"{release.name}:{release.name}", directory)
    for binary in release.binaries:
        ctx.track_file(f"/usr/local/bin/{binary}")
        ctx.run(
            "install",
            "-m",
            "0755",
            "-o",
            release.name,
            "-g",
            release.name,
            str(DOWNLOAD_DIR / release.stem / binary),
            f"/usr/local/bin/{binary}",
        )
    ctx.render(
        "systemd/service.j2",
        ctx.systemd.unit_path(release.name),
        {
            "description": release.name.replace("_", " ").title(),
            "user": release.name,
            "group": release.name,
            "exec_start": f"/usr/local/bin/{release.binaries[0]}",
            "arguments": list(release.arguments),
        },
    )
    ctx.systemd.daemon_reload()


__all__ = ["Release", "install_release", "setup_monitoring"]
