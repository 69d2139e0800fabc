"""Tests for the provisioning phase bodies."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from conftest import ContextFactory, RecordingRunner, make_config, make_probes

from serverforge.config import AppKind, UnsupportedConfigurationError
from serverforge.phases import (
    APP_REGISTRY,
    PhaseContext,
    Toolbox,
    backup,
    containers,
    deployment,
    security,
    setup,
    updates,
)
from serverforge.phases import monitoring
from serverforge.phases.monitoring import setup_monitoring
from serverforge.providers import PackageManager, PackageProvider, SystemdProvider
from serverforge.rollback import FileCreated, PackageInstalled, RollbackManager
from serverforge.templates import TemplateEngine


def _context_for(runner: RecordingRunner, tmp_path: Path, *, dry_run: bool = True) -> PhaseContext:
    packages = PackageProvider(runner, probes=make_probes(tmp_path, PackageManager.APT))
    rollback = RollbackManager(packages)
    return PhaseContext(
        phase="test",
        config=make_config(tmp_path),
        rollback=rollback,
        snapshot_id=rollback.create_snapshot("test"),
        tools=Toolbox(
            runner,
            packages,
            SystemdProvider(runner),
            TemplateEngine.with_overrides(None),
            dry_run=dry_run,
        ),
    )


def _installed(runner: RecordingRunner) -> list[str]:
    packages: list[str] = []
    for call in runner.calls:
        if len(call) > 2 and call[1:3] == ("install", "-y"):
            packages.extend(call[3:])
    return packages


# setup -------------------------------------------------------------------
def test_setup_on_ubuntu_updates_installs_and_configures_ufw(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Ubuntu hosts get apt extras and a default-deny ufw firewall."""
    ctx = make_context(dry_run=True, custom_firewall_rules=["8080/tcp"])

    setup.initial_setup(ctx)

    assert runner.calls[:2] == [("apt", "update"), ("apt", "upgrade", "-y")]
    assert _installed(runner) == [
        "curl",
        "wget",
        "vim",
        "ufw",
        "fail2ban",
        "apt-listchanges",
        "needrestart",
        "debsums",
        "apt-show-versions",
    ]
    ufw = runner.commands("ufw")
    assert ufw[0] == ("ufw", "default", "deny", "incoming")
    assert ("ufw", "allow", "2222/tcp") in ufw
    assert ("ufw", "allow", "8080/tcp") in ufw
    assert ufw[-1] == ("ufw", "--force", "enable")
    assert ("systemctl", "restart", "sshd.service") in runner.calls
    assert ctx.rollback.snapshots()[0].actions == ()


def test_setup_on_fedora_uses_firewalld(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """RPM hosts open custom ports through firewalld and skip apt extras."""
    ctx = make_context(
        manager=PackageManager.DNF,
        dry_run=True,
        linux_distro="fedora",
        custom_firewall_rules=["443/tcp"],
    )

    setup.initial_setup(ctx)

    assert runner.calls[0] == ("dnf", "upgrade", "-y")
    assert "needrestart" not in _installed(runner)
    firewall = runner.commands("firewall-cmd")
    assert ("firewall-cmd", "--zone=public", "--add-port=443/tcp", "--permanent") in firewall
    assert firewall[-1] == ("firewall-cmd", "--reload")
    assert runner.commands("ufw") == []


def test_setup_ssh_hardens_config_and_restarts(
    tmp_path: Path,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Root login, password auth and the default port are rewritten."""
    sshd_config = tmp_path / "sshd_config"
    sshd_config.write_text(
        "#Port 22\nPermitRootLogin yes\n#PasswordAuthentication yes\n",
        encoding="utf-8",
    )
    ctx = make_context(ssh_port=2200)

    setup.setup_ssh(ctx, sshd_config)

    assert sshd_config.read_text(encoding="utf-8") == (
        "Port 2200\nPermitRootLogin no\nPasswordAuthentication no\n"
    )
    assert runner.calls == [("systemctl", "restart", "sshd.service")]


def test_setup_ssh_leaves_hardened_config_alone(
    tmp_path: Path,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """An already hardened file is not rewritten and sshd is not restarted."""
    sshd_config = tmp_path / "sshd_config"
    sshd_config.write_text("PermitRootLogin no\n", encoding="utf-8")
    ctx = make_context()

    setup.setup_ssh(ctx, sshd_config)

    assert runner.calls == []
    assert ctx.rollback.snapshots()[0].actions == ()


# security ----------------------------------------------------------------
def test_security_writes_jail_and_scan_files(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """fail2ban, the scan script and its cron entry are written and recorded."""
    monkeypatch.setattr(security, "FAIL2BAN_JAIL", tmp_path / "jail.local")
    monkeypatch.setattr(security, "SCAN_SCRIPT", tmp_path / "security_scan.sh")
    monkeypatch.setattr(security, "SCAN_CRON", tmp_path / "security_scan")
    ctx = make_context(ssh_port=2022)

    security.implement_security_measures(ctx)

    jail = (tmp_path / "jail.local").read_text(encoding="utf-8")
    assert "port = 2022" in jail
    assert "logpath = /var/log/auth.log" in jail
    assert (tmp_path / "security_scan.sh").stat().st_mode & 0o777 == 0o755
    assert str(tmp_path / "security_scan.sh") in (tmp_path / "security_scan").read_text(
        encoding="utf-8"
    )
    assert "apparmor" not in _installed(runner)
    assert ("rkhunter", "--propupd") in runner.calls
    assert FileCreated(tmp_path / "jail.local") in ctx.rollback.snapshots()[0].actions


def test_security_tolerates_rkhunter_update_exit_code(tmp_path: Path) -> None:
    """rkhunter --update exits non-zero when nothing changed; that is not fatal."""
    runner = RecordingRunner(failures={("rkhunter", "--update"): 2})
    ctx = _context_for(runner, tmp_path)

    security.setup_rootkit_detection(ctx)

    assert ("rkhunter", "--propupd") in runner.calls


@pytest.mark.parametrize(
    ("distro", "manager", "expected"),
    [
        ("ubuntu", PackageManager.APT, ["apparmor", "apparmor-utils"]),
        ("centos", PackageManager.YUM, ["selinux-policy", "selinux-policy-targeted"]),
    ],
)
def test_advanced_security_enables_mandatory_access_control(
    make_context: ContextFactory,
    runner: RecordingRunner,
    distro: str,
    manager: PackageManager,
    expected: list[str],
) -> None:
    """The advanced level adds AppArmor on Ubuntu and SELinux on RPM hosts."""
    ctx = make_context(
        manager=manager,
        dry_run=True,
        linux_distro=distro,
        security_level="advanced",
    )

    security.setup_advanced_security(ctx)

    assert _installed(runner) == expected


# updates -----------------------------------------------------------------
@pytest.mark.parametrize(
    ("distro", "manager", "package", "unit"),
    [
        ("ubuntu", PackageManager.APT, "unattended-upgrades", "unattended-upgrades.service"),
        ("centos", PackageManager.YUM, "yum-cron", "yum-cron.service"),
        ("fedora", PackageManager.DNF, "dnf-automatic", "dnf-automatic.timer"),
    ],
)
def test_automatic_updates_per_distribution(
    make_context: ContextFactory,
    runner: RecordingRunner,
    distro: str,
    manager: PackageManager,
    package: str,
    unit: str,
) -> None:
    """Each distribution uses its own unattended update mechanism."""
    ctx = make_context(manager=manager, dry_run=True, linux_distro=distro)

    updates.setup_automatic_updates(ctx)

    assert package in _installed(runner)
    assert ("systemctl", "enable", unit) in runner.calls
    assert ("systemctl", "start", unit) in runner.calls


@pytest.mark.parametrize(("schedule", "days"), [("daily", 1), ("weekly", 7), ("monthly", 30)])
def test_ubuntu_update_period_follows_schedule(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
    schedule: str,
    days: int,
) -> None:
    """The apt periodic interval reflects the configured update schedule."""
    monkeypatch.setattr(updates, "UNATTENDED_UPGRADES_CONF", tmp_path / "50unattended-upgrades")
    monkeypatch.setattr(updates, "AUTO_UPGRADES_CONF", tmp_path / "20auto-upgrades")
    ctx = make_context(update_schedule=schedule)

    updates.setup_ubuntu_updates(ctx)

    content = (tmp_path / "20auto-upgrades").read_text(encoding="utf-8")
    assert f'APT::Periodic::Unattended-Upgrade "{days}";' in content


def test_fedora_updates_enable_apply(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
) -> None:
    """dnf-automatic is switched to applying updates."""
    conf = tmp_path / "automatic.conf"
    conf.write_text("[commands]\napply_updates = no\n", encoding="utf-8")
    monkeypatch.setattr(updates, "DNF_AUTOMATIC_CONF", conf)
    ctx = make_context(manager=PackageManager.DNF, linux_distro="fedora")

    updates.setup_fedora_updates(ctx)

    assert "apply_updates = yes" in conf.read_text(encoding="utf-8")


# monitoring --------------------------------------------------------------
def test_monitoring_disabled_does_nothing(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """A disabled monitoring phase runs no commands and records nothing."""
    ctx = make_context(monitoring=False)

    setup_monitoring(ctx)

    assert runner.calls == []
    assert ctx.rollback.snapshots()[0].actions == ()


def test_monitoring_on_apt_uses_packages(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Apt hosts install Prometheus, Grafana and the exporter as packages."""
    ctx = make_context(dry_run=True, monitoring=True)

    setup_monitoring(ctx)

    installed = _installed(runner)
    assert {"prometheus", "grafana", "prometheus-node-exporter"} <= set(installed)
    assert runner.commands("tar") == []
    assert ("systemctl", "start", "grafana-server.service") in runner.calls


def test_monitoring_on_rpm_installs_release_tarballs(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """RPM hosts unpack Prometheus and the node exporter and register units."""
    ctx = make_context(manager=PackageManager.YUM, dry_run=True, linux_distro="centos", monitoring=True)

    setup_monitoring(ctx)

    tarballs = [call[2] for call in runner.commands("tar")]
    assert any("prometheus-2.30.3" in name for name in tarballs)
    assert any("node_exporter-1.2.2" in name for name in tarballs)
    assert ("systemctl", "daemon-reload") in runner.calls
    assert ("systemctl", "enable", "node_exporter.service") in runner.calls
    assert _installed(runner) == ["grafana"]


# backup ------------------------------------------------------------------
@pytest.mark.parametrize(
    ("frequency", "schedule"),
    [("hourly", "0 * * * *"), ("daily", "0 2 * * *"), ("weekly", "0 2 * * 0")],
)
def test_backup_writes_cron_and_script(
    tmp_path: Path,
    make_context: ContextFactory,
    runner: RecordingRunner,
    frequency: str,
    schedule: str,
) -> None:
    """Backup installs restic, initialises the repository and schedules the script."""
    ctx = make_context(backup_frequency=frequency, server_role="database")

    backup.setup_backup_system(ctx)

    cron = (tmp_path / "cron" / "restic-backup").read_text(encoding="utf-8")
    assert f"{schedule} root {tmp_path / 'run-backup.sh'}" in cron
    script = tmp_path / "run-backup.sh"
    assert "restic backup /var/lib/mysql /var/lib/postgresql --tag serverforge" in script.read_text(
        encoding="utf-8"
    )
    assert script.stat().st_mode & 0o777 == 0o755
    password = tmp_path / "restic_password"
    assert password.stat().st_mode & 0o777 == 0o600
    assert (
        "restic",
        "init",
        "--repo",
        str(tmp_path / "restic-repo"),
        "--password-file",
        str(password),
    ) in runner.calls
    assert PackageInstalled("restic") in ctx.rollback.snapshots()[0].actions


def test_backup_keeps_existing_password(tmp_path: Path, make_context: ContextFactory) -> None:
    """An existing restic password file is reused, not regenerated."""
    password = tmp_path / "restic_password"
    password.write_text("keep-me\n", encoding="utf-8")
    ctx = make_context()

    backup.setup_backup_locations(ctx)

    assert password.read_text(encoding="utf-8") == "keep-me\n"


# deployment --------------------------------------------------------------
def test_registry_covers_every_application() -> None:
    """Every AppKind has a deployer."""
    assert set(APP_REGISTRY) == set(AppKind)


def test_deploy_applications_runs_registry_in_order(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Applications deploy in configuration order through the registry."""
    ctx = make_context(dry_run=True, deployed_apps=["python", "nodejs"])

    deployment.deploy_applications(ctx)

    installed = _installed(runner)
    assert installed.index("python3") < installed.index("nodejs")
    assert ("npm", "install", "-g", "pm2") in runner.calls


def test_deploy_app_missing_from_registry_is_unsupported(make_context: ContextFactory) -> None:
    """A registry without the application raises UnsupportedConfigurationError."""
    ctx = make_context(dry_run=True)

    with pytest.raises(UnsupportedConfigurationError):
        deployment.deploy_app(ctx, AppKind.NGINX, registry={})


@pytest.mark.parametrize(
    ("role", "expected"),
    [("web", True), ("database", False)],
)
def test_php_adds_apache_module_for_web_role(
    make_context: ContextFactory,
    runner: RecordingRunner,
    role: str,
    expected: bool,
) -> None:
    """libapache2-mod-php is only installed for web servers."""
    ctx = make_context(dry_run=True, server_role=role)

    deployment.deploy_app(ctx, AppKind.PHP)

    assert ("libapache2-mod-php" in _installed(runner)) is expected


def test_apache_uses_httpd_on_rpm_hosts(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Apache is called httpd outside Debian derivatives."""
    ctx = make_context(manager=PackageManager.DNF, dry_run=True, linux_distro="fedora")

    deployment.deploy_app(ctx, AppKind.APACHE)

    assert _installed(runner) == ["httpd"]
    assert ("systemctl", "reload", "httpd.service") in runner.calls


def test_mysql_password_goes_through_stdin(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """The generated password never appears in argv and is stored 0600."""
    password_file = tmp_path / "mysql_root_password"
    monkeypatch.setattr(deployment, "MYSQL_PASSWORD_FILE", password_file)
    ctx = make_context()

    deployment.configure_mysql(ctx)

    password = password_file.read_text(encoding="utf-8").strip()
    assert password_file.stat().st_mode & 0o777 == 0o600
    index = runner.calls.index(("mysql", "--user=root"))
    assert password in (runner.inputs[index] or "")
    assert all(password not in " ".join(call) for call in runner.calls)


# containers --------------------------------------------------------------
def test_docker_deployment_replaces_container(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """Each app is pulled, any old container removed, and a new one started."""
    ctx = make_context(dry_run=True, use_containers=True, deployed_apps=["nginx"])

    containers.deploy_containers(ctx)

    assert runner.commands("docker") == [
        ("docker", "pull", "nginx"),
        ("docker", "stop", "nginx"),
        ("docker", "rm", "nginx"),
        ("docker", "run", "-d", "--name", "nginx", "-p", "80:80", "nginx"),
    ]


def test_docker_stop_failure_is_ignored(tmp_path: Path) -> None:
    """A missing container makes stop/rm fail without failing the phase."""
    runner = RecordingRunner(failures={("docker", "stop"): 1, ("docker", "rm"): 1})
    ctx = _context_for(runner, tmp_path)

    containers.deploy_to_docker(ctx, AppKind.NGINX)

    assert runner.calls[-1][:2] == ("docker", "run")


def test_kubernetes_deployment_writes_manifest(
    tmp_path: Path,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """The manifest is written under the runtime dir, applied and exposed."""
    ctx = make_context(use_containers=True, use_kubernetes=True, deployed_apps=["nginx"])

    containers.deploy_containers(ctx)

    manifest = tmp_path / "run" / "manifests" / "nginx-deployment.yaml"
    document = yaml.safe_load(manifest.read_text(encoding="utf-8"))
    assert document == containers.deployment_manifest(AppKind.NGINX)
    assert document["spec"]["template"]["spec"]["containers"][0]["image"] == "nginx:latest"
    assert runner.commands("kubectl") == [
        ("kubectl", "apply", "-f", str(manifest)),
        ("kubectl", "expose", "deployment", "nginx", "--type=LoadBalancer", "--port=80"),
    ]
    assert ctx.rollback.snapshots()[0].actions == (FileCreated(manifest),)


def test_docker_setup_on_fedora_adds_vendor_repo(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """RPM hosts register the Docker repository before installing docker-ce."""
    ctx = make_context(manager=PackageManager.DNF, dry_run=True, linux_distro="fedora", use_containers=True)

    containers.setup_docker(ctx)

    assert (
        "dnf",
        "config-manager",
        "--add-repo",
        "https://download.docker.com/linux/fedora/docker-ce.repo",
    ) in runner.calls
    assert _installed(runner)[-3:] == list(containers.DOCKER_PACKAGES)
    assert runner.calls[-1] == ("systemctl", "restart", "docker.service")


def test_kubernetes_setup_starts_minikube_with_addons(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """kubectl and minikube are fetched and the cluster started with addons."""
    ctx = make_context(dry_run=True, use_containers=True, use_kubernetes=True)

    containers.setup_kubernetes(ctx)

    assert ("minikube", "start") in runner.calls
    assert ("minikube", "addons", "enable", "ingress") in runner.calls
    assert ("minikube", "addons", "enable", "dashboard") in runner.calls
    assert "virtualbox" in _installed(runner)


# files written by external commands -------------------------------------
def _recorded_paths(ctx: PhaseContext) -> list[Path]:
    return [action.path for action in ctx.rollback.snapshots()[0].actions if hasattr(action, "path")]


def test_grafana_repo_on_rpm_is_downloaded_and_recorded(
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """The Grafana repository file is fetched through the snapshot."""
    ctx = make_context(manager=PackageManager.DNF, linux_distro="fedora", monitoring=True)

    monitoring.install_grafana(ctx)

    assert (
        "curl",
        "-fsSL",
        "-o",
        str(monitoring.GRAFANA_YUM_REPO),
        monitoring.GRAFANA_REPO_URL,
    ) in runner.calls
    assert runner.commands("wget") == []
    assert _recorded_paths(ctx) == [monitoring.GRAFANA_YUM_REPO]
    assert ctx.rollback.snapshots()[0].actions[-1] == PackageInstalled("grafana")


def test_grafana_key_on_apt_is_downloaded_and_recorded(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
) -> None:
    """The Grafana signing key and apt source both land in the snapshot."""
    keyring = tmp_path / "grafana.key"
    source = tmp_path / "grafana.list"
    monkeypatch.setattr(monitoring, "GRAFANA_KEYRING", keyring)
    monkeypatch.setattr(monitoring, "GRAFANA_APT_SOURCE", source)
    ctx = make_context(monitoring=True)

    monitoring.install_grafana(ctx)

    assert _recorded_paths(ctx) == [keyring, source]


def test_release_binaries_are_recorded(
    tmp_path: Path,
    make_context: ContextFactory,
) -> None:
    """Binaries copied by install(1) and the systemd unit are both recorded."""
    ctx = make_context(manager=PackageManager.YUM, linux_distro="centos", monitoring=True)

    monitoring.install_release(ctx, monitoring.NODE_EXPORTER_RELEASE)

    paths = _recorded_paths(ctx)
    assert Path("/usr/local/bin/node_exporter") in paths
    assert tmp_path / "systemd" / "node_exporter.service" in paths


def test_docker_keyring_on_apt_is_recorded(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_context: ContextFactory,
    runner: RecordingRunner,
) -> None:
    """The keyring written by gpg is captured before gpg runs."""
    keyring = tmp_path / "docker-archive-keyring.gpg"
    monkeypatch.setattr(containers, "DOCKER_KEYRING", keyring)
    monkeypatch.setattr(containers, "DOCKER_APT_SOURCE", tmp_path / "docker.list")
    ctx = make_context(use_containers=True)

    containers.install_docker(ctx)

    assert runner.commands("gpg")[0][:5] == ("gpg", "--dearmor", "--yes", "-o", str(keyring))
    assert _recorded_paths(ctx) == [keyring, tmp_path / "docker.list"]


@pytest.mark.parametrize("manager", [PackageManager.YUM, PackageManager.DNF])
def test_docker_repo_on_rpm_is_recorded(make_context: ContextFactory, manager: PackageManager) -> None:
    """The repository file written by config-manager is captured first."""
    ctx = make_context(manager=manager, use_containers=True)

    containers.install_docker(ctx)

    assert _recorded_paths(ctx) == [containers.DOCKER_YUM_REPO]
