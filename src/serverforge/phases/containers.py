"""Containerization phases: Docker, Kubernetes (minikube) and app containers."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import yaml

from ..config import AppKind
from ..providers.packages import PackageManager
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

DOCKER_PACKAGES: tuple[str, ...] = ("docker-ce", "docker-ce-cli", "containerd.io")
DOCKER_KEYRING = Path("/usr/share/keyrings/docker-archive-keyring.gpg")
DOCKER_APT_SOURCE = Path("/etc/apt/sources.list.d/docker.list")
DOCKER_YUM_REPO = Path("/etc/yum.repos.d/docker-ce.repo")
DOCKER_DAEMON_CONFIG = Path("/etc/docker/daemon.json")
DOCKER_REPOS = {
    PackageManager.YUM: "https://download.docker.com/linux/centos/docker-ce.repo",
    PackageManager.DNF: "https://download.docker.com/linux/fedora/docker-ce.repo",
}

DAEMON_CONFIG: dict[str, object] = {
    "log-driver": "json-file",
    "log-opts": {"max-size": "100m", "max-file": "3"},
    "default-ulimits": {"nofile": {"Name": "nofile", "Hard": 64000, "Soft": 64000}},
}

KUBECTL_PATH = Path("/usr/local/bin/kubectl")
MINIKUBE_PATH = Path("/usr/local/bin/minikube")
KUBECTL_COMPLETION = Path("/etc/bash_completion.d/kubectl")
KUBERNETES_STABLE_URL = "https://dl.k8s.io/release/stable.txt"
MINIKUBE_URL = "https://storage.googleapis.com/minikube/releases/latest/minikube-linux-amd64"
MINIKUBE_ADDONS: tuple[str, ...] = ("ingress", "dashboard")


# docker ------------------------------------------------------------------
def setup_docker(ctx: PhaseContext) -> None:
    """Install Docker from the vendor repository and configure the daemon."""
    LOGGER.info("Setting up Docker...")
    install_docker(ctx)
    configure_docker(ctx)
    LOGGER.info("Docker setup completed")


def install_docker(ctx: PhaseContext) -> None:
    """Register the Docker vendor repository, then install and start Docker."""
    manager = ctx.package_manager()
    if manager is PackageManager.APT:
        ctx.install("apt-transport-https", "ca-certificates", "curl", "gnupg", "lsb-release")
        armored = Path("/tmp/docker.gpg")
        ctx.run("curl", "-fsSL", "-o", str(armored), "https://download.docker.com/linux/ubuntu/gpg")
        ctx.track_file(DOCKER_KEYRING)
        ctx.run("gpg", "--dearmor", "--yes", "-o", str(DOCKER_KEYRING), str(armored))
        codename = ctx.run("lsb_release", "-cs").stdout.strip()
        ctx.write_file(
            DOCKER_APT_SOURCE,
            f"deb [arch=amd64 signed-by={DOCKER_KEYRING}] "
            f"https://download.docker.com/linux/ubuntu {codename} stable\n",
        )
        ctx.tools.packages.update(manager=manager)
    elif manager is PackageManager.YUM:
        ctx.install("yum-utils")
        ctx.track_file(DOCKER_YUM_REPO)
        ctx.run("yum-config-manager", "--add-repo", DOCKER_REPOS[manager])
    else:
        ctx.install("dnf-plugins-core")
        ctx.track_file(DOCKER_YUM_REPO)
        ctx.run("dnf", "config-manager", "--add-repo", DOCKER_REPOS[manager])
    ctx.install(*DOCKER_PACKAGES)
    ctx.systemd.start_and_enable("docker")


def configure_docker(ctx: PhaseContext) -> None:
    """Create the docker group, write daemon.json and restart Docker."""
    ctx.run("groupadd", "-f", "docker")
    operator = os.environ.get("SUDO_USER")
    if operator:
        ctx.run("usermod", "-aG", "docker", operator)
    ctx.write_file(DOCKER_DAEMON_CONFIG, json.dumps(DAEMON_CONFIG, indent=2) + "\n")
    ctx.systemd.restart("docker")


# kubernetes --------------------------------------------------------------
def setup_kubernetes(ctx: PhaseContext) -> None:
    """Install kubectl and minikube and start a local cluster."""
    LOGGER.info("Setting up Kubernetes...")
    install_kubernetes(ctx)
    configure_kubernetes(ctx)
    LOGGER.info("Kubernetes setup completed")


def install_kubernetes(ctx: PhaseContext) -> None:
    version = ctx.run("curl", "-fsSL", KUBERNETES_STABLE_URL).stdout.strip() or "stable"
    ctx.download(
        f"https://dl.k8s.io/release/{version}/bin/linux/amd64/kubectl",
        KUBECTL_PATH,
        mode=0o755,
    )
    ctx.download(MINIKUBE_URL, MINIKUBE_PATH, mode=0o755)
    if ctx.package_manager() is PackageManager.APT:
        ctx.install("virtualbox")
    else:
        ctx.install("VirtualBox")


def configure_kubernetes(ctx: PhaseContext) -> None:
    ctx.run("minikube", "start")
    for addon in MINIKUBE_ADDONS:
        ctx.run("minikube", "addons", "enable", addon)
    completion = ctx.run("kubectl", "completion", "bash").stdout
    if completion:
        ctx.write_file(KUBECTL_COMPLETION, completion)


# application containers --------------------------------------------------
def deploy_containers(ctx: PhaseContext) -> None:
    """Run every configured application as a container."""
    LOGGER.info("Deploying containers...")
    for app in ctx.server.deployed_apps:
        if ctx.server.use_kubernetes:
            deploy_to_kubernetes(ctx, app)
        else:
            deploy_to_docker(ctx, app)
    LOGGER.info("Container deployment completed")


def deployment_manifest(app: AppKind) -> dict[str, object]:
    """Return a single-replica Deployment for the ``<app>:latest`` image."""
    name = app.value
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "image": f"{name}:latest",
                            "ports": [{"containerPort": 80}],
                        }
                    ]
                },
            },
        },
    }


def deploy_to_kubernetes(ctx: PhaseContext, app: AppKind) -> None:
    manifest = ctx.config.runtime_dir / "manifests" / f"{app.value}-deployment.yaml"
    ctx.write_file(manifest, yaml.safe_dump(deployment_manifest(app), sort_keys=False))
    ctx.run("kubectl", "apply", "-f", str(manifest))
    ctx.run("kubectl", "expose", "deployment", app.value, "--type=LoadBalancer", "--port=80")


def deploy_to_docker(ctx: PhaseContext, app: AppKind) -> None:
    """Replace any running container named after *app* with a fresh one."""
    name = app.value
    ctx.run("docker", "pull", name)
    # Absent containers make stop/rm fail; that is expected on first deploy.
    ctx.run("docker", "stop", name, check=False)
    ctx.run("docker", "rm", name, check=False)
    ctx.run("docker", "run", "-d", "--name", name, "-p", "80:80", name)


__all__ = [
    "deploy_containers",
    "deployment_manifest",
    "setup_docker",
    "setup_kubernetes",
]
