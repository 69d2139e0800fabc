"""Application deployment phase and the application registry.

Each :class:`~serverforge.config.AppKind` maps to an :class:`AppDeployer`
holding an ``install`` step and an optional ``configure`` step.  Deploying
an application is a registry lookup; adding an application means adding a
registry entry.
"""
from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..config import AppKind, ServerRole, UnsupportedConfigurationError
from ..providers.packages import PackageManager
from .context import PhaseContext

LOGGER = logging.getLogger(__name__)

Step = Callable[[PhaseContext], None]

DOCUMENT_ROOT = "/var/www/html"
MYSQL_PASSWORD_FILE = Path("/root/.mysql_root_password")
POSTGRESQL_PASSWORD_FILE = Path("/root/.postgresql_password")


@dataclass(frozen=True)
class AppDeployer:
    """Install and configure steps for one application."""

    install: Step
    configure: Step | None = None

    def deploy(self, ctx: PhaseContext) -> None:
        self.install(ctx)
        if self.configure is not None:
            self.configure(ctx)


def deploy_applications(ctx: PhaseContext) -> None:
    """Deploy every configured application in order."""
    LOGGER.info("Deploying applications...")
    for app in ctx.server.deployed_apps:
        deploy_app(ctx, app)
    LOGGER.info("Application deployment completed")


def deploy_app(
    ctx: PhaseContext,
    app: AppKind,
    registry: Mapping[AppKind, AppDeployer] | None = None,
) -> None:
    """Look up *app* in the registry and deploy it."""
    deployers = APP_REGISTRY if registry is None else registry
    try:
        deployer = deployers[app]
    except KeyError as exc:
        raise UnsupportedConfigurationError(f"Unsupported application: {app}") from exc
    LOGGER.info("Deploying %s", app.value)
    deployer.deploy(ctx)


def _is_apt(ctx: PhaseContext) -> bool:
    return ctx.package_manager() is PackageManager.APT


def _generate_password() -> str:
    return secrets.token_urlsafe(24)


# nginx -------------------------------------------------------------------
def install_nginx(ctx: PhaseContext) -> None:
    ctx.install("nginx")
    ctx.systemd.start_and_enable("nginx")


def configure_nginx(ctx: PhaseContext) -> None:
    """Write the default site and reload nginx."""
    if _is_apt(ctx):
        target = Path("/etc/nginx/sites-available/default")
    else:
        target = Path("/etc/nginx/conf.d/default.conf")
    ctx.render("web/nginx-default.conf.j2", target, {"document_root": DOCUMENT_ROOT})
    ctx.systemd.reload("nginx")


# apache ------------------------------------------------------------------
def _apache_service(ctx: PhaseContext) -> str:
    return "apache2" if _is_apt(ctx) else "httpd"


def install_apache(ctx: PhaseContext) -> None:
    service = _apache_service(ctx)
    ctx.install(service)
    ctx.systemd.start_and_enable(service)


def configure_apache(ctx: PhaseContext) -> None:
    """Write the default virtual host and reload Apache."""
    if _is_apt(ctx):
        target = Path("/etc/apache2/sites-available/000-default.conf")
        log_dir = "${APACHE_LOG_DIR}"
    else:
        target = Path("/etc/httpd/conf.d/000-default.conf")
        log_dir = "/var/log/httpd"
    ctx.render(
        "web/apache-default.conf.j2",
        target,
        {"document_root": DOCUMENT_ROOT, "log_dir": log_dir},
    )
    ctx.systemd.reload(_apache_service(ctx))


# mysql -------------------------------------------------------------------
def install_mysql(ctx: PhaseContext) -> None:
    ctx.install("mysql-server")
    ctx.systemd.start_and_enable("mysql" if _is_apt(ctx) else "mysqld")


def configure_mysql(ctx: PhaseContext) -> None:
    """Set a generated root password and remove anonymous accounts."""
    password = _generate_password()
    statements = (
        f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{password}';\n"
        "DELETE FROM mysql.user WHERE User='';\n"
        "DROP DATABASE IF EXISTS test;\n"
        "FLUSH PRIVILEGES;\n"
    )
    ctx.run("mysql", "--user=root", input_text=statements)
    ctx.write_file(MYSQL_PASSWORD_FILE, password + "\n", mode=0o600)
    LOGGER.info("MySQL root password saved to %s", MYSQL_PASSWORD_FILE)


# postgresql --------------------------------------------------------------
def install_postgresql(ctx: PhaseContext) -> None:
    if _is_apt(ctx):
        ctx.install("postgresql", "postgresql-contrib")
    else:
        ctx.install("postgresql-server", "postgresql-contrib")
        ctx.run("postgresql-setup", "--initdb")
    ctx.systemd.start_and_enable("postgresql")


def configure_postgresql(ctx: PhaseContext) -> None:
    """Set a generated password for the ``postgres`` role."""
    password = _generate_password()
    ctx.run(
        "runuser",
        "-u",
        "postgres",
        "--",
        "psql",
        input_text=f"ALTER USER postgres PASSWORD '{password}';\n",
    )
    ctx.write_file(POSTGRESQL_PASSWORD_FILE, password + "\n", mode=0o600)
    LOGGER.info("PostgreSQL password saved to %s", POSTGRESQL_PASSWORD_FILE)


# runtimes ----------------------------------------------------------------
def install_php(ctx: PhaseContext) -> None:
    """Install PHP with FPM; web servers on apt hosts also get mod_php."""
    if _is_apt(ctx):
        ctx.install("php", "php-fpm", "php-mysql")
        if ctx.server.server_role is ServerRole.WEB:
            ctx.install("libapache2-mod-php")
    else:
        ctx.install("php", "php-fpm", "php-mysqlnd")
    ctx.systemd.start_and_enable("php-fpm")


def install_nodejs(ctx: PhaseContext) -> None:
    ctx.install("nodejs", "npm")
    ctx.run("npm", "install", "-g", "pm2")


def install_python(ctx: PhaseContext) -> None:
    if _is_apt(ctx):
        ctx.install("python3", "python3-pip", "python3-venv", "python3-virtualenv")
    else:
        ctx.install("python3", "python3-pip", "python3-virtualenv")


APP_REGISTRY: dict[AppKind, AppDeployer] = {
    AppKind.NGINX: AppDeployer(install_nginx, configure_nginx),
    AppKind.APACHE: AppDeployer(install_apache, configure_apache),
    AppKind.MYSQL: AppDeployer(install_mysql, configure_mysql),
    AppKind.POSTGRESQL: AppDeployer(install_postgresql, configure_postgresql),
    AppKind.PHP: AppDeployer(install_php),
    AppKind.NODEJS: AppDeployer(install_nodejs),
    AppKind.PYTHON: AppDeployer(install_python),
}


__all__ = ["APP_REGISTRY", "AppDeployer", "deploy_app", "deploy_applications"]
