"""Configuration loader for serverforge.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/serverforge/config.yml`` (or an override path).
3. Environment variables prefixed with ``SERVERFORGE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SERVERFORGE_SERVER__LINUX_DISTRO=fedora
    export SERVERFORGE_SERVER__MONITORING=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. String-valued settings such as the distribution or backup
frequency are validated once here and exposed as closed enumerations, so the
provisioning phases never need an "unsupported value" fallback of their own.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TypeVar, cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load serverforge configuration. Install with "
        "`pip install serverforge` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SERVERFORGE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


class UnsupportedConfigurationError(ConfigError):
    """Raised when a configuration value has no handling branch."""


class Distro(str, Enum):
    """Linux distributions serverforge knows how to provision."""

    UBUNTU = "ubuntu"
    CENTOS = "centos"
    FEDORA = "fedora"

    @property
    def is_rpm_based(self) -> bool:
        """Return ``True`` for the Red Hat family of distributions."""
        return self in (Distro.CENTOS, Distro.FEDORA)


class ServerRole(str, Enum):
    """Primary purpose of the host."""

    WEB = "web"
    DATABASE = "database"
    APPLICATION = "application"


class SecurityLevel(str, Enum):
    """Hardening tier applied by the security phase."""

    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class BackupFrequency(str, Enum):
    """How often the restic backup job runs."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class UpdateSchedule(str, Enum):
    """How often unattended package updates are applied."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AppKind(str, Enum):
    """Applications the deployment phase can install."""

    NGINX = "nginx"
    APACHE = "apache"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    PHP = "php"
    NODEJS = "nodejs"
    PYTHON = "python"


@dataclass(frozen=True)
class ServerConfig:
    """Declarative description of the desired host state."""

    linux_distro: Distro = Distro.UBUNTU
    server_role: ServerRole = ServerRole.WEB
    security_level: SecurityLevel = SecurityLevel.BASIC
    monitoring: bool = False
    backup_frequency: BackupFrequency = BackupFrequency.DAILY
    deployed_apps: tuple[AppKind, ...] = ()
    custom_firewall_rules: tuple[str, ...] = ()
    update_schedule: UpdateSchedule = UpdateSchedule.WEEKLY
    use_containers: bool = False
    use_kubernetes: bool = False
    ssh_port: int = 2222

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "linux_distro": self.linux_distro.value,
            "server_role": self.server_role.value,
            "security_level": self.security_level.value,
            "monitoring": self.monitoring,
            "backup_frequency": self.backup_frequency.value,
            "deployed_apps": [app.value for app in self.deployed_apps],
            "custom_firewall_rules": list(self.custom_firewall_rules),
            "update_schedule": self.update_schedule.value,
            "use_containers": self.use_containers,
            "use_kubernetes": self.use_kubernetes,
            "ssh_port": self.ssh_port,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Restic repository and schedule locations."""

    repository: Path = Path("/srv/restic-repo")
    password_file: Path = Path("/root/.restic_password")
    script: Path = Path("/usr/local/bin/run-backup.sh")
    cron_file: Path = Path("/etc/cron.d/restic-backup")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repository": str(self.repository),
            "password_file": str(self.password_file),
            "script": str(self.script),
            "cron_file": str(self.cron_file),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for serverforge."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    config_snapshot: Path
    report_path: Path
    lock_timeout: float
    server: ServerConfig
    backup: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "config_snapshot": str(self.config_snapshot),
            "report_path": str(self.report_path),
            "lock_timeout": self.lock_timeout,
            "server": self.server.to_dict(),
            "backup": self.backup.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/serverforge/config.yml",
    "logs_dir": "/var/log/serverforge",
    "runtime_dir": "/run/serverforge",
    "templates_dir": "/etc/serverforge/templates",
    "config_snapshot": "/etc/server_setup_config.json",
    "report_path": "/root/server_setup_report.txt",
    "lock_timeout": 30.0,
    "server": {
        "linux_distro": "ubuntu",
        "server_role": "web",
        "security_level": "basic",
        "monitoring": False,
        "backup_frequency": "daily",
        "deployed_apps": [],
        "custom_firewall_rules": [],
        "update_schedule": "weekly",
        "use_containers": False,
        "use_kubernetes": False,
        "ssh_port": 2222,
    },
    "backup": {
        "repository": "/srv/restic-repo",
        "password_file": "/root/.restic_password",
        "script": "/usr/local/bin/run-backup.sh",
        "cron_file": "/etc/cron.d/restic-backup",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SERVER_KEYS = set(cast(Mapping[str, object], DEFAULTS["server"]).keys())
ALLOWED_BACKUP_KEYS = set(cast(Mapping[str, object], DEFAULTS["backup"]).keys())

_E = TypeVar("_E", bound=Enum)


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def parse_server_config(raw: Mapping[str, object]) -> ServerConfig:
    """Validate a ``server`` mapping and return the typed :class:`ServerConfig`."""
    values = _deep_copy(cast(Mapping[str, object], DEFAULTS["server"]))
    values.update(_as_dict(raw, "server"))
    unknown = set(values.keys()) - ALLOWED_SERVER_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown server configuration keys: {joined}.")

    apps = tuple(
        _expect_enum(AppKind, item, f"server.deployed_apps[{index}]")
        for index, item in enumerate(_as_sequence(values["deployed_apps"], "server.deployed_apps"))
    )
    rules: list[str] = []
    for index, item in enumerate(
        _as_sequence(values["custom_firewall_rules"], "server.custom_firewall_rules")
    ):
        rule = str(item).strip()
        if not rule:
            raise ConfigError(f"server.custom_firewall_rules[{index}] must be non-empty.")
        rules.append(rule)

    use_containers = _expect_bool(values["use_containers"], "server.use_containers")
    use_kubernetes = _expect_bool(values["use_kubernetes"], "server.use_kubernetes")
    if use_kubernetes and not use_containers:
        raise ConfigError("server.use_kubernetes requires server.use_containers to be enabled.")

    ssh_port = _expect_int(values["ssh_port"], "server.ssh_port", default=2222)
    if not 0 < ssh_port < 65536:
        raise ConfigError(f"server.ssh_port must be between 1 and 65535. Got {ssh_port}.")

    return ServerConfig(
        linux_distro=_expect_enum(Distro, values["linux_distro"], "server.linux_distro"),
        server_role=_expect_enum(ServerRole, values["server_role"], "server.server_role"),
        security_level=_expect_enum(
            SecurityLevel, values["security_level"], "server.security_level"
        ),
        monitoring=_expect_bool(values["monitoring"], "server.monitoring"),
        backup_frequency=_expect_enum(
            BackupFrequency, values["backup_frequency"], "server.backup_frequency"
        ),
        deployed_apps=apps,
        custom_firewall_rules=tuple(rules),
        update_schedule=_expect_enum(
            UpdateSchedule, values["update_schedule"], "server.update_schedule"
        ),
        use_containers=use_containers,
        use_kubernetes=use_kubernetes,
        ssh_port=ssh_port,
    )


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    backup = raw.get("backup")
    if backup is not None:
        backup_map = _as_dict(backup, "backup")
        unknown = set(backup_map.keys()) - ALLOWED_BACKUP_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown backup configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    backup_mapping = _as_dict(raw.get("backup"), "backup")
    backup = BackupConfig(
        repository=_to_path(backup_mapping.get("repository", "/srv/restic-repo")),
        password_file=_to_path(backup_mapping.get("password_file", "/root/.restic_password")),
        script=_to_path(backup_mapping.get("script", "/usr/local/bin/run-backup.sh")),
        cron_file=_to_path(backup_mapping.get("cron_file", "/etc/cron.d/restic-backup")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        config_snapshot=_to_path(raw.get("config_snapshot")),
        report_path=_to_path(raw.get("report_path")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        server=parse_server_config(_as_dict(raw.get("server"), "server")),
        backup=backup,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _expect_enum(enum_type: type[_E], value: object, label: str) -> _E:
    if isinstance(value, enum_type):
        return value
    text = str(value).strip().lower() if value is not None else ""
    for member in enum_type:
        if member.value == text:
            return member
    allowed = ", ".join(member.value for member in enum_type)
    raise UnsupportedConfigurationError(
        f"Unsupported value {value!r} for {label}. Allowed: {allowed}."
    )


def _expect_bool(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"y", "yes", "true", "1", "on"}:
            return True
        if text in {"n", "no", "false", "0", "off", ""}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "AppKind",
    "BackupConfig",
    "BackupFrequency",
    "ConfigError",
    "Distro",
    "SecurityLevel",
    "ServerConfig",
    "ServerRole",
    "UnsupportedConfigurationError",
    "UpdateSchedule",
    "load_config",
    "parse_server_config",
]
