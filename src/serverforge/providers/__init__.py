"""Provider interfaces for serverforge."""
from __future__ import annotations

from .packages import PackageManager, PackageManagerError, PackageProvider
from .systemd import SystemdProvider

__all__ = [
    "PackageManager",
    "PackageManagerError",
    "PackageProvider",
    "SystemdProvider",
]
