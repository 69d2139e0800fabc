"""Provisioning phases and the runner that sequences them."""
from __future__ import annotations

from .context import PhaseContext, Toolbox
from .deployment import APP_REGISTRY, AppDeployer
from .runner import (
    Phase,
    PhaseFailedError,
    PhaseRunner,
    RunResult,
    RunStatus,
    default_phases,
)

__all__ = [
    "APP_REGISTRY",
    "AppDeployer",
    "Phase",
    "PhaseContext",
    "PhaseFailedError",
    "PhaseRunner",
    "RunResult",
    "RunStatus",
    "default_phases",
    "Toolbox",
]
