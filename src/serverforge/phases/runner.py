"""Sequential phase runner with snapshot-per-phase rollback."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..config import AppConfig, ServerConfig
from ..rollback import RollbackError, RollbackManager, RollbackReport
from .backup import setup_backup_system
from .containers import deploy_containers, setup_docker, setup_kubernetes
from .context import PhaseContext, Toolbox
from .deployment import deploy_applications
from .monitoring import setup_monitoring
from .security import implement_security_measures
from .setup import initial_setup
from .updates import setup_automatic_updates

LOGGER = logging.getLogger(__name__)

PhaseBody = Callable[[PhaseContext], None]
PhaseListener = Callable[[str, str], None]


@dataclass(frozen=True)
class Phase:
    """A named unit of provisioning work."""

    name: str
    body: PhaseBody
    enabled: bool = True


def default_phases(server: ServerConfig) -> list[Phase]:
    """Return the provisioning phases in execution order."""
    phases = [
        Phase("setup", initial_setup),
        Phase("security", implement_security_measures),
        Phase("updates", setup_automatic_updates),
        Phase("monitoring", setup_monitoring),
        Phase("backup", setup_backup_system),
    ]
    if server.use_containers:
        phases.extend(
            [
                Phase("docker", setup_docker),
                Phase("kubernetes", setup_kubernetes, enabled=server.use_kubernetes),
                Phase("containers", deploy_containers),
            ]
        )
    else:
        phases.append(Phase("deployment", deploy_applications))
    return phases


class PhaseFailedError(RuntimeError):
    """Raised when a phase failed and the run was rolled back."""

    def __init__(self, phase: str, cause: BaseException) -> None:
        self.phase = phase
        self.cause = cause
        super().__init__(f"Phase '{phase}' failed: {cause}")


class RunStatus(str, Enum):
    NOT_STARTED = "not-started"
    DONE = "done"
    ROLLED_BACK = "rolled-back"


@dataclass
class RunResult:
    """Outcome of a :meth:`PhaseRunner.run` call."""

    status: RunStatus = RunStatus.NOT_STARTED
    completed: list[str] = field(default_factory=list)
    failed_phase: str | None = None
    error: BaseException | None = None
    rollback_report: RollbackReport | None = None
    rollback_error: RollbackError | None = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.DONE

    @property
    def rollback_ok(self) -> bool:
        """Return ``True`` unless a rollback ran and reported failures."""
        return self.rollback_error is None

    def raise_for_status(self) -> None:
        """Raise :class:`PhaseFailedError` when the run did not finish."""
        if self.failed_phase is not None and self.error is not None:
            raise PhaseFailedError(self.failed_phase, self.error) from self.error

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "completed": list(self.completed),
            "failed_phase": self.failed_phase,
            "error": str(self.error) if self.error is not None else None,
            "rollback": (
                self.rollback_report.to_dict() if self.rollback_report is not None else None
            ),
        }


class PhaseRunner:
    """Run phases in order, snapshotting each one and rolling back on failure.

    Each phase gets a fresh snapshot tagged with the phase name and a
    :class:`PhaseContext` bound to it.  A successful phase commits its
    snapshot.  The first failing phase stops the run: everything recorded so
    far, committed or not, is rolled back and no later phase runs.
    """

    def __init__(
        self,
        phases: Iterable[Phase],
        rollback: RollbackManager,
        tools: Toolbox,
        *,
        listener: PhaseListener | None = None,
    ) -> None:
        self.phases: Sequence[Phase] = tuple(phases)
        self.rollback = rollback
        self.tools = tools
        self._listener = listener

    def run(self, config: AppConfig, *, raise_on_failure: bool = False) -> RunResult:
        """Execute every enabled phase against *config*."""
        result = RunResult()
        for phase in self.phases:
            if not phase.enabled:
                LOGGER.info("Skipping phase %s", phase.name)
                self._notify(phase.name, "skipped")
                continue

            snapshot_id = self.rollback.create_snapshot(phase.name)
            ctx = PhaseContext(
                phase=phase.name,
                config=config,
                rollback=self.rollback,
                snapshot_id=snapshot_id,
                tools=self.tools,
            )
            self._notify(phase.name, "started")
            try:
                phase.body(ctx)
            except Exception as exc:  # phase bodies are opaque collaborators
                LOGGER.error("Phase %s failed: %s", phase.name, exc)
                self._notify(phase.name, "failed")
                result.failed_phase = phase.name
                result.error = exc
                self._roll_back(result)
                if raise_on_failure:
                    result.raise_for_status()
                return result

            self.rollback.commit_snapshot(snapshot_id)
            result.completed.append(phase.name)
            self._notify(phase.name, "completed")

        result.status = RunStatus.DONE
        return result

    def _roll_back(self, result: RunResult) -> None:
        try:
            result.rollback_report = self.rollback.rollback_all()
        except RollbackError as exc:
            LOGGER.error("Rollback failed: %s", exc)
            result.rollback_report = exc.report
            result.rollback_error = exc
        result.status = RunStatus.ROLLED_BACK

    def _notify(self, phase: str, status: str) -> None:
        if self._listener is not None:
            self._listener(phase, status)


__all__ = [
    "Phase",
    "PhaseFailedError",
    "PhaseRunner",
    "RunResult",
    "RunStatus",
    "default_phases",
]
