"""Snapshot-based undo log for provisioning runs.

Each provisioning phase opens a snapshot and reports every reversible effect
it performs: files it is about to overwrite (or create) and packages it has
installed. When a phase fails the runner asks :class:`RollbackManager` to
undo everything recorded so far, newest snapshot first and, inside each
snapshot, newest action first.

Undo is best-effort: a failing undo step is logged and collected, the
remaining steps still run, and a single :class:`RollbackError` listing every
failure is raised at the end. Snapshots are never removed, so the manager
doubles as a history of the run. Nothing is persisted; the manager lives for
one process.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from .providers.packages import PackageManager

LOGGER = logging.getLogger(__name__)


class SnapshotError(RuntimeError):
    """Base class for snapshot and rollback failures."""


class InvalidSnapshotError(SnapshotError):
    """Raised when a snapshot id does not refer to an existing snapshot."""

    def __init__(self, snapshot_id: int, count: int) -> None:
        """Record the offending id and the number of known snapshots."""
        self.snapshot_id = snapshot_id
        self.count = count
        super().__init__(
            f"Invalid snapshot id {snapshot_id}: {count} snapshot(s) recorded."
        )


class FileChangeError(SnapshotError):
    """Raised when the prior state of a file cannot be captured."""

    def __init__(self, path: Path, reason: str) -> None:
        """Record the path that could not be read."""
        self.path = path
        super().__init__(f"Cannot capture {path}: {reason}")


class RollbackError(SnapshotError):
    """Raised after a rollback pass in which one or more undo steps failed."""

    def __init__(self, report: RollbackReport) -> None:
        """Wrap the partial *report* of the failed pass."""
        self.report = report
        self.failures = list(report.failures)
        details = "; ".join(
            f"{failure.action.describe()}: {failure.error}" for failure in self.failures
        )
        super().__init__(f"Rollback incomplete ({len(self.failures)} failure(s)): {details}")


class PackageRemover(Protocol):
    """Subset of the package provider the rollback engine relies on."""

    def detect(self) -> PackageManager:
        """Return the package manager currently present on the host."""
        ...

    def uninstall(self, *packages: str, manager: PackageManager | None = None) -> object:
        """Remove *packages*."""
        ...


class _UndoSession:
    """Per-pass state shared by undo steps (lazy package manager lookup)."""

    def __init__(self, packages: PackageRemover | None) -> None:
        self._packages = packages
        self._manager: PackageManager | None = None
        self._detect_error: Exception | None = None

    def uninstall(self, name: str) -> None:
        if self._packages is None:
            raise SnapshotError("No package provider configured for rollback.")
        if self._detect_error is not None:
            raise self._detect_error
        if self._manager is None:
            try:
                self._manager = self._packages.detect()
            except RuntimeError as exc:
                self._detect_error = exc
                raise
        self._packages.uninstall(name, manager=self._manager)


@dataclass(frozen=True, slots=True)
class FileOverwritten:
    """A file that existed before the phase changed it."""

    path: Path
    original_bytes: bytes
    mode: int | None = None

    def describe(self) -> str:
        """Return a short human-readable description."""
        return f"restore {self.path}"

    def undo(self, session: _UndoSession) -> None:
        """Write the original contents (and mode) back to the file."""
        LOGGER.info("Rolling back changes to file: %s", self.path)
        self.path.write_bytes(self.original_bytes)
        if self.mode is not None:
            os.chmod(self.path, self.mode)


@dataclass(frozen=True, slots=True)
class FileCreated:
    """A file that did not exist before the phase wrote it."""

    path: Path

    def describe(self) -> str:
        """Return a short human-readable description."""
        return f"remove {self.path}"

    def undo(self, session: _UndoSession) -> None:
        """Delete the file the phase created."""
        LOGGER.info("Removing file created during provisioning: %s", self.path)
        self.path.unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class PackageInstalled:
    """A package installed by the phase."""

    name: str

    def describe(self) -> str:
        """Return a short human-readable description."""
        return f"uninstall {self.name}"

    def undo(self, session: _UndoSession) -> None:
        """Remove the package through the package manager detected now."""
        LOGGER.info("Uninstalling package: %s", self.name)
        session.uninstall(self.name)


Action = FileOverwritten | FileCreated | PackageInstalled


class SnapshotState(str, Enum):
    """Lifecycle of a snapshot."""

    OPEN = "open"
    COMMITTED = "committed"


@dataclass(slots=True)
class _Snapshot:
    id: int
    phase: str | None
    actions: list[Action] = field(default_factory=list)
    state: SnapshotState = SnapshotState.OPEN


@dataclass(frozen=True, slots=True)
class SnapshotView:
    """Read-only copy of a snapshot handed out to callers."""

    id: int
    phase: str | None
    state: SnapshotState
    actions: tuple[Action, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "phase": self.phase,
            "state": self.state.value,
            "actions": [action.describe() for action in self.actions],
        }


@dataclass(frozen=True, slots=True)
class UndoFailure:
    """An undo step that raised."""

    snapshot_id: int
    action: Action
    error: Exception


@dataclass(slots=True)
class RollbackReport:
    """Outcome of one rollback pass."""

    undone: list[Action] = field(default_factory=list)
    failures: list[UndoFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return ``True`` when every undo step succeeded."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "undone": [action.describe() for action in self.undone],
            "failures": [
                {
                    "snapshot": failure.snapshot_id,
                    "action": failure.action.describe(),
                    "error": str(failure.error),
                }
                for failure in self.failures
            ],
        }


class RollbackManager:
    """Own the ordered snapshots of one provisioning run."""

    def __init__(self, packages: PackageRemover | None = None) -> None:
        """Create an empty manager; *packages* is used to undo installs."""
        self._packages = packages
        self._snapshots: list[_Snapshot] = []

    def __len__(self) -> int:
        return len(self._snapshots)

    def create_snapshot(self, phase: str | None = None) -> int:
        """Append a new open snapshot and return its id."""
        snapshot_id = len(self._snapshots)
        self._snapshots.append(_Snapshot(id=snapshot_id, phase=phase))
        LOGGER.debug("Created snapshot %d (%s)", snapshot_id, phase or "unnamed")
        return snapshot_id

    def record_file_change(self, snapshot_id: int, path: str | os.PathLike[str]) -> Action:
        """Capture the current state of *path* before the caller mutates it.

        A missing file is recorded as :class:`FileCreated`, so undo deletes it.
        """
        snapshot = self._get(snapshot_id)
        target = Path(path)
        action: Action
        try:
            original = target.read_bytes()
            mode = target.stat().st_mode & 0o7777
        except FileNotFoundError:
            action = FileCreated(path=target)
        except OSError as exc:
            raise FileChangeError(target, exc.strerror or str(exc)) from exc
        else:
            action = FileOverwritten(path=target, original_bytes=original, mode=mode)
        snapshot.actions.append(action)
        return action

    def record_package_installed(self, snapshot_id: int, name: str) -> Action:
        """Record that *name* has been installed."""
        snapshot = self._get(snapshot_id)
        action = PackageInstalled(name=name)
        snapshot.actions.append(action)
        return action

    def commit_snapshot(self, snapshot_id: int) -> None:
        """Mark the snapshot committed.

        Committed snapshots are still undone by :meth:`rollback_all`.
        """
        # TODO: persist committed snapshots so a crashed run can be undone on restart.
        self._get(snapshot_id).state = SnapshotState.COMMITTED

    def snapshots(self) -> tuple[SnapshotView, ...]:
        """Return read-only views of every snapshot in creation order."""
        return tuple(
            SnapshotView(
                id=snapshot.id,
                phase=snapshot.phase,
                state=snapshot.state,
                actions=tuple(snapshot.actions),
            )
            for snapshot in self._snapshots
        )

    def rollback_all(self) -> RollbackReport:
        """Undo every snapshot, most recent first."""
        LOGGER.info("Rolling back all changes...")
        report = self._rollback(self._snapshots)
        LOGGER.info("Rollback completed")
        return report

    def rollback_to(self, snapshot_id: int) -> RollbackReport:
        """Undo snapshots from *snapshot_id* through the most recent one."""
        self._get(snapshot_id)
        LOGGER.info("Rolling back to snapshot %d", snapshot_id)
        report = self._rollback(self._snapshots[snapshot_id:])
        LOGGER.info("Rollback to snapshot %d completed", snapshot_id)
        return report

    # ------------------------------------------------------------------
    def _get(self, snapshot_id: int) -> _Snapshot:
        if isinstance(snapshot_id, bool) or not isinstance(snapshot_id, int):
            raise InvalidSnapshotError(snapshot_id, len(self._snapshots))
        if not 0 <= snapshot_id < len(self._snapshots):
            raise InvalidSnapshotError(snapshot_id, len(self._snapshots))
        return self._snapshots[snapshot_id]

    def _rollback(self, snapshots: Sequence[_Snapshot]) -> RollbackReport:
        session = _UndoSession(self._packages)
        report = RollbackReport()
        for snapshot in reversed(snapshots):
            for action in reversed(snapshot.actions):
                try:
                    action.undo(session)
                except (OSError, RuntimeError) as exc:
                    LOGGER.error(
                        "Undo failed in snapshot %d (%s): %s",
                        snapshot.id,
                        action.describe(),
                        exc,
                    )
                    report.failures.append(
                        UndoFailure(snapshot_id=snapshot.id, action=action, error=exc)
                    )
                else:
                    report.undone.append(action)
        if report.failures:
            raise RollbackError(report)
        return report


__all__ = [
    "Action",
    "FileChangeError",
    "FileCreated",
    "FileOverwritten",
    "InvalidSnapshotError",
    "PackageInstalled",
    "RollbackError",
    "RollbackManager",
    "RollbackReport",
    "SnapshotError",
    "SnapshotState",
    "SnapshotView",
    "UndoFailure",
]
