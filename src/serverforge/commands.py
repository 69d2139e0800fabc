"""Command execution seam shared by the provisioning phases and rollback."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external process fails to launch or exits non-zero."""

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        *,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        """Capture the failed invocation for reporting."""
        self.command = command
        self.arguments = tuple(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        joined = " ".join([command, *self.arguments])
        if returncode is None:
            message = f"{joined} could not be started: {self.stderr or 'not found'}"
        else:
            message = f"{joined} failed (exit {returncode}): {self.stderr or 'no output'}"
        super().__init__(message)


class Runner(Protocol):
    """Anything able to run ``command`` with ``args``."""

    def run(
        self,
        command: str,
        *args: str,
        check: bool = True,
        capture_output: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run the command and return the completed process."""
        ...


@dataclass(slots=True)
class CommandRunner:
    """Run OS processes synchronously, optionally as a dry run.

    There is no timeout: a hung command blocks the provisioning run.
    """

    dry_run: bool = False
    history: list[tuple[str, ...]] = field(default_factory=list)

    def run(
        self,
        command: str,
        *args: str,
        check: bool = True,
        capture_output: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* with *args*, raising :class:`CommandError` on failure.

        *input_text* is fed to stdin and never logged.
        """
        argv = [command, *args]
        self.history.append(tuple(argv))
        if self.dry_run:
            LOGGER.info("Dry run: %s", " ".join(argv))
            return subprocess.CompletedProcess(argv, returncode=0, stdout="", stderr="")

        LOGGER.info("Running command: %s", " ".join(argv))
        try:
            result = subprocess.run(  # noqa: S603, S607
                argv,
                capture_output=capture_output,
                input=input_text,
                text=True,
                check=False,
            )
        except (FileNotFoundError, PermissionError) as exc:
            LOGGER.error("Command %s could not be started: %s", command, exc)
            raise CommandError(command, args, stderr=str(exc)) from exc

        if check and result.returncode != 0:
            stderr = getattr(result, "stderr", "") or ""
            stdout = getattr(result, "stdout", "") or ""
            error = CommandError(
                command,
                args,
                returncode=result.returncode,
                stderr=stderr.strip() or stdout.strip(),
            )
            LOGGER.error("%s", error)
            raise error
        return result


__all__ = ["CommandError", "CommandRunner", "Runner"]
