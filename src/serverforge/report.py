"""Configuration snapshot and end-of-run report."""
from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from .commands import CommandError, Runner
from .config import ServerConfig
from .templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

REPORT_TEMPLATE = "report/server_setup_report.txt.j2"

SYSTEM_PROBES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("Kernel", "uname", ("-a",)),
    ("CPU", "lscpu", ()),
    ("Memory", "free", ("-h",)),
)


class ReportError(RuntimeError):
    """Raised when the snapshot or report cannot be written."""


def save_config(server: ServerConfig, path: str | os.PathLike[str]) -> Path:
    """Write the server configuration to *path* as JSON."""
    target = Path(path)
    payload = json.dumps(server.to_dict(), indent=2, sort_keys=True) + "\n"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(payload, encoding="utf-8")
    except OSError as exc:
        raise ReportError(f"Failed to save configuration to {target}: {exc}") from exc
    LOGGER.info("Configuration saved to %s", target)
    return target


def collect_system_info(runner: Runner) -> list[tuple[str, str]]:
    """Run the system probes; probes that fail are left out."""
    info: list[tuple[str, str]] = []
    for label, command, args in SYSTEM_PROBES:
        try:
            result = runner.run(command, *args, check=False)
        except CommandError as exc:
            LOGGER.warning("Skipping %s probe: %s", label, exc)
            continue
        output = (result.stdout or "").strip()
        if result.returncode == 0 and output:
            info.append((label, output))
    return info


def generate_report(
    server: ServerConfig,
    path: str | os.PathLike[str],
    runner: Runner,
    templates: TemplateEngine,
    *,
    phases: Sequence[str] = (),
) -> Path:
    """Render the plain-text provisioning report into *path*."""
    target = Path(path)
    context = {
        "generated_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        "server": server.to_dict(),
        "phases": list(phases),
        "system_info": collect_system_info(runner),
    }
    try:
        templates.render_to_path(REPORT_TEMPLATE, target, context, mode=0o600)
    except (OSError, TemplateRenderError) as exc:
        raise ReportError(f"Failed to write report to {target}: {exc}") from exc
    LOGGER.info("Server setup report generated at %s", target)
    return target


__all__ = ["ReportError", "collect_system_info", "generate_report", "save_config"]
