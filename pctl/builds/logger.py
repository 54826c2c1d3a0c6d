"""Build log output.

The orchestrator reports per-service and run-level progress through a
BuildLogger instance handed to it by the caller. Implementations must be safe
to call from several build threads at once.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Protocol

from rich.console import Console
from rich.text import Text

_STYLE_BADGE = "bold magenta on grey23"
_STYLE_SERVICE = "bold pink1 on grey23"
_STYLES = {
    "plain": "",
    "dim": "bright_black",
    "info": "bright_blue",
    "success": "bright_green",
    "warn": "bright_yellow",
    "error": "bright_red",
}

# Docker "stream" lines shown at normal weight
_HIGHLIGHT_PREFIXES = ("Step ", "Successfully", "---")


class BuildLogger(Protocol):
    """Receives build output lines."""

    def log_service(self, service_name: str, message: str) -> None:
        """Log a line belonging to one service."""
        ...

    def log_info(self, message: str) -> None:
        """Log a run-level informational message."""
        ...

    def log_warn(self, message: str) -> None:
        """Log a run-level warning."""
        ...

    def log_error(self, message: str) -> None:
        """Log a run-level error."""
        ...


def _parse_docker_line(line: str) -> tuple[str, str]:
    """Reduce a Docker progress line to (text, style kind)."""
    line = line.strip()
    if not line:
        return "", "plain"

    if not line.startswith("{"):
        return line, "dim"

    try:
        data: Any = json.loads(line)
    except json.JSONDecodeError:
        return line, "dim"
    if not isinstance(data, dict):
        return line, "dim"

    stream = data.get("stream")
    if isinstance(stream, str):
        stream = stream.strip()
        if stream.startswith(_HIGHLIGHT_PREFIXES):
            return stream, "plain"
        return stream, "dim"

    detail = data.get("errorDetail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"]), "error"
    if data.get("error"):
        return str(data["error"]), "error"

    aux = data.get("aux")
    if isinstance(aux, dict) and aux.get("ID"):
        return f"Built {aux['ID']}", "success"

    status = data.get("status")
    if isinstance(status, str) and status:
        progress = data.get("progress")
        if isinstance(progress, str) and progress:
            return f"{status} {progress}", "dim"
        return status, "dim"

    return line, "dim"


def clean_docker_line(line: str) -> str:
    """Turn a raw or JSON Docker build line into readable text.

    Plain text is returned stripped. JSON lines are reduced to their `stream`
    text, error message, built image ID, or status.
    """
    text, _ = _parse_docker_line(line)
    return text


class ConsoleBuildLogger:
    """Styled build output on a rich console, one line at a time."""

    def __init__(self, prefix: str = "build", console: Console | None = None) -> None:
        self.prefix = prefix
        self.console = console or Console(stderr=True)
        self._lock = threading.Lock()

    def _badge(self) -> tuple[str, str]:
        return (f" {self.prefix} ", _STYLE_BADGE)

    def _emit(self, text: Text) -> None:
        with self._lock:
            self.console.print(text, highlight=False, soft_wrap=True)

    def log_service(self, service_name: str, message: str) -> None:
        text, kind = _parse_docker_line(message)
        if not text:
            return
        self._emit(
            Text.assemble(
                self._badge(),
                " ",
                (f" {service_name} ", _STYLE_SERVICE),
                " ",
                (text, _STYLES[kind]),
            )
        )

    def log_info(self, message: str) -> None:
        self._emit(Text.assemble(self._badge(), " ", (message, _STYLES["info"])))

    def log_warn(self, message: str) -> None:
        self._emit(
            Text.assemble(self._badge(), " ", (f"WARN: {message}", _STYLES["warn"]))
        )

    def log_error(self, message: str) -> None:
        self._emit(
            Text.assemble(self._badge(), " ", (f"ERROR: {message}", _STYLES["error"]))
        )


__all__ = [
    "BuildLogger",
    "ConsoleBuildLogger",
    "clean_docker_line",
]
