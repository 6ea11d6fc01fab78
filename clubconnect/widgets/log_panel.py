"""Scrolling log pane fed by the `clubconnect` loggers."""

from __future__ import annotations

import logging
from typing import Any, Callable

from textual.widgets import RichLog

Dispatch = Callable[..., Any]


class LogPanel(RichLog):
    """Append-only log output shown under the preview table."""

    DEFAULT_CSS = """
    LogPanel {
        height: 10;
        border: round $surface-lighten-1;
        border-title-color: $text-muted;
    }
    """

    def __init__(self) -> None:
        super().__init__(id="log-panel", wrap=True, markup=False, max_lines=2000)
        self.border_title = "Log Output"

    def write_line(self, message: str) -> None:
        self.write(f"• {message}")


class LogPanelHandler(logging.Handler):
    """Logging handler that forwards records to a `LogPanel` via `dispatch`.

    Records are emitted from worker threads; `dispatch` must hop onto the UI
    thread without blocking the caller.
    """

    def __init__(self, panel: LogPanel, dispatch: Dispatch, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._panel = panel
        self._dispatch = dispatch
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
            self._dispatch(self._panel.write_line, message)
        except Exception:
            self.handleError(record)


__all__ = ["LogPanel", "LogPanelHandler"]
