"""Status bar widget that mirrors bootstrap events."""

from __future__ import annotations

from typing import Any, Callable

from textual.widgets import Static

from clubconnect.bootstrap import BootstrapEvent, BootstrapOrchestrator


class BootstrapStatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    BootstrapStatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, orchestrator: BootstrapOrchestrator, dispatch: Callable[..., Any]) -> None:
        super().__init__("", id="status-bar")
        self._orchestrator = orchestrator
        self._dispatch_to_ui = dispatch
        self._unsubscribe: Callable[[], None] | None = None
        self._active_tasks: tuple[str, ...] = ()
        self._last_message = ""

    async def on_mount(self) -> None:
        self._unsubscribe = self._orchestrator.subscribe(self._handle_event)
        self._render_status()

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def set_busy(self, labels: tuple[str, ...]) -> None:
        self._active_tasks = labels
        self._render_status()

    def _handle_event(self, event: BootstrapEvent) -> None:
        self._dispatch_to_ui(self._apply_event, event)

    def _apply_event(self, event: BootstrapEvent) -> None:
        self._last_message = event.message.splitlines()[0][:100] if event.message else ""
        self._render_status()

    def _render_status(self) -> None:
        orchestrator = self._orchestrator
        parts = [
            f"State: {orchestrator.state.value}",
            f"Target: {orchestrator.config.describe()}",
        ]
        if self._active_tasks:
            parts.append(f"Running: {', '.join(self._active_tasks)}")
        if self._last_message:
            parts.append(self._last_message)
        self.update(" | ".join(parts))


__all__ = ["BootstrapStatusBar"]
