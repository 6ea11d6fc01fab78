"""Widget library for the repair console."""

from __future__ import annotations

from .config_form import ConfigForm
from .log_panel import LogPanel, LogPanelHandler
from .status_bar import BootstrapStatusBar

__all__ = ["BootstrapStatusBar", "ConfigForm", "LogPanel", "LogPanelHandler"]
