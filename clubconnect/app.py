"""Textual repair console and command-line entry point for clubconnect."""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import logging
import threading
from functools import partial
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

import asyncpg
from textual.app import App, ComposeResult
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import Button, DataTable, Footer, Header, Input, Label

from .bootstrap import MAX_TRIES, BootstrapOrchestrator, RepairOutcome, RepairSurface
from .bulk import (
    EXPORT_DIRECTORY,
    BulkDataError,
    BulkDataPort,
    ExportError,
    ExportResult,
    ImportResult,
    SqlDumpResult,
    TablePreview,
)
from .config import CONFIG_FILE, ConfigStore, ConnectionConfig
from .connections import DEFAULT_CONNECT_TIMEOUT, ConnectionFactory
from .providers import MaintenanceCommandProvider, TablePreviewProvider
from .tasks import DEFAULT_GRACE, DEFAULT_WORKERS, TaskRunner, TaskRunnerClosedError
from .widgets import BootstrapStatusBar, ConfigForm, LogPanel, LogPanelHandler

LOG = logging.getLogger(__name__)

LOG_FILE = Path("clubconnect.log")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RepairApp(App["asyncpg.Connection | None"]):
    """Maintenance console shown while the database is unreachable.

    The app's return value is the live connection when a repair pass
    succeeds, or None when the user closes the window.
    """

    TITLE = "ClubConnect Database Setup"
    COMMANDS = App.COMMANDS | {MaintenanceCommandProvider, TablePreviewProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #content {
        layout: horizontal;
        height: 1fr;
    }
    #table-list {
        width: 26;
        min-width: 20;
        padding: 0 1;
        border-right: solid $surface-darken-1;
    }
    #table-list Button {
        width: 100%;
        margin-bottom: 1;
    }
    #main-column {
        layout: vertical;
        padding: 0 1;
        height: 1fr;
    }
    #actions, #sql-row {
        height: auto;
        margin-bottom: 1;
    }
    #actions Button {
        margin-right: 1;
    }
    #sql-path {
        width: 1fr;
    }
    #preview-table {
        height: 1fr;
        border: round $surface-lighten-1;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+r", "repair", "Create DB & Tables"),
        ("ctrl+e", "export", "Export CSV"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(
        self,
        orchestrator: BootstrapOrchestrator,
        *,
        csv_directory: Path | str = Path("."),
        export_directory: Path | str = EXPORT_DIRECTORY,
        auto_repair: bool = True,
    ) -> None:
        super().__init__()
        self._orchestrator = orchestrator
        self._csv_directory = Path(csv_directory)
        self._export_directory = Path(export_directory)
        self._auto_repair = auto_repair
        self._ui_loop: asyncio.AbstractEventLoop | None = None
        self._ui_thread: int | None = None
        self._in_flight: dict[str, int] = {}
        self._handed_off = False
        self._pending_notifications: list[tuple[str, str]] = []
        self._log_handler: LogPanelHandler | None = None
        self._form: ConfigForm | None = None
        self._sql_path: Input | None = None
        self._preview: DataTable | None = None
        self._log_panel: LogPanel | None = None
        self._status_bar: BootstrapStatusBar | None = None

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        self._form = ConfigForm(self._orchestrator.config)
        self._sql_path = Input(placeholder="Path to SQL dump (.sql)", id="sql-path")
        self._preview = DataTable(id="preview-table", zebra_stripes=True)
        self._log_panel = LogPanel()
        self._status_bar = BootstrapStatusBar(self._orchestrator, self.dispatch_to_ui)
        table_buttons = [
            Button(name, id=f"preview-{name}") for name in self._orchestrator.reconciler.required_tables
        ]
        actions = Horizontal(
            Button("Create DB & Tables", id="create", variant="primary"),
            Button("Import CSV Files", id="import-csv"),
            Button("Export DB → CSV", id="export"),
            id="actions",
        )
        sql_row = Horizontal(self._sql_path, Button("Import SQL Dump", id="import-sql"), id="sql-row")
        yield Horizontal(
            VerticalScroll(Label("Tables"), *table_buttons, id="table-list"),
            Vertical(self._form, actions, sql_row, self._preview, id="main-column"),
            id="content",
        )
        yield self._log_panel
        yield self._status_bar
        yield Footer()

    async def on_mount(self) -> None:
        self._ui_loop = asyncio.get_running_loop()
        self._ui_thread = threading.get_ident()
        if self._log_panel is not None:
            self._log_handler = LogPanelHandler(self._log_panel, self.dispatch_to_ui)
            logging.getLogger("clubconnect").addHandler(self._log_handler)
        self._flush_pending_notifications()
        if self._auto_repair:
            self.action_repair()

    async def _shutdown(self) -> None:
        if self._log_handler is not None:
            logging.getLogger("clubconnect").removeHandler(self._log_handler)
            self._log_handler = None
        await super()._shutdown()

    @property
    def orchestrator(self) -> BootstrapOrchestrator:
        """Expose the orchestrator for command providers and tests."""

        return self._orchestrator

    @property
    def busy(self) -> tuple[str, ...]:
        """Labels of maintenance tasks still in flight."""

        return tuple(sorted(self._in_flight))

    def dispatch_to_ui(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run `callback(*args)` on the UI thread without blocking the caller."""

        loop = self._ui_loop
        if loop is None or threading.get_ident() == self._ui_thread:
            callback(*args)
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            LOG.debug("UI loop closed; dropping %r", callback)

    def on_button_pressed(self, event: Button.Pressed) -> None:
        button_id = event.button.id or ""
        if button_id == "create":
            self.action_repair()
        elif button_id == "import-csv":
            self.action_import_csv()
        elif button_id == "import-sql":
            self.action_import_sql()
        elif button_id == "export":
            self.action_export()
        elif button_id.startswith("preview-"):
            self.preview_table(button_id.removeprefix("preview-"))

    def action_repair(self) -> None:
        config = self._form_config()
        if config is None:
            return
        try:
            future = self._orchestrator.submit_repair(config)
        except TaskRunnerClosedError as exc:
            self._safe_notify(str(exc), severity="error")
            return
        self._track("repair", future, self._handle_repair)

    def action_import_csv(self) -> None:
        port = self._bulk_port()
        if port is not None:
            self._submit("import CSV", port.import_all_present_csvs, self._csv_directory, handler=self._handle_imports)

    def action_import_sql(self) -> None:
        path_text = self._sql_path.value.strip() if self._sql_path is not None else ""
        if not path_text:
            self._safe_notify("Enter the path of a SQL dump to import.", severity="warning")
            return
        port = self._bulk_port()
        if port is not None:
            self._submit("import SQL", port.import_sql_dump, Path(path_text), handler=self._handle_sql_dump)

    def action_export(self) -> None:
        port = self._bulk_port()
        if port is not None:
            self._submit("export", port.export_all_tables, self._export_directory, handler=self._handle_exports)

    def preview_table(self, table: str) -> None:
        """Load the first rows of `table` into the preview grid."""

        port = self._bulk_port()
        if port is not None:
            self._submit(f"preview {table}", port.preview, table, handler=self._handle_preview)

    async def action_quit(self) -> None:
        config = self._form_config(notify=False)
        if config is not None:
            self._orchestrator.remember(config)
            port = self._orchestrator.bulk_port(config)
            try:
                # Bounded by the runner's shutdown grace period.
                self._orchestrator.runner.submit(port.export_if_reachable, self._export_directory)
            except TaskRunnerClosedError:
                LOG.warning("Task runner closed, skipping final export")
        self.exit(None)

    def _form_config(self, *, notify: bool = True) -> ConnectionConfig | None:
        if self._form is None:
            return self._orchestrator.config
        try:
            return self._form.to_config()
        except ValueError as exc:
            if notify:
                self._safe_notify(str(exc), severity="error")
            return None

    def _bulk_port(self) -> BulkDataPort | None:
        config = self._form_config()
        if config is None:
            return None
        return self._orchestrator.bulk_port(config)

    def _submit(
        self,
        label: str,
        func: Callable[..., Any],
        *args: Any,
        handler: Callable[[concurrent.futures.Future], None],
    ) -> concurrent.futures.Future | None:
        try:
            future = self._orchestrator.runner.submit(func, *args)
        except TaskRunnerClosedError as exc:
            self._safe_notify(str(exc), severity="error")
            return None
        self._track(label, future, handler)
        return future

    def _track(
        self,
        label: str,
        future: concurrent.futures.Future,
        handler: Callable[[concurrent.futures.Future], None],
    ) -> None:
        self._in_flight[label] = self._in_flight.get(label, 0) + 1
        self._refresh_busy()
        TaskRunner.deliver(future, partial(self._finish, label, handler), self.dispatch_to_ui)

    def _finish(
        self,
        label: str,
        handler: Callable[[concurrent.futures.Future], None],
        future: concurrent.futures.Future,
    ) -> None:
        remaining = self._in_flight.get(label, 0) - 1
        if remaining > 0:
            self._in_flight[label] = remaining
        else:
            self._in_flight.pop(label, None)
        self._refresh_busy()
        if future.cancelled():
            self._safe_notify(f"{label} cancelled.", severity="warning")
            return
        error = future.exception()
        if error is not None:
            LOG.error("%s failed: %s", label, error, extra={"task": label})
            self._safe_notify(f"{label} failed: {error}", severity="error")
            return
        handler(future)

    def _refresh_busy(self) -> None:
        if self._status_bar is not None and self.is_running:
            self._status_bar.set_busy(self.busy)

    def _handle_repair(self, future: concurrent.futures.Future[RepairOutcome]) -> None:
        outcome = future.result()
        if not outcome.connected:
            reason = outcome.error or "unknown error"
            self._safe_notify(f"Could not connect: {reason}", severity="error")
            return
        if self._handed_off:
            LOG.info("Closing surplus connection from an overlapping repair")
            try:
                self._orchestrator.runner.submit(outcome.connection.close)
            except TaskRunnerClosedError:
                LOG.warning("Task runner closed, surplus connection left open")
            return
        self._handed_off = True
        if outcome.report is not None and outcome.report.created_tables:
            LOG.info("Created tables: %s", ", ".join(outcome.report.created_tables))
        self._safe_notify(f"Connected to {outcome.config.describe()}", severity="information")
        self.exit(outcome.connection)

    def _handle_imports(self, future: concurrent.futures.Future) -> None:
        message, severity = summarize_imports(future.result(), self._csv_directory)
        self._safe_notify(message, severity=severity)

    def _handle_sql_dump(self, future: concurrent.futures.Future[SqlDumpResult]) -> None:
        result = future.result()
        severity = "warning" if result.errors else "information"
        self._safe_notify(
            f"SQL import: {result.executed} statement(s) executed, {len(result.errors)} failed.",
            severity=severity,
        )

    def _handle_exports(self, future: concurrent.futures.Future) -> None:
        message, severity = summarize_exports(future.result(), self._export_directory)
        self._safe_notify(message, severity=severity)

    def _handle_preview(self, future: concurrent.futures.Future[TablePreview]) -> None:
        preview = future.result()
        table = self._preview
        if table is None:
            return
        table.clear(columns=True)
        table.add_columns(*preview.columns)
        table.add_rows([tuple("" if value is None else str(value) for value in row) for row in preview.rows])
        table.border_title = f"{preview.table} ({preview.row_count} rows)"

    def _safe_notify(self, message: str, *, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display notification", extra={"notice": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notice": message})


def summarize_imports(
    results: Mapping[str, ImportResult | BulkDataError], directory: Path
) -> tuple[str, str]:
    """One-line notification text and severity for a batch CSV import."""

    if not results:
        return f"No table CSV files found in {directory}.", "warning"
    imported = [result for result in results.values() if isinstance(result, ImportResult)]
    failed = sorted(table for table, result in results.items() if not isinstance(result, ImportResult))
    rows = sum(result.rows_imported for result in imported)
    skipped = sum(len(result.errors) for result in imported)
    message = f"Imported {rows} row(s) into {len(imported)} table(s)"
    if skipped:
        message += f", {skipped} row(s) skipped"
    if failed:
        message += f"; failed: {', '.join(failed)}"
    return message + ".", "warning" if failed or skipped else "information"


def summarize_exports(
    results: Mapping[str, ExportResult | ExportError], directory: Path
) -> tuple[str, str]:
    exported = [result for result in results.values() if isinstance(result, ExportResult)]
    failed = sorted(table for table, result in results.items() if not isinstance(result, ExportResult))
    message = f"Exported {len(exported)} table(s) to {directory}"
    if failed:
        return f"{message}; failed: {', '.join(failed)}.", "warning"
    return message + ".", "information"


def build_repair_surface(
    csv_directory: Path | str = Path("."),
    export_directory: Path | str = EXPORT_DIRECTORY,
) -> RepairSurface:
    """Repair surface that runs the Textual console until it exits."""

    def _surface(orchestrator: BootstrapOrchestrator) -> asyncpg.Connection | None:
        app = RepairApp(orchestrator, csv_directory=csv_directory, export_directory=export_directory)
        return app.run()

    return _surface


def headless_repair_surface(orchestrator: BootstrapOrchestrator) -> asyncpg.Connection | None:
    """Single automatic repair pass, for unattended runs; gives up if it fails."""

    outcome = orchestrator.repair_once()
    if not outcome.connected:
        LOG.error("Automatic repair failed: %s", outcome.error)
    return outcome.connection


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="clubconnect", description="Bootstrap the ClubConnect database.")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE, help="Connection settings file")
    parser.add_argument("--csv-dir", type=Path, default=Path("."), help="Directory scanned for <table>.csv")
    parser.add_argument("--export-dir", type=Path, default=EXPORT_DIRECTORY, help="CSV export directory")
    parser.add_argument("--max-tries", type=int, default=MAX_TRIES, help="Connection attempts before repair")
    parser.add_argument("--timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT, help="Per-attempt connect timeout")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS, help="Background worker count")
    parser.add_argument("--grace", type=float, default=DEFAULT_GRACE, help="Shutdown grace period in seconds")
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Repair automatically instead of opening the console; gives up after one failed repair pass",
    )
    parser.add_argument("--log-file", type=Path, default=LOG_FILE, help="Log file used while the console is open")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)
    if args.max_tries < 1:
        parser.error("--max-tries must be at least 1")
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    return args


def configure_logging(args: argparse.Namespace) -> None:
    """Log to stderr when headless, else to a file so the console stays clean."""

    level = logging.DEBUG if args.verbose else logging.INFO
    if args.headless:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT, filename=str(args.log_file))
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def main(argv: Sequence[str] | None = None) -> int:
    """Run bootstrap and report the hand-off; returns the process exit status."""

    args = parse_args(argv)
    configure_logging(args)
    store = ConfigStore(args.config)
    runner = TaskRunner(args.workers)
    surface = headless_repair_surface if args.headless else build_repair_surface(args.csv_dir, args.export_dir)
    orchestrator = BootstrapOrchestrator(
        store,
        runner,
        factory=ConnectionFactory(connect_timeout=args.timeout),
        repair_surface=surface,
        max_tries=args.max_tries,
        csv_directory=args.csv_dir,
    )
    result = None
    try:
        result = orchestrator.run()
        if result is None:
            LOG.error("No database connection; giving up")
            return 1
        LOG.info("Database ready", extra={"target": result.config.describe()})
        return 0
    finally:
        if result is not None:
            port = orchestrator.bulk_port(result.config)
            runner.submit(port.export_all_tables, args.export_dir)
            runner.submit(result.connection.close)
        runner.shutdown(args.grace)


__all__ = [
    "RepairApp",
    "build_repair_surface",
    "configure_logging",
    "headless_repair_surface",
    "main",
    "parse_args",
    "summarize_exports",
    "summarize_imports",
]
