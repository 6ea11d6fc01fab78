"""Command palette providers for the repair console."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .bootstrap import BootstrapOrchestrator


class MaintenanceCommandProvider(Provider):
    """Expose the maintenance buttons to the command palette."""

    _COMMANDS: tuple[tuple[str, str, str], ...] = (
        ("Create database & tables", "repair", "Reconcile the schema and try to connect."),
        ("Import CSV files", "import_csv", "Load <table>.csv files from the CSV directory."),
        ("Import SQL dump", "import_sql", "Execute the SQL file named in the dump path field."),
        ("Export database to CSV", "export", "Write every table to the export directory."),
    )

    async def search(self, query: str) -> Hits:
        matcher = self.matcher(query)
        for label, action, help_text in self._COMMANDS:
            score = matcher.match(label)
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(action),
                    help=help_text,
                )

    async def discover(self) -> Hits:
        for label, action, help_text in self._COMMANDS:
            yield DiscoveryHit(
                display=label,
                command=self._build_callback(action),
                help=help_text,
            )

    def _build_callback(self, action: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            handler = getattr(self.app, f"action_{action}", None)
            if handler is None:
                return
            handler()

        return _run


class TablePreviewProvider(Provider):
    """Expose one preview command per required table."""

    async def search(self, query: str) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        matcher = self.matcher(query)
        for table in orchestrator.reconciler.required_tables:
            match = matcher.match(table)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=matcher.highlight(table),
                    command=self._build_callback(table),
                    help=f"Preview table: show the first rows of {table}.",
                )

    async def discover(self) -> Hits:
        orchestrator = self._orchestrator
        if orchestrator is None:
            return
        for table in orchestrator.reconciler.required_tables:
            yield DiscoveryHit(
                display=f"Preview table: {table}",
                command=self._build_callback(table),
                help="Show the first rows of the table.",
            )

    @property
    def _orchestrator(self) -> BootstrapOrchestrator | None:
        orchestrator = getattr(self.app, "orchestrator", None)
        if isinstance(orchestrator, BootstrapOrchestrator):
            return orchestrator
        return None

    def _build_callback(self, table: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            previewer = getattr(self.app, "preview_table", None)
            if previewer is None:
                return
            previewer(table)

        return _run


__all__ = ["MaintenanceCommandProvider", "TablePreviewProvider"]
