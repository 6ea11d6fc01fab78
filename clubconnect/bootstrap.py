"""Bootstrap state machine: connect with retries, repair, import, hand off."""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping

import asyncpg

from .bulk import BulkDataError, BulkDataPort, ImportResult
from .config import ConfigStore, ConnectionConfig
from .connections import ConnectionFactory, DatabaseConnectionError, UnknownDatabaseError
from .schema import ReconcileReport, SchemaError, SchemaReconciler
from .tasks import TaskRunner

LOG = logging.getLogger(__name__)

MAX_TRIES = 4


class BootstrapState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    REPAIRING = "repairing"
    CONNECTED = "connected"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class RetryState:
    """Attempt bookkeeping for one connection sequence."""

    max_attempts: int
    attempt_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def next_attempt(self) -> int:
        self.attempt_count += 1
        return self.attempt_count


@dataclass(frozen=True, slots=True)
class BootstrapEvent:
    """Emitted on every state change and connection attempt."""

    state: BootstrapState
    message: str
    attempt: int | None = None
    max_attempts: int | None = None
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class RepairOutcome:
    """Result of one repair pass: reconcile, then a single connection attempt."""

    config: ConnectionConfig
    report: ReconcileReport | None = None
    connection: asyncpg.Connection | None = None
    error: Exception | None = None

    @property
    def connected(self) -> bool:
        return self.connection is not None


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    """Hand-off: the live connection plus the config that produced it."""

    connection: asyncpg.Connection
    config: ConnectionConfig
    imports: Mapping[str, ImportResult | BulkDataError] = field(default_factory=dict)


BootstrapListener = Callable[[BootstrapEvent], None]
RepairSurface = Callable[["BootstrapOrchestrator"], "asyncpg.Connection | None"]


class BootstrapOrchestrator:
    """Obtains one schema-complete connection before the rest of the app runs.

    `run` blocks the caller: nothing else can proceed until a connection exists
    or the repair surface gives up. The repair surface is any callable that
    receives the orchestrator, drives `repair_once` / `submit_repair` for as
    long as a human wants, and returns the connection or None.
    """

    def __init__(
        self,
        store: ConfigStore,
        runner: TaskRunner,
        *,
        factory: ConnectionFactory | None = None,
        reconciler: SchemaReconciler | None = None,
        repair_surface: RepairSurface | None = None,
        max_tries: int = MAX_TRIES,
        csv_directory: Path | str = Path("."),
        auto_import: bool = True,
    ) -> None:
        if max_tries < 1:
            raise ValueError("max_tries must be at least 1.")
        self._store = store
        self._runner = runner
        self._factory = factory or ConnectionFactory()
        self._reconciler = reconciler or SchemaReconciler()
        self._repair_surface = repair_surface
        self._max_tries = max_tries
        self._csv_directory = Path(csv_directory)
        self._auto_import = auto_import
        self._imported = False
        self._state = BootstrapState.IDLE
        self._config: ConnectionConfig | None = None
        self._listeners: set[BootstrapListener] = set()

    @property
    def state(self) -> BootstrapState:
        return self._state

    @property
    def config(self) -> ConnectionConfig:
        if self._config is None:
            self._config = self._store.load()
        return self._config

    @property
    def max_tries(self) -> int:
        return self._max_tries

    @property
    def runner(self) -> TaskRunner:
        return self._runner

    @property
    def factory(self) -> ConnectionFactory:
        return self._factory

    @property
    def reconciler(self) -> SchemaReconciler:
        return self._reconciler

    def subscribe(self, listener: BootstrapListener) -> Callable[[], None]:
        """Subscribe to bootstrap events; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def bulk_port(self, config: ConnectionConfig | None = None) -> BulkDataPort:
        """Bulk port bound to `config` (or the current config)."""

        return BulkDataPort(self._factory, config or self.config, tables=self._reconciler.required_tables)

    def remember(self, config: ConnectionConfig) -> bool:
        """Adopt `config` as current and persist it."""

        self._config = config
        return self._store.save(config)

    def run(self) -> BootstrapResult | None:
        """Connect, repair if needed, auto-import CSVs, and hand off the connection."""

        self._config = self._store.load()
        self._transition(BootstrapState.CONNECTING, f"Connecting to {self._config.describe()}")
        conn = self._connect_with_retries()
        if conn is not None and not self._schema_complete(conn):
            conn = None
        if conn is None:
            self._transition(BootstrapState.REPAIRING, "Connection unavailable, configure database settings")
            conn = self._repair()
        if conn is None:
            self._transition(BootstrapState.ABANDONED, "Repair abandoned")
            return None
        imports = self._import_csvs()
        self._transition(BootstrapState.CONNECTED, f"Connected to {self.config.describe()}")
        return BootstrapResult(connection=conn, config=self.config, imports=imports)

    def submit_repair(self, config: ConnectionConfig | None = None) -> concurrent.futures.Future[RepairOutcome]:
        """Queue one repair pass on the task runner."""

        if config is not None:
            self._config = config
        return self._runner.submit(self._repair_pass, self.config)

    def repair_once(self, config: ConnectionConfig | None = None) -> RepairOutcome:
        """Run one repair pass and wait for it."""

        return self.submit_repair(config).result()

    def _connect_with_retries(self) -> asyncpg.Connection | None:
        retry = RetryState(max_attempts=self._max_tries)
        while not retry.exhausted:
            attempt = retry.next_attempt()
            self._emit(
                BootstrapEvent(
                    state=self._state,
                    message=f"Attempting DB connection ({attempt}/{retry.max_attempts})",
                    attempt=attempt,
                    max_attempts=retry.max_attempts,
                )
            )
            try:
                conn = self._runner.call(self._factory.open_database, self.config)
            except DatabaseConnectionError as exc:
                LOG.warning(
                    "Connection attempt %s/%s failed: %s",
                    attempt,
                    retry.max_attempts,
                    exc,
                    extra={"attempt": attempt},
                )
                self._emit(
                    BootstrapEvent(
                        state=self._state,
                        message=f"Connection failed: {exc}",
                        attempt=attempt,
                        max_attempts=retry.max_attempts,
                        error=exc,
                    )
                )
                if isinstance(exc, UnknownDatabaseError):
                    return None
                continue
            LOG.info("Connected to database", extra={"attempt": attempt})
            return conn
        return None

    def _schema_complete(self, conn: asyncpg.Connection) -> bool:
        try:
            missing = self._runner.call(self._ensure_schema, conn)
        except Exception:
            LOG.exception("Schema verification failed")
            self._runner.call(conn.close)
            return False
        if not missing:
            return True
        LOG.error("Required tables still missing: %s", ", ".join(sorted(missing)))
        self._runner.call(conn.close)
        return False

    async def _ensure_schema(self, conn: asyncpg.Connection) -> set[str]:
        missing = await self._reconciler.tables_missing(conn)
        if missing:
            LOG.warning("Some tables are missing, creating them")
            await self._reconciler.create_missing_tables(conn, missing)
            missing = await self._reconciler.tables_missing(conn)
        return missing

    def _repair(self) -> asyncpg.Connection | None:
        if self._repair_surface is None:
            LOG.error("No repair surface available", extra={"target": self.config.describe()})
            return None
        return self._repair_surface(self)

    async def _repair_pass(self, config: ConnectionConfig) -> RepairOutcome:
        LOG.info("Checking database server", extra={"target": config.describe()})
        try:
            report = await self._reconciler.reconcile(self._factory, config)
        except DatabaseConnectionError as exc:
            LOG.error("Database server connection failed: %s", exc)
            self._emit(BootstrapEvent(state=self._state, message=str(exc), error=exc))
            return RepairOutcome(config=config, error=exc)
        except Exception as exc:
            LOG.exception("Reconciliation aborted")
            self._emit(BootstrapEvent(state=self._state, message=f"Reconciliation aborted: {exc}", error=exc))
            return RepairOutcome(config=config, error=exc)
        if report.database and report.database != config.database:
            config = config.with_updates(database=report.database)
        try:
            conn = await self._factory.open_database(config)
        except DatabaseConnectionError as exc:
            LOG.error("Database connection failed after repair: %s", exc)
            self._emit(BootstrapEvent(state=self._state, message=str(exc), error=exc))
            return RepairOutcome(config=config, report=report, error=exc)
        if report.missing_after:
            await conn.close()
            error = SchemaError(
                f"still missing: {', '.join(sorted(report.missing_after))}", intent="verify schema"
            )
            LOG.error("Schema incomplete after repair: %s", error)
            self._emit(BootstrapEvent(state=self._state, message=str(error), error=error))
            return RepairOutcome(config=config, report=report, error=error)
        LOG.info("Database connected after repair", extra={"target": config.describe()})
        self.remember(config)
        return RepairOutcome(config=config, report=report, connection=conn)

    def _import_csvs(self) -> dict[str, ImportResult | BulkDataError]:
        if not self._auto_import or self._imported:
            return {}
        self._imported = True
        port = self.bulk_port()
        return self._runner.call(port.import_all_present_csvs, self._csv_directory)

    def _transition(self, state: BootstrapState, message: str) -> None:
        self._state = state
        LOG.info(message, extra={"state": state.value})
        self._emit(BootstrapEvent(state=state, message=message))

    def _emit(self, event: BootstrapEvent) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:
                LOG.exception("Bootstrap listener failed")


__all__ = [
    "BootstrapEvent",
    "BootstrapListener",
    "BootstrapOrchestrator",
    "BootstrapResult",
    "BootstrapState",
    "MAX_TRIES",
    "RepairOutcome",
    "RepairSurface",
    "RetryState",
]
