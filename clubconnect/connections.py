"""Connection factory for server-level and database-level asyncpg handles."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from .config import ConnectionConfig

LOG = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0
MAINTENANCE_DATABASE = "postgres"


class DatabaseConnectionError(RuntimeError):
    """Raised when the server is unreachable, rejects us, or times out."""

    def __init__(self, message: str, *, target: str | None = None) -> None:
        super().__init__(message)
        self.target = target


class UnknownDatabaseError(DatabaseConnectionError):
    """The server answered but the requested database does not exist."""

    def __init__(self, message: str, *, target: str | None = None, database: str | None = None) -> None:
        super().__init__(message, target=target)
        self.database = database


class ConnectionFactory:
    """Builds asyncpg connections from a `ConnectionConfig`."""

    def __init__(
        self,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        maintenance_database: str = MAINTENANCE_DATABASE,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._maintenance_database = maintenance_database

    @property
    def connect_timeout(self) -> float:
        return self._connect_timeout

    @property
    def maintenance_database(self) -> str:
        return self._maintenance_database

    async def open_server(self, config: ConnectionConfig) -> asyncpg.Connection:
        """Connect to the server without selecting the target database."""

        return await self._open(config, self._maintenance_database)

    async def open_database(self, config: ConnectionConfig) -> asyncpg.Connection:
        """Connect straight to the configured database."""

        return await self._open(config, config.database)

    @asynccontextmanager
    async def server(self, config: ConnectionConfig) -> AsyncIterator[asyncpg.Connection]:
        """Scoped server-level connection."""

        conn = await self.open_server(config)
        try:
            yield conn
        finally:
            await _close_quietly(conn)

    @asynccontextmanager
    async def database(self, config: ConnectionConfig) -> AsyncIterator[asyncpg.Connection]:
        """Scoped database-level connection."""

        conn = await self.open_database(config)
        try:
            yield conn
        finally:
            await _close_quietly(conn)

    def connect_kwargs(self, config: ConnectionConfig, database: str) -> dict[str, object]:
        return {
            "host": config.host or "localhost",
            "port": config.port,
            "user": config.username,
            "password": config.password,
            "database": database,
            "timeout": self._connect_timeout,
        }

    async def _open(self, config: ConnectionConfig, database: str) -> asyncpg.Connection:
        target = config.describe(database)
        try:
            return await asyncpg.connect(**self.connect_kwargs(config, database))
        except asyncpg.exceptions.InvalidCatalogNameError as exc:
            raise UnknownDatabaseError(
                f"Database '{database}' does not exist on {config.host}:{config.port}: {exc}",
                target=target,
                database=database,
            ) from exc
        except TimeoutError as exc:
            raise DatabaseConnectionError(
                f"Timed out after {self._connect_timeout:g}s connecting to {target}",
                target=target,
            ) from exc
        except Exception as exc:
            raise DatabaseConnectionError(f"Failed to connect to {target}: {exc}", target=target) from exc


async def _close_quietly(conn: asyncpg.Connection) -> None:
    try:
        await conn.close()
    except Exception:  # pragma: no cover - best effort cleanup
        LOG.debug("Ignoring error while closing connection", exc_info=True)


__all__ = [
    "ConnectionFactory",
    "DatabaseConnectionError",
    "DEFAULT_CONNECT_TIMEOUT",
    "MAINTENANCE_DATABASE",
    "UnknownDatabaseError",
]
