"""Shared fakes standing in for asyncpg connections and the connection factory."""

from __future__ import annotations

import copy
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import asyncpg
import pytest

from clubconnect.config import ConnectionConfig
from clubconnect.connections import DatabaseConnectionError, UnknownDatabaseError

_CREATE_TABLE = re.compile(r'CREATE TABLE IF NOT EXISTS "(?P<name>[^"]+)"')
_INSERT = re.compile(r'INSERT INTO "(?P<table>[^"]+)" \((?P<columns>[^)]*)\)')
_SELECT_ALL = re.compile(r'SELECT \* FROM "(?P<table>[^"]+)" LIMIT (?P<limit>\d+)')
_SELECT_TEXT = re.compile(r'FROM "(?P<table>[^"]+)"$')
_SEED = re.compile(r'INSERT INTO "(?P<table>[^"]+)"\s*\((?P<columns>[^)]*)\)')
_LITERAL_KEY = re.compile(r"\(\s*(?P<key>\d+)\s*,")


class _FakeTransaction:
    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self) -> _FakeTransaction:
        self._conn.savepoints.append(copy.deepcopy(self._conn.rows))
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:
        snapshot = self._conn.savepoints.pop()
        if exc_type is not None:
            self._conn.rows = snapshot
        return False


class FakeConnection:
    """Tiny in-memory database understanding the statements clubconnect issues."""

    def __init__(
        self,
        *,
        tables: dict[str, dict[str, str]] | None = None,
        databases: tuple[str, ...] = ("postgres",),
        fail_when: Callable[[str], bool] | None = None,
    ) -> None:
        self.tables: dict[str, dict[str, str]] = dict(tables or {})
        self.rows: dict[str, list[dict[str, Any]]] = {name: [] for name in self.tables}
        self.databases = list(databases)
        self.fail_when = fail_when or (lambda statement: False)
        self.executed: list[str] = []
        self.savepoints: list[dict[str, list[dict[str, Any]]]] = []
        self.closed = False

    async def fetchval(self, query: str, *args: Any) -> Any:
        if "to_regclass" in query:
            return args[0].strip('"') in self.tables
        raise AssertionError(f"unexpected fetchval: {query}")

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        if "pg_database" in query:
            return [{"datname": name} for name in self.databases]
        if "pg_attribute" in query:
            columns = self.tables.get(args[0].strip('"'), {})
            return [{"name": name, "type": kind} for name, kind in columns.items()]
        match = _SELECT_ALL.search(query)
        if match:
            return [dict(row) for row in self.rows[match["table"]][: int(match["limit"])]]
        raise AssertionError(f"unexpected fetch: {query}")

    async def execute(self, statement: str, *args: Any) -> str:
        if self.fail_when(statement):
            raise asyncpg.exceptions.SyntaxOrAccessError(f"rejected: {statement[:40]}")
        if statement.startswith("CREATE DATABASE"):
            name = statement.split('"')[1]
            if name in self.databases:
                raise asyncpg.exceptions.DuplicateDatabaseError(f'database "{name}" already exists')
            self.databases.append(name)
        elif match := _CREATE_TABLE.search(statement):
            self.tables.setdefault(match["name"], {})
            self.rows.setdefault(match["name"], [])
        elif args:
            self._insert(statement, args)
        elif "ON CONFLICT DO NOTHING" in statement:
            self._seed(statement)
        self.executed.append(statement)
        return "OK"

    async def executemany(self, statement: str, rows: list[list[Any]]) -> None:
        for values in rows:
            self._insert(statement, values)

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)

    async def cursor(self, query: str, *, prefetch: int | None = None) -> AsyncIterator[dict[str, Any]]:
        table = _SELECT_TEXT.search(query)["table"]
        for row in self.rows[table]:
            yield {name: None if value is None else str(value) for name, value in row.items()}

    async def close(self) -> None:
        self.closed = True

    def _seed(self, statement: str) -> None:
        # Literal multi-row INSERT keyed on its first column.
        match = _SEED.search(statement)
        assert match, statement
        table = match["table"]
        if table not in self.tables:
            raise asyncpg.exceptions.UndefinedTableError(f'relation "{table}" does not exist')
        key_column = match["columns"].split(",")[0].strip().strip('"')
        present = {row.get(key_column) for row in self.rows[table]}
        for found in _LITERAL_KEY.finditer(statement[match.end():]):
            key = int(found["key"])
            if key not in present:
                self.rows[table].append({key_column: key})
                present.add(key)

    def _insert(self, statement: str, values: Any) -> None:
        match = _INSERT.search(statement)
        assert match, statement
        table = match["table"]
        columns = [part.strip().strip('"') for part in match["columns"].split(",")]
        row = {name: None for name in self.tables[table]}
        for name, value in zip(columns, values):
            kind = self.tables[table][name]
            if kind == "integer" and value is not None:
                if not value.lstrip("-").isdigit():
                    raise asyncpg.exceptions.InvalidTextRepresentationError(
                        f'invalid input syntax for type integer: "{value}"'
                    )
                value = int(value)
            row[name] = value
        self.rows[table].append(row)


class FakeFactory:
    """Stands in for `ConnectionFactory`, handing out one shared fake connection."""

    maintenance_database = "postgres"

    def __init__(self, conn: FakeConnection, *, down: bool = False) -> None:
        self.conn = conn
        self.down = down
        self.opened: list[str] = []

    async def open_server(self, config: ConnectionConfig) -> FakeConnection:
        return self._open(config, self.maintenance_database)

    async def open_database(self, config: ConnectionConfig) -> FakeConnection:
        if not self.down and config.database not in self.conn.databases:
            self.opened.append(config.database)
            raise UnknownDatabaseError(f"Database '{config.database}' does not exist", database=config.database)
        return self._open(config, config.database)

    @asynccontextmanager
    async def server(self, config: ConnectionConfig) -> AsyncIterator[FakeConnection]:
        yield await self.open_server(config)

    @asynccontextmanager
    async def database(self, config: ConnectionConfig) -> AsyncIterator[FakeConnection]:
        yield await self.open_database(config)

    def _open(self, config: ConnectionConfig, database: str) -> FakeConnection:
        self.opened.append(database)
        if self.down:
            raise DatabaseConnectionError("Connection refused", target=config.describe(database))
        self.conn.closed = False
        return self.conn


CLUB_COLUMNS = {"Club_ID": "integer", "Club_Name": "text", "Description": "text"}


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def club_conn() -> FakeConnection:
    return FakeConnection(tables={"clubs": dict(CLUB_COLUMNS)}, databases=("postgres", "clubconnect"))


@pytest.fixture()
def club_factory(club_conn: FakeConnection) -> FakeFactory:
    return FakeFactory(club_conn)
