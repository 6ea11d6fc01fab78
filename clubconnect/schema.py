"""Canonical schema and the reconciler that creates whatever is missing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import asyncpg

from .config import ConnectionConfig
from .connections import ConnectionFactory

LOG = logging.getLogger(__name__)

DATABASE_ENCODING = "UTF8"


class SchemaError(RuntimeError):
    """A single DDL/DML statement failed during reconciliation or seeding."""

    def __init__(self, message: str, *, intent: str, table: str | None = None) -> None:
        super().__init__(message)
        self.intent = intent
        self.table = table

    def __str__(self) -> str:
        return f"{self.intent}: {self.args[0]}"


@dataclass(frozen=True, slots=True)
class TableSpec:
    """A required table: its DDL plus optional idempotent seed statements."""

    name: str
    ddl: str
    seed: tuple[str, ...] = ()
    required: bool = True


@dataclass(slots=True)
class ReconcileReport:
    """Outcome of a reconciliation pass."""

    database: str | None = None
    database_created: bool = False
    created_tables: list[str] = field(default_factory=list)
    seeded_tables: list[str] = field(default_factory=list)
    failures: list[SchemaError] = field(default_factory=list)
    missing_after: set[str] | None = None

    @property
    def ok(self) -> bool:
        return not self.failures and not self.missing_after

    def merge(self, other: ReconcileReport) -> None:
        self.database = other.database or self.database
        self.database_created = self.database_created or other.database_created
        self.created_tables.extend(other.created_tables)
        self.seeded_tables.extend(other.seeded_tables)
        self.failures.extend(other.failures)
        if other.missing_after is not None:
            self.missing_after = set(other.missing_after)


def quote_ident(name: str) -> str:
    """Quote a PostgreSQL identifier, preserving case."""

    return '"' + name.replace('"', '""') + '"'


CANONICAL_TABLES: tuple[TableSpec, ...] = (
    TableSpec(
        name="clubs",
        ddl="""
        CREATE TABLE IF NOT EXISTS "clubs" (
            "Club_ID" BIGINT NOT NULL PRIMARY KEY,
            "Name" VARCHAR(200) NOT NULL,
            "Status" VARCHAR(50) DEFAULT 'Active',
            "Category" VARCHAR(100),
            "Description" TEXT,
            "Budget_Proposal" NUMERIC(12, 2),
            "Member_Capacity" INTEGER,
            "Approved_Budget" NUMERIC(12, 2),
            "Approved_By" INTEGER,
            "Logo" BYTEA,
            "Logo_Type" VARCHAR(50),
            "Logo_Size" INTEGER,
            "Created_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Created_By" INTEGER
        )
        """,
    ),
    TableSpec(
        name="club_membership",
        ddl="""
        CREATE TABLE IF NOT EXISTS "club_membership" (
            "Membership_ID" BIGINT NOT NULL PRIMARY KEY,
            "User_ID" INTEGER NOT NULL,
            "Club_ID" INTEGER NOT NULL,
            "Membership_Status" VARCHAR(50) DEFAULT 'Pending',
            "Membership_Role" VARCHAR(100) DEFAULT 'Member',
            "Application_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Approved_Date" TIMESTAMP,
            "Approved_By" INTEGER,
            "Left_Date" TIMESTAMP,
            "Rejection_Reason" TEXT
        )
        """,
    ),
    TableSpec(
        name="events",
        ddl="""
        CREATE TABLE IF NOT EXISTS "events" (
            "Event_ID" BIGINT NOT NULL PRIMARY KEY,
            "Title" VARCHAR(255) NOT NULL,
            "Type" VARCHAR(100),
            "Description" TEXT,
            "Date" DATE NOT NULL,
            "Status" VARCHAR(50) DEFAULT 'Scheduled',
            "Start_Time" TIME,
            "End_Time" TIME,
            "Resource_ID" INTEGER,
            "Is_Budget_Requested" SMALLINT DEFAULT 0,
            "Budget_Amount" NUMERIC(12, 2),
            "Budget_Status" VARCHAR(50),
            "Approved_By" INTEGER,
            "Created_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Created_By" INTEGER,
            "Club_ID" INTEGER
        )
        """,
    ),
    TableSpec(
        name="announcements",
        ddl="""
        CREATE TABLE IF NOT EXISTS "announcements" (
            "Announcement_ID" BIGINT NOT NULL PRIMARY KEY,
            "Club_ID" INTEGER,
            "Created_By" INTEGER,
            "Content" TEXT NOT NULL,
            "Title" VARCHAR(255) NOT NULL,
            "Target_Audience" VARCHAR(100),
            "Expiry_Date" DATE,
            "Created_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ),
    TableSpec(
        name="discussion_comments",
        ddl="""
        CREATE TABLE IF NOT EXISTS "discussion_comments" (
            "Comment_ID" BIGINT NOT NULL PRIMARY KEY,
            "Message" TEXT NOT NULL,
            "User_ID" INTEGER NOT NULL,
            "Discussion_ID" INTEGER NOT NULL,
            "TimeStamp" TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ),
    TableSpec(
        name="discussion_forum",
        ddl="""
        CREATE TABLE IF NOT EXISTS "discussion_forum" (
            "Discussion_ID" BIGINT NOT NULL PRIMARY KEY,
            "Title" VARCHAR(255) NOT NULL,
            "Message" TEXT NOT NULL,
            "TimeStamp" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Club_ID" INTEGER
        )
        """,
    ),
    TableSpec(
        name="resources",
        ddl="""
        CREATE TABLE IF NOT EXISTS "resources" (
            "Resource_ID" BIGINT NOT NULL PRIMARY KEY,
            "Name" VARCHAR(200) NOT NULL,
            "Type" VARCHAR(100),
            "Capacity" INTEGER,
            "Is_Available" SMALLINT DEFAULT 1,
            "Location" VARCHAR(255),
            "Description" TEXT,
            "Created_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Updated_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        seed=(
            """
            INSERT INTO "resources"
                ("Resource_ID", "Name", "Type", "Capacity", "Is_Available", "Location",
                 "Description", "Created_Date", "Updated_Date")
            VALUES
                (1, 'Main Auditorium', 'Venue', 300, 1, 'Building A, Floor 1', NULL,
                 '2025-11-06 08:02:59', '2025-11-06 08:02:59'),
                (2, 'Conference Room A', 'Meeting Room', 30, 1, 'Building B, Floor 2', NULL,
                 '2025-11-06 08:02:59', '2025-11-06 08:02:59'),
                (3, 'Photography Studio', 'Studio', 15, 1, 'Arts Building, Floor 3', NULL,
                 '2025-11-06 08:02:59', '2025-11-06 08:02:59'),
                (4, 'Computer Lab 1', 'Lab', 50, 1, 'Tech Building, Floor 1', NULL,
                 '2025-11-06 08:02:59', '2025-11-06 08:02:59')
            ON CONFLICT DO NOTHING
            """,
        ),
    ),
    TableSpec(
        name="rsvps",
        ddl="""
        CREATE TABLE IF NOT EXISTS "rsvps" (
            "RSVP_ID" BIGINT NOT NULL PRIMARY KEY,
            "User_ID" INTEGER NOT NULL,
            "Event_ID" INTEGER NOT NULL,
            "Status" VARCHAR(50) DEFAULT 'Pending',
            "Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            "Attendance_Marked" SMALLINT DEFAULT 0
        )
        """,
    ),
    TableSpec(
        name="roles",
        ddl="""
        CREATE TABLE IF NOT EXISTS "roles" (
            "Role_ID" BIGINT NOT NULL PRIMARY KEY,
            "Role_Name" VARCHAR(100) NOT NULL,
            "Description" TEXT,
            "Created_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
        seed=(
            """
            INSERT INTO "roles" ("Role_ID", "Role_Name", "Description", "Created_Date")
            VALUES
                (1, 'admin', 'Full system access and management', '2025-11-06 08:02:59'),
                (4, 'guest', 'General student user', '2025-11-06 08:02:59')
            ON CONFLICT DO NOTHING
            """,
        ),
    ),
    TableSpec(
        name="system_users",
        ddl="""
        CREATE TABLE IF NOT EXISTS "system_users" (
            "User_ID" BIGINT NOT NULL PRIMARY KEY,
            "Full_Names" VARCHAR(200) NOT NULL,
            "Email" VARCHAR(255) NOT NULL,
            "Username" VARCHAR(100) NOT NULL,
            "Password_Hash" VARCHAR(255) NOT NULL,
            "Role_ID" INTEGER DEFAULT 4,
            "Profile_Picture" BYTEA,
            "Profile_Picture_Type" VARCHAR(50),
            "Profile_Picture_Size" INTEGER,
            "Status" VARCHAR(50) DEFAULT 'Active',
            "Registration_Date" TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ),
)

TABLE_NAMES: tuple[str, ...] = tuple(spec.name for spec in CANONICAL_TABLES)


class SchemaReconciler:
    """Compares the live database against the canonical schema and fills the gaps."""

    _DATABASES_QUERY = "SELECT datname FROM pg_database WHERE NOT datistemplate"
    _TABLE_QUERY = "SELECT to_regclass($1) IS NOT NULL"

    def __init__(self, tables: Sequence[TableSpec] = CANONICAL_TABLES) -> None:
        self._tables = tuple(tables)
        self._by_name = {spec.name: spec for spec in self._tables}

    @property
    def tables(self) -> tuple[TableSpec, ...]:
        return self._tables

    @property
    def required_tables(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self._tables if spec.required)

    async def database_exists(self, server_conn: asyncpg.Connection, name: str) -> bool:
        """Case-insensitive lookup of `name` among the server's databases."""

        return await self._matching_database(server_conn, name) is not None

    async def tables_missing(
        self,
        db_conn: asyncpg.Connection,
        required: Iterable[str] | None = None,
    ) -> set[str]:
        """Return the subset of required tables absent from the current schema."""

        names = tuple(required) if required is not None else self.required_tables
        missing: set[str] = set()
        for name in names:
            exists = await db_conn.fetchval(self._TABLE_QUERY, quote_ident(name))
            if not exists:
                LOG.info("Missing table", extra={"table": name})
                missing.add(name)
        return missing

    async def create_database(self, server_conn: asyncpg.Connection, name: str) -> bool:
        """Create the database unless it already exists; returns True when created."""

        existing = await self._matching_database(server_conn, name)
        if existing is not None:
            LOG.info("Database already exists", extra={"database": existing})
            return False
        statement = (
            f"CREATE DATABASE {quote_ident(name)} "
            f"ENCODING '{DATABASE_ENCODING}' TEMPLATE template0"
        )
        try:
            await server_conn.execute(statement)
        except asyncpg.exceptions.DuplicateDatabaseError:
            LOG.info("Database created concurrently", extra={"database": name})
            return False
        except asyncpg.PostgresError as exc:
            raise SchemaError(str(exc), intent=f"create database {name}") from exc
        LOG.info("Created database", extra={"database": name})
        return True

    async def create_missing_tables(
        self,
        db_conn: asyncpg.Connection,
        missing: Iterable[str] | None = None,
    ) -> ReconcileReport:
        """Run DDL and seeds for `missing` (or every table); failures do not stop the batch."""

        report = ReconcileReport()
        targets = self._resolve(missing)
        for spec in targets:
            try:
                await db_conn.execute(spec.ddl)
            except asyncpg.PostgresError as exc:
                self._record(report, exc, intent=f"create table {spec.name}", table=spec.name)
            else:
                report.created_tables.append(spec.name)
        for spec in targets:
            if not spec.seed:
                continue
            seeded = True
            for statement in spec.seed:
                try:
                    await db_conn.execute(statement)
                except asyncpg.PostgresError as exc:
                    seeded = False
                    self._record(report, exc, intent=f"seed {spec.name}", table=spec.name)
            if seeded:
                report.seeded_tables.append(spec.name)
        if report.created_tables:
            LOG.info("Ensured tables: %s", ", ".join(report.created_tables))
        return report

    async def reconcile(self, factory: ConnectionFactory, config: ConnectionConfig) -> ReconcileReport:
        """Full pass: make sure the database exists, then every required table."""

        report = ReconcileReport(database=config.database)
        async with factory.server(config) as server_conn:
            LOG.info("Server reachable", extra={"target": config.describe(factory.maintenance_database)})
            existing = await self._matching_database(server_conn, config.database)
            if existing is None:
                LOG.warning("Database does not exist, creating", extra={"database": config.database})
                try:
                    report.database_created = await self.create_database(server_conn, config.database)
                except SchemaError as exc:
                    LOG.error("%s", exc, extra={"database": config.database})
                    report.failures.append(exc)
                    return report
            elif existing != config.database:
                # Quoted names are case-sensitive; connect under the catalog spelling.
                LOG.warning(
                    "Database name differs in case, using %s",
                    existing,
                    extra={"database": config.database},
                )
                config = config.with_updates(database=existing)
                report.database = existing
        async with factory.database(config) as db_conn:
            missing = await self.tables_missing(db_conn)
            if missing:
                report.merge(await self.create_missing_tables(db_conn, self._ordered(missing)))
            else:
                LOG.info("All required tables exist", extra={"database": config.database})
            report.missing_after = await self.tables_missing(db_conn)
        return report

    async def _matching_database(self, server_conn: asyncpg.Connection, name: str) -> str | None:
        wanted = name.casefold()
        for record in await server_conn.fetch(self._DATABASES_QUERY):
            candidate = str(record["datname"])
            if candidate.casefold() == wanted:
                return candidate
        return None

    def _resolve(self, names: Iterable[str] | None) -> tuple[TableSpec, ...]:
        if names is None:
            return self._tables
        wanted = set(names)
        unknown = wanted - self._by_name.keys()
        if unknown:
            raise ValueError(f"Unknown table(s): {', '.join(sorted(unknown))}")
        return tuple(spec for spec in self._tables if spec.name in wanted)

    def _ordered(self, names: Iterable[str]) -> list[str]:
        wanted = set(names)
        return [spec.name for spec in self._tables if spec.name in wanted]

    @staticmethod
    def _record(report: ReconcileReport, exc: Exception, *, intent: str, table: str) -> None:
        error = SchemaError(str(exc), intent=intent, table=table)
        LOG.error("Schema statement failed: %s", error, extra={"table": table})
        report.failures.append(error)


__all__ = [
    "CANONICAL_TABLES",
    "ReconcileReport",
    "SchemaError",
    "SchemaReconciler",
    "TABLE_NAMES",
    "TableSpec",
    "quote_ident",
]
