"""CSV and SQL-dump import/export between flat files and the database."""

from __future__ import annotations

import csv
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Sequence

import asyncpg

from .config import ConnectionConfig
from .connections import ConnectionFactory, DatabaseConnectionError
from .schema import TABLE_NAMES, quote_ident

LOG = logging.getLogger(__name__)

BATCH_SIZE = 500
PREVIEW_LIMIT = 200
EXPORT_DIRECTORY = Path("exported_csv")
COMMENT_PREFIXES = ("--", "#")


class BulkDataError(RuntimeError):
    """Base class for bulk import/export failures."""


class CsvImportError(BulkDataError):
    """A whole CSV file could not be imported (missing table, bad header, unreadable file)."""

    def __init__(self, message: str, *, table: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.table = table
        self.path = path


class ImportRowError(BulkDataError):
    """A single CSV row was rejected; the rest of the file still imports."""

    def __init__(self, message: str, *, table: str, line: int) -> None:
        super().__init__(message)
        self.table = table
        self.line = line

    def __str__(self) -> str:
        return f"{self.table} line {self.line}: {self.args[0]}"


class ImportStatementError(BulkDataError):
    """A single statement from a SQL dump failed; the dump continues."""

    def __init__(self, message: str, *, statement: str, line: int) -> None:
        super().__init__(message)
        self.statement = statement
        self.line = line

    def __str__(self) -> str:
        return f"line {self.line}: {self.args[0]}"


class ExportError(BulkDataError):
    """A table could not be exported; sibling tables still are."""

    def __init__(self, message: str, *, table: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.table = table
        self.path = path


class TransferDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"


@dataclass(frozen=True, slots=True)
class TransferJob:
    """One table moving between the database and a CSV file."""

    table: str
    path: Path
    direction: TransferDirection


@dataclass(frozen=True, slots=True)
class ImportResult:
    table: str
    path: Path
    rows_imported: int
    truncated_rows: int = 0
    errors: tuple[ImportRowError, ...] = ()


@dataclass(frozen=True, slots=True)
class ExportResult:
    table: str
    path: Path
    rows_exported: int


@dataclass(frozen=True, slots=True)
class SqlDumpResult:
    path: Path
    executed: int
    errors: tuple[ImportStatementError, ...] = ()


@dataclass(frozen=True, slots=True)
class TablePreview:
    """First rows of a table, normalised for display."""

    table: str
    columns: tuple[str, ...]
    rows: tuple[tuple[object, ...], ...]

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(slots=True)
class _ImportBatch:
    table: str
    sql: str
    rows: list[tuple[int, list[str | None]]] = field(default_factory=list)
    applied: int = 0
    errors: list[ImportRowError] = field(default_factory=list)


class BulkDataPort:
    """Moves table data between PostgreSQL and CSV / SQL dump files."""

    _COLUMNS_QUERY = """
        SELECT a.attname AS name, format_type(a.atttypid, a.atttypmod) AS type
        FROM pg_attribute AS a
        WHERE a.attrelid = to_regclass($1) AND a.attnum > 0 AND NOT a.attisdropped
        ORDER BY a.attnum
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        config: ConnectionConfig,
        *,
        tables: Sequence[str] = TABLE_NAMES,
        batch_size: int = BATCH_SIZE,
    ) -> None:
        self._factory = factory
        self._config = config
        self._tables = tuple(tables)
        self._batch_size = batch_size

    @property
    def tables(self) -> tuple[str, ...]:
        return self._tables

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    async def run(self, job: TransferJob) -> ImportResult | ExportResult:
        """Execute a single import or export job."""

        if job.direction is TransferDirection.IMPORT:
            return await self.import_csv(job.table, job.path)
        return await self.export_csv(job.table, job.path)

    async def import_csv(self, table: str, path: Path | str) -> ImportResult:
        """Load `path` into `table` in one transaction, batching inserts."""

        path = Path(path)
        try:
            handle = path.open(newline="", encoding="utf-8-sig")
        except OSError as exc:
            raise CsvImportError(f"Cannot read {path}: {exc}", table=table, path=path) from exc
        with handle:
            reader = csv.reader(handle)
            try:
                header = next(reader, None)
            except csv.Error as exc:
                raise CsvImportError(f"Malformed CSV header: {exc}", table=table, path=path) from exc
            if not header:
                LOG.info("Empty CSV, nothing to import", extra={"table": table, "path": str(path)})
                return ImportResult(table=table, path=path, rows_imported=0)
            header = [name.strip() for name in header]
            async with self._factory.database(self._config) as conn:
                column_types = await self._column_types(conn, table)
                if not column_types:
                    raise CsvImportError(f"Table '{table}' does not exist", table=table, path=path)
                unknown = [name for name in header if name not in column_types]
                if unknown:
                    raise CsvImportError(
                        f"Unknown column(s) for '{table}': {', '.join(unknown)}",
                        table=table,
                        path=path,
                    )
                batch = _ImportBatch(table=table, sql=_insert_sql(table, header, column_types))
                width = len(header)
                truncated = 0
                try:
                    async with conn.transaction():
                        for line, row in _numbered_rows(reader):
                            if len(row) > width:
                                truncated += 1
                            batch.rows.append((line, _fit_row(row, width)))
                            if len(batch.rows) >= self._batch_size:
                                await self._flush(conn, batch)
                        await self._flush(conn, batch)
                except csv.Error as exc:
                    raise CsvImportError(
                        f"Malformed CSV at line {reader.line_num}: {exc}", table=table, path=path
                    ) from exc
                except asyncpg.PostgresError as exc:
                    raise CsvImportError(f"Import of '{table}' failed: {exc}", table=table, path=path) from exc
        if truncated:
            LOG.warning(
                "Dropped extra fields beyond the header on %s row(s)",
                truncated,
                extra={"table": table, "path": str(path)},
            )
        LOG.info("Imported %s rows into %s", batch.applied, table, extra={"table": table, "path": str(path)})
        return ImportResult(
            table=table,
            path=path,
            rows_imported=batch.applied,
            truncated_rows=truncated,
            errors=tuple(batch.errors),
        )

    async def export_csv(self, table: str, path: Path | str) -> ExportResult:
        """Write every row of `table` to `path` with a header line."""

        path = Path(path)
        try:
            async with self._factory.database(self._config) as conn:
                columns = tuple(await self._column_types(conn, table))
                if not columns:
                    raise ExportError(f"Table '{table}' does not exist", table=table, path=path)
                query = _select_text_sql(table, columns)
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
                count = 0
                try:
                    with os.fdopen(fd, "w", newline="", encoding="utf-8") as handle:
                        writer = csv.writer(handle, lineterminator="\n")
                        writer.writerow(columns)
                        async with conn.transaction():
                            async for record in conn.cursor(query, prefetch=self._batch_size):
                                writer.writerow(["" if value is None else value for value in record.values()])
                                count += 1
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except ExportError:
            raise
        except Exception as exc:
            raise ExportError(f"Export of '{table}' failed: {exc}", table=table, path=path) from exc
        LOG.info("Exported %s rows from %s", count, table, extra={"table": table, "path": str(path)})
        return ExportResult(table=table, path=path, rows_exported=count)

    async def import_sql_dump(self, path: Path | str) -> SqlDumpResult:
        """Execute every `;`-terminated statement in `path`, skipping failures."""

        path = Path(path)
        LOG.info("Importing SQL dump", extra={"path": str(path)})
        executed = 0
        errors: list[ImportStatementError] = []
        try:
            handle = path.open(encoding="utf-8")
        except OSError as exc:
            raise BulkDataError(f"Cannot read {path}: {exc}") from exc
        with handle:
            async with self._factory.database(self._config) as conn:
                for line, statement in iter_sql_statements(handle):
                    try:
                        await conn.execute(statement)
                    except asyncpg.PostgresError as exc:
                        error = ImportStatementError(str(exc), statement=statement, line=line)
                        LOG.warning("SQL statement failed: %s", error, extra={"path": str(path)})
                        errors.append(error)
                    else:
                        executed += 1
        LOG.info(
            "SQL import done: %s executed, %s failed",
            executed,
            len(errors),
            extra={"path": str(path)},
        )
        return SqlDumpResult(path=path, executed=executed, errors=tuple(errors))

    async def preview(self, table: str, limit: int = PREVIEW_LIMIT) -> TablePreview:
        """Fetch the first `limit` rows of `table`."""

        async with self._factory.database(self._config) as conn:
            columns = tuple(await self._column_types(conn, table))
            if not columns:
                raise BulkDataError(f"Table '{table}' does not exist")
            records = await conn.fetch(f"SELECT * FROM {quote_ident(table)} LIMIT {int(limit)}")
        rows = [tuple(record.values()) for record in records]
        LOG.info("Previewed table %s (%s rows)", table, len(rows), extra={"table": table})
        return TablePreview(table=table, columns=columns, rows=tuple(rows))

    async def export_all_tables(
        self, directory: Path | str = EXPORT_DIRECTORY
    ) -> dict[str, ExportResult | ExportError]:
        """Export every known table to `<directory>/<table>.csv`."""

        directory = Path(directory)
        results: dict[str, ExportResult | ExportError] = {}
        for job in self.export_jobs(directory):
            try:
                results[job.table] = await self.export_csv(job.table, job.path)
            except ExportError as exc:
                LOG.error("Failed to export %s: %s", job.table, exc, extra={"table": job.table})
                results[job.table] = exc
        LOG.info("Export complete", extra={"path": str(directory)})
        return results

    async def export_if_reachable(
        self, directory: Path | str = EXPORT_DIRECTORY
    ) -> dict[str, ExportResult | ExportError]:
        """Final export on close; skipped when the database cannot be opened."""

        try:
            async with self._factory.database(self._config):
                pass
        except DatabaseConnectionError as exc:
            LOG.info("Skipping final export: %s", exc, extra={"path": str(directory)})
            return {}
        return await self.export_all_tables(directory)

    async def import_all_present_csvs(
        self, directory: Path | str = Path(".")
    ) -> dict[str, ImportResult | BulkDataError]:
        """Import `<table>.csv` for every known table whose file exists."""

        results: dict[str, ImportResult | BulkDataError] = {}
        for job in self.import_jobs(directory):
            LOG.info("Found CSV, importing", extra={"table": job.table, "path": str(job.path)})
            try:
                results[job.table] = await self.import_csv(job.table, job.path)
            except BulkDataError as exc:
                LOG.error("CSV import failed (%s): %s", job.table, exc, extra={"table": job.table})
                results[job.table] = exc
            except DatabaseConnectionError as exc:
                LOG.error("CSV import failed (%s): %s", job.table, exc, extra={"table": job.table})
                results[job.table] = CsvImportError(str(exc), table=job.table, path=job.path)
        return results

    def import_jobs(self, directory: Path | str = Path(".")) -> list[TransferJob]:
        directory = Path(directory)
        return [
            TransferJob(table=table, path=directory / f"{table}.csv", direction=TransferDirection.IMPORT)
            for table in self._tables
            if (directory / f"{table}.csv").is_file()
        ]

    def export_jobs(self, directory: Path | str = EXPORT_DIRECTORY) -> list[TransferJob]:
        directory = Path(directory)
        return [
            TransferJob(table=table, path=directory / f"{table}.csv", direction=TransferDirection.EXPORT)
            for table in self._tables
        ]

    async def _column_types(self, conn: asyncpg.Connection, table: str) -> dict[str, str]:
        records = await conn.fetch(self._COLUMNS_QUERY, quote_ident(table))
        return {str(record["name"]): str(record["type"]) for record in records}

    async def _flush(self, conn: asyncpg.Connection, batch: _ImportBatch) -> None:
        if not batch.rows:
            return
        rows, batch.rows = batch.rows, []
        try:
            async with conn.transaction():
                await conn.executemany(batch.sql, [values for _, values in rows])
        except asyncpg.PostgresError:
            LOG.debug("Batch rejected, retrying row by row", extra={"table": batch.table})
        else:
            batch.applied += len(rows)
            return
        for line, values in rows:
            try:
                async with conn.transaction():
                    await conn.execute(batch.sql, *values)
            except asyncpg.PostgresError as exc:
                error = ImportRowError(str(exc), table=batch.table, line=line)
                LOG.warning("Skipped CSV row: %s", error, extra={"table": batch.table})
                batch.errors.append(error)
            else:
                batch.applied += 1


def iter_sql_statements(lines: Iterable[str]) -> Iterator[tuple[int, str]]:
    """Yield `(first_line, statement)` pairs from a SQL dump.

    Lines are stripped; blank lines and `--` / `#` comment lines are skipped.
    A statement ends on a line whose last character is `;`. An unterminated
    trailing statement is logged and dropped.
    """

    buffer: list[str] = []
    start = 0
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith(COMMENT_PREFIXES):
            continue
        if not buffer:
            start = number
        buffer.append(line)
        if line.endswith(";"):
            yield start, " ".join(buffer)
            buffer = []
    if buffer:
        LOG.warning("Ignoring unterminated statement starting at line %s", start)


def _numbered_rows(reader: Iterator[list[str]]) -> Iterator[tuple[int, list[str]]]:
    for row in reader:
        if not row or (len(row) == 1 and not row[0].strip()):
            continue
        yield reader.line_num, row  # type: ignore[attr-defined]


def _fit_row(row: list[str], width: int) -> list[str | None]:
    # Export writes NULL as an empty field, so an empty field reads back as NULL.
    values: list[str | None] = [value if value != "" else None for value in row[:width]]
    if len(values) < width:
        values.extend([None] * (width - len(values)))
    return values


def _insert_sql(table: str, header: Sequence[str], column_types: dict[str, str]) -> str:
    columns = ", ".join(quote_ident(name) for name in header)
    placeholders = ", ".join(
        f"${index}::text::{column_types[name]}" for index, name in enumerate(header, start=1)
    )
    return f"INSERT INTO {quote_ident(table)} ({columns}) VALUES ({placeholders})"


def _select_text_sql(table: str, columns: Sequence[str]) -> str:
    selected = ", ".join(f"{quote_ident(name)}::text AS {quote_ident(name)}" for name in columns)
    return f"SELECT {selected} FROM {quote_ident(table)}"


__all__ = [
    "BATCH_SIZE",
    "BulkDataError",
    "BulkDataPort",
    "CsvImportError",
    "EXPORT_DIRECTORY",
    "ExportError",
    "ExportResult",
    "ImportResult",
    "ImportRowError",
    "ImportStatementError",
    "PREVIEW_LIMIT",
    "SqlDumpResult",
    "TablePreview",
    "TransferDirection",
    "TransferJob",
    "iter_sql_statements",
]
