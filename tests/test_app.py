"""Tests for the repair console wiring and the command-line entry point."""

from __future__ import annotations

import concurrent.futures
import logging
from pathlib import Path
from typing import Any, Iterator

import pytest

from clubconnect import app as app_module
from clubconnect.app import (
    RepairApp,
    headless_repair_surface,
    parse_args,
    summarize_exports,
    summarize_imports,
)
from clubconnect.bootstrap import BootstrapOrchestrator, BootstrapResult, RepairOutcome
from clubconnect.bulk import CsvImportError, ExportError, ExportResult, ImportResult, ImportRowError
from clubconnect.config import ConfigStore, ConnectionConfig
from clubconnect.providers import MaintenanceCommandProvider, TablePreviewProvider
from clubconnect.schema import TABLE_NAMES
from clubconnect.tasks import TaskRunner
from clubconnect.widgets import LogPanelHandler

from conftest import FakeConnection, FakeFactory


class _DummyScreen:
    """Minimal stub so providers can reference an app without a running screen stack."""

    def __init__(self, app: RepairApp) -> None:
        self.app = app
        self.focused = None


@pytest.fixture()
def repair_app(tmp_path: Path) -> Iterator[RepairApp]:
    runner = TaskRunner(workers=1)
    orchestrator = BootstrapOrchestrator(
        ConfigStore(tmp_path / "clubconnect.toml"),
        runner,
        factory=FakeFactory(FakeConnection(), down=True),
    )
    try:
        yield RepairApp(orchestrator, csv_directory=tmp_path, export_directory=tmp_path / "out")
    finally:
        runner.shutdown(grace=5)


@pytest.mark.anyio
async def test_maintenance_provider_invokes_app_actions(
    repair_app: RepairApp, monkeypatch: pytest.MonkeyPatch
) -> None:
    called: list[str] = []
    monkeypatch.setattr(repair_app, "action_export", lambda: called.append("export"))
    provider = MaintenanceCommandProvider(_DummyScreen(repair_app))

    hits = [hit async for hit in provider.discover()]
    target = next(hit for hit in hits if "Export" in (hit.display or ""))
    await target.command()

    assert len(hits) == 4
    assert called == ["export"]


@pytest.mark.anyio
async def test_maintenance_provider_search_matches_label(repair_app: RepairApp) -> None:
    provider = MaintenanceCommandProvider(_DummyScreen(repair_app))

    hits = [hit async for hit in provider.search("sql dump")]

    assert hits
    assert "SQL" in str(hits[0].match_display)


@pytest.mark.anyio
async def test_table_preview_provider_lists_required_tables(
    repair_app: RepairApp, monkeypatch: pytest.MonkeyPatch
) -> None:
    previewed: list[str] = []
    monkeypatch.setattr(repair_app, "preview_table", previewed.append)
    provider = TablePreviewProvider(_DummyScreen(repair_app))

    hits = [hit async for hit in provider.discover()]
    target = next(hit for hit in hits if (hit.display or "").endswith("roles"))
    await target.command()

    assert len(hits) == len(TABLE_NAMES)
    assert previewed == ["roles"]


def test_dispatch_runs_inline_before_mount(repair_app: RepairApp) -> None:
    seen: list[int] = []

    repair_app.dispatch_to_ui(seen.append, 7)

    assert seen == [7]


@pytest.mark.anyio
async def test_quit_saves_config_and_exits_without_connection(
    repair_app: RepairApp, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    exits: list[Any] = []
    monkeypatch.setattr(repair_app, "exit", lambda result=None: exits.append(result))

    await repair_app.action_quit()

    assert exits == [None]
    assert (tmp_path / "clubconnect.toml").exists()


def test_summarize_imports_reports_skips_and_failures(tmp_path: Path) -> None:
    results = {
        "clubs": ImportResult(
            table="clubs",
            path=tmp_path / "clubs.csv",
            rows_imported=3,
            errors=(ImportRowError("bad", table="clubs", line=4),),
        ),
        "events": CsvImportError("nope", table="events"),
    }

    message, severity = summarize_imports(results, tmp_path)

    assert message == "Imported 3 row(s) into 1 table(s), 1 row(s) skipped; failed: events."
    assert severity == "warning"
    assert summarize_imports({}, tmp_path)[1] == "warning"


def test_summarize_exports(tmp_path: Path) -> None:
    ok = {"clubs": ExportResult(table="clubs", path=tmp_path / "clubs.csv", rows_exported=2)}

    assert summarize_exports(ok, tmp_path) == (f"Exported 1 table(s) to {tmp_path}.", "information")
    failed = {**ok, "roles": ExportError("denied", table="roles")}
    assert summarize_exports(failed, tmp_path)[1] == "warning"


def test_headless_surface_returns_repaired_connection() -> None:
    sentinel = object()

    class _Orchestrator:
        def repair_once(self) -> RepairOutcome:
            return RepairOutcome(config=ConnectionConfig(), connection=sentinel)  # type: ignore[arg-type]

    assert headless_repair_surface(_Orchestrator()) is sentinel  # type: ignore[arg-type]


def test_parse_args_defaults_and_validation() -> None:
    args = parse_args([])

    assert args.max_tries == 4
    assert args.workers == 2
    assert args.grace == 30.0
    assert args.export_dir == Path("exported_csv")
    with pytest.raises(SystemExit):
        parse_args(["--max-tries", "0"])


class _ClosingConnection:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class _RecordingPort:
    def __init__(self) -> None:
        self.exported: list[Path] = []

    async def export_all_tables(self, directory: Path) -> dict[str, Any]:
        self.exported.append(directory)
        return {}


def _patch_orchestrator(monkeypatch: pytest.MonkeyPatch, result: BootstrapResult | None) -> _RecordingPort:
    port = _RecordingPort()

    class _Orchestrator:
        def __init__(self, store: ConfigStore, runner: TaskRunner, **kwargs: Any) -> None:
            self.kwargs = kwargs

        def run(self) -> BootstrapResult | None:
            return result

        def bulk_port(self, config: ConnectionConfig) -> _RecordingPort:
            return port

    monkeypatch.setattr(app_module, "BootstrapOrchestrator", _Orchestrator)
    return port


def test_main_exports_and_closes_on_handoff(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _ClosingConnection()
    result = BootstrapResult(connection=conn, config=ConnectionConfig())  # type: ignore[arg-type]
    port = _patch_orchestrator(monkeypatch, result)

    status = app_module.main(
        ["--headless", "--config", str(tmp_path / "c.toml"), "--export-dir", str(tmp_path / "out")]
    )

    assert status == 0
    assert port.exported == [tmp_path / "out"]
    assert conn.closed


def test_main_reports_abandonment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    port = _patch_orchestrator(monkeypatch, None)

    status = app_module.main(["--headless", "--config", str(tmp_path / "c.toml")])

    assert status == 1
    assert port.exported == []


class _PanelStub:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def write_line(self, message: str) -> None:
        self.lines.append(message)


def test_log_panel_handler_forwards_through_dispatch() -> None:
    panel = _PanelStub()
    dispatched: list[str] = []

    def _dispatch(callback: Any, *args: Any) -> None:
        dispatched.append(args[0])
        callback(*args)

    handler = LogPanelHandler(panel, _dispatch)  # type: ignore[arg-type]
    logger = logging.getLogger("clubconnect.tests.panel")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    try:
        logger.info("Created table %s", "clubs")
        logger.debug("hidden")
    finally:
        logger.removeHandler(handler)

    assert panel.lines == ["Created table clubs"]
    assert dispatched == ["Created table clubs"]


@pytest.mark.anyio
async def test_table_preview_search_keeps_highlighting(repair_app: RepairApp) -> None:
    provider = TablePreviewProvider(_DummyScreen(repair_app))

    hits = [hit async for hit in provider.search("roles")]
    hit = next(hit for hit in hits if hit.help and hit.help.endswith("roles."))

    assert not isinstance(hit.match_display, str)
    assert hit.match_display.plain == "roles"


class _FinalExportPort:
    def __init__(self) -> None:
        self.exported: list[Path] = []

    async def export_if_reachable(self, directory: Path) -> dict[str, Any]:
        self.exported.append(directory)
        return {}


@pytest.mark.anyio
async def test_quit_queues_final_export(
    repair_app: RepairApp, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    port = _FinalExportPort()
    monkeypatch.setattr(repair_app.orchestrator, "bulk_port", lambda config=None: port)
    monkeypatch.setattr(repair_app, "exit", lambda result=None: None)

    await repair_app.action_quit()
    assert repair_app.orchestrator.runner.shutdown(grace=5)

    assert port.exported == [tmp_path / "out"]


def test_second_successful_repair_closes_its_connection(
    repair_app: RepairApp, monkeypatch: pytest.MonkeyPatch
) -> None:
    exits: list[Any] = []
    monkeypatch.setattr(repair_app, "exit", lambda result=None: exits.append(result))
    first, second = FakeConnection(), FakeConnection()

    for conn in (first, second):
        future: concurrent.futures.Future[RepairOutcome] = concurrent.futures.Future()
        future.set_result(RepairOutcome(config=ConnectionConfig(), connection=conn))  # type: ignore[arg-type]
        repair_app._handle_repair(future)
    assert repair_app.orchestrator.runner.shutdown(grace=5)

    assert exits == [first]
    assert second.closed
    assert not first.closed


def test_headless_help_says_it_can_give_up(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        parse_args(["--help"])

    assert "gives up after one failed repair pass" in " ".join(capsys.readouterr().out.split())
