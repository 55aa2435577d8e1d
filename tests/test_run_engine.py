from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from pydantic import ValidationError

from incident_engine.config import Settings, get_settings
from incident_engine.models import Monitor
from incident_engine.run_engine import build_parser, configure_logging, run
from incident_engine.scheduler import RETENTION_JOB_ID, SWEEP_JOB_ID, SweepRunner
from incident_engine.store import JsonFileStore


@pytest.fixture
def engine_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    store_path = tmp_path / "engine.json"
    monkeypatch.setenv("STORE_PATH", str(store_path))
    monkeypatch.setenv("LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield store_path
    get_settings.cache_clear()
    structlog.reset_defaults()


def test_settings_validation() -> None:
    assert Settings(retention_days=30).retention_days == 30
    with pytest.raises(ValidationError):
        Settings(sweep_interval_seconds=0)
    with pytest.raises(ValidationError):
        Settings(retention_days=0)
    with pytest.raises(ValidationError):
        Settings(event_max_attempts=0)


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWEEP_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.test/x")
    settings = Settings()
    assert settings.sweep_interval_seconds == 15
    assert settings.slack_enabled is True


def test_parser_commands() -> None:
    parser = build_parser()
    assert parser.parse_args(["sweep"]).command == "sweep"
    assert parser.parse_args(["ingest", "result.json"]).path == Path("result.json")
    with pytest.raises(SystemExit):
        parser.parse_args([])


def test_configure_logging_accepts_both_formats() -> None:
    configure_logging("DEBUG", "console")
    configure_logging("warning", "json")
    structlog.reset_defaults()


@pytest.mark.asyncio
async def test_ingest_command_prints_response(
    engine_env: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    store = JsonFileStore(str(engine_env))
    await store.create(Monitor(id="m-1", project_id="p", name="API", monitor_type="api"), is_root=True)
    payload = tmp_path / "result.json"
    payload.write_text(json.dumps({"monitor_type": "api", "monitor_id": "m-1", "response_code": 200}), encoding="utf-8")

    assert await run(["ingest", str(payload)]) == 0
    assert '"monitor_id": "m-1"' in capsys.readouterr().out


@pytest.mark.asyncio
async def test_engine_errors_return_exit_code(engine_env: Path, tmp_path: Path) -> None:
    payload = tmp_path / "result.json"
    payload.write_text(json.dumps({"monitor_type": "api", "monitor_id": "missing"}), encoding="utf-8")
    assert await run(["ingest", str(payload)]) == 1


@pytest.mark.asyncio
async def test_sweep_command_with_empty_store(engine_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert await run(["sweep"]) == 0
    assert "{}" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_sweep_runner_registers_jobs() -> None:
    async def sweep() -> None:
        return None

    async def purge() -> None:
        return None

    runner = SweepRunner(sweep_interval_seconds=30, retention_interval_hours=12)
    runner.start(sweep, purge)
    try:
        assert runner.is_running
        assert sorted(runner.job_ids()) == sorted([SWEEP_JOB_ID, RETENTION_JOB_ID])
        runner.start(sweep)
        assert len(runner.job_ids()) == 2
    finally:
        runner.stop()
    assert not runner.is_running
    assert runner.job_ids() == []


def test_event_retry_plan_is_parsed() -> None:
    assert Settings(event_retry_plan_seconds="0.5, 2,10").event_retry_seconds == [0.5, 2.0, 10.0]
    with pytest.raises(ValidationError):
        Settings(event_retry_plan_seconds="1,-3")
