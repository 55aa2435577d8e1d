from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
from collections.abc import Sequence
from dataclasses import asdict
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import structlog

from incident_engine.checks import parse_check_result
from incident_engine.config import Settings, get_settings
from incident_engine.engine import Engine, build_engine
from incident_engine.exceptions import EngineError
from incident_engine.scheduler import SweepRunner


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    renderer: structlog.types.Processor
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
    )


def current_app_version() -> str:
    try:
        return version("incident-engine")
    except PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="incident-engine")
    parser.add_argument("--version", action="version", version=current_app_version())
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("serve", help="run the escalation sweep and retention jobs until interrupted")
    commands.add_parser("sweep", help="run one escalation sweep")
    ingest = commands.add_parser("ingest", help="process one check result JSON file")
    ingest.add_argument("path", type=Path)
    commands.add_parser("purge", help="run the retention purge once")
    return parser


async def serve(engine: Engine, settings: Settings) -> int:
    log = structlog.get_logger().bind(service="incident-engine")
    runner = SweepRunner(settings.sweep_interval_seconds, settings.retention_interval_hours)
    runner.start(engine.run_sweep, engine.purge if settings.retention_days is not None else None)
    worker = asyncio.create_task(engine.events.run())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    log.info("engine_serving", version=current_app_version(), store_path=settings.store_path)
    try:
        await stop.wait()
    finally:
        runner.stop()
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker
        await engine.events.drain()
        log.info("engine_stopped")
    return 0


async def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    log = structlog.get_logger().bind(service="incident-engine", command=args.command)
    engine = build_engine(settings)

    try:
        if args.command == "serve":
            return await serve(engine, settings)
        if args.command == "sweep":
            outcomes = await engine.run_sweep()
            print(json.dumps(outcomes, indent=2, sort_keys=True))
            return 0
        if args.command == "ingest":
            payload = json.loads(args.path.read_text(encoding="utf-8"))
            response = await engine.ingest(parse_check_result(payload))
            print(response.model_dump_json(indent=2))
            return 0
        if args.command == "purge":
            report = await engine.purge()
            print(json.dumps(asdict(report) if report is not None else {}, indent=2, sort_keys=True))
            return 0
    except EngineError as exc:
        log.error("command_failed", error=str(exc), error_type=type(exc).__name__)
        return 1
    return 2


def main() -> int:
    return asyncio.run(run())


if __name__ == "__main__":
    raise SystemExit(main())
