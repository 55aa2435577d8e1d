from __future__ import annotations

import asyncio
import copy
import json
import re
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from incident_engine.checks import CheckResult, IncomingRequestCheckResult, ProbeCheckResult
from incident_engine.criteria.sandbox import ExpressionRejected, SafeExpression

log = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}")

SANDBOX_SCRIPT = Path(__file__).with_name("sandbox.py")


def lookup_path(snapshot: Mapping[str, Any], path: str) -> Any:
    current: Any = snapshot
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def substitute_placeholders(snapshot: Mapping[str, Any], expression: str) -> str:
    def replace(match: re.Match[str]) -> str:
        return repr(lookup_path(snapshot, match.group(1)))

    return _PLACEHOLDER.sub(replace, expression)


def _decode_body(body: Any) -> Any:
    if body is None:
        return {}
    if isinstance(body, str):
        if body.strip() == "":
            return {}
        try:
            return json.loads(body)
        except ValueError:
            return body
    return body


def build_snapshot(result: CheckResult) -> dict[str, Any]:
    if isinstance(result, ProbeCheckResult):
        return {
            "responseBody": _decode_body(result.response_body),
            "responseHeaders": dict(result.response_headers),
            "responseStatusCode": result.response_code,
            "responseTimeInMs": result.response_time_ms,
            "isOnline": result.is_online,
        }
    if isinstance(result, IncomingRequestCheckResult):
        return {
            "requestBody": _decode_body(result.request_body),
            "requestHeaders": dict(result.request_headers),
        }
    return result.model_dump(mode="json", exclude={"monitor_type", "monitor_id", "monitor_step_id"})


async def _run_sandboxed(expression: str, snapshot: Mapping[str, Any], timeout_seconds: float) -> dict[str, Any]:
    payload = json.dumps({"expression": expression, "snapshot": snapshot}, default=str).encode("utf-8")
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        str(SANDBOX_SCRIPT),
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        async with asyncio.timeout(timeout_seconds):
            stdout, stderr = await process.communicate(payload)
    finally:
        if process.returncode is None:
            process.kill()
            await process.wait()
    try:
        outcome = json.loads(stdout.decode("utf-8"))
    except ValueError:
        outcome = None
    if not isinstance(outcome, dict):
        return {"error": f"sandbox exited with code {process.returncode}: {stderr.decode('utf-8', 'replace')[-500:]}"}
    return outcome


async def evaluate_expression(expression: str, snapshot: Mapping[str, Any], timeout_seconds: float) -> bool:
    frozen = copy.deepcopy(dict(snapshot))
    prepared = substitute_placeholders(frozen, expression)
    try:
        SafeExpression(prepared)
    except ExpressionRejected as exc:
        log.warning("expression_rejected", expression=prepared, error=str(exc))
        return False
    try:
        outcome = await _run_sandboxed(prepared, frozen, timeout_seconds)
    except TimeoutError:
        log.warning("expression_timeout", expression=prepared, timeout_seconds=timeout_seconds)
        return False
    except OSError as exc:
        log.exception("expression_sandbox_unavailable", expression=prepared, error=str(exc))
        return False
    if "error" in outcome:
        log.warning("expression_failed", expression=prepared, error=str(outcome["error"]))
        return False
    return bool(outcome.get("result"))


async def describe_expression(
    expression: str,
    result: CheckResult,
    timeout_seconds: float,
) -> str | None:
    snapshot = build_snapshot(result)
    if await evaluate_expression(expression, snapshot, timeout_seconds):
        return f"Expression - {substitute_placeholders(snapshot, expression)} - evaluated to true."
    return None
