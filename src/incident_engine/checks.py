from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field

MonitorType = Literal[
    "website",
    "api",
    "ping",
    "ip",
    "port",
    "server",
    "synthetic",
    "custom_code",
    "incoming_request",
    "logs",
    "traces",
    "ssl_certificate",
]

PROBE_MONITOR_TYPES: frozenset[str] = frozenset({"website", "api", "ping", "ip", "port"})
PROBED_MONITOR_TYPES: frozenset[str] = PROBE_MONITOR_TYPES | {"synthetic", "custom_code", "ssl_certificate"}


def as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


# Naive timestamps from agents and probes are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ProbeCheckResult(BaseModel):
    monitor_type: Literal["website", "api", "ping", "ip", "port"]
    monitor_id: str
    monitor_step_id: str | None = None
    probe_id: str | None = None
    is_online: bool = True
    is_timeout: bool = False
    response_time_ms: float | None = None
    response_code: int | None = None
    response_body: str | dict[str, Any] | list[Any] | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    failure_cause: str | None = None


class DiskUsage(BaseModel):
    disk_path: str
    percent_used: float


class ServerProcess(BaseModel):
    name: str
    pid: int
    command: str = ""


class ServerCheckResult(BaseModel):
    monitor_type: Literal["server"] = "server"
    monitor_id: str
    monitor_step_id: str | None = None
    host_name: str | None = None
    request_received_at: UtcDatetime | None = None
    cpu_percent_used: float | None = None
    memory_percent_used: float | None = None
    disks: list[DiskUsage] = Field(default_factory=list)
    processes: list[ServerProcess] = Field(default_factory=list)
    failure_cause: str | None = None


class ScriptRun(BaseModel):
    execution_time_ms: float = 0.0
    result: Any = None
    script_error: str | None = None
    logs: list[str] = Field(default_factory=list)


class SyntheticRun(ScriptRun):
    browser_type: str | None = None
    screen_size_type: str | None = None


class SyntheticCheckResult(BaseModel):
    monitor_type: Literal["synthetic"] = "synthetic"
    monitor_id: str
    monitor_step_id: str | None = None
    probe_id: str | None = None
    runs: list[SyntheticRun] = Field(default_factory=list)
    failure_cause: str | None = None


class CustomCodeCheckResult(BaseModel):
    monitor_type: Literal["custom_code"] = "custom_code"
    monitor_id: str
    monitor_step_id: str | None = None
    probe_id: str | None = None
    run: ScriptRun | None = None
    failure_cause: str | None = None


class IncomingRequestCheckResult(BaseModel):
    monitor_type: Literal["incoming_request"] = "incoming_request"
    monitor_id: str
    monitor_step_id: str | None = None
    request_method: str | None = None
    request_body: str | dict[str, Any] | list[Any] | None = None
    request_headers: dict[str, str] = Field(default_factory=dict)
    incoming_request_received_at: UtcDatetime | None = None
    failure_cause: str | None = None


class LogQueryCheckResult(BaseModel):
    monitor_type: Literal["logs"] = "logs"
    monitor_id: str
    monitor_step_id: str | None = None
    log_count: int = 0
    log_query: dict[str, Any] = Field(default_factory=dict)
    failure_cause: str | None = None


class TraceQueryCheckResult(BaseModel):
    monitor_type: Literal["traces"] = "traces"
    monitor_id: str
    monitor_step_id: str | None = None
    span_count: int = 0
    span_query: dict[str, Any] = Field(default_factory=dict)
    failure_cause: str | None = None


class CertificateDetails(BaseModel):
    common_name: str | None = None
    issuer: str | None = None
    issued_at: UtcDatetime | None = None
    expires_at: UtcDatetime | None = None
    is_self_signed: bool = False


class SslCheckResult(BaseModel):
    monitor_type: Literal["ssl_certificate"] = "ssl_certificate"
    monitor_id: str
    monitor_step_id: str | None = None
    probe_id: str | None = None
    is_online: bool = True
    certificate: CertificateDetails | None = None
    failure_cause: str | None = None


CheckResult = Annotated[
    ProbeCheckResult
    | ServerCheckResult
    | SyntheticCheckResult
    | CustomCodeCheckResult
    | IncomingRequestCheckResult
    | LogQueryCheckResult
    | TraceQueryCheckResult
    | SslCheckResult,
    Field(discriminator="monitor_type"),
]


class CheckEnvelope(BaseModel):
    result: CheckResult


def parse_check_result(payload: dict[str, Any]) -> CheckResult:
    return CheckEnvelope.model_validate({"result": payload}).result


def probe_id_of(result: CheckResult) -> str | None:
    if isinstance(result, (ProbeCheckResult, SyntheticCheckResult, CustomCodeCheckResult, SslCheckResult)):
        return result.probe_id
    return None


def telemetry_query_of(result: CheckResult) -> dict[str, Any] | None:
    if isinstance(result, LogQueryCheckResult) and result.log_query:
        return {"telemetry_type": "log", "query": result.log_query}
    if isinstance(result, TraceQueryCheckResult) and result.span_query:
        return {"telemetry_type": "trace", "query": result.span_query}
    return None


def change_log_of(result: CheckResult) -> dict[str, Any]:
    return result.model_dump(mode="json")
