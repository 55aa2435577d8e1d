from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from incident_engine.checks import MonitorType

OwnerKind = Literal["monitor", "alert", "incident", "scheduled_maintenance"]
FilterCondition = Literal["all", "any"]
ExecutionStatus = Literal["executing", "completed", "error"]

CheckOn = Literal[
    "is_online",
    "is_request_timeout",
    "response_time",
    "response_status_code",
    "response_body",
    "response_header",
    "response_header_value",
    "expression",
    "cpu_usage_percent",
    "memory_usage_percent",
    "disk_usage_percent",
    "server_process_name",
    "server_process_pid",
    "server_process_command",
    "execution_time",
    "result_value",
    "error",
    "console_log",
    "screen_size_type",
    "browser_type",
    "incoming_request",
    "request_body",
    "request_header",
    "request_header_value",
    "log_count",
    "span_count",
    "is_valid_certificate",
    "is_self_signed_certificate",
    "is_expired_certificate",
    "is_not_a_valid_certificate",
    "expires_in_hours",
    "expires_in_days",
]

FilterType = Literal[
    "equal_to",
    "not_equal_to",
    "greater_than",
    "less_than",
    "greater_than_or_equal_to",
    "less_than_or_equal_to",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches_regex",
    "is_empty",
    "is_not_empty",
    "true",
    "false",
    "received_in_minutes",
    "not_received_in_minutes",
    "evaluates_to_true",
]


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class Filter(BaseModel):
    check_on: CheckOn
    filter_type: FilterType
    value: str | float | int | None = None
    disk_path: str | None = None


class IncidentTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    severity_id: str | None = None
    auto_resolve: bool = False
    on_call_policy_ids: list[str] = Field(default_factory=list)
    remediation_notes: str | None = None


class AlertTemplate(IncidentTemplate):
    pass


class CriteriaInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    filters: list[Filter] = Field(default_factory=list)
    filter_condition: FilterCondition = "all"
    change_monitor_status: bool = False
    monitor_status_id: str | None = None
    create_incidents: bool = False
    incidents: list[IncidentTemplate] = Field(default_factory=list)
    create_alerts: bool = False
    alerts: list[AlertTemplate] = Field(default_factory=list)


class MonitorStep(BaseModel):
    id: str = Field(default_factory=new_id)
    criteria: list[CriteriaInstance] = Field(default_factory=list)
    default_status_id: str | None = None


class MonitorSteps(BaseModel):
    steps: list[MonitorStep] = Field(default_factory=list)


class Monitor(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    monitor_type: MonitorType
    steps: MonitorSteps = Field(default_factory=MonitorSteps)
    current_state_id: str | None = None
    disable_active_monitoring: bool = False
    disabled_by_manual_incident: bool = False
    disabled_by_scheduled_maintenance: bool = False
    incoming_request_received_at: datetime | None = None
    last_incoming_request: dict[str, Any] | None = None
    server_report_received_at: datetime | None = None
    last_server_report: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)


class MonitorProbe(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    monitor_id: str
    probe_id: str
    last_monitoring_log: dict[str, Any] = Field(default_factory=dict)


class StateDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    owner_kind: OwnerKind
    name: str
    color: str = "#000000"
    order: int = 0
    is_created_state: bool = False
    is_acknowledged_state: bool = False
    is_resolved_state: bool = False
    is_scheduled_state: bool = False
    is_ongoing_state: bool = False
    is_ended_state: bool = False


class Severity(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    order: int
    color: str = "#000000"


class TimelineEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    owner_id: str
    owner_kind: OwnerKind
    state_id: str
    starts_at: datetime
    ends_at: datetime | None = None
    root_cause: str | None = None
    state_change_log: dict[str, Any] | None = None
    created_by_user_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class TrackedIssue(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    number: int = 0
    title: str
    description: str = ""
    current_state_id: str | None = None
    severity_id: str | None = None
    root_cause: str | None = None
    created_state_log: dict[str, Any] | None = None
    created_criteria_id: str | None = None
    created_template_id: str | None = None
    is_created_automatically: bool = False
    on_call_policy_ids: list[str] = Field(default_factory=list)
    telemetry_query: dict[str, Any] | None = None
    created_by_probe_id: str | None = None
    created_by_user_id: str | None = None
    remediation_notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def dedup_key(self) -> tuple[str | None, str | None]:
        return (self.created_criteria_id, self.created_template_id)


class Incident(TrackedIssue):
    monitor_ids: list[str] = Field(default_factory=list)


class Alert(TrackedIssue):
    monitor_id: str | None = None


class ScheduledMaintenance(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    title: str
    current_state_id: str | None = None
    monitor_ids: list[str] = Field(default_factory=list)
    change_monitor_status_to_id: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class OnCallPolicy(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    repeat_policy_if_no_one_acknowledges_times: int = 0


class EscalationRule(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    policy_id: str
    order: int = Field(ge=1)
    name: str = ""
    escalate_after_minutes: int = 0
    user_ids: list[str] = Field(default_factory=list)
    team_ids: list[str] = Field(default_factory=list)
    schedule_ids: list[str] = Field(default_factory=list)


class ExecutionLog(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    policy_id: str
    triggered_by_incident_id: str | None = None
    triggered_by_alert_id: str | None = None
    notification_event_type: str = "incident_created"
    last_executed_rule_id: str | None = None
    last_executed_rule_order: int = 0
    last_executed_at: datetime | None = None
    inter_rule_delay_minutes: int = 0
    repeat_count: int = 0
    max_repeats: int = 0
    status: ExecutionStatus = "executing"
    status_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class FeedEvent(BaseModel):
    project_id: str
    owner_id: str
    owner_kind: OwnerKind
    event_type: str
    markdown: str
    more_info_markdown: str | None = None
    color: str | None = None
    notify_user_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class MetricPoint(BaseModel):
    project_id: str
    owner_id: str
    owner_kind: OwnerKind
    name: str
    value: float
    unit: str = ""
    description: str = ""
    time: datetime
    attributes: dict[str, str] = Field(default_factory=dict)


OWNER_MODELS: dict[str, type[BaseModel]] = {
    "monitor": Monitor,
    "alert": Alert,
    "incident": Incident,
    "scheduled_maintenance": ScheduledMaintenance,
}
