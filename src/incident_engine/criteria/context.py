from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from incident_engine.checks import as_utc
from incident_engine.models import utc_now


@dataclass(frozen=True)
class EvaluationContext:
    now: datetime = field(default_factory=utc_now)
    expression_timeout_seconds: float = 1.0
    server_offline_after_minutes: int = 2

    def __post_init__(self) -> None:
        object.__setattr__(self, "now", as_utc(self.now))


def describe_flag(actual: bool, filter_type: str, when_true: str, when_false: str) -> str | None:
    if filter_type == "true" and actual:
        return when_true
    if filter_type == "false" and not actual:
        return when_false
    return None
