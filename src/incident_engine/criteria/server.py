from __future__ import annotations

from datetime import timedelta

from incident_engine.checks import ServerCheckResult
from incident_engine.criteria.compare import compare_number, describe, match_collection
from incident_engine.criteria.context import EvaluationContext, describe_flag
from incident_engine.models import Filter


def is_server_online(result: ServerCheckResult, context: EvaluationContext) -> bool:
    if result.request_received_at is None:
        return False
    window = timedelta(minutes=context.server_offline_after_minutes)
    return context.now - result.request_received_at <= window


def evaluate(result: ServerCheckResult, criteria_filter: Filter, context: EvaluationContext) -> str | None:
    check_on = criteria_filter.check_on
    filter_type = criteria_filter.filter_type
    host = result.host_name or "Server"

    if check_on == "is_online":
        return describe_flag(
            is_server_online(result, context),
            filter_type,
            f"{host} is online.",
            f"{host} has not reported in the last {context.server_offline_after_minutes} minutes.",
        )

    if check_on == "cpu_usage_percent":
        if compare_number(result.cpu_percent_used, filter_type, criteria_filter.value):
            return describe("CPU usage", result.cpu_percent_used, criteria_filter, "%")
        return None

    if check_on == "memory_usage_percent":
        if compare_number(result.memory_percent_used, filter_type, criteria_filter.value):
            return describe("Memory usage", result.memory_percent_used, criteria_filter, "%")
        return None

    if check_on == "disk_usage_percent":
        disks = result.disks
        if criteria_filter.disk_path:
            disks = [disk for disk in disks if disk.disk_path == criteria_filter.disk_path]
        for disk in disks:
            if compare_number(disk.percent_used, filter_type, criteria_filter.value):
                return describe(f"Disk usage of {disk.disk_path}", disk.percent_used, criteria_filter, "%")
        return None

    if check_on == "server_process_name":
        names = [process.name for process in result.processes]
        if match_collection(names, criteria_filter):
            return describe("Server process names", ", ".join(names), criteria_filter)
        return None

    if check_on == "server_process_pid":
        pids = [str(process.pid) for process in result.processes]
        if match_collection(pids, criteria_filter):
            return describe("Server process ids", ", ".join(pids), criteria_filter)
        return None

    if check_on == "server_process_command":
        commands = [process.command for process in result.processes]
        if match_collection(commands, criteria_filter):
            return describe("Server process commands", ", ".join(commands), criteria_filter)
        return None

    return None
