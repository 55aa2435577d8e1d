from __future__ import annotations

from incident_engine.checks import CertificateDetails, SslCheckResult
from incident_engine.criteria.compare import compare_number, describe
from incident_engine.criteria.context import EvaluationContext, describe_flag
from incident_engine.models import Filter


def _is_expired(certificate: CertificateDetails, context: EvaluationContext) -> bool:
    return certificate.expires_at is not None and certificate.expires_at <= context.now


def _is_valid(certificate: CertificateDetails | None, context: EvaluationContext) -> bool:
    if certificate is None:
        return False
    return not certificate.is_self_signed and not _is_expired(certificate, context)


def evaluate(result: SslCheckResult, criteria_filter: Filter, context: EvaluationContext) -> str | None:
    check_on = criteria_filter.check_on
    filter_type = criteria_filter.filter_type
    certificate = result.certificate

    if check_on == "is_online":
        return describe_flag(result.is_online, filter_type, "Monitor is online.", "Monitor is offline.")

    if check_on == "is_valid_certificate":
        return describe_flag(
            _is_valid(certificate, context),
            filter_type,
            "SSL certificate is valid.",
            "SSL certificate is not valid.",
        )

    if check_on == "is_not_a_valid_certificate":
        return describe_flag(
            not _is_valid(certificate, context),
            filter_type,
            "SSL certificate is not valid.",
            "SSL certificate is valid.",
        )

    if certificate is None:
        return None

    if check_on == "is_self_signed_certificate":
        return describe_flag(
            certificate.is_self_signed,
            filter_type,
            "SSL certificate is self-signed.",
            "SSL certificate is not self-signed.",
        )

    if check_on == "is_expired_certificate":
        return describe_flag(
            _is_expired(certificate, context),
            filter_type,
            "SSL certificate has expired.",
            "SSL certificate has not expired.",
        )

    if check_on in {"expires_in_hours", "expires_in_days"}:
        if certificate.expires_at is None:
            return None
        seconds_left = (certificate.expires_at - context.now).total_seconds()
        if check_on == "expires_in_hours":
            remaining = round(seconds_left / 3600, 2)
            unit = "hours"
        else:
            remaining = round(seconds_left / 86400, 2)
            unit = "days"
        if compare_number(remaining, filter_type, criteria_filter.value):
            return describe("Time until SSL certificate expiry", remaining, criteria_filter, unit)
        return None

    return None
