from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from app.models import DailyReport, DailyReportMachine
from app.services.policy import ReconciliationPolicy, resolve_policy

ZERO_REVENUE_REASON = 'Zero revenue despite active machines'
REVENUE_MISMATCH_REASON = 'Revenue calculation mismatch'
MISSING_MACHINE_DATA_REASON = 'Missing machine breakdown data'
UNRECOGNIZED_KINDS_REASON = 'Unrecognized event kinds in source events'

DETECTED_REASONS = frozenset({ZERO_REVENUE_REASON, REVENUE_MISMATCH_REASON, MISSING_MACHINE_DATA_REASON})


def _dec(value) -> Decimal:
    return Decimal(str(value if value is not None else '0'))


def expected_revenue(report: DailyReport) -> Decimal:
    return (
        _dec(report.total_money_in)
        - _dec(report.total_money_out)
        - _dec(report.total_collect)
        - _dec(report.total_vouchers)
    )


def _machine_rows(lines: Sequence[DailyReportMachine]) -> list[DailyReportMachine]:
    return [line for line in lines if not line.is_grand_total]


def detect_anomalies(
    report: DailyReport,
    lines: Sequence[DailyReportMachine],
    policy: ReconciliationPolicy | None = None,
) -> list[str]:
    """Read-only checks; nothing on the report is changed."""
    policy = resolve_policy(policy)
    anomalies: list[str] = []
    machine_count = report.machine_count or 0
    total_revenue = _dec(report.total_revenue)

    if total_revenue == 0 and machine_count > 0:
        anomalies.append(ZERO_REVENUE_REASON)
    if abs(total_revenue - expected_revenue(report)) > policy.revenue_tolerance:
        anomalies.append(REVENUE_MISMATCH_REASON)
    if machine_count > 0 and not _machine_rows(lines):
        anomalies.append(MISSING_MACHINE_DATA_REASON)
    return anomalies


def compute_quality_score(
    report: DailyReport,
    lines: Sequence[DailyReportMachine],
    policy: ReconciliationPolicy | None = None,
) -> int:
    policy = resolve_policy(policy)
    machine_count = report.machine_count or 0
    score = 100
    if report.has_anomalies:
        score -= policy.anomaly_penalty
    if machine_count > 0 and not _machine_rows(lines):
        score -= policy.missing_machine_data_penalty
    if _dec(report.total_revenue) == 0 and machine_count > 0:
        score -= policy.zero_revenue_penalty
    return max(0, min(100, score))


def refresh_anomalies(
    report: DailyReport,
    lines: Sequence[DailyReportMachine],
    policy: ReconciliationPolicy | None = None,
    *,
    input_reasons: Sequence[str] = (),
) -> list[str]:
    policy = resolve_policy(policy)
    # Input-derived reasons cannot be re-detected from the totals, so they stick.
    sticky = [reason for reason in (report.anomaly_reasons or []) if reason not in DETECTED_REASONS]
    for reason in input_reasons:
        if reason not in sticky:
            sticky.append(reason)
    reasons = detect_anomalies(report, lines, policy) + sticky

    report.anomaly_reasons = reasons
    report.has_anomalies = bool(reasons)
    report.quality_score = compute_quality_score(report, lines, policy)
    return reasons
