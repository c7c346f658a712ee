"""Pick the authoritative daily reports for a venue and sum them without double counting.

Cumulative counters are monotonic within one relay's reporting lifetime, so the
latest report per relay carries that relay's day total. Reports without a relay
id predate multi-relay venues and fall back to a heuristic: the latest print
for the current business day, the most complete snapshot (largest machine
count) for closed days.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import DailyReport, DailyReportMachine, ReconciliationStatus
from app.services.daily_aggregator import ZERO, MachineTotals, money
from app.services.policy import ReconciliationPolicy, resolve_policy
from app.services.time_utils import business_day_for, to_utc, utcnow

DEFAULT_STATUSES = (ReconciliationStatus.PENDING, ReconciliationStatus.INCLUDED)
SETTLEMENT_STATUSES = (ReconciliationStatus.INCLUDED,)


@dataclass
class ResolvedDay:
    venue_id: str
    day: date
    reports: list[DailyReport] = field(default_factory=list)
    machines: list[MachineTotals] = field(default_factory=list)
    legacy: bool = False

    @property
    def total_money_in(self) -> Decimal:
        return money(sum((m.money_in for m in self.machines), ZERO))

    @property
    def total_money_out(self) -> Decimal:
        return money(sum((m.money_out for m in self.machines), ZERO))

    @property
    def total_collect(self) -> Decimal:
        return money(sum((m.collect for m in self.machines), ZERO))

    @property
    def total_vouchers(self) -> Decimal:
        return money(sum((m.vouchers for m in self.machines), ZERO))

    @property
    def net_revenue(self) -> Decimal:
        return money(self.total_money_in - self.total_money_out - self.total_collect - self.total_vouchers)

    @property
    def machine_count(self) -> int:
        return len(self.machines)

    def as_dict(self) -> dict:
        return {
            'venue_id': self.venue_id,
            'date': self.day,
            'legacy': self.legacy,
            'report_ids': [report.id for report in self.reports],
            'relays': [report.relay_id for report in self.reports],
            'statuses': [report.reconciliation_status.value for report in self.reports],
            'total_money_in': self.total_money_in,
            'total_money_out': self.total_money_out,
            'total_collect': self.total_collect,
            'total_vouchers': self.total_vouchers,
            'net_revenue': self.net_revenue,
            'machine_count': self.machine_count,
            'machines': [m.as_dict() for m in self.machines],
        }


def _printed_key(report: DailyReport) -> tuple:
    return (to_utc(report.printed_at), report.id or 0)


def resolve_reports(reports: Iterable[DailyReport], *, day: date, today: date) -> tuple[list[DailyReport], bool]:
    """Return (authoritative reports, used_legacy_heuristic) for one venue-day."""
    day_reports = [report for report in reports if report.report_date == day]
    latest_by_relay: dict[str, DailyReport] = {}
    legacy: list[DailyReport] = []
    for report in day_reports:
        if not report.relay_id:
            legacy.append(report)
            continue
        current = latest_by_relay.get(report.relay_id)
        if current is None or _printed_key(report) > _printed_key(current):
            latest_by_relay[report.relay_id] = report

    if latest_by_relay:
        return sorted(latest_by_relay.values(), key=lambda r: r.relay_id), False
    if not legacy:
        return [], False
    if day >= today:
        return [max(legacy, key=_printed_key)], True
    return [max(legacy, key=lambda r: ((r.machine_count or 0), _printed_key(r)))], True


def sum_machine_lines(lines: Sequence[DailyReportMachine]) -> list[MachineTotals]:
    by_machine: dict[str, MachineTotals] = {}
    for line in lines:
        if line.is_grand_total:
            continue
        totals = by_machine.setdefault(line.machine_id, MachineTotals(machine_id=line.machine_id))
        totals.money_in = money(totals.money_in + Decimal(line.money_in))
        totals.money_out = money(totals.money_out + Decimal(line.money_out))
        totals.collect = money(totals.collect + Decimal(line.collect))
        totals.vouchers = money(totals.vouchers + Decimal(line.vouchers))
        totals.transaction_count += line.transaction_count or 0
    return sorted(by_machine.values(), key=lambda m: m.machine_id)


def load_day_reports(
    db: Session,
    *,
    venue_id: str,
    start: date,
    end: date,
    statuses: Sequence[ReconciliationStatus] = DEFAULT_STATUSES,
) -> list[DailyReport]:
    return list(
        db.execute(
            select(DailyReport)
            .where(
                DailyReport.venue_id == venue_id,
                DailyReport.report_date >= start,
                DailyReport.report_date <= end,
                DailyReport.reconciliation_status.in_(list(statuses)),
            )
            .order_by(DailyReport.report_date.asc(), DailyReport.printed_at.asc(), DailyReport.id.asc())
        ).scalars().all()
    )


def load_lines_for_reports(db: Session, report_ids: Sequence[int]) -> list[DailyReportMachine]:
    if not report_ids:
        return []
    return list(
        db.execute(
            select(DailyReportMachine)
            .where(DailyReportMachine.report_id.in_(list(report_ids)))
            .order_by(DailyReportMachine.report_id.asc(), DailyReportMachine.position.asc())
        ).scalars().all()
    )


def today_for(now: datetime | None, policy: ReconciliationPolicy) -> date:
    return business_day_for(now or utcnow(), policy.tz)


def resolve_day(
    db: Session,
    *,
    venue_id: str,
    day: date,
    now: datetime | None = None,
    statuses: Sequence[ReconciliationStatus] = DEFAULT_STATUSES,
    policy: ReconciliationPolicy | None = None,
) -> ResolvedDay:
    policy = resolve_policy(policy)
    reports = load_day_reports(db, venue_id=venue_id, start=day, end=day, statuses=statuses)
    chosen, legacy = resolve_reports(reports, day=day, today=today_for(now, policy))
    lines = load_lines_for_reports(db, [report.id for report in chosen])
    return ResolvedDay(
        venue_id=venue_id,
        day=day,
        reports=chosen,
        machines=sum_machine_lines(lines),
        legacy=legacy,
    )
