from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models import DailyReport, Event, ReconciliationStatus
from app.services.daily_aggregator import ZERO, MachineTotals, money
from app.services.event_classifier import payout_kind_values
from app.services.policy import ReconciliationPolicy, resolve_policy
from app.services.relay_resolver import (
    DEFAULT_STATUSES,
    SETTLEMENT_STATUSES,
    ResolvedDay,
    load_day_reports,
    load_lines_for_reports,
    resolve_reports,
    sum_machine_lines,
    today_for,
)
from app.services.time_utils import business_day_bounds, business_day_for, iter_days

MAX_RANGE_DAYS = 366
REJECTED_STATUSES = (ReconciliationStatus.EXCLUDED, ReconciliationStatus.DUPLICATE)


@dataclass
class PayoutTotals:
    amount: Decimal = ZERO
    count: int = 0


@dataclass
class DayBreakdown:
    resolved: ResolvedDay
    payouts: PayoutTotals
    payouts_by_machine: dict[str, PayoutTotals] = field(default_factory=dict)

    @property
    def net_revenue(self) -> Decimal:
        r = self.resolved
        return money(r.total_money_in - r.total_money_out - r.total_collect - self.payouts.amount)

    def as_dict(self) -> dict:
        r = self.resolved
        return {
            'date': r.day,
            'legacy': r.legacy,
            'report_ids': [report.id for report in r.reports],
            'total_money_in': r.total_money_in,
            'total_money_out': r.total_money_out,
            'total_collect': r.total_collect,
            'total_vouchers': self.payouts.amount,
            'voucher_count': self.payouts.count,
            'net_revenue': self.net_revenue,
            'machine_count': r.machine_count,
        }


@dataclass
class RangeSummary:
    venue_id: str
    start: date
    end: date
    days: list[DayBreakdown] = field(default_factory=list)
    machines: list[MachineTotals] = field(default_factory=list)

    @property
    def total_money_in(self) -> Decimal:
        return money(sum((d.resolved.total_money_in for d in self.days), ZERO))

    @property
    def total_money_out(self) -> Decimal:
        return money(sum((d.resolved.total_money_out for d in self.days), ZERO))

    @property
    def total_collect(self) -> Decimal:
        return money(sum((d.resolved.total_collect for d in self.days), ZERO))

    @property
    def total_vouchers(self) -> Decimal:
        return money(sum((d.payouts.amount for d in self.days), ZERO))

    @property
    def voucher_count(self) -> int:
        return sum(d.payouts.count for d in self.days)

    @property
    def net_revenue(self) -> Decimal:
        return money(self.total_money_in - self.total_money_out - self.total_collect - self.total_vouchers)

    def as_dict(self) -> dict:
        return {
            'venue_id': self.venue_id,
            'start': self.start,
            'end': self.end,
            'total_money_in': self.total_money_in,
            'total_money_out': self.total_money_out,
            'total_collect': self.total_collect,
            'total_vouchers': self.total_vouchers,
            'voucher_count': self.voucher_count,
            'net_revenue': self.net_revenue,
            'machines': [m.as_dict() for m in self.machines],
            'days': [d.as_dict() for d in self.days],
        }


def _load_payouts(
    db: Session,
    *,
    venue_id: str,
    start: date,
    end: date,
    policy: ReconciliationPolicy,
) -> dict[date, dict[str, PayoutTotals]]:
    starts_at, _ = business_day_bounds(start, policy.tz)
    _, ends_at = business_day_bounds(end, policy.tz)
    rows = db.execute(
        select(Event.machine_id, Event.amount, Event.timestamp)
        .outerjoin(DailyReport, DailyReport.id == Event.generated_report_id)
        .where(
            Event.venue_id == venue_id,
            Event.kind.in_(payout_kind_values()),
            Event.timestamp >= starts_at,
            Event.timestamp < ends_at,
            # Payouts folded into a rejected report are void with it.
            or_(
                Event.generated_report_id.is_(None),
                DailyReport.reconciliation_status.not_in(REJECTED_STATUSES),
            ),
        )
    ).all()

    # Payouts are one-shot values, so they are summed straight from events.
    by_day: dict[date, dict[str, PayoutTotals]] = defaultdict(dict)
    for machine_id, amount, timestamp in rows:
        if machine_id == policy.grand_total_machine_id:
            continue
        totals = by_day[business_day_for(timestamp, policy.tz)].setdefault(machine_id, PayoutTotals())
        totals.amount = money(totals.amount + Decimal(amount))
        totals.count += 1
    return by_day


def _validate_range(start: date, end: date) -> None:
    if end < start:
        raise ValueError('End date cannot be before start date')
    if (end - start).days + 1 > MAX_RANGE_DAYS:
        raise ValueError(f'Date range cannot exceed {MAX_RANGE_DAYS} days')


def aggregate_range(
    db: Session,
    *,
    venue_id: str,
    start: date,
    end: date,
    now: datetime | None = None,
    statuses: Sequence[ReconciliationStatus] = DEFAULT_STATUSES,
    policy: ReconciliationPolicy | None = None,
) -> RangeSummary:
    _validate_range(start, end)
    policy = resolve_policy(policy)
    today = today_for(now, policy)

    reports = load_day_reports(db, venue_id=venue_id, start=start, end=end, statuses=statuses)
    reports_by_day = defaultdict(list)
    for report in reports:
        reports_by_day[report.report_date].append(report)
    payouts = _load_payouts(db, venue_id=venue_id, start=start, end=end, policy=policy)

    summary = RangeSummary(venue_id=venue_id, start=start, end=end)
    machines: dict[str, MachineTotals] = {}
    for day in iter_days(start, end):
        chosen, legacy = resolve_reports(reports_by_day.get(day, []), day=day, today=today)
        day_payouts = payouts.get(day, {})
        if not chosen and not day_payouts:
            continue
        resolved = ResolvedDay(
            venue_id=venue_id,
            day=day,
            reports=chosen,
            machines=sum_machine_lines(load_lines_for_reports(db, [report.id for report in chosen])),
            legacy=legacy,
        )
        # Report voucher columns are replaced by the event-sourced payouts.
        for totals in resolved.machines:
            totals.vouchers = ZERO
        day_total = PayoutTotals(
            amount=money(sum((p.amount for p in day_payouts.values()), ZERO)),
            count=sum(p.count for p in day_payouts.values()),
        )
        summary.days.append(DayBreakdown(resolved=resolved, payouts=day_total, payouts_by_machine=day_payouts))

        for totals in resolved.machines:
            acc = machines.setdefault(totals.machine_id, MachineTotals(machine_id=totals.machine_id))
            acc.money_in = money(acc.money_in + totals.money_in)
            acc.money_out = money(acc.money_out + totals.money_out)
            acc.collect = money(acc.collect + totals.collect)
            acc.transaction_count += totals.transaction_count
        for machine_id, payout in day_payouts.items():
            acc = machines.setdefault(machine_id, MachineTotals(machine_id=machine_id))
            acc.vouchers = money(acc.vouchers + payout.amount)
            acc.voucher_count += payout.count

    summary.machines = sorted(machines.values(), key=lambda m: m.machine_id)
    return summary


def financial_summary(
    db: Session,
    *,
    venue_id: str,
    day: date,
    now: datetime | None = None,
    policy: ReconciliationPolicy | None = None,
) -> dict:
    """Settlement view of one day: closed once an included report exists, open otherwise."""
    policy = resolve_policy(policy)
    summary = aggregate_range(
        db, venue_id=venue_id, start=day, end=day, now=now, statuses=SETTLEMENT_STATUSES, policy=policy
    )
    breakdown = summary.days[0] if summary.days else None
    payouts = breakdown.payouts if breakdown else PayoutTotals()

    if breakdown is None or not breakdown.resolved.reports:
        return {
            'venue_id': venue_id,
            'date': day,
            'status': 'open',
            'total_vouchers': payouts.amount,
            'voucher_count': payouts.count,
        }

    return {
        'venue_id': venue_id,
        'date': day,
        'status': 'closed',
        'report_ids': [report.id for report in breakdown.resolved.reports],
        'total_money_in': summary.total_money_in,
        'total_money_out': summary.total_money_out,
        'total_collect': summary.total_collect,
        'total_vouchers': summary.total_vouchers,
        'voucher_count': summary.voucher_count,
        'net_revenue': summary.net_revenue,
        'machines': [m.as_dict() for m in summary.machines],
    }
