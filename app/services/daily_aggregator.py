from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models import Event
from app.services.errors import EventFoldError
from app.services.event_classifier import (
    EventKind,
    EventSemantics,
    FinancialRole,
    financial_kind_values,
    parse_kind,
)
from app.services.policy import ReconciliationPolicy, resolve_policy
from app.services.time_utils import business_day_bounds

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')
CENT = Decimal('0.01')


def money(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT)


@dataclass
class MachineTotals:
    machine_id: str
    money_in: Decimal = ZERO
    money_out: Decimal = ZERO
    collect: Decimal = ZERO
    vouchers: Decimal = ZERO
    transaction_count: int = 0
    voucher_count: int = 0
    is_grand_total: bool = False

    @property
    def net_revenue(self) -> Decimal:
        return money(self.money_in - self.money_out - self.collect - self.vouchers)

    def as_dict(self) -> dict:
        return {
            'machine_id': self.machine_id,
            'money_in': self.money_in,
            'money_out': self.money_out,
            'collect': self.collect,
            'vouchers': self.vouchers,
            'net_revenue': self.net_revenue,
            'transaction_count': self.transaction_count,
            'voucher_count': self.voucher_count,
            'is_grand_total': self.is_grand_total,
        }


@dataclass
class DailyAggregate:
    machines: list[MachineTotals] = field(default_factory=list)
    grand_total: MachineTotals | None = None
    event_count: int = 0
    unrecognized_event_count: int = 0

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
    def voucher_count(self) -> int:
        return sum(m.voucher_count for m in self.machines)

    @property
    def total_revenue(self) -> Decimal:
        return money(self.total_money_in - self.total_money_out - self.total_collect - self.total_vouchers)

    @property
    def machine_count(self) -> int:
        return len(self.machines)

    def as_dict(self) -> dict:
        return {
            'total_money_in': self.total_money_in,
            'total_money_out': self.total_money_out,
            'total_collect': self.total_collect,
            'total_vouchers': self.total_vouchers,
            'voucher_count': self.voucher_count,
            'total_revenue': self.total_revenue,
            'machine_count': self.machine_count,
            'event_count': self.event_count,
            'unrecognized_event_count': self.unrecognized_event_count,
            'machines': [m.as_dict() for m in self.machines],
            'grand_total': self.grand_total.as_dict() if self.grand_total else None,
        }


def _event_amount(event) -> Decimal:
    raw = getattr(event, 'amount', None)
    if raw is None:
        return ZERO
    try:
        amount = Decimal(str(raw))
    except ArithmeticError as exc:
        raise EventFoldError(f'Amount is not numeric: {raw!r}') from exc
    if not amount.is_finite():
        raise EventFoldError(f'Amount is not finite: {raw!r}')
    if amount < 0:
        raise EventFoldError(f'Amount cannot be negative: {amount}')
    return amount.quantize(CENT)


class MachineFold:
    """Running max/sum reduction over one venue's events, keyed by machine."""

    def __init__(self, policy: ReconciliationPolicy) -> None:
        self.policy = policy
        self._by_machine: dict[str, MachineTotals] = {}
        self.event_count = 0
        self.unrecognized_event_count = 0

    def _machine(self, machine_id: str) -> MachineTotals:
        totals = self._by_machine.get(machine_id)
        if totals is None:
            totals = MachineTotals(
                machine_id=machine_id,
                is_grand_total=machine_id == self.policy.grand_total_machine_id,
            )
            self._by_machine[machine_id] = totals
        return totals

    def add(self, event) -> None:
        machine_id = str(getattr(event, 'machine_id', '') or '').strip()
        if not machine_id:
            raise EventFoldError('Event has no logical machine id')
        amount = _event_amount(event)
        kind = parse_kind(getattr(event, 'kind', None))

        if kind == EventKind.UNKNOWN:
            # Zero weight: counted for the anomaly flag, never opens a machine row.
            self.unrecognized_event_count += 1
            self.event_count += 1
            return
        if kind.role == FinancialRole.NONE:
            return

        totals = self._machine(machine_id)
        totals.transaction_count += 1
        self.event_count += 1

        if kind.semantics == EventSemantics.CUMULATIVE:
            # Running totals: the highest snapshot is the day's value.
            if kind.role == FinancialRole.MONEY_IN:
                totals.money_in = max(totals.money_in, amount)
            elif kind.role == FinancialRole.MONEY_OUT:
                totals.money_out = max(totals.money_out, amount)
            elif kind.role == FinancialRole.COLLECT:
                totals.collect = max(totals.collect, amount)
            return

        if kind.role == FinancialRole.PAYOUT:
            totals.vouchers = money(totals.vouchers + amount)
            totals.voucher_count += 1

    def result(self) -> DailyAggregate:
        machines = []
        grand_total = None
        for totals in self._by_machine.values():
            if totals.is_grand_total:
                grand_total = totals
                continue
            machines.append(totals)
        return DailyAggregate(
            machines=machines,
            grand_total=grand_total,
            event_count=self.event_count,
            unrecognized_event_count=self.unrecognized_event_count,
        )


def fold_events(events: Iterable, policy: ReconciliationPolicy | None = None) -> DailyAggregate:
    fold = MachineFold(resolve_policy(policy))
    for event in events:
        fold.add(event)
    return fold.result()


def load_day_events(
    db: Session,
    *,
    venue_id: str,
    starts_at: datetime,
    ends_at: datetime,
    relay_id: str | None = None,
) -> list[Event]:
    query = (
        select(Event)
        .where(
            Event.venue_id == venue_id,
            Event.timestamp >= starts_at,
            Event.timestamp < ends_at,
            or_(Event.kind.in_(financial_kind_values()), Event.kind_recognized.is_(False)),
        )
        .order_by(Event.timestamp.asc(), Event.id.asc())
    )
    if relay_id is not None:
        query = query.where(Event.relay_id == relay_id)
    return list(db.execute(query).scalars().all())


def summarize_day(
    db: Session,
    *,
    venue_id: str,
    day: date,
    policy: ReconciliationPolicy | None = None,
) -> DailyAggregate:
    policy = resolve_policy(policy)
    starts_at, ends_at = business_day_bounds(day, policy.tz)
    events = load_day_events(db, venue_id=venue_id, starts_at=starts_at, ends_at=ends_at)

    fold = MachineFold(policy)
    for event in events:
        try:
            fold.add(event)
        except EventFoldError as exc:
            # Read-only view: skip the bad row, the materializer records the error.
            logger.warning('Skipping event %s in daily aggregate for %s: %s', event.id, venue_id, exc)
    return fold.result()
