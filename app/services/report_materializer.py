from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import (
    DailyReport,
    DailyReportMachine,
    Event,
    ReconciliationStatus,
    ReportAuditAction,
    ReportAuditEntry,
)
from app.services.batch_window_store import BatchWindowStore, WindowEntry, get_window_store, window_key
from app.services.daily_aggregator import ZERO, DailyAggregate, MachineFold, MachineTotals, money
from app.services.errors import EventFoldError
from app.services.event_classifier import financial_kind_values
from app.services.policy import ReconciliationPolicy, resolve_policy
from app.services.report_quality import UNRECOGNIZED_KINDS_REASON, refresh_anomalies
from app.services.time_utils import business_day_bounds, business_day_for, to_utc, utcnow

logger = logging.getLogger(__name__)

MATERIALIZER_ACTOR = 'system:materializer'


@dataclass
class SweepResult:
    reports: list[DailyReport] = field(default_factory=list)
    batches: int = 0
    failed_event_ids: list[int] = field(default_factory=list)


def report_idempotency_key(*, venue_id: str, relay_id: str | None, report_date: date, bucket: int) -> str:
    return f'{venue_id}_{report_date.isoformat()}_{relay_id or "legacy"}_{bucket}'


def _bucket(ts: datetime, window_seconds: int) -> int:
    return int(to_utc(ts).timestamp()) // window_seconds


def _eligible_event_filter(policy: ReconciliationPolicy):
    return (
        Event.processed.is_(False),
        Event.retry_count < policy.max_processing_attempts,
        or_(Event.kind.in_(financial_kind_values()), Event.kind_recognized.is_(False)),
    )


def _load_batch_events(
    db: Session,
    *,
    venue_id: str,
    relay_id: str,
    starts_at: datetime,
    ends_at: datetime,
    day_ends_at: datetime,
    policy: ReconciliationPolicy,
) -> list[Event]:
    return list(
        db.execute(
            select(Event)
            .where(
                Event.venue_id == venue_id,
                Event.relay_id == relay_id,
                Event.timestamp >= starts_at,
                Event.timestamp <= ends_at,
                Event.timestamp < day_ends_at,
                *_eligible_event_filter(policy),
            )
            .order_by(Event.timestamp.asc(), Event.id.asc())
        ).scalars().all()
    )


def load_report_lines(db: Session, *, report_id: int) -> list[DailyReportMachine]:
    return list(
        db.execute(
            select(DailyReportMachine)
            .where(DailyReportMachine.report_id == report_id)
            .order_by(DailyReportMachine.position.asc())
        ).scalars().all()
    )


def _within_window(report: DailyReport, ts: datetime, window: timedelta) -> bool:
    return abs(to_utc(report.printed_at) - ts) <= window


def _find_open_report(
    db: Session,
    *,
    venue_id: str,
    relay_id: str,
    report_date: date,
    ts: datetime,
    window: timedelta,
    store: BatchWindowStore,
) -> DailyReport | None:
    key = window_key(venue_id=venue_id, relay_id=relay_id, report_date=report_date)
    hint = store.get(key)
    if hint is not None:
        report = db.get(DailyReport, hint.report_id)
        if (
            report
            and report.venue_id == venue_id
            and report.relay_id == relay_id
            and report.report_date == report_date
            and report.reconciliation_status == ReconciliationStatus.PENDING
            and _within_window(report, ts, window)
        ):
            return report
        store.discard(key)

    return db.execute(
        select(DailyReport)
        .where(
            DailyReport.venue_id == venue_id,
            DailyReport.relay_id == relay_id,
            DailyReport.report_date == report_date,
            DailyReport.reconciliation_status == ReconciliationStatus.PENDING,
            DailyReport.printed_at >= ts - window,
            DailyReport.printed_at <= ts + window,
        )
        .order_by(DailyReport.printed_at.desc(), DailyReport.id.desc())
    ).scalars().first()


def _new_report(
    *,
    venue_id: str,
    relay_id: str,
    report_date: date,
    ts: datetime,
    key: str,
    source_event_id: int,
) -> DailyReport:
    now = utcnow()
    return DailyReport(
        venue_id=venue_id,
        relay_id=relay_id,
        report_date=report_date,
        printed_at=ts,
        idempotency_key=key,
        total_revenue=ZERO,
        total_money_in=ZERO,
        total_money_out=ZERO,
        total_collect=ZERO,
        total_vouchers=ZERO,
        voucher_count=0,
        machine_count=0,
        quality_score=100,
        has_anomalies=False,
        anomaly_reasons=[],
        reconciliation_status=ReconciliationStatus.PENDING,
        notes='',
        source_event_id=source_event_id,
        created_at=now,
        updated_at=now,
    )


def _create_or_claim_report(
    db: Session,
    *,
    venue_id: str,
    relay_id: str,
    report_date: date,
    ts: datetime,
    source_event_id: int,
    policy: ReconciliationPolicy,
) -> tuple[DailyReport, bool]:
    key = report_idempotency_key(
        venue_id=venue_id,
        relay_id=relay_id,
        report_date=report_date,
        bucket=_bucket(ts, policy.batch_window_seconds),
    )
    report = _new_report(
        venue_id=venue_id, relay_id=relay_id, report_date=report_date, ts=ts, key=key, source_event_id=source_event_id
    )
    try:
        with db.begin_nested():
            db.add(report)
        return report, True
    except IntegrityError:
        logger.info('Report key %s already claimed; merging into the existing report', key)

    existing = db.execute(select(DailyReport).where(DailyReport.idempotency_key == key)).scalar_one()
    if existing.reconciliation_status == ReconciliationStatus.PENDING:
        return existing, False

    # The window's report was already reconciled; late data opens a fresh report.
    report = _new_report(
        venue_id=venue_id,
        relay_id=relay_id,
        report_date=report_date,
        ts=ts,
        key=f'{key}_{uuid4().hex[:8]}',
        source_event_id=source_event_id,
    )
    db.add(report)
    db.flush()
    return report, True


def _apply_aggregate(
    db: Session,
    *,
    report: DailyReport,
    aggregate: DailyAggregate,
) -> list[DailyReportMachine]:
    lines = load_report_lines(db, report_id=report.id)
    by_machine = {line.machine_id: line for line in lines}
    next_position = max((line.position for line in lines), default=0) + 1

    incoming: list[MachineTotals] = list(aggregate.machines)
    if aggregate.grand_total is not None:
        incoming.append(aggregate.grand_total)

    for totals in incoming:
        line = by_machine.get(totals.machine_id)
        if line is None:
            line = DailyReportMachine(
                report_id=report.id,
                position=next_position,
                machine_id=totals.machine_id,
                money_in=ZERO,
                money_out=ZERO,
                collect=ZERO,
                vouchers=ZERO,
                net_revenue=ZERO,
                transaction_count=0,
                is_grand_total=totals.is_grand_total,
            )
            next_position += 1
            db.add(line)
            lines.append(line)
            by_machine[totals.machine_id] = line
        # A relay may split one logical report across calls: merge additively.
        line.money_in = money(line.money_in + totals.money_in)
        line.money_out = money(line.money_out + totals.money_out)
        line.collect = money(line.collect + totals.collect)
        line.vouchers = money(line.vouchers + totals.vouchers)
        line.net_revenue = money(line.money_in - line.money_out - line.collect - line.vouchers)
        line.transaction_count += totals.transaction_count

    machine_lines = [line for line in lines if not line.is_grand_total]
    report.total_money_in = money(sum((Decimal(line.money_in) for line in machine_lines), ZERO))
    report.total_money_out = money(sum((Decimal(line.money_out) for line in machine_lines), ZERO))
    report.total_collect = money(sum((Decimal(line.collect) for line in machine_lines), ZERO))
    report.total_vouchers = money(sum((Decimal(line.vouchers) for line in machine_lines), ZERO))
    report.total_revenue = money(
        report.total_money_in - report.total_money_out - report.total_collect - report.total_vouchers
    )
    report.voucher_count = (report.voucher_count or 0) + aggregate.voucher_count
    report.machine_count = len(machine_lines)
    report.updated_at = utcnow()
    return lines


def _mark_failed(event: Event, exc: Exception, policy: ReconciliationPolicy) -> None:
    event.processing_error = str(exc) or exc.__class__.__name__
    event.retry_count = (event.retry_count or 0) + 1
    if event.retry_count >= policy.max_processing_attempts:
        logger.error(
            'Event %s exhausted %s processing attempts and stays unprocessed: %s',
            event.id,
            policy.max_processing_attempts,
            event.processing_error,
        )
    else:
        logger.warning('Event %s failed to fold (attempt %s): %s', event.id, event.retry_count, event.processing_error)


def _mark_processed(events: Sequence[Event], report: DailyReport) -> None:
    now = utcnow()
    for event in events:
        event.processed = True
        event.processed_at = now
        event.generated_report_id = report.id
        event.processing_error = None


def materialize(
    db: Session,
    *,
    venue_id: str,
    relay_id: str,
    batch_timestamp: datetime,
    policy: ReconciliationPolicy | None = None,
    window_store: BatchWindowStore | None = None,
) -> DailyReport | None:
    """Fold the relay's unprocessed events around batch_timestamp into one DailyReport.

    Returns None when nothing in the window could be folded.
    """
    policy = resolve_policy(policy)
    store = window_store if window_store is not None else get_window_store()
    ts = to_utc(batch_timestamp)
    window = timedelta(seconds=policy.batch_window_seconds)
    report_date = business_day_for(ts, policy.tz)
    # The window never reaches across the report's business day.
    day_starts_at, day_ends_at = business_day_bounds(report_date, policy.tz)

    events = _load_batch_events(
        db,
        venue_id=venue_id,
        relay_id=relay_id,
        starts_at=max(ts - window, day_starts_at),
        ends_at=ts + window,
        day_ends_at=day_ends_at,
        policy=policy,
    )
    if not events:
        logger.info('No unprocessed events for venue %s relay %s around %s', venue_id, relay_id, ts.isoformat())
        return None

    fold = MachineFold(policy)
    folded: list[Event] = []
    for event in events:
        try:
            fold.add(event)
        except EventFoldError as exc:
            _mark_failed(event, exc, policy)
            continue
        folded.append(event)

    if not folded:
        db.flush()
        return None
    aggregate = fold.result()

    try:
        with db.begin_nested():
            report = _find_open_report(
                db,
                venue_id=venue_id,
                relay_id=relay_id,
                report_date=report_date,
                ts=ts,
                window=window,
                store=store,
            )
            created = report is None
            if report is None:
                report, created = _create_or_claim_report(
                    db,
                    venue_id=venue_id,
                    relay_id=relay_id,
                    report_date=report_date,
                    ts=ts,
                    source_event_id=folded[0].id,
                    policy=policy,
                )
            lines = _apply_aggregate(db, report=report, aggregate=aggregate)
            input_reasons = [UNRECOGNIZED_KINDS_REASON] if aggregate.unrecognized_event_count else []
            refresh_anomalies(report, lines, policy, input_reasons=input_reasons)
            _mark_processed(folded, report)
            db.add(
                ReportAuditEntry(
                    report_id=report.id,
                    action=ReportAuditAction.CREATED if created else ReportAuditAction.MERGED,
                    from_status=None,
                    to_status=report.reconciliation_status,
                    actor_id=MATERIALIZER_ACTOR,
                    notes=None,
                    meta={
                        'event_ids': [event.id for event in folded],
                        'batch_timestamp': ts.isoformat(),
                        'machine_count': report.machine_count,
                    },
                    created_at=utcnow(),
                )
            )
    except SQLAlchemyError as exc:
        logger.exception('Materialization failed for venue %s relay %s', venue_id, relay_id)
        for event in folded:
            _mark_failed(event, exc, policy)
        db.flush()
        return None

    store.put(
        window_key(venue_id=venue_id, relay_id=relay_id, report_date=report_date),
        WindowEntry(report_id=report.id, printed_at=to_utc(report.printed_at)),
    )
    db.flush()
    logger.info(
        '%s daily report %s for venue %s relay %s: %s from %s machines (%s events)',
        'Created' if created else 'Updated',
        report.id,
        venue_id,
        relay_id,
        report.total_revenue,
        report.machine_count,
        len(folded),
    )
    return report


def _retry_eligible_events(
    db: Session,
    *,
    venue_id: str | None,
    policy: ReconciliationPolicy,
    limit: int,
    exclude_ids: set[int],
) -> list[Event]:
    query = select(Event).where(*_eligible_event_filter(policy)).order_by(Event.timestamp.asc(), Event.id.asc())
    if venue_id:
        query = query.where(Event.venue_id == venue_id)
    if exclude_ids:
        query = query.where(Event.id.not_in(exclude_ids))
    return list(db.execute(query.limit(limit)).scalars().all())


def process_unprocessed(
    db: Session,
    *,
    venue_id: str | None = None,
    limit: int = 500,
    policy: ReconciliationPolicy | None = None,
    window_store: BatchWindowStore | None = None,
) -> SweepResult:
    """Materialize every retry-eligible unprocessed event, one relay batch at a time."""
    policy = resolve_policy(policy)
    result = SweepResult()
    attempted: set[int] = set()

    while len(attempted) < limit:
        pending = _retry_eligible_events(
            db, venue_id=venue_id, policy=policy, limit=1, exclude_ids=attempted
        )
        if not pending:
            break
        head = pending[0]
        report = materialize(
            db,
            venue_id=head.venue_id,
            relay_id=head.relay_id,
            batch_timestamp=head.timestamp,
            policy=policy,
            window_store=window_store,
        )
        result.batches += 1
        if report is not None:
            result.reports.append(report)
            attempted.update(
                db.execute(select(Event.id).where(Event.generated_report_id == report.id)).scalars().all()
            )
        attempted.add(head.id)
        if not head.processed:
            result.failed_event_ids.append(head.id)

    return result


def list_stuck_events(
    db: Session,
    *,
    venue_id: str | None = None,
    policy: ReconciliationPolicy | None = None,
) -> list[Event]:
    policy = resolve_policy(policy)
    query = (
        select(Event)
        .where(
            Event.processed.is_(False),
            Event.retry_count >= policy.max_processing_attempts,
        )
        .order_by(Event.timestamp.asc(), Event.id.asc())
    )
    if venue_id:
        query = query.where(Event.venue_id == venue_id)
    return list(db.execute(query).scalars().all())


def run_deferred_materialization(
    session_factory: Callable[[], Session],
    *,
    venue_id: str,
    relay_id: str,
    batch_timestamp: datetime,
    delay_seconds: float,
    policy: ReconciliationPolicy | None = None,
) -> None:
    # Give the relay's multi-call batch time to land before coalescing.
    if delay_seconds > 0:
        time.sleep(delay_seconds)
    with session_factory() as db:
        try:
            materialize(db, venue_id=venue_id, relay_id=relay_id, batch_timestamp=batch_timestamp, policy=policy)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception('Deferred materialization failed for venue %s relay %s', venue_id, relay_id)
            raise
