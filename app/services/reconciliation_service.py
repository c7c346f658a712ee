from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor
from app.models import DailyReport, DailyReportMachine, ReconciliationStatus, ReportAuditAction, ReportAuditEntry
from app.services.daily_aggregator import ZERO, money
from app.services.errors import InvalidTransitionError, MissingActorError
from app.services.policy import ReconciliationPolicy, resolve_policy
from app.services.report_materializer import load_report_lines
from app.services.report_quality import detect_anomalies
from app.services.time_utils import iter_days, utcnow

logger = logging.getLogger(__name__)

DUPLICATE_DETECTOR_ACTOR = 'system:duplicate-detector'

ALLOWED_TRANSITIONS: dict[ReconciliationStatus, frozenset[ReconciliationStatus]] = {
    ReconciliationStatus.PENDING: frozenset(
        {ReconciliationStatus.INCLUDED, ReconciliationStatus.EXCLUDED, ReconciliationStatus.DUPLICATE}
    ),
    ReconciliationStatus.INCLUDED: frozenset(),
    ReconciliationStatus.EXCLUDED: frozenset(),
    ReconciliationStatus.DUPLICATE: frozenset(),
}


def _require_actor(actor: Actor | None) -> Actor:
    if actor is None or not (actor.id or '').strip():
        raise MissingActorError('An actor id is required to change reconciliation status')
    return actor


def _clean_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    return notes if notes.strip() else None


def _coerce_status(value: ReconciliationStatus | str) -> ReconciliationStatus:
    if isinstance(value, ReconciliationStatus):
        return value
    try:
        return ReconciliationStatus(str(value).strip().upper())
    except ValueError as exc:
        raise ValueError(f'Unknown reconciliation status: {value}') from exc


def get_report(db: Session, *, report_id: int) -> DailyReport:
    report = db.get(DailyReport, report_id)
    if not report:
        raise ValueError('Report not found')
    return report


def _apply_status(
    db: Session,
    *,
    report: DailyReport,
    target: ReconciliationStatus,
    actor: Actor,
    notes: str | None,
    action: ReportAuditAction,
    meta: dict | None = None,
) -> DailyReport:
    previous = report.reconciliation_status
    now = utcnow()
    with db.begin_nested():
        report.reconciliation_status = target
        report.last_modified_by = actor.id
        report.last_modified_at = now
        report.updated_at = now
        if notes is not None:
            report.notes = notes
        db.add(
            ReportAuditEntry(
                report_id=report.id,
                action=action,
                from_status=previous,
                to_status=target,
                actor_id=actor.id,
                actor_email=actor.email,
                notes=notes,
                meta=meta or {},
                created_at=now,
            )
        )
    logger.info(
        'Report %s %s -> %s by %s (%s)', report.id, previous.value, target.value, actor.id, action.value
    )
    return report


def transition_report(
    db: Session,
    *,
    report_id: int,
    target: ReconciliationStatus | str,
    actor: Actor | None,
    notes: str | None = None,
) -> DailyReport:
    actor = _require_actor(actor)
    target = _coerce_status(target)
    report = get_report(db, report_id=report_id)
    if target not in ALLOWED_TRANSITIONS[report.reconciliation_status]:
        raise InvalidTransitionError(
            f'Cannot move report from {report.reconciliation_status.value} to {target.value}'
        )
    return _apply_status(
        db,
        report=report,
        target=target,
        actor=actor,
        notes=_clean_notes(notes),
        action=ReportAuditAction.TRANSITION,
    )


def override_report_status(
    db: Session,
    *,
    report_id: int,
    target: ReconciliationStatus | str,
    actor: Actor | None,
    notes: str | None,
) -> DailyReport:
    actor = _require_actor(actor)
    target = _coerce_status(target)
    notes = _clean_notes(notes)
    if notes is None:
        raise ValueError('An override requires notes')
    report = get_report(db, report_id=report_id)
    if report.reconciliation_status == target:
        raise InvalidTransitionError(f'Report is already {target.value}')
    if target != ReconciliationStatus.DUPLICATE:
        report.duplicate_of_report_id = None
    return _apply_status(
        db,
        report=report,
        target=target,
        actor=actor,
        notes=notes,
        action=ReportAuditAction.OVERRIDE,
    )


def mark_duplicate(
    db: Session,
    *,
    report_id: int,
    duplicate_of_report_id: int,
    actor: Actor | None,
    notes: str | None = None,
    action: ReportAuditAction = ReportAuditAction.TRANSITION,
) -> DailyReport:
    actor = _require_actor(actor)
    if report_id == duplicate_of_report_id:
        raise ValueError('A report cannot duplicate itself')
    report = get_report(db, report_id=report_id)
    original = get_report(db, report_id=duplicate_of_report_id)
    if original.venue_id != report.venue_id:
        raise ValueError('Duplicate must reference a report of the same venue')
    if ReconciliationStatus.DUPLICATE not in ALLOWED_TRANSITIONS[report.reconciliation_status]:
        raise InvalidTransitionError(
            f'Cannot mark report {report.id} duplicate from {report.reconciliation_status.value}'
        )
    report.duplicate_of_report_id = original.id
    return _apply_status(
        db,
        report=report,
        target=ReconciliationStatus.DUPLICATE,
        actor=actor,
        notes=_clean_notes(notes),
        action=action,
        meta={'duplicate_of_report_id': original.id},
    )


def get_report_anomalies(
    db: Session,
    *,
    report_id: int,
    policy: ReconciliationPolicy | None = None,
) -> dict:
    report = get_report(db, report_id=report_id)
    lines = load_report_lines(db, report_id=report.id)
    return {
        'report_id': report.id,
        'has_anomalies': report.has_anomalies,
        'stored_reasons': list(report.anomaly_reasons or []),
        'detected_reasons': detect_anomalies(report, lines, resolve_policy(policy)),
        'quality_score': report.quality_score,
    }


def _fingerprint(lines: list[DailyReportMachine]) -> tuple:
    return tuple(
        sorted(
            (
                line.machine_id,
                money(line.money_in),
                money(line.money_out),
                money(line.collect),
                money(line.vouchers),
            )
            for line in lines
            if not line.is_grand_total
        )
    )


def find_duplicate_candidates(db: Session, *, venue_id: str, day: date) -> list[tuple[DailyReport, DailyReport]]:
    """Pending reports whose machine lines match an included report of the same relay and day."""
    reports = db.execute(
        select(DailyReport)
        .where(
            DailyReport.venue_id == venue_id,
            DailyReport.report_date == day,
            DailyReport.reconciliation_status.in_(
                [ReconciliationStatus.PENDING, ReconciliationStatus.INCLUDED]
            ),
        )
        .order_by(DailyReport.printed_at.asc(), DailyReport.id.asc())
    ).scalars().all()

    included: dict[tuple, DailyReport] = {}
    pending: list[tuple[DailyReport, tuple]] = []
    for report in reports:
        lines = load_report_lines(db, report_id=report.id)
        if not [line for line in lines if not line.is_grand_total]:
            continue
        key = (report.relay_id, _fingerprint(lines))
        if report.reconciliation_status == ReconciliationStatus.INCLUDED:
            included.setdefault(key, report)
        else:
            pending.append((report, key))

    return [(report, included[key]) for report, key in pending if key in included]


def auto_mark_duplicates(db: Session, *, venue_id: str, day: date) -> list[DailyReport]:
    actor = Actor(id=DUPLICATE_DETECTOR_ACTOR)
    marked = []
    for report, original in find_duplicate_candidates(db, venue_id=venue_id, day=day):
        marked.append(
            mark_duplicate(
                db,
                report_id=report.id,
                duplicate_of_report_id=original.id,
                actor=actor,
                notes=f'Identical machine data to included report {original.id}',
                action=ReportAuditAction.AUTO_DUPLICATE,
            )
        )
    db.flush()
    return marked


def list_report_audit(db: Session, *, report_id: int) -> list[ReportAuditEntry]:
    get_report(db, report_id=report_id)
    return list(
        db.execute(
            select(ReportAuditEntry)
            .where(ReportAuditEntry.report_id == report_id)
            .order_by(ReportAuditEntry.id.asc())
        ).scalars().all()
    )


def _empty_bucket() -> dict:
    return {'count': 0, 'revenue': ZERO}


def reconciliation_summary(db: Session, *, venue_id: str, start: date, end: date) -> dict:
    if end < start:
        raise ValueError('End date cannot be before start date')
    reports = db.execute(
        select(DailyReport)
        .where(
            DailyReport.venue_id == venue_id,
            DailyReport.report_date >= start,
            DailyReport.report_date <= end,
        )
        .order_by(DailyReport.report_date.asc(), DailyReport.printed_at.asc())
    ).scalars().all()

    totals = {status: _empty_bucket() for status in ReconciliationStatus}
    by_day: dict[date, dict[ReconciliationStatus, dict]] = defaultdict(
        lambda: {status: _empty_bucket() for status in ReconciliationStatus}
    )
    for report in reports:
        revenue = Decimal(report.total_revenue or 0)
        for bucket in (totals[report.reconciliation_status], by_day[report.report_date][report.reconciliation_status]):
            bucket['count'] += 1
            bucket['revenue'] = money(bucket['revenue'] + revenue)

    def _render(buckets: dict[ReconciliationStatus, dict]) -> dict:
        return {status.value: dict(bucket) for status, bucket in buckets.items()}

    return {
        'venue_id': venue_id,
        'start': start,
        'end': end,
        'total_reports': len(reports),
        'statuses': _render(totals),
        'daily_breakdown': [
            {'date': day, 'statuses': _render(by_day[day])} for day in iter_days(start, end) if day in by_day
        ],
    }
