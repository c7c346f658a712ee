from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.auth import Actor, get_current_actor
from app.db import get_db
from app.dependencies import get_policy, parse_day
from app.models import DailyReport
from app.routers.reports import serialize_report
from app.services.daily_aggregator import summarize_day
from app.services.policy import ReconciliationPolicy
from app.services.range_aggregator import aggregate_range, financial_summary
from app.services.reconciliation_service import auto_mark_duplicates, reconciliation_summary
from app.services.relay_resolver import DEFAULT_STATUSES, SETTLEMENT_STATUSES, resolve_day
from app.services.report_materializer import load_report_lines, materialize, process_unprocessed

router = APIRouter(prefix='/venues', tags=['venues'])


class MaterializeIn(BaseModel):
    relay_id: str | None = None
    batch_timestamp: datetime | None = None
    limit: int = 500


def _statuses(settled_only: bool):
    return SETTLEMENT_STATUSES if settled_only else DEFAULT_STATUSES


@router.get('/{venue_id}/daily-aggregate')
def daily_aggregate(
    venue_id: str,
    date: str | None = None,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    day = parse_day(date)
    aggregate = summarize_day(db, venue_id=venue_id, day=day, policy=policy)
    return {'venue_id': venue_id, 'date': day, **aggregate.as_dict()}


@router.get('/{venue_id}/reports')
def list_reports(
    venue_id: str,
    date: str | None = None,
    db: Session = Depends(get_db),
):
    day = parse_day(date)
    reports = db.execute(
        select(DailyReport)
        .where(DailyReport.venue_id == venue_id, DailyReport.report_date == day)
        .order_by(DailyReport.printed_at.asc(), DailyReport.id.asc())
    ).scalars().all()
    return {
        'venue_id': venue_id,
        'date': day,
        'reports': [serialize_report(report, load_report_lines(db, report_id=report.id)) for report in reports],
    }


@router.get('/{venue_id}/resolved')
def resolved_day(
    venue_id: str,
    date: str | None = None,
    settled_only: bool = False,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    day = parse_day(date)
    resolved = resolve_day(db, venue_id=venue_id, day=day, statuses=_statuses(settled_only), policy=policy)
    return resolved.as_dict()


@router.get('/{venue_id}/range')
def range_summary(
    venue_id: str,
    start: str | None = None,
    end: str | None = None,
    settled_only: bool = False,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    start_day = parse_day(start, field='start')
    end_day = parse_day(end, field='end')
    try:
        summary = aggregate_range(
            db,
            venue_id=venue_id,
            start=start_day,
            end=end_day,
            statuses=_statuses(settled_only),
            policy=policy,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return summary.as_dict()


@router.get('/{venue_id}/financial-summary')
def financial_summary_view(
    venue_id: str,
    date: str | None = None,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    return financial_summary(db, venue_id=venue_id, day=parse_day(date), policy=policy)


@router.get('/{venue_id}/reconciliation')
def reconciliation_view(
    venue_id: str,
    start: str | None = None,
    end: str | None = None,
    db: Session = Depends(get_db),
):
    try:
        return reconciliation_summary(
            db, venue_id=venue_id, start=parse_day(start, field='start'), end=parse_day(end, field='end')
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post('/{venue_id}/materialize')
def materialize_venue(
    venue_id: str,
    payload: MaterializeIn,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
    actor: Actor = Depends(get_current_actor),
):
    if payload.relay_id and payload.batch_timestamp:
        report = materialize(
            db,
            venue_id=venue_id,
            relay_id=payload.relay_id,
            batch_timestamp=payload.batch_timestamp,
            policy=policy,
        )
        db.commit()
        return {
            'requested_by': actor.id,
            'report_ids': [report.id] if report else [],
            'failed_event_ids': [],
        }
    if payload.relay_id or payload.batch_timestamp:
        raise HTTPException(status_code=400, detail='relay_id and batch_timestamp must be given together')

    result = process_unprocessed(db, venue_id=venue_id, limit=payload.limit, policy=policy)
    db.commit()
    return {
        'requested_by': actor.id,
        'report_ids': sorted({report.id for report in result.reports}),
        'failed_event_ids': result.failed_event_ids,
    }


@router.post('/{venue_id}/duplicates')
def detect_duplicates(
    venue_id: str,
    date: str | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    marked = auto_mark_duplicates(db, venue_id=venue_id, day=parse_day(date))
    db.commit()
    return {
        'requested_by': actor.id,
        'marked': [{'report_id': r.id, 'duplicate_of_report_id': r.duplicate_of_report_id} for r in marked],
    }
