from __future__ import annotations

from collections.abc import Sequence

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.auth import Actor, get_current_actor
from app.db import get_db
from app.dependencies import get_policy
from app.models import DailyReport, DailyReportMachine
from app.services.errors import InvalidTransitionError
from app.services.policy import ReconciliationPolicy
from app.services.reconciliation_service import (
    get_report,
    get_report_anomalies,
    list_report_audit,
    mark_duplicate,
    override_report_status,
    transition_report,
)
from app.services.report_materializer import load_report_lines

router = APIRouter(prefix='/reports', tags=['reports'])


class TransitionIn(BaseModel):
    status: str
    notes: str | None = None


class DuplicateIn(BaseModel):
    duplicate_of_report_id: int
    notes: str | None = None


def serialize_line(line: DailyReportMachine) -> dict:
    return {
        'position': line.position,
        'machine_id': line.machine_id,
        'money_in': line.money_in,
        'money_out': line.money_out,
        'collect': line.collect,
        'vouchers': line.vouchers,
        'net_revenue': line.net_revenue,
        'transaction_count': line.transaction_count,
        'is_grand_total': line.is_grand_total,
    }


def serialize_report(report: DailyReport, lines: Sequence[DailyReportMachine] = ()) -> dict:
    return {
        'id': report.id,
        'venue_id': report.venue_id,
        'relay_id': report.relay_id,
        'report_date': report.report_date,
        'printed_at': report.printed_at,
        'idempotency_key': report.idempotency_key,
        'total_revenue': report.total_revenue,
        'total_money_in': report.total_money_in,
        'total_money_out': report.total_money_out,
        'total_collect': report.total_collect,
        'total_vouchers': report.total_vouchers,
        'voucher_count': report.voucher_count,
        'machine_count': report.machine_count,
        'quality_score': report.quality_score,
        'has_anomalies': report.has_anomalies,
        'anomaly_reasons': list(report.anomaly_reasons or []),
        'reconciliation_status': report.reconciliation_status.value,
        'duplicate_of_report_id': report.duplicate_of_report_id,
        'notes': report.notes,
        'last_modified_by': report.last_modified_by,
        'last_modified_at': report.last_modified_at,
        'machines': [serialize_line(line) for line in lines],
    }


def _status_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=409, detail=str(exc))
    detail = str(exc)
    return HTTPException(status_code=404 if detail == 'Report not found' else 400, detail=detail)


@router.get('/{report_id}')
def report_detail(report_id: int, db: Session = Depends(get_db)):
    try:
        report = get_report(db, report_id=report_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_report(report, load_report_lines(db, report_id=report.id))


@router.post('/{report_id}/reconciliation')
def transition(
    report_id: int,
    payload: TransitionIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        report = transition_report(db, report_id=report_id, target=payload.status, actor=actor, notes=payload.notes)
    except (InvalidTransitionError, ValueError) as exc:
        raise _status_error(exc) from exc
    db.commit()
    return serialize_report(report)


@router.post('/{report_id}/override')
def override(
    report_id: int,
    payload: TransitionIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        report = override_report_status(
            db, report_id=report_id, target=payload.status, actor=actor, notes=payload.notes
        )
    except (InvalidTransitionError, ValueError) as exc:
        raise _status_error(exc) from exc
    db.commit()
    return serialize_report(report)


@router.post('/{report_id}/duplicate')
def duplicate(
    report_id: int,
    payload: DuplicateIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        report = mark_duplicate(
            db,
            report_id=report_id,
            duplicate_of_report_id=payload.duplicate_of_report_id,
            actor=actor,
            notes=payload.notes,
        )
    except (InvalidTransitionError, ValueError) as exc:
        raise _status_error(exc) from exc
    db.commit()
    return serialize_report(report)


@router.get('/{report_id}/anomalies')
def anomalies(
    report_id: int,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    try:
        return get_report_anomalies(db, report_id=report_id, policy=policy)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get('/{report_id}/audit')
def audit_trail(report_id: int, db: Session = Depends(get_db)):
    try:
        entries = list_report_audit(db, report_id=report_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [
        {
            'id': entry.id,
            'action': entry.action.value,
            'from_status': entry.from_status.value if entry.from_status else None,
            'to_status': entry.to_status.value if entry.to_status else None,
            'actor_id': entry.actor_id,
            'actor_email': entry.actor_email,
            'notes': entry.notes,
            'metadata': entry.meta,
            'created_at': entry.created_at,
        }
        for entry in entries
    ]
