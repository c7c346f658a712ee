from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db, get_session_factory
from app.services.ingestion_service import (
    IngestRecord,
    IngestResult,
    ingest_batch,
    ingest_event,
    schedule_materialization,
)

router = APIRouter(prefix='/ingest', tags=['ingest'])

MAX_BATCH_SIZE = 500


class EventIn(BaseModel):
    venue_id: str
    relay_id: str
    machine_id: str | None = None
    kind: str | None = None
    # Kept loose: malformed amounts and timestamps are flagged, not rejected.
    amount: float | int | str | None = None
    timestamp: datetime | str | None = None
    idempotency_key: str | None = None
    raw_data: str | None = None

    def to_record(self) -> IngestRecord:
        return IngestRecord(
            venue_id=self.venue_id,
            relay_id=self.relay_id,
            machine_id=self.machine_id,
            kind=self.kind,
            amount=self.amount,
            timestamp=self.timestamp,
            idempotency_key=self.idempotency_key,
            raw_data=self.raw_data,
        )


class EventBatchIn(BaseModel):
    events: list[EventIn] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


def _result_payload(result: IngestResult) -> dict:
    event = result.event
    return {
        'event_id': event.id,
        'duplicate': result.duplicate,
        'kind': event.kind,
        'kind_recognized': event.kind_recognized,
        'input_flags': list(event.input_flags or []),
        'materialization_scheduled': result.should_materialize,
    }


@router.post('/events')
def ingest_one(
    payload: EventIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    try:
        result = ingest_event(db, payload.to_record())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()

    schedule_materialization(
        background_tasks,
        session_factory,
        [result],
        delay_seconds=settings.materialize_delay_seconds,
    )
    return _result_payload(result)


@router.post('/events/batch')
def ingest_many(
    payload: EventBatchIn,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    try:
        results = ingest_batch(db, [item.to_record() for item in payload.events])
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()

    scheduled = schedule_materialization(
        background_tasks,
        session_factory,
        results,
        delay_seconds=settings.materialize_delay_seconds,
    )
    return {
        'accepted': sum(1 for result in results if not result.duplicate),
        'duplicates': sum(1 for result in results if result.duplicate),
        'materializations_scheduled': scheduled,
        'results': [_result_payload(result) for result in results],
    }
