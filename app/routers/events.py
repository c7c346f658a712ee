from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import get_policy
from app.services.policy import ReconciliationPolicy
from app.services.report_materializer import list_stuck_events

router = APIRouter(prefix='/events', tags=['events'])


@router.get('/stuck')
def stuck_events(
    venue_id: str | None = None,
    db: Session = Depends(get_db),
    policy: ReconciliationPolicy = Depends(get_policy),
):
    events = list_stuck_events(db, venue_id=venue_id, policy=policy)
    return {
        'count': len(events),
        'max_processing_attempts': policy.max_processing_attempts,
        'events': [
            {
                'id': event.id,
                'venue_id': event.venue_id,
                'relay_id': event.relay_id,
                'machine_id': event.machine_id,
                'kind': event.kind,
                'amount': event.amount,
                'timestamp': event.timestamp,
                'retry_count': event.retry_count,
                'processing_error': event.processing_error,
            }
            for event in events
        ],
    }
