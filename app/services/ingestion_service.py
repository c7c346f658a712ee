from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from fastapi import BackgroundTasks
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Event
from app.services.daily_aggregator import ZERO, money
from app.services.event_classifier import MATERIALIZATION_TRIGGER_KINDS, EventKind, parse_kind
from app.services.report_materializer import run_deferred_materialization
from app.services.time_utils import to_utc, utcnow

logger = logging.getLogger(__name__)

FLAG_MISSING_MACHINE = 'missing_machine_id'
FLAG_UNKNOWN_KIND = 'unknown_kind'
FLAG_INVALID_AMOUNT = 'invalid_amount'
FLAG_MISSING_TIMESTAMP = 'missing_timestamp'
FLAG_INVALID_TIMESTAMP = 'invalid_timestamp'


@dataclass(frozen=True)
class IngestRecord:
    venue_id: str
    relay_id: str
    machine_id: str | None
    kind: str | None
    amount: object = None
    timestamp: object = None
    idempotency_key: str | None = None
    raw_data: str | None = None


@dataclass(frozen=True)
class IngestResult:
    event: Event
    duplicate: bool
    should_materialize: bool


def _clean(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_amount(raw: object, flags: list[str]) -> Decimal:
    if raw is None or raw == '':
        return ZERO
    try:
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        flags.append(FLAG_INVALID_AMOUNT)
        return ZERO
    if not amount.is_finite() or amount < 0:
        flags.append(FLAG_INVALID_AMOUNT)
        return ZERO
    return money(amount)


def _normalize_timestamp(raw: object, flags: list[str]) -> datetime:
    if raw is None or raw == '':
        flags.append(FLAG_MISSING_TIMESTAMP)
        return utcnow()
    if isinstance(raw, datetime):
        return to_utc(raw)
    text = str(raw).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        flags.append(FLAG_INVALID_TIMESTAMP)
        return utcnow()


def _find_duplicate(db: Session, *, venue_id: str, machine_id: str, kind: str, idempotency_key: str) -> Event | None:
    return db.execute(
        select(Event).where(
            Event.venue_id == venue_id,
            Event.machine_id == machine_id,
            Event.kind == kind,
            Event.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()


def ingest_event(db: Session, record: IngestRecord) -> IngestResult:
    """Store one relay event. Malformed fields degrade to flagged values, never a rejection."""
    venue_id = _clean(record.venue_id)
    relay_id = _clean(record.relay_id)
    if not venue_id:
        raise ValueError('venue_id is required')
    if not relay_id:
        raise ValueError('relay_id is required')

    flags: list[str] = []
    machine_id = _clean(record.machine_id)
    if machine_id is None:
        machine_id = f'{relay_id}_unknown'
        flags.append(FLAG_MISSING_MACHINE)

    kind_value = (_clean(record.kind) or EventKind.UNKNOWN.value).lower()
    kind = parse_kind(kind_value)
    recognized = kind != EventKind.UNKNOWN
    if not recognized:
        flags.append(FLAG_UNKNOWN_KIND)
        logger.warning('Unrecognized event kind %r from venue %s relay %s', kind_value, venue_id, relay_id)

    amount = _normalize_amount(record.amount, flags)
    timestamp = _normalize_timestamp(record.timestamp, flags)
    idempotency_key = _clean(record.idempotency_key)
    should_materialize = kind in MATERIALIZATION_TRIGGER_KINDS

    if idempotency_key:
        existing = _find_duplicate(
            db, venue_id=venue_id, machine_id=machine_id, kind=kind_value, idempotency_key=idempotency_key
        )
        if existing is not None:
            logger.info('Duplicate event %s for venue %s (key %s)', existing.id, venue_id, idempotency_key)
            return IngestResult(event=existing, duplicate=True, should_materialize=False)

    event = Event(
        venue_id=venue_id,
        relay_id=relay_id,
        machine_id=machine_id,
        kind=kind_value,
        kind_recognized=recognized,
        amount=amount,
        timestamp=timestamp,
        idempotency_key=idempotency_key,
        raw_data=record.raw_data,
        input_flags=flags,
        processed=False,
        retry_count=0,
        created_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        # Lost the insert race to a concurrent delivery of the same event.
        existing = _find_duplicate(
            db, venue_id=venue_id, machine_id=machine_id, kind=kind_value, idempotency_key=idempotency_key or ''
        )
        if existing is None:
            raise
        logger.info('Duplicate event %s for venue %s resolved after insert race', existing.id, venue_id)
        return IngestResult(event=existing, duplicate=True, should_materialize=False)

    return IngestResult(event=event, duplicate=False, should_materialize=should_materialize)


def ingest_batch(db: Session, records: Iterable[IngestRecord]) -> list[IngestResult]:
    return [ingest_event(db, record) for record in records]


def schedule_materialization(
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session],
    results: Iterable[IngestResult],
    *,
    delay_seconds: float,
) -> int:
    """Queue one deferred materialization per venue/relay that received a trigger event."""
    batches: dict[tuple[str, str], datetime] = {}
    for result in results:
        if not result.should_materialize:
            continue
        key = (result.event.venue_id, result.event.relay_id)
        ts = to_utc(result.event.timestamp)
        if key not in batches or ts > batches[key]:
            batches[key] = ts

    for (venue_id, relay_id), batch_timestamp in batches.items():
        background_tasks.add_task(
            run_deferred_materialization,
            session_factory,
            venue_id=venue_id,
            relay_id=relay_id,
            batch_timestamp=batch_timestamp,
            delay_seconds=delay_seconds,
        )
    return len(batches)
