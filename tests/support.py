from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import create_db_engine
from app.models import Base
from app.services.batch_window_store import InMemoryBatchWindowStore
from app.services.ingestion_service import IngestRecord
from app.services.policy import ReconciliationPolicy

POLICY = ReconciliationPolicy()


def make_session_factory() -> sessionmaker:
    engine = create_db_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def make_session() -> Session:
    return make_session_factory()()


def make_store() -> InMemoryBatchWindowStore:
    return InMemoryBatchWindowStore(ttl_seconds=300)


def at(hour: int, minute: int = 0, second: int = 0, *, day: int = 15) -> datetime:
    return datetime(2026, 3, day, hour, minute, second, tzinfo=timezone.utc)


def record(
    *,
    machine_id: str | None = 'M1',
    kind: str | None = 'money_in',
    amount: object = '0',
    timestamp: object = None,
    venue_id: str = 'V',
    relay_id: str = 'R',
    idempotency_key: str | None = None,
) -> IngestRecord:
    return IngestRecord(
        venue_id=venue_id,
        relay_id=relay_id,
        machine_id=machine_id,
        kind=kind,
        amount=amount,
        timestamp=timestamp if timestamp is not None else at(12),
        idempotency_key=idempotency_key,
    )
