from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class ReconciliationStatus(str, Enum):
    PENDING = 'PENDING'
    INCLUDED = 'INCLUDED'
    EXCLUDED = 'EXCLUDED'
    DUPLICATE = 'DUPLICATE'


class ReportAuditAction(str, Enum):
    CREATED = 'CREATED'
    MERGED = 'MERGED'
    TRANSITION = 'TRANSITION'
    OVERRIDE = 'OVERRIDE'
    AUTO_DUPLICATE = 'AUTO_DUPLICATE'


class DailyReport(Base):
    __tablename__ = 'daily_reports'
    __table_args__ = (
        UniqueConstraint('idempotency_key', name='daily_reports_idempotency_key_key'),
        CheckConstraint('quality_score >= 0 AND quality_score <= 100', name='daily_reports_quality_score_ck'),
        Index('daily_reports_venue_day_relay_printed_idx', 'venue_id', 'report_date', 'relay_id', 'printed_at'),
        Index('daily_reports_venue_status_idx', 'venue_id', 'reconciliation_status'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    venue_id: Mapped[str] = mapped_column(Text, nullable=False)
    relay_id: Mapped[str | None] = mapped_column(Text)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    printed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)

    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    total_money_in: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    total_money_out: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    total_collect: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    total_vouchers: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    voucher_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    machine_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')

    quality_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default='100')
    has_anomalies: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    anomaly_reasons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        SQLEnum(ReconciliationStatus, name='reconciliation_status'),
        nullable=False,
        default=ReconciliationStatus.PENDING,
        server_default='PENDING',
    )
    duplicate_of_report_id: Mapped[int | None] = mapped_column(BigId, ForeignKey('daily_reports.id'))
    notes: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    last_modified_by: Mapped[str | None] = mapped_column(Text)
    last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Provenance only; events reference reports, not the other way round.
    source_event_id: Mapped[int | None] = mapped_column(BigId)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DailyReportMachine(Base):
    __tablename__ = 'daily_report_machines'
    __table_args__ = (
        UniqueConstraint('report_id', 'machine_id', name='daily_report_machines_report_machine_uniq'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    report_id: Mapped[int] = mapped_column(BigId, ForeignKey('daily_reports.id', ondelete='CASCADE'), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    machine_id: Mapped[str] = mapped_column(Text, nullable=False)
    money_in: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    money_out: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    collect: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    vouchers: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    net_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    is_grand_total: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')


class Event(Base):
    __tablename__ = 'events'
    __table_args__ = (
        UniqueConstraint('venue_id', 'machine_id', 'kind', 'idempotency_key', name='events_idempotency_uniq'),
        Index('events_venue_processed_idx', 'venue_id', 'processed'),
        Index('events_venue_kind_timestamp_idx', 'venue_id', 'kind', 'timestamp'),
        Index('events_venue_relay_timestamp_idx', 'venue_id', 'relay_id', 'timestamp'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    venue_id: Mapped[str] = mapped_column(Text, nullable=False)
    relay_id: Mapped[str] = mapped_column(Text, nullable=False)
    machine_id: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    kind_recognized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(Text)
    raw_data: Mapped[str | None] = mapped_column(Text)
    input_flags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    generated_report_id: Mapped[int | None] = mapped_column(BigId, ForeignKey('daily_reports.id'))
    processing_error: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReportAuditEntry(Base):
    __tablename__ = 'report_audit_entries'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    report_id: Mapped[int] = mapped_column(BigId, ForeignKey('daily_reports.id', ondelete='CASCADE'), nullable=False)
    action: Mapped[ReportAuditAction] = mapped_column(
        SQLEnum(ReportAuditAction, name='report_audit_action'), nullable=False
    )
    from_status: Mapped[ReconciliationStatus | None] = mapped_column(
        SQLEnum(ReconciliationStatus, name='reconciliation_status')
    )
    to_status: Mapped[ReconciliationStatus | None] = mapped_column(
        SQLEnum(ReconciliationStatus, name='reconciliation_status')
    )
    actor_id: Mapped[str] = mapped_column(Text, nullable=False)
    actor_email: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
