"""Static classification of relay telemetry kinds.

Every downstream aggregation decision hangs off this table: cumulative kinds
are hardware running totals (reduced with max), transactional kinds are
one-shot values (reduced with sum).
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventSemantics(str, Enum):
    CUMULATIVE = 'CUMULATIVE'
    TRANSACTIONAL = 'TRANSACTIONAL'


class FinancialRole(str, Enum):
    MONEY_IN = 'MONEY_IN'
    MONEY_OUT = 'MONEY_OUT'
    COLLECT = 'COLLECT'
    PAYOUT = 'PAYOUT'
    NONE = 'NONE'


@dataclass(frozen=True)
class KindInfo:
    semantics: EventSemantics
    role: FinancialRole
    # Unknown kinds are stored but never contribute money.
    weighted: bool = True


class EventKind(str, Enum):
    MONEY_IN = 'money_in'
    MONEY_OUT = 'money_out'
    COLLECT = 'collect'
    VOUCHER = 'voucher'
    VOUCHER_PRINT = 'voucher_print'
    SESSION_START = 'session_start'
    SESSION_END = 'session_end'
    DAILY_SUMMARY = 'daily_summary'
    TEST = 'test'
    BOOKS_CLEARED = 'books_cleared'
    BOOKS_CLEARING = 'books_clearing'
    UNKNOWN = 'unknown'

    @property
    def info(self) -> KindInfo:
        return KIND_TABLE[self]

    @property
    def semantics(self) -> EventSemantics:
        return KIND_TABLE[self].semantics

    @property
    def role(self) -> FinancialRole:
        return KIND_TABLE[self].role


KIND_TABLE: dict[EventKind, KindInfo] = {
    EventKind.MONEY_IN: KindInfo(EventSemantics.CUMULATIVE, FinancialRole.MONEY_IN),
    EventKind.MONEY_OUT: KindInfo(EventSemantics.CUMULATIVE, FinancialRole.MONEY_OUT),
    EventKind.COLLECT: KindInfo(EventSemantics.CUMULATIVE, FinancialRole.COLLECT),
    EventKind.VOUCHER: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.PAYOUT),
    EventKind.VOUCHER_PRINT: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.PAYOUT),
    EventKind.SESSION_START: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.SESSION_END: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.DAILY_SUMMARY: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.TEST: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.BOOKS_CLEARED: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.BOOKS_CLEARING: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE),
    EventKind.UNKNOWN: KindInfo(EventSemantics.TRANSACTIONAL, FinancialRole.NONE, weighted=False),
}

FINANCIAL_KINDS: frozenset[EventKind] = frozenset(
    kind for kind, info in KIND_TABLE.items() if info.role != FinancialRole.NONE and info.weighted
)
PAYOUT_KINDS: frozenset[EventKind] = frozenset(
    kind for kind, info in KIND_TABLE.items() if info.role == FinancialRole.PAYOUT
)
# A daily summary carries no money of its own; it only signals the batch is complete.
MATERIALIZATION_TRIGGER_KINDS: frozenset[EventKind] = frozenset(
    kind for kind, info in KIND_TABLE.items() if info.semantics == EventSemantics.CUMULATIVE
) | {EventKind.DAILY_SUMMARY}


def parse_kind(raw: object) -> EventKind:
    value = str(raw or '').strip().lower()
    if not value or value == EventKind.UNKNOWN.value:
        return EventKind.UNKNOWN
    try:
        return EventKind(value)
    except ValueError:
        return EventKind.UNKNOWN


def is_recognized(raw: object) -> bool:
    return parse_kind(raw) != EventKind.UNKNOWN


def classify(raw: object) -> EventSemantics:
    return parse_kind(raw).semantics


def is_financial(raw: object) -> bool:
    return parse_kind(raw) in FINANCIAL_KINDS


def financial_kind_values() -> list[str]:
    return sorted(kind.value for kind in FINANCIAL_KINDS)


def payout_kind_values() -> list[str]:
    return sorted(kind.value for kind in PAYOUT_KINDS)
