from __future__ import annotations

import unittest

from app.services.event_classifier import (
    FINANCIAL_KINDS,
    KIND_TABLE,
    MATERIALIZATION_TRIGGER_KINDS,
    EventKind,
    EventSemantics,
    FinancialRole,
    classify,
    financial_kind_values,
    is_financial,
    is_recognized,
    parse_kind,
)


class EventClassifierTests(unittest.TestCase):
    def test_every_kind_has_static_metadata(self) -> None:
        self.assertEqual(set(KIND_TABLE), set(EventKind))

    def test_counters_are_cumulative(self) -> None:
        for raw in ('money_in', 'money_out', 'collect'):
            self.assertEqual(classify(raw), EventSemantics.CUMULATIVE)

    def test_payouts_are_transactional(self) -> None:
        for raw in ('voucher', 'voucher_print'):
            self.assertEqual(classify(raw), EventSemantics.TRANSACTIONAL)
            self.assertEqual(parse_kind(raw).role, FinancialRole.PAYOUT)

    def test_unknown_kind_is_transactional_with_zero_weight(self) -> None:
        kind = parse_kind('coin_jam')
        self.assertEqual(kind, EventKind.UNKNOWN)
        self.assertEqual(kind.semantics, EventSemantics.TRANSACTIONAL)
        self.assertFalse(kind.info.weighted)
        self.assertFalse(is_financial('coin_jam'))
        self.assertFalse(is_recognized('coin_jam'))

    def test_parse_kind_never_raises(self) -> None:
        self.assertEqual(parse_kind(None), EventKind.UNKNOWN)
        self.assertEqual(parse_kind(''), EventKind.UNKNOWN)
        self.assertEqual(parse_kind(42), EventKind.UNKNOWN)
        self.assertEqual(parse_kind('  MONEY_IN '), EventKind.MONEY_IN)

    def test_non_financial_kinds_are_excluded(self) -> None:
        for raw in ('session_start', 'session_end', 'daily_summary', 'test', 'books_cleared', 'books_clearing'):
            self.assertTrue(is_recognized(raw))
            self.assertFalse(is_financial(raw))

    def test_trigger_kinds_include_daily_summary(self) -> None:
        self.assertIn(EventKind.DAILY_SUMMARY, MATERIALIZATION_TRIGGER_KINDS)
        self.assertIn(EventKind.MONEY_IN, MATERIALIZATION_TRIGGER_KINDS)
        self.assertNotIn(EventKind.VOUCHER_PRINT, MATERIALIZATION_TRIGGER_KINDS)

    def test_financial_kind_values_are_sorted_strings(self) -> None:
        values = financial_kind_values()
        self.assertEqual(values, sorted(values))
        self.assertEqual(set(values), {kind.value for kind in FINANCIAL_KINDS})
        self.assertNotIn('unknown', values)


if __name__ == '__main__':
    unittest.main()
