from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from app.auth import Actor
from app.models import ReconciliationStatus
from app.services.ingestion_service import ingest_event
from app.services.range_aggregator import aggregate_range, financial_summary
from app.services.reconciliation_service import transition_report
from app.services.report_materializer import materialize
from tests.support import POLICY, at, make_session, make_store, record

DAY_1 = date(2026, 3, 15)
DAY_2 = date(2026, 3, 16)


class RangeAggregatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.store = make_store()

    def tearDown(self) -> None:
        self.db.close()

    def _report(self, relay_id: str, ts, lines: list[tuple[str, str, str]]):
        for machine_id, kind, amount in lines:
            ingest_event(
                self.db, record(relay_id=relay_id, machine_id=machine_id, kind=kind, amount=amount, timestamp=ts)
            )
        return materialize(
            self.db, venue_id='V', relay_id=relay_id, batch_timestamp=ts, policy=POLICY, window_store=self.store
        )

    def _voucher(self, machine_id: str, amount: str, ts) -> None:
        ingest_event(self.db, record(machine_id=machine_id, kind='voucher_print', amount=amount, timestamp=ts))

    def test_range_sums_resolved_days_and_event_payouts(self) -> None:
        self._report('A', at(12, day=15), [('M1', 'money_in', '500'), ('grand_total', 'money_in', '500')])
        self._report('B', at(12, day=15), [('M2', 'money_in', '300')])
        self._report('A', at(12, day=16), [('M1', 'money_in', '200'), ('M1', 'collect', '50')])
        self._voucher('M1', '20', at(14, day=15))
        self._voucher('M1', '15', at(15, day=15))
        self._voucher('M2', '10', at(9, day=16))

        summary = aggregate_range(self.db, venue_id='V', start=DAY_1, end=DAY_2, now=at(23, day=20), policy=POLICY)

        self.assertEqual(summary.total_money_in, Decimal('1000.00'))
        self.assertEqual(summary.total_collect, Decimal('50.00'))
        self.assertEqual(summary.total_vouchers, Decimal('45.00'))
        self.assertEqual(summary.voucher_count, 3)
        self.assertEqual(summary.net_revenue, Decimal('905.00'))

        self.assertEqual([d.resolved.day for d in summary.days], [DAY_1, DAY_2])
        self.assertEqual(summary.days[0].payouts.amount, Decimal('35.00'))
        self.assertEqual(summary.days[0].net_revenue, Decimal('765.00'))
        self.assertEqual(summary.days[1].net_revenue, Decimal('140.00'))

        machines = {m.machine_id: m for m in summary.machines}
        self.assertEqual(set(machines), {'M1', 'M2'})
        self.assertEqual(machines['M1'].money_in, Decimal('700.00'))
        self.assertEqual(machines['M1'].vouchers, Decimal('35.00'))
        self.assertEqual(machines['M2'].vouchers, Decimal('10.00'))

    def test_report_voucher_columns_are_not_double_counted(self) -> None:
        self._report('A', at(12), [('M1', 'money_in', '100'), ('M1', 'voucher_print', '20')])

        summary = aggregate_range(self.db, venue_id='V', start=DAY_1, end=DAY_1, now=at(23), policy=POLICY)

        self.assertEqual(summary.total_vouchers, Decimal('20.00'))
        self.assertEqual(summary.net_revenue, Decimal('80.00'))

    def test_payouts_of_rejected_reports_are_dropped(self) -> None:
        report = self._report('A', at(12), [('M1', 'money_in', '100'), ('M1', 'voucher_print', '20')])
        transition_report(self.db, report_id=report.id, target=ReconciliationStatus.EXCLUDED, actor=Actor(id='op'))
        self._voucher('M1', '5', at(14))

        summary = aggregate_range(self.db, venue_id='V', start=DAY_1, end=DAY_1, now=at(23), policy=POLICY)

        self.assertEqual(summary.total_money_in, Decimal('0.00'))
        self.assertEqual(summary.total_vouchers, Decimal('5.00'))
        self.assertEqual(summary.voucher_count, 1)

    def test_days_without_data_are_omitted(self) -> None:
        self._report('A', at(12, day=16), [('M1', 'money_in', '100')])
        summary = aggregate_range(
            self.db, venue_id='V', start=date(2026, 3, 10), end=DAY_2, now=at(23, day=20), policy=POLICY
        )
        self.assertEqual([d.resolved.day for d in summary.days], [DAY_2])
        self.assertEqual(summary.as_dict()['days'][0]['total_money_in'], Decimal('100.00'))

    def test_invalid_range(self) -> None:
        with self.assertRaises(ValueError):
            aggregate_range(self.db, venue_id='V', start=DAY_2, end=DAY_1, policy=POLICY)
        with self.assertRaises(ValueError):
            aggregate_range(self.db, venue_id='V', start=date(2024, 1, 1), end=DAY_1, policy=POLICY)


class FinancialSummaryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.store = make_store()

    def tearDown(self) -> None:
        self.db.close()

    def test_open_day_reports_only_vouchers(self) -> None:
        ingest_event(self.db, record(amount='400', timestamp=at(12)))
        materialize(self.db, venue_id='V', relay_id='R', batch_timestamp=at(12), policy=POLICY, window_store=self.store)
        ingest_event(self.db, record(kind='voucher', amount='25', timestamp=at(13)))

        summary = financial_summary(self.db, venue_id='V', day=DAY_1, now=at(23), policy=POLICY)

        self.assertEqual(summary['status'], 'open')
        self.assertEqual(summary['total_vouchers'], Decimal('25.00'))
        self.assertEqual(summary['voucher_count'], 1)
        self.assertNotIn('total_money_in', summary)

    def test_closed_day_uses_included_reports(self) -> None:
        ingest_event(self.db, record(amount='400', timestamp=at(12)))
        report = materialize(
            self.db, venue_id='V', relay_id='R', batch_timestamp=at(12), policy=POLICY, window_store=self.store
        )
        transition_report(self.db, report_id=report.id, target=ReconciliationStatus.INCLUDED, actor=Actor(id='op'))
        ingest_event(self.db, record(kind='voucher', amount='25', timestamp=at(13)))

        summary = financial_summary(self.db, venue_id='V', day=DAY_1, now=at(23), policy=POLICY)

        self.assertEqual(summary['status'], 'closed')
        self.assertEqual(summary['report_ids'], [report.id])
        self.assertEqual(summary['total_money_in'], Decimal('400.00'))
        self.assertEqual(summary['net_revenue'], Decimal('375.00'))


if __name__ == '__main__':
    unittest.main()
