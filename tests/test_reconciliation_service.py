from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import select

from app.auth import Actor
from app.models import DailyReport, ReconciliationStatus, ReportAuditAction, ReportAuditEntry
from app.services.errors import InvalidTransitionError, MissingActorError
from app.services.ingestion_service import ingest_event
from app.services.reconciliation_service import (
    auto_mark_duplicates,
    find_duplicate_candidates,
    get_report_anomalies,
    list_report_audit,
    mark_duplicate,
    override_report_status,
    reconciliation_summary,
    transition_report,
)
from app.services.report_materializer import materialize
from tests.support import POLICY, at, make_session, make_store, record

OPERATOR = Actor(id='op-7', email='ops@example.com')
DAY = date(2026, 3, 15)


class ReconciliationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.store = make_store()

    def tearDown(self) -> None:
        self.db.close()

    def _report(self, amount: str = '100', *, relay_id: str = 'R', ts=None, machine_id: str = 'M1') -> DailyReport:
        ts = ts or at(12)
        ingest_event(self.db, record(relay_id=relay_id, machine_id=machine_id, amount=amount, timestamp=ts))
        return materialize(
            self.db, venue_id='V', relay_id=relay_id, batch_timestamp=ts, policy=POLICY, window_store=self.store
        )

    def _transition_entries(self, report_id: int) -> list[ReportAuditEntry]:
        return list(
            self.db.execute(
                select(ReportAuditEntry).where(
                    ReportAuditEntry.report_id == report_id,
                    ReportAuditEntry.action != ReportAuditAction.CREATED,
                )
            ).scalars().all()
        )

    def test_include_stamps_actor_timestamp_notes_and_audit(self) -> None:
        report = self._report()
        transition_report(
            self.db, report_id=report.id, target=ReconciliationStatus.INCLUDED, actor=OPERATOR, notes=' counted '
        )

        self.assertEqual(report.reconciliation_status, ReconciliationStatus.INCLUDED)
        self.assertEqual(report.last_modified_by, 'op-7')
        self.assertIsNotNone(report.last_modified_at)
        self.assertEqual(report.notes, ' counted ')
        entries = self._transition_entries(report.id)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].action, ReportAuditAction.TRANSITION)
        self.assertEqual(entries[0].from_status, ReconciliationStatus.PENDING)
        self.assertEqual(entries[0].to_status, ReconciliationStatus.INCLUDED)
        self.assertEqual(entries[0].actor_email, 'ops@example.com')

    def test_status_accepts_lowercase_names(self) -> None:
        report = self._report()
        transition_report(self.db, report_id=report.id, target='excluded', actor=OPERATOR)
        self.assertEqual(report.reconciliation_status, ReconciliationStatus.EXCLUDED)

    def test_transition_requires_actor(self) -> None:
        report = self._report()
        for actor in (None, Actor(id='  ')):
            with self.assertRaises(MissingActorError):
                transition_report(self.db, report_id=report.id, target=ReconciliationStatus.INCLUDED, actor=actor)
        self.assertEqual(report.reconciliation_status, ReconciliationStatus.PENDING)
        self.assertEqual(self._transition_entries(report.id), [])

    def test_terminal_states_reject_ordinary_transitions(self) -> None:
        report = self._report()
        transition_report(self.db, report_id=report.id, target=ReconciliationStatus.EXCLUDED, actor=OPERATOR)
        with self.assertRaises(InvalidTransitionError):
            transition_report(self.db, report_id=report.id, target=ReconciliationStatus.INCLUDED, actor=OPERATOR)
        with self.assertRaises(InvalidTransitionError):
            transition_report(self.db, report_id=report.id, target=ReconciliationStatus.PENDING, actor=OPERATOR)

    def test_unknown_report_and_status(self) -> None:
        with self.assertRaises(ValueError):
            transition_report(self.db, report_id=999, target=ReconciliationStatus.INCLUDED, actor=OPERATOR)
        report = self._report()
        with self.assertRaises(ValueError):
            transition_report(self.db, report_id=report.id, target='settled', actor=OPERATOR)

    def test_override_requires_notes_and_is_audited(self) -> None:
        report = self._report()
        transition_report(self.db, report_id=report.id, target=ReconciliationStatus.EXCLUDED, actor=OPERATOR)
        with self.assertRaises(ValueError):
            override_report_status(
                self.db, report_id=report.id, target=ReconciliationStatus.PENDING, actor=OPERATOR, notes=' '
            )

        override_report_status(
            self.db,
            report_id=report.id,
            target=ReconciliationStatus.PENDING,
            actor=OPERATOR,
            notes='excluded by mistake',
        )
        self.assertEqual(report.reconciliation_status, ReconciliationStatus.PENDING)
        actions = [entry.action for entry in list_report_audit(self.db, report_id=report.id)]
        self.assertEqual(
            actions, [ReportAuditAction.CREATED, ReportAuditAction.TRANSITION, ReportAuditAction.OVERRIDE]
        )

    def test_mark_duplicate_links_original(self) -> None:
        original = self._report('100', ts=at(9))
        copy = self._report('100', ts=at(15))
        mark_duplicate(self.db, report_id=copy.id, duplicate_of_report_id=original.id, actor=OPERATOR)

        self.assertEqual(copy.reconciliation_status, ReconciliationStatus.DUPLICATE)
        self.assertEqual(copy.duplicate_of_report_id, original.id)
        with self.assertRaises(ValueError):
            mark_duplicate(self.db, report_id=original.id, duplicate_of_report_id=original.id, actor=OPERATOR)

    def test_auto_mark_duplicates_matches_identical_pending_report(self) -> None:
        original = self._report('100', ts=at(9))
        transition_report(self.db, report_id=original.id, target=ReconciliationStatus.INCLUDED, actor=OPERATOR)
        resent = self._report('100', ts=at(15))
        different = self._report('120', ts=at(20))

        self.assertEqual(
            [(r.id, o.id) for r, o in find_duplicate_candidates(self.db, venue_id='V', day=DAY)],
            [(resent.id, original.id)],
        )
        marked = auto_mark_duplicates(self.db, venue_id='V', day=DAY)

        self.assertEqual([r.id for r in marked], [resent.id])
        self.assertEqual(resent.reconciliation_status, ReconciliationStatus.DUPLICATE)
        self.assertEqual(different.reconciliation_status, ReconciliationStatus.PENDING)
        last = list_report_audit(self.db, report_id=resent.id)[-1]
        self.assertEqual(last.action, ReportAuditAction.AUTO_DUPLICATE)
        self.assertTrue(last.actor_id.startswith('system:'))

    def test_anomaly_view_is_read_only(self) -> None:
        report = self._report('0')
        view = get_report_anomalies(self.db, report_id=report.id, policy=POLICY)
        self.assertTrue(view['has_anomalies'])
        self.assertEqual(view['stored_reasons'], view['detected_reasons'])
        self.assertEqual(view['quality_score'], 70)

    def test_reconciliation_summary_counts_and_revenue(self) -> None:
        a = self._report('100', relay_id='R1', ts=at(9))
        b = self._report('50', relay_id='R2', ts=at(9))
        c = self._report('20', relay_id='R1', ts=at(9, day=16))
        transition_report(self.db, report_id=a.id, target=ReconciliationStatus.INCLUDED, actor=OPERATOR)
        transition_report(self.db, report_id=b.id, target=ReconciliationStatus.EXCLUDED, actor=OPERATOR)

        summary = reconciliation_summary(self.db, venue_id='V', start=DAY, end=date(2026, 3, 16))

        self.assertEqual(summary['total_reports'], 3)
        self.assertEqual(summary['statuses']['INCLUDED'], {'count': 1, 'revenue': Decimal('100.00')})
        self.assertEqual(summary['statuses']['EXCLUDED'], {'count': 1, 'revenue': Decimal('50.00')})
        self.assertEqual(summary['statuses']['PENDING'], {'count': 1, 'revenue': Decimal('20.00')})
        self.assertEqual([d['date'] for d in summary['daily_breakdown']], [DAY, date(2026, 3, 16)])
        self.assertEqual(summary['daily_breakdown'][1]['statuses']['PENDING']['count'], 1)
        self.assertEqual(c.reconciliation_status, ReconciliationStatus.PENDING)

        with self.assertRaises(ValueError):
            reconciliation_summary(self.db, venue_id='V', start=date(2026, 3, 16), end=DAY)


if __name__ == '__main__':
    unittest.main()
