from __future__ import annotations

import unittest
from datetime import date

from app.services.batch_window_store import InMemoryBatchWindowStore, WindowEntry, window_key
from tests.support import at


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class InMemoryBatchWindowStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.store = InMemoryBatchWindowStore(ttl_seconds=60, clock=self.clock)
        self.key = window_key(venue_id='V', relay_id='R', report_date=date(2026, 3, 15))

    def test_entries_expire_after_ttl(self) -> None:
        entry = WindowEntry(report_id=7, printed_at=at(12))
        self.store.put(self.key, entry)
        self.clock.now += 59
        self.assertEqual(self.store.get(self.key), entry)
        self.clock.now += 1
        self.assertIsNone(self.store.get(self.key))
        self.assertEqual(len(self.store), 0)

    def test_put_refreshes_and_discard_removes(self) -> None:
        self.store.put(self.key, WindowEntry(report_id=1, printed_at=at(12)))
        self.clock.now += 50
        self.store.put(self.key, WindowEntry(report_id=2, printed_at=at(12)))
        self.clock.now += 50
        self.assertEqual(self.store.get(self.key).report_id, 2)
        self.store.discard(self.key)
        self.store.discard(self.key)
        self.assertIsNone(self.store.get(self.key))

    def test_keys_separate_relays_and_legacy(self) -> None:
        day = date(2026, 3, 15)
        self.assertNotEqual(
            window_key(venue_id='V', relay_id='R1', report_date=day),
            window_key(venue_id='V', relay_id='R2', report_date=day),
        )
        self.assertEqual(window_key(venue_id='V', relay_id=None, report_date=day), 'V|-|2026-03-15')

    def test_ttl_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            InMemoryBatchWindowStore(ttl_seconds=0)


if __name__ == '__main__':
    unittest.main()
