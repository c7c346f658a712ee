from __future__ import annotations

import argparse
import logging

from app.config import settings
from app.db import SessionLocal
from app.services.report_materializer import list_stuck_events, process_unprocessed


def reprocess(*, venue_id: str | None = None, limit: int = 500) -> tuple[int, int, int]:
    with SessionLocal() as db:
        result = process_unprocessed(db, venue_id=venue_id, limit=limit)
        report_ids = {report.id for report in result.reports}
        stuck = len(list_stuck_events(db, venue_id=venue_id))
        db.commit()
    return len(report_ids), len(result.failed_event_ids), stuck


def print_stuck(*, venue_id: str | None = None) -> int:
    with SessionLocal() as db:
        events = list_stuck_events(db, venue_id=venue_id)
        for event in events:
            print(
                f'{event.id}\t{event.venue_id}\t{event.relay_id}\t{event.machine_id}\t{event.kind}\t'
                f'retries={event.retry_count}\t{event.processing_error or ""}'
            )
    return len(events)


def main() -> None:
    parser = argparse.ArgumentParser(description='Materialize unprocessed relay events into daily reports.')
    parser.add_argument('--venue-id', help='Only reprocess events for this venue.')
    parser.add_argument('--limit', type=int, default=500, help='Maximum number of batch heads to attempt.')
    parser.add_argument(
        '--list-stuck',
        action='store_true',
        help='List events that exhausted their processing attempts instead of reprocessing.',
    )
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.list_stuck:
        count = print_stuck(venue_id=args.venue_id)
        print(f'Stuck events: {count}')
        return

    if args.limit < 1:
        parser.error('--limit must be at least 1')
    reports, failed, stuck = reprocess(venue_id=args.venue_id, limit=args.limit)
    print(f'Reprocess complete: reports={reports}, failed_events={failed}, stuck_events={stuck}')


if __name__ == '__main__':
    main()
