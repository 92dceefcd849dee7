from __future__ import annotations

import argparse
import datetime
import logging
import sys
from pathlib import Path
from typing import Dict, List

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    CrewSessionLocal,
    PolicySessionLocal,
    SessionLocal,
    get_assignments_for_batch,
    init_database,
    list_crew,
)
from data_exchange import import_events, load_events_csv  # noqa: E402
from exporter import export_file  # noqa: E402
from generator.api import run_assignments_for_batch  # noqa: E402
from policy import ensure_default_policy, load_active_policy  # noqa: E402


def _default_month_start(today: datetime.date | None = None) -> datetime.date:
    base = today or datetime.date.today()
    return (base.replace(day=1) + datetime.timedelta(days=32)).replace(day=1)


def _sample_events(month_start: datetime.date) -> List[Dict[str, str]]:
    def day(offset: int) -> str:
        return (month_start + datetime.timedelta(days=offset)).isoformat()

    return [
        {"name": "Winter Gala", "date": day(1), "venue": "JBT", "vertical": "Indian Music"},
        {"name": "Winter Gala", "date": day(2), "venue": "JBT", "vertical": "Indian Music"},
        {"name": "Winter Gala", "date": day(3), "venue": "JBT", "vertical": "Indian Music"},
        {"name": "Contemporary Dance Night", "date": day(4), "venue": "Godrej Dance Theatre", "vertical": "Dance"},
        {"name": "Jazz Quartet", "date": day(4), "venue": "Experimental", "vertical": "Intl Music"},
        {"name": "Chamber Play", "date": day(7), "venue": "Tata Theatre", "vertical": "Theatre"},
        {"name": "Festival Crossover", "date": day(8), "venue": "JBT / Tata", "vertical": "Dance"},
    ]


def run_workflow(month_start: datetime.date, events_csv: Path | None) -> None:
    ensure_default_policy(PolicySessionLocal)
    with CrewSessionLocal() as crew_session:
        if not list_crew(crew_session):
            raise SystemExit("No crew on file; run scripts/seed_crew.py first.")

    rows = load_events_csv(events_csv) if events_csv else _sample_events(month_start)
    with SessionLocal() as session:
        batch = import_events(session, rows, policy=load_active_policy(session))
    batch_id = batch["batch_id"]
    print(f"[workflow] Imported {len(batch['events'])} events into {batch_id}.")

    result = run_assignments_for_batch(SessionLocal, batch_id, crew_session_factory=CrewSessionLocal)
    for assignment in result["assignments"]:
        stage = ", ".join(assignment["stage_names"]) or "-"
        print(
            f"[workflow] {assignment['event_date']} {assignment['event_name']}: "
            f"FOH {assignment['foh_name'] or '-'} | Stage {stage}"
        )
    for warning in result.get("warnings") or []:
        print(f"[workflow][conflict] {warning}")

    with SessionLocal() as session, CrewSessionLocal() as crew_session:
        rows_written = get_assignments_for_batch(session, batch_id, crew_session=crew_session)
        if len(rows_written) != result["rows_written"]:
            raise SystemExit(
                f"Stored {len(rows_written)} assignment rows but the run reported {result['rows_written']}."
            )
        for kind, key in (("csv", batch_id), ("calendar", batch_id), ("workload", result["month"])):
            path = export_file(session, kind, key, crew_session=crew_session)
            print(f"[workflow] Exported {kind} -> {path}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that imports a batch of events, "
            "assigns crew, and exports the assignment, calendar and workload files."
        )
    )
    parser.add_argument(
        "--month-start",
        help="ISO date (YYYY-MM-DD) the sample events start from. Defaults to the first of next month.",
    )
    parser.add_argument("--events-csv", type=Path, help="Optional name,date,venue,vertical CSV to import.")
    parser.add_argument("--verbose", action="store_true", help="Log engine decisions.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_database()
    if args.month_start:
        try:
            month_start = datetime.date.fromisoformat(args.month_start)
        except ValueError as exc:
            raise SystemExit(f"Invalid --month-start value: {exc}") from exc
    else:
        month_start = _default_month_start()
    print(f"[workflow] Target month start: {month_start}")
    run_workflow(month_start, args.events_csv)


if __name__ == "__main__":
    main()
