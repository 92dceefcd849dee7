from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .engine import AssignmentPersistenceError, CrewAssignmentEngine, ROLE_FOH, ROLE_STAGE
from policy import load_active_policy
from database import (
    CrewSessionLocal,
    Event,
    add_assignment_rows,
    assignments_by_event,
    crew_name_map,
    delete_assignments_for_events,
)

logger = logging.getLogger(__name__)


def run_assignments_for_batch(
    session_factory: Callable,
    batch_id: str,
    *,
    crew_session_factory: Callable = CrewSessionLocal,
    policy: Optional[Dict] = None,
) -> Dict:
    """Run one full allocation pass over a batch and return the run summary.

    Callers must not run the same batch twice concurrently; the API layer
    holds a per-batch lock around this call.
    """
    if not batch_id:
        raise ValueError("batch_id is required.")
    with session_factory() as session, crew_session_factory() as crew_session:
        active_policy = policy if policy is not None else load_active_policy(session)
        engine = CrewAssignmentEngine(session, active_policy, crew_session=crew_session)
        return engine.run(batch_id)


def override_event_assignment(
    session_factory: Callable,
    event_id: int,
    foh_id: Optional[int] = None,
    stage_ids: Optional[Iterable[int]] = None,
    *,
    crew_session_factory: Callable = CrewSessionLocal,
) -> Dict:
    """Replace an event's crew wholesale with an operator's choice.

    The workload ledger is left untouched, so it keeps reflecting the
    engine's automatic pick for the event.
    """
    stage: List[int] = []
    for crew_id in stage_ids or []:
        value = int(crew_id)
        if value not in stage:
            stage.append(value)
    foh = int(foh_id) if foh_id else None
    if foh is not None and foh in stage:
        raise ValueError(f"Crew member {foh} cannot be both FOH and Stage on the same event.")
    with crew_session_factory() as crew_session:
        known_crew = crew_name_map(crew_session)
    unknown = [crew_id for crew_id in ([foh] if foh else []) + stage if crew_id not in known_crew]
    if unknown:
        raise ValueError(f"Unknown crew ids: {', '.join(str(crew_id) for crew_id in unknown)}.")
    with session_factory() as session:
        event = session.get(Event, event_id)
        if not event:
            raise ValueError(f"Event with id {event_id} was not found.")
        previous = assignments_by_event(session, [event.id])[event.id]
        rows = ([(foh, ROLE_FOH)] if foh is not None else []) + [(crew_id, ROLE_STAGE) for crew_id in stage]
        try:
            delete_assignments_for_events(session, [event.id])
            session.flush()
            add_assignment_rows(session, event.id, rows, overridden=True)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Override for event %s failed: %s", event_id, exc)
            raise AssignmentPersistenceError(f"Failed to override assignments for event {event_id}.") from exc
    logger.info("Event %s manually overridden: FOH %s, Stage %s", event_id, foh, stage)
    return {
        "success": True,
        "event_id": event_id,
        "foh": foh,
        "stage": stage,
        "replaced": {"foh": previous["foh"], "stage": previous["stage"]},
    }
