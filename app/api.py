"""FastAPI surface over the crew assignment database.

Endpoints stay thin: they open sessions, call the service helpers in
``database``/``generator.api``/``exporter`` and encode the result.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response

# Ensure legacy absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    apply_unavailability_bulk,
    add_unavailability,
    event_to_dict,
    get_active_policy,
    get_assignments_for_batch,
    init_database,
    list_crew,
    list_events,
    list_unavailability,
    remove_unavailability,
    update_stage_crew_needed,
    upsert_crew_member,
    upsert_policy,
    crew_to_dict,
)
from data_exchange import import_events  # noqa: E402
from exporter import assignments_csv, calendar_csv, workload_csv  # noqa: E402
from generator.api import override_event_assignment, run_assignments_for_batch  # noqa: E402
from generator.engine import AssignmentPersistenceError  # noqa: E402
from policy import ensure_default_policy, load_active_policy  # noqa: E402

logger = logging.getLogger(__name__)

_batch_locks: Dict[str, threading.Lock] = {}
_batch_locks_guard = threading.Lock()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    ensure_default_policy(database.PolicySessionLocal)
    yield


app = FastAPI(title="Crew Assignment API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_crew_db():
    db = database.CrewSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _batch_lock(batch_id: str) -> threading.Lock:
    with _batch_locks_guard:
        return _batch_locks.setdefault(batch_id, threading.Lock())


def _bad_request(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if "not found" in message.lower() else 400
    return HTTPException(status_code=status, detail=message)


def _parse_month(value: str) -> str:
    try:
        datetime.date.fromisoformat(f"{value}-01")
    except ValueError:
        raise HTTPException(status_code=400, detail="month must be YYYY-MM")
    return value


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Crew & unavailability


@app.get("/api/crew")
def crew_roster(crew_db=Depends(get_crew_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"crew": list_crew(crew_db)}))


@app.post("/api/crew")
def save_crew_member(payload: Dict[str, Any], crew_db=Depends(get_crew_db)) -> JSONResponse:
    try:
        member = upsert_crew_member(crew_db, payload)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return JSONResponse(content=jsonable_encoder(crew_to_dict(member)))


@app.get("/api/unavailability")
def unavailability(month: Optional[str] = Query(None), crew_db=Depends(get_crew_db)) -> JSONResponse:
    if month:
        _parse_month(month)
    rows = list_unavailability(crew_db, month=month)
    return JSONResponse(content=jsonable_encoder({"month": month, "unavailability": rows}))


@app.post("/api/unavailability")
def mark_unavailable(payload: Dict[str, Any], crew_db=Depends(get_crew_db)) -> JSONResponse:
    crew_id = payload.get("crew_id")
    day = payload.get("unavailable_date") or payload.get("date")
    if crew_id is None or not day:
        raise HTTPException(status_code=400, detail="crew_id and unavailable_date are required")
    try:
        created = add_unavailability(crew_db, int(crew_id), day, payload.get("reason"))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content={"success": True, "created": created})


@app.delete("/api/unavailability")
def clear_unavailable(
    crew_id: int = Query(...),
    date: str = Query(...),
    crew_db=Depends(get_crew_db),
) -> JSONResponse:
    try:
        removed = remove_unavailability(crew_db, crew_id, date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content={"success": True, "removed": removed})


@app.post("/api/unavailability/bulk")
def bulk_unavailability(payload: Dict[str, Any], crew_db=Depends(get_crew_db)) -> JSONResponse:
    entries = payload.get("entries") or payload.get("updates") or []
    try:
        counts = apply_unavailability_bulk(crew_db, entries)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid entry: {exc}") from exc
    return JSONResponse(content={"success": True, **counts})


# ---------------------------------------------------------------------------
# Events


@app.post("/api/events/upload")
def upload_events(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    rows = payload.get("events") or []
    if not rows:
        raise HTTPException(status_code=400, detail="events must be a non-empty list")
    try:
        result = import_events(db, rows, policy=load_active_policy(db), batch_id=payload.get("batch_id"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder({"success": True, **result}))


@app.get("/api/events")
def events(batch_id: Optional[str] = Query(None), db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"events": list_events(db, batch_id)}))


@app.put("/api/events/{event_id}")
def edit_event(event_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    if "stage_crew_needed" not in payload:
        raise HTTPException(status_code=400, detail="stage_crew_needed is required")
    try:
        event = update_stage_crew_needed(db, event_id, payload["stage_crew_needed"])
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return JSONResponse(content=jsonable_encoder(event_to_dict(event)))


# ---------------------------------------------------------------------------
# Assignments


@app.post("/api/assignments/run")
def run_assignments(payload: Dict[str, Any]) -> JSONResponse:
    batch_id = (payload.get("batch_id") or payload.get("batchId") or "").strip()
    if not batch_id:
        raise HTTPException(status_code=400, detail="batch_id is required")
    lock = _batch_lock(batch_id)
    if not lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail=f"batch {batch_id} is already being assigned")
    try:
        result = run_assignments_for_batch(
            database.SessionLocal,
            batch_id,
            crew_session_factory=database.CrewSessionLocal,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AssignmentPersistenceError as exc:
        logger.error("Assignment run for %s failed: %s", batch_id, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    finally:
        lock.release()
    return JSONResponse(content=jsonable_encoder({"success": True, **result}))


@app.get("/api/assignments")
def assignments(
    batch_id: str = Query(...),
    db=Depends(get_db),
    crew_db=Depends(get_crew_db),
) -> JSONResponse:
    rows = get_assignments_for_batch(db, batch_id, crew_session=crew_db)
    return JSONResponse(content=jsonable_encoder({"batch_id": batch_id, "assignments": rows}))


@app.put("/api/assignments/{event_id}")
def override_assignment(event_id: int, payload: Dict[str, Any]) -> JSONResponse:
    try:
        result = override_event_assignment(
            database.SessionLocal,
            event_id,
            foh_id=payload.get("foh_id"),
            stage_ids=payload.get("stage_ids") or [],
            crew_session_factory=database.CrewSessionLocal,
        )
    except (TypeError, ValueError) as exc:
        raise _bad_request(exc) from exc
    except AssignmentPersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder(result))


# ---------------------------------------------------------------------------
# Exports


@app.get("/api/export/csv")
def export_assignments(batch_id: str = Query(...), db=Depends(get_db), crew_db=Depends(get_crew_db)) -> Response:
    content = assignments_csv(db, batch_id, crew_session=crew_db)
    return _csv_response(content, f"crew_assignments_{batch_id}.csv")


@app.get("/api/export/calendar")
def export_calendar(batch_id: str = Query(...), db=Depends(get_db), crew_db=Depends(get_crew_db)) -> Response:
    content = calendar_csv(db, batch_id, crew_session=crew_db)
    return _csv_response(content, f"calendar_import_{batch_id}.csv")


@app.get("/api/export/workload")
def export_workload(month: str = Query(...), db=Depends(get_db), crew_db=Depends(get_crew_db)) -> Response:
    _parse_month(month)
    content = workload_csv(db, month, crew_session=crew_db)
    return _csv_response(content, f"workload_{month}.csv")


# ---------------------------------------------------------------------------
# Policy


def _policy_payload(policy) -> Dict[str, Any]:
    return {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }


@app.get("/api/policy/active")
def active_policy(db=Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))


@app.put("/api/policy/active")
def set_active_policy(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = (payload.get("actor") or "api").strip() or "api"
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    logger.info("Policy %s saved by %s", policy.name, actor)
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))
