from __future__ import annotations

import csv
import datetime
import json
import logging
import re
import secrets
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select

from database import (
    CrewMember,
    CrewUnavailability,
    Event,
    LEVEL_ORDER,
    coerce_date,
    event_to_dict,
)
from exporter import DATA_DIR as EXPORT_DIR
from policy import build_default_policy, known_venues, venue_stage_default

logger = logging.getLogger(__name__)

EXPORT_DIR.mkdir(parents=True, exist_ok=True)
EVENT_CSV_FIELDS = ("name", "date", "venue", "vertical")
VENUE_SEPARATORS = re.compile(r"\s*(?:/|&|\+|,|;|\band\b)\s*", re.IGNORECASE)


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def new_batch_id() -> str:
    return f"batch_{_timestamp()}_{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Event ingestion


def _lookup_venue(token: str, policy: Dict) -> Optional[str]:
    label = token.strip().lower()
    if not label:
        return None
    aliases = {str(key).lower(): value for key, value in (policy.get("venue_aliases") or {}).items()}
    if label in aliases:
        return aliases[label]
    for venue in known_venues(policy):
        if venue.lower() == label:
            return venue
    return None


def normalize_venue(raw: str, policy: Dict) -> Tuple[str, List[str]]:
    """Return (canonical venue, every known venue named in the raw string).

    More than one match means the event spans venues and needs a human.
    """
    text = (raw or "").strip()
    whole = _lookup_venue(text, policy)
    if whole:
        return whole, [whole]
    matches: List[str] = []
    for token in VENUE_SEPARATORS.split(text):
        venue = _lookup_venue(token, policy)
        if venue and venue not in matches:
            matches.append(venue)
    if not matches:
        return str(policy.get("fallback_venue") or "Others"), []
    return matches[0], matches


def normalize_vertical(raw: str, policy: Dict) -> str:
    text = (raw or "").strip()
    aliases = {str(key).lower(): value for key, value in (policy.get("vertical_aliases") or {}).items()}
    return aliases.get(text.lower(), text)


def load_events_csv(file_path: Path) -> List[Dict[str, str]]:
    """Read name,date,venue,vertical rows; a header row is optional."""
    rows: List[Dict[str, str]] = []
    with Path(file_path).open("r", encoding="utf-8", newline="") as handle:
        reader = csv.reader(handle)
        for index, parts in enumerate(reader):
            cells = [cell.strip() for cell in parts]
            if not any(cells):
                continue
            if index == 0 and [cell.lower() for cell in cells[:2]] == ["name", "date"]:
                continue
            if len(cells) < len(EVENT_CSV_FIELDS):
                raise ValueError(f"Line {index + 1}: expected name,date,venue,vertical.")
            rows.append(dict(zip(EVENT_CSV_FIELDS, cells)))
    return rows


def import_events(
    session,
    rows: Iterable[Dict[str, Any]],
    *,
    policy: Optional[Dict] = None,
    batch_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a batch of events from raw upload rows.

    Rows sharing a name become one multi-day production with a common
    event_group; stage crew defaults come from the venue.
    """
    policy = policy or build_default_policy()
    batch_id = batch_id or new_batch_id()
    productions: Dict[str, List[Dict[str, Any]]] = {}
    for index, row in enumerate(rows, start=1):
        name = (row.get("name") or "").strip()
        if not name:
            raise ValueError(f"Row {index}: event name is required.")
        try:
            event_date = coerce_date(row.get("date") or row.get("event_date"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Row {index} ({name}): {exc}") from exc
        productions.setdefault(name, []).append({**row, "name": name, "event_date": event_date})

    created: List[Tuple[Event, int]] = []
    for group_index, (name, members) in enumerate(productions.items(), start=1):
        event_group = f"group_{batch_id}_{group_index}" if len(members) > 1 else None
        for entry in members:
            raw_venue = (entry.get("venue") or "").strip()
            venue, matched = normalize_venue(raw_venue, policy)
            manual_reason = ""
            if len(matched) > 1:
                manual_reason = f"Multiple venues: {', '.join(matched)}"
            elif entry.get("needs_manual_review"):
                manual_reason = entry.get("manual_flag_reason") or "Flagged for manual review"
            stage_needed = entry.get("stage_crew_needed")
            event = Event(
                batch_id=batch_id,
                name=name,
                event_date=entry["event_date"],
                venue=raw_venue,
                venue_normalized=venue,
                vertical=normalize_vertical(entry.get("vertical") or "", policy),
                stage_crew_needed=int(stage_needed) if stage_needed not in (None, "") else venue_stage_default(policy, venue),
                event_group=event_group,
                needs_manual_review=bool(manual_reason),
                manual_flag_reason=manual_reason,
            )
            session.add(event)
            created.append((event, len(members)))
    session.commit()
    events = []
    for event, total_days in created:
        payload = event_to_dict(event)
        payload["is_multi_day"] = total_days > 1
        payload["total_days"] = total_days
        events.append(payload)
    flagged = sum(1 for event, _ in created if event.needs_manual_review)
    logger.info("Imported batch %s: %d events, %d flagged for review", batch_id, len(events), flagged)
    return {"batch_id": batch_id, "events": events}


# ---------------------------------------------------------------------------
# Crew roster import/export


def export_crew(crew_session) -> Path:
    payload: List[Dict] = []
    members = crew_session.scalars(select(CrewMember).order_by(CrewMember.name.asc())).all()
    for member in members:
        payload.append(
            {
                "name": member.name,
                "level": member.level,
                "can_stage": bool(member.can_stage),
                "stage_only_if_urgent": bool(member.stage_only_if_urgent),
                "venue_capabilities": member.venue_capabilities,
                "vertical_capabilities": member.vertical_capabilities,
                "special_notes": member.special_notes,
                "unavailability": [
                    {"date": row.unavailable_date.isoformat(), "reason": row.reason}
                    for row in sorted(member.unavailability, key=lambda row: row.unavailable_date)
                ],
            }
        )
    filename = EXPORT_DIR / f"crew_{_timestamp()}.json"
    filename.write_text(
        json.dumps(
            {"generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(), "crew": payload},
            indent=2,
        ),
        encoding="utf-8",
    )
    return filename


def import_crew(crew_session, file_path: Path) -> Tuple[int, int]:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    created = 0
    updated = 0
    for payload in data.get("crew", []):
        name = (payload.get("name") or "").strip()
        if not name:
            continue
        level = payload.get("level") or "Junior"
        if level not in LEVEL_ORDER:
            logger.warning("Skipping %s: unsupported level %r", name, level)
            continue
        member = crew_session.scalars(select(CrewMember).where(CrewMember.name == name)).first()
        if not member:
            member = CrewMember(name=name)
            crew_session.add(member)
            crew_session.flush()
            created += 1
        else:
            updated += 1
        member.level = level
        member.can_stage = bool(payload.get("can_stage", True))
        member.stage_only_if_urgent = bool(payload.get("stage_only_if_urgent", False))
        member.venue_capabilities = payload.get("venue_capabilities") or {}
        member.vertical_capabilities = payload.get("vertical_capabilities") or {}
        member.special_notes = payload.get("special_notes", "") or ""

        # Replace unavailability rows
        crew_session.execute(delete(CrewUnavailability).where(CrewUnavailability.crew_id == member.id))
        seen = set()
        for entry in payload.get("unavailability", []):
            try:
                day = coerce_date(entry["date"])
            except (KeyError, TypeError, ValueError):
                continue
            if day in seen:
                continue
            seen.add(day)
            crew_session.add(CrewUnavailability(crew_id=member.id, unavailable_date=day, reason=entry.get("reason")))
    crew_session.commit()
    return created, updated
