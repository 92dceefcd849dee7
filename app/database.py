from __future__ import annotations

import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import json

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    delete,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
CREW_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'crew.db').as_posix()}"
SCHEDULE_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'schedule.db').as_posix()}"
POLICY_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'policy.db').as_posix()}"
LEVEL_ORDER = {"Senior": 0, "Mid": 1, "Junior": 2, "Hired": 3}
ROLE_CHOICES = {"FOH", "Stage"}
UNAVAILABILITY_ACTIONS = {"add", "remove"}


def month_key(value: datetime.date) -> str:
    """Return the YYYY-MM ledger key for a date."""
    if isinstance(value, datetime.datetime):
        value = value.date()
    return f"{value.year:04d}-{value.month:02d}"


def trailing_months(month: str, count: int) -> List[str]:
    """Return `count` month keys ending at (and including) `month`, oldest first."""
    year, mon = (int(part) for part in month.split("-", 1))
    keys: List[str] = []
    for _ in range(max(1, int(count))):
        keys.append(f"{year:04d}-{mon:02d}")
        mon -= 1
        if mon == 0:
            mon = 12
            year -= 1
    return list(reversed(keys))


def coerce_date(value: Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid date '{value}'; expected YYYY-MM-DD.") from exc
    raise TypeError("Dates must be date instances or ISO strings.")


class CrewBase(DeclarativeBase):
    """Standalone metadata for crew tables living in crew.db."""

    pass


class PolicyBase(DeclarativeBase):
    """Standalone metadata for policy tables living in policy.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for event/assignment/workload tables living in schedule.db."""

    pass


class CrewMember(CrewBase):
    __tablename__ = "crew"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    level: Mapped[str] = mapped_column(String(12), nullable=False, default="Junior")
    can_stage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    stage_only_if_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    venue_capabilities_json: Mapped[str] = mapped_column(
        "venue_capabilities", String(4000), nullable=False, default="{}"
    )
    vertical_capabilities_json: Mapped[str] = mapped_column(
        "vertical_capabilities", String(4000), nullable=False, default="{}"
    )
    special_notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
        onupdate=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    unavailability: Mapped[List["CrewUnavailability"]] = relationship(
        back_populates="crew", cascade="all, delete-orphan"
    )

    @staticmethod
    def _load_mapping(payload: str) -> Dict[str, str]:
        try:
            value = json.loads(payload or "{}")
        except json.JSONDecodeError:
            return {}
        if not isinstance(value, dict):
            return {}
        return {str(key): str(label) for key, label in value.items() if label is not None}

    @property
    def venue_capabilities(self) -> Dict[str, str]:
        return self._load_mapping(self.venue_capabilities_json)

    @venue_capabilities.setter
    def venue_capabilities(self, mapping: Dict[str, str]) -> None:
        self.venue_capabilities_json = json.dumps(dict(mapping or {}), sort_keys=True)

    @property
    def vertical_capabilities(self) -> Dict[str, str]:
        return self._load_mapping(self.vertical_capabilities_json)

    @vertical_capabilities.setter
    def vertical_capabilities(self, mapping: Dict[str, str]) -> None:
        self.vertical_capabilities_json = json.dumps(dict(mapping or {}), sort_keys=True)

    @property
    def level_rank(self) -> int:
        return LEVEL_ORDER.get(self.level, len(LEVEL_ORDER))


class CrewUnavailability(CrewBase):
    __tablename__ = "crew_unavailability"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crew_id: Mapped[int] = mapped_column(ForeignKey("crew.id", ondelete="CASCADE"), nullable=False)
    unavailable_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    crew: Mapped[CrewMember] = relationship(back_populates="unavailability")

    __table_args__ = (
        UniqueConstraint("crew_id", "unavailable_date", name="uq_crew_unavailability_date"),
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    event_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    venue: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    venue_normalized: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    vertical: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    stage_crew_needed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    event_group: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manual_flag_reason: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    assignments: Mapped[List["Assignment"]] = relationship(
        back_populates="event",
        cascade="all, delete-orphan",
    )


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    crew_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(8), nullable=False)
    was_manually_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    event: Mapped[Event] = relationship(back_populates="assignments")

    __table_args__ = (UniqueConstraint("event_id", "crew_id", name="uq_assignment_event_crew"),)


class WorkloadHistory(Base):
    __tablename__ = "workload_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    crew_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    assignment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
        onupdate=lambda: datetime.datetime.now(datetime.timezone.utc),
    )

    __table_args__ = (UniqueConstraint("crew_id", "month", name="uq_workload_crew_month"),)


class WorkloadContribution(Base):
    """Per-batch share of the ledger, used when reruns must not double count."""

    __tablename__ = "workload_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    crew_id: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    assignment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("batch_id", "crew_id", "month", name="uq_contribution_batch_crew_month"),
    )


class Policy(PolicyBase):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


crew_engine = create_engine(
    CREW_DATABASE_URL,
    echo=False,
    future=True,
)
schedule_engine = create_engine(
    SCHEDULE_DATABASE_URL,
    echo=False,
    future=True,
)
policy_engine = create_engine(
    POLICY_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=schedule_engine, expire_on_commit=False, future=True)
CrewSessionLocal = sessionmaker(bind=crew_engine, expire_on_commit=False, future=True)
PolicySessionLocal = sessionmaker(bind=policy_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    CrewBase.metadata.create_all(crew_engine)
    Base.metadata.create_all(schedule_engine)
    PolicyBase.metadata.create_all(policy_engine)


def _coerce_crew_session(session):
    """Return (crew_session, should_close) ensuring we talk to the crew database."""
    if session is None:
        return CrewSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is schedule_engine:
        return CrewSessionLocal(), True
    return session, False


def _coerce_policy_session(session):
    """Return (policy_session, should_close) ensuring policy data stays in its own database."""
    PolicyBase.metadata.create_all(policy_engine)
    if session is None:
        return PolicySessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is schedule_engine or bind is crew_engine:
        return PolicySessionLocal(), True
    return session, False


# ---------------------------------------------------------------------------
# Policies


def get_policies(session) -> List[Policy]:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        stmt = select(Policy).order_by(Policy.name.asc(), Policy.id.asc())
        return list(policy_session.scalars(stmt))
    finally:
        if close_session:
            policy_session.close()


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        existing: Optional[Policy] = policy_session.execute(
            select(Policy).where(Policy.name == name)
        ).scalars().first()
        payload = params_dict if isinstance(params_dict, dict) else {}
        if existing:
            existing.paramsJSON = json.dumps(payload)
            existing.lastEditedBy = edited_by
            existing.lastEditedAt = datetime.datetime.now(datetime.timezone.utc)
            policy_session.commit()
            policy_session.refresh(existing)
            return existing
        policy = Policy(
            name=name,
            paramsJSON=json.dumps(payload),
            lastEditedBy=edited_by,
            lastEditedAt=datetime.datetime.now(datetime.timezone.utc),
        )
        policy_session.add(policy)
        policy_session.commit()
        policy_session.refresh(policy)
        return policy
    finally:
        if close_session:
            policy_session.close()


def get_active_policy(session) -> Optional[Policy]:
    policy_session, close_session = _coerce_policy_session(session)
    try:
        stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
        return policy_session.scalars(stmt).first()
    finally:
        if close_session:
            policy_session.close()


# ---------------------------------------------------------------------------
# Crew


def crew_to_dict(member: CrewMember) -> Dict[str, Any]:
    return {
        "id": member.id,
        "name": member.name,
        "level": member.level,
        "can_stage": bool(member.can_stage),
        "stage_only_if_urgent": bool(member.stage_only_if_urgent),
        "venue_capabilities": member.venue_capabilities,
        "vertical_capabilities": member.vertical_capabilities,
        "special_notes": member.special_notes,
    }


def get_all_crew(crew_session=None) -> List[CrewMember]:
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        stmt = select(CrewMember).order_by(CrewMember.id)
        return list(crew_session.scalars(stmt))
    finally:
        if close_session:
            crew_session.close()


def list_crew(crew_session=None) -> List[Dict[str, Any]]:
    members = get_all_crew(crew_session)
    members.sort(key=lambda member: (member.level_rank, member.name))
    return [crew_to_dict(member) for member in members]


def upsert_crew_member(crew_session, payload: Dict[str, Any]) -> CrewMember:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValueError("Crew member name is required.")
    level = payload.get("level") or "Junior"
    if level not in LEVEL_ORDER:
        raise ValueError(f"Unsupported crew level '{level}'.")
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        member: Optional[CrewMember] = None
        if payload.get("id"):
            member = crew_session.get(CrewMember, payload["id"])
            if not member:
                raise ValueError(f"Crew member with id {payload['id']} was not found.")
        else:
            member = crew_session.scalars(select(CrewMember).where(CrewMember.name == name)).first()
        if not member:
            member = CrewMember(name=name)
            crew_session.add(member)
        member.name = name
        member.level = level
        member.can_stage = bool(payload.get("can_stage", True))
        member.stage_only_if_urgent = bool(payload.get("stage_only_if_urgent", False))
        member.venue_capabilities = payload.get("venue_capabilities") or {}
        member.vertical_capabilities = payload.get("vertical_capabilities") or {}
        member.special_notes = payload.get("special_notes", "") or ""
        crew_session.commit()
        crew_session.refresh(member)
        return member
    finally:
        if close_session:
            crew_session.close()


def crew_name_map(crew_session=None) -> Dict[int, CrewMember]:
    return {member.id: member for member in get_all_crew(crew_session)}


# ---------------------------------------------------------------------------
# Unavailability


def load_unavailability_map(
    crew_session=None,
    dates: Optional[Iterable[datetime.date]] = None,
) -> Dict[datetime.date, Set[int]]:
    """Return {date: {crew_id, ...}} for the requested dates (all dates when omitted)."""
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        stmt = select(CrewUnavailability.crew_id, CrewUnavailability.unavailable_date)
        wanted = sorted(set(dates)) if dates is not None else None
        if wanted is not None:
            if not wanted:
                return {}
            stmt = stmt.where(CrewUnavailability.unavailable_date.in_(wanted))
        mapping: Dict[datetime.date, Set[int]] = {}
        for crew_id, unavailable_date in crew_session.execute(stmt):
            mapping.setdefault(unavailable_date, set()).add(crew_id)
        return mapping
    finally:
        if close_session:
            crew_session.close()


def list_unavailability(crew_session=None, month: Optional[str] = None) -> List[Dict[str, Any]]:
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        stmt = (
            select(CrewUnavailability, CrewMember.name)
            .join(CrewMember, CrewMember.id == CrewUnavailability.crew_id)
            .order_by(CrewUnavailability.unavailable_date, CrewMember.name)
        )
        if month:
            year, mon = (int(part) for part in month.split("-", 1))
            start = datetime.date(year, mon, 1)
            end = datetime.date(year + (mon // 12), (mon % 12) + 1, 1)
            stmt = stmt.where(
                CrewUnavailability.unavailable_date >= start,
                CrewUnavailability.unavailable_date < end,
            )
        payload = []
        for row, crew_name in crew_session.execute(stmt):
            payload.append(
                {
                    "id": row.id,
                    "crew_id": row.crew_id,
                    "crew_name": crew_name,
                    "unavailable_date": row.unavailable_date,
                    "reason": row.reason,
                }
            )
        return payload
    finally:
        if close_session:
            crew_session.close()


def _find_unavailability(crew_session, crew_id: int, day: datetime.date) -> Optional[CrewUnavailability]:
    stmt = select(CrewUnavailability).where(
        CrewUnavailability.crew_id == crew_id,
        CrewUnavailability.unavailable_date == day,
    )
    return crew_session.scalars(stmt).first()


def add_unavailability(crew_session, crew_id: int, unavailable_date: Any, reason: Optional[str] = None) -> bool:
    """Mark a crew member unavailable; returns False when the row already existed."""
    day = coerce_date(unavailable_date)
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        if _find_unavailability(crew_session, crew_id, day):
            return False
        crew_session.add(CrewUnavailability(crew_id=crew_id, unavailable_date=day, reason=reason or None))
        crew_session.commit()
        return True
    finally:
        if close_session:
            crew_session.close()


def remove_unavailability(crew_session, crew_id: int, unavailable_date: Any) -> bool:
    day = coerce_date(unavailable_date)
    crew_session, close_session = _coerce_crew_session(crew_session)
    try:
        result = crew_session.execute(
            delete(CrewUnavailability).where(
                CrewUnavailability.crew_id == crew_id,
                CrewUnavailability.unavailable_date == day,
            )
        )
        crew_session.commit()
        return bool(result.rowcount)
    finally:
        if close_session:
            crew_session.close()


def apply_unavailability_bulk(crew_session, entries: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    """Apply [{crew_id, unavailable_date, action}] entries in one transaction."""
    crew_session, close_session = _coerce_crew_session(crew_session)
    added = 0
    removed = 0
    try:
        for entry in entries or []:
            action = (entry.get("action") or "add").lower()
            if action not in UNAVAILABILITY_ACTIONS:
                raise ValueError(f"Unsupported unavailability action '{action}'.")
            crew_id = int(entry["crew_id"])
            day = coerce_date(entry["unavailable_date"])
            existing = _find_unavailability(crew_session, crew_id, day)
            if action == "add" and not existing:
                crew_session.add(
                    CrewUnavailability(crew_id=crew_id, unavailable_date=day, reason=entry.get("reason") or None)
                )
                crew_session.flush()
                added += 1
            elif action == "remove" and existing:
                crew_session.delete(existing)
                crew_session.flush()
                removed += 1
        crew_session.commit()
        return {"added": added, "removed": removed}
    except Exception:
        crew_session.rollback()
        raise
    finally:
        if close_session:
            crew_session.close()


# ---------------------------------------------------------------------------
# Events


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "batch_id": event.batch_id,
        "name": event.name,
        "event_date": event.event_date,
        "venue": event.venue,
        "venue_normalized": event.venue_normalized,
        "vertical": event.vertical,
        "stage_crew_needed": event.stage_crew_needed,
        "event_group": event.event_group,
        "needs_manual_review": bool(event.needs_manual_review),
        "manual_flag_reason": event.manual_flag_reason,
    }


def get_events_for_batch(session, batch_id: str) -> List[Event]:
    stmt = (
        select(Event)
        .where(Event.batch_id == batch_id)
        .order_by(Event.event_date, Event.name, Event.id)
    )
    return list(session.scalars(stmt))


def list_events(session, batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(Event).order_by(Event.event_date, Event.name, Event.id)
    if batch_id:
        stmt = stmt.where(Event.batch_id == batch_id)
    return [event_to_dict(event) for event in session.scalars(stmt)]


def update_stage_crew_needed(session, event_id: int, stage_crew_needed: int) -> Event:
    try:
        value = int(stage_crew_needed)
    except (TypeError, ValueError) as exc:
        raise ValueError("stage_crew_needed must be an integer.") from exc
    if value < 0:
        raise ValueError("stage_crew_needed cannot be negative.")
    event = session.get(Event, event_id)
    if not event:
        raise ValueError(f"Event with id {event_id} was not found.")
    event.stage_crew_needed = value
    session.commit()
    session.refresh(event)
    return event


# ---------------------------------------------------------------------------
# Assignments


def delete_assignments_for_events(session, event_ids: Iterable[int]) -> int:
    """Delete assignment rows for the events. Caller commits."""
    ids = list(event_ids)
    if not ids:
        return 0
    result = session.execute(delete(Assignment).where(Assignment.event_id.in_(ids)))
    return int(result.rowcount or 0)


def add_assignment_rows(
    session,
    event_id: int,
    rows: Iterable[Tuple[int, str]],
    *,
    overridden: bool = False,
) -> int:
    """Stage (crew_id, role) rows for an event. Caller commits."""
    count = 0
    for crew_id, role in rows:
        if role not in ROLE_CHOICES:
            raise ValueError(f"Unsupported assignment role '{role}'.")
        session.add(
            Assignment(
                event_id=event_id,
                crew_id=int(crew_id),
                role=role,
                was_manually_overridden=overridden,
            )
        )
        count += 1
    return count


def assignments_by_event(session, event_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
    """Return {event_id: {"foh": crew_id | None, "stage": [crew_id, ...], "overridden": bool}}."""
    ids = list(event_ids)
    mapping: Dict[int, Dict[str, Any]] = {
        event_id: {"foh": None, "stage": [], "overridden": False} for event_id in ids
    }
    if not ids:
        return mapping
    stmt = select(Assignment).where(Assignment.event_id.in_(ids)).order_by(Assignment.event_id, Assignment.id)
    for row in session.scalars(stmt):
        entry = mapping[row.event_id]
        if row.role == "FOH":
            entry["foh"] = row.crew_id
        else:
            entry["stage"].append(row.crew_id)
        if row.was_manually_overridden:
            entry["overridden"] = True
    return mapping


def get_assignments_for_batch(session, batch_id: str, *, crew_session=None) -> List[Dict[str, Any]]:
    events = {event.id: event for event in get_events_for_batch(session, batch_id)}
    if not events:
        return []
    crew = crew_name_map(crew_session)
    stmt = select(Assignment).where(Assignment.event_id.in_(list(events)))
    rows = []
    for assignment in session.scalars(stmt):
        event = events[assignment.event_id]
        member = crew.get(assignment.crew_id)
        rows.append(
            {
                "id": assignment.id,
                "event_id": event.id,
                "crew_id": assignment.crew_id,
                "role": assignment.role,
                "was_manually_overridden": bool(assignment.was_manually_overridden),
                "event_name": event.name,
                "event_date": event.event_date,
                "venue": event.venue,
                "vertical": event.vertical,
                "stage_crew_needed": event.stage_crew_needed,
                "event_group": event.event_group,
                "crew_name": member.name if member else None,
                "crew_level": member.level if member else None,
            }
        )
    # FOH rows before Stage rows within an event.
    rows.sort(key=lambda row: (row["event_date"], row["event_name"], row["event_id"], row["role"] != "FOH"))
    return rows


# ---------------------------------------------------------------------------
# Workload ledger


def load_workload_totals(session, months: Iterable[str]) -> Dict[int, int]:
    """Return {crew_id: summed assignment_count} across the given months."""
    keys = list(months)
    totals: Dict[int, int] = {}
    if not keys:
        return totals
    stmt = select(WorkloadHistory).where(WorkloadHistory.month.in_(keys))
    for row in session.scalars(stmt):
        totals[row.crew_id] = totals.get(row.crew_id, 0) + int(row.assignment_count or 0)
    return totals


def load_batch_contributions(session, batch_id: str) -> Dict[Tuple[int, str], int]:
    stmt = select(WorkloadContribution).where(WorkloadContribution.batch_id == batch_id)
    return {
        (row.crew_id, row.month): int(row.assignment_count or 0)
        for row in session.scalars(stmt)
    }


def _ledger_row(session, crew_id: int, month: str) -> WorkloadHistory:
    row = session.scalars(
        select(WorkloadHistory).where(WorkloadHistory.crew_id == crew_id, WorkloadHistory.month == month)
    ).first()
    if row is None:
        row = WorkloadHistory(crew_id=crew_id, month=month, assignment_count=0)
        session.add(row)
    return row


def merge_workload_deltas(
    session,
    month: str,
    deltas: Dict[int, int],
    *,
    mode: str = "additive",
    batch_id: Optional[str] = None,
) -> int:
    """Merge a run's per-crew deltas into the ledger. Caller commits.

    ``additive`` adds each delta onto the stored (crew, month) count.
    ``replace_batch`` first backs out whatever this batch contributed on a
    previous run, then records the new contribution against the batch id.
    """
    if mode not in {"additive", "replace_batch"}:
        raise ValueError(f"Unsupported workload merge mode '{mode}'.")
    touched = 0
    if mode == "replace_batch":
        if not batch_id:
            raise ValueError("batch_id is required for replace_batch merges.")
        for (crew_id, prior_month), count in load_batch_contributions(session, batch_id).items():
            row = _ledger_row(session, crew_id, prior_month)
            row.assignment_count = max(0, int(row.assignment_count or 0) - count)
            touched += 1
        session.execute(delete(WorkloadContribution).where(WorkloadContribution.batch_id == batch_id))
    for crew_id, delta in sorted(deltas.items()):
        if not delta:
            continue
        row = _ledger_row(session, crew_id, month)
        row.assignment_count = int(row.assignment_count or 0) + int(delta)
        if mode == "replace_batch":
            session.add(
                WorkloadContribution(batch_id=batch_id, crew_id=crew_id, month=month, assignment_count=int(delta))
            )
        session.flush()
        touched += 1
    return touched


def get_workload_report(session, month: str, *, crew_session=None) -> List[Dict[str, Any]]:
    counts = load_workload_totals(session, [month])
    members = get_all_crew(crew_session)
    members.sort(key=lambda member: (member.level_rank, member.name))
    return [
        {
            "crew_id": member.id,
            "name": member.name,
            "level": member.level,
            "assignments": counts.get(member.id, 0),
        }
        for member in members
    ]
