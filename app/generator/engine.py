from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from capabilities import (
    Capability,
    CrewProfile,
    Level,
    build_profile,
    can_do_foh,
    can_do_stage,
    venue_allows_foh,
)
from database import (
    Event,
    add_assignment_rows,
    delete_assignments_for_events,
    get_all_crew,
    get_events_for_batch,
    load_batch_contributions,
    load_unavailability_map,
    load_workload_totals,
    merge_workload_deltas,
    month_key,
    trailing_months,
)
from policy import (
    capability_labels,
    experimental_venue,
    foh_scoring,
    stage_scoring,
    workload_settings,
)

logger = logging.getLogger(__name__)

ROLE_FOH = "FOH"
ROLE_STAGE = "Stage"
CONFLICT_MANUAL = "Manual"
CONFLICT_FOH = "FOH"
CONFLICT_STAGE = "Stage"
NO_FOH_REASON = "No qualified FOH available"
DEFAULT_MANUAL_REASON = "Flagged for manual review"


class AssignmentPersistenceError(RuntimeError):
    """A write failed mid-run; the batch needs a full rerun."""


@dataclass(frozen=True)
class Conflict:
    event_id: int
    event_name: str
    type: str
    reason: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_name": self.event_name,
            "type": self.type,
            "reason": self.reason,
        }


class AvailabilityTracker:
    """Per-date unavailability (static) plus reservations made during the run."""

    def __init__(self, unavailable: Optional[Dict[datetime.date, Set[int]]] = None) -> None:
        self.unavailable: Dict[datetime.date, Set[int]] = {
            day: set(ids) for day, ids in (unavailable or {}).items()
        }
        self.reserved: Dict[datetime.date, Set[int]] = defaultdict(set)

    def is_available(self, crew_id: int, dates: Iterable[datetime.date]) -> bool:
        for day in dates:
            if crew_id in self.unavailable.get(day, ()):
                return False
            if crew_id in self.reserved.get(day, ()):
                return False
        return True

    def reserve(self, crew_id: int, dates: Iterable[datetime.date]) -> None:
        for day in dates:
            self.reserved[day].add(crew_id)

    def reserved_on(self, day: datetime.date) -> Set[int]:
        return set(self.reserved.get(day, ()))


class WorkloadLedger:
    """Rolling workload per crew member, mutated in place as picks are made."""

    def __init__(self, month: str, rolling: Optional[Dict[int, int]] = None) -> None:
        self.month = month
        self.rolling: Dict[int, int] = dict(rolling or {})
        self.deltas: Dict[int, int] = {}

    def rolling_workload(self, crew_id: int) -> int:
        return self.rolling.get(crew_id, 0)

    def record(self, crew_id: int, days: int) -> None:
        self.rolling[crew_id] = self.rolling.get(crew_id, 0) + days
        self.deltas[crew_id] = self.deltas.get(crew_id, 0) + days

    def nonzero_deltas(self) -> Dict[int, int]:
        return {crew_id: delta for crew_id, delta in self.deltas.items() if delta}


class SpecialistRotation:
    """Round-robin over each vertical's "Y*" crew, senior first."""

    def __init__(self, crew: Sequence[CrewProfile]) -> None:
        self.crew = list(crew)
        self.cursors: Dict[str, int] = {}
        self._rosters: Dict[str, List[CrewProfile]] = {}

    def roster(self, vertical: str) -> List[CrewProfile]:
        if vertical not in self._rosters:
            members = [
                member
                for member in self.crew
                if not member.is_hired and member.vertical_capability(vertical) is Capability.SPECIALIST
            ]
            members.sort(key=lambda member: (member.level.rank, member.id))
            self._rosters[vertical] = members
        return self._rosters[vertical]

    def next_specialist(
        self,
        vertical: str,
        venue: str,
        dates: Sequence[datetime.date],
        availability: AvailabilityTracker,
    ) -> Optional[CrewProfile]:
        candidates = [
            member
            for member in self.roster(vertical)
            if availability.is_available(member.id, dates) and venue_allows_foh(member, venue)
        ]
        if not candidates:
            return None
        cursor = self.cursors.get(vertical, 0)
        index = cursor % len(candidates)
        self.cursors[vertical] = (index + 1) % len(candidates)
        return candidates[index]


@dataclass
class GroupPick:
    """Crew chosen once for an event (or the first event of a group)."""

    dates: List[datetime.date]
    foh_id: Optional[int] = None
    foh_specialist: bool = False
    stage_ids: List[int] = field(default_factory=list)
    stage_needed: int = 0
    manual_review: bool = False
    conflicts: List[Tuple[str, str]] = field(default_factory=list)


@dataclass
class RunContext:
    batch_id: str
    month: str
    availability: AvailabilityTracker
    workload: WorkloadLedger
    rotation: SpecialistRotation
    group_picks: Dict[str, GroupPick] = field(default_factory=dict)
    assignments: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    rows_written: int = 0

    def record_conflict(self, event: Event, conflict_type: str, reason: str) -> Conflict:
        conflict = Conflict(event_id=event.id, event_name=event.name, type=conflict_type, reason=reason)
        self.conflicts.append(conflict)
        logger.warning("Conflict on event %s (%s): %s - %s", event.id, event.name, conflict_type, reason)
        return conflict


def order_events(events: Iterable[Event]) -> List[Event]:
    """Grouped productions first, then by date; name/id keep the order stable."""
    return sorted(events, key=lambda event: (event.event_group is None, event.event_date, event.name, event.id))


def group_events(events: Iterable[Event]) -> Dict[str, List[Event]]:
    groups: Dict[str, List[Event]] = defaultdict(list)
    for event in events:
        if event.event_group:
            groups[event.event_group].append(event)
    for members in groups.values():
        members.sort(key=lambda event: (event.event_date, event.id))
    return dict(groups)


def event_dates(members: Iterable[Event]) -> List[datetime.date]:
    return sorted({event.event_date for event in members})


def reference_month(events: Sequence[Event], today: Optional[datetime.date] = None) -> str:
    if events:
        return month_key(min(event.event_date for event in events))
    return month_key(today or datetime.date.today())


class CrewAssignmentEngine:
    def __init__(
        self,
        session,
        policy: Dict,
        *,
        crew_session=None,
    ) -> None:
        self.session = session
        self.crew_session = crew_session
        self.policy = policy or {}
        self.capability_labels = capability_labels(self.policy)
        self.experimental_venue = experimental_venue(self.policy)
        self.foh_weights = foh_scoring(self.policy)
        self.stage_weights = stage_scoring(self.policy)
        workload_cfg = workload_settings(self.policy)
        self.window_months: int = int(workload_cfg["window_months"])
        self.merge_mode: str = workload_cfg["merge_mode"]
        self.crew: List[CrewProfile] = []
        self.crew_lookup: Dict[int, CrewProfile] = {}

    # ------------------------------------------------------------------
    # Entry point

    def run(self, batch_id: str, *, today: Optional[datetime.date] = None) -> Dict[str, Any]:
        if not batch_id:
            raise ValueError("batch_id is required.")
        events = get_events_for_batch(self.session, batch_id)
        self.crew = self._load_crew_profiles()
        self.crew_lookup = {member.id: member for member in self.crew}
        month = reference_month(events, today)
        unavailable = load_unavailability_map(self.crew_session, {event.event_date for event in events})
        ctx = RunContext(
            batch_id=batch_id,
            month=month,
            availability=AvailabilityTracker(unavailable),
            workload=WorkloadLedger(month, self._load_rolling_workload(batch_id, month)),
            rotation=SpecialistRotation(self.crew),
        )
        logger.info(
            "Running crew assignment for batch %s: %d events, %d crew, month %s",
            batch_id,
            len(events),
            len(self.crew),
            month,
        )
        try:
            deleted = delete_assignments_for_events(self.session, [event.id for event in events])
            self.session.flush()
            if deleted:
                logger.debug("Cleared %d existing assignment rows for batch %s", deleted, batch_id)
            groups = group_events(events)
            for event in order_events(events):
                self._process_event(ctx, event, groups)
            deltas = ctx.workload.nonzero_deltas()
            merge_workload_deltas(
                self.session,
                month,
                deltas,
                mode=self.merge_mode,
                batch_id=batch_id,
            )
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning("Assignment run for batch %s failed while writing: %s", batch_id, exc)
            raise AssignmentPersistenceError(
                f"Failed to persist assignments for batch {batch_id}; rerun the batch."
            ) from exc
        summary = self._build_summary(ctx, events, deltas)
        logger.info(
            "Batch %s assigned: %d events, %d rows, %d conflicts",
            batch_id,
            len(events),
            ctx.rows_written,
            len(ctx.conflicts),
        )
        return summary

    # ------------------------------------------------------------------
    # Loading

    def _load_crew_profiles(self) -> List[CrewProfile]:
        return [build_profile(member, self.capability_labels) for member in get_all_crew(self.crew_session)]

    def _load_rolling_workload(self, batch_id: str, month: str) -> Dict[int, int]:
        months = trailing_months(month, self.window_months)
        totals = load_workload_totals(self.session, months)
        if self.merge_mode == "replace_batch":
            # A rerun must not see its own previous contribution.
            window = set(months)
            for (crew_id, prior_month), count in load_batch_contributions(self.session, batch_id).items():
                if prior_month in window:
                    totals[crew_id] = max(0, totals.get(crew_id, 0) - count)
        return totals

    # ------------------------------------------------------------------
    # Per-event processing

    def _process_event(self, ctx: RunContext, event: Event, groups: Dict[str, List[Event]]) -> None:
        group_key = event.event_group
        reused = False
        if group_key and group_key in ctx.group_picks:
            pick = ctx.group_picks[group_key]
            reused = True
            for crew_id in self._picked_ids(pick):
                ctx.availability.reserve(crew_id, [event.event_date])
        else:
            members = groups.get(group_key, [event]) if group_key else [event]
            pick = self._select_for_group(ctx, event, members)
            if group_key:
                ctx.group_picks[group_key] = pick
        for conflict_type, reason in pick.conflicts:
            ctx.record_conflict(event, conflict_type, reason)
        self._persist_event_rows(ctx, event, pick)
        ctx.assignments.append(self._event_payload(event, pick, reused=reused))

    def _select_for_group(self, ctx: RunContext, event: Event, members: List[Event]) -> GroupPick:
        dates = event_dates(members)
        pick = GroupPick(dates=dates)
        flagged = [member for member in members if member.needs_manual_review]
        if flagged:
            reason = next((member.manual_flag_reason for member in flagged if member.manual_flag_reason), "")
            pick.manual_review = True
            pick.conflicts.append((CONFLICT_MANUAL, reason or DEFAULT_MANUAL_REASON))
            return pick

        venue = event.venue_normalized or event.venue
        foh, is_specialist = self._select_foh(ctx, venue, event.vertical, dates)
        if foh is None:
            pick.conflicts.append((CONFLICT_FOH, NO_FOH_REASON))
        else:
            pick.foh_id = foh.id
            pick.foh_specialist = is_specialist
            self._commit_pick(ctx, foh.id, dates)
            logger.debug(
                "FOH for %s (%s): %s%s",
                event.name,
                ", ".join(day.isoformat() for day in dates),
                foh.name,
                " [specialist]" if is_specialist else "",
            )

        pick.stage_needed = int(event.stage_crew_needed or 0) - 1
        if pick.stage_needed > 0:
            stage = self._select_stage(ctx, dates, pick.stage_needed, exclude=pick.foh_id)
            for member in stage:
                self._commit_pick(ctx, member.id, dates)
            pick.stage_ids = [member.id for member in stage]
            if len(stage) < pick.stage_needed:
                pick.conflicts.append(
                    (CONFLICT_STAGE, f"Only {len(stage)}/{pick.stage_needed} crew available")
                )
        return pick

    def _commit_pick(self, ctx: RunContext, crew_id: int, dates: Sequence[datetime.date]) -> None:
        ctx.availability.reserve(crew_id, dates)
        ctx.workload.record(crew_id, len(dates))

    # ------------------------------------------------------------------
    # Selection

    def _select_foh(
        self,
        ctx: RunContext,
        venue: str,
        vertical: str,
        dates: Sequence[datetime.date],
    ) -> Tuple[Optional[CrewProfile], bool]:
        specialist = ctx.rotation.next_specialist(vertical, venue, dates, ctx.availability)
        if specialist is not None:
            return specialist, True
        candidates: List[Tuple[float, int, CrewProfile, bool]] = []
        for member in self.crew:
            if member.is_hired:
                continue
            if not ctx.availability.is_available(member.id, dates):
                continue
            capability = can_do_foh(member, venue, vertical, experimental_venue=self.experimental_venue)
            if not capability.can:
                continue
            score = self._foh_score(member, ctx.workload)
            candidates.append((score, member.id, member, capability.is_specialist))
        if not candidates:
            return None, False
        candidates.sort(key=lambda item: (-item[0], item[1]))
        _, _, chosen, is_specialist = candidates[0]
        return chosen, is_specialist

    def _foh_score(self, member: CrewProfile, workload: WorkloadLedger) -> float:
        level_weight = float(self.foh_weights["level_weight"])
        penalty = float(self.foh_weights["workload_penalty"])
        return (Level.HIRED.rank - member.level.rank) * level_weight - workload.rolling_workload(member.id) * penalty

    def _select_stage(
        self,
        ctx: RunContext,
        dates: Sequence[datetime.date],
        needed: int,
        *,
        exclude: Optional[int] = None,
    ) -> List[CrewProfile]:
        candidates: List[Tuple[float, int, CrewProfile]] = []
        for member in self.crew:
            if not can_do_stage(member):
                continue
            if exclude is not None and member.id == exclude:
                continue
            if not ctx.availability.is_available(member.id, dates):
                continue
            candidates.append((self._stage_score(member, ctx.workload), member.id, member))
        candidates.sort(key=lambda item: (-item[0], item[1]))
        return [member for _, _, member in candidates[:needed]]

    def _stage_score(self, member: CrewProfile, workload: WorkloadLedger) -> float:
        weights = self.stage_weights
        score = float(weights["base"]) - workload.rolling_workload(member.id) * float(weights["workload_penalty"])
        if not member.stage_only_if_urgent:
            score += float(weights["not_urgent_bonus"])
        if member.is_hired:
            score -= float(weights["hired_penalty"])
        return score

    # ------------------------------------------------------------------
    # Output

    @staticmethod
    def _picked_ids(pick: GroupPick) -> List[int]:
        ids = [pick.foh_id] if pick.foh_id is not None else []
        return ids + list(pick.stage_ids)

    def _persist_event_rows(self, ctx: RunContext, event: Event, pick: GroupPick) -> None:
        rows: List[Tuple[int, str]] = []
        if pick.foh_id is not None:
            rows.append((pick.foh_id, ROLE_FOH))
        rows.extend((crew_id, ROLE_STAGE) for crew_id in pick.stage_ids)
        ctx.rows_written += add_assignment_rows(self.session, event.id, rows)
        self.session.flush()

    def _event_payload(self, event: Event, pick: GroupPick, *, reused: bool) -> Dict[str, Any]:
        foh = self.crew_lookup.get(pick.foh_id) if pick.foh_id is not None else None
        conflict_types = {conflict_type for conflict_type, _ in pick.conflicts}
        return {
            "event_id": event.id,
            "event_name": event.name,
            "event_date": event.event_date,
            "venue": event.venue_normalized or event.venue,
            "vertical": event.vertical,
            "event_group": event.event_group,
            "group_dates": list(pick.dates),
            "foh": pick.foh_id,
            "foh_name": foh.name if foh else None,
            "foh_level": foh.level.value if foh else None,
            "foh_specialist": pick.foh_specialist,
            "stage": list(pick.stage_ids),
            "stage_names": [
                self.crew_lookup[crew_id].name for crew_id in pick.stage_ids if crew_id in self.crew_lookup
            ],
            "stage_needed": max(0, pick.stage_needed),
            "manual_review": pick.manual_review,
            "foh_conflict": CONFLICT_FOH in conflict_types,
            "stage_conflict": CONFLICT_STAGE in conflict_types,
            "reused_group_pick": reused,
        }

    def _build_summary(self, ctx: RunContext, events: List[Event], deltas: Dict[int, int]) -> Dict[str, Any]:
        warnings = [f"{conflict.event_name}: {conflict.reason}" for conflict in ctx.conflicts]
        if not events:
            warnings.append(f"Batch {ctx.batch_id} has no events to assign.")
        return {
            "batch_id": ctx.batch_id,
            "month": ctx.month,
            "events_processed": len(events),
            "rows_written": ctx.rows_written,
            "assignments": ctx.assignments,
            "conflicts": [conflict.as_dict() for conflict in ctx.conflicts],
            "workload_deltas": dict(sorted(deltas.items())),
            "merge_mode": self.merge_mode,
            "warnings": warnings,
        }
