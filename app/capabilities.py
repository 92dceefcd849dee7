from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from policy import CAPABILITY_LABEL_DEFAULTS


class Capability(enum.Enum):
    INELIGIBLE = "ineligible"
    ELIGIBLE = "eligible"
    SPECIALIST = "specialist"
    EXPERIMENTAL_ONLY = "experimental_only"


class Level(enum.Enum):
    SENIOR = "Senior"
    MID = "Mid"
    JUNIOR = "Junior"
    HIRED = "Hired"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS = {Level.SENIOR: 0, Level.MID: 1, Level.JUNIOR: 2, Level.HIRED: 3}


def parse_level(label: str) -> Level:
    try:
        return Level((label or "").strip())
    except ValueError as exc:
        raise ValueError(f"Unsupported crew level '{label}'.") from exc


def parse_capability(label: Optional[str], labels: Optional[Mapping[str, str]] = None) -> Capability:
    """Map a stored capability label ("Y", "Y*", "N", "Exp only") onto a Capability.

    Missing or blank labels mean the crew member was never cleared for that
    venue/vertical and are treated as ineligible.
    """
    if label is None:
        return Capability.INELIGIBLE
    text = str(label).strip()
    if not text:
        return Capability.INELIGIBLE
    mapping = labels if labels is not None else CAPABILITY_LABEL_DEFAULTS
    kind = mapping.get(text)
    if kind is None:
        raise ValueError(f"Unknown capability label '{label}'.")
    return Capability(kind)


@dataclass(frozen=True)
class CrewProfile:
    """Read-only snapshot of a crew member with parsed capability tables."""

    id: int
    name: str
    level: Level
    can_stage: bool
    stage_only_if_urgent: bool
    venue_capabilities: Dict[str, Capability] = field(default_factory=dict)
    vertical_capabilities: Dict[str, Capability] = field(default_factory=dict)

    @property
    def is_hired(self) -> bool:
        return self.level is Level.HIRED

    def venue_capability(self, venue: str) -> Capability:
        return self.venue_capabilities.get(venue, Capability.INELIGIBLE)

    def vertical_capability(self, vertical: str) -> Capability:
        return self.vertical_capabilities.get(vertical, Capability.INELIGIBLE)


def build_profile(member: Any, labels: Optional[Mapping[str, str]] = None) -> CrewProfile:
    """Snapshot a CrewMember row (or anything shaped like one)."""
    try:
        venue_caps = {
            venue: parse_capability(label, labels)
            for venue, label in (member.venue_capabilities or {}).items()
        }
        vertical_caps = {
            vertical: parse_capability(label, labels)
            for vertical, label in (member.vertical_capabilities or {}).items()
        }
        level = parse_level(member.level)
    except ValueError as exc:
        raise ValueError(f"Crew member {member.id} ({member.name}): {exc}") from exc
    return CrewProfile(
        id=int(member.id),
        name=member.name,
        level=level,
        can_stage=bool(member.can_stage),
        stage_only_if_urgent=bool(member.stage_only_if_urgent),
        venue_capabilities=venue_caps,
        vertical_capabilities=vertical_caps,
    )


@dataclass(frozen=True)
class FohCapability:
    can: bool
    is_specialist: bool = False


NOT_CAPABLE = FohCapability(can=False, is_specialist=False)


def venue_allows_foh(crew: CrewProfile, venue: str) -> bool:
    return crew.venue_capability(venue) is not Capability.INELIGIBLE


def can_do_foh(crew: CrewProfile, venue: str, vertical: str, *, experimental_venue: str = "Experimental") -> FohCapability:
    """Decide FOH eligibility for a venue + vertical.

    Hired crew are excluded by the caller, not here.
    """
    venue_cap = crew.venue_capability(venue)
    vertical_cap = crew.vertical_capability(vertical)
    if venue_cap is Capability.INELIGIBLE or vertical_cap is Capability.INELIGIBLE:
        return NOT_CAPABLE
    if vertical_cap is Capability.EXPERIMENTAL_ONLY:
        if venue == experimental_venue:
            return FohCapability(can=True, is_specialist=False)
        return NOT_CAPABLE
    if vertical_cap in (Capability.ELIGIBLE, Capability.SPECIALIST):
        return FohCapability(
            can=True,
            is_specialist=Capability.SPECIALIST in (venue_cap, vertical_cap),
        )
    raise ValueError(f"Unhandled vertical capability {vertical_cap!r}.")


def can_do_stage(crew: CrewProfile) -> bool:
    return crew.can_stage
