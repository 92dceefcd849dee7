from __future__ import annotations

import copy
from typing import Any, Dict, List

from database import get_active_policy, upsert_policy


WORKLOAD_MERGE_MODES = {"additive", "replace_batch"}

# Capability kinds understood by capabilities.Capability.
CAPABILITY_LABEL_DEFAULTS: Dict[str, str] = {
    "N": "ineligible",
    "Y": "eligible",
    "Y*": "specialist",
    "Exp only": "experimental_only",
}

VENUE_STAGE_DEFAULTS: Dict[str, int] = {
    "JBT": 2,
    "Tata": 2,
    "Experimental": 1,
    "Little Theatre": 1,
    "Godrej Dance": 1,
    "Others": 1,
}

BASELINE_POLICY: Dict[str, Any] = {
    "name": "Baseline Crew Rules",
    "capability_labels": CAPABILITY_LABEL_DEFAULTS,
    "experimental_venue": "Experimental",
    "fallback_venue": "Others",
    "venues": ["JBT", "Tata", "Experimental", "Little Theatre", "Godrej Dance", "Others"],
    "venue_aliases": {
        "jamshed bhabha theatre": "JBT",
        "jamshed bhabha": "JBT",
        "tata theatre": "Tata",
        "experimental theatre": "Experimental",
        "godrej dance theatre": "Godrej Dance",
    },
    "vertical_aliases": {
        "intl music": "Int'l Music",
        "international music": "Int'l Music",
        "indian music": "Indian Music",
        "theater": "Theatre",
    },
    "venue_stage_defaults": VENUE_STAGE_DEFAULTS,
    "default_stage_crew": 1,
    "scoring": {
        "foh": {
            "level_weight": 100,
            "workload_penalty": 5,
        },
        "stage": {
            "base": 500,
            "workload_penalty": 20,
            "not_urgent_bonus": 10,
            "hired_penalty": 300,
        },
    },
    "workload": {
        "window_months": 3,
        "merge_mode": "additive",
    },
}


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return build_default_policy()
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _normalize_policy(policy: Dict) -> Dict:
    """Layer a stored payload over the baseline so every rule table is present."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update(BASELINE_POLICY, policy)
    workload = normalized["workload"]
    try:
        workload["window_months"] = max(1, int(workload.get("window_months", 3)))
    except (TypeError, ValueError):
        workload["window_months"] = BASELINE_POLICY["workload"]["window_months"]
    if workload.get("merge_mode") not in WORKLOAD_MERGE_MODES:
        workload["merge_mode"] = BASELINE_POLICY["workload"]["merge_mode"]
    return normalized


def capability_labels(policy: Dict) -> Dict[str, str]:
    labels = policy.get("capability_labels") if isinstance(policy, dict) else None
    if isinstance(labels, dict) and labels:
        return dict(labels)
    return dict(CAPABILITY_LABEL_DEFAULTS)


def experimental_venue(policy: Dict) -> str:
    return str(policy.get("experimental_venue") or BASELINE_POLICY["experimental_venue"])


def known_venues(policy: Dict) -> List[str]:
    venues = policy.get("venues") if isinstance(policy, dict) else None
    if isinstance(venues, list) and venues:
        return [str(venue) for venue in venues]
    return list(BASELINE_POLICY["venues"])


def venue_stage_default(policy: Dict, venue: str) -> int:
    defaults = policy.get("venue_stage_defaults") if isinstance(policy, dict) else None
    if not isinstance(defaults, dict):
        defaults = VENUE_STAGE_DEFAULTS
    fallback = int(policy.get("default_stage_crew", 1) or 1) if isinstance(policy, dict) else 1
    try:
        return int(defaults.get(venue, fallback))
    except (TypeError, ValueError):
        return fallback


def foh_scoring(policy: Dict) -> Dict[str, float]:
    scoring = (policy.get("scoring") or {}).get("foh") if isinstance(policy, dict) else None
    return _deep_update(BASELINE_POLICY["scoring"]["foh"], scoring or {})


def stage_scoring(policy: Dict) -> Dict[str, float]:
    scoring = (policy.get("scoring") or {}).get("stage") if isinstance(policy, dict) else None
    return _deep_update(BASELINE_POLICY["scoring"]["stage"], scoring or {})


def workload_settings(policy: Dict) -> Dict[str, Any]:
    settings = policy.get("workload") if isinstance(policy, dict) else None
    return _normalize_policy({"workload": settings or {}})["workload"]


def build_default_policy() -> Dict[str, Any]:
    """Return a deepcopy so callers can mutate the policy safely."""
    return copy.deepcopy(BASELINE_POLICY)


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline policy exactly once so the engine can run end-to-end."""

    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Baseline Crew Rules")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")
