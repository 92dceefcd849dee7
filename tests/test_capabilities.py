from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
import unittest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from capabilities import (  # noqa: E402
    Capability,
    CrewProfile,
    Level,
    build_profile,
    can_do_foh,
    can_do_stage,
    parse_capability,
    parse_level,
)
from policy import (  # noqa: E402
    build_default_policy,
    capability_labels,
    load_active_policy,
    venue_stage_default,
    workload_settings,
    _normalize_policy,
)


def _profile(venues=None, verticals=None, level=Level.SENIOR, can_stage=True) -> CrewProfile:
    return CrewProfile(
        id=1,
        name="Crew",
        level=level,
        can_stage=can_stage,
        stage_only_if_urgent=False,
        venue_capabilities=venues or {},
        vertical_capabilities=verticals or {},
    )


class CapabilityParsingTests(unittest.TestCase):
    def test_known_labels(self) -> None:
        self.assertIs(parse_capability("Y"), Capability.ELIGIBLE)
        self.assertIs(parse_capability("Y*"), Capability.SPECIALIST)
        self.assertIs(parse_capability(" N "), Capability.INELIGIBLE)
        self.assertIs(parse_capability("Exp only"), Capability.EXPERIMENTAL_ONLY)

    def test_missing_labels_are_ineligible(self) -> None:
        self.assertIs(parse_capability(None), Capability.INELIGIBLE)
        self.assertIs(parse_capability(""), Capability.INELIGIBLE)

    def test_unknown_label_raises(self) -> None:
        with self.assertRaises(ValueError):
            parse_capability("Maybe")

    def test_policy_can_extend_labels(self) -> None:
        labels = dict(capability_labels(build_default_policy()), **{"Lead": "specialist"})
        self.assertIs(parse_capability("Lead", labels), Capability.SPECIALIST)

    def test_levels_rank_by_seniority(self) -> None:
        self.assertEqual([level.rank for level in Level], [0, 1, 2, 3])
        self.assertIs(parse_level("Hired"), Level.HIRED)
        with self.assertRaises(ValueError):
            parse_level("Intern")

    def test_build_profile_names_the_offending_member(self) -> None:
        member = SimpleNamespace(
            id=7,
            name="Kavya",
            level="Mid",
            can_stage=True,
            stage_only_if_urgent=False,
            venue_capabilities={"JBT": "Y"},
            vertical_capabilities={"Dance": "Sometimes"},
        )
        with self.assertRaisesRegex(ValueError, "Crew member 7 \\(Kavya\\)"):
            build_profile(member)

    def test_build_profile_parses_tables(self) -> None:
        member = SimpleNamespace(
            id=3,
            name="Lata",
            level="Junior",
            can_stage=False,
            stage_only_if_urgent=True,
            venue_capabilities={"JBT": "Y*"},
            vertical_capabilities={"Dance": "Y", "Theatre": "N"},
        )
        profile = build_profile(member)
        self.assertIs(profile.venue_capability("JBT"), Capability.SPECIALIST)
        self.assertIs(profile.vertical_capability("Theatre"), Capability.INELIGIBLE)
        self.assertIs(profile.vertical_capability("Opera"), Capability.INELIGIBLE)
        self.assertFalse(can_do_stage(profile))


class CanDoFohTests(unittest.TestCase):
    def test_requires_both_venue_and_vertical(self) -> None:
        crew = _profile({"JBT": Capability.ELIGIBLE}, {"Dance": Capability.ELIGIBLE})
        self.assertTrue(can_do_foh(crew, "JBT", "Dance").can)
        self.assertFalse(can_do_foh(crew, "Tata", "Dance").can)
        self.assertFalse(can_do_foh(crew, "JBT", "Theatre").can)

    def test_specialist_from_either_table(self) -> None:
        venue_star = _profile({"JBT": Capability.SPECIALIST}, {"Dance": Capability.ELIGIBLE})
        vertical_star = _profile({"JBT": Capability.ELIGIBLE}, {"Dance": Capability.SPECIALIST})
        plain = _profile({"JBT": Capability.ELIGIBLE}, {"Dance": Capability.ELIGIBLE})
        self.assertTrue(can_do_foh(venue_star, "JBT", "Dance").is_specialist)
        self.assertTrue(can_do_foh(vertical_star, "JBT", "Dance").is_specialist)
        self.assertFalse(can_do_foh(plain, "JBT", "Dance").is_specialist)

    def test_experimental_only_vertical(self) -> None:
        crew = _profile(
            {"Experimental": Capability.SPECIALIST, "JBT": Capability.ELIGIBLE},
            {"Int'l Music": Capability.EXPERIMENTAL_ONLY},
        )
        at_experimental = can_do_foh(crew, "Experimental", "Int'l Music")
        self.assertTrue(at_experimental.can)
        self.assertFalse(at_experimental.is_specialist)
        self.assertFalse(can_do_foh(crew, "JBT", "Int'l Music").can)

    def test_experimental_venue_is_configurable(self) -> None:
        crew = _profile({"Studio": Capability.ELIGIBLE}, {"Int'l Music": Capability.EXPERIMENTAL_ONLY})
        self.assertTrue(can_do_foh(crew, "Studio", "Int'l Music", experimental_venue="Studio").can)
        self.assertFalse(can_do_foh(crew, "Studio", "Int'l Music").can)

    def test_experimental_venue_still_needs_venue_clearance(self) -> None:
        crew = _profile({}, {"Int'l Music": Capability.EXPERIMENTAL_ONLY})
        self.assertFalse(can_do_foh(crew, "Experimental", "Int'l Music").can)


class PolicyDefaultsTests(unittest.TestCase):
    def test_load_without_connection_returns_baseline(self) -> None:
        self.assertEqual(load_active_policy(None), build_default_policy())

    def test_stored_overrides_are_layered_over_baseline(self) -> None:
        policy = _normalize_policy({"scoring": {"foh": {"workload_penalty": 9}}, "workload": {"merge_mode": "bogus"}})
        self.assertEqual(policy["scoring"]["foh"], {"level_weight": 100, "workload_penalty": 9})
        self.assertEqual(policy["scoring"]["stage"]["hired_penalty"], 300)
        self.assertEqual(policy["workload"]["merge_mode"], "additive")

    def test_workload_window_is_clamped(self) -> None:
        self.assertEqual(workload_settings({"workload": {"window_months": 0}})["window_months"], 1)
        self.assertEqual(workload_settings({"workload": {"window_months": "x"}})["window_months"], 3)

    def test_venue_stage_defaults(self) -> None:
        policy = build_default_policy()
        self.assertEqual(venue_stage_default(policy, "JBT"), 2)
        self.assertEqual(venue_stage_default(policy, "Experimental"), 1)
        self.assertEqual(venue_stage_default(policy, "Rooftop"), 1)
        policy["default_stage_crew"] = 3
        self.assertEqual(venue_stage_default(policy, "Rooftop"), 3)


if __name__ == "__main__":
    unittest.main()
