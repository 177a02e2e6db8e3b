import unittest
from dataclasses import replace

import state_machine as sm
from deviation_detector import ResponseLevel
from errors import EmergencyHaltedError, InCooldownError
from parameters import ParameterSet


class StabilizationStateMachineTests(unittest.TestCase):
    def setUp(self):
        self.params = ParameterSet(min_cooldown=3600, max_cooldown=21600)
        self.st = sm.initial_state(self.params, 1000)

    def test_initial_state_is_active_ready_and_bounded(self):
        self.assertEqual(self.st.current_cooldown, 3600)
        self.assertEqual(self.st.daily_reset_at, 1000)
        self.assertIsNone(self.st.last_action_time)
        self.assertTrue(sm.is_active(self.st))
        self.assertTrue(sm.is_ready(self.st, 1000))
        self.assertEqual(sm.check_invariants(self.st, self.params), [])
        sm.try_begin(self.st, 1000)

    def test_commit_picks_cooldown_by_level(self):
        expected = {
            ResponseLevel.SMALL: 3600,
            ResponseLevel.MEDIUM: 12600,
            ResponseLevel.LARGE: 21600,
            ResponseLevel.EXTREME: 21600,
        }
        for level, cooldown in expected.items():
            with self.subTest(level=level.name):
                st, _ = sm.commit(self.st, self.params, 5000, level, 103_000_000, 24)
                self.assertEqual(st.current_cooldown, cooldown)
                self.assertEqual(st.last_action_time, 5000)
                self.assertEqual(st.last_price_checked, 103_000_000)
                self.assertEqual(st.daily_used_bp, 24)
                self.assertEqual(sm.check_invariants(st, self.params), [])

    def test_commit_reports_cooldown_change_only_when_it_changes(self):
        _, notices = sm.commit(self.st, self.params, 5000, ResponseLevel.SMALL, 1, 1)
        self.assertEqual(notices, [])
        _, notices = sm.commit(self.st, self.params, 5000, ResponseLevel.LARGE, 1, 1)
        self.assertEqual([n.event_type for n in notices], ["cooldown_adjusted"])
        self.assertEqual(notices[0].details["cooldown"], 21600)

    def test_cooldown_gate(self):
        st, _ = sm.commit(self.st, self.params, 5000, ResponseLevel.MEDIUM, 1, 10)
        self.assertEqual(sm.next_eligible_time(st), 17600)
        with self.assertRaises(InCooldownError) as ctx:
            sm.try_begin(st, 17599)
        self.assertEqual(ctx.exception.details["remaining"], 1)
        sm.try_begin(st, 17600)

    def test_action_at_time_zero_still_cools_down(self):
        st = sm.initial_state(self.params, 0)
        st, _ = sm.commit(st, self.params, 0, ResponseLevel.SMALL, 1, 1)
        with self.assertRaises(InCooldownError):
            sm.try_begin(st, 1)

    def test_halt_gate_wins_over_cooldown(self):
        st, _ = sm.commit(self.st, self.params, 5000, ResponseLevel.MEDIUM, 1, 10)
        st, notices = sm.halt(st, "oracle incident")
        self.assertEqual([n.event_type for n in notices], ["halt"])
        with self.assertRaises(EmergencyHaltedError):
            sm.try_begin(st, 10**9)

    def test_resume_keeps_clock_and_budget(self):
        st, _ = sm.commit(self.st, self.params, 5000, ResponseLevel.LARGE, 1, 75)
        halted, _ = sm.halt(st, "manual")
        resumed, notices = sm.resume(halted)
        self.assertEqual([n.event_type for n in notices], ["resume"])
        self.assertFalse(resumed.halted)
        self.assertEqual(resumed.current_cooldown, st.current_cooldown)
        self.assertEqual(resumed.last_action_time, st.last_action_time)
        self.assertEqual(resumed.daily_used_bp, 75)
        with self.assertRaises(InCooldownError):
            sm.try_begin(resumed, 5001)

    def test_halt_and_resume_are_idempotent(self):
        st, _ = sm.halt(self.st, "x")
        again, notices = sm.halt(st, "x")
        self.assertIs(again, st)
        self.assertEqual(notices, [])
        _, notices = sm.resume(self.st)
        self.assertEqual(notices, [])

    def test_halt_without_reason_gets_default(self):
        st, _ = sm.halt(self.st, "  ")
        self.assertEqual(st.halt_reason, "emergency halt")
        self.assertEqual(sm.check_invariants(st, self.params), [])

    def test_daily_reset_window(self):
        st = replace(self.st, daily_used_bp=150)
        same, notices = sm.maybe_reset_daily(st, 1000 + 86_399)
        self.assertIs(same, st)
        self.assertEqual(notices, [])

        reset, notices = sm.maybe_reset_daily(st, 1000 + 86_401)
        self.assertEqual(reset.daily_used_bp, 0)
        self.assertEqual(reset.daily_reset_at, 1000 + 86_401)
        self.assertEqual(notices[0].event_type, "daily_reset")
        self.assertEqual(notices[0].details["previous_used_bp"], 150)

        # Idempotent once applied.
        again, notices = sm.maybe_reset_daily(reset, 1000 + 86_402)
        self.assertIs(again, reset)
        self.assertEqual(notices, [])

    def test_effective_daily_used_anticipates_reset(self):
        st = replace(self.st, daily_used_bp=120)
        self.assertEqual(sm.effective_daily_used(st, 2000), 120)
        self.assertEqual(sm.effective_daily_used(st, 1000 + 86_400), 0)

    def test_rebound_cooldown_after_bounds_change(self):
        st, _ = sm.commit(self.st, self.params, 5000, ResponseLevel.LARGE, 1, 1)
        tighter = ParameterSet(min_cooldown=600, max_cooldown=7200)
        bounded, notices = sm.rebound_cooldown(st, tighter)
        self.assertEqual(bounded.current_cooldown, 7200)
        self.assertEqual(notices[0].event_type, "cooldown_adjusted")
        self.assertEqual(sm.check_invariants(bounded, tighter), [])

        unchanged, notices = sm.rebound_cooldown(bounded, tighter)
        self.assertIs(unchanged, bounded)
        self.assertEqual(notices, [])

    def test_invariant_violations_reported(self):
        st = replace(self.st, current_cooldown=10, daily_used_bp=500)
        violations = sm.check_invariants(st, self.params)
        self.assertEqual(len(violations), 2)

    def test_snapshot_dict_round_trip(self):
        st, _ = sm.commit(self.st, self.params, 5000, ResponseLevel.MEDIUM, 103_000_000, 24)
        st, _ = sm.halt(st, "maintenance")
        self.assertEqual(sm.from_dict(sm.to_dict(st)), st)
        self.assertEqual(sm.from_dict(sm.to_dict(self.st)), self.st)


if __name__ == "__main__":
    unittest.main()
