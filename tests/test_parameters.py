import unittest
from dataclasses import replace
from unittest import mock

import config
import parameters as pm
from errors import (
    CooldownOrderError,
    DailyCapTooHighError,
    ParameterValidationError,
    ThresholdOrderError,
)
from parameters import ParameterSet


class ParameterValidationTests(unittest.TestCase):
    def test_defaults_are_valid(self):
        params = pm.validate(ParameterSet())
        self.assertEqual(params.thresholds, (50, 200, 500, 1000))
        self.assertEqual(params.medium_cooldown, 12600)

    def test_threshold_order_enforced(self):
        bad = [
            dict(medium_threshold_bp=50),
            dict(large_threshold_bp=150),
            dict(extreme_threshold_bp=500),
            dict(small_threshold_bp=0),
            dict(extreme_threshold_bp=10_001),
        ]
        for updates in bad:
            with self.subTest(updates=updates):
                with self.assertRaises(ThresholdOrderError) as ctx:
                    pm.validate(replace(ParameterSet(), **updates))
                self.assertEqual(ctx.exception.kind, "fix_input")

    def test_cooldown_order_enforced(self):
        with self.assertRaises(CooldownOrderError):
            pm.validate(ParameterSet(min_cooldown=7200, max_cooldown=3600))
        with self.assertRaises(CooldownOrderError):
            pm.validate(ParameterSet(min_cooldown=-1))
        pm.validate(ParameterSet(min_cooldown=3600, max_cooldown=3600))

    def test_daily_cap_hard_ceiling(self):
        pm.validate(ParameterSet(daily_cap_bp=1000))
        with self.assertRaises(DailyCapTooHighError):
            pm.validate(ParameterSet(daily_cap_bp=1001))

    def test_rates_and_target_bounds(self):
        with self.assertRaises(ParameterValidationError):
            pm.validate(ParameterSet(large_rate_bp=10_001))
        with self.assertRaises(ParameterValidationError):
            pm.validate(ParameterSet(target_price=0))
        with self.assertRaises(ParameterValidationError):
            pm.validate(ParameterSet(small_rate_bp=1.5))

    def test_from_dict_merges_over_base(self):
        base = ParameterSet(daily_cap_bp=300)
        params = pm.from_dict({"small_rate_bp": "12", "max_cooldown": 7200}, base=base)
        self.assertEqual(params.small_rate_bp, 12)
        self.assertEqual(params.max_cooldown, 7200)
        self.assertEqual(params.daily_cap_bp, 300)

    def test_from_dict_rejects_unknown_and_garbage(self):
        with self.assertRaises(ParameterValidationError):
            pm.from_dict({"daily_cap": 100})
        with self.assertRaises(ParameterValidationError):
            pm.from_dict({"daily_cap_bp": "lots"})
        with self.assertRaises(ParameterValidationError):
            pm.from_dict({"daily_cap_bp": 99.5})
        with self.assertRaises(ParameterValidationError):
            pm.from_dict({"daily_cap_bp": True})

    def test_from_config_reads_settings(self):
        with mock.patch.object(config, "DAILY_CAP_BP", 150), mock.patch.object(config, "MIN_COOLDOWN_SEC", 900):
            params = pm.from_config()
        self.assertEqual(params.daily_cap_bp, 150)
        self.assertEqual(params.min_cooldown, 900)

    def test_to_dict_round_trip(self):
        params = ParameterSet(small_rate_bp=11, daily_cap_bp=250)
        self.assertEqual(pm.from_dict(params.to_dict()), params)


if __name__ == "__main__":
    unittest.main()
