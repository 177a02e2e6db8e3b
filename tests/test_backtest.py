import contextlib
import io
import json
import os
import tempfile
import unittest

import backtest
import deviation_detector as dd
from backtest import PricePoint
from controller import ActionOutcome
from parameters import ParameterSet

ONE = 100_000_000


def _constant_path(price, n=10, start=1_000_000, step=3600):
    return [PricePoint(ts=start + i * step, price=price) for i in range(n)]


class ReplayTests(unittest.TestCase):
    def test_constant_medium_depeg_acts_every_cooldown(self):
        stats = backtest.run_backtest(_constant_path(103_000_000))

        # Medium cooldown is 12600s, so with hourly points every 4th point acts.
        self.assertEqual(stats.mints, 3)
        self.assertEqual(stats.burns, 0)
        self.assertEqual(stats.actions, 3)
        self.assertEqual(stats.rejections, {"InCooldownError": 7})
        self.assertEqual(stats.total_minted, stats.final_supply - stats.start_supply)
        self.assertEqual(stats.mean_abs_deviation_bp, 300.0)
        self.assertEqual(stats.invariant_violations, [])

    def test_extreme_depeg_never_acts(self):
        stats = backtest.run_backtest(_constant_path(110_000_000))
        self.assertEqual(stats.actions, 0)
        self.assertEqual(stats.rejections, {"ExtremeDeviationError": 10})
        self.assertEqual(stats.final_supply, stats.start_supply)

    def test_daily_cap_holds_over_a_long_depeg(self):
        params = ParameterSet(min_cooldown=60, max_cooldown=60)
        path = _constant_path(97_000_000, n=48, step=1800)
        stats = backtest.run_backtest(path, params)

        self.assertEqual(stats.burns, stats.actions)
        self.assertIn("DailyLimitExceededError", stats.rejections)
        self.assertEqual(stats.invariant_violations, [])
        # The whole path sits inside one 24h window.
        self.assertLessEqual(stats.total_burned, stats.start_supply * 200 // 10_000)

    def test_impact_pulls_price_back_toward_peg(self):
        params = ParameterSet(min_cooldown=60, max_cooldown=60)
        path = _constant_path(103_000_000, n=6, step=60)
        stats = backtest.run_backtest(path, params, impact_per_bp=1.0, impact_decay=1.0)
        self.assertLess(stats.final_deviation_bp, 300.0)

    def test_treasury_backed_run(self):
        stats = backtest.run_backtest(_constant_path(103_000_000, n=1), treasury_collateral=0)
        self.assertEqual(stats.rejections, {"CollateralUnavailableError": 1})

    def test_empty_path_rejected(self):
        with self.assertRaises(ValueError):
            backtest.run_backtest([])


class PricePathTests(unittest.TestCase):
    def test_ou_path_is_reproducible_by_seed(self):
        a = backtest.generate_ou_path(50, seed=3)
        b = backtest.generate_ou_path(50, seed=3)
        c = backtest.generate_ou_path(50, seed=4)
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        self.assertTrue(all(p.price > 0 for p in a))
        self.assertEqual([p.ts for p in a[:3]], [0, 60, 120])

    def test_zero_volatility_path_decays_to_peg(self):
        path = backtest.generate_ou_path(3, reversion=0.5, volatility_bp=0.0, start_deviation_bp=100.0)
        prices = [p.price for p in path]
        self.assertAlmostEqual(prices[0], 100_500_000, delta=1)
        self.assertAlmostEqual(prices[1], 100_250_000, delta=1)
        self.assertAlmostEqual(prices[2], 100_125_000, delta=1)

    def test_shock_applied_at_step(self):
        path = backtest.generate_ou_path(4, reversion=0.0, volatility_bp=0.0, shock_step=2, shock_bp=-800.0)
        prices = [p.price for p in path]
        self.assertEqual(prices[:2], [ONE, ONE])
        self.assertAlmostEqual(prices[2], 92_000_000, delta=1)
        self.assertAlmostEqual(prices[3], 92_000_000, delta=1)

    def test_load_csv_sorts_and_parses(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "peg.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("timestamp,price,reference\n")
                f.write("2024-01-01T00:01:00Z,1.03,\n")
                f.write("2024-01-01T00:00:00Z,1.00,1.01\n")
                f.write("2024-01-01T00:02:00Z,0,\n")
            points = backtest.load_path_csv(path)

        self.assertEqual(len(points), 2)
        self.assertEqual(points[0], PricePoint(ts=1_704_067_200, price=ONE, reference=101_000_000))
        self.assertEqual(points[1], PricePoint(ts=1_704_067_260, price=103_000_000, reference=ONE))

    def test_whole_dollar_prices_are_not_fixed8(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "peg.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("timestamp,price\n0,1\n60,1.03\n")
            points = backtest.load_path_csv(path)

        self.assertEqual([p.price for p in points], [ONE, 103_000_000])

    def test_fixed8_columns(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "peg.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("timestamp,price,reference\n0,100000000,101000000\n60,1,\n")
            points = backtest.load_path_csv(path, fixed8=True)

            self.assertEqual(points[0], PricePoint(ts=0, price=ONE, reference=101_000_000))
            self.assertEqual(points[1], PricePoint(ts=60, price=1, reference=ONE))

            with open(path, "w", encoding="utf-8") as f:
                f.write("timestamp,price\n0,1.03\n")
            with self.assertRaises(ValueError):
                backtest.load_path_csv(path, fixed8=True)

    def test_csv_without_price_column_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bad.csv")
            with open(path, "w", encoding="utf-8") as f:
                f.write("timestamp,volume\n1,2\n")
            with self.assertRaises(ValueError):
                backtest.load_path_csv(path)


class SimulatedMarketTests(unittest.TestCase):
    def _make_outcome(self, action, amount_bp):
        reading = dd.read_deviation(ONE, True, ONE, ParameterSet())
        return ActionOutcome(
            action=action,
            amount=1,
            amount_bp=amount_bp,
            reading=reading,
            cooldown=3600,
            next_eligible_time=0,
            daily_used_bp=amount_bp,
        )

    def test_mint_pushes_price_down_and_burn_up(self):
        market = backtest.SimulatedMarketOracle(volatility_bp=0.0, impact_per_bp=1.0, impact_decay=1.0, seed=1)
        self.assertEqual(market.get_price(), (ONE, True))

        market.apply_outcome(self._make_outcome("mint", 100))
        self.assertAlmostEqual(market.current_price(), 99_000_000, delta=1)

        market.apply_outcome(self._make_outcome("burn", 200))
        self.assertAlmostEqual(market.current_price(), 101_000_000, delta=1)

        market.apply_outcome(self._make_outcome("none", 0))
        self.assertAlmostEqual(market.current_price(), 101_000_000, delta=1)

    def test_impact_decays_each_step(self):
        market = backtest.SimulatedMarketOracle(volatility_bp=0.0, impact_per_bp=1.0, impact_decay=0.5, seed=1)
        market.apply_outcome(self._make_outcome("mint", 100))
        self.assertAlmostEqual(market.advance(), 99_500_000, delta=1)


class CliTests(unittest.TestCase):
    def test_main_prints_json_stats(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            rc = backtest.main(["--steps", "30", "--seed", "1", "--json"])
        self.assertEqual(rc, 0)
        stats = json.loads(out.getvalue())
        self.assertEqual(stats["steps"], 30)
        self.assertEqual(stats["invariant_violations"], [])


if __name__ == "__main__":
    unittest.main()
