import unittest

import stats_ledger as sl
from errors import ArithmeticOverflowError, UINT256_MAX


class StatsLedgerTests(unittest.TestCase):
    def test_mint_and_burn_accumulate(self):
        stats = sl.LedgerStats()
        stats = sl.record_action(sl.record_mint(stats, 100))
        stats = sl.record_action(sl.record_burn(stats, 40))
        stats = sl.record_action(sl.record_mint(stats, 5))

        self.assertEqual(stats.total_minted, 105)
        self.assertEqual(stats.total_burned, 40)
        self.assertEqual(stats.action_count, 3)
        self.assertEqual(stats.last_adjustment_amount, 5)
        self.assertEqual(sl.net_supply_change(stats), 65)

    def test_records_are_new_values(self):
        before = sl.LedgerStats()
        after = sl.record_mint(before, 7)
        self.assertEqual(before.total_minted, 0)
        self.assertEqual(after.total_minted, 7)

    def test_overflow_is_fatal(self):
        stats = sl.LedgerStats(total_minted=UINT256_MAX)
        with self.assertRaises(ArithmeticOverflowError):
            sl.record_mint(stats, 1)
        with self.assertRaises(ArithmeticOverflowError):
            sl.record_burn(sl.LedgerStats(), -1)

    def test_from_dict_defaults_missing_fields(self):
        stats = sl.from_dict({"total_minted": "12", "action_count": 2})
        self.assertEqual(stats, sl.LedgerStats(total_minted=12, action_count=2))
        self.assertEqual(sl.from_dict(stats.to_dict()), stats)


if __name__ == "__main__":
    unittest.main()
