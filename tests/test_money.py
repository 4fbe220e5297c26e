import unittest
from datetime import date, datetime
from decimal import Decimal
from reconciliation_service.money import (
    cents_to_dollars, follow_up_due_dates, format_currency, format_date_mdy, format_date_mmddyy,
    format_long_date, format_quantity, line_total, round_half_up, split_installments,
)

class TestSplitInstallments(unittest.TestCase):
    """Installment splitting never loses a cent"""

    def test_parts_always_sum_to_total(self):
        for total in list(range(0, 50)) + [9999, 10001, 20000, 123456789]:
            now, later = split_installments(total)
            self.assertEqual(now + later, total)
            self.assertEqual(now, total // 2)

    def test_odd_total_puts_extra_cent_in_second_installment(self):
        self.assertEqual(split_installments(20001), (10000, 10001))

    def test_negative_total_is_rejected(self):
        with self.assertRaises(ValueError):
            split_installments(-1)

class TestAmountFormatting(unittest.TestCase):

    def test_cents_to_dollars_has_two_fraction_digits(self):
        self.assertEqual(cents_to_dollars(333), "3.33")
        self.assertEqual(cents_to_dollars(334), "3.34")
        self.assertEqual(cents_to_dollars(0), "0.00")
        self.assertEqual(cents_to_dollars(100000), "1000.00")

    def test_format_currency_groups_thousands(self):
        self.assertEqual(format_currency(165000), "$1,650.00")
        self.assertEqual(format_currency(5), "$0.05")
        self.assertEqual(format_currency(-2500), "-$25.00")

    def test_format_quantity_passes_through_stored_value(self):
        self.assertEqual(format_quantity(Decimal("1.00")), "1")
        self.assertEqual(format_quantity(Decimal("0.50")), "0.5")
        self.assertEqual(format_quantity(Decimal("100")), "100")
        self.assertEqual(format_quantity(None), "1")

    def test_line_total_defaults_quantity_to_one(self):
        self.assertEqual(line_total(1000, None), Decimal(1000))
        self.assertEqual(line_total(1001, Decimal("0.5")), Decimal("500.5"))
        self.assertEqual(round_half_up(Decimal("500.5")), 501)

class TestDueDates(unittest.TestCase):
    """Due dates come from the class, falling back to offsets from the start date"""

    def test_derived_from_start_date(self):
        self.assertEqual(
            follow_up_due_dates(None, None, date(2025, 6, 1)),
            (date(2025, 5, 11), date(2025, 6, 8)),
        )

    def test_explicit_dates_win(self):
        explicit = (date(2025, 4, 1), date(2025, 7, 1))
        self.assertEqual(follow_up_due_dates(*explicit, date(2025, 6, 1)), explicit)

    def test_missing_explicit_date_is_filled_per_installment(self):
        self.assertEqual(
            follow_up_due_dates(date(2025, 4, 1), None, date(2025, 6, 1)),
            (date(2025, 4, 1), date(2025, 6, 8)),
        )

    def test_no_dates_and_no_start_returns_none(self):
        self.assertIsNone(follow_up_due_dates(None, None, None))
        self.assertIsNone(follow_up_due_dates(date(2025, 4, 1), None, None))

    def test_derivation_can_be_disabled(self):
        self.assertIsNone(follow_up_due_dates(None, None, date(2025, 6, 1), derive_from_start=False))

    def test_custom_offsets(self):
        self.assertEqual(
            follow_up_due_dates(None, None, date(2025, 6, 1), offset_1_days=-14, offset_2_days=30),
            (date(2025, 5, 18), date(2025, 7, 1)),
        )

class TestDateFormatting(unittest.TestCase):

    def test_export_date_formats(self):
        self.assertEqual(format_date_mdy(date(2025, 6, 1)), "6/1/2025")
        self.assertEqual(format_date_mdy(datetime(2025, 12, 31, 23, 59)), "12/31/2025")
        self.assertEqual(format_date_mdy(None), "")
        self.assertEqual(format_date_mmddyy(date(2025, 6, 1)), "060125")
        self.assertEqual(format_long_date(date(2025, 6, 1)), "June 1, 2025")

if __name__ == "__main__":
    unittest.main()
