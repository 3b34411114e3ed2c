import pathlib
import sys
import unittest

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from clawkalash import amounts  # noqa: E402
from clawkalash.errors import InvalidAmountError, PrecisionError  # noqa: E402


class ParseAmountTests(unittest.TestCase):
    def test_human_decimal_amounts(self) -> None:
        self.assertEqual(amounts.parse_amount("0.1", 18), "100000000000000000")
        self.assertEqual(amounts.parse_amount("1.5", 6), "1500000")
        self.assertEqual(amounts.parse_amount(".5", 6), "500000")
        self.assertEqual(amounts.parse_amount("2.", 6), "2000000")

    def test_small_integer_is_human_readable(self) -> None:
        self.assertEqual(amounts.parse_amount("100", 6), "100000000")
        self.assertEqual(amounts.parse_amount("999", 6), "999000000")

    def test_integer_at_threshold_is_base_units(self) -> None:
        self.assertEqual(amounts.parse_amount("1000", 6), "1000")
        self.assertEqual(amounts.parse_amount("100000000", 6), "100000000")
        self.assertEqual(amounts.parse_amount("1000000000", 18), "1000000000")

    def test_zero_decimal_token(self) -> None:
        self.assertEqual(amounts.parse_amount("0", 0), "0")
        self.assertEqual(amounts.parse_amount("7", 0), "7")
        self.assertEqual(amounts.parse_amount("7.", 0), "7")
        with self.assertRaises(PrecisionError):
            amounts.parse_amount("7.5", 0)

    def test_excess_precision_is_rejected(self) -> None:
        with self.assertRaises(PrecisionError) as ctx:
            amounts.parse_amount("0.1234567", 6)
        self.assertIn("has more decimal places", str(ctx.exception))
        self.assertEqual(ctx.exception.code, "precision_error")

    def test_whitespace_and_leading_zeros(self) -> None:
        self.assertEqual(amounts.parse_amount("  1.25 ", 6), "1250000")
        self.assertEqual(amounts.parse_amount("0001.000", 6), "1000000")
        self.assertEqual(amounts.parse_amount("00000000001234", 6), "1234")

    def test_non_numeric_is_rejected(self) -> None:
        for raw in ("", ".", "abc", "-1", "1e6", "1.2.3", "0x10", "1,000"):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidAmountError):
                    amounts.parse_amount(raw, 6)

    def test_decimals_out_of_range(self) -> None:
        with self.assertRaises(InvalidAmountError):
            amounts.parse_amount("1", 256)
        with self.assertRaises(InvalidAmountError):
            amounts.parse_amount("1", -1)

    def test_large_values_are_exact(self) -> None:
        self.assertEqual(
            amounts.parse_amount("123456789012345678.123456789012345678", 18),
            "123456789012345678123456789012345678",
        )


class FormatUnitsTests(unittest.TestCase):
    def test_format_units(self) -> None:
        self.assertEqual(amounts.format_units(1500000, 6), "1.5")
        self.assertEqual(amounts.format_units("100000", 6), "0.1")
        self.assertEqual(amounts.format_units(0, 6), "0")
        self.assertEqual(amounts.format_units(5, 0), "5")
        self.assertEqual(amounts.format_units(1, 18), "0.000000000000000001")

    def test_parse_then_format_keeps_value(self) -> None:
        self.assertEqual(amounts.format_units(amounts.parse_amount("42.000001", 6), 6), "42.000001")


if __name__ == "__main__":
    unittest.main()
