from __future__ import annotations

import unittest

from strategy_flow.flow import (
    ConditionEvaluationError,
    evaluate_condition,
    format_variable_dump,
    interpolate,
    resolve_operand,
)
from strategy_flow.flow.conditions import to_number


class InterpolationTests(unittest.TestCase):
    def test_known_placeholder_is_rendered(self) -> None:
        self.assertEqual(interpolate("{x}", {"x": 42}), "42")
        self.assertEqual(interpolate("{{x}}", {"x": 42}), "42")

    def test_unknown_placeholder_is_left_untouched(self) -> None:
        self.assertEqual(interpolate("{y}", {"x": 42}), "{y}")
        self.assertEqual(interpolate("a {{y}} b", {}), "a {{y}} b")

    def test_non_string_values_render_as_json(self) -> None:
        rendered = interpolate("{flag} {data} {nothing}", {"flag": True, "data": {"a": 1}, "nothing": None})
        self.assertEqual(rendered, 'true {"a": 1} null')

    def test_empty_template_renders_empty(self) -> None:
        self.assertEqual(interpolate(None, {"x": 1}), "")
        self.assertEqual(interpolate("", {"x": 1}), "")

    def test_variable_dump_skips_none_and_wraps_blocks(self) -> None:
        dump = format_variable_dump({"price": 10, "missing": None, "name": "btc"})
        self.assertTrue(dump.startswith("=== Variables ===\nprice: 10\n\nname: \"btc\""))
        self.assertTrue(dump.endswith("================="))
        self.assertNotIn("missing", dump)
        self.assertEqual(format_variable_dump({"missing": None}), "")


class OperandResolutionTests(unittest.TestCase):
    def test_dollar_operand_reads_nested_variable(self) -> None:
        variables = {"price": {"value": 12, "history": [1, 2]}}
        self.assertEqual(resolve_operand("$price.value", variables), 12)
        self.assertEqual(resolve_operand("$price.history.1", variables), 2)

    def test_resolution_is_idempotent(self) -> None:
        variables = {"price": {"value": 12}}
        first = resolve_operand("$price", variables)
        second = resolve_operand("$price", variables)
        self.assertEqual(first, second)

    def test_missing_dollar_variable_resolves_to_literal_text(self) -> None:
        with self.assertLogs("strategy_flow.flow.conditions", level="WARNING"):
            value = resolve_operand("$unknown", {})
        self.assertEqual(value, "$unknown")

    def test_bare_operand_prefers_existing_variable(self) -> None:
        self.assertEqual(resolve_operand("limit", {"limit": 7}), 7)
        self.assertEqual(resolve_operand("limit", {}), "limit")
        self.assertEqual(resolve_operand("50000", {}), "50000")

    def test_literal_operand_keeps_surrounding_whitespace(self) -> None:
        self.assertEqual(resolve_operand(" abc", {}), " abc")
        self.assertEqual(resolve_operand(" limit ", {"limit": 7}), 7)


class EvaluateConditionTests(unittest.TestCase):
    def test_equality_uses_numbers_when_both_sides_parse(self) -> None:
        self.assertTrue(evaluate_condition("5", "==", "5.0"))
        self.assertTrue(evaluate_condition("05", "==", "5"))
        self.assertFalse(evaluate_condition("05", "!=", "5"))

    def test_equality_falls_back_to_loose_comparison(self) -> None:
        self.assertTrue(evaluate_condition("BTC", "==", "BTC"))
        self.assertTrue(evaluate_condition(True, "==", "true"))
        self.assertTrue(evaluate_condition("abc", "!=", "5"))

    def test_ordering_operators_coerce_to_numbers(self) -> None:
        self.assertTrue(evaluate_condition("60000", ">", 50000))
        self.assertTrue(evaluate_condition(3, "<=", "3"))
        self.assertFalse(evaluate_condition("2.5", ">=", "3"))
        self.assertTrue(evaluate_condition(1, "lt", 2))

    def test_ordering_operator_rejects_non_numbers(self) -> None:
        with self.assertRaises(ConditionEvaluationError):
            evaluate_condition("abc", ">", 1)

    def test_text_operators_compare_string_forms(self) -> None:
        self.assertTrue(evaluate_condition("bullish market", "contains", "bull"))
        self.assertTrue(evaluate_condition(12345, "startsWith", "12"))
        self.assertTrue(evaluate_condition("report.csv", "endsWith", ".csv"))
        self.assertFalse(evaluate_condition("report.csv", "startsWith", "csv"))

    def test_unknown_operator_raises(self) -> None:
        with self.assertRaises(ConditionEvaluationError):
            evaluate_condition(1, "~=", 1)

    def test_to_number_rejects_blank_and_non_finite(self) -> None:
        self.assertIsNone(to_number(""))
        self.assertIsNone(to_number("nan"))
        self.assertIsNone(to_number(None))
        self.assertEqual(to_number(" 7 "), 7.0)

    def test_digit_separators_are_not_numbers(self) -> None:
        self.assertIsNone(to_number("1_000"))
        self.assertFalse(evaluate_condition("1_000", "==", "1000"))
        with self.assertRaises(ConditionEvaluationError):
            evaluate_condition("1_000", ">", 1)


if __name__ == "__main__":
    unittest.main()
