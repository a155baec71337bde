import unittest
from dataclasses import replace
from decimal import Decimal

from server.promptpm.billing.costing import calculate_actual_cost, calculate_cost, format_usd
from server.promptpm.billing.errors import ValidationError
from server.promptpm.billing.pricing import (
    CREDIT_PACKAGES,
    estimate_credits,
    estimate_request_credits,
    estimate_tokens,
    get_credit_package,
    normalize_model,
)
from server.promptpm.core.config import Settings


class TestCostEstimates(unittest.TestCase):
    def test_estimate_splits_sixty_forty(self) -> None:
        estimate = calculate_cost(1000, "SONNET")
        self.assertEqual(estimate.input_tokens, 600)
        self.assertEqual(estimate.output_tokens, 400)
        self.assertEqual(estimate.model, "sonnet")
        self.assertEqual(estimate.estimated_cost, Decimal("0.0078"))

    def test_split_rounds_each_side_up(self) -> None:
        estimate = calculate_cost(5, "opus")
        self.assertEqual((estimate.input_tokens, estimate.output_tokens), (3, 2))

    def test_unknown_model_is_priced_as_sonnet(self) -> None:
        self.assertEqual(normalize_model("llama-70b"), "sonnet")
        self.assertEqual(normalize_model(None), "sonnet")
        self.assertEqual(calculate_cost(1000, "llama-70b").estimated_cost, calculate_cost(1000, "sonnet").estimated_cost)

    def test_actual_cost_uses_reported_tokens(self) -> None:
        self.assertEqual(calculate_actual_cost(1_000_000, 0, "gpt-4o"), Decimal("5"))
        self.assertEqual(calculate_actual_cost(0, 1_000_000, "gpt-4o-mini"), Decimal("2.4"))
        self.assertEqual(format_usd(calculate_actual_cost(1000, 1000, "opus")), "0.0900")

    def test_negative_tokens_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            calculate_cost(-1, "sonnet")
        with self.assertRaises(ValidationError):
            calculate_actual_cost(10, -1, "sonnet")


class TestCreditEstimates(unittest.TestCase):
    def test_estimate_tokens_adds_response_headroom(self) -> None:
        self.assertEqual(estimate_tokens(400, 0), 130)
        self.assertEqual(estimate_tokens(200, 100, history=["x" * 100]), 130)

    def test_model_multiplier_and_minimum(self) -> None:
        self.assertEqual(estimate_credits(400, 0, "opus"), 5)
        self.assertEqual(estimate_credits(400, 0, "gpt-4o"), 2)
        self.assertEqual(estimate_credits(400, 0, "gpt-4o-mini"), 1)
        self.assertEqual(estimate_credits(0, 0, "sonnet"), 1)

    def test_large_request_spans_several_credits(self) -> None:
        # 40000 chars -> 13000 tokens -> 3 base credits
        self.assertEqual(estimate_credits(40000, 0, "sonnet"), 3)

    def test_oversized_request_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            estimate_credits(80000, 0, "sonnet")

    def test_settings_drive_request_estimates(self) -> None:
        settings = replace(Settings.from_env(), tokens_per_credit=5000, max_tokens_per_request=20000)
        self.assertEqual(estimate_request_credits(settings, 40000, 0, "sonnet"), 3)

        # 13000 tokens at 1000 per credit
        finer = replace(settings, tokens_per_credit=1000)
        self.assertEqual(estimate_request_credits(finer, 40000, 0, "sonnet"), 13)

        with self.assertRaises(ValidationError):
            estimate_request_credits(replace(settings, max_tokens_per_request=10000), 40000, 0, "sonnet")


class TestCreditPackages(unittest.TestCase):
    def test_lookup(self) -> None:
        package = get_credit_package("Medium")
        self.assertEqual(package.credits, 250)
        self.assertEqual(package.price_display, "$10.00")
        self.assertEqual(sorted(CREDIT_PACKAGES), ["large", "medium", "small"])

    def test_unknown_package(self) -> None:
        with self.assertRaises(ValidationError):
            get_credit_package("huge")


if __name__ == "__main__":
    unittest.main()
