from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from sahayak.domain.pricing import (
    DEFAULT_REFUND_POLICY,
    RefundPolicy,
    compute_charges,
    compute_refund,
    from_minor_units,
    refund_percentage,
    round_half_up,
    to_minor_units,
)

SCHEDULED = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)


class TestComputeCharges:
    def test_tax_is_charged_on_base_only(self):
        charges = compute_charges(500, "0.18")

        assert charges.base_amount == 500
        assert charges.tax_amount == 90
        assert charges.total_amount == 590

    def test_additional_and_discount_apply_after_tax(self):
        charges = compute_charges(1000, Decimal("0.18"), additional=[150, 50], discount=100)

        assert charges.tax_amount == 180
        assert charges.additional_amount == 200
        assert charges.discount_amount == 100
        assert charges.total_amount == 1000 + 180 + 200 - 100

    def test_tax_rounds_half_up(self):
        # 0.18 * 25 = 4.5
        assert compute_charges(25, "0.18").tax_amount == 5
        # 0.18 * 3 = 0.54
        assert compute_charges(3, "0.18").tax_amount == 1

    def test_zero_rate(self):
        charges = compute_charges(750, 0)
        assert charges.tax_amount == 0
        assert charges.total_amount == 750

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_amount": -1, "tax_rate": "0.18"},
            {"base_amount": 100, "tax_rate": "-0.1"},
            {"base_amount": 100, "tax_rate": "0.18", "additional": [-5]},
            {"base_amount": 100, "tax_rate": "0.18", "discount": -5},
        ],
    )
    def test_negative_inputs_rejected(self, kwargs):
        with pytest.raises(ValueError):
            compute_charges(**kwargs)

    def test_discount_larger_than_total_rejected(self):
        with pytest.raises(ValueError, match="discount exceeds"):
            compute_charges(100, "0.18", discount=200)

    def test_breakdown_to_dict_matches_booking_columns(self):
        assert compute_charges(500, "0.18").to_dict() == {
            "base_amount": 500,
            "tax_amount": 90,
            "additional_amount": 0,
            "discount_amount": 0,
            "total_amount": 590,
        }


class TestRefundPercentage:
    @pytest.mark.parametrize(
        "remaining,expected",
        [
            (timedelta(hours=48), 100),
            (timedelta(hours=24, seconds=1), 100),
            (timedelta(hours=24), 75),
            (timedelta(hours=12, seconds=1), 75),
            (timedelta(hours=12), 50),
            (timedelta(hours=2, seconds=1), 50),
            (timedelta(hours=2), 25),
            (timedelta(minutes=5), 25),
            (timedelta(hours=-3), 25),
        ],
    )
    def test_tier_boundaries_are_exclusive(self, remaining, expected):
        assert refund_percentage(remaining) == expected

    def test_custom_policy_is_sorted_by_threshold(self):
        policy = RefundPolicy.from_pairs([(6, 40), (48, 90)], floor_percent=0)

        assert [t.percent for t in policy.tiers] == [90, 40]
        assert refund_percentage(timedelta(hours=50), policy) == 90
        assert refund_percentage(timedelta(hours=10), policy) == 40
        assert refund_percentage(timedelta(hours=1), policy) == 0

    @pytest.mark.parametrize("pairs,floor", [([(24, 120)], 25), ([(-1, 50)], 25), ([(24, 100)], 101)])
    def test_invalid_policy_rejected(self, pairs, floor):
        with pytest.raises(ValueError):
            RefundPolicy.from_pairs(pairs, floor_percent=floor)


class TestComputeRefund:
    def test_full_refund_with_plenty_of_notice(self):
        quote = compute_refund(590, SCHEDULED, SCHEDULED - timedelta(hours=30))

        assert quote.amount == 590
        assert quote.percent == 100
        assert quote.hours_remaining == 30.0
        assert quote.basis == "100% refund (30.0h notice)"

    def test_partial_refund_rounds_half_up(self):
        # 75% of 590 = 442.5
        quote = compute_refund(590, SCHEDULED, SCHEDULED - timedelta(hours=20))
        assert quote.amount == 443
        assert quote.percent == 75

    def test_floor_applies_inside_shortest_window(self):
        quote = compute_refund(1000, SCHEDULED, SCHEDULED - timedelta(hours=1))

        assert quote.amount == 250
        assert quote.percent == 25
        assert quote.basis == "25% refund (less than the shortest notice window)"

    def test_cancellation_after_start_still_gets_floor(self):
        quote = compute_refund(1000, SCHEDULED, SCHEDULED + timedelta(hours=1))

        assert quote.percent == DEFAULT_REFUND_POLICY.floor_percent
        assert quote.hours_remaining == -1.0

    def test_refund_never_exceeds_total(self):
        quote = compute_refund(1, SCHEDULED, SCHEDULED - timedelta(days=3))
        assert 0 <= quote.amount <= 1

    def test_zero_total(self):
        assert compute_refund(0, SCHEDULED, SCHEDULED - timedelta(days=3)).amount == 0


class TestMinorUnits:
    def test_round_trip(self):
        assert to_minor_units(590) == 59000
        assert from_minor_units(59000) == 590

    def test_exponent_zero(self):
        assert to_minor_units(590, exponent=0) == 590
        assert from_minor_units(590, exponent=0) == 590

    @pytest.mark.parametrize("exponent", [0, 2, 3])
    def test_round_trip_across_supported_amounts(self, exponent):
        # Every amount up to 10k, then a prime stride up to the 10,000,000 ceiling.
        amounts = [*range(1, 10_001), *range(10_001, 10_000_001, 997), 9_999_999, 10_000_000]

        for amount in amounts:
            minor = to_minor_units(amount, exponent=exponent)
            assert minor == amount * 10**exponent
            assert from_minor_units(minor, exponent=exponent) == amount

    def test_fractional_minor_amount_rejected(self):
        with pytest.raises(ValueError, match="whole number"):
            from_minor_units(59050)

    @pytest.mark.parametrize("value", [5.5, "100", True])
    def test_non_integer_rejected(self, value):
        with pytest.raises(ValueError):
            to_minor_units(value)
        with pytest.raises(ValueError):
            from_minor_units(value)

    def test_round_half_up_on_negative(self):
        assert round_half_up(Decimal("-2.5")) == -3
