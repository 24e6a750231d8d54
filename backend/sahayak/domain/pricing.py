"""
Pricing and refund calculation for bookings.

Everything here is pure: amounts are integers in the currency's major unit,
policies are passed in, and no function touches the database or settings.
The booking state machine calls ``compute_refund`` on cancellation and the
payment adapter uses the minor-unit helpers at the gateway boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Sequence, Tuple


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ChargeBreakdown:
    """Frozen pricing for a booking."""

    base_amount: int
    tax_amount: int
    additional_amount: int
    discount_amount: int
    total_amount: int

    def to_dict(self) -> dict[str, int]:
        return {
            "base_amount": self.base_amount,
            "tax_amount": self.tax_amount,
            "additional_amount": self.additional_amount,
            "discount_amount": self.discount_amount,
            "total_amount": self.total_amount,
        }


def compute_charges(
    base_amount: int,
    tax_rate: Decimal | str | float,
    additional: Iterable[int] = (),
    discount: int = 0,
) -> ChargeBreakdown:
    """
    Compute tax and total for a booking.

    Tax is charged on the base amount only. Additional charges and the
    discount are applied after tax.

    Raises:
        ValueError: if any input is negative or the total would drop below zero
    """
    rate = Decimal(str(tax_rate))
    if base_amount < 0:
        raise ValueError("base_amount must be non-negative")
    if rate < 0:
        raise ValueError("tax_rate must be non-negative")
    extras = list(additional)
    if any(amount < 0 for amount in extras):
        raise ValueError("additional charges must be non-negative")
    if discount < 0:
        raise ValueError("discount must be non-negative")

    tax_amount = round_half_up(Decimal(base_amount) * rate)
    additional_amount = sum(extras)
    total = base_amount + tax_amount + additional_amount - discount
    if total < 0:
        raise ValueError("discount exceeds the booking amount")

    return ChargeBreakdown(
        base_amount=base_amount,
        tax_amount=tax_amount,
        additional_amount=additional_amount,
        discount_amount=discount,
        total_amount=total,
    )


@dataclass(frozen=True)
class RefundTier:
    """Refund percentage granted when more than ``min_hours`` remain."""

    min_hours: Decimal
    percent: int

    @property
    def threshold(self) -> timedelta:
        return timedelta(seconds=float(self.min_hours * 3600))


@dataclass(frozen=True)
class RefundPolicy:
    """Ordered refund tiers plus the percentage used when no tier matches."""

    tiers: Tuple[RefundTier, ...]
    floor_percent: int

    @classmethod
    def from_pairs(
        cls, pairs: Sequence[Sequence[float | int | str]], floor_percent: int
    ) -> "RefundPolicy":
        tiers = []
        for hours, percent in pairs:
            tier = RefundTier(min_hours=Decimal(str(hours)), percent=int(percent))
            if tier.min_hours < 0 or not 0 <= tier.percent <= 100:
                raise ValueError(f"invalid refund tier: {hours}h -> {percent}%")
            tiers.append(tier)
        if not 0 <= floor_percent <= 100:
            raise ValueError("floor_percent must be between 0 and 100")
        tiers.sort(key=lambda t: t.min_hours, reverse=True)
        return cls(tiers=tuple(tiers), floor_percent=floor_percent)


DEFAULT_REFUND_POLICY = RefundPolicy.from_pairs([(24, 100), (12, 75), (2, 50)], floor_percent=25)


def refund_percentage(time_remaining: timedelta, policy: RefundPolicy = DEFAULT_REFUND_POLICY) -> int:
    """Return the refund percentage for the time left before the service starts.

    Tier thresholds are exclusive: exactly 24h remaining falls into the tier
    below the 24h one.
    """
    for tier in policy.tiers:
        if time_remaining > tier.threshold:
            return tier.percent
    return policy.floor_percent


@dataclass(frozen=True)
class RefundQuote:
    """Suggested refund for a cancellation. Never applied by this module."""

    amount: int
    percent: int
    hours_remaining: float
    basis: str

    def to_dict(self) -> dict[str, object]:
        return {
            "amount": self.amount,
            "percent": self.percent,
            "hours_remaining": self.hours_remaining,
            "basis": self.basis,
        }


def compute_refund(
    total_amount: int,
    scheduled_at: datetime,
    cancelled_at: datetime,
    policy: RefundPolicy = DEFAULT_REFUND_POLICY,
) -> RefundQuote:
    """Compute the refund owed when a booking is cancelled at ``cancelled_at``."""
    remaining = scheduled_at - cancelled_at
    percent = refund_percentage(remaining, policy)
    raw = round_half_up(Decimal(max(total_amount, 0)) * Decimal(percent) / Decimal(100))
    amount = min(max(raw, 0), max(total_amount, 0))
    hours = remaining.total_seconds() / 3600
    if percent == policy.floor_percent and not any(
        remaining > tier.threshold for tier in policy.tiers
    ):
        basis = f"{percent}% refund (less than the shortest notice window)"
    else:
        basis = f"{percent}% refund ({hours:.1f}h notice)"
    return RefundQuote(amount=amount, percent=percent, hours_remaining=round(hours, 2), basis=basis)


def to_minor_units(amount: int, exponent: int = 2) -> int:
    """Convert a major-unit integer amount to the gateway's minor unit."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError("amount must be an integer number of major units")
    return amount * 10**exponent


def from_minor_units(minor_amount: int, exponent: int = 2) -> int:
    """Convert a gateway minor-unit amount back to major units.

    Raises:
        ValueError: if the amount is not a whole number of major units
    """
    if isinstance(minor_amount, bool) or not isinstance(minor_amount, int):
        raise ValueError("minor_amount must be an integer")
    factor = 10**exponent
    major, remainder = divmod(minor_amount, factor)
    if remainder:
        raise ValueError(f"{minor_amount} is not a whole number of major units")
    return major
