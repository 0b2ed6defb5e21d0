"""Penny-exact distribution of a bill total into participant shares."""

import logging
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from .exceptions import AmountMismatchError, InvalidAmountError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
TOLERANCE = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """
    Convert a 2-decimal amount to integer cents.

    Args:
        amount: Amount as Decimal with at most 2 fractional digits

    Returns:
        Amount in cents (integer)

    Raises:
        InvalidAmountError: If the amount has more than 2 fractional digits
    """
    cents = amount * 100
    if cents != cents.to_integral_value():
        raise InvalidAmountError(
            f"Amount {amount} has more than 2 decimal places"
        )
    return int(cents)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents back to a 2-decimal Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def quantize_cents(amount: Decimal) -> Decimal:
    """
    Round an amount to cents.

    Raises:
        InvalidAmountError: If the amount has too many digits to hold to the cent
    """
    try:
        return amount.quantize(CENT)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Amount {amount} is too large") from e


def validate_total(total: Decimal) -> Decimal:
    """
    Validate a bill total and return it quantized to cents.

    Raises:
        InvalidAmountError: If the total is not a finite positive number,
                            is too large, or has more than 2 fractional digits
    """
    if not isinstance(total, Decimal):
        try:
            total = Decimal(str(total))
        except InvalidOperation as e:
            raise InvalidAmountError("Total amount must be a valid number") from e
    if not total.is_finite():
        raise InvalidAmountError("Total amount must be a valid number")
    if total <= 0:
        raise InvalidAmountError("Total amount must be a positive number")
    to_cents(total)
    return quantize_cents(total)


def distribute(total: Decimal, n: int) -> list[Decimal]:
    """
    Split a total into n equal shares that sum to the total exactly.

    Steps:
    1. base = floor(total * 100 / n) / 100
    2. remainder_cents = (total - base * n) * 100, an integer in [0, n)
    3. Everyone gets base; the first remainder_cents participants get +0.01

    The leftover cents go to the earliest participants in resolver order
    (creator first). Deterministic, not fair.

    Args:
        total: Bill total (positive, at most 2 decimals)
        n: Number of participants (>= 1)

    Returns:
        List of n shares

    Raises:
        InvalidAmountError: If n < 1 or the total is invalid
    """
    if n < 1:
        raise InvalidAmountError("At least one participant is required")

    total = validate_total(total)
    total_cents = to_cents(total)

    base_cents, remainder_cents = divmod(total_cents, n)
    shares = [
        from_cents(base_cents + 1 if index < remainder_cents else base_cents)
        for index in range(n)
    ]

    if remainder_cents:
        logger.debug(
            f"Distributed {remainder_cents} leftover cent(s) of {total} "
            f"across the first participants"
        )

    assert sum(shares) == total, "Equal split does not add up"
    return shares


def distribute_by_percentage(
    total: Decimal, percentages: list[Decimal]
) -> list[Decimal]:
    """
    Split a total by percentages, exactly to the cent.

    Each share is floored to the cent; the cents lost to flooring go one each
    to the earliest participants, same tie-break as distribute().

    Args:
        total: Bill total (positive, at most 2 decimals)
        percentages: One positive percentage per participant, summing to
                     exactly 100

    Returns:
        List of shares in the same order

    Raises:
        AmountMismatchError: If percentages are missing, non-positive,
                             or do not sum to 100
    """
    if not percentages:
        raise AmountMismatchError("Percentages are required for a percentage split")

    if any(p <= 0 for p in percentages):
        raise AmountMismatchError("All percentages must be positive")

    percentage_sum = sum(percentages, Decimal("0"))
    if percentage_sum != HUNDRED:
        raise AmountMismatchError(
            f"Percentages must add up to 100 (got {percentage_sum})"
        )

    total = validate_total(total)
    total_cents = to_cents(total)

    share_cents = [
        int((total_cents * p / HUNDRED).to_integral_value(rounding=ROUND_DOWN))
        for p in percentages
    ]
    leftover = total_cents - sum(share_cents)

    # flooring loses less than one cent per share, so leftover < n
    for index in range(leftover):
        share_cents[index] += 1

    shares = [from_cents(cents) for cents in share_cents]
    assert sum(shares) == total, "Percentage split does not add up"
    return shares


def validate_amounts(total: Decimal, amounts: list[Decimal]) -> list[Decimal]:
    """
    Validate caller-supplied shares for a custom split.

    Args:
        total: Bill total
        amounts: One share per participant

    Returns:
        The shares quantized to cents

    Raises:
        InvalidAmountError: If a share is non-positive or over-precise
        AmountMismatchError: If the shares do not sum to the total (±0.01)
    """
    total = validate_total(total)

    if not amounts:
        raise AmountMismatchError("Amounts are required for a custom split")

    validated = []
    for amount in amounts:
        if amount <= 0:
            raise InvalidAmountError("All participants must have valid positive amounts")
        to_cents(amount)
        validated.append(quantize_cents(amount))

    amounts_sum = sum(validated, Decimal("0"))
    residual = abs(total - amounts_sum)
    if residual > TOLERANCE:
        raise AmountMismatchError(
            f"Sum of participant amounts must equal total amount:\n"
            f"  Total:    {total}\n"
            f"  Shares:   {amounts_sum}\n"
            f"  Residual: {residual}"
        )

    return validated
