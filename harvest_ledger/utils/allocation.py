"""
Integer money allocation helpers.

Provides utilities for:
- Splitting a gross amount by a ratio without float drift
- Pro-rata floor allocation across token positions
- Remainder assignment policies
"""
from decimal import Decimal, ROUND_FLOOR
import logging

logger = logging.getLogger(__name__)


LEAVE_UNDISTRIBUTED = "leave_undistributed"
LARGEST_HOLDER = "largest_holder"
REMAINDER_POLICIES = (LEAVE_UNDISTRIBUTED, LARGEST_HOLDER)


def floor_ratio(amount: int, ratio: float) -> int:
    """
    Compute floor(amount * ratio) exactly.

    The ratio goes through its decimal string form so that 0.3 means
    three tenths and not the nearest binary float.

    Args:
        amount: Non-negative integer amount in minor units
        ratio: Fraction between 0 and 1

    Returns:
        Floored integer product
    """
    product = Decimal(amount) * Decimal(str(ratio))
    return int(product.to_integral_value(rounding=ROUND_FLOOR))


def split_gross(gross: int, farmer_ratio: float) -> tuple[int, int]:
    """
    Split gross revenue into (farmer_share, investor_share).

    The farmer share is floored; the investor share is whatever is left so
    the two parts always sum to ``gross``.
    """
    farmer_share = floor_ratio(gross, farmer_ratio)
    return farmer_share, gross - farmer_share


def pro_rata_floor(
    total: int,
    weights: list[int],
) -> list[int]:
    """
    Allocate ``total`` across ``weights`` proportionally, flooring each part.

    Args:
        total: Amount to allocate
        weights: Positive integer weights (token amounts)

    Returns:
        Allocated amounts in the same order as ``weights``. Their sum is at
        most ``total`` and falls short by less than ``len(weights)``.
    """
    weight_sum = sum(weights)
    if weight_sum <= 0:
        return [0 for _ in weights]
    return [total * weight // weight_sum for weight in weights]


def largest_weight_index(weights: list[int], keys: list[str]) -> int:
    """
    Index of the largest weight; ties go to the smallest key.
    """
    return min(range(len(weights)), key=lambda i: (-weights[i], keys[i]))


def apply_remainder(
    amounts: list[int],
    total: int,
    weights: list[int],
    keys: list[str],
    policy: str,
) -> tuple[list[int], int]:
    """
    Apply a remainder policy to floored allocations.

    Args:
        amounts: Floored allocations
        total: Amount that was being allocated
        weights: Weights used for the allocation
        keys: Stable identifiers for tie-breaking (beneficiary addresses)
        policy: One of ``REMAINDER_POLICIES``

    Returns:
        Tuple of:
            - Final allocations
            - Amount left undistributed
    """
    if policy not in REMAINDER_POLICIES:
        raise ValueError(f"Unknown remainder policy: {policy}")

    remainder = total - sum(amounts)
    if remainder == 0 or not amounts:
        return amounts, remainder

    if policy == LARGEST_HOLDER:
        index = largest_weight_index(weights, keys)
        adjusted = list(amounts)
        adjusted[index] += remainder
        logger.debug(f"Assigned remainder {remainder} to {keys[index]}")
        return adjusted, 0

    logger.debug(f"Leaving remainder {remainder} undistributed")
    return amounts, remainder
