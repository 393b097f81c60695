"""
Domain service: Harvest revenue distribution.

Splits a harvest's gross revenue between the grove's farmer and its token
holders:
- Farmer/investor split by a configured ratio (farmer share floored)
- Eligibility-by-time filtering of holdings
- Consolidation of successive purchases per investor
- Pro-rata floor allocation with a deterministic remainder policy

Pure computation: nothing here reads or writes storage.
"""
from typing import Optional
from dataclasses import dataclass
import logging

from harvest_ledger.domain.errors import DistributionValidationError
from harvest_ledger.domain.models import (
    DistributionPlan,
    Harvest,
    Holding,
    HolderPosition,
    HolderShare,
)
from harvest_ledger.utils.allocation import (
    LEAVE_UNDISTRIBUTED,
    REMAINDER_POLICIES,
    apply_remainder,
    pro_rata_floor,
    split_gross,
)
from harvest_ledger.config import settings

logger = logging.getLogger(__name__)


@dataclass
class DistributionConfig:
    """Configuration for the revenue distribution calculator."""

    farmer_share_ratio: float = 0.30
    """Fraction of gross revenue assigned to the farmer"""

    remainder_policy: str = LEAVE_UNDISTRIBUTED
    """leave_undistributed keeps floor leakage on the harvest; largest_holder pays it out"""

    @classmethod
    def from_settings(cls) -> "DistributionConfig":
        return cls(
            farmer_share_ratio=settings.farmer_share_ratio,
            remainder_policy=settings.remainder_policy,
        )


class DistributionCalculator:
    """
    Domain service computing farmer and investor entitlements for a harvest.

    Policies:
    - farmer_share = floor(gross * ratio), investor_share = gross - farmer_share
    - Only active holdings acquired at or before the harvest timestamp count
    - Each holder receives floor(investor_share * tokens / eligible_tokens)
    - The floor remainder follows ``remainder_policy``
    - With no eligible holder the whole investor share is undistributed
    """

    def __init__(self, config: Optional[DistributionConfig] = None):
        self.config = config or DistributionConfig.from_settings()
        self._validate_config(self.config)

    def calculate(
        self,
        harvest: Harvest,
        holdings: list[Holding],
        farmer_share_ratio: Optional[float] = None,
    ) -> DistributionPlan:
        """
        Compute the distribution plan for a harvest.

        Args:
            harvest: Harvest being distributed
            holdings: Every holding of the grove, one row per purchase
            farmer_share_ratio: Override of the configured ratio

        Returns:
            DistributionPlan with farmer share and per-holder shares

        Raises:
            DistributionValidationError: On negative revenue, non-positive
                token amounts or duplicated holding rows
        """
        ratio = self.config.farmer_share_ratio if farmer_share_ratio is None else farmer_share_ratio
        self._validate_ratio(ratio)

        if harvest.gross_revenue < 0:
            raise DistributionValidationError(
                f"Harvest {harvest.id} has negative revenue {harvest.gross_revenue}",
                reason="INVALID_REVENUE",
            )
        self._validate_holdings(holdings)

        # Step 1: Split gross revenue
        farmer_share, investor_share = split_gross(harvest.gross_revenue, ratio)
        logger.info(f"Harvest {harvest.id}: gross={harvest.gross_revenue} "
                    f"farmer={farmer_share} investors={investor_share}")

        # Step 2: Filter by eligibility and consolidate per investor
        positions = self.eligible_positions(harvest, holdings)
        logger.info(f"Eligible holders after filtering: {len(positions)} "
                    f"({len(holdings)} holdings)")

        # Step 3: Allocate the investor share
        holder_shares, undistributed = self.allocate(investor_share, positions)

        if not holder_shares and investor_share > 0:
            logger.warning(f"Harvest {harvest.id} has no eligible holders; "
                           f"{investor_share} flagged for reconciliation")

        return DistributionPlan(
            harvest_id=harvest.id,
            gross_revenue=harvest.gross_revenue,
            farmer_share=farmer_share,
            investor_share=investor_share,
            total_eligible_tokens=sum(p.token_amount for p in positions),
            holder_shares=holder_shares,
            undistributed_amount=undistributed,
            remainder_policy=self.config.remainder_policy,
        )

    def eligible_positions(
        self,
        harvest: Harvest,
        holdings: list[Holding],
    ) -> list[HolderPosition]:
        """
        Filter holdings by eligibility and merge them per investor.

        A holding is eligible when it is active and was acquired no later
        than the harvest timestamp. Positions come back sorted by
        beneficiary so the output is deterministic.
        """
        totals: dict[str, int] = {}
        excluded_late = 0
        excluded_inactive = 0

        for holding in holdings:
            if not holding.is_active:
                excluded_inactive += 1
                continue
            if holding.acquired_at > harvest.harvested_at:
                excluded_late += 1
                continue
            totals[holding.investor_address] = (
                totals.get(holding.investor_address, 0) + holding.token_amount
            )

        logger.debug(f"Excluded holdings: inactive={excluded_inactive}, "
                     f"acquired_after_harvest={excluded_late}")

        return [
            HolderPosition(beneficiary=beneficiary, token_amount=tokens)
            for beneficiary, tokens in sorted(totals.items())
        ]

    def allocate(
        self,
        investor_share: int,
        positions: list[HolderPosition],
    ) -> tuple[list[HolderShare], int]:
        """
        Allocate the investor share pro rata across positions.

        Args:
            investor_share: Amount reserved for investors
            positions: One position per beneficiary

        Returns:
            Tuple of:
                - Per-holder shares
                - Amount left undistributed

        Raises:
            DistributionValidationError: On duplicated beneficiaries or
                non-positive token amounts
        """
        seen: set[str] = set()
        for position in positions:
            if position.token_amount <= 0:
                raise DistributionValidationError(
                    f"Holder {position.beneficiary} has non-positive token amount "
                    f"{position.token_amount}",
                    reason="INVALID_TOKEN_AMOUNT",
                )
            if position.beneficiary in seen:
                raise DistributionValidationError(
                    f"Duplicate beneficiary in holder set: {position.beneficiary}",
                    reason="DUPLICATE_BENEFICIARY",
                )
            seen.add(position.beneficiary)

        if not positions:
            return [], investor_share

        weights = [p.token_amount for p in positions]
        keys = [p.beneficiary for p in positions]
        total_tokens = sum(weights)

        amounts = pro_rata_floor(investor_share, weights)
        amounts, undistributed = apply_remainder(
            amounts, investor_share, weights, keys, self.config.remainder_policy
        )

        shares = [
            HolderShare(
                beneficiary=position.beneficiary,
                token_amount=position.token_amount,
                amount=amount,
                share_percentage=round(position.token_amount / total_tokens * 100, 4),
            )
            for position, amount in zip(positions, amounts)
        ]

        logger.debug(f"Allocated {investor_share - undistributed}/{investor_share} "
                     f"across {total_tokens} tokens, undistributed={undistributed}")
        return shares, undistributed

    @staticmethod
    def _validate_holdings(holdings: list[Holding]) -> None:
        seen_ids: set[int] = set()
        for holding in holdings:
            if holding.token_amount <= 0:
                raise DistributionValidationError(
                    f"Holding {holding.id} of {holding.investor_address} has "
                    f"non-positive token amount {holding.token_amount}",
                    reason="INVALID_TOKEN_AMOUNT",
                )
            if holding.id in seen_ids:
                raise DistributionValidationError(
                    f"Holding {holding.id} appears more than once in the holder set",
                    reason="DUPLICATE_BENEFICIARY",
                )
            seen_ids.add(holding.id)

    @staticmethod
    def _validate_ratio(ratio: float) -> None:
        if not 0 <= ratio <= 1:
            raise DistributionValidationError(
                f"Farmer share ratio must be within [0, 1], got {ratio}",
                reason="INVALID_CONFIGURATION",
            )

    def _validate_config(self, config: DistributionConfig) -> None:
        self._validate_ratio(config.farmer_share_ratio)
        if config.remainder_policy not in REMAINDER_POLICIES:
            raise DistributionValidationError(
                f"Unknown remainder policy: {config.remainder_policy}",
                reason="INVALID_CONFIGURATION",
            )
