"""
Unit tests for the distribution calculator.

Tests cover:
- Farmer/investor split with exact integer flooring
- Eligibility by acquisition time and activity
- Pro-rata allocation and both remainder policies
- Zero eligible holders
- Input validation
"""
import pytest
from datetime import datetime, timedelta

from harvest_ledger.domain.errors import DistributionValidationError
from harvest_ledger.domain.models import Harvest, Holding, HolderPosition
from harvest_ledger.services.domain.distribution_calculator import (
    DistributionCalculator,
    DistributionConfig,
)
from harvest_ledger.utils.allocation import (
    LARGEST_HOLDER,
    LEAVE_UNDISTRIBUTED,
    apply_remainder,
    floor_ratio,
    pro_rata_floor,
)


HARVESTED_AT = datetime(2026, 3, 1, 12, 0)


def make_harvest(gross: int = 100_000, harvested_at: datetime = HARVESTED_AT) -> Harvest:
    return Harvest(id=1, grove_id=1, gross_revenue=gross, harvested_at=harvested_at)


def make_holding(
    holding_id: int,
    investor: str,
    tokens: int,
    acquired_at: datetime = HARVESTED_AT - timedelta(days=10),
    is_active: bool = True,
) -> Holding:
    return Holding(
        id=holding_id,
        investor_address=investor,
        grove_id=1,
        token_amount=tokens,
        acquired_at=acquired_at,
        is_active=is_active,
    )


@pytest.fixture
def calculator() -> DistributionCalculator:
    return DistributionCalculator(DistributionConfig(farmer_share_ratio=0.30))


@pytest.fixture
def largest_holder_calculator() -> DistributionCalculator:
    return DistributionCalculator(
        DistributionConfig(farmer_share_ratio=0.30, remainder_policy=LARGEST_HOLDER)
    )


# ============================================================
# Farmer / Investor Split Tests
# ============================================================

class TestFarmerInvestorSplit:
    """Tests for splitting gross revenue."""

    def test_example_split(self, calculator):
        """100,000 at ratio 0.30 should split 30,000 / 70,000."""
        plan = calculator.calculate(make_harvest(100_000), [make_holding(1, "0.0.1", 10)])

        assert plan.farmer_share == 30_000
        assert plan.investor_share == 70_000

    def test_farmer_share_is_floored(self, calculator):
        """floor(101 * 0.3) = 30, the investor share takes the rest."""
        plan = calculator.calculate(make_harvest(101), [make_holding(1, "0.0.1", 10)])

        assert plan.farmer_share == 30
        assert plan.investor_share == 71

    def test_ratio_is_exact_decimal(self):
        """0.3 of 10 is 3, not 2 from binary float drift."""
        assert floor_ratio(10, 0.3) == 3
        assert floor_ratio(1_000_001, 0.3) == 300_000

    def test_ratio_override(self, calculator):
        """An explicit ratio should override the configured one."""
        plan = calculator.calculate(
            make_harvest(1_000), [make_holding(1, "0.0.1", 10)], farmer_share_ratio=0.5
        )

        assert plan.farmer_share == 500
        assert plan.investor_share == 500

    def test_zero_revenue(self, calculator):
        """Zero revenue should produce zero shares and nothing to reconcile."""
        plan = calculator.calculate(make_harvest(0), [make_holding(1, "0.0.1", 10)])

        assert plan.farmer_share == 0
        assert plan.investor_share == 0
        assert [s.amount for s in plan.holder_shares] == [0]
        assert plan.undistributed_amount == 0
        assert not plan.requires_reconciliation


# ============================================================
# Eligibility Tests
# ============================================================

class TestEligibility:
    """Tests for eligibility-by-time filtering."""

    def test_holder_acquired_after_harvest_excluded(self, calculator):
        """The worked example: C bought after the harvest gets nothing."""
        holdings = [
            make_holding(1, "0.0.1001", 600),
            make_holding(2, "0.0.1002", 400),
            make_holding(3, "0.0.1003", 300, acquired_at=HARVESTED_AT + timedelta(days=1)),
        ]

        plan = calculator.calculate(make_harvest(100_000), holdings)

        amounts = {s.beneficiary: s.amount for s in plan.holder_shares}
        assert amounts == {"0.0.1001": 42_000, "0.0.1002": 28_000}
        assert plan.total_eligible_tokens == 1_000
        assert plan.undistributed_amount == 0

    def test_acquired_exactly_at_harvest_is_eligible(self, calculator):
        """acquired_at == harvested_at counts as held at harvest time."""
        holdings = [make_holding(1, "0.0.1", 10, acquired_at=HARVESTED_AT)]

        positions = calculator.eligible_positions(make_harvest(), holdings)

        assert positions == [HolderPosition(beneficiary="0.0.1", token_amount=10)]

    def test_inactive_holdings_excluded(self, calculator):
        """Inactive holdings should not share in the harvest."""
        holdings = [
            make_holding(1, "0.0.1", 10),
            make_holding(2, "0.0.2", 10, is_active=False),
        ]

        positions = calculator.eligible_positions(make_harvest(), holdings)

        assert [p.beneficiary for p in positions] == ["0.0.1"]

    def test_purchases_merged_per_investor(self, calculator):
        """Several eligible purchases by one investor form one position."""
        holdings = [
            make_holding(1, "0.0.2", 100),
            make_holding(2, "0.0.1", 50),
            make_holding(3, "0.0.2", 150),
            make_holding(4, "0.0.2", 999, acquired_at=HARVESTED_AT + timedelta(hours=1)),
        ]

        positions = calculator.eligible_positions(make_harvest(), holdings)

        assert positions == [
            HolderPosition(beneficiary="0.0.1", token_amount=50),
            HolderPosition(beneficiary="0.0.2", token_amount=250),
        ]


# ============================================================
# Allocation and Remainder Tests
# ============================================================

class TestAllocation:
    """Tests for pro-rata allocation and remainder policies."""

    @pytest.fixture
    def thirds(self) -> list[HolderPosition]:
        return [
            HolderPosition(beneficiary="0.0.1001", token_amount=333),
            HolderPosition(beneficiary="0.0.1002", token_amount=333),
            HolderPosition(beneficiary="0.0.1003", token_amount=334),
        ]

    def test_remainder_left_undistributed(self, calculator, thirds):
        """Floors of 33 each leave 1 unit undistributed by default."""
        shares, undistributed = calculator.allocate(100, thirds)

        assert [s.amount for s in shares] == [33, 33, 33]
        assert undistributed == 1

    def test_remainder_to_largest_holder(self, largest_holder_calculator, thirds):
        """The largest holder absorbs the remainder under largest_holder."""
        shares, undistributed = largest_holder_calculator.allocate(100, thirds)

        assert [s.amount for s in shares] == [33, 33, 34]
        assert undistributed == 0

    def test_largest_holder_tie_goes_to_smallest_address(self, largest_holder_calculator):
        """Equal holders break the tie by address."""
        positions = [
            HolderPosition(beneficiary="0.0.2", token_amount=500),
            HolderPosition(beneficiary="0.0.1", token_amount=500),
        ]

        shares, undistributed = largest_holder_calculator.allocate(101, positions)

        amounts = {s.beneficiary: s.amount for s in shares}
        assert amounts == {"0.0.1": 51, "0.0.2": 50}
        assert undistributed == 0

    def test_share_percentage(self, calculator, thirds):
        shares, _ = calculator.allocate(100, thirds)

        assert shares[2].share_percentage == pytest.approx(33.4)

    @pytest.mark.parametrize("gross", [1, 7, 999, 100_000, 123_457, 10**12 + 3])
    @pytest.mark.parametrize("policy", [LEAVE_UNDISTRIBUTED, LARGEST_HOLDER])
    def test_value_is_conserved(self, gross, policy):
        """farmer + holders + undistributed always equals gross revenue."""
        calculator = DistributionCalculator(
            DistributionConfig(farmer_share_ratio=0.37, remainder_policy=policy)
        )
        holdings = [
            make_holding(1, "0.0.1", 7),
            make_holding(2, "0.0.2", 13),
            make_holding(3, "0.0.3", 1),
        ]

        plan = calculator.calculate(make_harvest(gross), holdings)

        total = plan.farmer_share + plan.distributed_investor_amount + plan.undistributed_amount
        assert total == gross
        assert 0 <= plan.undistributed_amount < len(holdings)

    def test_pro_rata_floor_helper(self):
        assert pro_rata_floor(70_000, [600, 400]) == [42_000, 28_000]
        assert pro_rata_floor(10, []) == []

    def test_unknown_remainder_policy_rejected(self):
        with pytest.raises(ValueError, match="Unknown remainder policy"):
            apply_remainder([1], 2, [1], ["a"], "round_robin")


# ============================================================
# Zero Holder Tests
# ============================================================

class TestZeroEligibleHolders:
    """Tests for harvests without eligible holders."""

    def test_no_holders_flags_reconciliation(self, calculator):
        """The whole investor share stays undistributed and is flagged."""
        plan = calculator.calculate(make_harvest(100_000), [])

        assert plan.farmer_share == 30_000
        assert plan.holder_shares == []
        assert plan.undistributed_amount == 70_000
        assert plan.requires_reconciliation

    def test_only_late_holders_flags_reconciliation(self, calculator):
        holdings = [make_holding(1, "0.0.1", 10, acquired_at=HARVESTED_AT + timedelta(days=1))]

        plan = calculator.calculate(make_harvest(100_000), holdings)

        assert plan.total_eligible_tokens == 0
        assert plan.requires_reconciliation


# ============================================================
# Validation Tests
# ============================================================

class TestValidation:
    """Tests for rejected inputs."""

    def test_negative_revenue_rejected(self, calculator):
        with pytest.raises(DistributionValidationError) as exc_info:
            calculator.calculate(make_harvest(-1), [])

        assert exc_info.value.reason == "INVALID_REVENUE"

    def test_non_positive_tokens_rejected(self, calculator):
        with pytest.raises(DistributionValidationError) as exc_info:
            calculator.calculate(make_harvest(), [make_holding(1, "0.0.1", 0)])

        assert exc_info.value.reason == "INVALID_TOKEN_AMOUNT"

    def test_duplicate_holding_rejected(self, calculator):
        """The same holding row twice would double count its tokens."""
        holding = make_holding(1, "0.0.1", 10)

        with pytest.raises(DistributionValidationError) as exc_info:
            calculator.calculate(make_harvest(), [holding, holding])

        assert exc_info.value.reason == "DUPLICATE_BENEFICIARY"

    def test_duplicate_beneficiary_position_rejected(self, calculator):
        positions = [
            HolderPosition(beneficiary="0.0.1", token_amount=10),
            HolderPosition(beneficiary="0.0.1", token_amount=20),
        ]

        with pytest.raises(DistributionValidationError) as exc_info:
            calculator.allocate(100, positions)

        assert exc_info.value.reason == "DUPLICATE_BENEFICIARY"

    @pytest.mark.parametrize("ratio", [-0.1, 1.5])
    def test_invalid_ratio_rejected(self, calculator, ratio):
        with pytest.raises(DistributionValidationError) as exc_info:
            calculator.calculate(make_harvest(), [], farmer_share_ratio=ratio)

        assert exc_info.value.reason == "INVALID_CONFIGURATION"

    def test_invalid_config_rejected(self):
        with pytest.raises(DistributionValidationError) as exc_info:
            DistributionCalculator(DistributionConfig(remainder_policy="round_robin"))

        assert exc_info.value.reason == "INVALID_CONFIGURATION"

    def test_calculator_does_not_mutate_input(self, calculator):
        holdings = [make_holding(1, "0.0.1", 10), make_holding(2, "0.0.1", 5)]
        snapshot = [h.model_copy() for h in holdings]

        calculator.calculate(make_harvest(), holdings)

        assert holdings == snapshot
