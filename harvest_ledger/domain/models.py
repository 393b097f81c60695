"""
Domain models for groves, harvests, holdings and earnings.

These models represent the core domain entities and should be independent
of any infrastructure concerns (database tables, gateway clients, etc.).
All money amounts are integers in minor currency units (cents).
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class BeneficiaryKind(str, Enum):
    """Who an earning belongs to."""
    FARMER = "farmer"
    INVESTOR = "investor"


class EarningStatus(str, Enum):
    """Lifecycle of a single earning record. Only moves unclaimed -> claimed."""
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"


class HarvestStatus(str, Enum):
    REPORTED = "reported"
    DISTRIBUTED = "distributed"
    FAILED = "failed"


class PayoutKind(str, Enum):
    CLAIM = "claim"
    WITHDRAWAL = "withdrawal"


class PayoutStatus(str, Enum):
    """Payout request lifecycle. completed and failed are terminal."""
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_PAYOUT_STATUSES = (PayoutStatus.REQUESTED, PayoutStatus.PROCESSING)


class AcquisitionType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class Grove(BaseModel):
    """Tokenized agricultural unit."""
    id: int
    name: str
    farmer_address: str
    total_tokens_issued: int = Field(ge=0)

    class Config:
        from_attributes = True


class Harvest(BaseModel):
    """Reported yield event for a grove."""
    id: int
    grove_id: int
    gross_revenue: int = Field(description="Gross revenue in minor units")
    harvested_at: datetime
    distributed: bool = False
    status: HarvestStatus = HarvestStatus.REPORTED
    farmer_share: Optional[int] = None
    investor_share: Optional[int] = None
    undistributed_amount: Optional[int] = None
    reconciliation_required: bool = False
    distributed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    class Config:
        from_attributes = True


class Holding(BaseModel):
    """Investor owns ``token_amount`` tokens of a grove since ``acquired_at``."""
    id: int
    investor_address: str
    grove_id: int
    token_amount: int
    acquired_at: datetime
    is_active: bool = True
    acquisition_type: AcquisitionType = AcquisitionType.PRIMARY

    class Config:
        from_attributes = True


class HolderPosition(BaseModel):
    """Consolidated eligible position of one beneficiary in one harvest."""
    beneficiary: str
    token_amount: int


class HolderShare(BaseModel):
    """Calculated entitlement for one eligible holder."""
    beneficiary: str
    token_amount: int
    amount: int
    share_percentage: float = Field(description="Percent of eligible tokens held")


class DistributionPlan(BaseModel):
    """Output of the distribution calculator for one harvest."""
    harvest_id: int
    gross_revenue: int
    farmer_share: int
    investor_share: int
    total_eligible_tokens: int
    holder_shares: List[HolderShare]
    undistributed_amount: int = Field(
        description="Investor share not assigned to any holder"
    )
    remainder_policy: str

    @property
    def distributed_investor_amount(self) -> int:
        return sum(share.amount for share in self.holder_shares)

    @property
    def requires_reconciliation(self) -> bool:
        """No eligible holder received the investor share."""
        return self.investor_share > 0 and not self.holder_shares


class EarningRecord(BaseModel):
    """One beneficiary's entitlement from one harvest."""
    id: int
    beneficiary: str
    beneficiary_kind: BeneficiaryKind
    harvest_id: int
    grove_id: int
    token_amount: Optional[int] = None
    earning_amount: int
    status: EarningStatus
    distributed_at: datetime
    claimed_at: Optional[datetime] = None
    claim_reference: Optional[str] = None
    payout_request_id: Optional[str] = None

    class Config:
        from_attributes = True


class Balance(BaseModel):
    """Derived balance of a beneficiary. Never the source of truth."""
    beneficiary: str
    available: int = 0
    pending: int = 0
    in_flight: int = 0
    total_earned: int = 0
    total_withdrawn: int = 0
    earned_this_month: int = 0
    computed_at: datetime


class GroveEarnings(BaseModel):
    """Per-grove breakdown of a beneficiary's earnings."""
    grove_id: int
    grove_name: str
    total_earned: int
    unclaimed: int
    record_count: int


class PayoutRequest(BaseModel):
    """Claim (investor, by records) or withdrawal (farmer, by amount)."""
    id: str
    beneficiary: str
    kind: PayoutKind
    amount: int
    earning_record_ids: List[int] = Field(default_factory=list)
    status: PayoutStatus
    external_reference: Optional[str] = None
    explorer_url: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DistributionOutcome(BaseModel):
    """Result of ``distribute_harvest``."""
    harvest_id: int
    status: str = Field(description="distributed | already_distributed")
    farmer_share: int = 0
    investor_shares: List[HolderShare] = Field(default_factory=list)
    undistributed_amount: int = 0
    reconciliation_required: bool = False

    @property
    def already_distributed(self) -> bool:
        return self.status == "already_distributed"


class PendingHarvest(BaseModel):
    """Undistributed harvest awaiting the orchestrator."""
    harvest_id: int
    grove_id: int
    grove_name: str
    farmer_address: str
    gross_revenue: int
    harvested_at: datetime
    days_since_harvest: int
    status: HarvestStatus
    failure_reason: Optional[str] = None


class DistributionSummary(BaseModel):
    """Reporting view of one harvest's distribution."""
    harvest_id: int
    grove_name: str
    farmer_address: str
    gross_revenue: int
    is_distributed: bool
    farmer_share: Optional[int] = None
    investor_share: Optional[int] = None
    undistributed_amount: Optional[int] = None
    reconciliation_required: bool = False
    distributed_at: Optional[datetime] = None
    total_holders: int = 0
    holder_shares: List[HolderShare] = Field(default_factory=list)
