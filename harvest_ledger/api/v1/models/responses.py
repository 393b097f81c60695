"""
API response models using Pydantic.
"""
from datetime import datetime
from typing import List
from pydantic import BaseModel, Field

from harvest_ledger.domain.models import (
    Balance,
    EarningRecord,
    GroveEarnings,
    HolderShare,
    PayoutRequest,
    PendingHarvest,
)


class DistributionResponse(BaseModel):
    """Response model for a distribution run."""
    harvest_id: int
    status: str = Field(
        description="distributed, or already_distributed when a previous run won"
    )
    farmer_share: int = Field(
        description="Farmer share in minor units (0 when already distributed)"
    )
    investor_shares: List[HolderShare]
    undistributed_amount: int = Field(
        description="Investor share not assigned to any holder"
    )
    reconciliation_required: bool

    class Config:
        json_schema_extra = {
            "example": {
                "harvest_id": 7,
                "status": "distributed",
                "farmer_share": 30000,
                "investor_shares": [
                    {"beneficiary": "0.0.1001", "token_amount": 600, "amount": 42000,
                     "share_percentage": 60.0},
                    {"beneficiary": "0.0.1002", "token_amount": 400, "amount": 28000,
                     "share_percentage": 40.0},
                ],
                "undistributed_amount": 0,
                "reconciliation_required": False,
            }
        }


class BatchDistributionResponse(BaseModel):
    distributed_count: int
    results: List[DistributionResponse]


class PendingHarvestsResponse(BaseModel):
    total: int
    harvests: List[PendingHarvest]


class BalanceResponse(Balance):
    """Derived balance of a beneficiary, amounts in minor units."""

    class Config:
        json_schema_extra = {
            "example": {
                "beneficiary": "0.0.1001",
                "available": 42000,
                "pending": 0,
                "in_flight": 0,
                "total_earned": 42000,
                "total_withdrawn": 0,
                "earned_this_month": 42000,
                "computed_at": "2026-03-01T12:00:00",
            }
        }


class EarningsHistoryResponse(BaseModel):
    beneficiary: str
    total_records: int
    records: List[EarningRecord]


class GroveBreakdownResponse(BaseModel):
    beneficiary: str
    groves: List[GroveEarnings]


class PayoutHistoryResponse(BaseModel):
    beneficiary: str
    payouts: List[PayoutRequest]


class UnresolvedPayoutsResponse(BaseModel):
    total: int
    payouts: List[PayoutRequest]


class HoldReleaseResponse(BaseModel):
    beneficiary: str
    released_holds: int
    released_at: datetime
