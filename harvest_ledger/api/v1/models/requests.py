"""
API request models using Pydantic.
"""
from typing import List, Optional
from pydantic import BaseModel, Field


class ClaimRequestBody(BaseModel):
    """Claim of specific earning records, or an amount when no records are given."""
    earning_record_ids: Optional[List[int]] = Field(
        default=None,
        description="Earning records to claim (investor path)"
    )
    amount: Optional[int] = Field(
        default=None,
        description="Amount in minor units; must equal the records' total when both are given"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "earning_record_ids": [12, 15],
                "amount": 70000,
            }
        }


class WithdrawalRequestBody(BaseModel):
    """Withdrawal of an amount from the available balance (farmer path)."""
    amount: int = Field(
        description="Amount in minor units",
        examples=[30000]
    )
