"""
API router for beneficiary balance, earnings and payout endpoints.
"""
from fastapi import APIRouter, Path, status
from typing import Annotated

from harvest_ledger.api.dependencies import AggregatorDep, PayoutProcessorDep
from harvest_ledger.api.v1.models.requests import ClaimRequestBody, WithdrawalRequestBody
from harvest_ledger.api.v1.models.responses import (
    BalanceResponse,
    EarningsHistoryResponse,
    GroveBreakdownResponse,
    HoldReleaseResponse,
    PayoutHistoryResponse,
)
from harvest_ledger.domain.models import PayoutRequest
from harvest_ledger.utils.clock import utcnow


router = APIRouter(
    prefix="/beneficiaries",
    tags=["beneficiaries"],
)

BeneficiaryPath = Annotated[
    str, Path(description="Beneficiary address (0x EVM address or shard.realm.num account)")
]


@router.get(
    "/{beneficiary}/balance",
    response_model=BalanceResponse,
    summary="Get a beneficiary's balance",
    description="""
    Balance derived from the earnings ledger and payout journal:
    `available = total_earned - total_withdrawn - in_flight - pending`.
    """,
)
def get_balance(beneficiary: BeneficiaryPath, aggregator: AggregatorDep) -> BalanceResponse:
    balance = aggregator.get_balance(beneficiary)
    return BalanceResponse(**balance.model_dump())


@router.get(
    "/{beneficiary}/earnings",
    response_model=EarningsHistoryResponse,
    summary="Get a beneficiary's earnings history",
)
def get_earnings_history(beneficiary: BeneficiaryPath, aggregator: AggregatorDep) -> EarningsHistoryResponse:
    records = aggregator.get_earnings_history(beneficiary)
    return EarningsHistoryResponse(
        beneficiary=beneficiary,
        total_records=len(records),
        records=records,
    )


@router.get(
    "/{beneficiary}/groves",
    response_model=GroveBreakdownResponse,
    summary="Get a beneficiary's earnings per grove",
)
def get_grove_breakdown(beneficiary: BeneficiaryPath, aggregator: AggregatorDep) -> GroveBreakdownResponse:
    return GroveBreakdownResponse(
        beneficiary=beneficiary,
        groves=aggregator.get_grove_breakdown(beneficiary),
    )


@router.get(
    "/{beneficiary}/payouts",
    response_model=PayoutHistoryResponse,
    summary="Get a beneficiary's claims and withdrawals",
)
def get_payout_history(beneficiary: BeneficiaryPath, processor: PayoutProcessorDep) -> PayoutHistoryResponse:
    return PayoutHistoryResponse(
        beneficiary=beneficiary,
        payouts=processor.get_payout_history(beneficiary),
    )


@router.post(
    "/{beneficiary}/claims",
    response_model=PayoutRequest,
    status_code=status.HTTP_201_CREATED,
    summary="Claim earnings",
    description="""
    Pay out specific earning records, or an amount when no records are given.

    The returned request is `completed` or `failed` when the transfer gave a
    definitive answer, and `processing` when its outcome is unknown.
    """,
    responses={
        409: {"description": "Records are reserved by another open payout"},
        422: {"description": "Invalid claim"},
        423: {"description": "Beneficiary is on hold pending reconciliation"},
    }
)
async def submit_claim(
    beneficiary: BeneficiaryPath,
    body: ClaimRequestBody,
    processor: PayoutProcessorDep,
) -> PayoutRequest:
    """
    Submit a claim.

    Args:
        beneficiary: Beneficiary address
        body: Record ids and/or amount
        processor: Payout processor (injected dependency)

    Returns:
        PayoutRequest in its status after the transfer attempt
    """
    return await processor.submit_claim(beneficiary, body.earning_record_ids, body.amount)


@router.post(
    "/{beneficiary}/withdrawals",
    response_model=PayoutRequest,
    status_code=status.HTTP_201_CREATED,
    summary="Withdraw from the available balance",
)
async def submit_withdrawal(
    beneficiary: BeneficiaryPath,
    body: WithdrawalRequestBody,
    processor: PayoutProcessorDep,
) -> PayoutRequest:
    return await processor.process_withdrawal(beneficiary, body.amount)


@router.delete(
    "/{beneficiary}/hold",
    response_model=HoldReleaseResponse,
    summary="Release a ledger hold after manual reconciliation",
)
def release_hold(beneficiary: BeneficiaryPath, aggregator: AggregatorDep) -> HoldReleaseResponse:
    released = aggregator.release_hold(beneficiary)
    return HoldReleaseResponse(
        beneficiary=beneficiary,
        released_holds=released,
        released_at=utcnow(),
    )
