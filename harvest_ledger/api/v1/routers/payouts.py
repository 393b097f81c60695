"""
API router for payout request endpoints.
"""
from fastapi import APIRouter, Path
from typing import Annotated

from harvest_ledger.api.dependencies import PayoutProcessorDep
from harvest_ledger.api.v1.models.responses import UnresolvedPayoutsResponse
from harvest_ledger.domain.models import PayoutRequest


router = APIRouter(
    prefix="/payouts",
    tags=["payouts"],
)

PayoutIdPath = Annotated[str, Path(description="Payout request id")]


@router.get(
    "/unresolved",
    response_model=UnresolvedPayoutsResponse,
    summary="List payouts still requested or processing",
)
def list_unresolved(processor: PayoutProcessorDep) -> UnresolvedPayoutsResponse:
    payouts = processor.list_unresolved()
    return UnresolvedPayoutsResponse(total=len(payouts), payouts=payouts)


@router.get(
    "/{request_id}",
    response_model=PayoutRequest,
    summary="Get a payout request",
)
def get_payout(request_id: PayoutIdPath, processor: PayoutProcessorDep) -> PayoutRequest:
    return processor.get_payout(request_id)


@router.post(
    "/{request_id}/reconcile",
    response_model=PayoutRequest,
    summary="Settle a payout with an unknown transfer outcome",
    description="""
    Ask the transfer executor what happened to the payout's transfer and
    finalise the request. A payout that never reached the executor is failed
    and its records released.
    """,
    responses={
        404: {"description": "Payout not found"},
        502: {"description": "Transfer gateway unavailable"},
    }
)
async def reconcile_payout(request_id: PayoutIdPath, processor: PayoutProcessorDep) -> PayoutRequest:
    return await processor.reconcile(request_id)
