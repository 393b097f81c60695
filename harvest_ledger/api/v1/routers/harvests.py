"""
API router for harvest distribution endpoints.
"""
from fastapi import APIRouter, Path
from typing import Annotated, List

from harvest_ledger.api.dependencies import OrchestratorDep
from harvest_ledger.api.v1.models.responses import (
    BatchDistributionResponse,
    DistributionResponse,
    PendingHarvestsResponse,
)
from harvest_ledger.domain.models import (
    DistributionOutcome,
    DistributionPlan,
    DistributionSummary,
    Harvest,
)


router = APIRouter(
    prefix="/harvests",
    tags=["harvests"],
)


def _to_response(outcome: DistributionOutcome) -> DistributionResponse:
    return DistributionResponse(
        harvest_id=outcome.harvest_id,
        status=outcome.status,
        farmer_share=outcome.farmer_share,
        investor_shares=outcome.investor_shares,
        undistributed_amount=outcome.undistributed_amount,
        reconciliation_required=outcome.reconciliation_required,
    )


@router.get(
    "/pending",
    response_model=PendingHarvestsResponse,
    summary="List harvests awaiting distribution",
)
def list_pending_harvests(orchestrator: OrchestratorDep) -> PendingHarvestsResponse:
    harvests = orchestrator.list_pending_harvests()
    return PendingHarvestsResponse(total=len(harvests), harvests=harvests)


@router.get(
    "/reconciliation",
    response_model=List[Harvest],
    summary="List distributed harvests flagged for reconciliation",
    description="Harvests whose investor share found no eligible holder.",
)
def list_reconciliation_queue(orchestrator: OrchestratorDep) -> List[Harvest]:
    return orchestrator.list_reconciliation_queue()


@router.post(
    "/distributions",
    response_model=BatchDistributionResponse,
    summary="Distribute every pending harvest",
)
def distribute_pending(orchestrator: OrchestratorDep) -> BatchDistributionResponse:
    outcomes = orchestrator.distribute_pending()
    return BatchDistributionResponse(
        distributed_count=sum(1 for o in outcomes if not o.already_distributed),
        results=[_to_response(o) for o in outcomes],
    )


@router.post(
    "/{harvest_id}/distribution",
    response_model=DistributionResponse,
    summary="Distribute a harvest's revenue",
    description="""
    Split the harvest's gross revenue between the farmer and the token
    holders eligible at harvest time, and record one earning per party.

    Safe to call repeatedly and concurrently: exactly one call distributes,
    every other call returns `already_distributed` without writing anything.
    """,
    responses={
        404: {"description": "Harvest not found"},
        422: {"description": "Harvest or holdings cannot be distributed"},
        503: {"description": "Ledger transaction failed; retry later"},
    }
)
def distribute_harvest(
    harvest_id: Annotated[int, Path(description="Unique identifier for the harvest")],
    orchestrator: OrchestratorDep,
) -> DistributionResponse:
    """
    Distribute a harvest.

    Args:
        harvest_id: Unique identifier for the harvest
        orchestrator: Distribution orchestrator (injected dependency)

    Returns:
        DistributionResponse with the recorded shares
    """
    return _to_response(orchestrator.distribute_harvest(harvest_id))


@router.get(
    "/{harvest_id}/distribution",
    response_model=DistributionSummary,
    summary="Get a harvest's distribution summary",
)
def get_distribution_summary(
    harvest_id: Annotated[int, Path(description="Unique identifier for the harvest")],
    orchestrator: OrchestratorDep,
) -> DistributionSummary:
    return orchestrator.get_distribution_summary(harvest_id)


@router.get(
    "/{harvest_id}/preview",
    response_model=DistributionPlan,
    summary="Preview a harvest's distribution without recording it",
)
def preview_distribution(
    harvest_id: Annotated[int, Path(description="Unique identifier for the harvest")],
    orchestrator: OrchestratorDep,
) -> DistributionPlan:
    return orchestrator.preview_distribution(harvest_id)
