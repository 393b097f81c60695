"""
Dependency injection for FastAPI.
"""
from typing import Annotated, Optional
from fastapi import Depends

from harvest_ledger.config import settings
from harvest_ledger.infrastructure.balance_cache import BalanceCache
from harvest_ledger.infrastructure.database import Database, get_database
from harvest_ledger.infrastructure.holding_registry import HoldingRegistry
from harvest_ledger.infrastructure.ledger_store import LedgerStore
from harvest_ledger.infrastructure.transfer_executor import get_transfer_executor
from harvest_ledger.services.application.balance_aggregator import BalanceAggregator
from harvest_ledger.services.application.distribution_orchestrator import DistributionOrchestrator
from harvest_ledger.services.application.payout_processor import PayoutProcessor
from harvest_ledger.services.domain.distribution_calculator import DistributionCalculator


# Shared across requests so invalidations are seen by every reader
_balance_cache: Optional[BalanceCache] = None


def get_balance_cache() -> BalanceCache:
    """
    Get or create the process-wide balance cache.

    Returns:
        BalanceCache instance
    """
    global _balance_cache
    if _balance_cache is None:
        _balance_cache = BalanceCache(ttl_seconds=settings.balance_cache_ttl_seconds)
    return _balance_cache


def get_ledger_store(
    database: Annotated[Database, Depends(get_database)],
) -> LedgerStore:
    return LedgerStore(database)


def get_holding_registry(
    database: Annotated[Database, Depends(get_database)],
) -> HoldingRegistry:
    return HoldingRegistry(database)


def get_distribution_calculator() -> DistributionCalculator:
    """
    Dependency factory for DistributionCalculator.

    Returns:
        DistributionCalculator configured from settings
    """
    return DistributionCalculator()


def get_balance_aggregator(
    store: Annotated[LedgerStore, Depends(get_ledger_store)],
    cache: Annotated[BalanceCache, Depends(get_balance_cache)],
) -> BalanceAggregator:
    return BalanceAggregator(store=store, cache=cache)


def get_distribution_orchestrator(
    store: Annotated[LedgerStore, Depends(get_ledger_store)],
    registry: Annotated[HoldingRegistry, Depends(get_holding_registry)],
    calculator: Annotated[DistributionCalculator, Depends(get_distribution_calculator)],
    aggregator: Annotated[BalanceAggregator, Depends(get_balance_aggregator)],
) -> DistributionOrchestrator:
    """
    Dependency factory for DistributionOrchestrator.

    Args:
        store: Ledger store (injected)
        registry: Holding registry (injected)
        calculator: Distribution calculator (injected)
        aggregator: Balance aggregator (injected)

    Returns:
        DistributionOrchestrator instance
    """
    return DistributionOrchestrator(
        store=store,
        registry=registry,
        calculator=calculator,
        aggregator=aggregator,
    )


def get_payout_processor(
    store: Annotated[LedgerStore, Depends(get_ledger_store)],
    aggregator: Annotated[BalanceAggregator, Depends(get_balance_aggregator)],
    executor=Depends(get_transfer_executor),
) -> PayoutProcessor:
    """
    Dependency factory for PayoutProcessor.

    Args:
        store: Ledger store (injected)
        aggregator: Balance aggregator (injected)
        executor: Transfer executor for the configured mode (injected)

    Returns:
        PayoutProcessor instance
    """
    return PayoutProcessor(store=store, aggregator=aggregator, executor=executor)


# Type aliases for cleaner route signatures
OrchestratorDep = Annotated[DistributionOrchestrator, Depends(get_distribution_orchestrator)]
AggregatorDep = Annotated[BalanceAggregator, Depends(get_balance_aggregator)]
PayoutProcessorDep = Annotated[PayoutProcessor, Depends(get_payout_processor)]
