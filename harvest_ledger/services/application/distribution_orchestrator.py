"""
Application service: Orchestration of harvest revenue distribution.
"""
from typing import List
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from harvest_ledger.domain.errors import (
    DistributionFailedError,
    DistributionValidationError,
    GroveNotFoundError,
    HarvestNotFoundError,
    LedgerInvariantError,
)
from harvest_ledger.domain.models import (
    DistributionOutcome,
    DistributionPlan,
    DistributionSummary,
    Grove,
    Harvest,
    HarvestStatus,
    HolderShare,
    PendingHarvest,
)
from harvest_ledger.infrastructure.holding_registry import HoldingRegistry
from harvest_ledger.infrastructure.ledger_store import LedgerStore
from harvest_ledger.services.application.balance_aggregator import BalanceAggregator
from harvest_ledger.services.domain.distribution_calculator import DistributionCalculator
from harvest_ledger.utils.clock import utcnow

logger = logging.getLogger(__name__)

ALREADY_DISTRIBUTED = "already_distributed"
DISTRIBUTED = "distributed"


class DistributionOrchestrator:
    """
    Application service for distributing harvest revenue.

    Sequences holding migration, calculation, the ledger transaction and
    balance refresh. The business rules live in the calculator; the
    idempotence latch lives in the ledger store.
    """

    def __init__(
        self,
        store: LedgerStore,
        registry: HoldingRegistry,
        calculator: DistributionCalculator,
        aggregator: BalanceAggregator,
    ):
        """
        Initialize the orchestrator with dependencies.

        Args:
            store: Ledger store owning harvests and earning records
            registry: Holding registry for the grove's holder set
            calculator: Pure distribution calculator
            aggregator: Balance aggregator refreshed after distribution
        """
        self.store = store
        self.registry = registry
        self.calculator = calculator
        self.aggregator = aggregator

    def distribute_harvest(self, harvest_id: int) -> DistributionOutcome:
        """
        Distribute a harvest's revenue exactly once.

        This method orchestrates:
        1. Loading the harvest and short-circuiting if already distributed
        2. Migrating legacy holdings of the grove
        3. Running the distribution calculator
        4. Latching the harvest and writing all earning records in one transaction
        5. Refreshing balances of every affected beneficiary (best effort)

        Args:
            harvest_id: Harvest to distribute

        Returns:
            DistributionOutcome, ``already_distributed`` when a previous or
            concurrent call distributed it

        Raises:
            HarvestNotFoundError: If the harvest does not exist
            DistributionValidationError: If the harvest or holdings are invalid
            LedgerInvariantError: If the written records do not conserve revenue
            DistributionFailedError: If the ledger transaction failed; retryable
        """
        harvest, grove = self._load(harvest_id)
        if harvest.distributed:
            logger.info(f"Harvest {harvest_id} already distributed")
            return DistributionOutcome(harvest_id=harvest_id, status=ALREADY_DISTRIBUTED)

        self.registry.migrate_legacy_holdings(grove.id)
        holdings = self.registry.list_active_holdings(grove.id)

        try:
            plan = self.calculator.calculate(harvest, holdings)
        except DistributionValidationError as e:
            self.store.mark_harvest_failed(harvest_id, e.message)
            raise

        try:
            committed = self._commit_plan(plan, grove)
        except IntegrityError:
            logger.warning(f"Harvest {harvest_id} records already exist; lost distribution race")
            return DistributionOutcome(harvest_id=harvest_id, status=ALREADY_DISTRIBUTED)
        except LedgerInvariantError as e:
            logger.critical(f"Distribution of harvest {harvest_id} aborted: {e.message}")
            self.store.mark_harvest_failed(harvest_id, e.message)
            raise
        except SQLAlchemyError as e:
            logger.error(f"Distribution of harvest {harvest_id} failed: {e}")
            self.store.mark_harvest_failed(harvest_id, str(e))
            raise DistributionFailedError(
                f"Distribution of harvest {harvest_id} could not be committed; retry later"
            ) from e

        if not committed:
            logger.info(f"Harvest {harvest_id} distributed concurrently by another caller")
            return DistributionOutcome(harvest_id=harvest_id, status=ALREADY_DISTRIBUTED)

        beneficiaries = [grove.farmer_address] + [s.beneficiary for s in plan.holder_shares]
        self.aggregator.refresh_many(beneficiaries)

        logger.info(f"Harvest {harvest_id} distributed: farmer={plan.farmer_share}, "
                    f"investors={plan.distributed_investor_amount} across "
                    f"{len(plan.holder_shares)} holders, undistributed={plan.undistributed_amount}")

        return DistributionOutcome(
            harvest_id=harvest_id,
            status=DISTRIBUTED,
            farmer_share=plan.farmer_share,
            investor_shares=plan.holder_shares,
            undistributed_amount=plan.undistributed_amount,
            reconciliation_required=plan.requires_reconciliation,
        )

    def _commit_plan(self, plan: DistributionPlan, grove: Grove) -> bool:
        """
        Latch the harvest and insert its earning records atomically.

        Returns:
            False if the latch was already taken
        """
        with self.store.session_scope() as session:
            now = utcnow()
            if not self.store.latch_harvest(session, plan.harvest_id, plan, now):
                return False

            self.store.insert_earnings(session, plan, grove, now)

            recorded = self.store.sum_harvest_earnings(session, plan.harvest_id)
            if recorded + plan.undistributed_amount != plan.gross_revenue:
                raise LedgerInvariantError(
                    f"Harvest {plan.harvest_id} records sum to {recorded} with "
                    f"{plan.undistributed_amount} undistributed, expected {plan.gross_revenue}"
                )
            return True

    def _load(self, harvest_id: int) -> tuple[Harvest, Grove]:
        with self.store.session_scope() as session:
            harvest_row = self.store.get_harvest(session, harvest_id)
            if harvest_row is None:
                raise HarvestNotFoundError(f"Harvest {harvest_id} not found")
            grove_row = self.store.get_grove(session, harvest_row.grove_id)
            if grove_row is None:
                raise GroveNotFoundError(
                    f"Grove {harvest_row.grove_id} of harvest {harvest_id} not found"
                )
            return Harvest.model_validate(harvest_row), Grove.model_validate(grove_row)

    def preview_distribution(self, harvest_id: int) -> DistributionPlan:
        """
        Calculate the distribution of a harvest without writing anything.
        """
        harvest, grove = self._load(harvest_id)
        holdings = self.registry.list_active_holdings(grove.id)
        return self.calculator.calculate(harvest, holdings)

    def distribute_pending(self) -> List[DistributionOutcome]:
        """
        Distribute every harvest whose latch is still open.

        A failing harvest is logged and left for the next run.
        """
        outcomes = []
        for pending in self.list_pending_harvests():
            try:
                outcomes.append(self.distribute_harvest(pending.harvest_id))
            except (DistributionValidationError, DistributionFailedError, LedgerInvariantError) as e:
                logger.error(f"Skipping harvest {pending.harvest_id}: [{e.reason}] {e.message}")
        return outcomes

    def list_pending_harvests(self) -> List[PendingHarvest]:
        """Harvests not yet distributed, oldest first."""
        now = utcnow()
        with self.store.session_scope() as session:
            return [
                PendingHarvest(
                    harvest_id=harvest.id,
                    grove_id=grove.id,
                    grove_name=grove.name,
                    farmer_address=grove.farmer_address,
                    gross_revenue=harvest.gross_revenue,
                    harvested_at=harvest.harvested_at,
                    days_since_harvest=max((now - harvest.harvested_at).days, 0),
                    status=HarvestStatus(harvest.status),
                    failure_reason=harvest.failure_reason,
                )
                for harvest, grove in self.store.list_undistributed_harvests(session)
            ]

    def list_reconciliation_queue(self) -> List[Harvest]:
        """Distributed harvests whose investor share found no eligible holder."""
        with self.store.session_scope() as session:
            return [
                Harvest.model_validate(row)
                for row in self.store.list_reconciliation_queue(session)
            ]

    def get_distribution_summary(self, harvest_id: int) -> DistributionSummary:
        """
        Reporting view of a harvest and the records it produced.

        Raises:
            HarvestNotFoundError: If the harvest does not exist
        """
        harvest, grove = self._load(harvest_id)
        with self.store.session_scope() as session:
            investor_rows = [
                row for row in self.store.earnings_for_harvest(session, harvest_id)
                if row.token_amount is not None
            ]
        total_tokens = sum(row.token_amount for row in investor_rows)

        return DistributionSummary(
            harvest_id=harvest.id,
            grove_name=grove.name,
            farmer_address=grove.farmer_address,
            gross_revenue=harvest.gross_revenue,
            is_distributed=harvest.distributed,
            farmer_share=harvest.farmer_share,
            investor_share=harvest.investor_share,
            undistributed_amount=harvest.undistributed_amount,
            reconciliation_required=harvest.reconciliation_required,
            distributed_at=harvest.distributed_at,
            total_holders=len(investor_rows),
            holder_shares=[
                HolderShare(
                    beneficiary=row.beneficiary,
                    token_amount=row.token_amount,
                    amount=row.earning_amount,
                    share_percentage=round(row.token_amount / total_tokens * 100, 4),
                )
                for row in investor_rows
            ],
        )
