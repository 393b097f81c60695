"""
Infrastructure layer: Earnings ledger persistence.

Every guard against double distribution or double payout is expressed here
as a conditional UPDATE whose row count decides the outcome, or as a unique
constraint. Callers own the transaction boundaries through
``session_scope`` and pass the session in.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from harvest_ledger.domain.models import (
    BeneficiaryKind,
    DistributionPlan,
    EarningStatus,
    HarvestStatus,
    PayoutKind,
    PayoutStatus,
)
from harvest_ledger.infrastructure.database import Database
from harvest_ledger.infrastructure.tables import (
    BeneficiaryAccountRow,
    EarningRow,
    GroveRow,
    HarvestRow,
    LedgerHoldRow,
    PayoutRow,
)
from harvest_ledger.utils.clock import utcnow

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Repository over harvests, earning records, payouts and holds.
    """

    def __init__(self, database: Database):
        self.database = database

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        with self.database.session_scope() as session:
            yield session

    # ------------------------------------------------------------------
    # Groves and harvests
    # ------------------------------------------------------------------

    def get_grove(self, session: Session, grove_id: int) -> Optional[GroveRow]:
        return session.get(GroveRow, grove_id)

    def get_harvest(self, session: Session, harvest_id: int) -> Optional[HarvestRow]:
        return session.get(HarvestRow, harvest_id)

    def latch_harvest(
        self,
        session: Session,
        harvest_id: int,
        plan: DistributionPlan,
        distributed_at: datetime,
    ) -> bool:
        """
        Flip the harvest's ``distributed`` latch if nobody has yet.

        Must be the first write of the distribution transaction. A concurrent
        distributor blocks on the row until this transaction ends and then
        sees ``distributed`` already true.

        Returns:
            True if this transaction owns the distribution
        """
        result = session.execute(
            update(HarvestRow)
            .where(HarvestRow.id == harvest_id, HarvestRow.distributed.is_(False))
            .values(
                distributed=True,
                status=HarvestStatus.DISTRIBUTED.value,
                farmer_share=plan.farmer_share,
                investor_share=plan.investor_share,
                undistributed_amount=plan.undistributed_amount,
                reconciliation_required=plan.requires_reconciliation,
                distributed_at=distributed_at,
                failure_reason=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_harvest_failed(self, harvest_id: int, reason: str) -> None:
        """Record a failed distribution attempt. The latch stays open."""
        with self.session_scope() as session:
            session.execute(
                update(HarvestRow)
                .where(HarvestRow.id == harvest_id, HarvestRow.distributed.is_(False))
                .values(status=HarvestStatus.FAILED.value, failure_reason=reason[:500])
                .execution_options(synchronize_session=False)
            )

    def list_undistributed_harvests(self, session: Session) -> list[tuple[HarvestRow, GroveRow]]:
        rows = session.execute(
            select(HarvestRow, GroveRow)
            .join(GroveRow, HarvestRow.grove_id == GroveRow.id)
            .where(HarvestRow.distributed.is_(False))
            .order_by(HarvestRow.harvested_at, HarvestRow.id)
        ).all()
        return [(harvest, grove) for harvest, grove in rows]

    def list_reconciliation_queue(self, session: Session) -> list[HarvestRow]:
        return list(session.scalars(
            select(HarvestRow)
            .where(HarvestRow.reconciliation_required.is_(True))
            .order_by(HarvestRow.id)
        ))

    # ------------------------------------------------------------------
    # Earning records
    # ------------------------------------------------------------------

    def insert_earnings(
        self,
        session: Session,
        plan: DistributionPlan,
        grove: GroveRow,
        distributed_at: datetime,
    ) -> list[EarningRow]:
        """
        Insert one farmer record and one record per holder share.

        Raises:
            IntegrityError: If records for this harvest already exist
        """
        rows = [
            EarningRow(
                beneficiary=grove.farmer_address,
                beneficiary_kind=BeneficiaryKind.FARMER.value,
                harvest_id=plan.harvest_id,
                grove_id=grove.id,
                token_amount=None,
                earning_amount=plan.farmer_share,
                status=EarningStatus.UNCLAIMED.value,
                distributed_at=distributed_at,
            )
        ]
        for share in plan.holder_shares:
            rows.append(EarningRow(
                beneficiary=share.beneficiary,
                beneficiary_kind=BeneficiaryKind.INVESTOR.value,
                harvest_id=plan.harvest_id,
                grove_id=grove.id,
                token_amount=share.token_amount,
                earning_amount=share.amount,
                status=EarningStatus.UNCLAIMED.value,
                distributed_at=distributed_at,
            ))
        session.add_all(rows)
        session.flush()
        return rows

    def sum_harvest_earnings(self, session: Session, harvest_id: int) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(EarningRow.earning_amount), 0))
            .where(EarningRow.harvest_id == harvest_id)
        )
        return int(total or 0)

    def earnings_for_harvest(self, session: Session, harvest_id: int) -> list[EarningRow]:
        return list(session.scalars(
            select(EarningRow)
            .where(EarningRow.harvest_id == harvest_id)
            .order_by(EarningRow.id)
        ))

    def earnings_for(self, session: Session, beneficiary: str) -> list[EarningRow]:
        return list(session.scalars(
            select(EarningRow)
            .where(EarningRow.beneficiary == beneficiary)
            .order_by(EarningRow.distributed_at.desc(), EarningRow.id.desc())
        ))

    def earnings_by_ids(self, session: Session, record_ids: Iterable[int]) -> list[EarningRow]:
        return list(session.scalars(
            select(EarningRow).where(EarningRow.id.in_(list(record_ids)))
        ))

    def reserve_records(
        self,
        session: Session,
        request_id: str,
        beneficiary: str,
        record_ids: list[int],
    ) -> int:
        """
        Attach unclaimed, unreserved records to a payout request.

        Returns:
            Number of records reserved; fewer than requested means another
            payout got there first
        """
        result = session.execute(
            update(EarningRow)
            .where(
                EarningRow.id.in_(record_ids),
                EarningRow.beneficiary == beneficiary,
                EarningRow.status == EarningStatus.UNCLAIMED.value,
                EarningRow.payout_request_id.is_(None),
            )
            .values(payout_request_id=request_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def release_records(self, session: Session, request_id: str) -> int:
        result = session.execute(
            update(EarningRow)
            .where(
                EarningRow.payout_request_id == request_id,
                EarningRow.status == EarningStatus.UNCLAIMED.value,
            )
            .values(payout_request_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def claim_records(
        self,
        session: Session,
        request_id: str,
        reference: str,
        claimed_at: datetime,
    ) -> int:
        """Mark the records reserved by a confirmed payout as claimed."""
        result = session.execute(
            update(EarningRow)
            .where(
                EarningRow.payout_request_id == request_id,
                EarningRow.status == EarningStatus.UNCLAIMED.value,
            )
            .values(
                status=EarningStatus.CLAIMED.value,
                claimed_at=claimed_at,
                claim_reference=reference,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def settle_withdrawn_records(
        self,
        session: Session,
        beneficiary: str,
        total_withdrawn: int,
        reference: str,
        claimed_at: datetime,
    ) -> int:
        """
        Mark a beneficiary's oldest records claimed while withdrawals cover them.

        Only records never attached to a claim take part: records paid or
        reserved by a claim are settled by that claim. Records are taken in
        distribution order; a record is claimed only if the cumulative earned
        amount up to and including it is covered by ``total_withdrawn``.
        """
        records = list(session.scalars(
            select(EarningRow)
            .where(
                EarningRow.beneficiary == beneficiary,
                EarningRow.payout_request_id.is_(None),
            )
            .order_by(EarningRow.distributed_at, EarningRow.id)
        ))
        covered = 0
        to_claim = []
        for record in records:
            covered += record.earning_amount
            if covered > total_withdrawn:
                break
            if record.status == EarningStatus.UNCLAIMED.value:
                to_claim.append(record.id)

        if not to_claim:
            return 0
        result = session.execute(
            update(EarningRow)
            .where(
                EarningRow.id.in_(to_claim),
                EarningRow.status == EarningStatus.UNCLAIMED.value,
                EarningRow.payout_request_id.is_(None),
            )
            .values(
                status=EarningStatus.CLAIMED.value,
                claimed_at=claimed_at,
                claim_reference=reference,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Payout requests
    # ------------------------------------------------------------------

    def add_payout(self, session: Session, row: PayoutRow) -> PayoutRow:
        session.add(row)
        session.flush()
        return row

    def get_payout(self, session: Session, request_id: str) -> Optional[PayoutRow]:
        return session.get(PayoutRow, request_id)

    def payouts_for(
        self,
        session: Session,
        beneficiary: str,
        statuses: Optional[Iterable[PayoutStatus]] = None,
    ) -> list[PayoutRow]:
        query = select(PayoutRow).where(PayoutRow.beneficiary == beneficiary)
        if statuses is not None:
            query = query.where(PayoutRow.status.in_([s.value for s in statuses]))
        return list(session.scalars(query.order_by(PayoutRow.requested_at.desc())))

    def payouts_with_status(self, session: Session, statuses: Iterable[PayoutStatus]) -> list[PayoutRow]:
        return list(session.scalars(
            select(PayoutRow)
            .where(PayoutRow.status.in_([s.value for s in statuses]))
            .order_by(PayoutRow.requested_at)
        ))

    def sum_completed_withdrawals(self, session: Session, beneficiary: str) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(PayoutRow.amount), 0))
            .where(
                PayoutRow.beneficiary == beneficiary,
                PayoutRow.kind == PayoutKind.WITHDRAWAL.value,
                PayoutRow.status == PayoutStatus.COMPLETED.value,
            )
        )
        return int(total or 0)

    def transition_payout(
        self,
        session: Session,
        request_id: str,
        from_statuses: Iterable[PayoutStatus],
        to_status: PayoutStatus,
        **fields,
    ) -> bool:
        """
        Move a payout request between statuses if it is still in one of
        ``from_statuses``.

        Returns:
            True if the transition happened
        """
        result = session.execute(
            update(PayoutRow)
            .where(
                PayoutRow.id == request_id,
                PayoutRow.status.in_([s.value for s in from_statuses]),
            )
            .values(status=to_status.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Beneficiary accounts
    # ------------------------------------------------------------------

    def ensure_account(self, beneficiary: str) -> None:
        """Create the beneficiary's version row if it does not exist."""
        with self.session_scope() as session:
            if session.get(BeneficiaryAccountRow, beneficiary) is not None:
                return
        try:
            with self.session_scope() as session:
                session.add(BeneficiaryAccountRow(beneficiary=beneficiary, version=0))
        except IntegrityError:
            # Created concurrently by another writer
            logger.debug(f"Account for {beneficiary} already exists")

    def get_account_version(self, session: Session, beneficiary: str) -> int:
        version = session.scalar(
            select(BeneficiaryAccountRow.version)
            .where(BeneficiaryAccountRow.beneficiary == beneficiary)
        )
        return int(version or 0)

    def bump_account_version(self, session: Session, beneficiary: str, expected_version: int) -> bool:
        """Compare-and-set on the beneficiary's version counter."""
        result = session.execute(
            update(BeneficiaryAccountRow)
            .where(
                BeneficiaryAccountRow.beneficiary == beneficiary,
                BeneficiaryAccountRow.version == expected_version,
            )
            .values(version=expected_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    def active_hold(self, session: Session, beneficiary: str) -> Optional[LedgerHoldRow]:
        return session.scalar(
            select(LedgerHoldRow)
            .where(
                LedgerHoldRow.beneficiary == beneficiary,
                LedgerHoldRow.released_at.is_(None),
            )
            .limit(1)
        )

    def place_hold(self, beneficiary: str, reason: str) -> None:
        with self.session_scope() as session:
            if self.active_hold(session, beneficiary) is None:
                session.add(LedgerHoldRow(beneficiary=beneficiary, reason=reason))

    def release_hold(self, beneficiary: str) -> int:
        with self.session_scope() as session:
            result = session.execute(
                update(LedgerHoldRow)
                .where(
                    LedgerHoldRow.beneficiary == beneficiary,
                    LedgerHoldRow.released_at.is_(None),
                )
                .values(released_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount
