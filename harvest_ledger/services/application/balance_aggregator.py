"""
Application service: Balance aggregation over the earnings ledger.

Balances are always derived from the ledger: earning records on one side,
payout requests on the other. The cache only saves recomputation between
ledger changes.
"""
from datetime import datetime, timedelta
from typing import Iterable, Optional
import logging

from sqlalchemy.orm import Session

from harvest_ledger.config import settings
from harvest_ledger.domain.errors import LedgerInvariantError
from harvest_ledger.domain.models import (
    OPEN_PAYOUT_STATUSES,
    Balance,
    EarningRecord,
    EarningStatus,
    GroveEarnings,
    PayoutStatus,
)
from harvest_ledger.infrastructure.balance_cache import BalanceCache
from harvest_ledger.infrastructure.ledger_store import LedgerStore
from harvest_ledger.infrastructure.tables import EarningRow, PayoutRow
from harvest_ledger.utils.clock import start_of_month, utcnow

logger = logging.getLogger(__name__)


def fold_balance(
    beneficiary: str,
    earnings: Iterable[EarningRow],
    payouts: Iterable[PayoutRow],
    now: datetime,
    maturation_days: int = 0,
) -> Balance:
    """
    Fold earning records and payout requests into a balance.

    - total_earned: every earning record
    - total_withdrawn: completed payouts
    - in_flight: requested or processing payouts
    - pending: unclaimed, unreserved records younger than the maturation delay
    - available: total_earned - total_withdrawn - in_flight - pending

    Args:
        beneficiary: Beneficiary address
        earnings: All earning records of the beneficiary
        payouts: All payout requests of the beneficiary
        now: Reference time for maturation and month boundaries
        maturation_days: Days before an earning becomes available

    Returns:
        Balance snapshot
    """
    matured_before = now - timedelta(days=maturation_days)
    month_start = start_of_month(now)

    total_earned = 0
    pending = 0
    earned_this_month = 0
    for record in earnings:
        total_earned += record.earning_amount
        if record.distributed_at >= month_start:
            earned_this_month += record.earning_amount
        if (
            maturation_days > 0
            and record.status == EarningStatus.UNCLAIMED.value
            and record.payout_request_id is None
            and record.distributed_at > matured_before
        ):
            pending += record.earning_amount

    open_statuses = {s.value for s in OPEN_PAYOUT_STATUSES}
    total_withdrawn = 0
    in_flight = 0
    for payout in payouts:
        if payout.status == PayoutStatus.COMPLETED.value:
            total_withdrawn += payout.amount
        elif payout.status in open_statuses:
            in_flight += payout.amount

    return Balance(
        beneficiary=beneficiary,
        available=total_earned - total_withdrawn - in_flight - pending,
        pending=pending,
        in_flight=in_flight,
        total_earned=total_earned,
        total_withdrawn=total_withdrawn,
        earned_this_month=earned_this_month,
        computed_at=now,
    )


def check_balance_invariants(balance: Balance) -> Optional[str]:
    """Return a description of the violated invariant, or None."""
    if balance.total_withdrawn > balance.total_earned:
        return (f"total_withdrawn {balance.total_withdrawn} exceeds "
                f"total_earned {balance.total_earned}")
    if balance.available < 0:
        return f"available balance is negative ({balance.available})"
    return None


class BalanceAggregator:
    """
    Application service deriving beneficiary balances from the ledger.

    Safe to run repeatedly and in parallel for different beneficiaries.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Optional[BalanceCache] = None,
        maturation_days: Optional[int] = None,
    ):
        """
        Initialize the aggregator with dependencies.

        Args:
            store: Ledger store
            cache: Balance cache (a private one is created if omitted)
            maturation_days: Override of ``settings.earnings_maturation_days``
        """
        self.store = store
        self.cache = (
            cache if cache is not None
            else BalanceCache(ttl_seconds=settings.balance_cache_ttl_seconds)
        )
        self.maturation_days = (
            settings.earnings_maturation_days if maturation_days is None else maturation_days
        )

    def compute_balance(
        self,
        session: Session,
        beneficiary: str,
        now: Optional[datetime] = None,
    ) -> Balance:
        """Fold the beneficiary's ledger inside the caller's transaction."""
        earnings = self.store.earnings_for(session, beneficiary)
        payouts = self.store.payouts_for(session, beneficiary)
        return fold_balance(
            beneficiary, earnings, payouts, now or utcnow(), self.maturation_days
        )

    def refresh_balance(self, beneficiary: str) -> Balance:
        """
        Recompute a balance from the ledger and cache it.

        Raises:
            LedgerInvariantError: If the fold yields a negative balance; the
                beneficiary is put on hold before raising
        """
        generation = self.cache.generation(beneficiary)
        with self.store.session_scope() as session:
            balance = self.compute_balance(session, beneficiary)

        violation = check_balance_invariants(balance)
        if violation:
            logger.critical(f"Ledger invariant violated for {beneficiary}: {violation}")
            self.store.place_hold(beneficiary, violation)
            self.cache.invalidate(beneficiary)
            raise LedgerInvariantError(
                f"Ledger for {beneficiary} is inconsistent: {violation}"
            )

        self.cache.put(balance, generation)
        logger.debug(f"Refreshed balance for {beneficiary}: available={balance.available}")
        return balance

    def get_balance(self, beneficiary: str) -> Balance:
        """Serve a cached balance when fresh, otherwise refresh it."""
        cached = self.cache.get(beneficiary)
        if cached is not None:
            return cached
        return self.refresh_balance(beneficiary)

    def invalidate(self, *beneficiaries: str) -> None:
        self.cache.invalidate(*beneficiaries)

    def refresh_many(self, beneficiaries: Iterable[str]) -> dict[str, Balance]:
        """
        Invalidate and refresh several balances, best effort.

        Failures are logged; the ledger stays the source of truth and the
        balance is recomputed on the next read.
        """
        unique = sorted(set(beneficiaries))
        self.invalidate(*unique)
        refreshed = {}
        for beneficiary in unique:
            try:
                refreshed[beneficiary] = self.refresh_balance(beneficiary)
            except Exception as e:
                logger.error(f"Balance refresh failed for {beneficiary}: {e}")
        return refreshed

    def get_earnings_history(self, beneficiary: str) -> list[EarningRecord]:
        """All earning records of a beneficiary, newest first."""
        with self.store.session_scope() as session:
            return [
                EarningRecord.model_validate(row)
                for row in self.store.earnings_for(session, beneficiary)
            ]

    def get_grove_breakdown(self, beneficiary: str) -> list[GroveEarnings]:
        """Earnings of a beneficiary grouped by grove."""
        with self.store.session_scope() as session:
            totals: dict[int, GroveEarnings] = {}
            for row in self.store.earnings_for(session, beneficiary):
                entry = totals.get(row.grove_id)
                if entry is None:
                    grove = self.store.get_grove(session, row.grove_id)
                    entry = GroveEarnings(
                        grove_id=row.grove_id,
                        grove_name=grove.name if grove else "Unknown Grove",
                        total_earned=0,
                        unclaimed=0,
                        record_count=0,
                    )
                    totals[row.grove_id] = entry
                entry.total_earned += row.earning_amount
                entry.record_count += 1
                if row.status == EarningStatus.UNCLAIMED.value:
                    entry.unclaimed += row.earning_amount
            return [totals[grove_id] for grove_id in sorted(totals)]

    def release_hold(self, beneficiary: str) -> int:
        """
        Lift every active hold after manual reconciliation.

        Returns:
            Number of holds released
        """
        released = self.store.release_hold(beneficiary)
        self.invalidate(beneficiary)
        if released:
            logger.warning(f"Released {released} ledger hold(s) on {beneficiary}")
        return released
