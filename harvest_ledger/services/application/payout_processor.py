"""
Application service: Claims and withdrawals of earnings.

A payout moves through requested -> processing -> completed | failed. The
records a claim references are reserved while it is open, marked claimed
only after the transfer is confirmed, and released if the transfer fails.
A transfer whose outcome is unknown leaves the payout in ``processing``
until ``reconcile`` settles it.

Ledger transactions are synchronous and run in the threadpool so a writer
waiting on a database lock never blocks the event loop.
"""
from datetime import timedelta
from typing import List, Optional
import asyncio
import logging
import re
import uuid

from fastapi.concurrency import run_in_threadpool

from harvest_ledger.config import settings
from harvest_ledger.domain.errors import (
    ConcurrentModificationError,
    LedgerHoldError,
    LedgerInvariantError,
    PayoutInFlightError,
    PayoutNotFoundError,
    PayoutValidationError,
    TransferGatewayError,
)
from harvest_ledger.domain.models import (
    OPEN_PAYOUT_STATUSES,
    BeneficiaryKind,
    EarningStatus,
    PayoutKind,
    PayoutRequest,
    PayoutStatus,
)
from harvest_ledger.infrastructure.ledger_store import LedgerStore
from harvest_ledger.infrastructure.tables import PayoutRow
from harvest_ledger.infrastructure.transfer_executor import TransferOutcome, build_explorer_url
from harvest_ledger.services.application.balance_aggregator import (
    BalanceAggregator,
    check_balance_invariants,
)
from harvest_ledger.utils.allocation import floor_ratio
from harvest_ledger.utils.clock import utcnow

logger = logging.getLogger(__name__)

# EVM-style address or Hedera account id (shard.realm.num)
EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
HEDERA_ACCOUNT = re.compile(r"^\d+\.\d+\.\d+$")


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(EVM_ADDRESS.match(address) or HEDERA_ACCOUNT.match(address))


class PayoutProcessor:
    """
    Application service validating and executing claims and withdrawals.
    """

    def __init__(
        self,
        store: LedgerStore,
        aggregator: BalanceAggregator,
        executor,
        transfer_timeout: Optional[float] = None,
        withdrawal_limit_ratio: Optional[float] = None,
    ):
        """
        Initialize the processor with dependencies.

        Args:
            store: Ledger store
            aggregator: Balance aggregator used for fresh folds and invalidation
            executor: Transfer executor (``transfer``/``lookup`` coroutines)
            transfer_timeout: Override of ``settings.transfer_timeout_seconds``
            withdrawal_limit_ratio: Override of ``settings.farmer_withdrawal_limit_ratio``
        """
        self.store = store
        self.aggregator = aggregator
        self.executor = executor
        self.transfer_timeout = (
            settings.transfer_timeout_seconds if transfer_timeout is None else transfer_timeout
        )
        self.withdrawal_limit_ratio = (
            settings.farmer_withdrawal_limit_ratio
            if withdrawal_limit_ratio is None else withdrawal_limit_ratio
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def submit_claim(
        self,
        beneficiary: str,
        earning_record_ids: Optional[List[int]] = None,
        amount: Optional[int] = None,
    ) -> PayoutRequest:
        """
        Claim records when ids are given, otherwise withdraw ``amount``.
        """
        if earning_record_ids:
            return await self.process_claim(beneficiary, earning_record_ids, amount)
        if amount is not None:
            return await self.process_withdrawal(beneficiary, amount)
        raise PayoutValidationError(
            "Either earning record ids or an amount is required", reason="INVALID_AMOUNT"
        )

    async def process_claim(
        self,
        beneficiary: str,
        earning_record_ids: List[int],
        amount: Optional[int] = None,
    ) -> PayoutRequest:
        """
        Claim specific investor earning records.

        Args:
            beneficiary: Investor address
            earning_record_ids: Records to pay out
            amount: Expected total; must equal the records' sum when given

        Returns:
            PayoutRequest in its status after the transfer attempt

        Raises:
            PayoutValidationError: If the request is invalid
            PayoutInFlightError: If a record is reserved by another open payout
            ConcurrentModificationError: If another payout of the beneficiary
                was opened at the same time
            LedgerHoldError: If the beneficiary is on hold
        """
        self._validate_address(beneficiary)
        if not earning_record_ids:
            raise PayoutValidationError("No earning records given", reason="RECORDS_NOT_CLAIMABLE")
        if len(set(earning_record_ids)) != len(earning_record_ids):
            raise PayoutValidationError(
                "Earning record ids must be unique", reason="RECORDS_NOT_CLAIMABLE"
            )
        if amount is not None and amount <= 0:
            raise PayoutValidationError("Amount must be positive", reason="INVALID_AMOUNT")

        await run_in_threadpool(self.store.ensure_account, beneficiary)
        request_id = f"claim_{uuid.uuid4().hex}"
        record_ids = sorted(earning_record_ids)

        total = await run_in_threadpool(self._guarded, beneficiary, lambda: self._open_claim(
            request_id, beneficiary, record_ids, amount
        ))

        self.aggregator.invalidate(beneficiary)
        logger.info(f"Claim {request_id} opened for {beneficiary}: {total} over {len(record_ids)} records")
        return await self._execute(request_id, beneficiary, total, f"Harvest earnings claim {request_id}")

    async def process_withdrawal(self, beneficiary: str, amount: int) -> PayoutRequest:
        """
        Withdraw an amount from the beneficiary's available balance.

        Raises:
            PayoutValidationError: If the amount is invalid, exceeds the
                available balance or the withdrawal limit
            ConcurrentModificationError: If another payout of the beneficiary
                was opened at the same time
            LedgerHoldError: If the beneficiary is on hold
        """
        self._validate_address(beneficiary)
        if amount is None or amount <= 0:
            raise PayoutValidationError("Amount must be positive", reason="INVALID_AMOUNT")

        await run_in_threadpool(self.store.ensure_account, beneficiary)
        request_id = f"wd_{uuid.uuid4().hex}"

        await run_in_threadpool(
            self._guarded, beneficiary, lambda: self._open_withdrawal(request_id, beneficiary, amount)
        )

        self.aggregator.invalidate(beneficiary)
        logger.info(f"Withdrawal {request_id} opened for {beneficiary}: {amount}")
        return await self._execute(request_id, beneficiary, amount, f"Harvest earnings withdrawal {request_id}")

    async def reconcile(self, request_id: str) -> PayoutRequest:
        """
        Settle a payout left open by an unknown transfer outcome.

        A ``requested`` payout never reached the executor and is failed. A
        ``processing`` payout is finalised from the executor's record of the
        transfer, or left as is if the executor has no final answer.

        Raises:
            PayoutNotFoundError: If the payout does not exist
            TransferGatewayError: If the executor cannot be reached
        """
        payout = await run_in_threadpool(self.get_payout, request_id)

        if payout.status == PayoutStatus.REQUESTED:
            return await run_in_threadpool(
                self._finalise,
                request_id,
                TransferOutcome(success=False, reason="transfer was never submitted"),
                PayoutStatus.REQUESTED,
            )
        if payout.status != PayoutStatus.PROCESSING:
            return payout

        outcome = await self.executor.lookup(request_id)
        if outcome is None:
            logger.info(f"Transfer for {request_id} still unresolved")
            return payout
        return await run_in_threadpool(self._finalise, request_id, outcome)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payout(self, request_id: str) -> PayoutRequest:
        with self.store.session_scope() as session:
            row = self.store.get_payout(session, request_id)
            if row is None:
                raise PayoutNotFoundError(f"Payout {request_id} not found")
            return PayoutRequest.model_validate(row)

    def get_payout_history(self, beneficiary: str) -> List[PayoutRequest]:
        """All payouts of a beneficiary, newest first."""
        with self.store.session_scope() as session:
            return [
                PayoutRequest.model_validate(row)
                for row in self.store.payouts_for(session, beneficiary)
            ]

    def list_unresolved(self) -> List[PayoutRequest]:
        """Open payouts, oldest first."""
        with self.store.session_scope() as session:
            return [
                PayoutRequest.model_validate(row)
                for row in self.store.payouts_with_status(session, OPEN_PAYOUT_STATUSES)
            ]

    # ------------------------------------------------------------------
    # Opening payouts
    # ------------------------------------------------------------------

    def _validate_address(self, beneficiary: str) -> None:
        if not is_valid_address(beneficiary):
            raise PayoutValidationError(
                f"Invalid beneficiary address: {beneficiary!r}", reason="INVALID_ADDRESS"
            )

    def _guarded(self, beneficiary: str, open_payout):
        """Run ``open_payout``; an invariant violation puts the beneficiary on hold."""
        try:
            return open_payout()
        except LedgerInvariantError as e:
            logger.critical(f"Ledger invariant violated for {beneficiary}: {e.message}")
            self.store.place_hold(beneficiary, e.message)
            self.aggregator.invalidate(beneficiary)
            raise

    def _open_claim(
        self,
        request_id: str,
        beneficiary: str,
        record_ids: List[int],
        amount: Optional[int],
    ) -> int:
        now = utcnow()
        matured_before = now - timedelta(days=self.aggregator.maturation_days)

        with self.store.session_scope() as session:
            self._check_hold(session, beneficiary)
            version = self.store.get_account_version(session, beneficiary)

            records = self.store.earnings_by_ids(session, record_ids)
            found = {record.id: record for record in records}
            missing = [rid for rid in record_ids if rid not in found]
            if missing:
                raise PayoutValidationError(
                    f"Earning records not found: {missing}", reason="RECORDS_NOT_CLAIMABLE"
                )

            for record in records:
                if record.beneficiary != beneficiary:
                    raise PayoutValidationError(
                        f"Earning record {record.id} does not belong to {beneficiary}",
                        reason="RECORDS_NOT_CLAIMABLE",
                    )
                if record.beneficiary_kind != BeneficiaryKind.INVESTOR.value:
                    raise PayoutValidationError(
                        f"Earning record {record.id} is a farmer record; use a withdrawal",
                        reason="RECORDS_NOT_CLAIMABLE",
                    )
                if record.status != EarningStatus.UNCLAIMED.value:
                    raise PayoutValidationError(
                        f"Earning record {record.id} is already claimed",
                        reason="RECORDS_NOT_CLAIMABLE",
                    )
                if record.payout_request_id is not None:
                    raise PayoutInFlightError(
                        f"Earning record {record.id} is reserved by payout {record.payout_request_id}"
                    )
                if record.distributed_at > matured_before:
                    raise PayoutValidationError(
                        f"Earning record {record.id} is still pending", reason="RECORDS_NOT_CLAIMABLE"
                    )

            total = sum(record.earning_amount for record in records)
            if amount is not None and amount != total:
                raise PayoutValidationError(
                    f"Requested amount {amount} does not match records total {total}",
                    reason="AMOUNT_MISMATCH",
                )

            balance = self.aggregator.compute_balance(session, beneficiary, now)
            violation = check_balance_invariants(balance)
            if violation:
                raise LedgerInvariantError(f"Ledger for {beneficiary} is inconsistent: {violation}")
            if total > balance.available:
                raise PayoutValidationError(
                    f"Claim of {total} exceeds available balance {balance.available}",
                    reason="INSUFFICIENT_BALANCE",
                )

            if not self.store.bump_account_version(session, beneficiary, version):
                raise ConcurrentModificationError(
                    f"Another payout for {beneficiary} was opened concurrently; retry"
                )

            self.store.add_payout(session, PayoutRow(
                id=request_id,
                beneficiary=beneficiary,
                kind=PayoutKind.CLAIM.value,
                amount=total,
                earning_record_ids=record_ids,
                status=PayoutStatus.REQUESTED.value,
                requested_at=now,
            ))

            reserved = self.store.reserve_records(session, request_id, beneficiary, record_ids)
            if reserved != len(record_ids):
                raise PayoutInFlightError(
                    f"Only {reserved} of {len(record_ids)} records could be reserved; "
                    f"another payout holds the rest"
                )
            return total

    def _open_withdrawal(self, request_id: str, beneficiary: str, amount: int) -> None:
        now = utcnow()
        with self.store.session_scope() as session:
            self._check_hold(session, beneficiary)
            version = self.store.get_account_version(session, beneficiary)

            balance = self.aggregator.compute_balance(session, beneficiary, now)
            violation = check_balance_invariants(balance)
            if violation:
                raise LedgerInvariantError(f"Ledger for {beneficiary} is inconsistent: {violation}")
            if amount > balance.available:
                raise PayoutValidationError(
                    f"Withdrawal of {amount} exceeds available balance {balance.available}",
                    reason="INSUFFICIENT_BALANCE",
                )

            limit = floor_ratio(balance.available, self.withdrawal_limit_ratio)
            if amount > limit:
                raise PayoutValidationError(
                    f"Withdrawal of {amount} exceeds the limit of {limit} "
                    f"({self.withdrawal_limit_ratio:.0%} of available)",
                    reason="WITHDRAWAL_LIMIT_EXCEEDED",
                )

            if not self.store.bump_account_version(session, beneficiary, version):
                raise ConcurrentModificationError(
                    f"Another payout for {beneficiary} was opened concurrently; retry"
                )

            self.store.add_payout(session, PayoutRow(
                id=request_id,
                beneficiary=beneficiary,
                kind=PayoutKind.WITHDRAWAL.value,
                amount=amount,
                earning_record_ids=[],
                status=PayoutStatus.REQUESTED.value,
                requested_at=now,
            ))

    def _check_hold(self, session, beneficiary: str) -> None:
        hold = self.store.active_hold(session, beneficiary)
        if hold is not None:
            raise LedgerHoldError(
                f"Payouts for {beneficiary} are blocked pending reconciliation: {hold.reason}"
            )

    # ------------------------------------------------------------------
    # Transfer and settlement
    # ------------------------------------------------------------------

    async def _execute(
        self,
        request_id: str,
        beneficiary: str,
        amount: int,
        memo: str,
    ) -> PayoutRequest:
        moved = await run_in_threadpool(self._start_processing, request_id)
        if not moved:
            return await run_in_threadpool(self.get_payout, request_id)
        self.aggregator.invalidate(beneficiary)

        try:
            outcome = await asyncio.wait_for(
                self.executor.transfer(beneficiary, amount, memo, request_id),
                timeout=self.transfer_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Transfer for {request_id} timed out after {self.transfer_timeout}s; "
                         f"left in processing")
            return await run_in_threadpool(self.get_payout, request_id)
        except TransferGatewayError as e:
            logger.error(f"Transfer for {request_id} has unknown outcome: {e.message}")
            return await run_in_threadpool(self.get_payout, request_id)

        return await run_in_threadpool(self._finalise, request_id, outcome)

    def _start_processing(self, request_id: str) -> bool:
        with self.store.session_scope() as session:
            return self.store.transition_payout(
                session, request_id, [PayoutStatus.REQUESTED], PayoutStatus.PROCESSING
            )

    def _finalise(
        self,
        request_id: str,
        outcome: TransferOutcome,
        from_status: PayoutStatus = PayoutStatus.PROCESSING,
    ) -> PayoutRequest:
        """
        Record a definitive transfer outcome.

        Success marks the reserved records claimed; failure releases them.
        """
        now = utcnow()
        unsettled = None

        with self.store.session_scope() as session:
            payout = self.store.get_payout(session, request_id)
            beneficiary = payout.beneficiary
            kind = payout.kind
            expected_records = len(payout.earning_record_ids or [])

            if outcome.success:
                moved = self.store.transition_payout(
                    session, request_id, [from_status], PayoutStatus.COMPLETED,
                    external_reference=outcome.reference,
                    explorer_url=build_explorer_url(outcome.reference) if outcome.reference else None,
                    completed_at=now,
                )
                if moved and kind == PayoutKind.CLAIM.value:
                    claimed = self.store.claim_records(session, request_id, outcome.reference, now)
                    if claimed != expected_records:
                        unsettled = (f"payout {request_id} confirmed but only {claimed} of "
                                     f"{expected_records} records were claimable")
                elif moved:
                    self.store.settle_withdrawn_records(
                        session,
                        beneficiary,
                        self.store.sum_completed_withdrawals(session, beneficiary),
                        outcome.reference,
                        now,
                    )
            else:
                moved = self.store.transition_payout(
                    session, request_id, [from_status], PayoutStatus.FAILED,
                    failure_reason=outcome.reason,
                    completed_at=now,
                )
                if moved:
                    self.store.release_records(session, request_id)

        if moved and outcome.success:
            logger.info(f"Payout {request_id} completed: {outcome.reference}")
        elif moved:
            logger.error(f"Payout {request_id} failed: {outcome.reason}")

        if unsettled:
            logger.critical(f"Ledger invariant violated for {beneficiary}: {unsettled}")
            self.store.place_hold(beneficiary, unsettled)

        self.aggregator.invalidate(beneficiary)
        return self.get_payout(request_id)
