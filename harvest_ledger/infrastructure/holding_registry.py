"""
Infrastructure layer: Read-only view over grove token holdings.

Holdings live in ``investor_token_holdings``. Older deployments kept them in
``token_holdings``; ``migrate_legacy_holdings`` copies legacy rows of holders
found only in the old table, once per row, before a distribution reads the
holder set.
"""
import logging

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from harvest_ledger.domain.models import AcquisitionType, Holding
from harvest_ledger.infrastructure.database import Database
from harvest_ledger.infrastructure.tables import HoldingRow, LegacyHoldingRow

logger = logging.getLogger(__name__)


class HoldingRegistry:
    """
    Holding lookups for a grove.
    """

    def __init__(self, database: Database):
        self.database = database

    def list_active_holdings(self, grove_id: int) -> list[Holding]:
        """
        List active holdings of a grove, one entry per purchase.

        Args:
            grove_id: Grove identifier

        Returns:
            List of Holding instances ordered by acquisition time
        """
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(HoldingRow)
                .where(HoldingRow.grove_id == grove_id, HoldingRow.is_active.is_(True))
                .order_by(HoldingRow.acquired_at, HoldingRow.id)
            ).all()
            return [
                Holding(
                    id=row.id,
                    investor_address=row.investor_address,
                    grove_id=row.grove_id,
                    token_amount=row.token_amount,
                    acquired_at=row.acquired_at,
                    is_active=row.is_active,
                    acquisition_type=AcquisitionType(row.acquisition_type),
                )
                for row in rows
            ]

    def migrate_legacy_holdings(self, grove_id: int) -> int:
        """
        Copy legacy holdings of a grove into the current table.

        A legacy row is migrated only if no current row references it and
        its holder has no native position in the current table. The
        unique ``legacy_holding_id`` column turns a concurrent second copy
        into an IntegrityError, which is treated as already migrated.

        Args:
            grove_id: Grove identifier

        Returns:
            Number of rows migrated by this call
        """
        with self.database.session_scope() as session:
            migrated_ids = select(HoldingRow.legacy_holding_id).where(
                HoldingRow.legacy_holding_id.is_not(None)
            )
            pending = session.scalars(
                select(LegacyHoldingRow)
                .where(
                    LegacyHoldingRow.grove_id == grove_id,
                    LegacyHoldingRow.id.not_in(migrated_ids),
                    ~exists().where(
                        HoldingRow.investor_address == LegacyHoldingRow.holder_address,
                        HoldingRow.grove_id == grove_id,
                        HoldingRow.legacy_holding_id.is_(None),
                    ),
                )
                .order_by(LegacyHoldingRow.id)
            ).all()
            pending = [
                (row.id, row.holder_address, row.token_amount, row.purchase_price,
                 row.purchase_date, row.is_active)
                for row in pending
            ]

        if not pending:
            return 0

        logger.info(f"Migrating {len(pending)} legacy holdings for grove {grove_id}")
        migrated = 0
        for legacy_id, address, tokens, price, purchased_at, is_active in pending:
            try:
                with self.database.session_scope() as session:
                    session.add(HoldingRow(
                        investor_address=address,
                        grove_id=grove_id,
                        token_amount=tokens,
                        acquisition_type=AcquisitionType.PRIMARY.value,
                        purchase_price=price,
                        acquired_at=purchased_at,
                        is_active=is_active,
                        legacy_holding_id=legacy_id,
                    ))
                migrated += 1
            except IntegrityError:
                logger.debug(f"Legacy holding {legacy_id} migrated concurrently")

        logger.info(f"Migrated {migrated} legacy holdings for grove {grove_id}")
        return migrated
