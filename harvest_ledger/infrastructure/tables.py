"""
Ledger tables.

Groves, harvests and holdings are owned by other parts of the platform and
are only read here, except for the harvest distribution latch. Earning
records, payout requests, beneficiary accounts and holds are owned by the
ledger. All amounts are integers in minor units.
"""
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from harvest_ledger.infrastructure.database import Base
from harvest_ledger.utils.clock import utcnow


class GroveRow(Base):
    __tablename__ = "groves"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    farmer_address = Column(String(64), nullable=False, index=True)
    total_tokens_issued = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)


class HarvestRow(Base):
    __tablename__ = "harvests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    grove_id = Column(Integer, ForeignKey("groves.id"), nullable=False, index=True)
    gross_revenue = Column(BigInteger, nullable=False)
    harvested_at = Column(DateTime, nullable=False)
    # One-way latch, flipped by a conditional UPDATE inside the distribution transaction
    distributed = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default="reported")  # reported, distributed, failed
    farmer_share = Column(BigInteger, nullable=True)
    investor_share = Column(BigInteger, nullable=True)
    undistributed_amount = Column(BigInteger, nullable=True)
    reconciliation_required = Column(Boolean, nullable=False, default=False)
    distributed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<HarvestRow {self.id} grove={self.grove_id} ({self.status})>"


class LegacyHoldingRow(Base):
    """Previous holdings representation, kept readable for migration."""
    __tablename__ = "token_holdings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    holder_address = Column(String(64), nullable=False, index=True)
    grove_id = Column(Integer, ForeignKey("groves.id"), nullable=False, index=True)
    token_amount = Column(BigInteger, nullable=False)
    purchase_price = Column(BigInteger, nullable=False, default=0)
    purchase_date = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class HoldingRow(Base):
    __tablename__ = "investor_token_holdings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    investor_address = Column(String(64), nullable=False, index=True)
    grove_id = Column(Integer, ForeignKey("groves.id"), nullable=False, index=True)
    token_amount = Column(BigInteger, nullable=False)
    acquisition_type = Column(String(20), nullable=False, default="primary")  # primary, secondary
    purchase_price = Column(BigInteger, nullable=False, default=0)
    acquired_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # Set only on rows migrated from token_holdings; unique so a row migrates once
    legacy_holding_id = Column(Integer, ForeignKey("token_holdings.id"), nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow)


class EarningRow(Base):
    __tablename__ = "earning_records"
    __table_args__ = (
        UniqueConstraint(
            "harvest_id", "beneficiary_kind", "beneficiary",
            name="uq_earning_per_harvest_beneficiary",
        ),
        Index("ix_earning_records_beneficiary_status", "beneficiary", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    beneficiary = Column(String(64), nullable=False)
    beneficiary_kind = Column(String(20), nullable=False)  # farmer, investor
    harvest_id = Column(Integer, ForeignKey("harvests.id"), nullable=False, index=True)
    grove_id = Column(Integer, ForeignKey("groves.id"), nullable=False, index=True)
    token_amount = Column(BigInteger, nullable=True)  # null for farmer records
    earning_amount = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default="unclaimed")  # unclaimed, claimed
    distributed_at = Column(DateTime, nullable=False)
    claimed_at = Column(DateTime, nullable=True)
    claim_reference = Column(String(128), nullable=True)
    # Reservation by an open payout request; cleared when that payout fails
    payout_request_id = Column(String(64), ForeignKey("payout_requests.id"), nullable=True, index=True)

    def __repr__(self):
        return f"<EarningRow {self.id} {self.beneficiary_kind}:{self.beneficiary} {self.earning_amount} ({self.status})>"


class PayoutRow(Base):
    __tablename__ = "payout_requests"

    id = Column(String(64), primary_key=True)
    beneficiary = Column(String(64), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # claim, withdrawal
    amount = Column(BigInteger, nullable=False)
    earning_record_ids = Column(JSON, nullable=False, default=list)
    status = Column(String(20), nullable=False, index=True)  # requested, processing, completed, failed
    external_reference = Column(String(128), nullable=True)
    explorer_url = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    requested_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BeneficiaryAccountRow(Base):
    """Version counter serialising payouts of one beneficiary."""
    __tablename__ = "beneficiary_accounts"

    beneficiary = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LedgerHoldRow(Base):
    __tablename__ = "ledger_holds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    beneficiary = Column(String(64), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    released_at = Column(DateTime, nullable=True)
