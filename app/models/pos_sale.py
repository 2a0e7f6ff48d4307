"""POS sale model - a sale pushed by the restaurant point-of-sale."""
from sqlalchemy import (
    Column, String, Integer, Boolean, Numeric, DateTime, Text, Enum, ForeignKey, BigInteger,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK
import enum


class SaleStatus(enum.Enum):
    """
    Processing status of a POS sale.

    pending -> queued -> processing -> processed | queued (retry) | dead_letter.
    duplicate is set upstream by ingestion when a folio repeats.
    """
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"
    DUPLICATE = "duplicate"


TERMINAL_SALE_STATUSES = (SaleStatus.PROCESSED, SaleStatus.DEAD_LETTER, SaleStatus.DUPLICATE)


class PosSale(Base):
    """
    POS Sale (venta recibida del punto de venta).

    Created by ingestion as pending. Only the job queue and the sale processor
    change it afterwards, and nothing changes it once processed.
    """

    __tablename__ = 'pos_sale'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False)
    integration_id = Column(BigInteger, ForeignKey('pos_integration.id'), nullable=False)

    # POS identifiers
    folio = Column(String(100), nullable=False)
    store_code = Column(String(50), nullable=True)
    customer_code = Column(String(50), nullable=True)
    user_code = Column(String(50), nullable=True)
    table_number = Column(String(50), nullable=True)
    guest_count = Column(Integer, nullable=True)
    sale_type = Column(String(50), nullable=True)

    opened_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    closed_at = Column(DateTime(timezone=True), nullable=True)

    # Totals
    subtotal = Column(Numeric(12, 4), nullable=False, default=0)
    total_tax = Column(Numeric(12, 4), nullable=False, default=0)
    total_discounts = Column(Numeric(12, 4), nullable=False, default=0)
    total_tips = Column(Numeric(12, 4), nullable=False, default=0)
    total = Column(Numeric(12, 4), nullable=False, default=0)
    currency = Column(String(10), nullable=False, default='MXN')
    notes = Column(Text, nullable=True)

    # Processing
    status = Column(
        Enum(SaleStatus, name='pos_sale_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SaleStatus.PENDING
    )
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    last_failed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    order_id = Column(BigInteger, nullable=True)  # restaurant_order.id once materialized
    # Stock and kardex diverged and the automatic rollback failed
    requires_reconciliation = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    items = relationship('PosSaleItem', back_populates='sale', cascade='all, delete-orphan',
                         order_by='PosSaleItem.id')
    payments = relationship('PosSalePayment', back_populates='sale', cascade='all, delete-orphan')
    integration = relationship('PosIntegration')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'integration_id', 'folio', name='uq_pos_sale_folio'),
        Index('ix_pos_sale_status_retry', 'status', 'next_retry_at'),
    )

    def __repr__(self):
        return f"<PosSale(id={self.id}, folio='{self.folio}', status={self.status.value})>"
