"""POS product mapping model."""
from sqlalchemy import Column, String, Boolean, Integer, DateTime, Text, Enum, ForeignKey, BigInteger, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK
import enum


class MappingConfidence(enum.Enum):
    """How a POS product code got linked to a menu item."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MANUAL = "manual"


class ProductMapping(Base):
    """
    Product Mapping - POS product code -> internal menu item.

    Unmapped codes are kept as rows with menu_item_id NULL and is_active
    False until an operator resolves them; times_sold tells which ones to
    map first.
    """

    __tablename__ = 'product_mapping'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False)
    integration_id = Column(BigInteger, ForeignKey('pos_integration.id'), nullable=False)
    pos_product_code = Column(String(100), nullable=False)
    pos_product_name = Column(String(255), nullable=True)
    menu_item_id = Column(BigInteger, ForeignKey('menu_item.id'), nullable=True)
    confidence = Column(
        Enum(MappingConfidence, name='mapping_confidence', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=MappingConfidence.LOW
    )
    is_active = Column(Boolean, nullable=False, default=False)
    times_sold = Column(Integer, nullable=False, default=0)
    last_sold_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    menu_item = relationship('MenuItem')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'branch_id', 'integration_id', 'pos_product_code',
                         name='uq_product_mapping_code'),
    )

    @property
    def is_unmapped(self):
        return self.menu_item_id is None

    def __repr__(self):
        return (
            f"<ProductMapping(id={self.id}, code='{self.pos_product_code}', "
            f"menu_item_id={self.menu_item_id}, confidence={self.confidence.value})>"
        )
