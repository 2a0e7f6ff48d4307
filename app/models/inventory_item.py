"""Inventory item model."""
from sqlalchemy import Column, String, Boolean, Numeric, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class InventoryItem(Base):
    """
    Inventory item (insumo).

    current_stock is only written through compare-and-swap updates keyed on
    the value previously read (see recipe_deduction_service).
    """

    __tablename__ = 'inventory_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    # NULL branch = shared by every branch of the tenant
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(64), nullable=True)
    unit = Column(String(20), nullable=False)
    current_stock = Column(Numeric(12, 3), nullable=False, default=0)
    minimum_stock = Column(Numeric(12, 3), nullable=False, default=0)
    maximum_stock = Column(Numeric(12, 3), nullable=True)
    unit_cost = Column(Numeric(12, 4), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    movements = relationship('InventoryMovement', back_populates='item', lazy='dynamic')

    def __repr__(self):
        return f"<InventoryItem(id={self.id}, name='{self.name}', current_stock={self.current_stock})>"
