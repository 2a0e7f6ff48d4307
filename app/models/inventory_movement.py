"""Inventory Movement model (kardex) - append-only."""
from sqlalchemy import Column, String, Numeric, DateTime, Text, Enum, ForeignKey, BigInteger, event
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK
import enum


class MovementType(enum.Enum):
    """Inventory movement type enum."""
    PURCHASE = "purchase"
    SALE = "sale"
    CONSUMPTION = "consumption"
    WASTE = "waste"
    ADJUSTMENT = "adjustment"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    RETURN = "return"
    PRODUCTION = "production"


class MovementReferenceType:
    """What caused a movement (reference_type values)."""
    POS_SALE = "pos_sale"
    MANUAL = "manual"
    INVENTORY_COUNT = "inventory_count"
    PURCHASE_ORDER = "purchase_order"


# Positive quantities for these types, negative for the rest
INBOUND_MOVEMENT_TYPES = (
    MovementType.PURCHASE,
    MovementType.TRANSFER_IN,
    MovementType.RETURN,
    MovementType.PRODUCTION,
)


class InventoryMovement(Base):
    """
    Inventory Movement (movimiento de inventario).

    quantity is signed: positive = stock in, negative = stock out.
    Rows are never updated or deleted once flushed.
    """

    __tablename__ = 'inventory_movement'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=True, index=True)
    item_id = Column(BigInteger, ForeignKey('inventory_item.id'), nullable=False, index=True)
    movement_type = Column(
        Enum(MovementType, name='inventory_movement_type', values_callable=lambda e: [m.value for m in e]),
        nullable=False
    )

    quantity = Column(Numeric(12, 3), nullable=False)
    previous_stock = Column(Numeric(12, 3), nullable=False)
    new_stock = Column(Numeric(12, 3), nullable=False)
    unit = Column(String(20), nullable=True)

    unit_cost = Column(Numeric(12, 4), nullable=True)
    total_cost = Column(Numeric(12, 2), nullable=True)

    reference_type = Column(String(50), nullable=True)
    reference_id = Column(BigInteger, nullable=True, index=True)
    # Sale line that caused a pos_sale deduction; lets a retried sale skip lines already applied
    sale_item_id = Column(BigInteger, nullable=True, index=True)
    # Recipe line that produced it; one recipe may list the same item more than once
    recipe_ingredient_id = Column(BigInteger, nullable=True)
    menu_item_id = Column(BigInteger, nullable=True)

    performed_by = Column(String(100), nullable=True)  # NULL = system
    reason = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    performed_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    item = relationship('InventoryItem', back_populates='movements')

    def __repr__(self):
        return (
            f"<InventoryMovement(id={self.id}, item_id={self.item_id}, "
            f"type={self.movement_type.value}, qty={self.quantity})>"
        )


class AppendOnlyViolation(Exception):
    """Raised when code tries to mutate a recorded inventory movement."""


@event.listens_for(InventoryMovement, 'before_update')
def _reject_movement_update(mapper, connection, target):
    raise AppendOnlyViolation(f"Inventory movement {target.id} is append-only and cannot be updated")


@event.listens_for(InventoryMovement, 'before_delete')
def _reject_movement_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"Inventory movement {target.id} is append-only and cannot be deleted")
