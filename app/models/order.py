"""Restaurant order model - the finalized order materialized from a POS sale."""
from sqlalchemy import Column, String, Integer, Numeric, DateTime, Text, Enum, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK
import enum


class OrderType(enum.Enum):
    """Internal order type enum."""
    DINE_IN = "dine_in"
    TAKEOUT = "takeout"
    DELIVERY = "delivery"
    DRIVE_THRU = "drive_thru"
    CATERING = "catering"


class OrderStatus(enum.Enum):
    """Order status enum (POS sales arrive already closed)."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderSource:
    """Where an order originated."""
    SOFTRESTAURANT = "softrestaurant"
    MANUAL = "manual"


class Order(Base):
    """
    Restaurant Order (orden).

    pos_sale_id is unique: one POS sale never materializes twice.
    """

    __tablename__ = 'restaurant_order'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False)
    order_number = Column(String(40), nullable=False, index=True)
    pos_sale_id = Column(BigInteger, ForeignKey('pos_sale.id'), nullable=True, unique=True)
    pos_folio = Column(String(100), nullable=True)

    order_type = Column(
        Enum(OrderType, name='order_type', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderType.DINE_IN
    )
    status = Column(
        Enum(OrderStatus, name='order_status', values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.COMPLETED
    )
    table_id = Column(BigInteger, ForeignKey('restaurant_table.id'), nullable=True)
    table_number = Column(String(50), nullable=True)
    guest_count = Column(Integer, nullable=False, default=1)

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tip = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(10), nullable=False, default='MXN')

    payment_method = Column(String(20), nullable=False, default='unknown')
    payment_status = Column(String(20), nullable=False, default='paid')
    source = Column(String(30), nullable=False, default=OrderSource.SOFTRESTAURANT)
    notes = Column(Text, nullable=True)
    unmapped_item_count = Column(Integer, nullable=False, default=0)

    # POS references kept as typed columns
    pos_customer_code = Column(String(50), nullable=True)
    pos_user_code = Column(String(50), nullable=True)

    ordered_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan',
                         order_by='OrderItem.id')
    table = relationship('RestaurantTable')

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', type={self.order_type.value})>"
