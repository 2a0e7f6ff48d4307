"""Restaurant order item model."""
from sqlalchemy import Column, String, Boolean, Numeric, Text, JSON, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


UNMAPPED_LABEL = '[SIN MAPEO]'


class OrderItem(Base):
    """
    Order Item (detalle de orden).

    Items whose POS product has no menu mapping are still stored, with
    menu_item_id NULL and is_unmapped True, so nothing sold is dropped.
    """

    __tablename__ = 'restaurant_order_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('restaurant_order.id', ondelete='CASCADE'), nullable=False, index=True)
    menu_item_id = Column(BigInteger, ForeignKey('menu_item.id'), nullable=True)
    is_unmapped = Column(Boolean, nullable=False, default=False)
    display_name = Column(String(300), nullable=False)
    pos_product_code = Column(String(100), nullable=True)
    pos_product_name = Column(String(255), nullable=True)

    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False, default=0)
    subtotal = Column(Numeric(12, 4), nullable=False, default=0)
    tax = Column(Numeric(12, 4), nullable=False, default=0)
    discount = Column(Numeric(12, 4), nullable=False, default=0)
    total = Column(Numeric(12, 4), nullable=False, default=0)
    modifiers = Column(JSON, nullable=True)
    special_instructions = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default='completed')

    # Relationships
    order = relationship('Order', back_populates='items')

    def __repr__(self):
        return f"<OrderItem(id={self.id}, order_id={self.order_id}, unmapped={self.is_unmapped})>"
