"""POS sale item model."""
from sqlalchemy import Column, String, Numeric, Text, JSON, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class PosSaleItem(Base):
    """POS Sale Item (detalle de venta del POS)."""

    __tablename__ = 'pos_sale_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sale_id = Column(BigInteger, ForeignKey('pos_sale.id', ondelete='CASCADE'), nullable=False, index=True)
    product_code = Column(String(100), nullable=False)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_price = Column(Numeric(12, 4), nullable=False, default=0)
    subtotal = Column(Numeric(12, 4), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 4), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 4), nullable=False, default=0)
    # List of {"code", "name", "quantity", "price"} dicts as sent by the POS
    modifiers = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    # Set once by the product mapper
    mapped_menu_item_id = Column(BigInteger, ForeignKey('menu_item.id'), nullable=True)

    # Relationships
    sale = relationship('PosSale', back_populates='items')
    menu_item = relationship('MenuItem')

    @property
    def line_total(self):
        return (self.subtotal or 0) + (self.tax_amount or 0) - (self.discount_amount or 0)

    def __repr__(self):
        return f"<PosSaleItem(id={self.id}, code='{self.product_code}', qty={self.quantity})>"
