"""Menu item model."""
from sqlalchemy import Column, String, Boolean, Numeric, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class MenuItem(Base):
    """Restaurant menu item (platillo)."""

    __tablename__ = 'menu_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    recipes = relationship('Recipe', back_populates='menu_item')

    def __repr__(self):
        return f"<MenuItem(id={self.id}, name='{self.name}')>"
