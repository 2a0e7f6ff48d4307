"""Restaurant table model."""
from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, BigInteger, UniqueConstraint
from app.database import Base, BigIntPK


class RestaurantTable(Base):
    """Dining table of a branch."""

    __tablename__ = 'restaurant_table'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False)
    table_number = Column(String(50), nullable=False)
    capacity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('branch_id', 'table_number', name='uq_restaurant_table_number'),
    )

    def __repr__(self):
        return f"<RestaurantTable(id={self.id}, number='{self.table_number}')>"
