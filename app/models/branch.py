"""Branch model - one physical location of a tenant."""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class Branch(Base):
    """Branch (sucursal)."""

    __tablename__ = 'branch'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    timezone = Column(String(64), nullable=False, default='America/Mexico_City')
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    tenant = relationship('Tenant', back_populates='branches')

    def __repr__(self):
        return f"<Branch(id={self.id}, tenant_id={self.tenant_id}, name='{self.name}')>"
