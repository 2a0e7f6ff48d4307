"""POS integration model - a connected point-of-sale system for one branch."""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class PosFeature:
    """Sync features gated by the external schema validator."""
    SALES = 'sales'
    MENU = 'menu'
    INVENTORY = 'inventory'


class PosIntegration(Base):
    """
    POS connection (e.g. Soft Restaurant agent) attached to a branch.

    The capability flags hold the yes/no outcome of the external schema
    compatibility validator; this service only reads them.
    """

    __tablename__ = 'pos_integration'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    branch_id = Column(BigInteger, ForeignKey('branch.id'), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default='softrestaurant')
    name = Column(String(200), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    # Capability gate
    sync_sales_enabled = Column(Boolean, nullable=False, default=True)
    sync_menu_enabled = Column(Boolean, nullable=False, default=False)
    sync_inventory_enabled = Column(Boolean, nullable=False, default=True)

    # None = use SALES_ALLOW_NEGATIVE_STOCK from config
    allow_negative_stock = Column(Boolean, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    tenant = relationship('Tenant')
    branch = relationship('Branch')

    def is_feature_enabled(self, feature: str) -> bool:
        """Capability check for a sync feature."""
        if not self.active:
            return False
        flags = {
            PosFeature.SALES: self.sync_sales_enabled,
            PosFeature.MENU: self.sync_menu_enabled,
            PosFeature.INVENTORY: self.sync_inventory_enabled,
        }
        return bool(flags.get(feature, False))

    def __repr__(self):
        return f"<PosIntegration(id={self.id}, provider='{self.provider}', branch_id={self.branch_id})>"
