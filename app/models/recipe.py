"""Recipe model."""
from sqlalchemy import Column, String, Boolean, Numeric, DateTime, Text, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class Recipe(Base):
    """
    Recipe (receta) for a menu item.

    yield_quantity is how many portions one batch produces; sold portions are
    scaled against it. Inactive or soft-deleted recipes count as "no recipe".
    """

    __tablename__ = 'recipe'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    menu_item_id = Column(BigInteger, ForeignKey('menu_item.id'), nullable=False, index=True)
    yield_quantity = Column(Numeric(10, 2), nullable=False, default=1)
    yield_unit = Column(String(20), nullable=False, default='portion')
    is_active = Column(Boolean, nullable=False, default=True)
    preparation_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    menu_item = relationship('MenuItem', back_populates='recipes')
    ingredients = relationship(
        'RecipeIngredient',
        back_populates='recipe',
        order_by='RecipeIngredient.display_order',
        cascade='all, delete-orphan'
    )

    def __repr__(self):
        return f"<Recipe(id={self.id}, menu_item_id={self.menu_item_id}, yield={self.yield_quantity})>"
