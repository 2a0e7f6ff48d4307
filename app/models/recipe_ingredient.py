"""Recipe Ingredient model."""
from sqlalchemy import Column, String, Integer, Numeric, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class RecipeIngredient(Base):
    """Recipe Ingredient (insumo por rendimiento de receta)."""

    __tablename__ = 'recipe_ingredient'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    recipe_id = Column(BigInteger, ForeignKey('recipe.id'), nullable=False, index=True)
    inventory_item_id = Column(BigInteger, ForeignKey('inventory_item.id'), nullable=False, index=True)
    quantity = Column(Numeric(12, 3), nullable=False)  # per recipe yield
    unit = Column(String(20), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    waste_percentage = Column(Numeric(5, 2), nullable=True)

    # Relationships
    recipe = relationship('Recipe', back_populates='ingredients')
    inventory_item = relationship('InventoryItem')

    def __repr__(self):
        return f"<RecipeIngredient(id={self.id}, item_id={self.inventory_item_id}, qty={self.quantity})>"
