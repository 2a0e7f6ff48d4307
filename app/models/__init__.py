"""Models package - exports all SQLAlchemy models."""
# Tenancy
from app.models.tenant import Tenant
from app.models.branch import Branch
from app.models.pos_integration import PosIntegration, PosFeature

# Menu & Inventory
from app.models.menu_item import MenuItem
from app.models.recipe import Recipe
from app.models.recipe_ingredient import RecipeIngredient
from app.models.inventory_item import InventoryItem
from app.models.inventory_movement import (
    InventoryMovement, MovementType, MovementReferenceType, INBOUND_MOVEMENT_TYPES, AppendOnlyViolation
)

# POS sales
from app.models.pos_sale import PosSale, SaleStatus, TERMINAL_SALE_STATUSES
from app.models.pos_sale_item import PosSaleItem
from app.models.pos_sale_payment import PosSalePayment
from app.models.product_mapping import ProductMapping, MappingConfidence

# Orders
from app.models.restaurant_table import RestaurantTable
from app.models.order import Order, OrderType, OrderStatus, OrderSource
from app.models.order_item import OrderItem, UNMAPPED_LABEL

__all__ = [
    # Tenancy
    'Tenant', 'Branch', 'PosIntegration', 'PosFeature',
    # Menu & Inventory
    'MenuItem', 'Recipe', 'RecipeIngredient', 'InventoryItem',
    'InventoryMovement', 'MovementType', 'MovementReferenceType', 'INBOUND_MOVEMENT_TYPES',
    'AppendOnlyViolation',
    # POS sales
    'PosSale', 'SaleStatus', 'TERMINAL_SALE_STATUSES', 'PosSaleItem', 'PosSalePayment',
    'ProductMapping', 'MappingConfidence',
    # Orders
    'RestaurantTable', 'Order', 'OrderType', 'OrderStatus', 'OrderSource', 'OrderItem', 'UNMAPPED_LABEL',
]
