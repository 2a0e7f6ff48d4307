"""
Recipe deduction service - recipe explosion into ingredient stock-outs.

One sold menu item is expanded into its recipe ingredients, scaled by
quantity_sold / yield_quantity, and each ingredient is deducted with a
compare-and-swap on inventory_item.current_stock followed by a kardex
movement. If the movement cannot be written the stock change is undone; if
the undo fails too the result is flagged critical for manual reconciliation.

Per-ingredient and per-item problems are collected on the result objects,
never raised: the engine always attempts every ingredient of every item.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from app.exceptions import DeductionValidationError, InsufficientStockError
from app.models import InventoryItem, MenuItem, PosSale, Recipe, RecipeIngredient
from app.services import inventory_movement_service
from app.services.pipeline_settings import PipelineSettings
from app.utils.formatters import fmt_money, fmt_qty, utcnow
from app.utils.number_format import is_positive_finite, quantize_money, quantize_qty, to_decimal

logger = logging.getLogger(__name__)

WasteMultiplier = Callable[[RecipeIngredient], Decimal]


def no_waste(ingredient: RecipeIngredient) -> Decimal:
    """Default multiplier: recipe quantities are deducted as written."""
    return Decimal('1')


def waste_percentage_multiplier(ingredient: RecipeIngredient) -> Decimal:
    """1 + waste_percentage / 100 (a 10% waste ingredient deducts 1.1x)."""
    if ingredient.waste_percentage is None:
        return Decimal('1')
    pct = to_decimal(ingredient.waste_percentage)
    if pct <= 0:
        return Decimal('1')
    return Decimal('1') + pct / Decimal('100')


@dataclass
class IngredientDeduction:
    inventory_item_id: int
    item_name: str
    unit: Optional[str]
    quantity: Decimal
    previous_stock: Optional[Decimal] = None
    new_stock: Optional[Decimal] = None
    unit_cost: Optional[Decimal] = None
    total_cost: Decimal = Decimal('0')
    applied: bool = False
    skipped: bool = False
    movement_id: Optional[int] = None


@dataclass
class DeductionResult:
    menu_item_id: int
    quantity_sold: object
    menu_item_name: str = ''
    success: bool = True
    ingredients_processed: int = 0
    ingredients_deducted: int = 0
    total_cost_deducted: Decimal = Decimal('0')
    deductions: List[IngredientDeduction] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conflicts: int = 0
    # Movement append failed and the stock update was undone
    ledger_failures: int = 0
    # Stock moved without a ledger entry and could not be put back
    critical: bool = False

    @property
    def affected_item_ids(self) -> List[int]:
        return [d.inventory_item_id for d in self.deductions if d.applied]

    def fail(self, message: str) -> 'DeductionResult':
        self.errors.append(message)
        self.success = False
        return self


@dataclass
class SaleDeductionResult:
    sale_id: int
    success: bool = True
    items_processed: int = 0
    items_skipped: int = 0
    total_cost_deducted: Decimal = Decimal('0')
    results: List[DeductionResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    critical: bool = False
    conflicts: int = 0
    ledger_failures: int = 0

    @property
    def affected_item_ids(self) -> List[int]:
        ids = []
        for result in self.results:
            for item_id in result.affected_item_ids:
                if item_id not in ids:
                    ids.append(item_id)
        return ids


@dataclass
class PreviewLine:
    inventory_item_id: int
    item_name: str
    unit: Optional[str]
    quantity_required: Decimal
    current_stock: Decimal
    new_stock: Decimal
    unit_cost: Decimal
    total_cost: Decimal
    waste_multiplier: Decimal
    will_be_negative: bool
    is_low_stock: bool


@dataclass
class DeductionPreview:
    menu_item_id: int
    quantity_sold: object
    menu_item_name: str = ''
    recipe_id: Optional[int] = None
    yield_quantity: Optional[Decimal] = None
    scale_factor: Optional[Decimal] = None
    lines: List[PreviewLine] = field(default_factory=list)
    total_cost: Decimal = Decimal('0')
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def can_fulfill(self) -> bool:
        return not self.errors and not any(line.will_be_negative for line in self.lines)


class RecipeDeductionService:
    """Deducts recipe ingredients from inventory for sold menu items."""

    def __init__(self, session, settings: PipelineSettings = None, waste_multiplier: WasteMultiplier = None):
        self.session = session
        self.settings = settings or PipelineSettings()
        if waste_multiplier is None:
            waste_multiplier = waste_percentage_multiplier if self.settings.apply_ingredient_waste else no_waste
        self.waste_multiplier = waste_multiplier

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_menu_item(self, tenant_id: int, menu_item_id: int) -> Optional[MenuItem]:
        return self.session.query(MenuItem).filter(
            MenuItem.id == menu_item_id,
            MenuItem.tenant_id == tenant_id
        ).first()

    def _get_active_recipe(self, tenant_id: int, menu_item_id: int) -> Optional[Recipe]:
        return self.session.query(Recipe).filter(
            Recipe.tenant_id == tenant_id,
            Recipe.menu_item_id == menu_item_id,
            Recipe.is_active.is_(True),
            Recipe.deleted_at.is_(None)
        ).order_by(Recipe.id.desc()).first()

    def _read_inventory_item(self, tenant_id: int, branch_id: int, item_id: int):
        """
        Fresh read of the inventory row (bypasses the identity map).

        Branch-specific items and tenant-wide items (branch_id NULL) both qualify.
        """
        return self.session.query(
            InventoryItem.id,
            InventoryItem.name,
            InventoryItem.unit,
            InventoryItem.current_stock,
            InventoryItem.minimum_stock,
            InventoryItem.unit_cost,
        ).filter(
            InventoryItem.id == item_id,
            InventoryItem.tenant_id == tenant_id,
            or_(InventoryItem.branch_id == branch_id, InventoryItem.branch_id.is_(None)),
            InventoryItem.is_active.is_(True),
            InventoryItem.deleted_at.is_(None)
        ).first()

    def _calculate(self, tenant_id: int, branch_id: int, ingredient: RecipeIngredient, scale_factor: Decimal):
        """Read current stock and compute the deduction for one ingredient, or None if the item is gone."""
        row = self._read_inventory_item(tenant_id, branch_id, ingredient.inventory_item_id)
        if row is None:
            return None

        multiplier = to_decimal(self.waste_multiplier(ingredient))
        quantity = quantize_qty(to_decimal(ingredient.quantity) * scale_factor * multiplier)
        current = to_decimal(row.current_stock)
        unit_cost = to_decimal(row.unit_cost or 0)

        return {
            'item_id': row.id,
            'ingredient_id': ingredient.id,
            'name': row.name,
            'unit': ingredient.unit or row.unit,
            'quantity': quantity,
            'current_stock': current,
            'new_stock': quantize_qty(current - quantity),
            'minimum_stock': to_decimal(row.minimum_stock or 0),
            'unit_cost': unit_cost,
            'total_cost': quantize_money(quantity * unit_cost),
            'waste_multiplier': multiplier,
        }

    @staticmethod
    def _validate_quantity(quantity_sold):
        if not is_positive_finite(quantity_sold):
            raise DeductionValidationError(f"Invalid quantity sold: {quantity_sold}. Must be a positive number.")
        return to_decimal(quantity_sold)

    @staticmethod
    def _validate_yield(recipe: Recipe) -> Decimal:
        if recipe.yield_quantity is None or not is_positive_finite(recipe.yield_quantity):
            raise DeductionValidationError(f"Invalid recipe yield quantity: {recipe.yield_quantity}")
        return to_decimal(recipe.yield_quantity)

    # ------------------------------------------------------------------
    # Stock writes
    # ------------------------------------------------------------------

    def _compare_and_swap(self, tenant_id: int, item_id: int, expected, new_value) -> bool:
        """Set current_stock only if it still equals what was read. False = another writer got there first."""
        rows = self.session.query(InventoryItem).filter(
            InventoryItem.id == item_id,
            InventoryItem.tenant_id == tenant_id,
            InventoryItem.current_stock == expected
        ).update(
            {InventoryItem.current_stock: new_value, InventoryItem.updated_at: utcnow()},
            synchronize_session=False
        )
        return rows == 1

    def _restore_stock(self, tenant_id: int, item_id: int, deducted_to, restore_to) -> bool:
        """Compensating action: undo a stock update whose movement could not be written."""
        try:
            return self._compare_and_swap(tenant_id, item_id, deducted_to, restore_to)
        except SQLAlchemyError as e:
            logger.critical(f"[RECIPE_DEDUCTION] Stock restore raised for item {item_id}: {e}")
            return False

    def _append_movement(self, tenant_id, branch_id, calc, sale_id, sale_item_id, menu_item, quantity_sold):
        """Write the kardex row inside a savepoint so a failed INSERT leaves the stock update intact for undo."""
        with self.session.begin_nested():
            return inventory_movement_service.record_deduction(
                self.session,
                tenant_id=tenant_id,
                branch_id=branch_id,
                item_id=calc['item_id'],
                quantity=calc['quantity'],
                previous_stock=calc['current_stock'],
                new_stock=calc['new_stock'],
                unit=calc['unit'],
                unit_cost=calc['unit_cost'],
                reference_id=sale_id,
                sale_item_id=sale_item_id,
                menu_item_id=menu_item.id,
                recipe_ingredient_id=calc['ingredient_id'],
                notes=f"Deducted for {menu_item.name} x{fmt_qty(quantity_sold)}",
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def deduce_for_menu_item(
        self,
        tenant_id: int,
        branch_id: int,
        menu_item_id: int,
        quantity_sold,
        sale_id: int = None,
        allow_negative_stock: bool = False,
        sale_item_id: int = None,
    ) -> DeductionResult:
        """
        Deduct every recipe ingredient of a menu item for quantity_sold portions.

        Args:
            sale_item_id: POS sale line being deducted. When given, ingredients
                that line already deducted (an earlier attempt of the same sale)
                are skipped instead of deducted twice.

        Returns:
            DeductionResult; success is False if any ingredient produced an error.
        """
        result = DeductionResult(menu_item_id=menu_item_id, quantity_sold=quantity_sold)
        logger.info(f"[RECIPE_DEDUCTION] Processing menu item {menu_item_id} x{quantity_sold}")

        try:
            qty_sold = self._validate_quantity(quantity_sold)
        except DeductionValidationError as e:
            return result.fail(e.message)

        menu_item = self._get_menu_item(tenant_id, menu_item_id)
        if menu_item is None:
            return result.fail(f"Menu item not found: {menu_item_id}")
        result.menu_item_name = menu_item.name

        recipe = self._get_active_recipe(tenant_id, menu_item_id)
        if recipe is None:
            result.warnings.append(f"No active recipe found for menu item: {menu_item.name}")
            logger.info(f"[RECIPE_DEDUCTION] Skipping {menu_item.name} - no recipe")
            return result

        try:
            yield_quantity = self._validate_yield(recipe)
        except DeductionValidationError as e:
            return result.fail(f"{e.message} for {menu_item.name}")

        ingredients = list(recipe.ingredients)
        if not ingredients:
            result.warnings.append(f"Recipe for {menu_item.name} has no ingredients defined")
            logger.info(f"[RECIPE_DEDUCTION] Skipping {menu_item.name} - empty recipe")
            return result

        result.ingredients_processed = len(ingredients)

        scale_factor = qty_sold / yield_quantity
        logger.debug(
            f"[RECIPE_DEDUCTION] Scale factor: {scale_factor} "
            f"(sold: {fmt_qty(qty_sold)}, yield: {fmt_qty(recipe.yield_quantity)})"
        )

        for ingredient in ingredients:
            self._deduce_ingredient(
                result, tenant_id, branch_id, menu_item, ingredient, scale_factor,
                qty_sold, sale_id, sale_item_id, allow_negative_stock
            )

        if result.errors:
            result.success = False

        logger.info(
            f"[RECIPE_DEDUCTION] Completed for {menu_item.name}: "
            f"{result.ingredients_deducted}/{result.ingredients_processed} ingredients deducted, "
            f"cost: {fmt_money(result.total_cost_deducted)}"
        )
        return result

    def _deduce_ingredient(
        self, result, tenant_id, branch_id, menu_item, ingredient, scale_factor,
        qty_sold, sale_id, sale_item_id, allow_negative_stock
    ):
        item_id = ingredient.inventory_item_id

        if sale_id and sale_item_id and inventory_movement_service.has_sale_item_movement(
            self.session, sale_id, sale_item_id, ingredient.id
        ):
            result.deductions.append(IngredientDeduction(
                inventory_item_id=item_id, item_name='', unit=ingredient.unit,
                quantity=Decimal('0'), skipped=True
            ))
            result.warnings.append(f"Ingredient {item_id} (recipe line {ingredient.id}) already deducted for sale item {sale_item_id}, skipped")
            return

        try:
            calc = self._calculate(tenant_id, branch_id, ingredient, scale_factor)
        except (SQLAlchemyError, ValueError) as e:
            result.errors.append(f"Error processing ingredient {item_id}: {e}")
            return

        if calc is None:
            result.errors.append(f"Failed to calculate deduction for ingredient {item_id}")
            return

        name = calc['name']
        will_be_negative = calc['new_stock'] < 0

        if will_be_negative and not allow_negative_stock:
            result.errors.append(InsufficientStockError(name, calc['quantity'], calc['current_stock']).message)
            return

        if will_be_negative:
            result.warnings.append(f"{name} will go negative: {fmt_qty(calc['new_stock'])}")

        deduction = IngredientDeduction(
            inventory_item_id=calc['item_id'],
            item_name=name,
            unit=calc['unit'],
            quantity=calc['quantity'],
            previous_stock=calc['current_stock'],
            new_stock=calc['new_stock'],
            unit_cost=calc['unit_cost'],
            total_cost=calc['total_cost'],
        )
        result.deductions.append(deduction)

        try:
            swapped = self._compare_and_swap(tenant_id, calc['item_id'], calc['current_stock'], calc['new_stock'])
        except SQLAlchemyError as e:
            result.errors.append(f"Failed to update stock for {name}: {e}")
            return

        if not swapped:
            logger.warning(f"[RECIPE_DEDUCTION] Optimistic lock conflict on {name} (read {fmt_qty(calc['current_stock'])})")
            result.conflicts += 1
            result.errors.append(
                f"Stock update failed for {name}: current stock may have changed or item was deleted"
            )
            return

        try:
            movement = self._append_movement(tenant_id, branch_id, calc, sale_id, sale_item_id, menu_item, qty_sold)
        except SQLAlchemyError as e:
            logger.error(f"[RECIPE_DEDUCTION] Movement recording failed, rolling back stock for {name}: {e}")
            if self._restore_stock(tenant_id, calc['item_id'], calc['new_stock'], calc['current_stock']):
                result.ledger_failures += 1
                result.errors.append(f"Movement recording failed for {name}, stock rolled back successfully")
            else:
                logger.critical(
                    f"[RECIPE_DEDUCTION] CRITICAL: Rollback failed for {name} "
                    f"(item {calc['item_id']}, sale {sale_id}). Stock and kardex diverged."
                )
                result.errors.append(
                    f"CRITICAL: Stock updated but movement failed AND rollback failed for {name}. "
                    f"Manual intervention required."
                )
                result.critical = True
            return

        deduction.applied = True
        deduction.movement_id = movement.id
        result.ingredients_deducted += 1
        result.total_cost_deducted += calc['total_cost']
        logger.info(
            f"[RECIPE_DEDUCTION] Deducted {fmt_qty(calc['quantity'])} {calc['unit']} of {name} "
            f"({fmt_qty(calc['current_stock'])} -> {fmt_qty(calc['new_stock'])})"
        )

    def deduce_for_sale(self, sale_id: int, allow_negative_stock: bool = False) -> SaleDeductionResult:
        """
        Run deduce_for_menu_item for every mapped line of a POS sale.

        Unmapped lines are skipped with a warning. Item failures do not stop
        the remaining items; the combined result carries every error.
        """
        result = SaleDeductionResult(sale_id=sale_id)

        sale = self.session.query(PosSale).filter(PosSale.id == sale_id).first()
        if sale is None:
            result.errors.append(f"Sale not found: {sale_id}")
            result.success = False
            return result

        if not sale.items:
            result.warnings.append('Sale has no items')
            return result

        for item in sale.items:
            if not item.mapped_menu_item_id:
                result.items_skipped += 1
                result.warnings.append(f"Item {item.product_code} ({item.product_name}) not mapped, skipping deduction")
                continue

            item_result = self.deduce_for_menu_item(
                tenant_id=sale.tenant_id,
                branch_id=sale.branch_id,
                menu_item_id=item.mapped_menu_item_id,
                quantity_sold=item.quantity,
                sale_id=sale.id,
                allow_negative_stock=allow_negative_stock,
                sale_item_id=item.id,
            )
            result.items_processed += 1
            result.results.append(item_result)
            result.total_cost_deducted += item_result.total_cost_deducted
            result.errors.extend(item_result.errors)
            result.conflicts += item_result.conflicts
            result.ledger_failures += item_result.ledger_failures
            result.warnings.extend(item_result.warnings)
            if item_result.critical:
                result.critical = True
            if not item_result.success:
                result.success = False

        logger.info(
            f"[RECIPE_DEDUCTION] Sale {sale_id}: {result.items_processed} items processed, "
            f"{result.items_skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def preview_deduction(self, tenant_id: int, branch_id: int, menu_item_id: int, quantity_sold) -> DeductionPreview:
        """What deduce_for_menu_item would do, without writing anything."""
        preview = DeductionPreview(menu_item_id=menu_item_id, quantity_sold=quantity_sold)

        try:
            qty_sold = self._validate_quantity(quantity_sold)
        except DeductionValidationError as e:
            preview.errors.append(e.message)
            return preview

        menu_item = self._get_menu_item(tenant_id, menu_item_id)
        if menu_item is None:
            preview.errors.append(f"Menu item not found: {menu_item_id}")
            return preview
        preview.menu_item_name = menu_item.name

        recipe = self._get_active_recipe(tenant_id, menu_item_id)
        if recipe is None:
            preview.warnings.append(f"No active recipe found for {menu_item.name}")
            return preview

        preview.recipe_id = recipe.id
        preview.yield_quantity = recipe.yield_quantity
        try:
            preview.scale_factor = qty_sold / self._validate_yield(recipe)
        except DeductionValidationError as e:
            preview.errors.append(e.message)
            return preview

        if not recipe.ingredients:
            preview.warnings.append('Recipe has no ingredients')
            return preview

        for ingredient in recipe.ingredients:
            calc = self._calculate(tenant_id, branch_id, ingredient, preview.scale_factor)
            if calc is None:
                preview.errors.append(f"Failed to calculate for ingredient {ingredient.inventory_item_id}")
                continue

            will_be_negative = calc['new_stock'] < 0
            preview.lines.append(PreviewLine(
                inventory_item_id=calc['item_id'],
                item_name=calc['name'],
                unit=calc['unit'],
                quantity_required=calc['quantity'],
                current_stock=calc['current_stock'],
                new_stock=calc['new_stock'],
                unit_cost=calc['unit_cost'],
                total_cost=calc['total_cost'],
                waste_multiplier=calc['waste_multiplier'],
                will_be_negative=will_be_negative,
                is_low_stock=calc['new_stock'] <= calc['minimum_stock'],
            ))
            preview.total_cost += calc['total_cost']
            if will_be_negative:
                preview.warnings.append(f"{calc['name']} will go negative: {fmt_qty(calc['new_stock'])}")

        return preview
