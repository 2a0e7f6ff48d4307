"""
Unit tests for recipe explosion, compare-and-swap deductions and the
movement rollback path.
"""
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.models import InventoryItem, InventoryMovement, MenuItem, Recipe, RecipeIngredient, MovementType
from app.services import recipe_deduction_service
from app.services.pipeline_settings import PipelineSettings
from app.services.recipe_deduction_service import (
    RecipeDeductionService, no_waste, waste_percentage_multiplier
)


def _stock(session, item_id):
    session.expire_all()
    return session.get(InventoryItem, item_id).current_stock


def _movements(session, item_id):
    return session.query(InventoryMovement).filter(InventoryMovement.item_id == item_id).all()


class TestDeduceForMenuItem:
    """Happy path and scaling."""

    def test_deducts_recipe_quantity(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        service = RecipeDeductionService(session, settings)
        result = service.deduce_for_menu_item(tenant.id, branch.id, menu_item.id, 1)
        session.commit()

        assert result.success is True
        assert result.ingredients_processed == 1
        assert result.ingredients_deducted == 1
        assert result.total_cost_deducted == Decimal('30.00')
        assert _stock(session, inventory_item.id) == Decimal('4800')

        movements = _movements(session, inventory_item.id)
        assert len(movements) == 1
        assert movements[0].quantity == Decimal('-200')
        assert movements[0].previous_stock == Decimal('5000')
        assert movements[0].new_stock == Decimal('4800')
        assert movements[0].movement_type == MovementType.SALE

    def test_scale_factor_uses_recipe_yield(self, session, settings, tenant, branch, menu_item, inventory_item):
        """A recipe yielding 4 portions with 800 g: selling 3 portions deducts 600 g."""
        recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('4'))
        recipe.ingredients = [RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('800'), unit='g')]
        session.add(recipe)
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 3
        )
        session.commit()

        assert result.success is True
        assert result.deductions[0].quantity == Decimal('600.000')
        assert _stock(session, inventory_item.id) == Decimal('4400')

    def test_fractional_quantity(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, Decimal('0.5')
        )
        session.commit()

        assert result.success is True
        assert _stock(session, inventory_item.id) == Decimal('4900')

    def test_tenant_wide_inventory_item(self, session, settings, tenant, branch, menu_item):
        shared = InventoryItem(
            tenant_id=tenant.id, branch_id=None, name='Sal', unit='g',
            current_stock=Decimal('100'), minimum_stock=Decimal('10')
        )
        session.add(shared)
        session.flush()
        recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('1'))
        recipe.ingredients = [RecipeIngredient(inventory_item_id=shared.id, quantity=Decimal('2'), unit='g')]
        session.add(recipe)
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is True
        assert _stock(session, shared.id) == Decimal('98')


class TestDeductionValidation:
    """Input and recipe checks."""

    @pytest.mark.parametrize('quantity', [0, -1, 'abc', None, float('nan'), float('inf')])
    def test_invalid_quantity(self, session, settings, tenant, branch, menu_item, recipe, quantity):
        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, quantity
        )

        assert result.success is False
        assert 'Invalid quantity sold' in result.errors[0]

    def test_missing_menu_item(self, session, settings, tenant, branch):
        result = RecipeDeductionService(session, settings).deduce_for_menu_item(tenant.id, branch.id, 999999, 1)

        assert result.success is False
        assert result.errors == ['Menu item not found: 999999']

    def test_no_recipe_is_a_warning(self, session, settings, tenant, branch, menu_item, inventory_item):
        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is True
        assert result.ingredients_processed == 0
        assert result.warnings == ['No active recipe found for menu item: Hamburguesa']

    def test_inactive_recipe_counts_as_missing(self, session, settings, tenant, branch, menu_item, recipe):
        recipe.is_active = False
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )
        assert result.success is True
        assert result.ingredients_deducted == 0
        assert result.warnings

    def test_invalid_yield(self, session, settings, tenant, branch, menu_item, inventory_item):
        recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('0'))
        recipe.ingredients = [RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('1'), unit='g')]
        session.add(recipe)
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is False
        assert 'Invalid recipe yield quantity' in result.errors[0]
        assert _stock(session, inventory_item.id) == Decimal('5000')

    def test_empty_recipe_is_a_warning(self, session, settings, tenant, branch, menu_item):
        session.add(Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('1')))
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is True
        assert result.warnings == ['Recipe for Hamburguesa has no ingredients defined']


class TestInsufficientStock:
    """Negative stock policy."""

    def _low_stock(self, session, inventory_item):
        session.query(InventoryItem).filter(InventoryItem.id == inventory_item.id).update(
            {InventoryItem.current_stock: Decimal('50')}, synchronize_session=False
        )
        session.commit()

    def test_rejected_without_writes(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        self._low_stock(session, inventory_item)

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, Decimal('0.3')
        )
        session.commit()

        assert result.success is False
        assert result.errors == ['Insufficient stock for Carne molida: need 60, have 50']
        assert _stock(session, inventory_item.id) == Decimal('50')
        assert _movements(session, inventory_item.id) == []

    def test_allowed_goes_negative_with_warning(self, session, settings, tenant, branch, menu_item,
                                                inventory_item, recipe):
        self._low_stock(session, inventory_item)

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, Decimal('0.3'), allow_negative_stock=True
        )
        session.commit()

        assert result.success is True
        assert result.warnings == ['Carne molida will go negative: -10']
        assert _stock(session, inventory_item.id) == Decimal('-10')
        assert len(_movements(session, inventory_item.id)) == 1

    def test_other_ingredients_still_attempted(self, session, settings, tenant, branch, menu_item, inventory_item):
        bread = InventoryItem(
            tenant_id=tenant.id, branch_id=branch.id, name='Pan', unit='pz',
            current_stock=Decimal('0'), minimum_stock=Decimal('10')
        )
        session.add(bread)
        session.flush()
        recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('1'))
        recipe.ingredients = [
            RecipeIngredient(inventory_item_id=bread.id, quantity=Decimal('1'), unit='pz', display_order=1),
            RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('200'), unit='g', display_order=2),
        ]
        session.add(recipe)
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )
        session.commit()

        assert result.success is False
        assert result.ingredients_deducted == 1
        assert len(result.errors) == 1
        assert _stock(session, inventory_item.id) == Decimal('4800')
        assert _stock(session, bread.id) == Decimal('0')


class TestOptimisticLock:
    """Compare-and-swap conflicts."""

    def test_stale_read_is_a_conflict(self, session, settings, tenant, branch, menu_item, inventory_item,
                                      recipe, monkeypatch):
        service = RecipeDeductionService(session, settings)
        real_read = RecipeDeductionService._read_inventory_item

        def read_then_change(self, tenant_id, branch_id, item_id):
            row = real_read(self, tenant_id, branch_id, item_id)
            # Another writer moves the stock after our read
            session.query(InventoryItem).filter(InventoryItem.id == item_id).update(
                {InventoryItem.current_stock: Decimal('4999')}, synchronize_session=False
            )
            return row

        monkeypatch.setattr(RecipeDeductionService, '_read_inventory_item', read_then_change)
        result = service.deduce_for_menu_item(tenant.id, branch.id, menu_item.id, 1)
        session.commit()

        assert result.success is False
        assert result.conflicts == 1
        assert result.errors == [
            'Stock update failed for Carne molida: current stock may have changed or item was deleted'
        ]
        assert _stock(session, inventory_item.id) == Decimal('4999')
        assert _movements(session, inventory_item.id) == []

    def test_deleted_item_is_an_error(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        inventory_item.is_active = False
        session.commit()

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is False
        assert result.errors == [f'Failed to calculate deduction for ingredient {inventory_item.id}']


class TestMovementRollback:
    """Stock update is undone when the kardex write fails."""

    def _fail_movement(self, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError('disk full')
        monkeypatch.setattr(recipe_deduction_service.inventory_movement_service, 'record_deduction', broken)

    def test_stock_restored(self, session, settings, tenant, branch, menu_item, inventory_item, recipe, monkeypatch):
        self._fail_movement(monkeypatch)

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )
        session.commit()

        assert result.success is False
        assert result.critical is False
        assert result.errors == ['Movement recording failed for Carne molida, stock rolled back successfully']
        assert _stock(session, inventory_item.id) == Decimal('5000')
        assert _movements(session, inventory_item.id) == []

    def test_failed_restore_is_critical(self, session, settings, tenant, branch, menu_item, inventory_item,
                                        recipe, monkeypatch):
        self._fail_movement(monkeypatch)
        monkeypatch.setattr(RecipeDeductionService, '_restore_stock', lambda self, *args: False)

        result = RecipeDeductionService(session, settings).deduce_for_menu_item(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert result.success is False
        assert result.critical is True
        assert result.errors[0].startswith('CRITICAL: Stock updated but movement failed AND rollback failed')


class TestDeduceForSale:
    """Whole-sale deduction."""

    def test_unmapped_lines_skipped(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        sale = make_sale(items=[
            {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 2,
             'mapped_menu_item_id': menu_item.id},
            {'product_code': 'REF01', 'product_name': 'Refresco', 'quantity': 1},
        ])

        result = RecipeDeductionService(session, settings).deduce_for_sale(sale.id)
        session.commit()

        assert result.success is True
        assert result.items_processed == 1
        assert result.items_skipped == 1
        assert 'Item REF01 (Refresco) not mapped, skipping deduction' in result.warnings
        assert result.affected_item_ids == [inventory_item.id]
        assert _stock(session, inventory_item.id) == Decimal('4600')

    def test_missing_sale(self, session, settings):
        result = RecipeDeductionService(session, settings).deduce_for_sale(999999)

        assert result.success is False
        assert result.errors == ['Sale not found: 999999']

    def test_retry_skips_lines_already_deducted(self, session, settings, menu_item, inventory_item,
                                                recipe, make_sale):
        sale = make_sale(items=[
            {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1,
             'mapped_menu_item_id': menu_item.id},
        ])
        service = RecipeDeductionService(session, settings)

        service.deduce_for_sale(sale.id)
        session.commit()
        second = service.deduce_for_sale(sale.id)
        session.commit()

        assert second.success is True
        assert second.results[0].ingredients_deducted == 0
        assert second.results[0].deductions[0].skipped is True
        assert _stock(session, inventory_item.id) == Decimal('4800')
        assert len(_movements(session, inventory_item.id)) == 1

    def test_same_item_listed_twice_deducts_both_lines(self, session, settings, tenant, menu_item,
                                                        inventory_item, recipe, make_sale):
        """A recipe may use one inventory item on two lines (patty + topping)."""
        recipe.ingredients.append(
            RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('50'), unit='g', display_order=2)
        )
        session.commit()
        sale = make_sale(items=[
            {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1,
             'mapped_menu_item_id': menu_item.id},
        ])

        result = RecipeDeductionService(session, settings).deduce_for_sale(sale.id)
        session.commit()

        assert result.success is True
        assert result.warnings == []
        assert result.results[0].ingredients_deducted == 2
        assert _stock(session, inventory_item.id) == Decimal('4750')
        assert len(_movements(session, inventory_item.id)) == 2

    def test_retry_with_same_item_twice_does_not_deduct_again(self, session, settings, menu_item,
                                                              inventory_item, recipe, make_sale):
        recipe.ingredients.append(
            RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('50'), unit='g', display_order=2)
        )
        session.commit()
        sale = make_sale(items=[
            {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1,
             'mapped_menu_item_id': menu_item.id},
        ])
        service = RecipeDeductionService(session, settings)

        service.deduce_for_sale(sale.id)
        session.commit()
        second = service.deduce_for_sale(sale.id)
        session.commit()

        assert second.success is True
        assert second.results[0].ingredients_deducted == 0
        assert all(d.skipped for d in second.results[0].deductions)
        assert _stock(session, inventory_item.id) == Decimal('4750')
        assert len(_movements(session, inventory_item.id)) == 2

    def test_movements_reference_sale_line(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        sale = make_sale(items=[
            {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1,
             'mapped_menu_item_id': menu_item.id},
        ])
        line_id = sale.items[0].id

        RecipeDeductionService(session, settings).deduce_for_sale(sale.id)
        session.commit()

        movement = _movements(session, inventory_item.id)[0]
        assert movement.reference_type == 'pos_sale'
        assert movement.reference_id == sale.id
        assert movement.sale_item_id == line_id
        assert movement.menu_item_id == menu_item.id
        assert movement.recipe_ingredient_id == recipe.ingredients[0].id


class TestWasteMultiplier:
    """Optional ingredient waste factor."""

    def test_default_is_no_waste(self, settings):
        assert RecipeDeductionService(None, settings).waste_multiplier is no_waste

    def test_enabled_by_setting(self):
        service = RecipeDeductionService(None, PipelineSettings(apply_ingredient_waste=True))
        assert service.waste_multiplier is waste_percentage_multiplier

    def test_percentage_multiplier(self):
        assert waste_percentage_multiplier(RecipeIngredient(waste_percentage=Decimal('10'))) == Decimal('1.1')
        assert waste_percentage_multiplier(RecipeIngredient(waste_percentage=None)) == Decimal('1')

    def test_waste_applied_to_deduction(self, session, tenant, branch, menu_item, inventory_item):
        recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('1'))
        recipe.ingredients = [RecipeIngredient(
            inventory_item_id=inventory_item.id, quantity=Decimal('200'), unit='g', waste_percentage=Decimal('10')
        )]
        session.add(recipe)
        session.commit()

        service = RecipeDeductionService(session, PipelineSettings(apply_ingredient_waste=True))
        result = service.deduce_for_menu_item(tenant.id, branch.id, menu_item.id, 1)
        session.commit()

        assert result.success is True
        assert _stock(session, inventory_item.id) == Decimal('4780')


class TestPreviewDeduction:
    """Dry run."""

    def test_preview_writes_nothing(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        preview = RecipeDeductionService(session, settings).preview_deduction(
            tenant.id, branch.id, menu_item.id, 30
        )

        assert preview.has_errors is False
        assert preview.can_fulfill is False
        line = preview.lines[0]
        assert line.quantity_required == Decimal('6000.000')
        assert line.new_stock == Decimal('-1000.000')
        assert line.will_be_negative is True
        assert line.is_low_stock is True
        assert _stock(session, inventory_item.id) == Decimal('5000')
        assert _movements(session, inventory_item.id) == []

    def test_preview_within_stock(self, session, settings, tenant, branch, menu_item, inventory_item, recipe):
        preview = RecipeDeductionService(session, settings).preview_deduction(
            tenant.id, branch.id, menu_item.id, 1
        )

        assert preview.can_fulfill is True
        assert preview.total_cost == Decimal('30.00')
        assert preview.scale_factor == Decimal('1')
