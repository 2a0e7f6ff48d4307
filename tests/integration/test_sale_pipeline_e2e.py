"""
End-to-end tests: queued POS sale -> mapping -> deduction -> order -> processed.
"""
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from app.models import (
    InventoryItem, InventoryMovement, MenuItem, Order, PosSale, ProductMapping, Recipe, RecipeIngredient, SaleStatus
)
from app.services import recipe_deduction_service
from app.services.recipe_deduction_service import RecipeDeductionService
from app.services.sale_processor import SaleProcessor


def _reload_sale(session, sale_id):
    session.expire_all()
    return session.get(PosSale, sale_id)


def _set_stock(session, item_id, value):
    session.query(InventoryItem).filter(InventoryItem.id == item_id).update(
        {InventoryItem.current_stock: Decimal(value)}, synchronize_session=False
    )
    session.commit()


TWO_LINE_SALE = [
    {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1},
    {'product_code': 'ZZZ99', 'product_name': 'Platillo del dia', 'quantity': 1, 'unit_price': Decimal('90')},
]


class TestProcessSale:
    """Full pipeline through SaleProcessor."""

    def test_happy_path(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        sale = make_sale(items=TWO_LINE_SALE, status=SaleStatus.PROCESSING)
        item_id = inventory_item.id

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is True
        assert result.items_mapped == 1
        assert result.items_unmapped == 1
        assert result.inventory_deducted is True
        assert result.inventory_movements == 1
        assert result.low_stock_alerts == 0
        assert any('ZZZ99' in w for w in result.warnings)

        session.expire_all()
        assert session.get(InventoryItem, item_id).current_stock == Decimal('4800')
        movements = session.query(InventoryMovement).filter(InventoryMovement.item_id == item_id).all()
        assert [m.quantity for m in movements] == [Decimal('-200')]

        reloaded = _reload_sale(session, sale.id)
        assert reloaded.status == SaleStatus.PROCESSED
        assert reloaded.processed_at is not None
        assert reloaded.order_id == result.order_id
        assert reloaded.items[0].mapped_menu_item_id == menu_item.id
        assert reloaded.items[1].mapped_menu_item_id is None

        order = session.get(Order, result.order_id)
        assert order.pos_sale_id == sale.id
        assert order.unmapped_item_count == 1
        assert [i.is_unmapped for i in order.items] == [False, True]

        registry = session.query(ProductMapping).filter(ProductMapping.pos_product_code == 'ZZZ99').one()
        assert registry.menu_item_id is None

    def test_low_stock_alert_does_not_block(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        _set_stock(session, inventory_item.id, '1100')
        sale = make_sale(status=SaleStatus.PROCESSING)

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is True
        assert result.low_stock_alerts == 1
        assert _reload_sale(session, sale.id).status == SaleStatus.PROCESSED

    def test_insufficient_stock_is_retried(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        _set_stock(session, inventory_item.id, '50')
        sale = make_sale(
            items=[{'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': Decimal('0.3')}],
            status=SaleStatus.PROCESSING,
        )

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is False
        assert result.should_retry is True
        assert 'Insufficient stock for Carne molida: need 60, have 50' in result.error

        reloaded = _reload_sale(session, sale.id)
        assert reloaded.status == SaleStatus.QUEUED
        assert reloaded.retry_count == 1
        assert reloaded.next_retry_at is not None
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('50')
        assert session.query(InventoryMovement).count() == 0
        assert session.query(Order).count() == 0

    def test_integration_allows_negative_stock(self, session, settings, integration, menu_item, inventory_item,
                                               recipe, make_sale):
        integration.allow_negative_stock = True
        session.commit()
        _set_stock(session, inventory_item.id, '50')
        sale = make_sale(
            items=[{'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': Decimal('0.3')}],
            status=SaleStatus.PROCESSING,
        )

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is True
        session.expire_all()
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('-10')
        assert result.low_stock_alerts == 1

    def test_sales_capability_disabled(self, session, settings, integration, menu_item, inventory_item,
                                       recipe, make_sale):
        integration.sync_sales_enabled = False
        session.commit()
        sale = make_sale(status=SaleStatus.PROCESSING)

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is False
        assert "Feature 'sales' is disabled" in result.error
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('5000')
        assert session.query(ProductMapping).count() == 0

    def test_sale_without_items_fails(self, session, settings, make_sale):
        sale = make_sale(items=[], status=SaleStatus.PROCESSING)

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is False
        assert result.error == 'No sale items found'
        assert _reload_sale(session, sale.id).retry_count == 1

    def test_exhausted_retries_dead_letter(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        _set_stock(session, inventory_item.id, '0')
        sale = make_sale(status=SaleStatus.PROCESSING, retry_count=2)

        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.should_retry is False
        reloaded = _reload_sale(session, sale.id)
        assert reloaded.status == SaleStatus.DEAD_LETTER
        assert reloaded.retry_count == 3

    def test_retry_does_not_deduct_twice(self, session, settings, tenant, branch, menu_item, inventory_item,
                                         recipe, make_sale):
        """First line deducts, second fails; the retry only touches the second line."""
        bread = InventoryItem(
            tenant_id=tenant.id, branch_id=branch.id, name='Pan', unit='pz',
            current_stock=Decimal('0'), minimum_stock=Decimal('0')
        )
        session.add(bread)
        session.commit()
        torta = MenuItem(tenant_id=tenant.id, branch_id=branch.id, name='Torta')
        session.add(torta)
        session.flush()
        torta_recipe = Recipe(tenant_id=tenant.id, menu_item_id=torta.id, yield_quantity=Decimal('1'))
        torta_recipe.ingredients = [RecipeIngredient(inventory_item_id=bread.id, quantity=Decimal('1'), unit='pz')]
        session.add(torta_recipe)
        session.commit()

        sale = make_sale(
            items=[
                {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1},
                {'product_code': 'TOR01', 'product_name': 'Torta', 'quantity': 1},
            ],
            status=SaleStatus.PROCESSING,
        )
        processor = SaleProcessor(session, settings)

        first = processor.process_sale(sale.id)
        assert first.success is False
        assert _reload_sale(session, sale.id).status == SaleStatus.QUEUED

        _set_stock(session, bread.id, '10')
        session.query(PosSale).filter(PosSale.id == sale.id).update(
            {PosSale.status: SaleStatus.PROCESSING}, synchronize_session=False
        )
        session.commit()

        second = processor.process_sale(sale.id)

        assert second.success is True
        session.expire_all()
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('4800')
        assert session.get(InventoryItem, bread.id).current_stock == Decimal('9')
        assert session.query(InventoryMovement).filter(
            InventoryMovement.item_id == inventory_item.id
        ).count() == 1
        # Each line counts once in the mapping registry, not once per attempt
        assert session.query(ProductMapping).filter(ProductMapping.pos_product_code == 'HAM01').one().times_sold == 1
        assert session.query(ProductMapping).filter(ProductMapping.pos_product_code == 'TOR01').one().times_sold == 1


class TestReconciliation:
    """Stock moved without a kardex row and could not be restored."""

    def test_critical_divergence_parks_sale(self, session, settings, menu_item, inventory_item, recipe,
                                            make_sale, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError('disk full')
        monkeypatch.setattr(recipe_deduction_service.inventory_movement_service, 'record_deduction', broken)
        monkeypatch.setattr(RecipeDeductionService, '_restore_stock', lambda self, *args: False)

        sale = make_sale(status=SaleStatus.PROCESSING)
        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is False
        assert result.requires_reconciliation is True
        assert result.error.startswith('CRITICAL: ')

        reloaded = _reload_sale(session, sale.id)
        assert reloaded.status == SaleStatus.DEAD_LETTER
        assert reloaded.requires_reconciliation is True
        assert reloaded.retry_count == 0

    def test_restored_movement_failure_is_retried(self, session, settings, menu_item, inventory_item, recipe,
                                                  make_sale, monkeypatch):
        def broken(*args, **kwargs):
            raise SQLAlchemyError('disk full')
        monkeypatch.setattr(recipe_deduction_service.inventory_movement_service, 'record_deduction', broken)

        sale = make_sale(status=SaleStatus.PROCESSING)
        result = SaleProcessor(session, settings).process_sale(sale.id)

        assert result.success is False
        assert result.should_retry is True
        reloaded = _reload_sale(session, sale.id)
        assert reloaded.status == SaleStatus.QUEUED
        assert reloaded.requires_reconciliation is False
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('5000')


class TestRunBatch:
    """One worker pass."""

    def test_batch_processes_queued_sales(self, session, settings, menu_item, inventory_item, recipe, make_sale):
        for _ in range(3):
            make_sale()
        make_sale(status=SaleStatus.PENDING)

        batch = SaleProcessor(session, settings).run_batch(10)

        assert batch.processed == 3
        assert batch.succeeded == 3
        assert batch.failed == 0
        session.expire_all()
        assert session.get(InventoryItem, inventory_item.id).current_stock == Decimal('4400')

        data = batch.to_dict()
        assert data['success'] is True
        assert data['processed'] == 3
        assert 'errors' not in data
        assert data['timestamp'].endswith('Z')

    def test_batch_reports_failures(self, session, settings, make_sale):
        make_sale(items=[])

        batch = SaleProcessor(session, settings).run_batch(10)

        assert batch.failed == 1
        assert batch.to_dict()['errors'][0].endswith('No sale items found')
