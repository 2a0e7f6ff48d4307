import itertools
import uuid
from decimal import Decimal

import pytest

from app import create_app, database
from app.database import Base
from app.models import (
    Tenant, Branch, PosIntegration, MenuItem, Recipe, RecipeIngredient, InventoryItem,
    PosSale, PosSaleItem, PosSalePayment, SaleStatus
)
from app.services.pipeline_settings import PipelineSettings


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing (in-memory SQLite, cache off)."""
    return create_app('config.TestConfig')


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Fresh schema per test; yields the scoped session."""
    with app.app_context():
        database.create_all()
        session = database.get_session()
        yield session
        session.rollback()
        session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture(scope='function')
def settings():
    """Pipeline settings matching TestConfig."""
    return PipelineSettings(max_retries=3, base_backoff_ms=1000, max_backoff_ms=3_600_000)


@pytest.fixture(scope='function')
def tenant(session):
    """Create test tenant."""
    suffix = str(uuid.uuid4())[:8]
    tenant = Tenant(slug=f'test-tenant-{suffix}', name=f'Test Tenant {suffix}', active=True)
    session.add(tenant)
    session.commit()
    return tenant


@pytest.fixture(scope='function')
def branch(session, tenant):
    """Create test branch."""
    branch = Branch(tenant_id=tenant.id, name='Sucursal Centro')
    session.add(branch)
    session.commit()
    return branch


@pytest.fixture(scope='function')
def integration(session, tenant, branch):
    """POS connection cleared for sales sync."""
    integration = PosIntegration(
        tenant_id=tenant.id,
        branch_id=branch.id,
        provider='softrestaurant',
        name='Caja 1',
        sync_sales_enabled=True,
        sync_inventory_enabled=True,
    )
    session.add(integration)
    session.commit()
    return integration


@pytest.fixture(scope='function')
def menu_item(session, tenant, branch):
    """Create test menu item."""
    item = MenuItem(tenant_id=tenant.id, branch_id=branch.id, name='Hamburguesa', price=Decimal('120.00'))
    session.add(item)
    session.commit()
    return item


@pytest.fixture(scope='function')
def inventory_item(session, tenant, branch):
    """Ground beef: 5000 g on hand, 1000 g minimum."""
    item = InventoryItem(
        tenant_id=tenant.id,
        branch_id=branch.id,
        name='Carne molida',
        sku='CARNE-001',
        unit='g',
        current_stock=Decimal('5000'),
        minimum_stock=Decimal('1000'),
        unit_cost=Decimal('0.15'),
    )
    session.add(item)
    session.commit()
    return item


@pytest.fixture(scope='function')
def recipe(session, tenant, menu_item, inventory_item):
    """One portion uses 200 g of ground beef."""
    recipe = Recipe(tenant_id=tenant.id, menu_item_id=menu_item.id, yield_quantity=Decimal('1'))
    recipe.ingredients = [
        RecipeIngredient(inventory_item_id=inventory_item.id, quantity=Decimal('200'), unit='g', display_order=1)
    ]
    session.add(recipe)
    session.commit()
    return recipe


@pytest.fixture(scope='function')
def make_sale(session, tenant, branch, integration):
    """
    Factory for POS sales.

    items / payments are lists of dicts with PosSaleItem / PosSalePayment
    columns; sensible defaults sell one Hamburguesa paid in cash.
    """
    folios = itertools.count(1)

    def _make(items=None, payments=None, status=SaleStatus.QUEUED, **kwargs):
        if items is None:
            items = [{'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 1}]
        if payments is None:
            payments = [{'payment_method': 'Efectivo', 'amount': Decimal('120')}]

        values = {
            'tenant_id': tenant.id,
            'branch_id': branch.id,
            'integration_id': integration.id,
            'folio': f'F-{next(folios):05d}-{uuid.uuid4().hex[:6]}',
            'sale_type': 'mesa',
            'table_number': '5',
            'guest_count': 2,
            'subtotal': Decimal('120'),
            'total': Decimal('120'),
            'status': status,
        }
        values.update(kwargs)
        sale = PosSale(**values)

        for line in items:
            line = dict(line)
            line.setdefault('unit_price', Decimal('120'))
            line.setdefault('subtotal', Decimal(str(line['quantity'])) * line['unit_price'])
            sale.items.append(PosSaleItem(**line))
        for payment in payments:
            sale.payments.append(PosSalePayment(**payment))

        session.add(sale)
        session.commit()
        return sale

    return _make
