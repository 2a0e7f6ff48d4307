"""
Unit tests for order materialization from POS sales.
"""
from datetime import date
from decimal import Decimal

import pytest

from app.exceptions import NotFoundError
from app.models import Order, OrderItem, OrderType, PosSalePayment, RestaurantTable
from app.services.order_service import (
    OrderService, normalize_order_type, normalize_payment_method, determine_payment_method
)
from app.utils.formatters import utcnow


class TestNormalization:
    """POS vocabulary -> internal enums."""

    @pytest.mark.parametrize('raw, expected', [
        ('Mesa', OrderType.DINE_IN),
        ('comedor', OrderType.DINE_IN),
        ('1', OrderType.DINE_IN),
        ('Para llevar', OrderType.TAKEOUT),
        ('2', OrderType.TAKEOUT),
        ('Domicilio', OrderType.DELIVERY),
        ('3', OrderType.DELIVERY),
        ('drive-thru', OrderType.DRIVE_THRU),
        ('Banquete', OrderType.CATERING),
        (None, OrderType.DINE_IN),
        ('', OrderType.DINE_IN),
        ('mostrador especial', OrderType.DINE_IN),
    ])
    def test_order_type(self, raw, expected):
        assert normalize_order_type(raw) == expected

    @pytest.mark.parametrize('raw, expected', [
        ('Efectivo', 'cash'),
        ('TARJETA', 'card'),
        ('Débito', 'card'),
        ('SPEI', 'transfer'),
        ('vales', 'other'),
        (None, 'other'),
    ])
    def test_payment_method(self, raw, expected):
        assert normalize_payment_method(raw) == expected

    def test_dominant_payment_method(self):
        payments = [
            PosSalePayment(payment_method='Efectivo', amount=Decimal('50')),
            PosSalePayment(payment_method='Tarjeta', amount=Decimal('70')),
            PosSalePayment(payment_method='efectivo', amount=Decimal('30')),
        ]
        assert determine_payment_method(payments) == 'cash'

    def test_no_payments(self):
        assert determine_payment_method([]) == 'unknown'


class TestOrderNumbers:
    """{prefix}-YYYYMMDD-NNNN per branch and day."""

    def test_sequence(self, session, settings, tenant, branch, make_sale):
        service = OrderService(session, settings)
        first = make_sale()
        second = make_sale()

        first_order = session.get(Order, service.create_order_from_sale(first.id))
        second_order = session.get(Order, service.create_order_from_sale(second.id))

        today = utcnow().strftime('%Y%m%d')
        assert first_order.order_number == f'SR-{today}-0001'
        assert second_order.order_number == f'SR-{today}-0002'

    def test_explicit_day(self, session, settings, tenant, branch):
        number = OrderService(session, settings).generate_order_number(tenant.id, branch.id, date(2024, 3, 9))
        assert number == 'SR-20240309-0001'


class TestCreateOrderFromSale:
    """One order per sale, every line kept."""

    def test_creates_order_with_all_lines(self, session, settings, menu_item, make_sale):
        sale = make_sale(
            items=[
                {'product_code': 'HAM01', 'product_name': 'Hamburguesa', 'quantity': 2,
                 'mapped_menu_item_id': menu_item.id, 'tax_amount': Decimal('38.40')},
                {'product_code': 'REF01', 'product_name': 'Refresco', 'quantity': 1,
                 'unit_price': Decimal('35')},
            ],
            payments=[
                {'payment_method': 'Tarjeta', 'amount': Decimal('200')},
                {'payment_method': 'Efectivo', 'amount': Decimal('75')},
            ],
            sale_type='Para llevar',
            total=Decimal('275'),
            guest_count=None,
        )

        order = session.get(Order, OrderService(session, settings).create_order_from_sale(sale.id))

        assert order.pos_sale_id == sale.id
        assert order.pos_folio == sale.folio
        assert order.order_type == OrderType.TAKEOUT
        assert order.payment_method == 'card'
        assert order.total == Decimal('275.00')
        assert order.guest_count == 1
        assert order.unmapped_item_count == 1
        assert len(order.items) == 2

        mapped, unmapped = order.items
        assert mapped.is_unmapped is False
        assert mapped.display_name == 'Hamburguesa'
        assert mapped.total == Decimal('278.40')
        assert unmapped.is_unmapped is True
        assert unmapped.menu_item_id is None
        assert unmapped.display_name == '[SIN MAPEO] Refresco'
        assert unmapped.pos_product_code == 'REF01'

    def test_second_call_returns_same_order(self, session, settings, make_sale):
        sale = make_sale()
        service = OrderService(session, settings)

        first = service.create_order_from_sale(sale.id)
        session.commit()
        second = service.create_order_from_sale(sale.id)

        assert first == second
        assert session.query(Order).filter(Order.pos_sale_id == sale.id).count() == 1
        assert session.query(OrderItem).count() == 1

    def test_links_known_table(self, session, settings, tenant, branch, make_sale):
        table = RestaurantTable(tenant_id=tenant.id, branch_id=branch.id, table_number='5')
        session.add(table)
        session.commit()
        sale = make_sale(table_number='5')

        order = session.get(Order, OrderService(session, settings).create_order_from_sale(sale.id))

        assert order.table_id == table.id
        assert order.table_number == '5'

    def test_unknown_table_kept_as_text(self, session, settings, make_sale):
        sale = make_sale(table_number='99')
        order = session.get(Order, OrderService(session, settings).create_order_from_sale(sale.id))

        assert order.table_id is None
        assert order.table_number == '99'

    def test_missing_sale(self, session, settings):
        with pytest.raises(NotFoundError):
            OrderService(session, settings).create_order_from_sale(999999)
