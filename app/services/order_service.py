"""
Order service - materializes a processed POS sale as a restaurant order.

An order is created at most once per POS sale (restaurant_order.pos_sale_id
is unique). Every sale line becomes an order line, including lines whose
product has no menu mapping; those are flagged instead of dropped.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError

from app.exceptions import NotFoundError
from app.models import (
    Order, OrderItem, OrderStatus, OrderType, OrderSource, PosSale, PosSaleItem, PosSalePayment,
    RestaurantTable, UNMAPPED_LABEL
)
from app.services.pipeline_settings import PipelineSettings
from app.utils.formatters import fmt_money, utcnow
from app.utils.number_format import quantize_money, to_decimal

logger = logging.getLogger(__name__)

# POS sale-type vocabulary (Spanish synonyms, English, legacy numeric codes)
ORDER_TYPE_ALIASES: Dict[str, OrderType] = {
    'dine_in': OrderType.DINE_IN,
    'dine in': OrderType.DINE_IN,
    'mesa': OrderType.DINE_IN,
    'comedor': OrderType.DINE_IN,
    'local': OrderType.DINE_IN,
    'salon': OrderType.DINE_IN,
    'salón': OrderType.DINE_IN,
    '1': OrderType.DINE_IN,

    'takeout': OrderType.TAKEOUT,
    'take_out': OrderType.TAKEOUT,
    'para llevar': OrderType.TAKEOUT,
    'llevar': OrderType.TAKEOUT,
    'to go': OrderType.TAKEOUT,
    'pickup': OrderType.TAKEOUT,
    '2': OrderType.TAKEOUT,

    'delivery': OrderType.DELIVERY,
    'domicilio': OrderType.DELIVERY,
    'a domicilio': OrderType.DELIVERY,
    'envio': OrderType.DELIVERY,
    'envío': OrderType.DELIVERY,
    '3': OrderType.DELIVERY,

    'drive_thru': OrderType.DRIVE_THRU,
    'drive thru': OrderType.DRIVE_THRU,
    'drive-thru': OrderType.DRIVE_THRU,
    'drive': OrderType.DRIVE_THRU,
    'autoservicio': OrderType.DRIVE_THRU,
    '4': OrderType.DRIVE_THRU,

    'catering': OrderType.CATERING,
    'banquete': OrderType.CATERING,
    'evento': OrderType.CATERING,
    '5': OrderType.CATERING,
}

PAYMENT_METHOD_ALIASES: Dict[str, str] = {
    'efectivo': 'cash',
    'cash': 'cash',
    'tarjeta': 'card',
    'card': 'card',
    'credito': 'card',
    'crédito': 'card',
    'debito': 'card',
    'débito': 'card',
    'tarjeta de credito': 'card',
    'tarjeta de debito': 'card',
    'transferencia': 'transfer',
    'transfer': 'transfer',
    'spei': 'transfer',
}


def normalize_order_type(raw) -> OrderType:
    """
    Map a POS sale type to OrderType.

    Unknown or empty values fall back to DINE_IN; unknown ones are logged so
    the alias table can be extended.
    """
    if raw is None:
        return OrderType.DINE_IN
    key = str(raw).strip().lower()
    if not key:
        return OrderType.DINE_IN
    order_type = ORDER_TYPE_ALIASES.get(key)
    if order_type is None:
        logger.warning(f"[ORDER] Unknown POS sale type '{raw}', defaulting to dine_in")
        return OrderType.DINE_IN
    return order_type


def normalize_payment_method(raw) -> str:
    """POS payment method -> cash | card | transfer | other."""
    key = str(raw or '').strip().lower()
    return PAYMENT_METHOD_ALIASES.get(key, 'other')


def determine_payment_method(payments: Iterable[PosSalePayment]) -> str:
    """Method that covered the largest amount of the sale, or 'unknown' if there are no payments."""
    totals: Dict[str, Decimal] = {}
    for payment in payments or []:
        method = normalize_payment_method(payment.payment_method)
        totals[method] = totals.get(method, Decimal('0')) + to_decimal(payment.amount or 0)

    if not totals:
        return 'unknown'
    # max() keeps the first method on ties
    return max(totals.items(), key=lambda kv: kv[1])[0]


class OrderService:
    """Creates restaurant orders from POS sales."""

    normalize_order_type = staticmethod(normalize_order_type)
    determine_payment_method = staticmethod(determine_payment_method)

    def __init__(self, session, settings: PipelineSettings = None):
        self.session = session
        self.settings = settings or PipelineSettings()

    def generate_order_number(self, tenant_id: int, branch_id: int, day: Optional[date] = None) -> str:
        """Next {PREFIX}-YYYYMMDD-NNNN for the branch, counting from the last number issued that day."""
        day = day or utcnow().date()
        stem = f"{self.settings.order_number_prefix}-{day.strftime('%Y%m%d')}-"

        latest = self.session.query(Order.order_number).filter(
            Order.tenant_id == tenant_id,
            Order.branch_id == branch_id,
            Order.order_number.like(f"{stem}%")
        ).order_by(Order.order_number.desc()).first()

        sequence = 1
        if latest:
            suffix = latest.order_number[len(stem):]
            if suffix.isdigit():
                sequence = int(suffix) + 1

        return f"{stem}{sequence:04d}"

    def _find_table(self, branch_id: int, table_number) -> Optional[RestaurantTable]:
        if not table_number:
            return None
        return self.session.query(RestaurantTable).filter(
            RestaurantTable.branch_id == branch_id,
            RestaurantTable.table_number == str(table_number).strip(),
            RestaurantTable.is_active.is_(True)
        ).first()

    def get_order_for_sale(self, sale_id: int) -> Optional[Order]:
        return self.session.query(Order).filter(Order.pos_sale_id == sale_id).first()

    def _build_item(self, line: PosSaleItem) -> OrderItem:
        unmapped = not line.mapped_menu_item_id
        display_name = f"{UNMAPPED_LABEL} {line.product_name}" if unmapped else line.product_name
        return OrderItem(
            menu_item_id=line.mapped_menu_item_id,
            is_unmapped=unmapped,
            display_name=display_name,
            pos_product_code=line.product_code,
            pos_product_name=line.product_name,
            quantity=line.quantity,
            unit_price=line.unit_price or 0,
            subtotal=line.subtotal or 0,
            tax=line.tax_amount or 0,
            discount=line.discount_amount or 0,
            total=line.line_total,
            modifiers=line.modifiers or [],
            special_instructions=line.notes,
            status='completed',
        )

    def create_order_from_sale(self, sale_id: int, items: Iterable[PosSaleItem] = None) -> int:
        """
        Create the order for a POS sale and return its id.

        Calling it again for the same sale returns the existing order id.
        Flushes; the caller commits.

        Raises:
            NotFoundError: if the sale does not exist.
        """
        existing = self.get_order_for_sale(sale_id)
        if existing is not None:
            logger.info(f"[ORDER] Sale {sale_id} already has order {existing.order_number}")
            return existing.id

        sale = self.session.query(PosSale).filter(PosSale.id == sale_id).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found")

        lines = list(items) if items is not None else list(sale.items)
        table = self._find_table(sale.branch_id, sale.table_number)

        order = Order(
            tenant_id=sale.tenant_id,
            branch_id=sale.branch_id,
            order_number=self.generate_order_number(sale.tenant_id, sale.branch_id),
            pos_sale_id=sale.id,
            pos_folio=sale.folio,
            order_type=normalize_order_type(sale.sale_type),
            status=OrderStatus.COMPLETED,
            table_id=table.id if table else None,
            table_number=sale.table_number,
            guest_count=sale.guest_count or 1,
            subtotal=quantize_money(to_decimal(sale.subtotal or 0)),
            tax=quantize_money(to_decimal(sale.total_tax or 0)),
            discount=quantize_money(to_decimal(sale.total_discounts or 0)),
            tip=quantize_money(to_decimal(sale.total_tips or 0)),
            total=quantize_money(to_decimal(sale.total or 0)),
            currency=sale.currency or 'MXN',
            payment_method=determine_payment_method(sale.payments),
            payment_status='paid',
            source=OrderSource.SOFTRESTAURANT,
            notes=sale.notes,
            pos_customer_code=sale.customer_code,
            pos_user_code=sale.user_code,
            ordered_at=sale.opened_at,
            completed_at=sale.closed_at or utcnow(),
        )
        order.items = [self._build_item(line) for line in lines]
        order.unmapped_item_count = sum(1 for item in order.items if item.is_unmapped)

        try:
            with self.session.begin_nested():
                self.session.add(order)
        except IntegrityError:
            # Lost a race with another worker on pos_sale_id
            existing = self.get_order_for_sale(sale_id)
            if existing is None:
                raise
            logger.info(f"[ORDER] Concurrent order for sale {sale_id} detected, using {existing.order_number}")
            return existing.id

        logger.info(
            f"[ORDER] Created {order.order_number} for sale {sale.folio}: "
            f"{len(order.items)} items ({order.unmapped_item_count} unmapped), {fmt_money(order.total)}"
        )
        return order.id
