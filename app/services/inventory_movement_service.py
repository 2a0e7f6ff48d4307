"""
Inventory movement (kardex) service.

Append-only ledger of every stock change. Each record carries the before /
after snapshot and a reference back to whatever caused it (a POS sale, a
manual adjustment). Nothing here updates or deletes a movement.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, case

from app.models import InventoryMovement, MovementType, MovementReferenceType, INBOUND_MOVEMENT_TYPES
from app.utils.number_format import to_decimal, quantize_qty, quantize_money
from app.utils.formatters import utcnow, fmt_qty

logger = logging.getLogger(__name__)


def _total_cost(quantity: Decimal, unit_cost) -> Optional[Decimal]:
    if unit_cost is None:
        return None
    return quantize_money(abs(quantity) * to_decimal(unit_cost))


def record_deduction(
    session,
    tenant_id: int,
    item_id: int,
    quantity,
    previous_stock,
    new_stock,
    branch_id: int = None,
    unit: str = None,
    unit_cost=None,
    movement_type: MovementType = MovementType.SALE,
    reference_type: str = MovementReferenceType.POS_SALE,
    reference_id: int = None,
    sale_item_id: int = None,
    menu_item_id: int = None,
    recipe_ingredient_id: int = None,
    notes: str = None,
    performed_by: str = None,
) -> InventoryMovement:
    """
    Append a stock-out movement.

    quantity may be passed positive or negative; it is always stored negative.
    The movement is flushed (so a failed INSERT surfaces here) but not
    committed - the caller owns the transaction.

    Returns:
        The flushed InventoryMovement.
    """
    qty = quantize_qty(-abs(to_decimal(quantity)))

    movement = InventoryMovement(
        tenant_id=tenant_id,
        branch_id=branch_id,
        item_id=item_id,
        movement_type=movement_type,
        quantity=qty,
        previous_stock=quantize_qty(to_decimal(previous_stock)),
        new_stock=quantize_qty(to_decimal(new_stock)),
        unit=unit,
        unit_cost=unit_cost,
        total_cost=_total_cost(qty, unit_cost),
        reference_type=reference_type,
        reference_id=reference_id,
        sale_item_id=sale_item_id,
        menu_item_id=menu_item_id,
        recipe_ingredient_id=recipe_ingredient_id,
        notes=notes,
        performed_by=performed_by,
        performed_at=utcnow(),
    )
    session.add(movement)
    session.flush()

    logger.debug(
        f"[LEDGER] Deduction item={item_id} qty={fmt_qty(qty)} "
        f"({fmt_qty(previous_stock)} -> {fmt_qty(new_stock)}) ref={reference_type}:{reference_id}"
    )
    return movement


def record_adjustment(
    session,
    tenant_id: int,
    item_id: int,
    quantity,
    previous_stock,
    new_stock,
    branch_id: int = None,
    unit: str = None,
    unit_cost=None,
    movement_type: MovementType = MovementType.ADJUSTMENT,
    reason: str = None,
    reference_type: str = MovementReferenceType.MANUAL,
    reference_id: int = None,
    notes: str = None,
    performed_by: str = None,
) -> InventoryMovement:
    """
    Append a signed movement (manual adjustment, count correction, waste...).

    Unlike record_deduction the sign of quantity is kept, except that types
    that can only go one way (purchase in, waste out) are forced to it.
    """
    qty = to_decimal(quantity)
    if movement_type in INBOUND_MOVEMENT_TYPES:
        qty = abs(qty)
    elif movement_type != MovementType.ADJUSTMENT:
        qty = -abs(qty)
    qty = quantize_qty(qty)

    movement = InventoryMovement(
        tenant_id=tenant_id,
        branch_id=branch_id,
        item_id=item_id,
        movement_type=movement_type,
        quantity=qty,
        previous_stock=quantize_qty(to_decimal(previous_stock)),
        new_stock=quantize_qty(to_decimal(new_stock)),
        unit=unit,
        unit_cost=unit_cost,
        total_cost=_total_cost(qty, unit_cost),
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        performed_by=performed_by,
        performed_at=utcnow(),
    )
    session.add(movement)
    session.flush()

    logger.info(
        f"[LEDGER] {movement_type.value} item={item_id} qty={fmt_qty(qty)} "
        f"({fmt_qty(previous_stock)} -> {fmt_qty(new_stock)})"
    )
    return movement


def has_sale_item_movement(session, sale_id: int, sale_item_id: int, recipe_ingredient_id: int) -> bool:
    """Whether a POS sale line already deducted this recipe ingredient."""
    return session.query(InventoryMovement.id).filter(
        InventoryMovement.reference_type == MovementReferenceType.POS_SALE,
        InventoryMovement.reference_id == sale_id,
        InventoryMovement.sale_item_id == sale_item_id,
        InventoryMovement.recipe_ingredient_id == recipe_ingredient_id,
    ).first() is not None


def get_movement_history(
    session,
    tenant_id: int,
    item_id: int = None,
    branch_id: int = None,
    start: datetime = None,
    end: datetime = None,
    movement_type: MovementType = None,
    reference_type: str = None,
    reference_id: int = None,
    limit: int = 100,
    offset: int = 0,
) -> List[InventoryMovement]:
    """
    Movement history for a tenant with optional filters, newest first.

    Args:
        start: inclusive lower bound on performed_at
        end: exclusive upper bound on performed_at
    """
    query = session.query(InventoryMovement).filter(
        InventoryMovement.tenant_id == tenant_id
    )

    if item_id:
        query = query.filter(InventoryMovement.item_id == item_id)
    if branch_id:
        query = query.filter(InventoryMovement.branch_id == branch_id)
    if start:
        query = query.filter(InventoryMovement.performed_at >= start)
    if end:
        query = query.filter(InventoryMovement.performed_at < end)
    if movement_type:
        query = query.filter(InventoryMovement.movement_type == movement_type)
    if reference_type:
        query = query.filter(InventoryMovement.reference_type == reference_type)
    if reference_id:
        query = query.filter(InventoryMovement.reference_id == reference_id)

    query = query.order_by(InventoryMovement.performed_at.desc(), InventoryMovement.id.desc())
    return query.limit(limit).offset(offset).all()


def get_movement_totals(
    session,
    tenant_id: int,
    start: datetime,
    end: datetime,
    branch_id: int = None,
    item_id: int = None,
) -> Dict[str, Decimal]:
    """
    Aggregate stock in / out over [start, end) for analytics.

    Returns:
        dict with total_in, total_out (positive), net, total_cost_in,
        total_cost_out and the movement count.
    """
    qty_in = func.coalesce(func.sum(case((InventoryMovement.quantity > 0, InventoryMovement.quantity), else_=0)), 0)
    qty_out = func.coalesce(func.sum(case((InventoryMovement.quantity < 0, InventoryMovement.quantity), else_=0)), 0)
    cost_in = func.coalesce(func.sum(case((InventoryMovement.quantity > 0, InventoryMovement.total_cost), else_=0)), 0)
    cost_out = func.coalesce(func.sum(case((InventoryMovement.quantity < 0, InventoryMovement.total_cost), else_=0)), 0)

    query = session.query(
        qty_in.label('total_in'),
        qty_out.label('total_out'),
        cost_in.label('total_cost_in'),
        cost_out.label('total_cost_out'),
        func.count(InventoryMovement.id).label('movements'),
    ).filter(
        InventoryMovement.tenant_id == tenant_id,
        InventoryMovement.performed_at >= start,
        InventoryMovement.performed_at < end,
    )
    if branch_id:
        query = query.filter(InventoryMovement.branch_id == branch_id)
    if item_id:
        query = query.filter(InventoryMovement.item_id == item_id)

    row = query.one()
    total_in = quantize_qty(to_decimal(row.total_in or 0))
    total_out = quantize_qty(abs(to_decimal(row.total_out or 0)))

    return {
        'total_in': total_in,
        'total_out': total_out,
        'net': total_in - total_out,
        'total_cost_in': quantize_money(to_decimal(row.total_cost_in or 0)),
        'total_cost_out': quantize_money(to_decimal(row.total_cost_out or 0)),
        'movements': int(row.movements or 0),
    }
