"""
Low stock evaluation.

Pure classification over (current_stock, minimum_stock) plus two query
helpers: a cheap targeted check after a deduction batch and a full branch
scan for scheduled audits. Alerts are derived on the fly and only logged.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import or_

from app.models import InventoryItem
from app.utils.number_format import to_decimal
from app.utils.formatters import fmt_qty

logger = logging.getLogger(__name__)

CRITICAL = 'critical'
WARNING = 'warning'
LOW = 'low'

CRITICAL_THRESHOLD = Decimal('50')
WARNING_THRESHOLD = Decimal('75')

_SEVERITY_RANK = {CRITICAL: 0, WARNING: 1, LOW: 2}


@dataclass
class LowStockAlert:
    item_id: int
    item_name: str
    current_stock: Decimal
    minimum_stock: Decimal
    unit: Optional[str]
    severity: str
    percentage_remaining: Optional[Decimal]

    def to_dict(self):
        return {
            'item_id': self.item_id,
            'item_name': self.item_name,
            'current_stock': str(self.current_stock),
            'minimum_stock': str(self.minimum_stock),
            'unit': self.unit,
            'severity': self.severity,
            'percentage_remaining': (
                str(self.percentage_remaining) if self.percentage_remaining is not None else None
            ),
        }


@dataclass
class LowStockReport:
    items_checked: int = 0
    alerts: List[LowStockAlert] = field(default_factory=list)

    @property
    def critical_count(self) -> int:
        return sum(1 for a in self.alerts if a.severity == CRITICAL)

    @property
    def warning_count(self) -> int:
        return sum(1 for a in self.alerts if a.severity == WARNING)

    @property
    def low_count(self) -> int:
        return sum(1 for a in self.alerts if a.severity == LOW)


def percentage_remaining(current_stock, minimum_stock) -> Optional[Decimal]:
    """current / minimum * 100, or None when minimum is not positive."""
    current = to_decimal(current_stock)
    minimum = to_decimal(minimum_stock)
    if minimum <= 0:
        return None
    return (current / minimum * 100).quantize(Decimal('0.01'))


def classify_stock_level(current_stock, minimum_stock) -> Optional[str]:
    """
    Severity for one item, or None when it is above its minimum.

    Thresholds over current/minimum: < 50% critical, < 75% warning,
    otherwise low. A minimum of zero or less is always critical, whatever
    the current stock.
    """
    current = to_decimal(current_stock)
    minimum = to_decimal(minimum_stock)

    if minimum <= 0:
        return CRITICAL
    if current > minimum:
        return None

    pct = percentage_remaining(current, minimum)
    if pct < CRITICAL_THRESHOLD:
        return CRITICAL
    if pct < WARNING_THRESHOLD:
        return WARNING
    return LOW


def evaluate_items(items: Iterable[InventoryItem]) -> LowStockReport:
    """Classify a set of inventory items; alerts come back most severe first."""
    report = LowStockReport()
    for item in items:
        report.items_checked += 1
        severity = classify_stock_level(item.current_stock, item.minimum_stock)
        if severity is None:
            continue
        report.alerts.append(LowStockAlert(
            item_id=item.id,
            item_name=item.name,
            current_stock=to_decimal(item.current_stock),
            minimum_stock=to_decimal(item.minimum_stock),
            unit=item.unit,
            severity=severity,
            percentage_remaining=percentage_remaining(item.current_stock, item.minimum_stock),
        ))

    report.alerts.sort(key=lambda a: (_SEVERITY_RANK[a.severity], a.percentage_remaining or Decimal('0')))
    return report


def _emit(report: LowStockReport, scope: str) -> None:
    for alert in report.alerts:
        log = logger.warning if alert.severity == CRITICAL else logger.info
        log(
            f"[LOW_STOCK] {alert.severity.upper()} {alert.item_name}: "
            f"{fmt_qty(alert.current_stock)} / min {fmt_qty(alert.minimum_stock)} {alert.unit or ''} ({scope})"
        )


def check_after_deduction(session, tenant_id: int, branch_id: int, item_ids: Iterable[int]) -> LowStockReport:
    """Targeted check over the inventory items a deduction batch just touched."""
    ids = sorted({int(i) for i in item_ids if i})
    if not ids:
        return LowStockReport()

    items = session.query(InventoryItem).filter(
        InventoryItem.tenant_id == tenant_id,
        InventoryItem.id.in_(ids),
        or_(InventoryItem.branch_id == branch_id, InventoryItem.branch_id.is_(None)),
    ).populate_existing().all()

    report = evaluate_items(items)
    _emit(report, f"after deduction, branch {branch_id}")
    logger.info(
        f"[LOW_STOCK] Checked {report.items_checked} items: "
        f"{report.critical_count} critical, {report.warning_count} warning, {report.low_count} low"
    )
    return report


def check_branch(session, tenant_id: int, branch_id: int) -> LowStockReport:
    """Full scan of a branch's active inventory (scheduled audit)."""
    items = session.query(InventoryItem).filter(
        InventoryItem.tenant_id == tenant_id,
        or_(InventoryItem.branch_id == branch_id, InventoryItem.branch_id.is_(None)),
        InventoryItem.is_active.is_(True),
        InventoryItem.deleted_at.is_(None),
    ).order_by(InventoryItem.name).all()

    report = evaluate_items(items)
    _emit(report, f"branch audit {branch_id}")
    return report
