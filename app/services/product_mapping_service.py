"""
Product mapping service - links POS product codes to menu items.

Resolution order for a code: active mapping, case-insensitive exact name
match, contains match, and finally an unmapped registry row that waits for
an operator. A null menu item id is an expected answer, never an error.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.exceptions import BusinessLogicError, NotFoundError
from app.models import MenuItem, MappingConfidence, PosSaleItem, ProductMapping
from app.services.pipeline_settings import PipelineSettings
from app.utils.formatters import utcnow

logger = logging.getLogger(__name__)

UNMAPPED_NOTE = 'Awaiting manual mapping'


@dataclass(frozen=True)
class SaleScope:
    """Tenant / branch / POS connection a sale belongs to."""
    tenant_id: int
    branch_id: int
    integration_id: int


@dataclass
class MappingSummary:
    mapped: int = 0
    unmapped: int = 0


def _escape_like(value: str) -> str:
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class ProductMappingService:
    """POS product code -> menu item resolution with a self-growing registry."""

    def __init__(self, session, settings: PipelineSettings = None):
        self.session = session
        self.settings = settings or PipelineSettings()

    @property
    def contains_match_confidence(self) -> MappingConfidence:
        try:
            return MappingConfidence(self.settings.fuzzy_match_confidence)
        except ValueError:
            return MappingConfidence.HIGH

    def _get_mapping(self, scope: SaleScope, product_code: str) -> Optional[ProductMapping]:
        return self.session.query(ProductMapping).filter(
            ProductMapping.tenant_id == scope.tenant_id,
            ProductMapping.branch_id == scope.branch_id,
            ProductMapping.integration_id == scope.integration_id,
            ProductMapping.pos_product_code == product_code
        ).first()

    def _menu_items(self, scope: SaleScope):
        return self.session.query(MenuItem).filter(
            MenuItem.tenant_id == scope.tenant_id,
            MenuItem.branch_id == scope.branch_id,
            MenuItem.is_active.is_(True)
        )

    def _fuzzy_match(self, scope: SaleScope, product_name: str):
        """Return (menu_item, confidence) or (None, None)."""
        clean = (product_name or '').strip()
        if not clean:
            return None, None

        exact = self._menu_items(scope).filter(
            func.lower(MenuItem.name) == clean.lower()
        ).order_by(MenuItem.id).first()
        if exact:
            return exact, MappingConfidence.HIGH

        partial = self._menu_items(scope).filter(
            MenuItem.name.ilike(f"%{_escape_like(clean)}%", escape='\\')
        ).order_by(MenuItem.id).first()
        if partial:
            return partial, self.contains_match_confidence

        return None, None

    @staticmethod
    def _record_sale(mapping: ProductMapping, now) -> None:
        mapping.times_sold = (mapping.times_sold or 0) + 1
        mapping.last_sold_at = now

    def find_or_create_mapping(
        self, scope: SaleScope, product_code: str, product_name: str, count_sale: bool = True
    ) -> Optional[int]:
        """
        Resolve a POS product code to a menu item id.

        With count_sale (the default) times_sold / last_sold_at are bumped on
        the mapping row it ends up on. Changes are flushed, not committed.

        Returns:
            menu item id, or None when the product needs manual review.
        """
        now = utcnow()
        mapping = self._get_mapping(scope, product_code)

        # 1. Active mapping
        if mapping is not None and mapping.is_active and mapping.menu_item_id:
            if count_sale:
                self._record_sale(mapping, now)
            self.session.flush()
            return mapping.menu_item_id

        # 2-3. Name match
        menu_item, confidence = self._fuzzy_match(scope, product_name)
        if menu_item is not None:
            if mapping is None:
                mapping = ProductMapping(
                    tenant_id=scope.tenant_id,
                    branch_id=scope.branch_id,
                    integration_id=scope.integration_id,
                    pos_product_code=product_code,
                    times_sold=0,
                )
                self.session.add(mapping)
            mapping.pos_product_name = product_name
            mapping.menu_item_id = menu_item.id
            mapping.confidence = confidence
            mapping.is_active = True
            if count_sale:
                self._record_sale(mapping, now)
            mapping.notes = None
            self.session.flush()
            logger.info(
                f"[PRODUCT_MAPPING] {product_code} '{product_name}' -> menu item {menu_item.id} "
                f"'{menu_item.name}' ({confidence.value})"
            )
            return menu_item.id

        # 4. Unmapped registry entry
        if mapping is None:
            mapping = ProductMapping(
                tenant_id=scope.tenant_id,
                branch_id=scope.branch_id,
                integration_id=scope.integration_id,
                pos_product_code=product_code,
                pos_product_name=product_name,
                menu_item_id=None,
                confidence=MappingConfidence.LOW,
                is_active=False,
                times_sold=1 if count_sale else 0,
                last_sold_at=now if count_sale else None,
                notes=UNMAPPED_NOTE,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(mapping)
            except IntegrityError:
                # Another worker registered the same code first
                mapping = self._get_mapping(scope, product_code)
                if count_sale:
                    self._record_sale(mapping, now)
            logger.info(f"[PRODUCT_MAPPING] Unmapped product {product_code} '{product_name}' registered")
        else:
            if count_sale:
                self._record_sale(mapping, now)
            if product_name and not mapping.pos_product_name:
                mapping.pos_product_name = product_name

        self.session.flush()
        return None

    def map_sale_items(
        self, scope: SaleScope, items: Iterable[PosSaleItem], count_sales: bool = True
    ) -> MappingSummary:
        """
        Resolve every sale line and store the result on mapped_menu_item_id.

        Lines mapped by an earlier attempt of the same sale keep their menu
        item and are not counted again. Pass count_sales=False on retries so
        unmapped lines are re-resolved without bumping their stats twice.
        """
        summary = MappingSummary()
        for item in items:
            if item.mapped_menu_item_id:
                summary.mapped += 1
                continue
            menu_item_id = self.find_or_create_mapping(
                scope, item.product_code, item.product_name, count_sale=count_sales
            )
            if menu_item_id:
                item.mapped_menu_item_id = menu_item_id
                summary.mapped += 1
            else:
                summary.unmapped += 1

        self.session.flush()
        logger.info(f"[PRODUCT_MAPPING] Mapped {summary.mapped} items, {summary.unmapped} unmapped")
        return summary

    def list_unmapped(self, scope: SaleScope, limit: int = 100) -> List[ProductMapping]:
        """Unmapped codes for a POS connection, best sellers first."""
        return self.session.query(ProductMapping).filter(
            ProductMapping.tenant_id == scope.tenant_id,
            ProductMapping.branch_id == scope.branch_id,
            ProductMapping.integration_id == scope.integration_id,
            ProductMapping.menu_item_id.is_(None)
        ).order_by(ProductMapping.times_sold.desc(), ProductMapping.id).limit(limit).all()

    def resolve_mapping(self, tenant_id: int, mapping_id: int, menu_item_id: int) -> ProductMapping:
        """Operator resolution: point a registry row at a menu item with manual confidence."""
        mapping = self.session.query(ProductMapping).filter(
            ProductMapping.id == mapping_id,
            ProductMapping.tenant_id == tenant_id
        ).first()
        if mapping is None:
            raise NotFoundError(f"Product mapping {mapping_id} not found")

        menu_item = self.session.query(MenuItem).filter(
            MenuItem.id == menu_item_id,
            MenuItem.tenant_id == tenant_id
        ).first()
        if menu_item is None:
            raise NotFoundError(f"Menu item {menu_item_id} not found")
        if menu_item.branch_id != mapping.branch_id:
            raise BusinessLogicError('Menu item belongs to a different branch')

        mapping.menu_item_id = menu_item.id
        mapping.confidence = MappingConfidence.MANUAL
        mapping.is_active = True
        mapping.notes = None
        self.session.flush()

        logger.info(f"[PRODUCT_MAPPING] Mapping {mapping_id} resolved manually -> menu item {menu_item_id}")
        return mapping
