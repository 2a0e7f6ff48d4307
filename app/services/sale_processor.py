"""
Sale processor - runs one claimed POS sale through the pipeline.

    load sale -> capability gate -> product mapping -> recipe deduction
    -> low stock check -> order -> processed

Any exception is caught once here and turned into a job queue failure
(retry with backoff or dead letter). A CRITICAL stock/kardex divergence is
never retried: the sale is flagged requires_reconciliation and parked.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.blueprints.metrics import (
    observe_queue_stats,
    pos_ingredient_deductions_total,
    pos_reconciliation_required_total,
    pos_sale_processing_seconds,
    pos_sales_failed_total,
    pos_sales_processed_total,
    pos_stock_conflicts_total,
)
from app.exceptions import (
    CapabilityDisabledError, ConcurrencyConflictError, LedgerWriteError, NotFoundError,
    ReconciliationRequiredError, SaasError, SaleProcessingError
)
from app.models import PosFeature, PosSale
from app.services import low_stock_service
from app.services.cache_service import get_cache
from app.services.job_queue_service import JobQueueService
from app.services.order_service import OrderService
from app.services.pipeline_settings import PipelineSettings
from app.services.product_mapping_service import ProductMappingService, SaleScope
from app.services.recipe_deduction_service import RecipeDeductionService
from app.utils.formatters import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ProcessingResult:
    success: bool
    sale_id: int
    order_id: Optional[int] = None
    inventory_deducted: bool = False
    items_mapped: int = 0
    items_unmapped: int = 0
    inventory_movements: int = 0
    low_stock_alerts: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    should_retry: bool = False
    requires_reconciliation: bool = False


@dataclass
class BatchRunResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    recovered: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self):
        # Per-sale failures are reported in errors; the pass itself succeeded
        data = {
            'success': True,
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'recovered': self.recovered,
            'duration_ms': self.duration_ms,
            'timestamp': utcnow().isoformat() + 'Z',
        }
        if self.errors:
            data['errors'] = self.errors
        return data


class SaleProcessor:
    """Orchestrates mapping, deduction, low stock and order creation for one sale."""

    def __init__(
        self,
        session,
        settings: PipelineSettings = None,
        job_queue: JobQueueService = None,
        mapper: ProductMappingService = None,
        deduction: RecipeDeductionService = None,
        orders: OrderService = None,
    ):
        self.session = session
        self.settings = settings or PipelineSettings()
        self.job_queue = job_queue or JobQueueService(session, self.settings)
        self.mapper = mapper or ProductMappingService(session, self.settings)
        self.deduction = deduction or RecipeDeductionService(session, self.settings)
        self.orders = orders or OrderService(session, self.settings)

    def _allow_negative_stock(self, integration) -> bool:
        if integration.allow_negative_stock is not None:
            return bool(integration.allow_negative_stock)
        return self.settings.allow_negative_stock

    def _check_low_stock(self, sale: PosSale, item_ids: List[int]) -> int:
        """Low stock evaluation never fails a sale."""
        if not item_ids:
            return 0
        try:
            report = low_stock_service.check_after_deduction(self.session, sale.tenant_id, sale.branch_id, item_ids)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[SALE_PROCESSOR] Low stock check failed for sale {sale.id}: {e}")
            return 0
        return len(report.alerts)

    @staticmethod
    def _raise_deduction_failure(deduction):
        message = 'Inventory deduction failed: ' + '; '.join(deduction.errors)
        if deduction.conflicts:
            raise ConcurrencyConflictError(message)
        if deduction.ledger_failures:
            raise LedgerWriteError(message)
        raise SaleProcessingError(message)

    def _run(self, sale_id: int) -> ProcessingResult:
        sale = self.session.query(PosSale).filter(PosSale.id == sale_id).first()
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found")

        integration = sale.integration
        if integration is None or not integration.is_feature_enabled(PosFeature.SALES):
            raise CapabilityDisabledError(PosFeature.SALES, sale.integration_id)

        items = list(sale.items)
        if not items:
            raise SaleProcessingError('No sale items found')

        result = ProcessingResult(success=False, sale_id=sale.id)

        # 1. Map products
        scope = SaleScope(tenant_id=sale.tenant_id, branch_id=sale.branch_id, integration_id=sale.integration_id)
        # A retried sale was already counted in the mapping stats on its first attempt
        mapping = self.mapper.map_sale_items(scope, items, count_sales=not sale.retry_count)
        result.items_mapped = mapping.mapped
        result.items_unmapped = mapping.unmapped

        # 2. Deduct inventory
        deduction = self.deduction.deduce_for_sale(sale.id, allow_negative_stock=self._allow_negative_stock(integration))
        # Applied deductions are final; a retry skips the sale lines that already have movements
        self.session.commit()

        applied = sum(r.ingredients_deducted for r in deduction.results)
        pos_ingredient_deductions_total.inc(applied)
        if deduction.conflicts:
            pos_stock_conflicts_total.inc(deduction.conflicts)

        result.inventory_movements = applied
        result.inventory_deducted = applied > 0
        result.warnings.extend(deduction.warnings)

        if deduction.critical:
            raise ReconciliationRequiredError(
                f"Stock and kardex diverged for sale {sale.folio}: " + '; '.join(deduction.errors)
            )
        if not deduction.success:
            self._raise_deduction_failure(deduction)

        # 3. Low stock
        result.low_stock_alerts = self._check_low_stock(sale, deduction.affected_item_ids)

        # 4. Order
        result.order_id = self.orders.create_order_from_sale(sale.id, items)
        self.session.commit()

        # 5. Done
        if not self.job_queue.mark_processed(sale.id, result.order_id):
            raise SaleProcessingError(f"Could not mark sale {sale_id} as processed")

        result.success = True
        return result

    def process_sale(self, sale_id: int) -> ProcessingResult:
        """
        Process one sale end to end.

        Never raises: failures come back as ProcessingResult(success=False)
        after the sale has been handed back to the job queue.
        """
        started = time.monotonic()
        logger.info(f"[SALE_PROCESSOR] Processing sale {sale_id}")

        try:
            result = self._run(sale_id)
        except ReconciliationRequiredError as e:
            self.session.rollback()
            logger.critical(f"[SALE_PROCESSOR] {e.message}")
            pos_reconciliation_required_total.inc()
            pos_sales_failed_total.labels(outcome='dead_letter').inc()
            self.job_queue.dead_letter(sale_id, e.message, requires_reconciliation=True)
            return ProcessingResult(success=False, sale_id=sale_id, error=e.message, requires_reconciliation=True)
        except Exception as e:
            self.session.rollback()
            if isinstance(e, SaasError):
                message = e.message
                if e.retryable:
                    logger.warning(f"[SALE_PROCESSOR] Sale {sale_id} failed: {message}")
                else:
                    logger.error(f"[SALE_PROCESSOR] Sale {sale_id} rejected: {message}")
            else:
                message = str(e)
                logger.exception(f"[SALE_PROCESSOR] Error processing sale {sale_id}: {message}")
            return self._fail(sale_id, message)
        finally:
            pos_sale_processing_seconds.observe(time.monotonic() - started)

        pos_sales_processed_total.inc()
        logger.info(
            f"[SALE_PROCESSOR] Sale {sale_id} processed: order {result.order_id}, "
            f"{result.items_mapped} mapped / {result.items_unmapped} unmapped, "
            f"{result.inventory_movements} movements, {result.low_stock_alerts} low stock alerts"
        )
        return result

    def _fail(self, sale_id: int, message: str) -> ProcessingResult:
        info = self.job_queue.get_sale_info(sale_id)
        if info is None:
            return ProcessingResult(success=False, sale_id=sale_id, error=message)

        failure = self.job_queue.mark_failed(sale_id, message, info.retry_count)
        if not failure.applied:
            # Another worker owns the sale now (stale lease recovered, or it already finished)
            return ProcessingResult(success=False, sale_id=sale_id, error=message)
        pos_sales_failed_total.labels(outcome='retry' if failure.should_retry else 'dead_letter').inc()
        return ProcessingResult(success=False, sale_id=sale_id, error=message, should_retry=failure.should_retry)

    @classmethod
    def from_app(cls, app, session) -> 'SaleProcessor':
        """Wire a processor from the app's settings and cache."""
        settings = app.extensions['pipeline_settings']
        job_queue = JobQueueService(session, settings, cache=get_cache(app))
        return cls(session, settings, job_queue=job_queue)

    def run_batch(self, limit: int = None) -> BatchRunResult:
        """
        One worker pass: recover stale leases, claim a batch, process each sale.
        """
        started = time.monotonic()
        batch = BatchRunResult()

        batch.recovered = self.job_queue.recover_stale_sales(self.settings.stale_timeout_minutes)
        sale_ids = self.job_queue.claim_next_batch(limit or self.settings.batch_size)

        for sale_id in sale_ids:
            result = self.process_sale(sale_id)
            batch.processed += 1
            if result.success:
                batch.succeeded += 1
            else:
                batch.failed += 1
                batch.errors.append(f"Sale {sale_id}: {result.error}")

        batch.duration_ms = int((time.monotonic() - started) * 1000)
        observe_queue_stats(self.job_queue.get_queue_stats(use_cache=False))

        logger.info(
            f"[SALE_PROCESSOR] Batch done: {batch.processed} processed, {batch.succeeded} succeeded, "
            f"{batch.failed} failed, {batch.recovered} recovered in {batch.duration_ms}ms"
        )
        return batch
