"""
Job queue service - POS sale processing state machine.

The pos_sale table is the queue. Workers coordinate only through
conditional UPDATEs on pos_sale.status, so any number of processes can
poll it without sharing memory:

    pending -> queued -> processing -> processed
                  ^           |
                  +-- retry --+--> dead_letter

processing is a lease: recover_stale_sales hands abandoned sales back.
Every method commits its own transition.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from app.models import PosSale, SaleStatus, TERMINAL_SALE_STATUSES
from app.services.cache_service import CacheService
from app.services.pipeline_settings import PipelineSettings
from app.utils.formatters import day_bounds, utcnow

logger = logging.getLogger(__name__)

STATS_CACHE_MODULE = 'sales_queue'

# Replayable by an operator
REPLAYABLE_STATUSES = (SaleStatus.DEAD_LETTER, SaleStatus.FAILED)


@dataclass
class QueueResult:
    success: bool
    sale_id: int
    error: Optional[str] = None


@dataclass
class FailureResult:
    should_retry: bool
    new_retry_count: int
    next_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    # False when the sale was no longer processing and nothing was written
    applied: bool = True


@dataclass
class QueueStats:
    pending: int = 0
    queued: int = 0
    processing: int = 0
    processed_today: int = 0
    failed_today: int = 0
    dead_letter: int = 0
    duplicate: int = 0

    def to_dict(self):
        return asdict(self)


@dataclass
class SaleInfo:
    retry_count: int
    status: SaleStatus
    tenant_id: int
    branch_id: int


class JobQueueService:
    """Queue operations over pos_sale."""

    def __init__(self, session, settings: PipelineSettings = None, cache: Optional[CacheService] = None):
        self.session = session
        self.settings = settings or PipelineSettings()
        self.cache = cache

    def _conditional_update(self, sale_id: int, expected_status: SaleStatus, values: dict) -> bool:
        """UPDATE ... WHERE id = :id AND status = :expected; True if this caller won the row."""
        values = dict(values)
        values[PosSale.updated_at] = utcnow()
        rows = self.session.query(PosSale).filter(
            PosSale.id == sale_id,
            PosSale.status == expected_status
        ).update(values, synchronize_session=False)
        return rows == 1

    def _invalidate_stats(self, sale_ids) -> None:
        """Drop cached queue stats for the tenants of these sales and the all-tenant view."""
        if self.cache is None or not sale_ids:
            return
        tenant_ids = {
            tenant_id for (tenant_id,) in
            self.session.query(PosSale.tenant_id).filter(PosSale.id.in_(list(sale_ids))).distinct()
        }
        for tenant_id in tenant_ids | {None}:
            self.cache.delete(tenant_id, STATS_CACHE_MODULE, 'stats')

    def compute_backoff_ms(self, retry_count: int) -> int:
        """min(2^retry_count * base, max) in milliseconds."""
        return min((2 ** retry_count) * self.settings.base_backoff_ms, self.settings.max_backoff_ms)

    def queue_for_processing(self, sale_id: int) -> QueueResult:
        """pending -> queued. Losing the race to another worker is a normal False, not an exception."""
        try:
            won = self._conditional_update(sale_id, SaleStatus.PENDING, {
                PosSale.status: SaleStatus.QUEUED,
                PosSale.next_retry_at: None,
            })
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Failed to queue sale {sale_id}: {e}")
            return QueueResult(success=False, sale_id=sale_id, error=str(e))

        if not won:
            return QueueResult(success=False, sale_id=sale_id, error='Sale is not in pending status')

        self._invalidate_stats([sale_id])
        logger.info(f"[JOB_QUEUE] Sale {sale_id} queued")
        return QueueResult(success=True, sale_id=sale_id)

    def claim_next_batch(self, limit: int = None) -> List[int]:
        """
        Claim up to ``limit`` due queued sales for this worker, oldest first.

        Candidates are read with FOR UPDATE SKIP LOCKED where the backend
        supports it; each is then flipped with a conditional update and only
        rows this call actually changed are returned, so two concurrent
        callers never get the same id.
        """
        limit = limit or self.settings.batch_size
        now = utcnow()

        try:
            candidates = self.session.query(PosSale.id).filter(
                PosSale.status == SaleStatus.QUEUED,
                or_(PosSale.next_retry_at.is_(None), PosSale.next_retry_at <= now)
            ).order_by(
                PosSale.created_at, PosSale.id
            ).limit(limit).with_for_update(skip_locked=True).all()

            claimed = []
            for (sale_id,) in candidates:
                if self._conditional_update(sale_id, SaleStatus.QUEUED, {
                    PosSale.status: SaleStatus.PROCESSING,
                    PosSale.processing_started_at: now,
                }):
                    claimed.append(sale_id)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Claim failed: {e}")
            return []

        if claimed:
            self._invalidate_stats(claimed)
            logger.info(f"[JOB_QUEUE] Claimed {len(claimed)} sales")
        return claimed

    def mark_processed(self, sale_id: int, order_id: int = None) -> bool:
        """-> processed (terminal). Sales already in a terminal state are left alone."""
        now = utcnow()
        try:
            rows = self.session.query(PosSale).filter(
                PosSale.id == sale_id,
                PosSale.status.notin_(TERMINAL_SALE_STATUSES)
            ).update({
                PosSale.status: SaleStatus.PROCESSED,
                PosSale.processed_at: now,
                PosSale.order_id: order_id,
                PosSale.error_message: None,
                PosSale.next_retry_at: None,
                PosSale.processing_started_at: None,
                PosSale.updated_at: now,
            }, synchronize_session=False)
            won = rows == 1
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Failed to mark sale {sale_id} processed: {e}")
            return False

        if not won:
            logger.warning(f"[JOB_QUEUE] Sale {sale_id} is already terminal; processed mark skipped")
            return False
        self._invalidate_stats([sale_id])
        logger.info(f"[JOB_QUEUE] Sale {sale_id} processed (order {order_id})")
        return True

    def mark_failed(self, sale_id: int, error_message: str, current_retry_count: int) -> FailureResult:
        """
        Record a failed attempt of a sale this worker holds in processing.

        new_retry_count = current + 1. Below max_retries the sale goes back
        to queued with exponential backoff; otherwise it is dead-lettered.
        A sale that already left processing (recovered as stale, or finished
        by another worker) is not touched and applied is False.
        """
        new_retry_count = (current_retry_count or 0) + 1
        should_retry = new_retry_count < self.settings.max_retries
        now = utcnow()

        if should_retry:
            next_retry_at = now + timedelta(milliseconds=self.compute_backoff_ms(new_retry_count))
            values = {
                PosSale.status: SaleStatus.QUEUED,
                PosSale.next_retry_at: next_retry_at,
            }
        else:
            next_retry_at = None
            values = {
                PosSale.status: SaleStatus.DEAD_LETTER,
                PosSale.next_retry_at: None,
            }
        values.update({
            PosSale.retry_count: new_retry_count,
            PosSale.error_message: error_message,
            PosSale.last_failed_at: now,
            PosSale.processing_started_at: None,
        })

        try:
            won = self._conditional_update(sale_id, SaleStatus.PROCESSING, values)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Failed to mark sale {sale_id} failed: {e}")
            return FailureResult(should_retry=False, new_retry_count=new_retry_count, error=str(e))

        if not won:
            logger.warning(f"[JOB_QUEUE] Sale {sale_id} is no longer processing; failure not recorded: {error_message}")
            return FailureResult(
                should_retry=False, new_retry_count=current_retry_count or 0,
                error='Sale is not in processing status', applied=False
            )
        self._invalidate_stats([sale_id])

        if should_retry:
            logger.warning(
                f"[JOB_QUEUE] Sale {sale_id} failed (attempt {new_retry_count}/{self.settings.max_retries}), "
                f"retry at {next_retry_at.isoformat()}: {error_message}"
            )
        else:
            logger.error(
                f"[JOB_QUEUE] Sale {sale_id} moved to dead letter after {new_retry_count} attempts: {error_message}"
            )
        return FailureResult(should_retry=should_retry, new_retry_count=new_retry_count, next_retry_at=next_retry_at)

    def dead_letter(self, sale_id: int, error_message: str, requires_reconciliation: bool = False) -> bool:
        """Park a sale immediately, skipping the retry budget. Terminal sales are left alone."""
        values = {
            PosSale.status: SaleStatus.DEAD_LETTER,
            PosSale.error_message: error_message,
            PosSale.last_failed_at: utcnow(),
            PosSale.next_retry_at: None,
            PosSale.processing_started_at: None,
            PosSale.updated_at: utcnow(),
        }
        if requires_reconciliation:
            values[PosSale.requires_reconciliation] = True
        try:
            rows = self.session.query(PosSale).filter(
                PosSale.id == sale_id,
                PosSale.status.notin_(TERMINAL_SALE_STATUSES)
            ).update(values, synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Failed to dead-letter sale {sale_id}: {e}")
            return False

        if rows != 1:
            logger.warning(f"[JOB_QUEUE] Sale {sale_id} is already terminal; dead letter skipped")
            return False
        self._invalidate_stats([sale_id])
        logger.error(f"[JOB_QUEUE] Sale {sale_id} dead-lettered: {error_message}")
        return True

    def recover_stale_sales(self, timeout_minutes: int = None) -> int:
        """
        Return sales whose processing lease expired to the queue.

        A stale lease counts as a failed attempt: retry_count is incremented
        and sales that exhausted max_retries are dead-lettered instead.
        """
        timeout_minutes = timeout_minutes or self.settings.stale_timeout_minutes
        now = utcnow()
        cutoff = now - timedelta(minutes=timeout_minutes)
        message = f"Processing timed out after {timeout_minutes} minutes"

        try:
            stale = self.session.query(PosSale.id, PosSale.retry_count).filter(
                PosSale.status == SaleStatus.PROCESSING,
                PosSale.processing_started_at < cutoff
            ).with_for_update(skip_locked=True).all()

            recovered = []
            for sale_id, retry_count in stale:
                new_retry_count = (retry_count or 0) + 1
                exhausted = new_retry_count >= self.settings.max_retries
                if self._conditional_update(sale_id, SaleStatus.PROCESSING, {
                    PosSale.status: SaleStatus.DEAD_LETTER if exhausted else SaleStatus.QUEUED,
                    PosSale.retry_count: new_retry_count,
                    PosSale.next_retry_at: None,
                    PosSale.processing_started_at: None,
                    PosSale.last_failed_at: now,
                    PosSale.error_message: message,
                }):
                    recovered.append(sale_id)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Stale recovery failed: {e}")
            return 0

        if recovered:
            self._invalidate_stats(recovered)
            logger.warning(f"[JOB_QUEUE] Recovered {len(recovered)} stale sales (timeout {timeout_minutes}m)")
        return len(recovered)

    def _load_stats(self, tenant_id: int = None) -> dict:
        start, end = day_bounds()

        query = self.session.query(PosSale.status, func.count(PosSale.id))
        if tenant_id:
            query = query.filter(PosSale.tenant_id == tenant_id)
        by_status = {status: count for status, count in query.group_by(PosSale.status).all()}

        processed_today = self.session.query(func.count(PosSale.id)).filter(
            PosSale.processed_at >= start, PosSale.processed_at < end
        )
        failed_today = self.session.query(func.count(PosSale.id)).filter(
            PosSale.last_failed_at >= start, PosSale.last_failed_at < end
        )
        if tenant_id:
            processed_today = processed_today.filter(PosSale.tenant_id == tenant_id)
            failed_today = failed_today.filter(PosSale.tenant_id == tenant_id)

        return QueueStats(
            pending=by_status.get(SaleStatus.PENDING, 0),
            queued=by_status.get(SaleStatus.QUEUED, 0),
            processing=by_status.get(SaleStatus.PROCESSING, 0),
            processed_today=processed_today.scalar() or 0,
            failed_today=failed_today.scalar() or 0,
            dead_letter=by_status.get(SaleStatus.DEAD_LETTER, 0),
            duplicate=by_status.get(SaleStatus.DUPLICATE, 0),
        ).to_dict()

    def get_queue_stats(self, tenant_id: int = None, use_cache: bool = True) -> QueueStats:
        """Counts per status (all tenants when tenant_id is None). Zeros if the store is unreachable."""
        try:
            if use_cache and self.cache is not None:
                data = self.cache.memoize(
                    tenant_id, STATS_CACHE_MODULE, 'stats',
                    lambda: self._load_stats(tenant_id),
                    ttl=self.settings.queue_stats_ttl
                )
            else:
                data = self._load_stats(tenant_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Stats query failed: {e}")
            return QueueStats()
        return QueueStats(**data)

    def get_sale_info(self, sale_id: int) -> Optional[SaleInfo]:
        row = self.session.query(
            PosSale.retry_count, PosSale.status, PosSale.tenant_id, PosSale.branch_id
        ).filter(PosSale.id == sale_id).first()
        if row is None:
            return None
        return SaleInfo(
            retry_count=row.retry_count or 0,
            status=row.status,
            tenant_id=row.tenant_id,
            branch_id=row.branch_id,
        )

    def replay_sale(self, sale_id: int) -> QueueResult:
        """Operator replay: dead_letter / failed -> queued with a fresh retry budget."""
        info = self.get_sale_info(sale_id)
        if info is None:
            return QueueResult(success=False, sale_id=sale_id, error='Sale not found')
        if info.status not in REPLAYABLE_STATUSES:
            return QueueResult(
                success=False, sale_id=sale_id,
                error=f"Sale is {info.status.value}; only dead_letter or failed sales can be replayed"
            )

        try:
            won = self._conditional_update(sale_id, info.status, {
                PosSale.status: SaleStatus.QUEUED,
                PosSale.retry_count: 0,
                PosSale.next_retry_at: None,
                PosSale.error_message: None,
            })
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"[JOB_QUEUE] Replay of sale {sale_id} failed: {e}")
            return QueueResult(success=False, sale_id=sale_id, error=str(e))

        if not won:
            return QueueResult(success=False, sale_id=sale_id, error='Sale status changed concurrently')
        self._invalidate_stats([sale_id])
        logger.info(f"[JOB_QUEUE] Sale {sale_id} replayed from {info.status.value}")
        return QueueResult(success=True, sale_id=sale_id)
