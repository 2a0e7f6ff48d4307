"""
Internal sales pipeline API - called by the scheduler, never by browsers.

All routes require the INTERNAL_API_KEY bearer token.
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from app.blueprints.metrics import observe_queue_stats
from app.database import get_session
from app.decorators.permissions import require_internal_key
from app.services.cache_service import get_cache
from app.services.job_queue_service import JobQueueService
from app.services.sale_processor import SaleProcessor

logger = logging.getLogger(__name__)

internal_bp = Blueprint('internal', __name__, url_prefix='/internal/sales')

MAX_BATCH = 100


def _job_queue(db_session) -> JobQueueService:
    return JobQueueService(db_session, current_app.extensions['pipeline_settings'], cache=get_cache())


def _int_arg(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@internal_bp.route('/process', methods=['POST'])
@require_internal_key
def process():
    """Run one worker pass (recover stale, claim, process)."""
    payload = request.get_json(silent=True) or {}
    limit = _int_arg(payload.get('max_sales', payload.get('limit')))
    if limit is not None:
        limit = max(1, min(limit, MAX_BATCH))

    db_session = get_session()
    processor = SaleProcessor.from_app(current_app, db_session)
    try:
        batch = processor.run_batch(limit)
    except Exception as e:
        db_session.rollback()
        logger.exception(f"[SALE_PROCESSOR] Batch run failed: {e}")
        return jsonify({'success': False, 'error': type(e).__name__, 'message': str(e)}), 500

    return jsonify(batch.to_dict())


@internal_bp.route('/stats', methods=['GET'])
@require_internal_key
def stats():
    """Queue counts, optionally for one tenant (?tenant_id=)."""
    tenant_id = _int_arg(request.args.get('tenant_id'))
    queue_stats = _job_queue(get_session()).get_queue_stats(tenant_id)
    if tenant_id is None:
        observe_queue_stats(queue_stats)
    return jsonify({'success': True, 'tenant_id': tenant_id, 'stats': queue_stats.to_dict()})


@internal_bp.route('/<int:sale_id>/queue', methods=['POST'])
@require_internal_key
def queue(sale_id):
    """pending -> queued for one sale."""
    result = _job_queue(get_session()).queue_for_processing(sale_id)
    status = 200 if result.success else 409
    return jsonify({'success': result.success, 'sale_id': sale_id, 'error': result.error}), status


@internal_bp.route('/<int:sale_id>/replay', methods=['POST'])
@require_internal_key
def replay(sale_id):
    """Operator replay of a dead-lettered or failed sale."""
    result = _job_queue(get_session()).replay_sale(sale_id)
    if result.success:
        return jsonify({'success': True, 'sale_id': sale_id})
    status = 404 if result.error == 'Sale not found' else 409
    return jsonify({'success': False, 'sale_id': sale_id, 'error': result.error}), status
