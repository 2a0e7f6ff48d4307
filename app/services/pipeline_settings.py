"""Explicit settings object handed to every pipeline service."""
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class PipelineSettings:
    """Sale pipeline tunables, built once from the Flask config."""
    max_retries: int = 3
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 3_600_000
    batch_size: int = 10
    stale_timeout_minutes: int = 5
    allow_negative_stock: bool = False
    apply_ingredient_waste: bool = False
    fuzzy_match_confidence: str = 'high'
    order_number_prefix: str = 'SR'
    queue_stats_ttl: int = 15

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'PipelineSettings':
        """Build settings from a Flask ``app.config`` (or any mapping)."""
        return cls(
            max_retries=int(config.get('SALES_MAX_RETRIES', cls.max_retries)),
            base_backoff_ms=int(config.get('SALES_BASE_BACKOFF_MS', cls.base_backoff_ms)),
            max_backoff_ms=int(config.get('SALES_MAX_BACKOFF_MS', cls.max_backoff_ms)),
            batch_size=int(config.get('SALES_BATCH_SIZE', cls.batch_size)),
            stale_timeout_minutes=int(config.get('SALES_STALE_TIMEOUT_MINUTES', cls.stale_timeout_minutes)),
            allow_negative_stock=bool(config.get('SALES_ALLOW_NEGATIVE_STOCK', cls.allow_negative_stock)),
            apply_ingredient_waste=bool(config.get('SALES_APPLY_INGREDIENT_WASTE', cls.apply_ingredient_waste)),
            fuzzy_match_confidence=str(config.get('FUZZY_MATCH_CONFIDENCE', cls.fuzzy_match_confidence)).lower(),
            order_number_prefix=str(config.get('ORDER_NUMBER_PREFIX', cls.order_number_prefix)),
            queue_stats_ttl=int(config.get('CACHE_QUEUE_STATS_TTL', cls.queue_stats_ttl)),
        )
