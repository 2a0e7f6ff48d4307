"""
Redis cache for short-lived read models (queue stats).
Tenant-scoped keys with graceful degradation: when Redis is down or
disabled every call is a miss and nothing raises.
"""

import logging
import json
from typing import Any, Optional, Callable, Dict, Union
from datetime import datetime, date
from decimal import Decimal

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask, current_app

logger = logging.getLogger(__name__)

TenantScope = Union[int, str, None]


class CacheService:
    """
    Redis-backed cache.

    Keys pattern: {prefix}:tenant:{tenant_id|all}:{module}:{key}
    """

    def __init__(self, app: Optional[Flask] = None, client: Optional[redis.Redis] = None,
                 prefix: str = 'pos', default_ttl: int = 60):
        self.client: Optional[redis.Redis] = client
        self._enabled: bool = client is not None
        self._prefix: str = prefix
        self._default_ttl: int = default_ttl

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Connect using REDIS_URL / CACHE_* from the app config."""
        self._enabled = app.config.get('CACHE_ENABLED', True)
        self._prefix = app.config.get('CACHE_KEY_PREFIX', self._prefix)
        self._default_ttl = int(app.config.get('CACHE_DEFAULT_TTL', self._default_ttl))
        redis_url = app.config.get('REDIS_URL', 'redis://localhost:6379/0')

        if not self._enabled:
            logger.info("[CACHE] Cache is DISABLED via config")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[CACHE] Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[CACHE] Redis connection failed: {e}. Cache DISABLED.")
            self._enabled = False
            self.client = None

    def is_available(self) -> bool:
        if not self._enabled or not self.client:
            return False
        try:
            self.client.ping()
            return True
        except (ConnectionError, RedisError):
            return False

    def _build_key(self, tenant_id: TenantScope, module: str, key: str) -> str:
        scope = 'all' if tenant_id is None else tenant_id
        return f"{self._prefix}:tenant:{scope}:{module}:{key}"

    def _serialize(self, value: Any) -> str:
        def default_handler(obj: Any) -> Any:
            if isinstance(obj, (datetime, date)):
                return obj.isoformat()
            elif isinstance(obj, Decimal):
                return {"__decimal__": str(obj)}
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
        return json.dumps(value, default=default_handler)

    def _deserialize(self, value: str) -> Any:
        def object_hook(dct: Dict[str, Any]) -> Any:
            if "__decimal__" in dct:
                return Decimal(dct["__decimal__"])
            return dct
        return json.loads(value, object_hook=object_hook)

    def get(self, tenant_id: TenantScope, module: str, key: str) -> Optional[Any]:
        if not self.is_available():
            return None
        try:
            value = self.client.get(self._build_key(tenant_id, module, key))
            if value is None:
                return None
            return self._deserialize(value)
        except (RedisError, json.JSONDecodeError) as e:
            logger.warning(f"[CACHE] Get error: {e}")
            return None

    def set(self, tenant_id: TenantScope, module: str, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(
                self._build_key(tenant_id, module, key),
                ttl if ttl is not None else self._default_ttl,
                self._serialize(value)
            )
            return True
        except (RedisError, TypeError) as e:
            logger.warning(f"[CACHE] Set error: {e}")
            return False

    def delete(self, tenant_id: TenantScope, module: str, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(self._build_key(tenant_id, module, key))
            return True
        except RedisError as e:
            logger.warning(f"[CACHE] Delete error: {e}")
            return False

    def memoize(self, tenant_id: TenantScope, module: str, key: str,
                loader_fn: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Cache-aside: return the cached value or load, store and return it."""
        cached = self.get(tenant_id, module, key)
        if cached is not None:
            return cached
        value = loader_fn()
        self.set(tenant_id, module, key, value, ttl)
        return value


def init_cache(app: Flask) -> CacheService:
    """Attach a CacheService to the app (app.extensions['cache'])."""
    cache = CacheService(app)
    app.extensions['cache'] = cache
    return cache


def get_cache(app: Optional[Flask] = None) -> Optional[CacheService]:
    """Cache service of the given (or current) app, None if it was never initialized."""
    app = app or current_app
    return app.extensions.get('cache')
