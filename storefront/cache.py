"""
Redis cache layer for product detail payloads.

Redis is ONLY a cache, never the source of truth.
The database is always authoritative.

Cache keys:
- product:{product_id}   serialized product detail (TTL from settings)

Entries are invalidated whenever an inventory row of the product changes,
so cached availability never outlives a reservation, commit or release.
When no REDIS_URL is configured the client is disabled and every call is a
cheap no-op.
"""

import json
from typing import Any, Dict, Iterable, Optional

import redis

from storefront.logger import get_logger

logger = get_logger(__name__)


class CacheClient:
    """Redis cache client with namespaced keys and TTL management."""

    def __init__(self, url: Optional[str] = None, namespace: str = "storefront", product_ttl: int = 300):
        self.namespace = namespace
        self.ttl_product = product_ttl
        self.client: Optional[redis.Redis] = None
        if url:
            self.client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _key(self, key: str) -> str:
        """Prefix key with namespace."""
        return f"{self.namespace}:{key}"

    def ping(self) -> bool:
        """Check if Redis is reachable."""
        if self.client is None:
            return False
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        if self.client is None:
            return None
        try:
            raw = self.client.get(self._key(f"product:{product_id}"))
        except redis.RedisError as e:
            logger.warning("Cache read failed for product %s: %s", product_id, e)
            return None
        return json.loads(raw) if raw else None

    def set_product(self, product_id: str, payload: Dict[str, Any]) -> None:
        if self.client is None:
            return
        try:
            self.client.setex(self._key(f"product:{product_id}"), self.ttl_product, json.dumps(payload, default=str))
        except redis.RedisError as e:
            logger.warning("Cache write failed for product %s: %s", product_id, e)

    def invalidate_products(self, product_ids: Iterable[str]) -> None:
        """Drop cached detail for every product whose stock changed."""
        if self.client is None:
            return
        keys = [self._key(f"product:{product_id}") for product_id in set(product_ids)]
        if not keys:
            return
        try:
            self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Cache invalidation failed for %d products: %s", len(keys), e)
