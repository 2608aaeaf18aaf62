"""
Redis caching layer for Member Entitlements balance views.

Cached views are invalidated per organization whenever a claim or
fulfillment is written. Cache errors are logged and treated as misses.
"""

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from ..engine.models import BenefitSummaryResponse, EventAllocationResponse


class RedisCache:
    """Redis caching layer for benefit summaries and event allocations."""

    BENEFITS_PREFIX = "benefits:"
    ALLOCATIONS_PREFIX = "allocations:"

    def __init__(self, redis_url: str, default_ttl: int = 300):
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.logger = get_logger("member_entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = None

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Redis cache started")

        except Exception as e:
            self.redis = None
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.close()
            self.redis = None
            self.logger.info("Redis cache stopped")

    async def get_benefit_summary(
        self,
        organization_id: str,
        tier: str,
        target_year: int,
        track_id: Optional[str] = None
    ) -> Optional[BenefitSummaryResponse]:
        data = await self._get(self._benefits_key(organization_id, tier, target_year, track_id))
        if data is None:
            return None
        return BenefitSummaryResponse.model_validate(data)

    async def set_benefit_summary(
        self,
        response: BenefitSummaryResponse,
        track_id: Optional[str] = None,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        key = self._benefits_key(response.organization_id, response.tier, response.target_year, track_id)
        return await self._set(key, response.model_dump(mode="json"), ttl_seconds)

    async def get_event_allocations(
        self,
        organization_id: str,
        tier: str
    ) -> Optional[List[EventAllocationResponse]]:
        data = await self._get(self._allocations_key(organization_id, tier))
        if data is None:
            return None
        return [EventAllocationResponse.model_validate(item) for item in data]

    async def set_event_allocations(
        self,
        organization_id: str,
        tier: str,
        tables: List[EventAllocationResponse],
        ttl_seconds: Optional[int] = None
    ) -> bool:
        key = self._allocations_key(organization_id, tier)
        return await self._set(key, [t.model_dump(mode="json") for t in tables], ttl_seconds)

    async def invalidate_organization(self, organization_id: str) -> int:
        """Invalidate every cached view of an organization."""
        if self.redis is None:
            return 0
        try:
            keys = []
            for prefix in (self.BENEFITS_PREFIX, self.ALLOCATIONS_PREFIX):
                keys.extend(await self.redis.keys(f"{prefix}org:{organization_id}:*"))

            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Invalidated organization views", organization_id=organization_id, count=len(keys))
            return len(keys)

        except Exception as e:
            self.logger.error("Error invalidating organization views", organization_id=organization_id, error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if self.redis is None:
            return {}
        try:
            info = await self.redis.info()
            return {
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "benefit_keys": len(await self.redis.keys(f"{self.BENEFITS_PREFIX}*")),
                "allocation_keys": len(await self.redis.keys(f"{self.ALLOCATIONS_PREFIX}*")),
                "hit_rate": self._calculate_hit_rate(info)
            }
        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False

    async def _get(self, key: str) -> Optional[Any]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(key)
            if not cached:
                return None
            self.logger.debug("Cache hit", cache_key=key)
            return json.loads(cached)
        except Exception as e:
            self.logger.error("Error reading cache", cache_key=key, error=str(e))
            return None

    async def _set(self, key: str, data: Any, ttl_seconds: Optional[int]) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.setex(key, ttl_seconds or self.default_ttl, json.dumps(data))
            self.logger.debug("Cached view", cache_key=key)
            return True
        except Exception as e:
            self.logger.error("Error writing cache", cache_key=key, error=str(e))
            return False

    def _benefits_key(self, organization_id: str, tier: str, target_year: int, track_id: Optional[str]) -> str:
        track_part = f":track:{track_id}" if track_id else ""
        return f"{self.BENEFITS_PREFIX}org:{organization_id}:tier:{tier.lower()}:year:{target_year}{track_part}"

    def _allocations_key(self, organization_id: str, tier: str) -> str:
        return f"{self.ALLOCATIONS_PREFIX}org:{organization_id}:tier:{tier.lower()}"

    @staticmethod
    def _calculate_hit_rate(info: Dict[str, Any]) -> float:
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses
        if total == 0:
            return 0.0
        return hits / total
