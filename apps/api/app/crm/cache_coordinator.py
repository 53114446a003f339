from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Hashable, Iterable
from typing import TypeVar

from app.core.cache import MISS, Cache, CacheKey
from app.metrics import observe_cache_hit, observe_cache_invalidation, observe_cache_miss


logger = logging.getLogger("app.crm.cache")

T = TypeVar("T")

CUSTOMER = "customer"
OFFER = "offer"
TASK = "task"

# Aggregate types whose cached views can be stale after (type, operation) commits.
INVALIDATION_POLICY: dict[tuple[str, str], tuple[str, ...]] = {
    (CUSTOMER, "create"): (CUSTOMER,),
    (CUSTOMER, "update"): (CUSTOMER,),
    (CUSTOMER, "delete"): (CUSTOMER, OFFER, TASK),
    (OFFER, "create"): (OFFER,),
    (OFFER, "update"): (OFFER,),
    (OFFER, "change_status"): (OFFER,),
    (OFFER, "delete"): (OFFER, TASK),
    (TASK, "create"): (TASK,),
    (TASK, "update"): (TASK,),
    (TASK, "change_status"): (TASK,),
    (TASK, "delete"): (TASK,),
}


def by_id(entity_type: str, entity_id: int) -> CacheKey:
    return CacheKey(entity_type, "by_id", entity_id)


def all_of(entity_type: str) -> CacheKey:
    return CacheKey(entity_type, "all")


def by_parent(entity_type: str, customer_id: int) -> CacheKey:
    return CacheKey(entity_type, "by_customer", customer_id)


def by_offer(offer_id: int) -> CacheKey:
    return CacheKey(TASK, "by_offer", offer_id)


def by_status(entity_type: str, status: Hashable) -> CacheKey:
    return CacheKey(entity_type, "by_status", str(status))


class CacheCoordinator:
    """Cache-aside reads and invalidate-on-write for the CRM aggregates.

    Invalidation is coarse: every key of an affected type is dropped. Each type
    also carries a generation number that moves on every invalidation; a miss
    only populates the cache if the generation it started under is still
    current, so a loader that raced with a committed write cannot park
    pre-write data in the cache after the eviction.
    """

    def __init__(self, cache: Cache, *, enabled: bool = True) -> None:
        self.cache = cache
        self.enabled = enabled
        self._generations: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def read(self, key: CacheKey, loader: Callable[[], T]) -> T:
        if not self.enabled:
            return loader()

        cached = self.cache.get(key)
        if cached is not MISS:
            observe_cache_hit(key.entity_type)
            logger.debug("cache.hit", extra={"entity_type": key.entity_type, "cache_key": str(key)})
            return cached

        observe_cache_miss(key.entity_type)
        logger.debug("cache.miss", extra={"entity_type": key.entity_type, "cache_key": str(key)})
        generation = self._current_generation(key.entity_type)
        value = loader()
        self._populate(key, value, generation)
        return value

    def read_many(self, key: CacheKey, loader: Callable[[], Iterable[T]]) -> list[T]:
        return list(self.read(key, lambda: tuple(loader())))

    def invalidate_all(self, *entity_types: str) -> None:
        for entity_type in entity_types:
            with self._lock:
                self._generations[entity_type] += 1
            evicted = self.cache.evict_all_for_type(entity_type)
            observe_cache_invalidation(entity_type)
            logger.info(
                "cache.invalidated",
                extra={"entity_type": entity_type, "cache_key": f"{entity_type}:*", "evicted": evicted},
            )

    def invalidate_after(self, entity_type: str, operation: str) -> tuple[str, ...]:
        affected = INVALIDATION_POLICY[(entity_type, operation)]
        self.invalidate_all(*affected)
        return affected

    def _current_generation(self, entity_type: str) -> int:
        with self._lock:
            return self._generations[entity_type]

    def _populate(self, key: CacheKey, value: object, generation: int) -> None:
        with self._lock:
            if self._generations[key.entity_type] != generation:
                logger.debug(
                    "cache.populate_skipped",
                    extra={"entity_type": key.entity_type, "cache_key": str(key)},
                )
                return
            self.cache.put(key, value)
