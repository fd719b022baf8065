"""
Cache Invalidator — tag-keyed invalidation of the UI's cached read-state.

Each tag has a generation counter; invalidating a tag bumps it and tells
subscribers to refetch. Invalidation is idempotent: invalidating twice only
means "refetch", never "apply twice".

Optimistic writes (e.g., pausing a device before the daemon confirms) hold
their tag with `pending_write()`; invalidations for a held tag are deferred
until the write is confirmed or rolled back so a refetch cannot clobber the
optimistic value mid-flight.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Set, Union

from resilience_kernel.models.events import CacheTag
from resilience_kernel.observer.topic import Subscription, Topic

logger = logging.getLogger(__name__)

TagLike = Union[CacheTag, str]


def _tag_name(tag: TagLike) -> str:
    return tag.value if isinstance(tag, CacheTag) else str(tag)


class CacheInvalidator:
    def __init__(self):
        self._generations: Dict[str, int] = {}
        self._holds: Dict[str, int] = {}
        self._deferred: Set[str] = set()
        self._topic: Topic[str] = Topic("cache-invalidation")

    def invalidate(self, tag: TagLike) -> bool:
        """
        Invalidate one tag. Returns False when the invalidation was deferred
        behind a pending optimistic write.
        """
        name = _tag_name(tag)
        if self._holds.get(name, 0) > 0:
            self._deferred.add(name)
            logger.debug("Deferring invalidation of %s behind pending write", name)
            return False
        self._generations[name] = self._generations.get(name, 0) + 1
        logger.debug("Invalidated cache tag %s (generation %d)", name, self._generations[name])
        self._topic.publish(name)
        return True

    def generation(self, tag: TagLike) -> int:
        return self._generations.get(_tag_name(tag), 0)

    def generations(self) -> Dict[str, int]:
        return dict(self._generations)

    def is_held(self, tag: TagLike) -> bool:
        return self._holds.get(_tag_name(tag), 0) > 0

    def subscribe(self, listener: Callable[[str], None]) -> Subscription[str]:
        return self._topic.subscribe(listener)

    @asynccontextmanager
    async def pending_write(self, tag: TagLike) -> AsyncIterator[None]:
        """Hold `tag` for the duration of an optimistic write and its rollback."""
        name = _tag_name(tag)
        self._holds[name] = self._holds.get(name, 0) + 1
        try:
            yield
        finally:
            self._holds[name] -= 1
            if self._holds[name] == 0:
                del self._holds[name]
                if name in self._deferred:
                    self._deferred.discard(name)
                    self.invalidate(name)
