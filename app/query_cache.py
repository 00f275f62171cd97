from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Hashable, List, Optional

logger = logging.getLogger(__name__)

CacheEntries = Dict[Hashable, List[Dict[str, Any]]]
Transform = Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]]


class ShiftQueryCache(ABC):
    """Read cache of shift query results that a mutation may update ahead of the store.

    A mutation takes a ``snapshot`` first, then ``apply`` a speculative transform,
    and finally ``settle``: on failure the snapshot is restored, and in every case
    the affected queries are invalidated so the cache converges on the store.
    """

    @abstractmethod
    def snapshot(self) -> Any:
        raise NotImplementedError

    @abstractmethod
    def apply(self, transform: Transform) -> None:
        raise NotImplementedError

    @abstractmethod
    def settle(self, snapshot: Any, succeeded: bool) -> None:
        raise NotImplementedError


class InMemoryShiftQueryCache(ShiftQueryCache):
    """Dict-backed cache keyed by query key; each entry holds a list of shift dicts.

    A key registered with a loader is refetched on invalidation, others are
    marked stale. A key whose loader fails is marked stale too.
    """

    def __init__(self) -> None:
        self._entries: CacheEntries = {}
        self._loaders: Dict[Hashable, Callable[[], List[Dict[str, Any]]]] = {}
        self._stale: set = set()

    def put(
        self,
        key: Hashable,
        shifts: List[Dict[str, Any]],
        loader: Optional[Callable[[], List[Dict[str, Any]]]] = None,
    ) -> None:
        self._entries[key] = [dict(item) for item in shifts]
        if loader is not None:
            self._loaders[key] = loader
        self._stale.discard(key)

    def get(self, key: Hashable) -> Optional[List[Dict[str, Any]]]:
        entry = self._entries.get(key)
        return [dict(item) for item in entry] if entry is not None else None

    def keys(self) -> List[Hashable]:
        return list(self._entries)

    def is_stale(self, key: Hashable) -> bool:
        return key in self._stale

    def snapshot(self) -> CacheEntries:
        return copy.deepcopy(self._entries)

    def apply(self, transform: Transform) -> None:
        for key, entry in list(self._entries.items()):
            self._entries[key] = transform([dict(item) for item in entry])

    def restore(self, snapshot: CacheEntries) -> None:
        self._entries = copy.deepcopy(snapshot)

    def invalidate(self) -> None:
        for key in list(self._entries):
            loader = self._loaders.get(key)
            if loader is None:
                self._stale.add(key)
                continue
            try:
                refreshed = [dict(item) for item in loader()]
            except Exception:
                # A failed refetch leaves the entry stale; the mutation outcome stands.
                logger.warning("Refetch of cached query %r failed; marking it stale", key, exc_info=True)
                self._stale.add(key)
                continue
            self._entries[key] = refreshed
            self._stale.discard(key)

    def settle(self, snapshot: CacheEntries, succeeded: bool) -> None:
        if not succeeded:
            logger.warning("Reverting speculative shift cache update")
            self.restore(snapshot)
        self.invalidate()
