"""
Registry of active realtime listeners keyed by (scope, resource) tuples.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Hashable, List, Tuple

from backend.gateway import Subscription

logger = logging.getLogger(__name__)

ListenerKey = Tuple[Hashable, ...]


class ListenerRegistry:
    """Holds at most one subscription per key."""

    def __init__(self):
        self._active: Dict[ListenerKey, Subscription] = {}

    def start(self, key: ListenerKey, factory: Callable[[], Subscription]) -> bool:
        """Starts a listener unless one is already active for `key`."""
        if key in self._active:
            return False
        self._active[key] = factory()
        logger.debug("Started listener %s", key)
        return True

    def stop(self, key: ListenerKey) -> bool:
        subscription = self._active.pop(key, None)
        if subscription is None:
            return False
        subscription.cancel()
        logger.debug("Stopped listener %s", key)
        return True

    def stop_where(self, predicate: Callable[[ListenerKey], bool]) -> int:
        keys = [key for key in self._active if predicate(key)]
        for key in keys:
            self.stop(key)
        return len(keys)

    def stop_all(self) -> int:
        return self.stop_where(lambda key: True)

    def is_active(self, key: ListenerKey) -> bool:
        return key in self._active

    def keys(self) -> List[ListenerKey]:
        return list(self._active)

    def __len__(self) -> int:
        return len(self._active)
