"""
In-memory session state with publish/subscribe change notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import Callable, Dict, List

from shared.records import Comment, CoupleStats, JournalEntry, UserProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    """
    Snapshot of everything the UI observes.

    Instances are immutable; every change produces a new SyncState, so an
    observer may keep a reference without it changing underneath.
    """

    couple_id: str
    user_id: str
    stats: CoupleStats = field(default_factory=CoupleStats)
    entries: List[JournalEntry] = field(default_factory=list)
    comments: Dict[str, List[Comment]] = field(default_factory=dict)  # by entry remote id
    profiles: Dict[str, UserProfile] = field(default_factory=dict)  # by user id
    is_uploading_photo: bool = False


Observer = Callable[[str, SyncState], None]

_STATE_FIELDS = {f.name for f in fields(SyncState)}


class SnapshotStore:
    def __init__(self, state: SyncState):
        self._state = state
        self._observers: List[Observer] = []

    @property
    def state(self) -> SyncState:
        return self._state

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Registers `observer(field_name, state)`; returns an unsubscribe callable."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def update(self, **changes) -> None:
        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown state fields: {sorted(unknown)}")
        self._state = replace(self._state, **changes)
        for name in changes:
            self._publish(name)

    def _publish(self, name: str) -> None:
        for observer in list(self._observers):
            try:
                observer(name, self._state)
            except Exception:
                logger.exception("State observer failed for %s", name)
