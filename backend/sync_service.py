"""
Couple sync service.

Owns the realtime listeners for a couple (stats, entries, profiles and
per-entry comments), keeps the latest snapshot of each in a SnapshotStore for
the UI to observe, and orchestrates multi-step writes: id reservation, image
upload, document write and local merge.

All methods must be called from the event loop that owns the service. State
is only mutated on that loop, so listener callbacks and in-flight saves
interleave but never run in parallel.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, NamedTuple, Optional, Set

from backend.errors import GatewayError
from backend.gateway import RemoteGateway
from backend.listeners import ListenerRegistry
from backend.local_settings import COUPLE_ID_KEY, USER_ID_KEY, SettingsStore
from backend.retry import RetryPolicy, call_with_retry
from backend.snapshot_store import Observer, SnapshotStore, SyncState
from shared import remote_paths
from shared.countdown import TimeTogether, time_together
from shared.entity_codecs import (
    CREATED_AT_FIELD,
    DATE_FIELD,
    decode_comment,
    decode_entry,
    decode_profile,
    decode_stats,
    encode_comment,
    encode_entry,
    encode_profile_update,
    encode_stats_update,
)
from shared.records import (
    DEFAULT_AUTHOR_NAME,
    DEFAULT_OWN_PROFILE_NAME,
    Comment,
    CoupleStats,
    JournalEntry,
    RemoteDocument,
    SyncResult,
    UserProfile,
)
from upload_pipeline.image_utils import ImageUploadPipeline

logger = logging.getLogger(__name__)

PAIRING_CODE_LENGTH = 6

STATS_LISTENER = "stats"
ENTRIES_LISTENER = "entries"
PROFILES_LISTENER = "profiles"
COMMENTS_LISTENER = "comments"
COUPLE_LISTENERS = (STATS_LISTENER, ENTRIES_LISTENER, PROFILES_LISTENER)


def generate_couple_id() -> str:
    """A short pairing code that one partner shares with the other."""
    return str(uuid.uuid4()).upper()[:PAIRING_CODE_LENGTH]


def generate_user_id() -> str:
    return str(uuid.uuid4()).upper()


class _LocalChange(NamedTuple):
    """A local save (`entry` set) or delete (`entry` None) of one entry."""

    remote_id: str
    entry: Optional[JournalEntry]
    # Entries delivery that was current when the change was applied.
    generation: int


def _apply_local_change(
    entries: List[JournalEntry], local_id: str, change: _LocalChange
) -> List[JournalEntry]:
    entries = list(entries)
    index = next(
        (
            i
            for i, e in enumerate(entries)
            if e.local_id == local_id or e.remote_id == change.remote_id
        ),
        None,
    )
    if change.entry is None:
        if index is not None:
            del entries[index]
    elif index is None:
        entries.insert(0, change.entry)
    else:
        entries[index] = change.entry
    return entries


class SyncService:
    def __init__(
        self,
        gateway: RemoteGateway,
        settings_store: SettingsStore,
        *,
        pipeline: Optional[ImageUploadPipeline] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._gateway = gateway
        self._settings_store = settings_store
        self._retry_policy = retry_policy or RetryPolicy()
        self._pipeline = pipeline or ImageUploadPipeline(
            gateway, retry_policy=self._retry_policy
        )
        self._listeners = ListenerRegistry()

        # Save stamps by local entry id: those still in flight and the newest
        # applied locally. A save's result applies only when no newer save of
        # the same entry is in flight or already applied.
        self._saves_in_flight: Dict[str, Set[int]] = {}
        self._applied_saves: Dict[str, int] = {}
        self._version_counter = itertools.count(1)

        # Bumped on every entries delivery; a hydration task only applies if
        # the delivery it started from is still the latest.
        self._entries_generation = 0
        # Local saves and deletes by local id. Replayed over a hydrated
        # delivery that predates them, dropped once a later delivery lands.
        self._local_changes: Dict[str, _LocalChange] = {}
        self._pending: Set[asyncio.Task] = set()

        couple_id = settings_store.get(COUPLE_ID_KEY) or generate_couple_id()
        user_id = settings_store.get(USER_ID_KEY) or generate_user_id()
        settings_store.set(COUPLE_ID_KEY, couple_id)
        settings_store.set(USER_ID_KEY, user_id)

        self.store = SnapshotStore(SyncState(couple_id=couple_id, user_id=user_id))
        logger.info("Bound to couple %s as user %s", couple_id, user_id)
        self._configure_listeners()

    # -- Observed state -------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self.store.state

    @property
    def couple_id(self) -> str:
        return self.store.state.couple_id

    @property
    def current_user_id(self) -> str:
        return self.store.state.user_id

    @property
    def stats(self) -> CoupleStats:
        return self.store.state.stats

    @property
    def entries(self) -> List[JournalEntry]:
        return self.store.state.entries

    @property
    def comments(self) -> Dict[str, List[Comment]]:
        return self.store.state.comments

    @property
    def profiles(self) -> Dict[str, UserProfile]:
        return self.store.state.profiles

    @property
    def is_uploading_photo(self) -> bool:
        return self.store.state.is_uploading_photo

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        return self.store.subscribe(observer)

    # -- Session binding ------------------------------------------------

    def configure(self, couple_id: str) -> None:
        """
        Rebinds the session to another couple (joining a partner's code).

        Tears down the couple's listeners, persists the new id and starts
        fresh listeners. Comment streams survive when the code is unchanged.
        Does nothing for an empty code.
        """
        couple_id = (couple_id or "").strip()
        if not couple_id:
            return

        changes = {"couple_id": couple_id}
        if couple_id == self.couple_id:
            for name in COUPLE_LISTENERS:
                self._listeners.stop((couple_id, name))
        else:
            self._listeners.stop_all()
            # Stats and comments belong to the previous couple; entries and
            # profiles are replaced by the first snapshot of the new one.
            changes.update(stats=CoupleStats(), comments={})
            self._entries_generation += 1
            self._local_changes.clear()
        self.store.update(**changes)
        self._settings_store.set(COUPLE_ID_KEY, couple_id)
        logger.info("Rebound to couple %s", couple_id)
        self._configure_listeners()

    def close(self) -> None:
        """Cancels every listener."""
        self._listeners.stop_all()

    async def drain(self) -> None:
        """Waits for background hydration tasks spawned by listeners."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _configure_listeners(self) -> None:
        couple_id = self.couple_id
        self._listeners.start(
            (couple_id, STATS_LISTENER),
            lambda: self._gateway.subscribe_document(
                remote_paths.stats_document(couple_id), self._on_stats_snapshot
            ),
        )
        self._listeners.start(
            (couple_id, ENTRIES_LISTENER),
            lambda: self._gateway.subscribe_collection(
                remote_paths.entries_collection(couple_id),
                self._on_entries_snapshot,
                order_by=DATE_FIELD,
                descending=True,
            ),
        )
        self._listeners.start(
            (couple_id, PROFILES_LISTENER),
            lambda: self._gateway.subscribe_collection(
                remote_paths.profiles_collection(couple_id),
                self._on_profiles_snapshot,
            ),
        )

    # -- Listener callbacks ---------------------------------------------

    def _on_stats_snapshot(self, data: Optional[dict]) -> None:
        if data is None:
            return
        self.store.update(stats=decode_stats(data))

    def _on_profiles_snapshot(self, documents: List[RemoteDocument]) -> None:
        self.store.update(
            profiles={doc.id: decode_profile(doc.id, doc.data) for doc in documents}
        )

    def _on_entries_snapshot(self, documents: List[RemoteDocument]) -> None:
        self._entries_generation += 1
        generation = self._entries_generation

        known = {entry.remote_id: entry for entry in self.entries if entry.remote_id}
        decoded = []
        for doc in documents:
            previous = known.get(doc.id)
            entry = decode_entry(
                doc.id, doc.data, local_id=previous.local_id if previous else None
            )
            if (
                previous is not None
                and previous.image_urls == entry.image_urls
                and len(previous.images) == len(entry.image_urls)
            ):
                entry.images = list(previous.images)
            decoded.append(entry)

        task = asyncio.get_running_loop().create_task(
            self._hydrate_entries(generation, decoded)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _hydrate_entries(
        self, generation: int, entries: List[JournalEntry]
    ) -> None:
        hydrated = []
        for entry in entries:
            if entry.image_urls and not entry.images:
                entry = replace(
                    entry, images=await self._pipeline.hydrate_images(entry.image_urls)
                )
            hydrated.append(entry)

        if generation != self._entries_generation:
            logger.debug("Dropping stale entries snapshot (generation %d)", generation)
            return

        # Changes applied before this delivery started are already in it.
        self._local_changes = {
            local_id: change
            for local_id, change in self._local_changes.items()
            if change.generation >= generation
        }
        for local_id, change in self._local_changes.items():
            hydrated = _apply_local_change(hydrated, local_id, change)
        self.store.update(entries=hydrated)

    def _on_comments_snapshot(
        self, entry_remote_id: str, documents: List[RemoteDocument]
    ) -> None:
        comments = [
            comment
            for comment in (decode_comment(doc.id, doc.data) for doc in documents)
            if comment is not None
        ]
        by_entry = dict(self.comments)
        by_entry[entry_remote_id] = comments
        self.store.update(comments=by_entry)

    # -- Stats ----------------------------------------------------------

    async def update_stats(
        self, date: Optional[datetime] = None, photo_data: Optional[bytes] = None
    ) -> SyncResult:
        """
        Merges a new anniversary date and/or cover photo into the stats.

        The local snapshot is updated before the remote write completes.
        """
        couple_id = self.couple_id
        photo_url = None
        photo_failed = False
        if photo_data is not None:
            self.store.update(is_uploading_photo=True)
            try:
                photo_url = await self._pipeline.upload_one(
                    photo_data, remote_paths.stats_photo_object(couple_id)
                )
            finally:
                self.store.update(is_uploading_photo=False)
            photo_failed = photo_url is None

        new_stats = self.stats
        if date is not None:
            new_stats = replace(new_stats, anniversary_date=date)
        if photo_url:
            new_stats = replace(new_stats, photo_url=photo_url)

        if date is None and photo_url is None:
            return SyncResult.failed("cover photo upload failed")

        self.store.update(stats=new_stats)
        payload = encode_stats_update(
            anniversary_date=new_stats.anniversary_date, photo_url=new_stats.photo_url
        )
        try:
            await call_with_retry(
                lambda: self._gateway.write(
                    remote_paths.stats_document(couple_id), payload, merge=True
                ),
                policy=self._retry_policy,
                description="Stats write",
            )
        except GatewayError as e:
            logger.warning("Stats save failed: %s", e)
            return SyncResult.failed(str(e))

        if photo_failed:
            return SyncResult.failed("cover photo upload failed")
        return SyncResult.succeeded(new_stats)

    # -- Entries --------------------------------------------------------

    async def save(self, entry: JournalEntry) -> SyncResult:
        """
        Saves a new or edited entry.

        Reuses the entry's remote id when editing, otherwise reserves one so
        storage paths match the document. Images are uploaded in order; if the
        entry has images but none upload, nothing is written. On success the
        entry is replaced in the local list by local id, or inserted at the
        head when it is new.
        """
        version = next(self._version_counter)
        self._saves_in_flight.setdefault(entry.local_id, set()).add(version)

        couple_id = self.couple_id
        doc_id = entry.remote_id or self._gateway.new_document_id(
            remote_paths.entries_collection(couple_id)
        )

        urls = await self._pipeline.upload_entry_images(couple_id, doc_id, entry.images)
        if entry.images and not urls:
            logger.warning("No images uploaded for entry %s; skipping write", doc_id)
            self._finish_save(entry.local_id, version, succeeded=False)
            return SyncResult.failed("no images uploaded")

        saved = replace(entry, remote_id=doc_id, image_urls=urls)
        try:
            await call_with_retry(
                lambda: self._gateway.write(
                    remote_paths.entry_document(couple_id, doc_id),
                    encode_entry(saved),
                    merge=True,
                ),
                policy=self._retry_policy,
                description=f"Entry write {doc_id}",
            )
        except GatewayError as e:
            logger.warning("Entry save failed for %s: %s", doc_id, e)
            self._finish_save(entry.local_id, version, succeeded=False)
            return SyncResult.failed(str(e))

        if not self._finish_save(entry.local_id, version, succeeded=True):
            logger.info("Save of entry %s superseded by a newer save", entry.local_id)
            return SyncResult.succeeded(saved)

        if couple_id != self.couple_id:
            return SyncResult.succeeded(saved)

        self._apply_locally(entry.local_id, doc_id, saved)
        return SyncResult.succeeded(saved)

    def _finish_save(self, local_id: str, version: int, *, succeeded: bool) -> bool:
        """Ends a save; returns whether its result may apply locally."""
        in_flight = self._saves_in_flight.get(local_id, set())
        in_flight.discard(version)
        if not in_flight:
            self._saves_in_flight.pop(local_id, None)
        if not succeeded:
            return False
        if any(v > version for v in in_flight):
            return False
        if self._applied_saves.get(local_id, 0) > version:
            return False
        self._applied_saves[local_id] = version
        return True

    async def delete(self, entry_id: str) -> SyncResult:
        """
        Deletes the entry with local id `entry_id`.

        Entries that were never saved have nothing remote to delete. After a
        successful remote delete the entry is also removed locally.
        """
        entry = next((e for e in self.entries if e.local_id == entry_id), None)
        if entry is None or not entry.remote_id:
            return SyncResult.skipped("entry has no remote id")

        couple_id = self.couple_id
        try:
            await call_with_retry(
                lambda: self._gateway.delete(
                    remote_paths.entry_document(couple_id, entry.remote_id)
                ),
                policy=self._retry_policy,
                description=f"Entry delete {entry.remote_id}",
            )
        except GatewayError as e:
            logger.warning("Entry delete failed for %s: %s", entry.remote_id, e)
            return SyncResult.failed(str(e))

        self._applied_saves.pop(entry_id, None)
        if couple_id == self.couple_id:
            self._apply_locally(entry_id, entry.remote_id, None)
        return SyncResult.succeeded(entry.remote_id)

    def _apply_locally(
        self, local_id: str, remote_id: str, entry: Optional[JournalEntry]
    ) -> None:
        change = _LocalChange(remote_id, entry, self._entries_generation)
        self._local_changes[local_id] = change
        self.store.update(entries=_apply_local_change(self.entries, local_id, change))

    def sorted_entries(self) -> List[JournalEntry]:
        return sorted(self.entries, key=lambda e: e.date, reverse=True)

    def mapped_entries(self) -> List[JournalEntry]:
        """Entries that can be placed on a map."""
        return [e for e in self.entries if e.coordinate is not None]

    def find_entry(self, entry_id: str) -> Optional[JournalEntry]:
        return next((e for e in self.entries if e.local_id == entry_id), None)

    # -- Comments -------------------------------------------------------

    def start_comments_listener(self, entry_remote_id: str) -> bool:
        """Starts streaming an entry's comments; no-op if already streaming."""
        if not entry_remote_id:
            return False
        path = remote_paths.comments_collection(self.couple_id, entry_remote_id)
        return self._listeners.start(
            (COMMENTS_LISTENER, entry_remote_id),
            lambda: self._gateway.subscribe_collection(
                path,
                lambda docs: self._on_comments_snapshot(entry_remote_id, docs),
                order_by=CREATED_AT_FIELD,
            ),
        )

    def stop_comments_listener(self, entry_remote_id: str) -> bool:
        return self._listeners.stop((COMMENTS_LISTENER, entry_remote_id))

    async def add_comment(
        self, entry: JournalEntry, text: str, default_author: str = DEFAULT_AUTHOR_NAME
    ) -> SyncResult:
        if not entry.remote_id:
            return SyncResult.skipped("entry has no remote id")
        if not text or not text.strip():
            return SyncResult.skipped("empty comment")

        couple_id = self.couple_id
        user_id = self.current_user_id
        profile = self.profiles.get(user_id)
        payload = encode_comment(
            author_id=user_id,
            author=profile.name if profile else default_author,
            author_avatar_url=profile.avatar_url if profile else None,
            text=text,
        )
        # Reserved up front so a retried write lands on the same document.
        comment_id = self._gateway.new_document_id(
            remote_paths.comments_collection(couple_id, entry.remote_id)
        )
        path = remote_paths.comment_document(couple_id, entry.remote_id, comment_id)
        try:
            await call_with_retry(
                lambda: self._gateway.write(path, payload, merge=False),
                policy=self._retry_policy,
                description=f"Comment write on {entry.remote_id}",
            )
        except GatewayError as e:
            logger.warning("Failed to add comment to %s: %s", entry.remote_id, e)
            return SyncResult.failed(str(e))
        return SyncResult.succeeded(comment_id)

    def comment_avatar_url(self, comment: Comment) -> Optional[str]:
        if comment.author_avatar_url:
            return comment.author_avatar_url
        if comment.author_id:
            profile = self.profiles.get(comment.author_id)
            if profile:
                return profile.avatar_url
        return None

    def is_mine(self, comment: Comment) -> bool:
        return comment.author_id == self.current_user_id

    # -- Profiles -------------------------------------------------------

    async def update_profile(
        self, name: str, avatar_data: Optional[bytes] = None
    ) -> SyncResult:
        couple_id = self.couple_id
        user_id = self.current_user_id
        name = (name or "").strip() or DEFAULT_OWN_PROFILE_NAME

        existing = self.profiles.get(user_id)
        avatar_url = existing.avatar_url if existing else None
        if avatar_data is not None:
            uploaded = await self._pipeline.upload_one(
                avatar_data, remote_paths.avatar_object(couple_id, user_id)
            )
            if uploaded:
                avatar_url = uploaded
            else:
                logger.warning("Avatar upload failed; keeping previous avatar")

        try:
            await call_with_retry(
                lambda: self._gateway.write(
                    remote_paths.profile_document(couple_id, user_id),
                    encode_profile_update(name, avatar_url),
                    merge=True,
                ),
                policy=self._retry_policy,
                description="Profile write",
            )
        except GatewayError as e:
            logger.warning("Profile save failed: %s", e)
            return SyncResult.failed(str(e))
        return SyncResult.succeeded(avatar_url)

    # -- Countdown ------------------------------------------------------

    def time_together(self, now: Optional[datetime] = None) -> TimeTogether:
        return time_together(self.stats.anniversary_date, now)
