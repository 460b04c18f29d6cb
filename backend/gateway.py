"""
Remote data gateway: document reads/writes/deletes, realtime listeners and
object uploads against Firestore + storage, plus an in-memory implementation
used by tests and local development.

Every async operation raises `GatewayError` on failure. Nothing here retries;
callers decide what to do with a failure.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import requests
from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from backend.errors import GatewayError, translate_error
from backend.storage import InMemoryStorageClient, StorageClient
from shared.records import RemoteDocument
from shared.remote_paths import parent_collection

logger = logging.getLogger(__name__)

DocumentCallback = Callable[[Optional[Dict[str, Any]]], None]
CollectionCallback = Callable[[List[RemoteDocument]], None]

DEFAULT_DOWNLOAD_TIMEOUT = 30  # seconds


class Subscription(Protocol):
    """A cancelable realtime listener registration."""

    def cancel(self) -> None:
        ...


class RemoteGateway(Protocol):
    """Defines the operations the sync service needs from the backend."""

    async def read(self, path: str) -> Optional[Dict[str, Any]]:
        ...

    async def write(
        self, path: str, fields: Mapping[str, Any], merge: bool = True
    ) -> None:
        ...

    async def delete(self, path: str) -> None:
        ...

    def new_document_id(self, collection_path: str) -> str:
        ...

    async def upload(
        self, data: bytes, path: str, content_type: str = "image/jpeg"
    ) -> str:
        ...

    async def download(self, url: str) -> bytes:
        ...

    def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        ...

    def subscribe_collection(
        self,
        path: str,
        callback: CollectionCallback,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        ...


def _invoke_listener(callback: Callable[[Any], None], payload: Any, path: str) -> None:
    # Listener errors never propagate into the SDK or the writer.
    try:
        callback(payload)
    except Exception:
        logger.exception("Snapshot listener for %s failed", path)


@dataclass
class _InMemorySubscription:
    gateway: "InMemoryGateway"
    path: str
    callback: Callable[[Any], None]
    is_collection: bool
    order_by: Optional[str] = None
    descending: bool = False
    active: bool = True

    def cancel(self) -> None:
        self.active = False
        self.gateway._forget(self)


class InMemoryGateway:
    """
    Dict-backed gateway for tests and local runs.

    Listeners receive the current state as soon as they subscribe and again
    after every write or delete that touches them, synchronously, the way
    Firestore delivers a first snapshot followed by change snapshots.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorageClient] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.storage = storage or InMemoryStorageClient()
        self.clock = clock
        self.calls: List[tuple[str, str]] = []
        self._failures: Dict[str, List[GatewayError]] = {}
        self._subscriptions: List[_InMemorySubscription] = []

    def fail_next(
        self, operation: str, *, times: int = 1, transient: bool = False
    ) -> None:
        """Makes the next `times` calls of `operation` raise GatewayError."""
        queue = self._failures.setdefault(operation, [])
        for _ in range(times):
            queue.append(
                GatewayError(f"injected {operation} failure", transient=transient)
            )

    def calls_for(self, operation: str) -> List[str]:
        return [path for op, path in self.calls if op == operation]

    def active_subscriptions(self, path: Optional[str] = None) -> int:
        return sum(
            1 for sub in self._subscriptions if path is None or sub.path == path
        )

    def _maybe_fail(self, operation: str) -> None:
        queue = self._failures.get(operation)
        if queue:
            raise queue.pop(0)

    def _resolve(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        return {
            key: now if value is SERVER_TIMESTAMP else value
            for key, value in fields.items()
        }

    async def read(self, path: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("read", path))
        self._maybe_fail("read")
        doc = self.documents.get(path)
        return dict(doc) if doc is not None else None

    async def write(
        self, path: str, fields: Mapping[str, Any], merge: bool = True
    ) -> None:
        self.calls.append(("write", path))
        self._maybe_fail("write")
        resolved = self._resolve(fields)
        if merge and path in self.documents:
            self.documents[path].update(resolved)
        else:
            self.documents[path] = resolved
        self._notify(path)

    async def delete(self, path: str) -> None:
        self.calls.append(("delete", path))
        self._maybe_fail("delete")
        self.documents.pop(path, None)
        self._notify(path)

    def new_document_id(self, collection_path: str) -> str:
        return uuid.uuid4().hex[:20]

    async def upload(
        self, data: bytes, path: str, content_type: str = "image/jpeg"
    ) -> str:
        self.calls.append(("upload", path))
        self._maybe_fail("upload")
        return self.storage.upload_bytes(path, data, content_type)

    async def download(self, url: str) -> bytes:
        self.calls.append(("download", url))
        self._maybe_fail("download")
        return self.storage.get_bytes_for_url(url)

    def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        subscription = _InMemorySubscription(
            gateway=self, path=path, callback=callback, is_collection=False
        )
        self._subscriptions.append(subscription)
        self._deliver(subscription)
        return subscription

    def subscribe_collection(
        self,
        path: str,
        callback: CollectionCallback,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        subscription = _InMemorySubscription(
            gateway=self,
            path=path,
            callback=callback,
            is_collection=True,
            order_by=order_by,
            descending=descending,
        )
        self._subscriptions.append(subscription)
        self._deliver(subscription)
        return subscription

    def _forget(self, subscription: _InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _collection_documents(self, subscription: _InMemorySubscription) -> List[RemoteDocument]:
        docs = [
            RemoteDocument(id=path.rsplit("/", 1)[1], data=dict(data))
            for path, data in self.documents.items()
            if parent_collection(path) == subscription.path
        ]
        if subscription.order_by:
            # Documents missing the field are excluded, as Firestore does.
            docs = [doc for doc in docs if subscription.order_by in doc.data]
            docs.sort(
                key=lambda doc: doc.data[subscription.order_by],
                reverse=subscription.descending,
            )
        return docs

    def _deliver(self, subscription: _InMemorySubscription) -> None:
        if not subscription.active:
            return
        if subscription.is_collection:
            payload = self._collection_documents(subscription)
        else:
            doc = self.documents.get(subscription.path)
            payload = dict(doc) if doc is not None else None
        _invoke_listener(subscription.callback, payload, subscription.path)

    def _notify(self, document_path: str) -> None:
        collection = parent_collection(document_path)
        for subscription in list(self._subscriptions):
            if subscription.is_collection and subscription.path == collection:
                self._deliver(subscription)
            elif not subscription.is_collection and subscription.path == document_path:
                self._deliver(subscription)


class _WatchSubscription:
    """Wraps a Firestore Watch so late callbacks are dropped after cancel."""

    def __init__(self, path: str):
        self.path = path
        self.active = True
        self.watch = None

    def cancel(self) -> None:
        self.active = False
        if self.watch is not None:
            self.watch.unsubscribe()
            self.watch = None


class FirestoreGateway:
    """
    Gateway backed by a firebase_admin Firestore client and a StorageClient.

    The Firestore and storage SDKs are blocking, so calls run in worker
    threads. Snapshot callbacks arrive on SDK threads and are handed to the
    event loop that created the subscription, so listener code only ever runs
    on the loop.
    """

    def __init__(
        self,
        db: Any,
        storage_client: StorageClient,
        *,
        download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        http_session: Optional[requests.Session] = None,
    ):
        self._db = db
        self._storage = storage_client
        self._download_timeout = download_timeout
        self._http = http_session or requests.Session()

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except Exception as exc:
            raise translate_error(exc) from exc

    async def read(self, path: str) -> Optional[Dict[str, Any]]:
        snapshot = await self._call(self._db.document(path).get)
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    async def write(
        self, path: str, fields: Mapping[str, Any], merge: bool = True
    ) -> None:
        await self._call(self._db.document(path).set, dict(fields), merge=merge)

    async def delete(self, path: str) -> None:
        await self._call(self._db.document(path).delete)

    def new_document_id(self, collection_path: str) -> str:
        # Ids are generated client side; no round trip.
        return self._db.collection(collection_path).document().id

    async def upload(
        self, data: bytes, path: str, content_type: str = "image/jpeg"
    ) -> str:
        return await self._call(self._storage.upload_bytes, path, data, content_type)

    async def download(self, url: str) -> bytes:
        def fetch() -> bytes:
            response = self._http.get(url, timeout=self._download_timeout)
            response.raise_for_status()
            return response.content

        return await self._call(fetch)

    def subscribe_document(
        self, path: str, callback: DocumentCallback
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = _WatchSubscription(path)

        def deliver(payload: Optional[Dict[str, Any]]) -> None:
            if subscription.active:
                _invoke_listener(callback, payload, path)

        def on_snapshot(doc_snapshots, changes, read_time) -> None:
            snapshot = doc_snapshots[0] if doc_snapshots else None
            payload = snapshot.to_dict() if snapshot is not None and snapshot.exists else None
            loop.call_soon_threadsafe(deliver, payload)

        subscription.watch = self._db.document(path).on_snapshot(on_snapshot)
        return subscription

    def subscribe_collection(
        self,
        path: str,
        callback: CollectionCallback,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        subscription = _WatchSubscription(path)

        def deliver(payload: List[RemoteDocument]) -> None:
            if subscription.active:
                _invoke_listener(callback, payload, path)

        def on_snapshot(doc_snapshots, changes, read_time) -> None:
            payload = [
                RemoteDocument(id=snapshot.id, data=snapshot.to_dict() or {})
                for snapshot in doc_snapshots
            ]
            loop.call_soon_threadsafe(deliver, payload)

        query = self._db.collection(path)
        if order_by:
            direction = "DESCENDING" if descending else "ASCENDING"
            query = query.order_by(order_by, direction=direction)
        subscription.watch = query.on_snapshot(on_snapshot)
        return subscription
