"""
Dependency wiring for the sync service.
"""

from __future__ import annotations

import firebase_admin
from firebase_admin import credentials, firestore, storage

from backend.config import Settings, get_settings
from backend.gateway import FirestoreGateway, InMemoryGateway, RemoteGateway
from backend.local_settings import (
    InMemorySettingsStore,
    JsonFileSettingsStore,
    SettingsStore,
)
from backend.retry import RetryPolicy
from backend.storage import (
    CosStorageClient,
    FirebaseStorageClient,
    InMemoryStorageClient,
    StorageClient,
)
from backend.sync_service import SyncService
from upload_pipeline.image_utils import ImageUploadPipeline

_gateway: RemoteGateway | None = None
_settings_store: SettingsStore | None = None
_sync_service: SyncService | None = None


def _get_firebase_app(settings: Settings) -> firebase_admin.App:
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    if settings.google_application_credentials:
        cred = credentials.Certificate(settings.google_application_credentials)
    else:
        cred = credentials.ApplicationDefault()
    options = {}
    if settings.firebase_project_id:
        options["projectId"] = settings.firebase_project_id
    if settings.firebase_storage_bucket:
        options["storageBucket"] = settings.firebase_storage_bucket
    return firebase_admin.initialize_app(cred, options)


def _get_storage_client(settings: Settings, app: firebase_admin.App) -> StorageClient:
    if settings.cos_bucket:
        return CosStorageClient(
            bucket=settings.cos_bucket,
            region=settings.cos_region or "",
            endpoint=settings.cos_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.cos_public_base_url,
        )
    return FirebaseStorageClient(bucket=storage.bucket(app=app))


def get_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
    )


def get_gateway() -> RemoteGateway:
    """
    Return a singleton gateway so listeners and writes share one client.
    """
    global _gateway
    if _gateway is not None:
        return _gateway

    settings = get_settings()
    if settings.use_in_memory_backends:
        _gateway = InMemoryGateway(storage=InMemoryStorageClient())
    else:
        app = _get_firebase_app(settings)
        _gateway = FirestoreGateway(
            firestore.client(app=app),
            _get_storage_client(settings, app),
            download_timeout=settings.download_timeout,
        )
    return _gateway


def get_settings_store() -> SettingsStore:
    global _settings_store
    if _settings_store is not None:
        return _settings_store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _settings_store = InMemorySettingsStore()
    else:
        _settings_store = JsonFileSettingsStore(settings.local_settings_path)
    return _settings_store


def get_sync_service() -> SyncService:
    """
    Return the process-wide sync service.

    Must be first called from inside the running event loop, since the
    service starts its listeners on construction.
    """
    global _sync_service
    if _sync_service is not None:
        return _sync_service

    settings = get_settings()
    gateway = get_gateway()
    retry_policy = get_retry_policy()
    _sync_service = SyncService(
        gateway,
        get_settings_store(),
        pipeline=ImageUploadPipeline(
            gateway, jpeg_quality=settings.jpeg_quality, retry_policy=retry_policy
        ),
        retry_policy=retry_policy,
    )
    return _sync_service


def reset() -> None:
    """Drop cached singletons (useful in tests)."""
    global _gateway, _settings_store, _sync_service
    if _sync_service is not None:
        _sync_service.close()
    _gateway = None
    _settings_store = None
    _sync_service = None
