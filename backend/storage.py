"""
Object storage for uploaded photos: Firebase Storage, Tencent COS
(S3-compatible) and an in-memory test implementation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set
from urllib.parse import quote
import uuid

import boto3
from botocore.config import Config

from backend.errors import GatewayError

FIREBASE_DOWNLOAD_BASE = "https://firebasestorage.googleapis.com/v0/b"
PRESIGNED_URL_EXPIRY = 7 * 24 * 3600


class StorageClient(Protocol):
    """Defines the operations the sync service needs from object storage."""

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "image/jpeg"
    ) -> str:
        """Stores `data` at `path` and returns a URL it can be downloaded from."""
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: Dict[str, bytes] = field(default_factory=dict)
    failing_paths: Set[str] = field(default_factory=set)

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "image/jpeg"
    ) -> str:
        if path in self.failing_paths:
            raise GatewayError(f"upload rejected for {path}")
        self.stored_objects[path] = bytes(data)
        return self.url_for(path)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def get_bytes_for_url(self, url: str) -> bytes:
        prefix = f"{self.base_url}/"
        path = url[len(prefix):] if url.startswith(prefix) else url
        stored = self.stored_objects.get(path)
        if stored is None:
            raise GatewayError(f"no object at {url}")
        return stored


@dataclass
class FirebaseStorageClient:
    """
    Firebase Storage (GCS) client.

    Uploads carry a `firebaseStorageDownloadTokens` metadata entry so the
    returned URL is the same tokenized download URL the mobile SDKs hand out.
    """

    bucket: Any  # google.cloud.storage.Bucket from firebase_admin.storage

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "image/jpeg"
    ) -> str:
        token = str(uuid.uuid4())
        blob = self.bucket.blob(path)
        blob.metadata = {"firebaseStorageDownloadTokens": token}
        blob.upload_from_string(data, content_type=content_type)
        return (
            f"{FIREBASE_DOWNLOAD_BASE}/{self.bucket.name}/o/"
            f"{quote(path, safe='')}?alt=media&token={token}"
        )


@dataclass
class CosStorageClient:
    """
    S3-compatible storage client for Tencent COS.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # Use virtual-hosted style addressing to satisfy COS requirements.
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def upload_bytes(
        self, path: str, data: bytes, content_type: str = "image/jpeg"
    ) -> str:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(path)}"
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=PRESIGNED_URL_EXPIRY,
        )
