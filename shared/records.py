# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Dict, List, Optional, Tuple

DEFAULT_AUTHOR_NAME = "Partner"
DEFAULT_OWN_PROFILE_NAME = "Me"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_local_id() -> str:
    return uuid.uuid4().hex


@dataclass
class CoupleStats:
    """The couple's singleton stats document."""

    anniversary_date: datetime = field(default_factory=utc_now)
    photo_url: Optional[str] = None


@dataclass
class JournalEntry:
    """
    A journal memory.

    `local_id` identifies the entry for the whole session and is never synced.
    `remote_id` is the Firestore document id and stays None until the entry
    has been saved once. `images` holds transient image bytes for display and
    upload; only `image_urls` is persisted.
    """

    local_id: str = field(default_factory=new_local_id)
    remote_id: Optional[str] = None
    title: str = ""
    date: datetime = field(default_factory=utc_now)
    content: str = ""
    location_name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    images: List[bytes] = field(default_factory=list, repr=False)
    image_urls: List[str] = field(default_factory=list)

    @property
    def coordinate(self) -> Optional[Tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return self.latitude, self.longitude


@dataclass
class Comment:
    """A comment stored under an entry's comments subcollection."""

    text: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()).upper())
    author_id: str = ""
    author: str = DEFAULT_AUTHOR_NAME
    author_avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class UserProfile:
    id: str
    name: str = DEFAULT_AUTHOR_NAME
    avatar_url: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class RemoteDocument:
    """A document as delivered by a collection snapshot."""

    id: str
    data: Dict[str, Any]


class SyncStatus(StrEnum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a sync operation, surfaced to the UI layer."""

    status: SyncStatus
    value: Any = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @classmethod
    def succeeded(cls, value: Any = None) -> "SyncResult":
        return cls(SyncStatus.SUCCESS, value=value)

    @classmethod
    def failed(cls, reason: str) -> "SyncResult":
        return cls(SyncStatus.FAILED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "SyncResult":
        return cls(SyncStatus.SKIPPED, reason=reason)
