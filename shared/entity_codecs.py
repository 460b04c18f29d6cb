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

"""
Conversion between Firestore documents and the typed records in
`shared.records`.

Decoders never raise: missing or malformed fields fall back to the defaults
documented on each record. Encoders emit only the fields being set so that
documents can be written with merge semantics.
"""

import math
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from shared.records import (
    DEFAULT_AUTHOR_NAME,
    Comment,
    CoupleStats,
    JournalEntry,
    UserProfile,
    new_local_id,
    utc_now,
)

# Stats fields
ANNIVERSARY_DATE_FIELD = "anniversaryDate"
PHOTO_URL_FIELD = "photoURL"

# Entry fields
TITLE_FIELD = "title"
DATE_FIELD = "date"
CONTENT_FIELD = "content"
LOCATION_NAME_FIELD = "locationName"
LATITUDE_FIELD = "latitude"
LONGITUDE_FIELD = "longitude"
IMAGE_URLS_FIELD = "imageURLs"

# Comment fields
AUTHOR_ID_FIELD = "authorId"
AUTHOR_FIELD = "author"
AUTHOR_AVATAR_URL_FIELD = "authorAvatarURL"
TEXT_FIELD = "text"
CREATED_AT_FIELD = "createdAt"

# Profile fields
NAME_FIELD = "name"
AVATAR_URL_FIELD = "avatarURL"
UPDATED_AT_FIELD = "updatedAt"


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    # protobuf Timestamp values from the raw API
    to_datetime = getattr(value, "ToDatetime", None)
    if callable(to_datetime):
        try:
            return to_datetime(tzinfo=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
    return None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_url(value: Any) -> Optional[str]:
    # An empty string is not a usable URL.
    text = _as_str(value)
    return text or None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def decode_stats(doc: Optional[Mapping[str, Any]]) -> CoupleStats:
    doc = doc or {}
    return CoupleStats(
        anniversary_date=_as_datetime(doc.get(ANNIVERSARY_DATE_FIELD)) or utc_now(),
        photo_url=_as_url(doc.get(PHOTO_URL_FIELD)),
    )


def encode_stats_update(
    anniversary_date: Optional[datetime] = None, photo_url: Optional[str] = None
) -> dict:
    payload: dict = {}
    if anniversary_date is not None:
        payload[ANNIVERSARY_DATE_FIELD] = anniversary_date
    if photo_url is not None:
        payload[PHOTO_URL_FIELD] = photo_url
    return payload


def decode_entry(
    doc_id: str, doc: Optional[Mapping[str, Any]], local_id: Optional[str] = None
) -> JournalEntry:
    """
    Builds a JournalEntry from an entry document.

    A coordinate is kept only when both latitude and longitude decode.

    Args:
        doc_id (str): The Firestore document id, stored as the remote id.
        doc (Mapping): The document fields.
        local_id (str, optional): Local id to keep when the entry is already
            known locally. A new one is generated otherwise.
    """
    doc = doc or {}
    latitude = _as_float(doc.get(LATITUDE_FIELD))
    longitude = _as_float(doc.get(LONGITUDE_FIELD))
    if latitude is None or longitude is None:
        latitude = longitude = None

    return JournalEntry(
        local_id=local_id or new_local_id(),
        remote_id=doc_id,
        title=_as_str(doc.get(TITLE_FIELD)) or "",
        date=_as_datetime(doc.get(DATE_FIELD)) or utc_now(),
        content=_as_str(doc.get(CONTENT_FIELD)) or "",
        location_name=_as_str(doc.get(LOCATION_NAME_FIELD)) or "",
        latitude=latitude,
        longitude=longitude,
        images=[],
        image_urls=_as_str_list(doc.get(IMAGE_URLS_FIELD)),
    )


def encode_entry(entry: JournalEntry) -> dict:
    payload = {
        TITLE_FIELD: entry.title,
        DATE_FIELD: entry.date,
        CONTENT_FIELD: entry.content,
        LOCATION_NAME_FIELD: entry.location_name,
        IMAGE_URLS_FIELD: list(entry.image_urls),
    }
    coordinate = entry.coordinate
    if coordinate is not None:
        payload[LATITUDE_FIELD], payload[LONGITUDE_FIELD] = coordinate
    return payload


def decode_comment(doc_id: str, doc: Optional[Mapping[str, Any]]) -> Optional[Comment]:
    """Returns None when the document has no text; every other field defaults."""
    doc = doc or {}
    text = _as_str(doc.get(TEXT_FIELD))
    if text is None:
        return None
    return Comment(
        id=doc_id,
        text=text,
        author_id=_as_str(doc.get(AUTHOR_ID_FIELD)) or "",
        author=_as_str(doc.get(AUTHOR_FIELD)) or DEFAULT_AUTHOR_NAME,
        author_avatar_url=_as_url(doc.get(AUTHOR_AVATAR_URL_FIELD)),
        created_at=_as_datetime(doc.get(CREATED_AT_FIELD)) or utc_now(),
    )


def encode_comment(
    *,
    author_id: str,
    author: str,
    text: str,
    author_avatar_url: Optional[str] = None,
    created_at: Any = SERVER_TIMESTAMP,
) -> dict:
    payload = {
        AUTHOR_ID_FIELD: author_id,
        AUTHOR_FIELD: author,
        TEXT_FIELD: text,
        CREATED_AT_FIELD: created_at,
    }
    if author_avatar_url:
        payload[AUTHOR_AVATAR_URL_FIELD] = author_avatar_url
    return payload


def decode_profile(doc_id: str, doc: Optional[Mapping[str, Any]]) -> UserProfile:
    doc = doc or {}
    return UserProfile(
        id=doc_id,
        name=_as_str(doc.get(NAME_FIELD)) or DEFAULT_AUTHOR_NAME,
        avatar_url=_as_url(doc.get(AVATAR_URL_FIELD)),
        updated_at=_as_datetime(doc.get(UPDATED_AT_FIELD)) or utc_now(),
    )


def encode_profile_update(
    name: str, avatar_url: Optional[str] = None, updated_at: Any = SERVER_TIMESTAMP
) -> dict:
    payload = {NAME_FIELD: name, UPDATED_AT_FIELD: updated_at}
    if avatar_url:
        payload[AVATAR_URL_FIELD] = avatar_url
    return payload
