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

# Firestore collection names
COUPLES_COLLECTION = "couples"
META_COLLECTION = "meta"
STATS_DOCUMENT = "stats"
ENTRIES_COLLECTION = "entries"
COMMENTS_COLLECTION = "comments"
PROFILES_COLLECTION = "profiles"

# Object storage file names
STATS_PHOTO_FILE = "main.jpg"
AVATAR_FILE = "avatar.jpg"


def couple_root(couple_id: str) -> str:
    return f"{COUPLES_COLLECTION}/{couple_id}"


def stats_document(couple_id: str) -> str:
    return f"{couple_root(couple_id)}/{META_COLLECTION}/{STATS_DOCUMENT}"


def entries_collection(couple_id: str) -> str:
    return f"{couple_root(couple_id)}/{ENTRIES_COLLECTION}"


def entry_document(couple_id: str, entry_id: str) -> str:
    return f"{entries_collection(couple_id)}/{entry_id}"


def comments_collection(couple_id: str, entry_id: str) -> str:
    return f"{entry_document(couple_id, entry_id)}/{COMMENTS_COLLECTION}"


def comment_document(couple_id: str, entry_id: str, comment_id: str) -> str:
    return f"{comments_collection(couple_id, entry_id)}/{comment_id}"


def profiles_collection(couple_id: str) -> str:
    return f"{couple_root(couple_id)}/{PROFILES_COLLECTION}"


def profile_document(couple_id: str, user_id: str) -> str:
    return f"{profiles_collection(couple_id)}/{user_id}"


def stats_photo_object(couple_id: str) -> str:
    """Storage path of the couple's cover photo."""
    return f"{couple_root(couple_id)}/stats/{STATS_PHOTO_FILE}"


def entry_image_object(couple_id: str, entry_id: str, index: int) -> str:
    """Storage path of the image at `index` for an entry document."""
    return f"{couple_root(couple_id)}/entries/{entry_id}/img_{index}.jpg"


def avatar_object(couple_id: str, user_id: str) -> str:
    return f"{couple_root(couple_id)}/profiles/{user_id}/{AVATAR_FILE}"


def parent_collection(document_path: str) -> str:
    """Returns the collection path that contains `document_path`."""
    return document_path.rsplit("/", 1)[0]
