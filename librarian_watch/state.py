# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
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

"""Persisted watcher state.

A single JSON document per workspace, stored through the storage
collaborator's key/value slot under :data:`WATCH_STATE_KEY`. Status and
diagnostic tooling read it; only the watcher writes it.

Every write is read-then-merge-then-write, so a stage that updates its own
fields never drops fields owned by another stage (or fields written by a newer
schema that this code does not know about).
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

WATCH_STATE_KEY = "librarian.watch_state.v1"
WATCH_STATE_SCHEMA_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WatchCursor(BaseModel):
    """Marker used to compute an incremental diff on the next start."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    kind: Literal["git", "none"] = "none"
    last_indexed_commit_sha: Optional[str] = Field(default=None, alias="lastIndexedCommitSha")


class WatchState(BaseModel):
    """Observable health of a workspace watcher."""

    model_config = ConfigDict(extra="allow")

    schema_version: int = WATCH_STATE_SCHEMA_VERSION
    workspace_root: Optional[str] = None
    watch_started_at: Optional[str] = None
    watch_last_heartbeat_at: Optional[str] = None
    watch_last_event_at: Optional[str] = None
    watch_last_reindex_ok_at: Optional[str] = None
    watch_last_reconcile_completed_at: Optional[str] = None
    suspected_dead: bool = False
    needs_catchup: bool = False
    storage_attached: bool = False
    last_error: Optional[str] = None
    cursor: WatchCursor = Field(default_factory=WatchCursor)
    effective_config: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[str] = None


def parse_watch_state(raw: Optional[str]) -> Optional[WatchState]:
    """Parse a stored document; None if missing or unreadable."""
    if not raw:
        return None
    try:
        return WatchState.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.debug(f"Ignoring unreadable watch state: {e}")
        return None


async def get_watch_state(storage: Any) -> Optional[WatchState]:
    """Read the watch state document from storage (status tooling entry point)."""
    if storage is None:
        return None
    raw = await storage.get_state(WATCH_STATE_KEY)
    return parse_watch_state(raw)


class WatchStateStore:
    """Read-modify-write access to the watch state document.

    The store keeps the last merged document in memory. While no storage is
    attached, updates accumulate there and are written out on attach.
    """

    def __init__(self, storage: Any = None):
        self._storage = storage
        self._lock = asyncio.Lock()
        self._snapshot: Dict[str, Any] = {}

    @property
    def snapshot(self) -> Dict[str, Any]:
        """Copy of the last merged document."""
        return json.loads(json.dumps(self._snapshot))

    def current(self) -> WatchState:
        return WatchState.model_validate(self.snapshot)

    async def _read(self) -> Dict[str, Any]:
        if self._storage is None:
            return dict(self._snapshot)
        try:
            raw = await self._storage.get_state(WATCH_STATE_KEY)
        except Exception as e:
            logger.warning(f"Failed to read watch state, using cached copy: {e}")
            return dict(self._snapshot)
        if not raw:
            return dict(self._snapshot)
        try:
            stored = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Stored watch state is not valid JSON, rewriting: {e}")
            return dict(self._snapshot)
        if not isinstance(stored, dict):
            return dict(self._snapshot)
        return stored

    async def _write(self, document: Dict[str, Any]) -> None:
        self._snapshot = document
        if self._storage is None:
            return
        try:
            await self._storage.set_state(WATCH_STATE_KEY, json.dumps(document, sort_keys=True))
        except Exception as e:
            logger.warning(f"Failed to persist watch state: {e}")

    async def load(self) -> Dict[str, Any]:
        """Refresh the cached copy from storage."""
        async with self._lock:
            self._snapshot = await self._read()
            return self.snapshot

    async def update(self, **fields: Any) -> Dict[str, Any]:
        """Merge ``fields`` into the stored document and write it back."""
        async with self._lock:
            document = await self._read()
            document.update(_jsonable(fields))
            document.setdefault("schema_version", WATCH_STATE_SCHEMA_VERSION)
            document["updated_at"] = utc_now_iso()
            await self._write(document)
            return self.snapshot

    async def attach(self, storage: Any, **fields: Any) -> Dict[str, Any]:
        """Switch to a new storage, carrying over in-memory updates."""
        async with self._lock:
            pending = dict(self._snapshot)
            self._storage = storage
            document = await self._read()
            document.update(pending)
            document.update(_jsonable(fields))
            document.setdefault("schema_version", WATCH_STATE_SCHEMA_VERSION)
            document["updated_at"] = utc_now_iso()
            await self._write(document)
            return self.snapshot

    def detach(self) -> None:
        self._storage = None


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", by_alias=True)
        result[key] = value
    return result
