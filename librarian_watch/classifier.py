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

"""Freshness gate between batching and reindexing.

A path is kept only if its on-disk checksum differs from the one the index
recorded. Paths that no longer exist are passed through as deletions while the
index still holds a checksum for them; removing them from the graph is the
indexer's job. Once the index has forgotten a path, its absence is a no-op.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from librarian_watch.checksums import checksum_path

logger = logging.getLogger(__name__)

# Bound on concurrent checksum reads + storage lookups
_MAX_CONCURRENT_CHECKS = 16


@dataclass
class ClassifiedChanges:
    """Outcome of classifying a set of candidate paths."""

    changed: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)  # transient errors, retried later

    def to_reindex(self) -> List[str]:
        return sorted(set(self.changed) | set(self.deleted))

    def is_noop(self) -> bool:
        return not self.changed and not self.deleted


class ChangeClassifier:
    """Drops candidate paths whose content matches the indexed checksum."""

    CHANGED = "changed"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    FAILED = "failed"

    def __init__(self, storage: Any = None):
        self._storage = storage

    def attach(self, storage: Any) -> None:
        self._storage = storage

    async def _classify_missing(self, path: str) -> str:
        """A missing file is a deletion only while the index still knows it."""
        if self._storage is None:
            return self.DELETED
        try:
            stored: Optional[str] = await self._storage.get_file_checksum(path)
        except Exception as e:
            logger.warning(f"Failed to read stored checksum for {path}: {e}")
            return self.FAILED
        if stored is None:
            logger.debug(f"Already removed from index, skipping: {path}")
            return self.UNCHANGED
        return self.DELETED

    async def classify_path(self, path: str) -> str:
        if not os.path.exists(path):
            return await self._classify_missing(path)

        try:
            current = await asyncio.to_thread(checksum_path, path)
        except FileNotFoundError:
            return await self._classify_missing(path)
        except OSError as e:
            logger.warning(f"Failed to checksum {path}: {e}")
            return self.FAILED

        if self._storage is None:
            return self.CHANGED

        try:
            stored: Optional[str] = await self._storage.get_file_checksum(path)
        except Exception as e:
            logger.warning(f"Failed to read stored checksum for {path}: {e}")
            return self.FAILED

        if stored is not None and stored == current:
            logger.debug(f"Checksum unchanged, skipping: {path}")
            return self.UNCHANGED
        return self.CHANGED

    async def classify(self, paths: Iterable[str]) -> ClassifiedChanges:
        """Classify every path; duplicates are collapsed."""
        candidates = sorted(set(paths))
        result = ClassifiedChanges()
        if not candidates:
            return result

        semaphore = asyncio.Semaphore(_MAX_CONCURRENT_CHECKS)

        async def _check(path: str) -> str:
            async with semaphore:
                return await self.classify_path(path)

        outcomes = await asyncio.gather(*(_check(p) for p in candidates))
        buckets = {
            self.CHANGED: result.changed,
            self.DELETED: result.deleted,
            self.UNCHANGED: result.unchanged,
            self.FAILED: result.failed,
        }
        for path, outcome in zip(candidates, outcomes):
            buckets[outcome].append(path)
        return result


@dataclass
class ReindexOutcome:
    """Result of pushing candidate paths through classify + reindex."""

    classified: ClassifiedChanges = field(default_factory=ClassifiedChanges)
    reindexed: List[str] = field(default_factory=list)
    ok: bool = True
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        """True when nothing is left stale (no failures, no transient errors)."""
        return self.ok and not self.classified.failed
