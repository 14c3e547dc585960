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

"""Catch-up reconciliation after downtime or storage re-attachment.

Two strategies, chosen by the persisted cursor:

- **git**: when the cursor holds a commit SHA and the workspace is a git
  repository, only paths in ``git diff <sha> HEAD`` plus uncommitted changes
  are candidates. The cursor moves to HEAD once their reindex has gone through.
- **filesystem**: otherwise every file the index knows (``storage.get_files()``)
  and every matching file on disk is a candidate, and the checksum classifier
  finds the stale ones. Without ``get_files`` the filesystem strategy is
  disabled for the watcher's lifetime after a single warning; in a git
  repository the cursor is then baselined at HEAD (uncommitted changes are
  still reconciled) so that later runs can use the git strategy.

Candidates always go through the same classify-and-reindex pipeline as live
batches, which is what makes a repeated run with no real changes a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Set

from librarian_watch.classifier import ReindexOutcome
from librarian_watch.git import GitClient
from librarian_watch.ignore_patterns import PathFilter, to_relative_posix
from librarian_watch.protocol import CapabilityDescriptor
from librarian_watch.state import WatchCursor, WatchStateStore, utc_now_iso

logger = logging.getLogger(__name__)

STRATEGY_GIT = "git"
STRATEGY_GIT_BASELINE = "git-baseline"
STRATEGY_FILESYSTEM = "filesystem"
STRATEGY_SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    strategy: str
    candidates: int = 0
    reindexed: List[str] = field(default_factory=list)
    ok: bool = True
    cursor_sha: Optional[str] = None


class ReconciliationEngine:
    """Aligns the index with the workspace after missed events."""

    def __init__(
        self,
        workspace_root: Path,
        path_filter: PathFilter,
        state_store: WatchStateStore,
        process_paths: Callable[[List[str], str], Awaitable[ReindexOutcome]],
        git: Optional[GitClient] = None,
    ):
        """Initialize the engine.

        Args:
            workspace_root: Resolved workspace root
            path_filter: Include/exclude rules shared with the live watcher
            state_store: Watch state document (cursor, needs_catchup)
            process_paths: Classify-and-reindex pipeline for candidate paths
            git: Git helper; defaults to the CLI-backed client
        """
        self.root = workspace_root
        self._filter = path_filter
        self._state = state_store
        self._process_paths = process_paths
        self._git = git if git is not None else GitClient()

        self._storage: Any = None
        self._capabilities = CapabilityDescriptor()
        self._disabled = False
        self._warned = False
        self._running = False
        self._rerun_requested = False
        self.runs = 0

    def attach(self, storage: Any, capabilities: CapabilityDescriptor) -> None:
        self._storage = storage
        self._capabilities = capabilities

    @property
    def disabled(self) -> bool:
        """True once the filesystem strategy was found unavailable."""
        return self._disabled

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> Optional[ReconcileResult]:
        """Reconcile now. A trigger during a run is folded into one more pass."""
        if self._running:
            self._rerun_requested = True
            logger.debug("Reconcile already running, queued another pass")
            return None

        self._running = True
        try:
            result = await self._run_once()
            while self._rerun_requested:
                self._rerun_requested = False
                result = await self._run_once()
            return result
        finally:
            self._running = False

    async def _run_once(self) -> ReconcileResult:
        self.runs += 1
        cursor = self._state.current().cursor
        result: Optional[ReconcileResult] = None
        if cursor.kind == "git" and cursor.last_indexed_commit_sha:
            result = await self._reconcile_git(cursor.last_indexed_commit_sha)
        if result is None:
            result = await self._reconcile_filesystem()

        if result.ok and result.strategy != STRATEGY_SKIPPED:
            fields: dict = {
                "needs_catchup": False,
                "watch_last_reconcile_completed_at": utc_now_iso(),
            }
            if result.cursor_sha:
                fields["cursor"] = WatchCursor(kind="git", last_indexed_commit_sha=result.cursor_sha)
            await self._state.update(**fields)
            logger.info(
                f"Watch reconcile ({result.strategy}) complete: "
                f"{result.candidates} candidate(s), {len(result.reindexed)} reindexed"
            )
        elif not result.ok:
            await self._state.update(needs_catchup=True)
        return result

    async def _reconcile_git(self, since_sha: str) -> Optional[ReconcileResult]:
        head = await self._git.get_current_sha(self.root)
        if head is None:
            logger.debug("Git cursor present but workspace is not a git repository")
            return None

        committed = await self._git.get_diff_names(self.root, since_sha)
        if committed is None:
            logger.info(f"Cannot diff from {since_sha[:12]}, falling back to full reconcile")
            return None
        uncommitted = await self._git.get_status_changes(self.root)

        rel_paths: Set[str] = set(committed.all_paths())
        if uncommitted is not None:
            rel_paths.update(uncommitted.all_paths())
        candidates = sorted(
            str(self.root / rel) for rel in rel_paths if self._filter.accepts(rel)
        )

        outcome = await self._process_paths(candidates, "reconcile")
        return ReconcileResult(
            strategy=STRATEGY_GIT,
            candidates=len(candidates),
            reindexed=outcome.reindexed,
            ok=outcome.complete,
            cursor_sha=head if outcome.ok else None,
        )

    async def _baseline_git_cursor(self) -> ReconcileResult:
        """Start a git cursor at HEAD when a full listing is impossible.

        Only uncommitted changes are candidates; anything committed while no
        watcher ran before this point cannot be recovered without get_files.
        """
        head = await self._git.get_current_sha(self.root)
        if head is None:
            return ReconcileResult(strategy=STRATEGY_SKIPPED, ok=False)

        uncommitted = await self._git.get_status_changes(self.root)
        rel_paths = uncommitted.all_paths() if uncommitted is not None else []
        candidates = sorted(
            {str(self.root / rel) for rel in rel_paths if self._filter.accepts(rel)}
        )

        outcome = await self._process_paths(candidates, "reconcile")
        if outcome.complete:
            logger.info(f"Watch reconcile baselined git cursor at {head[:12]}")
        return ReconcileResult(
            strategy=STRATEGY_GIT_BASELINE,
            candidates=len(candidates),
            reindexed=outcome.reindexed,
            ok=outcome.complete,
            cursor_sha=head if outcome.ok else None,
        )

    def _filesystem_available(self) -> bool:
        if self._disabled:
            return False
        if self._storage is None:
            return False
        if not self._capabilities.supports_reconcile:
            self._disabled = True
            if not self._warned:
                self._warned = True
                logger.warning("Watch reconcile disabled: storage lacks get_files")
            return False
        return True

    async def _reconcile_filesystem(self) -> ReconcileResult:
        if not self._filesystem_available():
            if self._storage is None:
                return ReconcileResult(strategy=STRATEGY_SKIPPED, ok=False)
            return await self._baseline_git_cursor()

        try:
            records = await self._storage.get_files()
        except Exception as e:
            logger.warning(f"Watch reconcile could not list indexed files: {e}")
            return ReconcileResult(strategy=STRATEGY_FILESYSTEM, ok=False)

        candidates: Set[str] = set()
        for record in records:
            rel = to_relative_posix(self.root, record.path)
            if rel is not None and self._filter.accepts(rel):
                candidates.add(str(self.root / rel))

        on_disk = await asyncio.to_thread(lambda: list(self._filter.walk(self.root)))
        candidates.update(str(self.root / rel) for rel in on_disk)

        outcome = await self._process_paths(sorted(candidates), "reconcile")
        head = await self._git.get_current_sha(self.root) if outcome.ok else None
        return ReconcileResult(
            strategy=STRATEGY_FILESYSTEM,
            candidates=len(candidates),
            reindexed=outcome.reindexed,
            ok=outcome.complete,
            cursor_sha=head,
        )
