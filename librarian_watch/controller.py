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

"""Workspace watcher: wires event coalescing, admission, classification,
reindexing, cascade and reconciliation into one long-lived component.

Everything that mutates watcher state runs on a single asyncio event loop.
Raw events arriving on the observer thread are marshalled onto the loop with
``call_soon_threadsafe``; timers live in one :class:`TaskScheduler`; I/O
(checksums, storage, git, the Librarian reindex call) runs in tracked tasks so
new events are never blocked behind it.

Usage:
    registry = WatcherRegistry()
    handle = await registry.start(
        "/path/to/project",
        reindexer=librarian,
        storage=storage,
        config=WatchConfig(cascade_reindex=True),
    )
    ...
    await registry.stop_all()
"""

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Dict, FrozenSet, List, Optional, Set, Union

from librarian_watch.batcher import Batch, DebounceBatcher
from librarian_watch.cascade import CascadeExpander, CascadeWave
from librarian_watch.classifier import ChangeClassifier, ReindexOutcome
from librarian_watch.config import WatchConfig
from librarian_watch.event_source import WatchFunction, WatchHandle, WatchOptions, watchdog_watch
from librarian_watch.git import GitClient
from librarian_watch.ignore_patterns import PathFilter, to_relative_posix
from librarian_watch.protocol import CapabilityDescriptor, ReindexProtocol
from librarian_watch.reconcile import ReconcileResult, ReconciliationEngine
from librarian_watch.scheduler import ScheduledTask, TaskScheduler
from librarian_watch.state import (
    WATCH_STATE_SCHEMA_VERSION,
    WatchCursor,
    WatchState,
    WatchStateStore,
    utc_now_iso,
)
from librarian_watch.storm import WATCH_EVENT_STORM, StormGuard

logger = logging.getLogger(__name__)

FEATURE_CASCADE = "cascade"
FEATURE_RECONCILE = "reconcile"

SOURCE_BATCH = "batch"
SOURCE_RECONCILE = "reconcile"
SOURCE_CASCADE = "cascade"


class WatcherStatus(str, Enum):
    """Lifecycle state of a watcher.

    A watcher keeps running when an optional storage capability is missing.
    Such degradation is not a status of its own; it is reported through
    ``degraded_features`` (``"cascade"``, ``"reconcile"``) and in ``get_stats()``.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    WATCHING = "watching"
    STORM_DETECTED = "storm_detected"


@dataclass
class WatcherStats:
    raw_events: int = 0
    ignored_events: int = 0
    batches_emitted: int = 0
    batches_discarded: int = 0
    reindex_calls: int = 0
    reindex_failures: int = 0
    cascade_waves: int = 0
    reconciliations: int = 0


class WatcherController:
    """Keeps the knowledge graph of one workspace fresh as files change."""

    def __init__(
        self,
        workspace_root: Union[str, Path],
        reindexer: ReindexProtocol,
        storage: Any = None,
        config: Optional[WatchConfig] = None,
        watch: WatchFunction = watchdog_watch,
        git: Optional[GitClient] = None,
        scheduler: Optional[TaskScheduler] = None,
    ):
        """Initialize the watcher (nothing runs until start()).

        Args:
            workspace_root: Directory to watch
            reindexer: Librarian entry point with ``async reindex_files(paths)``
            storage: Storage collaborator; may be attached later
            config: Watch configuration (defaults apply when None)
            watch: Event source factory, watchdog-backed by default
            git: Git helper used by reconciliation and cursor updates
            scheduler: Timer queue; pass one with a ManualClock to drive time in tests
        """
        self.root = Path(workspace_root).resolve()
        self.config = config if config is not None else WatchConfig()
        self._reindexer = reindexer
        self._watch = watch
        self._git = git if git is not None else GitClient()
        self._scheduler = scheduler if scheduler is not None else TaskScheduler()

        self._filter = PathFilter(self.config.excludes, self.config.include_patterns)
        self._state = WatchStateStore(storage)
        self._classifier = ChangeClassifier(storage)
        self._batcher = DebounceBatcher(
            self._scheduler,
            self._on_batch,
            debounce_ms=self.config.debounce_ms,
            batch_window_ms=self.config.batch_window_ms,
        )
        self._storm = StormGuard(self.config.storm_threshold)
        self._cascade = CascadeExpander(
            self._scheduler,
            self._reindex_wave,
            self._spawn,
            delay_ms=self.config.cascade_delay_ms,
            batch_size=self.config.cascade_batch_size,
            edge_type=self.config.dependency_edge_type,
        )
        self._reconciler = ReconciliationEngine(
            self.root, self._filter, self._state, self._process_paths, git=self._git
        )

        self._storage: Any = None
        self._capabilities = CapabilityDescriptor()
        self._attach_collaborators(storage)

        self._status = WatcherStatus.STOPPED
        self._watch_handle: Optional[WatchHandle] = None
        self._runner: Optional[asyncio.Task] = None
        self._heartbeat_timer: Optional[ScheduledTask] = None
        self._tasks: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._last_event_at: Optional[str] = None
        self.stats = WatcherStats()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def status(self) -> WatcherStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status is not WatcherStatus.STOPPED

    @property
    def capabilities(self) -> CapabilityDescriptor:
        return self._capabilities

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    @property
    def degraded_features(self) -> FrozenSet[str]:
        degraded = set()
        if self._cascade.disabled:
            degraded.add(FEATURE_CASCADE)
        if self._reconciler.disabled:
            degraded.add(FEATURE_RECONCILE)
        return frozenset(degraded)

    def watch_state(self) -> WatchState:
        """Last merged watch state document."""
        return self._state.current()

    def get_stats(self) -> Dict[str, Any]:
        """Counters plus a snapshot of in-flight work."""
        open_batch = self._batcher.open_batch
        return {
            **asdict(self.stats),
            "status": self._status.value,
            "degraded_features": sorted(self.degraded_features),
            "pending_paths": len(self._batcher.pending),
            "open_batch_paths": len(open_batch.paths) if open_batch else 0,
            "scheduled_timers": len(self._scheduler),
            "in_flight_tasks": len(self._tasks),
            "cascade_chains": len(self._cascade.active_chains),
            "storms_detected": self._storm.storms_detected,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "WatcherHandle":
        """Open the event source, record watch state and kick off reconciliation.

        Raises:
            RuntimeError: If the watcher is already running
            Exception: Whatever the event source raised while opening
        """
        if self.is_running:
            raise RuntimeError(f"Watcher for {self.root} is already running. Call stop() first.")

        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._status = WatcherStatus.STARTING

        try:
            self._watch_handle = self._watch(
                self.root, WatchOptions(recursive=self.config.recursive), self._on_raw_event
            )
        except Exception as e:
            logger.error(f"Failed to open file watch for {self.root}: {e}")
            await self._state.update(last_error=f"watch_start_failed: {e}")
            await self.stop()
            raise

        if self._scheduler.is_realtime:
            self._runner = asyncio.create_task(self._scheduler.run(), name="watch-scheduler")

        now = utc_now_iso()
        await self._state.update(
            schema_version=WATCH_STATE_SCHEMA_VERSION,
            workspace_root=str(self.root),
            watch_started_at=now,
            watch_last_heartbeat_at=now,
            suspected_dead=False,
            needs_catchup=True,
            storage_attached=self._storage is not None,
            effective_config=self.config.effective_config(),
        )
        self._arm_heartbeat()
        self._spawn(self._startup_reconcile(), "reconcile:start")

        logger.info(
            f"Watching {self.root} (debounce={self.config.debounce_ms}ms, "
            f"batch_window={self.config.batch_window_ms}ms, "
            f"cascade={'on' if self.config.cascade_reindex else 'off'})"
        )
        return WatcherHandle(self)

    async def stop(self) -> None:
        """Cancel all timers and in-flight work and release the event source.

        Safe to call repeatedly and after a failed start().
        """
        was_running = self.is_running
        self._status = WatcherStatus.STOPPED

        self._scheduler.halt()
        self._batcher.cancel()
        self._cascade.cancel()
        self._scheduler.cancel_all()
        self._heartbeat_timer = None

        handle, self._watch_handle = self._watch_handle, None
        if handle is not None:
            try:
                handle.close()
            except Exception as e:
                logger.warning(f"Error closing file watch for {self.root}: {e}")

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if was_running:
            logger.info(f"Stopped watching {self.root}")

    async def wait_idle(self) -> None:
        """Wait until no pipeline, cascade or reconcile task is running."""
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._tasks if t is not current and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Storage attachment
    # ------------------------------------------------------------------

    def _attach_collaborators(self, storage: Any) -> None:
        self._storage = storage
        self._capabilities = CapabilityDescriptor.detect(storage)
        self._classifier.attach(storage)
        self._cascade.attach(storage, self._capabilities)
        self._reconciler.attach(storage, self._capabilities)

    async def attach_storage(self, storage: Any) -> None:
        """Attach (or replace) storage and reconcile against it."""
        self._attach_collaborators(storage)
        await self._state.attach(storage, storage_attached=True)
        logger.info(f"Storage attached to watcher for {self.root}")
        if self.is_running:
            self._spawn(self._run_reconcile(), "reconcile:attach")

    async def detach_storage(self) -> None:
        """Stop using storage; live events are still batched and reindexed."""
        await self._state.update(storage_attached=False)
        self._state.detach()
        self._attach_collaborators(None)
        logger.info(f"Storage detached from watcher for {self.root}")

    # ------------------------------------------------------------------
    # Raw events
    # ------------------------------------------------------------------

    def _on_raw_event(self, event_type: str, relative_path: str) -> None:
        """Event source callback; may run on the observer thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if threading.get_ident() == self._loop_thread:
            self._handle_raw_event(event_type, relative_path)
            return
        try:
            loop.call_soon_threadsafe(self._handle_raw_event, event_type, relative_path)
        except RuntimeError:
            # Loop shut down between the check and the call
            pass

    def _handle_raw_event(self, event_type: str, relative_path: str) -> None:
        if not self.is_running:
            return
        rel = to_relative_posix(self.root, relative_path)
        if rel is None or not self._filter.accepts(rel):
            self.stats.ignored_events += 1
            return

        self.stats.raw_events += 1
        self._last_event_at = utc_now_iso()
        self._storm.record_event()
        self._batcher.on_event(str(self.root / rel))
        logger.debug(f"File {event_type}: {rel}")

    def _drain_event_marks(self) -> Dict[str, Any]:
        if self._last_event_at is None:
            return {}
        marks = {"watch_last_event_at": self._last_event_at}
        self._last_event_at = None
        return marks

    # ------------------------------------------------------------------
    # Batch pipeline
    # ------------------------------------------------------------------

    def _on_batch(self, batch: Batch) -> None:
        """Batch deadline reached (runs inside the scheduler)."""
        self.stats.batches_emitted += 1
        if not self._storm.admit(batch):
            self.stats.batches_discarded += 1
            self._status = WatcherStatus.STORM_DETECTED
            self._spawn(
                self._state.update(
                    last_error=WATCH_EVENT_STORM, needs_catchup=True, **self._drain_event_marks()
                ),
                "state:storm",
            )
            return

        if self._status is WatcherStatus.STORM_DETECTED:
            self._status = WatcherStatus.WATCHING
        self._spawn(self._process_batch(batch), f"batch:{batch.epoch}")

    async def _process_batch(self, batch: Batch) -> None:
        marks = self._drain_event_marks()
        if marks:
            await self._state.update(**marks)
        await self._process_paths(batch.sorted_paths(), SOURCE_BATCH)

    async def _process_paths(self, paths: List[str], source: str) -> ReindexOutcome:
        """Classify candidates, reindex the real changes, then cascade."""
        classified = await self._classifier.classify(paths)
        outcome = ReindexOutcome(classified=classified)
        if classified.failed:
            await self._state.update(needs_catchup=True)

        to_reindex = classified.to_reindex()
        if not to_reindex:
            logger.debug(f"No real changes among {len(paths)} candidate(s) ({source})")
            return outcome

        outcome.ok = await self._reindex(to_reindex, source)
        if not outcome.ok:
            outcome.error = self._state.snapshot.get("last_error")
            return outcome

        outcome.reindexed = to_reindex
        if source == SOURCE_BATCH:
            await self._advance_cursor()
        if self.config.cascade_reindex:
            await self._cascade.on_primary_reindexed(to_reindex)
        return outcome

    async def _reindex(self, paths: List[str], source: str) -> bool:
        self.stats.reindex_calls += 1
        try:
            await self._reindexer.reindex_files(list(paths))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.reindex_failures += 1
            logger.warning(f"Reindex of {len(paths)} file(s) failed ({source}): {e}")
            await self._state.update(last_error=f"watch_reindex_failed: {e}", needs_catchup=True)
            return False

        await self._state.update(watch_last_reindex_ok_at=utc_now_iso())
        logger.info(f"Reindexed {len(paths)} file(s) ({source})")
        return True

    async def _reindex_wave(self, wave: CascadeWave) -> bool:
        self.stats.cascade_waves += 1
        return await self._reindex(wave.sorted_paths(), SOURCE_CASCADE)

    async def _advance_cursor(self) -> None:
        """Move the git cursor to HEAD after a live batch, unless catch-up is pending."""
        if self._state.snapshot.get("needs_catchup"):
            return
        sha = await self._git.get_current_sha(self.root)
        if sha:
            await self._state.update(cursor=WatchCursor(kind="git", last_indexed_commit_sha=sha))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _run_reconcile(self) -> Optional[ReconcileResult]:
        self.stats.reconciliations += 1
        result = await self._reconciler.run()
        if result is not None and result.ok:
            await self._state.update(last_error=None)
        return result

    async def _startup_reconcile(self) -> None:
        try:
            await self._run_reconcile()
        finally:
            if self._status is WatcherStatus.STARTING:
                self._status = WatcherStatus.WATCHING

    async def reconcile(self) -> Optional[ReconcileResult]:
        """Run a reconciliation pass now and wait for it."""
        task = self._spawn(self._run_reconcile(), "reconcile:manual")
        if task is None:
            return None
        return await task

    # ------------------------------------------------------------------
    # Heartbeat and task plumbing
    # ------------------------------------------------------------------

    def _arm_heartbeat(self) -> None:
        self._heartbeat_timer = self._scheduler.call_later(
            self.config.heartbeat_interval_ms, self._on_heartbeat, name="heartbeat"
        )

    def _on_heartbeat(self) -> None:
        self._spawn(
            self._state.update(
                watch_last_heartbeat_at=utc_now_iso(),
                suspected_dead=False,
                **self._drain_event_marks(),
            ),
            "state:heartbeat",
        )
        self._arm_heartbeat()

    def _spawn(self, coro: Awaitable[Any], name: str) -> Optional[asyncio.Task]:
        """Run a coroutine as a tracked task; failures are logged, never raised."""
        if not self.is_running or self._loop is None:
            if asyncio.iscoroutine(coro):
                coro.close()
            return None
        task = self._loop.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any], name: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Watcher task '{name}' failed: {e}")
            return None


class WatcherHandle:
    """Caller-facing handle for a running watcher."""

    def __init__(self, controller: WatcherController):
        self._controller = controller

    @property
    def workspace_root(self) -> Path:
        return self._controller.root

    @property
    def config(self) -> WatchConfig:
        return self._controller.config

    @property
    def status(self) -> WatcherStatus:
        return self._controller.status

    @property
    def is_running(self) -> bool:
        return self._controller.is_running

    @property
    def degraded_features(self) -> FrozenSet[str]:
        return self._controller.degraded_features

    @property
    def controller(self) -> WatcherController:
        return self._controller

    def watch_state(self) -> WatchState:
        return self._controller.watch_state()

    def stats(self) -> Dict[str, Any]:
        return self._controller.get_stats()

    async def attach_storage(self, storage: Any) -> None:
        await self._controller.attach_storage(storage)

    async def detach_storage(self) -> None:
        await self._controller.detach_storage()

    async def reconcile(self) -> Optional[ReconcileResult]:
        return await self._controller.reconcile()

    async def wait_idle(self) -> None:
        await self._controller.wait_idle()

    async def stop(self) -> None:
        await self._controller.stop()


class WatcherRegistry:
    """Tracks one watcher per workspace root for the caller that owns it."""

    def __init__(self) -> None:
        self._handles: Dict[str, WatcherHandle] = {}

    @staticmethod
    def _key(workspace_root: Union[str, Path]) -> str:
        return str(Path(workspace_root).resolve())

    async def start(
        self,
        workspace_root: Union[str, Path],
        reindexer: ReindexProtocol,
        **kwargs: Any,
    ) -> WatcherHandle:
        """Start a watcher, or return the running one for this root."""
        key = self._key(workspace_root)
        existing = self._handles.get(key)
        if existing is not None and existing.is_running:
            logger.debug(f"Watcher for {key} already running")
            return existing

        controller = WatcherController(workspace_root, reindexer, **kwargs)
        handle = await controller.start()
        self._handles[key] = handle
        return handle

    def get(self, workspace_root: Union[str, Path]) -> Optional[WatcherHandle]:
        return self._handles.get(self._key(workspace_root))

    async def stop(self, workspace_root: Union[str, Path]) -> bool:
        handle = self._handles.pop(self._key(workspace_root), None)
        if handle is None:
            return False
        await handle.stop()
        return True

    async def stop_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.stop()

    def __contains__(self, workspace_root: object) -> bool:
        if not isinstance(workspace_root, (str, Path)):
            return False
        return self._key(workspace_root) in self._handles

    def __len__(self) -> int:
        return len(self._handles)
