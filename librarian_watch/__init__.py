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

"""Workspace Watcher Package.

Keeps the Librarian knowledge graph fresh while files change, providing:
- Debounced, bounded-window batching of raw filesystem events
- Storm detection that discards runaway batches and flags catch-up
- Checksum gating so only real content changes are reindexed
- Optional dependency cascade through graph import edges
- Catch-up reconciliation after downtime (git diff or filesystem scan)
- A persisted watch state document for status and health tooling

Package Structure:
    controller.py       - WatcherController, WatcherHandle, WatcherRegistry
    config.py           - WatchConfig (pydantic, YAML loading)
    scheduler.py        - Deterministic timer queue and clocks
    batcher.py          - Per-path debounce and batch windows
    storm.py            - Storm admission control
    classifier.py       - Checksum-based change classification
    cascade.py          - Dependency cascade waves
    reconcile.py        - Git and filesystem reconciliation
    state.py            - Watch state document and merge-on-write store
    health.py           - Derived health and degradation reasons
    event_source.py     - watchdog-backed event source
    ignore_patterns.py  - Include/exclude path filtering
    git.py              - Git CLI helpers
    protocol.py         - Storage and reindex collaborator contracts

Usage:
    from librarian_watch import WatcherRegistry, WatchConfig

    registry = WatcherRegistry()
    handle = await registry.start(
        "/path/to/project",
        reindexer=librarian,
        storage=storage,
        config=WatchConfig.from_yaml(".librarian/config.yaml"),
    )

    # Later: inspect or stop
    print(handle.status, handle.degraded_features)
    await registry.stop_all()
"""

from librarian_watch.config import WatchConfig
from librarian_watch.controller import (
    WatcherController,
    WatcherHandle,
    WatcherRegistry,
    WatcherStats,
    WatcherStatus,
)
from librarian_watch.health import WatchHealth, derive_watch_health, describe_watch_degradation
from librarian_watch.protocol import (
    CapabilityDescriptor,
    FileRecord,
    GraphEdgeRecord,
    ModuleRecord,
    ReindexProtocol,
    WatchStorageProtocol,
)
from librarian_watch.reconcile import ReconcileResult
from librarian_watch.scheduler import ManualClock, MonotonicClock, TaskScheduler
from librarian_watch.state import (
    WATCH_STATE_KEY,
    WatchCursor,
    WatchState,
    get_watch_state,
)
from librarian_watch.storm import WATCH_EVENT_STORM

__all__ = [
    # Watcher
    "WatcherController",
    "WatcherHandle",
    "WatcherRegistry",
    "WatcherStats",
    "WatcherStatus",
    "WatchConfig",
    # State and health
    "WATCH_STATE_KEY",
    "WATCH_EVENT_STORM",
    "WatchCursor",
    "WatchState",
    "WatchHealth",
    "get_watch_state",
    "derive_watch_health",
    "describe_watch_degradation",
    # Collaborators
    "CapabilityDescriptor",
    "FileRecord",
    "GraphEdgeRecord",
    "ModuleRecord",
    "ReindexProtocol",
    "WatchStorageProtocol",
    "ReconcileResult",
    # Timing
    "ManualClock",
    "MonotonicClock",
    "TaskScheduler",
]
