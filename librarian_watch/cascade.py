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

"""Dependency cascade: reindex the files that depend on what just changed.

After a primary batch is reindexed, the expander asks the graph which modules
import the changed modules and reindexes those files in delayed secondary
waves. Each primary batch starts its own chain. A chain remembers every path
it has reindexed or queued, at any depth, so import cycles cannot make it run
forever. Waves are capped at ``batch_size`` paths; the excess waits for the
next wave of the same chain.

Cascade needs ``get_module_by_path``, ``get_graph_edges`` and ``get_module``
from storage. Without them the first cascade attempt logs a single warning and
cascade stays off for the lifetime of the watcher.
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from librarian_watch.protocol import CapabilityDescriptor
from librarian_watch.scheduler import ScheduledTask, TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class CascadeWave:
    """A secondary reindex wave."""

    paths: Set[str]
    source_depth: int
    scheduled_at: float

    def sorted_paths(self) -> List[str]:
        return sorted(self.paths)


@dataclass
class CascadeChain:
    """Visited set and work queue for one primary batch."""

    chain_id: int
    visited: Set[str] = field(default_factory=set)
    queue: Deque[Tuple[str, int]] = field(default_factory=deque)  # (path, depth)
    timer: Optional[ScheduledTask] = field(default=None, repr=False)
    waves_run: int = 0

    def enqueue(self, paths: Iterable[str], depth: int) -> List[str]:
        """Queue paths not seen before in this chain. Returns the new ones."""
        added = []
        for path in sorted(set(paths)):
            if path in self.visited:
                continue
            self.visited.add(path)
            self.queue.append((path, depth))
            added.append(path)
        return added

    def next_wave(self, batch_size: int, now: float) -> Optional[CascadeWave]:
        if not self.queue:
            return None
        paths: Set[str] = set()
        depth = self.queue[0][1]
        while self.queue and len(paths) < batch_size:
            path, path_depth = self.queue.popleft()
            paths.add(path)
            depth = max(depth, path_depth)
        return CascadeWave(paths=paths, source_depth=depth, scheduled_at=now)


class CascadeExpander:
    """Finds dependents through the graph and schedules cascade waves."""

    def __init__(
        self,
        scheduler: TaskScheduler,
        reindex_wave: Callable[[CascadeWave], Awaitable[bool]],
        spawn: Callable[[Awaitable[Any], str], Any],
        delay_ms: float = 2000,
        batch_size: int = 50,
        edge_type: str = "imports",
    ):
        """Initialize the expander.

        Args:
            scheduler: Timer queue shared with the rest of the watcher
            reindex_wave: Coroutine that reindexes a wave; returns True on success
            spawn: Starts a tracked background task for a coroutine
            delay_ms: Delay between a wave becoming ready and running it
            batch_size: Maximum paths per wave
            edge_type: Dependency edge type to follow
        """
        self._scheduler = scheduler
        self._reindex_wave = reindex_wave
        self._spawn = spawn
        self.delay_ms = delay_ms
        self.batch_size = batch_size
        self.edge_type = edge_type

        self._storage: Any = None
        self._capabilities = CapabilityDescriptor()
        self._disabled = False
        self._warned = False
        self._chains: Dict[int, CascadeChain] = {}
        self._chain_ids = itertools.count(1)
        self.waves_run = 0

    def attach(self, storage: Any, capabilities: CapabilityDescriptor) -> None:
        self._storage = storage
        self._capabilities = capabilities

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def active_chains(self) -> List[CascadeChain]:
        return list(self._chains.values())

    def is_available(self) -> bool:
        """Whether cascade can run now; degrades permanently on missing capabilities."""
        if self._disabled:
            return False
        if self._storage is None:
            return False
        if not self._capabilities.supports_cascade:
            self._disabled = True
            if not self._warned:
                self._warned = True
                missing = ", ".join(self._capabilities.missing_for_cascade())
                logger.warning(f"Cascade reindex disabled: storage lacks {missing}")
            return False
        return True

    async def find_dependents(self, paths: Iterable[str]) -> List[str]:
        """Files whose modules have a dependency edge into any of ``paths``."""
        storage = self._storage
        sources = sorted(set(paths))
        if storage is None or not sources:
            return []

        try:
            modules = await asyncio.gather(*(storage.get_module_by_path(p) for p in sources))
        except Exception as e:
            logger.warning(f"Cascade module lookup failed: {e}")
            return []
        module_ids = sorted({m.id for m in modules if m is not None})
        if not module_ids:
            return []

        try:
            edges = await storage.get_graph_edges(
                edge_types=[self.edge_type], to_ids=module_ids, from_types=["module"]
            )
        except Exception as e:
            logger.warning(f"Cascade edge query failed: {e}")
            return []
        dependent_ids = sorted({e.from_id for e in edges} - set(module_ids))
        if not dependent_ids:
            return []

        try:
            dependents = await asyncio.gather(*(storage.get_module(i) for i in dependent_ids))
        except Exception as e:
            logger.warning(f"Cascade dependent lookup failed: {e}")
            return []
        source_set = set(sources)
        return sorted({m.path for m in dependents if m is not None and m.path not in source_set})

    async def on_primary_reindexed(self, paths: Iterable[str]) -> Optional[CascadeChain]:
        """Start a chain for a successfully reindexed primary batch."""
        seeds = sorted(set(paths))
        if not seeds or not self.is_available():
            return None

        chain = CascadeChain(chain_id=next(self._chain_ids), visited=set(seeds))
        dependents = await self.find_dependents(seeds)
        if not chain.enqueue(dependents, depth=1):
            logger.debug(f"No dependents to cascade for {len(seeds)} file(s)")
            return None

        self._chains[chain.chain_id] = chain
        logger.debug(f"Cascade chain {chain.chain_id}: {len(chain.queue)} dependent(s) queued")
        self._arm(chain)
        return chain

    def _arm(self, chain: CascadeChain) -> None:
        chain.timer = self._scheduler.call_later(
            self.delay_ms, lambda: self._fire(chain), name=f"cascade:{chain.chain_id}"
        )

    def _fire(self, chain: CascadeChain) -> None:
        chain.timer = None
        if chain.chain_id not in self._chains:
            return
        wave = chain.next_wave(self.batch_size, self._scheduler.now())
        if wave is None:
            self._chains.pop(chain.chain_id, None)
            return
        self._spawn(self._run_wave(chain, wave), f"cascade-wave:{chain.chain_id}")

    async def _run_wave(self, chain: CascadeChain, wave: CascadeWave) -> None:
        chain.waves_run += 1
        self.waves_run += 1
        ok = await self._reindex_wave(wave)
        if chain.chain_id not in self._chains:
            return
        if ok:
            dependents = await self.find_dependents(wave.paths)
            chain.enqueue(dependents, depth=wave.source_depth + 1)
        if chain.queue:
            self._arm(chain)
        else:
            self._chains.pop(chain.chain_id, None)
            logger.debug(f"Cascade chain {chain.chain_id} finished after {chain.waves_run} wave(s)")

    def cancel(self) -> None:
        """Drop every chain and its pending wave timer."""
        for chain in self._chains.values():
            self._scheduler.cancel(chain.timer)
        self._chains.clear()
