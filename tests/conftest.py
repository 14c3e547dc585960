# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Shared stubs for watcher tests: storages, reindexer, event source, git."""

from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from librarian_watch.checksums import checksum_path, compute_file_checksum
from librarian_watch.config import WatchConfig
from librarian_watch.controller import WatcherController
from librarian_watch.event_source import WatchOptions
from librarian_watch.git import GitChanges
from librarian_watch.protocol import FileRecord, GraphEdgeRecord, ModuleRecord
from librarian_watch.scheduler import ManualClock, TaskScheduler
from librarian_watch.state import WATCH_STATE_KEY, WatchState, parse_watch_state


class MemoryStorage:
    """Storage with only the required methods (no optional capabilities)."""

    def __init__(self, checksums: Optional[Dict[str, str]] = None):
        self.checksums: Dict[str, str] = dict(checksums or {})
        self.state: Dict[str, str] = {}

    async def get_file_checksum(self, path: str) -> Optional[str]:
        return self.checksums.get(path)

    async def get_state(self, key: str) -> Optional[str]:
        return self.state.get(key)

    async def set_state(self, key: str, value: str) -> None:
        self.state[key] = value

    def watch_state(self) -> Optional[WatchState]:
        return parse_watch_state(self.state.get(WATCH_STATE_KEY))

    def record(self, path: Path, content: str) -> None:
        self.checksums[str(path)] = compute_file_checksum(content)


class ListingStorage(MemoryStorage):
    """Storage that can enumerate indexed files."""

    def __init__(self, checksums: Optional[Dict[str, str]] = None, files: Iterable[str] = ()):
        super().__init__(checksums)
        self.files: List[str] = list(files)

    async def get_files(self) -> List[FileRecord]:
        return [FileRecord(path=p) for p in self.files]


class GraphStorage(ListingStorage):
    """Storage with the full graph query surface used by the cascade."""

    def __init__(self, checksums: Optional[Dict[str, str]] = None, files: Iterable[str] = ()):
        super().__init__(checksums, files)
        self.modules: Dict[str, ModuleRecord] = {}
        self.edges: List[GraphEdgeRecord] = []

    def add_module(self, module_id: str, path: str) -> None:
        self.modules[module_id] = ModuleRecord(id=module_id, path=path)

    def add_import(self, from_id: str, to_id: str) -> None:
        self.edges.append(GraphEdgeRecord(from_id=from_id, to_id=to_id, edge_type="imports"))

    async def get_module_by_path(self, path: str) -> Optional[ModuleRecord]:
        for module in self.modules.values():
            if module.path == path:
                return module
        return None

    async def get_graph_edges(self, *, edge_types, to_ids, from_types=None) -> List[GraphEdgeRecord]:
        edge_types, to_ids = set(edge_types), set(to_ids)
        return [e for e in self.edges if e.edge_type in edge_types and e.to_id in to_ids]

    async def get_module(self, module_id: str) -> Optional[ModuleRecord]:
        return self.modules.get(module_id)


class RecordingReindexer:
    """Records reindex calls; optionally refreshes checksums like the indexer would."""

    def __init__(self, storage: Optional[MemoryStorage] = None):
        self.calls: List[List[str]] = []
        self.storage = storage
        self.error: Optional[Exception] = None

    async def reindex_files(self, paths: List[str]) -> None:
        self.calls.append(list(paths))
        if self.error is not None:
            raise self.error
        if self.storage is not None:
            for path in paths:
                if Path(path).exists():
                    self.storage.checksums[path] = checksum_path(path)
                else:
                    self.storage.checksums.pop(path, None)


class FakeWatchHandle:
    def __init__(self) -> None:
        self.close_count = 0

    def close(self) -> None:
        self.close_count += 1


class FakeWatch:
    """Event source that only emits when the test tells it to."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.callback: Optional[Callable[[str, str], None]] = None
        self.options: Optional[WatchOptions] = None
        self.handle = FakeWatchHandle()

    def __call__(self, root: Path, options: WatchOptions, callback: Callable[[str, str], None]):
        if self.error is not None:
            raise self.error
        self.options = options
        self.callback = callback
        return self.handle

    def emit(self, event_type: str, relative_path: str) -> None:
        assert self.callback is not None, "watch was never opened"
        self.callback(event_type, relative_path)


class FakeGit:
    def __init__(
        self,
        head: Optional[str] = None,
        diff: Optional[GitChanges] = None,
        status: Optional[GitChanges] = None,
    ):
        self.head = head
        self.diff = diff
        self.status = status
        self.diff_calls: List[str] = []

    async def get_current_sha(self, repo_root: Path) -> Optional[str]:
        return self.head

    async def get_diff_names(self, repo_root: Path, since_sha: str) -> Optional[GitChanges]:
        self.diff_calls.append(since_sha)
        return self.diff

    async def get_status_changes(self, repo_root: Path) -> Optional[GitChanges]:
        return self.status


def write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    return tmp_path.resolve()


@pytest.fixture
def scheduler() -> TaskScheduler:
    return TaskScheduler(ManualClock())


@pytest.fixture
def fake_watch() -> FakeWatch:
    return FakeWatch()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fast_config() -> WatchConfig:
    return WatchConfig(debounce_ms=10, batch_window_ms=50, cascade_delay_ms=100)


@pytest.fixture
def make_controller(workspace, scheduler, fake_watch, fake_git, fast_config):
    """Factory for controllers wired to the manual clock and fakes."""

    def _make(reindexer, storage=None, config: Optional[WatchConfig] = None, **kwargs) -> WatcherController:
        kwargs.setdefault("watch", fake_watch)
        kwargs.setdefault("git", fake_git)
        kwargs.setdefault("scheduler", scheduler)
        return WatcherController(
            workspace, reindexer, storage=storage, config=config or fast_config, **kwargs
        )

    return _make
