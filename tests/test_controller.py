# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""End-to-end tests for the workspace watcher, driven by a manual clock."""

import asyncio
import json
import logging

import pytest

from conftest import (
    FakeWatch,
    GraphStorage,
    ListingStorage,
    MemoryStorage,
    RecordingReindexer,
    write,
)
from librarian_watch.config import WatchConfig
from librarian_watch.controller import WatcherRegistry, WatcherStatus
from librarian_watch.git import GitChanges
from librarian_watch.state import WATCH_STATE_KEY
from librarian_watch.storm import WATCH_EVENT_STORM


async def settle(handle, scheduler, ms: float = 100) -> None:
    """Advance the clock and wait for the work it triggered."""
    await scheduler.advance(ms)
    await handle.wait_idle()


async def start(controller):
    handle = await controller.start()
    await handle.wait_idle()
    return handle


class TestEventPipeline:
    """Test raw events flowing through batching, classification and reindex."""

    @pytest.mark.asyncio
    async def test_unchanged_checksum_skips_reindex(self, workspace, scheduler, fake_watch, make_controller):
        storage = MemoryStorage()
        path = write(workspace, "src/a.ts", "export const a = 1;")
        storage.record(path, "export const a = 1;")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, storage))

        fake_watch.emit("modified", "src/a.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == []
        await handle.stop()

    @pytest.mark.asyncio
    async def test_changed_checksum_reindexes_absolute_path(self, workspace, scheduler, fake_watch, make_controller):
        storage = MemoryStorage()
        path = write(workspace, "src/a.ts", "export const a = 2;")
        storage.record(path, "export const a = 1;")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, storage))

        fake_watch.emit("modified", "src/a.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == [[str(path)]]
        await handle.stop()

    @pytest.mark.asyncio
    async def test_events_within_window_share_one_call(self, workspace, scheduler, fake_watch, make_controller):
        a = write(workspace, "a.ts", "a")
        b = write(workspace, "b.ts", "b")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, MemoryStorage()))

        fake_watch.emit("modified", "a.ts")
        fake_watch.emit("modified", "b.ts")
        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == [sorted([str(a), str(b)])]
        await handle.stop()

    @pytest.mark.asyncio
    async def test_deleted_file_is_passed_to_reindex(self, workspace, scheduler, fake_watch, make_controller):
        storage = MemoryStorage({str(workspace / "gone.ts"): "0123456789abcdef"})
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, storage))

        fake_watch.emit("deleted", "gone.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == [[str(workspace / "gone.ts")]]
        await handle.stop()

    @pytest.mark.asyncio
    async def test_ignored_paths_never_reach_reindex(self, workspace, scheduler, fake_watch, make_controller):
        write(workspace, "node_modules/lib/index.js", "x")
        write(workspace, "README.md", "docs")
        write(workspace, ".librarian/state.json", "{}")
        reindexer = RecordingReindexer()
        controller = make_controller(reindexer, MemoryStorage())
        handle = await start(controller)

        fake_watch.emit("modified", "node_modules/lib/index.js")
        fake_watch.emit("modified", "README.md")
        fake_watch.emit("modified", ".librarian/state.json")
        await settle(handle, scheduler)

        assert reindexer.calls == []
        assert controller.stats.ignored_events == 3
        await handle.stop()

    @pytest.mark.asyncio
    async def test_event_time_is_recorded(self, workspace, scheduler, fake_watch, make_controller):
        write(workspace, "a.ts", "a")
        storage = MemoryStorage()
        handle = await start(make_controller(RecordingReindexer(), storage))

        fake_watch.emit("created", "a.ts")
        await settle(handle, scheduler)

        state = storage.watch_state()
        assert state.watch_last_event_at is not None
        assert state.watch_last_reindex_ok_at is not None
        await handle.stop()

    @pytest.mark.asyncio
    async def test_reindex_failure_marks_catchup(self, workspace, scheduler, fake_watch, make_controller):
        storage = ListingStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))
        assert storage.watch_state().needs_catchup is False

        write(workspace, "a.ts", "a")
        reindexer.error = RuntimeError("indexer offline")
        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)

        state = storage.watch_state()
        assert state.last_error == "watch_reindex_failed: indexer offline"
        assert state.needs_catchup is True
        assert handle.stats()["reindex_failures"] == 1

        reindexer.error = None
        result = await handle.reconcile()

        assert result.ok is True
        state = storage.watch_state()
        assert state.last_error is None
        assert state.needs_catchup is False


class TestStorm:
    """Test storm detection and recovery."""

    @pytest.mark.asyncio
    async def test_storm_discards_batch(self, workspace, scheduler, fake_watch, make_controller):
        for name in ("a.ts", "b.ts", "c.ts"):
            write(workspace, name, name)
        storage = MemoryStorage()
        reindexer = RecordingReindexer()
        config = WatchConfig(debounce_ms=10, batch_window_ms=50, storm_threshold=2)
        handle = await start(make_controller(reindexer, storage, config=config))

        fake_watch.emit("modified", "a.ts")
        fake_watch.emit("modified", "b.ts")
        fake_watch.emit("modified", "c.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == []
        state = storage.watch_state()
        assert state.last_error == WATCH_EVENT_STORM
        assert state.needs_catchup is True
        assert handle.status is WatcherStatus.STORM_DETECTED

    @pytest.mark.asyncio
    async def test_quiet_batch_after_storm_is_admitted(self, workspace, scheduler, fake_watch, make_controller):
        for name in ("a.ts", "b.ts", "c.ts"):
            write(workspace, name, name)
        reindexer = RecordingReindexer()
        config = WatchConfig(debounce_ms=10, batch_window_ms=50, storm_threshold=2)
        handle = await start(make_controller(reindexer, MemoryStorage(), config=config))

        for name in ("a.ts", "b.ts", "c.ts"):
            fake_watch.emit("modified", name)
        await settle(handle, scheduler)
        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == [[str(workspace / "a.ts")]]
        assert handle.status is WatcherStatus.WATCHING
        assert handle.stats()["batches_discarded"] == 1


class TestReconcile:
    """Test catch-up reconciliation on start and on attach."""

    @pytest.mark.asyncio
    async def test_start_reconcile_finds_new_file(self, workspace, make_controller):
        path = write(workspace, "src/new.ts", "export {}")
        storage = ListingStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))

        assert reindexer.calls == [[str(path)]]
        state = storage.watch_state()
        assert state.needs_catchup is False
        assert state.watch_last_reconcile_completed_at is not None
        assert handle.status is WatcherStatus.WATCHING

    @pytest.mark.asyncio
    async def test_start_reconcile_includes_deleted_index_entries(self, workspace, make_controller):
        missing = str(workspace / "old.ts")
        storage = ListingStorage({missing: "0123456789abcdef"}, files=[missing])
        reindexer = RecordingReindexer(storage)
        await start(make_controller(reindexer, storage))

        assert reindexer.calls == [[missing]]

    @pytest.mark.asyncio
    async def test_repeated_reconcile_is_a_noop(self, workspace, make_controller):
        write(workspace, "a.ts", "a")
        write(workspace, "lib/b.py", "b = 1")
        storage = ListingStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))
        assert len(reindexer.calls) == 1

        await handle.reconcile()
        await handle.reconcile()

        assert len(reindexer.calls) == 1

    @pytest.mark.asyncio
    async def test_git_cursor_limits_candidates(self, workspace, fake_git, make_controller):
        path = write(workspace, "src/a.ts", "changed")
        write(workspace, "src/untouched.ts", "not in the diff")
        storage = ListingStorage()
        storage.state[WATCH_STATE_KEY] = json.dumps(
            {"cursor": {"kind": "git", "lastIndexedCommitSha": "abc123"}}
        )
        fake_git.head = "def456"
        fake_git.diff = GitChanges(modified=["src/a.ts"])
        fake_git.status = GitChanges()
        reindexer = RecordingReindexer(storage)

        await start(make_controller(reindexer, storage))

        assert reindexer.calls == [[str(path)]]
        assert fake_git.diff_calls == ["abc123"]
        cursor = storage.watch_state().cursor
        assert cursor.kind == "git"
        assert cursor.last_indexed_commit_sha == "def456"
        stored = json.loads(storage.state[WATCH_STATE_KEY])
        assert stored["cursor"] == {"kind": "git", "lastIndexedCommitSha": "def456"}
        assert stored["effective_config"]["debounceMs"] == 10

    @pytest.mark.asyncio
    async def test_git_reconcile_includes_uncommitted_changes(self, workspace, fake_git, make_controller):
        committed = write(workspace, "a.ts", "a")
        dirty = write(workspace, "b.ts", "b")
        storage = ListingStorage()
        storage.state[WATCH_STATE_KEY] = json.dumps(
            {"cursor": {"kind": "git", "lastIndexedCommitSha": "abc123"}}
        )
        fake_git.head = "abc123"
        fake_git.diff = GitChanges()
        fake_git.status = GitChanges(added=["b.ts"], modified=["a.ts"])
        reindexer = RecordingReindexer(storage)

        await start(make_controller(reindexer, storage))

        assert reindexer.calls == [sorted([str(committed), str(dirty)])]

    @pytest.mark.asyncio
    async def test_unusable_git_cursor_falls_back_to_filesystem(self, workspace, fake_git, make_controller):
        path = write(workspace, "a.ts", "a")
        storage = ListingStorage()
        storage.state[WATCH_STATE_KEY] = json.dumps(
            {"cursor": {"kind": "git", "lastIndexedCommitSha": "gone"}}
        )
        fake_git.head = "def456"
        fake_git.diff = None
        reindexer = RecordingReindexer(storage)

        await start(make_controller(reindexer, storage))

        assert reindexer.calls == [[str(path)]]
        assert storage.watch_state().cursor.last_indexed_commit_sha == "def456"

    @pytest.mark.asyncio
    async def test_reconcile_warns_once_without_get_files(self, make_controller, caplog):
        caplog.set_level(logging.WARNING, logger="librarian_watch.reconcile")
        handle = await start(make_controller(RecordingReindexer(), MemoryStorage()))

        await handle.attach_storage(MemoryStorage())
        await handle.wait_idle()
        await handle.reconcile()

        warnings = [
            r for r in caplog.records
            if "Watch reconcile disabled: storage lacks get_files" in r.getMessage()
        ]
        assert len(warnings) == 1
        assert "reconcile" in handle.degraded_features
        assert handle.status is WatcherStatus.WATCHING
        assert handle.stats()["degraded_features"] == ["reconcile"]

    @pytest.mark.asyncio
    async def test_uncommitted_deletion_is_reindexed_once(self, workspace, fake_git, make_controller):
        gone = str(workspace / "gone.ts")
        storage = ListingStorage({gone: "0123456789abcdef"})
        storage.state[WATCH_STATE_KEY] = json.dumps(
            {"cursor": {"kind": "git", "lastIndexedCommitSha": "abc123"}}
        )
        fake_git.head = "abc123"
        fake_git.diff = GitChanges()
        fake_git.status = GitChanges(deleted=["gone.ts"])
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))
        assert reindexer.calls == [[gone]]

        await handle.reconcile()
        await handle.reconcile()

        assert reindexer.calls == [[gone]]
        assert fake_git.diff_calls == ["abc123", "abc123", "abc123"]

    @pytest.mark.asyncio
    async def test_git_cursor_baselined_without_get_files(self, workspace, fake_git, make_controller):
        fake_git.head = "abc123"
        fake_git.status = GitChanges()
        storage = MemoryStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))

        state = storage.watch_state()
        assert state.needs_catchup is False
        assert state.cursor.kind == "git"
        assert state.cursor.last_indexed_commit_sha == "abc123"
        assert reindexer.calls == []
        assert "reconcile" in handle.degraded_features

        path = write(workspace, "a.ts", "a")
        fake_git.head = "def456"
        fake_git.diff = GitChanges(modified=["a.ts"])
        await handle.reconcile()

        assert reindexer.calls == [[str(path)]]
        assert fake_git.diff_calls == ["abc123"]
        assert storage.watch_state().cursor.last_indexed_commit_sha == "def456"

    @pytest.mark.asyncio
    async def test_git_baseline_reindexes_uncommitted_changes(self, workspace, fake_git, make_controller):
        dirty = write(workspace, "dirty.ts", "d")
        fake_git.head = "abc123"
        fake_git.status = GitChanges(modified=["dirty.ts", "node_modules/x.js"])
        storage = MemoryStorage()
        reindexer = RecordingReindexer(storage)

        await start(make_controller(reindexer, storage))

        assert reindexer.calls == [[str(dirty)]]
        assert storage.watch_state().cursor.last_indexed_commit_sha == "abc123"

    @pytest.mark.asyncio
    async def test_outside_git_without_get_files_stays_in_catchup(self, make_controller):
        storage = MemoryStorage()
        await start(make_controller(RecordingReindexer(), storage))

        state = storage.watch_state()
        assert state.needs_catchup is True
        assert state.cursor.kind == "none"


class TestGitCursor:
    """Test cursor movement after live batches."""

    @pytest.mark.asyncio
    async def test_cursor_advances_after_batch(self, workspace, scheduler, fake_watch, fake_git, make_controller):
        fake_git.head = "abc123"
        storage = ListingStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))
        assert storage.watch_state().cursor.last_indexed_commit_sha == "abc123"

        fake_git.head = "def456"
        write(workspace, "a.ts", "a")
        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)

        cursor = storage.watch_state().cursor
        assert cursor.kind == "git"
        assert cursor.last_indexed_commit_sha == "def456"

    @pytest.mark.asyncio
    async def test_cursor_held_while_catchup_pending(self, workspace, scheduler, fake_watch, fake_git, make_controller):
        fake_git.head = "abc123"
        storage = ListingStorage()
        reindexer = RecordingReindexer(storage)
        handle = await start(make_controller(reindexer, storage))
        assert storage.watch_state().cursor.last_indexed_commit_sha == "abc123"

        reindexer.error = RuntimeError("indexer offline")
        write(workspace, "a.ts", "a")
        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)
        assert storage.watch_state().needs_catchup is True

        reindexer.error = None
        fake_git.head = "def456"
        write(workspace, "b.ts", "b")
        fake_watch.emit("modified", "b.ts")
        await settle(handle, scheduler)

        state = storage.watch_state()
        assert len(reindexer.calls) == 2
        assert state.needs_catchup is True
        assert state.cursor.last_indexed_commit_sha == "abc123"


class TestCascade:
    """Test dependency cascade through the controller."""

    def _graph(self, workspace):
        a = write(workspace, "a.ts", "export const a = 1;")
        b = write(workspace, "b.ts", "import { a } from './a';")
        storage = GraphStorage()
        storage.add_module("m-a", str(a))
        storage.add_module("m-b", str(b))
        return storage, a, b

    @pytest.mark.asyncio
    async def test_dependent_reindexed_in_second_wave(self, workspace, scheduler, fake_watch, make_controller):
        reindexer = RecordingReindexer()
        config = WatchConfig(debounce_ms=10, batch_window_ms=50, cascade_reindex=True, cascade_delay_ms=100)
        handle = await start(make_controller(reindexer, None, config=config))
        storage, a, b = self._graph(workspace)
        storage.add_import("m-b", "m-a")
        await handle.attach_storage(storage)
        await handle.wait_idle()
        reindexer.calls.clear()

        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)
        assert reindexer.calls == [[str(a)]]

        await settle(handle, scheduler, 150)
        assert reindexer.calls == [[str(a)], [str(b)]]
        assert handle.stats()["cascade_waves"] == 1

    @pytest.mark.asyncio
    async def test_cascade_off_reindexes_once(self, workspace, scheduler, fake_watch, make_controller):
        storage, a, _ = self._graph(workspace)
        storage.add_import("m-b", "m-a")
        storage.record(workspace / "b.ts", "import { a } from './a';")
        storage.record(a, "old")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, storage))
        reindexer.calls.clear()

        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)
        await settle(handle, scheduler, 500)

        assert reindexer.calls == [[str(a)]]

    @pytest.mark.asyncio
    async def test_no_dependents_reindexes_once(self, workspace, scheduler, fake_watch, make_controller):
        storage, a, _ = self._graph(workspace)
        storage.record(workspace / "b.ts", "import { a } from './a';")
        storage.record(a, "old")
        reindexer = RecordingReindexer()
        config = WatchConfig(debounce_ms=10, batch_window_ms=50, cascade_reindex=True, cascade_delay_ms=100)
        handle = await start(make_controller(reindexer, storage, config=config))
        reindexer.calls.clear()

        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)
        await settle(handle, scheduler, 500)

        assert reindexer.calls == [[str(a)]]

    @pytest.mark.asyncio
    async def test_cascade_warns_once_without_graph_queries(self, workspace, scheduler, fake_watch, make_controller, caplog):
        caplog.set_level(logging.WARNING, logger="librarian_watch.cascade")
        write(workspace, "a.ts", "a")
        write(workspace, "b.ts", "b")
        reindexer = RecordingReindexer()
        config = WatchConfig(debounce_ms=10, batch_window_ms=50, cascade_reindex=True)
        handle = await start(make_controller(reindexer, MemoryStorage(), config=config))

        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)
        fake_watch.emit("modified", "b.ts")
        await settle(handle, scheduler)

        warnings = [r for r in caplog.records if "Cascade reindex disabled" in r.getMessage()]
        assert len(warnings) == 1
        assert "get_module_by_path" in warnings[0].getMessage()
        assert len(reindexer.calls) == 2
        assert "cascade" in handle.degraded_features


class TestStorageAttachment:
    """Test running without storage and attaching later."""

    @pytest.mark.asyncio
    async def test_without_storage_every_existing_path_is_changed(self, workspace, scheduler, fake_watch, make_controller):
        path = write(workspace, "a.ts", "a")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, None))

        fake_watch.emit("modified", "a.ts")
        await settle(handle, scheduler)

        assert reindexer.calls == [[str(path)]]
        state = handle.watch_state()
        assert state.storage_attached is False
        assert state.needs_catchup is True

    @pytest.mark.asyncio
    async def test_attach_persists_state_and_reconciles(self, workspace, make_controller):
        path = write(workspace, "a.ts", "a")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, None))
        assert reindexer.calls == []

        storage = ListingStorage()
        await handle.attach_storage(storage)
        await handle.wait_idle()

        state = storage.watch_state()
        assert state.storage_attached is True
        assert state.watch_started_at is not None
        assert state.workspace_root == str(workspace)
        assert state.effective_config["debounceMs"] == 10
        assert reindexer.calls == [[str(path)]]

    @pytest.mark.asyncio
    async def test_detach_records_flag(self, make_controller):
        storage = ListingStorage()
        handle = await start(make_controller(RecordingReindexer(storage), storage))

        await handle.detach_storage()

        assert storage.watch_state().storage_attached is False
        assert handle.controller.capabilities.get_files is False


class TestLifecycle:
    """Test start/stop semantics and the heartbeat."""

    @pytest.mark.asyncio
    async def test_start_records_state(self, workspace, fake_watch, make_controller):
        storage = MemoryStorage()
        handle = await start(make_controller(RecordingReindexer(), storage))

        state = storage.watch_state()
        assert state.workspace_root == str(workspace)
        assert state.suspected_dead is False
        assert state.storage_attached is True
        assert state.watch_last_heartbeat_at is not None
        assert fake_watch.options.recursive is True

    def test_injected_scheduler_is_used(self, scheduler, make_controller):
        controller = make_controller(RecordingReindexer())

        assert len(scheduler) == 0
        assert controller.scheduler is scheduler

    @pytest.mark.asyncio
    async def test_stop_with_real_time_scheduler_returns(self, make_controller):
        controller = make_controller(RecordingReindexer(), MemoryStorage(), scheduler=None)
        assert controller.scheduler.is_realtime
        handle = await start(controller)

        await asyncio.wait_for(handle.stop(), timeout=5)

        assert handle.status is WatcherStatus.STOPPED
        assert len(controller.scheduler) == 0

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, make_controller):
        controller = make_controller(RecordingReindexer(), MemoryStorage())
        await start(controller)

        with pytest.raises(RuntimeError):
            await controller.start()
        await controller.stop()

    @pytest.mark.asyncio
    async def test_failed_start_cleans_up(self, make_controller, scheduler):
        storage = MemoryStorage()
        controller = make_controller(
            RecordingReindexer(), storage, watch=FakeWatch(error=OSError("inotify limit reached"))
        )

        with pytest.raises(OSError):
            await controller.start()

        assert controller.status is WatcherStatus.STOPPED
        assert len(scheduler) == 0
        assert storage.watch_state().last_error.startswith("watch_start_failed")

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_ignores_later_events(self, workspace, scheduler, fake_watch, make_controller):
        write(workspace, "a.ts", "a")
        reindexer = RecordingReindexer()
        handle = await start(make_controller(reindexer, MemoryStorage()))

        fake_watch.emit("modified", "a.ts")
        await handle.stop()
        assert len(scheduler) == 0

        fake_watch.emit("modified", "a.ts")
        await scheduler.advance(60_000)

        assert reindexer.calls == []
        assert handle.status is WatcherStatus.STOPPED
        assert fake_watch.handle.close_count == 1

        await handle.stop()
        assert fake_watch.handle.close_count == 1

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_state(self, scheduler, make_controller):
        storage = MemoryStorage()
        handle = await start(make_controller(RecordingReindexer(), storage))
        document = json.loads(storage.state[WATCH_STATE_KEY])
        document["watch_last_heartbeat_at"] = "2000-01-01T00:00:00+00:00"
        storage.state[WATCH_STATE_KEY] = json.dumps(document)

        await settle(handle, scheduler, 30_000)

        assert storage.watch_state().watch_last_heartbeat_at != "2000-01-01T00:00:00+00:00"
        assert any(t.name == "heartbeat" for t in scheduler.pending())
        await handle.stop()


class TestWatcherRegistry:
    """Test one-watcher-per-root bookkeeping."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent_per_root(self, workspace, scheduler, fake_watch, fake_git, fast_config):
        registry = WatcherRegistry()
        kwargs = dict(
            storage=MemoryStorage(), config=fast_config, watch=fake_watch, git=fake_git, scheduler=scheduler
        )
        first = await registry.start(workspace, RecordingReindexer(), **kwargs)
        second = await registry.start(str(workspace) + "/.", RecordingReindexer(), **kwargs)

        assert first is second
        assert workspace in registry
        assert len(registry) == 1

        assert await registry.stop(workspace) is True
        assert await registry.stop(workspace) is False
        assert not first.is_running

    @pytest.mark.asyncio
    async def test_stop_all(self, workspace, scheduler, fake_watch, fake_git, fast_config):
        registry = WatcherRegistry()
        handle = await registry.start(
            workspace, RecordingReindexer(), config=fast_config, watch=fake_watch, git=fake_git, scheduler=scheduler
        )

        await registry.stop_all()

        assert len(registry) == 0
        assert handle.status is WatcherStatus.STOPPED
        assert registry.get(workspace) is None
