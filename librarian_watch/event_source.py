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

"""Native filesystem events via watchdog.

The watcher consumes events through a single callable,
``watch(root, options, callback) -> handle``, so tests and embedders can swap
in their own source. :func:`watchdog_watch` is the default: it runs a watchdog
``Observer`` (inotify, FSEvents, ReadDirectoryChangesW, or polling) and
reports ``(event_type, relative_path)`` pairs from the observer thread.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_MODIFIED = "modified"
EVENT_DELETED = "deleted"

EventCallback = Callable[[str, str], None]


@dataclass
class WatchOptions:
    """Options passed to the event source."""

    recursive: bool = True


class WatchHandle(Protocol):
    def close(self) -> None: ...


WatchFunction = Callable[[Path, WatchOptions, EventCallback], WatchHandle]


class WorkspaceEventHandler(FileSystemEventHandler):
    """Translates watchdog events into ``(event_type, relative_path)`` calls.

    Directory events are dropped; a move is reported as a deletion of the
    source followed by a creation of the destination.
    """

    def __init__(self, root: Path, callback: EventCallback):
        super().__init__()
        self.root = root
        self.callback = callback

    def _relative(self, path: str) -> str:
        return Path(os.path.relpath(os.fsdecode(path), self.root)).as_posix()

    def _emit(self, event_type: str, path: str) -> None:
        try:
            self.callback(event_type, self._relative(path))
        except Exception as e:
            logger.warning(f"Error in file change callback: {e}")

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EVENT_CREATED, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EVENT_MODIFIED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EVENT_DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(EVENT_DELETED, event.src_path)
            self._emit(EVENT_CREATED, event.dest_path)


class ObserverHandle:
    """Close-once wrapper around a running observer."""

    def __init__(self, observer: Observer):
        self._observer = observer
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._observer.stop()
        self._observer.join(timeout=5.0)


def watchdog_watch(root: Path, options: WatchOptions, callback: EventCallback) -> ObserverHandle:
    """Start watching ``root``. Raises if the observer cannot be started."""
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Watch root is not a directory: {root}")

    observer = Observer()
    observer.schedule(WorkspaceEventHandler(root, callback), str(root), recursive=options.recursive)
    observer.daemon = True
    observer.start()
    logger.debug(f"Observer started for {root} (recursive={options.recursive})")
    return ObserverHandle(observer)
