"""
Watch Coordination Module

Translates filesystem notifications into index updates. Notifications are
turned into a small closed set of events (WatchEventKind) and every event
goes through WatchCoordinator.handle_event, so the invalidation protocol can
be driven directly in tests without a real filesystem watcher.

Two kinds of subscriptions exist:

- one persistent subscription per manifest file name under the workspace
  root (manifest created / changed / deleted);
- per manifest, one subscription per resolved query glob, replaced every
  time the manifest is re-indexed (source created / changed / deleted).
"""
import asyncio
import functools
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .constants import MANIFEST_GLOBS
from .globbing import glob_base_directory, glob_matches
from .ignore_patterns import IgnorePatternMatcher
from .index_store import SqlcIndex
from .manifest import ManifestError

logger = logging.getLogger(__name__)

EVENT_CHANGED = "changed"
EVENT_CREATED = "created"
EVENT_DELETED = "deleted"

NotificationCallback = Callable[[str, str], None]


class WatchEventKind(Enum):
    """Kinds of change the coordinator reacts to."""
    MANIFEST_CHANGED = "manifest_changed"
    MANIFEST_CREATED = "manifest_created"
    MANIFEST_DELETED = "manifest_deleted"
    SOURCE_CHANGED = "source_changed"
    SOURCE_CREATED = "source_created"
    SOURCE_DELETED = "source_deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A change to a manifest or to a file matched by a manifest's globs."""
    kind: WatchEventKind
    path: str
    manifest_path: Optional[str] = None


MANIFEST_EVENT_KINDS = {
    EVENT_CHANGED: WatchEventKind.MANIFEST_CHANGED,
    EVENT_CREATED: WatchEventKind.MANIFEST_CREATED,
    EVENT_DELETED: WatchEventKind.MANIFEST_DELETED,
}

SOURCE_EVENT_KINDS = {
    EVENT_CHANGED: WatchEventKind.SOURCE_CHANGED,
    EVENT_CREATED: WatchEventKind.SOURCE_CREATED,
    EVENT_DELETED: WatchEventKind.SOURCE_DELETED,
}


class Subscription:
    """Handle for one glob subscription."""

    def __init__(self, glob: str, cancel: Callable[[], None]):
        self.glob = glob
        self._cancel = cancel
        self.cancelled = False

    def cancel(self):
        if not self.cancelled:
            self.cancelled = True
            self._cancel()


class NotificationBackend(ABC):
    """Abstract source of change/create/delete notifications for globs."""

    @abstractmethod
    def subscribe(self, glob: str, callback: NotificationCallback) -> Subscription:
        """Deliver events for paths matching an absolute glob.

        Args:
            glob: Absolute glob to watch
            callback: Called on the event loop with (event_type, absolute_path)

        Returns:
            A Subscription that stops delivery when cancelled
        """
        pass

    def stop(self):
        """Release backend resources."""
        pass


class _GlobEventHandler(FileSystemEventHandler):
    """Forwards watchdog events that match a glob to the event loop."""

    def __init__(self, glob: str, callback: NotificationCallback, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.glob = glob
        self.callback = callback
        self.loop = loop

    def _forward(self, event_type: str, path):
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if glob_matches(self.glob, path):
            self.loop.call_soon_threadsafe(self.callback, event_type, os.path.abspath(path))

    def on_modified(self, event):
        if not event.is_directory:
            self._forward(EVENT_CHANGED, event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self._forward(EVENT_CREATED, event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self._forward(EVENT_DELETED, event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._forward(EVENT_DELETED, event.src_path)
            self._forward(EVENT_CREATED, event.dest_path)


class WatchdogBackend(NotificationBackend):
    """Notification backend on top of a single watchdog Observer."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.loop = loop
        self.observer = None
        self._lock = threading.Lock()
        self._handler_counts: Dict[Tuple[str, bool], int] = {}

    def _ensure_observer(self):
        if self.observer is None:
            self.observer = Observer()
            self.observer.daemon = True
            self.observer.start()
        return self.observer

    def subscribe(self, glob: str, callback: NotificationCallback) -> Subscription:
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        base = glob_base_directory(glob)
        while not os.path.isdir(base) and os.path.dirname(base) != base:
            base = os.path.dirname(base)
        rest = os.path.relpath(glob, base) if base != os.curdir else glob
        recursive = '**' in rest or os.sep in rest or '/' in rest

        handler = _GlobEventHandler(glob, callback, self.loop)
        key = (base, recursive)
        with self._lock:
            observer = self._ensure_observer()
            watch = observer.schedule(handler, base, recursive=recursive)
            self._handler_counts[key] = self._handler_counts.get(key, 0) + 1

        def cancel():
            with self._lock:
                if self.observer is None:
                    return
                self._handler_counts[key] -= 1
                if self._handler_counts[key] > 0:
                    self.observer.remove_handler_for_watch(handler, watch)
                else:
                    del self._handler_counts[key]
                    self.observer.unschedule(watch)

        return Subscription(glob, cancel)

    def stop(self):
        with self._lock:
            observer, self.observer = self.observer, None
            self._handler_counts.clear()
        if observer is not None:
            observer.stop()
            observer.join()


class WatchCoordinator:
    """
    Keeps the index in step with manifest and source file changes.

    Notifications are scheduled as tasks on the event loop; they may
    interleave with a build in progress or with each other.
    """

    def __init__(self, index: SqlcIndex, backend: NotificationBackend,
                 manifest_globs: Optional[List[str]] = None,
                 ignore_matcher: Optional[IgnorePatternMatcher] = None):
        """
        Initialize the coordinator and attach it to an index.

        Args:
            index: The index to keep up to date
            backend: Source of filesystem notifications
            manifest_globs: Root-relative globs that identify manifests
            ignore_matcher: Directories whose manifests are left out, as in discovery
        """
        self.index = index
        self.backend = backend
        self.manifest_globs = manifest_globs or list(MANIFEST_GLOBS)
        self.ignore_matcher = ignore_matcher
        self.root: Optional[str] = None
        self.manifest_subscriptions: List[Subscription] = []
        self.config_subscriptions: Dict[str, List[Subscription]] = {}
        self._tasks: Set[asyncio.Task] = set()
        index.watcher = self

        self._handlers = {
            WatchEventKind.MANIFEST_CHANGED: self._on_manifest_updated,
            WatchEventKind.MANIFEST_CREATED: self._on_manifest_updated,
            WatchEventKind.MANIFEST_DELETED: self._on_manifest_deleted,
            WatchEventKind.SOURCE_CHANGED: self._on_source_changed,
            WatchEventKind.SOURCE_CREATED: self._on_source_created,
            WatchEventKind.SOURCE_DELETED: self._on_source_deleted,
        }

    def start(self, root: str):
        """Subscribe to manifest changes anywhere under the workspace root."""
        root = os.path.abspath(root)
        self.root = root
        for pattern in self.manifest_globs:
            glob = os.path.join(root, pattern)
            self.manifest_subscriptions.append(
                self.backend.subscribe(glob, self._on_manifest_notification))
        logger.info(f"[watch] Watching {root} for sqlc config changes.")

    def watch_config(self, config_path: str, globs: List[str]):
        """Replace a manifest's source subscriptions with one per glob."""
        self.unwatch_config(config_path)
        self.config_subscriptions[config_path] = [
            self.backend.subscribe(glob, functools.partial(self._on_source_notification, config_path))
            for glob in globs
        ]

    def unwatch_config(self, config_path: str):
        for subscription in self.config_subscriptions.pop(config_path, []):
            subscription.cancel()

    def is_ignored_manifest(self, path: str) -> bool:
        """Whether discovery would skip the directory holding a manifest."""
        if self.ignore_matcher is None or self.root is None:
            return False
        rel_dir = os.path.relpath(os.path.dirname(os.path.abspath(path)), self.root)
        if rel_dir == os.curdir or rel_dir == os.pardir or rel_dir.startswith(os.pardir + os.sep):
            return False
        parts = rel_dir.split(os.sep)
        return any(
            self.ignore_matcher.should_ignore_directory(os.path.join(*parts[:depth]))
            for depth in range(1, len(parts) + 1)
        )

    def _on_manifest_notification(self, event_type: str, path: str):
        if self.is_ignored_manifest(path):
            logger.debug(f"[watch] Ignoring {event_type} for {path}: directory is excluded from discovery.")
            return
        self.dispatch(WatchEvent(MANIFEST_EVENT_KINDS[event_type], path))

    def _on_source_notification(self, config_path: str, event_type: str, path: str):
        self.dispatch(WatchEvent(SOURCE_EVENT_KINDS[event_type], path, config_path))

    def dispatch(self, event: WatchEvent) -> asyncio.Task:
        """Schedule an event to be handled on the running event loop."""
        task = asyncio.get_running_loop().create_task(self.handle_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self):
        """Wait until every dispatched event has been handled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def handle_event(self, event: WatchEvent):
        """Apply one change event to the index. Errors are logged, never raised."""
        try:
            await self._handlers[event.kind](event)
        except Exception as e:
            logger.exception(f"[watch] Error handling {event.kind.value} for {event.path}: {e}")

    async def _on_manifest_updated(self, event: WatchEvent):
        logger.info(f"[index] Config file {event.kind.value.split('_')[1]}: {event.path}")
        self.index.invalidate_config(event.path)
        try:
            await self.index.index_config(event.path)
        except ManifestError as e:
            logger.error(f"[index] Failed to index config {event.path}: {e.message}")

    async def _on_manifest_deleted(self, event: WatchEvent):
        logger.info(f"[index] Config file deleted: {event.path}")
        self.index.invalidate_config(event.path)

    async def _on_source_changed(self, event: WatchEvent):
        logger.info(f"[index] File changed: {event.path}, re-indexing for config {event.manifest_path}")
        # index_file drops the old hits in the same step it adds the new ones
        await self.index.index_file(event.path, config_path=event.manifest_path)

    async def _on_source_created(self, event: WatchEvent):
        logger.info(f"[index] File created: {event.path}, indexing for config {event.manifest_path}")
        await self.index.index_file(event.path, config_path=event.manifest_path)

    async def _on_source_deleted(self, event: WatchEvent):
        logger.info(f"[index] File deleted: {event.path}, invalidating for config {event.manifest_path}")
        self.index.invalidate_file(event.path, config_path=event.manifest_path)

    def dispose(self):
        """Cancel every subscription and stop the backend."""
        for subscription in self.manifest_subscriptions:
            subscription.cancel()
        self.manifest_subscriptions = []
        for config_path in list(self.config_subscriptions):
            self.unwatch_config(config_path)
        self.backend.stop()
