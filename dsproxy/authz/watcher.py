"""
Background policy reload.

One `PolicyWatcher` thread per process drives one strategy:

- FileWatchStrategy: filesystem events on `model.conf` / `policy.csv` (watchdog).
- PollingStrategy: unconditional reload every N seconds (cluster-backed rules).

Reload failures are logged and the previous snapshot stays active.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Iterable, List, Optional, Protocol, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from dsproxy.authz.engine import PolicyEngine

logger = logging.getLogger(__name__)

# Kubernetes ConfigMap volumes publish updates by re-pointing this symlink.
CONFIGMAP_DATA_LINK = "..data"

_RELOAD_EVENTS = frozenset({"modified", "created", "moved"})


class WatchStrategy(Protocol):
    def run(self, trigger: Callable[[], None], stop: threading.Event) -> None:
        """Block until `stop` is set, calling `trigger()` whenever a reload is due."""
        ...


class _PolicyFileHandler(FileSystemEventHandler):
    def __init__(self, paths: Iterable[str], dirty: threading.Event) -> None:
        super().__init__()
        self._paths: Set[str] = {os.path.abspath(p) for p in paths}
        self._dirty = dirty

    def _matches(self, path: str) -> bool:
        if not path:
            return False
        path = os.path.abspath(os.fsdecode(path))
        return path in self._paths or os.path.basename(path) == CONFIGMAP_DATA_LINK

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _RELOAD_EVENTS:
            return
        if self._matches(event.src_path) or self._matches(getattr(event, "dest_path", "") or ""):
            logger.debug("Policy file event: %s %s", event.event_type, event.src_path)
            self._dirty.set()


class FileWatchStrategy:
    """
    Reload on write/create/rename of the watched files.

    The parent directories are watched (not the files) so that atomic
    write-then-rename updates are seen. Bursts of events are coalesced into one
    reload.
    """

    def __init__(self, paths: Iterable[str], *, settle_seconds: float = 0.2) -> None:
        self.paths: List[str] = [os.path.abspath(p) for p in paths]
        self.settle_seconds = settle_seconds

    def _start_observer(self, dirty: threading.Event):
        observer = Observer()
        handler = _PolicyFileHandler(self.paths, dirty)
        for directory in sorted({os.path.dirname(p) for p in self.paths}):
            observer.schedule(handler, directory, recursive=False)
        observer.start()
        return observer

    def run(self, trigger: Callable[[], None], stop: threading.Event) -> None:
        dirty = threading.Event()
        try:
            observer = self._start_observer(dirty)
        except Exception as e:
            # Keep serving with whatever policy is already loaded.
            logger.error("Policy file watcher setup failed (hot reload disabled): %s", str(e))
            stop.wait()
            return

        logger.info("Watching policy files: %s", ", ".join(self.paths))
        try:
            while not stop.is_set():
                if not dirty.wait(0.5):
                    continue
                if stop.wait(self.settle_seconds):
                    break
                dirty.clear()
                trigger()
        finally:
            observer.stop()
            observer.join(timeout=5)


class PollingStrategy:
    def __init__(self, interval: float) -> None:
        self.interval = interval

    def run(self, trigger: Callable[[], None], stop: threading.Event) -> None:
        logger.info("Polling policy source every %ss", self.interval)
        while not stop.wait(self.interval):
            trigger()


class PolicyWatcher:
    def __init__(self, engine: PolicyEngine, strategy: WatchStrategy) -> None:
        self.engine = engine
        self.strategy = strategy
        self._thread: Optional[threading.Thread] = None
        self._own_stop = threading.Event()
        self._lock = threading.Lock()

    def _reload(self) -> None:
        try:
            self.engine.reload()
        except Exception as e:
            logger.error("Policy reload failed (keeping previous policy): %s", str(e))

    def start(self, stop: Optional[threading.Event] = None) -> None:
        """Start the watcher thread once; later calls are no-ops."""
        with self._lock:
            if self._thread is not None:
                return
            if stop is not None:
                self._own_stop = stop
            self._thread = threading.Thread(
                target=self.strategy.run,
                args=(self._reload, self._own_stop),
                name="policy-watcher",
                daemon=True,
            )
            self._thread.start()

    def stop(self) -> None:
        self._own_stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
