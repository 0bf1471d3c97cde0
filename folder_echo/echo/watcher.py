"""Folder watcher: discovers new files and waits for them to finish writing.

Uses the ``watchdog`` library for change notification. The native observer
(inotify on Linux) is preferred; if it is unavailable on this platform or
fails to start (e.g. inotify watch limits), the watcher falls back to
watchdog's ``PollingObserver``, which re-lists the folder at a fixed
interval. Either way the observer thread hands paths to the asyncio event
loop, where they are registered with the tracker and stabilised.
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from folder_echo.echo.tracker import FileStateTracker
from folder_echo.schemas.echo import FileEvent, FileState, TrackedFile

logger = logging.getLogger(__name__)

RELOCATION_DIRS = ("posted", "rejected")


class _FolderEventHandler(FileSystemEventHandler):
    """Forwards file appearances to the event loop.

    ``on_closed`` (inotify IN_CLOSE_WRITE) fires when a writer finishes;
    ``on_created`` covers platforms without it and the polling observer;
    ``on_moved`` covers files renamed into the folder.
    """

    def __init__(self, *, loop: asyncio.AbstractEventLoop, sink: Callable[[Path], None]) -> None:
        super().__init__()
        self._loop = loop
        self._sink = sink

    def _forward(self, path: str | bytes) -> None:
        self._loop.call_soon_threadsafe(self._sink, Path(os.fsdecode(path)))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_closed(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._forward(event.dest_path)


class ChangeSource:
    """A running watchdog observer on one folder (non-recursive)."""

    kind = "abstract"

    def __init__(self, folder: Path) -> None:
        self.folder = folder
        self._observer: BaseObserver | None = None

    def _make_observer(self) -> BaseObserver:
        raise NotImplementedError

    def start(self, loop: asyncio.AbstractEventLoop, sink: Callable[[Path], None]) -> None:
        """Start observing. Raises ``OSError`` if the backend cannot start."""
        observer = self._make_observer()
        observer.schedule(_FolderEventHandler(loop=loop, sink=sink), str(self.folder), recursive=False)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None


class NotifyChangeSource(ChangeSource):
    """Native change notification (inotify, FSEvents, kqueue, ReadDirectoryChangesW)."""

    kind = "notify"

    @staticmethod
    def available() -> bool:
        """False when the platform's default observer is just the polling one."""
        return not issubclass(Observer, PollingObserver)

    def _make_observer(self) -> BaseObserver:
        return Observer()


class PollChangeSource(ChangeSource):
    """Periodic directory listing via watchdog's polling observer."""

    kind = "poll"

    def __init__(self, folder: Path, *, poll_interval: float) -> None:
        super().__init__(folder)
        self.poll_interval = poll_interval

    def _make_observer(self) -> BaseObserver:
        return PollingObserver(timeout=self.poll_interval)


def open_change_source(
    folder: Path,
    loop: asyncio.AbstractEventLoop,
    sink: Callable[[Path], None],
    *,
    poll_interval: float,
    prefer_notify: bool = True,
) -> ChangeSource:
    """Start the best available change source for ``folder``.

    Native notification is tried first; any failure to start it falls
    back to polling.
    """
    if prefer_notify and NotifyChangeSource.available():
        source = NotifyChangeSource(folder)
        try:
            source.start(loop, sink)
            logger.info("Watching %s (native notifications)", folder)
            return source
        except OSError as exc:
            logger.warning(
                "Native notifications unavailable for %s (%s), falling back to polling", folder, exc
            )

    source = PollChangeSource(folder, poll_interval=poll_interval)
    source.start(loop, sink)
    logger.info("Watching %s (polling every %.1fs)", folder, poll_interval)
    return source


def file_snapshot(path: Path) -> tuple[int, int]:
    """``(size, mtime_ns)`` of a file. Raises ``OSError`` if it cannot be stat'ed."""
    st = path.stat()
    return st.st_size, st.st_mtime_ns


class FolderWatcher:
    """Discovers files in one folder and emits them once they stop changing.

    Usage::

        watcher = FolderWatcher(folder, tracker, ready_queue, settle_interval=2.0)
        watcher.scan_existing()
        await watcher.settled()        # --once: wait for stabilisation to finish

        watcher.start()                # daemon: also follow new files
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        folder: Path,
        tracker: FileStateTracker,
        ready: "asyncio.Queue[FileEvent]",
        *,
        settle_interval: float,
        settle_max_wait: float = 60.0,
        poll_interval: float = 2.0,
        prefer_notify: bool = True,
    ) -> None:
        if settle_interval <= 0 or settle_max_wait <= settle_interval:
            raise ValueError("need 0 < settle_interval < settle_max_wait")
        self.folder = Path(os.path.abspath(folder))
        self.tracker = tracker
        self.ready = ready
        self.settle_interval = settle_interval
        self.settle_max_wait = settle_max_wait
        self.poll_interval = poll_interval
        self.prefer_notify = prefer_notify
        self.source: ChangeSource | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _wanted(self, path: Path) -> bool:
        path = Path(os.path.abspath(path))
        if path.parent != self.folder:
            return False
        if path.name.startswith(".") or path.name in RELOCATION_DIRS:
            return False
        return path.is_file()

    def offer(self, path: Path) -> TrackedFile | None:
        """Register a discovered path and start stabilising it.

        Returns the new tracked entry, or None if the path was filtered out
        or its name is already being processed.
        """
        if self._stopped or not self._wanted(path):
            return None
        entry = self.tracker.register(Path(os.path.abspath(path)))
        if entry is None:
            return None
        logger.info("Detected file: %s", entry.name)
        self._settle_later(entry)
        return entry

    def resettle(self, entry: TrackedFile) -> bool:
        """Stabilise an entry again after it changed while waiting to post.

        The caller has already moved it back to ``stabilizing``. Returns
        False once the watcher is stopped; the file is then left for the
        next run.
        """
        if self._stopped:
            return False
        logger.info("File changed after settling, re-checking: %s", entry.name)
        self._settle_later(entry)
        return True

    def _settle_later(self, entry: TrackedFile) -> None:
        task = asyncio.get_running_loop().create_task(self._stabilize(entry), name=f"settle:{entry.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def scan_existing(self) -> int:
        """Offer every file already in the folder (startup and --once).

        Returns the number of newly tracked files.
        """
        count = 0
        for item in sorted(self.folder.iterdir()):
            if self.offer(item) is not None:
                count += 1
        logger.debug("Startup scan of %s found %d new file(s)", self.folder, count)
        return count

    def start(self) -> ChangeSource:
        """Subscribe to changes (native, or polling as a fallback)."""
        self.source = open_change_source(
            self.folder,
            asyncio.get_running_loop(),
            self.offer,
            poll_interval=self.poll_interval,
            prefer_notify=self.prefer_notify,
        )
        return self.source

    async def stop(self) -> None:
        """Stop following changes and abandon files still settling."""
        self._stopped = True
        if self.source is not None:
            await asyncio.to_thread(self.source.stop)
            self.source = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def settled(self) -> None:
        """Wait until every file currently settling is ready or dropped."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ------------------------------------------------------------------
    # Stabilisation
    # ------------------------------------------------------------------

    async def _stabilize(self, entry: TrackedFile) -> None:
        """Re-stat until size and mtime are unchanged across one interval."""
        name = entry.name
        try:
            if entry.state != FileState.STABILIZING:
                self.tracker.advance(name, FileState.STABILIZING)
            started = time.monotonic()
            previous = file_snapshot(entry.path)
            while True:
                await asyncio.sleep(self.settle_interval)
                current = file_snapshot(entry.path)
                if current == previous:
                    break
                previous = current
                if time.monotonic() - started >= self.settle_max_wait:
                    logger.warning("File failed to settle: %s", name)
                    self.ready.put_nowait(
                        FileEvent(
                            path=entry.path,
                            detected_at=entry.detected_at,
                            settle_error=f"file failed to settle after {self.settle_max_wait:g}s",
                        )
                    )
                    return
        except OSError as exc:
            logger.debug("Lost %s while settling: %s", name, exc)
            self.tracker.discard(name)
            return
        except asyncio.CancelledError:
            self.tracker.discard(name)
            raise

        entry.size, entry.mtime_ns = current
        self.tracker.advance(name, FileState.READY_TO_POST)
        logger.info("File settled: %s (%d bytes)", name, entry.size)
        self.ready.put_nowait(FileEvent(path=entry.path, detected_at=entry.detected_at))
