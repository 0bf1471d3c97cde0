"""Per-folder registry of files currently being processed.

Keyed by file name: a name that is already tracked (in any non-terminal
state) cannot be registered again until its entry is released or
discarded. This is what keeps a file from being delivered twice when both
a create and a close event fire, or when it is re-created under the same
name before the previous copy was relocated.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from folder_echo.schemas.echo import FileState, TrackedFile

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[FileState, frozenset[FileState]] = {
    FileState.DETECTED: frozenset({FileState.STABILIZING, FileState.READY_TO_POST, FileState.REJECTED}),
    FileState.STABILIZING: frozenset({FileState.READY_TO_POST, FileState.REJECTED}),
    FileState.READY_TO_POST: frozenset({FileState.POSTING, FileState.STABILIZING, FileState.REJECTED}),
    FileState.POSTING: frozenset({FileState.POSTED, FileState.REJECTED}),
    FileState.POSTED: frozenset(),
    FileState.REJECTED: frozenset(),
}


class FileStateTracker:
    """Tracks files for one watched folder.

    Not thread-safe: only touched from the event loop.

    Usage::

        tracker = FileStateTracker()
        entry = tracker.register(path)   # None if the name is already tracked
        tracker.advance(entry.name, FileState.STABILIZING)
        ...
        tracker.release(entry.name)      # after the file has been moved
    """

    def __init__(self) -> None:
        self._files: dict[str, TrackedFile] = {}

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, name: str) -> bool:
        return name in self._files

    def get(self, name: str) -> TrackedFile | None:
        return self._files.get(name)

    def register(self, path: Path) -> TrackedFile | None:
        """Start tracking a newly seen file.

        Returns:
            The new entry, or None if a live entry with that name exists.
        """
        existing = self._files.get(path.name)
        if existing is not None:
            logger.debug("Already tracking %s (%s), ignoring", path.name, existing.state)
            return None
        entry = TrackedFile(path=path, detected_at=datetime.now(UTC))
        self._files[path.name] = entry
        return entry

    def advance(self, name: str, state: FileState) -> TrackedFile:
        """Move an entry to ``state``.

        Raises:
            KeyError: If the name is not tracked.
            ValueError: If the transition is not allowed.
        """
        entry = self._files[name]
        if state not in _TRANSITIONS[entry.state]:
            raise ValueError(f"{name}: illegal transition {entry.state} → {state}")
        entry.state = state
        if state == FileState.POSTING:
            entry.attempts += 1
        return entry

    def discard(self, name: str) -> None:
        """Forget a file that vanished or became unreadable."""
        if self._files.pop(name, None) is not None:
            logger.debug("Stopped tracking %s", name)

    def release(self, name: str) -> None:
        """Forget a file after it reached a terminal state and was moved."""
        entry = self._files.get(name)
        if entry is None:
            return
        if not entry.state.is_terminal:
            raise ValueError(f"{name}: cannot release in state {entry.state}")
        del self._files[name]

    def pending(self) -> list[TrackedFile]:
        """Entries that are ready to post or being posted."""
        return [
            f for f in self._files.values() if f.state in (FileState.READY_TO_POST, FileState.POSTING)
        ]

    def is_quiescent(self) -> bool:
        """True when no entry is still on its way to a terminal state."""
        return not any(not f.state.is_terminal for f in self._files.values())
