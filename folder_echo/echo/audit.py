"""JSONL record of what happened to each file the dispatcher handled.

Besides giving operators a history without grepping process logs, the
record answers one question for the CLI at the end of a run: which files
are still sitting in a watched folder (deferred for lack of an upload
token, or not movable after posting) and will be picked up next time.
"""

import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from folder_echo.schemas.echo import DeliveryStatus, EchoEvent, FolderJob

logger = logging.getLogger(__name__)

# Outcomes that leave the file in the watched folder
LEFT_IN_FOLDER = frozenset({DeliveryStatus.DEFERRED, DeliveryStatus.RELOCATION_FAILED})


class EchoAuditLog:
    """Per-file outcome log, one JSON object per line.

    Usage::

        audit = EchoAuditLog("/var/log/folder-echo/audit.jsonl")
        audit.record(job, path, DeliveryStatus.POSTED, destination=dest, size=1024)
        for event in audit.left_in_folder(since=run_started):
            print(event.source_path)
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        job: FolderJob,
        source: Path,
        status: DeliveryStatus,
        *,
        destination: Path | None = None,
        error: str = "",
        size: int = 0,
    ) -> EchoEvent:
        """Append the outcome for ``source`` and return the written event."""
        event = EchoEvent(
            timestamp=datetime.now(UTC),
            job_name=job.name,
            channel=job.channel,
            file_name=source.name,
            source_path=str(source),
            status=status,
            destination=str(destination) if destination is not None else "",
            error_message=error,
            file_size_bytes=size,
        )
        with self.path.open("a") as f:
            f.write(event.model_dump_json() + "\n")
        logger.debug("Audit: [%s] %s %s", job.name, source.name, status)
        return event

    def left_in_folder(self, *, since: datetime | None = None) -> list[EchoEvent]:
        """Files whose latest outcome left them in the watched folder.

        A file deferred once and posted later is resolved and not returned.
        Only events at or after ``since`` are considered.
        """
        latest: dict[str, EchoEvent] = {}
        for event in self._events():
            if since is not None and event.timestamp < since:
                continue
            latest[event.source_path] = event
        return [event for event in latest.values() if event.status in LEFT_IN_FOLDER]

    def _events(self) -> Iterator[EchoEvent]:
        if not self.path.exists():
            return
        with self.path.open() as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield EchoEvent.model_validate_json(line)
                except ValidationError:
                    logger.warning("Skipping unreadable audit line %d in %s", lineno, self.path)
