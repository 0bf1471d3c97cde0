"""Delivery and relocation of ready files for one folder job.

For each ready file, in the order it became ready:
  1. wait for an upload token from the channel's rate limiter,
  2. check it has not changed since it settled (else hand it back to the
     watcher),
  3. post it to Slack,
  4. move it to ``posted/`` or ``rejected/`` (exactly once).

A failed delivery is final for the run (the file goes to ``rejected/``).
A failed move is fatal for the job's cycle and leaves the file where it is,
so the next run retries the whole pipeline.
"""

import asyncio
import itertools
import logging
import os
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from folder_echo.echo.audit import EchoAuditLog
from folder_echo.echo.rate_limiter import TokenBucket
from folder_echo.echo.tracker import FileStateTracker
from folder_echo.echo.watcher import file_snapshot
from folder_echo.integrations.slack import SlackClient
from folder_echo.schemas.echo import (
    DeliveryResult,
    DeliveryStatus,
    FileEvent,
    FileState,
    FolderJob,
    JobReport,
    TrackedFile,
)

logger = logging.getLogger(__name__)

ERROR_NOTICE_ICON = ":scream_cat:"
RATE_LIMIT_NOTICE_ICON = ":snail:"


class RelocationError(Exception):
    """A file could not be moved into ``posted/`` or ``rejected/``."""


class Dispatcher:
    """Posts ready files for one job and relocates them by outcome."""

    def __init__(
        self,
        job: FolderJob,
        tracker: FileStateTracker,
        bucket: TokenBucket,
        slack: SlackClient,
        *,
        report: JobReport | None = None,
        audit_log: EchoAuditLog | None = None,
        resettle: Callable[[TrackedFile], bool] | None = None,
    ) -> None:
        self.job = job
        self.tracker = tracker
        self.bucket = bucket
        self.slack = slack
        self.report = report or JobReport(job_name=job.name)
        self.audit_log = audit_log
        # Restarts stabilisation for a file that changed after settling
        # (FolderWatcher.resettle); False or None leaves it for the next run
        self.resettle = resettle
        # At most one "rate limit exceeded" notice per minute
        self._notice_bucket = TokenBucket.per_minute(1)

    # ------------------------------------------------------------------
    # Queue consumers
    # ------------------------------------------------------------------

    async def run(self, ready: "asyncio.Queue[FileEvent]", stop: asyncio.Event) -> None:
        """Daemon loop: handle files as they become ready until ``stop`` is set.

        Waits as long as needed for rate-limit tokens. Files still queued
        when ``stop`` is set are left for ``drain``.
        """
        while not stop.is_set():
            getter = asyncio.ensure_future(ready.get())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
            if getter not in done:
                getter.cancel()
                break
            await self.handle(getter.result())

    async def drain(self, ready: "asyncio.Queue[FileEvent]", *, budget: float) -> None:
        """Handle everything already queued, waiting at most ``budget``
        seconds in total for rate-limit tokens. Files that do not get a
        token in time are left in place for the next run.
        """
        deadline = time.monotonic() + budget
        while not ready.empty():
            event = ready.get_nowait()
            await self.handle(event, max_wait=max(0.0, deadline - time.monotonic()))

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    async def handle(self, event: FileEvent, *, max_wait: float | None = None) -> DeliveryStatus | None:
        """Deliver and relocate one file.

        Returns:
            The outcome, or None if the file vanished or changed before
            posting.

        Raises:
            RelocationError: If the final move failed.
        """
        path = event.path
        name = path.name

        if event.settle_error:
            return await self._resolve(event, DeliveryResult.failure(event.settle_error))

        if not await self._acquire_token(max_wait):
            logger.warning("[%s] No upload token in time, leaving %s for next run", self.job.name, name)
            self.report.deferred += 1
            self._audit(event, DeliveryStatus.DEFERRED)
            return DeliveryStatus.DEFERRED

        try:
            current = file_snapshot(path) if path.is_file() else None
        except OSError:
            current = None
        if current is None:
            logger.info("[%s] %s disappeared before posting, skipping", self.job.name, name)
            self.tracker.discard(name)
            return None

        entry = self.tracker.get(name)
        if entry is not None and entry.size is not None and current != (entry.size, entry.mtime_ns):
            # Written to again while queued; the token is spent either way
            self._send_back(entry)
            return None

        self.tracker.advance(name, FileState.POSTING)
        try:
            result = await self.slack.post(path, self.job.channel, self.job.token)
        except Exception as exc:
            logger.exception("[%s] Unexpected error posting %s", self.job.name, name)
            result = DeliveryResult.failure(str(exc))
        return await self._resolve(event, result)

    async def _acquire_token(self, max_wait: float | None) -> bool:
        delay = await self.bucket.acquire()
        if delay == 0.0:
            return True
        logger.info("[%s] Upload rate limit reached, next token in %.1fs", self.job.name, delay)
        await self._rate_limit_notice()
        return await self.bucket.wait(max_wait)

    def _send_back(self, entry: TrackedFile) -> None:
        self.tracker.advance(entry.name, FileState.STABILIZING)
        if self.resettle is not None and self.resettle(entry):
            logger.info("[%s] %s changed while waiting to post, settling again", self.job.name, entry.name)
            return
        logger.info("[%s] %s changed while waiting to post, leaving it for next run", self.job.name, entry.name)
        self.tracker.discard(entry.name)

    async def _resolve(self, event: FileEvent, result: DeliveryResult) -> DeliveryStatus:
        """Move the file according to ``result`` and record the outcome."""
        path = event.path
        name = path.name
        if result.ok:
            target_dir, status, state = self.job.posted_dir, DeliveryStatus.POSTED, FileState.POSTED
        else:
            logger.error("[%s] Error handling %s: %s", self.job.name, name, result.error)
            target_dir, status, state = self.job.rejected_dir, DeliveryStatus.REJECTED, FileState.REJECTED

        size = self._size(path)
        try:
            dest = self._free_name(target_dir, name)
            shutil.move(path, dest)
        except OSError as exc:
            self._audit(event, DeliveryStatus.RELOCATION_FAILED, error=f"move failed: {exc}", size=size)
            raise RelocationError(f"Cannot move {name} into {target_dir}: {exc}") from exc

        self.tracker.advance(name, state)
        self.tracker.release(name)
        logger.info("[%s] %s → %s", self.job.name, name, dest)
        self._audit(event, status, destination=dest, error=result.error, size=size)

        if result.ok:
            self.report.posted += 1
        else:
            self.report.rejected += 1
            await self._error_notice(name, result.error)
        return status

    # ------------------------------------------------------------------
    # Channel notices
    # ------------------------------------------------------------------

    async def _error_notice(self, file_name: str, error: str) -> None:
        result = await self.slack.post_message(
            self.job.channel,
            f"Failed to process / post incoming file '{file_name}'. Admins, please check logs. Error: {error}",
            self.job.display_name,
            ERROR_NOTICE_ICON,
            self.job.token,
            title="Sorry! Error posting file.",
        )
        if not result.ok:
            logger.error("[%s] Error posting error message: %s", self.job.name, result.error)

    async def _rate_limit_notice(self) -> None:
        if await self._notice_bucket.acquire() != 0.0:
            return
        logger.warning("[%s] Upload rate limit exceeded", self.job.name)
        result = await self.slack.post_message(
            self.job.channel,
            f"Note: There are currently too many (>{self.job.uploads_per_minute}) files to upload "
            "per minute. Limiting posting rate for now.",
            self.job.display_name,
            RATE_LIMIT_NOTICE_ICON,
            self.job.token,
            title="(Upload rate limit exceeded.)",
        )
        if not result.ok:
            logger.error("[%s] Error posting rate limit notice: %s", self.job.name, result.error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _free_name(target_dir: Path, name: str) -> Path:
        """``target_dir/name``, or the first of ``stem_1.ext``, ``stem_2.ext``…
        that does not exist yet. Earlier uploads are never overwritten."""
        stem, ext = os.path.splitext(name)
        candidates = (target_dir / (name if n == 0 else f"{stem}_{n}{ext}") for n in itertools.count())
        return next(c for c in candidates if not c.exists())

    @staticmethod
    def _size(path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError:
            return 0

    def _audit(
        self,
        event: FileEvent,
        status: DeliveryStatus,
        *,
        destination: Path | None = None,
        error: str = "",
        size: int | None = None,
    ) -> None:
        if self.audit_log is None:
            return
        self.audit_log.record(
            self.job,
            event.path,
            status,
            destination=destination,
            error=error,
            size=self._size(event.path) if size is None else size,
        )
