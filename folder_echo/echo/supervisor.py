"""Runs one watcher + dispatcher pipeline per folder job, concurrently.

Jobs are isolated: an exception in one job is recorded in its report and
never cancels the others. The only state shared between jobs is the
per-channel rate limiter.
"""

import asyncio
import logging
import time

from folder_echo.echo.audit import EchoAuditLog
from folder_echo.echo.dispatcher import Dispatcher, RelocationError
from folder_echo.echo.rate_limiter import RateLimiterRegistry
from folder_echo.echo.tracker import FileStateTracker
from folder_echo.echo.watcher import FolderWatcher
from folder_echo.integrations.slack import SlackClient
from folder_echo.schemas.echo import FileEvent, FolderJob, JobReport, RunReport

logger = logging.getLogger(__name__)


class Supervisor:
    """Owns the pipelines for every configured folder.

    Usage::

        async with SlackClient() as slack:
            supervisor = Supervisor(jobs, slack, settle_interval=2.0)
            report = await supervisor.run(once=True)
        sys.exit(0 if report.ok else 1)
    """

    def __init__(
        self,
        jobs: list[FolderJob],
        slack: SlackClient,
        *,
        audit_log: EchoAuditLog | None = None,
        settle_interval: float = 2.0,
        settle_max_wait: float = 60.0,
        poll_interval: float = 2.0,
        once_max_wait: float = 30.0,
        prefer_notify: bool = True,
        limiters: RateLimiterRegistry | None = None,
    ) -> None:
        self.jobs = jobs
        self.slack = slack
        self.audit_log = audit_log
        self.settle_interval = settle_interval
        self.settle_max_wait = settle_max_wait
        self.poll_interval = poll_interval
        self.once_max_wait = once_max_wait
        self.prefer_notify = prefer_notify
        self.limiters = limiters or RateLimiterRegistry.from_jobs(jobs)
        self._stop = asyncio.Event()

    def request_stop(self) -> None:
        """Ask daemon-mode jobs to stop watching and drain what is ready."""
        if not self._stop.is_set():
            logger.info("Stop requested, draining ready files…")
        self._stop.set()

    async def run(self, *, once: bool) -> RunReport:
        """Run every job to completion (``once``) or until ``request_stop``."""
        results = await asyncio.gather(
            *(self._run_job(job, once=once) for job in self.jobs),
            return_exceptions=True,
        )

        reports = []
        for job, result in zip(self.jobs, results):
            if isinstance(result, BaseException):
                logger.error("[%s] Job crashed: %r", job.name, result, exc_info=result)
                result = JobReport(job_name=job.name, fatal_error=repr(result))
            reports.append(result)

        report = RunReport(jobs=reports)
        if not report.ok:
            logger.warning("There were errors running folder jobs.")
        return report

    async def _run_job(self, job: FolderJob, *, once: bool) -> JobReport:
        logger.info(
            "Starting job %r: folder %s, channel %s (%s)",
            job.name,
            job.folder,
            job.channel,
            "once" if once else "daemon",
        )
        report = JobReport(job_name=job.name)

        try:
            job.posted_dir.mkdir(exist_ok=True)
            job.rejected_dir.mkdir(exist_ok=True)
        except OSError as exc:
            logger.error("[%s] Cannot create posted/rejected folders: %s", job.name, exc)
            report.fatal_error = str(exc)
            return report

        tracker = FileStateTracker()
        ready: asyncio.Queue[FileEvent] = asyncio.Queue()
        watcher = FolderWatcher(
            job.folder,
            tracker,
            ready,
            settle_interval=self.settle_interval,
            settle_max_wait=self.settle_max_wait,
            poll_interval=self.poll_interval,
            prefer_notify=self.prefer_notify,
        )
        dispatcher = Dispatcher(
            job,
            tracker,
            self.limiters.for_channel(job.channel, job.uploads_per_minute),
            self.slack,
            report=report,
            audit_log=self.audit_log,
            resettle=watcher.resettle,
        )

        try:
            if once:
                watcher.scan_existing()
                deadline = time.monotonic() + self.once_max_wait
                # Files sent back to settle while draining come round again
                await watcher.settled()
                while not ready.empty():
                    await dispatcher.drain(ready, budget=max(0.0, deadline - time.monotonic()))
                    await watcher.settled()
            else:
                # Subscribe before the startup scan so nothing slips between them
                watcher.start()
                watcher.scan_existing()
                try:
                    await dispatcher.run(ready, self._stop)
                finally:
                    await watcher.stop()
                await dispatcher.drain(ready, budget=self.once_max_wait)
        except RelocationError as exc:
            logger.error("[%s] %s", job.name, exc)
            report.fatal_error = str(exc)
            await watcher.stop()

        left = tracker.pending()
        if left:
            logger.warning(
                "[%s] %d file(s) left in %s for the next run: %s",
                job.name,
                len(left),
                job.folder,
                ", ".join(f.name for f in left),
            )
        logger.info(
            "[%s] Done. Posted: %d, Rejected: %d, Deferred: %d",
            job.name,
            report.posted,
            report.rejected,
            report.deferred,
        )
        return report
