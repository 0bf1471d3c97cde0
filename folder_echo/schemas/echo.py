"""Schemas for the folder echo pipeline.

Covers configured folder jobs, per-file tracking state, delivery results,
and the audit/report records produced once a file is resolved.
"""

from datetime import datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, PositiveInt


class FolderJob(BaseModel):
    """One configured folder → Slack channel pairing."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Config section name, used in logs")
    folder: Path
    channel: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    icon: str | None = Field(default=None, description="Slack emoji, e.g. ':robot_face:'")
    uploads_per_minute: PositiveInt
    token: str = Field(min_length=1, repr=False)

    @property
    def posted_dir(self) -> Path:
        return self.folder / "posted"

    @property
    def rejected_dir(self) -> Path:
        return self.folder / "rejected"


class FileState(StrEnum):
    """Lifecycle of a tracked file."""

    DETECTED = "detected"
    STABILIZING = "stabilizing"
    READY_TO_POST = "ready_to_post"
    POSTING = "posting"
    POSTED = "posted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (FileState.POSTED, FileState.REJECTED)


class TrackedFile(BaseModel):
    """A file the watcher has registered and not yet relocated."""

    path: Path
    state: FileState = FileState.DETECTED
    attempts: int = Field(default=0, ge=0)
    size: int | None = None
    mtime_ns: int | None = Field(default=None, description="st_mtime_ns when the file settled")
    detected_at: datetime

    @property
    def name(self) -> str:
        return self.path.name


class FileEvent(BaseModel):
    """A stable file handed from the watcher to the dispatcher."""

    path: Path
    detected_at: datetime
    settle_error: str = Field(
        default="",
        description="Set when the file never stopped changing within the settle window",
    )


class DeliveryResult(BaseModel):
    """Outcome of one Slack call. ``ok=False`` carries the reason."""

    ok: bool
    error: str = ""

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "DeliveryResult":
        return cls(ok=False, error=reason)


class DeliveryStatus(StrEnum):
    """How a file left (or stayed in) the watched folder."""

    POSTED = "posted"
    REJECTED = "rejected"
    DEFERRED = "deferred"
    RELOCATION_FAILED = "relocation_failed"


class EchoEvent(BaseModel):
    """An audit record for a single resolved file."""

    timestamp: datetime
    job_name: str
    channel: str
    file_name: str
    source_path: str = Field(description="Original file path in the watched folder")
    status: DeliveryStatus
    destination: str = Field(default="", description="Path the file was moved to, if any")
    error_message: str = Field(default="", description="Delivery or relocation error, if any")
    file_size_bytes: int = Field(default=0, ge=0)


class JobReport(BaseModel):
    """Per-job tally for one run of the supervisor."""

    job_name: str
    posted: int = 0
    rejected: int = 0
    deferred: int = 0
    fatal_error: str = ""

    @property
    def ok(self) -> bool:
        return self.rejected == 0 and not self.fatal_error


class RunReport(BaseModel):
    """Aggregate of every job's report. ``ok`` drives the exit status."""

    jobs: list[JobReport] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(job.ok for job in self.jobs)

    @property
    def posted(self) -> int:
        return sum(job.posted for job in self.jobs)

    @property
    def rejected(self) -> int:
        return sum(job.rejected for job in self.jobs)

    @property
    def deferred(self) -> int:
        return sum(job.deferred for job in self.jobs)
