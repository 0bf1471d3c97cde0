"""Tests for the JSONL delivery audit log."""

import json
from datetime import UTC, datetime, timedelta

from folder_echo.echo.audit import EchoAuditLog
from folder_echo.schemas.echo import DeliveryStatus


class TestRecord:
    def test_creates_file_and_parents(self, tmp_path, make_job):
        log_path = tmp_path / "logs" / "audit.jsonl"
        job = make_job()
        EchoAuditLog(log_path).record(job, job.folder / "photo.jpg", DeliveryStatus.POSTED)
        assert log_path.exists()

    def test_line_carries_job_and_outcome(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        source = job.folder / "photo.jpg"

        event = audit.record(
            job, source, DeliveryStatus.POSTED, destination=job.posted_dir / "photo.jpg", size=1024
        )

        [line] = audit.path.read_text().splitlines()
        data = json.loads(line)
        assert data["job_name"] == "cats"
        assert data["channel"] == "#cats"
        assert data["file_name"] == "photo.jpg"
        assert data["source_path"] == str(source)
        assert data["status"] == "posted"
        assert data["destination"] == str(job.posted_dir / "photo.jpg")
        assert data["file_size_bytes"] == 1024
        assert event.error_message == ""

    def test_appends(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        audit.record(job, job.folder / "a.jpg", DeliveryStatus.POSTED)
        audit.record(job, job.folder / "b.txt", DeliveryStatus.REJECTED, error="invalid channel")
        assert len(audit.path.read_text().splitlines()) == 2


class TestLeftInFolder:
    def test_missing_log_has_nothing(self, tmp_path):
        assert EchoAuditLog(tmp_path / "audit.jsonl").left_in_folder() == []

    def test_deferred_and_relocation_failed_are_reported(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        audit.record(job, job.folder / "a.jpg", DeliveryStatus.POSTED)
        audit.record(job, job.folder / "b.txt", DeliveryStatus.REJECTED)
        audit.record(job, job.folder / "c.jpg", DeliveryStatus.DEFERRED)
        audit.record(job, job.folder / "d.jpg", DeliveryStatus.RELOCATION_FAILED, error="move failed")

        left = audit.left_in_folder()

        assert sorted(e.file_name for e in left) == ["c.jpg", "d.jpg"]

    def test_later_outcome_wins(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        audit.record(job, job.folder / "a.jpg", DeliveryStatus.DEFERRED)
        audit.record(job, job.folder / "a.jpg", DeliveryStatus.POSTED)
        audit.record(job, job.folder / "b.jpg", DeliveryStatus.POSTED)
        audit.record(job, job.folder / "b.jpg", DeliveryStatus.DEFERRED)

        assert [e.file_name for e in audit.left_in_folder()] == ["b.jpg"]

    def test_same_name_in_two_jobs_kept_apart(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        cats, dogs = make_job("cats"), make_job("dogs")
        audit.record(cats, cats.folder / "photo.jpg", DeliveryStatus.DEFERRED)
        audit.record(dogs, dogs.folder / "photo.jpg", DeliveryStatus.POSTED)

        assert [e.job_name for e in audit.left_in_folder()] == ["cats"]

    def test_since_skips_earlier_runs(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        audit.record(job, job.folder / "old.jpg", DeliveryStatus.DEFERRED)
        cutoff = datetime.now(UTC) + timedelta(seconds=1)

        assert audit.left_in_folder(since=cutoff) == []
        assert len(audit.left_in_folder(since=cutoff - timedelta(days=1))) == 1

    def test_unreadable_lines_skipped(self, tmp_path, make_job):
        audit = EchoAuditLog(tmp_path / "audit.jsonl")
        job = make_job()
        audit.path.write_text("not json\n\n")
        audit.record(job, job.folder / "c.jpg", DeliveryStatus.DEFERRED)

        assert [e.file_name for e in audit.left_in_folder()] == ["c.jpg"]
