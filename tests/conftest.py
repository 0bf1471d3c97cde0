"""Shared fixtures for folder-echo tests."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from folder_echo.schemas.echo import DeliveryResult, FolderJob


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def make_job(tmp_path):
    """Build a FolderJob around a fresh folder under tmp_path."""

    def _make(
        name: str = "cats",
        *,
        channel: str = "#cats",
        uploads_per_minute: int = 60,
        folder: Path | None = None,
    ) -> FolderJob:
        if folder is None:
            folder = tmp_path / name
        folder.mkdir(parents=True, exist_ok=True)
        return FolderJob(
            name=name,
            folder=folder,
            channel=channel,
            display_name="Cat Pictures!",
            icon=":robot_face:",
            uploads_per_minute=uploads_per_minute,
            token="xoxb-test",
        )

    return _make


@pytest.fixture()
def slack():
    """A SlackClient stand-in whose calls all succeed."""
    client = AsyncMock()
    client.post.return_value = DeliveryResult.success()
    client.post_message.return_value = DeliveryResult.success()
    return client
