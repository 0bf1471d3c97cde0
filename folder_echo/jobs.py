"""Folder job loader.

Reads the INI configuration file (one section per watched folder) and
validates each section into a ``FolderJob``::

    [public folder]
    bot_name = Cat Pictures!
    bot_icon = :robot_face:
    folder = /path/to/my_folder
    limit_uploads_per_minute = 10
    slack_channel = #daily-cat-pictures
    slack_token = xoxb-...
"""

import configparser
import logging
from pathlib import Path

from pydantic import ValidationError

from folder_echo.schemas.echo import FolderJob

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("bot_name", "folder", "limit_uploads_per_minute", "slack_channel", "slack_token")


class ConfigError(Exception):
    """The configuration file is missing, malformed, or points at bad folders."""


def _parse_section(name: str, section: configparser.SectionProxy) -> FolderJob:
    missing = [key for key in REQUIRED_KEYS if not section.get(key, "").strip()]
    if missing:
        raise ConfigError(f"[{name}] missing {', '.join(missing)}")

    raw_limit = section["limit_uploads_per_minute"].strip()
    try:
        limit = int(raw_limit)
    except ValueError:
        raise ConfigError(f"[{name}] invalid limit_uploads_per_minute: {raw_limit!r}") from None

    try:
        job = FolderJob(
            name=name,
            folder=Path(section["folder"].strip()).expanduser(),
            channel=section["slack_channel"].strip(),
            display_name=section["bot_name"].strip(),
            icon=section.get("bot_icon", "").strip() or None,
            uploads_per_minute=limit,
            token=section["slack_token"].strip(),
        )
    except ValidationError as exc:
        raise ConfigError(f"[{name}] {exc.errors()[0]['loc'][0]}: {exc.errors()[0]['msg']}") from exc

    if not job.folder.is_dir():
        raise ConfigError(f"[{name}] folder does not exist: {job.folder}")
    return job


def read_config_file(path: str | Path) -> list[FolderJob]:
    """Parse and validate every section of the INI file, in file order.

    Raises:
        ConfigError: On any problem. Nothing is returned partially.
    """
    path = Path(path)
    logger.info("Reading config file: %s", path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ConfigError(f"Malformed config file {path}: {exc}") from exc

    jobs = []
    for name in parser.sections():
        job = _parse_section(name, parser[name])
        logger.info("Found bot %r, watching folder %s → %s", job.display_name, job.folder, job.channel)
        jobs.append(job)

    if not jobs:
        raise ConfigError(f"No folder sections in config file: {path}")
    return jobs
