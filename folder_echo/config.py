"""Single source of truth for process-wide settings.

All modules import from here, never from os.environ directly.

Values come from the environment, with an optional plain ``.env`` file
(``FOLDER_ECHO_ENV_FILE``, default ``.env`` in the working directory) as a
fallback. Per-folder settings (channel, token, rate limit) live in the INI
file passed on the command line, see ``folder_echo.jobs``.
"""

import os
from pathlib import Path

from dotenv import dotenv_values

VERSION = "0.1.0"


def _load(dotenv_path: str | Path) -> dict[str, str | None]:
    """Merge a ``.env`` file (if present) under the real environment."""
    path = Path(dotenv_path)
    values: dict[str, str | None] = dict(dotenv_values(path)) if path.is_file() else {}
    values.update({k: v for k, v in os.environ.items() if k.startswith("FOLDER_ECHO_")})
    return values


_env = _load(os.environ.get("FOLDER_ECHO_ENV_FILE", ".env"))

# --- File readiness ---
SETTLE_INTERVAL: float = float(_env.get("FOLDER_ECHO_SETTLE_INTERVAL") or "2.0")
SETTLE_MAX_WAIT: float = float(_env.get("FOLDER_ECHO_SETTLE_MAX_WAIT") or "60.0")

# --- Change detection ---
POLL_INTERVAL: float = float(_env.get("FOLDER_ECHO_POLL_INTERVAL") or "2.0")

# --- Rate limiting in --once mode and while draining on shutdown ---
ONCE_MAX_WAIT: float = float(_env.get("FOLDER_ECHO_ONCE_MAX_WAIT") or "30.0")

# --- Slack ---
SLACK_API_URL: str = _env.get("FOLDER_ECHO_SLACK_API_URL") or "https://slack.com/api"
SLACK_TIMEOUT: float = float(_env.get("FOLDER_ECHO_SLACK_TIMEOUT") or "60.0")

# --- Audit (empty = disabled) ---
AUDIT_LOG_PATH: str = _env.get("FOLDER_ECHO_AUDIT_LOG_PATH") or ""
