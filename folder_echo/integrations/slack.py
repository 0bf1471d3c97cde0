"""Async client for the Slack Web API (file uploads and notices).

Files go up in three steps, as Slack requires since ``files.upload`` was
retired: ``files.getUploadURLExternal`` reserves a file id and a signed
upload URL, the bytes are sent to that URL, and
``files.completeUploadExternal`` shares the file into the channel.

Every delivery problem (transport error, HTTP status, unparseable body,
``"ok": false``) at any step comes back as a failed ``DeliveryResult``;
callers never have to catch exceptions from ``post`` or ``post_message``.
"""

import json
import logging
from pathlib import Path
from typing import Any

import httpx

from folder_echo.schemas.echo import DeliveryResult

logger = logging.getLogger(__name__)

# Page size for conversations.list / users.list when resolving names
_PAGE_LIMIT = 200


class SlackCallError(Exception):
    """One Web API step failed; the message is the reason shown to users."""


class SlackClient:
    """Async HTTP client for Slack.

    The bot token is passed per call because each folder job may post with
    a different app.

    Usage::

        async with SlackClient() as slack:
            result = await slack.post(path, "#cats", token)
    """

    def __init__(self, base_url: str = "https://slack.com/api", *, timeout: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout)
        # (token, "#name" or "@user") -> conversation id
        self._channel_ids: dict[tuple[str, str], str] = {}

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def post(
        self,
        file_path: str | Path,
        channel: str,
        token: str,
        *,
        title: str | None = None,
        initial_comment: str | None = None,
    ) -> DeliveryResult:
        """Upload a file and share it into ``channel``.

        ``channel`` may be a conversation id (``C…``, ``G…``, ``D…``), a
        ``#channel-name`` or an ``@user`` for a direct message. The title
        defaults to the file name. Uploads always appear under the app's
        own name and icon; Slack offers no per-upload override.
        """
        path = Path(file_path)
        logger.info("Posting %s to %s", path.name, channel)
        try:
            size = path.stat().st_size
            channel_id = await self.channel_id(channel, token)

            ticket = await self._call(
                "files.getUploadURLExternal", token, {"filename": path.name, "length": str(size)}
            )
            upload_url, file_id = ticket.get("upload_url"), ticket.get("file_id")
            if not upload_url or not file_id:
                raise SlackCallError("files.getUploadURLExternal: no upload_url/file_id in response")

            await self._upload(upload_url, path)

            complete = {
                "files": json.dumps([{"id": file_id, "title": title or path.name}]),
                "channel_id": channel_id,
            }
            if initial_comment:
                complete["initial_comment"] = initial_comment
            await self._call("files.completeUploadExternal", token, complete)
        except OSError as exc:
            return DeliveryResult.failure(f"Cannot read {path.name}: {exc}")
        except SlackCallError as exc:
            return DeliveryResult.failure(str(exc))

        logger.info("Uploaded %s to %s (file %s)", path.name, channel, file_id)
        return DeliveryResult.success()

    async def post_message(
        self,
        channel: str,
        text: str,
        display_name: str,
        icon: str | None,
        token: str,
        *,
        title: str | None = None,
    ) -> DeliveryResult:
        """Post a plain text notice via ``chat.postMessage``."""
        if title:
            text = f"*{title}*\n{text}"
        data = {"channel": channel, "username": display_name, "text": text}
        if icon:
            data["icon_emoji"] = icon

        logger.debug("Posting message to %s: %s", channel, text)
        try:
            await self._call("chat.postMessage", token, data)
        except SlackCallError as exc:
            return DeliveryResult.failure(str(exc))
        return DeliveryResult.success()

    async def channel_id(self, channel: str, token: str) -> str:
        """Resolve ``#name`` or ``@user`` to a conversation id.

        Anything else is taken to be an id already. Results are cached per
        token.

        Raises:
            SlackCallError: If a lookup call fails or nothing matches.
        """
        if not channel.startswith(("#", "@")):
            return channel
        key = (token, channel)
        if key not in self._channel_ids:
            if channel.startswith("#"):
                resolved = await self._find_channel(channel[1:], token)
            else:
                resolved = await self._open_direct_message(channel[1:], token)
            logger.debug("Resolved %s to %s", channel, resolved)
            self._channel_ids[key] = resolved
        return self._channel_ids[key]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find_channel(self, name: str, token: str) -> str:
        params = {"types": "public_channel,private_channel", "exclude_archived": "true"}
        async for item in self._paged("conversations.list", "channels", token, params):
            if item.get("name") == name:
                return item["id"]
        raise SlackCallError(f"channel_not_found: #{name}")

    async def _open_direct_message(self, handle: str, token: str) -> str:
        user_id = None
        async for user in self._paged("users.list", "members", token, {}):
            if handle in (user.get("name"), user.get("profile", {}).get("display_name")):
                user_id = user["id"]
                break
        if user_id is None:
            raise SlackCallError(f"user_not_found: @{handle}")
        payload = await self._call("conversations.open", token, {"users": user_id})
        try:
            return payload["channel"]["id"]
        except (KeyError, TypeError):
            raise SlackCallError("conversations.open: no channel id in response") from None

    async def _paged(self, method: str, key: str, token: str, params: dict[str, str]):
        cursor = ""
        while True:
            data = {**params, "limit": str(_PAGE_LIMIT)}
            if cursor:
                data["cursor"] = cursor
            payload = await self._call(method, token, data)
            for item in payload.get(key) or []:
                yield item
            cursor = (payload.get("response_metadata") or {}).get("next_cursor", "")
            if not cursor:
                return

    async def _upload(self, upload_url: str, path: Path) -> None:
        """Send the file bytes to the signed URL from getUploadURLExternal."""
        try:
            with path.open("rb") as f:
                response = await self._client.post(
                    upload_url, files={"file": (path.name, f, "application/octet-stream")}
                )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SlackCallError(f"Upload failed: {exc}") from exc

    async def _call(self, method: str, token: str, data: dict[str, str]) -> dict[str, Any]:
        """POST one Web API method and return its payload if ``ok`` is true."""
        try:
            response = await self._client.post(f"/{method}", data=data, headers=self._auth(token))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SlackCallError(f"HTTP error: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Slack response to %s: %s", method, response.text)
            raise SlackCallError(f"Failed to parse Slack response: {exc}") from exc

        ok = payload.get("ok") if isinstance(payload, dict) else None
        if ok is True:
            logger.debug("Got ok from Slack for %s", method)
            return payload
        logger.error("Slack response to %s: %s", method, response.text)
        if ok is False:
            raise SlackCallError(payload.get("error") or "No error field in response")
        raise SlackCallError("No 'ok' field in response")

    @staticmethod
    def _auth(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}
