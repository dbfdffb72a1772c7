"""Slack Web API client over httpx.

Only plain text and identifiers cross this boundary; Block Kit rendering of
interactive cards belongs to the caller.
"""

import logging
from typing import Any

import httpx

from .base import ChatClient, ChatProfile, ExternalServiceError, ThreadReply, ThreadRoot

logger = logging.getLogger(__name__)

SLACK_API_URL = "https://slack.com/api"


class SlackWebClient(ChatClient):
    """ChatClient backed by the Slack Web API."""

    def __init__(
        self,
        token: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._token = token
        self.http_client = http_client or httpx.AsyncClient(
            base_url=SLACK_API_URL,
            timeout=timeout,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.http_client.aclose()

    async def _call(self, method: str, payload: dict[str, Any], form: bool = False) -> dict:
        """Call a Web API method; every failure becomes ExternalServiceError."""
        headers = {"Authorization": f"Bearer {self._token}"}
        try:
            if form:
                response = await self.http_client.post(f"/{method}", headers=headers, data=payload)
            else:
                response = await self.http_client.post(f"/{method}", headers=headers, json=payload)
            data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalServiceError("slack", f"{method} timed out: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError("slack", f"{method} failed: {e}") from e

        if not data.get("ok"):
            raise ExternalServiceError("slack", f"{method} returned {data.get('error')}")
        return data

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    async def post_message(self, channel: str, text: str, blocks: list[dict] | None = None) -> None:
        payload: dict[str, Any] = {"channel": channel, "text": text, "unfurl_links": False}
        if blocks:
            payload["blocks"] = blocks
        await self._call("chat.postMessage", payload)
        logger.info(f"Slack message posted to {channel}")

    async def post_ephemeral(self, channel: str, user: str, text: str) -> None:
        await self._call("chat.postEphemeral", {"channel": channel, "user": user, "text": text})

    async def open_modal(self, trigger_id: str, view: dict) -> None:
        await self._call("views.open", {"trigger_id": trigger_id, "view": view})

    async def update_message(self, channel: str, ts: str, text: str, blocks: list[dict]) -> None:
        await self._call("chat.update", {"channel": channel, "ts": ts, "text": text, "blocks": blocks})

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def fetch_thread_root(self, channel: str, ts: str) -> ThreadRoot | None:
        data = await self._call(
            "conversations.history",
            {"channel": channel, "latest": ts, "limit": 1, "inclusive": "true"},
            form=True,
        )
        messages = data.get("messages") or []
        if not messages:
            return None

        message = messages[0]
        return ThreadRoot(
            ts=message.get("ts", ""),
            user=message.get("user"),
            text=message.get("text") or "",
            reply_count=message.get("reply_count") or 0,
            reply_users=message.get("reply_users") or [],
            latest_reply=message.get("latest_reply"),
        )

    async def fetch_thread_replies(self, channel: str, ts: str) -> list[ThreadReply]:
        data = await self._call(
            "conversations.replies",
            {"channel": channel, "ts": ts, "limit": 100},
            form=True,
        )
        # First message is the thread root itself
        messages = (data.get("messages") or [])[1:]
        return [ThreadReply(ts=m.get("ts", ""), user=m.get("user")) for m in messages]

    async def user_profile(self, user_id: str) -> ChatProfile | None:
        data = await self._call("users.info", {"user": user_id}, form=True)
        user = data.get("user")
        if not user:
            return None

        profile = user.get("profile") or {}
        return ChatProfile(
            id=user_id,
            email=profile.get("email") or None,
            display_name=profile.get("display_name") or user.get("name"),
        )
