"""Tests for the HTTP surface: webhooks, commands, item actions and linking."""

import hashlib
import hmac
import json
import time

import httpx
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from slacker.api.slack import verify_slack_signature
from slacker.main import create_app
from slacker.models import ActionItem, ActionStatus, ResolutionFlag

from conftest import CHANNEL, MAINTAINER_SLACK, REPO, T0, post_thread, ts_of


@pytest_asyncio.fixture
async def client(settings, effects, session_factory):
    app = create_app(settings=settings, effects=effects, session_factory=session_factory)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


def sign(secret: str, body: bytes, timestamp: str) -> str:
    basestring = f"v0:{timestamp}:{body.decode()}".encode()
    return "v0=" + hmac.new(secret.encode(), basestring, hashlib.sha256).hexdigest()


# =============================================================================
# TEST: SLACK
# =============================================================================


class TestSlackSignature:

    def test_valid_signature(self):
        body = b'{"type": "event_callback"}'
        timestamp = str(int(time.time()))

        assert verify_slack_signature(body, timestamp, sign("secret", body, timestamp), "secret")
        assert not verify_slack_signature(body, timestamp, sign("other", body, timestamp), "secret")

    def test_replayed_request_is_rejected(self):
        body = b"{}"
        timestamp = str(int(time.time()) - 600)

        assert not verify_slack_signature(body, timestamp, sign("secret", body, timestamp), "secret")

    def test_no_secret_never_verifies(self):
        assert not verify_slack_signature(b"{}", str(int(time.time())), "v0=abc", None)


class TestSlackEvents:

    async def test_url_verification(self, client):
        response = await client.post("/slack/events", json={"type": "url_verification", "challenge": "xyz"})

        assert response.status_code == 200
        assert response.json() == {"challenge": "xyz"}

    async def test_signed_requests_are_enforced(self, client, settings):
        settings.slack_signing_secret = "secret"
        body = json.dumps({"type": "url_verification", "challenge": "xyz"}).encode()
        timestamp = str(int(time.time()))

        unsigned = await client.post("/slack/events", content=body)
        signed = await client.post(
            "/slack/events",
            content=body,
            headers={
                "X-Slack-Signature": sign("secret", body, timestamp),
                "X-Slack-Request-Timestamp": timestamp,
            },
        )

        assert unsigned.status_code == 401
        assert signed.status_code == 200

    async def test_message_event_is_ingested(self, client, chat, session: AsyncSession):
        message = post_thread(chat, CHANNEL, T0)

        response = await client.post(
            "/slack/events",
            json={
                "type": "event_callback",
                "event": {
                    "type": "message",
                    "channel": CHANNEL,
                    "ts": message.ts,
                    "user": message.user,
                    "text": message.text,
                },
            },
        )

        assert response.status_code == 200
        count = (await session.execute(select(func.count(ActionItem.id)))).scalar_one()
        assert count == 1

    async def test_slash_command(self, client):
        response = await client.post(
            "/slack/commands",
            data={"user_id": "U0ALICE", "channel_id": CHANNEL, "text": "help"},
        )

        assert response.status_code == 200
        assert response.json()["response_type"] == "ephemeral"
        assert "/slacker" in response.json()["text"]


# =============================================================================
# TEST: GITHUB
# =============================================================================


class TestGithubWebhook:

    def _payload(self) -> dict:
        return {
            "action": "opened",
            "issue": {
                "node_id": "I_kwDOA1",
                "number": 42,
                "title": "Game crashes on start",
                "user": {"login": "octocat"},
            },
            "repository": {"html_url": REPO},
        }

    async def test_issue_opened(self, client):
        response = await client.post(
            "/github/webhook", json=self._payload(), headers={"X-GitHub-Event": "issues"}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "created"

    async def test_other_events_are_ignored(self, client):
        response = await client.post("/github/webhook", json={}, headers={"X-GitHub-Event": "push"})

        assert response.json() == {"outcome": "ignored", "item_id": None}

    async def test_bad_signature_is_rejected(self, client, settings):
        settings.github_webhook_secret = "hook-secret"

        response = await client.post(
            "/github/webhook",
            json=self._payload(),
            headers={"X-GitHub-Event": "issues", "X-Hub-Signature-256": "sha256=bogus"},
        )

        assert response.status_code == 401


# =============================================================================
# TEST: ITEMS
# =============================================================================


class TestItems:

    async def test_get_item(self, client, make_item):
        item = await make_item()

        response = await client.get(f"/items/{item.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "open"
        assert body["url"] == f"https://hackclub.slack.com/archives/{CHANNEL}/p{ts_of(T0).replace('.', '')}"

    async def test_unknown_item_is_404(self, client):
        response = await client.get("/items/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

    async def test_assign_answers_ephemerally(self, client, make_item, chat):
        item = await make_item()

        response = await client.post(
            f"/items/{item.id}/assign",
            json={"actor": MAINTAINER_SLACK, "channel_id": CHANNEL, "assignee": "zrl"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["item"]["status"] == ActionStatus.ASSIGNED.value
        assert body["item"]["assignee"]["slack_id"] == MAINTAINER_SLACK
        assert chat.ephemerals == [(CHANNEL, MAINTAINER_SLACK, body["message"])]

    async def test_invalid_action_reports_failure(self, client, make_item, chat):
        item = await make_item()

        response = await client.post(
            f"/items/{item.id}/resolve",
            json={"actor": MAINTAINER_SLACK, "channel_id": CHANNEL, "reason": ""},
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail == f":x: Failed to resolve action item (id={item.id}): reason is required"
        assert chat.ephemerals == [(CHANNEL, MAINTAINER_SLACK, detail)]

    async def test_reopen_closed_item(self, client, make_item):
        item = await make_item(status=ActionStatus.CLOSED, flag=ResolutionFlag.RESOLVED)

        response = await client.post(f"/items/{item.id}/reopen", json={"actor": MAINTAINER_SLACK})

        assert response.status_code == 200
        assert response.json()["item"]["status"] == "open"
        assert response.json()["item"]["flag"] is None

    async def test_follow_up_requires_date(self, client, make_item):
        item = await make_item()

        response = await client.post(f"/items/{item.id}/follow-up", json={"actor": MAINTAINER_SLACK})

        assert response.status_code == 400


# =============================================================================
# TEST: ACCOUNT LINKING
# =============================================================================


class TestLink:

    async def test_link(self, client):
        response = await client.post(
            "/auth/link",
            json={"slack_id": "U0ALICE", "github_login": "alice", "email": "alice@example.com"},
        )

        assert response.status_code == 200
        assert response.json()["user_id"]

    async def test_maintainer_mismatch_conflicts(self, client):
        response = await client.post(
            "/auth/link",
            json={"slack_id": MAINTAINER_SLACK, "github_login": "someone", "email": "z@example.com"},
        )

        assert response.status_code == 409


class TestHealth:

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json()["status"] == "healthy"
