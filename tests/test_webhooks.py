"""
Inbound webhook handling end to end: verification, acknowledgement and the
background resolve -> quota -> dispatch -> reply -> record sequence.
"""

import json
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from chatrelay.adapters.messages import IncomingMessage
from chatrelay.adapters.slack import sign
from chatrelay.models import Connection, UsageRecord
from chatrelay.relay import pipeline as pipeline_module
from chatrelay.relay.pipeline import APOLOGY, Outcome
from chatrelay.storage.repositories import upsert_connection

SIGNING_SECRET = "test-signing-secret"
TG_SECRET = "tg-webhook-secret-1"


def slack_headers(body: bytes, secret: str = SIGNING_SECRET) -> dict:
    ts = str(int(time.time()))
    return {
        "X-Slack-Request-Timestamp": ts,
        "X-Slack-Signature": sign(secret, ts, body),
        "Content-Type": "application/json",
    }


def slack_event(text: str = "hello", team_id: str = "T1", channel: str = "C1") -> bytes:
    return json.dumps(
        {
            "type": "event_callback",
            "team_id": team_id,
            "event": {
                "type": "message",
                "text": text,
                "channel": channel,
                "user": "U1",
                "ts": "1700000000.000100",
            },
        }
    ).encode()


def telegram_update(text: str = "hello") -> dict:
    return {
        "update_id": 10,
        "message": {
            "message_id": 55,
            "from": {"id": 7, "is_bot": False, "first_name": "Ada"},
            "chat": {"id": 12345, "type": "private"},
            "text": text,
        },
    }


async def usage_rows(session_factory) -> list[UsageRecord]:
    async with session_factory() as session:
        result = await session.execute(select(UsageRecord))
        return list(result.scalars().all())


@pytest.fixture
def slack_tenant(tenant, make_connection):
    async def _connect():
        await make_connection(
            tenant.id, "slack", {"access_token": "xoxb-tenant"}, {"teamId": "T1"}
        )
        return tenant

    return _connect


@pytest.fixture
def telegram_tenant(tenant, make_connection):
    async def _connect():
        await make_connection(
            tenant.id,
            "telegram",
            {"token": "123:abc"},
            {"botId": 42, "botUsername": "relay_bot", "webhookSecret": TG_SECRET},
        )
        return tenant

    return _connect


# ============ Slack ============


@pytest.mark.asyncio
async def test_url_verification_echoes_challenge(client):
    body = json.dumps({"type": "url_verification", "challenge": "c-123"}).encode()
    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    assert response.json() == {"challenge": "c-123"}


@pytest.mark.asyncio
async def test_bad_signature_rejected(client, upstream):
    body = slack_event()
    response = await client.post(
        "/webhooks/slack", content=body, headers=slack_headers(body, secret="wrong")
    )
    assert response.status_code == 401
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_stale_signature_rejected(client):
    body = slack_event()
    ts = str(int(time.time()) - 600)
    headers = {"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": sign(SIGNING_SECRET, ts, body)}
    response = await client.post("/webhooks/slack", content=body, headers=headers)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unconfigured_signing_secret(client, relay):
    relay.settings = relay.settings.model_copy(update={"slack_signing_secret": None})
    body = slack_event()
    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_signed_garbage_is_bad_request(client):
    body = b"not json"
    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_slack_happy_path(client, relay, upstream, slack_tenant, session_factory):
    tenant = await slack_tenant()
    body = slack_event("what's the weather?")

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    await relay.background.drain(5)

    invocations = upstream.worker_invocations()
    assert len(invocations) == 1
    assert invocations[0]["tenantId"] == tenant.id
    assert invocations[0]["prompt"] == "what's the weather?"
    assert invocations[0]["channel"] == "slack"
    assert invocations[0]["sessionKey"] == f"{tenant.id}-slack-C1"
    assert invocations[0]["replyConfig"] == {
        "botToken": "xoxb-tenant",
        "channelId": "C1",
        "threadTs": "1700000000.000100",
    }

    posts = upstream.calls("slack.com", "/chat.postMessage")
    assert posts == [{"channel": "C1", "text": "Hi there", "thread_ts": "1700000000.000100"}]

    rows = await usage_rows(session_factory)
    assert len(rows) == 1
    assert rows[0].tenant_id == tenant.id
    assert rows[0].channel_id == "slack"
    assert (rows[0].model, rows[0].input_tokens, rows[0].output_tokens) == ("claude-test", 12, 7)


@pytest.mark.asyncio
async def test_over_quota_gets_one_explanation(
    client, relay, upstream, slack_tenant, add_usage, session_factory
):
    tenant = await slack_tenant()
    await add_usage(tenant.id, 50)
    body = slack_event()

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    await relay.background.drain(5)

    assert upstream.worker_invocations() == []
    posts = upstream.calls("slack.com", "/chat.postMessage")
    assert len(posts) == 1
    assert "monthly message limit (50 messages on the free plan)" in posts[0]["text"]
    assert len(await usage_rows(session_factory)) == 50


@pytest.mark.asyncio
async def test_unknown_workspace_is_dropped(client, relay, upstream, slack_tenant):
    await slack_tenant()
    body = slack_event(team_id="T-UNKNOWN")

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    await relay.background.drain(5)

    assert upstream.requests == []


@pytest.mark.asyncio
async def test_runtime_failure_gets_apology(
    client, relay, upstream, slack_tenant, session_factory
):
    await slack_tenant()
    upstream.worker_status = 500
    upstream.worker_body = {"ok": False, "error": "internal stack trace here"}
    body = slack_event()

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    await relay.background.drain(5)

    posts = upstream.calls("slack.com", "/chat.postMessage")
    assert [p["text"] for p in posts] == [APOLOGY]
    assert await usage_rows(session_factory) == []


@pytest.mark.asyncio
async def test_failed_reply_delivery_records_nothing(
    client, relay, upstream, slack_tenant, session_factory
):
    await slack_tenant()
    upstream.slack_body = {"ok": False, "error": "not_in_channel"}
    body = slack_event()

    await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    await relay.background.drain(5)

    assert len(upstream.worker_invocations()) == 1
    assert await usage_rows(session_factory) == []


@pytest.mark.asyncio
async def test_bot_messages_are_ignored(client, relay, upstream, slack_tenant):
    await slack_tenant()
    body = json.dumps(
        {
            "type": "event_callback",
            "team_id": "T1",
            "event": {"type": "message", "text": "echo", "channel": "C1", "bot_id": "B1", "ts": "1"},
        }
    ).encode()

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    await relay.background.drain(5)
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_mention_prefix_stripped_before_dispatch(
    client, relay, upstream, slack_tenant, session_factory
):
    tenant = await slack_tenant()
    body = json.dumps(
        {
            "type": "event_callback",
            "team_id": "T1",
            "event": {"type": "message", "text": "<@BOT123> hello", "channel": "C1"},
        }
    ).encode()

    response = await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    await relay.background.drain(5)

    (invocation,) = upstream.worker_invocations()
    assert invocation["prompt"] == "hello"
    assert invocation["tenantId"] == tenant.id
    assert [p["text"] for p in upstream.calls("slack.com", "/chat.postMessage")] == ["Hi there"]
    assert len(await usage_rows(session_factory)) == 1


@pytest.mark.asyncio
async def test_last_message_under_quota_then_limit(
    client, relay, upstream, slack_tenant, add_usage, session_factory
):
    tenant = await slack_tenant()
    await add_usage(tenant.id, 49)

    body = slack_event("first")
    await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    await relay.background.drain(5)

    assert len(upstream.worker_invocations()) == 1
    assert len(await usage_rows(session_factory)) == 50

    body = slack_event("second")
    await client.post("/webhooks/slack", content=body, headers=slack_headers(body))
    await relay.background.drain(5)

    assert len(upstream.worker_invocations()) == 1
    assert len(await usage_rows(session_factory)) == 50
    posts = [p["text"] for p in upstream.calls("slack.com", "/chat.postMessage")]
    assert posts[0] == "Hi there"
    assert len(posts) == 2
    assert "monthly message limit (50 messages on the free plan)" in posts[1]


# ============ Telegram ============


@pytest.mark.asyncio
async def test_telegram_missing_secret_header(client):
    response = await client.post("/webhooks/telegram", json=telegram_update())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_telegram_bad_json(client):
    response = await client.post(
        "/webhooks/telegram",
        content=b"{nope",
        headers={"X-Telegram-Bot-Api-Secret-Token": TG_SECRET},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_telegram_happy_path(client, relay, upstream, telegram_tenant, session_factory):
    tenant = await telegram_tenant()

    response = await client.post(
        "/webhooks/telegram",
        json=telegram_update("hi bot"),
        headers={"X-Telegram-Bot-Api-Secret-Token": TG_SECRET},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    await relay.background.drain(5)

    invocations = upstream.worker_invocations()
    assert invocations[0]["sessionKey"] == f"{tenant.id}-telegram-12345"
    assert invocations[0]["replyConfig"] == {
        "botToken": "123:abc",
        "chatId": "12345",
        "messageId": 55,
    }

    sends = upstream.calls("api.telegram.org", "/sendMessage")
    assert sends == [
        {"chat_id": "12345", "text": "Hi there", "reply_parameters": {"message_id": 55}}
    ]
    rows = await usage_rows(session_factory)
    assert [r.channel_id for r in rows] == ["telegram"]


@pytest.mark.asyncio
async def test_telegram_wrong_secret_is_dropped(client, relay, upstream, telegram_tenant):
    await telegram_tenant()
    response = await client.post(
        "/webhooks/telegram",
        json=telegram_update(),
        headers={"X-Telegram-Bot-Api-Secret-Token": "someone-elses-secret"},
    )
    assert response.status_code == 200
    await relay.background.drain(5)
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_telegram_non_text_update_is_acknowledged(client, relay, upstream, telegram_tenant):
    await telegram_tenant()
    response = await client.post(
        "/webhooks/telegram",
        json={"update_id": 3, "message": {"message_id": 1, "chat": {"id": 1}, "sticker": {}}},
        headers={"X-Telegram-Bot-Api-Secret-Token": TG_SECRET},
    )
    assert response.status_code == 200
    assert relay.background.pending == 0
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_telegram_bot_sender_is_ignored(client, relay, upstream, telegram_tenant):
    await telegram_tenant()
    update = telegram_update("loop?")
    update["message"]["from"]["is_bot"] = True

    response = await client.post(
        "/webhooks/telegram",
        json=update,
        headers={"X-Telegram-Bot-Api-Secret-Token": TG_SECRET},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert relay.background.pending == 0
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_undecryptable_credentials_mark_connection_error(
    client, relay, upstream, tenant, session_factory
):
    async with session_factory() as session:
        await upsert_connection(
            session,
            tenant_id=tenant.id,
            channel_id="telegram",
            credentials_enc="Zm9vYmFyYmF6cXV4cXV1eHF1dXhxdXV4",
            metadata={"webhookSecret": TG_SECRET},
        )
        await session.commit()

    response = await client.post(
        "/webhooks/telegram",
        json=telegram_update(),
        headers={"X-Telegram-Bot-Api-Secret-Token": TG_SECRET},
    )
    assert response.status_code == 200
    await relay.background.drain(5)

    assert upstream.requests == []
    async with session_factory() as session:
        connection = (await session.execute(select(Connection))).scalar_one()
    assert connection.status == "error"
    assert connection.error_message


# ============ Pipeline ============


@pytest.mark.asyncio
async def test_pipeline_drops_credentials_without_token(relay, upstream, tenant, make_connection):
    await make_connection(tenant.id, "slack", {"scope": "chat:write"}, {"teamId": "T1"})
    message = IncomingMessage(
        platform="slack",
        conversation_id="C1",
        message_id="1.0",
        sender_id="U1",
        text="hi",
        thread_id="1.0",
        workspace_id="T1",
    )
    assert await relay.pipeline.handle(message, "T1") == Outcome.DROPPED
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_pipeline_unconfigured_worker_apologises(relay, upstream, slack_tenant):
    await slack_tenant()
    relay.dispatcher.worker_url = None
    message = IncomingMessage(
        platform="slack",
        conversation_id="C1",
        message_id="1.0",
        sender_id="U1",
        text="hi",
        workspace_id="T1",
    )
    assert await relay.pipeline.handle(message, "T1") == Outcome.FAILED
    assert [p["text"] for p in upstream.calls("slack.com", "/chat.postMessage")] == [APOLOGY]


def slack_message(text: str = "hi") -> IncomingMessage:
    return IncomingMessage(
        platform="slack",
        conversation_id="C1",
        message_id="1.0",
        sender_id="U1",
        text=text,
        thread_id="1.0",
        workspace_id="T1",
    )


@pytest.mark.asyncio
async def test_pipeline_database_error_before_dispatch_apologises(
    relay, upstream, slack_tenant, monkeypatch
):
    await slack_tenant()

    async def unavailable(*args, **kwargs):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(pipeline_module, "get_agent_config", unavailable)

    assert await relay.pipeline.handle(slack_message(), "T1") == Outcome.FAILED
    assert upstream.worker_invocations() == []
    assert [p["text"] for p in upstream.calls("slack.com", "/chat.postMessage")] == [APOLOGY]


@pytest.mark.asyncio
async def test_pipeline_database_error_recording_usage_is_contained(
    relay, upstream, slack_tenant, session_factory, monkeypatch
):
    await slack_tenant()

    async def unavailable(*args, **kwargs):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(pipeline_module, "record_usage", unavailable)

    assert await relay.pipeline.handle(slack_message(), "T1") == Outcome.UNRECORDED
    assert [p["text"] for p in upstream.calls("slack.com", "/chat.postMessage")] == ["Hi there"]
    assert await usage_rows(session_factory) == []


@pytest.mark.asyncio
async def test_pipeline_unexpected_slack_body_is_undelivered(
    relay, upstream, slack_tenant, session_factory
):
    await slack_tenant()
    upstream.slack_body = ["not", "an", "object"]

    assert await relay.pipeline.handle(slack_message(), "T1") == Outcome.UNDELIVERED
    assert await usage_rows(session_factory) == []
