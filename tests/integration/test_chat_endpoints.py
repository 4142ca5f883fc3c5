"""
Async integration tests for chat endpoints.

These exercise the full request-response cycle over the ASGI app with a
per-test SQLite database.
"""

from datetime import datetime

import pytest
from httpx import AsyncClient

from app.services.realtime import messages_topic, typing_topic
from tests.factories import BUYER_ID, FARMER_ID, OTHER_BUYER_ID, drain
from tests.utils_jwt import auth_headers, generate_test_jwt

BASE = "/api/v1/chat"


async def _open(client: AsyncClient, user_id=BUYER_ID, target=FARMER_ID, subject=None) -> dict:
    response = await client.post(
        f"{BASE}/conversations",
        json={"target_user_id": target, "subject": subject},
        headers=auth_headers(user_id),
    )
    assert response.status_code == 201
    return response.json()


async def _send(client: AsyncClient, conversation_id, content, user_id=BUYER_ID, request_id=None):
    return await client.post(
        f"{BASE}/conversations/{conversation_id}/messages",
        json={"content": content, "request_id": request_id},
        headers=auth_headers(user_id),
    )


class TestConversationEndpoints:
    """Test conversation endpoints."""

    @pytest.mark.asyncio
    async def test_open_conversation_is_idempotent(self, async_client: AsyncClient):
        # Act
        first = await _open(async_client, subject="Onion, 20 quintal")
        second = await _open(async_client, user_id=FARMER_ID, target=BUYER_ID)

        # Assert
        assert first["id"] == second["id"]
        assert first["conversation_key"] == f"{BUYER_ID}:{FARMER_ID}"
        assert first["subject"] == "Onion, 20 quintal"

    @pytest.mark.asyncio
    async def test_self_conversation_is_rejected(self, async_client: AsyncClient):
        response = await async_client.post(
            f"{BASE}/conversations", json={"target_user_id": BUYER_ID}, headers=auth_headers(BUYER_ID)
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_failed"

    @pytest.mark.asyncio
    async def test_list_conversations_with_profile(self, async_client: AsyncClient, profiles):
        conversation = await _open(async_client)
        await _send(async_client, conversation["id"], "Rate for 20 quintal?")

        response = await async_client.get(f"{BASE}/conversations", headers=auth_headers(FARMER_ID))

        assert response.status_code == 200
        data = response.json()
        assert data["total_count"] == 1
        row = data["conversations"][0]
        assert row["unread_count"] == 1
        assert row["last_message"] == "Rate for 20 quintal?"
        assert row["other_participant"]["full_name"] == "Anita Traders"
        assert row["other_participant"]["is_online"] is False

    @pytest.mark.asyncio
    async def test_list_filters_and_search(self, async_client: AsyncClient, profiles):
        first = await _open(async_client)
        await _open(async_client, user_id=OTHER_BUYER_ID)
        await _send(async_client, first["id"], "Hello")
        headers = auth_headers(FARMER_ID)

        unread = (await async_client.get(f"{BASE}/conversations?filter=unread", headers=headers)).json()
        searched = (await async_client.get(f"{BASE}/conversations?search=GUPTA", headers=headers)).json()

        assert [c["id"] for c in unread["conversations"]] == [first["id"]]
        assert [c["other_participant"]["user_id"] for c in searched["conversations"]] == [OTHER_BUYER_ID]

    @pytest.mark.asyncio
    async def test_hide_and_pin(self, async_client: AsyncClient):
        conversation = await _open(async_client)
        headers = auth_headers(FARMER_ID)

        hide = await async_client.post(f"{BASE}/conversations/{conversation['id']}/hide", headers=headers)
        hidden_list = (await async_client.get(f"{BASE}/conversations", headers=headers)).json()
        await _send(async_client, conversation["id"], "Are you there?")
        pin = await async_client.put(
            f"{BASE}/conversations/{conversation['id']}/pin", json={"is_pinned": True}, headers=headers
        )
        pinned = (await async_client.get(f"{BASE}/conversations?filter=pinned", headers=headers)).json()

        assert hide.status_code == 204
        assert hidden_list["total_count"] == 0
        assert pin.status_code == 204
        assert pinned["conversations"][0]["id"] == conversation["id"]

    @pytest.mark.asyncio
    async def test_outsider_gets_403_and_missing_gets_404(self, async_client: AsyncClient):
        conversation = await _open(async_client)

        outsider = await async_client.get(
            f"{BASE}/conversations/{conversation['id']}", headers=auth_headers(OTHER_BUYER_ID)
        )
        missing = await async_client.get(f"{BASE}/conversations/nope", headers=auth_headers(BUYER_ID))

        assert outsider.status_code == 403
        assert outsider.json()["error"] == "permission_denied"
        assert missing.status_code == 404


class TestMessageEndpoints:
    """Test message endpoints."""

    @pytest.mark.asyncio
    async def test_send_with_request_id_is_idempotent(self, async_client: AsyncClient, hub):
        conversation = await _open(async_client)
        queue = hub.open_queue(messages_topic(conversation["id"]))

        first = await _send(async_client, conversation["id"], "Hello", request_id="req-42")
        second = await _send(async_client, conversation["id"], "Hello", request_id="req-42")

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert second.json()["message"]["id"] == first.json()["message"]["id"]
        assert len(drain(queue)) == 1

    @pytest.mark.asyncio
    async def test_empty_message_is_rejected(self, async_client: AsyncClient):
        conversation = await _open(async_client)

        response = await _send(async_client, conversation["id"], "   ")

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_history_paging(self, async_client: AsyncClient):
        conversation = await _open(async_client)
        for index in range(3):
            await _send(async_client, conversation["id"], f"m{index}")
        url = f"{BASE}/conversations/{conversation['id']}/messages"

        page = (await async_client.get(f"{url}?limit=2", headers=auth_headers(FARMER_ID))).json()
        older = (await async_client.get(
            f"{url}?limit=2&before={page['next_before']}", headers=auth_headers(FARMER_ID)
        )).json()

        assert [m["content"] for m in page["messages"]] == ["m1", "m2"]
        assert page["has_more"] is True
        assert [m["content"] for m in older["messages"]] == ["m0"]
        assert older["has_more"] is False

    @pytest.mark.asyncio
    async def test_receipts_and_unread_badge(self, async_client: AsyncClient):
        conversation = await _open(async_client)
        sent = (await _send(async_client, conversation["id"], "One")).json()["message"]
        await _send(async_client, conversation["id"], "Two")
        headers = auth_headers(FARMER_ID)
        base = f"{BASE}/conversations/{conversation['id']}"

        badge = (await async_client.get(f"{BASE}/unread-count", headers=headers)).json()
        delivered = (await async_client.post(f"{base}/delivered", json={"message_ids": [sent["id"]]},
                                             headers=headers)).json()
        seen = (await async_client.post(f"{base}/seen", headers=headers)).json()
        read = (await async_client.post(f"{base}/read", headers=headers)).json()
        after = (await async_client.get(f"{BASE}/unread-count", headers=headers)).json()

        assert badge == {"unread_count": 2}
        assert delivered == {"conversation_id": conversation["id"], "updated": 1}
        assert seen["updated"] == 2
        assert read["updated"] == 2
        assert after == {"unread_count": 0}

        messages = (await async_client.get(f"{base}/messages", headers=headers)).json()["messages"]
        for message in messages:
            stamps = [datetime.fromisoformat(message[key]) for key in ("delivered_at", "seen_at", "read_at")]
            assert stamps == sorted(stamps)

    @pytest.mark.asyncio
    async def test_typing_is_published(self, async_client: AsyncClient, hub):
        conversation = await _open(async_client)
        queue = hub.open_queue(typing_topic(conversation["id"]))

        response = await async_client.post(
            f"{BASE}/typing",
            json={"conversation_id": conversation["id"], "is_typing": True},
            headers=auth_headers(BUYER_ID),
        )

        assert response.status_code == 204
        assert drain(queue)[0]["data"]["user_id"] == BUYER_ID


class TestClientConfig:
    """Test the client timing endpoint."""

    @pytest.mark.asyncio
    async def test_client_config(self, async_client: AsyncClient):
        response = await async_client.get(f"{BASE}/client-config", headers=auth_headers(BUYER_ID))

        assert response.status_code == 200
        data = response.json()
        assert data["presence_heartbeat_seconds"] == 45
        assert data["presence_stale_seconds"] == 120
        assert data["conversation_refresh_seconds"] == 60


class TestAuthentication:
    """Test bearer token handling."""

    @pytest.mark.asyncio
    async def test_missing_token(self, async_client: AsyncClient):
        response = await async_client.get(f"{BASE}/conversations")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_token_signed_with_other_key(self, async_client: AsyncClient):
        token = generate_test_jwt(BUYER_ID, secret="not-the-server-key")

        response = await async_client.get(
            f"{BASE}/conversations", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401
