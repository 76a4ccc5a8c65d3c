"""
Tests for conversation threading and the /api/conversations endpoints.

Tests cover:
- Threading: A->B and B->A share a conversation
- Format-equivalent contacts share a conversation
- SMS and email with different contacts stay separate
- Listing with recency ordering and pagination
- Metadata, history and deletion
"""

from conftest import email_payload, sms_payload


def send_sms(client, **overrides) -> dict:
    response = client.post("/api/messages/sms", json=sms_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


class TestThreading:
    """Test that messages are threaded into conversations by participant pair."""

    def test_both_directions_share_conversation(self, client):
        """Test that a reply lands in the same conversation as the original."""
        a_to_b = send_sms(client)
        b_to_a = send_sms(client, **{"from": "+12025555678", "to": "+12025551234"})

        assert a_to_b["conversationId"] == b_to_a["conversationId"]

    def test_formatting_variants_share_conversation(self, client):
        """Test that phone formatting variants share a conversation."""
        first = send_sms(client, **{"from": "+1 (202) 555-1234", "to": "2025555678"})
        second = send_sms(client, **{"from": "202-555-5678", "to": "1.202.555.1234"})

        assert first["conversationId"] == second["conversationId"]

    def test_different_pairs_get_different_conversations(self, client):
        """Test that distinct participant pairs get distinct conversations."""
        first = send_sms(client)
        second = send_sms(client, to="+13105551234")

        assert first["conversationId"] != second["conversationId"]

    def test_sms_and_email_contacts_are_separate(self, client):
        """Test that phone and email contacts form separate conversations."""
        sms = send_sms(client)
        email = client.post("/api/messages/email", json=email_payload()).json()

        assert sms["conversationId"] != email["conversationId"]


class TestListConversations:
    """Test the conversation list endpoint."""

    def test_empty(self, client):
        """Test listing with no conversations."""
        response = client.get("/api/conversations")

        assert response.status_code == 200
        assert response.json() == {
            "conversations": [],
            "pagination": {"limit": 50, "offset": 0, "total": 0},
        }

    def test_conversation_shape(self, client):
        """Test the fields of a listed conversation."""
        message = send_sms(client)

        conversation = client.get("/api/conversations").json()["conversations"][0]

        assert conversation["id"] == message["conversationId"]
        assert conversation["participants"] == ["+12025551234", "+12025555678"]
        assert conversation["messageCount"] == 1
        assert conversation["lastMessage"]["id"] == message["id"]
        assert conversation["lastMessageAt"] == "2025-01-15T10:00:00.000Z"
        assert conversation["createdAt"].endswith("Z")
        assert conversation["updatedAt"].endswith("Z")

    def test_sorted_by_most_recent_message(self, client):
        """Test ordering by most recent message first."""
        old = send_sms(client, to="+13105551234", timestamp="2025-01-01T00:00:00Z")
        new = send_sms(client, to="+14155550100", timestamp="2025-03-01T00:00:00Z")
        middle = send_sms(client, to="+12025555678", timestamp="2025-02-01T00:00:00Z")

        ids = [c["id"] for c in client.get("/api/conversations").json()["conversations"]]

        assert ids == [new["conversationId"], middle["conversationId"], old["conversationId"]]

    def test_new_message_moves_conversation_to_top(self, client):
        """Test that a new message moves its conversation to the top."""
        first = send_sms(client, to="+13105551234", timestamp="2025-01-01T00:00:00Z")
        send_sms(client, to="+14155550100", timestamp="2025-02-01T00:00:00Z")
        send_sms(client, to="+13105551234", timestamp="2025-03-01T00:00:00Z")

        top = client.get("/api/conversations").json()["conversations"][0]

        assert top["id"] == first["conversationId"]
        assert top["messageCount"] == 2

    def test_pagination(self, client):
        """Test limit and offset paging with the total count."""
        recipients = ["+13105551234", "+14155550100", "+12025555678", "+13105559876", "+14155559876"]
        for i, recipient in enumerate(recipients):
            send_sms(client, to=recipient, timestamp=f"2025-01-0{i + 1}T00:00:00Z")

        page = client.get("/api/conversations", params={"limit": 2, "offset": 2}).json()

        assert len(page["conversations"]) == 2
        assert page["pagination"] == {"limit": 2, "offset": 2, "total": 5}

    def test_pagination_is_stable_with_equal_timestamps(self, client):
        """Test that pages do not overlap when timestamps tie."""
        recipients = ["+13105551234", "+14155550100", "+12025555678", "+13105559876", "+14155559876"]
        for recipient in recipients:
            send_sms(client, to=recipient)

        seen = []
        for offset in range(0, 6, 2):
            page = client.get("/api/conversations", params={"limit": 2, "offset": offset}).json()
            seen.extend(c["id"] for c in page["conversations"])

        assert len(seen) == 5
        assert len(set(seen)) == 5
        assert seen == sorted(seen, reverse=True)

    def test_limit_must_be_positive(self, client):
        """Test that a zero limit is rejected."""
        response = client.get("/api/conversations", params={"limit": 0})

        assert response.status_code == 400
        assert response.json()["details"]["fields"][0]["field"] == "limit"

    def test_limit_has_upper_bound(self, client):
        """Test that a limit above the maximum is rejected."""
        response = client.get("/api/conversations", params={"limit": 501})

        assert response.status_code == 400
        assert response.json()["details"]["fields"][0]["code"] == "LIMIT_TOO_LARGE"

    def test_negative_offset_rejected(self, client):
        """Test that a negative offset is rejected."""
        assert client.get("/api/conversations", params={"offset": -1}).status_code == 400


class TestConversationMetadata:
    """Test the conversation metadata endpoint."""

    def test_metadata(self, client):
        """Test metadata with message count and latest message."""
        send_sms(client, timestamp="2025-01-15T10:00:00Z")
        latest = send_sms(client, **{"from": "+12025555678", "to": "+12025551234", "timestamp": "2025-01-15T11:00:00Z"})

        response = client.get(f"/api/conversations/{latest['conversationId']}/metadata")

        assert response.status_code == 200
        data = response.json()
        assert data["messageCount"] == 2
        assert data["lastMessage"]["id"] == latest["id"]
        assert data["lastMessageAt"] == "2025-01-15T11:00:00.000Z"
        assert "messages" not in data

    def test_missing_conversation(self, client):
        """Test 404 for an unknown conversation."""
        response = client.get("/api/conversations/nope/metadata")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestConversationHistory:
    """Test the conversation history endpoint."""

    def test_messages_in_chronological_order(self, client):
        """Test that history is returned oldest first."""
        third = send_sms(client, body="third", timestamp="2025-01-15T12:00:00Z")
        first = send_sms(client, body="first", timestamp="2025-01-15T10:00:00Z")
        second = send_sms(client, body="second", timestamp="2025-01-15T11:00:00Z")

        response = client.get(f"/api/conversations/{first['conversationId']}/messages")

        assert response.status_code == 200
        data = response.json()
        assert [m["id"] for m in data["messages"]] == [first["id"], second["id"], third["id"]]
        assert data["lastMessage"]["id"] == third["id"]
        assert data["messageCount"] == 3

    def test_limit_keeps_most_recent(self, client):
        """Test that a limited history keeps the newest messages."""
        send_sms(client, body="first", timestamp="2025-01-15T10:00:00Z")
        second = send_sms(client, body="second", timestamp="2025-01-15T11:00:00Z")
        third = send_sms(client, body="third", timestamp="2025-01-15T12:00:00Z")

        data = client.get(
            f"/api/conversations/{third['conversationId']}/messages", params={"limit": 2}
        ).json()

        assert [m["body"] for m in data["messages"]] == ["second", "third"]
        assert data["messages"][0]["id"] == second["id"]

    def test_missing_conversation(self, client):
        """Test 404 for an unknown conversation."""
        assert client.get("/api/conversations/nope/messages").status_code == 404


class TestDeleteConversation:
    """Test conversation deletion."""

    def test_delete_removes_messages(self, client):
        """Test that deleting a conversation removes its messages."""
        message = send_sms(client)
        conversation_id = message["conversationId"]

        response = client.delete(f"/api/conversations/{conversation_id}")

        assert response.status_code == 204
        assert client.get(f"/api/conversations/{conversation_id}/metadata").status_code == 404
        assert client.get(f"/api/messages/{message['id']}").status_code == 404
        assert client.get("/api/conversations").json()["pagination"]["total"] == 0

    def test_delete_missing_conversation(self, client):
        """Test 404 when deleting an unknown conversation."""
        assert client.delete("/api/conversations/nope").status_code == 404

    def test_new_message_after_delete_starts_fresh_conversation(self, client):
        """Test that a later message starts a new conversation."""
        first = send_sms(client)
        client.delete(f"/api/conversations/{first['conversationId']}")

        second = send_sms(client)

        assert second["conversationId"] != first["conversationId"]
