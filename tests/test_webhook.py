"""
Tests for the POST /webhook/evolution endpoint.

Tests cover:
- First message from a contact opens a ticket
- Follow-up messages reuse the open ticket
- Redelivery stores the message once
- Invalid payloads are acknowledged with 200
- Self-sent, unknown and side-channel events
- Request ID header
"""

import json

from ticket_router import routing


def post_event(client, payload, path="/webhook/evolution"):
    response = client.post(
        path,
        content=json.dumps(payload),
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 200
    return response.json()


class TestWebhookRouting:
    """Test inbound message routing through the HTTP endpoint."""

    def test_first_message_opens_ticket(self, client, upsert_payload):
        body = post_event(client, upsert_payload())

        assert body["received"] is True
        assert body["processed"] is True
        assert body["event"] == "MESSAGES_UPSERT"
        assert body["instance"] == "support1"
        assert body["ticketId"]
        assert body["timestamp"].endswith("Z")

        tickets = client.get("/tickets").json()
        assert tickets["total"] == 1
        ticket = tickets["data"][0]
        assert ticket["id"] == body["ticketId"]
        assert ticket["client_phone"] == "11988887766"
        assert ticket["metadata"]["client_phone"] == "11988887766"
        assert ticket["instance_name"] == "support1"
        assert ticket["status"] == "pending"
        assert ticket["auto_created"] is True

        messages = client.get(f"/tickets/{ticket['id']}/messages").json()["data"]
        assert len(messages) == 1
        assert messages[0]["content"] == "Hello"
        assert messages[0]["sender_name"] == "Ana"
        assert messages[0]["sender_role"] == "client"

    def test_follow_up_reuses_ticket(self, client, upsert_payload):
        first = post_event(client, upsert_payload(message_id="m1"))
        second = post_event(client, upsert_payload(message_id="m2", text="Any news?", timestamp=1700000060))

        assert second["processed"] is True
        assert second["ticketId"] == first["ticketId"]
        assert client.get("/tickets").json()["total"] == 1
        messages = client.get(f"/tickets/{first['ticketId']}/messages").json()["data"]
        assert [m["content"] for m in messages] == ["Hello", "Any news?"]

    def test_redelivery_is_stored_once(self, client, upsert_payload):
        first = post_event(client, upsert_payload())
        again = post_event(client, upsert_payload())

        assert again["ticketId"] == first["ticketId"]
        messages = client.get(f"/tickets/{first['ticketId']}/messages").json()["data"]
        assert len(messages) == 1

    def test_millisecond_timestamp_is_stored(self, client, upsert_payload):
        body = post_event(client, upsert_payload(timestamp=1700000000000))

        assert body["processed"] is True
        messages = client.get(f"/tickets/{body['ticketId']}/messages").json()["data"]
        assert len(messages) == 1
        assert messages[0]["created_at"].startswith("2023-11-14T22:13:20")

    def test_dotted_event_name(self, client, upsert_payload):
        body = post_event(client, upsert_payload(event="messages.upsert"))

        assert body["processed"] is True

    def test_legacy_path(self, client, upsert_payload):
        body = post_event(client, upsert_payload(), path="/webhook")

        assert body["processed"] is True

    def test_self_sent_message_is_ignored(self, client, upsert_payload):
        body = post_event(client, upsert_payload(from_me=True))

        assert body["processed"] is False
        assert "ticketId" not in body or body["ticketId"] is None
        assert client.get("/tickets").json()["total"] == 0

    def test_degraded_store_still_acknowledged(self, client, upsert_payload, monkeypatch):
        post_event(client, upsert_payload(message_id="m1"))
        monkeypatch.setattr(routing, "find_open_ticket", lambda *args: None)

        body = post_event(client, upsert_payload(message_id="m2"))

        assert body["processed"] is False
        assert body.get("ticketId") is None


class TestWebhookValidation:
    """Test that malformed input never produces a non-2xx response."""

    def test_invalid_json(self, client):
        response = client.post(
            "/webhook/evolution",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] is False
        assert body["message"] == "Invalid payload"

    def test_empty_body(self, client):
        response = client.post("/webhook/evolution", content="")

        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_deeply_nested_json(self, client):
        response = client.post(
            "/webhook/evolution",
            content="[" * 100000 + "]" * 100000,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] is False
        assert body["message"] == "Invalid payload"

    def test_non_object_json(self, client):
        body = post_event(client, ["MESSAGES_UPSERT"])

        assert body["processed"] is False
        assert body["event"] == "unknown"

    def test_unknown_event(self, client):
        body = post_event(client, {"event": "SOMETHING_NEW", "instance": "support1", "data": {}})

        assert body["processed"] is False
        assert body["event"] == "SOMETHING_NEW"

    def test_missing_instance(self, client, upsert_payload):
        body = post_event(client, upsert_payload(instance=""))

        assert body["processed"] is False
        assert body["message"] == "Missing instance name"


class TestWebhookSideChannels:
    """Test non-message events through the endpoint."""

    def test_connection_update(self, client):
        body = post_event(client, {
            "event": "connection.update",
            "instance": "support1",
            "data": {"instance": "support1", "state": "open", "statusReason": 200},
        })

        assert body["processed"] is True
        assert body["message"] == "Connection status updated: connected"

    def test_presence_update_is_acknowledged(self, client):
        body = post_event(client, {
            "event": "PRESENCE_UPDATE",
            "instance": "support1",
            "data": {"id": "5511988887766@s.whatsapp.net", "presences": {}},
        })

        assert body["processed"] is True


class TestWebhookHeaders:
    """Test request tracing."""

    def test_response_includes_request_id_header(self, client, upsert_payload):
        response = client.post("/webhook/evolution", json=upsert_payload())

        assert response.status_code == 200
        assert "x-request-id" in response.headers

    def test_inbound_request_id_is_reused(self, client, upsert_payload):
        response = client.post(
            "/webhook/evolution",
            json=upsert_payload(),
            headers={"X-Request-ID": "gw-delivery-42"},
        )

        assert response.headers["x-request-id"] == "gw-delivery-42"
