"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path and an Evolution API
stand-in served through httpx.MockTransport, so nothing leaves the process.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from ticket_router.config import Settings, get_settings
get_settings.cache_clear()

from ticket_router.context import build_context
from ticket_router.main import create_app
from ticket_router.storage import init_db


class FakeEvolution:
    """
    Records gateway requests and answers from a path -> (status, body) table.
    Unknown paths answer 200 with an empty object.
    """

    def __init__(self):
        self.requests = []
        self.responses = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.responses.get(request.url.path, (200, {}))
        return httpx.Response(status_code, json=body)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'ticket_router.db'}",
        EVOLUTION_API_URL="http://evolution.test",
        EVOLUTION_API_KEY="test-api-key",
        EVOLUTION_RETRY_BASE_DELAY=0,
        EVOLUTION_RETRY_MAX_DELAY=0,
        PUBLIC_WEBHOOK_URL=None,
        MESSAGE_BATCH_ENABLED=False,
    )


@pytest.fixture
def evolution():
    return FakeEvolution()


@pytest.fixture
def app(settings, evolution):
    return create_app(settings, gateway_transport=httpx.MockTransport(evolution.handler))


@pytest.fixture(scope="function")
def client(app):
    """Create test client; the lifespan creates the tables in a fresh database."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def ctx(settings, evolution):
    """Application context with the schema applied, for tests below the HTTP layer."""
    context = build_context(settings, gateway_transport=httpx.MockTransport(evolution.handler))
    init_db(context.engine)
    yield context
    context.engine.dispose()


@pytest.fixture
def db(ctx):
    session = ctx.session_factory()
    yield session
    session.close()


@pytest.fixture
def upsert_payload():
    """Factory for MESSAGES_UPSERT envelopes as the gateway posts them."""

    def build(
        message_id: str = "m1",
        remote_jid: str = "5511988887766@s.whatsapp.net",
        text: str = "Hello",
        push_name: str = "Ana",
        instance: str = "support1",
        from_me: bool = False,
        timestamp: int = 1700000000,
        message: dict = None,
        event: str = "MESSAGES_UPSERT",
    ) -> dict:
        data = {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": message_id},
            "message": message if message is not None else {"conversation": text},
            "messageTimestamp": timestamp,
        }
        if push_name is not None:
            data["pushName"] = push_name
        return {"event": event, "instance": instance, "data": data}

    return build
