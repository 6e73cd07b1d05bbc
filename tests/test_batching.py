"""Tests for the optional message write batcher."""

import asyncio
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy.exc import SQLAlchemyError

from ticket_router import batching
from ticket_router.batching import MessageBatcher
from ticket_router.main import create_app
from ticket_router.models import Message, Ticket
from ticket_router.routing import as_utc, resolve_ticket, route_message

from test_routing import BASE_TS, make_message


@pytest.fixture
def batcher(ctx):
    return MessageBatcher(ctx.session_factory, batch_size=10, interval_seconds=0.01)


def stored_ids(ctx):
    with ctx.session_factory() as check:
        return sorted(row.meta["evolution_message_id"] for row in check.query(Message).all())


def test_route_with_batcher_queues(db, ctx, batcher):
    result = route_message(db, make_message(), batcher=batcher)

    assert result.message_result == "queued"
    assert result.ticket_id is not None
    assert len(batcher) == 1
    assert stored_ids(ctx) == []


def test_flush_writes_queue(db, ctx, batcher):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    later = BASE_TS + timedelta(minutes=1)
    batcher.enqueue(ticket_id, make_message())
    batcher.enqueue(ticket_id, make_message(gateway_message_id="m2", timestamp=later))

    assert batcher.flush() == 2
    assert len(batcher) == 0
    assert stored_ids(ctx) == ["m1", "m2"]

    with ctx.session_factory() as check:
        assert as_utc(check.get(Ticket, ticket_id).last_message_at) == later


def test_flush_drops_duplicates(db, ctx, batcher):
    ticket_id = route_message(db, make_message()).ticket_id
    batcher.enqueue(ticket_id, make_message())
    batcher.enqueue(ticket_id, make_message(gateway_message_id="m2"))
    batcher.enqueue(ticket_id, make_message(gateway_message_id="m2"))

    assert batcher.flush() == 3
    assert stored_ids(ctx) == ["m1", "m2"]


def test_flush_respects_batch_size(db, ctx):
    small = MessageBatcher(ctx.session_factory, batch_size=2)
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    for message_id in ("m1", "m2", "m3"):
        small.enqueue(ticket_id, make_message(gateway_message_id=message_id))

    assert small.flush() == 2
    assert len(small) == 1


def test_flush_empty_queue(batcher):
    assert batcher.flush() == 0


def test_failed_flush_requeues_in_order(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    batcher.enqueue(ticket_id, make_message(gateway_message_id="m1"))
    batcher.enqueue(ticket_id, make_message(gateway_message_id="m2"))

    def broken_row(*args, **kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(batching, "build_message_row", broken_row)

    assert batcher.flush() == 0
    assert [message.gateway_message_id for _, message in batcher._queue] == ["m1", "m2"]
    assert stored_ids(ctx) == []


def fail_on(monkeypatch, bad_id):
    """Make every write of `bad_id` fail the way psycopg2 rejects NUL bytes."""
    real_row = batching.build_message_row

    def row_or_fail(ticket_id, message, *args, **kwargs):
        if message.gateway_message_id == bad_id:
            raise ValueError("A string literal cannot contain NUL (0x00) characters.")
        return real_row(ticket_id, message, *args, **kwargs)

    monkeypatch.setattr(batching, "build_message_row", row_or_fail)


def dropped_total():
    return REGISTRY.get_sample_value("batch_messages_dropped_total") or 0.0


def test_failing_row_does_not_block_the_rest(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    fail_on(monkeypatch, "bad")
    batcher.enqueue(ticket_id, make_message(gateway_message_id="bad"))
    batcher.enqueue(ticket_id, make_message(gateway_message_id="good"))

    assert batcher.flush() == 1
    assert stored_ids(ctx) == ["good"]
    assert [message.gateway_message_id for _, message in batcher._queue] == ["bad"]


def test_failing_row_dropped_after_max_attempts(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    fail_on(monkeypatch, "bad")
    before = dropped_total()
    batcher.enqueue(ticket_id, make_message(gateway_message_id="bad"))

    assert batcher.flush() == 0
    assert batcher.flush() == 0
    assert batcher.flush() == 1

    assert len(batcher) == 0
    assert stored_ids(ctx) == []
    assert dropped_total() == before + 1


def test_repeated_flushes_keep_writing_new_rows(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    fail_on(monkeypatch, "bad")
    batcher.enqueue(ticket_id, make_message(gateway_message_id="bad"))
    batcher.enqueue(ticket_id, make_message(gateway_message_id="good"))

    for _ in range(5):
        batcher.flush()
    batcher.enqueue(ticket_id, make_message(gateway_message_id="later"))
    batcher.flush()

    assert stored_ids(ctx) == ["good", "later"]
    assert len(batcher) == 0


@pytest.mark.asyncio
async def test_stop_flushes_pending(db, ctx, batcher):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    batcher.enqueue(ticket_id, make_message())

    await batcher.stop()

    assert len(batcher) == 0
    assert stored_ids(ctx) == ["m1"]


def test_app_with_batching_flushes_on_shutdown(settings, evolution, upsert_payload):
    batched = settings.model_copy(update={"MESSAGE_BATCH_ENABLED": True, "MESSAGE_BATCH_INTERVAL_SECONDS": 60})
    app = create_app(batched, gateway_transport=httpx.MockTransport(evolution.handler))

    with TestClient(app) as client:
        body = client.post("/webhook/evolution", json=upsert_payload()).json()
        assert body["processed"] is True
        assert body["ticketId"]
        assert len(app.state.context.batcher) == 1

    assert len(app.state.context.batcher) == 0
    assert stored_ids(app.state.context) == ["m1"]


@pytest.mark.asyncio
async def test_stop_drops_failing_row_and_keeps_good_one(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    fail_on(monkeypatch, "bad")
    batcher.enqueue(ticket_id, make_message(gateway_message_id="bad"))
    batcher.enqueue(ticket_id, make_message(gateway_message_id="good"))

    await batcher.stop()

    assert len(batcher) == 0
    assert stored_ids(ctx) == ["good"]


@pytest.mark.asyncio
async def test_run_survives_unexpected_flush_error(db, ctx, batcher, monkeypatch):
    ticket_id = resolve_ticket(db, make_message()).ticket_id
    batcher.enqueue(ticket_id, make_message())
    real_flush = batcher.flush
    calls = []

    def flaky_flush():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        return real_flush()

    monkeypatch.setattr(batcher, "flush", flaky_flush)
    task = batcher.start()
    for _ in range(200):
        if not len(batcher):
            break
        await asyncio.sleep(0.01)

    assert not task.done()
    await batcher.stop()

    assert len(calls) >= 2
    assert stored_ids(ctx) == ["m1"]
