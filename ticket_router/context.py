"""Process-wide services, built once at startup and handed to request handlers."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ticket_router.batching import MessageBatcher
from ticket_router.config import Settings
from ticket_router.gateway import EvolutionClient
from ticket_router.storage import make_engine, make_session_factory

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    gateway: EvolutionClient
    batcher: Optional[MessageBatcher] = None


def build_context(
    settings: Settings,
    gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppContext:
    engine = make_engine(settings.DATABASE_URL)
    session_factory = make_session_factory(engine)

    gateway = EvolutionClient(
        settings.EVOLUTION_API_URL,
        settings.EVOLUTION_API_KEY,
        timeout=settings.EVOLUTION_TIMEOUT_SECONDS,
        max_attempts=settings.EVOLUTION_MAX_ATTEMPTS,
        base_delay=settings.EVOLUTION_RETRY_BASE_DELAY,
        max_delay=settings.EVOLUTION_RETRY_MAX_DELAY,
        transport=gateway_transport,
    )

    batcher = None
    if settings.MESSAGE_BATCH_ENABLED:
        batcher = MessageBatcher(
            session_factory,
            batch_size=settings.MESSAGE_BATCH_SIZE,
            interval_seconds=settings.MESSAGE_BATCH_INTERVAL_SECONDS,
            max_attempts=settings.MESSAGE_BATCH_MAX_ATTEMPTS,
        )

    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        gateway=gateway,
        batcher=batcher,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the application's context."""
    return request.app.state.context
