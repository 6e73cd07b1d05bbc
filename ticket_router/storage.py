import logging
from typing import Generator, Optional, Tuple

from fastapi import Request
from sqlalchemy import create_engine, inspect, text, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Create the SQLAlchemy engine for a database URL.

    check_same_thread=False is required for SQLite to work with FastAPI's
    threadpool and the batching task.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, echo=False)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database at {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from ticket_router import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session from the application's context and ensures it's closed after use.
    """
    db = request.app.state.context.session_factory()
    try:
        yield db
    finally:
        db.close()


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and the schema is applied.

    Returns:
        True if DB is healthy and the tickets/messages tables exist, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            inspector = inspect(db.get_bind())
            for table in ("tickets", "messages"):
                if not inspector.has_table(table):
                    logger.error(f"Database schema not applied: '{table}' table not found")
                    return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Ticket Query Functions
# =============================================================================

def get_tickets(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    client_phone: Optional[str] = None,
    instance_name: Optional[str] = None,
    auto_created: Optional[bool] = None,
) -> Tuple[list, int]:
    """
    Retrieve tickets with pagination and filtering.

    Args:
        db: Database session
        limit: Maximum number of tickets to return (1-100)
        offset: Number of tickets to skip
        status: Filter by ticket status (exact match)
        client_phone: Filter by canonical phone key (exact match)
        instance_name: Filter by originating gateway instance
        auto_created: Filter tickets created from inbound messages

    Returns:
        Tuple of (tickets list, total count matching filters)
    """
    from ticket_router.models import Ticket

    query = db.query(Ticket)

    if status:
        query = query.filter(Ticket.status == status)

    if client_phone:
        query = query.filter(Ticket.client_phone == client_phone)

    if instance_name:
        query = query.filter(Ticket.instance_name == instance_name)

    if auto_created is not None:
        query = query.filter(Ticket.auto_created.is_(auto_created))

    total = query.count()

    # Newest first, id as tiebreaker for deterministic pages
    query = query.order_by(Ticket.created_at.desc(), Ticket.id.asc())
    tickets = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(tickets)} of {total} total tickets")

    return tickets, total


def get_ticket_messages(db: Session, ticket_id: str) -> list:
    """Messages of one ticket, oldest first."""
    from ticket_router.models import Message

    return (
        db.query(Message)
        .filter(Message.ticket_id == ticket_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def get_stats(db: Session) -> dict:
    """
    Get ticket statistics for the /stats endpoint.

    Computes:
    - total_tickets / tickets_by_status
    - auto_created_tickets: tickets opened from inbound messages
    - total_messages
    - tickets_per_instance: top 10 gateway instances by ticket count (desc)
    """
    from ticket_router.models import Message, Ticket

    total_tickets = db.query(func.count(Ticket.id)).scalar() or 0

    status_rows = (
        db.query(Ticket.status, func.count(Ticket.id))
        .group_by(Ticket.status)
        .all()
    )
    tickets_by_status = {row[0]: row[1] for row in status_rows}

    auto_created = (
        db.query(func.count(Ticket.id)).filter(Ticket.auto_created.is_(True)).scalar() or 0
    )

    total_messages = db.query(func.count(Message.id)).scalar() or 0

    instance_rows = (
        db.query(Ticket.instance_name, func.count(Ticket.id).label("count"))
        .filter(Ticket.instance_name.isnot(None))
        .group_by(Ticket.instance_name)
        .order_by(func.count(Ticket.id).desc())
        .limit(10)
        .all()
    )
    tickets_per_instance = [
        {"instance": row.instance_name, "count": row.count}
        for row in instance_rows
    ]

    logger.info(f"Stats computed: {total_tickets} tickets, {total_messages} messages")

    return {
        "total_tickets": total_tickets,
        "tickets_by_status": tickets_by_status,
        "auto_created_tickets": auto_created,
        "total_messages": total_messages,
        "tickets_per_instance": tickets_per_instance,
    }
