"""
Optional write batching for inbound messages.

Messages are queued in-process and flushed in groups by a single periodic
task, so within one process batched writes are serialized. Each message
ends up as exactly one row plus a bump of its ticket, unless its write keeps
failing, in which case it is dropped after max_attempts tries and counted in
batch_messages_dropped_total.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ticket_router.extractor import NormalizedMessage
from ticket_router.metrics import record_batch_dropped, set_batch_pending
from ticket_router.routing import as_utc, build_message_row, bump_ticket, message_exists

logger = logging.getLogger(__name__)

QueuedMessage = Tuple[str, NormalizedMessage]


class MessageBatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        batch_size: int = 10,
        interval_seconds: float = 2.0,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._queue: Deque[QueuedMessage] = deque()
        self._failures: Dict[Tuple[str, str], int] = {}
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._queue)

    def enqueue(self, ticket_id: str, message: NormalizedMessage) -> None:
        self._queue.append((ticket_id, message))
        set_batch_pending(len(self._queue))
        logger.debug(f"Queued message {message.gateway_message_id} for ticket {ticket_id} ({len(self._queue)} pending)")

    def flush(self) -> int:
        """
        Write up to batch_size queued messages in one transaction.

        Returns the number of queued messages taken off the queue for good:
        written, duplicates, and rows dropped after max_attempts failed
        writes. When the batch transaction fails, each row is retried in its
        own transaction and only the rows that still fail go back to the head
        of the queue.
        """
        if not self._queue:
            return 0

        batch: List[QueuedMessage] = []
        while self._queue and len(batch) < self.batch_size:
            batch.append(self._queue.popleft())
        set_batch_pending(len(self._queue))

        with self.session_factory() as db:
            try:
                inserted, latest = self._stage(db, batch)
                db.commit()
            except (SQLAlchemyError, ValueError) as e:
                db.rollback()
                logger.warning(f"Batch insert of {len(batch)} messages failed, writing one by one: {e}")
                return self._flush_each(batch)
            self._bump(db, latest)

        for ticket_id, message in batch:
            self._failures.pop((ticket_id, message.gateway_message_id), None)
        logger.info(f"Flushed {inserted} of {len(batch)} queued messages")
        return len(batch)

    def _stage(self, db: Session, batch: List[QueuedMessage]) -> Tuple[int, Dict[str, datetime]]:
        """Add the new rows of `batch` to the session; returns (inserted, newest timestamp per ticket)."""
        latest: Dict[str, datetime] = {}
        inserted = 0
        seen = set()
        for ticket_id, message in batch:
            dedupe_key = (ticket_id, message.gateway_message_id)
            if dedupe_key in seen or message_exists(db, ticket_id, message.gateway_message_id):
                logger.info(f"Duplicate delivery of {message.gateway_message_id} dropped from batch")
                continue
            seen.add(dedupe_key)
            db.add(build_message_row(ticket_id, message))
            inserted += 1
            newest = latest.get(ticket_id)
            if newest is None or as_utc(message.timestamp) > as_utc(newest):
                latest[ticket_id] = message.timestamp
        return inserted, latest

    def _bump(self, db: Session, latest: Dict[str, datetime]) -> None:
        for ticket_id, timestamp in latest.items():
            bump_ticket(db, ticket_id, timestamp, unread=True)

    def _flush_each(self, batch: List[QueuedMessage]) -> int:
        resolved = 0
        retry: List[QueuedMessage] = []

        for item in batch:
            ticket_id, message = item
            with self.session_factory() as db:
                try:
                    _, latest = self._stage(db, [item])
                    db.commit()
                except (SQLAlchemyError, ValueError) as e:
                    db.rollback()
                    if self._give_up(item, e):
                        resolved += 1
                    else:
                        retry.append(item)
                    continue
                self._bump(db, latest)
            self._failures.pop((ticket_id, message.gateway_message_id), None)
            resolved += 1

        if retry:
            self._queue.extendleft(reversed(retry))
            set_batch_pending(len(self._queue))
        logger.info(f"Resolved {resolved} of {len(batch)} messages one by one, {len(retry)} requeued")
        return resolved

    def _give_up(self, item: QueuedMessage, error: Exception) -> bool:
        """Count a failed write of `item`; True once it has failed max_attempts times and is dropped."""
        ticket_id, message = item
        key = (ticket_id, message.gateway_message_id)
        failures = self._failures.get(key, 0) + 1
        if failures < self.max_attempts:
            self._failures[key] = failures
            logger.warning(
                f"Write of message {message.gateway_message_id} failed "
                f"({failures}/{self.max_attempts}), requeued: {error}"
            )
            return False

        self._failures.pop(key, None)
        record_batch_dropped()
        logger.error(
            f"Dropping message {message.gateway_message_id} for ticket {ticket_id} "
            f"after {failures} failed writes: {error}"
        )
        return True

    async def run(self) -> None:
        """Flush on a fixed interval until stop() is called."""
        logger.info(f"Message batcher started (size={self.batch_size}, interval={self.interval_seconds}s)")
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
            while self._queue and not self._stopping.is_set():
                try:
                    flushed = await asyncio.to_thread(self.flush)
                except Exception:
                    logger.exception(f"Batch flush failed, {len(self._queue)} messages still queued")
                    break
                if flushed == 0 and self._queue:
                    # Every row failed; retry on the next tick
                    break

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """
        Stop the periodic task, then flush whatever is still queued.

        Each round either writes a row or counts a failure against it, so the
        drain ends after at most max_attempts rounds.
        """
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        while self._queue:
            try:
                await asyncio.to_thread(self.flush)
            except Exception:
                logger.exception(f"Dropping {len(self._queue)} unflushed messages on shutdown")
                self._queue.clear()
                set_batch_pending(0)
