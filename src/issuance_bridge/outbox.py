"""
Durable payment outbox.

Payments are written to the outbox before anything reaches the network.
Recording an event publishes a typed message on an EventChannel; the
PaymentDispatcher consumes the channel, pays, and marks the event
processed. On start the dispatcher replays every unprocessed event in
creation order.

Delivery is at-least-once, keyed by the durable event id: a crash between
a payment and its `mark_processed` replays that payment. Callers that need
stronger guarantees deduplicate on the payment's `reference`.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .address import AddressResolver
from .exceptions import BridgeException
from .models import Payment, PaymentEvent
from .network import LedgerNetworkClient
from .registry import BridgeRegistry

logger = logging.getLogger(__name__)


class OutboxStore:
    """Outbox event storage supporting SQLite (`sqlite:///path`) and `memory://`."""

    def __init__(self, dsn: str = "memory://"):
        self._dsn = dsn
        self._lock = threading.RLock()
        self._sqlite_conn: Optional[sqlite3.Connection] = None
        self._events: Dict[int, PaymentEvent] = {}
        self._next_id = 1

        if dsn.startswith("sqlite:///"):
            path = Path(dsn.removeprefix("sqlite:///"))
            path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite_conn = sqlite3.connect(path, check_same_thread=False)
            self._sqlite_conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    created_on TEXT NOT NULL,
                    last_modified_on TEXT NOT NULL
                )
                """
            )
            self._sqlite_conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_payment_events_pending "
                "ON payment_events(processed, created_on)"
            )
            self._sqlite_conn.commit()
        elif not dsn.startswith("memory://"):
            raise ValueError(f"Unsupported outbox DSN: {dsn}")

    def close(self) -> None:
        if self._sqlite_conn is not None:
            self._sqlite_conn.close()
            self._sqlite_conn = None

    @staticmethod
    def _row_to_event(row) -> PaymentEvent:
        return PaymentEvent(
            event_id=row[0],
            payload=row[1],
            processed=bool(row[2]),
            created_on=datetime.fromisoformat(row[3]),
            last_modified_on=datetime.fromisoformat(row[4]),
        )

    def save(self, event: PaymentEvent) -> int:
        """Persist a new event and return its durable id."""
        with self._lock:
            if self._sqlite_conn:
                cur = self._sqlite_conn.execute(
                    """
                    INSERT INTO payment_events (payload, processed, created_on, last_modified_on)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        event.payload,
                        int(event.processed),
                        event.created_on.isoformat(),
                        event.last_modified_on.isoformat(),
                    ),
                )
                self._sqlite_conn.commit()
                event.event_id = cur.lastrowid
            else:
                event.event_id = self._next_id
                self._next_id += 1
                self._events[event.event_id] = PaymentEvent(
                    event_id=event.event_id,
                    payload=event.payload,
                    processed=event.processed,
                    created_on=event.created_on,
                    last_modified_on=event.last_modified_on,
                )
        return event.event_id

    def get(self, event_id: int) -> Optional[PaymentEvent]:
        with self._lock:
            if self._sqlite_conn:
                row = self._sqlite_conn.execute(
                    "SELECT event_id, payload, processed, created_on, last_modified_on "
                    "FROM payment_events WHERE event_id = ?",
                    (event_id,),
                ).fetchone()
                return self._row_to_event(row) if row else None
            stored = self._events.get(event_id)
            if stored is None:
                return None
            return PaymentEvent(
                event_id=stored.event_id,
                payload=stored.payload,
                processed=stored.processed,
                created_on=stored.created_on,
                last_modified_on=stored.last_modified_on,
            )

    def mark_processed(self, event_id: int) -> bool:
        """
        Flip an event to processed.

        Returns True only for the call that performed the flip, so each event
        is marked processed exactly once.
        """
        now = datetime.now(timezone.utc)
        with self._lock:
            if self._sqlite_conn:
                cur = self._sqlite_conn.execute(
                    "UPDATE payment_events SET processed = 1, last_modified_on = ? "
                    "WHERE event_id = ? AND processed = 0",
                    (now.isoformat(), event_id),
                )
                self._sqlite_conn.commit()
                return cur.rowcount == 1
            stored = self._events.get(event_id)
            if stored is None or stored.processed:
                return False
            stored.processed = True
            stored.last_modified_on = now
            return True

    def list_unprocessed(self) -> List[PaymentEvent]:
        """Unprocessed events, oldest first."""
        with self._lock:
            if self._sqlite_conn:
                rows = self._sqlite_conn.execute(
                    "SELECT event_id, payload, processed, created_on, last_modified_on "
                    "FROM payment_events WHERE processed = 0 "
                    "ORDER BY created_on, event_id"
                ).fetchall()
                return [self._row_to_event(row) for row in rows]
            pending = [e for e in self._events.values() if not e.processed]
        pending.sort(key=lambda e: (e.created_on, e.event_id))
        return [self.get(e.event_id) for e in pending]


@dataclass(frozen=True)
class PaymentEventRecorded:
    """Channel message: the outbox holds a new event ready for dispatch."""
    event_id: int


class EventChannel:
    """Typed in-process channel between the outbox and its dispatcher."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[Optional[PaymentEventRecorded]] = asyncio.Queue(maxsize)

    def publish(self, message: PaymentEventRecorded) -> None:
        """Enqueue without waiting; the outbox record is the durable copy."""
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                f"Event channel full, event {message.event_id} left for replay"
            )

    async def receive(self) -> Optional[PaymentEventRecorded]:
        """Next message, or None once the channel has been closed."""
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def join(self) -> None:
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class PaymentOutbox:
    """Records payments durably, then signals that they are ready."""

    def __init__(self, store: OutboxStore, channel: EventChannel):
        self._store = store
        self._channel = channel

    def record_and_publish(self, payment: Payment) -> int:
        now = datetime.now(timezone.utc)
        event = PaymentEvent(
            payload=payment.model_dump_json(),
            processed=False,
            created_on=now,
            last_modified_on=now,
        )
        event_id = self._store.save(event)
        logger.info(
            f"Payment event {event_id} recorded for tenant {payment.source_tenant_id}: "
            f"{payment.amount} {payment.asset_code} to {payment.destination_address}"
        )
        self._channel.publish(PaymentEventRecorded(event_id=event_id))
        return event_id


class PaymentDispatcher:
    """
    Consumes the event channel and executes recorded payments.

    Events that fail to dispatch stay unprocessed and are picked up by the
    next `replay_unprocessed()`.
    """

    def __init__(
        self,
        store: OutboxStore,
        channel: EventChannel,
        resolver: AddressResolver,
        registry: BridgeRegistry,
        network: LedgerNetworkClient,
    ):
        self._store = store
        self._channel = channel
        self._resolver = resolver
        self._registry = registry
        self._network = network

    def replay_unprocessed(self) -> int:
        """Re-publish every unprocessed event in creation order."""
        pending = self._store.list_unprocessed()
        for event in pending:
            self._channel.publish(PaymentEventRecorded(event_id=event.event_id))
        if pending:
            logger.info(f"Replaying {len(pending)} unprocessed payment events")
        return len(pending)

    async def dispatch(self, event_id: int) -> bool:
        """
        Pay out one recorded event.

        Returns True if this call executed the payment and marked the event,
        False if the event was unknown or already processed.
        """
        event = self._store.get(event_id)
        if event is None:
            logger.warning(f"Payment event {event_id} not found in outbox")
            return False
        if event.processed:
            logger.debug(f"Payment event {event_id} already processed, skipping")
            return False

        payment = event.payment()
        destination = await self._resolver.resolve(payment.destination_address)
        with self._registry.main_key(payment.source_tenant_id) as source_key:
            await self._network.pay(destination, payment.amount, payment.asset_code, source_key)

        marked = self._store.mark_processed(event_id)
        logger.info(
            f"Payment event {event_id} dispatched: {payment.amount} {payment.asset_code} "
            f"to {destination.account_id}"
        )
        return marked

    async def run(self) -> None:
        """Replay pending events, then dispatch until the channel is closed."""
        self.replay_unprocessed()
        while True:
            message = await self._channel.receive()
            try:
                if message is None:
                    return
                await self.dispatch(message.event_id)
            except BridgeException as e:
                logger.warning(
                    f"Dispatch of payment event {message.event_id} failed, "
                    f"left for replay: {e.message}"
                )
            except Exception:
                logger.exception(f"Unexpected error dispatching payment event {message.event_id}")
            finally:
                self._channel.task_done()
