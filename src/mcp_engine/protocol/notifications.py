"""Server-to-client notification delivery.

Clients subscribe with an optional set of notification types, an optional
transport and an optional filter. Notifications go straight out over a
connected transport; otherwise they wait in a bounded pending buffer that is
flushed when a transport is attached or drained by an SSE stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from fastapi.responses import StreamingResponse

from mcp_engine.config import DEFAULT_NOTIFICATIONS, deep_merge
from mcp_engine.protocol.jsonrpc import make_notification
from mcp_engine.protocol.scheduler import Scheduler, SyncScheduler

if TYPE_CHECKING:
    from mcp_engine.transport.base import Transport

logger = logging.getLogger(__name__)

TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"
RESOURCES_UPDATED = "notifications/resources/updated"
PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"
LOGGING_MESSAGE = "notifications/message"
PROGRESS = "notifications/progress"
CANCELLED = "notifications/cancelled"

NOTIFICATION_TYPES = (
    TOOLS_LIST_CHANGED,
    RESOURCES_LIST_CHANGED,
    RESOURCES_UPDATED,
    PROMPTS_LIST_CHANGED,
    LOGGING_MESSAGE,
    PROGRESS,
    CANCELLED,
)

SSE_BATCH_SIZE = 10

Listener = Callable[[dict[str, Any]], None]


class DeliveryStatus(Enum):
    """Delivery state of a notification."""

    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Subscription:
    """A client's interest in notifications."""

    client_id: str
    types: frozenset[str] = frozenset()
    transport: Transport | None = None
    filter: dict[str, Any] | None = None
    active: bool = True
    subscribed_at: float = field(default_factory=time.time)

    def accepts(self, notification_type: str) -> bool:
        """An empty type set accepts every type."""
        return not self.types or notification_type in self.types

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "types": sorted(self.types),
            "has_transport": self.transport is not None,
            "has_filter": bool(self.filter),
            "active": self.active,
            "subscribed_at": self.subscribed_at,
        }


@dataclass
class NotificationRecord:
    """A notification and its per-client delivery results."""

    id: str
    type: str
    params: dict[str, Any]
    client_id: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    deliveries: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "params": self.params,
            "client_id": self.client_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "clients": {client: dict(info) for client, info in self.deliveries.items()},
        }


@dataclass
class PendingNotification:
    """A message waiting for its client to become reachable."""

    client_id: str
    message: dict[str, Any]
    queued_at: float = field(default_factory=time.time)


def _lookup(data: dict[str, Any], path: str) -> Any:
    value: Any = data
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches_filter(filter: dict[str, Any] | None, notification: dict[str, Any]) -> bool:
    """Check a notification against a subscription filter.

    Filter keys are dotted paths into the notification (``type``,
    ``params.uri``). Values may be a callable ``(value, notification)``,
    a collection of allowed values or an exact value.
    """
    for path, expected in (filter or {}).items():
        value = _lookup(notification, path)
        if callable(expected):
            if not expected(value, notification):
                return False
        elif isinstance(expected, list | tuple | set | frozenset):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def format_sse(event: str, data: Any) -> str:
    """Format one server-sent event."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class NotificationHandler:
    """Subscription registry and notification delivery engine."""

    def __init__(
        self,
        scheduler: Scheduler | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the handler.

        Args:
            scheduler: Runs deferred deliveries when queuing is enabled.
            config: Overrides for the notification defaults.
        """
        self._config = deep_merge(DEFAULT_NOTIFICATIONS, config)
        self._scheduler = scheduler or SyncScheduler()
        self._lock = threading.RLock()
        self._subscriptions: dict[str, Subscription] = {}
        self._pending: deque[PendingNotification] = deque()
        self._tracking: OrderedDict[str, NotificationRecord] = OrderedDict()
        self._listeners: dict[str, list[Listener]] = {}
        self._dropped = 0

    @property
    def config(self) -> dict[str, Any]:
        return dict(self._config)

    # -- events ----------------------------------------------------------------

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for broadcast, queued, delivered or failed."""
        self._listeners.setdefault(event, []).append(listener)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for listener in self._listeners.get(event, []):
            try:
                listener(payload)
            except Exception:
                logger.exception("Notification listener for '%s' failed", event)

    # -- subscriptions -----------------------------------------------------------

    def subscribe(
        self,
        client_id: str,
        types: Iterable[str] = (),
        transport: Transport | None = None,
        filter: dict[str, Any] | None = None,
    ) -> Subscription:
        """Subscribe a client, replacing any previous subscription.

        Args:
            client_id: Client identifier.
            types: Notification types to receive; empty means all.
            transport: Transport for direct delivery.
            filter: Optional filter, see ``matches_filter``.

        Returns:
            The new subscription.
        """
        subscription = Subscription(
            client_id=client_id,
            types=frozenset(types),
            transport=transport,
            filter=filter or None,
        )
        with self._lock:
            self._subscriptions[client_id] = subscription

        if self._config["log_notifications"]:
            logger.info(
                "Client %s subscribed to %s",
                client_id,
                sorted(subscription.types) or "all notifications",
            )
        if transport is not None:
            self._flush_pending(client_id, transport)
        return subscription

    def unsubscribe(self, client_id: str) -> bool:
        """Remove a client's subscription. Returns True if it existed."""
        with self._lock:
            removed = self._subscriptions.pop(client_id, None)
        if removed is not None and self._config["log_notifications"]:
            logger.info("Client %s unsubscribed", client_id)
        return removed is not None

    def attach_transport(self, client_id: str, transport: Transport) -> None:
        """Bind a transport to a subscription and flush its pending messages.

        Raises:
            KeyError: If the client is not subscribed.
        """
        with self._lock:
            subscription = self._subscriptions.get(client_id)
            if subscription is None:
                raise KeyError(f"Client not subscribed: {client_id}")
            subscription.transport = transport
        self._flush_pending(client_id, transport)

    def update_filter(self, client_id: str, filter: dict[str, Any] | None) -> bool:
        """Replace a subscription's filter. Returns False if not subscribed."""
        with self._lock:
            subscription = self._subscriptions.get(client_id)
            if subscription is None:
                return False
            subscription.filter = filter or None
        return True

    def active_subscriptions(self) -> dict[str, Subscription]:
        with self._lock:
            return {cid: sub for cid, sub in self._subscriptions.items() if sub.active}

    # -- sending -------------------------------------------------------------------

    def broadcast(
        self,
        notification_type: str,
        params: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        """Send a notification to every eligible subscriber.

        Returns:
            Notification id of the form ``mcp_<uuid>``.
        """
        record = self._new_record(notification_type, params)
        if self._config["log_notifications"]:
            logger.info(
                "Broadcasting %s (%s) to %d subscribers",
                notification_type,
                record.id,
                len(self._subscriptions),
            )
        self._emit("broadcast", {**record.to_dict(), "options": options or {}})

        if self._config["queue_notifications"]:
            self._queue(record, lambda: self._deliver_broadcast(record))
        else:
            self._set_status(record, DeliveryStatus.SENT)
            self._deliver_broadcast(record)
        return record.id

    def notify(
        self,
        client_id: str,
        notification_type: str,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Send a notification to one client.

        Returns:
            Notification id of the form ``mcp_<uuid>``.
        """
        record = self._new_record(notification_type, params, client_id)
        if self._config["log_notifications"]:
            logger.info("Sending %s (%s) to %s", notification_type, record.id, client_id)

        if self._config["queue_notifications"]:
            self._queue(record, lambda: self._deliver_to_client(client_id, record))
        else:
            self._set_status(record, DeliveryStatus.SENT)
            self._deliver_to_client(client_id, record)
        return record.id

    def _new_record(
        self, notification_type: str, params: dict[str, Any] | None, client_id: str | None = None
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"mcp_{uuid.uuid4()}",
            type=notification_type,
            params=dict(params or {}),
            client_id=client_id,
        )
        if self._config["enable_delivery_tracking"]:
            with self._lock:
                self._tracking[record.id] = record
                while len(self._tracking) > self._config["max_tracked_notifications"]:
                    self._tracking.popitem(last=False)
        return record

    def _queue(self, record: NotificationRecord, job: Callable[[], None]) -> None:
        self._set_status(record, DeliveryStatus.QUEUED)
        self._emit("queued", record.to_dict())

        def run() -> None:
            self._set_status(record, DeliveryStatus.SENT)
            job()

        self._scheduler.enqueue(run)

    def _deliver_broadcast(self, record: NotificationRecord) -> None:
        with self._lock:
            eligible = [
                cid
                for cid, sub in self._subscriptions.items()
                if sub.active and sub.accepts(record.type)
            ]
        for client_id in eligible:
            self._deliver_to_client(client_id, record)

    def _deliver_to_client(self, client_id: str, record: NotificationRecord) -> None:
        with self._lock:
            subscription = self._subscriptions.get(client_id)

        if (
            subscription is None
            or not subscription.active
            or not subscription.accepts(record.type)
            or not matches_filter(subscription.filter, record.to_dict())
        ):
            self._mark(record, client_id, DeliveryStatus.SKIPPED)
            return

        message = make_notification(record.type, record.params)
        transport = subscription.transport
        try:
            if transport is not None and transport.is_connected():
                transport.send(message)
                self._mark(record, client_id, DeliveryStatus.DELIVERED)
                self._emit("delivered", {"id": record.id, "client_id": client_id})
                return
            self._add_pending(client_id, message)
            self._mark(record, client_id, DeliveryStatus.PENDING)
        except Exception as e:
            logger.error("Failed to deliver %s to %s: %s", record.id, client_id, e)
            self._mark(record, client_id, DeliveryStatus.FAILED, error=str(e))
            self._emit("failed", {"id": record.id, "client_id": client_id, "error": str(e)})

    # -- tracking --------------------------------------------------------------------

    def _set_status(self, record: NotificationRecord, status: DeliveryStatus) -> None:
        with self._lock:
            record.status = status
            record.updated_at = time.time()

    def _mark(
        self,
        record: NotificationRecord,
        client_id: str,
        status: DeliveryStatus,
        error: str | None = None,
    ) -> None:
        with self._lock:
            entry: dict[str, Any] = {"status": status.value, "at": time.time()}
            if error is not None:
                entry["error"] = error
            record.deliveries[client_id] = entry
            record.updated_at = entry["at"]
            if record.client_id is not None:
                record.status = status

    def delivery_status(self, notification_id: str) -> dict[str, Any] | None:
        """Snapshot of a tracked notification, or None if unknown."""
        with self._lock:
            record = self._tracking.get(notification_id)
            return record.to_dict() if record is not None else None

    def clear_delivery_status(self, notification_id: str | None = None) -> int:
        """Forget one tracked notification, or all of them.

        Returns:
            Number of records removed.
        """
        with self._lock:
            if notification_id is None:
                removed = len(self._tracking)
                self._tracking.clear()
                return removed
            return 1 if self._tracking.pop(notification_id, None) is not None else 0

    @property
    def tracked_count(self) -> int:
        with self._lock:
            return len(self._tracking)

    # -- pending buffer ----------------------------------------------------------------

    def _add_pending(self, client_id: str, message: dict[str, Any]) -> None:
        with self._lock:
            if len(self._pending) >= self._config["max_pending_notifications"]:
                dropped = self._pending.popleft()
                self._dropped += 1
                logger.warning("Pending buffer full, dropped notification for %s", dropped.client_id)
            self._pending.append(PendingNotification(client_id=client_id, message=message))

    def take_pending(self, client_id: str, limit: int = SSE_BATCH_SIZE) -> list[dict[str, Any]]:
        """Remove and return up to ``limit`` pending messages for a client, oldest first."""
        taken: list[dict[str, Any]] = []
        with self._lock:
            kept: deque[PendingNotification] = deque()
            for item in self._pending:
                if item.client_id == client_id and len(taken) < limit:
                    taken.append(item.message)
                else:
                    kept.append(item)
            self._pending = kept
        return taken

    def _flush_pending(self, client_id: str, transport: Transport) -> int:
        if not transport.is_connected():
            return 0
        sent = 0
        while True:
            batch = self.take_pending(client_id)
            if not batch:
                return sent
            for index, message in enumerate(batch):
                try:
                    transport.send(message)
                except Exception as e:
                    logger.error("Flushing pending notifications to %s failed: %s", client_id, e)
                    with self._lock:
                        for leftover in reversed(batch[index:]):
                            self._pending.appendleft(
                                PendingNotification(client_id=client_id, message=leftover)
                            )
                    return sent
                sent += 1

    def pending_notifications_count(self, client_id: str | None = None) -> int:
        with self._lock:
            if client_id is None:
                return len(self._pending)
            return sum(1 for item in self._pending if item.client_id == client_id)

    def clear_pending_notifications(self, client_id: str) -> int:
        """Drop a client's pending messages. Returns how many were removed."""
        with self._lock:
            before = len(self._pending)
            self._pending = deque(item for item in self._pending if item.client_id != client_id)
            return before - len(self._pending)

    @property
    def dropped_count(self) -> int:
        """Pending messages discarded because the buffer was full."""
        return self._dropped

    # -- server-sent events ----------------------------------------------------------------

    async def sse_events(
        self,
        client_id: str,
        types: Iterable[str] = (),
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Stream a client's notifications as server-sent events.

        Emits ``connected`` first, then ``notification`` events from the
        pending buffer and a ``heartbeat`` every sse_heartbeat_interval.
        The client is unsubscribed when the stream ends.
        """
        self.subscribe(client_id, types)
        heartbeat_interval = self._config["sse_heartbeat_interval"]
        poll_interval = self._config["sse_poll_interval"]
        try:
            yield format_sse("connected", {"client_id": client_id, "server_time": time.time()})
            last_heartbeat = time.monotonic()
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                for message in self.take_pending(client_id):
                    yield format_sse("notification", message)
                if time.monotonic() - last_heartbeat >= heartbeat_interval:
                    yield format_sse("heartbeat", {"timestamp": time.time()})
                    last_heartbeat = time.monotonic()
                await asyncio.sleep(poll_interval)
        finally:
            self.unsubscribe(client_id)

    def create_sse_response(
        self,
        client_id: str,
        types: Iterable[str] = (),
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> StreamingResponse:
        """Wrap ``sse_events`` in a streaming HTTP response."""
        return StreamingResponse(
            self.sse_events(client_id, types, is_disconnected),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
