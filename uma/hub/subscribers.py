"""Connection-level delivery for push consumers.

Each connection owns exactly one hub subscription whose topic set grows and
shrinks with the client's subscribe/unsubscribe messages, plus one pump task
that serializes buffered events and hands them to the transport. The hub
and cache never see wire formats; serialization happens here, at delivery.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from uma.hub.events import Event, EventHub, Subscription, SubscriptionState
from uma.hub.payloads import Envelope

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]
Closer = Callable[[int, str], Awaitable[None]]

# WebSocket close codes per subscription close reason
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008


def serialize_event(event: Event) -> dict[str, Any]:
    """Wire form of an event."""
    return {
        "type": "event",
        "topic": event.topic,
        "sequence": event.sequence,
        "timestamp": event.timestamp.isoformat() if event.timestamp else None,
        **Envelope.wrap(event.key, event.payload).model_dump(mode="json"),
    }


class Connection:
    """One push consumer: a subscription, a sender and a delivery pump."""

    def __init__(
        self,
        subscription: Subscription,
        send: Sender,
        serializer: Callable[[Event], dict[str, Any]],
        close: Closer | None = None,
    ):
        self.subscription = subscription
        self._send = send
        self._close = close
        self.disconnected = False
        self._serializer = serializer
        self._send_lock = asyncio.Lock()
        self.pump_task: asyncio.Task | None = None
        self.connected_at = datetime.now(tz=UTC)
        self.sent = 0

    @property
    def id(self) -> str:
        return self.subscription.id

    @property
    def state(self) -> SubscriptionState:
        return self.subscription.state

    @property
    def closed(self) -> bool:
        return self.subscription.closed

    async def send(self, message: dict[str, Any]):
        """Send one message; replies and events never interleave mid-frame."""
        async with self._send_lock:
            await self._send(message)
            self.sent += 1

    async def pump(self):
        """Deliver buffered events until the subscription closes."""
        async for event in self.subscription:
            try:
                await self.send(self._serializer(event))
            except Exception as e:
                logger.info("Connection %s send failed, closing: %s", self.id, e)
                self.subscription.close("send failed")
                return
        # Closed by the hub (overflow) or drained at shutdown
        reason = self.subscription.close_reason or "closed"
        await self.disconnect(CLOSE_POLICY_VIOLATION if reason == "overflow" else CLOSE_GOING_AWAY, reason)

    async def disconnect(self, code: int = CLOSE_NORMAL, reason: str = ""):
        """Close the transport once; later calls do nothing."""
        if self.disconnected or self._close is None:
            return
        self.disconnected = True
        try:
            await self._close(code, reason)
        except Exception as e:
            logger.debug("Connection %s transport close failed: %s", self.id, e)


class SubscriberRegistry:
    """Tracks live connections and drives their subscription lifecycle."""

    def __init__(self, hub: EventHub, serializer: Callable[[Event], dict[str, Any]] = serialize_event):
        self.hub = hub
        self.serializer = serializer
        self.connections: dict[str, Connection] = {}

    def open(
        self,
        send: Sender,
        topics: list[str] | tuple[str, ...] = (),
        close: Closer | None = None,
    ) -> Connection:
        """Create a connection in the Connecting state.

        Args:
            send: Coroutine delivering one message to the client
            topics: Initial topics
            close: Coroutine closing the transport with (code, reason); called
                when the hub ends the subscription (overflow, shutdown)
        """
        subscription = self.hub.subscribe(topics, activate=False)
        conn = Connection(subscription, send, self.serializer, close=close)
        self.connections[conn.id] = conn
        logger.info("Connection %s opened. Total connections: %d", conn.id, len(self.connections))
        return conn

    def activate(self, conn: Connection, topics: list[str] | tuple[str, ...] = ()):
        """Finish the handshake: register initial topics and start delivery."""
        if topics:
            self.hub.update_topics(conn.id, add=topics)
        conn.subscription.activate()
        conn.pump_task = asyncio.create_task(conn.pump(), name=f"pump:{conn.id}")
        conn.pump_task.add_done_callback(lambda _t, cid=conn.id: self._release(cid))

    async def handle_message(self, conn: Connection, message: dict[str, Any]) -> dict[str, Any]:
        """Apply one client message and return the reply to send."""
        msg_type = message.get("type")
        if conn.closed:
            return {"type": "error", "message": "connection closed"}
        topics = message.get("topics") or message.get("channels") or []
        if isinstance(topics, str):
            topics = [topics]
        if not isinstance(topics, list) or not all(isinstance(t, str) for t in topics):
            return {"type": "error", "message": "topics must be a list of strings"}

        if msg_type == "ping":
            return {"type": "pong", "timestamp": datetime.now(tz=UTC).isoformat()}

        if msg_type == "subscribe":
            current = self.hub.update_topics(conn.id, add=topics)
            return {"type": "subscription_ack", "status": "subscribed", "topics": sorted(topics), "active": sorted(current)}

        if msg_type == "unsubscribe":
            current = self.hub.update_topics(conn.id, remove=topics)
            reply = {"type": "unsubscription_ack", "status": "unsubscribed", "topics": sorted(topics), "active": sorted(current)}
            if not current:
                await self.close(conn.id, "unsubscribed from all topics", disconnect=False)
            return reply

        if msg_type == "list":
            return {"type": "subscriptions", "topics": sorted(conn.subscription.topics)}

        logger.debug("Unknown message type from %s: %s", conn.id, msg_type)
        return {"type": "error", "message": f"unknown message type: {msg_type}"}

    def fail(self, conn: Connection, reason: str):
        """Abandon a connection whose handshake did not complete."""
        conn.subscription.close(reason)
        self.hub.unsubscribe(conn.id)
        self.connections.pop(conn.id, None)
        logger.info("Connection %s failed during handshake: %s", conn.id, reason)

    async def close(self, conn_id: str, reason: str = "closed", disconnect: bool = True) -> bool:
        """Close a connection immediately, discarding anything buffered.

        Args:
            conn_id: Connection id
            reason: Recorded as the subscription close reason
            disconnect: Also close the transport; callers that still owe
                the client a reply pass False and disconnect themselves
        """
        conn = self.connections.get(conn_id)
        if conn is None:
            return False
        conn.subscription.close(reason)
        self.hub.unsubscribe(conn_id)
        if conn.pump_task is not None and conn.pump_task is not asyncio.current_task():
            conn.pump_task.cancel()
            await asyncio.gather(conn.pump_task, return_exceptions=True)
        self._release(conn_id)
        if disconnect:
            await conn.disconnect(CLOSE_GOING_AWAY if reason == "shutdown" else CLOSE_NORMAL, reason)
        return True

    def _release(self, conn_id: str):
        conn = self.connections.pop(conn_id, None)
        if conn is None:
            return
        conn.subscription.close("released")
        self.hub.unsubscribe(conn_id)
        logger.info("Connection %s closed. Total connections: %d", conn_id, len(self.connections))

    async def shutdown(self, grace: float = 5.0):
        """Drain every connection, forcing Closed after grace seconds."""
        conns = list(self.connections.values())
        for conn in conns:
            conn.subscription.drain()
        pumps = [c.pump_task for c in conns if c.pump_task is not None and not c.pump_task.done()]
        if pumps:
            _, pending = await asyncio.wait(pumps, timeout=grace)
            if pending:
                logger.warning("%d connection(s) did not drain within %.1fs, closing", len(pending), grace)
        for conn in conns:
            await self.close(conn.id, "shutdown")

    def stats(self) -> dict[str, Any]:
        return {
            "connections": len(self.connections),
            "states": {c.id: c.state.value for c in self.connections.values()},
        }
