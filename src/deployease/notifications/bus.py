"""Live observer connections: acknowledgement, liveness and fan-out.

The bus is transport agnostic; anything with ``send_json`` and ``close``
coroutines can be registered (the FastAPI WebSocket endpoint in production,
fakes in tests). Connections are owned here and nowhere else.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable, Protocol
import uuid

from deployease.contracts import events
from deployease.contracts.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_SECONDS = 30.0


class ObserverTransport(Protocol):
    async def send_json(self, data: dict[str, Any]) -> None: ...
    async def close(self, code: int = 1000) -> None: ...


@dataclass(slots=True)
class ObserverConnection:
    id: str
    transport: ObserverTransport
    connected_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    subscriptions: set[str] = field(default_factory=set)
    alive: bool = True

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "connectedAt": self.connected_at.isoformat(),
            "lastSeenAt": self.last_seen_at.isoformat(),
            "subscriptions": sorted(self.subscriptions),
            "alive": self.alive,
        }


MessageHandler = Callable[[ObserverConnection, dict[str, Any]], Awaitable[None]]
ConnectHook = Callable[[ObserverConnection], Awaitable[None]]
Predicate = Callable[[ObserverConnection], bool]


def subscribed_to(channel: str) -> Predicate:
    """Match connections subscribed to ``channel``, or with no subscriptions at all."""

    def _predicate(connection: ObserverConnection) -> bool:
        return not connection.subscriptions or channel in connection.subscriptions

    return _predicate


class NotificationBus:
    def __init__(self, *, heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._connections: dict[str, ObserverConnection] = {}
        self._handlers: dict[str, MessageHandler] = {}
        self._connect_hooks: list[ConnectHook] = []
        self._task: asyncio.Task[None] | None = None

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> ObserverConnection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[ObserverConnection]:
        return list(self._connections.values())

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        self._handlers[message_type] = handler

    def on_connect(self, hook: ConnectHook) -> None:
        self._connect_hooks.append(hook)

    async def connect(self, transport: ObserverTransport) -> ObserverConnection:
        connection = ObserverConnection(id=str(uuid.uuid4()), transport=transport)
        self._connections[connection.id] = connection
        logger.info("observer.connected", extra={"extra": {"client_id": connection.id}})
        ack = events.ConnectionAck(
            client_id=connection.id, heartbeat_interval=self.heartbeat_interval
        )
        if not await self.send(connection.id, ack.to_wire()):
            return connection
        for hook in self._connect_hooks:
            try:
                await hook(connection)
            except Exception:
                logger.exception(
                    "observer.connect_hook_failed", extra={"extra": {"client_id": connection.id}}
                )
        return connection

    async def handle_inbound(self, connection_id: str, message: Any) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.alive = True
        connection.last_seen_at = utcnow()

        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            await self.send(
                connection_id, events.ErrorMessage(message="Invalid message format").to_wire()
            )
            return

        message_type = message["type"]
        if message_type in (events.SUBSCRIBE, events.UNSUBSCRIBE):
            channels = [c for c in message.get("channels") or [] if isinstance(c, str)]
            if message_type == events.SUBSCRIBE:
                connection.subscriptions.update(channels)
            else:
                connection.subscriptions.difference_update(channels)
            ack = events.SubscriptionAck(channels=sorted(connection.subscriptions))
            await self.send(connection_id, ack.to_wire())
        elif message_type == events.PING:
            await self.send(connection_id, events.Pong().to_wire())
        elif message_type == events.PONG:
            return
        elif message_type in self._handlers:
            await self._handlers[message_type](connection, message)
        else:
            await self.broadcast(message)

    async def send(self, connection_id: str, message: dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.transport.send_json(message)
        except Exception as exc:
            logger.warning(
                "observer.send_failed",
                extra={"extra": {"client_id": connection_id, "error": str(exc)}},
            )
            await self.disconnect(connection_id, code=1011)
            return False
        return True

    async def broadcast(self, message: dict[str, Any], predicate: Predicate | None = None) -> int:
        """Deliver to every matching connection; returns the number delivered."""
        targets = [c.id for c in self.connections() if predicate is None or predicate(c)]
        if not targets:
            return 0
        delivered = await asyncio.gather(*(self.send(cid, message) for cid in targets))
        return sum(1 for ok in delivered if ok)

    async def broadcast_log(self, message: str) -> int:
        return await self.broadcast(
            events.LogEvent(message=message).to_wire(),
            subscribed_to(events.DEPLOYMENT_LOGS_CHANNEL),
        )

    async def disconnect(self, connection_id: str, code: int = 1000) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        logger.info(
            "observer.disconnected", extra={"extra": {"client_id": connection_id, "code": code}}
        )
        try:
            await connection.transport.close(code)
        except Exception as exc:
            logger.debug(
                "observer.close_failed",
                extra={"extra": {"client_id": connection_id, "error": str(exc)}},
            )
        return True

    async def check_liveness(self) -> list[str]:
        """One liveness tick.

        A connection still not-alive from the previous tick is closed; every
        other connection is marked not-alive and pinged.
        """
        removed: list[str] = []
        for connection in self.connections():
            if not connection.alive:
                await self.disconnect(connection.id, code=1001)
                removed.append(connection.id)
                continue
            connection.alive = False
            await self.send(connection.id, events.Ping().to_wire())
        if removed:
            logger.info("observer.liveness_removed", extra={"extra": {"clients": removed}})
        return removed

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.check_liveness()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._liveness_loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for connection_id in list(self._connections):
            await self.disconnect(connection_id, code=1001)
