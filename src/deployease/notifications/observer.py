"""Reconnecting observer client for the ``/deployease`` channel.

States: disconnected -> connecting -> connected -> disconnected, with a
bounded number of reconnect attempts and exponential delay between them.
``close()`` moves the client to the terminal ``closed`` state, after which no
reconnect is attempted.
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
import json
import logging
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from deployease.contracts import events

logger = logging.getLogger(__name__)


class ObserverState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


MessageCallback = Callable[[dict[str, Any]], Awaitable[None]]


class ObserverClient:
    def __init__(
        self,
        url: str,
        *,
        channels: tuple[str, ...] = (events.DEPLOYMENT_LOGS_CHANNEL,),
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        heartbeat_interval: float = 30.0,
        connect_timeout: float = 10.0,
        on_message: MessageCallback | None = None,
        connect: Callable[[str], Awaitable[Any]] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.channels = channels
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self._on_message = on_message
        self._connect = connect
        self._sleep = sleep
        self._state = ObserverState.DISCONNECTED
        self._attempts = 0
        self._ws: Any = None
        self.client_id: str | None = None
        self.transitions: list[ObserverState] = [ObserverState.DISCONNECTED]

    @property
    def state(self) -> ObserverState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    def _set_state(self, state: ObserverState) -> None:
        if self._state is ObserverState.CLOSED or state is self._state:
            return
        logger.info(
            "observer_client.state",
            extra={"extra": {"from": self._state.value, "to": state.value, "url": self.url}},
        )
        self._state = state
        self.transitions.append(state)

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    async def _open(self) -> Any:
        return await self._connect(self.url)

    async def run(self) -> None:
        """Connect and consume messages until closed or out of attempts."""
        while self._state is not ObserverState.CLOSED:
            self._set_state(ObserverState.CONNECTING)
            try:
                ws = await asyncio.wait_for(self._open(), self.connect_timeout)
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning(
                    "observer_client.connect_failed",
                    extra={"extra": {"url": self.url, "error": str(exc) or type(exc).__name__}},
                )
                self._set_state(ObserverState.DISCONNECTED)
                if not await self._wait_for_retry():
                    return
                continue

            self._ws = ws
            self._attempts = 0
            self._set_state(ObserverState.CONNECTED)
            await self._consume(ws)
            self._ws = None
            self._set_state(ObserverState.DISCONNECTED)
            if not await self._wait_for_retry():
                return

    async def _consume(self, ws: Any) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            await ws.send(json.dumps({"type": events.SUBSCRIBE, "channels": list(self.channels)}))
            async for raw in ws:
                await self._dispatch(ws, raw)
        except ConnectionClosed as exc:
            code = exc.rcvd.code if exc.rcvd is not None else None
            logger.info("observer_client.connection_closed", extra={"extra": {"code": code}})
        except (WebSocketException, OSError) as exc:
            logger.warning(
                "observer_client.read_failed",
                extra={"extra": {"url": self.url, "error": str(exc) or type(exc).__name__}},
            )
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _heartbeat(self, ws: Any) -> None:
        # Ends quietly on a dead socket; the read loop reports the disconnect.
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval)
                await ws.send(json.dumps({"type": events.PING}))
        except (WebSocketException, OSError) as exc:
            logger.info(
                "observer_client.heartbeat_failed",
                extra={"extra": {"url": self.url, "error": str(exc) or type(exc).__name__}},
            )

    async def _dispatch(self, ws: Any, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("observer_client.bad_frame", extra={"extra": {"url": self.url}})
            return
        if not isinstance(message, dict):
            return
        message_type = message.get("type")
        if message_type == events.PING:
            await ws.send(json.dumps({"type": events.PONG}))
            return
        if message_type == events.CONNECTION_ACK:
            self.client_id = message.get("clientId")
        if self._on_message is None:
            return
        try:
            await self._on_message(message)
        except Exception:
            logger.exception(
                "observer_client.callback_failed",
                extra={"extra": {"url": self.url, "type": message_type}},
            )

    async def _wait_for_retry(self) -> bool:
        if self._state is ObserverState.CLOSED:
            return False
        self._attempts += 1
        if self._attempts > self.max_attempts:
            logger.error(
                "observer_client.gave_up",
                extra={"extra": {"url": self.url, "attempts": self._attempts - 1}},
            )
            return False
        await self._sleep(self.reconnect_delay(self._attempts))
        return self._state is not ObserverState.CLOSED

    async def send(self, message: dict[str, Any]) -> bool:
        if self._ws is None or self._state is not ObserverState.CONNECTED:
            return False
        await self._ws.send(json.dumps(message))
        return True

    async def close(self) -> None:
        self._set_state(ObserverState.CLOSED)
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
