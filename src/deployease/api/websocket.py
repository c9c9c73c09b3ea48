"""``/deployease`` WebSocket endpoint backed by the NotificationBus."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from deployease.contracts import events
from deployease.errors import DeployEaseError
from deployease.notifications.bus import ObserverConnection
from deployease.runtime import DeployRuntime

router = APIRouter()


class SocketTransport:
    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._ws.send_json(data)

    async def close(self, code: int = 1000) -> None:
        if (
            self._ws.client_state is WebSocketState.DISCONNECTED
            or self._ws.application_state is WebSocketState.DISCONNECTED
        ):
            return
        await self._ws.close(code)


def install_observer_handlers(runtime: DeployRuntime) -> None:
    """Send deployment history on connect and on ``request_history``."""

    async def send_history(connection: ObserverConnection, message: Any = None) -> None:
        try:
            pages = await runtime.recorder.history_all()
        except DeployEaseError as exc:
            await runtime.bus.send(connection.id, events.ErrorMessage(message=str(exc)).to_wire())
            return
        data = {
            branch: [record.to_wire() for record in page.deployments]
            for branch, page in pages.items()
        }
        await runtime.bus.send(connection.id, events.DeploymentHistory(data=data).to_wire())

    runtime.bus.on_connect(send_history)
    runtime.bus.register_handler(events.REQUEST_HISTORY, send_history)


@router.websocket("/deployease")
async def observer_socket(websocket: WebSocket) -> None:
    runtime: DeployRuntime = websocket.app.state.runtime
    await websocket.accept()
    connection = await runtime.bus.connect(SocketTransport(websocket))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            await runtime.bus.handle_inbound(connection.id, message)
    except WebSocketDisconnect:
        pass
    finally:
        await runtime.bus.disconnect(connection.id)
