"""WebSocket transport for the signaling relay."""

import asyncio
import json
import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect

from signaling.dispatch import RelayDispatcher
from signaling.models import RelayEvent
from signaling.policy import ConnectionInfo
from signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """One client socket, as the relay sees it."""

    def __init__(self, websocket: WebSocket, connection_id: str) -> None:
        self.websocket = websocket
        self.connection_id = connection_id
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: dict) -> None:
        await self.send_frame({"event": event, "data": data})

    async def send_frame(self, frame: dict) -> None:
        message = json.dumps(frame)
        async with self._send_lock:
            await self.websocket.send_text(message)


class ConnectionManager:
    """Accepts relay clients and routes their frames to the dispatcher."""

    def __init__(self, relay: SignalingRelay) -> None:
        self._relay = relay
        self._dispatcher = RelayDispatcher(relay)
        self._connections: dict[str, WebSocketConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> WebSocketConnection:
        await websocket.accept()
        connection = WebSocketConnection(websocket, uuid.uuid4().hex)
        info = ConnectionInfo(
            connection_id=connection.connection_id,
            client_host=websocket.client.host if websocket.client else "",
            token=websocket.query_params.get("token"),
            fingerprint=websocket.headers.get("x-device-fingerprint"),
        )
        tier = await self._relay.register(connection, info)
        async with self._lock:
            self._connections[connection.connection_id] = connection
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

        await connection.send(
            "connected", {"connectionId": connection.connection_id, "tier": tier.value}
        )
        return connection

    async def disconnect(self, connection: WebSocketConnection) -> None:
        await self._relay.disconnect(connection.connection_id)
        async with self._lock:
            self._connections.pop(connection.connection_id, None)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def handle_message(self, connection: WebSocketConnection, text: str) -> None:
        """Dispatch one client frame and send the ack if it asked for one."""
        try:
            frame = json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Malformed frame from {connection.connection_id}")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            logger.warning(f"Frame without an event from {connection.connection_id}")
            return

        data = frame.get("data")
        reply = await self._dispatcher.dispatch(
            connection.connection_id,
            frame["event"],
            data if isinstance(data, dict) else None,
        )

        ack = frame.get("ack")
        if ack is not None:
            await connection.send_frame(
                {"event": RelayEvent.ACK, "ack": ack, "data": reply or {}}
            )

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection until it closes."""
        connection = await self.connect(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                await self.handle_message(connection, text)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(connection)
