"""
WebSocket session protocol

Frames are JSON text: {"event": <name>, "data": <payload>}. Client events:
join-bus, leave-bus, join-admin-dashboard, start-driver-tracking,
stop-driver-tracking, ping-server. Failures are answered with an `error`
event to the sender only.
"""

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from .auth import verify_token
from .errors import LiveTrackError, ThrottledError, ValidationError
from .rooms import EVENT_LOCATION_UPDATE, RoomBroadcaster, RoomRegistry
from .tracking import TrackingService

logger = logging.getLogger(__name__)


class ClientConnection:
    """One connected socket; hashable by identity so it can sit in room sets"""

    def __init__(self, websocket: Optional[WebSocket] = None):
        self.websocket = websocket
        self.id = uuid.uuid4().hex[:12]
        self.bus_id: Optional[str] = None
        self.organization_id: Optional[str] = None
        self.driver_id: Optional[str] = None
        self.bus_number: Optional[str] = None
        self.is_tracking = False
        self.closed = False
        self.last_join_at: Dict[str, float] = {}

    async def send_text(self, message: str) -> None:
        await self.websocket.send_text(message)

    async def aclose(self) -> None:
        """Close from the server side; the client is expected to reconnect"""
        if self.closed:
            return
        self.closed = True
        if self.websocket is not None:
            await self.websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)

    def __repr__(self):
        return f"ClientConnection({self.id})"


class RealtimeGateway:
    """Dispatches client events to room membership and initial snapshots"""

    def __init__(
        self,
        rooms: RoomRegistry,
        broadcaster: RoomBroadcaster,
        tracking: TrackingService,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        join_min_interval_seconds: float = 0.0,
        max_message_bytes: int = 1_000_000
    ):
        self.rooms = rooms
        self.broadcaster = broadcaster
        self.tracking = tracking
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.join_min_interval_seconds = join_min_interval_seconds
        self.max_message_bytes = max_message_bytes

        self._handlers = {
            "join-bus": self.on_join_bus,
            "leave-bus": self.on_leave_bus,
            "join-admin-dashboard": self.on_join_admin_dashboard,
            "start-driver-tracking": self.on_start_driver_tracking,
            "stop-driver-tracking": self.on_stop_driver_tracking,
            "ping-server": self.on_ping,
        }

    async def serve(self, websocket: WebSocket) -> None:
        """Accept a socket and handle its frames until it disconnects"""
        await websocket.accept()
        client = ClientConnection(websocket)
        self.rooms.connect(client)
        logger.debug(f"Client connected: {client.id} (Active: {self.rooms.active_connections})")
        try:
            # A dropped subscriber is closed by the broadcaster
            while not client.closed:
                raw = await websocket.receive_text()
                await self.handle_message(client, raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.rooms.disconnect(client)
            logger.debug(f"Disconnected: {client.id} (Active: {self.rooms.active_connections})")

    async def handle_message(self, client: ClientConnection, raw: str) -> None:
        if len(raw.encode("utf-8")) > self.max_message_bytes:
            await self._error(client, "Message too large")
            return
        try:
            message = json.loads(raw)
        except ValueError:
            await self._error(client, "Invalid message")
            return
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await self._error(client, "Invalid message")
            return

        handler = self._handlers.get(message["event"])
        if handler is None:
            await self._error(client, f"Unknown event: {message['event']}")
            return

        try:
            await handler(client, message.get("data"))
        except LiveTrackError as e:
            await self._error(client, e.message)
        except Exception as e:
            logger.error(f"Socket handler error for {message['event']}: {str(e)}")
            await self._error(client, "Internal error")

    async def _error(self, client: ClientConnection, message: str) -> None:
        await self.broadcaster.send(client, "error", {"message": message})

    def _check_join_throttle(self, client: ClientConnection, key: str) -> None:
        if self.join_min_interval_seconds <= 0:
            return
        now = time.monotonic()
        last = client.last_join_at.get(key)
        if last is not None and now - last < self.join_min_interval_seconds:
            raise ThrottledError("Joining too frequently, slow down")
        client.last_join_at[key] = now

    async def on_join_bus(self, client: ClientConnection, bus_id: Any) -> None:
        if not bus_id or not isinstance(bus_id, str):
            raise ValidationError("Valid bus ID required")
        self._check_join_throttle(client, f"bus-{bus_id}")

        room = self.rooms.join_bus(client, bus_id)
        client.bus_id = bus_id
        pushes_at_join = self.broadcaster.publish_count(bus_id)
        logger.info(f"Client {client.id} joined {room.name} ({self.rooms.room_size(room)} in room)")

        location = await self.tracking.get_current_location(bus_id)
        if self.broadcaster.publish_count(bus_id) != pushes_at_join:
            # A push that started after the join already carries newer data
            logger.debug(f"Skipping stale snapshot of bus {bus_id} for client {client.id}")
            return
        location.pop("message", None)
        await self.broadcaster.send(client, EVENT_LOCATION_UPDATE, location)

    async def on_leave_bus(self, client: ClientConnection, bus_id: Any) -> None:
        if not bus_id or not isinstance(bus_id, str):
            return
        self.rooms.leave_bus(client, bus_id)
        if client.bus_id == bus_id:
            client.bus_id = None

    async def on_join_admin_dashboard(self, client: ClientConnection, token: Any) -> None:
        if not token or not isinstance(token, str):
            raise ValidationError("Authentication token required")
        ctx = verify_token(token, self.jwt_secret, self.jwt_algorithm)
        self._check_join_throttle(client, "admin")

        room = self.rooms.join_admin(client, ctx)
        client.organization_id = room.organization_id
        locations = await self.tracking.get_all_locations(room.organization_id)
        await self.broadcaster.send(client, "all-bus-locations", locations)

    async def on_start_driver_tracking(self, client: ClientConnection, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        driver_id, bus_number = data.get("driverId"), data.get("busNumber")
        if not driver_id or not bus_number:
            raise ValidationError("Driver ID and bus number required")

        client.is_tracking = True
        client.driver_id = str(driver_id)
        client.bus_number = str(bus_number)
        await self.broadcaster.send(client, "tracking-status", {
            "status": "TRACKING_ON",
            "message": "Location tracking started",
        })

    async def on_stop_driver_tracking(self, client: ClientConnection, data: Any) -> None:
        client.is_tracking = False
        await self.broadcaster.send(client, "tracking-status", {
            "status": "TRACKING_OFF",
            "message": "Location tracking stopped",
        })

    async def on_ping(self, client: ClientConnection, data: Any) -> None:
        await self.broadcaster.send(client, "pong-server", {"timestamp": int(time.time() * 1000)})
