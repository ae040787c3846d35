"""
Room membership and best-effort fan-out of location updates
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Set, Union

from .auth import AuthContext, USER_ADMIN
from .errors import AuthorizationError
from .models import LocationRecord

logger = logging.getLogger(__name__)

EVENT_LOCATION_UPDATE = "location-update"
EVENT_BUS_UPDATE = "bus-update"


@dataclass(frozen=True)
class BusRoom:
    """Everyone watching one bus"""
    bus_id: str

    @property
    def name(self) -> str:
        return f"bus-{self.bus_id}"


@dataclass(frozen=True)
class AdminRoom:
    """Fleet dashboard of one organization"""
    organization_id: str

    @property
    def name(self) -> str:
        return f"admin-dashboard-{self.organization_id}"

    @classmethod
    def for_claims(cls, ctx: AuthContext) -> "AdminRoom":
        """Derive the room from verified token claims, never from client input"""
        if ctx.user_type != USER_ADMIN:
            raise AuthorizationError("Admin access required", status_code=403)
        if not ctx.organization_id:
            raise AuthorizationError("Organization ID not found in token", status_code=403)
        return cls(ctx.organization_id)


RoomKey = Union[BusRoom, AdminRoom]


class RoomRegistry:
    """
    Tracks which connected clients are in which rooms.

    A client is any hashable object with async ``send_text(str)`` and
    ``aclose()``. Each client is in at most one BusRoom at a time.
    """

    def __init__(self):
        self._rooms: Dict[RoomKey, Set[Any]] = {}
        self._memberships: Dict[Any, Set[RoomKey]] = {}
        self.total_connections = 0
        self.active_connections = 0
        self.peak_connections = 0

    def connect(self, client) -> None:
        if client in self._memberships:
            return
        self._memberships[client] = set()
        self.total_connections += 1
        self.active_connections += 1
        self.peak_connections = max(self.peak_connections, self.active_connections)

    def _join(self, client, room: RoomKey) -> None:
        self.connect(client)
        self._rooms.setdefault(room, set()).add(client)
        self._memberships[client].add(room)

    def _leave(self, client, room: RoomKey) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(client)
            if not members:
                self._rooms.pop(room, None)
        if client in self._memberships:
            self._memberships[client].discard(room)

    def join_bus(self, client, bus_id: str) -> BusRoom:
        room = BusRoom(bus_id)
        # Leave any previous bus room first
        for current in list(self.rooms_of(client)):
            if isinstance(current, BusRoom) and current != room:
                self._leave(client, current)
        self._join(client, room)
        logger.debug(f"Client joined {room.name} ({self.room_size(room)} in room)")
        return room

    def leave_bus(self, client, bus_id: str) -> None:
        self._leave(client, BusRoom(bus_id))

    def join_admin(self, client, ctx: AuthContext) -> AdminRoom:
        room = AdminRoom.for_claims(ctx)
        self._join(client, room)
        logger.info(f"Admin joined room: {room.name}")
        return room

    def disconnect(self, client) -> None:
        """Drop a client from every room it is in"""
        rooms = self._memberships.pop(client, None)
        if rooms is None:
            return
        for room in rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(client)
                if not members:
                    self._rooms.pop(room, None)
        self.active_connections -= 1

    def rooms_of(self, client) -> Set[RoomKey]:
        return set(self._memberships.get(client, set()))

    def members(self, room: RoomKey) -> List[Any]:
        return list(self._rooms.get(room, set()))

    def room_size(self, room: RoomKey) -> int:
        return len(self._rooms.get(room, ()))

    def stats(self) -> Dict[str, Any]:
        return {
            "totalConnections": self.total_connections,
            "activeConnections": self.active_connections,
            "peakConnections": self.peak_connections,
            "roomStats": {room.name: len(members) for room, members in self._rooms.items()},
        }


def encode_message(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


class RoomBroadcaster:
    """Sends events to current room members; no retry, no queue"""

    def __init__(
        self,
        rooms: RoomRegistry,
        send_timeout: float = 2.0,
        max_message_bytes: int = 1_000_000
    ):
        self.rooms = rooms
        self.send_timeout = send_timeout
        self.max_message_bytes = max_message_bytes
        self.messages_sent = 0
        self.send_failures = 0
        self._publish_counts: Dict[str, int] = {}

    def publish_count(self, bus_id: str) -> int:
        """How many location pushes have started for a bus"""
        return self._publish_counts.get(bus_id, 0)

    async def _deliver(self, client, message: str) -> bool:
        try:
            await asyncio.wait_for(client.send_text(message), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning(f"Dropping subscriber after failed send: {e!r}")
            return False

    def _fits(self, message: str, event: str) -> bool:
        size = len(message.encode("utf-8"))
        if size > self.max_message_bytes:
            logger.error(f"Refusing to send {event}: {size} bytes exceeds {self.max_message_bytes}")
            return False
        return True

    async def send(self, client, event: str, data: Any) -> bool:
        """Send one event to a single client"""
        message = encode_message(event, data)
        if not self._fits(message, event):
            return False
        delivered = await self._deliver(client, message)
        if delivered:
            self.messages_sent += 1
        else:
            self.send_failures += 1
        return delivered

    async def emit(self, room: RoomKey, event: str, data: Any) -> int:
        """Send to every member of a room; returns how many sends succeeded"""
        members = self.rooms.members(room)
        if not members:
            return 0
        message = encode_message(event, data)
        if not self._fits(message, event):
            return 0

        results = await asyncio.gather(*(self._deliver(c, message) for c in members))
        delivered = 0
        dropped = []
        for client, ok in zip(members, results):
            if ok:
                delivered += 1
            else:
                dropped.append(client)
        self.messages_sent += delivered
        self.send_failures += len(dropped)
        if dropped:
            await asyncio.gather(*(self._evict(c) for c in dropped))
        return delivered

    async def _evict(self, client) -> None:
        """Forget a failed subscriber and close its socket so it reconnects and re-joins"""
        self.rooms.disconnect(client)
        try:
            await asyncio.wait_for(client.aclose(), timeout=self.send_timeout)
        except Exception as e:
            logger.debug(f"Closing dropped subscriber failed: {e!r}")

    async def publish_location(self, record: LocationRecord) -> int:
        """Push a location to its bus room and its organization's dashboard"""
        payload = record.to_payload()
        # Counted before members are read so a joiner can tell it was included
        self._publish_counts[record.bus_id] = self.publish_count(record.bus_id) + 1
        sent = await self.emit(BusRoom(record.bus_id), EVENT_LOCATION_UPDATE, payload)
        sent += await self.emit(AdminRoom(record.organization_id), EVENT_BUS_UPDATE, payload)
        return sent
