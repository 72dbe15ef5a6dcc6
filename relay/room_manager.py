from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

MAX_ROOM_OCCUPANTS = 2
DEPARTURE_GRACE_SECONDS = 5.0
EVENT_LOG_LIMIT = 1000


class Connection(Protocol):
    async def send(self, message: str) -> None: ...


class RoomFull(Exception):
    """Raised when a join would exceed the room capacity."""


@dataclass(slots=True)
class Occupant:
    client_id: str
    room_id: str
    connection: Connection
    joined_at: float = field(default_factory=lambda: time.time())
    messages_relayed: int = 0
    departing: Optional[asyncio.Task[None]] = None


@dataclass(slots=True)
class JoinResult:
    occupants: int
    peers: List[Occupant]
    rejoined: bool = False


DepartureCallback = Callable[[str, str, List[Occupant]], Awaitable[None] | None]


class RoomManager:
    """Tracks which connection sits in which two-party room.

    A connection that drops without leaving is kept as *departing* for a
    grace period. A join in that window takes the departing slot over and no
    departure is announced.
    """

    def __init__(
        self,
        *,
        max_occupants: int = MAX_ROOM_OCCUPANTS,
        departure_grace: float = DEPARTURE_GRACE_SECONDS,
    ) -> None:
        self._max_occupants = max_occupants
        self._departure_grace = max(0.0, departure_grace)
        self._rooms: Dict[str, Dict[str, Occupant]] = {}
        self._membership: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._event_log: List[Dict[str, object]] = []
        self._started_at = time.time()

    @property
    def departure_grace(self) -> float:
        return self._departure_grace

    async def join(self, room_id: str, client_id: str, connection: Connection) -> JoinResult:
        async with self._lock:
            room = self._rooms.setdefault(room_id, {})
            if client_id in room:
                return JoinResult(occupants=len(room), peers=self._peers_locked(room, client_id), rejoined=True)
            if len(room) >= self._max_occupants:
                departing = next((occ for occ in room.values() if occ.departing is not None), None)
                if departing is None:
                    if not room:
                        self._rooms.pop(room_id, None)
                    self._record_event("room_full", {"room_id": room_id, "client_id": client_id})
                    raise RoomFull(room_id)
                self._drop_locked(departing)
                self._record_event(
                    "slot_taken_over",
                    {"room_id": room_id, "client_id": client_id, "previous": departing.client_id},
                )
                logger.info("Client %s took over departing slot of %s in room %s", client_id, departing.client_id, room_id)
                room = self._rooms.setdefault(room_id, {})
            room[client_id] = Occupant(client_id=client_id, room_id=room_id, connection=connection)
            self._membership[client_id] = room_id
            self._record_event("user_joined", {"room_id": room_id, "client_id": client_id})
            logger.info("Client %s joined room %s (%s occupant(s))", client_id, room_id, len(room))
            return JoinResult(occupants=len(room), peers=self._peers_locked(room, client_id))

    async def leave(self, client_id: str) -> Optional[tuple[str, List[Occupant]]]:
        """Remove ``client_id`` at once; returns its room and the occupants left behind."""

        async with self._lock:
            occupant = self._occupant_locked(client_id)
            if occupant is None:
                return None
            self._drop_locked(occupant)
            self._record_event("user_left", {"room_id": occupant.room_id, "client_id": client_id})
            logger.info("Client %s left room %s", client_id, occupant.room_id)
            return occupant.room_id, list(self._rooms.get(occupant.room_id, {}).values())

    async def connection_lost(self, client_id: str, on_departed: DepartureCallback) -> None:
        """Start the departure grace period for a dropped connection."""

        if self._departure_grace <= 0:
            left = await self.leave(client_id)
            if left is not None:
                await _maybe_await(on_departed(client_id, left[0], left[1]))
            return
        async with self._lock:
            occupant = self._occupant_locked(client_id)
            if occupant is None or occupant.departing is not None:
                return
            occupant.departing = asyncio.create_task(self._expire(occupant, on_departed))
            self._record_event("connection_lost", {"room_id": occupant.room_id, "client_id": client_id})
            logger.info(
                "Client %s dropped from room %s; holding its slot for %.1fs",
                client_id,
                occupant.room_id,
                self._departure_grace,
            )

    async def peer_of(self, client_id: str, room_id: str) -> Optional[Occupant]:
        """Return the other live occupant of ``room_id`` if ``client_id`` is in it."""

        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or client_id not in room:
                raise LookupError(f"{client_id} is not in room {room_id}")
            room[client_id].messages_relayed += 1
            for occupant in room.values():
                if occupant.client_id != client_id and occupant.departing is None:
                    return occupant
            return None

    async def room_of(self, client_id: str) -> Optional[str]:
        async with self._lock:
            return self._membership.get(client_id)

    async def occupants(self, room_id: str) -> List[str]:
        async with self._lock:
            return list(self._rooms.get(room_id, {}))

    async def close(self) -> None:
        async with self._lock:
            tasks = [occ.departing for room in self._rooms.values() for occ in room.values() if occ.departing]
            self._rooms.clear()
            self._membership.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            rooms = []
            for room_id, room in self._rooms.items():
                rooms.append(
                    {
                        "room_id": room_id,
                        "occupants": [
                            {
                                "client_id": occ.client_id,
                                "joined_at": occ.joined_at,
                                "messages_relayed": occ.messages_relayed,
                                "departing": occ.departing is not None,
                            }
                            for occ in room.values()
                        ],
                    }
                )
            return {
                "rooms": rooms,
                "room_count": len(rooms),
                "client_count": len(self._membership),
                "started_at": self._started_at,
                "events": list(self._event_log[-300:]),
            }

    async def get_recent_events(self, limit: int = 300) -> List[Dict[str, object]]:
        async with self._lock:
            if limit <= 0:
                return []
            return list(self._event_log[-limit:])

    async def _expire(self, occupant: Occupant, on_departed: DepartureCallback) -> None:
        await asyncio.sleep(self._departure_grace)
        async with self._lock:
            current = self._occupant_locked(occupant.client_id)
            if current is not occupant:
                return
            occupant.departing = None
            self._drop_locked(occupant)
            self._record_event("user_left", {"room_id": occupant.room_id, "client_id": occupant.client_id})
            remaining = list(self._rooms.get(occupant.room_id, {}).values())
        logger.info("Client %s did not return to room %s", occupant.client_id, occupant.room_id)
        try:
            await _maybe_await(on_departed(occupant.client_id, occupant.room_id, remaining))
        except Exception:
            logger.exception("Departure callback failed for %s", occupant.client_id)

    def _occupant_locked(self, client_id: str) -> Optional[Occupant]:
        room_id = self._membership.get(client_id)
        if room_id is None:
            return None
        return self._rooms.get(room_id, {}).get(client_id)

    def _drop_locked(self, occupant: Occupant) -> None:
        if occupant.departing is not None and occupant.departing is not asyncio.current_task():
            occupant.departing.cancel()
        occupant.departing = None
        self._membership.pop(occupant.client_id, None)
        room = self._rooms.get(occupant.room_id)
        if room is None:
            return
        room.pop(occupant.client_id, None)
        if not room:
            self._rooms.pop(occupant.room_id, None)

    @staticmethod
    def _peers_locked(room: Dict[str, Occupant], client_id: str) -> List[Occupant]:
        return [occ for occ in room.values() if occ.client_id != client_id and occ.departing is None]

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        self._event_log.append({"type": event_type, "timestamp": time.time(), "details": details})
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)


async def _maybe_await(result: Awaitable[None] | None) -> None:
    if asyncio.iscoroutine(result):
        await result
