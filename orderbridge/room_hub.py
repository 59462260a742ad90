# orderbridge/room_hub.py
import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger("orderbridge")

NEW_MESSAGE_EVENT = "new_message_from_server"


class RoomConnection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class RoomHub:
    """
    Per-order rooms of live web connections (one room per order id).
    Single event loop, so the membership sets need no lock.
    """

    def __init__(self) -> None:
        self._rooms: dict[str, set[RoomConnection]] = {}

    def join(self, order_id: str, conn: RoomConnection) -> None:
        self._rooms.setdefault(str(order_id), set()).add(conn)
        logger.debug(f"connection joined room {order_id}")

    def leave(self, order_id: str, conn: RoomConnection) -> None:
        room = self._rooms.get(str(order_id))
        if room is None:
            return
        room.discard(conn)
        if not room:
            del self._rooms[str(order_id)]

    def members(self, order_id: str) -> set[RoomConnection]:
        return set(self._rooms.get(str(order_id), ()))

    async def broadcast(self, order_id: str, event: str, data: Any,
                        exclude: Optional[RoomConnection] = None) -> int:
        """
        Send {"event", "data"} to every member except `exclude`.
        Connections that fail are dropped from the room. Returns deliveries.
        """
        delivered = 0
        for conn in self.members(order_id):
            if conn is exclude:
                continue
            try:
                await conn.send_json({"event": event, "data": data})
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead connection from room {order_id}: {e}")
                self.leave(order_id, conn)
        return delivered
