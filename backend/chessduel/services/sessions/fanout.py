"""Who receives which event.

State changes go to the session room and to every participant's identity
room, so a participant whose socket has not joined the session room yet (the
creator waiting in the lobby, typically) still hears about pairing, forfeits
and timeouts. ``plan`` is pure; ``Notifier`` performs the emit.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .types import MatchSession


def session_room(session_id: str) -> str:
    return f"session:{session_id}"


def identity_room(identity: str) -> str:
    return f"identity:{identity.lower()}"


def audience(session: MatchSession) -> List[str]:
    rooms = [session_room(session.session_id)]
    rooms.extend(identity_room(p) for p in session.participants)
    return rooms


@dataclass
class Delivery:
    event: str
    payload: Dict[str, Any]
    rooms: List[str] = field(default_factory=list)


def plan(event: str, session: MatchSession, payload: Dict[str, Any]) -> Delivery:
    return Delivery(event=event, payload=payload, rooms=audience(session))


class Notifier:
    def __init__(self, socketio, namespace: str = '/ws', logger=None):
        self.socketio = socketio
        self.namespace = namespace
        self.logger = logger

    def send(self, delivery: Delivery) -> None:
        # One emit to all rooms: python-socketio delivers once per sid even if it sits in several.
        self.socketio.emit(delivery.event, delivery.payload, to=delivery.rooms, namespace=self.namespace)
        if self.logger is not None:
            self.logger.debug(f"[emit] event={delivery.event} rooms={len(delivery.rooms)}")

    def send_all(self, deliveries) -> None:
        for delivery in deliveries or ():
            self.send(delivery)


class ConnectionRegistry:
    """Per-socket state: the registered identity and the session room joined as participant."""

    def __init__(self):
        self._identity: Dict[str, str] = {}
        self._session: Dict[str, str] = {}
        self._watching: Dict[str, set] = {}
        self._guard = threading.Lock()

    def bind_identity(self, sid: str, identity: str) -> None:
        with self._guard:
            self._identity[sid] = identity

    def identity(self, sid: str) -> Optional[str]:
        return self._identity.get(sid)

    def enter(self, sid: str, session_id: str) -> Optional[str]:
        """Record ``sid`` as sitting in ``session_id``. Returns the session it left, if any."""
        with self._guard:
            previous = self._session.get(sid)
            self._session[sid] = session_id
        return previous if previous != session_id else None

    def leave(self, sid: str, session_id: Optional[str] = None) -> Optional[str]:
        with self._guard:
            current = self._session.get(sid)
            if current is None or (session_id is not None and current != session_id):
                return None
            return self._session.pop(sid)

    def session(self, sid: str) -> Optional[str]:
        return self._session.get(sid)

    def watch(self, sid: str, session_id: str) -> None:
        with self._guard:
            self._watching.setdefault(sid, set()).add(session_id)

    def drop(self, sid: str) -> None:
        with self._guard:
            self._identity.pop(sid, None)
            self._session.pop(sid, None)
            self._watching.pop(sid, None)

    def __len__(self) -> int:
        return len(self._identity.keys() | self._session.keys() | self._watching.keys())
