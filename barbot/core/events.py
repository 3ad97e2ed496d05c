"""
Change detection and push events.

Each subscriber of the event stream gets its own EventSession: a polling
loop that reads a snapshot every interval, diffs it against the previous
one, and emits discrete transition events plus a state update.

Under WSGI a closed client is only noticed on the next write, so a
disconnected subscriber costs one more poll before GeneratorExit ends its
session. close() stops a session before its next tick.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from ..logger import get_logger, LogLevel
from .connection import ConnectionManager, ModbusLink
from .errors import BarBotError
from .register_map import TRIGGER_BLOCK, resolve_active_cocktail
from .state_reader import RobotState, StateReader


EVENT_INTERVAL_S = 2.0

CONNECTED = "connected"
STATE_UPDATE = "state_update"
PREPARATION_STARTED = "preparation_started"
DRINK_READY = "drink_ready"
ROBOT_READY = "robot_ready"
ERROR = "error"


@dataclass(frozen=True)
class RobotEvent:
    """A named event with a JSON payload; payloads always carry a timestamp."""
    name: str
    data: dict = field(default_factory=dict)

    def __post_init__(self):
        payload = dict(self.data)
        payload.setdefault("timestamp", datetime.now().isoformat())
        object.__setattr__(self, "data", payload)

    def to_sse(self) -> str:
        return f"event: {self.name}\ndata: {json.dumps(self.data)}\n\n"


class ChangeDetector:
    """Diffs successive snapshots; each transition fires once per edge."""

    def __init__(self):
        self.last_snapshot: Optional[RobotState] = None

    def observe(self, snapshot: RobotState,
                resolve_cocktail: Callable[[], Optional[str]] = lambda: None) -> List[RobotEvent]:
        events: List[RobotEvent] = []
        last = self.last_snapshot

        if last is not None:
            if last.waiting_recipe and not snapshot.waiting_recipe:
                events.append(RobotEvent(PREPARATION_STARTED, {"cocktailId": resolve_cocktail()}))
            if not last.drink_ready and snapshot.drink_ready:
                events.append(RobotEvent(DRINK_READY))
            if not last.waiting_recipe and snapshot.waiting_recipe:
                events.append(RobotEvent(ROBOT_READY))

        events.append(RobotEvent(STATE_UPDATE, {"robotState": snapshot.to_dict()}))
        self.last_snapshot = snapshot
        return events


class EventSession:
    """One subscriber's polling loop."""

    def __init__(self, connection: ConnectionManager, reader: StateReader,
                 interval: float = EVENT_INTERVAL_S,
                 on_close: Optional[Callable[["EventSession"], None]] = None):
        self._connection = connection
        self._reader = reader
        self._interval = interval
        self._on_close = on_close
        self._stop = threading.Event()
        self._closed_once = threading.Lock()
        self.detector = ChangeDetector()
        self._log = get_logger()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        """Stop the loop; takes effect before the next tick."""
        if not self._closed_once.acquire(blocking=False):
            return
        self._stop.set()
        if self._on_close is not None:
            self._on_close(self)

    def _resolve_cocktail(self, link: ModbusLink) -> Optional[str]:
        address, count = TRIGGER_BLOCK
        try:
            return resolve_active_cocktail(link.read_coils(address, count))
        except BarBotError as e:
            self._log.events(f"Could not read trigger block: {e}", level=LogLevel.WARNING)
            return None

    def poll_once(self) -> List[RobotEvent]:
        try:
            link = self._connection.acquire()
            snapshot = self._reader.read(link, strict=True)
        except BarBotError as e:
            self._log.events(f"Polling error: {e}", level=LogLevel.WARNING)
            return [RobotEvent(ERROR, {"message": e.message})]

        events = self.detector.observe(snapshot, lambda: self._resolve_cocktail(link))
        for event in events:
            if event.name != STATE_UPDATE:
                self._log.events(f"Transition detected: {event.name} {event.data}")
        return events

    def stream(self) -> Iterator[str]:
        """SSE text stream; closing the generator ends the session."""
        self._log.events("New client connected")
        try:
            yield RobotEvent(CONNECTED).to_sse()
            while not self._stop.is_set():
                for event in self.poll_once():
                    if self._stop.is_set():
                        return
                    yield event.to_sse()
                if self._stop.wait(self._interval):
                    return
        finally:
            self.close()
            self._log.events("Client disconnected")


class EventBroadcaster:
    """Creates independent sessions and tracks the live ones."""

    def __init__(self, connection: ConnectionManager, reader: StateReader,
                 interval: float = EVENT_INTERVAL_S):
        self._connection = connection
        self._reader = reader
        self._interval = interval
        self._sessions: List[EventSession] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def subscribe(self) -> EventSession:
        session = EventSession(self._connection, self._reader, self._interval, on_close=self._remove)
        with self._lock:
            self._sessions.append(session)
        return session

    def _remove(self, session: EventSession) -> None:
        with self._lock:
            if session in self._sessions:
                self._sessions.remove(session)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.close()
