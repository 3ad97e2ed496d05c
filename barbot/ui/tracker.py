"""
Client-side order progress tracking.

The tracker reconciles robot snapshots that arrive from two channels (the
status poll and the event stream) into one view of the active order. It is
a small state machine:

    IDLE --start_order--> ORDERING --drinkReady--> RESETTING
    RESETTING --reset_finished--> AWAITING_READY --waitingRecipe--> IDLE

The drinkReady edge hands out the RESET action exactly once per order, no
matter which channel delivers it first.
"""

import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from ..core.register_map import get_cocktail
from ..core.state_reader import RobotState


class TrackerPhase(Enum):
    IDLE = "idle"
    ORDERING = "ordering"
    RESETTING = "resetting"
    AWAITING_READY = "awaiting_ready"


class TrackerAction(Enum):
    """What the caller should do after an observation."""
    NONE = "none"
    RESET = "reset"
    STOP = "stop"


@dataclass(frozen=True)
class ActiveOrder:
    cocktail_id: str
    custom_ingredients: Tuple[str, ...] = ()
    started_at: datetime = field(default_factory=datetime.now)


def calculate_progress(state: RobotState, order: Optional[ActiveOrder]) -> int:
    """Percentage of the order's steps whose state flag is set; drinkReady means 100."""
    if order is None:
        return 0
    if state.drink_ready:
        return 100

    cocktail = get_cocktail(order.cocktail_id, order.custom_ingredients)
    if cocktail is None or not cocktail.steps:
        return 0

    completed = sum(1 for step in cocktail.steps if state.get(step.state_key))
    return int(math.floor(completed * 100 / len(cocktail.steps) + 0.5))


class ProgressTracker:
    """Thread-safe order progress state machine."""

    def __init__(self):
        self._lock = threading.Lock()
        self._phase = TrackerPhase.IDLE
        self._order: Optional[ActiveOrder] = None
        self._progress = 0
        self._robot_state = RobotState.default()
        self._is_connected = False
        self._error: Optional[str] = None

    @property
    def phase(self) -> TrackerPhase:
        with self._lock:
            return self._phase

    @property
    def active_order(self) -> Optional[ActiveOrder]:
        with self._lock:
            return self._order

    @property
    def progress(self) -> int:
        with self._lock:
            return self._progress

    def start_order(self, cocktail_id: str, custom_ingredients: Optional[Sequence[str]] = None) -> None:
        """Begin tracking a freshly placed order."""
        with self._lock:
            self._order = ActiveOrder(cocktail_id, tuple(custom_ingredients or ()))
            self._phase = TrackerPhase.ORDERING
            self._progress = 0
            self._error = None

    def resume_order(self, cocktail_id: str, custom_ingredients: Optional[Sequence[str]] = None) -> None:
        """Pick up an order already in flight, e.g. after a client restart."""
        with self._lock:
            if self._order is not None and self._order.cocktail_id == cocktail_id:
                return
        self.start_order(cocktail_id, custom_ingredients)

    def observe(self, snapshot: RobotState, is_connected: bool = True) -> TrackerAction:
        with self._lock:
            self._robot_state = snapshot
            self._is_connected = is_connected
            self._error = None

            if self._phase == TrackerPhase.IDLE:
                self._progress = 0
                return TrackerAction.NONE

            self._progress = max(self._progress, calculate_progress(snapshot, self._order))

            if self._phase == TrackerPhase.ORDERING:
                if snapshot.drink_ready:
                    self._phase = TrackerPhase.RESETTING
                    return TrackerAction.RESET
                return TrackerAction.NONE

            # RESETTING or AWAITING_READY
            if snapshot.waiting_recipe:
                self._finish()
                return TrackerAction.STOP
            return TrackerAction.NONE

    def reset_finished(self) -> None:
        """The reset request returned (successfully or not)."""
        with self._lock:
            if self._phase == TrackerPhase.RESETTING:
                self._phase = TrackerPhase.AWAITING_READY

    def record_error(self, message: str) -> None:
        with self._lock:
            self._error = message
            self._is_connected = False

    def _finish(self) -> None:
        self._phase = TrackerPhase.IDLE
        self._order = None

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            order = self._order
            return {
                "phase": self._phase.value,
                "activeCocktailId": order.cocktail_id if order else None,
                "customIngredients": list(order.custom_ingredients) if order and order.custom_ingredients else None,
                "robotState": self._robot_state.to_dict(),
                "isConnected": self._is_connected,
                "error": self._error,
                "progress": self._progress,
            }
