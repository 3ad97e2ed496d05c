"""
Order monitor: follows an order through both client channels.

A status poll thread and an event stream thread feed the same
ProgressTracker. Whichever channel first sees the drink ready triggers the
single address reset; the monitor stops once the robot is waiting for a
recipe again.
"""

import logging
import threading
from typing import Callable, List, Optional, Sequence

import requests

from ..core.state_reader import RobotState
from .api_client import ApiClient, iter_sse
from .tracker import ProgressTracker, TrackerAction


logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 3.0
RECONNECT_DELAY_S = 2.0


class OrderMonitor:
    """Background status poll plus event stream consumer for one tracker."""

    def __init__(self, client: ApiClient, tracker: Optional[ProgressTracker] = None,
                 poll_interval: float = POLL_INTERVAL_S,
                 use_events: bool = True,
                 on_update: Optional[Callable[[dict], None]] = None):
        self._client = client
        self.tracker = tracker or ProgressTracker()
        self._poll_interval = poll_interval
        self._use_events = use_events
        self._on_update = on_update
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._response: Optional[requests.Response] = None
        self._response_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stop.is_set()

    def start(self, cocktail_id: str, custom_ingredients: Optional[Sequence[str]] = None,
              resume: bool = False) -> None:
        """Start tracking an order; a running monitor is stopped first."""
        self.stop()
        if resume:
            self.tracker.resume_order(cocktail_id, custom_ingredients)
        else:
            self.tracker.start_order(cocktail_id, custom_ingredients)

        self._stop = threading.Event()
        self._threads = [threading.Thread(target=self._poll_loop, name="status-poll", daemon=True)]
        if self._use_events:
            self._threads.append(threading.Thread(target=self._events_loop, name="event-stream", daemon=True))
        for thread in self._threads:
            thread.start()
        logger.info("Monitoring order %s", cocktail_id)

    def follow_active(self) -> Optional[str]:
        """
        Resume tracking a preparation already running on the robot.

        Returns the cocktail id being followed, or None when the robot is
        ready for a new order.
        """
        state = self._client.initial_state()
        cocktail_id = state.get("activeCocktailId")
        if state.get("robotReady") or not cocktail_id:
            logger.info("No preparation in progress: %s", state.get("message"))
            return None

        logger.info("Preparation of %s already in progress, resuming", cocktail_id)
        self.start(cocktail_id, resume=True)
        return cocktail_id

    def stop(self, timeout: float = 5.0) -> None:
        """Stop both channels and wait for them to exit."""
        self._stop.set()
        self._close_response()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=timeout)
        self._threads = [t for t in self._threads if t is current]

    # === Channels ===

    def _poll_loop(self) -> None:
        while not self._stop.wait(self._poll_interval):
            try:
                data = self._client.status()
            except (requests.RequestException, ValueError) as e:
                logger.warning("Status poll failed: %s", e)
                self.tracker.record_error(str(e))
                continue
            self._feed(RobotState.from_dict(data.get("robotState")), bool(data.get("isConnected")))

    def _events_loop(self) -> None:
        while not self._stop.is_set():
            try:
                response = self._client.open_events()
            except requests.RequestException as e:
                logger.warning("Event stream unavailable: %s", e)
                self._stop.wait(RECONNECT_DELAY_S)
                continue

            with self._response_lock:
                self._response = response
            if self._stop.is_set():
                self._close_response()
                return

            try:
                for name, payload in iter_sse(response.iter_lines(decode_unicode=True)):
                    if self._stop.is_set():
                        return
                    if name == "state_update":
                        self._feed(RobotState.from_dict(payload.get("robotState")), True)
                    elif name == "error":
                        self.tracker.record_error(payload.get("message", "Event stream error"))
            except (requests.RequestException, AttributeError, ValueError) as e:
                # Closing the response from stop() surfaces here as well
                if not self._stop.is_set():
                    logger.warning("Event stream dropped: %s", e)
            finally:
                self._close_response()

            self._stop.wait(RECONNECT_DELAY_S)

    def _close_response(self) -> None:
        with self._response_lock:
            response, self._response = self._response, None
        if response is not None:
            response.close()

    # === Reconciliation ===

    def _feed(self, snapshot: RobotState, is_connected: bool) -> None:
        if self._stop.is_set():
            return

        action = self.tracker.observe(snapshot, is_connected)
        if action is TrackerAction.RESET:
            self._reset()
        elif action is TrackerAction.STOP:
            logger.info("Robot ready again, order complete")
            self.stop()

        if self._on_update is not None:
            self._on_update(self.tracker.to_dict())

    def _reset(self) -> None:
        logger.info("Drink ready, resetting addresses")
        try:
            self._client.reset_addresses()
        except requests.RequestException as e:
            logger.error("Address reset request failed: %s", e)
        finally:
            self.tracker.reset_finished()
