import json
import threading
import time

import pytest
import requests

from barbot.core.state_reader import RobotState
from barbot.ui.api_client import iter_sse
from barbot.ui.monitor import OrderMonitor
from barbot.ui.tracker import ProgressTracker, TrackerAction, TrackerPhase, calculate_progress, ActiveOrder


def state(**flags):
    return RobotState.from_dict(flags)


WAITING = state(waitingRecipe=True)
READY = state(drinkReady=True)


@pytest.fixture
def tracker():
    return ProgressTracker()


def test_idle_progress_is_zero_even_when_drink_ready(tracker):
    assert tracker.observe(READY) is TrackerAction.NONE
    assert tracker.progress == 0
    assert tracker.phase is TrackerPhase.IDLE


def test_progress_counts_cocktail_steps():
    order = ActiveOrder("cuba-libre")
    # ice, lime, whiteRum, coke, drinkReady
    assert calculate_progress(state(ice=True), order) == 20
    assert calculate_progress(state(ice=True, lime=True, whiteRum=True), order) == 60
    assert calculate_progress(READY, order) == 100
    assert calculate_progress(READY, None) == 0


def test_progress_rounds_half_up():
    # mojito has 8 steps: 1/8 = 12.5%
    assert calculate_progress(state(mint=True), ActiveOrder("mojito")) == 13


def test_custom_progress_uses_selected_ingredients():
    order = ActiveOrder("custom", ("mint", "ice"))
    # mint, ice, drinkReady
    assert calculate_progress(state(mint=True), order) == 33


def test_progress_is_monotonic(tracker):
    tracker.start_order("cuba-libre")
    tracker.observe(state(ice=True, lime=True))
    assert tracker.progress == 40

    tracker.observe(state())
    assert tracker.progress == 40

    tracker.observe(READY)
    assert tracker.progress == 100
    tracker.observe(state())
    assert tracker.progress == 100


def test_full_lifecycle(tracker):
    tracker.start_order("mojito")
    assert tracker.phase is TrackerPhase.ORDERING

    assert tracker.observe(state(mint=True)) is TrackerAction.NONE
    assert tracker.observe(READY) is TrackerAction.RESET
    assert tracker.phase is TrackerPhase.RESETTING

    # Second channel delivers the same snapshot
    assert tracker.observe(READY) is TrackerAction.NONE

    tracker.reset_finished()
    assert tracker.phase is TrackerPhase.AWAITING_READY
    assert tracker.observe(state()) is TrackerAction.NONE
    assert tracker.active_order is not None

    assert tracker.observe(WAITING) is TrackerAction.STOP
    assert tracker.phase is TrackerPhase.IDLE
    assert tracker.active_order is None


def test_waiting_before_drink_ready_does_not_stop(tracker):
    tracker.start_order("mojito")
    assert tracker.observe(WAITING) is TrackerAction.NONE
    assert tracker.phase is TrackerPhase.ORDERING


def test_reset_finished_outside_resetting_is_ignored(tracker):
    tracker.reset_finished()
    assert tracker.phase is TrackerPhase.IDLE

    tracker.start_order("cognac")
    tracker.reset_finished()
    assert tracker.phase is TrackerPhase.ORDERING


def test_reset_handed_out_once_under_contention(tracker):
    tracker.start_order("whiskey-rocks")
    actions = []
    barrier = threading.Barrier(8)

    def channel():
        barrier.wait()
        actions.append(tracker.observe(READY))

    threads = [threading.Thread(target=channel) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert actions.count(TrackerAction.RESET) == 1


def test_resume_order_keeps_same_order(tracker):
    tracker.start_order("mojito")
    tracker.observe(state(mint=True))
    tracker.resume_order("mojito")
    assert tracker.progress == 13
    tracker.resume_order("cognac")
    assert tracker.active_order.cocktail_id == "cognac"
    assert tracker.progress == 0


def test_to_dict_shape(tracker):
    tracker.start_order("custom", ["ice"])
    tracker.record_error("Robot is offline")
    data = tracker.to_dict()
    assert data["activeCocktailId"] == "custom"
    assert data["customIngredients"] == ["ice"]
    assert data["error"] == "Robot is offline"
    assert data["isConnected"] is False
    assert data["phase"] == "ordering"


def test_iter_sse_parses_events():
    lines = [
        "event: connected", 'data: {"timestamp": "t"}', "",
        ": keepalive", "",
        "event: state_update", 'data: {"robotState": {"mint": true}}', "",
    ]
    assert list(iter_sse(lines)) == [
        ("connected", {"timestamp": "t"}),
        ("state_update", {"robotState": {"mint": True}}),
    ]


# === OrderMonitor against a fake API client ===

def sse(name, payload):
    return [f"event: {name}", f"data: {json.dumps(payload)}", ""]


class FakeStream:
    def __init__(self, lines):
        self._lines = lines
        self.closed = False

    def iter_lines(self, decode_unicode=False):
        for line in self._lines:
            if self.closed:
                raise requests.ConnectionError("stream closed")
            yield line

    def close(self):
        self.closed = True


class FakeApiClient:
    """Robot that stays at drink ready until reset, then returns to waiting."""

    def __init__(self):
        self.reset_calls = 0
        self.ready_again = False
        self.lock = threading.Lock()
        self.streams = []

    def _robot_state(self):
        if self.ready_again:
            return WAITING.to_dict()
        return state(ice=True, whiskey=True, drinkReady=True).to_dict()

    def status(self):
        return {"isConnected": True, "robotState": self._robot_state()}

    def open_events(self):
        lines = sse("connected", {})
        for _ in range(3):
            lines += sse("state_update", {"robotState": self._robot_state()})
        stream = FakeStream(lines)
        self.streams.append(stream)
        return stream

    def reset_addresses(self):
        with self.lock:
            self.reset_calls += 1
        time.sleep(0.02)
        self.ready_again = True
        return {"success": True}


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while not condition() and time.time() < deadline:
        time.sleep(0.01)
    return condition()


def test_monitor_resets_exactly_once_across_channels():
    api = FakeApiClient()
    updates = []
    monitor = OrderMonitor(api, poll_interval=0.01, on_update=updates.append)

    monitor.start("whiskey-rocks")
    try:
        assert wait_for(lambda: monitor.tracker.phase is TrackerPhase.IDLE)
    finally:
        monitor.stop()

    assert api.reset_calls == 1
    assert monitor.tracker.active_order is None
    assert any(u["progress"] == 100 for u in updates)
    assert not monitor.running


def test_monitor_stop_is_synchronous():
    api = FakeApiClient()
    monitor = OrderMonitor(api, poll_interval=0.01)
    monitor.start("neat-whiskey")
    assert wait_for(lambda: api.streams)

    api.ready_again = False
    monitor.stop()
    calls = api.reset_calls
    time.sleep(0.1)

    assert api.reset_calls == calls
    assert not monitor.running
    assert all(s.closed for s in api.streams)


def test_monitor_records_poll_errors():
    class BrokenClient(FakeApiClient):
        def status(self):
            raise requests.ConnectionError("API down")

        def open_events(self):
            raise requests.ConnectionError("API down")

    monitor = OrderMonitor(BrokenClient(), poll_interval=0.01)
    monitor.start("cognac")
    try:
        assert wait_for(lambda: monitor.tracker.to_dict()["error"] is not None)
    finally:
        monitor.stop()
    assert monitor.tracker.phase is TrackerPhase.ORDERING


class BusyRobotClient(FakeApiClient):
    """Robot found mid-preparation of a cuba libre at client startup."""

    def __init__(self, active="cuba-libre"):
        super().__init__()
        self.active = active

    def initial_state(self):
        if self.active is None:
            return {"robotReady": True, "activeCocktailId": None,
                    "message": "Robot ready to receive orders"}
        return {"robotReady": False, "activeCocktailId": self.active,
                "message": "Robot is preparing a drink"}

    def _robot_state(self):
        if self.ready_again:
            return WAITING.to_dict()
        return state(ice=True, lime=True, whiteRum=True, coke=True, drinkReady=True).to_dict()


def test_follow_active_resumes_running_preparation():
    api = BusyRobotClient()
    updates = []
    monitor = OrderMonitor(api, poll_interval=0.01, use_events=False, on_update=updates.append)

    assert monitor.follow_active() == "cuba-libre"
    try:
        assert wait_for(lambda: monitor.tracker.phase is TrackerPhase.IDLE)
    finally:
        monitor.stop()

    assert api.reset_calls == 1
    assert any(u["activeCocktailId"] == "cuba-libre" for u in updates)
    assert any(u["progress"] == 100 for u in updates)


def test_follow_active_with_ready_robot_does_nothing():
    api = BusyRobotClient(active=None)
    monitor = OrderMonitor(api, poll_interval=0.01)

    assert monitor.follow_active() is None
    assert monitor.tracker.phase is TrackerPhase.IDLE
    assert not monitor.running
    assert api.reset_calls == 0
