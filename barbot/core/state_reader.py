"""
Robot state snapshots.

The robot exposes its progress as two coil blocks: ingredient step flags
(32-41) and system flags (90-92). StateReader reads both in one batch each
and always returns a complete RobotState, defaulting a block to all False
when its read fails.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from ..logger import get_logger, LogLevel
from .connection import ConnectionManager, ModbusLink
from .errors import BarBotError
from .register_map import STEP_BLOCK, SYSTEM_BLOCK


STEP_KEYS: Tuple[str, ...] = (
    "mint",       # 32
    "muddling",   # 33
    "ice",        # 34
    "syrup",      # 35
    "lime",       # 36
    "whiteRum",   # 37
    "cognac",     # 38
    "whiskey",    # 39
    "soda",       # 40
    "coke",       # 41
)

SYSTEM_KEYS: Tuple[str, ...] = (
    "cupHolder",      # 90
    "drinkReady",     # 91
    "waitingRecipe",  # 92
)

STATE_KEYS: Tuple[str, ...] = STEP_KEYS + SYSTEM_KEYS


@dataclass(frozen=True)
class RobotState:
    """
    Immutable snapshot of the robot's coil flags.

    Always holds every key in STATE_KEYS; keys absent from the input are
    False and unknown keys are ignored.
    """
    flags: Mapping[str, bool] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {key: bool(self.flags.get(key, False)) for key in STATE_KEYS}
        object.__setattr__(self, "flags", MappingProxyType(normalized))

    @classmethod
    def default(cls) -> "RobotState":
        return cls()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RobotState":
        return cls(dict(data or {}))

    def __getitem__(self, key: str) -> bool:
        return self.flags[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.flags)

    def get(self, key: str, default: bool = False) -> bool:
        return self.flags.get(key, default)

    @property
    def drink_ready(self) -> bool:
        return self.flags["drinkReady"]

    @property
    def waiting_recipe(self) -> bool:
        return self.flags["waitingRecipe"]

    @property
    def cup_holder(self) -> bool:
        return self.flags["cupHolder"]

    def active_steps(self) -> Tuple[str, ...]:
        return tuple(key for key in STEP_KEYS if self.flags[key])

    def to_dict(self) -> Dict[str, bool]:
        return dict(self.flags)


@dataclass(frozen=True)
class StatusReport:
    """Result of a status poll, degraded when the robot is unreachable."""
    is_connected: bool
    robot_state: RobotState
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "isConnected": self.is_connected,
            "robotState": self.robot_state.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error:
            data["error"] = self.error
        return data


class StateReader:
    """Reads RobotState snapshots over the shared connection."""

    def __init__(self, connection: ConnectionManager):
        self._connection = connection
        self._log = get_logger()

    def _read_block(self, link: ModbusLink, block: Tuple[int, int], keys: Tuple[str, ...],
                    strict: bool) -> Dict[str, bool]:
        address, count = block
        try:
            bits = link.read_coils(address, count)
        except BarBotError as e:
            if strict:
                raise
            self._log.modbus(
                f"Could not read coils {address}-{address + count - 1}: {e}",
                level=LogLevel.WARNING
            )
            return {key: False for key in keys}
        return {key: bool(bits[i]) if i < len(bits) else False for i, key in enumerate(keys)}

    def read(self, link: ModbusLink, strict: bool = False) -> RobotState:
        """
        Read step flags, then system flags.

        By default a failed block reads as all False and nothing is raised.
        With ``strict`` the first failure propagates, for callers that must
        not mistake a failed read for a real transition.
        """
        flags = self._read_block(link, STEP_BLOCK, STEP_KEYS, strict)
        flags.update(self._read_block(link, SYSTEM_BLOCK, SYSTEM_KEYS, strict))
        state = RobotState(flags)

        active = state.active_steps()
        self._log.modbus(
            f"State read - drinkReady: {int(state.drink_ready)}, waitingRecipe: {int(state.waiting_recipe)}, "
            f"active steps: {', '.join(active) if active else 'none'}"
        )
        return state

    def poll(self) -> StatusReport:
        """Acquire the connection and read; unreachable robot yields a degraded report."""
        try:
            link = self._connection.acquire()
        except BarBotError as e:
            return StatusReport(is_connected=False, robot_state=RobotState.default(), error=e.message)

        state = self.read(link)
        return StatusReport(is_connected=link.is_open, robot_state=state)
