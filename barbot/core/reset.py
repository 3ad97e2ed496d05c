"""
Address reset routine.

Clears every cocktail trigger, every ingredient command and the start
signal so the robot can return to "waiting recipe". Individual write
failures are logged and skipped, which makes the routine safe to call
speculatively and idempotent.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, List

from ..logger import get_logger, LogLevel
from .connection import ConnectionManager
from .errors import BarBotError
from .register_map import ControlAddress, INGREDIENT_WRITE_ADDRESSES, TRIGGER_ADDRESSES
from .sequencer import WRITE_DELAY_S


RESET_GROUPS = (
    ("cocktail", TRIGGER_ADDRESSES),
    ("ingredient", INGREDIENT_WRITE_ADDRESSES),
    ("start", (ControlAddress.START,)),
)


@dataclass
class ResetReport:
    completed: bool
    cleared: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.completed,
            "message": "All addresses reset successfully" if not self.failed
            else f"Reset completed with {len(self.failed)} failed addresses",
            "failedAddresses": list(self.failed),
        }


class ResetSequencer:
    """Writes False to every command coil."""

    def __init__(self, connection: ConnectionManager,
                 write_delay: float = WRITE_DELAY_S,
                 sleep: Callable[[float], None] = time.sleep):
        self._connection = connection
        self._write_delay = write_delay
        self._sleep = sleep
        self._log = get_logger()

    def reset(self) -> ResetReport:
        """
        Run the full traversal.

        Raises RobotConnectionError only when the connection cannot be
        acquired at all; per-address failures end up in ``failed``.
        """
        link = self._connection.acquire()
        report = ResetReport(completed=False)
        self._log.reset("Starting address reset...")

        for group, addresses in RESET_GROUPS:
            for address in addresses:
                try:
                    link.write_coil(address, False)
                except BarBotError as e:
                    report.failed.append(address)
                    self._log.reset(f"Failed to reset {group} address {address}: {e}", level=LogLevel.ERROR)
                else:
                    report.cleared.append(address)
                if address != ControlAddress.START:
                    self._sleep(self._write_delay)

        report.completed = True
        if report.failed:
            self._log.reset(f"Reset finished, failed addresses: {report.failed}", level=LogLevel.WARNING)
        else:
            self._log.reset("All addresses reset complete")
        return report
