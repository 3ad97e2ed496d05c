"""
Development robot simulator.

A Modbus TCP server that behaves like the bartending robot well enough to
drive the whole application without hardware:

- starts out waiting for a recipe (coil 92 = 1)
- on a rising start signal (96) lights the requested step flags one by one
- raises drink ready (91) after the last step
- returns to waiting once every trigger, ingredient and start coil is 0

Run with ``barbot --simulator`` and point MODBUS_HOST/MODBUS_PORT at it.
"""

import logging
import threading
from typing import List, Optional

from pymodbus import ModbusDeviceIdentification
from pymodbus.datastore import ModbusDeviceContext, ModbusSequentialDataBlock, ModbusServerContext
from pymodbus.server import ServerStop, StartTcpServer

from .core.register_map import (
    COIL_RANGE, INGREDIENTS, INGREDIENT_WRITE_ADDRESSES, STEP_BLOCK, SYSTEM_BLOCK,
    TRIGGER_ADDRESSES, ControlAddress,
)


logger = logging.getLogger(__name__)

STEP_INTERVAL_S = 2.0


class _CoilBlock(ModbusSequentialDataBlock):
    """Coil table that reports client writes to the simulator."""

    def __init__(self, simulator: "RobotSimulator", size: int):
        super().__init__(1, [False] * size)
        self._simulator = simulator

    def setValues(self, address, values):
        if not isinstance(values, list):
            values = [values]
        old = [bool(v) for v in super().getValues(address, len(values))]
        super().setValues(address, values)
        # Datastore addresses are protocol addresses + 1
        for offset, value in enumerate(values):
            self._simulator.on_write(address - 1 + offset, bool(value), old[offset])

    def raw_set(self, address: int, value: bool) -> None:
        super().setValues(address + 1, [value])

    def raw_get(self, address: int) -> bool:
        return bool(super().getValues(address + 1, 1)[0])


class RobotSimulator:
    """Simulated robot behind a pymodbus TCP server."""

    def __init__(self, host: str = '0.0.0.0', port: int = 5502,
                 step_interval: float = STEP_INTERVAL_S):
        self.host = host
        self.port = port
        self._step_interval = step_interval
        self._lock = threading.RLock()
        self._preparing: Optional[threading.Thread] = None
        self._stop = threading.Event()

        self.coils = _CoilBlock(self, COIL_RANGE[1] + 2)
        store = ModbusDeviceContext(
            di=ModbusSequentialDataBlock(1, [0] * 10),
            co=self.coils,
            hr=ModbusSequentialDataBlock(1, [0] * 10),
            ir=ModbusSequentialDataBlock(1, [0] * 10),
        )
        self.context = ModbusServerContext(devices=store, single=True)
        self.coils.raw_set(ControlAddress.WAITING_RECIPE, True)

    # === Robot behaviour ===

    @property
    def preparing(self) -> bool:
        return self._preparing is not None and self._preparing.is_alive()

    def on_write(self, address: int, value: bool, old: bool) -> None:
        if address == ControlAddress.START and value and not old:
            self.start_preparation()
        elif not value and self._is_command(address):
            self._maybe_reset()

    @staticmethod
    def _is_command(address: int) -> bool:
        return (address == ControlAddress.START
                or address in TRIGGER_ADDRESSES
                or address in INGREDIENT_WRITE_ADDRESSES)

    def _requested_steps(self) -> List[int]:
        first, count = STEP_BLOCK
        return [
            ing.read_address
            for ing in sorted(INGREDIENTS.values(), key=lambda i: i.read_address)
            if first <= ing.read_address < first + count and self.coils.raw_get(ing.write_address)
        ]

    def start_preparation(self) -> None:
        with self._lock:
            if self.preparing:
                logger.warning("Already preparing a drink")
                return
            steps = self._requested_steps()
            if not steps:
                logger.warning("Start signal without ingredients")
                return

            self.coils.raw_set(ControlAddress.WAITING_RECIPE, False)
            logger.info("Preparing drink with %d steps", len(steps))
            self._preparing = threading.Thread(target=self._prepare, args=(steps,), daemon=True)
            self._preparing.start()

    def _prepare(self, steps: List[int]) -> None:
        for index, address in enumerate(steps, start=1):
            if self._stop.wait(self._step_interval):
                return
            with self._lock:
                self.coils.raw_set(address, True)
            logger.info("Step %d/%d complete (coil %d = 1)", index, len(steps), address)

        if self._stop.wait(self._step_interval):
            return
        with self._lock:
            self.coils.raw_set(ControlAddress.DRINK_READY, True)
        logger.info("Drink ready (coil %d = 1)", ControlAddress.DRINK_READY)

    def _maybe_reset(self) -> None:
        with self._lock:
            addresses = TRIGGER_ADDRESSES + INGREDIENT_WRITE_ADDRESSES + (ControlAddress.START,)
            if any(self.coils.raw_get(a) for a in addresses):
                return
            if self.coils.raw_get(ControlAddress.WAITING_RECIPE):
                return

            first, count = STEP_BLOCK
            for address in range(first, first + count):
                self.coils.raw_set(address, False)
            first, count = SYSTEM_BLOCK
            for address in range(first, first + count):
                self.coils.raw_set(address, False)
            self.coils.raw_set(ControlAddress.WAITING_RECIPE, True)
        logger.info("All commands cleared, robot waiting for recipe")

    # === Server ===

    def serve_forever(self) -> None:
        """Run the Modbus server in the calling thread until stop()."""
        identity = ModbusDeviceIdentification()
        identity.VendorName = 'BarBot'
        identity.ProductName = 'BarBot Robot Simulator'
        identity.MajorMinorRevision = '1.0.0'

        logger.info("Robot simulator listening on %s:%d", self.host, self.port)
        StartTcpServer(context=self.context, identity=identity, address=(self.host, self.port))

    def stop(self) -> None:
        self._stop.set()
        ServerStop()
        logger.info("Robot simulator stopped")
