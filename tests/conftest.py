import os
import tempfile

# Log files go to a scratch directory; must be set before barbot.logger loads
os.environ.setdefault("BARBOT_LOG_DIR", tempfile.mkdtemp(prefix="barbot-logs-"))

import pytest

from barbot.api import create_app
from barbot.core.connection import ConnectionManager
from barbot.core.settings import ModbusConfig, ModbusSettingsStore


class FakeResult:
    """Mimics a pymodbus response: padded bits and isError()."""

    def __init__(self, bits=None, exception_code=None):
        self.bits = list(bits or [])
        self.exception_code = exception_code

    def isError(self):
        return self.exception_code is not None


class FakeModbusClient:
    """
    In-memory stand-in for ModbusTcpClient.

    ``fail_reads`` / ``fail_writes`` map an address to either an exception
    instance (raised) or a Modbus exception code (returned as an error
    response).
    """

    def __init__(self, coils=None, connect_ok=True):
        self.coils = dict(coils or {})
        self.connect_ok = connect_ok
        self.connect_error = None
        self.connected = False
        self.connect_calls = 0
        self.close_calls = 0
        self.writes = []
        self.reads = []
        self.fail_reads = {}
        self.fail_writes = {}

    def connect(self):
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = self.connect_ok
        return self.connected

    def is_socket_open(self):
        return self.connected

    def close(self):
        self.close_calls += 1
        self.connected = False

    def _fault(self, fault):
        if isinstance(fault, BaseException):
            raise fault
        return FakeResult(exception_code=fault)

    def read_coils(self, address, count=1, device_id=1):
        self.reads.append((address, count))
        if address in self.fail_reads:
            return self._fault(self.fail_reads[address])
        bits = [bool(self.coils.get(a, False)) for a in range(address, address + count)]
        padding = (-len(bits)) % 8
        return FakeResult(bits + [False] * padding)

    def write_coil(self, address, value, device_id=1):
        if address in self.fail_writes:
            return self._fault(self.fail_writes[address])
        self.coils[address] = bool(value)
        self.writes.append((address, bool(value)))
        return FakeResult()

    def set(self, **flags):
        """Set coils by address, e.g. ``set(c92=True)``."""
        for key, value in flags.items():
            self.coils[int(key.lstrip("c"))] = value


@pytest.fixture
def fake_client():
    return FakeModbusClient(coils={92: True})


@pytest.fixture
def settings(tmp_path):
    return ModbusSettingsStore(
        tmp_path / "modbus-config.yaml",
        defaults=ModbusConfig(host="127.0.0.1", port=5502, unit_id=1, timeout=1000)
    )


@pytest.fixture
def factory_calls():
    return []


@pytest.fixture
def connection(settings, fake_client, factory_calls):
    def factory(config):
        factory_calls.append(config)
        return fake_client
    return ConnectionManager(settings, client_factory=factory)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def app(connection, settings, fake_sleep):
    app = create_app(
        connection, settings,
        config={"events": {"interval_s": 0.01}},
        sleep=fake_sleep
    )
    app.testing = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
