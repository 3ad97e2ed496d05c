"""
Modbus TCP connection management.

A single ConnectionManager owns the one shared connection to the robot.
It connects lazily, lets concurrent callers share one in-flight attempt,
and stops trying after a bounded number of consecutive failures until it
is explicitly reset.
"""

import errno
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

from pymodbus.client import ModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusException, ModbusIOException

from ..logger import get_logger, LogLevel
from .errors import ProtocolError, RobotConnectionError
from .register_map import ControlAddress
from .settings import ModbusConfig, ModbusSettingsStore


MAX_CONNECT_ATTEMPTS = 3


class ConnectionState(Enum):
    """Connection lifecycle."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def default_client_factory(config: ModbusConfig) -> ModbusTcpClient:
    return ModbusTcpClient(host=config.host, port=config.port, timeout=config.timeout_s, retries=0)


class ModbusLink:
    """
    Live connection handle shared by every caller.

    Only Read Coils and Write Single Coil are used. Individual transactions
    are serialized on the socket; sequencing of several writes is the
    caller's job. Transport failures close the link through the manager.
    """

    def __init__(self, client, config: ModbusConfig,
                 on_lost: Optional[Callable[["ModbusLink", Exception], None]] = None):
        self._client = client
        self._config = config
        self._on_lost = on_lost
        self._lock = threading.Lock()
        self._closed = False

    @property
    def config(self) -> ModbusConfig:
        return self._config

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        try:
            return bool(self._client.is_socket_open())
        except Exception:
            return False

    def read_coils(self, address: int, count: int = 1) -> List[bool]:
        result = self._transact(self._client.read_coils, address, count=count)
        return [bool(bit) for bit in result.bits[:count]]

    def write_coil(self, address: int, value: bool) -> None:
        self._transact(self._client.write_coil, address, bool(value))

    def close(self) -> None:
        """Close the socket; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._client.close()
        except Exception as e:
            get_logger().modbus(f"Error closing connection: {e}", level=LogLevel.WARNING)

    def _lost(self, error: Exception) -> RobotConnectionError:
        if self._on_lost is not None:
            self._on_lost(self, error)
        else:
            self.close()
        return RobotConnectionError(f"Robot connection lost: {error}")

    def _transact(self, method, address: int, *args, **kwargs):
        if self._closed:
            raise RobotConnectionError("Robot connection is closed")

        try:
            with self._lock:
                result = method(address, *args, device_id=self._config.unit_id, **kwargs)
        except (ConnectionException, ModbusIOException, OSError) as e:
            raise self._lost(e) from e
        except ModbusException as e:
            raise ProtocolError(None, address, f"Modbus error at address {address}: {e}") from e

        if isinstance(result, ModbusIOException):
            raise self._lost(result)
        if result is None or result.isError():
            code = getattr(result, "exception_code", None)
            raise ProtocolError(code, address)
        return result


@dataclass
class _Disconnected:
    state = ConnectionState.DISCONNECTED


@dataclass
class _Connecting:
    attempt: "_ConnectAttempt"
    state = ConnectionState.CONNECTING


@dataclass
class _Connected:
    link: ModbusLink
    state = ConnectionState.CONNECTED


_State = Union[_Disconnected, _Connecting, _Connected]


class _ConnectAttempt:
    """One in-flight connection attempt; every waiter gets the same outcome."""

    def __init__(self):
        self._done = threading.Event()
        self._link: Optional[ModbusLink] = None
        self._error: Optional[RobotConnectionError] = None

    def resolve(self, link: ModbusLink) -> None:
        self._link = link
        self._done.set()

    def fail(self, error: RobotConnectionError) -> None:
        self._error = error
        self._done.set()

    def wait(self) -> ModbusLink:
        self._done.wait()
        if self._error is not None:
            raise self._error
        return self._link


class ConnectionManager:
    """
    Owner of the shared Modbus connection.

    acquire() returns the live link, opening one if needed. After
    ``max_attempts`` consecutive failures it fails fast until
    reset_failures() or force_reconnect() is called.
    """

    def __init__(self, settings: ModbusSettingsStore,
                 client_factory: Callable[[ModbusConfig], object] = default_client_factory,
                 max_attempts: int = MAX_CONNECT_ATTEMPTS):
        self._settings = settings
        self._client_factory = client_factory
        self._max_attempts = max_attempts
        self._lock = threading.Lock()
        self._state: _State = _Disconnected()
        self._failures = 0
        self._endpoint: Optional[str] = None
        self._log = get_logger()

    # === State ===

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state.state

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return isinstance(self._state, _Connected) and self._state.link.is_open

    @property
    def failures(self) -> int:
        return self._failures

    def status(self) -> dict:
        with self._lock:
            return {
                "state": self._state.state.value,
                "failures": self._failures,
                "maxAttempts": self._max_attempts,
                "endpoint": self._endpoint,
            }

    # === Lifecycle ===

    def acquire(self) -> ModbusLink:
        """Return the shared link; raises RobotConnectionError."""
        with self._lock:
            state = self._state
            if isinstance(state, _Connected):
                if state.link.is_open:
                    self._failures = 0
                    return state.link
                self._log.modbus("Stale connection dropped", level=LogLevel.WARNING)
                state.link.close()
                self._state = state = _Disconnected()

            if isinstance(state, _Connecting):
                attempt = state.attempt
                owner = False
            else:
                if self._failures >= self._max_attempts:
                    raise RobotConnectionError(
                        f"Failed to connect after {self._max_attempts} attempts. "
                        "Please check robot connection."
                    )
                attempt = _ConnectAttempt()
                self._state = _Connecting(attempt)
                owner = True

        if not owner:
            return attempt.wait()

        try:
            link = self._open(self._settings.get())
        except RobotConnectionError as e:
            with self._lock:
                self._failures += 1
                if isinstance(self._state, _Connecting) and self._state.attempt is attempt:
                    self._state = _Disconnected()
                failures = self._failures
            self._log.modbus(f"{e} (attempt {failures}/{self._max_attempts})", level=LogLevel.ERROR)
            attempt.fail(e)
            raise

        with self._lock:
            current = isinstance(self._state, _Connecting) and self._state.attempt is attempt
            if current:
                self._state = _Connected(link)
                self._failures = 0

        if not current:
            link.close()
            error = RobotConnectionError("Connection attempt superseded by reconnect")
            attempt.fail(error)
            raise error

        attempt.resolve(link)
        return link

    def _open(self, config: ModbusConfig, shared: bool = True) -> ModbusLink:
        endpoint = f"{config.host}:{config.port}"
        if shared:
            self._endpoint = endpoint
        self._log.modbus(f"Attempting connection to {endpoint}...", level=LogLevel.INFO)

        client = None
        try:
            client = self._client_factory(config)
            if client.connect():
                self._log.modbus(
                    f"Connected to {endpoint} (unit {config.unit_id}, timeout {config.timeout}ms)",
                    level=LogLevel.INFO
                )
                return ModbusLink(client, config, self._on_link_lost if shared else None)
            error: Exception = ConnectionRefusedError()
        except Exception as e:
            error = e

        if client is not None:
            try:
                client.close()
            except Exception as e:
                self._log.modbus(f"Error closing failed client: {e}", level=LogLevel.WARNING)
        raise RobotConnectionError(self._describe(error, config))

    @staticmethod
    def _describe(error: Exception, config: ModbusConfig) -> str:
        if isinstance(error, (socket.timeout, TimeoutError)):
            return "Connection timeout. Robot may be busy or unreachable."
        if isinstance(error, ConnectionRefusedError):
            return f"Robot is offline. Unable to connect to {config.host}:{config.port}"
        if isinstance(error, OSError) and error.errno in (errno.ENETUNREACH, errno.EHOSTUNREACH):
            return "Network unreachable. Check network connection."
        return f"Connection failed: {error}"

    def probe(self, config: ModbusConfig) -> bool:
        """
        Test an endpoint with a throw-away client.

        The shared connection is closed first so the robot never sees two
        sessions from us. Returns whether the probe read of the
        waiting-recipe flag succeeded; a refused or unreachable endpoint
        raises RobotConnectionError. The failure counter is untouched.
        """
        self.close()
        link = self._open(config, shared=False)
        try:
            link.read_coils(ControlAddress.WAITING_RECIPE, 1)
        except (ProtocolError, RobotConnectionError) as e:
            self._log.modbus(f"Probe read failed, but connection is OK: {e}", level=LogLevel.WARNING)
            return False
        finally:
            link.close()
        return True

    def _on_link_lost(self, link: ModbusLink, error: Exception) -> None:
        self._log.modbus(f"Connection error: {error}", level=LogLevel.ERROR)
        with self._lock:
            if isinstance(self._state, _Connected) and self._state.link is link:
                self._state = _Disconnected()
        link.close()

    def close(self) -> None:
        """Tear down the shared handle and return to disconnected. Never raises."""
        with self._lock:
            state = self._state
            self._state = _Disconnected()
        if isinstance(state, _Connected):
            state.link.close()
            self._log.modbus("Connection closed", level=LogLevel.INFO)

    def reset_failures(self) -> None:
        with self._lock:
            self._failures = 0

    def force_reconnect(self) -> None:
        """Drop the connection and the failure counter; next acquire re-reads settings."""
        self._log.modbus("Forcing reconnection with new configuration...", level=LogLevel.INFO)
        self.close()
        self.reset_failures()
        config = self._settings.get()
        self._log.modbus(
            f"New configuration loaded: {config.host}:{config.port} (unit {config.unit_id})",
            level=LogLevel.INFO
        )
