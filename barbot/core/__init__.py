"""
Core modules for the BarBot control system.

Provides the register map, the shared Modbus connection, order
sequencing, state reads, address reset and change-detection events.
"""

from .errors import BarBotError, RobotConnectionError, RobotBusyError, ProtocolError, ValidationError
from .settings import ModbusConfig, ModbusSettingsStore
from .connection import ConnectionManager, ConnectionState, ModbusLink
from .state_reader import RobotState, StatusReport, StateReader
from .sequencer import CommandSequencer, OrderPlan, OrderResult
from .reset import ResetSequencer, ResetReport
from .events import ChangeDetector, EventBroadcaster, EventSession, RobotEvent

__all__ = [
    'BarBotError',
    'RobotConnectionError',
    'RobotBusyError',
    'ProtocolError',
    'ValidationError',
    'ModbusConfig',
    'ModbusSettingsStore',
    'ConnectionManager',
    'ConnectionState',
    'ModbusLink',
    'RobotState',
    'StatusReport',
    'StateReader',
    'CommandSequencer',
    'OrderPlan',
    'OrderResult',
    'ResetSequencer',
    'ResetReport',
    'ChangeDetector',
    'EventBroadcaster',
    'EventSession',
    'RobotEvent',
]
