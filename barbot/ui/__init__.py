"""
UI module for the BarBot control system.

Provides:
- ApiClient: requests-based client for the HTTP API
- ProgressTracker: order progress state machine
- OrderMonitor: status poll and event stream channels feeding the tracker
"""

from .api_client import ApiClient
from .tracker import ProgressTracker, TrackerAction, TrackerPhase
from .monitor import OrderMonitor

__all__ = ['ApiClient', 'ProgressTracker', 'TrackerAction', 'TrackerPhase', 'OrderMonitor']
