"""
API module for the BarBot control system.

Provides REST API for:
- Robot status and health check
- Cocktail and custom orders
- Address reset and initial state
- Server-sent robot events
- Modbus configuration
"""

from .server import create_app, APIServer

__all__ = ['create_app', 'APIServer']
