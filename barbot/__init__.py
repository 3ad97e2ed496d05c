"""
BarBot: web control of a bartending robot over Modbus TCP.
"""

__version__ = "1.0.0"
