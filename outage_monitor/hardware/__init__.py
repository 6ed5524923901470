"""
Power sensor access.
"""

from .ups import Ina219Reader, PowerReader, PowerReading, battery_percentage

__all__ = ["Ina219Reader", "PowerReader", "PowerReading", "battery_percentage"]
