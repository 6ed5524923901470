"""
Power outage monitor for battery-backed edge devices.
"""

__version__ = "1.0.0"
