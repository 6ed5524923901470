"""
Long-running loops and the daemon that owns them.

- power_monitor.py - Power state machine, probes, crash-loop check
- event_syncer.py - Finished-queue upload
- restart_guard.py - Periodic supervisor reboot
- daemon.py - Wiring, signals, health endpoint
"""

from .daemon import Daemon
from .event_syncer import EventSyncer
from .power_monitor import PowerState, PowerStateMonitor, classify
from .restart_guard import RestartGuard

__all__ = [
    "Daemon",
    "EventSyncer",
    "PowerState",
    "PowerStateMonitor",
    "classify",
    "RestartGuard",
]
