"""Client package for TimeBar.

Provides the sync core: dialect transports, timer backends, the per-account
record service and the account coordinator.
"""
from .connection import Connection, make_connection
from .coordinator import AccountCoordinator
from .timer_service import TimerService

__all__ = ["make_connection", "Connection", "TimerService", "AccountCoordinator"]
