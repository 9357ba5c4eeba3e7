"""Maintenance-mode state owned by the application and injected where needed."""

import threading

from cardfund.common.logging import logger


class MaintenanceState:
    """Thread-safe on/off switch with an explicit get/set contract."""

    def __init__(self, enabled: bool = False) -> None:
        self._enabled = enabled
        self._lock = threading.Lock()

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def set_enabled(self, enabled: bool) -> bool:
        """Set the flag and return the previous value."""

        with self._lock:
            previous = self._enabled
            self._enabled = enabled
        if previous != enabled:
            logger.info("maintenance_mode %s", "enabled" if enabled else "disabled")
        return previous
