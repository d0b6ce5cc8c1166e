"""
Single-flight guard for scheduling cycles.
"""

import threading
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class ProcessingLock:
    """
    Process-local {running, started_at} state shared by every trigger of the scheduler.

    A deployment with several processes can swap this for a lease row in the shared
    store by providing the same acquire/release/elapsed_seconds interface.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self.running = False
        self.started_at: Optional[datetime] = None

    def acquire(self) -> bool:
        """Mark a cycle as running. Returns False if one is already in progress."""
        with self._guard:
            if self.running:
                return False
            self.running = True
            self.started_at = datetime.now(timezone.utc)
            return True

    def release(self):
        with self._guard:
            self.running = False
            self.started_at = None

    def elapsed_seconds(self) -> float:
        started_at = self.started_at
        if started_at is None:
            return 0.0
        return (datetime.now(timezone.utc) - started_at).total_seconds()

    def snapshot(self) -> dict:
        started_at = self.started_at
        return {
            "running": self.running,
            "started_at": started_at.isoformat() if started_at else None,
            "elapsed_seconds": round(self.elapsed_seconds(), 1),
        }
