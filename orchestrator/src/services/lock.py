"""
Global deployment lock shared by pipeline runs and rollbacks.

Only one deployment-affecting operation may run at a time. There is no wait
queue: a caller that finds the lock held gets LockBusy immediately.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Optional

from orchestrator.src.errors import LockBusy
from orchestrator.src.models.pipeline import LockOperation, LockStatus

logger = logging.getLogger(__name__)

class DeploymentLock:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._guard = threading.Lock()
        self._held = False
        self._operation: Optional[LockOperation] = None
        self._owner_id: Optional[str] = None
        self._acquired_at: Optional[float] = None

    @property
    def held(self) -> bool:
        return self._held

    def _elapsed(self) -> int:
        return int(self._clock() - self._acquired_at)

    def acquire(self, operation: LockOperation, owner_id) -> None:
        """Take the lock or raise LockBusy with the current holder's info."""
        operation = LockOperation(operation)
        with self._guard:
            if self._held:
                raise LockBusy(self._operation.value, self._owner_id, self._elapsed())
            self._held = True
            self._operation = operation
            self._owner_id = str(owner_id)
            self._acquired_at = self._clock()

        logger.info(f"Deployment lock acquired for {operation.value} (#{owner_id})")

    def release(self) -> None:
        """Clear the lock. Safe to call when not held."""
        with self._guard:
            if not self._held:
                return
            operation, owner_id, elapsed = self._operation, self._owner_id, self._elapsed()
            self._held = False
            self._operation = None
            self._owner_id = None
            self._acquired_at = None

        logger.info(f"Deployment lock released for {operation.value} (#{owner_id}, {elapsed}s)")

    def status(self) -> LockStatus:
        with self._guard:
            if not self._held:
                return LockStatus(locked=False)
            return LockStatus(
                locked=True,
                operation=self._operation,
                owner_id=self._owner_id,
                elapsed_seconds=self._elapsed(),
            )

    @contextmanager
    def hold(self, operation: LockOperation, owner_id):
        """Acquire for the duration of a block; released on every exit path."""
        self.acquire(operation, owner_id)
        try:
            yield self
        finally:
            self.release()
