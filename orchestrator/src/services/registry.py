"""
Registry of running pipelines and their cancellation tokens.
"""

import threading
from typing import Dict, List, Optional

class CancelToken:
    """Cooperative cancellation flag, checked between steps."""

    def __init__(self):
        self._cancelled = False
        self.reason: Optional[str] = None
        self.timed_out = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Pipeline cancelled by user"):
        if not self._cancelled:
            self.reason = reason
            self._cancelled = True

    def expire(self, reason: str):
        if not self._cancelled:
            self.timed_out = True
            self.cancel(reason)

class RunRegistry:
    def __init__(self):
        self._guard = threading.Lock()
        self._tokens: Dict[int, CancelToken] = {}

    def register(self, pipeline_id: int) -> CancelToken:
        token = CancelToken()
        with self._guard:
            self._tokens[pipeline_id] = token
        return token

    def remove(self, pipeline_id: int):
        with self._guard:
            self._tokens.pop(pipeline_id, None)

    def cancel(self, pipeline_id: int) -> bool:
        with self._guard:
            token = self._tokens.get(pipeline_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_running(self, pipeline_id: int) -> bool:
        with self._guard:
            return pipeline_id in self._tokens

    def running_ids(self) -> List[int]:
        with self._guard:
            return list(self._tokens.keys())
