"""
Cancellation tokens for in-flight executions.

A token can be cancelled only until the engine announces the catalog write
with begin_write(). Both calls take the same lock, so exactly one of them
wins.
"""
import threading
from typing import Dict, Optional


class CancellationToken:
    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._write_started = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def write_started(self) -> bool:
        return self._write_started

    def cancel(self) -> bool:
        """Request cancellation. False if the write already began."""
        with self._lock:
            if self._write_started:
                return False
            self._cancelled = True
            return True

    def begin_write(self) -> bool:
        """Mark the point of no return. False if cancelled first."""
        with self._lock:
            if self._cancelled:
                return False
            self._write_started = True
            return True


class CancellationRegistry:
    """Tokens for executions running in this process, keyed by opportunity id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    def register(self, opportunity_id: str) -> CancellationToken:
        with self._lock:
            token = self._tokens.get(opportunity_id)
            if token is None:
                token = CancellationToken()
                self._tokens[opportunity_id] = token
            return token

    def get(self, opportunity_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(opportunity_id)

    def discard(self, opportunity_id: str) -> None:
        with self._lock:
            self._tokens.pop(opportunity_id, None)


cancellations = CancellationRegistry()
