"""
Processing Guard Module

Mutual exclusion for the capture path. Only one frame is processed at a time,
and a guard that has been held too long is force-released.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Optional

logger = logging.getLogger(__name__)


class ProcessingState:
    IDLE = 'idle'
    CAPTURING = 'capturing'
    MATCHING = 'matching'
    REGISTERING = 'registering'


class ProcessingGuard:
    """Non-blocking lock with a state label and a hold timeout."""

    def __init__(self, timeout_seconds: float = 15):
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = ProcessingState.IDLE
        self._acquired_at: Optional[float] = None
        self._generation = 0

    @property
    def state(self) -> str:
        return self._state

    def try_acquire(self, state: str = ProcessingState.CAPTURING) -> bool:
        """Take the guard without blocking. False if it is already held."""
        return self._acquire(state) is not None

    def _acquire(self, state: str) -> Optional[int]:
        """Take the guard and return its generation token, or None if busy."""
        if not self._lock.acquire(blocking=False):
            return None
        with self._state_lock:
            self._state = state
            self._acquired_at = time.monotonic()
            self._generation += 1
            return self._generation

    def set_state(self, state: str):
        with self._state_lock:
            if self._acquired_at is not None:
                self._state = state

    def release(self):
        """Release the guard. Releasing an idle guard is a no-op."""
        with self._state_lock:
            self._release_locked()

    def release_generation(self, generation: int) -> bool:
        """
        Release the guard only if it is still held under the given token.

        Returns:
            False when the guard was force-reset and possibly re-acquired
        """
        with self._state_lock:
            if self._generation != generation or self._acquired_at is None:
                return False
            self._release_locked()
            return True

    def _release_locked(self):
        self._state = ProcessingState.IDLE
        self._acquired_at = None
        if self._lock.locked():
            self._lock.release()

    def is_busy(self) -> bool:
        return self._lock.locked()

    def held_for(self) -> float:
        acquired_at = self._acquired_at
        return time.monotonic() - acquired_at if acquired_at is not None else 0.0

    def check_timeout(self) -> bool:
        """
        Force-release a guard held longer than the timeout.

        Returns:
            True if the guard was reset
        """
        with self._state_lock:
            if self._acquired_at is None:
                return False
            held = time.monotonic() - self._acquired_at
            if held <= self.timeout_seconds:
                return False
            logger.warning(f"Processing stuck in state {self._state} for {held:.1f}s, forcing reset")
            self._release_locked()
            return True

    @contextmanager
    def hold(self, state: str = ProcessingState.CAPTURING):
        """
        Context manager around try_acquire/release.

        Yields:
            True if the guard was acquired, False if it was busy
        """
        generation = self._acquire(state)
        try:
            yield generation is not None
        finally:
            # A holder that was force-reset must not release a newer holder
            if generation is not None:
                self.release_generation(generation)
