"""
Cooperative pause/cancel token.

The executor only looks at these flags at step boundaries; nothing
here interrupts an agent call that is already in flight.
"""

import asyncio
import threading


class ControlToken:
    """
    Pause and cancellation flags shared between a pipeline's executing
    task and the control surface.

    Flag reads and writes go through one lock so a status read never
    sees a half-applied change and no signal is lost between check and
    wait.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._paused = False
        self._cancelled = False
        self._wake = asyncio.Event()
        self._wake.set()

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def request_pause(self) -> bool:
        """Set the pause flag. Returns False once cancellation is requested."""
        with self._lock:
            if self._cancelled:
                return False
            self._paused = True
            self._wake.clear()
            return True

    def request_resume(self) -> bool:
        """Clear the pause flag and wake a suspended executor."""
        with self._lock:
            was_paused = self._paused
            self._paused = False
            self._wake.set()
            return was_paused

    def request_cancel(self) -> bool:
        """Set the cancellation flag. Returns False if it was already set."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._wake.set()
            return True

    async def wait_released(self):
        """Block until the pause flag clears or cancellation is requested."""
        while True:
            with self._lock:
                if self._cancelled or not self._paused:
                    return
                wake = self._wake
            await wake.wait()
