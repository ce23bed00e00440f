"""
Caller-owned cancellation signal for acquire, execute and query.
"""

import threading
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Thread-safe cancellation token.

    Callbacks registered with ``add_callback`` run once, on the thread that
    calls ``cancel()``. The executor uses them to interrupt a running statement.

    Usage:
        token = CancelToken.with_timeout(5.0)
        try:
            manager.execute(sql, params, cancel=token)
        finally:
            token.close()
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> 'CancelToken':
        """Create a token that cancels itself after ``seconds``."""
        token = cls()
        timer = threading.Timer(seconds, token.cancel)
        timer.daemon = True
        token._timer = timer
        timer.start()
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token. Idempotent."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks[:]
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancel callback failed: {e}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register ``callback`` to run on cancellation.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)
                return remove

        callback()
        return lambda: None

    def close(self) -> None:
        """Stop the timeout timer, if any."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
