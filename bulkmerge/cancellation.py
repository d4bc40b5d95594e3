# bulkmerge/cancellation.py
"""
Cooperative cancellation for merge operations.

A single token is threaded through every blocking step of a merge. Setting it
from another thread stops the merge at the next step boundary (or bulk-load
batch); callbacks registered on the token run immediately so a statement that
is already executing can be interrupted, e.g. with ``pyodbc.Cursor.cancel``.

Example
-------
::

    token = CancellationToken()
    threading.Timer(30, token.cancel).start()
    bulk_merge(db, registry, Order, orders, cancel=token)
"""

import logging
import threading
from typing import Callable, List, Optional

from .exceptions import MergeCancelled

logger = logging.getLogger(__name__)


class CancellationToken:

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                # an interrupt hook failing must not stop the remaining hooks
                logger.warning(f"Cancellation callback {callback!r} failed: {e}")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run ``callback`` when the token is cancelled (immediately if it already is).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)
                return unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self, phase: str, table: Optional[str] = None,
                           staging: Optional[str] = None) -> None:
        if self._event.is_set():
            raise MergeCancelled("operation cancelled", table=table, staging=staging, phase=phase)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
