"""
Notification Hub: fans engine snapshots out to observers.

Delivery is synchronous and keeps mutation order. Every observer receives
its own deep copy of the snapshot, and a failing observer never prevents
the others from being notified.
"""

from __future__ import annotations

import itertools
from threading import RLock
from typing import Callable, Dict, Optional

from .logger import LoggerInterface, StandardLogger
from .models import Snapshot

SnapshotHandler = Callable[[Snapshot], None]


class NotificationHub:
    """
    Registry of snapshot observers.

    Attributes:
        snapshot_provider (Callable[[], Snapshot]): Builds the current snapshot
        logger (LoggerInterface): Receives observer failures
    """

    def __init__(
        self,
        snapshot_provider: Callable[[], Snapshot],
        logger: Optional[LoggerInterface] = None,
    ) -> None:
        self.snapshot_provider = snapshot_provider
        self.logger = logger or StandardLogger()
        self._observers: Dict[int, SnapshotHandler] = {}
        self._tokens = itertools.count(1)
        self._lock = RLock()

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: SnapshotHandler) -> Callable[[], None]:
        """
        Register ``observer`` and send it the current snapshot right away.

        Returns:
            Callable[[], None]: Idempotent function removing this registration
        """
        with self._lock:
            token = next(self._tokens)
            self._observers[token] = observer
            self._deliver(token, observer, self.snapshot_provider())

        def unsubscribe() -> None:
            with self._lock:
                self._observers.pop(token, None)

        return unsubscribe

    def publish(self) -> int:
        """Send the current snapshot to every observer; return how many got it."""
        with self._lock:
            if not self._observers:
                return 0
            snapshot = self.snapshot_provider()
            delivered = 0
            for token, observer in list(self._observers.items()):
                # Skip observers removed by an earlier observer in this round
                if token in self._observers and self._deliver(token, observer, snapshot):
                    delivered += 1
            return delivered

    def _deliver(self, token: int, observer: SnapshotHandler, snapshot: Snapshot) -> bool:
        try:
            observer(snapshot.model_copy(deep=True))
            return True
        except Exception as e:
            self.logger.exception(
                f"Snapshot observer failed: {e}",
                observer_token=token,
                error=str(e),
            )
            return False
