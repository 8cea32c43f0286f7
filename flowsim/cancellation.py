from __future__ import annotations

import threading
from typing import Optional

from .errors import SolveCancelled


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a solve.

    The solver checks it between outer iterations and between operations;
    iterative property calculations check it between their own
    sub-iterations.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, iteration: Optional[int] = None) -> None:
        if self._event.is_set():
            raise SolveCancelled(f"Solve cancelled: {self.reason}", iteration=iteration)
