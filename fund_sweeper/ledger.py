from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from fund_sweeper.models import SweepAttempt

LedgerListener = Callable[[list[SweepAttempt]], None]


class TransactionLedger:
    """Append-only, in-memory record of sweep attempts.

    Appends are serialized with a lock because readers may run on API
    threadpool workers while pipelines append from the event loop. Reads
    return a copy, so a snapshot never changes after it is taken.
    """

    def __init__(self):
        self._entries: list[SweepAttempt] = []
        self._lock = threading.Lock()
        self._listeners: list[LedgerListener] = []

    def append(self, attempt: SweepAttempt) -> None:
        with self._lock:
            self._entries.append(attempt)
            snapshot = list(self._entries)
        logger.debug(
            "Ledger append #{}: {} {} {}", len(snapshot), attempt.status.value, attempt.amount, attempt.signature
        )
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception("Ledger listener failed: {}", e)

    def list_all(self) -> list[SweepAttempt]:
        with self._lock:
            return list(self._entries)

    def add_listener(self, listener: LedgerListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: LedgerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
