# Path: core/search/progress.py
# Purpose: Report sorting progress to pollers and async subscribers, and carry cancellation requests.
# Layer: core/search.
# Details: Each subscriber gets its own queue; closing the progress ends every open stream.

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import AsyncIterator, List, Optional

PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressSnapshot:
    status: str = PENDING
    stage: str = "queued"
    percent: float = 0.0
    message: str = ""
    strategy: Optional[str] = None


class SortProgress:
    """Polling status object with a cancellable event stream."""

    def __init__(self) -> None:
        self._snapshot = ProgressSnapshot()
        self._subscribers: List[asyncio.Queue] = []
        self._cancel_requested = asyncio.Event()
        self._closed = False

    def snapshot(self) -> ProgressSnapshot:
        return self._snapshot

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def closed(self) -> bool:
        return self._closed

    def update(self, stage: str, percent: float, message: str = "", strategy: Optional[str] = None) -> None:
        if self._closed:
            return
        self._publish(
            replace(
                self._snapshot,
                status=RUNNING,
                stage=stage,
                percent=min(100.0, max(self._snapshot.percent, percent)),
                message=message,
                strategy=strategy or self._snapshot.strategy,
            )
        )

    def cancel(self) -> None:
        """Ask the running sort to stop; it finishes with whatever partial ranking it has."""

        self._cancel_requested.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_requested.wait()

    def close(self, status: str = COMPLETED, message: str = "") -> None:
        if self._closed:
            return
        percent = 100.0 if status == COMPLETED else self._snapshot.percent
        self._publish(replace(self._snapshot, status=status, percent=percent, message=message or self._snapshot.message))
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[ProgressSnapshot]:
        """Yield the current snapshot, then every change until the progress is closed."""

        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self._snapshot
            if self._closed:
                return
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self._subscribers.remove(queue)

    def _publish(self, snapshot: ProgressSnapshot) -> None:
        self._snapshot = snapshot
        for queue in self._subscribers:
            queue.put_nowait(snapshot)
