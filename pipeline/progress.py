"""Progress events published by the pipeline and polled by the presentation layer.

The bus is single-producer (the pipeline thread) and single-consumer (the
render loop). Lifecycle events are never dropped. Progress events for a
stage are coalesced into a bounded buffer that drops the oldest entry when
the consumer falls behind; the renderer only needs the latest percentage.
"""

import threading
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class StageStarted:
    index: int
    name: str


@dataclass(frozen=True)
class StageProgress:
    index: int
    percent: float


@dataclass(frozen=True)
class StageFinished:
    index: int
    status: str  # complete | failed | skipped
    message: str = ""


@dataclass(frozen=True)
class RunFinished:
    status: str  # complete | failed
    error: str | None = None


ProgressEvent = Union[StageStarted, StageProgress, StageFinished, RunFinished]


class ProgressBus:
    """Bounded, non-blocking event stream from one pipeline run to one consumer."""

    def __init__(self, max_progress: int = 64):
        """Initialize the bus.

        Args:
            max_progress: Progress events kept before the oldest is dropped.
        """
        self._events: deque[tuple[int, ProgressEvent]] = deque()
        self._progress: deque[tuple[int, StageProgress]] = deque(maxlen=max_progress)
        self._seq = 0
        self._dropped = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def dropped(self) -> int:
        """Number of progress events discarded because the consumer fell behind."""
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        """Publish an event. Never blocks on the consumer."""
        with self._cond:
            if self._closed:
                return
            self._seq += 1
            if isinstance(event, StageProgress):
                if len(self._progress) == self._progress.maxlen:
                    self._dropped += 1
                self._progress.append((self._seq, event))
            else:
                self._events.append((self._seq, event))
            if isinstance(event, RunFinished):
                self._closed = True
            self._cond.notify_all()

    def _drain(self) -> list[ProgressEvent]:
        merged = sorted([*self._events, *self._progress], key=lambda item: item[0])
        self._events.clear()
        self._progress.clear()
        return [event for _, event in merged]

    def poll(self) -> list[ProgressEvent]:
        """Take every pending event without blocking, in publication order."""
        with self._cond:
            return self._drain()

    def get(self, timeout: float | None = None) -> list[ProgressEvent]:
        """Wait up to timeout for at least one event, then take all pending events."""
        with self._cond:
            self._cond.wait_for(lambda: self._events or self._progress or self._closed, timeout)
            return self._drain()

    def __iter__(self) -> Iterator[ProgressEvent]:
        """Yield events until RunFinished has been delivered."""
        while True:
            batch = self.get(timeout=0.1)
            for event in batch:
                yield event
                if isinstance(event, RunFinished):
                    return
            if not batch and self._closed:
                return
