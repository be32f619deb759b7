from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .models import EventType, ProgressEvent, Stage

logger = logging.getLogger(__name__)

Subscriber = Callable[[ProgressEvent], None]


class EventChannel:
    """Thread-safe fan-out of progress events to subscribers.

    Subscriber exceptions are logged and dropped; a broken transport must
    never fail the session it is observing.
    """

    def __init__(self, *, history_limit: int = 1_000) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._history: deque[ProgressEvent] = deque(maxlen=history_limit)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:  # noqa: BLE001 - observers cannot affect the pipeline.
                logger.exception("Event subscriber failed on %s", event.event.value)

    def emit(self, event: EventType, session_id: str, stage: Stage, **payload: Any) -> ProgressEvent:
        progress = ProgressEvent(event=event, session_id=session_id, stage=stage, payload=payload)
        self.publish(progress)
        return progress

    def history(self, session_id: str | None = None) -> list[ProgressEvent]:
        with self._lock:
            events = list(self._history)
        if session_id is None:
            return events
        return [event for event in events if event.session_id == session_id]


class QueueSubscriber:
    """Pull-based view of a channel, for transports that poll."""

    def __init__(self, channel: EventChannel, *, maxsize: int = 0) -> None:
        self.queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=maxsize)
        self._unsubscribe = channel.subscribe(self._put)

    def _put(self, event: ProgressEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            logger.warning("Event queue full; dropping %s event", event.event.value)

    def get(self, timeout: float | None = None) -> ProgressEvent:
        return self.queue.get(timeout=timeout)

    def drain(self) -> list[ProgressEvent]:
        drained: list[ProgressEvent] = []
        while True:
            try:
                drained.append(self.queue.get_nowait())
            except queue.Empty:
                return drained

    def close(self) -> None:
        self._unsubscribe()


@contextmanager
def heartbeat(
    channel: EventChannel,
    *,
    session_id: str,
    interval: float,
    stage_fn: Callable[[], Stage],
    status_fn: Callable[[], dict[str, Any]] | None = None,
) -> Iterator[threading.Thread]:
    """Emit ``heartbeat`` events every *interval* seconds while the block runs.

    The timer thread is stopped and joined on every exit path.
    """
    if interval <= 0:
        raise ValueError(f"heartbeat interval must be > 0, got: {interval}")
    stop = threading.Event()
    started = time.monotonic()

    def beat() -> None:
        while not stop.wait(interval):
            payload: dict[str, Any] = {"elapsed_seconds": round(time.monotonic() - started, 1)}
            if status_fn is not None:
                try:
                    payload.update(status_fn())
                except Exception:  # noqa: BLE001 - a status probe failure still beats.
                    logger.exception("Heartbeat status probe failed for %s", session_id)
            channel.emit(EventType.HEARTBEAT, session_id, stage_fn(), **payload)

    thread = threading.Thread(target=beat, name=f"heartbeat-{session_id}", daemon=True)
    thread.start()
    try:
        yield thread
    finally:
        stop.set()
        thread.join(timeout=interval + 1.0)
        if thread.is_alive():
            logger.warning("Heartbeat thread for %s did not stop within %.1fs", session_id, interval + 1.0)
