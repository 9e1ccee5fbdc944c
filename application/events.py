import logging
from threading import Lock
from typing import Callable, List, Optional, Tuple, Type

from core.task_event import TaskEvent

logger = logging.getLogger("tasksync.events")

Observer = Callable[[TaskEvent], None]


class EventBus:
    """Explicit observer list for lifecycle events.

    Observers may subscribe to every event or to a single event class.
    A failing observer is logged and skipped; it never undoes the write that
    produced the event.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._observers: List[Tuple[Optional[Type[TaskEvent]], Observer]] = []

    def subscribe(self, observer: Observer, event_type: Optional[Type[TaskEvent]] = None) -> Callable[[], None]:
        with self._lock:
            self._observers.append((event_type, observer))

        def unsubscribe() -> None:
            self.unsubscribe(observer)

        return unsubscribe

    def unsubscribe(self, observer: Observer) -> None:
        with self._lock:
            self._observers = [(kind, obs) for kind, obs in self._observers if obs is not observer]

    def clear(self) -> None:
        with self._lock:
            self._observers = []

    def publish(self, event: TaskEvent) -> int:
        """Deliver ``event``; returns how many observers handled it."""
        with self._lock:
            targets = [obs for kind, obs in self._observers if kind is None or isinstance(event, kind)]
        delivered = 0
        for observer in targets:
            try:
                observer(event)
                delivered += 1
            except Exception as exc:
                logger.warning("event observer %r failed on %s: %s", observer, event.event_type, exc)
        return delivered


class RecordingObserver:
    """Keeps every received event; handy for audits and tests."""

    def __init__(self) -> None:
        self.events: List[TaskEvent] = []

    def __call__(self, event: TaskEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[TaskEvent]) -> List[TaskEvent]:
        return [e for e in self.events if isinstance(e, event_type)]
