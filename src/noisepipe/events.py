"""Minimal observer-style event channel."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final, Protocol

log = logging.getLogger("events")

JOB_ADDED: Final[str] = "job_added"
JOB_STARTED: Final[str] = "job_started"
JOB_COMPLETED: Final[str] = "job_completed"
JOB_FAILED: Final[str] = "job_failed"
JOB_CANCELLED: Final[str] = "job_cancelled"


@dataclass(frozen=True, kw_only=True)
class Event:
    """Something that happened, with an arbitrary payload."""

    name: str
    payload: Any = None
    emitted_at: datetime = field(default_factory=datetime.now)


class EventObserver(Protocol):
    """Receives the events published on an EventChannel."""

    def on_event(self, event: Event) -> None: ...


class EventChannel:
    """
    Fan out events to the subscribed observers.

    Observers run synchronously on the publishing thread. An observer
    raising an exception is logged and does not affect the publisher or
    the other observers.
    """

    def __init__(self):
        self._observers: list[EventObserver] = []
        self._lock = threading.Lock()

    def subscribe(self, observer: EventObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: EventObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def publish(self, name: str, payload: Any = None) -> Event:
        event = Event(name=name, payload=payload)
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer.on_event(event)
            except Exception as exc:
                log.warning("delivering %s to %r... failure: %s", name, observer, exc)
        return event
