from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

from .results import CaseResult
from .stats import DetailedStats


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    group_name: str
    completed_groups: int
    total_groups: int
    percentage: float


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    """Running aggregate over every group completed so far."""

    completed_groups: int
    stats: DetailedStats


@dataclass(frozen=True, slots=True)
class LogEvent:
    """
    A line for the presentation layer.

    `tail=True` marks raw worker output (rolling buffer); otherwise it is a
    high-level message.
    """

    message: str
    style: str | None = None
    tail: bool = False


@dataclass(frozen=True, slots=True)
class CaseStarted:
    group_name: str
    case_name: str
    argv: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class CaseFinished:
    group_name: str
    case_name: str
    result: CaseResult | None
    error: str | None = None


Event = Union[ProgressEvent, StatsSnapshot, LogEvent, CaseStarted, CaseFinished]
Subscriber = Callable[[Event], None]


class EventBus:
    """
    Synchronous publish/subscribe channel.

    Subscribers run in subscription order on the publisher's task.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        for cb in list(self._subscribers):
            cb(event)

    def log(self, message: str, *, style: str | None = None) -> None:
        self.publish(LogEvent(message=message, style=style))


__all__ = [
    "CaseFinished",
    "CaseStarted",
    "Event",
    "EventBus",
    "LogEvent",
    "ProgressEvent",
    "StatsSnapshot",
    "Subscriber",
]
