"""Event sinks for lifecycle notifications.

The core never waits on subscribers. Events are handed to the sink after the
owning transaction has committed; a sink that raises is logged and skipped,
so delivery guarantees belong to whatever transport sits behind the sink.
"""

from typing import Protocol

from converse.config import Settings, get_settings
from converse.logging import get_logger
from converse.schemas.events import LifecycleEvent

logger = get_logger(__name__)


class EventSink(Protocol):
    """Anything that can receive lifecycle events."""

    def publish(self, event: LifecycleEvent) -> None: ...


class NullEventSink:
    """Drops every event. Used when broadcasting is disabled."""

    def publish(self, event: LifecycleEvent) -> None:
        return None


class LoggingEventSink:
    """Writes each event as a structured log entry."""

    def publish(self, event: LifecycleEvent) -> None:
        logger.info(
            "lifecycle_event",
            event_name=event.name,
            channel=event.channel,
            payload=event.payload(),
        )


def get_event_sink(settings: Settings | None = None) -> EventSink:
    """Pick the sink for the configured broadcasting mode."""
    settings = settings or get_settings()
    if settings.broadcasting_enabled:
        return LoggingEventSink()
    return NullEventSink()


def dispatch_event(sink: EventSink, event: LifecycleEvent) -> None:
    """Fire-and-forget publish.

    Sink failures are logged, never raised: the write that produced the
    event has already committed.
    """
    try:
        sink.publish(event)
    except Exception as e:
        logger.warning(
            "event_dispatch_failed",
            event_name=event.name,
            channel=event.channel,
            error=str(e),
        )
