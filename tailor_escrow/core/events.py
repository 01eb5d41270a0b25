import logging
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Literal, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DomainEventType = Literal[
    "MilestoneSubmitted",
    "MilestoneApproved",
    "MilestoneRejected",
    "StageReleased",
    "DisputeOpened",
    "DisputeEscalated",
    "DisputeResolved",
    "SlaWarning",
]


class DomainEvent(BaseModel):
    event_id: str = Field(description="Domain event identifier.", examples=["evt_001"])
    event_type: DomainEventType = Field(
        description="Domain event type fanned out by the notification dispatcher.",
        examples=["MilestoneApproved"],
    )
    order_id: str = Field(description="Order the event belongs to.", examples=["ord_001"])
    occurred_at: datetime = Field(
        description="UTC timestamp for the event.", examples=["2026-03-01T10:00:00+00:00"]
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific payload for downstream channels.",
        examples=[{"milestone_id": "ms_001", "stage": "FITTING_READY"}],
    )


class EventPublisher(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class LoggingEventPublisher:
    def publish(self, event: DomainEvent) -> None:
        logger.info(
            "domain_event.published",
            extra={
                "extra_fields": {
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "order_id": event.order_id,
                    "payload": event.model_dump(mode="json")["payload"],
                }
            },
        )


class InMemoryEventPublisher:
    def __init__(self) -> None:
        self._lock = Lock()
        self._events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self._events.append(event.model_copy(deep=True))

    def events(self, *, event_type: Optional[str] = None) -> list[DomainEvent]:
        with self._lock:
            events = list(self._events)
        if event_type is None:
            return events
        return [event for event in events if event.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def build_event(
    *,
    event_type: DomainEventType,
    order_id: str,
    payload: Dict[str, Any],
    occurred_at: Optional[datetime] = None,
) -> DomainEvent:
    return DomainEvent(
        event_id=f"evt_{uuid.uuid4().hex[:12]}",
        event_type=event_type,
        order_id=order_id,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        payload=payload,
    )


def publish_event(publisher: Optional[EventPublisher], event: DomainEvent) -> None:
    # Notification delivery never rolls back committed state.
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception:
        logger.exception(
            "Domain event publish failed. EventType=%s OrderID=%s",
            event.event_type,
            event.order_id,
        )
