import logging

from tailor_escrow.core.events import (
    InMemoryEventPublisher,
    LoggingEventPublisher,
    build_event,
    publish_event,
)


class _BrokenPublisher:
    def publish(self, event):
        raise ConnectionError("broker unavailable")


def test_build_event_assigns_identifier_and_timestamp():
    event = build_event(
        event_type="MilestoneSubmitted", order_id="ord_001", payload={"stage": "FABRIC_SELECTED"}
    )

    assert event.event_id.startswith("evt_")
    assert event.occurred_at.tzinfo is not None
    assert event.payload == {"stage": "FABRIC_SELECTED"}


def test_in_memory_publisher_filters_by_type():
    publisher = InMemoryEventPublisher()
    publish_event(publisher, build_event(event_type="DisputeOpened", order_id="o", payload={}))
    publish_event(publisher, build_event(event_type="SlaWarning", order_id="o", payload={}))

    assert len(publisher.events()) == 2
    assert [event.event_type for event in publisher.events(event_type="SlaWarning")] == [
        "SlaWarning"
    ]

    publisher.clear()
    assert publisher.events() == []


def test_publish_failure_is_logged_not_raised(caplog):
    event = build_event(event_type="StageReleased", order_id="ord_001", payload={})

    with caplog.at_level(logging.ERROR, logger="tailor_escrow.core.events"):
        publish_event(_BrokenPublisher(), event)

    assert "Domain event publish failed" in caplog.text
    publish_event(None, event)


def test_logging_publisher_emits_structured_record(caplog):
    event = build_event(
        event_type="DisputeResolved", order_id="ord_001", payload={"dispute_id": "dsp_1"}
    )

    with caplog.at_level(logging.INFO, logger="tailor_escrow.core.events"):
        LoggingEventPublisher().publish(event)

    record = caplog.records[-1]
    assert record.getMessage() == "domain_event.published"
    assert record.extra_fields["event_type"] == "DisputeResolved"
    assert record.extra_fields["payload"] == {"dispute_id": "dsp_1"}
