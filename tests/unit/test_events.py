"""Unit tests for the engine event bus."""

from __future__ import annotations

from unittest.mock import Mock

from workflow_orchestrator.orchestrator.workflow.events import EventBus, EventType, WorkflowEvent


def _event(event_type: EventType = EventType.STATE_CHANGED) -> WorkflowEvent:
    return WorkflowEvent(type=event_type, payload={"workflow_id": "exp-1"})


def test_listeners_receive_only_subscribed_types() -> None:
    bus = EventBus()
    everything = Mock()
    changes = Mock()
    bus.subscribe(everything)
    bus.subscribe(changes, types=[EventType.STATE_CHANGED])

    bus.emit(_event(EventType.WORKFLOW_CREATED))
    bus.emit(_event(EventType.STATE_CHANGED))

    assert everything.call_count == 2
    changes.assert_called_once()
    assert changes.call_args.args[0].type is EventType.STATE_CHANGED


def test_subscription_closes_as_context_manager() -> None:
    bus = EventBus()
    listener = Mock()

    with bus.subscribe(listener) as subscription:
        bus.emit(_event())
        assert bus.listener_count() == 1

    assert subscription.closed
    assert bus.listener_count() == 0
    bus.emit(_event())
    listener.assert_called_once()


def test_failing_listener_is_counted_and_others_still_run() -> None:
    bus = EventBus()
    broken = Mock(side_effect=RuntimeError("listener bug"))
    healthy = Mock()
    bus.subscribe(broken)
    bus.subscribe(healthy)

    bus.emit(_event())

    healthy.assert_called_once()
    assert bus.failures == 1


def test_unsubscribe_unknown_listener() -> None:
    assert EventBus().unsubscribe(Mock()) is False
