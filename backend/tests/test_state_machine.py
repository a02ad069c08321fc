import uuid
from datetime import timedelta

import pytest

from app.models_sqlalchemy.models import AutopilotAction
from app.services.autopilot.errors import InvalidTransition
from app.services.autopilot.state_machine import ActionStateMachine


def _action(db, clock, status="pending", action_type="REPRICE", reversible=True):
    action = AutopilotAction(
        id=str(uuid.uuid4()),
        user_id="user-1",
        item_id="item-1",
        action_type=action_type,
        confidence=0.9,
        confidence_level="HIGH",
        status=status,
        requires_approval=False,
        reversible=reversible,
        retry_count=0,
        created_at=clock.now(),
        updated_at=clock.now(),
    )
    db.add(action)
    db.flush()
    return action


@pytest.fixture
def machine(clock):
    return ActionStateMachine(clock, max_retries=2, backoff_seconds=30, backoff_max_seconds=100)


def test_happy_path_records_every_transition(db, clock, machine):
    action = _action(db, clock)

    machine.approve(db, action)
    machine.mark_executed(db, action, {"price": 90.0}, timedelta(hours=24))
    db.commit()

    assert action.status == "executed"
    assert [e.to_status for e in action.events] == ["approved", "executed"]
    assert action.events[0].from_status == "pending"
    assert action.after_state == {"price": 90.0}


def test_executed_sets_undo_deadline_only_for_reversible(db, clock, machine):
    reversible = _action(db, clock)
    machine.approve(db, reversible)
    machine.mark_executed(db, reversible, {}, timedelta(hours=24))
    assert reversible.undo_deadline == clock.now() + timedelta(hours=24)

    offer = _action(db, clock, action_type="OFFER_ACCEPT", reversible=False)
    machine.approve(db, offer)
    machine.mark_executed(db, offer, {}, timedelta(hours=24))
    assert offer.undo_deadline is None


@pytest.mark.parametrize(
    "start, target",
    [
        ("pending", "executed"),
        ("pending", "undone"),
        ("approved", "pending"),
        ("rejected", "approved"),
        ("undone", "executed"),
        ("executed", "failed"),
    ],
)
def test_illegal_transitions_raise(db, clock, machine, start, target):
    action = _action(db, clock, status=start)
    with pytest.raises(InvalidTransition):
        machine.transition(db, action, target)
    assert action.status == start


def test_retryable_failure_schedules_backoff(db, clock, machine):
    action = _action(db, clock, status="approved")

    scheduled = machine.mark_failed(db, action, "HTTP 503", retryable=True)

    assert scheduled is True
    assert action.status == "pending"
    assert action.retry_count == 1
    assert action.next_attempt_at == clock.now() + timedelta(seconds=30)
    assert action.error_message == "HTTP 503"


def test_retries_stop_at_the_cap(db, clock, machine):
    action = _action(db, clock, status="approved")

    assert machine.mark_failed(db, action, "boom", retryable=True) is True
    machine.approve(db, action)
    assert machine.mark_failed(db, action, "boom", retryable=True) is True
    machine.approve(db, action)
    assert machine.mark_failed(db, action, "boom", retryable=True) is False

    assert action.status == "failed"
    assert action.retry_count == 2
    assert machine.is_terminal(action) is True
    with pytest.raises(InvalidTransition):
        machine.transition(db, action, "pending")


def test_fatal_failure_is_terminal(db, clock, machine):
    action = _action(db, clock, status="approved")

    assert machine.mark_failed(db, action, "HTTP 400", retryable=False) is False
    assert action.status == "failed"
    assert action.next_attempt_at is None
    assert action.retry_count == 0


def test_backoff_is_exponential_and_capped(clock, machine):
    assert machine.backoff_for(1) == timedelta(seconds=30)
    assert machine.backoff_for(2) == timedelta(seconds=60)
    assert machine.backoff_for(3) == timedelta(seconds=100)
    assert machine.backoff_for(10) == timedelta(seconds=100)
