import pytest

from counter_registry.core.exceptions import InvalidTransitionError
from counter_registry.services.workflow import CounterStatus, WorkflowStateMachine


def test_moves_one_stage_at_a_time():
    machine = WorkflowStateMachine()
    assert machine.apply("platforms") is CounterStatus.platforms
    assert machine.apply(CounterStatus.reservations) is CounterStatus.reservations
    assert machine.apply("final") is CounterStatus.final
    assert machine.is_final
    assert machine.next_status() is None


def test_cannot_skip_forward():
    machine = WorkflowStateMachine("draft")
    with pytest.raises(InvalidTransitionError):
        machine.apply("reservations")
    assert machine.status is CounterStatus.draft
    assert not machine.can_transition("final")


def test_steps_back_one_stage():
    machine = WorkflowStateMachine("reservations")
    assert machine.previous_status() is CounterStatus.platforms
    assert machine.can_transition("platforms")
    assert not machine.can_transition("draft")


def test_final_unlocks_to_any_earlier_stage():
    machine = WorkflowStateMachine("final")
    assert machine.can_transition("draft")
    assert machine.apply("draft") is CounterStatus.draft
    assert machine.previous_status() is None


def test_same_stage_is_allowed():
    assert WorkflowStateMachine("platforms").can_transition("platforms")


def test_unknown_status_is_rejected():
    with pytest.raises(InvalidTransitionError):
        WorkflowStateMachine("archived")
    with pytest.raises(InvalidTransitionError):
        WorkflowStateMachine().validate("archived")
