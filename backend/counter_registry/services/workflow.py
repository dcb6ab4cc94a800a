"""
Lifecycle of a counter: draft -> platforms -> reservations -> final.

Moves are one step forward or one step back. A final counter may jump back
to any earlier stage directly (unlocking it). The machine only decides
whether a move is allowed; persisting it is the editing session's job.
"""
from enum import Enum
from typing import List, Optional

from counter_registry.core.exceptions import InvalidTransitionError


class CounterStatus(str, Enum):
    draft = "draft"
    platforms = "platforms"
    reservations = "reservations"
    final = "final"


STAGE_ORDER: List[CounterStatus] = [
    CounterStatus.draft,
    CounterStatus.platforms,
    CounterStatus.reservations,
    CounterStatus.final,
]

STATUS_VALUES = [status.value for status in STAGE_ORDER]


def coerce_status(value) -> CounterStatus:
    try:
        return CounterStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"Unknown counter status: {value!r}") from None


class WorkflowStateMachine:
    def __init__(self, status=CounterStatus.draft):
        self._status = coerce_status(status)

    @property
    def status(self) -> CounterStatus:
        return self._status

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self._status)

    @property
    def is_final(self) -> bool:
        return self._status is CounterStatus.final

    def next_status(self) -> Optional[CounterStatus]:
        if self.index + 1 >= len(STAGE_ORDER):
            return None
        return STAGE_ORDER[self.index + 1]

    def previous_status(self) -> Optional[CounterStatus]:
        if self.index == 0:
            return None
        return STAGE_ORDER[self.index - 1]

    def can_transition(self, target) -> bool:
        try:
            self.validate(target)
        except InvalidTransitionError:
            return False
        return True

    def validate(self, target) -> CounterStatus:
        """Return the target status if the move is allowed, raise otherwise"""
        target_status = coerce_status(target)
        if target_status is self._status:
            return target_status
        target_index = STAGE_ORDER.index(target_status)
        if self.is_final and target_index < self.index:
            return target_status
        if abs(target_index - self.index) == 1:
            return target_status
        raise InvalidTransitionError(
            f"Cannot move a counter from {self._status.value} to {target_status.value}"
        )

    def apply(self, target) -> CounterStatus:
        self._status = self.validate(target)
        return self._status

    def reset(self, status=CounterStatus.draft) -> None:
        self._status = coerce_status(status)
