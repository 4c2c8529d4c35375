"""Transition tables for executions and steps."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Generic, Tuple, TypeVar

from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


EXECUTION_TRANSITIONS: Dict[Tuple[ExecutionStatus, str], ExecutionStatus] = {
    (ExecutionStatus.PENDING, "start"): ExecutionStatus.RUNNING,
    (ExecutionStatus.RUNNING, "complete"): ExecutionStatus.COMPLETED,
    (ExecutionStatus.RUNNING, "fail"): ExecutionStatus.FAILED,
    (ExecutionStatus.FAILED, "retry"): ExecutionStatus.RUNNING,
    (ExecutionStatus.RUNNING, "pause"): ExecutionStatus.PAUSED,
    (ExecutionStatus.PAUSED, "resume"): ExecutionStatus.RUNNING,
    (ExecutionStatus.PAUSED, "fail"): ExecutionStatus.FAILED,
    (ExecutionStatus.PENDING, "fail"): ExecutionStatus.FAILED,
}

STEP_TRANSITIONS: Dict[Tuple[StepStatus, str], StepStatus] = {
    (StepStatus.PENDING, "start"): StepStatus.RUNNING,
    (StepStatus.RUNNING, "complete"): StepStatus.COMPLETED,
    (StepStatus.RUNNING, "fail"): StepStatus.FAILED,
    (StepStatus.RUNNING, "skip"): StepStatus.SKIPPED,
    (StepStatus.FAILED, "retry"): StepStatus.RUNNING,
    (StepStatus.RUNNING, "suspend"): StepStatus.WAITING,
    (StepStatus.WAITING, "resume"): StepStatus.RUNNING,
    (StepStatus.WAITING, "fail"): StepStatus.FAILED,
}

S = TypeVar("S", bound=Enum)


class StateMachine(Generic[S]):
    """Applies named events against a fixed transition table.

    Illegal events leave the state untouched.
    """

    def __init__(self, initial: S, transitions: Dict[Tuple[S, str], S]) -> None:
        self._state = initial
        self._transitions = transitions

    @property
    def state(self) -> S:
        return self._state

    def can_transition(self, event: str) -> bool:
        return (self._state, event) in self._transitions

    def transition(self, event: str) -> bool:
        target = self._transitions.get((self._state, event))
        if target is None:
            logger.warning(
                f"Invalid transition: event '{event}' from state '{self._state.value}'"
            )
            return False
        self._state = target
        return True

    def require(self, event: str) -> S:
        """Apply ``event`` or raise :class:`InvalidTransitionError`."""
        previous = self._state
        if not self.transition(event):
            raise InvalidTransitionError(
                f"Invalid transition: cannot {event} from '{previous.value}'"
            )
        return self._state

    def reset(self, state: S) -> None:
        self._state = state


class ExecutionStateMachine(StateMachine[ExecutionStatus]):
    def __init__(self, initial: ExecutionStatus | str = ExecutionStatus.PENDING) -> None:
        super().__init__(ExecutionStatus(initial), EXECUTION_TRANSITIONS)


class StepStateMachine(StateMachine[StepStatus]):
    def __init__(self, initial: StepStatus | str = StepStatus.PENDING) -> None:
        super().__init__(StepStatus(initial), STEP_TRANSITIONS)
