"""Stage state machine for an agent session.

Uses the transitions library to enforce the order in which a session moves
through its progress stages: strictly forward, with a single ``fail`` exit from
any non-terminal stage. ``completed`` and ``failed`` are terminal.
"""

from __future__ import annotations

import logging
from typing import Optional

from transitions import Machine, MachineError

from agentforge_runner.models import ProgressStage

logger = logging.getLogger(__name__)

FORWARD_ORDER = [
    ProgressStage.PENDING,
    ProgressStage.CLONING,
    ProgressStage.LOADING,
    ProgressStage.EXECUTING,
    ProgressStage.CAPTURING,
    ProgressStage.COMMITTING,
    ProgressStage.COMPLETED,
]

TERMINAL_STAGES = frozenset({ProgressStage.COMPLETED, ProgressStage.FAILED})


class InvalidStageTransition(Exception):
    """Raised when a session is moved to a stage it cannot reach."""

    def __init__(self, source: str, dest: str, message: Optional[str] = None) -> None:
        self.source = source
        self.dest = dest
        super().__init__(message or f"Invalid stage transition from '{source}' to '{dest}'")


def _build_transitions() -> list[dict[str, object]]:
    transitions: list[dict[str, object]] = []
    for index, source in enumerate(FORWARD_ORDER[:-1]):
        # Any later stage is reachable; skipped stages count as complete
        for dest in FORWARD_ORDER[index + 1:]:
            transitions.append(
                {"trigger": f"to_{dest.value}", "source": source.value, "dest": dest.value}
            )
        transitions.append(
            {"trigger": "fail", "source": source.value, "dest": ProgressStage.FAILED.value}
        )
    return transitions


class SessionStageMachine:
    """Tracks the current progress stage of one session.

    Example usage:
        >>> sm = SessionStageMachine()
        >>> sm.advance_to(ProgressStage.CLONING)
        >>> sm.current_stage.value
        'cloning'
        >>> sm.advance_to(ProgressStage.FAILED)
        >>> sm.is_terminal()
        True
    """

    STATES = [stage.value for stage in ProgressStage]
    TRANSITIONS = _build_transitions()

    def __init__(self, initial_stage: ProgressStage = ProgressStage.PENDING) -> None:
        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=ProgressStage(initial_stage).value,
            auto_transitions=False,
            send_event=False,
        )

    @property
    def current_stage(self) -> ProgressStage:
        return ProgressStage(getattr(self, "state"))

    def is_terminal(self) -> bool:
        return self.current_stage in TERMINAL_STAGES

    def advance_to(self, stage: ProgressStage) -> None:
        """Move forward to a stage. Staying in the current stage is a no-op.

        Raises:
            InvalidStageTransition: If the move goes backward or leaves a terminal stage
        """
        stage = ProgressStage(stage)
        if stage == self.current_stage:
            return
        trigger = "fail" if stage == ProgressStage.FAILED else f"to_{stage.value}"
        source = self.current_stage
        try:
            self.trigger(trigger)
        except (MachineError, AttributeError) as e:
            raise InvalidStageTransition(source.value, stage.value) from e
        logger.debug("Stage %s -> %s", source.value, stage.value)
