"""Engine — the steppable draft → verify → sample state machine."""

from specviz.workers.engine.state_machine import (
    GenerationSession,
    RunHandle,
    SpeculativeStateMachine,
    Stage,
    StepOutcome,
)

__all__ = [
    "GenerationSession",
    "RunHandle",
    "SpeculativeStateMachine",
    "Stage",
    "StepOutcome",
]
