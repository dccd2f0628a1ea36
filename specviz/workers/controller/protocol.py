"""Command and event messages exchanged between a controller and the worker.

Messages are pydantic models so they validate on the way in and serialize
to the camelCase wire form on the way out::

    >>> cmd = parse_command({"type": "start", "prompt": "2+2=", "sessionId": 7})
    >>> cmd.session_id
    7
    >>> StageUpdate(seq=3, session_id=7, stage="verify", token="4").to_wire()["sessionId"]
    7

Unknown or malformed commands parse to ``None`` and are ignored.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class _Message(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ============================================================================
# Commands (controller → worker)
# ============================================================================


class StartCommand(_Message):
    """Begin a new session, cancelling any active one."""

    type: Literal["start"] = "start"
    prompt: str
    session_id: int
    paused: bool | None = Field(
        default=None,
        description="Prepare the session without running it. None = worker default.",
    )


class PauseCommand(_Message):
    """Stop the run loop after the current step; the session stays resumable."""

    type: Literal["pause"] = "pause"


class ResumeCommand(_Message):
    """Restart the run loop from the current stage."""

    type: Literal["resume"] = "resume"


class StepCommand(_Message):
    """Execute exactly one state transition."""

    type: Literal["step"] = "step"


class StopCommand(_Message):
    """Cancel the active session without starting another."""

    type: Literal["stop"] = "stop"


class ShutdownCommand(_Message):
    """Cancel everything and end :meth:`GenerationWorker.serve`."""

    type: Literal["shutdown"] = "shutdown"


Command = Annotated[
    Union[
        StartCommand,
        PauseCommand,
        ResumeCommand,
        StepCommand,
        StopCommand,
        ShutdownCommand,
    ],
    Field(discriminator="type"),
]

_COMMAND_ADAPTER: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(raw: Any) -> Command | None:
    """Validate a raw controller message.

    Returns:
        The parsed command, or ``None`` when *raw* is not a recognizable
        command (the worker ignores those).
    """
    if raw is None:
        return None
    if isinstance(raw, _Message):
        return raw  # type: ignore[return-value]
    try:
        return _COMMAND_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        logger.warning("Ignoring malformed command %r: %d validation error(s)", raw, exc.error_count())
        return None


# ============================================================================
# Events (worker → controller)
# ============================================================================


class WorkerEvent(_Message):
    """Base event.  ``seq`` increases monotonically across all events."""

    seq: int
    session_id: int | None = None


class WorkerReady(WorkerEvent):
    type: Literal["ready"] = "ready"


class ModelLoadProgress(WorkerEvent):
    type: Literal["modelLoadProgress"] = "modelLoadProgress"
    component: str
    percent_complete: float = Field(ge=0.0, le=100.0)


class SessionStarted(WorkerEvent):
    type: Literal["sessionStarted"] = "sessionStarted"


class StageUpdate(WorkerEvent):
    """A token shown at one stage.

    ``reject`` updates carry the discarded draft tokens for display only.
    """

    type: Literal["stageUpdate"] = "stageUpdate"
    stage: Literal["draft", "verify", "sample", "reject"]
    token: str
    token_ids: list[int] = Field(default_factory=list)


class SessionDone(WorkerEvent):
    type: Literal["sessionDone"] = "sessionDone"
    reason: str
    text: str = ""
    generated_tokens: int = 0
    stats: dict[str, float] = Field(default_factory=dict)


class SessionError(WorkerEvent):
    type: Literal["sessionError"] = "sessionError"
    message: str
