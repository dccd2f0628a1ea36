"""Generation worker: applies controller commands and streams events back.

The worker owns at most one :class:`GenerationSession` at a time.  Commands
are handled strictly in arrival order; the run-to-completion loop runs as
an ``asyncio`` task alongside the command stream, so ``pause`` and ``step``
can be issued while it is in flight.  Per-session locking in the state
machine keeps a manual step and the loop from overlapping.

Usage::

    worker = GenerationWorker(machine, tokenizer, GenerationConfig())
    serve_task = asyncio.create_task(worker.serve())

    await worker.submit({"type": "start", "prompt": "2+2=", "sessionId": 1})
    async for event in worker.events():
        print(event.to_wire())
        if event.type in ("sessionDone", "sessionError"):
            break

    await worker.submit(ShutdownCommand())
    await serve_task
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from typing import Any

from specviz.core.config import GenerationConfig
from specviz.core.errors import (
    InferenceError,
    NumericError,
    ProtocolError,
)
from specviz.workers.controller.protocol import (
    ModelLoadProgress,
    PauseCommand,
    ResumeCommand,
    SessionDone,
    SessionError,
    SessionStarted,
    ShutdownCommand,
    StageUpdate,
    StartCommand,
    StepCommand,
    StopCommand,
    WorkerEvent,
    WorkerReady,
    parse_command,
)
from specviz.workers.engine.state_machine import (
    GenerationSession,
    RunHandle,
    SpeculativeStateMachine,
    StepOutcome,
)
from specviz.workers.inference.backend import HuggingFaceBackend
from specviz.workers.inference.tokenizer import ChatTokenizer, build_turns

logger = logging.getLogger(__name__)


class GenerationWorker:
    """Command/event front end for a :class:`SpeculativeStateMachine`.

    Args:
        machine: The state machine driving draft/target backends.
        tokenizer: Chat templating and decoding.
        config: Generation settings (system prompt, default pause mode).
        events: Queue receiving emitted events; created if omitted.
    """

    def __init__(
        self,
        machine: SpeculativeStateMachine,
        tokenizer: ChatTokenizer,
        config: GenerationConfig | None = None,
        events: asyncio.Queue[WorkerEvent] | None = None,
    ) -> None:
        self.machine = machine
        self.tokenizer = tokenizer
        self.config = config or machine.config
        self.event_queue: asyncio.Queue[WorkerEvent] = events if events is not None else asyncio.Queue()
        self._commands: asyncio.Queue[Any] = asyncio.Queue()
        self._seq = itertools.count()
        self._session: GenerationSession | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._loop_handle: RunHandle | None = None

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def session(self) -> GenerationSession | None:
        return self._session

    @property
    def is_running(self) -> bool:
        """Whether a run-to-completion loop is currently in flight."""
        return self._loop_task is not None and not self._loop_task.done()

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #

    def _emit(self, event_cls: type[WorkerEvent], **fields: Any) -> WorkerEvent:
        event = event_cls(seq=next(self._seq), **fields)
        self.event_queue.put_nowait(event)
        return event

    async def events(self) -> AsyncIterator[WorkerEvent]:
        """Yield events as they are emitted (never ends on its own)."""
        while True:
            yield await self.event_queue.get()

    def _report_progress(self, component: str, percent: float) -> None:
        self._emit(ModelLoadProgress, component=component, percent_complete=percent)

    async def load_models(self, *backends: HuggingFaceBackend) -> None:
        """Load model backends, streaming progress, then announce readiness.

        Raises:
            InferenceError: A backend failed to load.  A ``SessionError``
                without a session id is emitted first and no ``WorkerReady``
                follows.
        """
        loop = asyncio.get_running_loop()

        # load() runs in a thread; queue access must happen on the loop.
        def progress(component: str, percent: float) -> None:
            loop.call_soon_threadsafe(self._report_progress, component, percent)

        for backend in backends:
            if backend.is_loaded:
                continue
            try:
                await asyncio.to_thread(backend.load, progress)
            except Exception as exc:
                logger.error("Failed to load %s model", backend.component, exc_info=exc)
                message = f"{backend.component} model failed to load: {exc}"
                self._emit(SessionError, message=message)
                raise InferenceError(message) from exc
        self._emit(WorkerReady)

    # ------------------------------------------------------------------ #
    # Command intake
    # ------------------------------------------------------------------ #

    async def submit(self, command: Any) -> None:
        """Queue a command (model or raw mapping) for :meth:`serve`."""
        await self._commands.put(command)

    async def serve(self) -> None:
        """Handle queued commands one at a time until a shutdown command."""
        while True:
            command = parse_command(await self._commands.get())
            await self.handle(command)
            if isinstance(command, ShutdownCommand):
                return

    async def handle(self, command: Any) -> None:
        """Apply a single command immediately."""
        command = parse_command(command)

        try:
            if isinstance(command, StartCommand):
                await self._start(command)
            elif isinstance(command, PauseCommand):
                await self._pause()
            elif isinstance(command, ResumeCommand):
                self._resume()
            elif isinstance(command, StepCommand):
                await self._step()
            elif isinstance(command, StopCommand):
                await self._cancel_active()
            elif isinstance(command, ShutdownCommand):
                await self.close()
            else:
                logger.debug("Ignoring unrecognized command")
        except ProtocolError as exc:
            logger.debug("Command %s ignored: %s", type(command).__name__, exc)

    # ------------------------------------------------------------------ #
    # Command handlers
    # ------------------------------------------------------------------ #

    async def _start(self, command: StartCommand) -> None:
        await self._cancel_active()

        try:
            turns = build_turns(command.prompt, self.config.system_prompt)
            prompt_ids = await asyncio.to_thread(self.tokenizer.apply_chat_template, turns)
            session = self.machine.new_session(command.session_id, prompt_ids)
        except InferenceError as exc:
            logger.error("Session %d failed to tokenize prompt: %s", command.session_id, exc)
            self._emit(SessionError, session_id=command.session_id, message=str(exc))
            return
        except Exception as exc:
            logger.error("Session %d could not start", command.session_id, exc_info=exc)
            self._emit(SessionError, session_id=command.session_id, message=str(exc))
            return

        self._session = session
        self._emit(SessionStarted, session_id=session.session_id)
        logger.info("Session %d started (prompt=%r)", session.session_id, command.prompt[:80])

        paused = command.paused if command.paused is not None else self.config.start_paused
        if not paused:
            self._launch_loop(session)

    async def _pause(self) -> None:
        session = self._require_session()
        if self._loop_handle is not None:
            self._loop_handle.stop()
        await self._join_loop()
        logger.info("Session %d paused at stage %s", session.session_id, session.stage.value)

    def _resume(self) -> None:
        session = self._require_session()
        if self.is_running:
            logger.debug("Session %d already running", session.session_id)
            return
        logger.info("Session %d resumed at stage %s", session.session_id, session.stage.value)
        self._launch_loop(session)

    async def _step(self) -> None:
        session = self._require_session()
        try:
            outcome = await self.machine.step(session)
            await self._publish(session, outcome)
        except ProtocolError:
            raise
        except Exception as exc:
            self._fail(session, exc)

    async def _cancel_active(self) -> None:
        session = self._session
        if session is None:
            return
        session.cancel()
        if self._loop_handle is not None:
            self._loop_handle.stop()
        await self._join_loop()
        self._session = None
        logger.info("Session %d cancelled", session.session_id)

    def _require_session(self) -> GenerationSession:
        session = self._session
        if session is None or not session.active:
            raise ProtocolError("no active session")
        return session

    # ------------------------------------------------------------------ #
    # Run loop
    # ------------------------------------------------------------------ #

    def _launch_loop(self, session: GenerationSession) -> None:
        handle = RunHandle()
        self._loop_handle = handle
        self._loop_task = asyncio.create_task(
            self._drive(session, handle),
            name=f"specviz-session-{session.session_id}",
        )

    async def _drive(self, session: GenerationSession, handle: RunHandle) -> None:
        async def on_outcome(outcome: StepOutcome) -> None:
            await self._publish(session, outcome)

        try:
            await self.machine.run(session, handle, on_outcome)
        except Exception as exc:
            self._fail(session, exc)

    async def _join_loop(self) -> None:
        task = self._loop_task
        if task is not None and not task.done():
            await task
        self._loop_task = None
        self._loop_handle = None

    async def _publish(self, session: GenerationSession, outcome: StepOutcome) -> None:
        for update in outcome.updates:
            text = self.tokenizer.decode(update.token_ids, skip_special=True)
            self._emit(
                StageUpdate,
                session_id=session.session_id,
                stage=update.stage,
                token=text,
                token_ids=update.token_ids,
            )

        if outcome.finished:
            self._emit(
                SessionDone,
                session_id=session.session_id,
                reason=outcome.reason or "finished",
                text=self.tokenizer.decode(session.generated_tokens, skip_special=True),
                generated_tokens=len(session.generated_tokens),
                stats=session.stats.to_dict(),
            )

    def _fail(self, session: GenerationSession, exc: Exception) -> None:
        session.active = False
        if isinstance(exc, (NumericError, InferenceError)):
            logger.error("Session %d failed: %s", session.session_id, exc)
        else:
            logger.error("Session %d hit an internal error", session.session_id, exc_info=exc)
        self._emit(SessionError, session_id=session.session_id, message=str(exc))

    async def close(self) -> None:
        """Cancel the active session and wait for its loop to exit."""
        await self._cancel_active()
