"""Steppable speculative decoding state machine.

One generation is a cycle of three stages, each advanced by exactly one
externally invokable step:

    ┌────────┐  block full / EOT drafted  ┌────────┐  all accepted / rejected  ┌────────┐
    │ DRAFT  │───────────────────────────▶│ VERIFY │──────────────────────────▶│ SAMPLE │
    └────────┘                            └────────┘                           └────────┘
        ▲                                                                          │
        └──────────────────────── block cleared, bonus/residual committed ─────────┘

    DRAFT   one draft forward pass, sample one token into the DraftBlock.
    VERIFY  on first entry, one batched target pass over prefix ++ block;
            then one acceptance test at ``verify_index``.  Accepted tokens
            are committed immediately.
    SAMPLE  bonus token (whole block accepted) or residual resample
            (rejection), committed, then back to DRAFT.

After every commit the end-of-turn sentinel and the token budget are
checked; either ends the session.  The same ``step`` drives both single
stepping and the run-to-completion loop in :meth:`SpeculativeStateMachine.run`.

Each session owns its random stream (a seeded ``torch.Generator``), so a
session stepped N times by hand and one run by the loop for N steps commit
identical tokens.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import torch

from specviz.core.config import GenerationConfig
from specviz.core.errors import ProtocolError, StateInvariantError
from specviz.core.probability import Distribution, sample_categorical, truncate, uniform
from specviz.core.telemetry import GenerationStats, TelemetryLogger
from specviz.core.verification import (
    resample_after_rejection,
    sample_bonus,
    verify_position,
)
from specviz.workers.inference.backend import ModelRunner

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Stage the next step will execute."""

    DRAFT = "draft"
    VERIFY = "verify"
    SAMPLE = "sample"


# ============================================================================
# Session State
# ============================================================================


@dataclass
class DraftBlock:
    """The in-flight speculative window.

    Attributes:
        tokens: Drafted token ids, in order.
        distributions: The draft distribution each token was sampled from.
    """

    tokens: list[int] = field(default_factory=list)
    distributions: list[Distribution] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.tokens)

    def append(self, token_id: int, distribution: Distribution) -> None:
        self.tokens.append(token_id)
        self.distributions.append(distribution)

    def clear(self) -> None:
        self.tokens.clear()
        self.distributions.clear()


@dataclass
class VerificationState:
    """Target distributions aligned to the current DraftBlock.

    Attributes:
        target_distributions: ``len(block) + 1`` entries; entry ``t`` scores
            draft position ``t`` and the last entry predicts the token after
            the whole block.
        verify_index: Next draft position to test.  After a rejection it
            stays on the rejected position.
        rejected: Whether the position at ``verify_index`` was rejected.
    """

    target_distributions: list[Distribution]
    verify_index: int = 0
    rejected: bool = False


@dataclass
class GenerationSession:
    """All mutable state of one generation run.

    Only :class:`SpeculativeStateMachine` mutates a session; controllers
    read it and observe the events derived from step outcomes.
    """

    session_id: int
    tokens: list[int]
    prompt_length: int
    generator: torch.Generator
    stage: Stage = Stage.DRAFT
    block: DraftBlock = field(default_factory=DraftBlock)
    verification: VerificationState | None = None
    active: bool = True
    cancelled: bool = False
    finish_reason: str | None = None
    steps: int = 0
    stats: GenerationStats = field(default_factory=GenerationStats)
    step_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def generated_tokens(self) -> list[int]:
        return self.tokens[self.prompt_length :]

    def cancel(self) -> None:
        """Abandon the session; an in-flight step still completes."""
        self.cancelled = True
        self.active = False


@dataclass
class TokenUpdate:
    """Tokens shown at one stage.

    ``stage`` is ``"draft"``, ``"verify"``, ``"sample"`` or ``"reject"``;
    ``reject`` carries discarded draft tokens, which never enter the
    session's token sequence.
    """

    stage: str
    token_ids: list[int]


@dataclass
class StepOutcome:
    """What a single step did.

    Attributes:
        session_id: Session the step ran on.
        stage: Stage that was executed.
        updates: Token updates to report to the controller.
        finished: Whether this step ended the session.
        reason: ``"eot"`` or ``"max_tokens"`` when finished.
    """

    session_id: int
    stage: Stage
    updates: list[TokenUpdate] = field(default_factory=list)
    finished: bool = False
    reason: str | None = None


@dataclass
class RunHandle:
    """Stop flag for one run-to-completion loop."""

    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True


OutcomeCallback = Callable[[StepOutcome], Awaitable[None]]


# ============================================================================
# State Machine
# ============================================================================


class SpeculativeStateMachine:
    """Drives draft → verify → sample over two model runners.

    Args:
        draft: Adapter over the small draft model.
        target: Adapter over the authoritative target model.
        config: Lookahead, token budget, default seed.
        eot_token_id: End-of-turn sentinel.
        telemetry: Optional span collector; one ``step`` span per step.
    """

    def __init__(
        self,
        draft: ModelRunner,
        target: ModelRunner,
        config: GenerationConfig,
        eot_token_id: int,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.draft = draft
        self.target = target
        self.config = config
        self.eot_token_id = eot_token_id
        self._telemetry = telemetry
        # Common vocabulary width, set once draft and target widths are seen to differ.
        self.vocab_width: int | None = None

    def new_session(
        self,
        session_id: int,
        prompt_ids: list[int],
        seed: int | None = None,
    ) -> GenerationSession:
        """Create a session seeded with the encoded prompt.

        Args:
            session_id: Controller-chosen id used to tag events.
            prompt_ids: Templated prompt tokens.
            seed: Random seed; falls back to ``config.seed``, then to a
                nondeterministic seed.
        """
        if not prompt_ids:
            raise ValueError("prompt_ids must contain at least one token")

        generator = torch.Generator()
        seed = seed if seed is not None else self.config.seed
        if seed is None:
            generator.seed()
        else:
            generator.manual_seed(seed)

        logger.info(
            "Session %d created: prompt_len=%d, lookahead=%d, seed=%s",
            session_id,
            len(prompt_ids),
            self.config.lookahead,
            seed,
        )
        return GenerationSession(
            session_id=session_id,
            tokens=list(prompt_ids),
            prompt_length=len(prompt_ids),
            generator=generator,
        )

    # ------------------------------------------------------------------ #
    # Stepping
    # ------------------------------------------------------------------ #

    async def step(self, session: GenerationSession) -> StepOutcome:
        """Execute exactly one state transition.

        Raises:
            ProtocolError: If the session is no longer active.
            NumericError, InferenceError: The step failed; nothing from it
                was committed.
        """
        async with session.step_lock:
            if not session.active:
                raise ProtocolError(f"Session {session.session_id} is not active")
            return await self._step_locked(session)

    async def run(
        self,
        session: GenerationSession,
        handle: RunHandle,
        on_outcome: OutcomeCallback | None = None,
    ) -> int:
        """Step until the session ends, is cancelled, or *handle* is stopped.

        The stop conditions are checked before every step; a stop request
        that arrives mid-step takes effect once that step's forward pass
        has resolved and its tokens are committed.

        Returns:
            Number of steps executed by this loop.
        """
        executed = 0
        while True:
            async with session.step_lock:
                if handle.stopped or session.cancelled or not session.active:
                    break
                outcome = await self._step_locked(session)
                executed += 1
                if on_outcome is not None:
                    await on_outcome(outcome)

        logger.debug(
            "Run loop for session %d exited after %d steps (stopped=%s, cancelled=%s, active=%s)",
            session.session_id,
            executed,
            handle.stopped,
            session.cancelled,
            session.active,
        )
        return executed

    async def _step_locked(self, session: GenerationSession) -> StepOutcome:
        stage = session.stage
        span = (
            self._telemetry.span("step", stage=stage.value, session_id=session.session_id)
            if self._telemetry is not None
            else contextlib.nullcontext()
        )
        with span:
            if stage is Stage.DRAFT:
                outcome = await self._draft_step(session)
            elif stage is Stage.VERIFY:
                outcome = await self._verify_step(session)
            elif stage is Stage.SAMPLE:
                outcome = self._sample_step(session)
            else:
                raise StateInvariantError(f"Unknown stage {stage!r}")

        session.steps += 1
        logger.debug(
            "Session %d step %d: %s -> %s %s",
            session.session_id,
            session.steps,
            stage.value,
            session.stage.value,
            [(u.stage, u.token_ids) for u in outcome.updates],
        )
        return outcome

    async def _draft_step(self, session: GenerationSession) -> StepOutcome:
        context = session.tokens + session.block.tokens
        dist = self._clip(await self.draft.next_distribution(context))
        token_id = sample_categorical(dist, uniform(session.generator))

        session.block.append(token_id, dist)
        session.stats.drafted += 1

        remaining = self.config.max_new_tokens - len(session.generated_tokens)
        block_limit = max(1, min(self.config.lookahead, remaining))
        if len(session.block) >= block_limit or token_id == self.eot_token_id:
            session.stage = Stage.VERIFY

        return StepOutcome(
            session_id=session.session_id,
            stage=Stage.DRAFT,
            updates=[TokenUpdate("draft", [token_id])],
        )

    async def _verify_step(self, session: GenerationSession) -> StepOutcome:
        block = session.block
        if not block.tokens:
            raise StateInvariantError("verify invoked with an empty draft block")

        if session.verification is None:
            # One target pass scores every draft position plus the bonus slot.
            dists = await self.target.position_distributions(
                session.tokens + block.tokens,
                start=len(session.tokens) - 1,
                count=len(block) + 1,
            )
            self._learn_width(block.distributions[0], dists[0])
            session.verification = VerificationState(target_distributions=dists)
            session.stats.target_passes += 1

        state = session.verification
        idx = state.verify_index
        if not 0 <= idx < len(block) or state.rejected:
            raise StateInvariantError(
                f"verify_index {idx} invalid for block of {len(block)} (rejected={state.rejected})"
            )

        token_id = block.tokens[idx]
        verdict = verify_position(
            block.distributions[idx],
            state.target_distributions[idx],
            token_id,
            uniform(session.generator),
        )
        outcome = StepOutcome(session_id=session.session_id, stage=Stage.VERIFY)

        if not verdict.accepted:
            discarded = block.tokens[idx:]
            state.rejected = True
            session.stats.rejected += 1
            session.stats.discarded += len(discarded)
            session.stage = Stage.SAMPLE
            outcome.updates.append(TokenUpdate("reject", list(discarded)))
            return outcome

        state.verify_index += 1
        session.stats.accepted += 1
        if state.verify_index == len(block):
            session.stage = Stage.SAMPLE
        outcome.updates.append(TokenUpdate("verify", [token_id]))
        self._commit(session, token_id, outcome)
        return outcome

    def _sample_step(self, session: GenerationSession) -> StepOutcome:
        state = session.verification
        block = session.block
        if state is None or not block.tokens:
            raise StateInvariantError("sample invoked without a verified draft block")

        idx = state.verify_index
        random_unit = uniform(session.generator)
        if idx == len(block) and not state.rejected:
            token_id = sample_bonus(self._clip(state.target_distributions[idx]), random_unit)
            session.stats.bonus += 1
        elif state.rejected:
            token_id = resample_after_rejection(
                block.distributions[idx],
                state.target_distributions[idx],
                random_unit,
            )
            session.stats.resampled += 1
        else:
            raise StateInvariantError(
                f"sample reached with verify_index {idx} of {len(block)} and no rejection"
            )

        session.stats.blocks += 1
        block.clear()
        session.verification = None
        session.stage = Stage.DRAFT

        outcome = StepOutcome(
            session_id=session.session_id,
            stage=Stage.SAMPLE,
            updates=[TokenUpdate("sample", [token_id])],
        )
        self._commit(session, token_id, outcome)
        return outcome

    def _learn_width(self, draft_dist: Distribution, target_dist: Distribution) -> None:
        draft_width, target_width = draft_dist.shape[0], target_dist.shape[0]
        if draft_width == target_width or self.vocab_width is not None:
            return
        self.vocab_width = min(draft_width, target_width)
        logger.warning(
            "Draft vocabulary width %d differs from target width %d; using the first %d ids",
            draft_width,
            target_width,
            self.vocab_width,
        )

    def _clip(self, dist: Distribution) -> Distribution:
        if self.vocab_width is None:
            return dist
        return truncate(dist, self.vocab_width)

    def _commit(self, session: GenerationSession, token_id: int, outcome: StepOutcome) -> None:
        """Append *token_id* and end the session on EOT or an exhausted budget."""
        session.tokens.append(token_id)

        if token_id == self.eot_token_id:
            reason = "eot"
        elif len(session.generated_tokens) >= self.config.max_new_tokens:
            reason = "max_tokens"
        else:
            return

        session.active = False
        session.finish_reason = reason
        session.block.clear()
        session.verification = None
        session.stage = Stage.DRAFT
        outcome.finished = True
        outcome.reason = reason
        logger.info(
            "Session %d finished (%s): %d tokens generated, acceptance=%.1f%%",
            session.session_id,
            reason,
            len(session.generated_tokens),
            session.stats.acceptance_rate * 100,
        )
