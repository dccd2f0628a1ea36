"""Shared pytest fixtures for SpecViz tests."""

from __future__ import annotations

import pytest
import torch

from specviz.core.config import GenerationConfig
from specviz.workers.engine.state_machine import SpeculativeStateMachine
from specviz.workers.inference.backend import ModelRunner

from tests.fakes import EOT_TOKEN_ID, ScriptedBackend


@pytest.fixture
def generation_config() -> GenerationConfig:
    """Small lookahead and budget with a fixed seed."""
    return GenerationConfig(lookahead=3, max_new_tokens=32, seed=0)


@pytest.fixture
def make_machine(generation_config: GenerationConfig):
    """Factory building a state machine over two backends.

    Defaults to greedy (temperature 0) runners so scripted backends yield
    one-hot distributions.  Keyword overrides are applied to the
    generation config.
    """

    def _make(
        draft_backend=None,
        target_backend=None,
        temperature: float = 0.0,
        eot_token_id: int = EOT_TOKEN_ID,
        **overrides,
    ) -> SpeculativeStateMachine:
        config = generation_config.model_copy(update=overrides) if overrides else generation_config
        return SpeculativeStateMachine(
            draft=ModelRunner(draft_backend or ScriptedBackend(), "draft", temperature),
            target=ModelRunner(target_backend or ScriptedBackend(), "target", temperature),
            config=config,
            eot_token_id=eot_token_id,
        )

    return _make


@pytest.fixture
def sample_logits() -> torch.Tensor:
    """A small 1-D logits vector."""
    return torch.tensor([2.0, 1.0, 0.5, -1.0, -2.0])
