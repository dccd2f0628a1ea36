"""Model backends and the inference adapter used by the state machine.

A backend performs exactly one full forward pass per call over a single
sequence (batch size 1) and returns logits for every position; no KV cache
is carried between calls.  Two backends are held at a time, a draft and a
target, with identical interfaces.

``ModelRunner`` wraps a backend and turns raw logits into validated
distributions.  Any failure inside the backend surfaces as
:class:`~specviz.core.errors.InferenceError`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import torch
from huggingface_hub import snapshot_download
from tqdm.auto import tqdm
from transformers import AutoModelForCausalLM

from specviz.core.config import BackendConfig
from specviz.core.errors import InferenceError
from specviz.core.probability import Distribution, softmax
from specviz.core.telemetry import TelemetryLogger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]

_DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}

# Files needed to run a causal LM from safetensors weights.
_WEIGHT_PATTERNS = ["*.json", "*.safetensors", "*.model", "*.txt", "tokenizer*"]


@runtime_checkable
class ModelBackend(Protocol):
    """One causal LM forward pass per call, batch size 1."""

    async def forward(
        self,
        input_ids: list[int],
        attention_mask: list[int],
    ) -> torch.Tensor:
        """Return logits of shape ``[len(input_ids), vocab_size]``."""
        ...


def _progress_bar_class(component: str, callback: ProgressCallback) -> type[tqdm]:
    """Build a ``tqdm`` subclass that reports download progress to *callback*."""

    class _ProgressBar(tqdm):
        def update(self, n: float | None = 1) -> bool | None:
            displayed = super().update(n)
            if self.total and not self.disable:
                callback(component, min(100.0, 100.0 * self.n / self.total))
            return displayed

    return _ProgressBar


class HuggingFaceBackend:
    """Causal LM backend built on ``transformers.AutoModelForCausalLM``.

    The forward pass runs in a worker thread so the event loop stays free
    while the model computes; awaiting it is the only suspension point in
    a generation step.

    Args:
        config: Model id, device, dtype.
        component: Label used in logs and progress reports (``"draft"`` or
            ``"target"``).
    """

    def __init__(self, config: BackendConfig, component: str) -> None:
        self.config = config
        self.component = component
        self.device = torch.device(config.device)
        self._model: Any = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self, progress: ProgressCallback | None = None) -> None:
        """Fetch (if needed) and load the model weights.

        Args:
            progress: Optional ``(component, percent_complete)`` callback
                invoked while weight files are being fetched.
        """
        source = self.config.model_name
        if not Path(source).is_dir():
            source = snapshot_download(
                repo_id=self.config.model_name,
                allow_patterns=_WEIGHT_PATTERNS,
                tqdm_class=_progress_bar_class(self.component, progress) if progress else None,
            )

        self._model = (
            AutoModelForCausalLM.from_pretrained(
                source,
                torch_dtype=_DTYPES[self.config.dtype],
            )
            .to(self.device)
            .eval()
        )
        if progress is not None:
            progress(self.component, 100.0)

        logger.info(
            "%s model loaded: %s on %s (%s)",
            self.component.capitalize(),
            self.config.model_name,
            self.device,
            self.config.dtype,
        )

    async def forward(
        self,
        input_ids: list[int],
        attention_mask: list[int],
    ) -> torch.Tensor:
        if self._model is None:
            raise InferenceError(f"{self.component} model not loaded. Call load() first.")
        return await asyncio.to_thread(self._forward_sync, input_ids, attention_mask)

    def _forward_sync(self, input_ids: list[int], attention_mask: list[int]) -> torch.Tensor:
        ids = torch.tensor([input_ids], dtype=torch.long, device=self.device)
        mask = torch.tensor([attention_mask], dtype=torch.long, device=self.device)
        with torch.no_grad():
            out = self._model(input_ids=ids, attention_mask=mask, use_cache=False)
        return out.logits[0].float().cpu()


class ModelRunner:
    """Adapter from a :class:`ModelBackend` to next-token distributions.

    Args:
        backend: The model backend to call.
        name: ``"draft"`` or ``"target"``; used for span names and errors.
        temperature: Softmax temperature for this model's logits.
        telemetry: Optional span collector; one span per forward pass.
    """

    def __init__(
        self,
        backend: ModelBackend,
        name: str,
        temperature: float = 1.0,
        telemetry: TelemetryLogger | None = None,
    ) -> None:
        self.backend = backend
        self.name = name
        self.temperature = temperature
        self._telemetry = telemetry

    async def logits(self, tokens: Sequence[int]) -> torch.Tensor:
        """Run one forward pass and return validated ``[seq_len, vocab]`` logits.

        Raises:
            InferenceError: On empty input, a backend failure, or a result
                whose shape does not match the input.
        """
        ids = list(tokens)
        if not ids:
            raise InferenceError(f"{self.name} forward pass needs at least one token")
        mask = [1] * len(ids)

        span = (
            self._telemetry.span(f"{self.name}_forward", seq_len=len(ids))
            if self._telemetry is not None
            else contextlib.nullcontext()
        )
        with span:
            try:
                logits = await self.backend.forward(ids, mask)
            except InferenceError:
                raise
            except Exception as exc:
                raise InferenceError(f"{self.name} forward pass failed: {exc}") from exc

        if not isinstance(logits, torch.Tensor):
            raise InferenceError(
                f"{self.name} backend returned {type(logits).__name__}, expected a tensor"
            )
        if logits.ndim != 2 or logits.shape[0] != len(ids) or logits.shape[1] == 0:
            raise InferenceError(
                f"{self.name} backend returned logits of shape {tuple(logits.shape)} "
                f"for {len(ids)} input tokens"
            )
        return logits

    async def next_distribution(self, tokens: Sequence[int]) -> Distribution:
        """Distribution over the token following *tokens*."""
        logits = await self.logits(tokens)
        return softmax(logits[-1], self.temperature)

    async def position_distributions(
        self,
        tokens: Sequence[int],
        start: int,
        count: int,
    ) -> list[Distribution]:
        """One forward pass; distributions at positions ``start .. start+count-1``.

        Position ``i`` predicts token ``i + 1``, so verifying a draft block
        appended to a prefix of length ``n`` uses ``start = n - 1``.
        """
        if start < 0 or start + count > len(tokens):
            raise ValueError(
                f"positions [{start}, {start + count}) out of range for {len(tokens)} tokens"
            )
        logits = await self.logits(tokens)
        return [softmax(logits[i], self.temperature) for i in range(start, start + count)]
