"""Model and tokenizer stand-ins shared by the test suite."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

import torch

from specviz.core.errors import TokenizerError

VOCAB_SIZE = 16
EOT_TOKEN_ID = 15
PROMPT_IDS = [1, 2]

NextToken = Callable[[list[int]], int]


def count_up(prefix: list[int]) -> int:
    """Predict ``last + 1``: a model that always continues the count."""
    return (prefix[-1] + 1) % VOCAB_SIZE


class ScriptedBackend:
    """Causal LM stand-in whose logits at position ``i`` peak on ``next_token(prefix[: i + 1])``.

    Used with temperature 0 the resulting distributions are exact one-hots,
    which makes every accept/reject decision independent of the random draw.
    """

    def __init__(self, next_token: NextToken = count_up, vocab_size: int = VOCAB_SIZE) -> None:
        self.next_token = next_token
        self.vocab_size = vocab_size
        self.calls: list[list[int]] = []

    async def forward(self, input_ids: list[int], attention_mask: list[int]) -> torch.Tensor:
        assert attention_mask == [1] * len(input_ids)
        self.calls.append(list(input_ids))
        await asyncio.sleep(0)
        logits = torch.zeros(len(input_ids), self.vocab_size)
        for i in range(len(input_ids)):
            logits[i, self.next_token(input_ids[: i + 1])] = 10.0
        return logits


class SmoothBackend:
    """Stand-in producing dense, prefix-dependent logits for stochastic runs."""

    def __init__(self, phase: float = 0.0, vocab_size: int = VOCAB_SIZE) -> None:
        self.phase = phase
        self.vocab_size = vocab_size
        self.calls = 0

    async def forward(self, input_ids: list[int], attention_mask: list[int]) -> torch.Tensor:
        self.calls += 1
        await asyncio.sleep(0)
        rows = []
        vocab = torch.arange(self.vocab_size, dtype=torch.float32)
        for i in range(len(input_ids)):
            key = float(sum(input_ids[: i + 1]) % 13 + 1)
            rows.append(2.0 * torch.sin(vocab * key + self.phase))
        return torch.stack(rows)


class PaddedBackend:
    """Wraps a backend and appends ``extra`` logit columns, like a padded output layer."""

    def __init__(self, inner, extra: int = 2, fill: float = 0.0) -> None:
        self.inner = inner
        self.extra = extra
        self.fill = fill

    async def forward(self, input_ids: list[int], attention_mask: list[int]) -> torch.Tensor:
        logits = await self.inner.forward(input_ids, attention_mask)
        pad = torch.full((logits.shape[0], self.extra), self.fill, dtype=logits.dtype)
        return torch.cat([logits, pad], dim=1)


class FailingBackend:
    """Backend whose forward pass always blows up."""

    def __init__(self) -> None:
        self.calls = 0

    async def forward(self, input_ids: list[int], attention_mask: list[int]) -> torch.Tensor:
        self.calls += 1
        raise RuntimeError("device lost")


class FakeTokenizer:
    """Tokenizer stand-in: every prompt encodes to ``PROMPT_IDS``; tokens decode to ``<id>``."""

    def __init__(self, eot_token_id: int = EOT_TOKEN_ID, fail: bool = False) -> None:
        self._eot = eot_token_id
        self.fail = fail
        self.templated: list[list[dict[str, str]]] = []

    def apply_chat_template(self, turns: Sequence[dict[str, str]]) -> list[int]:
        if self.fail:
            raise TokenizerError("Tokenization failed: chat template did not return token ids")
        self.templated.append([dict(t) for t in turns])
        return list(PROMPT_IDS)

    def decode(self, tokens: Sequence[int], skip_special: bool = True) -> str:
        return "".join(f"<{t}>" for t in tokens if not (skip_special and t == self._eot))

    @property
    def eot_token_id(self) -> int:
        return self._eot
