"""Tokenizer collaborator: chat templating, decoding, end-of-turn lookup."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from transformers import AutoTokenizer

from specviz.core.errors import TokenizerError

logger = logging.getLogger(__name__)

# Gemma-style chat models close every turn with this token.
END_OF_TURN_TOKEN = "<end_of_turn>"


def build_turns(prompt: str, system_prompt: str | None = None) -> list[dict[str, str]]:
    """Build the role-structured turns for a single user prompt."""
    turns: list[dict[str, str]] = []
    if system_prompt:
        turns.append({"role": "system", "content": system_prompt})
    turns.append({"role": "user", "content": prompt})
    return turns


class ChatTokenizer:
    """Thin wrapper around a HuggingFace tokenizer.

    The underlying ``AutoTokenizer`` is loaded on first use.

    Args:
        model_name: HuggingFace model id or local path.
        eot_token_id: Explicit end-of-turn id; overrides tokenizer lookup.
    """

    def __init__(self, model_name: str, eot_token_id: int | None = None) -> None:
        self.model_name = model_name
        self._eot_override = eot_token_id
        self._tokenizer: Any = None

    def _ensure_tokenizer(self) -> Any:
        if self._tokenizer is None:
            try:
                self._tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            except Exception as exc:
                raise TokenizerError(f"Could not load tokenizer {self.model_name}: {exc}") from exc
            logger.info("Tokenizer loaded: %s", self.model_name)
        return self._tokenizer

    def apply_chat_template(self, turns: Sequence[Mapping[str, str]]) -> list[int]:
        """Encode *turns* with the model's chat template, ready for generation.

        Raises:
            TokenizerError: If the tokenizer cannot be loaded, the template
                rejects the turns (e.g. a system role it does not support), or
                the result is not a flat list of ints.
        """
        tokenizer = self._ensure_tokenizer()
        try:
            encoded = tokenizer.apply_chat_template(
                [dict(t) for t in turns],
                tokenize=True,
                add_generation_prompt=True,
            )
        except Exception as exc:
            raise TokenizerError(f"Chat template failed: {exc}") from exc
        # Newer transformers releases return a BatchEncoding here.
        if isinstance(encoded, Mapping):
            encoded = encoded.get("input_ids")
        if hasattr(encoded, "tolist"):
            encoded = encoded.tolist()

        if not isinstance(encoded, list) or not all(isinstance(t, int) for t in encoded):
            raise TokenizerError("Tokenization failed: chat template did not return token ids")
        if not encoded:
            raise TokenizerError("Tokenization failed: chat template returned no tokens")
        return encoded

    def decode(self, tokens: Sequence[int], skip_special: bool = True) -> str:
        return self._ensure_tokenizer().decode(list(tokens), skip_special_tokens=skip_special)

    @property
    def eot_token_id(self) -> int:
        """End-of-turn sentinel id.

        Resolution order: explicit override, the ``<end_of_turn>`` token when
        the vocabulary has one, then ``eos_token_id``.
        """
        if self._eot_override is not None:
            return self._eot_override

        tokenizer = self._ensure_tokenizer()
        vocab = tokenizer.get_vocab()
        if END_OF_TURN_TOKEN in vocab:
            return int(vocab[END_OF_TURN_TOKEN])
        if tokenizer.eos_token_id is None:
            raise TokenizerError(f"Tokenizer {self.model_name} defines no end-of-turn token")
        return int(tokenizer.eos_token_id)
