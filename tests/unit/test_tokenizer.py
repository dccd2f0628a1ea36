"""Unit tests for specviz.workers.inference.tokenizer."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import torch

from specviz.core.errors import InferenceError, TokenizerError
from specviz.workers.inference.tokenizer import ChatTokenizer, build_turns

_FROM_PRETRAINED = "specviz.workers.inference.tokenizer.AutoTokenizer.from_pretrained"


def _hf_tokenizer(encoded=None, vocab=None, eos_token_id=1) -> MagicMock:
    tok = MagicMock()
    tok.apply_chat_template.return_value = encoded if encoded is not None else [2, 106, 7]
    tok.get_vocab.return_value = vocab if vocab is not None else {}
    tok.eos_token_id = eos_token_id
    tok.decode.return_value = "decoded"
    return tok


class TestBuildTurns:
    def test_user_only(self) -> None:
        assert build_turns("2+2=") == [{"role": "user", "content": "2+2="}]

    def test_with_system_prompt(self) -> None:
        turns = build_turns("hi", system_prompt="Be brief.")
        assert turns == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
        ]


class TestChatTokenizer:
    """Tests for ChatTokenizer with AutoTokenizer patched out."""

    def test_loads_lazily_once(self) -> None:
        with patch(_FROM_PRETRAINED, return_value=_hf_tokenizer()) as from_pretrained:
            tokenizer = ChatTokenizer("org/tiny")
            from_pretrained.assert_not_called()
            tokenizer.apply_chat_template(build_turns("a"))
            tokenizer.decode([1])
        from_pretrained.assert_called_once_with("org/tiny")

    def test_apply_chat_template(self) -> None:
        hf = _hf_tokenizer(encoded=[2, 106, 7])
        with patch(_FROM_PRETRAINED, return_value=hf):
            ids = ChatTokenizer("org/tiny").apply_chat_template(build_turns("2+2="))
        assert ids == [2, 106, 7]
        hf.apply_chat_template.assert_called_once_with(
            [{"role": "user", "content": "2+2="}],
            tokenize=True,
            add_generation_prompt=True,
        )

    @pytest.mark.parametrize(
        "encoded",
        [{"input_ids": [4, 5]}, torch.tensor([4, 5])],
    )
    def test_accepts_encoding_containers(self, encoded) -> None:
        with patch(_FROM_PRETRAINED, return_value=_hf_tokenizer(encoded=encoded)):
            assert ChatTokenizer("m").apply_chat_template(build_turns("x")) == [4, 5]

    @pytest.mark.parametrize("encoded", ["<bos>hello", [[4, 5]], [1.5, 2.0]])
    def test_rejects_non_token_output(self, encoded) -> None:
        with patch(_FROM_PRETRAINED, return_value=_hf_tokenizer(encoded=encoded)):
            with pytest.raises(TokenizerError, match="Tokenization failed"):
                ChatTokenizer("m").apply_chat_template(build_turns("x"))

    def test_rejects_empty_output(self) -> None:
        hf = _hf_tokenizer()
        hf.apply_chat_template.return_value = []
        with patch(_FROM_PRETRAINED, return_value=hf):
            with pytest.raises(TokenizerError, match="no tokens"):
                ChatTokenizer("m").apply_chat_template(build_turns("x"))

    def test_template_rejection_wrapped(self) -> None:
        hf = _hf_tokenizer()
        hf.apply_chat_template.side_effect = ValueError("System role not supported")
        with patch(_FROM_PRETRAINED, return_value=hf):
            with pytest.raises(TokenizerError, match="System role not supported") as excinfo:
                ChatTokenizer("m").apply_chat_template(build_turns("x", system_prompt="Be brief."))
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_load_failure_wrapped(self) -> None:
        with patch(_FROM_PRETRAINED, side_effect=OSError("no such repo")):
            with pytest.raises(TokenizerError, match="Could not load tokenizer org/missing"):
                ChatTokenizer("org/missing").apply_chat_template(build_turns("x"))

    def test_tokenizer_error_is_inference_error(self) -> None:
        assert issubclass(TokenizerError, InferenceError)

    def test_decode_skips_special(self) -> None:
        hf = _hf_tokenizer()
        with patch(_FROM_PRETRAINED, return_value=hf):
            assert ChatTokenizer("m").decode((3, 4)) == "decoded"
        hf.decode.assert_called_once_with([3, 4], skip_special_tokens=True)


class TestEndOfTurn:
    """Resolution order for the end-of-turn sentinel."""

    def test_override_wins(self) -> None:
        with patch(_FROM_PRETRAINED) as from_pretrained:
            assert ChatTokenizer("m", eot_token_id=9).eot_token_id == 9
        from_pretrained.assert_not_called()

    def test_end_of_turn_token_in_vocab(self) -> None:
        hf = _hf_tokenizer(vocab={"<end_of_turn>": 106, "<eos>": 1})
        with patch(_FROM_PRETRAINED, return_value=hf):
            assert ChatTokenizer("m").eot_token_id == 106

    def test_falls_back_to_eos(self) -> None:
        with patch(_FROM_PRETRAINED, return_value=_hf_tokenizer(vocab={"a": 0}, eos_token_id=50256)):
            assert ChatTokenizer("m").eot_token_id == 50256

    def test_no_sentinel(self) -> None:
        with patch(_FROM_PRETRAINED, return_value=_hf_tokenizer(eos_token_id=None)):
            with pytest.raises(TokenizerError, match="no end-of-turn"):
                ChatTokenizer("m").eot_token_id
