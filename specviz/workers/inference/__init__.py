"""Inference adapter — draft/target model backends and the chat tokenizer."""

from specviz.workers.inference.backend import HuggingFaceBackend, ModelBackend, ModelRunner
from specviz.workers.inference.tokenizer import ChatTokenizer, build_turns

__all__ = [
    "ChatTokenizer",
    "HuggingFaceBackend",
    "ModelBackend",
    "ModelRunner",
    "build_turns",
]
