"""Pydantic configuration models for SpecViz.

All settings can be overridden via environment variables with the ``SPECVIZ_``
prefix.  For example, ``SPECVIZ_GEN_LOOKAHEAD=3`` overrides the number of
tokens drafted before each verification pass.

Settings can also be loaded from a YAML or JSON config file using
:func:`load_config_file` and passed as constructor kwargs.  Priority
(highest → lowest):
    1. Constructor kwargs (CLI arguments, then config file values)
    2. Environment variables (``SPECVIZ_*`` prefix)
    3. Field defaults

Example YAML config file::

    draft:
      model_name: "google/gemma-3-270m-it"
      temperature: 1.0
    target:
      model_name: "google/gemma-3-1b-it"
      device: "cuda:0"
    generation:
      lookahead: 4
      max_new_tokens: 256
      system_prompt: "You are a concise assistant."

Usage::

    from specviz.core.config import GenerationConfig, load_config_file

    file_cfg = load_config_file("specviz.yaml")
    cfg = GenerationConfig(**file_cfg.get("generation", {}))
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class BackendConfig(BaseSettings):
    """Settings shared by the draft and target model backends."""

    model_name: str = Field(
        default="google/gemma-3-270m-it",
        description="HuggingFace model identifier.",
    )
    device: str = Field(
        default="cpu",
        description="Torch device string (e.g., 'cuda:0', 'cpu').",
    )
    dtype: Literal["float32", "float16", "bfloat16"] = Field(
        default="float32",
        description="Weight precision used when loading the model.",
    )
    temperature: float = Field(
        default=1.0,
        ge=0.0,
        description="Softmax temperature applied to this model's logits. 0.0 = greedy.",
    )

    model_config = {"protected_namespaces": ()}


class DraftBackendConfig(BackendConfig):
    """Configuration for the draft model (small, fast)."""

    model_config = {"env_prefix": "SPECVIZ_DRAFT_", "protected_namespaces": ()}


class TargetBackendConfig(BackendConfig):
    """Configuration for the target model (large, authoritative)."""

    model_name: str = Field(
        default="google/gemma-3-1b-it",
        description="HuggingFace model identifier for the target model.",
    )

    model_config = {"env_prefix": "SPECVIZ_TARGET_", "protected_namespaces": ()}


class GenerationConfig(BaseSettings):
    """Configuration for the generation state machine and worker."""

    lookahead: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Maximum number of tokens drafted before a verification pass.",
    )
    max_new_tokens: int = Field(
        default=128,
        ge=1,
        description="Generation stops once this many tokens follow the prompt.",
    )
    eot_token_id: int | None = Field(
        default=None,
        ge=0,
        description="End-of-turn token id. Resolved from the tokenizer when unset.",
    )
    system_prompt: str | None = Field(
        default=None,
        description="Optional system preamble prepended to every prompt.",
    )
    seed: int | None = Field(
        default=None,
        description="Seed for the per-session random stream. None = nondeterministic.",
    )
    tokenizer_model: str | None = Field(
        default=None,
        description="Tokenizer to use. Defaults to the draft model; both models "
        "must share a vocabulary.",
    )
    start_paused: bool = Field(
        default=False,
        description="If True, a start command prepares the session without "
        "launching the run loop; drive it with step/resume.",
    )

    model_config = {"env_prefix": "SPECVIZ_GEN_"}


# ============================================================================
# Config File Loader
# ============================================================================


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or JSON file.

    The file should contain top-level keys matching the config sections:
    ``draft``, ``target``, and/or ``generation``.  Each key maps to a dict
    of field names → values.

    Args:
        path: Path to the config file (``.yaml``, ``.yml``, or ``.json``).

    Returns:
        The parsed top-level mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file format is unsupported or the content is not
            a mapping.
    """
    filepath = Path(path)
    if not filepath.exists():
        raise FileNotFoundError(f"Config file not found: {filepath}")

    suffix = filepath.suffix.lower()
    text = filepath.read_text(encoding="utf-8")

    if suffix in (".yaml", ".yml"):
        import yaml

        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError(
            f"Unsupported config file format '{suffix}'. Use .yaml, .yml, or .json."
        )

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a top-level mapping, got {type(data).__name__}")

    unknown = set(data) - {"draft", "target", "generation"}
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", sorted(unknown))

    logger.info("Loaded config from %s (sections: %s)", filepath, list(data.keys()))
    return data
