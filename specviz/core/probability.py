"""Probability utilities over dense vocabulary distributions.

Distributions are 1-D ``torch.float64`` tensors.  Logits coming back from a
half-precision model are promoted before exponentiating so that sums over
large vocabularies stay within tolerance.
"""

from __future__ import annotations

from collections.abc import Sequence

import torch

from specviz.core.errors import NumericError

Distribution = torch.Tensor


def _as_vector(values: torch.Tensor | Sequence[float], what: str) -> torch.Tensor:
    vec = torch.as_tensor(values, dtype=torch.float64)
    if vec.ndim != 1:
        raise NumericError(f"{what} must be 1-D, got shape {tuple(vec.shape)}")
    if vec.numel() == 0:
        raise NumericError(f"{what} is empty")
    if not torch.isfinite(vec).all():
        raise NumericError(f"{what} contains non-finite values")
    return vec


def softmax(
    logits: torch.Tensor | Sequence[float],
    temperature: float = 1.0,
) -> Distribution:
    """Convert raw logits into a probability distribution.

    The maximum logit is subtracted before exponentiating.  A temperature of
    0 is treated as greedy and yields a one-hot distribution on the argmax.

    Args:
        logits: Raw scores over the vocabulary.
        temperature: Sampling temperature; values below 1.0 sharpen the
            distribution, values above flatten it.

    Returns:
        A float64 tensor with non-negative entries summing to 1.

    Raises:
        NumericError: If *logits* is empty, not 1-D, or holds NaN/inf.
        ValueError: If *temperature* is negative.
    """
    if temperature < 0:
        raise ValueError(f"Temperature must be non-negative, got {temperature}")

    vec = _as_vector(logits, "logits")

    if temperature == 0:
        probs = torch.zeros_like(vec)
        probs[argmax(vec)] = 1.0
        return probs

    scaled = vec / temperature
    exp = torch.exp(scaled - scaled.max())
    return exp / exp.sum()


def argmax(dist: torch.Tensor | Sequence[float]) -> int:
    """Return the first index attaining the maximum (lowest index wins ties)."""
    vec = torch.as_tensor(dist, dtype=torch.float64)
    if vec.numel() == 0:
        raise NumericError("argmax of an empty distribution")
    # torch.argmax returns the first maximal index
    return int(torch.argmax(vec).item())


def sample_categorical(dist: Distribution, random_unit: float) -> int:
    """Inverse-CDF sampling from a discrete distribution.

    Walks the cumulative mass and returns the first index with nonzero
    probability whose cumulative mass reaches ``random_unit``.  When floating
    error leaves mass unconsumed, the last index with nonzero mass is
    returned, so every ``random_unit`` in ``[0, 1)`` maps to a valid token.

    Raises:
        NumericError: If *random_unit* is outside ``[0, 1)`` or the
            distribution has no positive mass.
    """
    if not 0.0 <= random_unit < 1.0:
        raise NumericError(f"random_unit must lie in [0, 1), got {random_unit}")

    vec = _as_vector(dist, "distribution")
    positive = vec > 0
    if not positive.any():
        raise NumericError("distribution has no positive mass")

    cumulative = torch.cumsum(vec, dim=0)
    hits = torch.nonzero((cumulative >= random_unit) & positive)
    if hits.numel() > 0:
        return int(hits[0].item())
    return int(torch.nonzero(positive)[-1].item())


def check_distribution(dist: Distribution, atol: float = 1e-6) -> None:
    """Raise :class:`NumericError` unless *dist* is a valid distribution."""
    vec = _as_vector(dist, "distribution")
    if (vec < 0).any():
        raise NumericError("distribution has negative entries")
    total = float(vec.sum().item())
    if abs(total - 1.0) > atol:
        raise NumericError(f"distribution sums to {total:.8f}, expected 1")


def uniform(generator: torch.Generator | None = None) -> float:
    """Draw one value from ``U[0, 1)``."""
    return float(torch.rand((), generator=generator, dtype=torch.float64).item())


def truncate(dist: Distribution, width: int) -> Distribution:
    """Keep the first *width* entries of *dist* and renormalize them.

    Used when two models share a tokenizer but pad their output layers to
    different widths; the padded tail is never a real token.

    Raises:
        NumericError: If nothing is left with positive mass.
    """
    vec = _as_vector(dist, "distribution")
    if width >= vec.numel():
        return vec
    head = torch.clamp(vec[:width], min=0.0)
    total = float(head.sum().item())
    if total <= 0.0:
        raise NumericError(f"distribution has no positive mass in its first {width} entries")
    return head / total
