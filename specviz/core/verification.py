"""Modified rejection sampling for speculative decoding.

For one draft position, given the drafted token ``x``, the draft
distribution ``p`` it was sampled from, and the target distribution ``q``
for the same prefix:

    accept x            with probability min(1, q[x] / p[x])
    otherwise resample  from norm(max(q - p, 0))

and, when every position of a block is accepted, draw one bonus token from
the target distribution one past the block.  Tokens produced this way are
distributed exactly as the target model would produce them.

See Leviathan et al. (2023) and Chen et al. (2023),
https://arxiv.org/abs/2302.01318.

Every function here is stateless; the random draw is passed in so callers
own the random stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import torch

from specviz.core.errors import NumericError
from specviz.core.probability import Distribution, sample_categorical, truncate

logger = logging.getLogger(__name__)

# Residual mass at or below this is treated as "p and q coincide".
RESIDUAL_EPSILON = 1e-12


@dataclass(frozen=True)
class PositionVerdict:
    """Outcome of the acceptance test at a single draft position.

    Attributes:
        token_id: The drafted token that was tested.
        random_unit: The uniform draw used for the test.
        acceptance_probability: ``min(1, q[x] / p[x])``.
        accepted: Whether the drafted token survives.
    """

    token_id: int
    random_unit: float
    acceptance_probability: float
    accepted: bool


def align(p: Distribution, q: Distribution) -> tuple[Distribution, Distribution]:
    """Bring a draft/target pair to a common vocabulary width.

    Models that share a tokenizer may still pad their output layers to
    different widths (Qwen2.5-0.5B and Qwen2.5-7B, for example).  Both
    distributions are cut to the narrower width and renormalized.

    Raises:
        NumericError: If either distribution is not 1-D.
    """
    if p.ndim != 1 or q.ndim != 1:
        raise NumericError(
            f"draft distribution shape {tuple(p.shape)} and "
            f"target distribution shape {tuple(q.shape)} must both be 1-D"
        )
    if p.shape == q.shape:
        return p, q
    width = min(p.shape[0], q.shape[0])
    logger.debug("Aligning draft width %d and target width %d to %d", p.shape[0], q.shape[0], width)
    return truncate(p, width), truncate(q, width)


def acceptance_probability(p: Distribution, q: Distribution, token_id: int) -> float:
    """Return ``min(1, q[x] / p[x])`` for drafted token *token_id*.

    A token the draft assigned zero mass is rejected outright rather than
    dividing by zero, as is a token in the padded tail past the shared
    vocabulary width.
    """
    p, q = align(p, q)
    if token_id >= p.shape[0]:
        return 0.0
    p_x = float(p[token_id].item())
    q_x = float(q[token_id].item())
    if p_x <= 0.0:
        return 0.0
    return min(1.0, q_x / p_x)


def should_accept(
    p: Distribution,
    q: Distribution,
    token_id: int,
    random_unit: float,
) -> bool:
    """Acceptance test: ``random_unit < min(1, q[x] / p[x])``."""
    return random_unit < acceptance_probability(p, q, token_id)


def verify_position(
    p: Distribution,
    q: Distribution,
    token_id: int,
    random_unit: float,
) -> PositionVerdict:
    """Run the acceptance test for one draft position and describe the result."""
    prob = acceptance_probability(p, q, token_id)
    verdict = PositionVerdict(
        token_id=token_id,
        random_unit=random_unit,
        acceptance_probability=prob,
        accepted=random_unit < prob,
    )
    logger.debug(
        "Position verdict: token=%d r=%.4f ratio=%.4f accepted=%s",
        token_id,
        random_unit,
        prob,
        verdict.accepted,
    )
    return verdict


def residual_mass(p: Distribution, q: Distribution) -> float:
    """Total mass of ``max(q - p, 0)`` before renormalization."""
    p, q = align(p, q)
    return float(torch.clamp(q - p, min=0.0).sum().item())


def residual_distribution(p: Distribution, q: Distribution) -> Distribution:
    """Build the renormalized residual ``max(q - p, 0) / sum(...)``.

    When the residual mass vanishes (``p`` covers ``q`` everywhere), the
    target distribution ``q`` itself is used instead.

    Raises:
        NumericError: If neither the residual nor ``q`` has positive mass.
    """
    p, q = align(p, q)
    residual = torch.clamp(q.to(torch.float64) - p.to(torch.float64), min=0.0)
    mass = float(residual.sum().item())
    if mass > RESIDUAL_EPSILON:
        return residual / mass

    logger.debug("Residual mass %.3e below epsilon, falling back to target distribution", mass)
    fallback = torch.clamp(q.to(torch.float64), min=0.0)
    total = float(fallback.sum().item())
    if total <= 0.0:
        raise NumericError("target distribution has no positive mass to resample from")
    return fallback / total


def resample_after_rejection(
    p: Distribution,
    q: Distribution,
    random_unit: float,
) -> int:
    """Draw the replacement token for a rejected draft position."""
    return sample_categorical(residual_distribution(p, q), random_unit)


def sample_bonus(q_next: Distribution, random_unit: float) -> int:
    """Draw the bonus token earned when a whole draft block is accepted."""
    return sample_categorical(q_next, random_unit)
