"""Unit tests for specviz.core.probability."""

from __future__ import annotations

import math

import pytest
import torch

from specviz.core.errors import NumericError
from specviz.core.probability import (
    argmax,
    check_distribution,
    sample_categorical,
    softmax,
    truncate,
    uniform,
)


class TestSoftmax:
    """Tests for softmax with temperature."""

    def test_sums_to_one(self, sample_logits: torch.Tensor) -> None:
        probs = softmax(sample_logits)
        assert probs.dtype == torch.float64
        assert float(probs.sum()) == pytest.approx(1.0, abs=1e-9)
        assert (probs > 0).all()
        assert argmax(probs) == 0

    def test_matches_closed_form(self) -> None:
        probs = softmax([0.0, math.log(3.0)])
        assert probs.tolist() == pytest.approx([0.25, 0.75])

    def test_stable_for_large_logits(self) -> None:
        """Subtracting the max keeps huge logits from overflowing."""
        probs = softmax(torch.tensor([1000.0, 999.0, -1000.0]))
        check_distribution(probs)
        assert probs[0] > probs[1] > probs[2]

    def test_half_precision_input(self) -> None:
        probs = softmax(torch.randn(256).half())
        check_distribution(probs)

    def test_temperature_sharpens_and_flattens(self, sample_logits: torch.Tensor) -> None:
        base = softmax(sample_logits)
        sharp = softmax(sample_logits, temperature=0.5)
        flat = softmax(sample_logits, temperature=2.0)
        assert sharp[0] > base[0] > flat[0]

    def test_zero_temperature_is_one_hot(self) -> None:
        probs = softmax(torch.tensor([0.1, 3.0, 3.0, -2.0]), temperature=0.0)
        assert probs.tolist() == [0.0, 1.0, 0.0, 0.0]

    def test_negative_temperature(self, sample_logits: torch.Tensor) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            softmax(sample_logits, temperature=-1.0)

    @pytest.mark.parametrize(
        "logits",
        [[], [float("nan"), 0.0], [float("inf"), 1.0], [[1.0, 2.0]]],
    )
    def test_malformed_logits(self, logits) -> None:
        with pytest.raises(NumericError):
            softmax(logits)


class TestArgmax:
    def test_first_index_wins_ties(self) -> None:
        assert argmax([0.2, 0.4, 0.4]) == 1

    def test_empty(self) -> None:
        with pytest.raises(NumericError):
            argmax([])


class TestSampleCategorical:
    """Tests for inverse-CDF sampling."""

    def test_inverse_cdf(self) -> None:
        dist = torch.tensor([0.2, 0.3, 0.5], dtype=torch.float64)
        assert sample_categorical(dist, 0.0) == 0
        assert sample_categorical(dist, 0.19) == 0
        assert sample_categorical(dist, 0.2) == 0
        assert sample_categorical(dist, 0.21) == 1
        assert sample_categorical(dist, 0.99) == 2

    def test_skips_zero_mass_entries(self) -> None:
        """r = 0 must not land on a leading zero-probability token."""
        dist = torch.tensor([0.0, 0.0, 1.0, 0.0], dtype=torch.float64)
        assert sample_categorical(dist, 0.0) == 2
        assert sample_categorical(dist, 0.999) == 2

    def test_unconsumed_mass_falls_back_to_last_positive(self) -> None:
        dist = torch.tensor([0.3, 0.3, 0.0], dtype=torch.float64)
        assert sample_categorical(dist, 0.9) == 1

    @pytest.mark.parametrize("r", [-0.1, 1.0, 1.5])
    def test_random_unit_out_of_range(self, r: float) -> None:
        with pytest.raises(NumericError, match="random_unit"):
            sample_categorical(torch.tensor([1.0]), r)

    def test_no_positive_mass(self) -> None:
        with pytest.raises(NumericError, match="no positive mass"):
            sample_categorical(torch.zeros(4), 0.5)

    def test_empirical_frequencies(self) -> None:
        gen = torch.Generator().manual_seed(0)
        dist = torch.tensor([0.1, 0.6, 0.3], dtype=torch.float64)
        n = 20_000
        counts = [0, 0, 0]
        for _ in range(n):
            counts[sample_categorical(dist, uniform(gen))] += 1
        for i, expected in enumerate(dist.tolist()):
            assert counts[i] / n == pytest.approx(expected, abs=0.02)


class TestCheckDistribution:
    def test_valid(self) -> None:
        check_distribution(torch.tensor([0.5, 0.5]))

    def test_negative_entry(self) -> None:
        with pytest.raises(NumericError, match="negative"):
            check_distribution(torch.tensor([1.2, -0.2]))

    def test_bad_total(self) -> None:
        with pytest.raises(NumericError, match="sums to"):
            check_distribution(torch.tensor([0.5, 0.4]))


class TestTruncate:
    def test_renormalizes_head(self) -> None:
        dist = torch.tensor([0.3, 0.3, 0.4], dtype=torch.float64)
        assert truncate(dist, 2).tolist() == pytest.approx([0.5, 0.5])

    def test_width_at_or_past_end_is_noop(self) -> None:
        dist = torch.tensor([0.25, 0.75], dtype=torch.float64)
        assert truncate(dist, 2).tolist() == [0.25, 0.75]
        assert truncate(dist, 5).tolist() == [0.25, 0.75]

    def test_empty_head(self) -> None:
        with pytest.raises(NumericError, match="no positive mass"):
            truncate(torch.tensor([0.0, 1.0], dtype=torch.float64), 1)


class TestUniform:
    def test_range_and_reproducibility(self) -> None:
        a = [uniform(torch.Generator().manual_seed(7)) for _ in range(3)]
        b = [uniform(torch.Generator().manual_seed(7)) for _ in range(3)]
        assert a == b
        gen = torch.Generator().manual_seed(1)
        assert all(0.0 <= uniform(gen) < 1.0 for _ in range(1000))
