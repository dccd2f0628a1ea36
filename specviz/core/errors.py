"""Exception hierarchy for SpecViz.

``NumericError`` and ``InferenceError`` abort the current step and end the
session; ``ProtocolError`` marks a command that arrived with nothing to act on
and is treated as a no-op by the worker.
"""

from __future__ import annotations


class SpecVizError(Exception):
    """Base class for all SpecViz errors."""


class NumericError(SpecVizError):
    """Malformed distribution input: empty, non-finite, or with no positive mass."""


class InferenceError(SpecVizError):
    """A backend forward pass failed or returned a malformed shape."""


class TokenizerError(InferenceError):
    """Prompt encoding did not yield a flat sequence of token ids."""


class ProtocolError(SpecVizError):
    """A controller command arrived with no active session to apply it to."""


class StateInvariantError(SpecVizError):
    """Internal generation state is inconsistent (e.g. verify with an empty draft block)."""
