"""Exceptions raised by context-dependent clustering.

Configuration and emission-family errors are raised before any sweep runs. Numerical degeneracy inside a sweep is recovered locally by the sampler and only surfaced on request.
"""

from __future__ import annotations


class ContextClusteringError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(ContextClusteringError, ValueError):
    """Invalid cluster caps, iteration schedule, or input datasets."""


class UnsupportedEmissionFamily(ContextClusteringError, ValueError):
    """Unrecognized emission family tag."""

    def __init__(self, family: str, supported: tuple[str, ...]):
        self.family = family
        self.supported = supported
        super().__init__(
            f"Unsupported emission family {family!r}; expected one of {', '.join(supported)}"
        )


class NumericDegeneracy(ContextClusteringError, ArithmeticError):
    """Posterior updates fell back to the prior throughout an entire run."""
