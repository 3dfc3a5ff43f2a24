"""Run configuration: cluster caps, iteration schedule, and Dirichlet concentrations.

All configuration objects are frozen and hashable so that they can be passed as static arguments to jitted functions. Validation happens at construction, so an invalid configuration fails before any sweep runs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from .errors import ConfigurationError


@dataclass(frozen=True)
class ClusterCaps:
    """Upper bounds on the number of global and local clusters.

    The caps define fixed arenas of cluster slots. They are bounds, not targets: most runs leave some slots empty.
    """

    global_clusters: int
    """Number of global cluster slots $G$."""

    context_clusters: tuple[int, ...]
    """Number of local cluster slots $K_c$ for each context."""

    def __post_init__(self):
        object.__setattr__(self, "context_clusters", tuple(self.context_clusters))
        if self.global_clusters < 1:
            raise ConfigurationError(
                f"Global cluster cap must be at least 1, got {self.global_clusters}"
            )
        if len(self.context_clusters) == 0:
            raise ConfigurationError("At least one context cluster cap is required")
        for c, k in enumerate(self.context_clusters):
            if k < 1:
                raise ConfigurationError(
                    f"Cluster cap of context {c} must be at least 1, got {k}"
                )

    @classmethod
    def from_mapping(cls, caps: Mapping[str, Any]) -> ClusterCaps:
        """Build caps from a `{"global": G, "context": [K_1, ..., K_C]}` mapping."""
        try:
            return cls(int(caps["global"]), tuple(int(k) for k in caps["context"]))
        except KeyError as err:
            raise ConfigurationError(f"Cluster caps are missing key {err}") from err

    @property
    def n_contexts(self) -> int:
        return len(self.context_clusters)


@dataclass(frozen=True)
class Schedule:
    """Number of sweeps, burn-in, and thinning lag of a run.

    Sweeps are indexed from zero. The retained sweeps are `burnin, burnin + lag, ...` up to `max_iter - 1`.
    """

    max_iter: int
    burnin: int
    lag: int = 1

    def __post_init__(self):
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be at least 1, got {self.max_iter}")
        if self.burnin < 0:
            raise ConfigurationError(f"burnin must be non-negative, got {self.burnin}")
        if self.burnin >= self.max_iter:
            raise ConfigurationError(
                f"burnin ({self.burnin}) must be smaller than max_iter ({self.max_iter})"
            )
        if self.lag < 1:
            raise ConfigurationError(f"lag must be at least 1, got {self.lag}")

    @property
    def n_samples(self) -> int:
        """Number of retained samples."""
        return (self.max_iter - self.burnin - 1) // self.lag + 1

    def retains(self, sweep: int) -> bool:
        """Whether the given (zero-based) sweep is kept in the chain."""
        return sweep >= self.burnin and (sweep - self.burnin) % self.lag == 0


@dataclass(frozen=True)
class Concentrations:
    """Dirichlet concentrations of the global and local mixing weights.

    The global weights follow $\\text{Dir}(\\alpha/G)$ and the local weights of context $c$ follow $\\text{Dir}(\\gamma_c/K_c)$.
    """

    global_concentration: float = 1.0
    local_concentrations: tuple[float, ...] = ()

    def __post_init__(self):
        object.__setattr__(
            self, "local_concentrations", tuple(float(a) for a in self.local_concentrations)
        )
        if not self.global_concentration > 0:
            raise ConfigurationError(
                f"Global concentration must be positive, got {self.global_concentration}"
            )
        for c, a in enumerate(self.local_concentrations):
            if not a > 0:
                raise ConfigurationError(
                    f"Local concentration of context {c} must be positive, got {a}"
                )

    @classmethod
    def broadcast(
        cls,
        n_contexts: int,
        global_concentration: float = 1.0,
        local_concentration: float | Sequence[float] = 1.0,
    ) -> Concentrations:
        """Build concentrations with one local value per context."""
        if isinstance(local_concentration, (int, float)):
            local = (float(local_concentration),) * n_contexts
        else:
            local = tuple(float(a) for a in local_concentration)
            if len(local) != n_contexts:
                raise ConfigurationError(
                    f"Expected {n_contexts} local concentrations, got {len(local)}"
                )
        return cls(float(global_concentration), local)


def resolve_caps(caps: ClusterCaps | Mapping[str, Any]) -> ClusterCaps:
    """Accept either a `ClusterCaps` or its mapping form."""
    if isinstance(caps, ClusterCaps):
        return caps
    return ClusterCaps.from_mapping(caps)
