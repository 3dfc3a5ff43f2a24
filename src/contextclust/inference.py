"""Entry point for running context-dependent clustering on a set of datasets.

`run_inference` validates the inputs, builds a `ContextClustering` sampler, and drives `GibbsRun` for the requested number of sweeps. All configuration errors surface before the first sweep.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jax
import jax.numpy as jnp
from jax import Array

from .chain import Chain, ChainRecorder
from .config import ClusterCaps, Concentrations, Schedule, resolve_caps
from .emission import EmissionModel, emission_model
from .errors import ConfigurationError, NumericDegeneracy
from .likelihood import LikelihoodTracker
from .sampler import ContextClustering, gibbs_sweep, plugin_log_likelihood
from .state import SamplerState

log = logging.getLogger(__name__)


### Results ###


@dataclass(frozen=True)
class InferenceResult:
    """Output of a Gibbs run."""

    samples: Chain
    """Retained samples after burn-in and thinning."""

    logliks: Array
    """Joint log-likelihood of every sweep, shape `(max_iter,)`."""

    dic: float
    """Deviance Information Criterion over every sweep of the run."""

    degenerate_updates: Array
    """Number of posterior updates that fell back to the prior, per sweep."""

    degenerate: bool
    """Whether every sweep needed at least one prior fallback."""

    final_state: SamplerState

    def raise_if_degenerate(self) -> None:
        if self.degenerate:
            raise NumericDegeneracy(
                f"Every one of {self.degenerate_updates.shape[0]} sweeps fell back to the prior"
            )


### Runner ###


class RunStatus(Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    DONE = "done"


class GibbsRun:
    """A single Markov chain: initial state, sweep loop, and its records.

    The run owns its state; nothing is shared between runs. Every sweep uses the key `fold_in(chain_key, sweep)`, so the trace is determined by the seed.
    """

    def __init__(
        self,
        sampler: ContextClustering,
        data: tuple[Array, ...],
        priors: tuple[Array, ...],
        schedule: Schedule,
        key: Array,
    ):
        self.sampler = sampler
        self.data = data
        self.priors = priors
        self.schedule = schedule
        self.tracker = LikelihoodTracker()
        self.recorder = ChainRecorder(schedule)
        self.status = RunStatus.UNINITIALIZED

        init_key, self.chain_key = jax.random.split(key)
        self.state = sampler.initialize(init_key, data, priors)

    def step(self, sweep: int) -> Array:
        """Run one sweep and record it. Returns its log-likelihood."""
        key = jax.random.fold_in(self.chain_key, sweep)
        self.state, loglik, n_degenerate = gibbs_sweep(
            self.sampler, key, self.data, self.priors, self.state
        )
        self.tracker.record(loglik, n_degenerate)
        if self.schedule.retains(sweep):
            self.recorder.record(
                sweep,
                self.state.canonical_global_labels(),
                self.state.local_labels(),
                loglik,
            )
        return loglik

    def run(self, verbose: bool = False) -> InferenceResult:
        if self.status is not RunStatus.UNINITIALIZED:
            raise RuntimeError(f"Run is already {self.status.value}")
        self.status = RunStatus.RUNNING

        level = logging.INFO if verbose else logging.DEBUG
        max_iter = self.schedule.max_iter
        report_every = max(1, max_iter // 10)

        for sweep in range(max_iter):
            loglik = self.step(sweep)
            if (sweep + 1) % report_every == 0 or sweep + 1 == max_iter:
                n_occupied = int(jnp.sum(self.state.occupancy() > 0))
                log.log(
                    level,
                    "Sweep %d/%d: log-likelihood %.3f, %d occupied global clusters",
                    sweep + 1,
                    max_iter,
                    float(loglik),
                    n_occupied,
                )

        self.status = RunStatus.DONE
        dic = self.tracker.dic(
            plugin_log_likelihood(self.sampler, self.data, self.priors, self.state)
        )
        log.log(level, "DIC: %.3f", dic)
        if self.tracker.degenerate:
            log.warning(
                "Every sweep fell back to the prior for at least one cluster; results may be unreliable"
            )

        return InferenceResult(
            samples=self.recorder.chain(),
            logliks=self.tracker.trace,
            dic=dic,
            degenerate_updates=self.tracker.degenerate_updates,
            degenerate=self.tracker.degenerate,
            final_state=self.state,
        )


### Input handling ###


def prepare_datasets(datasets: Sequence[Any]) -> tuple[Array, ...]:
    """Convert datasets to 2D float arrays with a common number of points."""
    if len(datasets) == 0:
        raise ConfigurationError("At least one context dataset is required")
    arrays = tuple(jnp.asarray(x, dtype=jnp.float32) for x in datasets)
    for c, x in enumerate(arrays):
        if x.ndim != 2:
            raise ConfigurationError(
                f"Dataset of context {c} must be a 2D array, got shape {x.shape}"
            )
    n_points = {x.shape[0] for x in arrays}
    if len(n_points) != 1:
        raise ConfigurationError(
            f"All contexts must describe the same points, got sizes {sorted(n_points)}"
        )
    if n_points.pop() == 0:
        raise ConfigurationError("Datasets must contain at least one point")
    return arrays


def resolve_families(
    family: str | EmissionModel | Sequence[str | EmissionModel], data: tuple[Array, ...]
) -> tuple[EmissionModel, ...]:
    """Build one emission model per context from a single tag or one tag per context."""
    if isinstance(family, (str, EmissionModel)):
        families = [family] * len(data)
    else:
        families = list(family)
        if len(families) != len(data):
            raise ConfigurationError(
                f"Got {len(families)} emission families for {len(data)} contexts"
            )
    return tuple(emission_model(f, x) for f, x in zip(families, data))


def resolve_priors(
    models: tuple[EmissionModel, ...],
    data: tuple[Array, ...],
    priors: Sequence[Array] | None,
) -> tuple[Array, ...]:
    """Use the given prior hyperparameters, or empirical priors from the data."""
    if priors is None:
        return tuple(model.empirical_prior(x) for model, x in zip(models, data))
    if len(priors) != len(models):
        raise ConfigurationError(f"Got {len(priors)} priors for {len(models)} contexts")
    resolved: list[Array] = []
    for c, (model, prior) in enumerate(zip(models, priors)):
        prior = jnp.asarray(prior, dtype=jnp.float32)
        if prior.shape != (model.prior_dim,):
            raise ConfigurationError(
                f"Prior of context {c} must have shape ({model.prior_dim},), got {prior.shape}"
            )
        resolved.append(prior)
    return tuple(resolved)


### Entry point ###


def run_inference(
    datasets: Sequence[Any],
    caps: ClusterCaps | Mapping[str, Any],
    max_iter: int,
    burnin: int,
    lag: int = 1,
    family: str | EmissionModel | Sequence[str | EmissionModel] = "diagNormal",
    seed: int = 0,
    verbose: bool = False,
    global_concentration: float = 1.0,
    local_concentration: float | Sequence[float] = 1.0,
    priors: Sequence[Array] | None = None,
) -> InferenceResult:
    """Cluster points described by several contexts at once.

    Each context is an `(N, D_c)` array; all contexts describe the same `N` points in the same order. The sampler finds local clusters within every context and global clusters formed by combinations of local clusters.

    Args:
        datasets: One array per context
        caps: Upper bounds on the numbers of global and local clusters, as `ClusterCaps` or `{"global": G, "context": [K_1, ...]}`
        max_iter: Total number of Gibbs sweeps
        burnin: Number of initial sweeps excluded from the chain
        lag: Thinning interval of the chain
        family: Emission family tag (`"diagNormal"` or `"categorical"`), or one per context
        seed: Seed of the run's random key
        verbose: Log progress at INFO rather than DEBUG level
        global_concentration: Dirichlet concentration $\\alpha$ of the global weights
        local_concentration: Dirichlet concentration $\\gamma_c$ of the local weights, shared or one per context
        priors: Flat prior hyperparameters per context; empirical priors by default

    Returns:
        Retained samples, log-likelihood trace, DIC, and degeneracy counts
    """
    caps = resolve_caps(caps)
    schedule = Schedule(max_iter, burnin, lag)
    data = prepare_datasets(datasets)
    if len(data) != caps.n_contexts:
        raise ConfigurationError(
            f"Got {len(data)} datasets but {caps.n_contexts} context cluster caps"
        )
    concentrations = Concentrations.broadcast(
        caps.n_contexts, global_concentration, local_concentration
    )
    models = resolve_families(family, data)
    prior_params = resolve_priors(models, data, priors)
    sampler = ContextClustering(models, caps, concentrations)

    log.debug(
        "Running %d sweeps on %d points in %d contexts (G=%d, K=%s)",
        max_iter,
        data[0].shape[0],
        caps.n_contexts,
        caps.global_clusters,
        caps.context_clusters,
    )
    run = GibbsRun(sampler, data, prior_params, schedule, jax.random.PRNGKey(seed))
    return run.run(verbose)
