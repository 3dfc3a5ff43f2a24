"""Retained samples of a Gibbs run after burn-in and thinning."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import jax.numpy as jnp
import numpy as np
from jax import Array

from .config import Schedule


@dataclass(frozen=True)
class Sample:
    """Snapshot of the assignments at one sweep."""

    sweep: int
    """Zero-based sweep index."""

    global_labels: Array
    """Canonical global label of every point, shape `(N,)`."""

    local_labels: Array
    """Local label of every point in every context, shape `(N, C)`."""

    log_likelihood: float


@dataclass(frozen=True)
class Chain:
    """Ordered retained samples, stored as stacked arrays."""

    sweeps: Array
    """Sweep index of every sample, shape `(S,)`."""

    global_labels: Array
    """Global labels, shape `(S, N)`: rows are samples and columns are points."""

    local_labels: Array
    """Local labels, shape `(S, N, C)`."""

    log_likelihoods: Array
    """Joint log-likelihood of every sample, shape `(S,)`."""

    def __len__(self) -> int:
        return int(self.sweeps.shape[0])

    def __getitem__(self, idx: int) -> Sample:
        return Sample(
            sweep=int(self.sweeps[idx]),
            global_labels=self.global_labels[idx],
            local_labels=self.local_labels[idx],
            log_likelihood=float(self.log_likelihoods[idx]),
        )

    def __iter__(self) -> Iterator[Sample]:
        for idx in range(len(self)):
            yield self[idx]

    def context_labels(self, context: int) -> Array:
        """Local labels of one context, shape `(S, N)`."""
        return self.local_labels[:, :, context]


class ChainRecorder:
    """Keeps every `lag`-th sweep after `burnin` sweeps.

    Labels are copied to host memory as they are recorded so that the device only ever holds the current state.
    """

    def __init__(self, schedule: Schedule):
        self.schedule = schedule
        self._sweeps: list[int] = []
        self._global: list[np.ndarray] = []
        self._local: list[np.ndarray] = []
        self._logliks: list[float] = []

    def __len__(self) -> int:
        return len(self._sweeps)

    def record(
        self, sweep: int, global_labels: Array, local_labels: Array, loglik: Array | float
    ) -> bool:
        """Store the snapshot if the schedule retains this sweep.

        Returns:
            Whether the sweep was retained
        """
        if not self.schedule.retains(sweep):
            return False
        self._sweeps.append(sweep)
        self._global.append(np.asarray(global_labels))
        self._local.append(np.asarray(local_labels))
        self._logliks.append(float(loglik))
        return True

    def chain(self) -> Chain:
        """Materialize the retained samples in sweep order."""
        if not self._sweeps:
            return Chain(
                sweeps=jnp.zeros((0,), dtype=jnp.int32),
                global_labels=jnp.zeros((0, 0), dtype=jnp.int32),
                local_labels=jnp.zeros((0, 0, 0), dtype=jnp.int32),
                log_likelihoods=jnp.zeros((0,)),
            )
        return Chain(
            sweeps=jnp.asarray(self._sweeps, dtype=jnp.int32),
            global_labels=jnp.asarray(np.stack(self._global)),
            local_labels=jnp.asarray(np.stack(self._local)),
            log_likelihoods=jnp.asarray(self._logliks),
        )
