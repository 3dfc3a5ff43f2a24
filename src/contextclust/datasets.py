"""Synthetic multi-context data with known local and global clusters."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array

from .errors import ConfigurationError


@dataclass(frozen=True)
class ContextData:
    """Generated datasets with their ground truth."""

    datasets: tuple[Array, ...]
    """One `(N, n_features)` array per context."""

    global_labels: Array
    """True global cluster of every point, shape `(N,)`."""

    local_labels: Array
    """True local cluster of every point in every context, shape `(N, C)`."""


def generate_context_data(
    key: Array,
    joint_counts: Array | Sequence[Sequence[int]],
    means: Sequence[Sequence[float]],
    n_features: int = 1,
    noise: float = 1.0,
) -> ContextData:
    """Draw Gaussian contexts whose local clusters co-occur according to a count table.

    Entry `joint_counts[k_1, ..., k_C]` is the number of points that belong to local cluster `k_c` in every context `c`; every non-empty entry is one global cluster. The features of a point in context `c` are drawn from $\\mathcal N(m_{c,k_c}\\mathbf 1, \\sigma^2 I)$ with `m = means` and $\\sigma$ = `noise`.

    For example, the table `[[50, 10], [40, 60]]` with means `[[-1.5, 1.5], [-1.5, 1.5]]` gives two contexts with two local clusters each and four global clusters of sizes 50, 10, 40, and 60.

    Args:
        key: JAX random key
        joint_counts: Count table with one axis per context
        means: Mean of every local cluster, one sequence per context
        n_features: Number of features of every context
        noise: Standard deviation within clusters

    Returns:
        Datasets and true labels, with points ordered by global cluster
    """
    counts = np.asarray(joint_counts, dtype=np.int64)
    if counts.ndim != len(means):
        raise ConfigurationError(
            f"Count table has {counts.ndim} axes but means are given for {len(means)} contexts"
        )
    for c, (n_local, mu) in enumerate(zip(counts.shape, means)):
        if len(mu) != n_local:
            raise ConfigurationError(
                f"Context {c} has {n_local} local clusters but {len(mu)} means"
            )
    if np.any(counts < 0) or counts.sum() == 0:
        raise ConfigurationError("Count table must be non-negative with at least one point")

    cells = [cell for cell in np.ndindex(*counts.shape) if counts[cell] > 0]
    local_labels = np.concatenate(
        [np.tile(np.asarray(cell), (counts[cell], 1)) for cell in cells]
    )
    global_labels = np.repeat(np.arange(len(cells)), [counts[cell] for cell in cells])

    keys = jax.random.split(key, len(means))
    datasets: list[Array] = []
    for c, (k, mu) in enumerate(zip(keys, means)):
        centers = jnp.asarray(mu, dtype=jnp.float32)[local_labels[:, c]]
        noise_sample = jax.random.normal(k, (local_labels.shape[0], n_features))
        datasets.append(centers[:, None] + noise * noise_sample)

    return ContextData(
        datasets=tuple(datasets),
        global_labels=jnp.asarray(global_labels),
        local_labels=jnp.asarray(local_labels),
    )
