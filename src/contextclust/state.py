"""Mutable run state of the Gibbs sampler, stored as immutable pytrees.

The state is split into two parts:

- `ClusterParameters`: the emission parameters of every local cluster slot, one `(K_c, dim_c)` array per context, and the tuple of local labels carried by every global slot, a `(G, C)` integer array.
- `Assignments`: the global label of every data point. The local label of point $i$ in context $c$ is the context-$c$ entry of the tuple of its global slot, so the global label always determines the local labels.

Both are registered with `jax.tree_util` so they can be carried through jitted sweeps.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp
from jax import Array


@jax.tree_util.register_dataclass
@dataclass(frozen=True)
class ClusterParameters:
    """Parameter store for local clusters and the local-label tuples of global slots."""

    local_params: tuple[Array, ...]
    """Flat emission parameters of every local slot, one `(K_c, dim_c)` array per context."""

    slot_tuples: Array
    """Local label of every global slot in every context, shape `(G, C)`.

    Rows of unoccupied slots are stale and carry no meaning until a point moves in.
    """

    @property
    def n_global(self) -> int:
        return self.slot_tuples.shape[0]

    def with_local_params(self, local_params: tuple[Array, ...]) -> ClusterParameters:
        return ClusterParameters(local_params, self.slot_tuples)


@jax.tree_util.register_dataclass
@dataclass(frozen=True)
class Assignments:
    """Global cluster label of every data point."""

    global_labels: Array
    """Global slot of every point, shape `(N,)`."""

    def counts(self, n_global: int) -> Array:
        """Number of points in every global slot."""
        return jnp.bincount(self.global_labels, length=n_global)

    def local_labels(self, params: ClusterParameters) -> Array:
        """Local labels of every point in every context, shape `(N, C)`."""
        return params.slot_tuples[self.global_labels]


@jax.tree_util.register_dataclass
@dataclass(frozen=True)
class SamplerState:
    """Complete state of one Markov chain."""

    assignments: Assignments
    params: ClusterParameters

    @property
    def global_labels(self) -> Array:
        return self.assignments.global_labels

    @property
    def slot_tuples(self) -> Array:
        return self.params.slot_tuples

    def local_labels(self) -> Array:
        return self.assignments.local_labels(self.params)

    def occupancy(self) -> Array:
        return self.assignments.counts(self.params.n_global)

    def canonical_global_labels(self) -> Array:
        """Global labels with duplicate tuples resolved.

        Two occupied slots may carry the same tuple. Each point is relabelled with the lowest-index occupied slot carrying its tuple, so that two points share a canonical label iff they share their local labels in every context.
        """
        return canonical_labels(self.global_labels, self.slot_tuples)


def canonical_labels(global_labels: Array, slot_tuples: Array) -> Array:
    """Relabel points with the lowest-index occupied slot carrying the same tuple.

    Args:
        global_labels: Global slot of every point, shape `(N,)`
        slot_tuples: Local-label tuple of every slot, shape `(G, C)`

    Returns:
        Canonical global labels, shape `(N,)`
    """
    n_global = slot_tuples.shape[0]
    occupied = jnp.bincount(global_labels, length=n_global) > 0
    same = jnp.all(slot_tuples[:, None, :] == slot_tuples[None, :, :], axis=-1)
    same = same & occupied[None, :]
    first = jnp.argmax(same, axis=1)
    return first[global_labels]
