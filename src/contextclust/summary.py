"""Posterior summaries of a chain of cluster assignments.

The co-clustering matrix is the hand-off point to hard clustering: `cluster_labels` cuts an agglomerative hierarchy built on its complement, and `cluster_agreement` compares the result with a reference labelling. Both delegate to `scipy` and `scikit-learn`.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array
from numpy.typing import NDArray
from scipy.cluster.hierarchy import fcluster, linkage  # pyright: ignore[reportMissingTypeStubs]
from scipy.spatial.distance import squareform  # pyright: ignore[reportMissingTypeStubs]
from sklearn.metrics import adjusted_rand_score  # pyright: ignore[reportMissingTypeStubs]

from .chain import Chain


def _label_matrix(labels: Chain | Array) -> Array:
    if isinstance(labels, Chain):
        return labels.global_labels
    return jnp.atleast_2d(jnp.asarray(labels))


def number_of_clusters(global_labels: Chain | Array) -> Array:
    """Number of distinct labels used in every sample.

    Args:
        global_labels: Chain, or label matrix with samples as rows and points as columns

    Returns:
        Occupied-cluster count of every sample, shape `(S,)`
    """
    labels = jnp.sort(_label_matrix(global_labels), axis=1)
    return 1 + jnp.sum(labels[:, 1:] != labels[:, :-1], axis=1)


def coclustering_matrix(global_labels: Chain | Array, fill_diagonal: bool = True) -> Array:
    """Posterior probability that two points share a cluster.

    Entry $(i, j)$ is the fraction of samples in which points $i$ and $j$ carry the same label. The result is symmetric with entries in $[0, 1]$.

    Args:
        global_labels: Chain, or label matrix with samples as rows and points as columns
        fill_diagonal: Set the diagonal to one (self-similarity)

    Returns:
        Co-clustering matrix of shape `(N, N)`
    """
    labels = _label_matrix(global_labels)
    n_samples, n_points = labels.shape
    if n_samples == 0:
        raise ValueError("Cannot compute co-clustering of an empty chain")

    def accumulate(total: Array, row: Array) -> tuple[Array, None]:
        return total + (row[:, None] == row[None, :]), None

    total, _ = jax.lax.scan(accumulate, jnp.zeros((n_points, n_points)), labels)
    cocluster = total / n_samples
    if fill_diagonal:
        cocluster = cocluster.at[jnp.diag_indices(n_points)].set(1.0)
    return cocluster


def local_coclustering_matrix(chain: Chain, context: int) -> Array:
    """Co-clustering matrix of the local labels of one context."""
    return coclustering_matrix(chain.context_labels(context))


def cluster_labels(
    coclustering: Array, n_clusters: int, method: str = "average"
) -> NDArray[np.int64]:
    """Hard labels from a co-clustering matrix by agglomerative clustering.

    Args:
        coclustering: Symmetric co-clustering matrix
        n_clusters: Maximum number of clusters to cut the hierarchy into
        method: Linkage method passed to `scipy.cluster.hierarchy.linkage`

    Returns:
        Zero-based cluster label of every point
    """
    distance = 1.0 - np.asarray(coclustering, dtype=np.float64)
    distance = np.clip(0.5 * (distance + distance.T), 0.0, 1.0)
    np.fill_diagonal(distance, 0.0)
    tree = linkage(squareform(distance, checks=False), method=method)
    return fcluster(tree, t=n_clusters, criterion="maxclust") - 1


def cluster_agreement(labels: Array | NDArray[np.int64], reference: Array | NDArray[np.int64]) -> float:
    """Adjusted Rand index between two labellings of the same points."""
    return float(adjusted_rand_score(np.asarray(reference), np.asarray(labels)))
