"""Common definitions for the context clustering example."""

from typing import Any, TypedDict


class ContextClusteringResults(TypedDict):
    """Complete results for context clustering analysis."""

    caps: dict[str, Any]  # {"global": G, "context": [K_1, ...]}
    true_global_labels: list[int]
    estimated_global_labels: list[int]  # Hardened from the co-clustering matrix
    estimated_local_labels: list[list[int]]  # One list per context
    coclustering: list[list[float]]  # Posterior co-clustering matrix
    n_clusters: list[int]  # Occupied global clusters per retained sample
    logliks: list[float]  # Joint log-likelihood per sweep
    dic: float
    global_agreement: float  # Adjusted Rand index against the true labels
    local_agreements: list[float]  # Adjusted Rand index per context
