"""Context clustering of two synthetic contexts with four global clusters.

Each context has two local clusters, and the joint count table `[[50, 10], [40, 60]]` makes every combination of local clusters a global cluster. The script runs the sampler with generous caps and with caps too small to express the four combinations, and compares their DIC.
"""

import logging

import jax
import jax.numpy as jnp
from jax import Array

from contextclust import (
    ClusterCaps,
    InferenceResult,
    cluster_agreement,
    cluster_labels,
    coclustering_matrix,
    generate_context_data,
    local_coclustering_matrix,
    number_of_clusters,
    run_inference,
)
from contextclust.datasets import ContextData

from ..shared import example_paths, initialize_jax
from .types import ContextClusteringResults

JOINT_COUNTS = [[50, 10], [40, 60]]
MEANS = [[-1.5, 1.5], [-1.5, 1.5]]

### Analysis ###


def summarize(
    data: ContextData, caps: ClusterCaps, result: InferenceResult
) -> ContextClusteringResults:
    cocluster = coclustering_matrix(result.samples)
    counts = number_of_clusters(result.samples)
    n_global = int(jnp.round(jnp.median(counts)))
    global_labels = cluster_labels(cocluster, n_global)

    local_labels: list[list[int]] = []
    local_agreements: list[float] = []
    for c in range(caps.n_contexts):
        local_cocluster = local_coclustering_matrix(result.samples, c)
        n_local = int(jnp.round(jnp.median(number_of_clusters(result.samples.context_labels(c)))))
        labels = cluster_labels(local_cocluster, n_local)
        local_labels.append(labels.tolist())
        local_agreements.append(cluster_agreement(labels, data.local_labels[:, c]))

    return ContextClusteringResults(
        caps={"global": caps.global_clusters, "context": list(caps.context_clusters)},
        true_global_labels=data.global_labels.tolist(),
        estimated_global_labels=global_labels.tolist(),
        estimated_local_labels=local_labels,
        coclustering=cocluster.tolist(),
        n_clusters=counts.tolist(),
        logliks=result.logliks.tolist(),
        dic=result.dic,
        global_agreement=cluster_agreement(global_labels, data.global_labels),
        local_agreements=local_agreements,
    )


def fit(
    data: ContextData, caps: ClusterCaps, max_iter: int, burnin: int, seed: int
) -> ContextClusteringResults:
    result = run_inference(data.datasets, caps, max_iter, burnin, seed=seed, verbose=True)
    result.raise_if_degenerate()
    return summarize(data, caps, result)


### Main ###


def main():
    """Run context clustering with well- and under-specified caps."""
    initialize_jax()
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    paths = example_paths(__file__)

    key: Array = jax.random.PRNGKey(0)
    data = generate_context_data(key, JOINT_COUNTS, MEANS, n_features=2, noise=0.5)

    results = {
        "well_specified": fit(data, ClusterCaps(10, (3, 3)), 1000, 500, seed=1),
        "under_specified": fit(data, ClusterCaps(2, (2, 1)), 1000, 500, seed=1),
    }

    for name, res in results.items():
        print(f"{name}:")
        print(f"  DIC: {res['dic']:.2f}")
        print(f"  Global clusters: {len(set(res['estimated_global_labels']))}")
        print(f"  Global agreement (ARI): {res['global_agreement']:.3f}")
        print(
            "  Local agreement (ARI): "
            + ", ".join(f"{a:.3f}" for a in res["local_agreements"])
        )

    paths.save_analysis(results)


if __name__ == "__main__":
    main()
