"""Context-dependent Bayesian clustering with a collapsed Gibbs sampler.

Several datasets describing the same points are clustered jointly: every context gets its own local clusters, and points that share their local cluster in every context form a global cluster.
"""

from .chain import Chain, ChainRecorder, Sample
from .config import ClusterCaps, Concentrations, Schedule
from .datasets import ContextData, generate_context_data
from .emission import (
    EMISSION_FAMILIES,
    DiagonalCategorical,
    DiagonalNormal,
    EmissionModel,
    emission_model,
)
from .errors import (
    ConfigurationError,
    ContextClusteringError,
    NumericDegeneracy,
    UnsupportedEmissionFamily,
)
from .inference import GibbsRun, InferenceResult, RunStatus, run_inference
from .likelihood import LikelihoodTracker, deviance_information_criterion
from .sampler import ContextClustering, gibbs_sweep
from .state import Assignments, ClusterParameters, SamplerState
from .summary import (
    cluster_agreement,
    cluster_labels,
    coclustering_matrix,
    local_coclustering_matrix,
    number_of_clusters,
)

__all__ = [
    "EMISSION_FAMILIES",
    "Assignments",
    "Chain",
    "ChainRecorder",
    "ClusterCaps",
    "ClusterParameters",
    "Concentrations",
    "ConfigurationError",
    "ContextClustering",
    "ContextClusteringError",
    "ContextData",
    "DiagonalCategorical",
    "DiagonalNormal",
    "EmissionModel",
    "GibbsRun",
    "InferenceResult",
    "LikelihoodTracker",
    "NumericDegeneracy",
    "RunStatus",
    "Sample",
    "SamplerState",
    "Schedule",
    "UnsupportedEmissionFamily",
    "cluster_agreement",
    "cluster_labels",
    "coclustering_matrix",
    "deviance_information_criterion",
    "emission_model",
    "generate_context_data",
    "gibbs_sweep",
    "local_coclustering_matrix",
    "number_of_clusters",
    "run_inference",
]
