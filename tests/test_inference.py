"""End-to-end tests of `run_inference` on synthetic multi-context data."""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax import Array
from jax.scipy import stats

from contextclust import (
    ClusterCaps,
    Concentrations,
    ConfigurationError,
    ContextClustering,
    DiagonalNormal,
    GibbsRun,
    InferenceResult,
    NumericDegeneracy,
    Schedule,
    UnsupportedEmissionFamily,
    cluster_agreement,
    cluster_labels,
    coclustering_matrix,
    generate_context_data,
    number_of_clusters,
    run_inference,
)
from contextclust.datasets import ContextData

jax.config.update("jax_platform_name", "cpu")

# Four global clusters from two local clusters in each of two contexts
JOINT_COUNTS = [[50, 10], [40, 60]]
MEANS = [[-3.0, 3.0], [-3.0, 3.0]]
MAX_ITER = 300
BURNIN = 200
LAG = 2
CHAIN_LENGTH = 50
SEEDS = [0, 1, 2]


@pytest.fixture(scope="module")
def scenario() -> ContextData:
    return generate_context_data(
        jax.random.PRNGKey(1), JOINT_COUNTS, MEANS, n_features=2, noise=1.0
    )


@pytest.fixture(scope="module", params=SEEDS)
def seed(request: pytest.FixtureRequest) -> int:
    return request.param


@pytest.fixture(scope="module")
def well_specified(scenario: ContextData, seed: int) -> InferenceResult:
    return run_inference(
        scenario.datasets,
        {"global": 10, "context": [3, 3]},
        MAX_ITER,
        BURNIN,
        lag=LAG,
        seed=seed,
    )


@pytest.fixture(scope="module")
def under_specified(scenario: ContextData, seed: int) -> InferenceResult:
    return run_inference(
        scenario.datasets, ClusterCaps(2, (2, 1)), MAX_ITER, BURNIN, lag=LAG, seed=seed
    )


def assert_consistent(result: InferenceResult) -> None:
    """Same global label iff same local label in every context, for every sample."""
    for sample in result.samples:
        g = np.asarray(sample.global_labels)
        local = np.asarray(sample.local_labels)
        same_global = g[:, None] == g[None, :]
        same_local = np.all(local[:, None, :] == local[None, :, :], axis=-1)
        assert np.array_equal(same_global, same_local)


class TestWellSpecified:
    """Four true global clusters with generous caps."""

    def test_shapes(self, well_specified: InferenceResult) -> None:
        assert well_specified.logliks.shape == (MAX_ITER,)
        assert well_specified.degenerate_updates.shape == (MAX_ITER,)
        assert len(well_specified.samples) == CHAIN_LENGTH
        assert well_specified.samples.global_labels.shape == (CHAIN_LENGTH, 160)
        assert well_specified.samples.local_labels.shape == (CHAIN_LENGTH, 160, 2)
        assert jnp.all(jnp.diff(well_specified.samples.sweeps) == LAG)
        assert jnp.all(jnp.isfinite(well_specified.logliks))
        assert np.isfinite(well_specified.dic)

    def test_consistency(self, well_specified: InferenceResult) -> None:
        assert_consistent(well_specified)

    def test_cluster_count(self, well_specified: InferenceResult) -> None:
        counts = number_of_clusters(well_specified.samples)
        assert jnp.all(counts <= 10)
        assert abs(float(jnp.median(counts)) - 4.0) <= 1.0

    def test_recovers_truth(
        self, well_specified: InferenceResult, scenario: ContextData
    ) -> None:
        cocluster = coclustering_matrix(well_specified.samples)
        labels = cluster_labels(cocluster, 4)
        assert cluster_agreement(labels, scenario.global_labels) > 0.8

    def test_not_degenerate(self, well_specified: InferenceResult) -> None:
        assert not well_specified.degenerate
        well_specified.raise_if_degenerate()

    def test_under_specified_caps_worse(
        self, well_specified: InferenceResult, under_specified: InferenceResult
    ) -> None:
        assert under_specified.dic > well_specified.dic

    def test_under_specified_respects_caps(self, under_specified: InferenceResult) -> None:
        assert jnp.all(number_of_clusters(under_specified.samples) <= 2)
        assert jnp.all(under_specified.samples.local_labels[:, :, 1] == 0)
        assert_consistent(under_specified)


class TestSingleCluster:
    """A single context with one allowed cluster reduces to fitting one Gaussian."""

    @pytest.fixture(scope="class")
    def data(self) -> Array:
        return 2.0 + 0.5 * jax.random.normal(jax.random.PRNGKey(7), (100, 1))

    @pytest.fixture(scope="class")
    def result(self, data: Array) -> InferenceResult:
        return run_inference([data], ClusterCaps(1, (1,)), 60, 10, seed=0)

    def test_constant_assignments(self, result: InferenceResult) -> None:
        assert jnp.all(result.samples.global_labels == 0)
        assert jnp.all(result.samples.local_labels == 0)
        assert jnp.all(number_of_clusters(result.samples) == 1)
        cocluster = coclustering_matrix(result.samples)
        assert jnp.allclose(cocluster, 1.0)

    def test_likelihood_below_maximum(self, result: InferenceResult, data: Array) -> None:
        mle = jnp.sum(stats.norm.logpdf(data, jnp.mean(data), jnp.std(data)))
        assert jnp.all(result.logliks <= mle + 1e-3)
        assert float(mle - jnp.mean(result.logliks[10:])) < 5.0

    def test_dic_from_trace(self, result: InferenceResult, data: Array) -> None:
        """Mean deviance over every sweep plus the gap to the deviance at the posterior mean.

        The empirical prior puts the posterior mean of a single cluster at the sample moments.
        """
        mle = jnp.sum(stats.norm.logpdf(data, jnp.mean(data), jnp.std(data)))
        expected = 2.0 * jnp.mean(-2.0 * result.logliks) + 2.0 * mle
        assert result.dic == pytest.approx(float(expected), rel=1e-4)


class TestSaturatedCaps:
    """Two well separated clusters with exactly two global and two local slots."""

    @pytest.fixture(scope="class")
    def data(self) -> Array:
        noise = 0.3 * jax.random.normal(jax.random.PRNGKey(11), (100, 1))
        return jnp.concatenate([jnp.full((50, 1), -5.0), jnp.full((50, 1), 5.0)]) + noise

    @pytest.mark.parametrize("seed", range(12))
    def test_finds_both_clusters(self, data: Array, seed: int) -> None:
        result = run_inference([data], ClusterCaps(2, (2,)), 200, 100, seed=seed)
        truth = jnp.repeat(jnp.array([0, 1]), 50)
        assert jnp.all(number_of_clusters(result.samples) == 2)
        assert jnp.all(number_of_clusters(result.samples.context_labels(0)) == 2)
        assert cluster_agreement(result.samples.context_labels(0)[-1], truth) == pytest.approx(1.0)
        assert_consistent(result)


class TestRunInference:
    def test_same_seed_same_trace(self, scenario: ContextData) -> None:
        first = run_inference(scenario.datasets, ClusterCaps(4, (2, 2)), 8, 2, seed=11)
        second = run_inference(scenario.datasets, ClusterCaps(4, (2, 2)), 8, 2, seed=11)
        assert jnp.array_equal(first.logliks, second.logliks)
        assert jnp.array_equal(
            first.samples.global_labels, second.samples.global_labels
        )

    def test_thinning(self, scenario: ContextData) -> None:
        result = run_inference(scenario.datasets, ClusterCaps(4, (2, 2)), 20, 5, lag=4, seed=0)
        assert len(result.samples) == 4
        assert [s.sweep for s in result.samples] == [5, 9, 13, 17]

    def test_categorical(self) -> None:
        key_a, key_b = jax.random.split(jax.random.PRNGKey(5))
        a = jax.random.randint(key_a, (40, 3), 0, 3)
        b = jax.random.randint(key_b, (40, 2), 0, 2)
        result = run_inference([a, b], ClusterCaps(5, (3, 2)), 10, 2, family="categorical")
        assert result.samples.global_labels.shape == (8, 40)
        assert jnp.all(jnp.isfinite(result.logliks))
        assert_consistent(result)

    def test_mixed_families(self, scenario: ContextData) -> None:
        codes = (scenario.local_labels[:, 1:2]).astype(jnp.float32)
        result = run_inference(
            [scenario.datasets[0], codes],
            ClusterCaps(5, (2, 2)),
            6,
            1,
            family=["diagNormal", "categorical"],
        )
        assert len(result.samples) == 5

    def test_degenerate_run(self, scenario: ContextData, caplog: pytest.LogCaptureFixture) -> None:
        """A variance floor no posterior can reach forces a prior fallback every sweep."""
        family = DiagonalNormal(2, min_variance=1e6)
        with caplog.at_level(logging.WARNING, logger="contextclust.inference"):
            result = run_inference(
                scenario.datasets, ClusterCaps(3, (2, 2)), 5, 1, family=family
            )
        assert result.degenerate
        assert jnp.all(result.degenerate_updates > 0)
        assert jnp.all(jnp.isfinite(result.logliks))
        assert "fell back to the prior" in caplog.text
        with pytest.raises(NumericDegeneracy):
            result.raise_if_degenerate()

    def test_result_keeps_tracker_flag(self, scenario: ContextData) -> None:
        models = (DiagonalNormal(2, min_variance=1e6), DiagonalNormal(2, min_variance=1e6))
        priors = tuple(
            model.empirical_prior(x) for model, x in zip(models, scenario.datasets)
        )
        sampler = ContextClustering(models, ClusterCaps(3, (2, 2)), Concentrations.broadcast(2))
        run = GibbsRun(sampler, scenario.datasets, priors, Schedule(4, 1), jax.random.PRNGKey(2))
        result = run.run()
        assert run.tracker.degenerate
        assert result.degenerate == run.tracker.degenerate


    def test_verbose_logs_progress(
        self, scenario: ContextData, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="contextclust.inference"):
            run_inference(scenario.datasets, ClusterCaps(3, (2, 2)), 10, 2, verbose=True)
        assert caplog.text.count("Sweep") == 10
        assert "DIC" in caplog.text


class TestConfigurationErrors:
    """Invalid configurations are rejected before any sweep runs."""

    @pytest.fixture
    def datasets(self) -> list[Array]:
        key = jax.random.PRNGKey(0)
        return [jax.random.normal(key, (20, 2)), jax.random.normal(key, (20, 1))]

    def test_burnin_too_large(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference(datasets, ClusterCaps(3, (2, 2)), 10, 10)

    def test_zero_lag(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference(datasets, ClusterCaps(3, (2, 2)), 10, 2, lag=0)

    def test_context_count(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference(datasets, ClusterCaps(3, (2,)), 10, 2)

    def test_point_count(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference([datasets[0], datasets[1][:10]], ClusterCaps(3, (2, 2)), 10, 2)

    def test_zero_cap(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference(datasets, {"global": 0, "context": [2, 2]}, 10, 2)

    def test_unsupported_family(self, datasets: list[Array]) -> None:
        with pytest.raises(UnsupportedEmissionFamily):
            run_inference(datasets, ClusterCaps(3, (2, 2)), 10, 2, family="poisson")

    def test_non_finite(self, datasets: list[Array]) -> None:
        bad = datasets[0].at[3, 1].set(jnp.inf)
        with pytest.raises(ConfigurationError):
            run_inference([bad, datasets[1]], ClusterCaps(3, (2, 2)), 10, 2)

    def test_family_count(self, datasets: list[Array]) -> None:
        with pytest.raises(ConfigurationError):
            run_inference(datasets, ClusterCaps(3, (2, 2)), 10, 2, family=["diagNormal"])

    def test_no_contexts(self) -> None:
        with pytest.raises(ConfigurationError):
            run_inference([], {"global": 3, "context": [2]}, 10, 2)
