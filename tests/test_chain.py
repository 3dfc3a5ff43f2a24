"""Tests for chain recording, the likelihood tracker, and canonical labels."""

import jax
import jax.numpy as jnp
import pytest
from jax.scipy.special import gammaln

from contextclust.chain import ChainRecorder
from contextclust.config import Schedule
from contextclust.likelihood import (
    LikelihoodTracker,
    deviance_information_criterion,
    log_dirichlet_multinomial,
)
from contextclust.state import canonical_labels

jax.config.update("jax_platform_name", "cpu")

# Tolerances
RTOL = 1e-5
ATOL = 1e-5


class TestChainRecorder:
    @pytest.mark.parametrize("max_iter,burnin,lag", [(10, 0, 1), (20, 5, 3), (7, 6, 2)])
    def test_length(self, max_iter: int, burnin: int, lag: int) -> None:
        schedule = Schedule(max_iter, burnin, lag)
        recorder = ChainRecorder(schedule)
        for sweep in range(max_iter):
            recorder.record(sweep, jnp.zeros(4, dtype=jnp.int32), jnp.zeros((4, 2), dtype=jnp.int32), 0.0)
        chain = recorder.chain()
        assert len(chain) == (max_iter - burnin - 1) // lag + 1
        assert int(chain.sweeps[0]) == burnin
        assert jnp.all(jnp.diff(chain.sweeps) == lag)

    def test_samples(self) -> None:
        recorder = ChainRecorder(Schedule(4, 2))
        for sweep in range(4):
            labels = jnp.full(3, sweep, dtype=jnp.int32)
            local = jnp.stack([labels, labels + 1], axis=1)
            recorder.record(sweep, labels, local, -float(sweep))
        chain = recorder.chain()

        assert chain.global_labels.shape == (2, 3)
        assert chain.local_labels.shape == (2, 3, 2)
        assert [sample.sweep for sample in chain] == [2, 3]
        assert chain[1].log_likelihood == -3.0
        assert jnp.array_equal(chain.context_labels(1)[0], jnp.full(3, 3))

    def test_empty(self) -> None:
        chain = ChainRecorder(Schedule(3, 1)).chain()
        assert len(chain) == 0


class TestLikelihood:
    def test_dirichlet_multinomial_single_category(self) -> None:
        """A single category has probability one."""
        assert jnp.allclose(log_dirichlet_multinomial(jnp.array([7.0]), 2.0), 0.0, atol=ATOL)

    def test_dirichlet_multinomial_sequence(self) -> None:
        """Compare with the sequential Polya urn probability of the labels 0, 0, 1."""
        a = 1.5
        counts = jnp.array([2.0, 1.0])
        # p(0) p(0 | 0) p(1 | 0, 0) with weight a/2 per category
        expected = (
            jnp.log(0.75 / 1.5) + jnp.log(1.75 / 2.5) + jnp.log(0.75 / 3.5)
        )
        assert jnp.allclose(log_dirichlet_multinomial(counts, a), expected, rtol=RTOL, atol=ATOL)

    def test_dirichlet_multinomial_matches_gammaln(self) -> None:
        counts = jnp.array([3.0, 0.0, 5.0, 1.0])
        a = 2.0
        expected = (
            gammaln(a)
            - gammaln(a + 9.0)
            + jnp.sum(gammaln(a / 4 + counts) - gammaln(a / 4))
        )
        assert jnp.allclose(log_dirichlet_multinomial(counts, a), expected, rtol=RTOL, atol=ATOL)

    def test_dic_at_plugin_point(self) -> None:
        """A trace that equals the plug-in log-likelihood has no effective parameters."""
        logliks = jnp.full(10, -50.0)
        assert jnp.allclose(deviance_information_criterion(logliks, -50.0), 100.0)

    def test_dic_penalizes_gap_to_plugin(self) -> None:
        logliks = jnp.array([-49.0, -51.0, -53.0])
        # mean deviance 102 and plug-in deviance 96 give p_D = 6
        assert jnp.allclose(deviance_information_criterion(logliks, -48.0), 108.0)

    def test_tracker_uses_whole_trace(self) -> None:
        """Early sweeps count toward the DIC."""
        tracker = LikelihoodTracker()
        for loglik in [-1000.0, -500.0, -50.0, -50.0]:
            tracker.record(loglik)
        assert tracker.trace.shape == (4,)
        # mean deviance 800 and plug-in deviance 100
        assert jnp.allclose(tracker.dic(-50.0), 1500.0)
        assert not tracker.degenerate

    def test_tracker_degenerate(self) -> None:
        tracker = LikelihoodTracker()
        for n in [1, 2, 1]:
            tracker.record(0.0, n)
        assert tracker.degenerate
        tracker.record(0.0, 0)
        assert not tracker.degenerate


class TestCanonicalLabels:
    def test_duplicate_tuples_merge(self) -> None:
        """Points in two slots with the same tuple share a canonical label."""
        slot_tuples = jnp.array([[0, 1], [1, 1], [0, 1], [1, 0]])
        global_labels = jnp.array([2, 0, 1, 2, 3])
        canonical = canonical_labels(global_labels, slot_tuples)
        assert jnp.array_equal(canonical, jnp.array([0, 0, 1, 0, 3]))

    def test_empty_slots_ignored(self) -> None:
        """A stale tuple on an empty slot never becomes a canonical label."""
        slot_tuples = jnp.array([[0, 1], [0, 1]])
        global_labels = jnp.array([1, 1])
        canonical = canonical_labels(global_labels, slot_tuples)
        assert jnp.array_equal(canonical, jnp.array([1, 1]))
