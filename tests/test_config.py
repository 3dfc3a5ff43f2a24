"""Tests for run configuration validation."""

import pytest

from contextclust.config import ClusterCaps, Concentrations, Schedule, resolve_caps
from contextclust.errors import ConfigurationError, ContextClusteringError


class TestClusterCaps:
    def test_from_mapping(self) -> None:
        caps = resolve_caps({"global": 5, "context": [3, 2]})
        assert caps == ClusterCaps(5, (3, 2))
        assert caps.n_contexts == 2

    def test_passthrough(self) -> None:
        caps = ClusterCaps(3, (2,))
        assert resolve_caps(caps) is caps

    def test_list_is_normalized(self) -> None:
        caps = ClusterCaps(3, [2, 2])  # pyright: ignore[reportArgumentType]
        assert caps.context_clusters == (2, 2)
        assert hash(caps) == hash(ClusterCaps(3, (2, 2)))

    @pytest.mark.parametrize(
        "global_clusters,context_clusters",
        [(0, (2,)), (3, ()), (3, (2, 0))],
    )
    def test_invalid(self, global_clusters: int, context_clusters: tuple[int, ...]) -> None:
        with pytest.raises(ConfigurationError):
            ClusterCaps(global_clusters, context_clusters)

    def test_missing_key(self) -> None:
        with pytest.raises(ConfigurationError):
            ClusterCaps.from_mapping({"global": 3})


class TestSchedule:
    @pytest.mark.parametrize(
        "max_iter,burnin,lag,expected",
        [(10, 0, 1, 10), (10, 5, 1, 5), (10, 5, 2, 3), (10, 9, 3, 1), (100, 20, 7, 12)],
    )
    def test_n_samples(self, max_iter: int, burnin: int, lag: int, expected: int) -> None:
        schedule = Schedule(max_iter, burnin, lag)
        assert schedule.n_samples == expected
        assert sum(schedule.retains(s) for s in range(max_iter)) == expected

    def test_retains(self) -> None:
        schedule = Schedule(10, 4, 3)
        assert [s for s in range(10) if schedule.retains(s)] == [4, 7]

    @pytest.mark.parametrize(
        "max_iter,burnin,lag",
        [(0, 0, 1), (10, 10, 1), (10, 12, 1), (10, -1, 1), (10, 2, 0)],
    )
    def test_invalid(self, max_iter: int, burnin: int, lag: int) -> None:
        with pytest.raises(ConfigurationError):
            Schedule(max_iter, burnin, lag)


class TestConcentrations:
    def test_broadcast_scalar(self) -> None:
        conc = Concentrations.broadcast(3, 2.0, 0.5)
        assert conc.global_concentration == 2.0
        assert conc.local_concentrations == (0.5, 0.5, 0.5)

    def test_broadcast_sequence(self) -> None:
        conc = Concentrations.broadcast(2, 1.0, [0.5, 2.0])
        assert conc.local_concentrations == (0.5, 2.0)

    def test_broadcast_length_mismatch(self) -> None:
        with pytest.raises(ConfigurationError):
            Concentrations.broadcast(2, 1.0, [0.5])

    @pytest.mark.parametrize("global_concentration,local", [(0.0, (1.0,)), (1.0, (-1.0,))])
    def test_non_positive(self, global_concentration: float, local: tuple[float, ...]) -> None:
        with pytest.raises(ConfigurationError):
            Concentrations(global_concentration, local)


def test_error_hierarchy() -> None:
    """Configuration errors are both package errors and value errors."""
    assert issubclass(ConfigurationError, ContextClusteringError)
    assert issubclass(ConfigurationError, ValueError)
