"""Emission families for the observations of each context.

An emission model describes how the features of one context are distributed within a local cluster, together with a conjugate prior over the cluster parameters. The sampler only relies on two operations:

- `log_likelihood`: the log-density of one observation under a cluster's parameters, and
- `posterior_sample`: a draw of cluster parameters from the conjugate posterior given the observations currently assigned to the cluster.

Parameters, priors, and observations are flat `jax.Array`s. Emission models themselves are frozen dataclasses that only carry dimensions and settings, so they can be passed as static arguments to jitted functions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing_extensions import override

import jax
import jax.numpy as jnp
from jax import Array
from jax.scipy import stats

from .errors import ConfigurationError, UnsupportedEmissionFamily

### Interface ###


@dataclass(frozen=True)
class EmissionModel(ABC):
    """Conjugate family of cluster-conditional distributions over one context."""

    data_dim: int
    """Number of features of the context."""

    # Contract

    @property
    @abstractmethod
    def dim(self) -> int:
        """Length of a cluster parameter vector."""

    @property
    @abstractmethod
    def prior_dim(self) -> int:
        """Length of a prior hyperparameter vector."""

    @abstractmethod
    def log_likelihood(self, params: Array, x: Array) -> Array:
        """Log-density of a single observation.

        Args:
            params: Cluster parameters
            x: Observation of shape `(data_dim,)`

        Returns:
            Scalar log-density
        """

    @abstractmethod
    def posterior_sample(
        self, key: Array, prior: Array, xs: Array, weights: Array
    ) -> tuple[Array, Array]:
        """Draw cluster parameters from the conjugate posterior.

        Args:
            key: JAX random key
            prior: Prior hyperparameters
            xs: All observations of the context, shape `(n, data_dim)`
            weights: Membership mask of shape `(n,)`; only observations with weight one contribute

        Returns:
            params: Posterior draw (a prior draw when no observation is selected)
            degenerate: Whether the posterior draw was invalid and replaced by a prior draw
        """

    @abstractmethod
    def posterior_mean(self, prior: Array, xs: Array, weights: Array) -> Array:
        """Point estimate of the cluster parameters at the posterior mean.

        Args:
            prior: Prior hyperparameters
            xs: All observations of the context, shape `(n, data_dim)`
            weights: Membership mask of shape `(n,)`

        Returns:
            Cluster parameters
        """

    @abstractmethod
    def empirical_prior(self, data: Array) -> Array:
        """Weakly informative prior hyperparameters fitted to the whole context."""

    # Templates

    def validate_data(self, data: Array) -> None:
        """Raise a `ConfigurationError` if the data cannot be modelled by this family."""
        if data.ndim != 2 or data.shape[1] != self.data_dim:
            raise ConfigurationError(
                f"Expected data of shape (n, {self.data_dim}), got {data.shape}"
            )
        if not bool(jnp.all(jnp.isfinite(data))):
            raise ConfigurationError("Data contain non-finite values")

    def log_likelihood_matrix(self, params: Array, xs: Array) -> Array:
        """Log-densities of every observation under every cluster.

        Args:
            params: Stacked cluster parameters of shape `(n_clusters, dim)`
            xs: Observations of shape `(n, data_dim)`

        Returns:
            Array of shape `(n, n_clusters)`
        """
        per_cluster = jax.vmap(self.log_likelihood, in_axes=(None, 0))
        return jax.vmap(per_cluster, in_axes=(0, None))(params, xs).T

    def posterior_sample_clusters(
        self, key: Array, prior: Array, xs: Array, memberships: Array
    ) -> tuple[Array, Array]:
        """Draw the parameters of every cluster at once.

        Args:
            key: JAX random key
            prior: Prior hyperparameters shared by all clusters
            xs: Observations of shape `(n, data_dim)`
            memberships: One-hot membership matrix of shape `(n_clusters, n)`

        Returns:
            Stacked parameters `(n_clusters, dim)` and degeneracy flags `(n_clusters,)`
        """
        keys = jax.random.split(key, memberships.shape[0])
        return jax.vmap(self.posterior_sample, in_axes=(0, None, None, 0))(
            keys, prior, xs, memberships
        )

    def posterior_mean_clusters(self, prior: Array, xs: Array, memberships: Array) -> Array:
        """Posterior-mean parameters of every cluster, shape `(n_clusters, dim)`."""
        return jax.vmap(self.posterior_mean, in_axes=(None, None, 0))(prior, xs, memberships)

    def prior_sample(self, key: Array, prior: Array, n_clusters: int) -> Array:
        """Draw the parameters of `n_clusters` empty clusters."""
        empty = jnp.zeros((n_clusters, 1))
        xs = jnp.zeros((1, self.data_dim))
        params, _ = self.posterior_sample_clusters(key, prior, xs, empty)
        return params


### Diagonal Normal ###


@dataclass(frozen=True)
class DiagonalNormal(EmissionModel):
    """Normal distribution with diagonal covariance and a Normal-Inverse-Gamma prior.

    Each dimension $d$ is independent with

    $$\\sigma_d^2 \\sim \\text{IG}(a_d, b_d), \\quad \\mu_d \\mid \\sigma_d^2 \\sim \\mathcal N(m_d, \\sigma_d^2/\\kappa_d), \\quad x_d \\sim \\mathcal N(\\mu_d, \\sigma_d^2).$$

    Given $n$ observations with mean $\\bar x$ and scatter $S = \\sum_i (x_i - \\bar x)^2$, the posterior is again Normal-Inverse-Gamma with

    - $\\kappa_n = \\kappa + n$, $m_n = (\\kappa m + n\\bar x)/\\kappa_n$,
    - $a_n = a + n/2$, $b_n = b + S/2 + \\kappa n (\\bar x - m)^2 / (2\\kappa_n)$.

    Parameters are stored as `(mean, variance)` and priors as `(m, kappa, a, b)`, each block of length `data_dim`.
    """

    mean_precision: float = 1.0
    """Prior pseudo-count $\\kappa$ of the empirical prior."""

    variance_shape: float = 2.0
    """Prior shape $a$ of the empirical prior."""

    min_variance: float = 1e-8
    """Variances below this value are treated as a covariance collapse."""

    # Overrides

    @property
    @override
    def dim(self) -> int:
        return 2 * self.data_dim

    @property
    @override
    def prior_dim(self) -> int:
        return 4 * self.data_dim

    @override
    def log_likelihood(self, params: Array, x: Array) -> Array:
        mean, variance = self.split_params(params)
        return jnp.sum(stats.norm.logpdf(x, mean, jnp.sqrt(variance)))

    @override
    def posterior_sample(
        self, key: Array, prior: Array, xs: Array, weights: Array
    ) -> tuple[Array, Array]:
        post_key, prior_key = jax.random.split(key)
        post = self._draw(post_key, self.posterior_hyperparameters(prior, xs, weights))
        fallback = self._draw(prior_key, prior)

        _, variance = self.split_params(post)
        degenerate = jnp.any(~jnp.isfinite(post)) | jnp.any(variance < self.min_variance)

        mean0, variance0 = self.split_params(fallback)
        fallback = self.join_params(mean0, jnp.maximum(variance0, self.min_variance))
        return jnp.where(degenerate, fallback, post), degenerate

    @override
    def posterior_mean(self, prior: Array, xs: Array, weights: Array) -> Array:
        loc, _, shape, rate = self.split_prior(
            self.posterior_hyperparameters(prior, xs, weights)
        )
        # The inverse-gamma mean exists only for shape > 1; use the mode otherwise
        variance = jnp.where(shape > 1.0, rate / (shape - 1.0), rate / (shape + 1.0))
        return self.join_params(loc, jnp.maximum(variance, self.min_variance))

    @override
    def empirical_prior(self, data: Array) -> Array:
        mean = jnp.mean(data, axis=0)
        scale = jnp.maximum(jnp.var(data, axis=0), 1e-6)
        ones = jnp.ones(self.data_dim)
        return self.join_prior(
            mean,
            self.mean_precision * ones,
            self.variance_shape * ones,
            (self.variance_shape - 1.0) * scale,
        )

    # Methods

    def join_params(self, mean: Array, variance: Array) -> Array:
        return jnp.concatenate([mean, variance])

    def split_params(self, params: Array) -> tuple[Array, Array]:
        return params[: self.data_dim], params[self.data_dim :]

    def join_prior(self, loc: Array, precision: Array, shape: Array, rate: Array) -> Array:
        return jnp.concatenate([loc, precision, shape, rate])

    def split_prior(self, prior: Array) -> tuple[Array, Array, Array, Array]:
        loc, precision, shape, rate = jnp.split(prior, 4)
        return loc, precision, shape, rate

    def posterior_hyperparameters(self, prior: Array, xs: Array, weights: Array) -> Array:
        """Conjugate update of the Normal-Inverse-Gamma hyperparameters."""
        loc, precision, shape, rate = self.split_prior(prior)
        n = jnp.sum(weights)
        x_bar = jnp.dot(weights, xs) / jnp.maximum(n, 1.0)
        scatter = jnp.dot(weights, (xs - x_bar) ** 2)

        post_precision = precision + n
        post_loc = (precision * loc + n * x_bar) / post_precision
        post_shape = shape + 0.5 * n
        post_rate = (
            rate
            + 0.5 * scatter
            + 0.5 * precision * n * (x_bar - loc) ** 2 / post_precision
        )
        return self.join_prior(post_loc, post_precision, post_shape, post_rate)

    def _draw(self, key: Array, prior: Array) -> Array:
        loc, precision, shape, rate = self.split_prior(prior)
        var_key, mean_key = jax.random.split(key)
        variance = rate / jax.random.gamma(var_key, shape)
        mean = loc + jnp.sqrt(variance / precision) * jax.random.normal(
            mean_key, (self.data_dim,)
        )
        return self.join_params(mean, variance)


### Categorical ###


@dataclass(frozen=True)
class DiagonalCategorical(EmissionModel):
    """Independent categorical features with a symmetric Dirichlet prior.

    Observations are integer codes in `[0, n_values)`. Parameters are the stacked probability vectors of all features, flattened to length `data_dim * n_values`; the prior is a Dirichlet concentration of the same shape.
    """

    n_values: int = 2
    """Number of values each feature can take."""

    pseudo_count: float = 1.0
    """Dirichlet concentration per value of the empirical prior."""

    min_probability: float = 1e-12
    """Probabilities are floored at this value before normalization."""

    # Overrides

    @property
    @override
    def dim(self) -> int:
        return self.data_dim * self.n_values

    @property
    @override
    def prior_dim(self) -> int:
        return self.dim

    @override
    def log_likelihood(self, params: Array, x: Array) -> Array:
        probs = self.to_probs(params)
        codes = x.astype(jnp.int32)
        return jnp.sum(jnp.log(probs[jnp.arange(self.data_dim), codes]))

    @override
    def posterior_sample(
        self, key: Array, prior: Array, xs: Array, weights: Array
    ) -> tuple[Array, Array]:
        post_key, prior_key = jax.random.split(key)
        concentration = prior.reshape(self.data_dim, self.n_values)
        counts = jnp.einsum("n,ndv->dv", weights, self.one_hot(xs))

        post = self._draw(post_key, concentration + counts)
        fallback = self._draw(prior_key, concentration)
        degenerate = jnp.any(~jnp.isfinite(post))
        return jnp.where(degenerate, fallback, post), degenerate

    @override
    def posterior_mean(self, prior: Array, xs: Array, weights: Array) -> Array:
        concentration = prior.reshape(self.data_dim, self.n_values)
        concentration = concentration + jnp.einsum("n,ndv->dv", weights, self.one_hot(xs))
        probs = concentration / jnp.sum(concentration, axis=-1, keepdims=True)
        return probs.reshape(-1)

    @override
    def empirical_prior(self, data: Array) -> Array:
        return jnp.full((self.dim,), self.pseudo_count)

    @override
    def validate_data(self, data: Array) -> None:
        super().validate_data(data)
        if not bool(jnp.all((data >= 0) & (data < self.n_values) & (data == jnp.round(data)))):
            raise ConfigurationError(
                f"Categorical data must be integer codes in [0, {self.n_values})"
            )

    # Methods

    def to_probs(self, params: Array) -> Array:
        """Reshape flat parameters to a `(data_dim, n_values)` matrix."""
        return params.reshape(self.data_dim, self.n_values)

    def one_hot(self, xs: Array) -> Array:
        return jax.nn.one_hot(xs.astype(jnp.int32), self.n_values)

    def _draw(self, key: Array, concentration: Array) -> Array:
        probs = jax.random.dirichlet(key, concentration)
        probs = jnp.maximum(probs, self.min_probability)
        probs = probs / jnp.sum(probs, axis=-1, keepdims=True)
        return probs.reshape(-1)


### Registry ###


def _diagonal_normal(data: Array) -> EmissionModel:
    return DiagonalNormal(data.shape[1])


def _diagonal_categorical(data: Array) -> EmissionModel:
    return DiagonalCategorical(data.shape[1], n_values=int(jnp.max(data)) + 1)


EMISSION_FAMILIES: dict[str, Callable[[Array], EmissionModel]] = {
    "diagNormal": _diagonal_normal,
    "categorical": _diagonal_categorical,
}
"""Emission family constructors by tag."""


def emission_model(family: str | EmissionModel, data: Array) -> EmissionModel:
    """Resolve an emission family tag for a context and check the data against it.

    Args:
        family: Family tag from `EMISSION_FAMILIES`, or an already constructed model
        data: Observations of the context, shape `(n, data_dim)`

    Returns:
        Emission model for the context
    """
    if isinstance(family, EmissionModel):
        model = family
    else:
        if family not in EMISSION_FAMILIES:
            raise UnsupportedEmissionFamily(family, tuple(EMISSION_FAMILIES))
        if data.ndim != 2:
            raise ConfigurationError(
                f"Each dataset must be a 2D array, got shape {data.shape}"
            )
        if not bool(jnp.all(jnp.isfinite(data))):
            raise ConfigurationError("Data contain non-finite values")
        model = EMISSION_FAMILIES[family](data)
    model.validate_data(data)
    return model
