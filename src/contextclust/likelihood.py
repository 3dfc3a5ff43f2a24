"""Log-likelihood trace and the Deviance Information Criterion.

The sampler records one joint log-likelihood per sweep. With deviance $D_t = -2\\log p(x, z_t \\mid \\theta_t)$, the DIC reported here is

$$\\text{DIC} = \\bar D + p_D, \\quad p_D = \\bar D - D(\\bar\\theta),$$

where $\\bar D$ is the mean deviance over every sweep of the run, burn-in included, and $D(\\bar\\theta)$ is the deviance of the final assignments with every local slot's parameters at their posterior mean. Lower values indicate a better trade-off between fit and complexity.
"""

from __future__ import annotations

import jax.numpy as jnp
from jax import Array
from jax.scipy.special import gammaln


def log_dirichlet_multinomial(counts: Array, concentration: float | Array) -> Array:
    """Log-probability of a label sequence under a symmetric Dirichlet-multinomial.

    The mixing weights follow $\\text{Dir}(a/K, \\ldots, a/K)$ and are integrated out:

    $$\\log p(z) = \\log\\Gamma(a) - \\log\\Gamma(a + n) + \\sum_k \\left[\\log\\Gamma(a/K + n_k) - \\log\\Gamma(a/K)\\right].$$

    Args:
        counts: Number of labels equal to each of the $K$ categories
        concentration: Total concentration $a$

    Returns:
        Scalar log-probability of any sequence with these counts
    """
    n_categories = counts.shape[0]
    alpha = concentration / n_categories
    n = jnp.sum(counts)
    return (
        gammaln(concentration)
        - gammaln(concentration + n)
        + jnp.sum(gammaln(alpha + counts) - gammaln(alpha))
    )


def deviance(logliks: Array | float) -> Array:
    return -2.0 * jnp.asarray(logliks)


def deviance_information_criterion(logliks: Array, plugin_loglik: Array | float) -> Array:
    """DIC from a trace of joint log-likelihoods and the log-likelihood at the plug-in point.

    Args:
        logliks: Joint log-likelihood of every sweep
        plugin_loglik: Joint log-likelihood at the posterior-mean parameters

    Returns:
        $2\\bar D - D(\\bar\\theta)$
    """
    return 2.0 * jnp.mean(deviance(logliks)) - deviance(plugin_loglik)


class LikelihoodTracker:
    """Per-sweep record of the joint log-likelihood and of prior fallbacks."""

    def __init__(self):
        self._logliks: list[float] = []
        self._degenerate: list[int] = []

    def record(self, loglik: Array | float, n_degenerate: Array | int = 0) -> None:
        self._logliks.append(float(loglik))
        self._degenerate.append(int(n_degenerate))

    def __len__(self) -> int:
        return len(self._logliks)

    @property
    def trace(self) -> Array:
        """Log-likelihood of every recorded sweep."""
        return jnp.asarray(self._logliks)

    @property
    def degenerate_updates(self) -> Array:
        """Number of posterior updates that fell back to the prior, per sweep."""
        return jnp.asarray(self._degenerate, dtype=jnp.int32)

    @property
    def degenerate(self) -> bool:
        """Whether every sweep needed at least one prior fallback."""
        return len(self._degenerate) > 0 and all(d > 0 for d in self._degenerate)

    def dic(self, plugin_loglik: Array | float) -> float:
        """DIC over every recorded sweep."""
        return float(deviance_information_criterion(self.trace, plugin_loglik))
