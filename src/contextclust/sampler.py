"""Collapsed Gibbs sampler for context-dependent clustering.

The generative model is a truncated mixture with $G$ global slots and $K_c$ local slots in every context $c$:

- global weights $\\pi \\sim \\text{Dir}(\\alpha/G)$ and local weights $\\rho_c \\sim \\text{Dir}(\\gamma_c/K_c)$,
- every global slot $g$ carries a tuple of local labels $T_{g,c} \\sim \\text{Cat}(\\rho_c)$,
- every local slot carries emission parameters $\\theta_{c,k}$ drawn from the emission prior,
- every point draws $z_i \\sim \\text{Cat}(\\pi)$ and $x_{i,c} \\sim F(\\theta_{c, T_{z_i,c}})$.

The weights $\\pi$ and $\\rho_c$ are integrated out, as are the tuples of unoccupied slots. Writing $m_g$ for the number of other points in slot $g$, $E$ for the number of unoccupied slots, and

$$q_c(k) = \\frac{n_{c,k} + \\gamma_c/K_c}{S + \\gamma_c}$$

for the predictive probability that a newly occupied slot uses local label $k$ in context $c$ ($n_{c,k}$ of the $S$ occupied slots already do), a point joins an occupied slot with mass $(m_g + \\alpha/G) \\prod_c f(x_{i,c} \\mid \\theta_{c, T_{g,c}})$ and opens an unoccupied slot with tuple $t$ with mass $(\\alpha/G)\\, E \\prod_c q_c(t_c) f(x_{i,c} \\mid \\theta_{c,t_c})$.

One sweep runs, in order:

1. Local resampling: for every context and every point, redraw the point's local label in that context while keeping its labels in the other contexts. The point moves to an occupied slot whose tuple agrees on the other contexts, or opens a new slot.
2. Global resampling: for every point, redraw its global slot among all occupied slots and a new slot.
3. Tuple resampling: for every occupied global slot, redraw its local label in every context given all of its members at once.
4. Parameter resampling: redraw the emission parameters of every local slot from its posterior.
5. Likelihood: evaluate the joint log-likelihood of data and assignments.

Points are visited in index order and every draw uses a key folded from the sweep key, so a run is reproducible given its key.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax
import jax.numpy as jnp
from jax import Array
from jax.scipy.special import logsumexp

from .config import ClusterCaps, Concentrations
from .emission import EmissionModel
from .errors import ConfigurationError
from .likelihood import log_dirichlet_multinomial
from .state import Assignments, ClusterParameters, SamplerState


@dataclass(frozen=True)
class ContextClustering:
    """Model definition and Gibbs transitions for context-dependent clustering.

    The object itself only holds static configuration; data, priors, and state are passed to every method. Its instances are hashable and serve as static arguments of `gibbs_sweep`.
    """

    models: tuple[EmissionModel, ...]
    """Emission model of every context."""

    caps: ClusterCaps
    concentrations: Concentrations

    def __post_init__(self):
        object.__setattr__(self, "models", tuple(self.models))
        if len(self.models) != self.caps.n_contexts:
            raise ConfigurationError(
                f"Got {len(self.models)} contexts but {self.caps.n_contexts} context cluster caps"
            )
        if len(self.concentrations.local_concentrations) != self.n_contexts:
            raise ConfigurationError(
                f"Got {len(self.concentrations.local_concentrations)} local concentrations for {self.n_contexts} contexts"
            )

    # Properties

    @property
    def n_contexts(self) -> int:
        return len(self.models)

    @property
    def n_global(self) -> int:
        return self.caps.global_clusters

    @property
    def global_weight(self) -> float:
        """Prior mass $\\alpha/G$ of a single global slot."""
        return self.concentrations.global_concentration / self.n_global

    # Initialization

    def initialize(
        self, key: Array, data: tuple[Array, ...], priors: tuple[Array, ...]
    ) -> SamplerState:
        """Uniformly random assignments and tuples, with parameters drawn from the priors."""
        n_points = data[0].shape[0]
        label_key, tuple_key, param_key = jax.random.split(key, 3)

        global_labels = jax.random.randint(label_key, (n_points,), 0, self.n_global)
        tuple_keys = jax.random.split(tuple_key, self.n_contexts)
        slot_tuples = jnp.stack(
            [
                jax.random.randint(k, (self.n_global,), 0, n_local)
                for k, n_local in zip(tuple_keys, self.caps.context_clusters)
            ],
            axis=1,
        )

        param_keys = jax.random.split(param_key, self.n_contexts)
        local_params = tuple(
            model.prior_sample(k, prior, n_local)
            for model, k, prior, n_local in zip(
                self.models, param_keys, priors, self.caps.context_clusters
            )
        )
        return SamplerState(
            Assignments(global_labels), ClusterParameters(local_params, slot_tuples)
        )

    # Conditionals

    def log_likelihood_matrices(
        self, data: tuple[Array, ...], params: ClusterParameters
    ) -> tuple[Array, ...]:
        """Log-density of every point under every local slot, one `(N, K_c)` array per context."""
        return tuple(
            model.log_likelihood_matrix(p, x)
            for model, p, x in zip(self.models, params.local_params, data)
        )

    def log_tuple_predictive(
        self, slot_tuples: Array, occupied: Array
    ) -> tuple[Array, ...]:
        """Log predictive $\\log q_c(k)$ of the local labels of a newly occupied slot, per context."""
        n_occupied = jnp.sum(occupied)
        log_qs: list[Array] = []
        for c, n_local in enumerate(self.caps.context_clusters):
            gamma = self.concentrations.local_concentrations[c]
            counts = jnp.sum(
                jax.nn.one_hot(slot_tuples[:, c], n_local) * occupied[:, None], axis=0
            )
            log_qs.append(jnp.log(counts + gamma / n_local) - jnp.log(n_occupied + gamma))
        return tuple(log_qs)

    # Transitions

    def resample_local(
        self, key: Array, lls: tuple[Array, ...], state: SamplerState
    ) -> SamplerState:
        """Step 1: redraw local labels context by context, point by point."""
        global_labels = state.global_labels
        slot_tuples = state.slot_tuples
        for c in range(self.n_contexts):
            global_labels, slot_tuples = self._resample_context(
                jax.random.fold_in(key, c), c, lls, global_labels, slot_tuples
            )
        return SamplerState(
            Assignments(global_labels),
            ClusterParameters(state.params.local_params, slot_tuples),
        )

    def _resample_context(
        self,
        key: Array,
        context: int,
        lls: tuple[Array, ...],
        global_labels: Array,
        slot_tuples: Array,
    ) -> tuple[Array, Array]:
        n_global = self.n_global
        counts = jnp.bincount(global_labels, length=n_global)

        def update_point(
            i: Array, carry: tuple[Array, Array, Array]
        ) -> tuple[Array, Array, Array]:
            labels, tuples, counts = carry
            g_old = labels[i]
            counts = counts.at[g_old].add(-1)
            occupied = counts > 0
            n_empty = n_global - jnp.sum(occupied)
            t_i = tuples[g_old]
            log_q = self.log_tuple_predictive(tuples, occupied)

            # Slots whose tuple agrees with the point outside this context
            agrees = occupied
            log_q_rest = jnp.array(0.0)
            for c in range(self.n_contexts):
                if c != context:
                    agrees = agrees & (tuples[:, c] == t_i[c])
                    log_q_rest = log_q_rest + log_q[c][t_i[c]]

            ll = lls[context][i]
            log_join = jnp.where(
                agrees,
                jnp.log(counts + self.global_weight) + ll[tuples[:, context]],
                -jnp.inf,
            )
            log_open = (
                jnp.log(self.global_weight * n_empty) + log_q_rest + log_q[context] + ll
            )
            choice = jax.random.categorical(
                jax.random.fold_in(key, i), jnp.concatenate([log_join, log_open])
            )

            opens = choice >= n_global
            g_empty = jnp.argmin(occupied)
            g_new = jnp.where(opens, g_empty, choice)
            opened = tuples.at[g_empty].set(t_i.at[context].set(choice - n_global))
            tuples = jnp.where(opens, opened, tuples)
            return labels.at[i].set(g_new), tuples, counts.at[g_new].add(1)

        global_labels, slot_tuples, _ = jax.lax.fori_loop(
            0, global_labels.shape[0], update_point, (global_labels, slot_tuples, counts)
        )
        return global_labels, slot_tuples

    def resample_global(
        self, key: Array, lls: tuple[Array, ...], state: SamplerState
    ) -> SamplerState:
        """Step 2: redraw the global slot of every point."""
        n_global = self.n_global
        counts = state.occupancy()

        def update_point(
            i: Array, carry: tuple[Array, Array, Array]
        ) -> tuple[Array, Array, Array]:
            labels, tuples, counts = carry
            g_old = labels[i]
            counts = counts.at[g_old].add(-1)
            occupied = counts > 0
            n_empty = n_global - jnp.sum(occupied)
            log_q = self.log_tuple_predictive(tuples, occupied)
            keys = jax.random.split(jax.random.fold_in(key, i), self.n_contexts + 1)

            slot_ll = sum(lls[c][i][tuples[:, c]] for c in range(self.n_contexts))
            log_join = jnp.where(
                occupied, jnp.log(counts + self.global_weight) + slot_ll, -jnp.inf
            )
            # A new slot marginalizes its tuple, which factorizes over contexts
            log_tuple = [log_q[c] + lls[c][i] for c in range(self.n_contexts)]
            log_open = jnp.log(self.global_weight * n_empty) + sum(
                logsumexp(lt) for lt in log_tuple
            )
            choice = jax.random.categorical(
                keys[0], jnp.concatenate([log_join, jnp.atleast_1d(log_open)])
            )
            new_tuple = jnp.stack(
                [
                    jax.random.categorical(k, lt).astype(tuples.dtype)
                    for k, lt in zip(keys[1:], log_tuple)
                ]
            )

            opens = choice == n_global
            g_empty = jnp.argmin(occupied)
            g_new = jnp.where(opens, g_empty, choice)
            tuples = jnp.where(opens, tuples.at[g_empty].set(new_tuple), tuples)
            return labels.at[i].set(g_new), tuples, counts.at[g_new].add(1)

        global_labels, slot_tuples, _ = jax.lax.fori_loop(
            0,
            state.global_labels.shape[0],
            update_point,
            (state.global_labels, state.slot_tuples, counts),
        )
        return SamplerState(
            Assignments(global_labels),
            ClusterParameters(state.params.local_params, slot_tuples),
        )

    def resample_tuples(
        self, key: Array, lls: tuple[Array, ...], state: SamplerState
    ) -> SamplerState:
        """Step 3: redraw the local-label tuple of every occupied global slot.

        Slot $g$ takes local label $k$ in context $c$ with probability proportional to $q^{-g}_c(k) \\prod_{i: z_i = g} f(x_{i,c} \\mid \\theta_{c,k})$, where $q^{-g}_c$ is the tuple predictive of the other occupied slots. All members of a slot change their local label together.
        """
        occupied = state.occupancy() > 0
        memberships = jax.nn.one_hot(state.global_labels, self.n_global).T
        member_lls = tuple(memberships @ ll for ll in lls)

        def update_slot(g: Array, tuples: Array) -> Array:
            log_q = self.log_tuple_predictive(tuples, occupied.at[g].set(False))
            keys = jax.random.split(jax.random.fold_in(key, g), self.n_contexts)
            for c in range(self.n_contexts):
                label = jax.random.categorical(keys[c], log_q[c] + member_lls[c][g])
                label = jnp.where(occupied[g], label.astype(tuples.dtype), tuples[g, c])
                tuples = tuples.at[g, c].set(label)
            return tuples

        slot_tuples = jax.lax.fori_loop(0, self.n_global, update_slot, state.slot_tuples)
        return SamplerState(
            state.assignments, ClusterParameters(state.params.local_params, slot_tuples)
        )

    def resample_parameters(
        self,
        key: Array,
        data: tuple[Array, ...],
        priors: tuple[Array, ...],
        state: SamplerState,
    ) -> tuple[SamplerState, Array]:
        """Step 4: redraw every local slot's parameters from its posterior.

        Returns:
            Updated state and the number of updates that fell back to the prior
        """
        local_labels = state.local_labels()
        keys = jax.random.split(key, self.n_contexts)
        local_params: list[Array] = []
        n_degenerate = jnp.array(0, dtype=jnp.int32)
        for c, (model, x, prior) in enumerate(zip(self.models, data, priors)):
            memberships = jax.nn.one_hot(local_labels[:, c], self.caps.context_clusters[c]).T
            params, degenerate = model.posterior_sample_clusters(
                keys[c], prior, x, memberships
            )
            local_params.append(params)
            n_degenerate = n_degenerate + jnp.sum(degenerate)
        return (
            SamplerState(state.assignments, state.params.with_local_params(tuple(local_params))),
            n_degenerate,
        )

    def posterior_mean_state(
        self, data: tuple[Array, ...], priors: tuple[Array, ...], state: SamplerState
    ) -> SamplerState:
        """The state with every local slot's parameters replaced by their posterior mean."""
        local_labels = state.local_labels()
        local_params = tuple(
            model.posterior_mean_clusters(
                prior, x, jax.nn.one_hot(local_labels[:, c], n_local).T
            )
            for c, (model, x, prior, n_local) in enumerate(
                zip(self.models, data, priors, self.caps.context_clusters)
            )
        )
        return SamplerState(state.assignments, state.params.with_local_params(local_params))

    def log_likelihood(self, data: tuple[Array, ...], state: SamplerState) -> Array:
        """Joint log-likelihood of the data and the assignment structure.

        Sums the emission log-densities of every point under its local slots, the Dirichlet-multinomial mass of the global labels, and the Dirichlet-multinomial mass of the tuples of occupied slots.
        """
        local_labels = state.local_labels()
        lls = self.log_likelihood_matrices(data, state.params)
        emission = sum(
            jnp.sum(jnp.take_along_axis(ll, local_labels[:, c : c + 1], axis=1))
            for c, ll in enumerate(lls)
        )

        counts = state.occupancy()
        occupied = counts > 0
        structure = log_dirichlet_multinomial(
            counts, self.concentrations.global_concentration
        )
        for c, n_local in enumerate(self.caps.context_clusters):
            tuple_counts = jnp.sum(
                jax.nn.one_hot(state.slot_tuples[:, c], n_local) * occupied[:, None],
                axis=0,
            )
            structure = structure + log_dirichlet_multinomial(
                tuple_counts, self.concentrations.local_concentrations[c]
            )
        return emission + structure

    def sweep(
        self,
        key: Array,
        data: tuple[Array, ...],
        priors: tuple[Array, ...],
        state: SamplerState,
    ) -> tuple[SamplerState, Array, Array]:
        """One full Gibbs sweep.

        Returns:
            New state, its joint log-likelihood, and the number of prior fallbacks
        """
        local_key, global_key, tuple_key, param_key = jax.random.split(key, 4)
        lls = self.log_likelihood_matrices(data, state.params)
        state = self.resample_local(local_key, lls, state)
        state = self.resample_global(global_key, lls, state)
        state = self.resample_tuples(tuple_key, lls, state)
        state, n_degenerate = self.resample_parameters(param_key, data, priors, state)
        return state, self.log_likelihood(data, state), n_degenerate


def gibbs_sweep(
    sampler: ContextClustering,
    key: Array,
    data: tuple[Array, ...],
    priors: tuple[Array, ...],
    state: SamplerState,
) -> tuple[SamplerState, Array, Array]:
    """Jitted `ContextClustering.sweep`."""
    return sampler.sweep(key, data, priors, state)


gibbs_sweep = jax.jit(gibbs_sweep, static_argnames=["sampler"])


def plugin_log_likelihood(
    sampler: ContextClustering,
    data: tuple[Array, ...],
    priors: tuple[Array, ...],
    state: SamplerState,
) -> Array:
    """Joint log-likelihood of a state's assignments at the posterior-mean parameters."""
    return sampler.log_likelihood(data, sampler.posterior_mean_state(data, priors, state))


plugin_log_likelihood = jax.jit(plugin_log_likelihood, static_argnames=["sampler"])
