"""Hamiltonian Monte Carlo samplers with self-tuning integrator step sizes."""

from abc import ABC, abstractmethod
from collections import namedtuple
import logging
from math import log
from warnings import warn
import numpy as np
from numpy.random import default_rng
from hmcore.errors import (
    IntegratorError, HamiltonianDivergenceError, ImproperPosteriorError,
    StepSizeUnderflowError)

logger = logging.getLogger(__name__)


# Log of the one-step acceptance probability targeted by step size search
LOG_TARGET_ACCEPT_PROB = log(0.8)

# Nominal step size above which the target is taken to be improper
MAX_STEP_SIZE = 1e7


Sample = namedtuple('Sample', ['pos', 'log_prob', 'accept_stat'])
Sample.__doc__ = """Chain state returned by a sampler transition.

Attributes:
    pos (array): Position (unconstrained parameter) array.
    log_prob (float): Log target density (up to a constant) at `pos`.
    accept_stat (float): Acceptance statistic of the transition producing
        the sample, in [0, 1].
"""


def _check_rng(rng):
    """Convert a seed or legacy generator to a `numpy.random.Generator`."""
    if isinstance(rng, np.random.Generator):
        return rng
    elif isinstance(rng, np.random.RandomState):
        warn(
            'Use of numpy.random.RandomState random number generators is '
            'deprecated. Please use a numpy.random.Generator instance '
            'instead for example from a call to numpy.random.default_rng.',
            DeprecationWarning,
        )
        return np.random.Generator(rng._bit_generator)
    else:
        return default_rng(rng)


class BaseMCMC(ABC):
    """Base class for Markov chain Monte Carlo samplers.

    A sampler maps a current chain sample to a new one with `transition`, and
    exposes any tunable parameters and per-iteration diagnostics through a
    common set of name and value enumerations. The `get_*_names` and
    corresponding value methods always return sequences of equal length with
    entries in one-to-one correspondence.
    """

    @abstractmethod
    def transition(self, sample, logger=logger):
        """Sample a new chain state from the Markov transition kernel.

        Args:
            sample (Sample): Current chain sample to condition on.
            logger (logging.Logger): Logger to report non-fatal issues to.

        Returns:
            Sample: New chain sample.
        """

    def get_sampler_param_names(self):
        """Names of the sampler parameters reported on each iteration."""
        return []

    def get_sampler_params(self):
        """Values of the sampler parameters, ordered as their names."""
        return []

    def write_sampler_state(self, writer):
        """Write the tuned state of the sampler as human-readable records."""

    def get_sampler_diagnostic_names(self, model_names=None):
        """Names of the sampler diagnostics reported on each iteration."""
        return []

    def get_sampler_diagnostics(self):
        """Values of the sampler diagnostics, ordered as their names."""
        return []


class BaseHMC(BaseMCMC):
    """Base class for Hamiltonian Monte Carlo samplers.

    Owns the phase space point of the chain, the Hamiltonian, the integrator
    and the random number generator, and manages the integrator step size:
    a *nominal* step size persisting across iterations, which can be
    initialized by a coarse search (`init_step_size`) and refined by an
    external adaptation procedure (through the `nominal_step_size` setter),
    and a *current* step size, recomputed once per iteration by
    `sample_step_size` by randomly jittering the nominal value.

    Derived classes build trajectories using the shared Hamiltonian,
    integrator and generator and must implement `transition` and
    `update_n_step`, the latter recomputing any trajectory length parameter
    depending on the nominal step size.
    """

    def __init__(self, hamiltonian, integrator, dim, rng=None):
        """
        Args:
            hamiltonian (hmcore.hamiltonians.Hamiltonian): Hamiltonian to
                simulate the dynamics of.
            integrator (hmcore.integrators.Integrator): Symplectic integrator
                appropriate to the Hamiltonian.
            dim (int): Dimension of the (unconstrained) position space.
            rng (None or int or numpy.random.Generator): Random number
                generator or a seed to create one with. The generator is
                exclusively owned by the sampler and should not be shared
                with other chains.
        """
        self.hamiltonian = hamiltonian
        self.integrator = integrator
        self.rng = _check_rng(rng)
        self._z = hamiltonian.create_point(dim)
        self._nom_step_size = 0.1
        self._step_size = 0.1
        self._step_size_jitter = 0.

    @property
    def z(self):
        """Phase space point of the chain."""
        return self._z

    @property
    def dim(self):
        """Dimension of the position space."""
        return self._z.dim

    def _rand_uniform(self):
        """Draw a single uniform variate on [0, 1) from the generator."""
        return self.rng.uniform()

    def write_sampler_step_size(self, writer):
        """Write the nominal step size as a single record.

        Args:
            writer (Callable[[str], None]): Writer sink.
        """
        writer(f'Step size = {self._nom_step_size:g}')

    def write_sampler_metric(self, writer):
        """Write the elements of the metric.

        Args:
            writer (Callable[[str], None]): Writer sink.
        """
        self._z.write_metric(writer)

    def write_sampler_state(self, writer):
        """Write the nominal step size and then the elements of the metric.

        Args:
            writer (Callable[[str], None]): Writer sink.
        """
        self.write_sampler_step_size(writer)
        self.write_sampler_metric(writer)

    def get_sampler_diagnostic_names(self, model_names=None):
        return self._z.get_param_names(model_names)

    def get_sampler_diagnostics(self):
        return self._z.get_params()

    def seed(self, pos):
        """Set the position of the chain point.

        Args:
            pos (array): Position array of size `dim`.
        """
        self._z.pos = pos

    def init_hamiltonian(self, logger=logger):
        """Compute the cached energy quantities at the current point."""
        self.hamiltonian.init(self._z, logger)

    def _probe_delta_h(self, logger):
        """Change in energy over one step from a freshly sampled momentum."""
        self.hamiltonian.sample_momentum(self._z, self.rng)
        self.hamiltonian.init(self._z, logger)
        h_init = self.hamiltonian.h(self._z, logger)
        self.integrator.evolve(
            self._z, self.hamiltonian, self._nom_step_size, logger)
        h = self.hamiltonian.h(self._z, logger)
        if np.isnan(h):
            h = np.inf
        return h_init - h

    def init_step_size(self, logger=logger):
        """Initialize the nominal step size by a coarse doubling search.

        A first single-step probe from the current position with a freshly
        sampled momentum fixes the search direction: if the energy change
        `delta_h = h_init - h_final` exceeds `log(0.8)` the step size is
        repeatedly doubled, otherwise it is repeatedly halved. Each subsequent
        probe restarts from the initial position with a new momentum and the
        search stops at the first probe for which `delta_h` is no longer on
        the side of `log(0.8)` that set the direction.

        Nominal step sizes of exactly zero or greater than `1e7` are treated
        as already tuned and no search is performed. The chain point is always
        restored to its state prior to the search, including when an error is
        raised.

        Args:
            logger (logging.Logger): Logger to report numerical issues and the
                search progress (at debug level) to.

        Returns:
            float: The resulting nominal step size.

        Raises:
            hmcore.errors.ImproperPosteriorError: If the step size grows past
                `1e7`.
            hmcore.errors.StepSizeUnderflowError: If the step size is halved
                to zero.
        """
        if self._nom_step_size == 0 or self._nom_step_size > MAX_STEP_SIZE:
            return self._nom_step_size
        z_init = self._z.copy()
        try:
            delta_h = self._probe_delta_h(logger)
            direction = 1 if delta_h > LOG_TARGET_ACCEPT_PROB else -1
            while True:
                self._z.assign(z_init)
                delta_h = self._probe_delta_h(logger)
                logger.debug(
                    f'Step size search: step_size = {self._nom_step_size:g}, '
                    f'delta_h = {delta_h:g}')
                if direction == 1 and not delta_h > LOG_TARGET_ACCEPT_PROB:
                    break
                elif direction == -1 and not delta_h < LOG_TARGET_ACCEPT_PROB:
                    break
                elif direction == 1:
                    self._nom_step_size = 2. * self._nom_step_size
                else:
                    self._nom_step_size = 0.5 * self._nom_step_size
                if self._nom_step_size > MAX_STEP_SIZE:
                    raise ImproperPosteriorError(self._nom_step_size)
                if self._nom_step_size == 0:
                    raise StepSizeUnderflowError(self._nom_step_size)
        finally:
            self._z.assign(z_init)
        self.update_n_step()
        return self._nom_step_size

    @property
    def nominal_step_size(self):
        """Nominal (unjittered) integrator step size.

        Setting a non-positive value leaves the nominal step size unchanged.
        The `update_n_step` hook is called on every assignment.
        """
        return self._nom_step_size

    @nominal_step_size.setter
    def nominal_step_size(self, value):
        if value > 0:
            self._nom_step_size = value
        self.update_n_step()

    @property
    def current_step_size(self):
        """Integrator step size for the current iteration."""
        return self._step_size

    @property
    def step_size_jitter(self):
        """Fraction of uniform multiplicative jitter applied to step size.

        Only values strictly between zero and one are accepted; assigning any
        other value is silently ignored.
        """
        return self._step_size_jitter

    @step_size_jitter.setter
    def step_size_jitter(self, value):
        if 0 < value < 1:
            self._step_size_jitter = value

    def sample_step_size(self):
        """Set the current step size for a new iteration.

        Should be called exactly once per iteration, before any trajectory is
        built. With a non-zero jitter fraction `j` the current step size is
        the nominal step size multiplied by a uniform draw from
        `[1 - j, 1 + j]`.

        Returns:
            float: The current step size.
        """
        self._step_size = self._nom_step_size
        if self._step_size_jitter:
            self._step_size *= 1. + self._step_size_jitter * (
                2. * self._rand_uniform() - 1.)
        return self._step_size

    @abstractmethod
    def update_n_step(self):
        """Recompute trajectory length parameters after a step size change."""


class StaticHMC(BaseHMC):
    """Static integration time HMC with Metropolis sampling of new state.

    In each transition the momentum is resampled and the dynamics integrated
    for a fixed number of steps, with the number of steps chosen so that the
    total integration time is (approximately) equal to `integration_time`. The
    final state is accepted or rejected in a Metropolis step. This is the
    original Hybrid Monte Carlo algorithm [1, 2].

    References:

      1. Duane, S., Kennedy, A.D., Pendleton, B.J. and Roweth, D., 1987.
         Hybrid Monte Carlo. Physics letters B, 195(2), pp.216-222.
      2. Neal, R.M., 2011. MCMC using Hamiltonian dynamics.
         Handbook of Markov Chain Monte Carlo, 2(11), p.2.
    """

    def __init__(self, hamiltonian, integrator, dim, rng=None,
                 integration_time=1.):
        """
        Args:
            hamiltonian (hmcore.hamiltonians.Hamiltonian): Hamiltonian to
                simulate the dynamics of.
            integrator (hmcore.integrators.Integrator): Symplectic integrator
                appropriate to the Hamiltonian.
            dim (int): Dimension of the position space.
            rng (None or int or numpy.random.Generator): Random number
                generator or seed.
            integration_time (float): Total integration time per trajectory.
                Must be positive.
        """
        super().__init__(hamiltonian, integrator, dim, rng)
        if not integration_time > 0:
            raise ValueError('integration_time must be positive.')
        self._integration_time = integration_time
        self.update_n_step()

    @property
    def integration_time(self):
        """Total integration time per trajectory."""
        return self._integration_time

    @integration_time.setter
    def integration_time(self, value):
        if value > 0:
            self._integration_time = value
        self.update_n_step()

    @property
    def n_step(self):
        """Number of integrator steps per trajectory."""
        return self._n_step

    def set_nominal_step_size_and_time(self, step_size, integration_time):
        """Set nominal step size and integration time if both positive."""
        if step_size > 0 and integration_time > 0:
            self._nom_step_size = step_size
            self._integration_time = integration_time
        self.update_n_step()

    def set_nominal_step_size_and_n_step(self, step_size, n_step):
        """Set nominal step size and number of steps if both positive."""
        if step_size > 0 and n_step > 0:
            self._nom_step_size = step_size
            self._integration_time = step_size * n_step
        self.update_n_step()

    def update_n_step(self):
        # Ratios within rounding error of an integer are not truncated down
        ratio = self._integration_time / self._nom_step_size
        n_step = round(ratio)
        if not np.isclose(ratio, n_step, rtol=1e-9, atol=0.):
            n_step = int(ratio)
        self._n_step = max(1, n_step)

    def transition(self, sample, logger=logger):
        self.sample_step_size()
        self.seed(sample.pos)
        self.hamiltonian.sample_momentum(self._z, self.rng)
        self.hamiltonian.init(self._z, logger)
        z_init = self._z.copy()
        h_init = self.hamiltonian.h(self._z, logger)
        for _ in range(self._n_step):
            self.integrator.evolve(
                self._z, self.hamiltonian, self._step_size, logger)
        h = self.hamiltonian.h(self._z, logger)
        if np.isnan(h):
            h = np.inf
        with np.errstate(over='ignore', invalid='ignore'):
            metrop_ratio = np.exp(h_init - h)
        accept_prob = 0. if np.isnan(metrop_ratio) else min(1., metrop_ratio)
        if accept_prob < 1 and self._rand_uniform() > accept_prob:
            self._z.assign(z_init)
        return Sample(self._z.pos.copy(), -self._z.pot, accept_prob)

    def get_sampler_param_names(self):
        return ['stepsize__', 'int_time__']

    def get_sampler_params(self):
        return [self._step_size, self._integration_time]


_SubTree = namedtuple('_SubTree', [
    'proposal', 'mom_beg', 'mom_end', 'p_sharp_beg', 'p_sharp_end', 'sum_mom',
    'log_sum_weight'])


def _no_u_turn_criterion(p_sharp_minus, p_sharp_plus, sum_mom):
    """Generalized no-U-turn criterion, `True` if trajectory should continue.

    The velocities at both ends of a trajectory must have positive dot
    products with the sum of the momentums over the trajectory [1].

    References:

      1. Betancourt, M., 2013. Generalizing the no-U-turn sampler to Riemannian
         manifolds. arXiv preprint arXiv:1304.1920.
    """
    return p_sharp_plus @ sum_mom > 0 and p_sharp_minus @ sum_mom > 0


def _reverse_subtree(tree):
    return tree._replace(
        mom_beg=tree.mom_end, mom_end=tree.mom_beg,
        p_sharp_beg=tree.p_sharp_end, p_sharp_end=tree.p_sharp_beg)


def _merge_subtrees(inner, outer, proposal, log_sum_weight):
    """Merge two adjacent subtrees, both oriented in integration order.

    Returns `None` if the merged tree, or either of the two overlapping
    subtrees formed by adding the adjacent end state of the other subtree to
    each subtree, fails the no-U-turn criterion.
    """
    sum_mom = inner.sum_mom + outer.sum_mom
    if not (
            _no_u_turn_criterion(
                inner.p_sharp_beg, outer.p_sharp_end, sum_mom) and
            _no_u_turn_criterion(
                inner.p_sharp_beg, outer.p_sharp_beg,
                inner.sum_mom + outer.mom_beg) and
            _no_u_turn_criterion(
                inner.p_sharp_end, outer.p_sharp_end,
                outer.sum_mom + inner.mom_end)):
        return None
    return _SubTree(
        proposal=proposal, mom_beg=inner.mom_beg, mom_end=outer.mom_end,
        p_sharp_beg=inner.p_sharp_beg, p_sharp_end=outer.p_sharp_end,
        sum_mom=sum_mom, log_sum_weight=log_sum_weight)


class MultinomialNUTS(BaseHMC):
    """No-U-turn sampler with multinomial sampling of new state.

    In each transition a binary tree of states is recursively computed by
    integrating randomly forward and backward in time by a number of steps
    equal to the previous tree size [1] until a termination criterion on the
    tree or its subtrees is met. The next chain state is chosen from the
    candidate states using a progressive multinomial sampling scheme [2] based
    on the relative probability densities of the different candidate states,
    with the sampling biased towards states further from the current state.

    The termination criterion is additionally checked on the overlapping
    subtrees formed by joining each half of a tree with the neighbouring
    end state of the other half, which reduces resonant behaviour in targets
    well approximated by independent harmonic oscillators.

    References:

      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler:
         adaptively setting path lengths in Hamiltonian Monte Carlo.
         Journal of Machine Learning Research, 15(1), pp.1593-1623.
      2. Betancourt, M., 2017. A conceptual introduction to Hamiltonian Monte
         Carlo. arXiv preprint arXiv:1701.02434.
    """

    def __init__(self, hamiltonian, integrator, dim, rng=None, max_depth=10,
                 max_delta_h=1000.):
        """
        Args:
            hamiltonian (hmcore.hamiltonians.Hamiltonian): Hamiltonian to
                simulate the dynamics of.
            integrator (hmcore.integrators.Integrator): Symplectic integrator
                appropriate to the Hamiltonian.
            dim (int): Dimension of the position space.
            rng (None or int or numpy.random.Generator): Random number
                generator or seed.
            max_depth (int): Maximum depth to expand trajectory binary tree
                to. The maximum number of integrator steps corresponds to
                `2**max_depth - 1`.
            max_delta_h (float): Maximum increase in the Hamiltonian over a
                trajectory before signalling a divergence.
        """
        super().__init__(hamiltonian, integrator, dim, rng)
        if max_depth <= 0:
            raise ValueError('max_depth must be positive.')
        self.max_depth = max_depth
        self.max_delta_h = max_delta_h
        self._depth = 0
        self._n_leapfrog = 0
        self._divergent = False
        self._energy = 0.

    def update_n_step(self):
        pass

    def _build_leaf(self, h_init, sign, stats, logger):
        self.integrator.evolve(
            self._z, self.hamiltonian, sign * self._step_size, logger)
        stats['n_leapfrog'] += 1
        h = self.hamiltonian.h(self._z, logger)
        if np.isnan(h):
            h = np.inf
        delta_h = h_init - h
        stats['sum_metrop_accept_prob'] += (
            1. if delta_h > 0 else np.exp(delta_h))
        if -delta_h > self.max_delta_h:
            raise HamiltonianDivergenceError(
                f'Hamiltonian change {-delta_h:g} exceeds the divergence '
                f'threshold {self.max_delta_h:g}.')
        mom = self._z.mom.copy()
        p_sharp = self.hamiltonian.dh2_dmom(self._z)
        return _SubTree(
            proposal=self._z.copy(), mom_beg=mom, mom_end=mom,
            p_sharp_beg=p_sharp, p_sharp_end=p_sharp, sum_mom=mom,
            log_sum_weight=delta_h)

    def _build_tree(self, depth, h_init, sign, stats, logger):
        """Build a subtree of `2**depth` states by integrating from `z`.

        Returns `None` if any subtree met the termination criterion, in which
        case the trajectory is terminated. Raises `IntegratorError` if the
        trajectory diverged.
        """
        if depth == 0:
            return self._build_leaf(h_init, sign, stats, logger)
        inner = self._build_tree(depth - 1, h_init, sign, stats, logger)
        if inner is None:
            return None
        outer = self._build_tree(depth - 1, h_init, sign, stats, logger)
        if outer is None:
            return None
        log_sum_weight = np.logaddexp(
            inner.log_sum_weight, outer.log_sum_weight)
        accept_outer_prob = np.exp(outer.log_sum_weight - log_sum_weight)
        proposal = (
            outer.proposal if self._rand_uniform() < accept_outer_prob else
            inner.proposal)
        return _merge_subtrees(inner, outer, proposal, log_sum_weight)

    def transition(self, sample, logger=logger):
        self.sample_step_size()
        self.seed(sample.pos)
        self.hamiltonian.sample_momentum(self._z, self.rng)
        self.hamiltonian.init(self._z, logger)
        h_init = self.hamiltonian.h(self._z, logger)
        stats = {
            'n_leapfrog': 0, 'sum_metrop_accept_prob': 0., 'divergent': False}
        mom = self._z.mom.copy()
        p_sharp = self.hamiltonian.dh2_dmom(self._z)
        # whole trajectory tree with ends in time order (backward, forward)
        tree = _SubTree(
            proposal=self._z.copy(), mom_beg=mom, mom_end=mom,
            p_sharp_beg=p_sharp, p_sharp_end=p_sharp, sum_mom=mom,
            log_sum_weight=0.)
        z_fwd, z_bck = self._z.copy(), self._z.copy()
        next_point = tree.proposal
        depth = 0
        while depth < self.max_depth:
            direction = 1 if self._rand_uniform() > 0.5 else -1
            self._z.assign(z_fwd if direction == 1 else z_bck)
            try:
                subtree = self._build_tree(
                    depth, h_init, direction, stats, logger)
            except IntegratorError as e:
                logger.info(f'Terminating trajectory: {e}')
                stats['divergent'] = isinstance(e, HamiltonianDivergenceError)
                break
            (z_fwd if direction == 1 else z_bck).assign(self._z)
            if subtree is None:
                break
            depth += 1
            # progressively sample new state, biased towards new subtree
            if subtree.log_sum_weight > tree.log_sum_weight:
                next_point = subtree.proposal
            elif self._rand_uniform() < np.exp(
                    subtree.log_sum_weight - tree.log_sum_weight):
                next_point = subtree.proposal
            log_sum_weight = np.logaddexp(
                tree.log_sum_weight, subtree.log_sum_weight)
            inner = tree if direction == 1 else _reverse_subtree(tree)
            tree = _merge_subtrees(inner, subtree, next_point, log_sum_weight)
            if tree is None:
                break
            if direction == -1:
                tree = _reverse_subtree(tree)
        self._depth = depth
        self._n_leapfrog = stats['n_leapfrog']
        self._divergent = stats['divergent']
        self._z.assign(next_point)
        self._energy = self.hamiltonian.h(self._z, logger)
        accept_prob = (
            stats['sum_metrop_accept_prob'] / stats['n_leapfrog']
            if stats['n_leapfrog'] > 0 else 0.)
        return Sample(self._z.pos.copy(), -self._z.pot, accept_prob)

    def get_sampler_param_names(self):
        return [
            'stepsize__', 'treedepth__', 'n_leapfrog__', 'divergent__',
            'energy__']

    def get_sampler_params(self):
        return [
            self._step_size, self._depth, self._n_leapfrog,
            int(self._divergent), self._energy]
