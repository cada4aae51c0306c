"""Methods for adaptively setting algorithmic parameters of samplers."""

from abc import ABC, abstractmethod
import logging
from math import exp, log

logger = logging.getLogger(__name__)


class Adapter(ABC):
    """Abstract adapter for implementing schemes to adapt sampler parameters.

    Adaptation schemes are assumed to be based on updating a collection of
    adaptation variables (collectively termed the adapter state here) after
    each chain transition based on the sampled chain state and/or statistics of
    the transition such as an acceptance probability statistic. After completing
    a chain of one or more adaptive transitions, the final adapter state may be
    used to perform a final update to the sampler parameters.
    """

    @abstractmethod
    def initialize(self, sampler, logger=logger):
        """Initialize adapter state prior to starting adaptive transitions.

        Args:
            sampler (hmcore.samplers.BaseHMC): Sampler being adapted, seeded
                at the initial chain position. Parameters of the sampler may be
                updated in-place by the method.
            logger (logging.Logger): Logger to report progress to.

        Returns:
            adapt_state (Dict[str, Any]): Initial adapter state.
        """

    @abstractmethod
    def update(self, adapt_state, sample, sampler):
        """Update adapter state after a transition of the sampler being adapted.

        Args:
            adapt_state (Dict[str, Any]): Current adapter state. Entries will
                be updated in-place by the method.
            sample (hmcore.samplers.Sample): Chain sample returned by the
                transition.
            sampler (hmcore.samplers.BaseHMC): Sampler being adapted.
                Parameters of the sampler may be updated in-place.
        """

    @abstractmethod
    def finalize(self, adapt_state, sampler):
        """Update sampler parameters based on final adapter state or states.

        Optionally, if multiple adapter states are available, e.g. from a set of
        independent adaptive chains, then these adaptation information from all
        the chains may be combined to set the sampler parameter(s).

        Args:
            adapt_state (Dict[str, Any] or List[Dict[str, Any]]): Final adapter
                state or a list of adapter states.
            sampler (hmcore.samplers.BaseHMC): Sampler being adapted.
                Parameters of the sampler will be updated in-place.
        """


class DualAveragingStepSizeAdapter(Adapter):
    """Dual averaging integrator step size adapter.

    Implementation of the dual algorithm step size adaptation algorithm
    described in [1], a modified version of the stochastic optimisation scheme
    of [2]. The adaptation is performed to control the `accept_stat` of the
    sampler transitions to be close to a target value, by setting the nominal
    step size of the sampler after each transition.

    On initialization the nominal step size of the sampler is first set by the
    sampler's own coarse doubling search (`init_step_size`), any fatal errors
    of which are propagated to the caller.

    References:

      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler:
         adaptively setting path lengths in Hamiltonian Monte Carlo.
         Journal of Machine Learning Research, 15(1), pp.1593-1623.
      2. Nesterov, Y., 2009. Primal-dual subgradient methods for convex
         problems. Mathematical programming 120(1), pp.221-259.
    """

    def __init__(self, adapt_stat_target=0.8, log_step_size_reg_target=None,
                 log_step_size_reg_coefficient=0.05, iter_decay_coeff=0.75,
                 iter_offset=10):
        """
        Args:
            adapt_stat_target (float): Target value for the acceptance
                statistic being controlled during adaptation.
            log_step_size_reg_target (float or None): Value to regularize the
                controlled output (logarithm of the integrator step size)
                towards. If `None` set to `log(10 * init_step_size)` where
                `init_step_size` is the initial 'reasonable' step size found by
                the coarse search as recommended in Hoffman and Gelman (2014).
            log_step_size_reg_coefficient (float): Coefficient controlling
                amount of regularisation of controlled output (logarithm of the
                integrator step size) towards `log_step_size_reg_target`.
            iter_decay_coeff (float): Coefficient controlling exponent of
                decay in schedule weighting stochastic updates to smoothed log
                step size estimate. Should be in the interval (0.5, 1] to ensure
                asymptotic convergence of adaptation.
            iter_offset (int): Offset used for the iteration based weighting of
                the adaptation statistic error estimate. Should be set to a
                non-negative value.
        """
        self.adapt_stat_target = adapt_stat_target
        self.log_step_size_reg_target = log_step_size_reg_target
        self.log_step_size_reg_coefficient = log_step_size_reg_coefficient
        self.iter_decay_coeff = iter_decay_coeff
        self.iter_offset = iter_offset

    def initialize(self, sampler, logger=logger):
        init_step_size = sampler.init_step_size(logger)
        logger.info(f'Initial step size set to {init_step_size:g}.')
        adapt_state = {
            'iter': 0,
            'smoothed_log_step_size': log(init_step_size),
            'adapt_stat_error': 0.,
        }
        if self.log_step_size_reg_target is None:
            adapt_state['log_step_size_reg_target'] = log(10 * init_step_size)
        else:
            adapt_state['log_step_size_reg_target'] = (
                self.log_step_size_reg_target)
        return adapt_state

    def update(self, adapt_state, sample, sampler):
        adapt_state['iter'] += 1
        error_weight = 1 / (self.iter_offset + adapt_state['iter'])
        adapt_state['adapt_stat_error'] *= (1 - error_weight)
        adapt_state['adapt_stat_error'] += error_weight * (
            self.adapt_stat_target - sample.accept_stat)
        smoothing_weight = (1 / adapt_state['iter'])**self.iter_decay_coeff
        log_step_size = adapt_state['log_step_size_reg_target'] - (
            adapt_state['adapt_stat_error'] * adapt_state['iter']**0.5 /
            self.log_step_size_reg_coefficient)
        adapt_state['smoothed_log_step_size'] *= (1 - smoothing_weight)
        adapt_state['smoothed_log_step_size'] += (
            smoothing_weight * log_step_size)
        sampler.nominal_step_size = exp(log_step_size)

    def finalize(self, adapt_state, sampler):
        if isinstance(adapt_state, dict):
            sampler.nominal_step_size = exp(
                adapt_state['smoothed_log_step_size'])
        else:
            sampler.nominal_step_size = sum(
                exp(a['smoothed_log_step_size'])
                for a in adapt_state) / len(adapt_state)
