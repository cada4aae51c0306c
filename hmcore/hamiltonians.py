r"""Hamiltonian functions encapsulating energy functions and their derivatives.

The Hamiltonian function \(h\) is assumed to take the separable form

\[ h(q, p) = h_1(q) + h_2(q, p) \]

where \(q\) and \(p\) are the position and momentum variables respectively,
\(h_1\) is the potential energy, corresponding to the negative logarithm of
an unnormalized density on the position space (the target distribution), and
\(h_2\) is the kinetic energy, corresponding to the negative logarithm of the
conditional density of the momentum given the position.
"""

from abc import ABC, abstractmethod
import logging
import numpy as np
from hmcore.autodiff import autodiff_fallback
from hmcore.metrics import (
    EuclideanMetric, UnitMetric, DiagonalMetric, DenseMetric)
from hmcore.states import PhasePoint

logger = logging.getLogger(__name__)


def _log_rejection(exception, logger):
    logger.info(
        f'The current Metropolis proposal is about to be rejected because of '
        f'the following issue: {exception!s}. If this occurs sporadically, '
        f'such as for highly constrained variable types, the sampler is fine; '
        f'if it occurs often the model may be misspecified.')


class Hamiltonian(ABC):
    """Base class for Hamiltonians.

    Defines the interface used by integrators and samplers: energy
    evaluation, energy derivatives and momentum sampling. Points created with
    `create_point` are of the type given by the `point_type` class attribute.
    """

    point_type = PhasePoint

    def __init__(self, neg_log_dens, grad_neg_log_dens=None):
        """
        Args:
            neg_log_dens (Callable[[array], float]): Function which given a
                position array returns the negative logarithm of an
                unnormalized probability density on the position space with
                respect to the Lebesgue measure, with the corresponding
                distribution on the position space being the target
                distribution it is wished to draw approximate samples from.
                The function may raise an `ArithmeticError` or `ValueError`
                at positions outside the support of the density, which is
                treated as the density being zero at that position.
            grad_neg_log_dens (
                    None or Callable[[array], array or Tuple[array, float]]):
                Function which given a position array returns the derivative of
                `neg_log_dens` with respect to the position array argument.
                Optionally the function may instead return a 2-tuple of values
                with the first being the array corresponding to the derivative
                and the second being the value of the `neg_log_dens` evaluated
                at the passed position array. If `None` is passed (the default)
                an automatic differentiation fallback will be used to attempt
                to construct the derivative of `neg_log_dens` automatically.
        """
        self._neg_log_dens = neg_log_dens
        self._grad_neg_log_dens = autodiff_fallback(
            grad_neg_log_dens, neg_log_dens, 'grad_neg_log_dens')

    @property
    def metric(self):
        """Metric referenced by points created by this Hamiltonian."""
        return None

    def create_point(self, dim):
        """Create a new phase space point of this Hamiltonian's point type.

        Args:
            dim (int): Dimension of the position and momentum spaces.

        Returns:
            hmcore.states.PhasePoint: Point with zeroed position and momentum.
        """
        return self.point_type(dim, metric=self.metric)

    def update_potential(self, point, logger=logger):
        """Evaluate and record the potential energy at the point position.

        Args:
            point (hmcore.states.PhasePoint): Point to evaluate at. The `pot`
                attribute is updated in place.
            logger (logging.Logger): Logger to report model errors to.
        """
        try:
            point.pot = float(self._neg_log_dens(point.pos))
        except (ArithmeticError, ValueError) as e:
            _log_rejection(e, logger)
            point.pot = np.inf

    def update_potential_gradient(self, point, logger=logger):
        """Evaluate and record the potential energy and its gradient.

        Errors raised by the model functions are reported as informational
        messages and recorded as an infinite potential energy rather than
        propagated, such that a proposal at the point will be rejected.

        Args:
            point (hmcore.states.PhasePoint): Point to evaluate at. The `pot`
                and `grad` attributes are updated in place.
            logger (logging.Logger): Logger to report model errors to.
        """
        try:
            grad = self._grad_neg_log_dens(point.pos)
            if isinstance(grad, tuple):
                grad, pot = grad
            else:
                pot = self._neg_log_dens(point.pos)
            point.grad = np.asarray(grad, dtype=np.float64)
            point.pot = float(pot)
        except (ArithmeticError, ValueError) as e:
            _log_rejection(e, logger)
            point.grad = np.full(point.dim, np.nan)
            point.pot = np.inf

    def init(self, point, logger=logger):
        """Prepare the cached quantities needed before evolving a point.

        Args:
            point (hmcore.states.PhasePoint): Point to initialize.
            logger (logging.Logger): Logger to report model errors to.
        """
        self.update_potential_gradient(point, logger)

    def h1(self, point, logger=logger):
        """Potential energy (negative log target density) at a point.

        Args:
            point (hmcore.states.PhasePoint): Point to compute value at.
            logger (logging.Logger): Logger to report model errors to if the
                potential energy has not yet been computed at `point`.

        Returns:
            float: Value of potential energy.
        """
        if point.pot is None:
            self.update_potential(point, logger)
        return point.pot

    def dh1_dpos(self, point, logger=logger):
        """Derivative of potential energy with respect to position.

        Args:
            point (hmcore.states.PhasePoint): Point to compute value at.
            logger (logging.Logger): Logger to report model errors to if the
                gradient has not yet been computed at `point`.

        Returns:
            array: Value of `h1(point)` derivative with respect to `point.pos`.
        """
        if point.grad is None:
            self.update_potential_gradient(point, logger)
        return point.grad

    @abstractmethod
    def h2(self, point):
        """Kinetic energy at a point.

        Args:
            point (hmcore.states.PhasePoint): Point to compute value at.

        Returns:
            float: Value of kinetic energy.
        """

    @abstractmethod
    def dh2_dmom(self, point):
        """Derivative of kinetic energy with respect to momentum.

        Args:
            point (hmcore.states.PhasePoint): Point to compute value at.

        Returns:
            array: Value of `h2(point)` derivative with respect to `point.mom`.
        """

    def h(self, point, logger=logger):
        """Total energy at a point.

        Non-finite energies are never returned as NaN: a NaN value, arising
        for example from an overflowing integrator step, is mapped to positive
        infinity so that comparisons of energies remain well ordered.

        Args:
            point (hmcore.states.PhasePoint): Point to compute value at.
            logger (logging.Logger): Logger to report model errors to.

        Returns:
            float: Value of Hamiltonian.
        """
        with np.errstate(invalid='ignore', over='ignore'):
            val = self.h1(point, logger) + self.h2(point)
        return np.inf if np.isnan(val) else float(val)

    @abstractmethod
    def sample_momentum(self, point, rng):
        """Sample a momentum from its conditional distribution given position.

        The sampled momentum is a deterministic function of the state of
        `rng` and the point position.

        Args:
            point (hmcore.states.PhasePoint): Point defining position to
               condition on. The `mom` attribute is updated in place.
            rng (numpy.random.Generator): Random number generator.
        """


class EuclideanHamiltonian(Hamiltonian):
    r"""Hamiltonian with a Euclidean metric on the position space.

    Here Euclidean metric is defined to mean a metric with a fixed positive
    definite matrix representation \(M\). The momentum variables are taken to
    be independent of the position variables and with a zero-mean Gaussian
    marginal distribution with covariance specified by \(M\), so that the
    kinetic energy is

    \[ h_2(q, p) = \frac{1}{2} p^T M^{-1} p \]
    """

    def __init__(self, neg_log_dens, metric=None, grad_neg_log_dens=None):
        """
        Args:
            neg_log_dens (Callable[[array], float]): Function which given a
                position array returns the negative logarithm of an
                unnormalized probability density on the position space.
            metric (None or array or hmcore.metrics.EuclideanMetric): Inverse
                metric specification. If `None` is passed (the default), the
                unit metric will be used. If a 1D array is passed then this is
                taken to be the diagonal of a diagonal inverse metric. If a 2D
                array is passed then this is taken to be a dense inverse
                metric. Otherwise the value should be an instance of
                `hmcore.metrics.EuclideanMetric`.
            grad_neg_log_dens (
                    None or Callable[[array], array or Tuple[array, float]]):
                Function which given a position array returns the derivative of
                `neg_log_dens` with respect to the position array argument,
                optionally as a 2-tuple with the value of `neg_log_dens`. If
                `None` (the default) automatic differentiation is used.
        """
        super().__init__(neg_log_dens, grad_neg_log_dens)
        if metric is None:
            self._metric = UnitMetric()
        elif isinstance(metric, EuclideanMetric):
            self._metric = metric
        elif isinstance(metric, np.ndarray) and metric.ndim == 1:
            self._metric = DiagonalMetric(metric)
        elif isinstance(metric, np.ndarray) and metric.ndim == 2:
            self._metric = DenseMetric(metric)
        else:
            raise ValueError(
                'metric must be None, a 1D array (diagonal inverse metric), a '
                '2D array (dense inverse metric) or an EuclideanMetric.')

    @property
    def metric(self):
        return self._metric

    def create_point(self, dim):
        if self._metric.size is not None and self._metric.size != dim:
            raise ValueError(
                f'Metric of size {self._metric.size} is inconsistent with '
                f'point dimension {dim}.')
        return super().create_point(dim)

    def h2(self, point):
        return 0.5 * self._metric.quadratic_form_inv(point.mom)

    def dh2_dmom(self, point):
        return self._metric.inv_dot(point.mom)

    def sample_momentum(self, point, rng):
        point.mom = self._metric.sample_momentum(rng, point.dim)
