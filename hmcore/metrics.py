r"""Euclidean metrics defining the momentum distribution and kinetic energy.

All metrics here are parameterized by the *inverse* metric matrix
\(M^{-1}\), with the momentum \(p\) having a zero-mean Gaussian distribution
with covariance \(M\) and the kinetic energy being \(\frac{1}{2} p^T M^{-1} p\).
"""

import abc
import numpy as np
import scipy.linalg as sla


def _format_values(values):
    return ', '.join(f'{val:g}' for val in values)


class EuclideanMetric(abc.ABC):
    """Base class for metrics with a fixed positive definite representation."""

    def __init__(self, size):
        """
        Args:
            size (int or None): Dimension of the space the metric is defined
                on or `None` if implicitly sized.
        """
        self._size = size

    @property
    def size(self):
        """Dimension of the space the metric is defined on (or `None`)."""
        return self._size

    @abc.abstractmethod
    def inv_dot(self, mom):
        """Left multiply a momentum vector by the inverse metric.

        Args:
            mom (array): 1D momentum array.

        Returns:
            array: Velocity `M^{-1} @ mom`.
        """

    def quadratic_form_inv(self, mom):
        """Evaluate `mom @ M^{-1} @ mom`."""
        return mom @ self.inv_dot(mom)

    @abc.abstractmethod
    def sample_momentum(self, rng, size):
        """Draw a momentum from the zero-mean Gaussian with covariance `M`.

        Args:
            rng (numpy.random.Generator): Random number generator.
            size (int): Dimension of momentum to draw.

        Returns:
            array: Sampled momentum.
        """

    @abc.abstractmethod
    def write(self, writer):
        """Write the metric elements as human-readable records.

        Args:
            writer (Callable[[str], None]): Writer sink.
        """

    def param_names(self, model_names):
        """Names of the metric entries reported as sampler diagnostics."""
        return []

    def params(self):
        """Values of the metric entries reported as sampler diagnostics."""
        return []


class UnitMetric(EuclideanMetric):
    """Identity metric with no free parameters."""

    def __init__(self, size=None):
        super().__init__(size)

    def inv_dot(self, mom):
        return mom

    def sample_momentum(self, rng, size):
        return rng.standard_normal(size)

    def write(self, writer):
        writer('No free parameters for unit metric')


class DiagonalMetric(EuclideanMetric):
    """Metric with a positive diagonal inverse matrix representation."""

    def __init__(self, inv_diagonal):
        """
        Args:
            inv_diagonal (array): 1D array of strictly positive diagonal
                elements of the inverse metric.
        """
        inv_diagonal = np.array(inv_diagonal, dtype=np.float64)
        if inv_diagonal.ndim != 1:
            raise ValueError('Specified diagonal must be a 1D array.')
        if not np.all(inv_diagonal > 0):
            raise ValueError('Diagonal values must all be positive.')
        super().__init__(inv_diagonal.shape[0])
        inv_diagonal.flags.writeable = False
        self._inv_diagonal = inv_diagonal

    @property
    def inv_diagonal(self):
        """Diagonal elements of the inverse metric."""
        return self._inv_diagonal

    def inv_dot(self, mom):
        return self._inv_diagonal * mom

    def sample_momentum(self, rng, size):
        return rng.standard_normal(size) / self._inv_diagonal**0.5

    def write(self, writer):
        writer('Diagonal elements of inverse mass matrix:')
        writer(_format_values(self._inv_diagonal))

    def param_names(self, model_names):
        return [f'inv_metric_{name}' for name in model_names]

    def params(self):
        return list(self._inv_diagonal)


class DenseMetric(EuclideanMetric):
    """Metric with a dense positive definite inverse matrix representation."""

    def __init__(self, inv_array):
        """
        Args:
            inv_array (array): Symmetric positive definite 2D array specifying
                the inverse metric. A lower-triangular Cholesky factor of the
                array is computed on construction.
        """
        inv_array = np.array(inv_array, dtype=np.float64)
        if inv_array.ndim != 2 or inv_array.shape[0] != inv_array.shape[1]:
            raise ValueError(
                'Specified inverse metric must be a square 2D array.')
        if not np.allclose(inv_array, inv_array.T):
            raise ValueError('Specified inverse metric must be symmetric.')
        try:
            self._inv_chol = sla.cholesky(inv_array, lower=True)
        except np.linalg.LinAlgError as e:
            raise ValueError(
                'Specified inverse metric is not positive definite.') from e
        super().__init__(inv_array.shape[0])
        inv_array.flags.writeable = False
        self._inv_array = inv_array

    @property
    def inv_array(self):
        """Dense array representation of the inverse metric."""
        return self._inv_array

    def inv_dot(self, mom):
        return self._inv_array @ mom

    def sample_momentum(self, rng, size):
        # M^{-1} = L @ L.T therefore L.T^{-1} @ u has covariance M
        return sla.solve_triangular(
            self._inv_chol, rng.standard_normal(size), lower=True, trans='T')

    def write(self, writer):
        writer('Elements of inverse mass matrix:')
        for row in self._inv_array:
            writer(_format_values(row))

    def param_names(self, model_names):
        return [
            f'inv_metric_{name_i}_{name_j}'
            for name_i in model_names for name_j in model_names]

    def params(self):
        return list(self._inv_array.flatten())
