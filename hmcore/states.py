"""Objects for recording the phase space state of a Hamiltonian Markov chain."""

import numpy as np
from hmcore.metrics import UnitMetric


def _default_model_names(dim):
    return [f'pos_{i}' for i in range(dim)]


class PhasePoint(object):
    """Point in the phase space of a Hamiltonian system.

    As well as the position and momentum variables, the point records the
    potential energy and its gradient at the current position so that these
    need only be computed once per integrator step. Both cached values are
    cleared whenever a new position is assigned to the point.

    The dimension of the point is fixed on construction and any attempt to
    assign a position or momentum of a different size raises a `ValueError`.
    Position and momentum arrays are copied on assignment so each point
    exclusively owns its arrays. Note that modifying individual elements of
    the position array in place (e.g. `point.pos[0] = 1.`) does not clear the
    cached potential energy and gradient; assign whole arrays instead.

    The metric is owned by the Hamiltonian the point was created by and is only
    referenced by the point, to allow the metric elements to be reported
    alongside the other point diagnostics.
    """

    def __init__(self, dim, metric=None):
        """
        Args:
            dim (int): Dimension of position and momentum spaces.
            metric (None or hmcore.metrics.EuclideanMetric): Metric of the
                Hamiltonian system the point belongs to. Defaults to a unit
                metric if `None`.
        """
        if dim < 0:
            raise ValueError('Dimension must be non-negative.')
        self._dim = int(dim)
        self._pos = np.zeros(self._dim)
        self._mom = np.zeros(self._dim)
        self.pot = None
        self.grad = None
        self.metric = UnitMetric(self._dim) if metric is None else metric

    def _check_shape(self, name, value):
        value = np.array(value, dtype=np.float64)
        if value.shape != (self._dim,):
            raise ValueError(
                f'{name} must be a 1D array of size {self._dim}, got shape '
                f'{value.shape}.')
        return value

    @property
    def dim(self):
        """Dimension of the position and momentum arrays."""
        return self._dim

    @property
    def pos(self):
        """Position (unconstrained parameter) array."""
        return self._pos

    @pos.setter
    def pos(self, value):
        self._pos = self._check_shape('pos', value)
        self.pot = None
        self.grad = None

    @property
    def mom(self):
        """Momentum array."""
        return self._mom

    @mom.setter
    def mom(self, value):
        self._mom = self._check_shape('mom', value)

    def copy(self):
        """Create an independent copy of the point.

        Returns:
            point_copy (PhasePoint): A copy of the point with position,
                momentum and gradient arrays that are independent of the
                original's, sharing the same metric reference.
        """
        point_copy = type(self).__new__(type(self))
        point_copy.__dict__.update(self.__dict__)
        point_copy.assign(self)
        return point_copy

    def assign(self, other):
        """Overwrite the phase space state of this point with another's.

        Position, momentum, potential energy and gradient are copied exactly,
        leaving the values of `self` bit-for-bit equal to those of `other`.

        Args:
            other (PhasePoint): Point to copy state from. Must be of the same
                dimension.
        """
        if other.dim != self._dim:
            raise ValueError(
                f'Cannot assign point of dimension {other.dim} to point of '
                f'dimension {self._dim}.')
        self._pos = other.pos.copy()
        self._mom = other.mom.copy()
        self.pot = other.pot
        self.grad = None if other.grad is None else other.grad.copy()

    def write_metric(self, writer):
        """Write the elements of the metric as human-readable records.

        Args:
            writer (Callable[[str], None]): Writer sink.
        """
        self.metric.write(writer)

    def get_param_names(self, model_names=None):
        """Names of the diagnostic values reported for the point.

        The order is fixed: the position names, the momentum names (prefixed
        `p_`), the gradient names (prefixed `g_`) and finally the names of any
        free metric elements.

        Args:
            model_names (None or Sequence[str]): Names of the position
                components. Default names `pos_0`, `pos_1`, ... are used if
                `None`.

        Returns:
            List[str]: Diagnostic names, in the same order as the values
                returned by `get_params`.
        """
        if model_names is None:
            model_names = _default_model_names(self._dim)
        elif len(model_names) != self._dim:
            raise ValueError(
                f'Expected {self._dim} model names, got {len(model_names)}.')
        return (
            list(model_names) +
            [f'p_{name}' for name in model_names] +
            [f'g_{name}' for name in model_names] +
            self.metric.param_names(model_names))

    def get_params(self):
        """Diagnostic values for the point, ordered as in `get_param_names`.

        Returns:
            List[float]: Diagnostic values. The gradient entries are NaN if the
                gradient has not been evaluated at the current position.
        """
        grad = np.full(self._dim, np.nan) if self.grad is None else self.grad
        return (
            list(self._pos) + list(self._mom) + list(grad) +
            self.metric.params())

    def __str__(self):
        return f'(\n pos={self._pos},\n mom={self._mom},\n pot={self.pot})'

    def __repr__(self):
        return type(self).__name__ + str(self)
