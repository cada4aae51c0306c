"""Symplectic integrators for simulation of Hamiltonian dynamics."""

from abc import ABC, abstractmethod
import logging
import numpy as np

logger = logging.getLogger(__name__)


class Integrator(ABC):
    """Base class for integrators.

    An integrator is a deterministic map advancing a phase space point by one
    discrete time step of the Hamiltonian dynamics. Integrators hold no random
    state and no step size: the (signed) step size is supplied on every call
    to `evolve`, allowing a single integrator instance to be shared by the
    step size search and the trajectory building of a sampler.
    """

    def evolve(self, point, hamiltonian, step_size, logger=logger):
        """Perform a single integrator step from a point, in place.

        Floating point overflow within the step does not raise; the resulting
        non-finite values instead propagate to an energy which evaluates to
        positive infinity under `hamiltonian.h`.

        Args:
            point (hmcore.states.PhasePoint): Point to perform the integrator
                step from. Updated in place.
            hamiltonian (hmcore.hamiltonians.Hamiltonian): Hamiltonian to
                integrate the dynamics of.
            step_size (float): Integrator time step. May be positive or
                negative.
            logger (logging.Logger): Logger to report non-fatal numerical
                issues (e.g. model errors at the stepped position) to.
        """
        with np.errstate(over='ignore', invalid='ignore'):
            self._step(point, hamiltonian, step_size, logger)

    @abstractmethod
    def _step(self, point, hamiltonian, dt, logger):
        """Implementation of single integrator step.

        Args:
            point (hmcore.states.PhasePoint): Point to perform integrator step
                from. Updated in place.
            hamiltonian (hmcore.hamiltonians.Hamiltonian): Hamiltonian to
                integrate the dynamics of.
            dt (float): Integrator time step. May be positive or negative.
            logger (logging.Logger): Logger to report numerical issues to.
        """


class LeapfrogIntegrator(Integrator):
    r"""
    Leapfrog integrator for Hamiltonians with a separable kinetic energy.

    Each step consists of a half step update of the momentum using the
    gradient of the potential energy, a full step update of the position
    using the velocity \(M^{-1} p\) and a final half step momentum update. The
    potential energy and its gradient are refreshed once per step, after the
    position update, and cached in the point for the next step.
    """

    def begin_update_mom(self, point, hamiltonian, dt, logger):
        if point.grad is None:
            hamiltonian.update_potential_gradient(point, logger)
        point.mom = point.mom - dt * point.grad

    def update_pos(self, point, hamiltonian, dt, logger):
        point.pos = point.pos + dt * hamiltonian.dh2_dmom(point)
        hamiltonian.update_potential_gradient(point, logger)

    def end_update_mom(self, point, hamiltonian, dt, logger):
        point.mom = point.mom - dt * point.grad

    def _step(self, point, hamiltonian, dt, logger):
        self.begin_update_mom(point, hamiltonian, 0.5 * dt, logger)
        self.update_pos(point, hamiltonian, dt, logger)
        self.end_update_mom(point, hamiltonian, 0.5 * dt, logger)
