"""Exception types."""


class Error(RuntimeError):
    """Base class for errors."""


class IntegratorError(Error):
    """Error raised when integrator step fails."""


class HamiltonianDivergenceError(IntegratorError):
    """Error raised when integration of Hamiltonian dynamics diverges."""


class AdaptationError(Error):
    """Error raised when adaptation of sampler parameters fails."""


class StepSizeSearchError(AdaptationError):
    """Error raised when the initial step size search cannot terminate.

    Both subclasses are fatal for the chain the search was run for: the chain
    cannot be continued from the current point with any usable step size.
    """

    message = 'Step size search failed.'

    def __init__(self, step_size, message=None):
        """
        Args:
            step_size (float): Nominal step size at the point the search was
                abandoned.
            message (None or str): Optional override of the class message.
        """
        super().__init__(self.message if message is None else message)
        self.step_size = step_size

    def __reduce__(self):
        return (type(self), (self.step_size, str(self)))


class ImproperPosteriorError(StepSizeSearchError):
    """Error raised when the step size search diverges to huge step sizes."""

    message = 'Posterior is improper. Please check your model.'


class StepSizeUnderflowError(StepSizeSearchError):
    """Error raised when the step size search halves the step size to zero."""

    message = (
        'No acceptably small step size could be found. Perhaps the posterior '
        'is not continuous?')
