"""Automatic differentation fallback for constructing gradient functions.

If the `autograd` package is installed, a gradient of the negative log
density is constructed automatically when one is not supplied to a
Hamiltonian. The model function then needs to be written using the
`autograd.numpy` wrapper of NumPy.
"""

AUTOGRAD_AVAILABLE = True
try:
    from autograd.core import make_vjp
    from autograd.extend import vspace
except ImportError:
    AUTOGRAD_AVAILABLE = False


def grad_and_value(func):
    """Construct a function returning the gradient and value of `func`.

    Args:
        func (Callable[[array], float]): Scalar-valued function to
            differentiate.

    Returns:
        Callable[[array], Tuple[array, float]]: Function which given an input
            array returns a 2-tuple of the gradient of `func` with respect to
            the input and the value of `func` at the input.
    """
    def grad_and_value_func(x):
        vjp, val = make_vjp(func, x)
        if not vspace(val).size == 1:
            raise TypeError('grad_and_value only applies to real scalar-output'
                            ' functions.')
        return vjp(vspace(val).ones()), val
    grad_and_value_func.__name__ = f'grad_and_value_{func.__name__}'
    return grad_and_value_func


def autodiff_fallback(grad_func, func, name):
    """Use automatic differentiation to construct a gradient if not provided.

    Args:
        grad_func (None or Callable): Either a callable implementing the
            required gradient function or `None` if none was provided.
        func (Callable): Scalar-valued function to differentiate.
        name (str): Name of the gradient function to use in error message.

    Returns:
        Callable: `grad_func` value if not `None` otherwise the automatically
            generated gradient-and-value function of `func`.
    """
    if grad_func is not None:
        return grad_func
    elif AUTOGRAD_AVAILABLE:
        return grad_and_value(func)
    else:
        raise ValueError(
            f'Autograd not available therefore {name} must be provided.')
