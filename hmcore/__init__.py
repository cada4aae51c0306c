# -*- coding: utf-8 -*-
""" Hamiltonian Monte Carlo samplers with self-tuning integrator step sizes. """

__authors__ = 'hmcore developers'
__license__ = 'MIT'

import hmcore.adapters
import hmcore.autodiff
import hmcore.chains
import hmcore.errors
import hmcore.hamiltonians
import hmcore.integrators
import hmcore.metrics
import hmcore.samplers
import hmcore.states
import hmcore.writers
