"""Functions for sampling one or more Markov chains with a sampler."""

from collections import namedtuple
from contextlib import contextmanager
import copy
import logging
import numpy as np
from numpy.random import default_rng
from hmcore.errors import AdaptationError
from hmcore.samplers import Sample
from hmcore.writers import NullWriter

# Preferentially import from multiprocess library if available as able to
# serialize much wider range of types including autograd functions
try:
    from multiprocess import Pool
    MULTIPROCESS_AVAILABLE = True
except ImportError:
    from multiprocessing import Pool
    MULTIPROCESS_AVAILABLE = False

logger = logging.getLogger(__name__)


ChainResult = namedtuple(
    'ChainResult', ['traces', 'stats', 'final_sample', 'step_size', 'error'])
ChainResult.__doc__ = """Outputs of sampling a single chain.

Attributes:
    traces (Dict[str, array]): Arrays of the position (`pos`) and log target
        density (`log_prob`) values over the main (non-warm-up) iterations.
        Empty if the chain could not be started.
    stats (Dict[str, array]): Arrays of the sampler parameters, the acceptance
        statistic (`accept_stat`) and, if requested, the point diagnostics
        over the main iterations, keyed by name.
    final_sample (hmcore.samplers.Sample): Chain sample after the final
        completed iteration.
    step_size (float): Nominal step size of the sampler after warm up.
    error (None or Exception): Handled exception which terminated the chain,
        either a `hmcore.errors.AdaptationError` if the step size could not be
        initialized or a `KeyboardInterrupt` if sampling was interrupted, in
        which case the records of completed iterations are returned.
"""


@contextmanager
def _pool_context_manager(n_process):
    """Context-manager for process pool that ensures clean exiting.

    Compared to built-in context-manager protocol implementation on Pool object
    which calls the `terminate` method on exit, this manager instead calls
    `close` and then `join` to wait for the worker processes to exit.
    """
    pool = Pool(n_process)
    try:
        yield pool
    finally:
        pool.close()
        pool.join()


def _get_per_chain_rngs(base_rng, n_chain):
    """Construct random number generators (RNGs) for each of a set of chains.

    If the base RNG bit generator has a `jumped` method this is used to produce
    a sequence of independent random substreams. Otherwise if the base RNG bit
    generator has a `_seed_seq` attribute this is used to spawn a sequence of
    generators.
    """
    bit_generator = base_rng.bit_generator
    if hasattr(bit_generator, 'jumped'):
        return [default_rng(bit_generator.jumped(i)) for i in range(n_chain)]
    elif hasattr(bit_generator, '_seed_seq'):
        seed_sequence = bit_generator._seed_seq
        return [default_rng(seed) for seed in seed_sequence.spawn(n_chain)]
    else:
        raise ValueError(
            f'Unsupported random number generator type {type(base_rng)}.')


def _init_records(sampler, n_iter, save_diagnostics, model_names):
    traces = {
        'pos': np.full((n_iter, sampler.dim), np.nan),
        'log_prob': np.full(n_iter, np.nan),
    }
    stat_names = sampler.get_sampler_param_names() + ['accept_stat']
    if save_diagnostics:
        stat_names += sampler.get_sampler_diagnostic_names(model_names)
    stats = {name: np.full(n_iter, np.nan) for name in stat_names}
    return traces, stats


def _update_records(traces, stats, index, sample, sampler, save_diagnostics,
                    model_names):
    traces['pos'][index] = sample.pos
    traces['log_prob'][index] = sample.log_prob
    names = sampler.get_sampler_param_names() + ['accept_stat']
    values = sampler.get_sampler_params() + [sample.accept_stat]
    if save_diagnostics:
        names += sampler.get_sampler_diagnostic_names(model_names)
        values += sampler.get_sampler_diagnostics()
    for name, value in zip(names, values):
        stats[name][index] = value


def sample_chain(sampler, init_pos, n_warm_up_iter, n_main_iter, adapter=None,
                 writer=None, chain_index=0, save_diagnostics=False,
                 model_names=None, logger=logger):
    """Sample a single Markov chain with a Hamiltonian Monte Carlo sampler.

    The chain is started by seeding the sampler at `init_pos` and initializing
    the nominal step size, either directly by the sampler's coarse step size
    search or by the `initialize` method of `adapter`. If the step size cannot
    be initialized (the step size search failing with an
    `hmcore.errors.StepSizeSearchError`) the chain is terminated and the error
    returned rather than raised.

    During the `n_warm_up_iter` warm up iterations the adapter (if any) updates
    the sampler parameters after each transition; once warm up is complete the
    adapter state is finalized and the tuned sampler state written to `writer`.
    The `n_main_iter` main iterations are then run with fixed parameters and
    recorded.

    Args:
        sampler (hmcore.samplers.BaseHMC): Sampler to generate the chain with.
            Mutated in place.
        init_pos (array): Initial chain position.
        n_warm_up_iter (int): Number of adaptive warm up iterations.
        n_main_iter (int): Number of main (recorded) iterations.
        adapter (None or hmcore.adapters.Adapter): Adapter for the sampler
            parameters during warm up.
        writer (None or Callable[[str], None]): Sink for human-readable
            records of the tuned sampler state. Defaults to a `NullWriter`.
        chain_index (int): Index of chain, used in log messages.
        save_diagnostics (bool): Whether to record the point diagnostics of the
            sampler (position, momentum, gradient and metric elements) in the
            returned statistics.
        model_names (None or Sequence[str]): Names of the position components
            used in the diagnostic names.
        logger (logging.Logger): Logger to report to.

    Returns:
        ChainResult: Chain outputs.
    """
    writer = NullWriter() if writer is None else writer
    sampler.seed(init_pos)
    sampler.init_hamiltonian(logger)
    sample = Sample(sampler.z.pos.copy(), -sampler.z.pot, 0.)
    try:
        if adapter is not None:
            adapt_state = adapter.initialize(sampler, logger)
        else:
            sampler.init_step_size(logger)
    except AdaptationError as exception:
        logger.error(
            f'Step size initialization for chain {chain_index + 1} failed: '
            f'{exception}')
        return ChainResult(
            {}, {}, sample, sampler.nominal_step_size, exception)
    traces, stats = _init_records(
        sampler, n_main_iter, save_diagnostics, model_names)
    n_completed = 0
    try:
        for _ in range(n_warm_up_iter):
            sample = sampler.transition(sample, logger)
            if adapter is not None:
                adapter.update(adapt_state, sample, sampler)
        if adapter is not None:
            adapter.finalize(adapt_state, sampler)
            writer('Adaptation terminated')
        sampler.write_sampler_state(writer)
        for index in range(n_main_iter):
            sample = sampler.transition(sample, logger)
            _update_records(
                traces, stats, index, sample, sampler, save_diagnostics,
                model_names)
            n_completed = index + 1
    except KeyboardInterrupt as e:
        exception = e
        logger.error(
            f'Sampling manually interrupted for chain {chain_index + 1} after '
            f'{n_completed} main iterations. Arrays containing chain traces '
            f'and statistics computed before interruption will be returned.')
        traces = {key: val[:n_completed] for key, val in traces.items()}
        stats = {key: val[:n_completed] for key, val in stats.items()}
    else:
        exception = None
    return ChainResult(
        traces, stats, sample, sampler.nominal_step_size, exception)


def _sample_chain_worker(kwargs):
    return sample_chain(**kwargs)


def sample_chains(sampler, init_positions, n_warm_up_iter, n_main_iter,
                  adapter=None, n_process=1, writers=None,
                  save_diagnostics=False, model_names=None):
    """Sample one or more independent Markov chains.

    Each chain is run with its own deep copy of `sampler`, with a random number
    generator derived from the generator of `sampler` such that the chains use
    independent random streams. `sampler` itself is not mutated.

    A fatal step size initialization error in one chain is returned in that
    chain's result and does not affect the other chains.

    Args:
        sampler (hmcore.samplers.BaseHMC): Sampler to copy for each chain.
        init_positions (Sequence[array]): Initial position for each chain.
        n_warm_up_iter (int): Number of adaptive warm up iterations.
        n_main_iter (int): Number of main (recorded) iterations.
        adapter (None or hmcore.adapters.Adapter): Adapter for the sampler
            parameters during warm up. Adapters keep their state in the
            dictionaries they return so one instance is shared by all chains.
        n_process (int): Number of parallel processes to run chains over. If
            `n_process=1` then chains will be run sequentially otherwise a
            `multiprocess.Pool` object will be used to dynamically assign the
            chains across multiple processes. If `multiprocess` is not
            available the standard library `multiprocessing` module is used
            instead.
        writers (None or Sequence[Callable[[str], None]]): Per-chain writer
            sinks. Only supported when running chains sequentially.
        save_diagnostics (bool): Whether to record the point diagnostics.
        model_names (None or Sequence[str]): Names of the position components.

    Returns:
        List[ChainResult]: Outputs of each chain in the order of
            `init_positions`.
    """
    n_chain = len(init_positions)
    if writers is None:
        writers = [None] * n_chain
    elif n_process > 1:
        raise ValueError(
            'Writers are only supported when sampling chains sequentially.')
    elif len(writers) != n_chain:
        raise ValueError(
            f'Expected {n_chain} writers, got {len(writers)}.')
    per_chain_kwargs = []
    for chain_index, (init_pos, rng, writer) in enumerate(
            zip(init_positions, _get_per_chain_rngs(sampler.rng, n_chain),
                writers)):
        chain_sampler = copy.deepcopy(sampler)
        chain_sampler.rng = rng
        per_chain_kwargs.append({
            'sampler': chain_sampler, 'init_pos': init_pos,
            'n_warm_up_iter': n_warm_up_iter, 'n_main_iter': n_main_iter,
            'adapter': adapter, 'writer': writer, 'chain_index': chain_index,
            'save_diagnostics': save_diagnostics, 'model_names': model_names})
    if n_process == 1:
        results = []
        for kwargs in per_chain_kwargs:
            result = sample_chain(**kwargs)
            results.append(result)
            if isinstance(result.error, KeyboardInterrupt):
                break
        return results
    else:
        with _pool_context_manager(n_process) as pool:
            return pool.map(_sample_chain_worker, per_chain_kwargs)
