import logging
from math import log

import numpy as np
import pytest

from hmcore import errors, hamiltonians, integrators, metrics, samplers
from hmcore.writers import ListWriter

SEED = 3046987125
DIM = 2


def neg_log_dens(pos):
    return 0.5 * pos @ pos


def grad_neg_log_dens(pos):
    return pos


class CountingHMC(samplers.BaseHMC):
    """Minimal sampler recording calls to the step count hook."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.n_update_n_step_calls = 0

    def update_n_step(self):
        self.n_update_n_step_calls += 1

    def transition(self, sample, logger=samplers.logger):
        return sample


class StubHamiltonian(hamiltonians.Hamiltonian):
    """Energy is zero at the origin and `energy_error(x)` at `x = pos[0]`."""

    def __init__(self, energy_error):
        super().__init__(
            lambda pos: 0.0, lambda pos: np.zeros_like(pos)
        )
        self.energy_error = energy_error

    def h(self, point, logger=None):
        return 0.0 if point.pos[0] == 0 else self.energy_error(point.pos[0])

    def h2(self, point):
        return 0.0

    def dh2_dmom(self, point):
        return point.mom

    def sample_momentum(self, point, rng):
        point.mom = rng.standard_normal(point.dim)


class StubIntegrator(integrators.Integrator):
    """Moves the first position component by the step size."""

    def __init__(self):
        self.step_sizes = []

    def _step(self, point, hamiltonian, dt, logger):
        self.step_sizes.append(dt)
        point.pos = point.pos + dt


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture
def hamiltonian():
    return hamiltonians.EuclideanHamiltonian(
        neg_log_dens,
        metric=metrics.DiagonalMetric(np.ones(DIM)),
        grad_neg_log_dens=grad_neg_log_dens,
    )


@pytest.fixture
def integrator():
    return integrators.LeapfrogIntegrator()


@pytest.fixture
def sampler(hamiltonian, integrator):
    return CountingHMC(hamiltonian, integrator, DIM, SEED)


@pytest.fixture
def stub_integrator():
    return StubIntegrator()


def stub_sampler(energy_error, stub_integrator, init_mom=None):
    sampler = CountingHMC(
        StubHamiltonian(energy_error), stub_integrator, DIM, SEED
    )
    sampler.seed(np.zeros(DIM))
    if init_mom is not None:
        sampler.z.mom = init_mom
    return sampler


def quadratic_energy_error(step_size):
    return step_size**2


def nan_above_half_energy_error(step_size):
    return step_size**2 if step_size <= 0.5 else np.nan


class TestBaseHMCStepSize:
    def test_defaults(self, sampler):
        assert sampler.nominal_step_size == 0.1
        assert sampler.current_step_size == 0.1
        assert sampler.step_size_jitter == 0

    @pytest.mark.parametrize("value", (0.0, -1.0))
    def test_nominal_step_size_rejects_non_positive(self, sampler, value):
        sampler.nominal_step_size = value
        assert sampler.nominal_step_size == 0.1
        assert sampler.n_update_n_step_calls == 1

    def test_nominal_step_size_setter(self, sampler):
        sampler.nominal_step_size = 0.5
        assert sampler.nominal_step_size == 0.5
        assert sampler.n_update_n_step_calls == 1
        sampler.nominal_step_size = 0.25
        assert sampler.n_update_n_step_calls == 2

    @pytest.mark.parametrize("value", (0.0, 1.0, -0.1, 1.5, np.nan))
    def test_jitter_rejects_out_of_range(self, sampler, value):
        sampler.step_size_jitter = 0.3
        sampler.step_size_jitter = value
        assert sampler.step_size_jitter == 0.3

    def test_sample_step_size_without_jitter(self, sampler):
        sampler.nominal_step_size = 0.37
        for _ in range(10):
            assert sampler.sample_step_size() == 0.37
            assert sampler.current_step_size == 0.37

    @pytest.mark.parametrize("jitter", (0.1, 0.5, 0.99))
    def test_sample_step_size_with_jitter(self, sampler, jitter):
        sampler.step_size_jitter = jitter
        step_sizes = np.array([sampler.sample_step_size() for _ in range(1000)])
        nominal = sampler.nominal_step_size
        assert np.all(step_sizes >= nominal * (1 - jitter))
        assert np.all(step_sizes <= nominal * (1 + jitter))
        assert np.unique(step_sizes).shape[0] > 1
        assert sampler.nominal_step_size == nominal

    def test_sample_step_size_deterministic(self, hamiltonian, integrator):
        step_sizes = []
        for _ in range(2):
            sampler = CountingHMC(hamiltonian, integrator, DIM, SEED)
            sampler.step_size_jitter = 0.5
            step_sizes.append([sampler.sample_step_size() for _ in range(5)])
        assert step_sizes[0] == step_sizes[1]


class TestBaseHMCInitStepSize:
    def test_doubling_sequence(self, stub_integrator):
        sampler = stub_sampler(quadratic_energy_error, stub_integrator)
        step_size = sampler.init_step_size()
        assert step_size == 0.8
        assert sampler.nominal_step_size == 0.8
        assert stub_integrator.step_sizes == [0.1, 0.1, 0.2, 0.4, 0.8]

    def test_halving_sequence(self, stub_integrator):
        sampler = stub_sampler(quadratic_energy_error, stub_integrator)
        sampler.nominal_step_size = 2.0
        step_size = sampler.init_step_size()
        assert step_size == 0.25
        assert stub_integrator.step_sizes == [2.0, 2.0, 1.0, 0.5, 0.25]

    def test_final_step_size_brackets_target(self, stub_integrator):
        sampler = stub_sampler(quadratic_energy_error, stub_integrator)
        step_size = sampler.init_step_size()
        assert not -quadratic_energy_error(step_size) > log(0.8)
        assert -quadratic_energy_error(step_size / 2) > log(0.8)

    def test_nan_energy_treated_as_infinite(self, stub_integrator):
        sampler = stub_sampler(nan_above_half_energy_error, stub_integrator)
        sampler.nominal_step_size = 2.0
        assert sampler.init_step_size() == 0.25

    def test_all_nan_energies_underflow(self, stub_integrator):
        sampler = stub_sampler(lambda step_size: np.nan, stub_integrator)
        with pytest.raises(errors.StepSizeUnderflowError) as exc_info:
            sampler.init_step_size()
        assert exc_info.value.step_size == 0
        assert sampler.nominal_step_size == 0

    def test_improper_posterior(self, stub_integrator):
        init_mom = np.array([1.0, 2.0])
        sampler = stub_sampler(lambda step_size: -1.0, stub_integrator, init_mom)
        with pytest.raises(errors.ImproperPosteriorError) as exc_info:
            sampler.init_step_size()
        assert exc_info.value.step_size == 0.1 * 2**27
        assert sampler.nominal_step_size > 1e7
        assert len(stub_integrator.step_sizes) == 28
        assert str(exc_info.value) == (
            "Posterior is improper. Please check your model."
        )
        assert np.array_equal(sampler.z.pos, np.zeros(DIM))
        assert np.array_equal(sampler.z.mom, init_mom)

    def test_step_size_underflow(self, stub_integrator):
        init_mom = np.array([1.0, 2.0])
        sampler = stub_sampler(
            lambda step_size: np.inf, stub_integrator, init_mom
        )
        with pytest.raises(errors.StepSizeUnderflowError) as exc_info:
            sampler.init_step_size()
        assert exc_info.value.step_size == 0
        assert "No acceptably small step size" in str(exc_info.value)
        assert np.array_equal(sampler.z.pos, np.zeros(DIM))
        assert np.array_equal(sampler.z.mom, init_mom)

    @pytest.mark.parametrize("nominal_step_size", (2e7, 1e10))
    def test_search_skipped_for_huge_step_size(
        self, stub_integrator, nominal_step_size
    ):
        sampler = stub_sampler(quadratic_energy_error, stub_integrator)
        sampler.nominal_step_size = nominal_step_size
        assert sampler.init_step_size() == nominal_step_size
        assert stub_integrator.step_sizes == []

    def test_point_restored_after_search(self, sampler, rng):
        sampler.seed(rng.standard_normal(DIM))
        sampler.z.mom = rng.standard_normal(DIM)
        sampler.init_hamiltonian()
        z_init = sampler.z.copy()
        sampler.init_step_size()
        assert np.array_equal(sampler.z.pos, z_init.pos)
        assert np.array_equal(sampler.z.mom, z_init.mom)
        assert np.array_equal(sampler.z.grad, z_init.grad)
        assert sampler.z.pot == z_init.pot

    def test_search_calls_step_count_hook(self, sampler, rng):
        sampler.seed(rng.standard_normal(DIM))
        sampler.init_step_size()
        assert sampler.n_update_n_step_calls == 1

    def test_gaussian_search_terminates(self, sampler, rng):
        sampler.seed(rng.standard_normal(DIM))
        step_size = sampler.init_step_size()
        assert np.isfinite(step_size)
        assert 0 < step_size <= 1e7
        # step size is a power of two multiple of the initial value
        assert np.isclose(np.log2(step_size / 0.1) % 1, 0) or np.isclose(
            np.log2(step_size / 0.1) % 1, 1
        )


class TestBaseHMCWriteAndDiagnostics:
    def test_write_sampler_step_size(self, sampler):
        writer = ListWriter()
        sampler.write_sampler_step_size(writer)
        assert writer.lines == ["Step size = 0.1"]

    def test_write_sampler_state(self, sampler):
        writer = ListWriter()
        sampler.write_sampler_state(writer)
        assert writer.lines == [
            "Step size = 0.1",
            "Diagonal elements of inverse mass matrix:",
            "1, 1",
        ]

    def test_write_sampler_metric_unit(self, integrator):
        sampler = CountingHMC(
            hamiltonians.EuclideanHamiltonian(
                neg_log_dens, grad_neg_log_dens=grad_neg_log_dens
            ),
            integrator,
            DIM,
        )
        writer = ListWriter()
        sampler.write_sampler_metric(writer)
        assert writer.lines == ["No free parameters for unit metric"]

    def test_diagnostic_names_and_values(self, sampler, rng):
        sampler.seed(rng.standard_normal(DIM))
        sampler.init_hamiltonian()
        names = sampler.get_sampler_diagnostic_names(["x", "y"])
        values = sampler.get_sampler_diagnostics()
        assert names == [
            "x", "y", "p_x", "p_y", "g_x", "g_y", "inv_metric_x", "inv_metric_y"
        ]
        assert len(values) == len(names)
        assert np.allclose(values[:DIM], sampler.z.pos)
        assert np.allclose(values[2 * DIM : 3 * DIM], sampler.z.pos)

    def test_diagnostics_do_not_mutate(self, sampler, rng):
        sampler.seed(rng.standard_normal(DIM))
        z_before = sampler.z.copy()
        sampler.get_sampler_diagnostic_names()
        sampler.get_sampler_diagnostics()
        writer = ListWriter()
        sampler.write_sampler_state(writer)
        assert np.array_equal(sampler.z.pos, z_before.pos)
        assert sampler.z.pot is None


class TestBaseHMCRng:
    def test_int_seed(self, hamiltonian, integrator):
        sampler = CountingHMC(hamiltonian, integrator, DIM, SEED)
        assert isinstance(sampler.rng, np.random.Generator)

    def test_generator_used_directly(self, hamiltonian, integrator, rng):
        sampler = CountingHMC(hamiltonian, integrator, DIM, rng)
        assert sampler.rng is rng

    def test_random_state_raises_deprecation_warning(
        self, hamiltonian, integrator
    ):
        with pytest.warns(DeprecationWarning):
            sampler = CountingHMC(
                hamiltonian, integrator, DIM, np.random.RandomState(SEED)
            )
        assert isinstance(sampler.rng, np.random.Generator)

    def test_rand_uniform_range(self, sampler):
        draws = [sampler._rand_uniform() for _ in range(100)]
        assert all(0 <= draw < 1 for draw in draws)


class HMCSamplerTests:
    """Tests shared by the concrete trajectory strategies."""

    def test_transition_sample(self, sampler, rng):
        init_pos = rng.standard_normal(DIM)
        sample = samplers.Sample(init_pos, -neg_log_dens(init_pos), 0.0)
        new_sample = sampler.transition(sample)
        assert new_sample.pos.shape == (DIM,)
        assert np.isclose(new_sample.log_prob, -neg_log_dens(new_sample.pos))
        assert 0 <= new_sample.accept_stat <= 1
        assert np.array_equal(sample.pos, init_pos)

    def test_sampler_params(self, sampler, rng):
        init_pos = rng.standard_normal(DIM)
        sampler.transition(samplers.Sample(init_pos, None, 0.0))
        names = sampler.get_sampler_param_names()
        values = sampler.get_sampler_params()
        assert len(names) == len(values)
        assert names[0] == "stepsize__"
        assert values[0] == sampler.current_step_size

    def test_standard_normal_invariant(self, sampler, rng):
        sampler.step_size_jitter = 0.2
        sample = samplers.Sample(rng.standard_normal(DIM), None, 0.0)
        positions = []
        for _ in range(2000):
            sample = sampler.transition(sample)
            positions.append(sample.pos)
        positions = np.array(positions)
        assert np.allclose(positions.mean(0), 0, atol=0.15)
        assert np.allclose(positions.var(0), 1, atol=0.25)


class TestStaticHMC(HMCSamplerTests):
    @pytest.fixture
    def sampler(self, hamiltonian, integrator):
        sampler = samplers.StaticHMC(hamiltonian, integrator, DIM, SEED)
        sampler.nominal_step_size = 0.2
        return sampler

    def test_n_step(self, hamiltonian, integrator):
        sampler = samplers.StaticHMC(hamiltonian, integrator, DIM, SEED)
        assert sampler.integration_time == 1
        assert sampler.n_step == 10
        sampler.nominal_step_size = 0.3
        assert sampler.n_step == 3
        sampler.nominal_step_size = 2.0
        assert sampler.n_step == 1

    def test_integration_time_setter(self, sampler):
        sampler.integration_time = 2.0
        assert sampler.n_step == 10
        sampler.integration_time = -1.0
        assert sampler.integration_time == 2.0

    def test_invalid_integration_time_raises(self, hamiltonian, integrator):
        with pytest.raises(ValueError):
            samplers.StaticHMC(
                hamiltonian, integrator, DIM, SEED, integration_time=0
            )

    def test_set_nominal_step_size_and_time(self, sampler):
        sampler.set_nominal_step_size_and_time(0.5, 2.0)
        assert sampler.nominal_step_size == 0.5
        assert sampler.integration_time == 2.0
        assert sampler.n_step == 4
        sampler.set_nominal_step_size_and_time(-0.5, 3.0)
        assert sampler.nominal_step_size == 0.5
        assert sampler.integration_time == 2.0

    def test_set_nominal_step_size_and_n_step(self, sampler):
        sampler.set_nominal_step_size_and_n_step(0.2, 5)
        assert sampler.integration_time == 1.0
        assert sampler.n_step == 5

    @pytest.mark.parametrize("step_size, n_step", [(0.03, 11), (0.1, 3), (0.07, 29)])
    def test_set_nominal_step_size_and_n_step_keeps_count(
        self, sampler, step_size, n_step
    ):
        sampler.set_nominal_step_size_and_n_step(step_size, n_step)
        assert sampler.nominal_step_size == step_size
        assert sampler.n_step == n_step

    def test_n_step_truncates_fractional_ratio(self, sampler):
        sampler.set_nominal_step_size_and_time(0.3, 1.0)
        assert sampler.n_step == 3
        sampler.set_nominal_step_size_and_time(2.0, 1.0)
        assert sampler.n_step == 1

    def test_sampler_param_names(self, sampler):
        assert sampler.get_sampler_param_names() == ["stepsize__", "int_time__"]
        assert sampler.get_sampler_params()[1] == sampler.integration_time

    def test_diverging_proposal_rejected(self, sampler, rng):
        sampler.nominal_step_size = 1e3
        init_pos = rng.standard_normal(DIM)
        sample = sampler.transition(samplers.Sample(init_pos, None, 0.0))
        assert np.array_equal(sample.pos, init_pos)
        assert sample.accept_stat == 0


class TestMultinomialNUTS(HMCSamplerTests):
    @pytest.fixture
    def sampler(self, hamiltonian, integrator):
        sampler = samplers.MultinomialNUTS(hamiltonian, integrator, DIM, SEED)
        sampler.nominal_step_size = 0.5
        return sampler

    def test_sampler_param_names(self, sampler):
        assert sampler.get_sampler_param_names() == [
            "stepsize__",
            "treedepth__",
            "n_leapfrog__",
            "divergent__",
            "energy__",
        ]

    def test_tree_statistics(self, sampler, rng):
        sample = samplers.Sample(rng.standard_normal(DIM), None, 0.0)
        for _ in range(20):
            sample = sampler.transition(sample)
            _, depth, n_leapfrog, divergent, energy = sampler.get_sampler_params()
            assert 1 <= depth <= sampler.max_depth
            assert 2**depth - 1 <= n_leapfrog <= 2 ** (depth + 1) - 1
            assert divergent == 0
            assert np.isclose(energy, sampler.hamiltonian.h(sampler.z))

    def test_max_depth_limits_tree(self, hamiltonian, integrator, rng):
        sampler = samplers.MultinomialNUTS(
            hamiltonian, integrator, DIM, SEED, max_depth=1
        )
        sampler.nominal_step_size = 0.01
        sample = samplers.Sample(rng.standard_normal(DIM), None, 0.0)
        sampler.transition(sample)
        _, depth, n_leapfrog, _, _ = sampler.get_sampler_params()
        assert depth == 1
        assert n_leapfrog == 1

    def test_invalid_max_depth_raises(self, hamiltonian, integrator):
        with pytest.raises(ValueError):
            samplers.MultinomialNUTS(
                hamiltonian, integrator, DIM, SEED, max_depth=0
            )

    def test_divergence(self, sampler, rng, caplog):
        sampler.nominal_step_size = 100.0
        init_pos = rng.standard_normal(DIM)
        with caplog.at_level(logging.INFO):
            sample = sampler.transition(samplers.Sample(init_pos, None, 0.0))
        _, depth, n_leapfrog, divergent, _ = sampler.get_sampler_params()
        assert divergent == 1
        assert depth == 0
        assert n_leapfrog == 1
        assert np.array_equal(sample.pos, init_pos)
        assert "Terminating trajectory" in caplog.text
        assert sample.accept_stat < 1e-10


@pytest.mark.parametrize("seed", range(5))
def test_end_to_end_two_dimensional_gaussian(seed):
    hamiltonian = hamiltonians.EuclideanHamiltonian(
        neg_log_dens, metric=np.ones(DIM), grad_neg_log_dens=grad_neg_log_dens
    )
    sampler = samplers.MultinomialNUTS(
        hamiltonian, integrators.LeapfrogIntegrator(), DIM, seed
    )
    sampler.seed(np.random.default_rng(seed).standard_normal(DIM))
    sampler.init_hamiltonian()
    sampler.nominal_step_size = 1.0
    step_size = sampler.init_step_size()
    # Search only doubles or halves so stays within a few factors of two of 1
    assert 0.125 <= step_size <= 8
    assert sampler.step_size_jitter == 0
    assert sampler.sample_step_size() == step_size
    assert sampler.current_step_size == step_size
    sampler.step_size_jitter = 0.1
    assert 0.9 * step_size <= sampler.sample_step_size() <= 1.1 * step_size
    writer = ListWriter()
    sampler.write_sampler_state(writer)
    assert writer.lines[0] == f"Step size = {step_size:g}"
    assert writer.lines[1:] == ["Diagonal elements of inverse mass matrix:", "1, 1"]
    names = sampler.get_sampler_diagnostic_names()
    assert len(names) == 4 * DIM
    assert len(sampler.get_sampler_diagnostics()) == len(names)
