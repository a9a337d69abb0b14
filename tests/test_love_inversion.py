"""
Tests for love_inversion.py

The driver is exercised with a linear Gaussian likelihood so the runs are
fast and exactly reproducible.

Covers:
  1. Accepted misfits never increase, step sizes never increase
  2. Termination after max_iterations, or earlier at the step size floor
  3. Backtracking restores the last accepted model
  4. Prior violations shrink the step and never touch the live model
  5. Step failures propagate as StepComputationFailed
  6. Strategy selection: alternating by parity vs. pinned mode
  7. Initial prediction save is best effort
"""

from __future__ import annotations

import re

import numpy as np
import pytest

from likelihood import DispersionData
from love_inversion import EPSILON_MIN, LoveInverter, StepComputationFailed
from steps import LeastSquaresIterator, QuasiNewton, SimpleStep
from utils import (
    VS,
    copy_to_vector,
    create_layered_model,
    initialize_Cm,
    inverse_Cm,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

_NOBS = 6
_M_TRUE = np.array([2650.0, 3600.0, 1.05])
_PROGRESS = re.compile(r"^\s*\d+: ")


class LinearLikelihood:
    """like = 0.5 |d - G m|^2 / sigma^2 + prior, pure in the model"""

    def __init__(self, G, d, sigma=5.0, flip_gradient=False):
        self.G = G
        self.d = d
        self.sigma = sigma
        self.flip_gradient = flip_gradient
        self.calls = 0
        self.posterior_flags = []

    def __call__(self, data, model, reference, damping, posterior=False):
        self.calls += 1
        self.posterior_flags.append(posterior)

        m, _ = copy_to_vector(model)
        m0, _ = copy_to_vector(reference)
        Cm_inv = inverse_Cm(initialize_Cm(model, damping))

        pred = self.G @ m
        data.pred[:] = pred

        G = self.G.copy()
        r = self.d - pred
        if posterior:
            G[:] = 0.0
            r[:] = 0.0
        Cd = np.full(len(r), self.sigma ** 2)

        like = 0.5 * np.sum(r ** 2 / Cd) + 0.5 * np.sum(Cm_inv * (m - m0) ** 2)
        dLdp = -G.T @ (r / Cd) + Cm_inv * (m - m0)
        if self.flip_gradient:
            dLdp = -dLdp
        return like, G, dLdp, r, Cd


def _problem(**kwargs):
    rng = np.random.default_rng(7)
    G = rng.uniform(0.5, 1.5, (_NOBS, 3)) * np.array([0.1, 1.0, 1000.0])
    d = G @ _M_TRUE

    data = DispersionData()
    data.set_observations(np.linspace(0.05, 0.4, _NOBS), d, np.full(_NOBS, 5.0))
    data.initialise_target()

    model = create_layered_model([10.0e3], rho=2700.0, vs=3500.0, xi=1.0, vpvs=1.75)
    reference = model.copy()
    return data, model, reference, LinearLikelihood(G, d, **kwargs)


def _run(inverter, damping=(0.0, 0.0, 0.0, 0.0), **kwargs):
    data, model, reference, likelihood = _problem(**kwargs)
    ok = inverter.invert(data, model, reference, damping, likelihood,
                         initial_predictions=None)
    return ok, model, likelihood


def _non_increasing(values):
    return all(b <= a for a, b in zip(values, values[1:]))


class RejectFirstStep(LeastSquaresIterator):
    """Proposes Vs = -100 once, then defers to another strategy"""

    def __init__(self, inner, model):
        self.inner = inner
        self.model = model
        self.snapshot = model.params.copy()
        self.calls = 0

    def compute_step(self, epsilon, Cd, Cm, residuals, G, dLdp,
                     model_mask, model_v, model_0, model_v_proposed):
        self.calls += 1
        if self.calls == 1:
            model_v_proposed[:] = model_v
            model_v_proposed[VS] = -100.0
            return True
        # the rejected proposal never reached the live model
        np.testing.assert_array_equal(self.model.params, self.snapshot)
        return self.inner.compute_step(epsilon, Cd, Cm, residuals, G, dLdp,
                                       model_mask, model_v, model_0, model_v_proposed)


class FailingStep(LeastSquaresIterator):

    name = 'failing'

    def compute_step(self, *args):
        return False


# ── 1. Monotonicity ───────────────────────────────────────────────────────────


class TestMonotonicity:

    def test_returns_true_and_reduces_misfit(self, capsys):
        inverter = LoveInverter(epsilon=1.0, max_iterations=6)
        ok, model, _ = _run(inverter)
        assert ok
        assert inverter.misfit_history[-1] < inverter.misfit_history[0]
        assert "init:" in capsys.readouterr().out

    def test_accepted_misfits_non_increasing(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=6)
        _run(inverter)
        assert _non_increasing(inverter.misfit_history)

    def test_epsilon_non_increasing_per_strategy(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=6)
        _run(inverter)
        for m in (0, 1):
            trace = [eps for k, eps in inverter.epsilon_trace if k == m]
            assert trace
            assert _non_increasing(trace)
            assert max(trace) <= 1.0

    def test_with_prior(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=6)
        ok, model, _ = _run(inverter, damping=(0.5e3, 0.5e3, 0.05, 0.05))
        assert ok
        assert _non_increasing(inverter.misfit_history)


# ── 2. Termination ────────────────────────────────────────────────────────────


class TestTermination:

    def test_at_most_max_iterations_accepted(self):
        # small simple steps stay clear of the optimum
        inverter = LoveInverter(epsilon=0.01, max_iterations=3, mode=0, alternate=False)
        _run(inverter)
        assert inverter.events.count('accept') == 3
        assert len(inverter.misfit_history) == 4

    def test_single_layer_single_iteration(self, capsys):
        inverter = LoveInverter(epsilon=0.01, max_iterations=1)
        _run(inverter)

        lines = capsys.readouterr().out.splitlines()
        init = [i for i, line in enumerate(lines) if line.startswith("init:")]
        assert len(init) == 1

        progress = [line for line in lines[init[0] + 1:] if _PROGRESS.match(line)]
        assert len(progress) == 1
        assert "Backtracking" not in progress[0]
        assert inverter.events == ['accept']

    def test_floor_exit(self, capsys):
        inverter = LoveInverter(epsilon=1.0, max_iterations=3)
        _, _, likelihood = _run(inverter, flip_gradient=True)

        assert inverter.events[-1] == 'exit'
        assert 'accept' not in inverter.events
        # 1, 1/2, ... until the step size falls below the floor
        expected = int(np.ceil(-np.log2(EPSILON_MIN)))
        assert inverter.events.count('backtrack') == expected
        assert inverter.final_epsilon[0] < EPSILON_MIN
        assert inverter.final_epsilon[1] == 1.0

        out = capsys.readouterr().out
        assert "Backtracking" in out
        assert "Exiting" in out


# ── 3. Backtracking ───────────────────────────────────────────────────────────


class TestBacktracking:

    def test_model_restored_after_exit(self):
        data, model, reference, likelihood = _problem(flip_gradient=True)
        before = model.params.copy()
        LoveInverter(epsilon=1.0, max_iterations=2).invert(
            data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
            initial_predictions=None)
        np.testing.assert_array_equal(model.params, before)

    def test_backtrack_halves_epsilon(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=1)
        _run(inverter, flip_gradient=True)
        eps = [e for m, e in inverter.epsilon_trace if m == 0]
        for a, b in zip(eps, eps[1:]):
            assert b == pytest.approx(0.5 * a)

    def test_likelihood_reevaluated_on_backtrack(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=1)
        _, _, likelihood = _run(inverter, flip_gradient=True)
        backtracks = inverter.events.count('backtrack')
        # init, one per attempt, one per restore, one after the exit
        assert likelihood.calls == 1 + 2 * backtracks + 2


# ── 4. Prior bounds ───────────────────────────────────────────────────────────


class TestPriorBounds:

    def test_rejected_proposal_leaves_model_untouched(self):
        data, model, reference, likelihood = _problem()
        step = RejectFirstStep(SimpleStep(), model)
        inverter = LoveInverter(epsilon=0.5, max_iterations=1,
                                steps=[step, QuasiNewton()])
        inverter.invert(data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
                        initial_predictions=None)

        assert step.calls >= 2
        assert inverter.epsilon_trace[:2] == [(0, 0.5), (0, 0.25)]
        assert model.vs[0] > 0

    def test_unsatisfiable_bounds_stop(self, capsys):
        data, model, reference, likelihood = _problem()
        before = model.params.copy()
        inverter = LoveInverter(epsilon=1.0, max_iterations=3,
                                prior_min=[0.1e3, 0.5e3, 0.5, 1.0],
                                prior_max=[8.0e3, 3.0e3, 1.5, 2.5])

        with pytest.warns(UserWarning, match="prior bounds"):
            ok = inverter.invert(data, model, reference, (0.0, 0.0, 0.0, 0.0),
                                 likelihood, initial_predictions=None)

        assert ok
        assert inverter.events == ['prior-exit']
        assert likelihood.calls == 1
        np.testing.assert_array_equal(model.params, before)
        assert "Exiting" in capsys.readouterr().out


# ── 5. Step failures ──────────────────────────────────────────────────────────


class TestStepFailure:

    def test_failure_propagates(self):
        data, model, reference, likelihood = _problem()
        before = model.params.copy()
        inverter = LoveInverter(max_iterations=2, steps=[FailingStep(), FailingStep()])

        with pytest.raises(StepComputationFailed) as info:
            inverter.invert(data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
                            initial_predictions=None)

        assert info.value.iteration == 0
        assert info.value.strategy == 0
        np.testing.assert_array_equal(model.params, before)

    def test_singular_quasi_newton(self):
        data, model, reference, likelihood = _problem()
        likelihood.G[:, 2] = 0.0
        inverter = LoveInverter(max_iterations=2, mode=1, alternate=False)

        with pytest.raises(StepComputationFailed) as info:
            inverter.invert(data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
                            initial_predictions=None)
        assert info.value.strategy == 1

    def test_prior_regularises_singular_quasi_newton(self):
        data, model, reference, likelihood = _problem()
        likelihood.G[:, 2] = 0.0
        inverter = LoveInverter(max_iterations=2, mode=1, alternate=False)
        assert inverter.invert(data, model, reference, (0.5e3, 0.5e3, 0.05, 0.05),
                               likelihood, initial_predictions=None)


# ── 6. Strategy selection ─────────────────────────────────────────────────────


class TestStrategySelection:

    def test_alternates_by_parity(self):
        inverter = LoveInverter(epsilon=0.01, max_iterations=4)
        assert [inverter.select_step(i) for i in range(4)] == [0, 1, 0, 1]
        _run(inverter)
        assert {m for m, _ in inverter.epsilon_trace} == {0, 1}

    def test_mode_unused_while_alternating(self):
        inverter = LoveInverter(mode=1)
        assert inverter.select_step(0) == 0

    @pytest.mark.parametrize("mode", [0, 1])
    def test_pinned_mode(self, mode):
        inverter = LoveInverter(epsilon=0.5, max_iterations=3, mode=mode, alternate=False)
        _run(inverter)
        assert {m for m, _ in inverter.epsilon_trace} == {mode}

    def test_quasi_newton_converges_on_linear_problem(self):
        inverter = LoveInverter(epsilon=1.0, max_iterations=2, mode=1, alternate=False)
        _, model, _ = _run(inverter)
        np.testing.assert_allclose(model.params[0, :3], _M_TRUE, rtol=1e-8)
        assert inverter.misfit_history[-1] == pytest.approx(0.0, abs=1e-12)


# ── 7. Configuration and side effects ─────────────────────────────────────────


class TestConfiguration:

    @pytest.mark.parametrize("kwargs", [
        {"epsilon": 0.0},
        {"max_iterations": 0},
        {"mode": 2},
        {"steps": [SimpleStep()]},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            LoveInverter(**kwargs)

    def test_posterior_flag_forwarded(self):
        inverter = LoveInverter(max_iterations=1)
        data, model, reference, likelihood = _problem()
        inverter.invert(data, model, reference, (0.5e3, 0.5e3, 0.05, 0.05), likelihood,
                        posterior=True, initial_predictions=None)
        assert likelihood.posterior_flags
        assert all(likelihood.posterior_flags)

    def test_initial_predictions_saved(self, tmp_path):
        path = tmp_path / "initial_predictions.txt"
        data, model, reference, likelihood = _problem()
        LoveInverter(max_iterations=1).invert(
            data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
            initial_predictions=str(path))
        table = np.loadtxt(path)
        assert table.shape == (_NOBS, 4)

    def test_initial_predictions_failure_is_soft(self, tmp_path):
        path = tmp_path / "missing" / "initial_predictions.txt"
        data, model, reference, likelihood = _problem()
        with pytest.warns(UserWarning, match="initial predictions"):
            ok = LoveInverter(max_iterations=1).invert(
                data, model, reference, (0.0, 0.0, 0.0, 0.0), likelihood,
                initial_predictions=str(path))
        assert ok
