"""
Tests for tear-stream acceleration (direct substitution, Wegstein, Broyden).
"""

import numpy as np
import pytest

from flowsim.accelerator import AcceleratorMode, ConvergenceAccelerator, relative_error
from flowsim.config import SolverSettings
from flowsim.errors import Diverged


def _vec(n, T=300.0, P=1e5):
    return np.array([T, P, n], dtype=float)


def _linear_map(n):
    # Fixed point at n = 2, slope 0.5
    return 0.5 * n + 1.0


def _iterate(acc, n0, fn, steps):
    n = n0
    results = []
    for _ in range(steps):
        step = acc.step({"t": _vec(n)}, {"t": _vec(fn(n))})
        results.append(step)
        if step.converged:
            break
        n = step.next_guess["t"][2]
    return results


class TestRelativeError:
    def test_flows_relative_to_total(self):
        assert relative_error(_vec(1.0), _vec(2.0)) == pytest.approx(0.5)

    def test_temperature_relative_to_itself(self):
        assert relative_error(_vec(1.0, T=300.0), _vec(1.0, T=330.0)) == pytest.approx(30.0 / 330.0)

    def test_zero_flows(self):
        assert relative_error(_vec(0.0), _vec(0.0)) == 0.0


class TestDirectSubstitution:
    def test_first_step_is_direct_substitution(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings())
        step = acc.step({"t": _vec(0.0)}, {"t": _vec(1.0)})
        assert not step.converged
        assert step.next_guess["t"][2] == pytest.approx(1.0)
        assert acc.mode == AcceleratorMode.ACCELERATING

    def test_direct_method_never_accelerates(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(method="direct"))
        acc.step({"t": _vec(0.0)}, {"t": _vec(1.0)})
        step = acc.step({"t": _vec(1.0)}, {"t": _vec(1.5)})
        assert step.next_guess["t"][2] == pytest.approx(1.5)
        assert acc.mode == AcceleratorMode.INITIALIZING

    def test_guess_floored(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings())
        step = acc.step({"t": _vec(1.0)}, {"t": _vec(-0.5, T=0.2)})
        assert step.next_guess["t"][2] == 0.0
        assert step.next_guess["t"][0] == pytest.approx(1.0)


class TestConvergence:
    def test_requires_consecutive_iterations_below_tolerance(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(tolerance=1e-8))
        first = acc.step({"t": _vec(2.0)}, {"t": _vec(2.0)})
        assert not first.converged
        second = acc.step({"t": _vec(2.0)}, {"t": _vec(2.0)})
        assert second.converged
        assert acc.mode == AcceleratorMode.CONVERGED

    def test_counter_resets_above_tolerance(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(tolerance=1e-8))
        acc.step({"t": _vec(2.0)}, {"t": _vec(2.0)})
        acc.step({"t": _vec(2.0)}, {"t": _vec(3.0)})
        assert not acc.step({"t": _vec(2.0)}, {"t": _vec(2.0)}).converged

    def test_all_tears_judged_together(self):
        acc = ConvergenceAccelerator(["a", "b"], SolverSettings(tolerance=1e-8))
        for _ in range(3):
            step = acc.step({"a": _vec(2.0), "b": _vec(1.0)}, {"a": _vec(2.0), "b": _vec(1.5)})
            assert not step.converged
        assert step.tear_residuals["a"] == 0.0
        assert step.residual == pytest.approx(step.tear_residuals["b"])

    def test_best_iterate_tracked(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings())
        acc.step({"t": _vec(0.0)}, {"t": _vec(1.0)})
        acc.step({"t": _vec(1.0)}, {"t": _vec(1.1)})
        acc.step({"t": _vec(1.0)}, {"t": _vec(5.0)})
        assert acc.best_residual == pytest.approx(0.1 / 1.1)
        assert acc.best_iterate["t"][2] == pytest.approx(1.1)
        assert acc.full_trace()["__norm__"] == acc.residuals


class TestWegstein:
    def test_exact_on_linear_map(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(tolerance=1e-10))
        steps = _iterate(acc, 0.0, _linear_map, 10)
        assert steps[1].next_guess["t"][2] == pytest.approx(2.0)
        assert steps[-1].converged
        assert len(steps) == 4

    def test_faster_than_direct_substitution(self):
        wegstein = _iterate(ConvergenceAccelerator(["t"], SolverSettings(tolerance=1e-6)), 0.0, _linear_map, 100)
        direct = _iterate(
            ConvergenceAccelerator(["t"], SolverSettings(tolerance=1e-6, method="direct")), 0.0, _linear_map, 100
        )
        assert wegstein[-1].converged and direct[-1].converged
        assert len(wegstein) < len(direct)

    def test_q_outside_band_falls_back(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings())
        acc.step({"t": _vec(0.0)}, {"t": _vec(1.0)})
        # slope 0.9 gives q = -9, below the default lower bound of -5
        step = acc.step({"t": _vec(1.0)}, {"t": _vec(1.9)})
        assert step.next_guess["t"][2] == pytest.approx(1.9)

    def test_wider_band_accepts_q(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(wegstein_q_min=-10.0))
        acc.step({"t": _vec(0.0)}, {"t": _vec(1.0)})
        step = acc.step({"t": _vec(1.0)}, {"t": _vec(1.9)})
        assert step.next_guess["t"][2] == pytest.approx(-9.0 * 1.0 + 10.0 * 1.9)

    def test_stall_switches_to_broyden(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(stall_iterations=3))
        for _ in range(4):
            acc.step({"t": _vec(1.0)}, {"t": _vec(2.0)})
        assert acc.mode == AcceleratorMode.BROYDEN


class TestBroyden:
    def test_exact_on_linear_map(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(method="broyden", tolerance=1e-10))
        assert acc.mode == AcceleratorMode.BROYDEN
        steps = _iterate(acc, 0.0, _linear_map, 10)
        assert steps[1].next_guess["t"][2] == pytest.approx(2.0)
        assert steps[-1].converged


class TestDivergence:
    def test_raises_after_window_of_growth(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(method="direct", divergence_window=3))
        with pytest.raises(Diverged) as info:
            for d in (0.1, 0.2, 0.4, 0.8, 1.6):
                acc.step({"t": _vec(10.0)}, {"t": _vec(10.0 + d)})
        err = info.value
        assert err.iteration == 4
        assert err.best_residual == pytest.approx(0.1 / 10.1)
        assert len(err.trace["t"]) == 4
        assert acc.mode == AcceleratorMode.DIVERGED

    def test_non_growing_residual_does_not_diverge(self):
        acc = ConvergenceAccelerator(["t"], SolverSettings(method="direct", divergence_window=2))
        for _ in range(5):
            acc.step({"t": _vec(1.0)}, {"t": _vec(2.0)})
