"""Tests for neuralDE.solver: solve dispatch, output times and sensitivity routing."""

import math

import pytest
import torch

from neuralDE import (
    ConvergenceError,
    DAEProblem,
    DDEProblem,
    InterpolatingAdjoint,
    ODEProblem,
    ReverseDiffVJP,
    SDEProblem,
    SolverConfig,
    TrackerAdjoint,
    solve,
)
from neuralDE.sensitivity import compiles
from neuralDE.solver import save_times


class TestSaveTimes:
    def test_default_is_endpoints(self):
        ts, drop = save_times((0.0, 2.0), None, torch.float64, torch.device("cpu"))
        assert ts.tolist() == [0.0, 2.0]
        assert not drop

    def test_spacing_includes_endpoints(self):
        ts, drop = save_times((0.0, 1.0), 0.25, torch.float64, torch.device("cpu"))
        assert torch.allclose(ts, torch.tensor([0.0, 0.25, 0.5, 0.75, 1.0]))
        assert not drop

    def test_spacing_appends_final_time(self):
        ts, _ = save_times((0.0, 1.0), 0.3, torch.float64, torch.device("cpu"))
        assert ts.numel() == 5
        assert float(ts[-1]) == 1.0

    def test_explicit_times_prepend_start(self):
        ts, drop = save_times((0.0, 1.0), [0.5, 1.0], torch.float64, torch.device("cpu"))
        assert ts.tolist() == [0.0, 0.5, 1.0]
        assert drop

    @pytest.mark.parametrize("saveat", [[0.5, 0.2], [0.0, 2.0], -0.1, []])
    def test_invalid_times(self, saveat):
        with pytest.raises(ValueError):
            save_times((0.0, 1.0), saveat, torch.float64, torch.device("cpu"))


class TestCompiles:
    def test_only_compiling_adjoint(self):
        assert compiles(InterpolatingAdjoint(autojacvec=ReverseDiffVJP(compile=True)))
        assert not compiles(InterpolatingAdjoint(autojacvec=ReverseDiffVJP()))
        assert not compiles(InterpolatingAdjoint())
        assert not compiles(TrackerAdjoint())
        assert not compiles(None)


class TestSolverConfig:
    def test_positional_output_times(self):
        config = SolverConfig.from_kwargs(([0.0, 1.0],), {})
        assert config.saveat == [0.0, 1.0]

    def test_output_times_given_twice(self):
        with pytest.raises(TypeError):
            SolverConfig.from_kwargs(([0.0, 1.0],), {"saveat": 0.1})

    def test_too_many_positional(self):
        with pytest.raises(TypeError):
            SolverConfig.from_kwargs((0.1, 0.2), {})

    def test_unknown_keyword(self):
        with pytest.raises(TypeError, match="reltol"):
            SolverConfig.from_kwargs((), {"reltol": 1e-3})

    def test_trajectories_positive(self):
        with pytest.raises(ValueError):
            SolverConfig.from_kwargs((), {"trajectories": 0})


class TestSolveODE:
    def test_exponential_decay(self, decay):
        prob = ODEProblem(decay, torch.tensor([1.0, 2.0]), (0.0, 1.0), torch.tensor([0.5]))
        sol = solve(prob, "dopri5", saveat=0.5, rtol=1e-9, atol=1e-11)
        expected = torch.tensor([1.0, 2.0]) * math.exp(-0.5)
        assert sol.u.shape == (3, 2)
        assert torch.allclose(sol.u[-1], expected, atol=1e-8)
        assert sol.alg == "dopri5"
        assert sol.stats["nfe"] > 0

    def test_overrides_u0_and_p(self, decay):
        prob = ODEProblem(decay, torch.tensor([1.0]), (0.0, 1.0), torch.tensor([0.5]))
        sol = solve(prob, None, torch.tensor([3.0]), torch.tensor([1.0]), rtol=1e-9, atol=1e-11)
        assert torch.allclose(sol.u[-1], torch.tensor([3.0 * math.exp(-1.0)]), atol=1e-8)
        assert sol.alg == "dopri5"

    def test_fixed_step_with_positional_times(self, decay):
        prob = ODEProblem(decay, torch.tensor([1.0]), (0.0, 1.0), torch.tensor([1.0]))
        sol = solve(prob, "rk4", None, None, [0.5, 1.0], dt=0.01)
        assert sol.t.tolist() == [0.5, 1.0]
        assert len(sol) == 2
        assert torch.allclose(sol[1], torch.tensor([math.exp(-1.0)]), atol=1e-8)

    def test_identity_mass_matrix(self, decay):
        prob = ODEProblem(decay, torch.tensor([1.0, 1.0]), (0.0, 1.0), torch.tensor([1.0]), mass_matrix=torch.eye(2))
        sol = solve(prob, rtol=1e-9, atol=1e-11)
        assert torch.allclose(sol.u[-1], torch.full((2,), math.exp(-1.0)), atol=1e-8)

    def test_singular_mass_matrix_keeps_constraint(self):
        def f(u, p, t):
            return torch.stack([-p[0] * u[..., 0], u[..., 0] - u[..., 1]], -1)

        M = torch.tensor([[1.0, 0.0], [0.0, 0.0]])
        prob = ODEProblem(f, torch.tensor([1.0, 1.0]), (0.0, 1.0), torch.tensor([2.0]), mass_matrix=M)
        sol = solve(prob, saveat=0.25, rtol=1e-9, atol=1e-11)
        assert torch.allclose(sol.u[:, 0], sol.u[:, 1], atol=1e-7)
        assert torch.allclose(sol.u[-1, 0], torch.tensor(math.exp(-2.0)), atol=1e-7)

    def test_adjoint_gradient_matches_tape(self, decay):
        p = torch.tensor([0.7], requires_grad=True)
        prob = ODEProblem(decay, torch.tensor([1.0]), (0.0, 1.0), p)

        solve(prob, rtol=1e-10, atol=1e-12, sensealg=InterpolatingAdjoint()).u[-1].sum().backward()
        g_adjoint = p.grad.clone()
        p.grad = None
        solve(prob, rtol=1e-10, atol=1e-12).u[-1].sum().backward()

        # d/dp exp(-p) = -exp(-p)
        assert torch.allclose(g_adjoint, torch.tensor([-math.exp(-0.7)]), atol=1e-6)
        assert torch.allclose(g_adjoint, p.grad, atol=1e-6)

    def test_unknown_problem_type(self):
        with pytest.raises(TypeError):
            solve(object())


class TestSolveSDE:
    def test_rejects_adjoint(self):
        prob = SDEProblem(lambda u, p, t: u, lambda u, p, t: u, torch.ones(2), (0.0, 1.0))
        with pytest.raises(ValueError):
            solve(prob, sensealg=InterpolatingAdjoint())

    def test_zero_noise_is_deterministic(self, decay):
        prob = SDEProblem(
            decay, lambda u, p, t: torch.zeros_like(u), torch.ones(2), (0.0, 1.0), torch.tensor([1.0])
        )
        sol = solve(prob, "euler", dt=1e-3, saveat=0.5, sensealg=TrackerAdjoint())
        assert sol.u.shape == (3, 2)
        assert torch.allclose(sol.u[-1], torch.full((2,), math.exp(-1.0)), atol=1e-3)

    def test_trajectories_and_seed(self):
        prob = SDEProblem(
            lambda u, p, t: -u, lambda u, p, t: 0.5 * torch.ones_like(u), torch.ones(2), (0.0, 1.0)
        )
        first = solve(prob, "euler", dt=0.01, trajectories=5, seed=3)
        second = solve(prob, "euler", dt=0.01, trajectories=5, seed=3)
        assert first.u.shape == (2, 5, 2)
        assert torch.equal(first.u, second.u)
        assert not torch.allclose(first.u[-1, 0], first.u[-1, 1])


class TestSolveDDE:
    @staticmethod
    def _problem():
        # u'(t) = -u(t - 1), u = 1 for t <= 0
        def f(u, h, p, t):
            return -h(p, t - 1.0)

        return DDEProblem(f, torch.tensor([1.0]), lambda p, t: torch.tensor([1.0]), (0.0, 2.0), constant_lags=[1.0])

    def test_method_of_steps(self):
        sol = solve(self._problem(), dt=0.1, saveat=[1.0, 2.0])
        # u = 1 - t on [0, 1], u = t^2/2 - 2t + 3/2 on [1, 2]
        assert torch.allclose(sol.u[:, 0], torch.tensor([0.0, -0.5]), atol=1e-6)
        assert sol.alg == "rk4"
        assert sol.stats["nfe"] == 20 * 4

    def test_dt_larger_than_lag(self):
        with pytest.raises(ValueError, match="smallest lag"):
            solve(self._problem(), dt=1.5)

    def test_uneven_dt_warns(self):
        with pytest.warns(UserWarning):
            solve(self._problem(), dt=0.3)

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            solve(self._problem(), "dopri5", dt=0.1)

    def test_rejects_adjoint(self):
        with pytest.raises(ValueError):
            solve(self._problem(), sensealg=InterpolatingAdjoint())


class TestSolveDAE:
    def test_index_one_system(self):
        # u0' = -u0, 0 = u1 - u0
        def residual(du, u, p, t):
            return torch.stack([-u[..., 0] - du[..., 0], u[..., 1] - u[..., 0]], -1)

        prob = DAEProblem(
            residual, None, torch.tensor([1.0, 1.0]), (0.0, 1.0), differential_vars=[True, False]
        )
        sol = solve(prob, rtol=1e-9, atol=1e-11, sensealg=TrackerAdjoint())
        assert torch.allclose(sol.u[-1], torch.full((2,), math.exp(-1.0)), atol=1e-7)

    def test_newton_failure(self):
        # Newton contracts du by 2/3 per iteration on a triple root
        def residual(du, u, p, t):
            return du**3

        prob = DAEProblem(residual, torch.ones(1), torch.ones(1), (0.0, 1.0))
        with pytest.raises(ConvergenceError):
            solve(prob, newton_maxiters=5)
