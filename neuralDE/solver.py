import logging
import math
import warnings
import torch
import torchsde
from dataclasses import dataclass, field
from torchdiffeq import odeint, odeint_adjoint
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from .odefunc import (
    History,
    MassMatrixVectorField,
    ODEVectorField,
    ResidualVectorField,
    SDEVectorField,
    linear_interpolate,
)
from .problem import DAEProblem, DDEProblem, ODEProblem, SDEProblem
from .sensitivity import TrackerAdjoint, describe, is_adjoint
from .utils import _as_tensor

logger = logging.getLogger(__name__)

Problem = Union[ODEProblem, SDEProblem, DDEProblem, DAEProblem]


@dataclass
class DESolution:
    r"""
    Trajectory returned by `solve`.

    Attributes:
        t: Sample times `[T]`.
        u: States at the sample times, `[T, *state_shape]`; SDE ensembles are
           `[T, trajectories, *state_shape]`.
        alg: Name of the integrator that produced the trajectory.
        sensealg: Differentiation strategy used for the solve.
        stats: Solver statistics (`nfe`: right-hand-side evaluations).
    """

    t: torch.Tensor
    u: torch.Tensor
    alg: str
    sensealg: Any = None
    stats: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return self.u.shape[0]

    def __getitem__(self, idx):
        return self.u[idx]


@dataclass
class SolverConfig:
    r"""
    Keyword configuration of a single `solve` call.

    Attributes:
        saveat: Output times. `None` saves `[t0, t1]`; a number is a spacing
                (endpoints included); a sequence lists the times explicitly.
        rtol: Relative tolerance, forwarded only when set.
        atol: Absolute tolerance, forwarded only when set.
        dt: Step size. Fixed-grid ODE methods receive it as `step_size`; SDE and
            DDE integrators use it directly.
        options: Solver options forwarded unmodified.
        adaptive: Adaptive stepping for SDE solves.
        trajectories: Number of independent SDE sample paths.
        seed: Entropy of the Brownian motion of an SDE solve.
        bm: A `torchsde` Brownian motion object, overrides `seed`.
        stabilization: Constraint relaxation rate of mass-matrix and DAE solves.
        newton_maxiters: Newton iterations per evaluation of a DAE right-hand side.
        newton_tol: Relative Newton step tolerance of DAE solves.
    """

    saveat: Any = None
    rtol: Optional[float] = None
    atol: Optional[float] = None
    dt: Optional[float] = None
    options: Optional[Dict[str, Any]] = None
    adaptive: bool = False
    trajectories: Optional[int] = None
    seed: Optional[int] = None
    bm: Any = None
    stabilization: float = 1.0
    newton_maxiters: int = 10
    newton_tol: float = 1e-10

    @classmethod
    def from_kwargs(
        cls, args: Sequence[Any], kwargs: Dict[str, Any]
    ) -> "SolverConfig":
        r"""
        Builds a configuration from the positional and keyword arguments of `solve`.

        Args:
            args: Extra positional arguments; at most one, the output times.
            kwargs: Keyword configuration.

        Returns:
            A `SolverConfig`.

        Raises:
            TypeError: On unknown keywords, on more than one extra positional
                       argument, or when the output times are given twice.
        """
        if len(args) > 1:
            raise TypeError(
                f"solve takes at most one extra positional argument (the output "
                f"times), got {len(args)}"
            )
        kwargs = dict(kwargs)
        if args:
            if kwargs.get("saveat") is not None:
                raise TypeError("output times given both positionally and as saveat")
            kwargs["saveat"] = args[0]
        unknown = set(kwargs) - set(cls.__dataclass_fields__)
        if unknown:
            raise TypeError(f"unexpected solver keyword(s): {sorted(unknown)}")
        config = cls(**kwargs)
        if config.trajectories is not None and config.trajectories < 1:
            raise ValueError(f"trajectories must be >= 1, got {config.trajectories}")
        return config


def save_times(
    tspan: Tuple[float, float],
    saveat: Any,
    dtype: torch.dtype,
    device: torch.device,
) -> Tuple[torch.Tensor, bool]:
    """
    Resolves `saveat` into the time grid handed to an integrator.

    Integrators need the grid to start at `t0`. When the requested times do not,
    `t0` is prepended and the returned flag says the first sample must be dropped.

    Returns:
        `(ts, drop_first)`.

    Raises:
        ValueError: If a spacing is not positive, or requested times are not
                    increasing or fall outside `tspan`.
    """
    t0, t1 = tspan
    if saveat is None:
        return torch.tensor([t0, t1], dtype=dtype, device=device), False

    saveat = _as_tensor(saveat, dtype=dtype, device=device)
    if saveat.dim() == 0:
        step = float(saveat)
        if step <= 0:
            raise ValueError(f"saveat spacing must be positive, got {step}")
        n = int(math.floor((t1 - t0) / step + 1e-9))
        times = [t0 + k * step for k in range(n + 1)]
        if t1 - times[-1] > 1e-9 * max(1.0, abs(t1)):
            times.append(t1)
        return torch.tensor(times, dtype=dtype, device=device), False

    ts = saveat.flatten()
    if ts.numel() == 0:
        raise ValueError("saveat must not be empty")
    if ts.numel() > 1 and not bool((ts[1:] > ts[:-1]).all()):
        raise ValueError("saveat times must be strictly increasing")
    if float(ts[0]) < t0 or float(ts[-1]) > t1:
        raise ValueError(f"saveat times must lie within tspan {tspan}")
    if float(ts[0]) > t0:
        t_start = torch.tensor([t0], dtype=dtype, device=device)
        return torch.cat([t_start, ts]), True
    return ts, False


def _check_tape_only(prob: Problem, sensealg: Any) -> None:
    if sensealg is not None and not isinstance(sensealg, TrackerAdjoint):
        raise ValueError(
            f"{type(prob).__name__} supports only reverse-mode tape "
            f"differentiation (TrackerAdjoint) or the default, got {sensealg!r}"
        )


def _is_identity(M: torch.Tensor) -> bool:
    return torch.equal(M, torch.eye(M.shape[0], dtype=M.dtype, device=M.device))


def _odeint(
    func: ODEVectorField,
    u0: torch.Tensor,
    ts: torch.Tensor,
    alg: Optional[str],
    p: Optional[torch.Tensor],
    config: SolverConfig,
    sensealg: Any,
) -> torch.Tensor:
    kwargs: Dict[str, Any] = {"method": alg, "options": config.options}
    if config.rtol is not None:
        kwargs["rtol"] = config.rtol
    if config.atol is not None:
        kwargs["atol"] = config.atol
    if config.dt is not None:
        kwargs["options"] = {**(config.options or {}), "step_size": config.dt}

    if not is_adjoint(sensealg):
        return odeint(func, u0, ts, **kwargs)

    adjoint_params = (p,) if p is not None else ()
    return odeint_adjoint(
        func,
        u0,
        ts,
        adjoint_params=adjoint_params,
        **kwargs,
        **sensealg.adjoint_kwargs(),
    )


def _finish(
    ts: torch.Tensor,
    us: torch.Tensor,
    drop_first: bool,
    alg: str,
    sensealg: Any,
    nfe: int,
) -> DESolution:
    if drop_first:
        ts, us = ts[1:], us[1:]
    return DESolution(t=ts, u=us, alg=alg, sensealg=sensealg, stats={"nfe": nfe})


def _solve_ode(
    prob: ODEProblem, alg: Optional[str], config: SolverConfig, sensealg: Any
) -> DESolution:
    u0, p = prob.u0, prob.p
    ts, drop_first = save_times(prob.tspan, config.saveat, u0.dtype, u0.device)
    M = prob.mass_matrix
    if M is None or _is_identity(M):
        func = ODEVectorField(prob.f, p)
    else:
        func = MassMatrixVectorField(
            prob.f, p, M, config.stabilization, jac_f=prob.jac_f
        )
    us = _odeint(func, u0, ts, alg, p, config, sensealg)
    return _finish(ts, us, drop_first, alg or "dopri5", sensealg, func.nfe)


def _solve_dae(
    prob: DAEProblem, alg: Optional[str], config: SolverConfig, sensealg: Any
) -> DESolution:
    u0, p = prob.u0, prob.p
    ts, drop_first = save_times(prob.tspan, config.saveat, u0.dtype, u0.device)
    func = ResidualVectorField(
        prob.f,
        p,
        prob.differential_vars,
        prob.du0,
        stabilization=config.stabilization,
        maxiters=config.newton_maxiters,
        tol=config.newton_tol,
    )
    us = _odeint(func, u0, ts, alg, p, config, sensealg)
    return _finish(ts, us, drop_first, alg or "dopri5", sensealg, func.nfe)


def _solve_sde(
    prob: SDEProblem, alg: Optional[str], config: SolverConfig, sensealg: Any
) -> DESolution:
    _check_tape_only(prob, sensealg)
    u0, p = prob.u0, prob.p
    ts, drop_first = save_times(prob.tspan, config.saveat, u0.dtype, u0.device)

    proto = prob.noise_rate_prototype
    noise_shape = None if proto is None else tuple(proto.shape)
    sde = SDEVectorField(prob.f, prob.g, p, noise_shape)

    n = u0.shape[-1]
    out_shape = tuple(u0.shape)
    if config.trajectories is not None:
        u0 = u0.expand(config.trajectories, *u0.shape)
        out_shape = tuple(u0.shape)
    # torchsde integrates (batch, state) tensors
    y0 = u0.reshape(-1, n)

    method = alg or ("srk" if noise_shape is None else "euler")
    bm = config.bm
    if bm is None and config.seed is not None:
        m = n if noise_shape is None else noise_shape[1]
        bm = torchsde.BrownianInterval(
            t0=float(ts[0]),
            t1=float(ts[-1]),
            size=(y0.shape[0], m),
            dtype=y0.dtype,
            device=y0.device,
            entropy=config.seed,
            levy_area_approximation="space-time" if method == "srk" else "none",
        )

    kwargs: Dict[str, Any] = {"adaptive": config.adaptive, "options": config.options}
    if config.dt is not None:
        kwargs["dt"] = config.dt
    if config.rtol is not None:
        kwargs["rtol"] = config.rtol
    if config.atol is not None:
        kwargs["atol"] = config.atol

    ys = torchsde.sdeint(sde, y0, ts, bm=bm, method=method, **kwargs)
    ys = ys.reshape(ts.shape[0], *out_shape)
    return _finish(ts, ys, drop_first, method, sensealg, sde.nfe)


def _euler_step(f, u, hist, p, t, h):
    return u + h * f(u, hist, p, t)


def _rk4_step(f, u, hist, p, t, h):
    k1 = f(u, hist, p, t)
    k2 = f(u + 0.5 * h * k1, hist, p, t + 0.5 * h)
    k3 = f(u + 0.5 * h * k2, hist, p, t + 0.5 * h)
    k4 = f(u + h * k3, hist, p, t + h)
    return u + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)


DDE_STEPS: Dict[str, Tuple[Callable, int]] = {
    "euler": (_euler_step, 1),
    "rk4": (_rk4_step, 4),
}


def _solve_dde(
    prob: DDEProblem, alg: Optional[str], config: SolverConfig, sensealg: Any
) -> DESolution:
    r"""
    Method of steps on a uniform grid.

    With every lag at least one step long, each stage of a step only queries
    the history at times already computed, so an explicit one-step method can
    be applied directly; off-grid history values are linearly interpolated.
    Differentiation is by the recorded autograd tape.
    """
    _check_tape_only(prob, sensealg)
    method = alg or "rk4"
    if method not in DDE_STEPS:
        raise ValueError(
            f"Unknown DDE method: {method}. Choose from {list(DDE_STEPS.keys())}"
        )
    step, stages = DDE_STEPS[method]

    u0, p = prob.u0, prob.p
    t0, t1 = prob.tspan
    lags = prob.constant_lags
    dt = config.dt
    if dt is None:
        dt = min(lags) if lags else (t1 - t0) / 100
    if lags and dt > min(lags) * (1 + 1e-12):
        raise ValueError(
            f"dt={dt} exceeds the smallest lag {min(lags)}; the method of steps "
            f"needs dt <= min(lags)"
        )

    n_steps = max(1, int(math.ceil((t1 - t0) / dt - 1e-9)))
    h = (t1 - t0) / n_steps
    if config.dt is not None and abs(h - dt) > 1e-9 * dt:
        warnings.warn(
            f"dt={dt} does not divide tspan {prob.tspan}; using {n_steps} steps of {h}",
            UserWarning,
        )

    history = History(prob.h, t0, h)
    history.states.append(u0)
    u = u0
    for k in range(n_steps):
        u = step(prob.f, u, history, p, t0 + k * h, h)
        history.states.append(u)

    grid = torch.linspace(t0, t1, n_steps + 1, dtype=u0.dtype, device=u0.device)
    ts, drop_first = save_times(prob.tspan, config.saveat, u0.dtype, u0.device)
    us = linear_interpolate(grid, torch.stack(history.states), ts)
    return _finish(ts, us, drop_first, method, sensealg, n_steps * stages)


SOLVERS: Dict[type, Callable[..., DESolution]] = {
    ODEProblem: _solve_ode,
    SDEProblem: _solve_sde,
    DDEProblem: _solve_dde,
    DAEProblem: _solve_dae,
}


def solve(
    prob: Problem,
    alg: Optional[str] = None,
    u0: Optional[torch.Tensor] = None,
    p: Optional[torch.Tensor] = None,
    *args: Any,
    sensealg: Any = None,
    **kwargs: Any,
) -> DESolution:
    r"""
    Solves a differential-equation problem and returns its trajectory.

    The integrator is chosen by problem type: `torchdiffeq` for ODE and
    (reduced) DAE problems, `torchsde` for SDE problems, a method-of-steps
    driver for DDE problems. Failures of the integrators propagate unchanged.

    Args:
        prob: An `ODEProblem`, `SDEProblem`, `DDEProblem` or `DAEProblem`.
        alg: Integrator name (e.g. `'dopri5'`, `'rk4'`, `'srk'`), or `None` for
             the integrator's default.
        u0: Initial state overriding `prob.u0`.
        p: Parameter vector overriding `prob.p`.
        *args: Optionally the output times (same meaning as `saveat`).
        sensealg: Differentiation strategy (`InterpolatingAdjoint`,
                  `TrackerAdjoint` or `None`).
        **kwargs: Solver keywords, see `SolverConfig`.

    Returns:
        A `DESolution`.

    Raises:
        TypeError: For an unknown problem type or unknown keywords.
        ValueError: For a differentiation strategy the problem type cannot use.
    """
    config = SolverConfig.from_kwargs(args, kwargs)
    changes = {}
    if u0 is not None:
        changes["u0"] = u0
    if p is not None:
        changes["p"] = p
    if changes:
        prob = prob.remake(**changes)

    handler = SOLVERS.get(type(prob))
    if handler is None:
        raise TypeError(f"cannot solve a {type(prob).__name__}")
    logger.debug(
        "solving %s on %s with alg=%s, sensealg=%s",
        type(prob).__name__,
        prob.tspan,
        alg,
        describe(sensealg),
    )
    return handler(prob, alg, config, sensealg)
