import logging
import torch
import torch.nn as nn
from typing import Any, Callable, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError, ShapeError
from .layer import FastLayer
from .params import as_learnable
from .problem import (
    DAEProblem,
    DDEProblem,
    ODEProblem,
    SDEProblem,
    check_lags,
    check_mass_matrix,
    check_tspan,
)
from .sensitivity import (
    InterpolatingAdjoint,
    ReverseDiffVJP,
    TrackerAdjoint,
    compiles,
    describe,
)
from .solver import DESolution, solve
from .utils import _as_tensor, _check_length

logger = logging.getLogger(__name__)

Learnable = Union[nn.Module, FastLayer]


def _fast_adjoint() -> InterpolatingAdjoint:
    return InterpolatingAdjoint(autojacvec=ReverseDiffVJP(compile=True))


def _compile_model(apply: Callable, fast: bool, sensealg: Any) -> Optional[Callable]:
    if not (fast and compiles(sensealg)):
        return None
    logger.debug("compiling %r for adjoint solves", apply)
    return torch.compile(apply.__call__)


class NeuralDELayer(nn.Module):
    r"""
    Base class of the neural differential-equation layers.

    A layer turns a learnable function into the right-hand side of a
    differential equation and solves it from a given initial state. All
    learnable state lives in one flat vector `p` (an `nn.Parameter`, so
    `layer.parameters()` can be handed to a torch optimizer). Calling the layer
    with an explicit vector, `layer(x, p)`, evaluates it at that vector without
    touching the stored one, which is how line-search and quasi-Newton
    optimizers try candidate parameters.

    The differentiation strategy is fixed per equation family and model
    representation at construction (`self.sensealg`). Keyword configuration is
    layered as `sensealg default <- construction kwargs <- call kwargs`, the later
    one winning, so either level may override the strategy.

    Attributes:
        p (nn.Parameter): Default flat parameter vector.
        tspan (Tuple[float, float]): Integration interval.
        solver (Optional[str]): Integrator name, `None` for the integrator default.
        args (Tuple): Extra positional arguments forwarded to `solve`.
        kwargs (Dict[str, Any]): Keyword configuration forwarded to `solve`.
        sensealg: Default differentiation strategy of this layer.
    """

    def __init__(
        self,
        p: torch.Tensor,
        tspan: Tuple[float, float],
        solver: Optional[str],
        args: Sequence[Any],
        kwargs: dict,
        sensealg: Any,
    ) -> None:
        super().__init__()
        self.p = nn.Parameter(p)
        self.tspan = check_tspan(tspan)
        self.solver = solver
        self.args = tuple(args)
        self.kwargs = dict(kwargs)
        self.sensealg = sensealg
        logger.debug(
            "built %s with %d parameters on %s (sensealg=%s)",
            type(self).__name__,
            self.p.numel(),
            self.tspan,
            describe(sensealg),
        )

    def _params(self, p: Optional[torch.Tensor]) -> torch.Tensor:
        p = self.p if p is None else p
        _check_length(p, self.p.numel(), type(self).__name__)
        return p

    def _solve_kwargs(self, kwargs: dict) -> dict:
        return {"sensealg": self.sensealg, **self.kwargs, **kwargs}

    _compiled_fn: Optional[Callable] = None

    def _use_compiled(self, sensealg: Any) -> bool:
        return self._compiled_fn is not None and compiles(sensealg)

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any):
        raise NotImplementedError

    def forward(
        self, x: torch.Tensor, p: Optional[torch.Tensor] = None, **kwargs: Any
    ) -> DESolution:
        """
        Solves the layer's equation from initial state `x`.

        Args:
            x: Initial state `[..., n]`.
            p: Flat parameter vector; defaults to `self.p`.
            **kwargs: Call-time solver keywords, layered over the layer's own.

        Returns:
            The `DESolution` produced by `solve`.

        Raises:
            ShapeError: If `p` does not have the length of `self.p`.
        """
        p = self._params(p)
        kwargs = self._solve_kwargs(kwargs)
        prob = self._problem(x, p, kwargs["sensealg"])
        return solve(prob, self.solver, x, p, *self.args, **kwargs)

    def extra_repr(self) -> str:
        return (
            f"tspan={self.tspan}, solver={self.solver!r}, "
            f"n_params={self.p.numel()}, sensealg={describe(self.sensealg)}"
        )

    def print_layer_info(self):
        """Print the layer configuration to stdout."""
        print(f"\n[{type(self).__name__}]")
        print(f"  tspan: {self.tspan}")
        print(f"  solver: {self.solver if self.solver is not None else 'default'}")
        print(f"  parameters: {self.p.numel()}")
        print(f"  sensealg: {describe(self.sensealg)}")
        if self.kwargs:
            print(f"  kwargs: {self.kwargs}")


class NeuralODE(NeuralDELayer):
    r"""
    Neural ODE $\dot u = \text{model}(u; p)$.

    With a pre-flattened model the gradients are computed by the continuous
    adjoint method: the forward equation is solved, then a second equation
    propagates the derivatives of the loss backwards in time. The model
    function of that default strategy is compiled with `torch.compile` once, at
    construction, and reused by every adjoint solve. With a structured
    model the solver's default applies: the solution is discretised first and
    the discretisation is differentiated by autograd.

    Example:
        >>> node = NeuralODE(nn.Sequential(nn.Linear(2, 16), nn.Tanh(), nn.Linear(16, 2)),
        ...                  (0.0, 1.0), "dopri5", rtol=1e-4, saveat=0.1)
        >>> sol = node(torch.tensor([2.0, 0.0]))
        >>> sol.u.shape
        torch.Size([11, 2])
    """

    def __init__(
        self,
        model: Learnable,
        tspan: Tuple[float, float],
        solver: Optional[str] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model: Learnable function `u -> du/dt`, structured (`nn.Module`) or
                   pre-flattened (`FastLayer`).
            tspan: Integration interval `(t0, t1)`.
            solver: `torchdiffeq` method name, `None` for its default.
            *args: Extra positional arguments of `solve`.
            **kwargs: Solver keywords (`saveat`, `rtol`, `atol`, `sensealg`, ...).
        """
        p, apply, fast = as_learnable(model)
        super().__init__(
            p, tspan, solver, args, kwargs, _fast_adjoint() if fast else None
        )
        self.fast = fast
        self._model_fn = apply
        self._compiled_fn = _compile_model(
            apply, fast, self.kwargs.get("sensealg", self.sensealg)
        )

    @property
    def model(self) -> Learnable:
        return self._model_fn if self.fast else self._model_fn.re.model

    def _dudt(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        return self._model_fn(u, p)

    def _dudt_compiled(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        return self._compiled_fn(u, p)

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any) -> ODEProblem:
        f = self._dudt_compiled if self._use_compiled(sensealg) else self._dudt
        return ODEProblem(f, x, self.tspan, p)


class NeuralDSDE(NeuralDELayer):
    r"""
    Neural SDE with diagonal noise, $du = \text{drift}(u; p_1)\,dt + \text{diffusion}(u; p_2) \odot dW$.

    `p = cat(p1, p2)` and the split offset `len = len(p1)` is fixed at
    construction. Each state component is driven by its own Brownian motion.
    Gradients are always taken through the recorded solver operations.

    Extra solver keywords: `dt`, `trajectories` (number of sample paths solved
    as one batch), `seed` (reproducible Brownian motion), `bm`, `adaptive`.
    """

    def __init__(
        self,
        model1: Learnable,
        model2: Learnable,
        tspan: Tuple[float, float],
        solver: Optional[str] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model1: Drift network.
            model2: Diffusion network.
            tspan: Integration interval `(t0, t1)`.
            solver: `torchsde` method name, `None` for the default (`'srk'`).
            *args: Extra positional arguments of `solve`.
            **kwargs: Solver keywords.

        Raises:
            ConfigurationError: If either network is missing.
        """
        if model1 is None or model2 is None:
            raise ConfigurationError(
                f"{type(self).__name__} requires both a drift and a diffusion model"
            )
        p1, apply1, fast1 = as_learnable(model1)
        p2, apply2, fast2 = as_learnable(model2)
        super().__init__(
            torch.cat([p1, p2]), tspan, solver, args, kwargs, TrackerAdjoint()
        )
        self.len = p1.numel()
        self.fast = (fast1, fast2)
        self._apply1 = apply1
        self._apply2 = apply2

    def _drift(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        return self._apply1(u, p[: self.len])

    def _diffusion(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        return self._apply2(u, p[self.len :])

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any) -> SDEProblem:
        return SDEProblem(self._drift, self._diffusion, x, self.tspan, p)


class NeuralSDE(NeuralDSDE):
    r"""
    Neural SDE with general noise, $du = \text{drift}(u; p_1)\,dt + G(u; p_2)\,dW$.

    `G` is an `n_state x nbrown` matrix. The diffusion network may return it as
    a matrix or as a flat vector of `n_state * nbrown` entries (row-major); any
    other size raises `ShapeError` during the solve.
    """

    def __init__(
        self,
        model1: Learnable,
        model2: Learnable,
        tspan: Tuple[float, float],
        nbrown: int,
        solver: Optional[str] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model1: Drift network.
            model2: Diffusion network.
            tspan: Integration interval `(t0, t1)`.
            nbrown: Number of Brownian motions.
            solver: `torchsde` method name, `None` for the default (`'euler'`).
            *args: Extra positional arguments of `solve`.
            **kwargs: Solver keywords.

        Raises:
            ConfigurationError: If a network is missing or `nbrown < 1`.
        """
        if int(nbrown) < 1:
            raise ConfigurationError(f"nbrown must be a positive integer, got {nbrown}")
        super().__init__(model1, model2, tspan, solver, *args, **kwargs)
        self.nbrown = int(nbrown)

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any) -> SDEProblem:
        proto = torch.zeros(x.shape[-1], self.nbrown, dtype=x.dtype, device=x.device)
        return SDEProblem(
            self._drift, self._diffusion, x, self.tspan, p, noise_rate_prototype=proto
        )

    def extra_repr(self) -> str:
        return f"nbrown={self.nbrown}, " + super().extra_repr()


class NeuralCDDE(NeuralDELayer):
    r"""
    Neural delay equation with constant lags,
    $\dot u(t) = \text{model}([u(t), u(t - \tau_1), \dots, u(t - \tau_k)]; p)$.

    The network sees the current state concatenated with the delayed states
    along the last dimension, so its input size is `n * (1 + len(lags))`.
    Values before `t0` come from `hist(p, t)`. Gradients are always taken
    through the recorded solver operations.
    """

    def __init__(
        self,
        model: Learnable,
        tspan: Tuple[float, float],
        hist: Callable[[Optional[torch.Tensor], float], torch.Tensor],
        lags: Sequence[float],
        solver: Optional[str] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model: Learnable function of the augmented state.
            tspan: Integration interval `(t0, t1)`.
            hist: History function `hist(p, t)` returning the state for `t <= t0`.
            lags: Constant positive lags.
            solver: `'rk4'` (default) or `'euler'`.
            *args: Extra positional arguments of `solve`.
            **kwargs: Solver keywords (`dt` must not exceed the smallest lag).

        Raises:
            ConfigurationError: If `hist` is not callable or a lag is not positive.
        """
        if not callable(hist):
            raise ConfigurationError("NeuralCDDE requires a callable history function")
        p, apply, fast = as_learnable(model)
        super().__init__(p, tspan, solver, args, kwargs, TrackerAdjoint())
        self.hist = hist
        self.lags = check_lags(lags)
        self.fast = fast
        self._model_fn = apply

    def _dudt(self, u: torch.Tensor, h: Callable, p: torch.Tensor, t: float) -> torch.Tensor:
        _u = torch.cat([u, *(h(p, t - lag) for lag in self.lags)], dim=-1)
        return self._model_fn(_u, p)

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any) -> DDEProblem:
        return DDEProblem(self._dudt, x, self.hist, self.tspan, p, constant_lags=self.lags)

    def extra_repr(self) -> str:
        return f"lags={self.lags}, " + super().extra_repr()


class NeuralDAE(NeuralDELayer):
    r"""
    Neural DAE in residual form.

    Component `j` of the residual is taken from the network when
    `differential_vars[j]` is True, and from the constraint function otherwise:

    $$R_j(\dot u, u, p, t) = \begin{cases} \text{model}(u; p)_j - \dot u_j & \text{differential} \\
    \text{constraints}(u, p, t)_j & \text{algebraic} \end{cases}$$

    Both the network and the constraint function return one value per state
    component. Gradients are taken through the recorded solver operations.
    """

    def __init__(
        self,
        model: Learnable,
        constraints_model: Callable,
        tspan: Tuple[float, float],
        solver: Optional[str] = None,
        du0: Optional[torch.Tensor] = None,
        *args: Any,
        differential_vars: Any = None,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model: Learnable function giving the derivatives of the differential variables.
            constraints_model: `constraints(u, p, t)` giving the algebraic residuals.
            tspan: Integration interval `(t0, t1)`.
            solver: `torchdiffeq` method name, `None` for its default.
            du0: Initial guess for `du/dt`, zeros when omitted.
            *args: Extra positional arguments of `solve`.
            differential_vars: Boolean mask, True for differential components.
            **kwargs: Solver keywords (`newton_maxiters`, `newton_tol`, `stabilization`, ...).

        Raises:
            ConfigurationError: If the constraint function or the mask is missing
                                or the mask is not a boolean vector.
        """
        if not callable(constraints_model):
            raise ConfigurationError("NeuralDAE requires a callable constraints_model")
        if differential_vars is None:
            raise ConfigurationError("NeuralDAE requires differential_vars")
        mask = _as_tensor(differential_vars)
        if mask.dtype != torch.bool or mask.dim() != 1:
            raise ConfigurationError(
                f"differential_vars must be a 1-D boolean mask, got {mask.dtype} "
                f"tensor of shape {tuple(mask.shape)}"
            )
        p, apply, fast = as_learnable(model)
        super().__init__(p, tspan, solver, args, kwargs, TrackerAdjoint())
        self.constraints_model = constraints_model
        self.register_buffer("differential_vars", mask)
        self.du0 = du0
        self.fast = fast
        self._model_fn = apply

    def select(self, nn_out: torch.Tensor, alg_out: torch.Tensor) -> torch.Tensor:
        """Component `j` from `nn_out` where `differential_vars[j]`, else from `alg_out`."""
        n = self.differential_vars.numel()
        for name, out in (("model", nn_out), ("constraints_model", alg_out)):
            if out.shape[-1] != n:
                raise ShapeError(
                    f"{name} must return {n} components to match differential_vars, "
                    f"got shape {tuple(out.shape)}"
                )
        return torch.where(self.differential_vars, nn_out, alg_out)

    def residual(
        self, du: torch.Tensor, u: torch.Tensor, p: torch.Tensor, t: Any
    ) -> torch.Tensor:
        nn_out = self._model_fn(u, p)
        alg_out = self.constraints_model(u, p, t)
        return self.select(nn_out - du, alg_out)

    def _problem(
        self, x: torch.Tensor, p: torch.Tensor, sensealg: Any, du0=None
    ) -> DAEProblem:
        return DAEProblem(
            self.residual,
            du0,
            x,
            self.tspan,
            p,
            differential_vars=self.differential_vars,
        )

    def forward(
        self,
        x: torch.Tensor,
        p: Optional[torch.Tensor] = None,
        du0: Optional[torch.Tensor] = None,
        **kwargs: Any,
    ) -> DESolution:
        """
        Solves the DAE from initial state `x`.

        Args:
            x: Initial state `[..., n]`, ideally consistent with the constraints.
            p: Flat parameter vector; defaults to `self.p`.
            du0: Initial guess for `du/dt`; defaults to the one given at construction.
            **kwargs: Call-time solver keywords.

        Raises:
            ShapeError: If `p` has the wrong length or the mask does not match `x`.
        """
        p = self._params(p)
        kwargs = self._solve_kwargs(kwargs)
        prob = self._problem(x, p, kwargs["sensealg"], self.du0 if du0 is None else du0)
        return solve(prob, self.solver, x, p, *self.args, **kwargs)


class NeuralODEMM(NeuralDELayer):
    r"""
    Neural ODE with a (possibly singular) mass matrix,
    $M \dot u = [\text{model}(u; p), \text{constraints}(u, p, t)]$.

    The network output fills the first rows and the constraint output the
    remaining ones; rows of `M` that are entirely zero turn the corresponding
    equations into algebraic constraints. With a pre-flattened model the
    gradients are computed by the continuous adjoint method, otherwise by the
    solver's default.
    """

    def __init__(
        self,
        model: Learnable,
        constraints_model: Callable,
        tspan: Tuple[float, float],
        mass_matrix: Any,
        solver: Optional[str] = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model: Learnable function giving the differential rows.
            constraints_model: `constraints(u, p, t)` giving the algebraic rows.
            tspan: Integration interval `(t0, t1)`.
            mass_matrix: Square `n x n` matrix.
            solver: `torchdiffeq` method name, `None` for its default.
            *args: Extra positional arguments of `solve`.
            **kwargs: Solver keywords (`stabilization`, ...).

        Raises:
            ConfigurationError: If the constraint function is missing or the mass
                                matrix is not square.
        """
        if not callable(constraints_model):
            raise ConfigurationError("NeuralODEMM requires a callable constraints_model")
        M = check_mass_matrix(mass_matrix)
        p, apply, fast = as_learnable(model)
        super().__init__(
            p, tspan, solver, args, kwargs, _fast_adjoint() if fast else None
        )
        self.constraints_model = constraints_model
        self.register_buffer("mass_matrix", M.to(dtype=p.dtype))
        self.fast = fast
        self._model_fn = apply
        self._compiled_fn = _compile_model(
            apply, fast, self.kwargs.get("sensealg", self.sensealg)
        )

    def _dudt(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        nn_out = self._model_fn(u, p)
        alg_out = self.constraints_model(u, p, t)
        return torch.cat([nn_out, alg_out], dim=-1)

    def _dudt_compiled(self, u: torch.Tensor, p: torch.Tensor, t: Any) -> torch.Tensor:
        nn_out = self._compiled_fn(u, p)
        alg_out = self.constraints_model(u, p, t)
        return torch.cat([nn_out, alg_out], dim=-1)

    def _problem(self, x: torch.Tensor, p: torch.Tensor, sensealg: Any) -> ODEProblem:
        f = self._dudt_compiled if self._use_compiled(sensealg) else self._dudt
        # the algebraic-row Jacobian needs a double backward, which compiled graphs lack
        return ODEProblem(
            f, x, self.tspan, p, mass_matrix=self.mass_matrix, jac_f=self._dudt
        )
