import dataclasses
import math
import torch
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Tuple

from .errors import ConfigurationError, ShapeError
from .utils import _as_tensor

"""
Problem descriptors handed to `solve`.

Right-hand sides follow the `(u, p, t)` convention; delay equations receive a
history callable, `(u, h, p, t)`, and implicit equations a residual,
`(du, u, p, t)`. States are `[..., n]` tensors: a trailing state dimension with
optional leading batch dimensions.
"""


def check_tspan(tspan: Any) -> Tuple[float, float]:
    """
    Validates a time span.

    Args:
        tspan: A pair `(t0, t1)` of numbers or 0-dim tensors.

    Returns:
        The span as a tuple of Python floats.

    Raises:
        ConfigurationError: If the span is not two finite numbers with `t1 > t0`.
    """
    try:
        t0, t1 = (float(t) for t in tspan)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"tspan must be a pair (t0, t1) of numbers, got {tspan!r}"
        ) from e
    if not (math.isfinite(t0) and math.isfinite(t1)):
        raise ConfigurationError(f"tspan must be finite, got {(t0, t1)}")
    if t1 <= t0:
        raise ConfigurationError(f"tspan must satisfy t1 > t0, got {(t0, t1)}")
    return t0, t1


def check_mass_matrix(mass_matrix: Any, n_state: Optional[int] = None) -> torch.Tensor:
    """
    Validates a mass matrix and converts it to a tensor.

    Raises:
        ConfigurationError: If the matrix is not square, or does not match `n_state`.
    """
    M = _as_tensor(mass_matrix)
    if M.dim() != 2 or M.shape[0] != M.shape[1]:
        raise ConfigurationError(
            f"mass_matrix must be a square matrix, got shape {tuple(M.shape)}"
        )
    if n_state is not None and M.shape[0] != n_state:
        raise ConfigurationError(
            f"mass_matrix is {M.shape[0]}x{M.shape[1]} but the state has "
            f"{n_state} components"
        )
    return M


def _state_dim(u0: torch.Tensor) -> int:
    return u0.shape[-1] if u0.dim() > 0 else 1


@dataclass
class ODEProblem:
    r"""
    $M \dot u = f(u, p, t)$, $u(t_0) = u_0$.

    Attributes:
        f: Right-hand side `f(u, p, t)`.
        u0: Initial state.
        tspan: Integration interval `(t0, t1)`.
        p: Flat parameter vector passed to `f`.
        mass_matrix: Optional `n x n` mass matrix. Rows that are entirely zero
                     mark algebraic equations `0 = f_i(u, p, t)`.
        jac_f: Same function as `f`, evaluated eagerly. Used in place of `f`
               where the Jacobian of the algebraic rows is needed; defaults
               to `f`.
    """

    f: Callable
    u0: torch.Tensor
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    mass_matrix: Optional[Any] = None
    jac_f: Optional[Callable] = None

    def __post_init__(self):
        self.tspan = check_tspan(self.tspan)
        if self.mass_matrix is not None:
            self.mass_matrix = check_mass_matrix(
                self.mass_matrix, _state_dim(self.u0)
            ).to(dtype=self.u0.dtype, device=self.u0.device)

    def remake(self, **changes) -> "ODEProblem":
        return dataclasses.replace(self, **changes)


@dataclass
class SDEProblem:
    r"""
    $du = f(u, p, t)\,dt + g(u, p, t)\,dW_t$ in the Itô sense.

    Attributes:
        f: Drift `f(u, p, t)`.
        g: Diffusion `g(u, p, t)`. With no `noise_rate_prototype` the noise is
           diagonal and `g` returns one rate per state component; otherwise `g`
           returns an `n_state x n_brownian` matrix per state.
        u0: Initial state.
        tspan: Integration interval `(t0, t1)`.
        p: Flat parameter vector passed to `f` and `g`.
        noise_rate_prototype: Tensor of shape `(n_state, n_brownian)`.
    """

    f: Callable
    g: Callable
    u0: torch.Tensor
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    noise_rate_prototype: Optional[torch.Tensor] = None

    def __post_init__(self):
        self.tspan = check_tspan(self.tspan)
        if self.noise_rate_prototype is not None:
            proto = self.noise_rate_prototype
            if proto.dim() != 2 or proto.shape[0] != _state_dim(self.u0):
                raise ShapeError(
                    f"noise_rate_prototype must have shape (n_state, n_brownian) with "
                    f"n_state={_state_dim(self.u0)}, got {tuple(proto.shape)}"
                )

    @property
    def noise_type(self) -> str:
        return "diagonal" if self.noise_rate_prototype is None else "general"

    def remake(self, **changes) -> "SDEProblem":
        return dataclasses.replace(self, **changes)


@dataclass
class DDEProblem:
    r"""
    $\dot u = f(u, h, p, t)$ with constant lags; $h(p, s)$ gives $u(s)$ for $s \le t_0$.

    Inside `f`, `h(p, s)` returns the state at any past time `s`: the history
    function before `t0`, the computed solution after it.

    Attributes:
        f: Right-hand side `f(u, h, p, t)`.
        u0: Initial state.
        h: History function `h(p, t)` for `t <= t0`.
        tspan: Integration interval `(t0, t1)`.
        p: Flat parameter vector.
        constant_lags: Positive lags.
    """

    f: Callable
    u0: torch.Tensor
    h: Callable
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    constant_lags: Sequence[float] = field(default_factory=tuple)

    def __post_init__(self):
        self.tspan = check_tspan(self.tspan)
        self.constant_lags = check_lags(self.constant_lags)

    def remake(self, **changes) -> "DDEProblem":
        return dataclasses.replace(self, **changes)


def check_lags(lags: Sequence[Any]) -> Tuple[float, ...]:
    """Raises `ConfigurationError` unless every lag is a finite, positive number."""
    try:
        lags = tuple(float(lag) for lag in lags)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"lags must be numbers, got {lags!r}") from e
    if any(not math.isfinite(lag) or lag <= 0 for lag in lags):
        raise ConfigurationError(f"lags must be finite and positive, got {lags}")
    return lags


@dataclass
class DAEProblem:
    r"""
    Fully implicit $0 = F(\dot u, u, p, t)$.

    `differential_vars[j]` is True when component `j` is a differential variable
    (its residual involves $\dot u_j$) and False when its residual row is an
    algebraic constraint on `u`.

    Attributes:
        f: Residual `F(du, u, p, t)`.
        du0: Initial guess for $\dot u(t_0)$.
        u0: Initial state.
        tspan: Integration interval `(t0, t1)`.
        p: Flat parameter vector.
        differential_vars: Boolean mask of length `n_state`.
    """

    f: Callable
    du0: Optional[torch.Tensor]
    u0: torch.Tensor
    tspan: Tuple[float, float]
    p: Optional[torch.Tensor] = None
    differential_vars: Optional[Any] = None

    def __post_init__(self):
        self.tspan = check_tspan(self.tspan)
        n = _state_dim(self.u0)
        if self.differential_vars is None:
            self.differential_vars = torch.ones(n, dtype=torch.bool)
        mask = _as_tensor(self.differential_vars, device=self.u0.device)
        if mask.dtype != torch.bool or mask.dim() != 1 or mask.numel() != n:
            raise ShapeError(
                f"differential_vars must be a boolean mask of length {n}, "
                f"got {mask.dtype} tensor of shape {tuple(mask.shape)}"
            )
        self.differential_vars = mask
        if self.du0 is None:
            self.du0 = torch.zeros_like(self.u0)
        elif self.du0.shape != self.u0.shape:
            raise ShapeError(
                f"du0 must have the shape of u0 {tuple(self.u0.shape)}, "
                f"got {tuple(self.du0.shape)}"
            )

    def remake(self, **changes) -> "DAEProblem":
        return dataclasses.replace(self, **changes)
