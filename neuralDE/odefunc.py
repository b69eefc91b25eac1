import math
import torch
import torch.nn as nn
from typing import Callable, List, Optional, Tuple

from .errors import ConvergenceError, ShapeError

r"""
Vector fields handed to the external integrators.

`torchdiffeq` and `torchsde` call `func(t, y)`; the problems in this package
use the `(u, p, t)` convention. The adapters below close over the flat
parameter vector of a single solve. A new adapter is built for every solve, so
nothing is shared between two invocations with different parameter vectors.

Implicit systems (singular mass matrix, residual DAEs) are reduced to explicit
ODEs. Each algebraic row $0 = g(u, p, t)$ is replaced by its time derivative

$$J_g(u) \dot u = -\partial_t g - \lambda g,$$

where the $\lambda g$ term pulls the trajectory back onto the constraint
manifold, and $\dot u$ is recovered with a dense linear solve at every
evaluation.
"""


class ODEVectorField(nn.Module):
    r"""
    Adapter exposing `f(u, p, t)` as the `func(t, u)` expected by `torchdiffeq`.

    Attributes:
        f (Callable): Right-hand side `f(u, p, t)`.
        p (torch.Tensor): Flat parameter vector of this solve. Held as a plain
            attribute, not an `nn.Parameter`; adjoint solves receive it through
            `adjoint_params`.
        nfe (int): Number of function evaluations performed.
    """

    def __init__(self, f: Callable, p: Optional[torch.Tensor]) -> None:
        super().__init__()
        self.f = f
        self.p = p
        self.nfe = 0

    def forward(self, t: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        self.nfe += 1
        return self.f(u, self.p, t)


def state_jacobians(
    func: Callable[..., torch.Tensor],
    states: Tuple[torch.Tensor, ...],
    t: torch.Tensor,
) -> Tuple[Tuple[torch.Tensor, ...], torch.Tensor]:
    r"""
    Per-sample Jacobians of `func(*states, t)` with respect to each state and `t`.

    States have shape `[*B, n]` and `func` returns `[*B, m]`, acting on each
    batch row independently. The Jacobians are computed with
    `create_graph=True`, so they stay differentiable with respect to tensors
    captured by `func` (e.g. the flat parameter vector).

    Args:
        func: Function of the states and time.
        states: Tuple of tensors, each `[*B, n]`.
        t: Scalar time tensor.

    Returns:
        `(J_states, J_t)` where `J_states[i]` is `[*B, m, n]` and `J_t` is `[*B, m]`.
    """
    batch_shape = states[0].shape[:-1]
    n = states[0].shape[-1]
    flat = tuple(s.reshape(-1, n) for s in states)
    N = flat[0].shape[0]

    def flat_func(*args: torch.Tensor) -> torch.Tensor:
        *ss, tt = args
        out = func(*(s.reshape(*batch_shape, n) for s in ss), tt)
        return out.reshape(N, -1)

    jac = torch.autograd.functional.jacobian(flat_func, (*flat, t), create_graph=True)
    # jac[i] is [N, m, N, n]; rows never mix, keep the diagonal blocks.
    J_states = tuple(
        J.diagonal(dim1=0, dim2=2).permute(2, 0, 1).reshape(*batch_shape, J.shape[1], n)
        for J in jac[:-1]
    )
    J_t = jac[-1].reshape(*batch_shape, -1)
    return J_states, J_t


def _solve(A: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    return torch.linalg.solve(A, b.unsqueeze(-1)).squeeze(-1)


class MassMatrixVectorField(ODEVectorField):
    r"""
    Explicit form of $M \dot u = f(u, p, t)$.

    Rows of `M` that are entirely zero are algebraic. They are replaced by the
    stabilised derivative of the constraint, giving the linear system

    $$K(u) \dot u = b(u), \quad K_i = \begin{cases} M_i & i \text{ differential} \\
    \partial f_i / \partial u & i \text{ algebraic} \end{cases}, \quad
    b_i = \begin{cases} f_i & i \text{ differential} \\
    -\partial_t f_i - \lambda f_i & i \text{ algebraic} \end{cases}$$

    which is solved at every evaluation. A singular `K` (an index > 1
    system) surfaces as the `torch.linalg` error.

    Attributes:
        mass_matrix (torch.Tensor): The `n x n` mass matrix.
        algebraic (torch.Tensor): Indices of the algebraic rows.
        stabilization (float): The constraint relaxation rate $\lambda$.
        jac_f (Callable): Function differentiated for the algebraic rows.
    """

    def __init__(
        self,
        f: Callable,
        p: Optional[torch.Tensor],
        mass_matrix: torch.Tensor,
        stabilization: float = 1.0,
        jac_f: Optional[Callable] = None,
    ) -> None:
        super().__init__(f, p)
        self.jac_f = f if jac_f is None else jac_f
        self.mass_matrix = mass_matrix
        self.algebraic = torch.nonzero(
            (mass_matrix == 0).all(dim=1), as_tuple=False
        ).flatten()
        self.stabilization = stabilization

    def forward(self, t: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        self.nfe += 1
        rhs = self.f(u, self.p, t)
        M = self.mass_matrix.expand(*u.shape[:-1], *self.mass_matrix.shape)
        if self.algebraic.numel() == 0:
            return _solve(M, rhs)

        alg = self.algebraic
        t = torch.as_tensor(t, dtype=u.dtype, device=u.device)
        (J_u,), J_t = state_jacobians(
            lambda u_, t_: self.jac_f(u_, self.p, t_).index_select(-1, alg), (u,), t
        )
        K = M.index_copy(-2, alg, J_u)
        g = rhs.index_select(-1, alg)
        b = rhs.index_copy(-1, alg, -(J_t + self.stabilization * g))
        return _solve(K, b)


class ResidualVectorField(ODEVectorField):
    r"""
    Explicit form of the implicit system $0 = F(\dot u, u, p, t)$.

    Differential rows keep their residual; algebraic rows (where
    `differential_vars` is False, so $F_i$ does not involve $\dot u$) are
    replaced by $J_u F_i \, \dot u + \partial_t F_i + \lambda F_i$. The resulting
    system $G(\dot u) = 0$ is solved by Newton's method starting from `du0`.

    Attributes:
        differential_vars (torch.Tensor): Boolean mask, True for differential rows.
        du0 (torch.Tensor): Initial Newton guess.
        stabilization (float): The constraint relaxation rate $\lambda$.
        maxiters (int): Maximum number of Newton iterations per evaluation.
        tol (float): Relative step tolerance of the Newton iteration, floored at
            100 machine epsilons of the state dtype.
    """

    def __init__(
        self,
        f: Callable,
        p: Optional[torch.Tensor],
        differential_vars: torch.Tensor,
        du0: torch.Tensor,
        stabilization: float = 1.0,
        maxiters: int = 10,
        tol: float = 1e-10,
    ) -> None:
        super().__init__(f, p)
        self.differential_vars = differential_vars
        self.du0 = du0
        self.stabilization = stabilization
        self.maxiters = maxiters
        self.tol = tol

    def forward(self, t: torch.Tensor, u: torch.Tensor) -> torch.Tensor:
        self.nfe += 1
        t = torch.as_tensor(t, dtype=u.dtype, device=u.device)
        mask = self.differential_vars
        du = self.du0.expand_as(u)
        tol = max(self.tol, 100 * torch.finfo(u.dtype).eps)

        def residual(du_, u_, t_):
            return self.f(du_, u_, self.p, t_)

        for _ in range(self.maxiters):
            R = residual(du, u, t)
            (J_du, J_u), J_t = state_jacobians(residual, (du, u), t)
            G = torch.where(
                mask, R, (J_u @ du.unsqueeze(-1)).squeeze(-1) + J_t + self.stabilization * R
            )
            jac = torch.where(mask.unsqueeze(-1), J_du, J_u)
            step = _solve(jac, G)
            du = du - step
            if bool(step.abs().max() <= tol * (1.0 + du.abs().max())):
                return du
        raise ConvergenceError(
            f"Newton iteration for du/dt did not converge in {self.maxiters} "
            f"iterations at t={float(t):.6g}"
        )


class SDEVectorField(nn.Module):
    r"""
    Adapter exposing drift `f(u, p, t)` and diffusion `g(u, p, t)` to `torchsde`.

    Attributes:
        noise_type (str): `'diagonal'` or `'general'`.
        sde_type (str): Always `'ito'`.
        noise_shape (Optional[Tuple[int, int]]): `(n_state, n_brownian)` for
            general noise.
        nfe (int): Number of drift evaluations performed.
    """

    sde_type = "ito"

    def __init__(
        self,
        f: Callable,
        g: Callable,
        p: Optional[torch.Tensor],
        noise_shape: Optional[Tuple[int, int]] = None,
    ) -> None:
        super().__init__()
        self._f = f
        self._g = g
        self.p = p
        self.noise_shape = noise_shape
        self.noise_type = "diagonal" if noise_shape is None else "general"
        self.nfe = 0

    def f(self, t: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        self.nfe += 1
        return self._f(y, self.p, t)

    def g(self, t: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
        out = self._g(y, self.p, t)
        if self.noise_shape is None:
            if out.shape != y.shape:
                raise ShapeError(
                    f"diagonal noise expects a diffusion of shape {tuple(y.shape)}, "
                    f"got {tuple(out.shape)}"
                )
            return out
        n, m = self.noise_shape
        batch = y.shape[:-1]
        if out.shape == (*batch, n, m):
            return out
        if out.shape[: len(batch)] == batch and math.prod(out.shape[len(batch) :]) == n * m:
            return out.reshape(*batch, n, m)
        raise ShapeError(
            f"diffusion must return a {n} x {m} noise-rate matrix per state, "
            f"got shape {tuple(out.shape)}"
        )


def linear_interpolate(
    ts: torch.Tensor, us: torch.Tensor, query: torch.Tensor
) -> torch.Tensor:
    """
    Linear interpolation of a trajectory on a sorted time grid.

    Args:
        ts: Grid times `[T]`, increasing.
        us: States `[T, ...]`.
        query: Query times `[Q]` within `[ts[0], ts[-1]]`.

    Returns:
        Interpolated states `[Q, ...]`. Queries on a grid point return that point exactly.
    """
    T = ts.shape[0]
    idx = torch.searchsorted(ts, query, right=True)
    idx = (idx - 1).clamp(0, T - 2)

    t0 = ts[idx]
    t1 = ts[idx + 1]
    u0 = us[idx]
    u1 = us[idx + 1]

    ratio = ((query - t0) / (t1 - t0)).clamp(0.0, 1.0)
    ratio = ratio.view(-1, *([1] * (us.dim() - 1)))
    return u0 + ratio * (u1 - u0)


class History:
    r"""
    The `h(p, s)` callable seen by a delay right-hand side during a solve.

    For $s \le t_0$ it defers to the user's history function; for later times it
    linearly interpolates the states computed so far on the uniform grid
    $t_k = t_0 + k \Delta t$.

    Attributes:
        hist (Callable): History function `h(p, t)` for `t <= t0`.
        t0 (float): Initial time.
        dt (float): Grid step.
        states (List[torch.Tensor]): States computed so far, `states[k] = u(t_k)`.
    """

    def __init__(self, hist: Callable, t0: float, dt: float) -> None:
        self.hist = hist
        self.t0 = t0
        self.dt = dt
        self.states: List[torch.Tensor] = []

    def __call__(self, p: Optional[torch.Tensor], s: float) -> torch.Tensor:
        s = float(s)
        if s <= self.t0:
            return self.hist(p, s)
        k = (s - self.t0) / self.dt
        i = min(int(math.floor(k)), len(self.states) - 1)
        if i + 1 >= len(self.states):
            return self.states[-1]
        frac = k - i
        return self.states[i] + frac * (self.states[i + 1] - self.states[i])
