from dataclasses import dataclass
from typing import Any, Dict, Optional

"""
Differentiation strategies.

The tokens below are opaque to the layers: a layer picks one per equation
family and hands it to `solve`, which maps it onto the integrator call.

- `InterpolatingAdjoint`: continuous adjoint. The gradient is obtained by
  integrating the adjoint equation backwards in time with `torchdiffeq.odeint_adjoint`;
  the forward pass is not recorded.
- `TrackerAdjoint`: reverse-mode tape through every operation the solver
  performed (plain autograd through the integrator).
- `None`: the solver's default, i.e. discretise-then-differentiate.
"""


@dataclass(frozen=True)
class ReverseDiffVJP:
    r"""
    Reverse-mode vector-Jacobian products for the adjoint pass.

    Attributes:
        compile: If True a layer compiles its model function with `torch.compile`
                 once, at construction, and evaluates the compiled function in
                 every adjoint solve.
    """

    compile: bool = False


@dataclass(frozen=True)
class InterpolatingAdjoint:
    r"""
    Continuous adjoint sensitivity.

    Solves $\dot\lambda = -\lambda^T \partial f / \partial u$ backwards from $t_1$ and
    accumulates $dL/dp = \int \lambda^T \partial f / \partial p \, dt$.

    Attributes:
        autojacvec: How the VJPs of the vector field are computed.
        rtol: Relative tolerance of the backward solve (defaults to the forward one).
        atol: Absolute tolerance of the backward solve (defaults to the forward one).
        method: Integrator of the backward solve (defaults to the forward one).
        options: Options of the backward solve.
    """

    autojacvec: Optional[ReverseDiffVJP] = None
    rtol: Optional[float] = None
    atol: Optional[float] = None
    method: Optional[str] = None
    options: Optional[Dict[str, Any]] = None

    def adjoint_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for `torchdiffeq.odeint_adjoint`, omitting unset fields."""
        kwargs = {
            "adjoint_rtol": self.rtol,
            "adjoint_atol": self.atol,
            "adjoint_method": self.method,
            "adjoint_options": self.options,
        }
        return {k: v for k, v in kwargs.items() if v is not None}


@dataclass(frozen=True)
class TrackerAdjoint:
    """Reverse-mode differentiation through the recorded solver operations."""


def is_adjoint(sensealg: Any) -> bool:
    return isinstance(sensealg, InterpolatingAdjoint)


def describe(sensealg: Any) -> str:
    return "default" if sensealg is None else repr(sensealg)


def compiles(sensealg: Any) -> bool:
    """True for an adjoint token asking for a compiled model function."""
    return (
        is_adjoint(sensealg)
        and sensealg.autojacvec is not None
        and sensealg.autojacvec.compile
    )
