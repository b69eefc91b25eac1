import copy
import threading
import warnings
import torch
import torch.nn as nn
from torch.func import functional_call
from typing import Callable, Dict, List, Tuple, Union

from .layer import FastLayer
from .utils import _check_length, _flatten

"""
Parameter packing.

A learnable function reaches the solvers as ``apply(u, p)`` where ``p`` is one
flat vector. Two representations are supported:

- structured: an ``nn.Module`` owning its parameters. ``destructure`` copies
  them into a flat vector once and returns a ``Restructure`` that rebuilds a
  callable from any vector of the same length.
- pre-flattened: a ``FastLayer`` (e.g. ``FastChain``) that already accepts
  ``(x, p)``; no reconstruction step exists.
"""


class Restructured:
    """The callable produced by ``Restructure``; evaluates the model with the given tensors."""

    def __init__(self, re: "Restructure", params: Dict[str, torch.Tensor]) -> None:
        self.re = re
        self.params = params

    def __call__(self, *args, **kwargs):
        return functional_call(self.re.local_model(), self.params, args, kwargs)


class Restructure:
    r"""
    Rebuilds a structured model from a flat parameter vector.

    The vector layout is the concatenation of ``model.named_parameters()`` in
    registration order, each flattened row-major. Calling a ``Restructure`` never
    touches ``model`` itself: the tensors cut out of the flat vector are
    substituted through ``torch.func.functional_call`` into a private copy of
    the template owned by the calling thread, so calls from different threads
    never observe each other's weights, and gradients flow back to the flat
    vector.

    Attributes:
        model (nn.Module): The structured model used as a template.
        names (List[str]): Qualified parameter names, in flat order.
        shapes (List[torch.Size]): Parameter shapes, in flat order.
        numels (List[int]): Number of elements per parameter.
        length (int): Total length of the flat vector.
    """

    def __init__(self, model: nn.Module) -> None:
        self.model = model
        named = list(model.named_parameters())
        self.names: List[str] = [name for name, _ in named]
        self.shapes: List[torch.Size] = [param.shape for _, param in named]
        self.numels: List[int] = [param.numel() for _, param in named]
        self.length = sum(self.numels)
        self._local = threading.local()

    def local_model(self) -> nn.Module:
        """The calling thread's copy of the template, created on first use."""
        model = getattr(self._local, "model", None)
        if model is None:
            model = copy.deepcopy(self.model)
            self._local.model = model
        return model

    def __getstate__(self):
        state = self.__dict__.copy()
        del state["_local"]
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._local = threading.local()

    def __call__(self, p: torch.Tensor) -> Restructured:
        """
        Builds a callable evaluating the template model with parameters ``p``.

        Args:
            p: Flat parameter vector of length ``self.length``.

        Returns:
            A fresh ``Restructured`` callable.

        Raises:
            ShapeError: If ``p`` is not a vector of length ``self.length``.
        """
        _check_length(p, self.length, type(self.model).__name__)
        chunks = torch.split(p, self.numels)
        params = {
            name: chunk.view(shape)
            for name, chunk, shape in zip(self.names, chunks, self.shapes)
        }
        return Restructured(self, params)

    def __repr__(self) -> str:
        return f"Restructure({type(self.model).__name__}, length={self.length})"


class StructuredApply:
    """``apply(u, p) = re(p)(u)``: reconstructs on every call."""

    def __init__(self, re: Restructure) -> None:
        self.re = re

    def __call__(self, u: torch.Tensor, p: torch.Tensor) -> torch.Tensor:
        return self.re(p)(u)

    def __repr__(self) -> str:
        return repr(self.re.model)


def destructure(model: nn.Module) -> Tuple[torch.Tensor, Restructure]:
    """
    Flattens the parameters of a structured model.

    Args:
        model: Any ``nn.Module``.

    Returns:
        ``(p, re)`` where ``p`` is a detached copy of the parameters as one flat
        vector and ``re(p)`` rebuilds a callable model from a flat vector.
    """
    if any(True for _ in model.buffers()):
        warnings.warn(
            f"{type(model).__name__} has registered buffers; they are not part of "
            f"the flat parameter vector and keep the values stored in the module.",
            UserWarning,
        )
    p = _flatten([param.detach() for param in model.parameters()]).clone()
    return p, Restructure(model)


def initial_params(model: FastLayer) -> torch.Tensor:
    """Returns the initial flat parameter vector of a pre-flattened model."""
    return model.initial_params()


def is_fast(model: Union[nn.Module, FastLayer]) -> bool:
    return isinstance(model, FastLayer)


def as_learnable(
    model: Union[nn.Module, FastLayer],
) -> Tuple[torch.Tensor, Callable[[torch.Tensor, torch.Tensor], torch.Tensor], bool]:
    """
    Resolves a learnable function into its flat vector and an ``apply(u, p)`` callable.

    Args:
        model: A structured ``nn.Module`` or a pre-flattened ``FastLayer``.

    Returns:
        ``(p, apply, fast)``: the default flat vector, a function evaluating the
        model at ``u`` with parameters ``p``, and whether the model is pre-flattened.

    Raises:
        TypeError: If ``model`` is neither representation.
    """
    if is_fast(model):
        return initial_params(model), model, True
    if isinstance(model, nn.Module):
        p, re = destructure(model)
        return p, StructuredApply(re), False
    raise TypeError(
        f"expected an nn.Module or a FastLayer, got {type(model).__name__}"
    )
