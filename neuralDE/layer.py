import torch
import torch.nn as nn
from typing import Callable, List, Optional, Tuple

from .utils import _check_length, _flatten


def _identity(x: torch.Tensor) -> torch.Tensor:
    return x


def glorot_uniform(out_dim: int, in_dim: int) -> torch.Tensor:
    return nn.init.xavier_uniform_(torch.empty(out_dim, in_dim))


def zeros(out_dim: int) -> torch.Tensor:
    return torch.zeros(out_dim)


class FastLayer:
    """Base class of the pre-flattened building blocks.

    A fast layer owns no tensors. It is evaluated as ``layer(x, p)`` where ``p``
    is a flat parameter vector of length ``param_length()``, so an optimizer can
    hand it any candidate vector without rebuilding a network.
    """

    def param_length(self) -> int:
        raise NotImplementedError

    def initial_params(self) -> torch.Tensor:
        raise NotImplementedError

    def __call__(self, x: torch.Tensor, p: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class FastDense(FastLayer):
    r"""A dense layer $y = \sigma(x W^T + b)$ reading $W$ and $b$ from a flat vector.

    The flat layout is ``W`` (row-major, shape ``[out_dim, in_dim]``) followed
    by ``b`` (``[out_dim]``) when ``bias`` is set, matching the layout of
    ``nn.Linear.weight`` / ``nn.Linear.bias``.

    Attributes:
        in_dim (int): Number of input features.
        out_dim (int): Number of output features.
        activation (Callable): Elementwise activation applied to the output.
        bias (bool): Whether the layer has a bias term.
    """

    def __init__(
        self,
        in_dim: int,
        out_dim: int,
        activation: Callable[[torch.Tensor], torch.Tensor] = _identity,
        bias: bool = True,
        initW: Callable[[int, int], torch.Tensor] = glorot_uniform,
        initb: Callable[[int], torch.Tensor] = zeros,
    ) -> None:
        """Initializes the FastDense layer.

        Args:
            in_dim (int): Number of input features.
            out_dim (int): Number of output features.
            activation (Callable): Activation function, identity by default.
            bias (bool): Whether to include a bias vector in the flat layout.
            initW (Callable): ``(out_dim, in_dim) -> Tensor`` weight initializer.
            initb (Callable): ``(out_dim,) -> Tensor`` bias initializer.
        """
        self.in_dim = in_dim
        self.out_dim = out_dim
        self.activation = activation
        self.bias = bias
        self.initW = initW
        self.initb = initb
        self._n_weight = out_dim * in_dim

    def param_length(self) -> int:
        return self._n_weight + (self.out_dim if self.bias else 0)

    def initial_params(self) -> torch.Tensor:
        W = self.initW(self.out_dim, self.in_dim)
        if not self.bias:
            return W.reshape(-1)
        return _flatten([W, self.initb(self.out_dim)])

    def __call__(self, x: torch.Tensor, p: torch.Tensor) -> torch.Tensor:
        W = p[: self._n_weight].view(self.out_dim, self.in_dim)
        y = x @ W.t()
        if self.bias:
            y = y + p[self._n_weight :]
        return self.activation(y)

    def __repr__(self) -> str:
        name = getattr(self.activation, "__name__", type(self.activation).__name__)
        return f"FastDense({self.in_dim}, {self.out_dim}, {name})"


class FastChain(FastLayer):
    """Composes fast layers and plain callables into a single ``(x, p) -> y`` function.

    Plain callables (e.g. ``lambda x: x ** 3``) take no parameters. The offsets
    of every fast layer in the flat vector are computed once here and reused
    for every call.

    Attributes:
        layers (List): The layers, applied left to right.
        slices (List[Optional[Tuple[int, int]]]): ``(start, end)`` into the flat
            vector per layer, ``None`` for parameter-free callables.
    """

    def __init__(self, *layers: Callable) -> None:
        self.layers = list(layers)
        self.slices: List[Optional[Tuple[int, int]]] = []
        offset = 0
        for layer in self.layers:
            if isinstance(layer, FastLayer):
                n = layer.param_length()
                self.slices.append((offset, offset + n))
                offset += n
            else:
                self.slices.append(None)
        self._length = offset

    def param_length(self) -> int:
        return self._length

    def initial_params(self) -> torch.Tensor:
        return _flatten(
            [
                layer.initial_params()
                for layer in self.layers
                if isinstance(layer, FastLayer)
            ]
        )

    def __call__(self, x: torch.Tensor, p: torch.Tensor) -> torch.Tensor:
        _check_length(p, self._length, "FastChain")
        for layer, span in zip(self.layers, self.slices):
            if span is None:
                x = layer(x)
            else:
                x = layer(x, p[span[0] : span[1]])
        return x

    def __repr__(self) -> str:
        inner = ", ".join(repr(layer) for layer in self.layers)
        return f"FastChain({inner})"
