import numpy as np
import torch
from typing import Any, Iterable, Optional

from .errors import ShapeError


def _flatten(sequence: Iterable[torch.Tensor]) -> torch.Tensor:
    flat = [p.contiguous().view(-1) for p in sequence]
    return torch.cat(flat) if len(flat) > 0 else torch.tensor([])


def _as_tensor(
    value: Any,
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Converts tensors, numpy arrays and nested sequences to a tensor."""
    if isinstance(value, torch.Tensor):
        if value.dtype == torch.bool:
            return value.to(device=device or value.device)
        return value.to(dtype=dtype or value.dtype, device=device or value.device)
    array = np.asarray(value)
    if array.dtype == np.bool_:
        return torch.as_tensor(array, device=device)
    return torch.as_tensor(
        array, dtype=dtype or torch.get_default_dtype(), device=device
    )


def _check_length(p: torch.Tensor, expected: int, owner: str) -> None:
    """Raises `ShapeError` when a flat parameter vector has the wrong length."""
    if p.dim() != 1 or p.numel() != expected:
        raise ShapeError(
            f"{owner} expects a flat parameter vector of length {expected}, "
            f"got shape {tuple(p.shape)}"
        )
