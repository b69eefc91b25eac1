"""Shared fixtures for the neuralDE test suite."""

import pytest
import torch
import torch.nn as nn

from neuralDE import FastChain, FastDense


@pytest.fixture(autouse=True)
def double_precision():
    """Run every test in float64 with a fixed seed."""
    previous = torch.get_default_dtype()
    torch.set_default_dtype(torch.float64)
    torch.manual_seed(0)
    yield
    torch.set_default_dtype(previous)


@pytest.fixture
def mlp3() -> nn.Module:
    return nn.Sequential(nn.Linear(3, 16), nn.Tanh(), nn.Linear(16, 3))


@pytest.fixture
def fast3() -> FastChain:
    return FastChain(FastDense(3, 16, torch.tanh), FastDense(16, 3))


@pytest.fixture
def u0_3() -> torch.Tensor:
    return torch.tensor([2.0, 0.0, 0.0])


@pytest.fixture
def decay():
    """Right-hand side of du/dt = -p * u."""

    def f(u, p, t):
        return -p[0] * u

    return f
