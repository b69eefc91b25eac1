"""Tests for neuralDE.layer: pre-flattened building blocks."""

import pytest
import torch
import torch.nn as nn

from neuralDE import FastChain, FastDense, ShapeError


class TestFastDense:
    def test_param_length_with_bias(self):
        assert FastDense(3, 4).param_length() == 3 * 4 + 4

    def test_param_length_without_bias(self):
        assert FastDense(3, 4, bias=False).param_length() == 12

    def test_initial_params_shape(self):
        layer = FastDense(5, 2)
        p = layer.initial_params()
        assert p.shape == (12,)
        # bias initialised to zero
        assert torch.equal(p[10:], torch.zeros(2))

    def test_matches_nn_linear_layout(self):
        linear = nn.Linear(3, 4)
        p = torch.cat([linear.weight.detach().reshape(-1), linear.bias.detach()])
        x = torch.randn(5, 3)
        out = FastDense(3, 4)(x, p)
        assert torch.allclose(out, linear(x))

    def test_activation_applied(self):
        layer = FastDense(2, 2, torch.relu)
        p = torch.tensor([-1.0, 0.0, 0.0, -1.0, 0.0, 0.0])
        out = layer(torch.tensor([1.0, 1.0]), p)
        assert torch.equal(out, torch.zeros(2))

    def test_custom_initializers(self):
        layer = FastDense(2, 3, initW=lambda o, i: torch.ones(o, i), initb=lambda o: torch.full((o,), 2.0))
        p = layer.initial_params()
        assert torch.equal(p, torch.tensor([1.0] * 6 + [2.0] * 3))


class TestFastChain:
    def test_length_is_sum_of_layers(self, fast3):
        assert fast3.param_length() == (3 * 16 + 16) + (16 * 3 + 3)
        assert fast3.initial_params().shape == (fast3.param_length(),)

    def test_slices_are_contiguous(self, fast3):
        assert fast3.slices == [(0, 64), (64, 115)]

    def test_plain_callables_take_no_parameters(self):
        chain = FastChain(lambda x: x**3, FastDense(2, 2))
        assert chain.slices[0] is None
        assert chain.param_length() == 6
        p = torch.cat([torch.eye(2).reshape(-1), torch.zeros(2)])
        x = torch.tensor([2.0, -1.0])
        assert torch.allclose(chain(x, p), x**3)

    def test_equivalent_to_sequential(self):
        seq = nn.Sequential(nn.Linear(2, 8), nn.Tanh(), nn.Linear(8, 2))
        chain = FastChain(FastDense(2, 8, torch.tanh), FastDense(8, 2))
        p = torch.cat([param.detach().reshape(-1) for param in seq.parameters()])
        x = torch.randn(4, 2)
        assert torch.allclose(chain(x, p), seq(x))

    def test_wrong_length_raises(self, fast3):
        p = fast3.initial_params()
        with pytest.raises(ShapeError):
            fast3(torch.zeros(3), p[:-1])
        with pytest.raises(ShapeError):
            fast3(torch.zeros(3), torch.cat([p, p[:1]]))

    def test_matrix_parameters_rejected(self, fast3):
        p = fast3.initial_params()
        with pytest.raises(ShapeError):
            fast3(torch.zeros(3), p.view(1, -1))

    def test_gradient_reaches_flat_vector(self, fast3):
        p = fast3.initial_params().requires_grad_(True)
        fast3(torch.ones(3), p).sum().backward()
        assert p.grad is not None
        assert p.grad.shape == p.shape
