"""Tests for neuralDE.problem: problem descriptors and validation."""

import math

import numpy as np
import pytest
import torch

from neuralDE import (
    ConfigurationError,
    DAEProblem,
    DDEProblem,
    ODEProblem,
    SDEProblem,
    ShapeError,
)
from neuralDE.problem import check_lags, check_mass_matrix, check_tspan


def _rhs(u, p, t):
    return u


class TestTspan:
    def test_converts_to_floats(self):
        assert check_tspan((0, torch.tensor(2.5))) == (0.0, 2.5)

    @pytest.mark.parametrize("tspan", [(1.0, 0.0), (1.0, 1.0)])
    def test_requires_increasing(self, tspan):
        with pytest.raises(ConfigurationError):
            check_tspan(tspan)

    @pytest.mark.parametrize("tspan", [(0.0,), (0.0, 1.0, 2.0), None, ("a", 1.0)])
    def test_requires_pair(self, tspan):
        with pytest.raises(ConfigurationError):
            check_tspan(tspan)

    def test_requires_finite(self):
        with pytest.raises(ConfigurationError):
            check_tspan((0.0, math.inf))

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            check_tspan((2.0, 1.0))


class TestMassMatrix:
    def test_accepts_numpy(self):
        M = check_mass_matrix(np.diag([1.0, 1.0, 0.0]))
        assert M.shape == (3, 3)

    def test_requires_square(self):
        with pytest.raises(ConfigurationError):
            check_mass_matrix(torch.zeros(2, 3))

    def test_requires_matching_state(self):
        with pytest.raises(ConfigurationError):
            ODEProblem(_rhs, torch.zeros(2), (0.0, 1.0), mass_matrix=torch.eye(3))

    def test_cast_to_state_dtype(self):
        prob = ODEProblem(
            _rhs, torch.zeros(2, dtype=torch.float32), (0.0, 1.0), mass_matrix=torch.eye(2)
        )
        assert prob.mass_matrix.dtype == torch.float32


class TestODEProblem:
    def test_remake_replaces_fields(self):
        prob = ODEProblem(_rhs, torch.zeros(2), (0.0, 1.0))
        new = prob.remake(u0=torch.ones(2))
        assert torch.equal(new.u0, torch.ones(2))
        assert torch.equal(prob.u0, torch.zeros(2))
        assert new.tspan == prob.tspan


class TestSDEProblem:
    def test_diagonal_by_default(self):
        prob = SDEProblem(_rhs, _rhs, torch.zeros(2), (0.0, 1.0))
        assert prob.noise_type == "diagonal"

    def test_general_with_prototype(self):
        prob = SDEProblem(
            _rhs, _rhs, torch.zeros(2), (0.0, 1.0), noise_rate_prototype=torch.zeros(2, 4)
        )
        assert prob.noise_type == "general"

    def test_prototype_rows_must_match_state(self):
        with pytest.raises(ShapeError):
            SDEProblem(
                _rhs, _rhs, torch.zeros(3), (0.0, 1.0), noise_rate_prototype=torch.zeros(2, 4)
            )


class TestDDEProblem:
    def test_lags_stored_as_floats(self):
        prob = DDEProblem(_rhs, torch.zeros(1), lambda p, t: torch.zeros(1), (0.0, 1.0), constant_lags=[1])
        assert prob.constant_lags == (1.0,)

    @pytest.mark.parametrize("lags", [[0.0], [-1.0], [math.nan]])
    def test_lags_must_be_positive(self, lags):
        with pytest.raises(ConfigurationError):
            check_lags(lags)


class TestDAEProblem:
    def test_defaults(self):
        prob = DAEProblem(_rhs, None, torch.ones(3), (0.0, 1.0))
        assert torch.equal(prob.du0, torch.zeros(3))
        assert prob.differential_vars.dtype == torch.bool
        assert bool(prob.differential_vars.all())

    def test_mask_from_list(self):
        prob = DAEProblem(_rhs, None, torch.ones(3), (0.0, 1.0), differential_vars=[True, True, False])
        assert prob.differential_vars.tolist() == [True, True, False]

    def test_mask_length_must_match_state(self):
        with pytest.raises(ShapeError):
            DAEProblem(_rhs, None, torch.ones(3), (0.0, 1.0), differential_vars=[True, False])

    def test_mask_must_be_boolean(self):
        with pytest.raises(ShapeError):
            DAEProblem(_rhs, None, torch.ones(2), (0.0, 1.0), differential_vars=[1.0, 0.0])

    def test_du0_shape_must_match(self):
        with pytest.raises(ShapeError):
            DAEProblem(_rhs, torch.zeros(2), torch.ones(3), (0.0, 1.0))
