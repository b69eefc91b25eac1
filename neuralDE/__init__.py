from .nde import (
    NeuralDELayer,
    NeuralODE,
    NeuralDSDE,
    NeuralSDE,
    NeuralCDDE,
    NeuralDAE,
    NeuralODEMM,
)
from .layer import FastLayer, FastDense, FastChain
from .params import Restructure, destructure, initial_params, as_learnable
from .sensitivity import InterpolatingAdjoint, ReverseDiffVJP, TrackerAdjoint
from .problem import ODEProblem, SDEProblem, DDEProblem, DAEProblem
from .solver import DESolution, SolverConfig, solve
from .errors import ConfigurationError, ShapeError, ConvergenceError
