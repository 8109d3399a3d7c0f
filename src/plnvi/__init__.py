"""plnvi — Variational inference for Poisson-lognormal models.

Fits a Poisson-lognormal latent-variable model with a fully
parametrized covariance by maximizing its evidence lower bound with a
gradient-based optimizer over a packed parameter vector.  The full
model optimizes the regression coefficients and the variational
parameters jointly; the variational E-step optimizes the variational
parameters for fixed model parameters.

Public API:
    .. autosummary::
        optimize_full
        optimize_vestep
        initial_parameters
        compute_criteria
        ki
        ParameterLayout
        BlockSpec
        OptimizerConfig
        UniformTolerance
        PerBlockTolerance
        OptimizerStatus
        OptimizerResult
        minimize_objective_on_parameters
        EvaluationContext
        FullFitResult
        VEStepResult
        LogLikelihood
        Monitoring
        get_backend
        set_backend
"""

from ._config import get_backend, set_backend
from ._context import EvaluationContext
from ._results import FullFitResult, LogLikelihood, Monitoring, VEStepResult
from .configuration import OptimizerConfig, PerBlockTolerance, UniformTolerance
from .core import ki, optimize_full, optimize_vestep
from .diagnostics import compute_criteria
from .initialization import initial_parameters
from .optimizer import (
    OptimizerResult,
    OptimizerStatus,
    minimize_objective_on_parameters,
)
from .packing import BlockSpec, ParameterLayout

__all__ = [
    "BlockSpec",
    "EvaluationContext",
    "FullFitResult",
    "LogLikelihood",
    "Monitoring",
    "OptimizerConfig",
    "OptimizerResult",
    "OptimizerStatus",
    "ParameterLayout",
    "PerBlockTolerance",
    "UniformTolerance",
    "VEStepResult",
    "compute_criteria",
    "get_backend",
    "initial_parameters",
    "ki",
    "minimize_objective_on_parameters",
    "optimize_full",
    "optimize_vestep",
    "set_backend",
]

__version__ = "0.1.0"
