"""Entry points: full-model fit and variational E-step.

Both functions follow the same pipeline::

    ┌──────────────────────────────────────────────────────────┐
    │  validate data (Y, X, O, w) and initial blocks           │
    │  layout     = ParameterLayout.from_arrays(initial)       │
    │  parameters = layout.pack(initial blocks)                │
    │  config     = OptimizerConfig.from_mapping(cfg, layout)  │
    │  context    = EvaluationContext(layout, Y, X, O, w, …)   │
    │  minimize_objective_on_parameters(                       │
    │      config, backend.<objective>, parameters, context)   │
    │  result assembly: unpack blocks, derive Z, A, Sigma,     │
    │      Omega, per-observation log-likelihood               │
    └──────────────────────────────────────────────────────────┘

Everything is allocated per call; nothing survives between calls, so
independent calls may run concurrently in separate threads.

Variational log-likelihood
~~~~~~~~~~~~~~~~~~~~~~~~~~
For observation *i*::

    J_i = Σ_j [ Y_ij Z_ij − A_ij + ½ log S²_ij
                − ½ ((M Ω)_ij M_ij + S²_ij Ω_jj) ]
          + ½ log det Ω + k(Y_i)

where ``k(Y_i) = −Σ_j log(Y_ij!) + p/2`` collects the Poisson
normalizer and the constants of the Gaussian prior and entropy.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import numpy as np
from scipy.special import gammaln

from ._backends import resolve_backend
from ._backends._numpy import inv_sympd, weighted_scatter
from ._compat import _as_float_array
from ._context import EvaluationContext
from ._results import FullFitResult, LogLikelihood, Monitoring, VEStepResult
from ._typing import ArrayLike
from .configuration import OptimizerConfig
from .initialization import initial_parameters
from .optimizer import minimize_objective_on_parameters
from .packing import ParameterLayout

logger = logging.getLogger(__name__)

_OPTIMIZER_BACKEND = "scipy"

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def ki(Y: np.ndarray) -> np.ndarray:
    """Per-observation normalizing constant ``−Σ_j log(Y_ij!) + p/2``."""
    Y = np.asarray(Y, dtype=float)
    return -np.sum(gammaln(Y + 1.0), axis=1) + 0.5 * Y.shape[1]


def _validate_data(
    Y: Any, X: Any, O: Any, w: Any  # noqa: E741
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Coerce observation inputs to float arrays and check their shapes.

    Raises:
        ValueError: On inconsistent shapes, negative or non-finite
            counts, or invalid weights.
    """
    Y = _as_float_array(Y, name="Y", ndim=2)
    X = _as_float_array(X, name="X", ndim=2)
    O = _as_float_array(O, name="O", ndim=2)  # noqa: E741
    w = _as_float_array(w, name="w", ndim=1)

    n, p = Y.shape
    if X.shape[0] != n:
        msg = f"X has {X.shape[0]} rows, Y has {n}."
        raise ValueError(msg)
    if O.shape != Y.shape:
        msg = f"O has shape {O.shape}, expected {Y.shape} to match Y."
        raise ValueError(msg)
    if w.shape != (n,):
        msg = f"w has shape {w.shape}, expected ({n},)."
        raise ValueError(msg)
    if not np.all(np.isfinite(Y)) or np.any(Y < 0):
        msg = "Y must contain finite, non-negative counts."
        raise ValueError(msg)
    if not (np.all(np.isfinite(X)) and np.all(np.isfinite(O))):
        msg = "X and O must be finite."
        raise ValueError(msg)
    if not np.all(np.isfinite(w)) or np.any(w < 0) or not np.sum(w) > 0:
        msg = "w must be finite, non-negative, and not all zero."
        raise ValueError(msg)
    return Y, X, O, w


def _init_block(
    init_parameters: Mapping[str, Any], name: str, shape: tuple[int, int]
) -> np.ndarray:
    if name not in init_parameters:
        msg = f"Initial parameters are missing block {name!r}."
        raise ValueError(msg)
    value = _as_float_array(init_parameters[name], name=name, ndim=2)
    if value.shape != shape:
        msg = f"Initial {name} has shape {value.shape}, expected {shape}."
        raise ValueError(msg)
    return value


def _check_positive_s(S: np.ndarray) -> None:
    if not np.all(np.isfinite(S)) or np.any(S <= 0):
        msg = "Initial S must be finite and strictly positive."
        raise ValueError(msg)


def _elementwise_loglik(
    Y: np.ndarray,
    Z: np.ndarray,
    A: np.ndarray,
    M: np.ndarray,
    S2: np.ndarray,
    Omega: np.ndarray,
    log_det_omega: float,
) -> np.ndarray:
    quadratic = (M @ Omega) * M + S2 * np.diag(Omega)[None, :]
    return (
        np.sum(Y * Z - A + 0.5 * np.log(S2) - 0.5 * quadratic, axis=1)
        + 0.5 * log_det_omega
        + ki(Y)
    )


# ------------------------------------------------------------------ #
# Full model
# ------------------------------------------------------------------ #


def optimize_full(
    init_parameters: Mapping[str, Any] | None,
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike,  # noqa: E741
    w: ArrayLike,
    configuration: Mapping[str, Any] | None = None,
    *,
    backend: str | None = None,
) -> FullFitResult:
    """Fit ``Theta``, ``M`` and ``S`` of a PLN model with full covariance.

    Args:
        init_parameters: Mapping with ``"Theta"`` ``(p, d)``, ``"M"``
            and ``"S"`` ``(n, p)``.  ``None`` uses
            :func:`~plnvi.initialization.initial_parameters`.
        Y: Counts ``(n, p)``.
        X: Covariates ``(n, d)``.
        O: Offsets ``(n, p)``.
        w: Observation weights ``(n,)``.
        configuration: Optimizer configuration record; see
            :mod:`plnvi.configuration`.
        backend: Evaluator backend (``"numpy"`` / ``"jax"``); ``None``
            follows :func:`~plnvi.get_backend`.

    Returns:
        A :class:`~plnvi._results.FullFitResult`.

    Raises:
        ValueError, TypeError: On malformed inputs or configuration,
            before any optimization work.
        numpy.linalg.LinAlgError: If the latent covariance stops being
            positive-definite.
    """
    Y, X, O, w = _validate_data(Y, X, O, w)  # noqa: E741
    n, p = Y.shape
    d = X.shape[1]
    if init_parameters is None:
        init_parameters = initial_parameters(Y, X, O, w)

    initial = {
        "Theta": _init_block(init_parameters, "Theta", (p, d)),
        "M": _init_block(init_parameters, "M", (n, p)),
        "S": _init_block(init_parameters, "S", (n, p)),
    }
    _check_positive_s(initial["S"])

    layout = ParameterLayout.from_arrays(initial)
    parameters = layout.pack(initial)
    config = OptimizerConfig.from_mapping(configuration, layout)
    evaluator = resolve_backend(backend)
    context = EvaluationContext(layout=layout, Y=Y, X=X, O=O, w=w)

    logger.info(
        "Full-model fit: n=%d p=%d d=%d evaluator=%s", n, p, d, evaluator.name
    )
    outcome = minimize_objective_on_parameters(
        config, evaluator.full_objective_and_grad, parameters, context
    )

    # ---- Result assembly -----------------------------------------
    blocks = layout.unpack(parameters)
    Theta, M = blocks["Theta"], blocks["M"]
    # S enters only through S², report the positive root.
    S = np.abs(blocks["S"])
    S2 = S * S
    Sigma = weighted_scatter(M, S2, w) / context.w_bar
    Sigma = 0.5 * (Sigma + Sigma.T)
    Omega, log_det_sigma = inv_sympd(Sigma)
    Z = O + X @ Theta.T + M
    A = np.exp(Z + 0.5 * S2)
    loglik = _elementwise_loglik(Y, Z, A, M, S2, Omega, -log_det_sigma)

    return FullFitResult(
        Theta=Theta,
        M=M,
        S=S,
        Z=Z,
        A=A,
        Sigma=Sigma,
        Omega=Omega,
        Ji=LogLikelihood(values=loglik, weights=w.copy()),
        monitoring=Monitoring(
            status=outcome.status,
            backend=_OPTIMIZER_BACKEND,
            iterations=outcome.iterations,
            evaluator=evaluator.name,
            n_evaluations=outcome.n_evaluations,
            objective=outcome.objective,
            message=outcome.message,
        ),
    )


# ------------------------------------------------------------------ #
# Variational E-step
# ------------------------------------------------------------------ #


def optimize_vestep(
    init_parameters: Mapping[str, Any],
    Y: ArrayLike,
    X: ArrayLike,
    O: ArrayLike,  # noqa: E741
    w: ArrayLike,
    Theta: ArrayLike,
    Omega: ArrayLike,
    configuration: Mapping[str, Any] | None = None,
    *,
    backend: str | None = None,
) -> VEStepResult:
    """Optimize ``M`` and ``S`` with ``Theta`` and ``Omega`` held fixed.

    Args:
        init_parameters: Mapping with ``"M"`` and ``"S"`` ``(n, p)``.
        Y, X, O, w: Observation data as for :func:`optimize_full`.
        Theta: Fixed regression coefficients ``(p, d)``.
        Omega: Fixed symmetric positive-definite precision ``(p, p)``.
        configuration: Optimizer configuration; a per-block
            ``xtol_abs`` names ``"M"`` and ``"S"`` only.
        backend: Evaluator backend, as for :func:`optimize_full`.

    Returns:
        A :class:`~plnvi._results.VEStepResult`.

    Raises:
        ValueError, TypeError: On malformed inputs or configuration.
        numpy.linalg.LinAlgError: If *Omega* is not positive-definite.
    """
    Y, X, O, w = _validate_data(Y, X, O, w)  # noqa: E741
    n, p = Y.shape
    d = X.shape[1]

    Theta = _as_float_array(Theta, name="Theta", ndim=2)
    Omega = _as_float_array(Omega, name="Omega", ndim=2)
    if Theta.shape != (p, d):
        msg = f"Theta has shape {Theta.shape}, expected {(p, d)}."
        raise ValueError(msg)
    if Omega.shape != (p, p):
        msg = f"Omega has shape {Omega.shape}, expected {(p, p)}."
        raise ValueError(msg)
    if not np.allclose(Omega, Omega.T):
        msg = "Omega must be symmetric."
        raise ValueError(msg)
    _, log_det_omega = inv_sympd(Omega)

    initial = {
        "M": _init_block(init_parameters, "M", (n, p)),
        "S": _init_block(init_parameters, "S", (n, p)),
    }
    _check_positive_s(initial["S"])

    layout = ParameterLayout.from_arrays(initial)
    parameters = layout.pack(initial)
    config = OptimizerConfig.from_mapping(configuration, layout)
    evaluator = resolve_backend(backend)
    context = EvaluationContext(
        layout=layout, Y=Y, X=X, O=O, w=w, Theta=Theta, Omega=Omega
    )

    logger.info("VE-step: n=%d p=%d d=%d evaluator=%s", n, p, d, evaluator.name)
    outcome = minimize_objective_on_parameters(
        config, evaluator.vestep_objective_and_grad, parameters, context
    )

    blocks = layout.unpack(parameters)
    M = blocks["M"]
    # S enters only through S², report the positive root.
    S = np.abs(blocks["S"])
    S2 = S * S
    Z = O + X @ Theta.T + M
    A = np.exp(Z + 0.5 * S2)
    loglik = _elementwise_loglik(Y, Z, A, M, S2, Omega, log_det_omega)

    return VEStepResult(
        status=outcome.status,
        iterations=outcome.iterations,
        M=M,
        S=S,
        loglik=LogLikelihood(values=loglik, weights=w.copy()),
    )


__all__ = ["ki", "optimize_full", "optimize_vestep"]
