"""Optimizer driver: glue between a flat parameter buffer and scipy.

:func:`minimize_objective_on_parameters` runs
``scipy.optimize.minimize(..., jac=True)`` over a flat float64 vector,
calling back into an objective of the form::

    objective(context, params, grad) -> float

which must fill *grad* in place.  The driver never interprets the
vector; it only knows its length.

Stopping criteria
~~~~~~~~~~~~~~~~~
scipy owns the gradient-norm and iteration-count tests of each method.
On top of those the driver applies NLopt-style tests after every
accepted iteration (the scipy ``callback``) and inside the objective
wrapper:

=============  ==========================================  =================
Option         Test                                         Status
=============  ==========================================  =================
xtol_abs       ``|Δx_i| <= xtol_abs_i`` for every i         XTOL_REACHED
xtol_rel       ``|Δx_i| <= xtol_rel · |x_i|`` for every i   XTOL_REACHED
ftol_abs       ``|Δf| <= ftol_abs``                         FTOL_REACHED
ftol_rel       ``|Δf| <= ftol_rel · |f|``                   FTOL_REACHED
maxeval        evaluation count reached                     MAXEVAL_REACHED
maxtime        wall-clock budget spent                      MAXTIME_REACHED
=============  ==========================================  =================

A driver-side stop unwinds scipy with a private exception and the last
*accepted* iterate becomes the result, so the returned point is never a
rejected line-search trial.

Status taxonomy
~~~~~~~~~~~~~~~
:class:`OptimizerStatus` reuses NLopt's result codes: positive values
are success-class (including budget exhaustion, which leaves a usable
iterate), negative values are failures.  scipy's own exits are mapped
onto the same codes by :func:`_status_from_scipy`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, TypeVar

import numpy as np
from scipy import optimize as sp_optimize

from .configuration import OptimizerConfig

logger = logging.getLogger(__name__)

C = TypeVar("C")

ObjectiveFn = Callable[[C, np.ndarray, np.ndarray], float]
"""``objective(context, params, grad) -> float``, filling *grad* in place."""


class OptimizerStatus(IntEnum):
    """Termination codes (NLopt numbering)."""

    SUCCESS = 1
    STOPVAL_REACHED = 2
    FTOL_REACHED = 3
    XTOL_REACHED = 4
    MAXEVAL_REACHED = 5
    MAXTIME_REACHED = 6
    FAILURE = -1
    INVALID_ARGS = -2
    ROUNDOFF_LIMITED = -4
    FORCED_STOP = -5

    @property
    def is_success(self) -> bool:
        """``True`` for every success-class code (positive value)."""
        return self.value > 0


@dataclass(frozen=True)
class OptimizerResult:
    """Outcome of one driver run.

    The final parameter vector is not stored here: it is written in
    place into the buffer passed to the driver.
    """

    status: OptimizerStatus
    iterations: int
    n_evaluations: int
    objective: float
    message: str
    objective_trace: tuple[float, ...] = field(default=(), repr=False)
    """Objective at the starting point and after each accepted iteration."""


# ------------------------------------------------------------------ #
# Internal state
# ------------------------------------------------------------------ #


class _EarlyStop(Exception):
    """Raised inside scipy callbacks to end the run from the driver side."""

    def __init__(self, status: OptimizerStatus, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass
class _DriverState:
    started: float
    n_evaluations: int = 0
    iterations: int = 0
    last_x: np.ndarray | None = None
    last_f: float = np.nan
    accepted_x: np.ndarray | None = None
    accepted_f: float = np.nan
    trace: list[float] = field(default_factory=list)

    def elapsed(self) -> float:
        return time.monotonic() - self.started


# ------------------------------------------------------------------ #
# scipy status mapping
# ------------------------------------------------------------------ #

_BUDGET_MARKERS = (
    "TOTAL NO. OF",
    "MAXIMUM NUMBER",
    "MAX. NUMBER",
    "ITERATION LIMIT",
    "ITERATIONS REACHED",
)
_FTOL_MARKERS = ("REL REDUCTION OF F", "RELATIVE REDUCTION OF F")
_ROUNDOFF_MARKERS = (
    "ABNORMAL",
    "PRECISION LOSS",
    "LINE SEARCH",
    "LINEAR SEARCH",
    "LINESEARCH",
    "POSITIVE DIRECTIONAL",
)


def _status_from_scipy(result: sp_optimize.OptimizeResult) -> OptimizerStatus:
    """Translate a scipy ``OptimizeResult`` into an :class:`OptimizerStatus`."""
    message = str(result.get("message", "")).upper().replace("_", " ")
    if not np.isfinite(result.fun):
        return OptimizerStatus.FAILURE
    if result.success:
        if any(marker in message for marker in _FTOL_MARKERS):
            return OptimizerStatus.FTOL_REACHED
        return OptimizerStatus.SUCCESS
    if any(marker in message for marker in _BUDGET_MARKERS):
        return OptimizerStatus.MAXEVAL_REACHED
    if any(marker in message for marker in _ROUNDOFF_MARKERS):
        return OptimizerStatus.ROUNDOFF_LIMITED
    return OptimizerStatus.FAILURE


def _scipy_options(config: OptimizerConfig) -> dict[str, Any]:
    options: dict[str, Any] = {}
    method = config.algorithm
    if config.maxiter is not None:
        options["maxiter"] = config.maxiter
    if config.maxeval is not None and method in ("L-BFGS-B", "TNC"):
        options["maxfun"] = config.maxeval
    if config.gtol is not None and method in ("L-BFGS-B", "BFGS", "CG", "TNC"):
        options["gtol"] = config.gtol
    if config.ftol_rel is not None and method == "L-BFGS-B":
        options["ftol"] = config.ftol_rel
    return options


# ------------------------------------------------------------------ #
# Driver
# ------------------------------------------------------------------ #


def _check_accepted_step(
    config: OptimizerConfig,
    x_prev: np.ndarray,
    f_prev: float,
    x_new: np.ndarray,
    f_new: float,
) -> _EarlyStop | None:
    df = abs(f_new - f_prev)
    if config.ftol_abs is not None and df <= config.ftol_abs:
        return _EarlyStop(OptimizerStatus.FTOL_REACHED, "ftol_abs reached")
    if config.ftol_rel is not None and df <= config.ftol_rel * abs(f_new):
        return _EarlyStop(OptimizerStatus.FTOL_REACHED, "ftol_rel reached")

    dx = np.abs(x_new - x_prev)
    if config.xtol_abs is not None and np.all(dx <= config.xtol_abs):
        return _EarlyStop(OptimizerStatus.XTOL_REACHED, "xtol_abs reached")
    if config.xtol_rel is not None and np.all(dx <= config.xtol_rel * np.abs(x_new)):
        return _EarlyStop(OptimizerStatus.XTOL_REACHED, "xtol_rel reached")
    return None


def minimize_objective_on_parameters(
    config: OptimizerConfig,
    objective: ObjectiveFn,
    parameters: np.ndarray,
    context: C,
) -> OptimizerResult:
    """Minimise *objective* starting from, and writing back into, *parameters*.

    Args:
        config: Validated optimizer configuration.  Its ``xtol_abs``
            vector, when set, must have the same length as
            *parameters*.
        objective: ``objective(context, params, grad) -> float``.
        parameters: Flat float64 starting point; overwritten with the
            final iterate.
        context: Passed unchanged as the first argument of every
            objective call.

    Returns:
        An :class:`OptimizerResult`.  Non-convergence is reported
        through its status, never raised.

    Raises:
        ValueError: If *parameters* is not a 1-D float64 array or the
            tolerance vector does not match its length.
        numpy.linalg.LinAlgError: Propagated unchanged from *objective*.
    """
    if (
        not isinstance(parameters, np.ndarray)
        or parameters.ndim != 1
        or parameters.dtype != np.float64
    ):
        msg = "parameters must be a 1-D float64 NumPy array."
        raise ValueError(msg)
    if config.xtol_abs is not None and config.xtol_abs.shape != parameters.shape:
        msg = (
            f"xtol_abs has {config.xtol_abs.shape[0]} entries, "
            f"parameter vector has {parameters.shape[0]}."
        )
        raise ValueError(msg)

    state = _DriverState(started=time.monotonic())

    def fun(x: np.ndarray) -> tuple[float, np.ndarray]:
        if config.maxeval is not None and state.n_evaluations >= config.maxeval:
            raise _EarlyStop(OptimizerStatus.MAXEVAL_REACHED, "maxeval reached")
        if config.maxtime is not None and state.elapsed() >= config.maxtime:
            raise _EarlyStop(OptimizerStatus.MAXTIME_REACHED, "maxtime reached")

        x = np.ascontiguousarray(x, dtype=np.float64)
        grad = np.empty_like(x)
        value = float(objective(context, x, grad))
        state.n_evaluations += 1
        state.last_x = x.copy()
        state.last_f = value
        if state.accepted_x is None:
            state.accepted_x = state.last_x
            state.accepted_f = value
            state.trace.append(value)
        return value, grad

    def callback(xk: np.ndarray) -> None:
        if state.last_x is not None and np.array_equal(xk, state.last_x):
            value = state.last_f
        else:
            value, _ = fun(xk)
        x_prev, f_prev = state.accepted_x, state.accepted_f
        state.iterations += 1
        state.accepted_x = np.array(xk, dtype=np.float64, copy=True)
        state.accepted_f = value
        state.trace.append(value)
        logger.debug("iteration %d: objective=%.10g", state.iterations, value)

        stop = _check_accepted_step(config, x_prev, f_prev, state.accepted_x, value)
        if stop is not None:
            raise stop
        if config.maxtime is not None and state.elapsed() >= config.maxtime:
            raise _EarlyStop(OptimizerStatus.MAXTIME_REACHED, "maxtime reached")

    logger.info(
        "Starting %s on %d parameters", config.algorithm, parameters.shape[0]
    )
    try:
        result = sp_optimize.minimize(
            fun,
            parameters.copy(),
            method=config.algorithm,
            jac=True,
            callback=callback,
            options=_scipy_options(config),
        )
    except _EarlyStop as stop:
        status, message = stop.status, stop.message
        # accepted_x is None only when the budget was zero.
        if state.accepted_x is not None:
            parameters[...] = state.accepted_x
        final_f = state.accepted_f
        iterations = state.iterations
    else:
        parameters[...] = result.x
        status = _status_from_scipy(result)
        message = str(result.get("message", ""))
        final_f = float(result.fun)
        iterations = state.iterations

    log = logger.info if status.is_success else logger.warning
    log(
        "%s finished: status=%s iterations=%d evaluations=%d objective=%.10g (%s)",
        config.algorithm,
        status.name,
        iterations,
        state.n_evaluations,
        final_f,
        message,
    )
    return OptimizerResult(
        status=status,
        iterations=iterations,
        n_evaluations=state.n_evaluations,
        objective=final_f,
        message=message,
        objective_trace=tuple(state.trace),
    )


__all__ = [
    "ObjectiveFn",
    "OptimizerResult",
    "OptimizerStatus",
    "minimize_objective_on_parameters",
]
