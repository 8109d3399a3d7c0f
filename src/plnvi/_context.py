"""Evaluation context, the explicit argument of every objective call.

An :class:`EvaluationContext` bundles everything the objective/gradient
evaluators need besides the candidate parameter vector: the observation
matrices, the weights, the packing layout, and (for the VE-step) the
fixed model parameters.  The optimizer driver passes it by reference
on every call::

    objective(context, params, grad) -> float

so the data an evaluator reads is visible in its signature instead of
being captured implicitly.

Lifecycle::

    ┌──────────────────────────────────────────────┐
    │  optimize_full() / optimize_vestep()         │
    │  ├─ layout = ParameterLayout(...)            │
    │  ├─ ctx = EvaluationContext(Y, X, O, w, …)   │
    │  ├─ minimize_objective_on_parameters(        │
    │  │      config, backend.<objective>,         │
    │  │      parameters, ctx)                     │
    │  │   └─ objective(ctx, x, grad)  × many      │
    │  └─ result assembly reads ctx.Y, ctx.w, …    │
    └──────────────────────────────────────────────┘

The context is created per optimization call and never shared between
calls, which is what makes independent calls safe to run concurrently.
Its arrays are treated as read-only by every consumer.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .packing import ParameterLayout


@dataclass
class EvaluationContext:
    """Data and fixed parameters for one optimization call."""

    # ---- Layout --------------------------------------------------
    layout: ParameterLayout
    """Packing layout of the optimized blocks."""

    # ---- Observations --------------------------------------------
    Y: np.ndarray
    """Counts ``(n, p)``."""

    X: np.ndarray
    """Covariates ``(n, d)``."""

    O: np.ndarray  # noqa: E741
    """Offsets ``(n, p)``."""

    w: np.ndarray
    """Observation weights ``(n,)``."""

    # ---- Fixed model parameters (VE-step only) -------------------
    Theta: np.ndarray | None = None
    """Regression coefficients ``(p, d)`` held fixed during a VE-step."""

    Omega: np.ndarray | None = None
    """Precision matrix ``(p, p)`` held fixed during a VE-step."""

    # ---- Derived -------------------------------------------------
    w_bar: float = field(init=False)
    """Total weight ``Σ w``."""

    def __post_init__(self) -> None:
        self.w_bar = float(np.sum(self.w))

    @property
    def n_samples(self) -> int:
        return self.Y.shape[0]

    @property
    def n_responses(self) -> int:
        return self.Y.shape[1]

    @property
    def n_covariates(self) -> int:
        return self.X.shape[1]


__all__ = ["EvaluationContext"]
