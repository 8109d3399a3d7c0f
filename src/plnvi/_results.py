"""Typed result objects for PLN optimizations.

Frozen dataclasses that provide:

* **Attribute access** — ``result.Theta``, ``result.monitoring``, etc.
* **Dict-like access** — ``result["Theta"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

Two result types mirror the two entry points:

* :class:`FullFitResult` — ``optimize_full`` (model and variational
  parameters, derived covariance/precision, per-observation
  log-likelihood, monitoring).
* :class:`VEStepResult` — ``optimize_vestep`` (variational parameters
  and log-likelihood for fixed model parameters).

Per-observation log-likelihoods are :class:`LogLikelihood` records that
keep the observation weights next to the values instead of folding
them in, so downstream code chooses weighted or unweighted summaries.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar

import numpy as np
import pandas as pd

from .optimizer import OptimizerStatus

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, np.floating
    and nested result records so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, (_DictAccessMixin, LogLikelihood)):
        return obj.to_dict()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test

    Subclasses may override ``_SERIALIZERS`` to register custom
    conversion functions for non-primitive fields.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "status": int,
    }

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# LogLikelihood
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LogLikelihood:
    """Per-observation variational log-likelihood with attached weights.

    ``values[i]`` is the unweighted lower bound for observation *i*;
    ``weights[i]`` is its weight in the fit.  NumPy functions see the
    values (``np.asarray(ll)``).
    """

    values: np.ndarray
    weights: np.ndarray

    def __len__(self) -> int:
        return self.values.shape[0]

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        if dtype is None:
            return self.values
        return self.values.astype(dtype)

    def total(self, *, weighted: bool = True) -> float:
        """Sum of the values, weighted by default."""
        if weighted:
            return float(self.weights @ self.values)
        return float(np.sum(self.values))

    def to_series(self, index: Any = None, name: str = "loglik") -> pd.Series:
        """Export as a pandas ``Series`` with weights in ``attrs["weights"]``."""
        series = pd.Series(self.values, index=index, name=name)
        series.attrs["weights"] = self.weights.copy()
        return series

    def to_dict(self) -> dict[str, Any]:
        return {"values": self.values.tolist(), "weights": self.weights.tolist()}


# ------------------------------------------------------------------ #
# Monitoring
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Monitoring(_DictAccessMixin):
    """Optimizer bookkeeping attached to a :class:`FullFitResult`."""

    status: OptimizerStatus
    """Termination code; ``status.is_success`` for success-class codes."""

    backend: str
    """Optimizer backend name (``"scipy"``)."""

    iterations: int
    """Accepted optimizer iterations."""

    evaluator: str
    """Evaluator backend that computed objective and gradients."""

    n_evaluations: int
    """Objective/gradient evaluations."""

    objective: float
    """Final negative ELBO."""

    message: str
    """Termination message from the optimizer or the driver."""


# ------------------------------------------------------------------ #
# FullFitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FullFitResult(_DictAccessMixin):
    """Result of a full-model fit (``Theta``, ``M``, ``S`` optimized)."""

    # ---- Model parameters ----------------------------------------
    Theta: np.ndarray
    """Regression coefficients ``(p, d)``."""

    # ---- Variational parameters ----------------------------------
    M: np.ndarray
    """Variational means ``(n, p)``."""

    S: np.ndarray
    """Variational standard deviations ``(n, p)``."""

    # ---- Derived quantities --------------------------------------
    Z: np.ndarray
    """Linear predictor ``O + X Θᵀ + M``."""

    A: np.ndarray
    """Variational Poisson mean ``exp(Z + S²/2)``."""

    Sigma: np.ndarray
    """Latent covariance ``(p, p)``."""

    Omega: np.ndarray
    """Latent precision ``Sigma⁻¹``."""

    Ji: LogLikelihood
    """Per-observation log-likelihood with weights attached."""

    monitoring: Monitoring


# ------------------------------------------------------------------ #
# VEStepResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class VEStepResult(_DictAccessMixin):
    """Result of a variational E-step (``M``, ``S`` optimized)."""

    status: OptimizerStatus
    iterations: int
    M: np.ndarray
    S: np.ndarray
    loglik: LogLikelihood


__all__ = [
    "FullFitResult",
    "LogLikelihood",
    "Monitoring",
    "VEStepResult",
]
