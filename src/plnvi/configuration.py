"""Optimizer configuration and per-coordinate tolerance construction.

A configuration record is any mapping (a plain ``dict`` in practice)
with the keys below.  Absent keys leave the optimizer's own default in
place; unknown keys are ignored.

============  ===========================================================
Key           Meaning
============  ===========================================================
algorithm     ``scipy.optimize.minimize`` method (default ``"L-BFGS-B"``);
              ``"LBFGS"`` and ``"TNEWTON"`` are accepted as aliases.
maxeval       Maximum number of objective evaluations.
maxiter       Maximum number of accepted iterations.
maxtime       Wall-clock budget in seconds.
ftol_rel      Relative objective change between accepted iterations.
ftol_abs      Absolute objective change between accepted iterations.
xtol_rel      Relative parameter change between accepted iterations.
xtol_abs      Absolute parameter change: a scalar, or a mapping from
              block name to a scalar / block-shaped matrix.
gtol          Gradient tolerance forwarded to the scipy method.
============  ===========================================================

The ``xtol_abs`` value is a tagged union resolved once, when the
configuration is built against a :class:`~plnvi.packing.ParameterLayout`:

* :class:`UniformTolerance` — the same absolute tolerance for every
  flattened coordinate.
* :class:`PerBlockTolerance` — one tolerance per named block, scattered
  through the layout into a flat vector aligned coordinate-for-coordinate
  with the parameter vector.

All validation happens here, before any optimization work begins.
"""

from __future__ import annotations

import logging
import math
import numbers
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .packing import ParameterLayout

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Algorithms
# ------------------------------------------------------------------ #

_METHODS = ("L-BFGS-B", "BFGS", "CG", "TNC", "SLSQP")

_ALIASES = {
    "LBFGS": "L-BFGS-B",
    "TNEWTON": "TNC",
}

DEFAULT_ALGORITHM = "L-BFGS-B"


def resolve_algorithm(name: str) -> str:
    """Map a user-facing algorithm name to a scipy method name.

    Matching is case-insensitive.

    Raises:
        ValueError: If *name* is neither a supported method nor an alias.
    """
    key = str(name).strip().upper()
    if key in _ALIASES:
        return _ALIASES[key]
    for method in _METHODS:
        if key == method.upper():
            return method
    msg = (
        f"Unknown algorithm {name!r}. Choose from: "
        f"{list(_METHODS) + sorted(_ALIASES)}."
    )
    raise ValueError(msg)


# ------------------------------------------------------------------ #
# xtol_abs tagged union
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class UniformTolerance:
    """Same absolute tolerance for every flattened coordinate."""

    value: float

    def resolve(self, layout: ParameterLayout) -> np.ndarray:
        return np.full(layout.packed_size, self.value, dtype=np.float64)


@dataclass(frozen=True)
class PerBlockTolerance:
    """Absolute tolerance given separately for each named block.

    Each entry is either a scalar (broadcast over the block) or a
    matrix of exactly the block's shape.
    """

    blocks: Mapping[str, Any]

    def resolve(self, layout: ParameterLayout) -> np.ndarray:
        """Scatter the per-block tolerances into a flat vector.

        Raises:
            ValueError: If a layout block is missing, an unknown block
                is named, a matrix has the wrong shape, or a value is
                negative.
        """
        missing = [name for name in layout.names if name not in self.blocks]
        if missing:
            msg = f"xtol_abs is missing tolerances for block(s) {missing}."
            raise ValueError(msg)
        unknown = [name for name in self.blocks if name not in layout]
        if unknown:
            msg = (
                f"xtol_abs names unknown block(s) {unknown}; "
                f"expected {list(layout.names)}."
            )
            raise ValueError(msg)

        packed = np.empty(layout.packed_size, dtype=np.float64)
        for spec in layout:
            value = np.asarray(self.blocks[spec.name], dtype=np.float64)
            if value.ndim == 0:
                value = np.full(spec.shape, float(value))
            layout.assign(spec.name, packed, value)
        if np.any(packed < 0) or not np.all(np.isfinite(packed)):
            msg = "xtol_abs tolerances must be finite and non-negative."
            raise ValueError(msg)
        return packed


XtolAbs = UniformTolerance | PerBlockTolerance


def parse_xtol_abs(value: Any) -> XtolAbs:
    """Turn a raw configuration value into an :data:`XtolAbs` variant.

    Raises:
        TypeError: If *value* is neither a real scalar nor a mapping.
        ValueError: If a scalar tolerance is negative or not finite.
    """
    if isinstance(value, (UniformTolerance, PerBlockTolerance)):
        return value
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        scalar = float(value)
        if scalar < 0 or not np.isfinite(scalar):
            msg = f"xtol_abs must be finite and non-negative, got {scalar}."
            raise ValueError(msg)
        return UniformTolerance(scalar)
    if isinstance(value, Mapping):
        return PerBlockTolerance(dict(value))
    msg = (
        "xtol_abs must be a scalar or a mapping from block name to "
        f"tolerance, got {type(value).__name__}."
    )
    raise TypeError(msg)


# ------------------------------------------------------------------ #
# OptimizerConfig
# ------------------------------------------------------------------ #

_INT_KEYS = ("maxeval", "maxiter")
_FLOAT_KEYS = ("maxtime", "ftol_rel", "ftol_abs", "xtol_rel", "gtol")
_KNOWN_KEYS = frozenset(("algorithm", "xtol_abs") + _INT_KEYS + _FLOAT_KEYS)


def _non_negative(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        msg = f"'{name}' must be a number, got {type(value).__name__}."
        raise TypeError(msg)
    if not math.isfinite(float(value)):
        msg = f"'{name}' must be finite, got {value}."
        raise ValueError(msg)
    if kind is int and float(value) != int(value):
        msg = f"'{name}' must be an integer, got {value}."
        raise ValueError(msg)
    converted = kind(value)
    if converted < 0:
        msg = f"'{name}' must be non-negative, got {value}."
        raise ValueError(msg)
    return converted


@dataclass(frozen=True)
class OptimizerConfig:
    """Validated optimizer settings with a resolved tolerance vector.

    Build with :meth:`from_mapping`.  ``xtol_abs`` is ``None`` when the
    configuration did not set it; otherwise it is a flat array of
    length ``layout.packed_size``.
    """

    algorithm: str = DEFAULT_ALGORITHM
    maxeval: int | None = None
    maxiter: int | None = None
    maxtime: float | None = None
    ftol_rel: float | None = None
    ftol_abs: float | None = None
    xtol_rel: float | None = None
    gtol: float | None = None
    xtol_abs: np.ndarray | None = field(default=None, repr=False)

    @classmethod
    def from_mapping(
        cls,
        configuration: Mapping[str, Any] | None,
        layout: ParameterLayout,
    ) -> OptimizerConfig:
        """Validate *configuration* and resolve it against *layout*.

        Raises:
            TypeError: On non-numeric values or a malformed ``xtol_abs``.
            ValueError: On negative values, an unknown algorithm, or a
                per-block ``xtol_abs`` that does not match *layout*.
        """
        configuration = dict(configuration or {})

        ignored = sorted(set(configuration) - _KNOWN_KEYS)
        if ignored:
            logger.debug("Ignoring unrecognised configuration keys: %s", ignored)

        kwargs: dict[str, Any] = {}
        if configuration.get("algorithm") is not None:
            kwargs["algorithm"] = resolve_algorithm(configuration["algorithm"])
        for key in _INT_KEYS:
            if configuration.get(key) is not None:
                kwargs[key] = _non_negative(key, configuration[key], int)
        for key in _FLOAT_KEYS:
            if configuration.get(key) is not None:
                kwargs[key] = _non_negative(key, configuration[key], float)
        if configuration.get("xtol_abs") is not None:
            tolerance = parse_xtol_abs(configuration["xtol_abs"])
            kwargs["xtol_abs"] = tolerance.resolve(layout)

        return cls(**kwargs)


__all__ = [
    "DEFAULT_ALGORITHM",
    "OptimizerConfig",
    "PerBlockTolerance",
    "UniformTolerance",
    "XtolAbs",
    "parse_xtol_abs",
    "resolve_algorithm",
]
