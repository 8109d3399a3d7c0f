"""Input compatibility layer for pandas and optional Polars inputs.

The public entry points accept NumPy arrays, pandas objects and Polars
DataFrames for the observation matrices.  Everything is converted to a
float64 NumPy array at the boundary so that the packing layer and the
evaluators only ever see plain contiguous arrays.

Polars is **not** a required dependency.  If it is not installed, only
NumPy and pandas inputs are recognised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeAlias

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

# Polars is optional.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "input") -> pd.DataFrame:
    """Convert *obj* to a :class:`pandas.DataFrame` if necessary.

    Accepted types:
        * ``pandas.DataFrame`` — returned as-is.
        * ``polars.DataFrame`` — converted via ``.to_pandas()``.
        * ``polars.LazyFrame`` — collected then converted.

    Raises:
        TypeError: If *obj* is not a recognised DataFrame type.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            return obj.collect().to_pandas()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )


def _is_frame(obj: Any) -> bool:
    if isinstance(obj, pd.DataFrame):
        return True
    return _HAS_POLARS and isinstance(obj, (pl.DataFrame, pl.LazyFrame))


def _as_float_array(obj: Any, *, name: str, ndim: int) -> np.ndarray:
    """Return *obj* as a C-contiguous float64 array with *ndim* dimensions.

    DataFrames (pandas or Polars) go through :func:`_ensure_pandas_df`;
    a pandas ``Series`` or 1-D array passed where a matrix is expected
    is treated as a single column.

    Raises:
        ValueError: If the input cannot be shaped to *ndim* dimensions.
    """
    if _is_frame(obj):
        values = _ensure_pandas_df(obj, name=name).to_numpy(dtype=float)
    elif isinstance(obj, pd.Series):
        values = obj.to_numpy(dtype=float)
    else:
        values = np.asarray(obj, dtype=float)

    if ndim == 2 and values.ndim == 1:
        values = values[:, None]
    if ndim == 1 and values.ndim == 2 and 1 in values.shape:
        values = values.ravel()
    if values.ndim != ndim:
        msg = f"'{name}' must be {ndim}-dimensional, got shape {values.shape}."
        raise ValueError(msg)
    return np.ascontiguousarray(values)
