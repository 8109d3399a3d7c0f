"""Starting values for a full-model fit.

The ELBO is not concave jointly in ``(Theta, M, S)``, and a poor start
(e.g. ``M = 0`` with large counts) can leave the quasi-Newton optimizer
far from the optimum for many iterations.  :func:`initial_parameters`
uses the usual log-linear approximation instead: each response column
is regressed on the covariates by weighted least squares,

    log(1 + Y_j) − O_j  ≈  X θ_j,

the coefficients give ``Theta``, the residuals give ``M``, and ``S``
starts at a small constant.
"""

from __future__ import annotations

import logging

import numpy as np
import statsmodels.api as sm

logger = logging.getLogger(__name__)

DEFAULT_S = 0.1
"""Initial variational standard deviation."""


def initial_parameters(
    Y: np.ndarray,
    X: np.ndarray,
    O: np.ndarray,  # noqa: E741
    w: np.ndarray,
    *,
    s_init: float = DEFAULT_S,
) -> dict[str, np.ndarray]:
    """Weighted least-squares starting point for :func:`~plnvi.optimize_full`.

    Args:
        Y: Counts ``(n, p)``.
        X: Covariates ``(n, d)``.
        O: Offsets ``(n, p)``.
        w: Observation weights ``(n,)``.
        s_init: Constant initial value for every entry of ``S``.

    Returns:
        ``{"Theta": (p, d), "M": (n, p), "S": (n, p)}``.

    Raises:
        ValueError: If *s_init* is not strictly positive.
    """
    if not s_init > 0:
        msg = f"s_init must be strictly positive, got {s_init}."
        raise ValueError(msg)

    Y = np.asarray(Y, dtype=float)
    X = np.asarray(X, dtype=float)
    O = np.asarray(O, dtype=float)  # noqa: E741
    w = np.asarray(w, dtype=float)
    n, p = Y.shape

    log_counts = np.log1p(Y) - O
    Theta = np.empty((p, X.shape[1]))
    M = np.empty((n, p))
    for j in range(p):
        fit = sm.WLS(log_counts[:, j], X, weights=w).fit()
        Theta[j] = fit.params
        M[:, j] = fit.resid
    logger.debug("Initialized Theta by WLS on %d response columns", p)

    return {"Theta": Theta, "M": M, "S": np.full((n, p), float(s_init))}


__all__ = ["DEFAULT_S", "initial_parameters"]
