"""Model-selection criteria for a fitted PLN model.

The variational log-likelihood ``J = Σ_i w_i J_i`` is a lower bound on
the marginal log-likelihood, and the usual penalized criteria are built
on it:

* **BIC** — ``J − ½ log(n) · k`` with ``k = p·d + p(p+1)/2`` free
  parameters (regression coefficients plus a full symmetric
  covariance).
* **Entropy** — entropy of the Gaussian variational posterior,
  ``½ Σ_i w_i Σ_j log(2πe S²_ij)``.
* **ICL** — ``BIC − entropy``, which additionally penalizes diffuse
  posteriors.

All criteria follow the "larger is better" convention.
"""

from __future__ import annotations

import math

import numpy as np

from ._results import FullFitResult


def n_parameters(p: int, d: int) -> int:
    """Number of free model parameters with a full covariance."""
    return p * d + p * (p + 1) // 2


def variational_entropy(S: np.ndarray, w: np.ndarray) -> float:
    """Weighted entropy of the Gaussian variational posterior."""
    S2 = np.asarray(S, dtype=float) ** 2
    per_obs = np.sum(np.log(2.0 * math.pi * math.e * S2), axis=1)
    return 0.5 * float(np.asarray(w, dtype=float) @ per_obs)


def compute_criteria(result: FullFitResult) -> dict[str, float]:
    """Return log-likelihood, BIC, entropy and ICL for a full-model fit.

    Returns:
        Dict with keys ``"loglik"``, ``"n_params"``, ``"BIC"``,
        ``"entropy"`` and ``"ICL"``.
    """
    n, p = result.M.shape
    d = result.Theta.shape[1]
    weights = result.Ji.weights

    loglik = result.Ji.total(weighted=True)
    k = n_parameters(p, d)
    bic = loglik - 0.5 * math.log(n) * k
    entropy = variational_entropy(result.S, weights)
    return {
        "loglik": loglik,
        "n_params": float(k),
        "BIC": bic,
        "entropy": entropy,
        "ICL": bic - entropy,
    }


__all__ = ["compute_criteria", "n_parameters", "variational_entropy"]
