"""NumPy / SciPy evaluator backend (always available).

Closed-form negative ELBO and gradients of the Poisson-lognormal model
with a fully parametrized covariance, written directly against the
packing layout: parameter blocks are read as read-only views of the
candidate vector, and each gradient block is written in place into the
optimizer's gradient buffer.

Notation
~~~~~~~~
With weights ``w`` (``W = diag(w)``), ``w̄ = Σ w`` and ``S² = S ⊙ S``::

    Z   = O + X Θᵀ + M                    linear predictor      (n, p)
    A   = exp(Z + S²/2)                   variational Poisson mean
    nΣ  = Mᵀ W M + diag(wᵀ S²)            weighted scatter       (p, p)
    Ω   = w̄ · nΣ⁻¹                        precision (full model)

The full-model objective carries ``−½ w̄ log det Ω``; the VE-step
objective replaces it with ``½ tr(Ω nΣ)`` for a fixed ``Ω``.  Both
share the M and S gradients::

    ∂/∂M = W (M Ω + A − Y)
    ∂/∂S = W (S ⊙ diag(Ω)ᵀ + S ⊙ A − 1/S)

Linear algebra
~~~~~~~~~~~~~~
``nΣ`` is factorized once per evaluation with ``scipy.linalg.cho_factor``.
The Cholesky factor gives both the inverse (``cho_solve`` against the
identity) and the log-determinant (twice the sum of the log-diagonal),
and fails loudly with :class:`numpy.linalg.LinAlgError` when ``nΣ`` is
not positive-definite.  That error is fatal: it is not caught here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from scipy import linalg as sp_linalg

if TYPE_CHECKING:
    from .._context import EvaluationContext

# ------------------------------------------------------------------ #
# Shared linear-algebra helpers
# ------------------------------------------------------------------ #


def inv_sympd(matrix: np.ndarray) -> tuple[np.ndarray, float]:
    """Invert a symmetric positive-definite matrix.

    Returns:
        ``(inverse, log_det)`` where ``log_det`` is the log-determinant
        of *matrix* (not of its inverse).  The inverse is symmetrized
        to remove roundoff asymmetry.

    Raises:
        numpy.linalg.LinAlgError: If *matrix* is not finite or not
            positive-definite.
    """
    if not np.all(np.isfinite(matrix)):
        msg = "Covariance matrix contains non-finite entries."
        raise np.linalg.LinAlgError(msg)
    factor, lower = sp_linalg.cho_factor(matrix, lower=True, check_finite=False)
    diag = np.diag(factor)
    if np.any(diag <= 0) or not np.all(np.isfinite(diag)):
        msg = "Covariance matrix is not positive-definite."
        raise np.linalg.LinAlgError(msg)
    inverse = sp_linalg.cho_solve(
        (factor, lower), np.eye(matrix.shape[0]), check_finite=False
    )
    inverse = 0.5 * (inverse + inverse.T)
    return inverse, 2.0 * float(np.sum(np.log(diag)))


def weighted_scatter(M: np.ndarray, S2: np.ndarray, w: np.ndarray) -> np.ndarray:
    """Return ``Mᵀ diag(w) M + diag(wᵀ S²)``."""
    return M.T @ (M * w[:, None]) + np.diag(w @ S2)


def _ms_gradients(
    M: np.ndarray,
    S: np.ndarray,
    A: np.ndarray,
    Y: np.ndarray,
    w: np.ndarray,
    Omega: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    grad_M = w[:, None] * (M @ Omega + A - Y)
    grad_S = w[:, None] * (S * np.diag(Omega)[None, :] + S * A - 1.0 / S)
    return grad_M, grad_S


# ------------------------------------------------------------------ #
# NumpyBackend
# ------------------------------------------------------------------ #


class NumpyBackend:
    """NumPy evaluator backend.

    Stateless; a single cached instance serves every optimization call.
    """

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:
        return True

    def full_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        layout = context.layout
        Y, X, O, w = context.Y, context.X, context.O, context.w
        Theta = layout.map("Theta", params, readonly=True)
        M = layout.map("M", params, readonly=True)
        S = layout.map("S", params, readonly=True)

        S2 = S * S
        Z = O + X @ Theta.T + M
        A = np.exp(Z + 0.5 * S2)
        inverse, log_det_scatter = inv_sympd(weighted_scatter(M, S2, w))
        Omega = context.w_bar * inverse
        # log det(w̄ · nΣ⁻¹) = p log w̄ − log det nΣ
        log_det_omega = Y.shape[1] * np.log(context.w_bar) - log_det_scatter

        objective = float(np.sum(w @ (A - Y * Z - 0.5 * np.log(S2))))
        objective -= 0.5 * context.w_bar * log_det_omega

        grad_M, grad_S = _ms_gradients(M, S, A, Y, w, Omega)
        layout.map("Theta", grad)[...] = (A - Y).T @ (X * w[:, None])
        layout.map("M", grad)[...] = grad_M
        layout.map("S", grad)[...] = grad_S
        return objective

    def vestep_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        layout = context.layout
        Y, X, O, w = context.Y, context.X, context.O, context.w
        Theta, Omega = context.Theta, context.Omega
        M = layout.map("M", params, readonly=True)
        S = layout.map("S", params, readonly=True)

        S2 = S * S
        Z = O + X @ Theta.T + M
        A = np.exp(Z + 0.5 * S2)
        n_sigma = weighted_scatter(M, S2, w)

        objective = float(np.sum(w @ (A - Y * Z - 0.5 * np.log(S2))))
        objective += 0.5 * float(np.sum(Omega * n_sigma))  # tr(Ω nΣ), nΣ symmetric

        grad_M, grad_S = _ms_gradients(M, S, A, Y, w, Omega)
        layout.map("M", grad)[...] = grad_M
        layout.map("S", grad)[...] = grad_S
        return objective
