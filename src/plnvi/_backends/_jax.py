"""JAX evaluator backend.

The same closed-form objectives and gradients as
:mod:`._numpy`, compiled with ``jax.jit`` into fused XLA kernels.  The
gradients stay analytic (no ``jax.grad``): the closed forms are cheap
and keep both backends numerically interchangeable.

NumPy ↔ JAX boundary convention
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The optimizer only ever sees NumPy:

* **Inbound:** parameter views from the layout and the context arrays
  are converted with ``jnp.asarray(..., dtype=jnp.float64)``.
* **Outbound:** gradient blocks are materialised with ``np.asarray``
  and written into the optimizer's buffer through the layout, and the
  objective is returned as a Python ``float``.

Float64
~~~~~~~
``jax_enable_x64`` is switched on at import.  The objective contains
``log det Ω`` and ``exp(Z)`` terms whose roundoff in float32 is large
enough to stall the line search of a quasi-Newton method.

Positive-definiteness
~~~~~~~~~~~~~~~~~~~~~
``jnp.linalg.cholesky`` does not raise on a non positive-definite
input; it returns NaNs.  The kernels therefore return a finiteness
flag alongside the results, and the backend raises
:class:`numpy.linalg.LinAlgError` on the host when it is unset.

Graceful degradation
~~~~~~~~~~~~~~~~~~~~
If JAX is not installed, :class:`JaxBackend` can still be instantiated
but ``is_available`` returns ``False`` and
:func:`~plnvi._backends.resolve_backend` raises ``ImportError`` when
this backend is explicitly requested.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .._context import EvaluationContext

try:
    import jax

    jax.config.update("jax_enable_x64", True)

    import jax.numpy as jnp
    from jax import jit
    from jax.scipy import linalg as jsp_linalg

    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


# ------------------------------------------------------------------ #
# JIT kernels (defined only when JAX is importable)
# ------------------------------------------------------------------ #

if _CAN_IMPORT_JAX:

    def _forward(Theta, M, S, Y, X, O, w):
        S2 = S * S
        Z = O + X @ Theta.T + M
        A = jnp.exp(Z + 0.5 * S2)
        n_sigma = M.T @ (M * w[:, None]) + jnp.diag(w @ S2)
        data_term = jnp.sum(w @ (A - Y * Z - 0.5 * jnp.log(S2)))
        return S2, A, n_sigma, data_term

    def _ms_gradients(M, S, A, Y, w, Omega):
        grad_M = w[:, None] * (M @ Omega + A - Y)
        grad_S = w[:, None] * (S * jnp.diag(Omega)[None, :] + S * A - 1.0 / S)
        return grad_M, grad_S

    @jit
    def _full_kernel(Theta, M, S, Y, X, O, w):
        """Full-model objective, gradients and a positive-definiteness flag."""
        w_bar = jnp.sum(w)
        _, A, n_sigma, data_term = _forward(Theta, M, S, Y, X, O, w)

        L = jnp.linalg.cholesky(n_sigma)
        inverse = jsp_linalg.cho_solve((L, True), jnp.eye(n_sigma.shape[0]))
        inverse = 0.5 * (inverse + inverse.T)
        Omega = w_bar * inverse
        log_det_omega = n_sigma.shape[0] * jnp.log(w_bar) - 2.0 * jnp.sum(
            jnp.log(jnp.diag(L))
        )
        objective = data_term - 0.5 * w_bar * log_det_omega

        grad_theta = (A - Y).T @ (X * w[:, None])
        grad_M, grad_S = _ms_gradients(M, S, A, Y, w, Omega)
        is_pd = jnp.all(jnp.isfinite(L))
        return objective, grad_theta, grad_M, grad_S, is_pd

    @jit
    def _vestep_kernel(M, S, Theta, Omega, Y, X, O, w):
        """VE-step objective and gradients for fixed ``Theta`` and ``Omega``."""
        _, A, n_sigma, data_term = _forward(Theta, M, S, Y, X, O, w)
        objective = data_term + 0.5 * jnp.trace(Omega @ n_sigma)
        grad_M, grad_S = _ms_gradients(M, S, A, Y, w, Omega)
        return objective, grad_M, grad_S


def _to_jax(value: np.ndarray):
    return jnp.asarray(value, dtype=jnp.float64)


# ------------------------------------------------------------------ #
# JaxBackend
# ------------------------------------------------------------------ #


class JaxBackend:
    """JAX evaluator backend (float64, JIT-compiled)."""

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:
        return _CAN_IMPORT_JAX

    def full_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        layout = context.layout
        objective, grad_theta, grad_M, grad_S, is_pd = _full_kernel(
            _to_jax(layout.map("Theta", params, readonly=True)),
            _to_jax(layout.map("M", params, readonly=True)),
            _to_jax(layout.map("S", params, readonly=True)),
            _to_jax(context.Y),
            _to_jax(context.X),
            _to_jax(context.O),
            _to_jax(context.w),
        )
        if not bool(is_pd):
            msg = "Covariance matrix is not positive-definite."
            raise np.linalg.LinAlgError(msg)

        layout.map("Theta", grad)[...] = np.asarray(grad_theta)
        layout.map("M", grad)[...] = np.asarray(grad_M)
        layout.map("S", grad)[...] = np.asarray(grad_S)
        return float(objective)

    def vestep_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        layout = context.layout
        objective, grad_M, grad_S = _vestep_kernel(
            _to_jax(layout.map("M", params, readonly=True)),
            _to_jax(layout.map("S", params, readonly=True)),
            _to_jax(context.Theta),
            _to_jax(context.Omega),
            _to_jax(context.Y),
            _to_jax(context.X),
            _to_jax(context.O),
            _to_jax(context.w),
        )
        layout.map("M", grad)[...] = np.asarray(grad_M)
        layout.map("S", grad)[...] = np.asarray(grad_S)
        return float(objective)
