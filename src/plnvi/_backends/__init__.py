"""Backend abstraction layer for the objective/gradient evaluators.

Each backend implements the :class:`BackendProtocol` interface: the
negative ELBO of the full PLN model and of the variational E-step,
together with their analytic gradients.  The entry points in
:mod:`plnvi.core` dispatch to the active backend via
:func:`resolve_backend` rather than testing for JAX at every call site.

Resolution follows the policy set by :mod:`.._config`:

1. Per-call ``backend=`` argument of the entry points.
2. Programmatic override via :func:`~plnvi.set_backend`.
3. ``PLNVI_BACKEND`` environment variable.
4. Auto-detection: ``"jax"`` if importable, else ``"numpy"``.

When ``"jax"`` is explicitly requested but JAX is not installed, an
:class:`ImportError` is raised; explicit requests are never silently
degraded.  Only the ``"auto"`` policy falls back to NumPy.

Evaluator contract
~~~~~~~~~~~~~~~~~~
Both evaluator methods share the signature expected by
:func:`~plnvi.optimizer.minimize_objective_on_parameters`::

    objective(context, params, grad) -> float

*params* is read through ``context.layout``; every gradient block is
written into *grad* through the same layout before the method returns.
A non positive-definite covariance raises
:class:`numpy.linalg.LinAlgError`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import numpy as np

from .._config import get_backend

if TYPE_CHECKING:
    from .._context import EvaluationContext

# ------------------------------------------------------------------ #
# BackendProtocol
# ------------------------------------------------------------------ #


@runtime_checkable
class BackendProtocol(Protocol):
    """Interface that every evaluator backend must implement.

    Attributes:
        name: Short identifier (``"numpy"`` or ``"jax"``).
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

    def full_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        """Negative ELBO of the full model over ``(Theta, M, S)``.

        ``Omega`` is rebuilt from ``M`` and ``S`` on every call, so the
        objective includes ``-0.5 * w_bar * log det(Omega)``.
        """
        ...

    def vestep_objective_and_grad(
        self,
        context: EvaluationContext,
        params: np.ndarray,
        grad: np.ndarray,
    ) -> float:
        """Negative ELBO over ``(M, S)`` with ``Theta``/``Omega`` fixed."""
        ...


# ------------------------------------------------------------------ #
# Resolution
# ------------------------------------------------------------------ #


def _make_numpy() -> BackendProtocol:
    from ._numpy import NumpyBackend

    return NumpyBackend()


def _make_jax() -> BackendProtocol:
    from ._jax import JaxBackend

    evaluator = JaxBackend()
    if not evaluator.is_available:
        msg = (
            "The 'jax' evaluator was requested but JAX cannot be imported. "
            "Install the extra (`pip install plnvi[jax]`) or pass "
            "backend='numpy'."
        )
        raise ImportError(msg)
    return evaluator


_FACTORIES = {"numpy": _make_numpy, "jax": _make_jax}

# One stateless instance per evaluator name.
_INSTANCES: dict[str, BackendProtocol] = {}


def resolve_backend(name: str | None = None) -> BackendProtocol:
    """Look up the evaluator for *name*, defaulting to the configured policy.

    Raises:
        ImportError: If JAX is requested by name but not installed.
        ValueError: If *name* is neither ``"numpy"`` nor ``"jax"``.
    """
    key = (get_backend() if name is None else name).strip().lower()
    cached = _INSTANCES.get(key)
    if cached is not None:
        return cached
    try:
        factory = _FACTORIES[key]
    except KeyError:
        msg = f"Unknown backend {name!r}; expected 'numpy' or 'jax'."
        raise ValueError(msg) from None
    _INSTANCES[key] = evaluator = factory()
    return evaluator
