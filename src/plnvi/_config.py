"""Evaluator selection policy.

The optimizer is always ``scipy.optimize.minimize``; what can change is
the code that computes each objective and gradient.  Two evaluators
exist, ``"numpy"`` (always installed) and ``"jax"`` (JIT-compiled,
optional extra).

The active evaluator is decided, first match wins, by:

    1. A call to :func:`set_backend` with ``"numpy"`` or ``"jax"``.
    2. ``PLNVI_BACKEND`` in the environment.
    3. ``"jax"`` when it can be imported, ``"numpy"`` otherwise.

A ``backend=`` argument passed to an entry point bypasses all three.

Examples:
    From the shell::

        PLNVI_BACKEND=numpy python fit.py

    From Python::

        import plnvi
        plnvi.set_backend("numpy")
        ...
        plnvi.set_backend("auto")   # back to steps 2-3
"""

from __future__ import annotations

import os

_ENV_VAR = "PLNVI_BACKEND"
_EVALUATORS = ("numpy", "jax")
_CHOICES = frozenset(_EVALUATORS + ("auto",))

# None (or "auto") means "defer to the environment".
_backend_override: str | None = None


def _jax_is_available() -> bool:
    """Whether ``import jax`` succeeds."""
    try:
        import jax  # noqa: F401
    except ImportError:
        return False
    return True


def get_backend() -> str:
    """Name of the evaluator that entry points use by default.

    Returns:
        ``"numpy"`` or ``"jax"``.
    """
    if _backend_override in _EVALUATORS:
        return _backend_override

    from_env = os.environ.get(_ENV_VAR, "").strip().lower()
    if from_env in _EVALUATORS:
        return from_env

    return "jax" if _jax_is_available() else "numpy"


def set_backend(name: str) -> None:
    """Pin the default evaluator, or pass ``"auto"`` to release the pin.

    Raises:
        ValueError: If *name* is not ``"numpy"``, ``"jax"`` or ``"auto"``
            (case-insensitive).
    """
    global _backend_override
    choice = name.strip().lower()
    if choice not in _CHOICES:
        msg = f"Unknown backend {name!r}; expected one of {sorted(_CHOICES)}."
        raise ValueError(msg)
    _backend_override = choice
