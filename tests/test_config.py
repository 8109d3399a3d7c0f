"""Tests for the evaluator backend configuration system."""

import os

import pytest

from plnvi._backends import BackendProtocol, resolve_backend
from plnvi._config import _jax_is_available, get_backend, set_backend


class TestGetBackend:
    """Tests for get_backend() resolution order."""

    def setup_method(self):
        """Reset state before each test."""
        import plnvi._config as _cfg

        _cfg._backend_override = None
        os.environ.pop("PLNVI_BACKEND", None)

    def teardown_method(self):
        """Reset state after each test."""
        import plnvi._config as _cfg

        _cfg._backend_override = None
        os.environ.pop("PLNVI_BACKEND", None)

    def test_auto_detection_matches_jax_availability(self):
        expected = "jax" if _jax_is_available() else "numpy"
        assert get_backend() == expected

    def test_env_var_overrides_auto(self):
        os.environ["PLNVI_BACKEND"] = "numpy"
        assert get_backend() == "numpy"

    def test_env_var_jax(self):
        os.environ["PLNVI_BACKEND"] = "jax"
        assert get_backend() == "jax"

    def test_env_var_case_insensitive(self):
        os.environ["PLNVI_BACKEND"] = "NumPy"
        assert get_backend() == "numpy"

    def test_unknown_env_var_is_ignored(self):
        os.environ["PLNVI_BACKEND"] = "cupy"
        expected = "jax" if _jax_is_available() else "numpy"
        assert get_backend() == expected

    def test_programmatic_override_wins_over_env(self):
        os.environ["PLNVI_BACKEND"] = "jax"
        set_backend("numpy")
        assert get_backend() == "numpy"

    def test_auto_restores_default(self):
        set_backend("numpy")
        assert get_backend() == "numpy"
        set_backend("auto")
        expected = "jax" if _jax_is_available() else "numpy"
        assert get_backend() == expected


class TestSetBackend:
    """Tests for set_backend() validation."""

    def setup_method(self):
        import plnvi._config as _cfg

        _cfg._backend_override = None

    def teardown_method(self):
        import plnvi._config as _cfg

        _cfg._backend_override = None

    def test_accepts_valid_names(self):
        for name in ("jax", "numpy", "auto"):
            set_backend(name)

    def test_case_insensitive(self):
        set_backend("NUMPY")
        assert get_backend() == "numpy"

    def test_rejects_invalid_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("tensorflow")


class TestResolveBackend:
    def test_numpy_backend(self):
        backend = resolve_backend("numpy")
        assert isinstance(backend, BackendProtocol)
        assert backend.name == "numpy"
        assert backend.is_available

    def test_instances_are_cached(self):
        assert resolve_backend("numpy") is resolve_backend("numpy")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            resolve_backend("cupy")

    def test_jax_backend_when_installed(self):
        pytest.importorskip("jax")
        backend = resolve_backend("jax")
        assert backend.name == "jax"

    def test_public_api_exports(self):
        import plnvi

        assert hasattr(plnvi, "get_backend")
        assert hasattr(plnvi, "set_backend")
