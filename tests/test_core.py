"""End-to-end tests for optimize_full and optimize_vestep."""

import json

import numpy as np
import pandas as pd
import pytest
from scipy.special import gammaln

from plnvi import (
    FullFitResult,
    LogLikelihood,
    OptimizerStatus,
    VEStepResult,
    ki,
    initial_parameters,
    optimize_full,
    optimize_vestep,
)

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def degenerate():
    """Three identical observations of two responses, intercept only."""
    n, p = 3, 2
    return {
        "Y": np.ones((n, p)),
        "X": np.ones((n, 1)),
        "O": np.zeros((n, p)),
        "w": np.ones(n),
        "init": {
            "Theta": np.zeros((p, 1)),
            "M": np.zeros((n, p)),
            "S": np.ones((n, p)),
        },
    }


@pytest.fixture()
def simulated():
    rng = np.random.default_rng(2024)
    n, p = 40, 3
    X = np.column_stack([np.ones(n), rng.standard_normal(n)])
    Theta = np.array([[1.0, 0.5], [0.5, -0.3], [1.5, 0.2]])
    Sigma = np.array([[0.5, 0.2, 0.0], [0.2, 0.4, 0.1], [0.0, 0.1, 0.3]])
    latent = rng.multivariate_normal(np.zeros(p), Sigma, size=n)
    O = np.zeros((n, p))  # noqa: E741
    Y = rng.poisson(np.exp(O + X @ Theta.T + latent)).astype(float)
    w = rng.uniform(0.5, 1.5, size=n)
    return {"Y": Y, "X": X, "O": O, "w": w}


@pytest.fixture(scope="module")
def fitted():
    rng = np.random.default_rng(5)
    n, p = 25, 2
    X = np.column_stack([np.ones(n), rng.standard_normal(n)])
    Y = rng.poisson(np.exp(0.8 + 0.3 * X[:, [1]]), size=(n, p)).astype(float)
    O = np.zeros((n, p))  # noqa: E741
    w = np.ones(n)
    result = optimize_full(None, Y, X, O, w, {"gtol": 1e-8}, backend="numpy")
    return {"Y": Y, "X": X, "O": O, "w": w, "result": result}


# Typical stopping rules for small problems.
CONTROL = {"ftol_rel": 1e-8, "xtol_rel": 1e-6, "maxeval": 10000}


def _fit(case, configuration=None):
    return optimize_full(
        case["init"],
        case["Y"],
        case["X"],
        case["O"],
        case["w"],
        {**CONTROL, **(configuration or {})},
        backend="numpy",
    )


# ------------------------------------------------------------------ #
# ki
# ------------------------------------------------------------------ #


class TestKi:
    def test_zero_counts(self):
        np.testing.assert_allclose(ki(np.zeros((2, 4))), [2.0, 2.0])

    def test_log_factorials(self):
        Y = np.array([[3.0, 0.0], [1.0, 5.0]])
        expected = -np.array([np.log(6.0), np.log(120.0)]) + 1.0
        np.testing.assert_allclose(ki(Y), expected)


# ------------------------------------------------------------------ #
# Full model
# ------------------------------------------------------------------ #


class TestDegenerateFit:
    def test_converges(self, degenerate):
        result = _fit(degenerate)
        assert isinstance(result, FullFitResult)
        assert result.monitoring.status.is_success
        assert result.monitoring.iterations < 200

    def test_default_configuration_stops_on_relative_reduction(self, degenerate):
        result = optimize_full(
            degenerate["init"],
            degenerate["Y"],
            degenerate["X"],
            degenerate["O"],
            degenerate["w"],
            backend="numpy",
        )
        assert result.monitoring.status is OptimizerStatus.FTOL_REACHED
        assert "REDUCTION" in result.monitoring.message.upper()

    def test_outputs_are_well_defined(self, degenerate):
        result = _fit(degenerate)
        assert np.all(result.S > 0)
        assert np.all(np.isfinite(result.A))
        assert np.all(result.A > 0)

    def test_shapes(self, degenerate):
        result = _fit(degenerate)
        assert result.Theta.shape == (2, 1)
        assert result.M.shape == result.S.shape == (3, 2)
        assert result.Z.shape == result.A.shape == (3, 2)
        assert result.Sigma.shape == result.Omega.shape == (2, 2)
        assert len(result.Ji) == 3

    def test_monitoring_fields(self, degenerate):
        monitoring = _fit(degenerate).monitoring
        assert monitoring.backend == "scipy"
        assert monitoring.evaluator == "numpy"
        assert monitoring.n_evaluations >= monitoring.iterations
        assert np.isfinite(monitoring.objective)

    def test_inputs_not_modified(self, degenerate):
        init_m = degenerate["init"]["M"].copy()
        _fit(degenerate)
        np.testing.assert_array_equal(degenerate["init"]["M"], init_m)


class TestFullFitInvariants:
    def test_omega_symmetric_positive_definite(self, fitted):
        Omega = fitted["result"].Omega
        np.testing.assert_allclose(Omega, Omega.T, atol=1e-12)
        assert np.all(np.linalg.eigvalsh(Omega) > 0)

    def test_omega_inverts_sigma(self, fitted):
        result = fitted["result"]
        np.testing.assert_allclose(
            result.Omega @ result.Sigma, np.eye(2), atol=1e-8
        )

    def test_derived_quantities(self, fitted):
        result = fitted["result"]
        np.testing.assert_allclose(
            result.Z, fitted["O"] + fitted["X"] @ result.Theta.T + result.M
        )
        np.testing.assert_allclose(result.A, np.exp(result.Z + 0.5 * result.S**2))

    def test_loglik_matches_objective(self, fitted):
        # Σ w J_i = −objective − Σ w Σ_j log(Y_ij!) at the returned point.
        result = fitted["result"]
        Y, w = fitted["Y"], fitted["w"]
        expected = -result.monitoring.objective - float(
            w @ np.sum(gammaln(Y + 1.0), axis=1)
        )
        assert result.Ji.total(weighted=True) == pytest.approx(expected, rel=1e-8)

    def test_weights_attached(self, fitted):
        Ji = fitted["result"].Ji
        assert isinstance(Ji, LogLikelihood)
        np.testing.assert_array_equal(Ji.weights, fitted["w"])

    def test_to_dict_is_json_serialisable(self, fitted):
        payload = fitted["result"].to_dict()
        json.dumps(payload)
        assert payload["monitoring"]["status"] == int(
            fitted["result"].monitoring.status
        )
        assert set(payload["Ji"]) == {"values", "weights"}

    def test_default_start_is_initial_parameters(self, fitted):
        start = initial_parameters(
            fitted["Y"], fitted["X"], fitted["O"], fitted["w"]
        )
        explicit = optimize_full(
            start,
            fitted["Y"],
            fitted["X"],
            fitted["O"],
            fitted["w"],
            {"gtol": 1e-8},
            backend="numpy",
        )
        result = fitted["result"]
        assert explicit.monitoring.iterations == result.monitoring.iterations
        np.testing.assert_array_equal(explicit.Theta, result.Theta)
        np.testing.assert_array_equal(explicit.M, result.M)


class TestFullFitWeights:
    def test_weights_change_the_fit(self, simulated):
        unit = optimize_full(
            None,
            simulated["Y"],
            simulated["X"],
            simulated["O"],
            np.ones(simulated["Y"].shape[0]),
            backend="numpy",
        )
        weighted = optimize_full(
            None,
            simulated["Y"],
            simulated["X"],
            simulated["O"],
            simulated["w"],
            backend="numpy",
        )
        assert not np.allclose(unit.Theta, weighted.Theta)
        np.testing.assert_array_equal(weighted.Ji.weights, simulated["w"])

    def test_pandas_inputs(self, simulated):
        Y = pd.DataFrame(simulated["Y"], columns=["a", "b", "c"])
        X = pd.DataFrame(simulated["X"], columns=["intercept", "x"])
        w = pd.Series(simulated["w"])
        from_frames = optimize_full(None, Y, X, simulated["O"], w, backend="numpy")
        from_arrays = optimize_full(
            None,
            simulated["Y"],
            simulated["X"],
            simulated["O"],
            simulated["w"],
            backend="numpy",
        )
        np.testing.assert_allclose(from_frames.Theta, from_arrays.Theta)


class TestFullFitConfiguration:
    def test_maxeval_budget(self, degenerate):
        result = _fit(degenerate, {"maxeval": 2})
        assert result.monitoring.status is OptimizerStatus.MAXEVAL_REACHED
        assert result.monitoring.n_evaluations <= 2

    def test_per_block_xtol(self, degenerate):
        result = _fit(
            degenerate, {"xtol_abs": {"Theta": 1e-8, "M": 1e-8, "S": 1e-8}}
        )
        assert result.monitoring.status.is_success

    def test_per_block_missing_block(self, degenerate):
        with pytest.raises(ValueError, match="missing tolerances"):
            _fit(degenerate, {"xtol_abs": {"Theta": 1e-8, "M": 1e-8}})

    def test_unknown_keys_ignored(self, degenerate):
        result = _fit(degenerate, {"algorithm": "LBFGS", "step_weights": 1.0})
        assert result.monitoring.status.is_success

    @pytest.mark.parametrize("algorithm", ["BFGS", "CG"])
    def test_other_algorithms(self, simulated, algorithm):
        result = optimize_full(
            None,
            simulated["Y"],
            simulated["X"],
            simulated["O"],
            simulated["w"],
            {**CONTROL, "algorithm": algorithm},
            backend="numpy",
        )
        assert result.monitoring.status.is_success
        assert np.all(np.isfinite(result.A))


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


class TestValidation:
    def test_x_row_mismatch(self, degenerate):
        degenerate["X"] = np.ones((4, 1))
        with pytest.raises(ValueError, match="X has 4 rows"):
            _fit(degenerate)

    def test_offset_shape(self, degenerate):
        degenerate["O"] = np.zeros((3, 3))
        with pytest.raises(ValueError, match="O has shape"):
            _fit(degenerate)

    def test_weight_shape(self, degenerate):
        degenerate["w"] = np.ones(2)
        with pytest.raises(ValueError, match="w has shape"):
            _fit(degenerate)

    def test_negative_counts(self, degenerate):
        degenerate["Y"][0, 0] = -1.0
        with pytest.raises(ValueError, match="non-negative counts"):
            _fit(degenerate)

    def test_all_zero_weights(self, degenerate):
        degenerate["w"] = np.zeros(3)
        with pytest.raises(ValueError, match="not all zero"):
            _fit(degenerate)

    def test_missing_initial_block(self, degenerate):
        del degenerate["init"]["S"]
        with pytest.raises(ValueError, match="missing block 'S'"):
            _fit(degenerate)

    def test_initial_block_shape(self, degenerate):
        degenerate["init"]["Theta"] = np.zeros((1, 2))
        with pytest.raises(ValueError, match="Initial Theta has shape"):
            _fit(degenerate)

    def test_non_positive_initial_s(self, degenerate):
        degenerate["init"]["S"][1, 1] = 0.0
        with pytest.raises(ValueError, match="strictly positive"):
            _fit(degenerate)

    def test_unknown_backend(self, degenerate):
        with pytest.raises(ValueError, match="Unknown backend"):
            optimize_full(
                degenerate["init"],
                degenerate["Y"],
                degenerate["X"],
                degenerate["O"],
                degenerate["w"],
                backend="torch",
            )


# ------------------------------------------------------------------ #
# VE-step
# ------------------------------------------------------------------ #


class TestVEStep:
    def test_consistent_with_full_fit(self, fitted):
        full = fitted["result"]
        result = optimize_vestep(
            {"M": full.M, "S": full.S},
            fitted["Y"],
            fitted["X"],
            fitted["O"],
            fitted["w"],
            full.Theta,
            full.Omega,
            {"gtol": 1e-8},
            backend="numpy",
        )
        assert isinstance(result, VEStepResult)
        assert result.status.is_success
        np.testing.assert_allclose(
            result.loglik.values, full.Ji.values, rtol=1e-4, atol=1e-4
        )

    def test_improves_a_poor_start(self, fitted):
        full = fitted["result"]
        n, p = full.M.shape
        start = {"M": np.zeros((n, p)), "S": np.ones((n, p))}
        result = optimize_vestep(
            start,
            fitted["Y"],
            fitted["X"],
            fitted["O"],
            fitted["w"],
            full.Theta,
            full.Omega,
            backend="numpy",
        )
        assert result.status.is_success
        assert result.iterations > 0
        assert result.M.shape == result.S.shape == (n, p)
        assert np.all(result.S > 0)
        np.testing.assert_array_equal(result.loglik.weights, fitted["w"])

    def test_theta_shape(self, degenerate):
        with pytest.raises(ValueError, match="Theta has shape"):
            optimize_vestep(
                degenerate["init"],
                degenerate["Y"],
                degenerate["X"],
                degenerate["O"],
                degenerate["w"],
                np.zeros((3, 1)),
                np.eye(2),
                backend="numpy",
            )

    def test_asymmetric_omega(self, degenerate):
        with pytest.raises(ValueError, match="symmetric"):
            optimize_vestep(
                degenerate["init"],
                degenerate["Y"],
                degenerate["X"],
                degenerate["O"],
                degenerate["w"],
                np.zeros((2, 1)),
                np.array([[1.0, 0.5], [0.0, 1.0]]),
                backend="numpy",
            )

    def test_indefinite_omega(self, degenerate):
        with pytest.raises(np.linalg.LinAlgError):
            optimize_vestep(
                degenerate["init"],
                degenerate["Y"],
                degenerate["X"],
                degenerate["O"],
                degenerate["w"],
                np.zeros((2, 1)),
                np.array([[1.0, 2.0], [2.0, 1.0]]),
                backend="numpy",
            )

    def test_per_block_tolerance_names_m_and_s(self, degenerate):
        result = optimize_vestep(
            degenerate["init"],
            degenerate["Y"],
            degenerate["X"],
            degenerate["O"],
            degenerate["w"],
            np.zeros((2, 1)),
            np.eye(2),
            {"xtol_abs": {"M": 1e-8, "S": 1e-8}},
            backend="numpy",
        )
        assert result.status.is_success

    def test_theta_in_per_block_tolerance_rejected(self, degenerate):
        with pytest.raises(ValueError, match="unknown block"):
            optimize_vestep(
                degenerate["init"],
                degenerate["Y"],
                degenerate["X"],
                degenerate["O"],
                degenerate["w"],
                np.zeros((2, 1)),
                np.eye(2),
                {"xtol_abs": {"Theta": 0.0, "M": 1e-8, "S": 1e-8}},
                backend="numpy",
            )


# ------------------------------------------------------------------ #
# Larger fits
# ------------------------------------------------------------------ #


@pytest.mark.slow
class TestLargerFit:
    def test_recovers_regression_coefficients(self):
        rng = np.random.default_rng(99)
        n, p = 400, 3
        X = np.column_stack([np.ones(n), rng.standard_normal(n)])
        Theta = np.array([[1.0, 0.5], [0.5, -0.3], [1.5, 0.2]])
        latent = rng.normal(0.0, 0.3, size=(n, p))
        Y = rng.poisson(np.exp(X @ Theta.T + latent)).astype(float)
        result = optimize_full(
            None, Y, X, np.zeros((n, p)), np.ones(n), backend="numpy"
        )
        assert result.monitoring.status.is_success
        np.testing.assert_allclose(result.Theta, Theta, atol=0.15)

    def test_jax_matches_numpy(self):
        pytest.importorskip("jax")
        rng = np.random.default_rng(1)
        n, p = 50, 2
        X = np.ones((n, 1))
        Y = rng.poisson(3.0, size=(n, p)).astype(float)
        args = (None, Y, X, np.zeros((n, p)), np.ones(n), {"gtol": 1e-8})
        np_fit = optimize_full(*args, backend="numpy")
        jax_fit = optimize_full(*args, backend="jax")
        np.testing.assert_allclose(jax_fit.Theta, np_fit.Theta, atol=1e-4)
