import unittest

import numpy as np
import pandas as pd
from scipy.stats import norm

from polychoric_correlation import (PolychoricConfig, PolychoricEstimator, PolychoricResult,
                                    polychor, polychoric, polychoric_correlation_matrix)
from polychoric_likelihood import MAX_CORRELATION, LikelihoodModel
from polychoric_tables import ParameterError, RootSelectionError

TABLE = [[1, 10, 20], [20, 20, 50]]
PERFECT = [[50, 0], [0, 50]]


def expand_table(table):
    """Observation vectors whose cross-tabulation is `table`."""
    table = np.asarray(table, dtype=int)
    rows, cols = np.indices(table.shape)
    return np.repeat(rows.ravel(), table.ravel()), np.repeat(cols.ravel(), table.ravel())


class TestPolychoricConfig(unittest.TestCase):
    """Validation of estimation settings."""

    def test_defaults(self):
        config = PolychoricConfig()
        self.assertEqual(config.method, "two_step")
        self.assertEqual(config.epsilon, 1e-6)
        self.assertEqual(config.max_iterations, 300)
        self.assertEqual(config.minimizer_type_two_step, "brent")
        self.assertEqual(config.minimizer_type_joint_derivative, "conjugate_pr")
        self.assertEqual(config.minimizer_type_joint_no_derivative, "nmsimplex")

    def test_series_alias(self):
        self.assertEqual(PolychoricConfig(method="series").method, "polychoric_series")

    def test_invalid_values(self):
        for options in ({"method": "three_step"}, {"epsilon": 0.0}, {"epsilon": np.nan},
                        {"max_iterations": 0}, {"max_iterations": True},
                        {"gradient_tolerance": -1.0}, {"backend": "gsl"}):
            with self.assertRaises(ParameterError, msg=str(options)):
                PolychoricConfig(**options)

    def test_invalid_types(self):
        """Wrongly typed settings are parameter errors, not TypeErrors or truthy strings."""
        for options in ({"joint_derivatives": "no"}, {"joint_derivatives": 0}, {"debug": 1},
                        {"epsilon": "x"}, {"gradient_tolerance": None}, {"max_iterations": 2.5},
                        {"max_iterations": "300"}, {"method": None}, {"backend": 1},
                        {"minimizer_type_two_step": None}):
            with self.assertRaises(ParameterError, msg=str(options)):
                PolychoricConfig(**options)

    def test_numpy_values_accepted(self):
        config = PolychoricConfig(epsilon=np.float64(1e-7), max_iterations=np.int64(50),
                                  joint_derivatives=np.bool_(False))
        self.assertEqual(config.max_iterations, 50)

    def test_unavailable_minimizer_type(self):
        with self.assertRaises(ParameterError):
            PolychoricConfig(minimizer_type_two_step="golden", backend="scipy")
        with self.assertRaises(ParameterError):
            PolychoricConfig(minimizer_type_joint_derivative="bfgs", backend="native")

    def test_unknown_option(self):
        with self.assertRaises(ParameterError):
            PolychoricConfig.from_options(tolerance=1e-3)

    def test_replace(self):
        config = PolychoricConfig().replace(method="joint", epsilon=1e-8)
        self.assertEqual(config.method, "joint")
        self.assertEqual(config.epsilon, 1e-8)


class TestTwoStep(unittest.TestCase):
    """Two-step estimation on the worked example."""

    def setUp(self):
        self.est = PolychoricEstimator(TABLE)

    def test_thresholds_from_marginals(self):
        np.testing.assert_allclose(self.est.threshold_x, norm.ppf([31 / 121]))
        np.testing.assert_allclose(self.est.threshold_y, norm.ppf([21 / 121, 51 / 121]))

    def test_estimate(self):
        result = self.est.result
        self.assertIsInstance(result, PolychoricResult)
        self.assertTrue(result.converged)
        self.assertLess(self.est.r, 0.0)
        self.assertLessEqual(abs(self.est.r), MAX_CORRELATION)
        self.assertGreater(self.est.iteration, 0)
        self.assertIn("Two step minimization", self.est.log)

    def test_reference_value(self):
        self.assertAlmostEqual(self.est.r, -0.24754, delta=5e-5)
        self.assertAlmostEqual(PolychoricEstimator(TABLE, backend="native").r, -0.24754, delta=5e-5)

    def test_rho_derivative_vanishes_at_optimum(self):
        model = LikelihoodModel(self.est.alpha, self.est.beta, self.est.r, self.est.table)
        self.assertLess(abs(model.fd_loglike_rho()), 1e-2)

    def test_backends_agree(self):
        native = PolychoricEstimator(TABLE, backend="native").r
        scipy_r = PolychoricEstimator(TABLE, backend="scipy").r
        self.assertAlmostEqual(native, scipy_r, delta=1e-4)

    def test_golden_section(self):
        golden = PolychoricEstimator(TABLE, minimizer_type_two_step="golden").r
        self.assertAlmostEqual(golden, self.est.r, delta=1e-4)

    def test_stable_across_runs(self):
        self.assertEqual(PolychoricEstimator(TABLE).r, self.est.r)

    def test_positive_association(self):
        est = PolychoricEstimator([[30, 10, 2], [10, 30, 10], [2, 10, 30]])
        self.assertGreater(est.r, 0.5)

    def test_perfect_association_is_clamped(self):
        est = PolychoricEstimator(PERFECT)
        self.assertLessEqual(abs(est.r), MAX_CORRELATION)
        self.assertGreater(est.r, 0.999)


class TestJoint(unittest.TestCase):
    """Joint maximum likelihood with and without derivatives."""

    def setUp(self):
        self.two_step = PolychoricEstimator(TABLE).result

    def check(self, est):
        self.assertEqual(est.result.method, "joint")
        self.assertLessEqual(abs(est.r), MAX_CORRELATION)
        self.assertGreaterEqual(est.loglike_model, self.two_step.loglike_model - 1e-8)
        self.assertEqual(est.alpha.size, 1)
        self.assertEqual(est.beta.size, 2)
        self.assertTrue(np.all(np.diff(est.beta) > 0))
        self.assertIn("Joint MLE", est.log)
        self.assertIn("Two step minimization", est.log)

    def test_with_derivatives(self):
        est = PolychoricEstimator(TABLE, method="joint")
        self.check(est)
        self.assertAlmostEqual(est.r, -0.24773, delta=5e-4)

    def test_with_native_conjugate_gradient(self):
        self.check(PolychoricEstimator(TABLE, method="joint", backend="native"))

    def test_with_bfgs(self):
        self.check(PolychoricEstimator(TABLE, method="joint", minimizer_type_joint_derivative="bfgs"))

    def test_without_derivatives(self):
        est = PolychoricEstimator(TABLE, method="joint", joint_derivatives=False,
                                  max_iterations=2000)
        self.check(est)
        self.assertIn("without derivatives", est.log)

    def test_native_simplex(self):
        self.check(PolychoricEstimator(TABLE, method="joint", joint_derivatives=False,
                                       backend="native", max_iterations=2000))

    def test_perfect_association_is_clamped(self):
        """Every joint variant reports r inside the correlation bound, converged or not."""
        for options in ({}, {"backend": "native"}, {"joint_derivatives": False},
                        {"joint_derivatives": False, "backend": "native"}):
            est = PolychoricEstimator(PERFECT, method="joint", **options)
            self.assertLessEqual(abs(est.r), MAX_CORRELATION, msg=str(options))
            self.assertGreater(est.r, 0.99, msg=str(options))


class TestSeriesMethod(unittest.TestCase):

    def test_matches_two_step_sign(self):
        est = PolychoricEstimator(TABLE, method="series")
        self.assertEqual(est.method, "polychoric_series")
        self.assertEqual(np.sign(est.r), np.sign(PolychoricEstimator(TABLE).r))
        self.assertEqual(est.iteration, 0)
        self.assertTrue(np.isfinite(est.loglike_model))
        self.assertIn("AS87", est.log)

    def test_reference_value(self):
        self.assertAlmostEqual(PolychoricEstimator(TABLE, method="series").r, -0.30461, delta=2e-5)

    def test_root_failure_keeps_estimator_uncomputed(self):
        est = PolychoricEstimator(PERFECT, method="series")
        with self.assertRaises(RootSelectionError):
            est.compute()
        self.assertFalse(est.is_computed)


class TestDiagnostics(unittest.TestCase):
    """Goodness of fit and standard error."""

    def setUp(self):
        self.est = PolychoricEstimator(TABLE)

    def test_chi_square(self):
        self.assertEqual(self.est.chi_square_df, 6 - 2 - 3)
        self.assertGreaterEqual(self.est.chi_square, -1e-8)
        self.assertGreaterEqual(self.est.loglike_data(), self.est.loglike_model)
        p = self.est.chi_square_pvalue
        self.assertTrue(0.0 <= p <= 1.0)

    def test_no_degrees_of_freedom(self):
        est = PolychoricEstimator([[10, 5], [5, 10]])
        self.assertEqual(est.chi_square_df, 0)
        self.assertTrue(np.isnan(est.chi_square_pvalue))

    def test_expected_counts(self):
        expected = self.est.expected()
        np.testing.assert_allclose(expected[0], [31 * 21 / 121, 31 * 30 / 121, 31 * 70 / 121])
        self.assertAlmostEqual(expected.sum(), 121.0)

    def test_fitted_counts(self):
        fitted = self.est.fitted_counts()
        self.assertEqual(fitted.shape, (2, 3))
        self.assertAlmostEqual(fitted.sum(), 121.0, places=6)
        # two-step thresholds reproduce the observed marginals
        np.testing.assert_allclose(fitted.sum(axis=1), [31, 90], atol=1e-6)

    def test_standard_error(self):
        se = self.est.standard_error()
        self.assertIsNotNone(se)
        self.assertGreater(se, 0.0)
        self.assertLess(se, 1.0)

    def test_no_standard_error_on_the_bound(self):
        """A central difference cannot straddle r = +-0.9999, so no standard error is given."""
        for options in ({}, {"method": "joint", "joint_derivatives": False}):
            est = PolychoricEstimator(PERFECT, **options)
            with self.assertLogs("polychoric_correlation", level="WARNING") as logs:
                self.assertIsNone(est.standard_error(), msg=str(options))
            self.assertTrue(any("correlation bound" in line for line in logs.output))

    def test_repr(self):
        self.assertIn("not computed", repr(self.est))
        self.est.compute()
        self.assertIn("Polychoric correlation", repr(self.est))


class TestCaching(unittest.TestCase):
    """Results are computed once and recomputed after a settings change."""

    def test_idempotent(self):
        est = PolychoricEstimator(TABLE)
        self.assertFalse(est.is_computed)
        first = est.compute()
        self.assertTrue(est.is_computed)
        self.assertIs(est.compute(), first)
        self.assertEqual(est.r, first.rho)

    def test_cached_thresholds_are_read_only(self):
        """Callers cannot edit the thresholds of a cached result."""
        for method in ("two_step", "joint", "series"):
            est = PolychoricEstimator(TABLE, method=method)
            before = est.alpha.copy()
            with self.assertRaises(ValueError, msg=method):
                est.alpha[0] = 5.0
            with self.assertRaises(ValueError, msg=method):
                est.threshold_y[1] = 5.0
            np.testing.assert_array_equal(est.result.alpha, before)
            self.assertIs(est.compute(), est.result)

    def test_result_copies_its_arrays(self):
        alpha = np.array([0.1, 0.2])
        result = PolychoricResult(rho=0.3, alpha=alpha, beta=np.array([0.0]), loglike_model=-1.0,
                                  iteration=1, converged=True, method="two_step")
        alpha[0] = 9.0
        self.assertEqual(result.alpha[0], 0.1)
        self.assertFalse(result.beta.flags.writeable)

    def test_setter_invalidates(self):
        est = PolychoricEstimator(TABLE)
        est.compute()
        est.epsilon = 1e-8
        self.assertFalse(est.is_computed)
        self.assertEqual(est.config.epsilon, 1e-8)
        est.method = "joint"
        self.assertEqual(est.result.method, "joint")

    def test_configure_invalidates(self):
        est = PolychoricEstimator(TABLE)
        est.compute()
        self.assertIs(est.configure(method="series", max_iterations=50), est)
        self.assertFalse(est.is_computed)
        self.assertEqual(est.result.method, "polychoric_series")

    def test_invalid_setter_keeps_config(self):
        est = PolychoricEstimator(TABLE)
        with self.assertRaises(ParameterError):
            est.max_iterations = 0
        self.assertEqual(est.max_iterations, 300)

    def test_config_and_options_are_exclusive(self):
        with self.assertRaises(ParameterError):
            PolychoricEstimator(TABLE, config=PolychoricConfig(), method="joint")


class TestLogging(unittest.TestCase):
    """Trace and convergence reporting."""

    def test_debug_emits_trace(self):
        with self.assertLogs("polychoric_correlation", level="INFO") as logs:
            PolychoricEstimator(TABLE, debug=True).compute()
        self.assertTrue(any("Two step minimization" in line for line in logs.output))

    def test_non_convergence_is_reported(self):
        est = PolychoricEstimator(TABLE, epsilon=1e-12, max_iterations=2)
        with self.assertLogs("polychoric_correlation", level="WARNING") as logs:
            result = est.compute()
        self.assertFalse(result.converged)
        self.assertLessEqual(abs(result.rho), MAX_CORRELATION)
        self.assertTrue(any("did not converge" in line for line in logs.output))


class TestConvenienceFunctions(unittest.TestCase):

    def test_from_vectors_matches_table(self):
        x, y = expand_table(TABLE)
        est = PolychoricEstimator.from_vectors(x, y)
        np.testing.assert_array_equal(est.table, TABLE)
        self.assertEqual(est.r, PolychoricEstimator(TABLE).r)

    def test_polychoric(self):
        x, y = expand_table(TABLE)
        expected = PolychoricEstimator(TABLE).r
        self.assertEqual(polychoric(x, y), expected)
        self.assertEqual(polychoric(TABLE), expected)
        self.assertIs(polychor, polychoric)

    def test_polychoric_options(self):
        self.assertEqual(polychoric(TABLE, method="series"),
                         PolychoricEstimator(TABLE, method="series").r)
        with self.assertRaises(ParameterError):
            polychoric(TABLE, method="nope")


class TestCorrelationMatrix(unittest.TestCase):
    """Pairwise matrix over the columns of a data frame."""

    def setUp(self):
        a = [1] * 10 + [2] * 10 + [3] * 10
        b = [1, 1, 2, 2, 3, 1, 2, 3, 3, 2,
             1, 2, 2, 3, 3, 1, 2, 3, 2, 1,
             2, 3, 3, 3, 2, 1, 3, 2, 3, 3]
        # c is only observed where a == 1, so the (a, c) pair has one row category
        c = [1, 2, 1, 2, 3, 1, 2, 3, 3, 2] + [np.nan] * 20
        self.frame = pd.DataFrame({"a": a, "b": b, "c": c})

    def test_matrix(self):
        matrix = polychoric_correlation_matrix(self.frame)
        self.assertEqual(list(matrix.columns), ["a", "b", "c"])
        self.assertEqual(list(matrix.index), ["a", "b", "c"])
        np.testing.assert_array_equal(np.diag(matrix.to_numpy()), 1.0)
        np.testing.assert_array_equal(matrix.to_numpy(), matrix.to_numpy().T)

        self.assertTrue(np.isnan(matrix.loc["a", "c"]))
        self.assertTrue(np.isnan(matrix.loc["c", "a"]))
        self.assertTrue(np.isfinite(matrix.loc["a", "b"]))
        self.assertTrue(np.isfinite(matrix.loc["b", "c"]))
        self.assertGreater(matrix.loc["b", "c"], 0.0)

    def test_pair_matches_single_estimate(self):
        matrix = polychoric_correlation_matrix(self.frame)
        self.assertEqual(matrix.loc["a", "b"], polychoric(self.frame["a"], self.frame["b"]))

    def test_accepts_mapping_and_options(self):
        data = {"a": self.frame["a"].tolist(), "b": self.frame["b"].tolist()}
        matrix = polychoric_correlation_matrix(data, method="series")
        self.assertEqual(matrix.shape, (2, 2))
        with self.assertRaises(ParameterError):
            polychoric_correlation_matrix(data, config=PolychoricConfig(), method="joint")

    def test_series_root_failure_is_missing(self):
        """A perfectly associated pair has no series root; only its cell is NaN."""
        a = [0] * 20 + [1] * 20
        b = [0] * 15 + [1] * 5 + [0] * 5 + [1] * 15
        frame = pd.DataFrame({"a": a, "b": b, "copy": list(a)})
        with self.assertRaises(RootSelectionError):
            polychoric(frame["a"], frame["copy"], method="series")

        with self.assertLogs("polychoric_correlation", level="WARNING"):
            matrix = polychoric_correlation_matrix(frame, method="series")
        values = matrix.to_numpy()
        missing = np.isnan(values)
        expected = np.zeros((3, 3), dtype=bool)
        expected[0, 2] = expected[2, 0] = True
        np.testing.assert_array_equal(missing, expected)
        np.testing.assert_array_equal(np.diag(values), 1.0)
        self.assertGreater(matrix.loc["a", "b"], 0.0)
        self.assertEqual(matrix.loc["a", "b"], matrix.loc["b", "copy"])


if __name__ == "__main__":
    unittest.main()
