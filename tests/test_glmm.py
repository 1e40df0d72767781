"""
Tests for the binomial GLMM fitter.

Covers the likelihood approximation, parameter recovery on simulated data,
pseudo-R2, singular and non-converging fits, and design validation.
"""

import dataclasses
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest
from scipy import integrate
from scipy.optimize import OptimizeResult

from elk_crossing.data.simulate import simulate_crossing_data
from elk_crossing.models.exceptions import (
    ConvergenceError,
    ModelSpecificationError,
    SingularFitError,
)
from elk_crossing.models.formula import ModelSpec
from elk_crossing.models.glmm import (
    DISTRIBUTION_VARIANCE,
    SINGULAR_TOL,
    BinomialGLMM,
    fit_model,
)


def exact_loglik(model, params):
    """Marginal log-likelihood by adaptive numerical integration, group by group."""
    beta, sigma = params[:-1], params[-1]
    eta = model.X_scaled @ beta
    grid = np.linspace(-10.0, 10.0, 4001)
    total = 0.0
    for j in range(model.n_groups):
        rows = model.group_codes == j
        y, e = model.y[rows], eta[rows]

        def log_integrand(u):
            lin = e + sigma * u
            return np.sum(y * lin - np.logaddexp(0.0, lin)) - 0.5 * u ** 2

        shift = max(log_integrand(u) for u in grid)
        value, _ = integrate.quad(lambda u: np.exp(log_integrand(u) - shift), -10.0, 10.0,
                                  epsabs=0.0, epsrel=1e-10, limit=200)
        total += shift + np.log(value) - 0.5 * np.log(2.0 * np.pi)
    return total


class TestLikelihood:
    """The integrated likelihood itself, at fixed parameters."""

    PARAMS = np.array([-0.3, 0.6, 0.8])

    def test_quadrature_matches_numerical_integration(self, crossing_data):
        model = BinomialGLMM("crossed ~ traffic_100", crossing_data, n_agq=25)

        loglik = -0.5 * model.deviance(self.PARAMS)

        assert loglik == pytest.approx(exact_loglik(model, self.PARAMS), abs=1e-5)

    def test_laplace_close_to_exact(self, crossing_data):
        model = BinomialGLMM("crossed ~ traffic_100", crossing_data, n_agq=1)

        loglik = -0.5 * model.deviance(self.PARAMS)

        assert loglik == pytest.approx(exact_loglik(model, self.PARAMS), abs=0.5)

    def test_zero_sigma_is_logistic_regression(self, crossing_data):
        """With no random intercept the deviance is the ordinary binomial deviance."""
        model = BinomialGLMM("crossed ~ traffic_100", crossing_data, n_agq=3)
        params = np.array([-0.3, 0.6, 0.0])

        eta = model.X_scaled @ params[:-1]
        expected = -2.0 * np.sum(model.y * eta - np.logaddexp(0.0, eta))

        assert model.deviance(params) == pytest.approx(expected, rel=1e-10)


class TestFit:

    def test_deterministic(self, crossing_data, traffic_spec, traffic_result):
        """Same data, same model, same numbers."""
        again = fit_model(crossing_data, traffic_spec, check_singular=False)

        np.testing.assert_allclose(again.params, traffic_result.params, rtol=1e-6)
        np.testing.assert_allclose(again.bse, traffic_result.bse, rtol=1e-6)
        assert again.loglik == pytest.approx(traffic_result.loglik, rel=1e-9)
        assert again.re_variance == pytest.approx(traffic_result.re_variance, rel=1e-6, abs=1e-12)

    def test_coefficient_table(self, traffic_result):
        coefs = traffic_result.coefficients

        assert list(coefs.index) == ["Intercept", "traffic_100"]
        assert list(coefs.columns) == ["estimate", "std_error", "z_value", "p_value"]
        assert (coefs["std_error"] > 0).all()
        assert coefs["p_value"].between(0, 1).all()
        np.testing.assert_allclose(coefs["z_value"], coefs["estimate"] / coefs["std_error"])

    def test_information_criteria(self, traffic_result):
        """AIC and BIC count the fixed effects plus the random-intercept variance."""
        assert traffic_result.n_params == 3
        assert traffic_result.aic == pytest.approx(-2 * traffic_result.loglik + 6)
        assert traffic_result.bic == pytest.approx(
            -2 * traffic_result.loglik + 3 * np.log(traffic_result.nobs)
        )
        assert traffic_result.df_resid == traffic_result.nobs - 3

    def test_counts(self, traffic_result, crossing_data):
        assert traffic_result.nobs == len(crossing_data)
        assert traffic_result.n_groups == crossing_data["elk_winter"].nunique()
        assert traffic_result.converged

    def test_random_effects_indexed_by_group(self, traffic_result, crossing_data):
        effects = traffic_result.random_effects

        assert list(effects.index) == sorted(crossing_data["elk_winter"].unique())
        assert np.isfinite(effects).all()

    def test_more_quadrature_nodes_agree_with_laplace(self, crossing_data, traffic_spec,
                                                     traffic_result):
        agq = fit_model(crossing_data, traffic_spec, n_agq=7, check_singular=False)

        assert agq.n_agq == 7
        assert agq.loglik == pytest.approx(traffic_result.loglik, abs=1.0)
        np.testing.assert_allclose(agq.params, traffic_result.params, atol=0.1)

    def test_result_is_immutable(self, traffic_result):
        with pytest.raises(dataclasses.FrozenInstanceError):
            traffic_result.loglik = 0.0


class TestParameterRecovery:
    """Fits to data simulated with known effects."""

    SEEDS = [101, 202, 303]

    def test_traffic_effect_recovered(self):
        """Injected slope 1.5 (intercept -2, 10 groups, RE variance 0.3, 500 steps)."""
        slopes, intercepts = [], []
        for seed in self.SEEDS:
            data = simulate_crossing_data(
                n_rows=500, n_groups=10, intercept=-2.0,
                coefficients={"traffic_100": 1.5}, re_variance=0.3, seed=seed,
            )
            result = fit_model(data, ModelSpec("traffic", ("traffic_100",)), check_singular=False)
            slopes.append(result.params["traffic_100"])
            intercepts.append(result.params["Intercept"])
            assert abs(result.params["traffic_100"] - 1.5) < 0.5

        assert abs(np.mean(slopes) - 1.5) < 0.3
        assert abs(np.mean(intercepts) + 2.0) < 0.5

    def test_standard_error_covers_truth(self):
        data = simulate_crossing_data(n_rows=500, n_groups=10, re_variance=0.3, seed=404)
        result = fit_model(data, ModelSpec("traffic", ("traffic_100",)), check_singular=False)

        estimate = result.params["traffic_100"]
        se = result.bse["traffic_100"]
        assert 0.05 < se < 0.5
        assert abs(estimate - 1.5) < 5 * se


class TestPseudoR2:

    def test_marginal_not_above_conditional(self, traffic_result, group_size_result):
        for result in (traffic_result, group_size_result):
            r2 = result.r_squared()
            assert 0.0 <= r2["R2m"] <= r2["R2c"] <= 1.0

    def test_theoretical_formula(self, traffic_result):
        """Latent-scale variance decomposition with the logistic residual variance."""
        r = traffic_result
        total = r.var_fixed + r.re_variance + DISTRIBUTION_VARIANCE

        assert DISTRIBUTION_VARIANCE == pytest.approx(np.pi ** 2 / 3)
        assert r.r2_marginal == pytest.approx(r.var_fixed / total)
        assert r.r2_conditional == pytest.approx((r.var_fixed + r.re_variance) / total)

    def test_variance_of_fixed_predictor(self, traffic_result, crossing_data):
        params = traffic_result.params
        eta = params["Intercept"] + params["traffic_100"] * crossing_data["traffic_100"]

        assert traffic_result.var_fixed == pytest.approx(np.var(eta, ddof=1), rel=1e-8)

    def test_singular_fit_has_equal_r2(self, singular_data, traffic_spec):
        result = fit_model(singular_data, traffic_spec, check_singular=False)

        assert result.r2_marginal == pytest.approx(result.r2_conditional, abs=1e-6)


class TestSingularFit:
    """Ten identical groups: the likelihood peaks at zero between-group variance."""

    def test_raises_with_result(self, singular_data, traffic_spec):
        with pytest.raises(SingularFitError) as excinfo:
            fit_model(singular_data, traffic_spec)

        result = excinfo.value.result
        assert result is not None
        assert result.singular
        assert result.re_sd < SINGULAR_TOL
        assert np.isfinite(result.bse).all()
        assert "singular" in str(excinfo.value)

    def test_check_disabled_returns_result(self, singular_data, traffic_spec):
        result = fit_model(singular_data, traffic_spec, check_singular=False)

        assert result.re_sd < SINGULAR_TOL
        assert result.nobs == len(singular_data)


class TestConvergenceFailure:

    @staticmethod
    def _failed_minimize(fun, x0, **kwargs):
        return OptimizeResult(x=np.asarray(x0, dtype=float), fun=np.nan, success=False,
                              message="ABNORMAL_TERMINATION_IN_LNSRCH", nit=0, nfev=1)

    def test_raises_after_all_restarts(self, crossing_data, traffic_spec):
        with patch("scipy.optimize.minimize", side_effect=self._failed_minimize) as minimize:
            with pytest.raises(ConvergenceError) as excinfo:
                fit_model(crossing_data, traffic_spec, max_restarts=2)

        assert excinfo.value.attempts == 3
        assert minimize.call_count == 3
        assert "traffic" in str(excinfo.value)

    def test_restarts_are_jittered(self, crossing_data, traffic_spec):
        with patch("scipy.optimize.minimize", side_effect=self._failed_minimize) as minimize:
            with pytest.raises(ConvergenceError):
                fit_model(crossing_data, traffic_spec, max_restarts=1)

        first = minimize.call_args_list[0].args[1]
        second = minimize.call_args_list[1].args[1]
        assert not np.allclose(first, second)
        assert second[-1] > 0


class TestDesignValidation:

    def test_missing_column(self, crossing_data):
        data = crossing_data.drop(columns=["elo"])

        with pytest.raises(ModelSpecificationError, match="elo"):
            fit_model(data, ModelSpec("elo", ("traffic_100", "elo")))

    def test_single_group(self, crossing_data):
        data = crossing_data.copy()
        data["elk_winter"] = "E01_w2"

        with pytest.raises(ModelSpecificationError, match="at least 2"):
            BinomialGLMM("crossed ~ traffic_100", data)

    def test_rank_deficient(self, crossing_data):
        """traffic is traffic_100 times 100."""
        with pytest.raises(ModelSpecificationError, match="rank deficient"):
            fit_model(crossing_data, ModelSpec("both", ("traffic_100", "traffic")))

    def test_non_binary_response(self, crossing_data):
        data = crossing_data.copy()
        data["crossed"] = data["crossed"] * 2

        with pytest.raises(ModelSpecificationError, match="0 and 1"):
            BinomialGLMM("crossed ~ traffic_100", data)

    def test_unknown_variable_in_formula(self, crossing_data):
        with pytest.raises(ModelSpecificationError, match="Cannot build design"):
            BinomialGLMM("crossed ~ snow_depth", crossing_data)

    def test_invalid_quadrature(self, crossing_data):
        with pytest.raises(ModelSpecificationError, match="n_agq"):
            BinomialGLMM("crossed ~ traffic_100", crossing_data, n_agq=0)

    def test_rows_with_missing_covariates_dropped(self, crossing_data, traffic_spec):
        data = crossing_data.copy()
        data.loc[data.index[:20], "traffic_100"] = np.nan

        result = fit_model(data, traffic_spec, check_singular=False)

        assert result.nobs == len(data) - 20
        assert not set(data.index[:20]) & set(result.row_index)

    def test_season_expands_to_treatment_contrasts(self, crossing_data):
        model = BinomialGLMM("crossed ~ traffic_100 + season", crossing_data)

        assert model.term_names[0] == "Intercept"
        assert set(model.term_names) == {
            "Intercept", "season[T.Winter]", "season[T.Spring]", "traffic_100",
        }


class TestPrediction:

    def test_probabilities(self, traffic_result, crossing_data):
        p = traffic_result.predict(crossing_data)

        assert p.name == "p_cross"
        assert len(p) == len(crossing_data)
        assert ((p > 0) & (p < 1)).all()

    def test_fixed_only_prediction(self, traffic_result, crossing_data):
        p = traffic_result.predict(crossing_data, include_random=False)
        params = traffic_result.params
        eta = params["Intercept"] + params["traffic_100"] * crossing_data["traffic_100"]

        np.testing.assert_allclose(p, 1.0 / (1.0 + np.exp(-eta)))

    def test_unseen_group_gets_zero_intercept(self, traffic_result, crossing_data):
        new = crossing_data.head(5).copy()
        new["elk_winter"] = "E99_w3"

        with_random = traffic_result.predict(new)
        fixed_only = traffic_result.predict(new, include_random=False)

        np.testing.assert_allclose(with_random, fixed_only)

    def test_odds_ratios(self, traffic_result):
        ors = traffic_result.odds_ratios()

        np.testing.assert_allclose(ors["odds_ratio"], np.exp(traffic_result.params))
        assert (ors["ci_lower"] < ors["odds_ratio"]).all()
        assert (ors["odds_ratio"] < ors["ci_upper"]).all()
        assert isinstance(ors, pd.DataFrame)
