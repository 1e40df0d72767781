"""
Binomial-logit generalized linear mixed model with a single random intercept.

The model for step i of individual x winter group j is

    logit P(y_ij = 1) = x_ij' beta + b_j,    b_j ~ Normal(0, sigma^2)

and is fitted by maximum likelihood. The random intercept is integrated out
group by group, either with the Laplace approximation (n_agq=1, the default
used by lme4's glmer) or with adaptive Gauss-Hermite quadrature (n_agq > 1).
Both work in the spherical parameterization b_j = sigma * u_j, u_j ~ N(0, 1),
which keeps the likelihood well defined at the sigma = 0 boundary.

Usage:
    model = BinomialGLMM("crossed ~ traffic_100 + group_size", data, group="elk_winter")
    result = model.fit()
    print(result.coefficients, result.aic, result.r_squared())
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import optimize, stats
from scipy.special import expit, logsumexp
from statsmodels.tools.numdiff import approx_fprime, approx_hess
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ..data.loader import GROUP_KEY_COLUMN
from .exceptions import (
    ConvergenceError,
    ModelSpecificationError,
    SingularFitError,
)
from .formula import ModelSpec

logger = logging.getLogger(__name__)

# Random-intercept SD below which a fit is flagged singular (lme4 isSingular default)
SINGULAR_TOL = 1e-4

# Largest projected deviance gradient accepted as converged (lme4 check.conv.grad)
GRADIENT_TOL = 2e-3

# Latent-scale residual variance of the logistic distribution
DISTRIBUTION_VARIANCE = np.pi ** 2 / 3

# Inner Newton iterations for the conditional modes of u
NEWTON_MAX_ITER = 50
NEWTON_TOL = 1e-10
NEWTON_MAX_STEP = 5.0

INITIAL_SIGMA = 1.0

# Estimates of sigma below this are checked against the sigma = 0 boundary
BOUNDARY_CHECK = 1e-3


@dataclass(frozen=True, eq=False)
class GLMMResult:
    """Immutable result of one GLMM fit."""
    name: str
    formula: str
    group: str
    n_agq: int
    coefficients: pd.DataFrame  # estimate, std_error, z_value, p_value by term
    cov_params: pd.DataFrame
    loglik: float
    nobs: int
    n_groups: int
    re_variance: float
    var_fixed: float  # variance of the fixed-effect linear predictor
    converged: bool
    optimizer: Dict = field(default_factory=dict)
    row_index: np.ndarray = field(default=None, repr=False)
    random_effects: pd.Series = field(default=None, repr=False)
    design_info: object = field(default=None, repr=False)

    @property
    def params(self) -> pd.Series:
        return self.coefficients["estimate"]

    @property
    def bse(self) -> pd.Series:
        return self.coefficients["std_error"]

    @property
    def re_sd(self) -> float:
        return float(np.sqrt(self.re_variance))

    @property
    def n_params(self) -> int:
        """Fixed effects plus the random-intercept variance."""
        return len(self.coefficients) + 1

    @property
    def deviance(self) -> float:
        return -2.0 * self.loglik

    @property
    def aic(self) -> float:
        return self.deviance + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return self.deviance + self.n_params * np.log(self.nobs)

    @property
    def df_resid(self) -> int:
        return self.nobs - self.n_params

    @property
    def singular(self) -> bool:
        return self.re_sd < SINGULAR_TOL

    @property
    def r2_marginal(self) -> float:
        """Share of latent-scale variance explained by the fixed effects."""
        total = self.var_fixed + self.re_variance + DISTRIBUTION_VARIANCE
        return float(self.var_fixed / total)

    @property
    def r2_conditional(self) -> float:
        """Share of latent-scale variance explained by fixed plus random effects."""
        total = self.var_fixed + self.re_variance + DISTRIBUTION_VARIANCE
        return float((self.var_fixed + self.re_variance) / total)

    def r_squared(self) -> Dict[str, float]:
        return {"R2m": self.r2_marginal, "R2c": self.r2_conditional}

    def odds_ratios(self, alpha: float = 0.05) -> pd.DataFrame:
        """Odds ratios with Wald confidence limits."""
        z = stats.norm.ppf(1 - alpha / 2)
        est, se = self.params, self.bse
        return pd.DataFrame({
            "odds_ratio": np.exp(est),
            "ci_lower": np.exp(est - z * se),
            "ci_upper": np.exp(est + z * se),
        })

    def predict(self, data: pd.DataFrame, include_random: bool = True) -> pd.Series:
        """
        Predicted crossing probabilities for new or existing steps.

        Args:
            data: DataFrame with the model's covariates (and grouping key
                when include_random is True)
            include_random: Add the fitted random intercept of each step's
                group; groups not seen in the fit get zero

        Returns:
            Series of probabilities indexed like the rows with complete covariates
        """
        (X,) = patsy.build_design_matrices(
            [self.design_info], data, NA_action="drop", return_type="dataframe"
        )
        eta = X.to_numpy(dtype=float) @ self.params.to_numpy(dtype=float)
        if include_random:
            offsets = data.loc[X.index, self.group].astype(str).map(self.random_effects)
            eta = eta + offsets.fillna(0.0).to_numpy(dtype=float)
        return pd.Series(expit(eta), index=X.index, name="p_cross")


class BinomialGLMM:
    """Maximum-likelihood binomial-logit GLMM with one random intercept."""

    def __init__(self, formula: str, data: pd.DataFrame, group: str = GROUP_KEY_COLUMN,
                 n_agq: int = 1, name: Optional[str] = None):
        """
        Build the design for one model.

        Args:
            formula: patsy formula for the fixed effects, e.g. 'crossed ~ traffic_100'
            data: Crossing dataset; rows with missing values in any used
                column are dropped
            group: Column holding the random-intercept grouping key
            n_agq: Quadrature nodes per group; 1 is the Laplace approximation
            name: Label used in logs and reports (defaults to the formula)
        """
        if n_agq < 1:
            raise ModelSpecificationError(f"n_agq must be >= 1, got {n_agq}")
        if group not in data.columns:
            raise ModelSpecificationError(f"Grouping column '{group}' not in data")

        self.formula = formula
        self.group = group
        self.n_agq = int(n_agq)
        self.name = name or formula

        try:
            y, X = patsy.dmatrices(formula, data, NA_action="drop", return_type="dataframe")
        except patsy.PatsyError as e:
            raise ModelSpecificationError(f"Cannot build design for '{formula}': {e}") from e

        design_info = X.design_info
        groups = data.loc[X.index, group]
        keep = groups.notna().to_numpy()
        y, X, groups = y[keep], X[keep], groups[keep]

        if y.shape[1] != 1:
            raise ModelSpecificationError(f"Response in '{formula}' must be a single 0/1 column")
        if len(X) == 0:
            raise ModelSpecificationError(f"No complete rows left for '{formula}'")

        self.design_info = design_info
        self.term_names = list(X.columns)
        self.row_index = X.index.to_numpy()

        self.y = y.iloc[:, 0].to_numpy(dtype=float)
        if not np.isin(self.y, (0.0, 1.0)).all():
            raise ModelSpecificationError(f"Response in '{formula}' must only hold 0 and 1")

        codes, labels = pd.factorize(groups.astype(str), sort=True)
        self.group_codes = codes
        self.group_labels = pd.Index(labels, name=group)
        self.n_groups = len(labels)
        if self.n_groups < 2:
            raise ModelSpecificationError(f"Need at least 2 levels of '{group}', got {self.n_groups}")
        if self.n_groups >= len(self.y):
            raise ModelSpecificationError(
                f"Levels of '{group}' ({self.n_groups}) must be fewer than observations ({len(self.y)})"
            )

        X_raw = X.to_numpy(dtype=float)
        if np.linalg.matrix_rank(X_raw) < X_raw.shape[1]:
            raise ModelSpecificationError(f"Fixed-effects design for '{formula}' is rank deficient")
        self.X = X_raw
        self.X_scaled, self.transform = self._standardize(X_raw)

        self.nodes, weights = np.polynomial.hermite.hermgauss(self.n_agq)
        self.log_weights = np.log(weights)

    def _standardize(self, X: np.ndarray):
        """Centre and scale non-intercept columns.

        Returns the scaled design and the matrix A mapping scaled
        coefficients back to the original scale (beta = A @ beta_scaled).
        """
        p = X.shape[1]
        intercept = [i for i, n in enumerate(self.term_names) if n == "Intercept"]
        A = np.eye(p)
        Xs = X.copy()
        for j in range(p):
            if j in intercept:
                continue
            centre = X[:, j].mean() if intercept else 0.0
            scale = X[:, j].std()
            if scale == 0:
                scale = 1.0
            Xs[:, j] = (X[:, j] - centre) / scale
            A[j, j] = 1.0 / scale
            if intercept:
                A[intercept[0], j] = -centre / scale
        return Xs, A

    def _conditional_modes(self, eta: np.ndarray, sigma: float):
        """Newton iterations for the mode of each group's u given beta and sigma.

        Returns the modes and the curvature of the negative log integrand at them.
        """
        g, J = self.group_codes, self.n_groups
        u = np.zeros(J)
        for _ in range(NEWTON_MAX_ITER):
            mu = expit(eta + sigma * u[g])
            grad = sigma * np.bincount(g, weights=self.y - mu, minlength=J) - u
            curv = sigma ** 2 * np.bincount(g, weights=mu * (1 - mu), minlength=J) + 1.0
            step = np.clip(grad / curv, -NEWTON_MAX_STEP, NEWTON_MAX_STEP)
            u = u + step
            if np.max(np.abs(step)) < NEWTON_TOL:
                break
        mu = expit(eta + sigma * u[g])
        curv = sigma ** 2 * np.bincount(g, weights=mu * (1 - mu), minlength=J) + 1.0
        return u, curv

    def deviance(self, params: np.ndarray) -> float:
        """-2 log-likelihood at scaled (beta, sigma)."""
        beta, sigma = params[:-1], params[-1]
        eta = self.X_scaled @ beta
        u, curv = self._conditional_modes(eta, sigma)

        g, J = self.group_codes, self.n_groups
        u_k = u[:, None] + np.sqrt(2.0 / curv)[:, None] * self.nodes[None, :]
        eta_k = eta[:, None] + sigma * u_k[g, :]
        ll_rows = self.y[:, None] * eta_k - np.logaddexp(0.0, eta_k)
        ll_groups = np.column_stack([
            np.bincount(g, weights=ll_rows[:, k], minlength=J) for k in range(self.n_agq)
        ])
        log_integrand = (self.log_weights[None, :] + self.nodes[None, :] ** 2
                         + ll_groups - 0.5 * u_k ** 2)
        loglik = np.sum(logsumexp(log_integrand, axis=1) - 0.5 * np.log(np.pi * curv))
        return float(-2.0 * loglik)

    def _start_params(self) -> np.ndarray:
        """Fixed effects from an ordinary binomial GLM, sigma = 1."""
        try:
            glm = sm.GLM(self.y, self.X_scaled, family=sm.families.Binomial()).fit()
            beta = np.asarray(glm.params, dtype=float)
            if not np.all(np.isfinite(beta)):
                raise ValueError("non-finite GLM start values")
        except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as e:
            logger.debug(f"[{self.name}] GLM start values unavailable ({e}); starting from zero")
            beta = np.zeros(self.X_scaled.shape[1])
        return np.append(beta, INITIAL_SIGMA)

    def _projected_gradient(self, params: np.ndarray) -> float:
        grad = np.atleast_1d(approx_fprime(params, self.deviance, centered=True))
        # At the sigma = 0 bound only a descent direction into the interior counts
        if params[-1] <= 0.0 and grad[-1] > 0.0:
            grad[-1] = 0.0
        return float(np.max(np.abs(grad)))

    def fit(self, max_restarts: int = 3, maxiter: int = 1000, seed: int = 0,
            check_singular: bool = True) -> GLMMResult:
        """
        Maximize the likelihood.

        Args:
            max_restarts: Extra attempts from jittered starting values after
                the first attempt fails to converge
            maxiter: L-BFGS-B iteration budget per attempt
            seed: Seed for the jittered restarts
            check_singular: Raise SingularFitError when the random-intercept
                SD collapses below SINGULAR_TOL

        Returns:
            GLMMResult

        Raises:
            ConvergenceError: No attempt converged
            SingularFitError: Singular fit (result attached) and check_singular
        """
        start = self._start_params()
        bounds = [(None, None)] * (len(start) - 1) + [(0.0, None)]
        rng = np.random.default_rng(seed)

        opt, grad_norm = None, np.inf
        attempts = 0
        for attempt in range(max_restarts + 1):
            attempts += 1
            grad_norm = np.inf
            if attempt == 0:
                x0 = start
            else:
                x0 = np.append(start[:-1] + rng.normal(0.0, 0.5, len(start) - 1),
                               rng.uniform(0.25, 2.0))
                logger.info(f"[{self.name}] Restart {attempt}/{max_restarts} from jittered start")

            opt = optimize.minimize(self.deviance, x0, method="L-BFGS-B", bounds=bounds,
                                    options={"maxiter": maxiter})
            if np.all(np.isfinite(opt.x)) and np.isfinite(opt.fun):
                grad_norm = self._projected_gradient(opt.x)
                if opt.success or grad_norm < GRADIENT_TOL:
                    break
            logger.warning(f"[{self.name}] Optimizer did not converge: {opt.message} "
                           f"(max |gradient| {grad_norm:.3g})")
        else:
            raise ConvergenceError(
                f"Model '{self.name}' failed to converge after {attempts} attempt(s): {opt.message}",
                attempts=attempts,
            )

        params, deviance = opt.x, float(opt.fun)
        if 0.0 < params[-1] < BOUNDARY_CHECK:
            at_zero = np.append(params[:-1], 0.0)
            deviance_at_zero = self.deviance(at_zero)
            if deviance_at_zero <= deviance:
                params, deviance = at_zero, deviance_at_zero

        result = self._build_result(params, deviance, opt, grad_norm, attempts)
        logger.debug(f"[{self.name}] logLik={result.loglik:.3f} AIC={result.aic:.2f} "
                     f"sigma={result.re_sd:.4f} in {opt.nit} iterations")

        if check_singular and result.singular:
            raise SingularFitError(
                f"Model '{self.name}' is singular: random-intercept SD {result.re_sd:.2e} "
                f"for '{self.group}' is effectively zero",
                result=result,
            )
        return result

    def _fixed_effect_covariance(self, params: np.ndarray) -> np.ndarray:
        """Covariance of the scaled fixed effects from the observed information."""
        p = len(params) - 1
        sigma = params[-1]
        if sigma > SINGULAR_TOL:
            hess = approx_hess(params, self.deviance)
            try:
                cov = 2.0 * np.linalg.inv(hess)
                cov_beta = cov[:p, :p]
                if np.all(np.diag(cov_beta) > 0) and np.isfinite(cov_beta).all():
                    return cov_beta
            except np.linalg.LinAlgError as e:
                logger.debug(f"[{self.name}] Joint Hessian not invertible ({e})")
            logger.debug(f"[{self.name}] Using the fixed-effect block of the Hessian")

        hess_beta = approx_hess(params[:-1], lambda b: self.deviance(np.append(b, sigma)))
        try:
            cov_beta = 2.0 * np.linalg.inv(hess_beta)
        except np.linalg.LinAlgError:
            logger.warning(f"[{self.name}] Hessian is singular; standard errors unavailable")
            cov_beta = np.full((p, p), np.nan)
        return cov_beta

    def _build_result(self, params: np.ndarray, deviance: float, opt, grad_norm: float,
                      attempts: int) -> GLMMResult:
        sigma = float(params[-1])
        beta = self.transform @ params[:-1]
        cov = self.transform @ self._fixed_effect_covariance(params) @ self.transform.T

        with np.errstate(invalid="ignore"):
            se = np.sqrt(np.diag(cov))
        z = beta / se
        p_values = 2.0 * stats.norm.sf(np.abs(z))
        coefficients = pd.DataFrame(
            {"estimate": beta, "std_error": se, "z_value": z, "p_value": p_values},
            index=pd.Index(self.term_names, name="term"),
        )

        eta_scaled = self.X_scaled @ params[:-1]
        u, _ = self._conditional_modes(eta_scaled, sigma)

        return GLMMResult(
            name=self.name,
            formula=self.formula,
            group=self.group,
            n_agq=self.n_agq,
            coefficients=coefficients,
            cov_params=pd.DataFrame(cov, index=self.term_names, columns=self.term_names),
            loglik=-0.5 * deviance,
            nobs=len(self.y),
            n_groups=self.n_groups,
            re_variance=sigma ** 2,
            var_fixed=float(np.var(self.X @ beta, ddof=1)),
            converged=True,
            optimizer={
                "method": "L-BFGS-B",
                "message": str(opt.message),
                "iterations": int(opt.nit),
                "evaluations": int(opt.nfev),
                "max_abs_gradient": grad_norm,
                "attempts": attempts,
            },
            row_index=self.row_index,
            random_effects=pd.Series(sigma * u, index=self.group_labels, name="intercept"),
            design_info=self.design_info,
        )


def fit_model(data: pd.DataFrame, spec: ModelSpec, n_agq: int = 1, **fit_kwargs) -> GLMMResult:
    """Fit one ModelSpec to the crossing dataset."""
    missing = [c for c in spec.covariates() if c not in data.columns]
    if missing:
        raise ModelSpecificationError(
            f"Model '{spec.name}' needs column(s) not in data: {', '.join(missing)}"
        )
    model = BinomialGLMM(spec.formula(), data, group=spec.group, n_agq=n_agq, name=spec.name)
    return model.fit(**fit_kwargs)
