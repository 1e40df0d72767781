"""
Text and CSV reporting for fitted crossing models.

Everything here formats values that were already computed; no statistics
are calculated beyond rounding.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from ..models.glmm import GLMMResult

logger = logging.getLogger(__name__)

RULE = "=" * 72
SIGNIF_LEGEND = "Signif. codes:  0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1"


def significance_code(p: float) -> str:
    """R-style significance stars for a p-value."""
    if p is None or not np.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    elif p < 0.01:
        return "**"
    elif p < 0.05:
        return "*"
    elif p < 0.1:
        return "."
    return ""


def _fmt(x: float, k: int = 4) -> str:
    if x is None or not np.isfinite(x):
        return "NA"
    return f"{x:.{k}f}"


def _fmt_p(p: float) -> str:
    if p is None or not np.isfinite(p):
        return "NA"
    if p < 2e-16:
        return "<2e-16"
    return f"{p:.3g}" if p < 0.001 else f"{p:.4f}"


def format_dataset_summary(summary: Dict) -> str:
    lines = [
        RULE,
        "Elk highway-crossing dataset",
        RULE,
        f"Traveling steps:              {summary['steps']:,}",
        f"Individuals:                  {summary['individuals']}",
        f"Individual x winter levels:   {summary['individual_winters']}",
        f"Crossings:                    {summary['crossings']:,} "
        f"({100 * summary['crossing_rate']:.2f}% of steps)",
    ]
    by_season = summary.get("by_season")
    if by_season is not None and len(by_season):
        lines.append("")
        lines.append(by_season.to_string(index=False))
    return "\n".join(lines)


def _estimation_method(result: GLMMResult) -> str:
    if result.n_agq == 1:
        return "Laplace Approximation"
    return f"Adaptive Gauss-Hermite Quadrature, nAGQ = {result.n_agq}"


def fixed_effects_table(result: GLMMResult) -> pd.DataFrame:
    """Fixed-effect estimates formatted as strings, glmer column names."""
    coefs = result.coefficients
    return pd.DataFrame({
        "Estimate": [_fmt(v) for v in coefs["estimate"]],
        "Std. Error": [_fmt(v) for v in coefs["std_error"]],
        "z value": [_fmt(v, 3) for v in coefs["z_value"]],
        "Pr(>|z|)": [_fmt_p(v) for v in coefs["p_value"]],
        "": [significance_code(v) for v in coefs["p_value"]],
    }, index=coefs.index)


def format_model_summary(result: GLMMResult, warning: Optional[str] = None) -> str:
    """
    glmer-style summary of one fitted model.

    Args:
        result: Fitted model
        warning: Optional message printed under the header (e.g. singular fit)
    """
    fit_stats = pd.DataFrame(
        [[_fmt(result.aic, 1), _fmt(result.bic, 1), _fmt(result.loglik, 1),
          _fmt(result.deviance, 1), str(result.df_resid)]],
        columns=["AIC", "BIC", "logLik", "deviance", "df.resid"],
    )
    random = pd.DataFrame(
        [[result.group, "(Intercept)", _fmt(result.re_variance), _fmt(result.re_sd)]],
        columns=["Groups", "Name", "Variance", "Std.Dev."],
    )

    lines = [
        RULE,
        f"Model: {result.name}",
        RULE,
    ]
    if warning:
        lines.append(f"WARNING: {warning}")
    lines.extend([
        f"Generalized linear mixed model fit by maximum likelihood ({_estimation_method(result)})",
        " Family: binomial  ( logit )",
        f"Formula: {result.formula} + (1 | {result.group})",
        "",
        fit_stats.to_string(index=False),
        "",
        "Random effects:",
        random.to_string(index=False),
        f"Number of obs: {result.nobs}, groups:  {result.group}, {result.n_groups}",
        "",
        "Fixed effects:",
        fixed_effects_table(result).to_string(),
        "---",
        SIGNIF_LEGEND,
        "",
        f"R2m = {_fmt(result.r2_marginal, 3)}, R2c = {_fmt(result.r2_conditional, 3)} "
        f"(theoretical, binomial logit)",
    ])
    return "\n".join(lines)


def format_fit_failure(name: str, error: Exception) -> str:
    return "\n".join([
        RULE,
        f"Model: {name}",
        RULE,
        f"FAILED ({type(error).__name__}): {error}",
    ])


def format_aic_table(name: str, table: pd.DataFrame) -> str:
    shown = table.copy()
    shown["loglik"] = shown["loglik"].map(lambda v: _fmt(v, 2))
    shown["aic"] = shown["aic"].map(lambda v: _fmt(v, 2))
    shown["delta_aic"] = shown["delta_aic"].map(lambda v: _fmt(v, 2))
    shown["weight"] = shown["weight"].map(lambda v: _fmt(v, 3))
    shown["cum_weight"] = shown["cum_weight"].map(lambda v: _fmt(v, 3))
    return "\n".join([
        f"AIC comparison: {name}",
        "-" * 72,
        shown.to_string(index=False),
    ])


def format_comparison_problem(name: str, message: str) -> str:
    return "\n".join([
        f"AIC comparison: {name}",
        "-" * 72,
        message,
    ])


def coefficient_table(outcomes: Dict) -> pd.DataFrame:
    """Long table of fixed effects for every model with a result."""
    frames = []
    for name, outcome in outcomes.items():
        if outcome.result is None:
            continue
        coefs = outcome.result.coefficients.reset_index()
        coefs.insert(0, "model", name)
        frames.append(coefs)
    if not frames:
        return pd.DataFrame(columns=["model", "term", "estimate", "std_error", "z_value", "p_value"])
    return pd.concat(frames, ignore_index=True)


def model_overview(outcomes: Dict) -> pd.DataFrame:
    """One row per model: status, fit statistics and pseudo-R2."""
    rows = []
    for name, outcome in outcomes.items():
        row = {"model": name, "status": outcome.status,
               "formula": outcome.spec.lme4_formula()}
        result = outcome.result
        if result is not None:
            row.update({
                "nobs": result.nobs,
                "n_groups": result.n_groups,
                "loglik": result.loglik,
                "aic": result.aic,
                "bic": result.bic,
                "re_variance": result.re_variance,
                "R2m": result.r2_marginal,
                "R2c": result.r2_conditional,
            })
        row["message"] = str(outcome.error) if outcome.error is not None else ""
        rows.append(row)
    return pd.DataFrame(rows)


def format_model_overview(outcomes: Dict) -> str:
    overview = model_overview(outcomes)
    cols = [c for c in ["model", "status", "nobs", "aic", "R2m", "R2c"] if c in overview.columns]
    shown = overview[cols].copy()
    for col, k in (("aic", 2), ("R2m", 3), ("R2c", 3)):
        if col in shown.columns:
            shown[col] = shown[col].map(lambda v: _fmt(v, k))
    if "nobs" in shown.columns:
        shown["nobs"] = shown["nobs"].map(lambda v: "NA" if pd.isna(v) else str(int(v)))
    return "\n".join([RULE, "Model overview", RULE, shown.to_string(index=False)])


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]+", "_", name).strip("_").lower()


def write_tables(report, out_dir: Path) -> List[Path]:
    """
    Write machine-readable tables for an analysis report.

    Files: models.csv (overview), coefficients.csv (fixed effects) and one
    aic_<comparison>.csv per completed comparison.

    Returns:
        Paths written
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []

    path = out_dir / "models.csv"
    model_overview(report.outcomes).to_csv(path, index=False)
    written.append(path)

    path = out_dir / "coefficients.csv"
    coefficient_table(report.outcomes).to_csv(path, index=False)
    written.append(path)

    for name, comparison in report.comparisons.items():
        if comparison.table is None:
            continue
        path = out_dir / f"aic_{_slug(name)}.csv"
        comparison.table.to_csv(path, index=False)
        written.append(path)

    for path in written:
        logger.info(f"Saved {path}")
    return written
