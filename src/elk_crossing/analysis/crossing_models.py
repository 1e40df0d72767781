"""
Model set for the elk highway-crossing analysis.

Every model is a binomial-logit GLMM with a random intercept for individual x
winter. The fixed effects test three questions in turn:

1. Traffic exposure: does crossing probability fall with hourly traffic, and
   does that depend on season?
2. Group size: which group-size measure (collared elk present, proportion of
   deployed collars present, predicted total group size) best explains
   crossing, and does group size modify the traffic response?
3. Social phenotypes: do dominance, connectedness, familiarity or stability,
   measured for the focal elk or summarised across its group, predict
   crossing beyond traffic?

The model set is fixed by the study design; results never change which
models are fitted next.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from ..data.loader import describe_dataset
from ..models.comparison import IncomparableModelsError, aic_table
from ..models.exceptions import (
    ConvergenceError,
    ModelSpecificationError,
    SingularFitError,
)
from ..models.formula import ModelSpec
from ..models.glmm import GLMMResult, fit_model
from ..reporting.summary import (
    format_aic_table,
    format_comparison_problem,
    format_dataset_summary,
    format_fit_failure,
    format_model_overview,
    format_model_summary,
)

logger = logging.getLogger(__name__)

TRAFFIC = "traffic_100"

MODEL_SPECS: List[ModelSpec] = [
    # Traffic exposure
    ModelSpec("traffic", (TRAFFIC,),
              description="Hourly traffic volume (per 100 vehicles)"),
    ModelSpec("traffic_raw", ("traffic",),
              description="Hourly traffic volume (vehicles)"),
    ModelSpec("traffic_season", (TRAFFIC, "season"),
              description="Traffic plus season"),
    ModelSpec("traffic_x_season", (TRAFFIC, "season"), interaction=(TRAFFIC, "season"),
              description="Traffic response differing by season"),

    # Group size measures
    ModelSpec("n_collared", (TRAFFIC, "n_collared"),
              description="Traffic plus number of collared elk in the group"),
    ModelSpec("prop_collared", (TRAFFIC, "prop_collared"),
              description="Traffic plus proportion of deployed collars present"),
    ModelSpec("group_size", (TRAFFIC, "group_size"),
              description="Traffic plus predicted total group size"),
    ModelSpec("traffic_x_group_size", (TRAFFIC, "group_size"), interaction=(TRAFFIC, "group_size"),
              description="Traffic response modified by predicted group size"),

    # Individual social phenotypes
    ModelSpec("elo", (TRAFFIC, "elo"),
              description="Traffic plus dominance of the focal elk"),
    ModelSpec("eigen", (TRAFFIC, "eigen_scaled"),
              description="Traffic plus social connectedness of the focal elk"),
    ModelSpec("sri", (TRAFFIC, "sri_median"),
              description="Traffic plus social familiarity of the focal elk"),
    ModelSpec("fusion", (TRAFFIC, "fusion_median"),
              description="Traffic plus social stability of the focal elk"),

    # Group-level social phenotypes
    ModelSpec("group_elo", (TRAFFIC, "group_elo_max"),
              description="Traffic plus group dominance (max elo)"),
    ModelSpec("group_eigen", (TRAFFIC, "group_eigen_max"),
              description="Traffic plus group connectedness (max centrality)"),
    ModelSpec("group_sri", (TRAFFIC, "group_sri_median"),
              description="Traffic plus group familiarity (median SRI)"),
    ModelSpec("group_fusion", (TRAFFIC, "group_fusion_median"),
              description="Traffic plus group stability (median hours since fusion)"),

    # Phenotype x traffic
    ModelSpec("traffic_x_elo", (TRAFFIC, "elo"), interaction=(TRAFFIC, "elo"),
              description="Traffic response modified by individual dominance"),
    ModelSpec("traffic_x_group_elo", (TRAFFIC, "group_elo_max"), interaction=(TRAFFIC, "group_elo_max"),
              description="Traffic response modified by group dominance"),
    ModelSpec("traffic_x_eigen", (TRAFFIC, "eigen_scaled"), interaction=(TRAFFIC, "eigen_scaled"),
              description="Traffic response modified by individual connectedness"),
    ModelSpec("traffic_x_group_eigen", (TRAFFIC, "group_eigen_max"),
              interaction=(TRAFFIC, "group_eigen_max"),
              description="Traffic response modified by group connectedness"),

    # Group size with group phenotypes
    ModelSpec("group_size_social", (TRAFFIC, "group_size", "group_elo_max", "group_eigen_max"),
              description="Traffic, group size, group dominance and connectedness"),
]

COMPARISONS: Dict[str, List[str]] = {
    "season": ["traffic", "traffic_season", "traffic_x_season"],
    "group size measure": ["n_collared", "prop_collared", "group_size"],
    "group size x traffic": ["traffic", "group_size", "traffic_x_group_size"],
    "individual phenotypes": ["traffic", "elo", "eigen", "sri", "fusion"],
    "group phenotypes": ["traffic", "group_elo", "group_eigen", "group_sri", "group_fusion"],
    "dominance": ["elo", "group_elo", "traffic_x_elo", "traffic_x_group_elo"],
    "connectedness": ["eigen", "group_eigen", "traffic_x_eigen", "traffic_x_group_eigen"],
    "familiarity": ["sri", "group_sri"],
    "stability": ["fusion", "group_fusion"],
    "group size and social": ["group_size", "group_size_social"],
}


def get_spec(name: str, specs: Sequence[ModelSpec] = MODEL_SPECS) -> ModelSpec:
    for spec in specs:
        if spec.name == name:
            return spec
    raise KeyError(f"Unknown model: {name}")


@dataclass
class ModelOutcome:
    """Result or failure of one model fit."""
    spec: ModelSpec
    result: Optional[GLMMResult] = None
    error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def status(self) -> str:
        if self.error is None:
            return "ok"
        if isinstance(self.error, SingularFitError):
            return "singular"
        return "failed"


@dataclass
class ComparisonOutcome:
    """AIC table for a designated comparison, or why it could not be made."""
    name: str
    models: List[str]
    table: Optional[pd.DataFrame] = None
    error: Optional[Exception] = None
    skipped: Optional[str] = None


@dataclass
class AnalysisReport:
    dataset: Dict
    outcomes: Dict[str, ModelOutcome] = field(default_factory=dict)
    comparisons: Dict[str, ComparisonOutcome] = field(default_factory=dict)

    @property
    def failed(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.status == "failed"]


def run_model(data: pd.DataFrame, spec: ModelSpec, **fit_kwargs) -> ModelOutcome:
    """
    Fit one model, isolating its failures.

    A singular fit keeps its result and is reported as a warning; convergence
    and specification failures are recorded and do not propagate.
    """
    logger.info(f"Fitting {spec.name}: {spec.lme4_formula()}")
    try:
        result = fit_model(data, spec, **fit_kwargs)
    except SingularFitError as e:
        logger.warning(f"{spec.name}: {e}")
        return ModelOutcome(spec, result=e.result, error=e)
    except (ConvergenceError, ModelSpecificationError) as e:
        logger.error(f"{spec.name} failed: {e}")
        return ModelOutcome(spec, error=e)
    logger.info(f"{spec.name}: AIC={result.aic:.2f}, R2m={result.r2_marginal:.3f}, "
                f"R2c={result.r2_conditional:.3f}")
    return ModelOutcome(spec, result=result)


def run_models(data: pd.DataFrame, specs: Sequence[ModelSpec] = MODEL_SPECS,
               workers: int = 1, **fit_kwargs) -> Dict[str, ModelOutcome]:
    """
    Fit every model; outcomes are returned in the order of specs.

    Args:
        data: Validated crossing dataset (shared read-only between fits)
        specs: Models to fit
        workers: Number of threads; 1 fits sequentially
        **fit_kwargs: Passed to fit_model (n_agq, max_restarts, seed, ...)
    """
    names = [s.name for s in specs]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate model names: {', '.join(duplicates)}")

    if workers <= 1:
        return {spec.name: run_model(data, spec, **fit_kwargs) for spec in specs}

    outcomes = {}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(run_model, data, spec, **fit_kwargs): spec for spec in specs}
        for completed, future in enumerate(as_completed(futures), start=1):
            spec = futures[future]
            outcomes[spec.name] = future.result()
            logger.debug(f"[{completed}/{len(specs)}] {spec.name} done")
    return {name: outcomes[name] for name in names}


def run_comparisons(outcomes: Dict[str, ModelOutcome],
                    comparisons: Dict[str, List[str]] = COMPARISONS) -> Dict[str, ComparisonOutcome]:
    """AIC tables for each designated comparison whose models were all fitted."""
    results = {}
    for name, models in comparisons.items():
        comparison = ComparisonOutcome(name=name, models=list(models))
        missing = [m for m in models if m not in outcomes]
        unfitted = [m for m in models if m in outcomes and outcomes[m].result is None]
        if missing:
            comparison.skipped = f"model(s) not run: {', '.join(missing)}"
        elif unfitted:
            comparison.skipped = f"model(s) failed to fit: {', '.join(unfitted)}"
        else:
            try:
                comparison.table = aic_table([outcomes[m].result for m in models])
            except IncomparableModelsError as e:
                logger.error(f"Comparison '{name}' not possible: {e}")
                comparison.error = e
        if comparison.skipped:
            logger.warning(f"Skipping comparison '{name}': {comparison.skipped}")
        results[name] = comparison
    return results


def select_specs(names: Optional[Sequence[str]] = None,
                 specs: Sequence[ModelSpec] = MODEL_SPECS) -> List[ModelSpec]:
    if not names:
        return list(specs)
    return [get_spec(n, specs) for n in names]


def run_analysis(data: pd.DataFrame, specs: Sequence[ModelSpec] = MODEL_SPECS,
                 comparisons: Optional[Dict[str, List[str]]] = None,
                 workers: int = 1, **fit_kwargs) -> AnalysisReport:
    """
    Fit the model set and run the comparisons between its members.

    When comparisons is None, the designated comparisons whose models are all
    in specs are run.
    """
    if comparisons is None:
        selected = {s.name for s in specs}
        comparisons = {
            name: models for name, models in COMPARISONS.items()
            if all(m in selected for m in models)
        }

    report = AnalysisReport(dataset=describe_dataset(data))
    report.outcomes = run_models(data, specs, workers=workers, **fit_kwargs)
    report.comparisons = run_comparisons(report.outcomes, comparisons)

    n_ok = sum(o.status == "ok" for o in report.outcomes.values())
    logger.info(f"Fitted {n_ok}/{len(report.outcomes)} models without warnings; "
                f"{len(report.failed)} failed")
    return report


def render_report(report: AnalysisReport) -> str:
    """Human-readable report: dataset, each model, comparisons, overview."""
    blocks = [format_dataset_summary(report.dataset)]
    for name, outcome in report.outcomes.items():
        if outcome.result is not None:
            warning = str(outcome.error) if outcome.error is not None else None
            blocks.append(format_model_summary(outcome.result, warning=warning))
        else:
            blocks.append(format_fit_failure(name, outcome.error))

    for name, comparison in report.comparisons.items():
        if comparison.table is not None:
            blocks.append(format_aic_table(name, comparison.table))
        elif comparison.error is not None:
            blocks.append(format_comparison_problem(name, f"NOT COMPARABLE: {comparison.error}"))
        else:
            blocks.append(format_comparison_problem(name, f"SKIPPED: {comparison.skipped}"))

    if report.outcomes:
        blocks.append(format_model_overview(report.outcomes))
    return "\n\n".join(blocks) + "\n"
