"""
Loader for the elk highway-crossing step dataset.

Each row is one hourly step classified as "traveling" while at least two
collared elk were together. The HMM classification, social network metrics
and group-size predictions were computed upstream; here they are static
columns that are read, typed and validated before any model is fitted.
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class DataFormatError(Exception):
    """Raised when the crossing dataset is missing columns or holds invalid values."""
    pass


# Identifiers
ID_COLUMN = "elk_id"
WINTER_COLUMN = "winter"
GROUP_KEY_COLUMN = "elk_winter"
SEASON_COLUMN = "season"

# Outcome
OUTCOME_COLUMN = "crossed"

# Closed enumerations (first level is the reference level in model formulas)
WINTER_LEVELS = ["w2", "w3"]
SEASON_LEVELS = ["Fall", "Winter", "Spring"]

# Numeric covariates, in the order they appear in the dataset documentation
COVARIATE_DESCRIPTIONS = {
    'traffic': 'Hourly traffic volume (vehicles per hour)',
    'traffic_100': 'Hourly traffic volume divided by 100',
    'n_collared': 'Number of collared elk in the group',
    'prop_collared': 'Proportion of deployed collars present in the group',
    'group_size': 'Predicted total group size (model-derived)',
    'elo': 'Dominance of the focal elk (elo-score)',
    'eigen_scaled': 'Social connectedness of the focal elk (scaled eigenvector centrality)',
    'sri_median': 'Social familiarity of the focal elk (median simple ratio index)',
    'fusion_median': 'Social stability of the focal elk (median hours since dyadic fusion)',
    'group_elo_max': 'Group dominance (maximum elo-score across members)',
    'group_eigen_max': 'Group connectedness (maximum scaled eigenvector centrality)',
    'group_sri_median': 'Group familiarity (median simple ratio index across members)',
    'group_fusion_median': 'Group stability (median hours since fusion across members)',
}
COVARIATE_COLUMNS = list(COVARIATE_DESCRIPTIONS)

REQUIRED_COLUMNS = [
    ID_COLUMN,
    WINTER_COLUMN,
    GROUP_KEY_COLUMN,
    SEASON_COLUMN,
    OUTCOME_COLUMN,
] + COVARIATE_COLUMNS

DEFAULT_DATA_PATH = Path("data/processed/elk_highway_crossings.csv")


def make_group_key(elk_id: pd.Series, winter: pd.Series) -> pd.Series:
    """Build the individual x winter key used as the random-effect grouping unit."""
    return elk_id.astype(str) + "_" + winter.astype(str)


def load_crossing_data(path: Union[str, Path] = DEFAULT_DATA_PATH) -> pd.DataFrame:
    """
    Load and validate the crossing dataset.

    Args:
        path: CSV file with a header row and one line per traveling step

    Returns:
        DataFrame with one row per input record and every input column,
        typed as described in COVARIATE_DESCRIPTIONS

    Raises:
        DataFormatError: If the file cannot be read, a required column is
            absent, or a value violates the dataset invariants
    """
    path = Path(path)
    if not path.exists():
        raise DataFormatError(f"Crossing dataset not found: {path}")

    try:
        df = pd.read_csv(
            path,
            dtype={ID_COLUMN: str, WINTER_COLUMN: str, GROUP_KEY_COLUMN: str, SEASON_COLUMN: str},
            encoding="utf-8",
        )
    except pd.errors.EmptyDataError as e:
        raise DataFormatError(f"Crossing dataset is empty: {path}") from e
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise DataFormatError(f"Could not parse {path}: {e}") from e

    df = validate_crossing_data(df)
    logger.info(f"Loaded {len(df):,} steps from {path.name} "
                f"({df[GROUP_KEY_COLUMN].nunique()} individual x winter levels)")
    return df


def validate_crossing_data(df: pd.DataFrame) -> pd.DataFrame:
    """
    Type and validate an in-memory crossing dataset.

    Returns a typed copy; the input frame is not modified. Row count and
    column set are preserved.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataFormatError(f"Missing required columns: {', '.join(missing)}")

    out = df.copy()

    out[OUTCOME_COLUMN] = _validate_outcome(out[OUTCOME_COLUMN])

    for col in COVARIATE_COLUMNS:
        numeric = pd.to_numeric(out[col], errors="coerce")
        bad = numeric.isna() & out[col].notna()
        if bad.any():
            example = out.loc[bad, col].iloc[0]
            raise DataFormatError(
                f"Column '{col}' has {int(bad.sum())} non-numeric value(s), e.g. {example!r}"
            )
        out[col] = numeric.astype(float)

    out[SEASON_COLUMN] = _validate_levels(out[SEASON_COLUMN], SEASON_COLUMN, SEASON_LEVELS)
    out[WINTER_COLUMN] = _validate_levels(out[WINTER_COLUMN], WINTER_COLUMN, WINTER_LEVELS)

    for col in (ID_COLUMN, GROUP_KEY_COLUMN):
        if out[col].isna().any():
            raise DataFormatError(f"Column '{col}' has missing values")
        out[col] = out[col].astype(str)

    expected_key = make_group_key(out[ID_COLUMN], out[WINTER_COLUMN])
    mismatched = expected_key != out[GROUP_KEY_COLUMN]
    if mismatched.any():
        row = mismatched.idxmax()
        raise DataFormatError(
            f"'{GROUP_KEY_COLUMN}' must equal '<{ID_COLUMN}>_<{WINTER_COLUMN}>'; "
            f"row {row} has {out.at[row, GROUP_KEY_COLUMN]!r}, expected {expected_key.at[row]!r}"
        )

    if (out["traffic"] < 0).any():
        raise DataFormatError(f"'traffic' has {int((out['traffic'] < 0).sum())} negative value(s)")

    # NaN comparisons are False, so rows missing either value pass here
    undersized = out["group_size"] < out["n_collared"]
    if undersized.any():
        raise DataFormatError(
            f"'group_size' is smaller than 'n_collared' on {int(undersized.sum())} row(s)"
        )

    return out


def _validate_outcome(values: pd.Series) -> pd.Series:
    numeric = pd.to_numeric(values, errors="coerce")
    valid = numeric.isin([0, 1])
    if not valid.all():
        bad = values[~valid]
        raise DataFormatError(
            f"Outcome '{OUTCOME_COLUMN}' must be 0 or 1; found {len(bad)} invalid value(s), "
            f"e.g. {bad.iloc[0]!r}"
        )
    return numeric.astype(int)


def _validate_levels(values: pd.Series, name: str, levels: List[str]) -> pd.Series:
    stripped = values.astype("string").str.strip()
    unknown = sorted(set(stripped.dropna()) - set(levels))
    if unknown or stripped.isna().any():
        found = unknown if unknown else ["<missing>"]
        raise DataFormatError(
            f"Column '{name}' must be one of {levels}; found {found}"
        )
    return pd.Categorical(stripped.astype(str), categories=levels)


def describe_dataset(df: pd.DataFrame) -> Dict:
    """Descriptive counts for the loaded dataset."""
    n = len(df)
    crossings = int(df[OUTCOME_COLUMN].sum()) if n else 0
    by_season = (
        df.groupby(SEASON_COLUMN, observed=False)[OUTCOME_COLUMN]
        .agg(steps="size", crossings="sum")
        .reset_index()
    )
    return {
        "steps": n,
        "individuals": int(df[ID_COLUMN].nunique()),
        "individual_winters": int(df[GROUP_KEY_COLUMN].nunique()),
        "crossings": crossings,
        "crossing_rate": float(crossings / n) if n else np.nan,
        "by_season": by_season,
    }
