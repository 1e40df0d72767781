from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..data.loader import (
    COVARIATE_COLUMNS,
    GROUP_KEY_COLUMN,
    OUTCOME_COLUMN,
    SEASON_COLUMN,
)
from .exceptions import ModelSpecificationError

# Terms a model may use: every numeric covariate plus categorical season
ALLOWED_TERMS = set(COVARIATE_COLUMNS) | {SEASON_COLUMN}


@dataclass(frozen=True)
class ModelSpec:
    """Fixed-effects specification for one crossing model.

    The random intercept is always grouped by individual x winter and the
    response is always the crossing outcome.
    """
    name: str
    terms: Tuple[str, ...]
    interaction: Optional[Tuple[str, str]] = None
    description: str = ""

    group: str = GROUP_KEY_COLUMN
    response: str = OUTCOME_COLUMN

    def __post_init__(self):
        # Accept lists from callers; store tuples so specs stay hashable
        object.__setattr__(self, "terms", tuple(self.terms))
        if self.interaction is not None:
            object.__setattr__(self, "interaction", tuple(self.interaction))
        self.validate()

    def validate(self):
        if not self.terms and self.interaction is None:
            raise ModelSpecificationError(f"Model '{self.name}' has no fixed-effect terms")
        unknown = [t for t in self.main_effects() if t not in ALLOWED_TERMS]
        if unknown:
            raise ModelSpecificationError(
                f"Model '{self.name}' uses unknown covariate(s): {', '.join(unknown)}"
            )
        if len(set(self.terms)) != len(self.terms):
            raise ModelSpecificationError(f"Model '{self.name}' repeats a term")
        if self.interaction is not None:
            if len(self.interaction) != 2:
                raise ModelSpecificationError(
                    f"Model '{self.name}': interaction must be a pair of covariates"
                )
            if self.interaction[0] == self.interaction[1]:
                raise ModelSpecificationError(
                    f"Model '{self.name}': cannot interact '{self.interaction[0]}' with itself"
                )

    def main_effects(self) -> List[str]:
        """Additive terms, with interaction components appended when missing (R's a*b)."""
        effects = list(self.terms)
        if self.interaction is not None:
            for t in self.interaction:
                if t not in effects:
                    effects.append(t)
        return effects

    def rhs(self) -> str:
        parts = self.main_effects()
        if self.interaction is not None:
            parts.append(f"{self.interaction[0]}:{self.interaction[1]}")
        return " + ".join(parts)

    def formula(self) -> str:
        """Fixed-effects formula, e.g. 'crossed ~ traffic_100 + group_size + traffic_100:group_size'."""
        return f"{self.response} ~ {self.rhs()}"

    def lme4_formula(self) -> str:
        """The same model written with lme4's random-intercept notation."""
        return f"{self.formula()} + (1 | {self.group})"

    def covariates(self) -> List[str]:
        """Every column the model reads, response and grouping key included."""
        return [self.response] + self.main_effects() + [self.group]
