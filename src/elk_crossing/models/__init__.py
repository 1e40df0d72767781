from .exceptions import (
    ConvergenceError,
    GLMMError,
    ModelSpecificationError,
    SingularFitError,
)
from .formula import ModelSpec
from .glmm import BinomialGLMM, GLMMResult, fit_model
from .comparison import (
    AICComparison,
    IncomparableModelsError,
    aic_table,
    compare_aic,
)

__all__ = [
    "AICComparison",
    "BinomialGLMM",
    "ConvergenceError",
    "GLMMError",
    "GLMMResult",
    "IncomparableModelsError",
    "ModelSpec",
    "ModelSpecificationError",
    "SingularFitError",
    "aic_table",
    "compare_aic",
    "fit_model",
]
