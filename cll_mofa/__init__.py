"""MOFA+ multi-omics factor analysis of the CLL cohort."""
from .exceptions import AnalysisError, CllMofaError, ConfigError, DataLoadError, ModelFileError
from .model import MofaModel

__version__ = "0.1.0"

__all__ = [
    "AnalysisError",
    "CllMofaError",
    "ConfigError",
    "DataLoadError",
    "ModelFileError",
    "MofaModel",
]
