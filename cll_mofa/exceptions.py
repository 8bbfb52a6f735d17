# -*- coding: utf-8 -*-
"""Exceptions raised by the cll_mofa analysis package."""


class CllMofaError(Exception):
    """Base class for all errors raised by cll_mofa."""


class ConfigError(CllMofaError):
    """Invalid or inconsistent configuration."""


class DataLoadError(CllMofaError):
    """Input data (views, metadata, feature sets) could not be loaded."""


class ModelFileError(CllMofaError):
    """The MOFA+ HDF5 model file is missing, incomplete or inconsistent."""


class AnalysisError(CllMofaError):
    """A downstream analysis cannot be run on the given inputs."""
