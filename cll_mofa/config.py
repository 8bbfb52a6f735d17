# -*- coding: utf-8 -*-
"""
Configuration for the CLL MOFA+ analysis.

The defaults describe the CLL cohort (Dietrich et al. 2018, as used in the
MOFA+ vignettes): four views (drug response, DNA methylation, mRNA
expression, somatic mutations) and clinical metadata with IGHV status,
trisomy 12 and time-to-treatment.

A run is configured with a plain dict. `load_config` merges a JSON file and
explicit overrides over `DEFAULT_CONFIG` and validates the result.
"""
import os
import copy
import json
import logging

import matplotlib.pyplot as plt

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

# --- Analysis Configuration ---
DEFAULT_CONFIG = {
    "output_dir": "output/cll_mofa",
    "figure_dir": "output/cll_mofa/figures",
    "log_dir": None,
    "model_file": "output/cll_mofa/MOFA2_CLL.hdf5",
    "metadata_file": "data/CLL_metadata.csv",
    "feature_sets_file": None,
    "data_paths": {
        "Drugs": "data/CLL_data_Drugs.csv",
        "Methylation": "data/CLL_data_Methylation.csv",
        "mRNA": "data/CLL_data_mRNA.csv",
        "Mutations": "data/CLL_data_Mutations.csv",
    },
    "sample_column": "sample",
    "view_names": ["Drugs", "Methylation", "mRNA", "Mutations"],
    "likelihoods": {
        "Drugs": "gaussian",
        "Methylation": "gaussian",
        "mRNA": "gaussian",
        "Mutations": "bernoulli",
    },
    "group_by": None,

    # mofapy2 model/training options
    "num_factors": 15,
    "maxiter": 1000,
    "convergence_mode": "slow",
    "drop_factor_threshold": None,
    "start_elbo": 1,
    "freq_elbo": 1,
    "spikeslab_weights": True,
    "ard_factors": False,
    "ard_weights": True,
    "scale_views": False,
    "scale_groups": False,
    "save_data": True,
    "seed": 42,

    # Downstream analysis
    "fdr_alpha": 0.05,
    "covariates": ["IGHV", "trisomy12", "Gender", "age", "died"],
    "color_by": ["IGHV", "trisomy12"],
    "scatter_factors": ["Factor1", "Factor3"],
    "weights_to_plot": [
        ["Mutations", "Factor1"],
        ["Mutations", "Factor3"],
        ["mRNA", "Factor1"],
        ["Methylation", "Factor1"],
    ],
    "n_top_features": 10,
    "n_permutations": 0,
    "enrichment": {
        "view": "mRNA",
        "signs": ["positive", "negative"],
        "statistical_test": "parametric",
        "set_statistic": "mean_diff",
        "min_size": 15,
        "alpha": 0.01,
        "n_permutations": 1000,
        "factors": None,
    },
    "classifier": {
        "covariates": ["IGHV", "trisomy12"],
        "n_estimators": 500,
        "cv_folds": 5,
        "factors": None,
    },
    "survival": {
        "time_col": "TTT",
        "event_col": "treatedAfter",
        "penalizer": 0.0,
        "scale": True,
        "factors": None,
        "km_factors": ["Factor1"],
        "min_prop": 0.1,
    },
}

# --- Visualization Settings ---
PLOT_SETTINGS = {
    "figsize_heatmap": (10, 7),
    "figsize_factor": (8, 6),
    "figsize_weights": (8, 6),
    "figsize_survival": (8, 6),
    "heatmap_cmap": "viridis",
    "r2_cmap": "Blues",
    "weights_cmap": "RdBu_r",
    "scatter_alpha": 0.7,
    "box_color": "lightgray",
    "box_alpha": 0.5,
    "dpi": 300,
}

# Color palettes
VIEW_COLORS = {'Drugs': '#440154', 'Methylation': '#21918c',
               'mRNA': '#fde725', 'Mutations': '#5ec962'}
IGHV_COLORS = {0: '#3b528b', 1: '#fde725'}
TRISOMY12_COLORS = {0: '#21918c', 1: '#d95f02'}
MISSING_COLOR = '#bdbdbd'

VALID_LIKELIHOODS = ("gaussian", "bernoulli", "poisson")
VALID_CONVERGENCE_MODES = ("fast", "medium", "slow")
VALID_SIGNS = ("all", "positive", "negative")
VALID_STAT_TESTS = ("parametric", "cor_adj_parametric", "permutation")
VALID_SET_STATISTICS = ("mean_diff", "rank_sum")


def covariate_palette(covariate, levels):
    """Colour mapping for the levels of a covariate."""
    known = {"IGHV": IGHV_COLORS, "trisomy12": TRISOMY12_COLORS}.get(covariate)
    if known is not None and all(lv in known for lv in levels):
        return {lv: known[lv] for lv in levels}
    cmap = plt.cm.viridis
    return {lv: cmap(i / max(1, len(levels) - 1)) for i, lv in enumerate(levels)}


def _deep_update(base, updates):
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def validate_config(config):
    """Raise ConfigError when the configuration is inconsistent."""
    views = config.get("view_names") or []
    if not views:
        raise ConfigError("'view_names' must list at least one view.")
    if len(set(views)) != len(views):
        raise ConfigError(f"Duplicate view names: {views}")

    likelihoods = config.get("likelihoods") or {}
    unknown_views = [v for v in likelihoods if v not in views]
    if unknown_views:
        raise ConfigError(f"Likelihoods given for unknown views: {unknown_views}")
    bad = {v: lik for v, lik in likelihoods.items() if lik not in VALID_LIKELIHOODS}
    if bad:
        raise ConfigError(f"Unknown likelihoods {bad}; expected one of {VALID_LIKELIHOODS}.")

    if not isinstance(config.get("num_factors"), int) or config["num_factors"] < 1:
        raise ConfigError(f"'num_factors' must be a positive integer, got {config.get('num_factors')!r}.")
    if config.get("maxiter", 1) < 1:
        raise ConfigError("'maxiter' must be >= 1.")
    if config.get("convergence_mode") not in VALID_CONVERGENCE_MODES:
        raise ConfigError(f"'convergence_mode' must be one of {VALID_CONVERGENCE_MODES}.")

    alpha = config.get("fdr_alpha")
    if alpha is None or not 0 < alpha < 1:
        raise ConfigError(f"'fdr_alpha' must be in (0, 1), got {alpha!r}.")

    enrichment = config.get("enrichment", {})
    for sign in enrichment.get("signs", []):
        if sign not in VALID_SIGNS:
            raise ConfigError(f"Unknown enrichment sign '{sign}'; expected one of {VALID_SIGNS}.")
    if enrichment.get("statistical_test", "parametric") not in VALID_STAT_TESTS:
        raise ConfigError(f"Unknown enrichment test; expected one of {VALID_STAT_TESTS}.")
    if enrichment.get("set_statistic", "mean_diff") not in VALID_SET_STATISTICS:
        raise ConfigError(f"Unknown set statistic; expected one of {VALID_SET_STATISTICS}.")

    classifier = config.get("classifier", {})
    if classifier.get("n_estimators", 1) < 1:
        raise ConfigError("'classifier.n_estimators' must be >= 1.")
    if classifier.get("cv_folds", 2) < 2:
        raise ConfigError("'classifier.cv_folds' must be >= 2.")

    survival = config.get("survival", {})
    if survival.get("time_col") == survival.get("event_col"):
        raise ConfigError("Survival 'time_col' and 'event_col' must differ.")
    min_prop = survival.get("min_prop", 0.1)
    if not 0 < min_prop < 0.5:
        raise ConfigError(f"'survival.min_prop' must be in (0, 0.5), got {min_prop!r}.")

    for pair in config.get("weights_to_plot", []):
        if len(pair) != 2:
            raise ConfigError(f"'weights_to_plot' entries must be [view, factor] pairs, got {pair!r}.")
    return config


def load_config(path=None, overrides=None):
    """
    Build a run configuration.

    Args:
        path (str, optional): JSON file whose keys override the defaults.
            Nested dicts (e.g. "survival") are merged key by key.
        overrides (dict, optional): Applied after the JSON file.

    Returns:
        dict: Validated configuration.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, 'r') as f:
                file_config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Could not parse config file '{path}': {e}") from e
        _deep_update(config, file_config)
        logger.info(f"Loaded configuration from {path}")
    if overrides:
        _deep_update(config, overrides)

    # Keep likelihoods in step with the configured views
    for view in config["view_names"]:
        config["likelihoods"].setdefault(view, "gaussian")
    config["likelihoods"] = {v: lik for v, lik in config["likelihoods"].items()
                             if v in config["view_names"]}
    return validate_config(config)


def ensure_output_dirs(config):
    os.makedirs(config["output_dir"], exist_ok=True)
    os.makedirs(config["figure_dir"], exist_ok=True)
    logger.info(f"Output directory: {config['output_dir']}")
    logger.info(f"Figure directory: {config['figure_dir']}")


def set_publication_style():
    """Set up plotting parameters for publication quality."""
    plt.rcParams['svg.fonttype'] = 'none'
    plt.rcParams['pdf.fonttype'] = 42  # Output as Type 42 (TrueType)
    plt.rcParams['font.family'] = 'sans-serif'
    plt.rcParams['font.sans-serif'] = ['Arial', 'Helvetica', 'DejaVu Sans']
    plt.rcParams['axes.linewidth'] = 0.8
    plt.rcParams['xtick.major.width'] = 0.8
    plt.rcParams['ytick.major.width'] = 0.8
    plt.rcParams['xtick.labelsize'] = 9
    plt.rcParams['ytick.labelsize'] = 9
