# -*- coding: utf-8 -*-
"""
The CLL MOFA+ analysis walkthrough.

`run_analysis` loads a trained model and the sample metadata, then runs the
requested sections in order. Each section writes its tables to
config["output_dir"] and its figures to config["figure_dir"]. A failing
section is logged and recorded in the returned status dict; the remaining
sections still run.
"""
import os
import time
import logging
from collections import OrderedDict

import numpy as np
import pandas as pd

from . import plotting
from .association import compare_factor_groups, factor_covariate_associations, permutation_test
from .classification import impute_covariates, label_summary
from .config import ensure_output_dirs
from .data import align_views, data_overview, load_metadata, load_views
from .enrichment import enrichment_table, load_feature_sets, run_enrichment, top_pathway_features
from .exceptions import AnalysisError, CllMofaError
from .logging_utils import log_section
from .model import MofaModel
from .survival import fit_cox, kaplan_meier, survival_frame

logger = logging.getLogger(__name__)


class AnalysisState:
    """Model, metadata and results shared between the sections of one run."""

    def __init__(self, config, model, metadata):
        self.config = config
        self.model = model
        self.metadata = metadata
        self.factors = model.get_factors()
        self.results = {}

    def table(self, df, filename, index=True):
        path = os.path.join(self.config["output_dir"], filename)
        df.to_csv(path, index=index)
        logger.info(f"   Saved table: {path}")
        return path

    def figure(self, filename):
        return os.path.join(self.config["figure_dir"], filename)


def load_state(config):
    """Open the model and attach the external sample metadata."""
    model = MofaModel(config["model_file"])
    try:
        metadata = load_metadata(config["metadata_file"], config.get("sample_column", "sample"))
        metadata = model.add_sample_metadata(metadata)
    except CllMofaError:
        model.close()
        raise
    return AnalysisState(config, model, metadata)


# --- Sections ------------------------------------------------------------

def section_overview(state):
    model, config = state.model, state.config
    if model.has_data():
        views = model.get_data()
    else:
        logger.warning("Model file has no stored data; reading the views from config['data_paths'].")
        views = align_views(load_views(config["data_paths"], model.views), samples=model.sample_names)
    summary, observed = data_overview(views)
    for view, row in summary.iterrows():
        logger.info(f"   {view}: {row['n_features']} features, {row['n_samples_observed']} samples observed, "
                    f"{row['fraction_missing']:.1%} missing")
    state.table(summary, "data_overview.csv")
    plotting.plot_data_overview(summary, observed, outfile=state.figure("data_overview.png"))
    state.results['overview'] = summary


def section_variance(state):
    model = state.model
    r2 = model.get_variance_explained()
    r2_total = model.get_variance_explained(total=True)
    state.table(r2, "variance_explained_per_factor.csv", index=False)
    state.table(r2_total, "variance_explained_total.csv", index=False)
    for _, row in r2_total.iterrows():
        logger.info(f"   {row['group']} / {row['view']}: {row['R2']:.1f}% variance explained")
    plotting.plot_variance_explained(r2, plot="factors", outfile=state.figure("variance_explained_factors.png"))
    plotting.plot_variance_explained(r2_total, plot="total", outfile=state.figure("variance_explained_total.png"))
    try:
        plotting.plot_view_factor_network(r2, threshold=1.0, outfile=state.figure("view_factor_network.png"))
    except AnalysisError as e:
        logger.warning(f"   View-factor network skipped: {e}")
    state.results['variance'] = r2


def section_correlation(state):
    corr = state.model.factor_correlation()
    off_diagonal = np.abs(corr.values - np.eye(corr.shape[0]))
    logger.info(f"   Largest absolute factor correlation: {off_diagonal.max():.3f}")
    state.table(corr, "factor_correlation.csv")
    plotting.plot_factor_correlation(corr, outfile=state.figure("factor_correlation.png"))
    state.results['correlation'] = corr


def section_associations(state):
    config = state.config
    associations = factor_covariate_associations(state.factors, state.metadata,
                                                 covariates=config.get("covariates"),
                                                 fdr_alpha=config["fdr_alpha"])
    state.table(associations, "factor_covariate_associations.csv", index=False)
    plotting.plot_association_heatmap(associations, outfile=state.figure("factor_covariate_associations.png"))

    if config.get("n_permutations", 0) > 0:
        perm = permutation_test(state.factors, state.metadata, associations,
                                n_permutations=config["n_permutations"],
                                fdr_alpha=config["fdr_alpha"], seed=config["seed"])
        state.table(perm, "factor_covariate_permutation.csv", index=False)

    for cov in config.get("color_by", []):
        if cov not in state.metadata.columns or state.metadata[cov].dropna().nunique() != 2:
            continue
        comparison = compare_factor_groups(state.factors, state.metadata[cov].rename(cov),
                                           fdr_alpha=config["fdr_alpha"])
        state.table(comparison, f"factor_comparison_{cov}.csv", index=False)
    state.results['associations'] = associations


def section_factors(state):
    config = state.config
    color_by = [c for c in config.get("color_by", []) if c in state.metadata.columns]
    if not color_by:
        plotting.plot_factor(state.factors, state.metadata, outfile=state.figure("factors.png"))
    for cov in color_by:
        plotting.plot_factor(state.factors, state.metadata, color_by=cov,
                             outfile=state.figure(f"factors_by_{cov}.png"))

    x, y = config["scatter_factors"]
    plotting.plot_factors_scatter(state.factors, state.metadata, x=x, y=y,
                                  color_by=color_by[0] if color_by else None,
                                  shape_by=color_by[1] if len(color_by) > 1 else None,
                                  outfile=state.figure(f"scatter_{x}_{y}.png"))
    state.table(state.factors, "factors.csv")


def section_weights(state):
    model, config = state.model, state.config
    n_top = config["n_top_features"]
    color_by = next((c for c in config.get("color_by", []) if c in state.metadata.columns), None)
    weights = model.get_weights(scale=True)
    for view, w in weights.items():
        state.table(w, f"weights_{view}.csv")

    top_tables = []
    for view, factor in config["weights_to_plot"]:
        logger.info(f"   Weights of {factor} in {view}")
        plotting.plot_weights(weights[view], view, factor, n_labels=n_top,
                              outfile=state.figure(f"weights_{view}_{factor}.png"))
        top = model.get_top_weights(view, factor, n=n_top)
        top_tables.append(top)
        plotting.plot_top_weights(top, outfile=state.figure(f"top_weights_{view}_{factor}.png"))

        if model.has_data():
            data = model.get_data([view])[view]
            features = top['feature'].tolist()
            plotting.plot_data_heatmap(data, state.factors, factor, features, annotation=state.metadata,
                                       color_by=color_by,
                                       outfile=state.figure(f"data_heatmap_{view}_{factor}.png"))
            plotting.plot_data_scatter(data, state.factors, factor, features[:6], color_by=color_by,
                                       metadata=state.metadata,
                                       outfile=state.figure(f"data_scatter_{view}_{factor}.png"))
    if top_tables:
        state.table(pd.concat(top_tables, ignore_index=True), "top_weights.csv", index=False)
    state.results['weights'] = weights


def section_imputation(state):
    model, config = state.model, state.config
    imputed = model.impute()
    for view, df in imputed.items():
        state.table(df, f"imputed_{view}.csv")
    if config["weights_to_plot"]:
        view, factor = config["weights_to_plot"][0]
        features = model.get_top_weights(view, factor, n=config["n_top_features"])['feature'].tolist()
        plotting.plot_data_heatmap(imputed[view], state.factors, factor, features,
                                   outfile=state.figure(f"imputed_heatmap_{view}_{factor}.png"))
    state.results['imputation'] = imputed


def section_enrichment(state):
    model, config = state.model, state.config
    opts = config["enrichment"]
    if not config.get("feature_sets_file"):
        raise AnalysisError("No feature sets file configured for the enrichment analysis.")
    feature_sets = load_feature_sets(config["feature_sets_file"])
    view = opts["view"]
    if view not in model.views:
        raise AnalysisError(f"Enrichment view '{view}' not in model views {model.views}.")
    weights = model.get_weights(views=[view])[view]
    data = None
    if opts["statistical_test"] == "cor_adj_parametric":
        data = model.get_data([view])[view]

    results = {}
    for sign in opts["signs"]:
        log_section(logger, f"Enrichment: {view} weights, sign={sign}")
        result = run_enrichment(weights, feature_sets, factors=opts.get("factors"), sign=sign,
                                statistical_test=opts["statistical_test"],
                                set_statistic=opts["set_statistic"], min_size=opts["min_size"],
                                n_permutations=opts["n_permutations"], data=data,
                                alpha=opts["alpha"], seed=config["seed"])
        results[sign] = result
        state.table(enrichment_table(result), f"enrichment_{view}_{sign}.csv", index=False)
        plotting.plot_enrichment_heatmap(result, outfile=state.figure(f"enrichment_heatmap_{view}_{sign}.png"))
        for factor, pathways in result['sig_pathways'].items():
            if not pathways:
                continue
            plotting.plot_enrichment(result, factor,
                                     outfile=state.figure(f"enrichment_{view}_{sign}_{factor}.png"))
            plotting.plot_enrichment_detailed(
                result, factor, outfile=state.figure(f"enrichment_detailed_{view}_{sign}_{factor}.png"))
            genes = top_pathway_features(result, pathways[0], factor)
            logger.info(f"   {factor}: top feature set '{pathways[0]}' driven by {genes.index.tolist()[:5]}")
    state.results['enrichment'] = results


def section_classification(state):
    config = state.config
    opts = config["classifier"]
    metadata, results = impute_covariates(state.factors, state.metadata, covariates=opts["covariates"],
                                          n_estimators=opts["n_estimators"], cv_folds=opts["cv_folds"],
                                          seed=config["seed"], factors_subset=opts.get("factors"))
    if not results:
        raise AnalysisError(f"None of the covariates {opts['covariates']} are in the metadata.")
    imputed_cols = [c for c in metadata.columns if c.endswith('_imputed') or c.endswith('_is_predicted')]
    state.table(metadata[imputed_cols], "imputed_labels.csv")
    state.table(label_summary(results), "label_prediction_summary.csv", index=False)
    for cov, res in results.items():
        if len(res['probabilities']):
            state.table(res['probabilities'], f"label_probabilities_{cov}.csv")
    plotting.plot_label_predictions(results, metadata=state.metadata,
                                    outfile=state.figure("label_predictions.png"))
    state.metadata = metadata
    state.results['classification'] = results


def section_survival(state):
    config = state.config
    opts = config["survival"]
    time_col, event_col = opts["time_col"], opts["event_col"]
    frame = survival_frame(state.factors, state.metadata, time_col=time_col, event_col=event_col,
                           factors_subset=opts.get("factors"), scale=opts["scale"])
    cox = fit_cox(frame, time_col=time_col, event_col=event_col, penalizer=opts["penalizer"],
                  fdr_alpha=config["fdr_alpha"])
    state.table(cox['summary'], "cox_hazard_ratios.csv")
    plotting.plot_cox_hazard_ratios(cox, outfile=state.figure("cox_hazard_ratios.png"))

    km_rows = []
    for factor in opts.get("km_factors", []):
        km = kaplan_meier(frame, factor, time_col=time_col, event_col=event_col, min_prop=opts["min_prop"])
        plotting.plot_kaplan_meier(km, outfile=state.figure(f"kaplan_meier_{factor}.png"))
        km_rows.append({'Factor': factor, 'Cutpoint': km['cutpoint'], 'P_value': km['p_value'],
                        'Test_statistic': km['test_statistic'],
                        'N_low': int((km['groups'] == 'low').sum()),
                        'N_high': int((km['groups'] == 'high').sum()),
                        'Median_low': km['median_survival']['low'],
                        'Median_high': km['median_survival']['high']})
    if km_rows:
        state.table(pd.DataFrame(km_rows), "kaplan_meier_summary.csv", index=False)
    state.results['survival'] = cox


SECTIONS = OrderedDict([
    ("overview", section_overview),
    ("variance", section_variance),
    ("correlation", section_correlation),
    ("associations", section_associations),
    ("factors", section_factors),
    ("weights", section_weights),
    ("imputation", section_imputation),
    ("enrichment", section_enrichment),
    ("classification", section_classification),
    ("survival", section_survival),
])


def run_analysis(config, sections=None):
    """
    Run the selected analysis sections (all when `sections` is None).

    Returns:
        OrderedDict: section name -> True (succeeded) / False (failed).
    """
    unknown = set(sections or []) - set(SECTIONS)
    if unknown:
        raise ValueError(f"Unknown sections {sorted(unknown)}; expected {list(SECTIONS)}")
    sections = list(SECTIONS) if not sections else [s for s in SECTIONS if s in sections]

    start_time = time.time()
    log_section(logger, "CLL MOFA+ analysis - START")
    logger.info(f"Model: {config['model_file']}")
    logger.info(f"Metadata: {config['metadata_file']}")
    logger.info(f"Sections: {sections}")
    ensure_output_dirs(config)

    status = OrderedDict()
    try:
        state = load_state(config)
    except CllMofaError as e:
        logger.error(f"FATAL: could not load the model and metadata: {e}", exc_info=True)
        return OrderedDict((s, False) for s in sections)

    try:
        for name in sections:
            log_section(logger, f"Section: {name}")
            try:
                SECTIONS[name](state)
                status[name] = True
            except (CllMofaError, KeyError, ValueError) as e:
                logger.error(f"Section '{name}' failed: {e}", exc_info=True)
                status[name] = False
    finally:
        state.model.close()

    logger.info("=" * 80)
    logger.info("Analysis Summary:")
    for name, ok in status.items():
        logger.info(f"  {'OK    ' if ok else 'FAILED'} {name}")
    logger.info("-" * 80)
    if all(status.values()):
        logger.info("All requested sections completed successfully.")
    else:
        logger.warning("Some sections failed. Please check the logs above for errors.")
    logger.info(f"Output directory: {config['output_dir']}")
    logger.info(f"Total time: {time.time() - start_time:.2f} seconds")
    logger.info("=" * 80)
    return status
