# -*- coding: utf-8 -*-
"""
Feature-set (pathway) enrichment analysis on MOFA+ weights.

For each factor, the weights of one view are used as per-feature statistics
and every feature set is tested for weights that are larger inside the set
than outside it (PCGSE-style, Frost et al. 2015, as applied in MOFA+):

- sign="all" uses |w|, "positive" keeps positive weights (others set to 0),
  "negative" keeps negative weights (others set to 0) as |w|.
- set_statistic="mean_diff": mean(in set) - mean(out of set), tested with a
  pooled two-sample t statistic; "rank_sum": standardised Wilcoxon rank sum.
- statistical_test="cor_adj_parametric" inflates the in-set variance by the
  variance inflation factor 1 + (m - 1) * mean inter-feature correlation,
  estimated from the data; "permutation" compares against statistics from
  shuffled feature labels.

P-values are BH-adjusted per factor.
"""
import os
import logging

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .config import VALID_SIGNS, VALID_STAT_TESTS, VALID_SET_STATISTICS
from .exceptions import AnalysisError, DataLoadError

logger = logging.getLogger(__name__)


def load_feature_sets(path):
    """
    Load a binary feature-set membership matrix.

    Accepts either a wide CSV (feature sets as rows, genes as columns, 0/1)
    or a long CSV with columns `pathway` and `gene`.

    Returns:
        pd.DataFrame: boolean, feature sets x genes.
    """
    if not path or not os.path.exists(path):
        raise DataLoadError(f"Feature set file not found: {path}")
    raw = pd.read_csv(path)
    if {'pathway', 'gene'}.issubset(raw.columns) and raw.shape[1] <= 3:
        raw['member'] = True
        feature_sets = raw.pivot_table(index='pathway', columns='gene', values='member',
                                       aggfunc='any', fill_value=False)
    else:
        feature_sets = raw.set_index(raw.columns[0])
        try:
            feature_sets = feature_sets.apply(pd.to_numeric, errors='raise')
        except (ValueError, TypeError) as e:
            raise DataLoadError(f"Feature set matrix '{path}' must contain 0/1 values: {e}") from e
        values = np.unique(feature_sets.values)
        if not set(values.tolist()).issubset({0, 1}):
            raise DataLoadError(f"Feature set matrix '{path}' must be binary, found values {values[:10]}")
    feature_sets = feature_sets.astype(bool)
    feature_sets.index = feature_sets.index.astype(str)
    feature_sets.columns = feature_sets.columns.astype(str)
    feature_sets.index.name = 'pathway'
    logger.info(f"Loaded {feature_sets.shape[0]} feature sets over {feature_sets.shape[1]} genes from {path}")
    return feature_sets


def rectify_weights(weights, sign="all"):
    """Per-feature statistics from weights according to `sign`."""
    if sign == "all":
        return weights.abs()
    if sign == "positive":
        return weights.clip(lower=0)
    if sign == "negative":
        return weights.clip(upper=0).abs()
    raise ValueError(f"sign must be one of {VALID_SIGNS}, got '{sign}'")


def _mean_inter_feature_correlation(data, membership):
    """Mean pairwise correlation among the members of each set (samples x features data)."""
    x = data.values.astype(float)
    x = x[~np.isnan(x).all(axis=1)]
    col_means = np.nanmean(x, axis=0)
    col_means = np.where(np.isnan(col_means), 0.0, col_means)
    x = np.where(np.isnan(x), col_means, x)
    sd = x.std(axis=0, ddof=1)
    sd[sd == 0] = np.inf
    z = (x - x.mean(axis=0)) / sd
    n = z.shape[0]
    rho = np.empty(membership.shape[0])
    for i, in_set in enumerate(membership):
        zs = z[:, in_set]
        m = zs.shape[1]
        total = zs.sum(axis=1)
        # sum over all pairs (incl. diagonal) of the correlation matrix
        corr_sum = (total @ total) / (n - 1)
        diag = np.sum(zs * zs) / (n - 1)
        rho[i] = (corr_sum - diag) / (m * (m - 1)) if m > 1 else 0.0
    return rho


def _set_statistics(x, membership, set_statistic, vif):
    """
    Statistic and parametric p-value for every set for one factor.

    x: feature statistics (n_features,), membership: bool (n_sets, n_features).
    """
    n = x.shape[0]
    m1 = membership.sum(axis=1).astype(float)
    m2 = n - m1
    mem = membership.astype(float)
    if set_statistic == "mean_diff":
        sum_in = mem @ x
        sumsq_in = mem @ (x ** 2)
        mean_in = sum_in / m1
        mean_out = (x.sum() - sum_in) / m2
        ss_in = sumsq_in - m1 * mean_in ** 2
        ss_out = (np.sum(x ** 2) - sumsq_in) - m2 * mean_out ** 2
        pooled_var = (ss_in + ss_out) / (n - 2)
        se = np.sqrt(pooled_var * (vif / m1 + 1.0 / m2))
        diff = mean_in - mean_out
        with np.errstate(divide='ignore', invalid='ignore'):
            t_stat = np.where(se > 0, diff / se, 0.0)
        p = 2 * stats.t.sf(np.abs(t_stat), df=n - 2)
        return diff, t_stat, p

    ranks = stats.rankdata(x)
    rank_sum = mem @ ranks
    expected = m1 * (n + 1) / 2.0
    var = vif * m1 * m2 * (n + 1) / 12.0
    with np.errstate(divide='ignore', invalid='ignore'):
        z = np.where(var > 0, (rank_sum - expected) / np.sqrt(var), 0.0)
    p = 2 * stats.norm.sf(np.abs(z))
    return z, z, p


def _permutation_pvalues(x, membership, set_statistic, observed, n_permutations, rng):
    n_extreme = np.zeros(membership.shape[0])
    ones = np.ones(membership.shape[0])
    for _ in range(n_permutations):
        x_perm = rng.permutation(x)
        null_stat, _, _ = _set_statistics(x_perm, membership, set_statistic, ones)
        n_extreme += np.abs(null_stat) >= np.abs(observed)
    return (n_extreme + 1) / (n_permutations + 1)


def run_enrichment(weights, feature_sets, factors=None, sign="all", statistical_test="parametric",
                   set_statistic="mean_diff", min_size=10, n_permutations=1000, data=None,
                   alpha=0.1, seed=42):
    """
    Test feature sets for enrichment in the weights of each factor.

    Args:
        weights (pd.DataFrame): features x factors weights of one view.
        feature_sets (pd.DataFrame): boolean feature sets x features.
        factors (list, optional): Factors (columns of `weights`) to test.
        sign (str): "all", "positive" or "negative".
        statistical_test (str): "parametric", "cor_adj_parametric" or "permutation".
        set_statistic (str): "mean_diff" or "rank_sum".
        min_size (int): Minimum number of set members present in the weights.
        n_permutations (int): Permutations for statistical_test="permutation".
        data (pd.DataFrame, optional): features x samples data of the view;
            required for "cor_adj_parametric".
        alpha (float): Adjusted p-value cutoff for `sig_pathways`.
        seed (int): Seed for the permutation test.

    Returns:
        dict: feature_statistics (features x factors), set_statistics,
        pval, pval_adj (feature sets x factors), sig_pathways
        (factor -> list of feature sets), params.
    """
    if sign not in VALID_SIGNS:
        raise ValueError(f"sign must be one of {VALID_SIGNS}, got '{sign}'")
    if statistical_test not in VALID_STAT_TESTS:
        raise ValueError(f"statistical_test must be one of {VALID_STAT_TESTS}, got '{statistical_test}'")
    if set_statistic not in VALID_SET_STATISTICS:
        raise ValueError(f"set_statistic must be one of {VALID_SET_STATISTICS}, got '{set_statistic}'")
    if statistical_test == "cor_adj_parametric" and data is None:
        raise AnalysisError("statistical_test='cor_adj_parametric' needs the view's data.")

    factors = list(weights.columns) if factors is None else list(factors)
    features = [f for f in weights.index if f in set(feature_sets.columns)]
    if not features:
        raise AnalysisError("No features in common between the weights and the feature sets.")
    logger.info(f"Enrichment on {len(features)}/{len(weights.index)} features present in the feature sets")

    sets = feature_sets.loc[:, features].astype(bool)
    sizes = sets.sum(axis=1)
    sets = sets[sizes >= max(min_size, 2)]
    if sets.empty:
        raise AnalysisError(f"No feature sets with at least {min_size} features after intersection.")
    if (sets.sum(axis=1) == len(features)).any():
        sets = sets[sets.sum(axis=1) < len(features)]
    logger.info(f"Testing {sets.shape[0]} feature sets (min_size={min_size}), sign='{sign}', "
                f"test='{statistical_test}', statistic='{set_statistic}'")

    feature_stats = rectify_weights(weights.loc[features, factors], sign)
    membership = sets.values

    if statistical_test == "cor_adj_parametric":
        data_fs = data.reindex(index=features).T
        rho = _mean_inter_feature_correlation(data_fs, membership)
        vif = np.clip(1.0 + (membership.sum(axis=1) - 1) * rho, 1e-6, None)
    else:
        vif = np.ones(membership.shape[0])

    rng = np.random.default_rng(seed)
    set_stats = pd.DataFrame(index=sets.index, columns=factors, dtype=float)
    pvals = pd.DataFrame(index=sets.index, columns=factors, dtype=float)
    for factor in factors:
        x = feature_stats[factor].values.astype(float)
        statistic, _, p = _set_statistics(x, membership, set_statistic, vif)
        if statistical_test == "permutation":
            p = _permutation_pvalues(x, membership, set_statistic, statistic, n_permutations, rng)
        set_stats[factor] = statistic
        pvals[factor] = p

    pvals_adj = pvals.copy()
    sig_pathways = {}
    for factor in factors:
        pvals_adj[factor] = multipletests(pvals[factor].values, method='fdr_bh')[1]
        sig = pvals_adj.index[pvals_adj[factor] <= alpha]
        sig_pathways[factor] = pvals.loc[sig, factor].sort_values().index.tolist()
        logger.info(f"   {factor}: {len(sig_pathways[factor])} significant feature sets (adj. p <= {alpha})")

    return {
        'feature_statistics': feature_stats,
        'feature_sets': sets,
        'set_statistics': set_stats,
        'pval': pvals,
        'pval_adj': pvals_adj,
        'sig_pathways': sig_pathways,
        'params': {'sign': sign, 'statistical_test': statistical_test, 'set_statistic': set_statistic,
                   'min_size': min_size, 'alpha': alpha,
                   'n_permutations': n_permutations if statistical_test == "permutation" else None},
    }


def enrichment_table(result):
    """Long table of the enrichment result: pathway, factor, statistic, pval, padj, significant."""
    long_df = result['pval'].stack().rename('pval').to_frame()
    long_df['padj'] = result['pval_adj'].stack()
    long_df['statistic'] = result['set_statistics'].stack()
    long_df.index.names = ['pathway', 'factor']
    long_df = long_df.reset_index()
    long_df['significant'] = long_df['padj'] <= result['params']['alpha']
    return long_df.sort_values(['factor', 'pval']).reset_index(drop=True)


def top_pathway_features(result, pathway, factor, n=10):
    """In-set features with the largest statistics for `factor` (the genes driving a pathway)."""
    if pathway not in result['feature_sets'].index:
        raise KeyError(f"Feature set '{pathway}' was not tested")
    members = result['feature_sets'].columns[result['feature_sets'].loc[pathway].values]
    stats_in_set = result['feature_statistics'].loc[members, factor]
    return stats_in_set.sort_values(ascending=False).head(n)
