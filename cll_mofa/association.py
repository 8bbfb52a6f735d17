# -*- coding: utf-8 -*-
"""
Associations between MOFA+ factors and sample covariates.

- Spearman correlation of every factor with every covariate (categorical
  covariates are factorised), BH-FDR over all tests.
- Mann-Whitney U comparison of factor values between the two levels of a
  binary covariate such as IGHV status.
- Permutation testing of the observed correlations (empirical p-values).
"""
import logging

import numpy as np
import pandas as pd
from scipy.stats import spearmanr, mannwhitneyu
from statsmodels.stats.multitest import multipletests
from tqdm import tqdm

from .exceptions import AnalysisError

logger = logging.getLogger(__name__)

EXCLUDED_COVARIATES = ("sample", "group")


def _fdr(results_df, p_col, fdr_alpha, prefix=""):
    """Add BH-FDR columns for `p_col` (NaN p-values are left out)."""
    p_vals_clean = results_df[p_col].dropna()
    q_col, sig_col = f'{prefix}P_value_FDR', f'{prefix}Significant_FDR'
    results_df[q_col] = np.nan
    results_df[sig_col] = False
    if not p_vals_clean.empty:
        reject, pvals_corrected, _, _ = multipletests(p_vals_clean, alpha=fdr_alpha, method='fdr_bh')
        results_df.loc[p_vals_clean.index, q_col] = pvals_corrected
        results_df.loc[p_vals_clean.index, sig_col] = reject
    results_df[sig_col] = results_df[sig_col].astype(bool)
    return results_df


def _encode_covariate(values):
    """Numeric values if possible, otherwise factorised codes."""
    numeric = pd.to_numeric(values, errors='coerce')
    if numeric.notna().sum() == values.notna().sum():
        return numeric.values.astype(float), None
    codes, _ = pd.factorize(values)
    return codes.astype(float), 'Used factorized codes'


def factor_covariate_associations(factors, metadata, covariates=None, fdr_alpha=0.05, min_samples=5):
    """
    Spearman correlation between each factor and each covariate.

    Args:
        factors (pd.DataFrame): samples x factors.
        metadata (pd.DataFrame): samples x covariates (same sample ids).
        covariates (list, optional): Columns to test; default all columns with
            more than one distinct value.
        fdr_alpha (float): BH-FDR level.
        min_samples (int): Pairs with fewer complete samples are skipped.

    Returns:
        pd.DataFrame: Factor, Covariate, Correlation, P_value, N, Note,
        P_value_FDR, Significant_FDR, sorted significant-first.
    """
    common_index = factors.index.intersection(metadata.index)
    if len(common_index) == 0:
        raise AnalysisError("No common samples between factors and metadata.")
    if len(common_index) < len(factors):
        logger.warning(f"Index mismatch. Using {len(common_index)} common samples for associations.")
    factors_aligned = factors.loc[common_index]
    metadata_aligned = metadata.loc[common_index]

    if covariates is None:
        covariates = [c for c in metadata_aligned.columns
                      if c not in EXCLUDED_COVARIATES and metadata_aligned[c].nunique() > 1]
    else:
        missing = [c for c in covariates if c not in metadata_aligned.columns]
        if missing:
            logger.warning(f"Covariates not in metadata, skipped: {missing}")
        covariates = [c for c in covariates if c in metadata_aligned.columns]
    logger.info(f"Testing associations for covariates: {covariates}")

    results_list = []
    for factor in factors_aligned.columns:
        for cov in covariates:
            temp_df = pd.concat([factors_aligned[factor], metadata_aligned[cov]], axis=1).dropna()
            if temp_df.shape[0] < min_samples:
                continue
            if temp_df[cov].nunique() < 2:
                continue
            cov_values, note = _encode_covariate(temp_df[cov])
            corr, p_value = spearmanr(temp_df[factor].values, cov_values)
            if np.isnan(corr) or np.isnan(p_value):
                continue
            results_list.append({'Factor': factor, 'Covariate': cov, 'Correlation': corr,
                                 'P_value': p_value, 'N': temp_df.shape[0], 'Note': note})

    if not results_list:
        raise AnalysisError("No valid factor-covariate correlations could be calculated.")

    results_df = _fdr(pd.DataFrame(results_list), 'P_value', fdr_alpha)
    results_df = results_df.sort_values(by=['Significant_FDR', 'P_value_FDR'], ascending=[False, True])
    n_sig = int(results_df['Significant_FDR'].sum())
    logger.info(f"{n_sig}/{len(results_df)} factor-covariate associations significant at FDR {fdr_alpha}")
    return results_df.reset_index(drop=True)


def compare_factor_groups(factors, labels, fdr_alpha=0.05, min_group_size=3):
    """
    Mann-Whitney U test per factor between the two levels of `labels`.

    `labels` is a Series indexed by sample; missing labels are ignored.
    """
    labels = labels.dropna()
    common_index = factors.index.intersection(labels.index)
    factors_aligned = factors.loc[common_index]
    labels_aligned = labels.loc[common_index]
    levels = sorted(labels_aligned.unique().tolist())
    if len(levels) != 2:
        raise AnalysisError(f"Expected 2 non-NA levels for '{labels.name}', found {len(levels)}.")
    g1_label, g2_label = levels
    logger.info(f"Comparing '{labels.name}': {g1_label} vs {g2_label}")

    results = []
    for factor in factors_aligned.columns:
        g1_values = factors_aligned.loc[labels_aligned == g1_label, factor].dropna().values
        g2_values = factors_aligned.loc[labels_aligned == g2_label, factor].dropna().values
        if len(g1_values) < min_group_size or len(g2_values) < min_group_size:
            continue
        stat, p_value = mannwhitneyu(g1_values, g2_values, alternative='two-sided', use_continuity=True)
        results.append({'Factor': factor, 'Comparison': f"{g1_label}_vs_{g2_label}",
                        'Statistic_U': stat, 'P_value': p_value,
                        f'N_{g1_label}': len(g1_values), f'N_{g2_label}': len(g2_values),
                        f'Mean_{g1_label}': np.mean(g1_values), f'Mean_{g2_label}': np.mean(g2_values)})
    if not results:
        raise AnalysisError(f"No group comparisons performed for '{labels.name}' (groups too small).")
    results_df = _fdr(pd.DataFrame(results), 'P_value', fdr_alpha)
    return results_df.sort_values(by=['Significant_FDR', 'P_value_FDR'],
                                  ascending=[False, True]).reset_index(drop=True)


def permutation_test(factors, metadata, associations, n_permutations=1000, fdr_alpha=0.05, seed=42):
    """
    Empirical p-values for observed factor-covariate correlations.

    The covariate is shuffled across samples `n_permutations` times; the
    empirical p-value is (#|null corr| >= |observed corr| + 1) / (n + 1).
    """
    if n_permutations < 1:
        raise AnalysisError("n_permutations must be >= 1")
    rng = np.random.default_rng(seed)
    common_index = factors.index.intersection(metadata.index)
    factors_aligned = factors.loc[common_index]
    metadata_aligned = metadata.loc[common_index]

    perm_results = []
    for _, row in tqdm(associations.iterrows(), total=len(associations), desc="Permutation tests"):
        factor, cov, real_corr = row['Factor'], row['Covariate'], row['Correlation']
        temp_df = pd.concat([factors_aligned[factor], metadata_aligned[cov]], axis=1).dropna()
        cov_values, _ = _encode_covariate(temp_df[cov])
        factor_values = temp_df[factor].values
        null_corrs = np.empty(n_permutations)
        for i in range(n_permutations):
            null_corrs[i], _ = spearmanr(factor_values, rng.permutation(cov_values))
        null_corrs = null_corrs[~np.isnan(null_corrs)]
        n_extreme = int(np.sum(np.abs(null_corrs) >= abs(real_corr)))
        perm_results.append({'Factor': factor, 'Covariate': cov, 'Correlation': real_corr,
                             'Permutation_P_value': (n_extreme + 1) / (len(null_corrs) + 1),
                             'N_permutations': len(null_corrs)})
    if not perm_results:
        raise AnalysisError("No associations to permute.")
    perm_df = _fdr(pd.DataFrame(perm_results), 'Permutation_P_value', fdr_alpha, prefix='Permutation_')
    return perm_df.sort_values(by=['Covariate', 'Permutation_P_value']).reset_index(drop=True)
