# -*- coding: utf-8 -*-
"""
Survival analysis on MOFA+ factors.

- Cox proportional hazards regression of time-to-event (by default time to
  treatment, TTT, with treatedAfter as the event) on the factors.
- Kaplan-Meier curves for samples split at a factor cutpoint; the cutpoint
  is chosen by the maximally selected log-rank statistic, leaving at least
  `min_prop` of the samples on each side.
"""
import logging

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.statistics import logrank_test
from statsmodels.stats.multitest import multipletests

from .exceptions import AnalysisError

logger = logging.getLogger(__name__)


def survival_frame(factors, metadata, time_col="TTT", event_col="treatedAfter",
                   factors_subset=None, scale=True):
    """
    Factors joined with the survival columns, one row per sample.

    Samples with a missing time or event are dropped. With `scale=True`
    every factor is standardised so hazard ratios are per standard deviation.
    """
    for col in (time_col, event_col):
        if col not in metadata.columns:
            raise AnalysisError(f"Survival column '{col}' not in metadata.")
    factor_cols = list(factors.columns) if factors_subset is None else list(factors_subset)
    frame = factors[factor_cols].join(metadata[[time_col, event_col]], how='inner')
    n_before = len(frame)
    frame = frame.dropna(subset=[time_col, event_col]).copy()
    frame[time_col] = pd.to_numeric(frame[time_col], errors='coerce')
    frame[event_col] = pd.to_numeric(frame[event_col], errors='coerce')
    frame = frame.dropna(subset=[time_col, event_col]).copy()
    if frame.empty:
        raise AnalysisError(f"No samples with both '{time_col}' and '{event_col}' observed.")
    if (frame[time_col] < 0).any():
        raise AnalysisError(f"Negative durations in '{time_col}'.")
    if not frame[event_col].isin([0, 1]).all():
        raise AnalysisError(f"Event column '{event_col}' must be 0/1.")
    frame[event_col] = frame[event_col].astype(int)
    logger.info(f"Survival data: {len(frame)}/{n_before} samples, {int(frame[event_col].sum())} events")

    if scale:
        sd = frame[factor_cols].std(ddof=1).replace(0, 1.0)
        frame[factor_cols] = (frame[factor_cols] - frame[factor_cols].mean()) / sd
    return frame


def fit_cox(frame, time_col="TTT", event_col="treatedAfter", penalizer=0.0, fdr_alpha=0.05):
    """
    Fit a Cox proportional hazards model with all non-survival columns as covariates.

    Returns:
        dict: summary (DataFrame indexed by factor with coef, HR, HR_lower,
        HR_upper, p, p_FDR), concordance, n, n_events, model.
    """
    if frame[event_col].sum() == 0:
        raise AnalysisError("No events observed; cannot fit a Cox model.")
    cph = CoxPHFitter(penalizer=penalizer)
    cph.fit(frame, duration_col=time_col, event_col=event_col)

    summary = cph.summary
    result = pd.DataFrame({
        'coef': summary['coef'],
        'HR': summary['exp(coef)'],
        'HR_lower': summary['exp(coef) lower 95%'],
        'HR_upper': summary['exp(coef) upper 95%'],
        'p': summary['p'],
    })
    result['p_FDR'] = multipletests(result['p'].values, method='fdr_bh')[1]
    result['Significant_FDR'] = result['p_FDR'] <= fdr_alpha
    result.index.name = 'Factor'
    logger.info(f"Cox model: concordance {cph.concordance_index_:.3f}, "
                f"{int(result['Significant_FDR'].sum())} factors significant at FDR {fdr_alpha}")
    return {
        'summary': result,
        'concordance': cph.concordance_index_,
        'n': len(frame),
        'n_events': int(frame[event_col].sum()),
        'model': cph,
    }


def optimal_cutpoint(values, durations, events, min_prop=0.1):
    """
    Cutpoint maximising the log-rank statistic between values <= cut and > cut.

    Returns:
        dict: cutpoint, statistic, p_value (unadjusted for the search).
    """
    values = np.asarray(values, dtype=float)
    durations = np.asarray(durations, dtype=float)
    events = np.asarray(events, dtype=int)
    n = len(values)
    min_n = max(1, int(np.ceil(min_prop * n)))
    candidates = np.unique(values)[:-1]

    best = None
    for cut in candidates:
        high = values > cut
        n_high = int(high.sum())
        if n_high < min_n or n - n_high < min_n:
            continue
        res = logrank_test(durations[~high], durations[high],
                           event_observed_A=events[~high], event_observed_B=events[high])
        if best is None or res.test_statistic > best['statistic']:
            best = {'cutpoint': float(cut), 'statistic': float(res.test_statistic),
                    'p_value': float(res.p_value)}
    if best is None:
        raise AnalysisError(f"No cutpoint leaves at least {min_prop:.0%} of {n} samples on each side.")
    return best


def kaplan_meier(frame, factor, time_col="TTT", event_col="treatedAfter", cutpoint=None, min_prop=0.1):
    """
    Kaplan-Meier curves for samples below/above a factor cutpoint.

    When `cutpoint` is None the maximally selected log-rank cutpoint is used.

    Returns:
        dict: factor, cutpoint, groups (Series low/high), fitters
        (group -> KaplanMeierFitter), p_value, test_statistic,
        median_survival (group -> median time).
    """
    if factor not in frame.columns:
        raise AnalysisError(f"Factor '{factor}' not in survival data.")
    values = frame[factor]
    if cutpoint is None:
        cut = optimal_cutpoint(values, frame[time_col], frame[event_col], min_prop=min_prop)
        cutpoint = cut['cutpoint']
        logger.info(f"{factor}: optimal cutpoint {cutpoint:.3f} (log-rank statistic {cut['statistic']:.2f})")

    groups = pd.Series(np.where(values > cutpoint, 'high', 'low'), index=frame.index, name='risk_group')
    if groups.nunique() < 2:
        raise AnalysisError(f"Cutpoint {cutpoint} does not split the samples of '{factor}'.")

    fitters, medians = {}, {}
    for label in ('low', 'high'):
        mask = groups == label
        kmf = KaplanMeierFitter()
        kmf.fit(frame.loc[mask, time_col], event_observed=frame.loc[mask, event_col],
                label=f"{factor} {label} (n={int(mask.sum())})")
        fitters[label] = kmf
        medians[label] = kmf.median_survival_time_

    low, high = groups == 'low', groups == 'high'
    res = logrank_test(frame.loc[low, time_col], frame.loc[high, time_col],
                       event_observed_A=frame.loc[low, event_col],
                       event_observed_B=frame.loc[high, event_col])
    logger.info(f"{factor}: log-rank p = {res.p_value:.3e}")
    return {
        'factor': factor,
        'cutpoint': cutpoint,
        'groups': groups,
        'fitters': fitters,
        'p_value': float(res.p_value),
        'test_statistic': float(res.test_statistic),
        'median_survival': medians,
        'time_col': time_col,
    }
