"""Tests for Cox regression and Kaplan-Meier analysis on factors."""
import numpy as np
import pandas as pd
import pytest
from lifelines import KaplanMeierFitter

from cll_mofa.exceptions import AnalysisError
from cll_mofa.survival import fit_cox, kaplan_meier, optimal_cutpoint, survival_frame

from conftest import N_SAMPLES


@pytest.fixture
def frame(factors, metadata):
    return survival_frame(factors, metadata)


def test_survival_frame_drops_missing_and_scales(frame):
    # S011 has no time to treatment
    assert len(frame) == N_SAMPLES - 1
    assert "S011" not in frame.index
    np.testing.assert_allclose(frame[["Factor1", "Factor2", "Factor3"]].mean(), 0.0, atol=1e-12)
    np.testing.assert_allclose(frame[["Factor1", "Factor2", "Factor3"]].std(), 1.0)
    assert frame["treatedAfter"].dtype == int


def test_survival_frame_subset_unscaled(factors, metadata):
    frame = survival_frame(factors, metadata, factors_subset=["Factor2"], scale=False)
    assert frame.columns.tolist() == ["Factor2", "TTT", "treatedAfter"]
    np.testing.assert_allclose(frame["Factor2"], factors.loc[frame.index, "Factor2"])


def test_survival_frame_errors(factors, metadata):
    with pytest.raises(AnalysisError, match="TTD"):
        survival_frame(factors, metadata.drop(columns=["TTT"]), time_col="TTD")
    with pytest.raises(AnalysisError, match="Negative"):
        survival_frame(factors, metadata.assign(TTT=-1.0))
    with pytest.raises(AnalysisError, match="0/1"):
        survival_frame(factors, metadata.assign(treatedAfter=2.0))
    with pytest.raises(AnalysisError):
        survival_frame(factors, metadata.assign(TTT=np.nan))


def test_fit_cox_factor1_increases_hazard(frame):
    res = fit_cox(frame)
    summary = res["summary"]
    assert summary.index.tolist() == ["Factor1", "Factor2", "Factor3"]
    assert summary.columns.tolist() == ["coef", "HR", "HR_lower", "HR_upper", "p", "p_FDR", "Significant_FDR"]
    assert summary.loc["Factor1", "HR"] > 1.5
    assert summary.loc["Factor1", "Significant_FDR"]
    assert (summary["HR_lower"] <= summary["HR"]).all() and (summary["HR"] <= summary["HR_upper"]).all()
    assert 0.5 < res["concordance"] <= 1
    assert res["n"] == len(frame)
    assert res["n_events"] == int(frame["treatedAfter"].sum())


def test_fit_cox_without_events(frame):
    with pytest.raises(AnalysisError, match="No events"):
        fit_cox(frame.assign(treatedAfter=0))


def test_optimal_cutpoint_recovers_split():
    rng = np.random.default_rng(0)
    values = np.linspace(-2, 2, 80)
    durations = np.where(values > 0.5, rng.exponential(1, 80), rng.exponential(10, 80))
    events = np.ones(80, dtype=int)
    cut = optimal_cutpoint(values, durations, events, min_prop=0.1)
    assert -0.5 < cut["cutpoint"] < 1.5
    assert cut["p_value"] < 0.001
    assert cut["statistic"] > 0


def test_optimal_cutpoint_respects_min_prop():
    values = np.arange(10, dtype=float)
    durations = np.arange(1, 11, dtype=float)
    events = np.ones(10, dtype=int)
    cut = optimal_cutpoint(values, durations, events, min_prop=0.3)
    assert 2 <= cut["cutpoint"] <= 6
    with pytest.raises(AnalysisError):
        optimal_cutpoint(np.ones(10), durations, events)


def test_kaplan_meier(frame):
    res = kaplan_meier(frame, "Factor1")
    assert set(res["fitters"]) == {"low", "high"}
    assert all(isinstance(k, KaplanMeierFitter) for k in res["fitters"].values())
    assert res["p_value"] < 0.05
    counts = res["groups"].value_counts()
    assert counts.min() >= int(np.ceil(0.1 * len(frame)))
    assert res["median_survival"]["high"] < res["median_survival"]["low"]
    assert res["time_col"] == "TTT"


def test_kaplan_meier_fixed_cutpoint(frame):
    res = kaplan_meier(frame, "Factor2", cutpoint=0.0)
    assert res["cutpoint"] == 0.0
    assert (res["groups"] == "high").sum() == (frame["Factor2"] > 0).sum()
    with pytest.raises(AnalysisError):
        kaplan_meier(frame, "Factor2", cutpoint=100.0)
    with pytest.raises(AnalysisError):
        kaplan_meier(frame, "Factor9")
