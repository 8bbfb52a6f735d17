"""Tests for random-forest prediction of missing clinical labels."""
import numpy as np
import pandas as pd
import pytest

from cll_mofa.classification import impute_covariates, label_summary, predict_missing_labels
from cll_mofa.exceptions import AnalysisError

from conftest import IGHV_MISSING, N_SAMPLES, TRISOMY12_MISSING


def test_predict_missing_ighv(factors, metadata):
    res = predict_missing_labels(factors, metadata["IGHV"], n_estimators=100, seed=0)
    missing = [f"S{i + 1:03d}" for i in IGHV_MISSING]
    assert sorted(res["predictions"].index) == missing
    assert set(res["predictions"].unique()) <= {0.0, 1.0}
    assert res["n_train"] == N_SAMPLES - len(IGHV_MISSING)
    assert res["classes"] == [0.0, 1.0]
    assert len(res["cv_accuracy"]) == 5
    assert res["cv_accuracy"].mean() > 0.8
    assert res["feature_importance"].index[0] == "Factor1"
    assert res["probabilities"].columns.tolist() == ["P(0.0)", "P(1.0)"]
    np.testing.assert_allclose(res["probabilities"].sum(axis=1), 1.0)


def test_predict_missing_labels_is_reproducible(factors, metadata):
    a = predict_missing_labels(factors, metadata["trisomy12"], n_estimators=50, seed=3)
    b = predict_missing_labels(factors, metadata["trisomy12"], n_estimators=50, seed=3)
    pd.testing.assert_series_equal(a["predictions"], b["predictions"])
    np.testing.assert_allclose(a["cv_accuracy"], b["cv_accuracy"])


def test_factors_subset(factors, metadata):
    res = predict_missing_labels(factors, metadata["IGHV"], n_estimators=20, factors_subset=["Factor1"])
    assert res["feature_importance"].index.tolist() == ["Factor1"]


def test_single_class_raises(factors, metadata):
    labels = metadata["IGHV"].where(metadata["IGHV"] != 0)
    with pytest.raises(AnalysisError, match="two observed classes"):
        predict_missing_labels(factors, labels)


def test_cv_skipped_for_tiny_class(factors, metadata):
    labels = pd.Series(0.0, index=factors.index, name="rare")
    labels.iloc[0] = 1.0
    labels.iloc[-1] = np.nan
    res = predict_missing_labels(factors, labels, n_estimators=10)
    assert res["cv_accuracy"] is None
    assert res["predictions"].index.tolist() == [factors.index[-1]]


def test_nothing_to_predict(factors, metadata):
    labels = pd.Series(np.arange(N_SAMPLES) % 2, index=factors.index, name="complete")
    res = predict_missing_labels(factors, labels, n_estimators=10)
    assert res["predictions"].empty
    assert res["probabilities"].empty


def test_impute_covariates(factors, metadata):
    imputed, results = impute_covariates(factors, metadata, covariates=["IGHV", "trisomy12", "absent"],
                                         n_estimators=50, cv_folds=3)
    assert set(results) == {"IGHV", "trisomy12"}
    assert imputed["IGHV_imputed"].notna().all()
    assert imputed["trisomy12_imputed"].notna().all()
    assert imputed["IGHV_is_predicted"].sum() == len(IGHV_MISSING)
    assert imputed["trisomy12_is_predicted"].sum() == len(TRISOMY12_MISSING)
    observed = metadata["IGHV"].notna()
    pd.testing.assert_series_equal(imputed.loc[observed, "IGHV_imputed"], metadata.loc[observed, "IGHV"],
                                   check_names=False)
    # input metadata is left untouched
    assert "IGHV_imputed" not in metadata.columns

    summary = label_summary(results)
    assert summary["Covariate"].tolist() == ["IGHV", "trisomy12"]
    assert summary.loc[0, "N_predicted"] == len(IGHV_MISSING)
    assert summary.loc[0, "Top_factor"] == "Factor1"
