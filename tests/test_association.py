"""Tests for factor-covariate association statistics."""
import numpy as np
import pandas as pd
import pytest

from cll_mofa.association import compare_factor_groups, factor_covariate_associations, permutation_test
from cll_mofa.exceptions import AnalysisError


def test_associations_find_ighv_on_factor1(factors, metadata):
    res = factor_covariate_associations(factors, metadata, covariates=["IGHV", "trisomy12", "Gender", "TTT"])
    assert {"Factor", "Covariate", "Correlation", "P_value", "N", "Note",
            "P_value_FDR", "Significant_FDR"} <= set(res.columns)
    row = res[(res["Factor"] == "Factor1") & (res["Covariate"] == "IGHV")].iloc[0]
    assert row["Correlation"] > 0.5
    assert row["Significant_FDR"]
    assert row["N"] == 54
    assert res.iloc[0]["Significant_FDR"]
    assert (res["P_value_FDR"] >= res["P_value"]).all()
    gender = res[res["Covariate"] == "Gender"]
    assert (gender["Note"] == "Used factorized codes").all()
    tri = res[(res["Factor"] == "Factor3") & (res["Covariate"] == "trisomy12")].iloc[0]
    assert tri["Significant_FDR"]


def test_associations_default_covariates_skip_constant(factors, metadata):
    metadata = metadata.assign(constant=1.0, group="group1")
    res = factor_covariate_associations(factors, metadata)
    assert "constant" not in set(res["Covariate"])
    assert "group" not in set(res["Covariate"])
    assert "IGHV" in set(res["Covariate"])


def test_associations_unknown_covariate_is_skipped(factors, metadata):
    res = factor_covariate_associations(factors, metadata, covariates=["IGHV", "not_there"])
    assert set(res["Covariate"]) == {"IGHV"}


def test_associations_no_overlap(factors, metadata):
    metadata = metadata.rename(index=lambda s: "X" + s)
    with pytest.raises(AnalysisError):
        factor_covariate_associations(factors, metadata)


def test_associations_too_few_samples(factors, metadata):
    with pytest.raises(AnalysisError):
        factor_covariate_associations(factors.iloc[:3], metadata, covariates=["IGHV"])


def test_compare_factor_groups(factors, metadata):
    res = compare_factor_groups(factors, metadata["IGHV"])
    assert len(res) == 3
    assert res.iloc[0]["Factor"] == "Factor1"
    assert res.iloc[0]["Significant_FDR"]
    row = res.iloc[0]
    assert row["Mean_1.0"] > row["Mean_0.0"]
    assert row["N_0.0"] + row["N_1.0"] == 54


def test_compare_factor_groups_needs_two_levels(factors, metadata):
    with pytest.raises(AnalysisError):
        compare_factor_groups(factors, metadata["Gender"].replace("f", "m"))


def test_permutation_test(factors, metadata):
    assoc = factor_covariate_associations(factors, metadata, covariates=["IGHV", "age"])
    perm = permutation_test(factors, metadata, assoc, n_permutations=99, seed=1)
    assert len(perm) == len(assoc)
    assert (perm["N_permutations"] == 99).all()
    assert ((perm["Permutation_P_value"] > 0) & (perm["Permutation_P_value"] <= 1)).all()
    row = perm[(perm["Factor"] == "Factor1") & (perm["Covariate"] == "IGHV")].iloc[0]
    assert row["Permutation_P_value"] == pytest.approx(1 / 100)
    assert "Permutation_Significant_FDR" in perm.columns


def test_permutation_test_is_reproducible(factors, metadata):
    assoc = factor_covariate_associations(factors, metadata, covariates=["age"])
    a = permutation_test(factors, metadata, assoc, n_permutations=50, seed=3)
    b = permutation_test(factors, metadata, assoc, n_permutations=50, seed=3)
    pd.testing.assert_frame_equal(a, b)
    with pytest.raises(AnalysisError):
        permutation_test(factors, metadata, assoc, n_permutations=0)
