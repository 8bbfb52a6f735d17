"""End-to-end tests of the analysis sections on the simulated model."""
import os

import h5py
import pandas as pd
import pytest

from cll_mofa.config import load_config
from cll_mofa.pipeline import SECTIONS, run_analysis


@pytest.fixture
def config(analysis_config):
    return load_config(overrides=analysis_config)


def test_run_all_sections(config):
    status = run_analysis(config)
    assert list(status) == list(SECTIONS)
    assert all(status.values()), status

    out, fig = config["output_dir"], config["figure_dir"]
    for table in ("data_overview.csv", "variance_explained_per_factor.csv", "factor_correlation.csv",
                  "factor_covariate_associations.csv", "factor_comparison_IGHV.csv", "factors.csv",
                  "top_weights.csv", "imputed_mRNA.csv", "enrichment_mRNA_positive.csv",
                  "enrichment_mRNA_negative.csv", "imputed_labels.csv", "cox_hazard_ratios.csv",
                  "kaplan_meier_summary.csv"):
        assert os.path.exists(os.path.join(out, table)), table
    for figure in ("data_overview.png", "variance_explained_factors.png", "view_factor_network.png",
                   "factors_by_IGHV.png", "scatter_Factor1_Factor2.png", "weights_mRNA_Factor1.png",
                   "data_heatmap_mRNA_Factor1.png", "enrichment_mRNA_positive_Factor1.png",
                   "label_predictions.png", "cox_hazard_ratios.png", "kaplan_meier_Factor1.png"):
        assert os.path.exists(os.path.join(fig, figure)), figure

    imputed = pd.read_csv(os.path.join(out, "imputed_mRNA.csv"), index_col=0)
    assert not imputed.isna().values.any()
    cox = pd.read_csv(os.path.join(out, "cox_hazard_ratios.csv"), index_col=0)
    assert cox.loc["Factor1", "HR"] > 1


def test_selected_sections_only(config):
    status = run_analysis(config, sections=["correlation", "variance"])
    assert list(status) == ["variance", "correlation"]
    assert all(status.values())
    assert not os.path.exists(os.path.join(config["output_dir"], "cox_hazard_ratios.csv"))


def test_failing_section_does_not_stop_the_run(config):
    config["feature_sets_file"] = None
    config["survival"]["time_col"] = "not_a_column"
    status = run_analysis(config, sections=["correlation", "enrichment", "survival", "factors"])
    assert status == {"correlation": True, "factors": True, "enrichment": False, "survival": False}


def test_unknown_weights_pair_fails_section(config):
    config["weights_to_plot"] = [["Proteins", "Factor1"]]
    assert run_analysis(config, sections=["weights"]) == {"weights": False}


def test_unknown_section_rejected(config):
    with pytest.raises(ValueError):
        run_analysis(config, sections=["plots"])


def test_missing_model_marks_all_failed(config, tmp_path):
    config["model_file"] = str(tmp_path / "missing.hdf5")
    status = run_analysis(config, sections=["variance", "survival"])
    assert status == {"variance": False, "survival": False}


def test_incomplete_model_file_marks_all_failed(config):
    with h5py.File(config["model_file"], "a") as f:
        del f["samples/group1"]
    status = run_analysis(config, sections=["variance", "correlation"])
    assert status == {"variance": False, "correlation": False}


def test_overview_reads_views_when_model_has_no_data(config, make_model_file):
    config["model_file"] = make_model_file("no_data.hdf5", with_data=False)
    status = run_analysis(config, sections=["overview", "imputation"])
    assert status == {"overview": True, "imputation": False}
    overview = pd.read_csv(os.path.join(config["output_dir"], "data_overview.csv"), index_col=0)
    assert overview.loc["mRNA", "n_samples_observed"] == 55
