"""Tests for loading and aligning views and metadata."""
import numpy as np
import pandas as pd
import pytest

from cll_mofa.data import (align_views, data_overview, load_metadata, load_views, sample_groups,
                           views_to_long, DEFAULT_GROUP)
from cll_mofa.exceptions import DataLoadError

from conftest import N_SAMPLES, VIEW_SIZES


def test_load_views_reads_features_by_samples(data_files):
    views = load_views(data_files["data_paths"], ["Drugs", "mRNA", "Mutations"])
    assert list(views) == ["Drugs", "mRNA", "Mutations"]
    assert views["Drugs"].shape == (VIEW_SIZES["Drugs"], N_SAMPLES)
    # five samples have no mRNA data at all
    assert views["mRNA"].shape == (VIEW_SIZES["mRNA"], N_SAMPLES - 5)
    assert views["Mutations"].dtypes.unique().tolist() == [np.dtype(float)]


def test_load_views_missing_file(data_files):
    with pytest.raises(DataLoadError, match="Methylation"):
        load_views(data_files["data_paths"], ["Drugs", "Methylation"])


def test_load_views_duplicate_samples(tmp_path):
    path = tmp_path / "dup.csv"
    path.write_text("feature,S1,S1\nf1,1,2\n")
    with pytest.raises(DataLoadError, match="Duplicate"):
        load_views({"v": str(path)}, ["v"])


def test_load_views_drops_duplicate_features(tmp_path):
    path = tmp_path / "dupfeat.csv"
    path.write_text("feature,S1,S2\nf1,1,2\nf1,3,4\nf2,5,6\n")
    views = load_views({"v": str(path)}, ["v"])
    assert views["v"].index.tolist() == ["f1", "f2"]
    assert views["v"].loc["f1", "S1"] == 1


def test_load_views_non_numeric(tmp_path):
    path = tmp_path / "text.csv"
    path.write_text("feature,S1,S2\nf1,1,abc\n")
    with pytest.raises(DataLoadError, match="Non-numeric"):
        load_views({"v": str(path)}, ["v"])


def test_align_views_union_of_samples(data_files):
    views = align_views(load_views(data_files["data_paths"], ["mRNA", "Drugs"]))
    assert views["mRNA"].columns.equals(views["Drugs"].columns)
    assert views["mRNA"].shape[1] == N_SAMPLES
    assert views["mRNA"].isna().all(axis=0).sum() == 5


def test_align_views_explicit_order(views):
    order = ["S003", "S001", "S999"]
    aligned = align_views(views, samples=order)
    assert aligned["Drugs"].columns.tolist() == order
    assert aligned["Drugs"]["S999"].isna().all()


def test_load_metadata(data_files):
    metadata = load_metadata(data_files["metadata_file"])
    assert metadata.index.name == "sample"
    assert len(metadata) == N_SAMPLES
    assert metadata["IGHV"].isna().sum() == 6
    assert pd.api.types.is_numeric_dtype(metadata["TTT"])


def test_load_metadata_duplicate_ids(tmp_path):
    path = tmp_path / "meta.csv"
    path.write_text("sample,IGHV\nS1,1\nS1,0\n")
    with pytest.raises(DataLoadError, match="Duplicate"):
        load_metadata(str(path))


def test_load_metadata_missing_sample_column(tmp_path):
    path = tmp_path / "meta.csv"
    path.write_text("id,IGHV\nS1,1\n")
    with pytest.raises(DataLoadError):
        load_metadata(str(path))


def test_sample_groups(metadata):
    samples = metadata.index[:4]
    single = sample_groups(None, samples)
    assert (single == DEFAULT_GROUP).all()
    by_gender = sample_groups(metadata, samples, group_by="Gender")
    assert set(by_gender) <= {"m", "f"}
    with pytest.raises(DataLoadError):
        sample_groups(metadata, samples, group_by="IGHV_missing")
    with pytest.raises(DataLoadError):
        sample_groups(metadata, ["S004"], group_by="IGHV")


def test_views_to_long_drops_missing(views):
    long_df = views_to_long(views)
    assert long_df.columns.tolist() == ["sample", "feature", "view", "group", "value"]
    assert long_df["value"].notna().all()
    n_observed = sum(int(df.notna().values.sum()) for df in views.values())
    assert len(long_df) == n_observed
    assert (long_df["group"] == DEFAULT_GROUP).all()


def test_data_overview(views):
    summary, observed = data_overview(views)
    assert summary.loc["mRNA", "n_samples_observed"] == N_SAMPLES - 5
    assert summary.loc["mRNA", "n_features"] == VIEW_SIZES["mRNA"]
    assert 0 < summary.loc["Drugs", "fraction_missing"] < 0.1
    assert observed.shape == (N_SAMPLES, 3)
    assert not observed.loc["S060", "Mutations"]
    assert observed.loc["S060", "mRNA"]
