"""
Pytest configuration and shared fixtures.

Provides a small simulated CLL-like cohort (three views, clinical
metadata, feature sets) and a factory that writes it as a MOFA+ model in
mofapy2's HDF5 layout.
"""
import json

import matplotlib
matplotlib.use("Agg")

import h5py
import numpy as np
import pandas as pd
import pytest

N_SAMPLES = 60
N_FACTORS = 3
VIEW_SIZES = {"Drugs": 20, "mRNA": 40, "Mutations": 8}
LIKELIHOODS = {"Drugs": "gaussian", "mRNA": "gaussian", "Mutations": "bernoulli"}
MUTATIONS = ["TP53", "del17p", "del11q", "NOTCH1", "SF3B1", "BRAF", "del13q", "KRAS"]
IGHV_MISSING = [3, 17, 29, 41, 52, 58]
TRISOMY12_MISSING = [5, 22, 37, 49]


def _simulate(seed=0):
    rng = np.random.default_rng(seed)
    samples = [f"S{i:03d}" for i in range(1, N_SAMPLES + 1)]
    Z = rng.normal(size=(N_SAMPLES, N_FACTORS))
    Z -= Z.mean(axis=0)
    Z /= Z.std(axis=0)

    features = {
        "Drugs": [f"D_{j:03d}_1" for j in range(1, VIEW_SIZES["Drugs"] + 1)],
        "mRNA": [f"G{j:02d}" for j in range(1, VIEW_SIZES["mRNA"] + 1)],
        "Mutations": list(MUTATIONS),
    }
    W = {v: rng.normal(0, 0.5, (N_FACTORS, d)) for v, d in VIEW_SIZES.items()}
    # G01-G10 and TP53 follow Factor1
    W["mRNA"][0, :10] = 1.5
    W["mRNA"][0, 10:] = rng.normal(0, 0.1, VIEW_SIZES["mRNA"] - 10)
    W["Mutations"][0, 0] = 3.0

    data = {}
    for v, d in VIEW_SIZES.items():
        y = Z @ W[v] + rng.normal(0, 0.3, (N_SAMPLES, d))
        if LIKELIHOODS[v] == "bernoulli":
            y = (y > 0).astype(float)
        data[v] = y
    data["Drugs"][rng.random(data["Drugs"].shape) < 0.02] = np.nan
    data["mRNA"][50:55] = np.nan
    data["Mutations"][55:60] = np.nan

    ighv = (Z[:, 0] > 0).astype(float)
    ighv[IGHV_MISSING] = np.nan
    trisomy12 = (Z[:, 2] > 0.5).astype(float)
    trisomy12[TRISOMY12_MISSING] = np.nan
    ttt = rng.exponential(scale=np.exp(-Z[:, 0])) * 5
    treated = (rng.random(N_SAMPLES) < 0.8).astype(float)
    ttt[10] = np.nan
    metadata = pd.DataFrame({
        "sample": samples,
        "Gender": rng.choice(["m", "f"], N_SAMPLES),
        "age": rng.integers(40, 85, N_SAMPLES).astype(float),
        "died": rng.integers(0, 2, N_SAMPLES).astype(float),
        "TTT": ttt,
        "treatedAfter": treated,
        "IGHV": ighv,
        "trisomy12": trisomy12,
    })

    views = {v: pd.DataFrame(data[v].T, index=features[v], columns=samples) for v in VIEW_SIZES}
    return {"samples": samples, "Z": Z, "W": W, "features": features, "data": data,
            "views": views, "metadata": metadata}


@pytest.fixture(scope="session")
def synthetic():
    """Simulated cohort: Z (samples x factors), W per view, data and metadata."""
    return _simulate()


@pytest.fixture
def views(synthetic):
    """Views as features x samples DataFrames (copies)."""
    return {v: df.copy() for v, df in synthetic["views"].items()}


@pytest.fixture
def metadata(synthetic):
    """Metadata indexed by sample id."""
    return synthetic["metadata"].set_index("sample")


@pytest.fixture
def factors(synthetic):
    return pd.DataFrame(synthetic["Z"], index=pd.Index(synthetic["samples"], name="sample"),
                        columns=[f"Factor{k + 1}" for k in range(N_FACTORS)])


@pytest.fixture
def feature_sets():
    """Pathways x genes; PATH_UP holds the Factor1-driven genes."""
    genes = [f"G{j:02d}" for j in range(1, 41)] + ["GX1", "GX2"]
    sets = pd.DataFrame(False, index=pd.Index(["PATH_UP", "PATH_RANDOM1", "PATH_RANDOM2", "PATH_SMALL"],
                                              name="pathway"), columns=genes)
    sets.loc["PATH_UP", [f"G{j:02d}" for j in range(1, 16)]] = True
    sets.loc["PATH_UP", "GX1"] = True
    sets.loc["PATH_RANDOM1", [f"G{j:02d}" for j in range(16, 31)]] = True
    sets.loc["PATH_RANDOM2", [f"G{j:02d}" for j in range(21, 41)]] = True
    sets.loc["PATH_SMALL", ["G01", "G02", "G03"]] = True
    return sets


def write_mofa_hdf5(path, sim, n_groups=1, with_data=True, with_r2=True, with_intercepts=True,
                    skip=(), seed=1):
    """Write `sim` in mofapy2's HDF5 layout."""
    rng = np.random.default_rng(seed)
    views = list(VIEW_SIZES)
    chunks = np.array_split(np.arange(N_SAMPLES), n_groups)
    groups = [f"group{g + 1}" for g in range(n_groups)]
    with h5py.File(path, "w") as f:
        f.create_dataset("views/views", data=np.array(views, dtype="S"))
        f.create_dataset("groups/groups", data=np.array(groups, dtype="S"))
        for g, idx in zip(groups, chunks):
            f.create_dataset(f"samples/{g}", data=np.array([sim["samples"][i] for i in idx], dtype="S"))
            if "Z" not in skip:
                f.create_dataset(f"expectations/Z/{g}", data=sim["Z"][idx].T)
            f.create_dataset(f"samples_metadata/{g}/sample",
                             data=np.array([sim["samples"][i] for i in idx], dtype="S"))
            f.create_dataset(f"samples_metadata/{g}/batch", data=np.array(["b1"] * len(idx), dtype="S"))
            if with_r2:
                f.create_dataset(f"variance_explained/r2_per_factor/{g}",
                                 data=rng.uniform(0, 20, (len(views), N_FACTORS)))
                f.create_dataset(f"variance_explained/r2_total/{g}", data=rng.uniform(20, 60, len(views)))
            for v in views:
                if with_data:
                    f.create_dataset(f"data/{v}/{g}", data=sim["data"][v][idx])
                if with_intercepts:
                    f.create_dataset(f"intercepts/{v}/{g}", data=np.full(VIEW_SIZES[v], 0.5))
        for v in views:
            f.create_dataset(f"features/{v}", data=np.array(sim["features"][v], dtype="S"))
            f.create_dataset(f"expectations/W/{v}", data=sim["W"][v])
        f.create_dataset("model_options/likelihoods",
                         data=np.array([LIKELIHOODS[v] for v in views], dtype="S"))
    return str(path)


@pytest.fixture
def make_model_file(tmp_path, synthetic):
    """Factory: make_model_file(name="model.hdf5", **options) -> path."""
    def _make(name="model.hdf5", **kwargs):
        return write_mofa_hdf5(tmp_path / name, synthetic, **kwargs)
    return _make


@pytest.fixture
def model_file(make_model_file):
    return make_model_file()


@pytest.fixture
def data_files(tmp_path, synthetic, feature_sets):
    """Views, metadata and feature sets written as CSV files."""
    paths = {}
    for v, df in synthetic["views"].items():
        out = df
        if v == "mRNA":
            # samples without any mRNA data are absent from the file
            out = df.loc[:, df.notna().any(axis=0)]
        paths[v] = str(tmp_path / f"CLL_data_{v}.csv")
        out.to_csv(paths[v])
    metadata_file = str(tmp_path / "CLL_metadata.csv")
    synthetic["metadata"].to_csv(metadata_file, index=False)
    feature_sets_file = str(tmp_path / "feature_sets.csv")
    feature_sets.astype(int).to_csv(feature_sets_file)
    return {"data_paths": paths, "metadata_file": metadata_file, "feature_sets_file": feature_sets_file}


@pytest.fixture
def analysis_config(tmp_path, data_files, model_file):
    """Overrides for a fast run of the whole pipeline on the simulated model."""
    return {
        "output_dir": str(tmp_path / "out"),
        "figure_dir": str(tmp_path / "out" / "figures"),
        "model_file": model_file,
        "metadata_file": data_files["metadata_file"],
        "feature_sets_file": data_files["feature_sets_file"],
        "data_paths": data_files["data_paths"],
        "view_names": list(VIEW_SIZES),
        "likelihoods": dict(LIKELIHOODS),
        "covariates": ["IGHV", "trisomy12", "Gender", "age"],
        "scatter_factors": ["Factor1", "Factor2"],
        "weights_to_plot": [["mRNA", "Factor1"], ["Mutations", "Factor1"]],
        "n_top_features": 5,
        "enrichment": {"view": "mRNA", "min_size": 5, "alpha": 0.1},
        "classifier": {"n_estimators": 50, "cv_folds": 3},
        "survival": {"km_factors": ["Factor1"]},
    }


@pytest.fixture
def config_file(tmp_path, analysis_config):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(analysis_config))
    return str(path)
