# -*- coding: utf-8 -*-
"""
MOFA+ model construction and training.

Inference is done by mofapy2 (Argelaguet et al. 2020); this module only turns
the aligned views into mofapy2's nested matrix format, passes the configured
options and saves the trained model to HDF5.
"""
import os
import time
import logging

import numpy as np

from .data import sample_groups
from .exceptions import CllMofaError, DataLoadError

logger = logging.getLogger(__name__)


def _load_entry_point():
    try:
        from mofapy2.run.entry_point import entry_point
    except ImportError as e:
        raise CllMofaError("mofapy2 not found. Please install it: pip install mofapy2") from e
    return entry_point


def prepare_data_matrix(views, groups):
    """
    Convert aligned views into mofapy2's nested list format.

    Args:
        views (dict): view name -> DataFrame features x samples, all with the
            same sample columns.
        groups (pd.Series): group label per sample.

    Returns:
        tuple: (data, samples_names, features_names, groups_names) where
        data[m][g] is a samples x features array for view m and group g.
    """
    groups_names = list(dict.fromkeys(groups.tolist()))
    samples_names = [groups.index[groups == g].tolist() for g in groups_names]
    data, features_names = [], []
    for view_name, df in views.items():
        missing = [s for s in groups.index if s not in df.columns]
        if missing:
            raise DataLoadError(f"View '{view_name}' is not aligned; missing samples {missing[:5]}")
        data.append([df[samples].T.values.astype(float) for samples in samples_names])
        features_names.append(df.index.tolist())
    return data, samples_names, features_names, groups_names


def train_model(views, config, outfile=None, metadata=None):
    """
    Build and train a MOFA+ model and save it to HDF5.

    Args:
        views (dict): Aligned views (features x samples).
        config (dict): Run configuration (see cll_mofa.config).
        outfile (str, optional): Output HDF5 path; defaults to config["model_file"].
        metadata (pd.DataFrame, optional): Needed when config["group_by"] is set.

    Returns:
        str: Path of the saved model.
    """
    entry_point = _load_entry_point()
    outfile = outfile or config["model_file"]
    out_dir = os.path.dirname(outfile)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)

    samples = next(iter(views.values())).columns
    groups = sample_groups(metadata, samples, config.get("group_by"))
    data, samples_names, features_names, groups_names = prepare_data_matrix(views, groups)
    view_names = list(views.keys())
    likelihoods = [config["likelihoods"].get(v, "gaussian") for v in view_names]

    n_obs = [int(np.sum(~np.isnan(np.concatenate(m, axis=0)))) for m in data]
    logger.info(f"Views: {view_names}")
    logger.info(f"Likelihoods: {likelihoods}")
    logger.info(f"Groups: {groups_names} ({[len(s) for s in samples_names]} samples)")
    logger.info(f"Observed entries per view: {dict(zip(view_names, n_obs))}")

    ent = entry_point()
    ent.set_data_options(scale_views=config["scale_views"], scale_groups=config["scale_groups"])
    ent.set_data_matrix(data, likelihoods=likelihoods, views_names=view_names,
                        groups_names=groups_names, samples_names=samples_names,
                        features_names=features_names)
    ent.set_model_options(factors=config["num_factors"],
                          spikeslab_weights=config["spikeslab_weights"],
                          ard_factors=config["ard_factors"],
                          ard_weights=config["ard_weights"])
    ent.set_train_options(iter=config["maxiter"], convergence_mode=config["convergence_mode"],
                          dropR2=config["drop_factor_threshold"], startELBO=config["start_elbo"],
                          freqELBO=config["freq_elbo"], gpu_mode=False, seed=config["seed"],
                          verbose=False)
    logger.info("MOFA+ initialized and options set.")

    logger.info(f"Running up to {config['maxiter']} iterations... This can take time.")
    mofa_start_time = time.time()
    ent.build()
    ent.run()
    ent.save(outfile, save_data=config["save_data"])
    logger.info(f"Model saved to {outfile}")
    logger.info(f"Time for MOFA+ Training: {time.time() - mofa_start_time:.2f} seconds")
    return outfile
