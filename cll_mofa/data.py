# -*- coding: utf-8 -*-
"""
Loading and aligning the CLL multi-omics views and sample metadata.

Views are stored as features x samples CSV files (first column holds the
feature ids). Samples may be missing entirely from a view; after alignment
they appear as all-NaN columns, which MOFA+ handles as missing data.
"""
import os
import logging
from collections import OrderedDict

import numpy as np
import pandas as pd

from .exceptions import DataLoadError

logger = logging.getLogger(__name__)

NUMERIC_METADATA_COLUMNS = ["age", "TTT", "TTD", "died", "treatedAfter", "IGHV", "trisomy12"]
DEFAULT_GROUP = "group1"


def load_views(data_paths, view_names):
    """
    Load one features x samples matrix per view.

    Args:
        data_paths (dict): view name -> CSV path.
        view_names (list): Views to load, in model order.

    Returns:
        OrderedDict: view name -> DataFrame (features x samples, float).
    """
    views = OrderedDict()
    for view_name in view_names:
        file_path = data_paths.get(view_name)
        if not file_path or not os.path.exists(file_path):
            raise DataLoadError(f"Data file for view '{view_name}' not found: {file_path}")
        logger.info(f"Processing view: {view_name}")
        df = pd.read_csv(file_path, index_col=0)
        logger.info(f"  Loaded {df.shape[0]} features x {df.shape[1]} samples.")

        if df.shape[0] == 0 or df.shape[1] == 0:
            raise DataLoadError(f"View '{view_name}' is empty ({df.shape}).")
        # read_csv renames repeated headers, so check the raw header row
        header = pd.read_csv(file_path, header=None, nrows=1, dtype=str).iloc[0, 1:]
        if header.duplicated().any():
            dups = header[header.duplicated()].tolist()[:5]
            raise DataLoadError(f"Duplicate sample columns in '{view_name}': {dups}")
        df.columns = df.columns.astype(str)
        df.index = df.index.astype(str)
        if df.index.duplicated().any():
            n_dup = int(df.index.duplicated().sum())
            logger.warning(f"  {n_dup} duplicated feature ids in '{view_name}'; keeping first occurrence.")
            df = df[~df.index.duplicated(keep='first')]

        try:
            df = df.apply(pd.to_numeric, errors='raise').astype(float)
        except (ValueError, TypeError) as e:
            raise DataLoadError(f"Non-numeric values in view '{view_name}': {e}") from e
        views[view_name] = df
    return views


def load_metadata(path, sample_col="sample"):
    """Load sample metadata indexed by sample id."""
    if not path or not os.path.exists(path):
        raise DataLoadError(f"Metadata file not found: {path}")
    metadata = pd.read_csv(path)
    if sample_col not in metadata.columns:
        raise DataLoadError(f"Metadata has no '{sample_col}' column "
                            f"(columns: {metadata.columns.tolist()}).")
    metadata[sample_col] = metadata[sample_col].astype(str)
    if metadata[sample_col].duplicated().any():
        dups = metadata.loc[metadata[sample_col].duplicated(), sample_col].tolist()[:5]
        raise DataLoadError(f"Duplicate sample ids in metadata: {dups}")
    metadata = metadata.set_index(sample_col)
    metadata.index.name = "sample"

    for col in NUMERIC_METADATA_COLUMNS:
        if col in metadata.columns:
            metadata[col] = pd.to_numeric(metadata[col], errors='coerce')
    logger.info(f"Metadata loaded: {len(metadata)} samples, columns {metadata.columns.tolist()}")
    return metadata


def align_views(views, samples=None):
    """
    Reindex all views on a common sample order.

    When `samples` is None the union of samples is used, in order of first
    appearance across views.
    """
    if not views:
        raise DataLoadError("No views to align.")
    if samples is None:
        samples = []
        seen = set()
        for df in views.values():
            for s in df.columns:
                if s not in seen:
                    seen.add(s)
                    samples.append(s)
    aligned = OrderedDict()
    for view_name, df in views.items():
        aligned[view_name] = df.reindex(columns=samples)
        n_missing = int(aligned[view_name].isna().all(axis=0).sum())
        if n_missing:
            logger.info(f"  {view_name}: {n_missing}/{len(samples)} samples missing the whole view.")
    return aligned


def sample_groups(metadata, samples, group_by=None):
    """Group label per sample (a single default group when group_by is None)."""
    samples = list(samples)
    if group_by is None:
        return pd.Series(DEFAULT_GROUP, index=samples, name="group")
    if metadata is None or group_by not in metadata.columns:
        raise DataLoadError(f"Cannot group samples by '{group_by}': column not in metadata.")
    groups = metadata[group_by].reindex(samples)
    if groups.isna().any():
        missing = groups.index[groups.isna()].tolist()[:5]
        raise DataLoadError(f"Samples without a '{group_by}' value: {missing}")
    return groups.astype(str).rename("group")


def views_to_long(views, groups=None):
    """
    Long data frame with columns sample, feature, view, group, value.

    Missing entries are dropped; mofapy2 fills them back in when building
    its matrices from this format.
    """
    frames = []
    for view_name, df in views.items():
        long_df = df.rename_axis(index="feature", columns="sample").stack().reset_index()
        long_df.columns = ["feature", "sample", "value"]
        long_df["view"] = view_name
        frames.append(long_df)
    if not frames:
        return pd.DataFrame(columns=["sample", "feature", "view", "group", "value"])
    long_data = pd.concat(frames, ignore_index=True).dropna(subset=["value"])
    if groups is None:
        long_data["group"] = DEFAULT_GROUP
    else:
        long_data["group"] = long_data["sample"].map(groups)
    return long_data[["sample", "feature", "view", "group", "value"]]


def data_overview(views):
    """
    Per-view summary and the sample x view observation matrix.

    Returns:
        tuple: (summary DataFrame indexed by view with n_features,
        n_samples_observed, fraction_missing; boolean DataFrame samples x
        views, True where the sample has any observation in the view).
    """
    rows = []
    observed = {}
    for view_name, df in views.items():
        observed_samples = ~df.isna().all(axis=0)
        observed[view_name] = observed_samples
        total = df.size
        rows.append({
            'view': view_name,
            'n_features': df.shape[0],
            'n_samples_observed': int(observed_samples.sum()),
            'fraction_missing': float(df.isna().values.sum() / total) if total else np.nan,
        })
    summary = pd.DataFrame(rows).set_index('view')
    observed_df = pd.DataFrame(observed).fillna(False).astype(bool)
    return summary, observed_df
