# -*- coding: utf-8 -*-
"""
Read access to a trained MOFA+ model (mofapy2 HDF5 output).

MofaModel exposes the factors (Z), weights (W), variance explained, stored
training data and sample metadata as pandas objects, and derives
reconstructions/imputations from Z and W.

HDF5 layout used (mofapy2):
    views/views, groups/groups, samples/<group>, features/<view>
    expectations/Z/<group>           factors x samples
    expectations/W/<view>            factors x features
    variance_explained/r2_per_factor/<group>   views x factors (percent)
    variance_explained/r2_total/<group>        views (percent)
    data/<view>/<group>              samples x features (optional)
    intercepts/<view>/<group>        features (optional)
    samples_metadata/<group>/<col>   (optional)
    model_options/likelihoods        (optional)
"""
import os
import logging

import h5py
import numpy as np
import pandas as pd

from .exceptions import ModelFileError

logger = logging.getLogger(__name__)


def safe_decode(byte_string):
    """Safely decodes byte strings, returns original if not bytes."""
    if isinstance(byte_string, bytes):
        try:
            return byte_string.decode('utf-8')
        except UnicodeDecodeError:
            return byte_string.decode('latin-1', errors='replace')
    return byte_string


def _sigmoid(x):
    return 1.0 / (1.0 + np.exp(-x))


class MofaModel:
    """
    A trained MOFA+ model loaded from an HDF5 file.

    The file stays open until `close()` is called (or the `with` block ends);
    arrays are read on demand.
    """

    def __init__(self, path):
        if not os.path.exists(path):
            raise ModelFileError(f"MOFA+ model file {path} not found")
        self.path = path
        try:
            self._file = h5py.File(path, 'r')
        except OSError as e:
            raise ModelFileError(f"Could not open MOFA+ model file '{path}': {e}") from e

        f = self._file
        try:
            self._check_structure()
            self.views = [safe_decode(v) for v in f['views']['views'][()]]
            if 'groups' in f and 'groups' in f['groups']:
                self.groups = [safe_decode(g) for g in f['groups']['groups'][()]]
            else:
                self.groups = list(f['expectations']['Z'].keys())
            self._check_entries()
            self.samples = {g: [safe_decode(s) for s in f['samples'][g][()]] for g in self.groups}
            self.features = {v: [safe_decode(x) for x in f['features'][v][()]] for v in self.views}
            self.n_factors = f['expectations']['Z'][self.groups[0]].shape[0]
            self.factor_names = [f"Factor{i + 1}" for i in range(self.n_factors)]
            self.likelihoods = self._read_likelihoods()
            self._validate_dimensions()
        except Exception:
            self._file.close()
            raise

        self.metadata = self._read_samples_metadata()
        logger.info(f"Loaded MOFA+ model {path}: {len(self.views)} views, {len(self.groups)} groups, "
                    f"{sum(len(s) for s in self.samples.values())} samples, {self.n_factors} factors")

    # --- File structure -------------------------------------------------

    def _check_structure(self):
        required = ['views/views', 'samples', 'features', 'expectations/Z', 'expectations/W']
        missing = [p for p in required if p not in self._file]
        if missing:
            raise ModelFileError(f"Model file '{self.path}' is missing required entries: {missing}")

    def _check_entries(self):
        if not self.views or not self.groups:
            raise ModelFileError(f"Model file '{self.path}' lists no views or no groups")
        required = [f"samples/{g}" for g in self.groups] + [f"expectations/Z/{g}" for g in self.groups]
        required += [f"features/{v}" for v in self.views] + [f"expectations/W/{v}" for v in self.views]
        missing = [p for p in required if p not in self._file]
        if missing:
            raise ModelFileError(f"Model file '{self.path}' is missing required entries: {missing}")

    def _validate_dimensions(self):
        f = self._file
        for g in self.groups:
            z_shape = f['expectations']['Z'][g].shape
            if z_shape != (self.n_factors, len(self.samples[g])):
                raise ModelFileError(f"Factor matrix for group '{g}' has shape {z_shape}, expected "
                                     f"({self.n_factors}, {len(self.samples[g])})")
        for v in self.views:
            w_shape = f['expectations']['W'][v].shape
            if w_shape != (self.n_factors, len(self.features[v])):
                raise ModelFileError(f"Weight matrix for view '{v}' has shape {w_shape}, expected "
                                     f"({self.n_factors}, {len(self.features[v])})")

    def _read_likelihoods(self):
        f = self._file
        if 'model_options' in f and 'likelihoods' in f['model_options']:
            liks = [safe_decode(x) for x in f['model_options']['likelihoods'][()]]
            if len(liks) == len(self.views):
                return dict(zip(self.views, liks))
        return {v: 'gaussian' for v in self.views}

    def _read_samples_metadata(self):
        f = self._file
        frames = []
        for g in self.groups:
            meta = pd.DataFrame(index=pd.Index(self.samples[g], name='sample'))
            if 'samples_metadata' in f and g in f['samples_metadata']:
                for col in f['samples_metadata'][g]:
                    if col in ('sample', 'group'):
                        continue
                    values = f['samples_metadata'][g][col][()]
                    if values.dtype.kind in ('S', 'O'):
                        values = [safe_decode(x) for x in values]
                    meta[col] = values
            meta['group'] = g
            frames.append(meta)
        return pd.concat(frames)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()

    def __repr__(self):
        return (f"MofaModel('{self.path}', views={self.views}, groups={self.groups}, "
                f"factors={self.n_factors})")

    # --- Selection helpers ---------------------------------------------

    def _factor_indices(self, factors=None):
        if factors is None:
            return list(range(self.n_factors))
        indices = []
        for fac in factors:
            if isinstance(fac, str):
                if fac not in self.factor_names:
                    raise KeyError(f"Unknown factor '{fac}'; model has {self.factor_names}")
                indices.append(self.factor_names.index(fac))
            else:
                # integer factors are 1-based, as in the factor names
                if not 1 <= int(fac) <= self.n_factors:
                    raise KeyError(f"Factor index {fac} out of range 1..{self.n_factors}")
                indices.append(int(fac) - 1)
        return indices

    def _select(self, requested, available, kind):
        if requested is None:
            return list(available)
        if isinstance(requested, str):
            requested = [requested]
        unknown = [r for r in requested if r not in available]
        if unknown:
            raise KeyError(f"Unknown {kind}(s) {unknown}; model has {list(available)}")
        return list(requested)

    @property
    def sample_names(self):
        return [s for g in self.groups for s in self.samples[g]]

    def sample_groups(self):
        return pd.Series({s: g for g in self.groups for s in self.samples[g]}, name='group')

    # --- Factors and weights -------------------------------------------

    def get_factors(self, groups=None, factors=None):
        """Samples x factors DataFrame (groups concatenated)."""
        groups = self._select(groups, self.groups, "group")
        idx = self._factor_indices(factors)
        names = [self.factor_names[i] for i in idx]
        frames = []
        for g in groups:
            z = self._file['expectations']['Z'][g][()]
            frames.append(pd.DataFrame(z[idx, :].T, index=self.samples[g], columns=names))
        factors_df = pd.concat(frames)
        factors_df.index.name = 'sample'
        return factors_df

    def get_weights(self, views=None, factors=None, scale=False):
        """
        Weights per view as features x factors DataFrames.

        With `scale=True` each factor's weights are divided by the largest
        absolute weight over the returned views, so they lie in [-1, 1].
        """
        views = self._select(views, self.views, "view")
        idx = self._factor_indices(factors)
        names = [self.factor_names[i] for i in idx]
        weights = {}
        for v in views:
            w = self._file['expectations']['W'][v][()]
            weights[v] = pd.DataFrame(w[idx, :].T, index=self.features[v], columns=names)
        if scale:
            max_abs = pd.concat([w.abs() for w in weights.values()]).max(axis=0)
            max_abs = max_abs.replace(0, 1.0)
            weights = {v: w / max_abs for v, w in weights.items()}
        return weights

    def get_top_weights(self, view, factor, n=10, sign="all", absolute=True, scale=True):
        """
        The `n` features of `view` with the strongest weight on `factor`.

        Returns a DataFrame with columns feature, view, factor, value, sign,
        sorted by decreasing absolute value.
        """
        if sign not in ("all", "positive", "negative"):
            raise ValueError(f"sign must be 'all', 'positive' or 'negative', got '{sign}'")
        factor_name = self.factor_names[self._factor_indices([factor])[0]]
        w = self.get_weights(views=[view], factors=[factor_name], scale=scale)[view][factor_name]
        if sign == "positive":
            w = w[w > 0]
        elif sign == "negative":
            w = w[w < 0]
        top = w.reindex(w.abs().sort_values(ascending=False).index).head(n)
        top_df = pd.DataFrame({
            'feature': top.index,
            'view': view,
            'factor': factor_name,
            'value': top.abs().values if absolute else top.values,
            'sign': np.where(top.values >= 0, '+', '-'),
        })
        return top_df.reset_index(drop=True)

    def factor_correlation(self, method="pearson"):
        """Factor x factor correlation over all samples."""
        return self.get_factors().corr(method=method)

    # --- Variance explained --------------------------------------------

    def get_variance_explained(self, groups=None, total=False):
        """
        Variance explained (R2, percent) as a long DataFrame.

        Per factor: columns group, view, factor, R2.
        With `total=True`: columns group, view, R2 (all factors together).
        Falls back to `calculate_variance_explained` when the file stores none.
        """
        groups = self._select(groups, self.groups, "group")
        f = self._file
        key = 'r2_total' if total else 'r2_per_factor'
        if 'variance_explained' not in f or key not in f['variance_explained']:
            logger.warning("Variance explained not stored in model file; computing from stored data.")
            r2 = self.calculate_variance_explained(total=total)
            return r2[r2['group'].isin(groups)].reset_index(drop=True)

        rows = []
        for g in groups:
            data = f['variance_explained'][key][g][()]
            for vi, v in enumerate(self.views):
                if total:
                    rows.append({'group': g, 'view': v, 'R2': float(data[vi])})
                else:
                    for k, fac in enumerate(self.factor_names):
                        rows.append({'group': g, 'view': v, 'factor': fac, 'R2': float(data[vi, k])})
        return pd.DataFrame(rows)

    def calculate_variance_explained(self, total=False):
        """
        R2 = 1 - SS(residual) / SS(data) from the stored data, in percent.

        Missing entries are ignored; data are centred per feature first.
        Only possible when the model was saved with its data. Views with a
        non-gaussian likelihood are left out.
        """
        if 'data' not in self._file:
            raise ModelFileError("Model file has no stored data; cannot compute variance explained.")
        rows = []
        views = [v for v in self.views if self.likelihoods[v] == 'gaussian']
        skipped = [v for v in self.views if v not in views]
        if skipped:
            logger.warning(f"Variance explained not computed for non-gaussian views {skipped}")
        for g in self.groups:
            z = self._file['expectations']['Z'][g][()]
            for v in views:
                y = self._file['data'][v][g][()].astype(float)
                observed_cols = ~np.isnan(y).all(axis=0)
                y[:, observed_cols] -= np.nanmean(y[:, observed_cols], axis=0)
                mask = ~np.isnan(y)
                ss = np.sum(y[mask] ** 2)
                w = self._file['expectations']['W'][v][()]
                if total:
                    resid = y - z.T @ w
                    r2 = 1.0 - np.sum(resid[mask] ** 2) / ss if ss > 0 else np.nan
                    rows.append({'group': g, 'view': v, 'R2': 100 * max(r2, 0.0)})
                    continue
                for k, fac in enumerate(self.factor_names):
                    resid = y - np.outer(z[k], w[k])
                    r2 = 1.0 - np.sum(resid[mask] ** 2) / ss if ss > 0 else np.nan
                    rows.append({'group': g, 'view': v, 'factor': fac, 'R2': 100 * max(r2, 0.0)})
        return pd.DataFrame(rows, columns=['group', 'view', 'R2'] if total else ['group', 'view', 'factor', 'R2'])

    # --- Data, predictions and imputation ------------------------------

    def has_data(self):
        return 'data' in self._file

    def get_data(self, views=None, add_intercept=False):
        """Stored training data per view as features x samples DataFrames."""
        if not self.has_data():
            raise ModelFileError("Model file has no stored data (trained with save_data=False?)")
        views = self._select(views, self.views, "view")
        out = {}
        for v in views:
            blocks = []
            for g in self.groups:
                y = self._file['data'][v][g][()].astype(float)
                if add_intercept:
                    y = y + self._intercept(v, g)
                blocks.append(pd.DataFrame(y.T, index=self.features[v], columns=self.samples[g]))
            out[v] = pd.concat(blocks, axis=1)
        return out

    def _intercept(self, view, group):
        f = self._file
        if 'intercepts' in f and view in f['intercepts'] and group in f['intercepts'][view]:
            return f['intercepts'][view][group][()]
        return np.zeros(len(self.features[view]))

    def predict(self, views=None, add_intercept=False):
        """Reconstruction Z Wᵀ per view (features x samples), link applied for bernoulli views."""
        views = self._select(views, self.views, "view")
        out = {}
        for v in views:
            w = self._file['expectations']['W'][v][()]
            blocks = []
            for g in self.groups:
                z = self._file['expectations']['Z'][g][()]
                y_hat = z.T @ w
                if self.likelihoods.get(v) == 'bernoulli':
                    y_hat = _sigmoid(y_hat)
                elif self.likelihoods.get(v) == 'poisson':
                    y_hat = np.log1p(np.exp(y_hat))
                elif add_intercept:
                    y_hat = y_hat + self._intercept(v, g)
                blocks.append(pd.DataFrame(y_hat.T, index=self.features[v], columns=self.samples[g]))
            out[v] = pd.concat(blocks, axis=1)
        return out

    def impute(self, views=None, only_missing=True, add_intercept=False):
        """
        Impute missing values from the model reconstruction.

        With `only_missing=True` observed values are kept and only NaN
        entries are replaced; this needs the stored data.
        """
        predictions = self.predict(views, add_intercept=add_intercept)
        if not only_missing:
            return predictions
        observed = self.get_data(list(predictions.keys()), add_intercept=add_intercept)
        imputed = {}
        for v, pred in predictions.items():
            obs = observed[v].reindex(index=pred.index, columns=pred.columns)
            n_missing = int(obs.isna().values.sum())
            imputed[v] = obs.where(obs.notna(), pred)
            logger.info(f"   {v}: imputed {n_missing} missing values")
        return imputed

    # --- Metadata -------------------------------------------------------

    def get_metadata(self):
        return self.metadata.copy()

    def add_sample_metadata(self, metadata):
        """
        Join external sample metadata (indexed by sample id) to the model.

        Columns already present in the model metadata are overwritten.
        Returns the combined metadata.
        """
        samples = self.sample_names
        metadata = metadata.copy()
        metadata.index = metadata.index.astype(str)
        not_found = [s for s in samples if s not in metadata.index]
        if not_found:
            logger.warning(f"{len(not_found)} model samples have no metadata (e.g. {not_found[:5]})")
        extra = metadata.index.difference(pd.Index(samples))
        if len(extra):
            logger.info(f"Ignoring {len(extra)} metadata rows for samples not in the model.")
        aligned = metadata.reindex(samples)
        base = self.metadata.drop(columns=[c for c in aligned.columns if c in self.metadata.columns
                                           and c != 'group'])
        aligned = aligned.drop(columns=[c for c in ['group'] if c in aligned.columns])
        self.metadata = base.join(aligned)
        self.metadata.index.name = 'sample'
        return self.get_metadata()
