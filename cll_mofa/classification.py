# -*- coding: utf-8 -*-
"""
Prediction of missing clinical labels from MOFA+ factors.

A random forest is trained on the samples with an observed label (e.g. IGHV
status) using the factor values as predictors, evaluated with stratified
cross-validation, and used to predict the label of the samples where it is
missing.
"""
import logging

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import StratifiedKFold, cross_val_score

from .exceptions import AnalysisError

logger = logging.getLogger(__name__)


def predict_missing_labels(factors, labels, n_estimators=500, cv_folds=5, seed=42, factors_subset=None):
    """
    Train a random forest on labelled samples and predict the unlabelled ones.

    Args:
        factors (pd.DataFrame): samples x factors.
        labels (pd.Series): label per sample (NaN where unknown).
        n_estimators (int): Number of trees.
        cv_folds (int): Stratified CV folds (reduced to the smallest class size).
        seed (int): Random state for the forest and the folds.
        factors_subset (list, optional): Factors to use as predictors.

    Returns:
        dict: covariate, predictions (Series for unlabelled samples),
        probabilities (DataFrame), cv_accuracy (array or None),
        feature_importance (Series), n_train, classes, model.
    """
    name = labels.name or "label"
    predictors = factors if factors_subset is None else factors[list(factors_subset)]
    labels = labels.reindex(predictors.index)

    train_mask = labels.notna()
    X_train = predictors.loc[train_mask]
    y_train = labels.loc[train_mask]
    X_predict = predictors.loc[~train_mask]

    class_counts = y_train.value_counts()
    if len(class_counts) < 2:
        raise AnalysisError(f"Need at least two observed classes to predict '{name}', "
                            f"found {class_counts.to_dict()}.")
    logger.info(f"'{name}': {len(X_train)} labelled samples {class_counts.to_dict()}, "
                f"{len(X_predict)} to predict")

    clf = RandomForestClassifier(n_estimators=n_estimators, random_state=seed, n_jobs=-1)

    n_splits = min(cv_folds, int(class_counts.min()))
    cv_accuracy = None
    if n_splits >= 2:
        skf = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=seed)
        cv_accuracy = cross_val_score(clf, X_train.values, y_train.values, cv=skf, scoring='accuracy')
        logger.info(f"   {n_splits}-fold CV accuracy: {cv_accuracy.mean():.3f} +/- {cv_accuracy.std():.3f}")
    else:
        logger.warning(f"   Smallest class of '{name}' has {class_counts.min()} samples; skipping CV.")

    clf.fit(X_train.values, y_train.values)
    importance = pd.Series(clf.feature_importances_, index=predictors.columns,
                           name='importance').sort_values(ascending=False)

    if len(X_predict):
        predicted = pd.Series(clf.predict(X_predict.values), index=X_predict.index, name=name)
        probabilities = pd.DataFrame(clf.predict_proba(X_predict.values), index=X_predict.index,
                                     columns=[f"P({c})" for c in clf.classes_])
    else:
        predicted = pd.Series([], index=pd.Index([], name=predictors.index.name), name=name, dtype=y_train.dtype)
        probabilities = pd.DataFrame(columns=[f"P({c})" for c in clf.classes_])
    logger.info(f"   Predicted {len(predicted)} missing '{name}' labels: "
                f"{predicted.value_counts().to_dict()}")

    return {
        'covariate': name,
        'predictions': predicted,
        'probabilities': probabilities,
        'cv_accuracy': cv_accuracy,
        'feature_importance': importance,
        'n_train': len(X_train),
        'classes': list(clf.classes_),
        'model': clf,
    }


def impute_covariates(factors, metadata, covariates=("IGHV", "trisomy12"), **kwargs):
    """
    Fill missing values of clinical covariates with random-forest predictions.

    Returns:
        tuple: (metadata with `<covariate>_imputed` columns, dict covariate -> result)
    """
    metadata = metadata.copy()
    results = {}
    for cov in covariates:
        if cov not in metadata.columns:
            logger.warning(f"Covariate '{cov}' not in metadata; skipped.")
            continue
        labels = metadata[cov].reindex(factors.index).rename(cov)
        result = predict_missing_labels(factors, labels, **kwargs)
        predicted = result['predictions']
        predicted = predicted[predicted.index.isin(metadata.index)]
        imputed = metadata[cov].copy()
        imputed.loc[predicted.index] = predicted
        metadata[f"{cov}_imputed"] = imputed
        metadata[f"{cov}_is_predicted"] = metadata.index.isin(predicted.index)
        results[cov] = result
    return metadata, results


def label_summary(results):
    """One row per covariate: training size, CV accuracy, predicted label counts."""
    rows = []
    for cov, res in results.items():
        cv = res['cv_accuracy']
        rows.append({
            'Covariate': cov,
            'N_train': res['n_train'],
            'N_predicted': len(res['predictions']),
            'CV_accuracy_mean': float(np.mean(cv)) if cv is not None else np.nan,
            'CV_accuracy_std': float(np.std(cv)) if cv is not None else np.nan,
            'Predicted_counts': res['predictions'].value_counts().to_dict(),
            'Top_factor': res['feature_importance'].index[0],
        })
    return pd.DataFrame(rows)
