"""Model metrics slots and the default provider filling them.

frameboost does not define evaluation metrics.  A metrics provider is any callable
with the :py:class:`MetricsProvider` signature, the default one delegates to
:py:mod:`sklearn.metrics`.

"""
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Protocol

import numpy as np

from ._typing import Domain
from .compat import import_sklearn_metrics
from .params import Task


@dataclass(frozen=True)
class ModelMetrics:
    """Metrics of a model on one frame."""

    task: Task
    nobs: int

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["task"] = self.task.value
        return out


@dataclass(frozen=True)
class ModelMetricsRegression(ModelMetrics):
    mse: float
    rmse: float
    mae: float


@dataclass(frozen=True)
class ModelMetricsBinomial(ModelMetrics):
    auc: float
    logloss: float


@dataclass(frozen=True)
class ModelMetricsMultinomial(ModelMetrics):
    logloss: float
    mean_per_class_error: float


class MetricsProvider(Protocol):  # pylint: disable=too-few-public-methods
    """Computes :py:class:`ModelMetrics` from predictions.

    ``predictions`` is the ``(nrows, width)`` output of a scorer, ``actuals`` holds
    the response, as level codes for classification.
    """

    def __call__(
        self,
        task: Task,
        predictions: np.ndarray,
        actuals: np.ndarray,
        domain: Optional[Domain],
        weights: Optional[np.ndarray],
    ) -> ModelMetrics: ...


def _normalize(proba: np.ndarray) -> np.ndarray:
    proba = proba.astype(np.float64)
    return proba / proba.sum(axis=1, keepdims=True)


def default_metrics(
    task: Task,
    predictions: np.ndarray,
    actuals: np.ndarray,
    domain: Optional[Domain],
    weights: Optional[np.ndarray] = None,
) -> ModelMetrics:
    """Default :py:class:`MetricsProvider` built on scikit-learn."""
    skm = import_sklearn_metrics()
    predictions = np.asarray(predictions)
    if predictions.ndim == 1:
        predictions = predictions.reshape(-1, 1)
    actuals = np.asarray(actuals, dtype=np.float64)
    nobs = int(actuals.shape[0])
    task = Task(task)

    if task == Task.regression:
        pred = predictions[:, 0].astype(np.float64)
        mse = float(skm.mean_squared_error(actuals, pred, sample_weight=weights))
        mae = float(skm.mean_absolute_error(actuals, pred, sample_weight=weights))
        return ModelMetricsRegression(task, nobs, mse=mse, rmse=math.sqrt(mse), mae=mae)

    labels = actuals.astype(np.int64)
    if task == Task.binomial:
        p1 = predictions[:, 0].astype(np.float64)
        proba = np.stack([1.0 - p1, p1], axis=1)
        logloss = float(
            skm.log_loss(labels, proba, labels=[0, 1], sample_weight=weights)
        )
        if np.unique(labels).shape[0] < 2:
            # AUC is undefined with a single class.
            auc = float("nan")
        else:
            auc = float(skm.roc_auc_score(labels, p1, sample_weight=weights))
        return ModelMetricsBinomial(task, nobs, auc=auc, logloss=logloss)

    assert domain is not None
    k = len(domain)
    proba = _normalize(predictions)
    logloss = float(
        skm.log_loss(labels, proba, labels=list(range(k)), sample_weight=weights)
    )
    present = np.unique(labels)
    recall = skm.recall_score(
        labels,
        np.argmax(proba, axis=1),
        labels=present,
        average=None,
        sample_weight=weights,
        zero_division=0,
    )
    mpce = float(np.mean(1.0 - np.asarray(recall)))
    return ModelMetricsMultinomial(
        task, nobs, logloss=logloss, mean_per_class_error=mpce
    )
