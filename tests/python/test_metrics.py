import math

import numpy as np
import pytest

from frameboost import testing as tm
from frameboost.metrics import (
    ModelMetricsBinomial,
    ModelMetricsMultinomial,
    ModelMetricsRegression,
    default_metrics,
)
from frameboost.params import Task

pytestmark = pytest.mark.skipif(**tm.no_sklearn())


class TestDefaultMetrics:
    def test_regression(self) -> None:
        predictions = np.array([[1.0], [2.0], [4.0]], dtype=np.float32)
        actuals = np.array([1.0, 3.0, 2.0])
        mm = default_metrics(Task.regression, predictions, actuals, None)
        assert isinstance(mm, ModelMetricsRegression)
        assert mm.nobs == 3
        assert mm.mse == pytest.approx(5.0 / 3.0)
        assert mm.rmse == pytest.approx(math.sqrt(5.0 / 3.0))
        assert mm.mae == pytest.approx(1.0)
        assert mm.to_dict()["task"] == "regression"

    def test_weights(self) -> None:
        predictions = np.array([1.0, 2.0, 4.0])
        actuals = np.array([1.0, 3.0, 2.0])
        weights = np.array([1.0, 0.0, 1.0])
        mm = default_metrics("regression", predictions, actuals, None, weights)
        assert mm.mse == pytest.approx(2.0)

    def test_binomial(self) -> None:
        from sklearn.metrics import log_loss, roc_auc_score

        p1 = np.array([0.1, 0.8, 0.6, 0.3], dtype=np.float32)
        actuals = np.array([0.0, 1.0, 0.0, 1.0])
        mm = default_metrics(Task.binomial, p1.reshape(-1, 1), actuals, ("No", "Yes"))
        assert isinstance(mm, ModelMetricsBinomial)
        assert mm.auc == pytest.approx(roc_auc_score(actuals, p1))
        assert mm.logloss == pytest.approx(log_loss(actuals, p1))

    def test_single_class_auc(self) -> None:
        p1 = np.array([[0.1], [0.8]])
        mm = default_metrics(Task.binomial, p1, np.array([1.0, 1.0]), ("0", "1"))
        assert math.isnan(mm.auc)
        assert mm.logloss > 0

    def test_multinomial(self) -> None:
        proba = np.array(
            [
                [0.7, 0.2, 0.1],
                [0.1, 0.8, 0.1],
                [0.6, 0.3, 0.1],
                [0.2, 0.2, 0.6],
            ]
        )
        actuals = np.array([0.0, 1.0, 1.0, 2.0])
        mm = default_metrics(Task.multinomial, proba, actuals, ("a", "b", "c"))
        assert isinstance(mm, ModelMetricsMultinomial)
        # class b is right once out of twice
        assert mm.mean_per_class_error == pytest.approx(0.5 / 3.0)
        expected = -np.mean(np.log([0.7, 0.8, 0.3, 0.6]))
        assert mm.logloss == pytest.approx(expected)

    def test_multinomial_absent_class(self) -> None:
        proba = np.array([[0.9, 0.05, 0.05], [0.1, 0.8, 0.1]])
        actuals = np.array([0.0, 1.0])
        mm = default_metrics(Task.multinomial, proba, actuals, ("a", "b", "c"))
        # only the classes present in the actuals are averaged
        assert mm.mean_per_class_error == 0.0
