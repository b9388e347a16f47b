# pylint: disable=too-many-instance-attributes, too-many-arguments
"""Trained models and their life cycle."""
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import xgboost

from ._typing import EvalsLog, PathLike
from .artifact import save_artifact, write_artifact
from .collective import communicator_bracket
from .core import engine_errors
from .data import DataInfo, NativeMatrix
from .frame import Frame, FrameMetadata, Vec
from .metrics import MetricsProvider, ModelMetrics, default_metrics
from .params import ResolvedConfig, Task
from .scoring import NativeScorer, ScoringResult

LOGGER = logging.getLogger("[frameboost.model]")

# Probability at or above which a binomial model predicts the second level.
BINOMIAL_THRESHOLD = 0.5


def new_model_key(prefix: str = "XGBoost_model") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class ModelOutput:
    """Everything training produced next to the booster.

    Attributes
    ----------
    info :
        Column roles and encoding decisions, including the sparsity flag actually
        used.
    ntrees :
        Number of boosting rounds in the booster.
    scoring_history :
        Per-round evaluation trace, ``{watch: {metric: [...]}}``.
    cross_validation_models :
        Keys of the per-fold sub-models.
    """

    info: DataInfo
    ntrees: int
    training_metrics: Optional[ModelMetrics] = None
    validation_metrics: Optional[ModelMetrics] = None
    cross_validation_metrics: Optional[ModelMetrics] = None
    cross_validation_models: List[str] = field(default_factory=list)
    scoring_history: EvalsLog = field(default_factory=dict)

    @property
    def sparse(self) -> bool:
        return self.info.sparse

    @property
    def names(self) -> List[str]:
        """Feature columns of the model."""
        return self.info.layout.column_names

    @property
    def task(self) -> Task:
        return self.info.task

    @property
    def response_domain(self) -> Optional[Sequence[str]]:
        return self.info.response_domain


class Model:
    """A trained model.

    The booster and the output are fixed once training completes.  The only state
    growing afterwards is the metrics cache, holding one entry per scored frame.

    Parameters
    ----------
    key :
        Identity of the model.
    config :
        Resolved configuration the model was trained with.
    output :
        Training output.
    booster :
        The trained booster, owned by the model from now on.
    metrics :
        Metrics provider used by :py:meth:`score`.
    """

    def __init__(
        self,
        key: str,
        config: ResolvedConfig,
        output: ModelOutput,
        booster: xgboost.Booster,
        metrics: Optional[MetricsProvider] = None,
    ) -> None:
        self.key = key
        self.config = config
        self.output = output
        self._booster: Optional[xgboost.Booster] = booster
        self._metrics_provider: MetricsProvider = (
            metrics if metrics is not None else default_metrics
        )
        self._metrics: Dict[str, ModelMetrics] = {}
        self._lock = threading.RLock()
        self._artifact: Optional[bytes] = None
        self._manager: Optional["ModelArtifactManager"] = None

    def __repr__(self) -> str:
        return (
            f"Model(key={self.key!r}, task={self.output.task.value}, "
            f"ntrees={self.output.ntrees}, sparse={self.output.sparse})"
        )

    @property
    def deleted(self) -> bool:
        return self._booster is None

    @property
    def booster(self) -> xgboost.Booster:
        if self._booster is None:
            raise ValueError(f"Model {self.key} has been deleted.")
        return self._booster

    def get_booster(self) -> xgboost.Booster:
        """A copy of the booster."""
        with self._lock, engine_errors("copying the booster"):
            return self.booster.copy()

    # scoring
    @communicator_bracket
    def predict_matrix(self, matrix: NativeMatrix, output_margin: bool = False) -> np.ndarray:
        """Raw engine predictions for a matrix built with this model's encoding."""
        with self._lock, engine_errors("predicting"):
            return self.booster.predict(matrix.dmatrix, output_margin=output_margin)

    def predict(self, frame: Frame) -> ScoringResult:
        """Predictions of the native scorer."""
        return NativeScorer().score(self, frame)

    def _prediction_frame(self, result: ScoringResult) -> Frame:
        info = self.output.info
        if info.task == Task.regression:
            return Frame(["predict"], [Vec(result.values[:, 0])])
        assert info.response_domain is not None
        if info.task == Task.binomial:
            p1 = result.values[:, 0].astype(np.float64)
            proba = [1.0 - p1, p1]
            labels = result.labels(BINOMIAL_THRESHOLD)
        else:
            proba = [result.values[:, k].astype(np.float64) for k in range(result.width)]
            labels = result.labels()
        names = ["predict"] + list(info.response_domain)
        vecs = [Vec(labels, domain=info.response_domain)] + [Vec(p) for p in proba]
        return Frame(names, vecs)

    def score(self, frame: Frame) -> Frame:
        """Score ``frame``, returning a frame with a ``predict`` column and, for
        classifiers, one probability column per response level.

        Metrics are computed and cached under the frame key when ``frame`` holds a
        complete response column.
        """
        result = self.predict(frame)
        info = self.output.info
        if info.response in frame and frame.vec(info.response).na_count() == 0:
            with self._lock:
                cached = frame.key in self._metrics
            if not cached:
                self.add_metrics(frame.key, self.compute_metrics(frame, result))
        return self._prediction_frame(result)

    def compute_metrics(
        self, frame: Frame, result: Optional[ScoringResult] = None
    ) -> ModelMetrics:
        """Metrics of the model on ``frame`` from the metrics provider."""
        info = self.output.info
        if result is None:
            result = self.predict(frame)
        actuals = response_actuals(frame.vec(info.response), info)
        weights = None
        if info.weights is not None and info.weights in frame:
            weights = frame.vec(info.weights).values
        return self._metrics_provider(
            info.task, result.values, actuals, info.response_domain, weights
        )

    # metrics cache
    def add_metrics(self, frame_key: str, metrics: ModelMetrics) -> None:
        with self._lock:
            self._metrics[frame_key] = metrics

    def model_metrics(self) -> Dict[str, ModelMetrics]:
        """Cached metrics by frame key."""
        with self._lock:
            return dict(self._metrics)

    # artifacts
    def to_artifact(self) -> bytes:
        """Portable artifact of the model, see :py:mod:`frameboost.genmodel.reader`."""
        with self._lock:
            if self._artifact is None:
                self._artifact = write_artifact(self)
            return self._artifact

    def save_artifact(self, path: PathLike) -> str:
        with self._lock:
            return save_artifact(self, path)

    def booster_dump(self, with_stats: bool = False) -> List[str]:
        """Text dump of every tree of the booster."""
        with self._lock, engine_errors("dumping the booster"):
            return self.booster.get_dump(with_stats=with_stats, dump_format="text")

    def delete(self) -> bool:
        """Release the model, its cross-validation sub-models stay alive."""
        if self._manager is not None:
            return self._manager.delete(self)
        return self._release()

    def delete_cross_validation_models(self) -> int:
        """Release the cross-validation sub-models."""
        manager = self._manager if self._manager is not None else get_manager()
        return manager.delete_cross_validation_models(self)

    def _release(self) -> bool:
        with self._lock:
            if self._booster is None:
                return False
            self._booster = None
            self._artifact = None
            self._metrics.clear()
            return True


def response_actuals(vec: Vec, info: DataInfo) -> np.ndarray:
    if info.response_domain is None or vec.domain == info.response_domain:
        return vec.values
    index = {level: i for i, level in enumerate(info.response_domain)}
    return np.array(
        [index.get(vec.level(v), np.nan) if v == v else np.nan for v in vec.values]
    )


class ModelArtifactManager:
    """Registry of live models.

    :py:meth:`delete` and :py:meth:`delete_cross_validation_models` are independent:
    either can run first and repeating them is a no-op.
    """

    def __init__(self) -> None:
        self._models: Dict[str, Model] = {}
        self._lock = threading.Lock()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._models

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._models)

    def get(self, key: str) -> Optional[Model]:
        with self._lock:
            return self._models.get(key)

    def register(self, model: Model) -> Model:
        with self._lock:
            if model.key in self._models and self._models[model.key] is not model:
                raise ValueError(f"A model with key {model.key} already exists.")
            self._models[model.key] = model
            model._manager = self  # pylint: disable=protected-access
        return model

    def finalize(
        self,
        booster: xgboost.Booster,
        config: ResolvedConfig,
        info: DataInfo,
        *,
        key: Optional[str] = None,
        training_metrics: Optional[ModelMetrics] = None,
        validation_metrics: Optional[ModelMetrics] = None,
        cross_validation_metrics: Optional[ModelMetrics] = None,
        cross_validation_models: Sequence[str] = (),
        metrics_by_frame: Optional[Dict[str, ModelMetrics]] = None,
        history: Optional[EvalsLog] = None,
        metrics: Optional[MetricsProvider] = None,
    ) -> Model:
        """Wrap a trained booster into a registered :py:class:`Model`."""
        if key is None:
            key = config.model_id if config.model_id is not None else new_model_key()
        output = ModelOutput(
            info=info,
            ntrees=booster.num_boosted_rounds(),
            training_metrics=training_metrics,
            validation_metrics=validation_metrics,
            cross_validation_metrics=cross_validation_metrics,
            cross_validation_models=list(cross_validation_models),
            scoring_history=dict(history or {}),
        )
        model = Model(key, config, output, booster, metrics)
        for frame_key, mm in (metrics_by_frame or {}).items():
            model.add_metrics(frame_key, mm)
        LOGGER.info("Finalized %r", model)
        return self.register(model)

    def delete(self, model: Union[Model, str]) -> bool:
        """Release the main model.  Its cross-validation sub-models stay alive.

        Returns
        -------
        Whether anything was released.
        """
        key = model if isinstance(model, str) else model.key
        with self._lock:
            found = self._models.pop(key, None)
        if found is None and isinstance(model, Model):
            found = model
        if found is None:
            return False
        return found._release()  # pylint: disable=protected-access

    def delete_cross_validation_models(self, model: Model) -> int:
        """Release the cross-validation sub-models of ``model``.

        Returns
        -------
        Number of sub-models released by this call.
        """
        count = 0
        for key in model.output.cross_validation_models:
            if self.delete(key):
                count += 1
        return count

    @staticmethod
    def snapshot(frame: Frame) -> FrameMetadata:
        """Metadata snapshot taken before training."""
        return FrameMetadata(frame)

    @staticmethod
    def check_unchanged(snapshot: FrameMetadata, frame: Frame) -> None:
        """Raise :py:class:`~frameboost.core.FrameMutationInvariantError` when
        ``frame`` differs from ``snapshot``."""
        snapshot.check(frame)


_default_manager = ModelArtifactManager()


def get_manager() -> ModelArtifactManager:
    """The process wide model registry."""
    return _default_manager


def delete(model: Model) -> bool:
    return _default_manager.delete(model)


def delete_cross_validation_models(model: Model) -> int:
    return _default_manager.delete_cross_validation_models(model)


__all__ = [
    "BINOMIAL_THRESHOLD",
    "Model",
    "ModelOutput",
    "ModelArtifactManager",
    "get_manager",
    "delete",
    "delete_cross_validation_models",
]
