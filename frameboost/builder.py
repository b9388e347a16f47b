# pylint: disable=too-many-arguments, too-many-locals, too-many-instance-attributes
"""Model building entry point.

:py:class:`ModelBuilder` strings the components together: parameter resolution,
matrix construction, boosting with optional cross-validation or checkpoint
continuation, metrics, and finally the model.  The whole run is bracketed by a
:py:class:`~frameboost.collective.CommunicatorContext` and by frame snapshots proving
that the input frames were left untouched.

"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import xgboost

from .callback import TrainingCallback
from .collective import CommunicatorContext
from .core import IncompatibleParameterError, ValidationMessage
from .data import DataInfo, MatrixBuilder, NativeMatrix
from .frame import Frame, FrameMetadata, frame_info
from .metrics import MetricsProvider, ModelMetrics, default_metrics
from .model import (
    Model,
    ModelArtifactManager,
    get_manager,
    new_model_key,
    response_actuals,
)
from .params import FoldAssignment, ParameterResolver, ParameterSet, ResolvedConfig
from .scoring import ScoringResult, predict_raw
from .training import TrainingOrchestrator

LOGGER = logging.getLogger("[frameboost.builder]")


class ModelBuilder:
    """Train a model on a frame.

    Parameters
    ----------
    params :
        Model parameters.
    train :
        Training frame, read only.
    valid :
        Optional validation frame, evaluated after every round as ``valid``.
    manager :
        Registry receiving the model and its cross-validation sub-models, the process
        wide registry by default.
    metrics :
        Metrics provider, see :py:mod:`frameboost.metrics`.
    callbacks :
        Extra training callbacks for the main model.
    communicator_args :
        Arguments of the collective communicator, empty for a single process.
    verbose_eval :
        Log the evaluation every ``verbose_eval`` rounds.
    resolver :
        Parameter resolver, one using the process wide incompatibility table by
        default.
    """

    def __init__(
        self,
        params: ParameterSet,
        train: Frame,
        valid: Optional[Frame] = None,
        *,
        manager: Optional[ModelArtifactManager] = None,
        metrics: Optional[MetricsProvider] = None,
        callbacks: Optional[Sequence[TrainingCallback]] = None,
        communicator_args: Optional[Dict[str, Any]] = None,
        verbose_eval: "bool | int" = False,
        resolver: Optional[ParameterResolver] = None,
    ) -> None:
        self.params = params
        self.train = train
        self.valid = valid
        self.manager = manager if manager is not None else get_manager()
        self.metrics: MetricsProvider = metrics if metrics is not None else default_metrics
        self.callbacks = list(callbacks or [])
        self.communicator_args = dict(communicator_args or {})
        self.verbose_eval = verbose_eval
        self.resolver = resolver if resolver is not None else ParameterResolver()

    def train_model(self) -> Model:
        """Train and register the model.

        Any failure aborts the whole run: sub-models created so far are deleted and no
        model is returned.

        Raises
        ------
        IncompatibleParameterError
        InvalidColumnRoleError
        TrainingEngineError
        FrameMutationInvariantError
            An input frame changed during training, whatever the outcome of training.
        """
        frames = [self.train] + ([self.valid] if self.valid is not None else [])
        snapshots = [(self.manager.snapshot(f), f) for f in frames]
        created: List[Model] = []
        try:
            model = self._train(created)
            created.append(model)
        except BaseException:
            self._discard(created)
            raise
        finally:
            self._check_frames(snapshots, created)
        return model

    def _discard(self, created: List[Model]) -> None:
        for m in created:
            self.manager.delete(m)

    def _check_frames(
        self, snapshots: List[Tuple[FrameMetadata, Frame]], created: List[Model]
    ) -> None:
        try:
            for snapshot, frame in snapshots:
                self.manager.check_unchanged(snapshot, frame)
        except BaseException:
            self._discard(created)
            raise

    def _metrics_on(
        self, booster: xgboost.Booster, matrix: NativeMatrix, frame: Frame, info: DataInfo
    ) -> Tuple[ModelMetrics, np.ndarray]:
        values = ScoringResult.from_engine(predict_raw(booster, matrix), info).values
        rows = matrix.rows
        actuals = response_actuals(frame.vec(info.response), info)[rows]
        weights = None
        if info.weights is not None and info.weights in frame:
            weights = frame.vec(info.weights).values[rows]
        mm = self.metrics(info.task, values, actuals, info.response_domain, weights)
        return mm, values

    def _checkpoint(
        self, config: ResolvedConfig, info: DataInfo
    ) -> Optional[xgboost.Booster]:
        checkpoint = self.params.checkpoint
        if checkpoint is None:
            return None
        reason = None
        if not isinstance(checkpoint, Model):
            reason = "Checkpoint must be a trained model."
        elif checkpoint.deleted:
            reason = f"Checkpoint model {checkpoint.key} has been deleted."
        else:
            ckpt = checkpoint.output.info
            if (
                ckpt.layout != info.layout
                or ckpt.task != info.task
                or ckpt.response_domain != info.response_domain
            ):
                reason = (
                    f"Checkpoint model {checkpoint.key} was trained on different columns."
                )
            elif ckpt.sparse != info.sparse:
                reason = (
                    f"Checkpoint model {checkpoint.key} uses a "
                    f"{'sparse' if ckpt.sparse else 'dense'} matrix, set dmatrix_type "
                    "accordingly."
                )
            elif checkpoint.output.ntrees > config.num_boost_round:
                reason = (
                    f"ntrees must be at least the {checkpoint.output.ntrees} rounds of "
                    "the checkpoint model."
                )
        if reason is not None:
            raise IncompatibleParameterError(
                [ValidationMessage("_checkpoint", reason)],
                model_id=config.model_id,
                value=checkpoint,
            )
        return checkpoint.booster

    def _cross_validate(
        self,
        config: ResolvedConfig,
        builder: MatrixBuilder,
        info: DataInfo,
        key: str,
        created: List[Model],
    ) -> Tuple[List[str], ModelMetrics]:
        params = self.params
        kind = "modulo" if params.fold_assignment == FoldAssignment.modulo else "random"
        seed = params.seed if params.seed != -1 else 0
        folds = self.train.fold_assignment(params.nfolds, seed, kind)

        keys: List[str] = []
        holdout: Optional[np.ndarray] = None
        for k in range(params.nfolds):
            held_in = np.flatnonzero(folds != k)
            held_out = np.flatnonzero(folds == k)
            dfold = builder.build(self.train, rows=held_in, info=info)
            dhold = builder.build(self.train, rows=held_out, info=info)
            orchestrator = TrainingOrchestrator(config, info, verbose_eval=False)
            orchestrator.train(dfold, [(dfold, "train"), (dhold, "valid")])
            booster = orchestrator.release()
            train_mm, _ = self._metrics_on(booster, dfold, self.train, info)
            valid_mm, pred = self._metrics_on(booster, dhold, self.train, info)
            sub = self.manager.finalize(
                booster,
                config,
                info,
                key=f"{key}_cv_{k + 1}",
                training_metrics=train_mm,
                validation_metrics=valid_mm,
                history=orchestrator.history,
                metrics=self.metrics,
            )
            created.append(sub)
            keys.append(sub.key)
            if holdout is None:
                holdout = np.zeros((self.train.nrows, pred.shape[1]), dtype=np.float32)
            holdout[held_out] = pred
            LOGGER.info("Cross-validation model %s: %s", sub.key, valid_mm)

        assert holdout is not None
        actuals = response_actuals(self.train.vec(info.response), info)
        weights = (
            self.train.vec(info.weights).values if info.weights is not None else None
        )
        cv_mm = self.metrics(info.task, holdout, actuals, info.response_domain, weights)
        return keys, cv_mm

    def _train(self, created: List[Model]) -> Model:
        params = self.params
        config = self.resolver.resolve(params)
        key = params.model_id if params.model_id is not None else new_model_key()
        if key in self.manager:
            raise IncompatibleParameterError(
                [ValidationMessage("_model_id", f"A model with key {key} already exists.")],
                model_id=key,
                value=key,
            )

        with CommunicatorContext(**self.communicator_args):
            builder = MatrixBuilder(config)
            info = builder.prepare(self.train)
            LOGGER.info("Building model %s on %s", key, frame_info(self.train))
            xgb_model = self._checkpoint(config, info)

            cv_keys: List[str] = []
            cv_mm = None
            if params.nfolds > 1:
                cv_keys, cv_mm = self._cross_validate(config, builder, info, key, created)

            dtrain = builder.build(self.train, info=info)
            watches = [(dtrain, "train")]
            dvalid = None
            if self.valid is not None:
                dvalid = builder.build(self.valid, info=info)
                watches.append((dvalid, "valid"))

            orchestrator = TrainingOrchestrator(
                config, info, self.callbacks, verbose_eval=self.verbose_eval
            )
            orchestrator.train(dtrain, watches, xgb_model=xgb_model)
            booster = orchestrator.release()

            train_mm, _ = self._metrics_on(booster, dtrain, self.train, info)
            by_frame = {self.train.key: train_mm}
            valid_mm = None
            if dvalid is not None:
                assert self.valid is not None
                valid_mm, _ = self._metrics_on(booster, dvalid, self.valid, info)
                by_frame[self.valid.key] = valid_mm

        return self.manager.finalize(
            booster,
            config,
            info,
            key=key,
            training_metrics=train_mm,
            validation_metrics=valid_mm,
            cross_validation_metrics=cv_mm,
            cross_validation_models=cv_keys,
            metrics_by_frame=by_frame,
            history=orchestrator.history,
            metrics=self.metrics,
        )


def train_model(
    params: ParameterSet, train: Frame, valid: Optional[Frame] = None, **kwargs: Any
) -> Model:
    """Train a model, see :py:class:`ModelBuilder` for the keyword arguments."""
    return ModelBuilder(params, train, valid, **kwargs).train_model()
