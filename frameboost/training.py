# pylint: disable=too-many-instance-attributes
"""Boosting driver: owns the booster while it is being trained."""
import logging
import threading
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
import xgboost

from ._typing import BoosterParam, EvalsLog
from .callback import CallbackContainer, EvaluationMonitor, TrainingCallback
from .collective import communicator_bracket
from .core import TrainingEngineError, engine_errors, gpu_available
from .data import DataInfo, NativeMatrix
from .params import Backend, ResolvedConfig

LOGGER = logging.getLogger("[frameboost.training]")

Watches = Sequence[Tuple[NativeMatrix, str]]


class TrainingState(Enum):
    """Life cycle of a :py:class:`TrainingOrchestrator`."""

    UNINITIALIZED = 0
    TRAINING = 1
    COMPLETE = 2


class TrainingOrchestrator:
    """Drive boosting rounds for one model.

    Every round calls the engine's single round update followed by an evaluation on
    each watch matrix.  Access to the booster is serialized, a prediction requested
    through :py:meth:`predict` waits for the running round.

    Parameters
    ----------
    config :
        Resolved configuration of the model.
    info :
        Encoding decisions shared by every matrix of this invocation.
    callbacks :
        Extra training callbacks.
    verbose_eval :
        Log the evaluation result every ``verbose_eval`` rounds, ``True`` means every
        round and ``False`` disables it.
    """

    def __init__(
        self,
        config: ResolvedConfig,
        info: DataInfo,
        callbacks: Optional[Sequence[TrainingCallback]] = None,
        verbose_eval: "bool | int" = True,
    ) -> None:
        self.config = config
        self.info = info
        self._callbacks: List[TrainingCallback] = list(callbacks or [])
        if verbose_eval:
            period = 1 if verbose_eval is True else int(verbose_eval)
            self._callbacks.append(EvaluationMonitor(period=period))
        self._lock = threading.RLock()
        self._state = TrainingState.UNINITIALIZED
        self._booster: Optional[xgboost.Booster] = None
        self.history: EvalsLog = {}

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def params(self) -> BoosterParam:
        """Engine parameters used for the booster."""
        return self.config.booster_params(self.info.task, self.info.num_class)

    def _check_backend(self) -> None:
        if self.config.backend == Backend.gpu and not gpu_available():
            raise TrainingEngineError(
                "GPU backend was requested but the native engine is built without CUDA "
                "support."
            )

    def _check_matrix(self, matrix: NativeMatrix) -> None:
        if matrix.layout != self.info.layout or matrix.sparse != self.info.sparse:
            raise ValueError(
                "All matrices of a training invocation must share the same encoding."
            )

    def _set_state(self, booster: xgboost.Booster) -> None:
        done = booster.num_boosted_rounds() >= self.config.num_boost_round
        self._state = TrainingState.COMPLETE if done else TrainingState.TRAINING

    def create_booster(
        self,
        dtrain: NativeMatrix,
        watches: Watches = (),
        xgb_model: Optional[xgboost.Booster] = None,
    ) -> xgboost.Booster:
        """Create a booster for ``dtrain``, continuing from a copy of ``xgb_model``
        when given."""
        self._check_backend()
        cache = [dtrain.dmatrix] + [m.dmatrix for m, _ in watches]
        with engine_errors("creating a booster"):
            return xgboost.Booster(self.params, cache, model_file=xgb_model)

    @communicator_bracket
    def train(
        self,
        dtrain: NativeMatrix,
        watches: Watches = (),
        num_boost_round: Optional[int] = None,
        xgb_model: Optional[xgboost.Booster] = None,
    ) -> xgboost.Booster:
        """Train a booster.

        Parameters
        ----------
        dtrain :
            Training matrix.
        watches :
            Named matrices evaluated after every round.
        num_boost_round :
            Total number of rounds of the returned booster, rounds already present
            in ``xgb_model`` count towards it.  Defaults to ``ntrees``.
        xgb_model :
            Booster to continue from, it is copied and left untouched.

        Raises
        ------
        TrainingEngineError
            The native engine failed.  Training is never retried.
        """
        rounds = self.config.num_boost_round if num_boost_round is None else num_boost_round
        for m in [dtrain] + [m for m, _ in watches]:
            self._check_matrix(m)
        evals = [(m.dmatrix, name) for m, name in watches]

        bst = self.create_booster(dtrain, watches, xgb_model)
        start = bst.num_boosted_rounds()
        container = CallbackContainer(self._callbacks)
        LOGGER.info(
            "Training %s from round %d to %d on %d rows (%s).",
            self.config.model_id,
            start,
            rounds,
            dtrain.num_row(),
            "sparse" if dtrain.sparse else "dense",
        )
        with self._lock:
            self._booster = bst
            self._state = TrainingState.TRAINING
        try:
            bst = container.before_training(bst)
            for i in range(start, rounds):
                if container.before_iteration(bst, i):
                    break
                with self._lock:
                    with engine_errors(f"boosting round {i}"):
                        bst.update(dtrain.dmatrix, iteration=i)
                if container.after_iteration(bst, i, evals):
                    break
            bst = container.after_training(bst)
        except BaseException:
            with self._lock:
                self._booster = None
                self._state = TrainingState.UNINITIALIZED
            raise
        self.history = container.history
        with self._lock:
            self._booster = bst
            self._set_state(bst)
        return bst

    @communicator_bracket
    def update(
        self, booster: xgboost.Booster, dtrain: NativeMatrix, iteration: int
    ) -> xgboost.Booster:
        """Boost exactly one more round.

        ``iteration`` must equal the number of rounds already in ``booster``, calling
        this for rounds ``0..N-1`` on a fresh booster is equivalent to a single
        :py:meth:`train` of ``N`` rounds.
        """
        self._check_matrix(dtrain)
        expected = booster.num_boosted_rounds()
        if iteration != expected:
            raise ValueError(
                f"Invalid round {iteration}, the booster holds {expected} rounds."
            )
        self._check_backend()
        with self._lock:
            self._booster = booster
            self._state = TrainingState.TRAINING
            with engine_errors(f"boosting round {iteration}"):
                booster.update(dtrain.dmatrix, iteration=iteration)
            self._set_state(booster)
        return booster

    @communicator_bracket
    def predict(self, matrix: NativeMatrix, output_margin: bool = False) -> np.ndarray:
        """Predict with the booster currently owned by the orchestrator."""
        with self._lock:
            if self._booster is None:
                raise ValueError("There is no booster to predict with.")
            with engine_errors("predicting"):
                return self._booster.predict(matrix.dmatrix, output_margin=output_margin)

    def release(self) -> xgboost.Booster:
        """Hand the booster over to the caller, the orchestrator no longer owns it."""
        with self._lock:
            if self._booster is None:
                raise ValueError("There is no booster to release.")
            bst, self._booster = self._booster, None
            return bst
