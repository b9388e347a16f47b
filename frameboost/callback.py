"""Callbacks invoked by the training orchestrator around every boosting round."""

import collections
import logging
import os
from abc import ABC
from typing import Callable, List, Optional, Sequence, Tuple, TypeAlias, cast

import xgboost

from . import collective
from ._typing import EvalsLog, _ScoreList
from .core import _parse_eval_str, engine_errors

__all__ = [
    "TrainingCallback",
    "EvaluationMonitor",
    "TrainingCheckPoint",
    "CallbackContainer",
]

LOGGER = logging.getLogger("[frameboost.training]")

_Evals = List[Tuple[xgboost.DMatrix, str]]


# pylint: disable=unused-argument
class TrainingCallback(ABC):
    """Interface for training callback."""

    # pylint: disable=invalid-name
    EvalsLog: TypeAlias = EvalsLog

    def __init__(self) -> None:
        pass

    def before_training(self, model: xgboost.Booster) -> xgboost.Booster:
        """Run before training starts."""
        return model

    def after_training(self, model: xgboost.Booster) -> xgboost.Booster:
        """Run after training is finished."""
        return model

    def before_iteration(
        self, model: xgboost.Booster, epoch: int, evals_log: EvalsLog
    ) -> bool:
        """Run before each iteration.  Returns True when training should stop."""
        return False

    def after_iteration(
        self, model: xgboost.Booster, epoch: int, evals_log: EvalsLog
    ) -> bool:
        """Run after each iteration.  Returns `True` when training should stop.

        Parameters
        ----------

        model :
            The booster being trained.
        epoch :
            The current training iteration.
        evals_log :
            A dictionary containing the evaluation history:

            .. code-block:: python

                {"data_name": {"metric_name": [0.5, ...]}}

        """
        return False


class CallbackContainer:
    """A special internal callback for invoking a list of other callbacks.  It also
    evaluates the booster on the watch matrices after every round and keeps the
    history."""

    def __init__(self, callbacks: Sequence[TrainingCallback]) -> None:
        self.callbacks = list(dict.fromkeys(callbacks))
        for cb in callbacks:
            if not isinstance(cb, TrainingCallback):
                raise TypeError("callback must be an instance of `TrainingCallback`.")
        self.history: EvalsLog = collections.OrderedDict()

    def before_training(self, model: xgboost.Booster) -> xgboost.Booster:
        """Function called before training."""
        for c in self.callbacks:
            model = c.before_training(model=model)
            assert isinstance(model, xgboost.Booster), (
                "before_training should return the model"
            )
        return model

    def after_training(self, model: xgboost.Booster) -> xgboost.Booster:
        """Function called after training."""
        for c in self.callbacks:
            model = c.after_training(model=model)
            assert isinstance(model, xgboost.Booster), (
                "after_training should return the model"
            )
        return model

    def before_iteration(self, model: xgboost.Booster, epoch: int) -> bool:
        """Function called before training iteration."""
        return any(
            c.before_iteration(model, epoch, self.history) for c in self.callbacks
        )

    def _update_history(self, score: List[Tuple[str, float]]) -> None:
        for name, s in score:
            splited_names = name.split("-")
            data_name = splited_names[0]
            metric_name = "-".join(splited_names[1:])
            if data_name not in self.history:
                self.history[data_name] = collections.OrderedDict()
            data_history = self.history[data_name]
            if metric_name not in data_history:
                data_history[metric_name] = cast(_ScoreList, [])
            data_history[metric_name].append(s)

    def after_iteration(
        self, model: xgboost.Booster, epoch: int, evals: Optional[_Evals]
    ) -> bool:
        """Function called after training iteration."""
        evals = [] if evals is None else evals
        for _, name in evals:
            assert name.find("-") == -1, "Dataset name should not contain `-`"
        if evals:
            with engine_errors(f"evaluating round {epoch}"):
                score: str = model.eval_set(evals, epoch)
            self._update_history(_parse_eval_str(score))
        return any(c.after_iteration(model, epoch, self.history) for c in self.callbacks)


class EvaluationMonitor(TrainingCallback):
    """Log the evaluation result at each iteration.

    Parameters
    ----------

    rank :
        Which worker should be used for logging the result.
    period :
        How many epoches between logging.
    logger :
        A callable used for logging evaluation result, ``LOGGER.info`` by default.

    """

    def __init__(
        self,
        rank: int = 0,
        period: int = 1,
        logger: Optional[Callable[[str], None]] = None,
    ):
        self.printer_rank = rank
        self.period = period
        self._logger = logger if logger is not None else LOGGER.info
        assert period > 0
        # last message, logged after training when skipped by the period.
        self._latest: Optional[str] = None
        super().__init__()

    @staticmethod
    def _fmt_metric(data: str, metric: str, score: float) -> str:
        return f"\t{data + '-' + metric}:{score:.5f}"

    def after_iteration(
        self, model: xgboost.Booster, epoch: int, evals_log: EvalsLog
    ) -> bool:
        if not evals_log:
            return False

        msg: str = f"[{epoch}]"
        if collective.get_rank() == self.printer_rank:
            for data, metric in evals_log.items():
                for metric_name, log in metric.items():
                    msg += self._fmt_metric(data, metric_name, log[-1])

            if (epoch % self.period) == 0 or self.period == 1:
                self._logger(msg)
                self._latest = None
            else:
                # There is skipped message
                self._latest = msg
        return False

    def after_training(self, model: xgboost.Booster) -> xgboost.Booster:
        if collective.get_rank() == self.printer_rank and self._latest is not None:
            self._logger(self._latest)
        return model


class TrainingCheckPoint(TrainingCallback):
    """Save the booster in the engine's JSON format every ``interval`` rounds, the
    file can be loaded back as a checkpoint.

    Parameters
    ----------

    directory :
        Output model directory.
    name :
        Pattern of output model file.  Models will be saved as name_0.json,
        name_1.json, name_2.json ....
    interval :
        Interval of checkpointing.

    """

    default_format = "json"

    def __init__(
        self,
        directory: "os.PathLike[str] | str",
        name: str = "model",
        interval: int = 100,
    ) -> None:
        self._path = os.fspath(directory)
        self._name = name
        self._iterations = interval
        self._epoch = 0
        self.saved: List[str] = []
        super().__init__()

    def after_iteration(
        self, model: xgboost.Booster, epoch: int, evals_log: EvalsLog
    ) -> bool:
        if self._epoch == self._iterations:
            path = os.path.join(
                self._path, f"{self._name}_{epoch}.{self.default_format}"
            )
            self._epoch = 0
            if collective.get_rank() == 0:
                os.makedirs(self._path, exist_ok=True)
                with engine_errors("saving a checkpoint"):
                    model.save_model(path)
                self.saved.append(path)
        self._epoch += 1
        return False
