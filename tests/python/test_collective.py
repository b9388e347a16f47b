from typing import List

import pytest
import xgboost
from xgboost.tracker import RabitTracker

import frameboost as fb
from frameboost import collective
from frameboost import testing as tm
from frameboost.callback import TrainingCallback

pytestmark = pytest.mark.skipif(**tm.no_sklearn())


class RecordDepth(TrainingCallback):
    def __init__(self) -> None:
        super().__init__()
        self.depths: List[int] = []
        self.native: List[bool] = []
        self.world: List[int] = []

    def after_iteration(self, model, epoch, evals_log) -> bool:
        self.depths.append(collective.active_depth())
        self.native.append(collective.is_native_initialized())
        self.world.append(collective.get_world_size())
        return False


def test_nesting() -> None:
    assert collective.active_depth() == 0
    with collective.CommunicatorContext():
        assert collective.active_depth() == 1
        with collective.CommunicatorContext() as args:
            assert args == {}
            assert collective.active_depth() == 2
        assert collective.active_depth() == 1
    assert collective.active_depth() == 0
    assert not collective.is_native_initialized()


def test_restored_on_error() -> None:
    with pytest.raises(RuntimeError):
        with collective.CommunicatorContext():
            with collective.CommunicatorContext():
                raise RuntimeError("boom")
    assert collective.active_depth() == 0


def test_single_process() -> None:
    assert collective.get_rank() == 0
    assert collective.get_world_size() == 1
    with collective.CommunicatorContext(dmlc_tracker_uri=None):
        assert not collective.is_native_initialized()
        assert collective.get_rank() == 0


def test_training_is_bracketed() -> None:
    record = RecordDepth()
    fb.train_model(
        fb.ParameterSet(response_column="AGE", ntrees=3),
        tm.get_prostate(n_samples=60),
        manager=fb.ModelArtifactManager(),
        callbacks=[record],
    )
    # the builder opens the outer context, the orchestrator nests inside it
    assert record.depths == [2, 2, 2]
    assert record.native == [False] * 3
    assert collective.active_depth() == 0


def test_failed_training_is_bracketed() -> None:
    manager = fb.ModelArtifactManager()
    with pytest.raises(fb.InvalidColumnRoleError):
        fb.train_model(
            fb.ParameterSet(response_column="nope"),
            tm.get_prostate(n_samples=60),
            manager=manager,
        )
    assert collective.active_depth() == 0
    assert len(manager) == 0


def test_tracker() -> None:
    tracker = RabitTracker(host_ip="127.0.0.1", n_workers=1)
    tracker.start()
    record = RecordDepth()
    model = fb.train_model(
        fb.ParameterSet(response_column="AGE", ntrees=2),
        tm.get_prostate(n_samples=60),
        manager=fb.ModelArtifactManager(),
        callbacks=[record],
        communicator_args=tracker.worker_args(),
    )
    assert record.native == [True, True]
    assert record.world == [1, 1]
    assert not collective.is_native_initialized()
    assert collective.active_depth() == 0
    assert model.output.ntrees == 2


@pytest.fixture
def engine_depths(monkeypatch: pytest.MonkeyPatch) -> List[int]:
    """Context depth observed by every native matrix construction, prediction and
    boosting round."""
    depths: List[int] = []
    dmatrix = xgboost.DMatrix
    predict = xgboost.Booster.predict
    update = xgboost.Booster.update

    def record_dmatrix(*args, **kwargs):
        depths.append(collective.active_depth())
        return dmatrix(*args, **kwargs)

    def record_predict(self, *args, **kwargs):
        depths.append(collective.active_depth())
        return predict(self, *args, **kwargs)

    def record_update(self, *args, **kwargs):
        depths.append(collective.active_depth())
        return update(self, *args, **kwargs)

    monkeypatch.setattr(xgboost, "DMatrix", record_dmatrix)
    monkeypatch.setattr(xgboost.Booster, "predict", record_predict)
    monkeypatch.setattr(xgboost.Booster, "update", record_update)
    return depths


def test_standalone_build_is_bracketed(engine_depths: List[int]) -> None:
    frame = tm.get_prostate(n_samples=60)
    config = fb.resolve(fb.ParameterSet(response_column="AGE", ignored_columns=["ID"]))
    matrix = fb.build(frame, None, config)
    assert matrix.num_row() == 60
    assert engine_depths == [1]

    builder = fb.MatrixBuilder(config)
    builder.build(frame, info=builder.prepare(frame))
    assert engine_depths == [1, 1]
    assert collective.active_depth() == 0


def test_scoring_is_bracketed(engine_depths: List[int]) -> None:
    frame = tm.get_prostate(n_samples=60)
    model = fb.train_model(
        fb.ParameterSet(response_column="AGE", ignored_columns=["ID"], ntrees=2),
        frame,
        manager=fb.ModelArtifactManager(),
    )
    engine_depths.clear()
    model.predict(frame)
    model.score(frame)
    assert fb.verify_parity(model, frame)
    assert engine_depths
    assert all(d >= 1 for d in engine_depths)
    assert collective.active_depth() == 0


def test_orchestrator_is_bracketed(engine_depths: List[int]) -> None:
    frame = tm.get_prostate(n_samples=60)
    config = fb.resolve(
        fb.ParameterSet(response_column="AGE", ignored_columns=["ID"], ntrees=2)
    )
    builder = fb.MatrixBuilder(config)
    info = builder.prepare(frame)
    dtrain = builder.build(frame, info=info)
    record = RecordDepth()
    orchestrator = fb.TrainingOrchestrator(
        config, info, callbacks=[record], verbose_eval=False
    )
    engine_depths.clear()
    booster = orchestrator.train(dtrain)
    assert record.depths == [1, 1]
    orchestrator.update(booster, dtrain, 2)
    orchestrator.predict(dtrain)
    assert engine_depths == [1, 1, 1, 1]
    assert collective.active_depth() == 0
