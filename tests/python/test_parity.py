from typing import Callable, List, Tuple

import numpy as np
import pytest

import frameboost as fb
from frameboost import testing as tm
from frameboost.core import ParityViolationError
from frameboost.scoring import DEFAULT_TOLERANCE, WIDENED_TOLERANCE, default_tolerance

pytestmark = pytest.mark.skipif(**tm.no_sklearn())

Dataset = Tuple[fb.Frame, str, List[str]]


def regression() -> Dataset:
    frame = tm.get_prostate()
    frame.replace("RACE", frame["RACE"].to_categorical())
    frame.replace("GLEASON", frame["GLEASON"].to_categorical())
    return frame, "DPROS", ["ID"]


def binomial() -> Dataset:
    frame = tm.get_weather()
    frame.replace("RainTomorrow", frame["RainTomorrow"].to_categorical())
    frame.remove("RISK_MM")
    return frame, "RainTomorrow", []


def multinomial() -> Dataset:
    return tm.get_iris(), "class", []


DATASETS = {
    "regression": regression,
    "binomial": binomial,
    "multinomial": multinomial,
}


def train(
    dataset: Callable[[], Dataset], **kwargs
) -> Tuple[fb.Model, fb.Frame, fb.Frame]:
    frame, response, ignored = dataset()
    train_frame, test_frame = frame.split([0.75], seed=3)
    kwargs.setdefault("ntrees", 5)
    kwargs.setdefault("max_depth", 4)
    params = fb.ParameterSet(
        response_column=response, ignored_columns=ignored, **kwargs
    )
    model = fb.train_model(params, train_frame, manager=fb.ModelArtifactManager())
    return model, train_frame, test_frame


class TestParity:
    @pytest.mark.parametrize("task", sorted(DATASETS))
    @pytest.mark.parametrize("dmatrix_type", ["dense", "sparse"])
    @pytest.mark.parametrize("scoring_mode", ["native", "portable"])
    def test_parity(self, task: str, dmatrix_type: str, scoring_mode: str) -> None:
        model, train_frame, test_frame = train(
            DATASETS[task], dmatrix_type=dmatrix_type, scoring_mode=scoring_mode
        )
        assert model.output.task == task
        assert default_tolerance(model) == DEFAULT_TOLERANCE
        checker = fb.ScoringParityChecker()
        for frame in (train_frame, test_frame):
            report = checker.check(model, frame)
            assert report.passed
            assert report.candidate == (
                "artifact-native" if scoring_mode == "native" else "portable"
            )
            assert report.nrows == frame.nrows

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"booster": "dart", "rate_drop": 0.3, "seed": 1},
            {"booster": "gblinear"},
            {"distribution": "poisson"},
            {"distribution": "gamma"},
            {"distribution": "tweedie", "tweedie_power": 1.3},
        ],
    )
    @pytest.mark.parametrize("dmatrix_type", ["dense", "sparse"])
    def test_widened(self, kwargs: dict, dmatrix_type: str) -> None:
        frame = tm.get_prostate()
        train_frame, test_frame = frame.split([0.75], seed=3)
        params = fb.ParameterSet(
            response_column="AGE",  # strictly positive for the log links
            ignored_columns=["ID"],
            ntrees=5,
            dmatrix_type=dmatrix_type,
            scoring_mode="portable",
            **kwargs,
        )
        model = fb.train_model(params, train_frame, manager=fb.ModelArtifactManager())
        assert default_tolerance(model) == WIDENED_TOLERANCE
        assert fb.verify_parity(model, test_frame)

    def test_unseen_levels_and_missing_columns(self) -> None:
        model, _, test_frame = train(binomial, scoring_mode="portable")
        levels = [
            "Maybe" if i % 7 == 0 else level
            for i, level in enumerate(
                test_frame["RainToday"].level(v) for v in test_frame["RainToday"].values
            )
        ]
        names = [n for n in test_frame.names if n not in ("RainToday", "Sunshine")]
        columns = {n: test_frame[n] for n in names}
        columns["RainToday"] = levels
        shifted = fb.Frame.from_dict(columns)
        assert shifted["RainToday"].domain == ("Maybe", "No", "Yes")
        with pytest.warns(UserWarning, match="Sunshine"):
            assert fb.verify_parity(model, shifted)

    def test_explicit_tolerance(self) -> None:
        model, _, test_frame = train(
            regression, scoring_mode="portable", parity_tolerance=1e-3
        )
        checker = fb.ScoringParityChecker()
        assert checker.tolerance_for(model) == 1e-3
        assert checker.tolerance_for(model, 0.5) == 0.5
        assert checker.compare(model, test_frame).tolerance == 1e-3


class ShiftedScorer(fb.Scorer):
    name = "shifted"

    def __init__(self, row: int, column: int) -> None:
        self.row = row
        self.column = column

    def score(self, model: fb.Model, frame: fb.Frame) -> fb.ScoringResult:
        result = fb.NativeScorer().score(model, frame)
        values = result.values.copy()
        values[self.row, self.column] += 0.5
        return fb.ScoringResult(values, result.task, result.domain)


class TestParityViolation:
    def test_first_offending_element(self) -> None:
        model, _, test_frame = train(multinomial)
        checker = fb.ScoringParityChecker(candidate=ShiftedScorer(3, 2))
        report = checker.compare(model, test_frame)
        assert not report
        assert (report.row, report.column) == (3, 2)
        assert report.actual == pytest.approx(report.expected + 0.5)
        assert report.max_abs_diff == pytest.approx(0.5)
        assert not checker.verify_parity(model, test_frame)

        with pytest.raises(ParityViolationError) as e:
            checker.check(model, test_frame)
        assert e.value.report == report
        assert "row 3, column 2" in str(e.value)

    def test_native_scorers_agree(self) -> None:
        model, train_frame, _ = train(binomial)
        expected = fb.NativeScorer().score(model, train_frame).values
        actual = fb.ArtifactNativeScorer().score(model, train_frame).values
        np.testing.assert_array_equal(expected, actual)
        portable = fb.PortableScorer().score(model, train_frame).values
        np.testing.assert_allclose(expected, portable, atol=DEFAULT_TOLERANCE)
