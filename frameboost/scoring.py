# pylint: disable=too-many-instance-attributes
"""Scorers and the parity check between them.

Every scorer implements :py:meth:`Scorer.score`.  The native scorer predicts with the
model's in-memory booster, the artifact-side scorers start from the serialized
artifact: :py:class:`ArtifactNativeScorer` loads it back into the engine while
:py:class:`PortableScorer` evaluates it with :py:mod:`frameboost.genmodel`.
:py:class:`ScoringParityChecker` requires both sides to agree element-wise.

"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import numpy as np
import xgboost

from ._typing import Domain
from .artifact import NativeModelReader
from .collective import communicator_bracket
from .core import (
    InvalidColumnRoleError,
    ParityViolationError,
    ValidationMessage,
    engine_errors,
)
from .data import DataInfo, MatrixBuilder, NativeMatrix
from .frame import Frame
from .genmodel import ArtifactColumn, PortableModel, read_artifact
from .params import BoosterType, Distribution, ScoringMode, Task

if TYPE_CHECKING:
    from .model import Model

LOGGER = logging.getLogger("[frameboost.scoring]")

DEFAULT_TOLERANCE = 1e-6
# Models whose portable evaluation order or transcendental functions differ from the
# engine's.
WIDENED_TOLERANCE = 1e-2
_WIDENED_BOOSTERS = (BoosterType.dart, BoosterType.gblinear)
_WIDENED_DISTRIBUTIONS = (Distribution.poisson, Distribution.gamma, Distribution.tweedie)


@dataclass(frozen=True)
class ScoringResult:
    """Per-row prediction vectors.

    ``values`` has shape ``(nrows, width)`` with width 1 for regression, 1 for
    binomial (probability of the second level) and K for K-class multinomial.
    """

    values: np.ndarray
    task: Task
    domain: Optional[Domain] = None

    @classmethod
    def from_engine(cls, raw: np.ndarray, info: DataInfo) -> "ScoringResult":
        """Wrap the output of :py:meth:`xgboost.Booster.predict`."""
        raw = np.asarray(raw, dtype=np.float32)
        values = raw.reshape(raw.shape[0], -1)
        return cls(values, info.task, info.response_domain)

    @property
    def nrows(self) -> int:
        return self.values.shape[0]

    @property
    def width(self) -> int:
        return self.values.shape[1]

    def __len__(self) -> int:
        return self.nrows

    def __getitem__(self, i: int) -> np.ndarray:
        return self.values[i]

    def labels(self, threshold: float = 0.5) -> np.ndarray:
        """Predicted level codes for classification."""
        if self.task == Task.binomial:
            return (self.values[:, 0] >= threshold).astype(np.int64)
        if self.task == Task.multinomial:
            return np.argmax(self.values, axis=1)
        raise TypeError("Labels are only defined for classification.")


class Scorer(ABC):
    """Common interface of the native and the portable scoring path."""

    name: str = "scorer"

    @abstractmethod
    def score(self, model: "Model", frame: Frame) -> ScoringResult:
        """Score every row of ``frame``."""


def _scoring_matrix(model: "Model", frame: Frame) -> NativeMatrix:
    return MatrixBuilder(model.config).build(
        frame, info=model.output.info, with_label=False
    )


class NativeScorer(Scorer):
    """Predicts with the in-memory booster of the model."""

    name = "native"

    @communicator_bracket
    def score(self, model: "Model", frame: Frame) -> ScoringResult:
        matrix = _scoring_matrix(model, frame)
        return ScoringResult.from_engine(model.predict_matrix(matrix), model.output.info)


class ArtifactNativeScorer(Scorer):
    """Serializes the model, loads the artifact back into the engine and predicts
    with the loaded booster."""

    name = "artifact-native"

    @communicator_bracket
    def score(self, model: "Model", frame: Frame) -> ScoringResult:
        reader = NativeModelReader(model.to_artifact())
        matrix = _scoring_matrix(model, frame)
        with engine_errors("predicting with an artifact"):
            raw = reader.booster.predict(matrix.dmatrix)
        return ScoringResult.from_engine(raw, model.output.info)


def _frame_rows(frame: Frame, names: List[str]) -> List[Dict[str, Any]]:
    columns: Dict[str, List[Any]] = {}
    for name in names:
        if name not in frame:
            continue
        vec = frame.vec(name)
        if vec.is_categorical():
            columns[name] = [vec.level(v) for v in vec.values]
        else:
            columns[name] = vec.values.tolist()
    return [{k: v[i] for k, v in columns.items()} for i in range(frame.nrows)]


def _check_numeric_columns(columns: Sequence[ArtifactColumn], frame: Frame) -> None:
    messages = [
        ValidationMessage(
            f"_{c.name}", "Column was numeric during training but is categorical now."
        )
        for c in columns
        if c.domain is None and c.name in frame and frame.vec(c.name).is_categorical()
    ]
    if messages:
        raise InvalidColumnRoleError(messages)


class PortableScorer(Scorer):
    """Scores the artifact row by row with :py:class:`~frameboost.genmodel.PortableModel`,
    never touching the native engine."""

    name = "portable"

    def score(self, model: "Model", frame: Frame) -> ScoringResult:
        portable = PortableModel(read_artifact(model.to_artifact()))
        _check_numeric_columns(portable.artifact.columns, frame)
        rows = _frame_rows(frame, [c.name for c in portable.artifact.columns])
        info = model.output.info
        return ScoringResult(portable.predict(rows), info.task, info.response_domain)


_CANDIDATES = {
    ScoringMode.native: ArtifactNativeScorer,
    ScoringMode.portable: PortableScorer,
}


def default_tolerance(model: "Model") -> float:
    """Documented parity tolerance of a model: ``1e-2`` for dart and gblinear boosters
    and for log-link distributions, ``1e-6`` otherwise."""
    config = model.config
    if config.booster in _WIDENED_BOOSTERS:
        return WIDENED_TOLERANCE
    if config.distribution_for(model.output.info.task) in _WIDENED_DISTRIBUTIONS:
        return WIDENED_TOLERANCE
    return DEFAULT_TOLERANCE


@dataclass(frozen=True)
class ParityReport:
    """Outcome of a parity comparison.  Truthy when the scorers agree.

    On disagreement ``row``, ``column``, ``expected`` (reference scorer) and ``actual``
    (candidate scorer) describe the first offending element in row-major order.
    """

    passed: bool
    tolerance: float
    reference: str
    candidate: str
    nrows: int
    width: int
    max_abs_diff: float
    row: Optional[int] = None
    column: Optional[int] = None
    expected: Optional[float] = None
    actual: Optional[float] = None

    def __bool__(self) -> bool:
        return self.passed

    def __str__(self) -> str:
        if self.passed:
            return (
                f"{self.reference} and {self.candidate} scorers agree on "
                f"{self.nrows}x{self.width} predictions within {self.tolerance}"
            )
        return (
            f"{self.reference} and {self.candidate} scorers disagree at row {self.row}, "
            f"column {self.column}: {self.expected} != {self.actual} "
            f"(tolerance {self.tolerance}, max abs diff {self.max_abs_diff})"
        )


class ScoringParityChecker:
    """Compare a reference scorer with a candidate scorer.

    Parameters
    ----------
    reference :
        Reference scorer, :py:class:`NativeScorer` by default.
    candidate :
        Candidate scorer.  When omitted it is selected per model from the
        ``scoring_mode`` of its resolved configuration.
    """

    def __init__(
        self, reference: Optional[Scorer] = None, candidate: Optional[Scorer] = None
    ) -> None:
        self.reference = reference if reference is not None else NativeScorer()
        self._candidate = candidate

    def candidate_for(self, model: "Model") -> Scorer:
        if self._candidate is not None:
            return self._candidate
        return _CANDIDATES[model.config.scoring_mode]()

    @staticmethod
    def tolerance_for(model: "Model", tolerance: Optional[float] = None) -> float:
        if tolerance is not None:
            return tolerance
        if model.config.parity_tolerance is not None:
            return model.config.parity_tolerance
        return default_tolerance(model)

    def compare(
        self, model: "Model", frame: Frame, tolerance: Optional[float] = None
    ) -> ParityReport:
        """Score ``frame`` with both scorers and compare every element."""
        tol = self.tolerance_for(model, tolerance)
        candidate = self.candidate_for(model)
        a = self.reference.score(model, frame).values.astype(np.float64)
        b = candidate.score(model, frame).values.astype(np.float64)
        if a.shape != b.shape:
            raise ParityViolationError(
                f"Scorers disagree on the output shape: {a.shape} != {b.shape}"
            )
        both_nan = np.isnan(a) & np.isnan(b)
        diff = np.where(both_nan, 0.0, np.abs(a - b))
        diff = np.where(np.isnan(diff), np.inf, diff)
        max_diff = float(diff.max()) if diff.size else 0.0
        common = {
            "tolerance": tol,
            "reference": self.reference.name,
            "candidate": candidate.name,
            "nrows": a.shape[0],
            "width": a.shape[1] if a.ndim > 1 else 1,
            "max_abs_diff": max_diff,
        }
        bad = np.argwhere(diff > tol)
        if bad.shape[0] == 0:
            return ParityReport(passed=True, **common)
        row, col = (int(v) for v in bad[0])
        report = ParityReport(
            passed=False,
            row=row,
            column=col,
            expected=float(a[row, col]),
            actual=float(b[row, col]),
            **common,
        )
        LOGGER.warning(str(report))
        return report

    def verify_parity(
        self, model: "Model", frame: Frame, tolerance: Optional[float] = None
    ) -> bool:
        """Whether both scorers agree on ``frame`` within ``tolerance``."""
        return bool(self.compare(model, frame, tolerance))

    def check(
        self, model: "Model", frame: Frame, tolerance: Optional[float] = None
    ) -> ParityReport:
        """Like :py:meth:`compare`, raising :py:class:`ParityViolationError` on
        disagreement."""
        report = self.compare(model, frame, tolerance)
        if not report:
            raise ParityViolationError(str(report), report)
        return report


def verify_parity(model: "Model", frame: Frame, tolerance: Optional[float] = None) -> bool:
    """Check that the native scorer and the scorer selected by the model's scoring
    mode agree on ``frame``."""
    return ScoringParityChecker().verify_parity(model, frame, tolerance)


@communicator_bracket
def predict_raw(booster: xgboost.Booster, matrix: NativeMatrix) -> np.ndarray:
    """Engine predictions for a matrix."""
    with engine_errors("predicting"):
        return booster.predict(matrix.dmatrix)
