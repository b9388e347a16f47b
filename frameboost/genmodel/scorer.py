"""Row-wise scoring of model artifacts."""
from typing import Any, List, Mapping, Optional, Sequence

import numpy as np

from .predictor import (
    GBLinearPredictor,
    GBTreePredictor,
    Objective,
    get_objective,
    parse_base_score,
)
from .reader import ModelArtifact


def _format_level(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class PortableModel:
    """Scores raw rows with an artifact, without the native engine.

    Rows are mappings from column name to value: a number for numeric columns and the
    level name for categorical ones.  ``None`` and ``NaN`` are missing, so are
    absent columns and levels unknown to the training domain.

    Parameters
    ----------
    artifact :
        A loaded artifact, see :py:func:`~frameboost.genmodel.reader.read_artifact`.
    """

    def __init__(self, artifact: ModelArtifact) -> None:
        self.artifact = artifact
        model = artifact.booster_model()
        learner = model["learner"]
        lparam = learner["learner_model_param"]
        self.num_feature = int(lparam["num_feature"])
        self.num_group = max(int(lparam.get("num_class", "0")), 1)
        self.objective: Objective = get_objective(learner["objective"]["name"])

        base = parse_base_score(lparam["base_score"])
        if len(base) == 1:
            base = base * self.num_group
        self.base_margin = np.array(
            [self.objective.prob_to_margin(b) for b in base], dtype=np.float32
        )

        gbm = learner["gradient_booster"]
        self.predictor: Any
        if gbm["name"] == "gblinear":
            self.predictor = GBLinearPredictor.from_json(
                gbm, self.num_feature, self.num_group
            )
        else:
            self.predictor = GBTreePredictor.from_json(gbm, self.num_group)

        self._levels = [
            {level: i for i, level in enumerate(c.domain)} if c.domain is not None else None
            for c in artifact.columns
        ]

    @property
    def sparse(self) -> bool:
        return self.artifact.sparse

    @property
    def width(self) -> int:
        return self.num_group

    def encode(self, row: Mapping[str, Any]) -> List[float]:
        """Encode one row into the feature vector seen by the trees.

        In a sparse model zeros are absent entries, hence missing.  A level name given
        for a numeric column raises :py:class:`ValueError`.
        """
        nan = float("nan")
        feats = [nan] * max(self.artifact.num_features, self.num_feature)
        sparse = self.artifact.sparse
        for col, levels in zip(self.artifact.columns, self._levels):
            value = row.get(col.name)
            if levels is None:
                if value is None:
                    continue
                if isinstance(value, str):
                    raise ValueError(
                        f"Column `{col.name}` was numeric during training, got the "
                        f"level `{value}`."
                    )
                fvalue = float(np.float32(value))
                if fvalue != fvalue or (sparse and fvalue == 0.0):
                    continue
                feats[col.offset] = fvalue
                continue
            code: Optional[int] = None
            if value is not None and value == value:
                level = value if isinstance(value, str) else _format_level(value)
                code = levels.get(level)
            if code is None:
                # all indicators of a missing level stay missing
                continue
            if not sparse:
                for j in range(col.width):
                    feats[col.offset + j] = 0.0
            feats[col.offset + code] = 1.0
        return feats

    def score0(self, feats: Sequence[float]) -> np.ndarray:
        """Predict from an encoded feature vector."""
        margin = self.predictor.predict_margin(feats, self.base_margin)
        return self.objective.pred_transform(margin).astype(np.float32)

    def predict_row(self, row: Mapping[str, Any]) -> np.ndarray:
        """Predictions of one row: the probability of the second level for binomial
        models, one probability per level for multinomial models and the response
        for regression."""
        return self.score0(self.encode(row))

    def predict(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        out = np.empty((len(rows), self.width), dtype=np.float32)
        for i, row in enumerate(rows):
            out[i] = self.predict_row(row)
        return out
