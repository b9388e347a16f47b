"""Re-implementation of the engine's prediction arithmetic.

Predictions are accumulated in single precision, tree by tree in model order,
starting from the base margin, then passed through the objective's link function.
This mirrors the evaluation order of the native CPU predictor.

"""
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

_F32 = np.float32


class RegTree:
    """A single regression tree of the engine's JSON model."""

    def __init__(
        self,
        left: List[int],
        right: List[int],
        split_index: List[int],
        split_cond: List[float],
        default_left: List[bool],
    ) -> None:
        self.left = left
        self.right = right
        self.split_index = split_index
        # float32 values widened exactly to Python floats, comparisons against
        # float32 feature values keep single precision semantics.
        self.split_cond = [float(_F32(c)) for c in split_cond]
        self.default_left = default_left
        # leaf values are stored in the split conditions of leaf nodes.
        self.values = np.asarray(split_cond, dtype=_F32)

    @classmethod
    def from_json(cls, tree: Dict[str, Any]) -> "RegTree":
        split_type = tree.get("split_type")
        if split_type and any(int(t) != 0 for t in split_type):
            raise ValueError("Categorical splits are not supported by the portable scorer.")
        return cls(
            left=[int(v) for v in tree["left_children"]],
            right=[int(v) for v in tree["right_children"]],
            split_index=[int(v) for v in tree["split_indices"]],
            split_cond=[float(v) for v in tree["split_conditions"]],
            default_left=[bool(int(v)) for v in tree["default_left"]],
        )

    @property
    def num_nodes(self) -> int:
        return len(self.left)

    def leaf_index(self, feats: Sequence[float]) -> int:
        """Walk the tree, ``NaN`` features follow the default direction."""
        left, right = self.left, self.right
        split_index, split_cond = self.split_index, self.split_cond
        nid = 0
        while left[nid] != -1:
            fvalue = feats[split_index[nid]]
            if fvalue != fvalue:  # missing
                nid = left[nid] if self.default_left[nid] else right[nid]
            elif fvalue < split_cond[nid]:
                nid = left[nid]
            else:
                nid = right[nid]
        return nid

    def leaf_value(self, feats: Sequence[float]) -> np.float32:
        return self.values[self.leaf_index(feats)]


class GBTreePredictor:
    """Tree ensemble, optionally with the per-tree weights of a dart booster."""

    def __init__(
        self,
        trees: List[RegTree],
        tree_info: List[int],
        num_group: int,
        weight_drop: Optional[Sequence[float]] = None,
    ) -> None:
        self.trees = trees
        self.tree_info = tree_info
        self.num_group = num_group
        self.weight_drop = (
            np.asarray(weight_drop, dtype=_F32) if weight_drop is not None else None
        )

    @classmethod
    def from_json(
        cls, gbm: Dict[str, Any], num_group: int
    ) -> "GBTreePredictor":
        weight_drop = None
        if gbm["name"] == "dart":
            weight_drop = gbm.get("weight_drop", [])
            gbm = gbm["gbtree"]
        model = gbm["model"]
        trees = [RegTree.from_json(t) for t in model["trees"]]
        tree_info = [int(v) for v in model["tree_info"]]
        return cls(trees, tree_info, num_group, weight_drop)

    def predict_margin(
        self, feats: Sequence[float], base_margin: np.ndarray
    ) -> np.ndarray:
        out = base_margin.astype(_F32, copy=True)
        weights = self.weight_drop
        for i, tree in enumerate(self.trees):
            leaf = tree.leaf_value(feats)
            if weights is not None:
                leaf = _F32(leaf * weights[i])
            out[self.tree_info[i]] += leaf
        return out


class GBLinearPredictor:
    """Linear booster: one weight per feature and output group plus a bias."""

    def __init__(self, weights: Sequence[float], num_feature: int, num_group: int) -> None:
        w = np.asarray(weights, dtype=_F32)
        self.coef = w[: num_feature * num_group].reshape(num_feature, num_group)
        self.bias = w[num_feature * num_group : (num_feature + 1) * num_group]
        self.num_feature = num_feature
        self.num_group = num_group

    @classmethod
    def from_json(
        cls, gbm: Dict[str, Any], num_feature: int, num_group: int
    ) -> "GBLinearPredictor":
        return cls(gbm["model"]["weights"], num_feature, num_group)

    def predict_margin(
        self, feats: Sequence[float], base_margin: np.ndarray
    ) -> np.ndarray:
        out = np.empty(self.num_group, dtype=_F32)
        present = [
            (i, _F32(v)) for i, v in enumerate(feats[: self.num_feature]) if v == v
        ]
        for gid in range(self.num_group):
            psum = _F32(self.bias[gid] + _F32(base_margin[gid]))
            for i, v in present:
                psum = _F32(psum + _F32(v * self.coef[i, gid]))
            out[gid] = psum
        return out


def _sigmoid(margin: np.ndarray) -> np.ndarray:
    out = np.empty_like(margin)
    for i, m in enumerate(margin):
        x = min(_F32(-m), _F32(88.7))
        out[i] = _F32(1.0) / (_F32(np.exp(x)) + _F32(1.0))
    return out


def _softmax(margin: np.ndarray) -> np.ndarray:
    wmax = margin.max()
    expd = np.empty_like(margin)
    wsum = _F32(0.0)
    for i, m in enumerate(margin):
        expd[i] = _F32(np.exp(_F32(m - wmax)))
        wsum = _F32(wsum + expd[i])
    return expd / wsum


def _exp(margin: np.ndarray) -> np.ndarray:
    return np.exp(margin.astype(_F32))


def _identity(margin: np.ndarray) -> np.ndarray:
    return margin


def _logit(base_score: float) -> float:
    return float(-np.log(_F32(1.0) / _F32(base_score) - _F32(1.0)))


def _log(base_score: float) -> float:
    return float(_F32(math.log(base_score)))


def _same(base_score: float) -> float:
    return base_score


@dataclass(frozen=True)
class Objective:
    """Link function of an engine objective."""

    name: str
    pred_transform: Callable[[np.ndarray], np.ndarray]
    prob_to_margin: Callable[[float], float]


_OBJECTIVES: Dict[str, Objective] = {
    o.name: o
    for o in (
        Objective("binary:logistic", _sigmoid, _logit),
        Objective("reg:logistic", _sigmoid, _logit),
        Objective("multi:softprob", _softmax, _same),
        Objective("reg:squarederror", _identity, _same),
        Objective("reg:linear", _identity, _same),
        Objective("count:poisson", _exp, _log),
        Objective("reg:gamma", _exp, _log),
        Objective("reg:tweedie", _exp, _log),
    )
}


def get_objective(name: str) -> Objective:
    try:
        return _OBJECTIVES[name]
    except KeyError as e:
        raise ValueError(f"Objective `{name}` is not supported by the portable scorer.") from e


def parse_base_score(value: Any) -> List[float]:
    """Base score of the JSON model, either a scalar like ``5E-1`` or a vector
    like ``[5E-1,5E-1]``."""
    if isinstance(value, (int, float)):
        return [float(value)]
    text = str(value).strip().strip("[]")
    return [float(v) for v in text.split(",") if v.strip()]
