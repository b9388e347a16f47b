"""Shared typing definition."""
import os
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Sequence,
    Tuple,
    TypeAlias,
    TypeVar,
    Union,
)

import numpy as np

DataType = Any

Domain = Tuple[str, ...]
BoosterParam = Dict[str, Any]

if TYPE_CHECKING:
    PathLike = Union[str, os.PathLike[str]]
else:
    PathLike = Union[str, os.PathLike]

RowIndex = Union[Sequence[int], np.ndarray]
RowRange = Tuple[int, int]

# Evaluation history: {"data_name": {"metric_name": [0.5, ...]}}
_ScoreList = List[float]
EvalsLog: TypeAlias = Dict[str, Dict[str, _ScoreList]]

ArtifactIn = Union[PathLike, bytes, bytearray]

# template parameter
_T = TypeVar("_T")
_F = TypeVar("_F", bound=Callable[..., Any])
