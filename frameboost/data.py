# pylint: disable=too-many-arguments, too-many-locals
"""Construction of native engine matrices from frames.

The builder validates column roles, decides between a dense and a compressed sparse
representation, one-hot encodes categorical columns in domain order and hands the
result to :py:class:`xgboost.DMatrix`.  Missing values are never imputed: they are
``NaN`` in the dense layout and absent entries in the sparse one.

"""
import logging
import os
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse
import xgboost

from ._typing import Domain, RowIndex, RowRange
from .collective import communicator_bracket
from .compat import concat
from .config import get_config
from .core import InvalidColumnRoleError, ValidationMessage, _engine_call
from .frame import Frame, Vec, _format_level
from .params import DMatrixType, ResolvedConfig, Task

LOGGER = logging.getLogger("[frameboost.data]")

# A matrix whose share of set cells after one-hot encoding is below this ratio is
# built as CSR.
SPARSE_FILL_RATIO = 0.25


@dataclass(frozen=True)
class FeatureSpec:
    """One frame column and its slice of the encoded feature space."""

    name: str
    offset: int
    domain: Optional[Domain] = None

    @property
    def is_categorical(self) -> bool:
        return self.domain is not None

    @property
    def width(self) -> int:
        return len(self.domain) if self.domain is not None else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "offset": self.offset,
            "domain": list(self.domain) if self.domain is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureSpec":
        domain = data.get("domain")
        return cls(
            name=data["name"],
            offset=int(data["offset"]),
            domain=tuple(domain) if domain is not None else None,
        )


@dataclass(frozen=True)
class FeatureLayout:
    """Mapping from frame columns to encoded feature indices.

    Numeric columns occupy one feature, a categorical column with ``K`` levels occupies
    ``K`` consecutive features ordered as its domain.
    """

    features: Tuple[FeatureSpec, ...]

    @classmethod
    def from_columns(cls, columns: Sequence[Tuple[str, Optional[Domain]]]) -> "FeatureLayout":
        specs, offset = [], 0
        for name, domain in columns:
            spec = FeatureSpec(name, offset, domain)
            specs.append(spec)
            offset += spec.width
        return cls(tuple(specs))

    @property
    def num_features(self) -> int:
        if not self.features:
            return 0
        last = self.features[-1]
        return last.offset + last.width

    @property
    def column_names(self) -> List[str]:
        return [f.name for f in self.features]

    @property
    def feature_names(self) -> List[str]:
        """Names of the encoded features, ``column.level`` for one-hot features."""
        out: List[str] = []
        for f in self.features:
            if f.domain is None:
                out.append(f.name)
            else:
                out.extend(f"{f.name}.{level}" for level in f.domain)
        return out

    def __iter__(self) -> Iterator[FeatureSpec]:
        return iter(self.features)

    def __len__(self) -> int:
        return len(self.features)

    def to_dict(self) -> Dict[str, Any]:
        return {"features": [f.to_dict() for f in self.features]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureLayout":
        return cls(tuple(FeatureSpec.from_dict(f) for f in data["features"]))


@dataclass(frozen=True)
class DataInfo:
    """Column roles of a training invocation together with the encoding decisions
    taken for it.  Shared by every matrix of the invocation and stored in the model."""

    response: str
    task: Task
    layout: FeatureLayout
    sparse: bool
    response_domain: Optional[Domain] = None
    weights: Optional[str] = None
    ignored: Tuple[str, ...] = ()
    fill_ratio: float = 1.0

    @property
    def num_class(self) -> int:
        if self.task == Task.multinomial:
            assert self.response_domain is not None
            return len(self.response_domain)
        return 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response": self.response,
            "task": self.task.value,
            "layout": self.layout.to_dict(),
            "sparse": self.sparse,
            "response_domain": (
                list(self.response_domain) if self.response_domain is not None else None
            ),
            "weights": self.weights,
            "ignored": list(self.ignored),
            "fill_ratio": self.fill_ratio,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataInfo":
        domain = data.get("response_domain")
        return cls(
            response=data["response"],
            task=Task(data["task"]),
            layout=FeatureLayout.from_dict(data["layout"]),
            sparse=bool(data["sparse"]),
            response_domain=tuple(domain) if domain is not None else None,
            weights=data.get("weights"),
            ignored=tuple(data.get("ignored", ())),
            fill_ratio=float(data.get("fill_ratio", 1.0)),
        )


@dataclass
class NativeMatrix:
    """A :py:class:`xgboost.DMatrix` together with the encoding it was built with."""

    dmatrix: xgboost.DMatrix
    sparse: bool
    layout: FeatureLayout
    label: Optional[np.ndarray] = None
    weight: Optional[np.ndarray] = None
    rows: Optional[np.ndarray] = field(default=None, repr=False)

    def num_row(self) -> int:
        return self.dmatrix.num_row()

    def num_col(self) -> int:
        return self.dmatrix.num_col()

    def slice(self, rindex: RowIndex) -> "NativeMatrix":
        """Row subset of this matrix, indices are relative to the matrix."""
        rindex = np.asarray(rindex, dtype=np.int64)
        dmatrix = _engine_call("slicing a matrix", self.dmatrix.slice, rindex)
        return NativeMatrix(
            dmatrix=dmatrix,
            sparse=self.sparse,
            layout=self.layout,
            label=self.label[rindex] if self.label is not None else None,
            weight=self.weight[rindex] if self.weight is not None else None,
            rows=self.rows[rindex] if self.rows is not None else None,
        )


def partition_rows(nrows: int, chunk_rows: int) -> List[RowRange]:
    """Split ``[0, nrows)`` into contiguous ranges of at most ``chunk_rows`` rows.

    Every range can be encoded independently of the others.
    """
    if chunk_rows < 1:
        raise ValueError(f"chunk_rows must be positive, got {chunk_rows}")
    return [(s, min(s + chunk_rows, nrows)) for s in range(0, nrows, chunk_rows)]


def _count_set_cells(vec: Vec, domain: Optional[Domain]) -> int:
    data = vec.values
    if domain is None:
        return vec.nz_count()
    codes = data[~np.isnan(data)]
    return int(np.count_nonzero((codes >= 0) & (codes < len(domain))))


class _ColumnEncoder:
    """Encodes one frame column into its feature slice, mapping categorical levels
    onto the training domain by name.  Levels unknown to the training domain become
    missing."""

    def __init__(self, spec: FeatureSpec, vec: Optional[Vec]) -> None:
        self.spec = spec
        self.values: Optional[np.ndarray] = None
        if vec is None:
            return
        if spec.domain is None:
            if vec.is_categorical():
                raise InvalidColumnRoleError(
                    [
                        ValidationMessage(
                            f"_{spec.name}",
                            "Column was numeric during training but is categorical now.",
                        )
                    ]
                )
            self.values = vec.values
            return
        index = {level: i for i, level in enumerate(spec.domain)}
        data = vec.values
        mask = np.isnan(data)
        codes = np.full(data.shape[0], np.nan)
        if vec.is_categorical():
            assert vec.domain is not None
            if vec.domain == spec.domain:
                codes = data.copy()
                codes[(codes < 0) | (codes >= len(spec.domain))] = np.nan
            else:
                remap = np.array(
                    [index.get(level, np.nan) for level in vec.domain], dtype=np.float64
                )
                valid = ~mask & (data >= 0) & (data < len(vec.domain))
                codes[valid] = remap[data[valid].astype(np.int64)]
        else:
            for i in np.flatnonzero(~mask):
                codes[i] = index.get(_format_level(data[i]), np.nan)
        self.values = codes

    def dense(self, rindex: np.ndarray, out: np.ndarray) -> None:
        spec = self.spec
        if self.values is None:
            out[:, spec.offset : spec.offset + spec.width] = np.nan
            return
        data = self.values[rindex]
        if spec.domain is None:
            out[:, spec.offset] = data
            return
        block = np.zeros((rindex.shape[0], spec.width), dtype=out.dtype)
        missing = np.isnan(data)
        present = np.flatnonzero(~missing)
        block[present, data[present].astype(np.int64)] = 1.0
        block[missing, :] = np.nan
        out[:, spec.offset : spec.offset + spec.width] = block

    def sparse(self, rindex: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        spec = self.spec
        if self.values is None:
            empty = np.empty(0, dtype=np.int64)
            return empty, empty, np.empty(0, dtype=np.float32)
        data = self.values[rindex]
        keep = ~np.isnan(data)
        if spec.domain is None:
            keep &= data != 0
            rows = np.flatnonzero(keep)
            cols = np.full(rows.shape[0], spec.offset, dtype=np.int64)
            return rows, cols, data[keep].astype(np.float32)
        rows = np.flatnonzero(keep)
        cols = spec.offset + data[keep].astype(np.int64)
        return rows, cols, np.ones(rows.shape[0], dtype=np.float32)


def column_encoders(frame: Frame, layout: FeatureLayout) -> List[_ColumnEncoder]:
    """One encoder per layout column, mapping the whole column onto the training
    domain.  Shards of the same build share them."""
    return [
        _ColumnEncoder(spec, frame.vec(spec.name) if spec.name in frame else None)
        for spec in layout
    ]


def _assemble(
    encoders: Sequence[_ColumnEncoder], rindex: np.ndarray, width: int, sparse: bool
) -> Any:
    n = rindex.shape[0]
    if not sparse:
        out = np.empty((n, width), dtype=np.float32)
        for enc in encoders:
            enc.dense(rindex, out)
        return out
    parts = [enc.sparse(rindex) for enc in encoders]
    rows = np.concatenate([p[0] for p in parts]) if parts else np.empty(0, np.int64)
    cols = np.concatenate([p[1] for p in parts]) if parts else np.empty(0, np.int64)
    vals = np.concatenate([p[2] for p in parts]) if parts else np.empty(0, np.float32)
    return scipy.sparse.csr_matrix((vals, (rows, cols)), shape=(n, width), dtype=np.float32)


def encode(
    frame: Frame, layout: FeatureLayout, rindex: np.ndarray, sparse: bool
) -> Any:
    """Encode rows ``rindex`` of ``frame`` into a dense ``float32`` array or a CSR
    matrix following ``layout``."""
    return _assemble(column_encoders(frame, layout), rindex, layout.num_features, sparse)


class MatrixBuilder:
    """Builds :py:class:`NativeMatrix` objects for one resolved configuration.

    Parameters
    ----------
    config :
        Resolved model configuration.
    chunk_rows :
        Rows per encoding shard, the global ``chunk_rows`` setting when omitted.
    """

    def __init__(self, config: ResolvedConfig, chunk_rows: Optional[int] = None) -> None:
        self.config = config
        self.chunk_rows = chunk_rows if chunk_rows is not None else get_config()["chunk_rows"]

    # column roles
    def _check_roles(self, frame: Frame) -> List[ValidationMessage]:
        params = self.config.params
        response, weights = params.response_column, params.weights_column
        errors: List[ValidationMessage] = []
        if response is None:
            return [ValidationMessage("_response_column", "Response column must be set.")]
        if response not in frame:
            errors.append(
                ValidationMessage(
                    "_response_column", f"Response column `{response}` not found in frame."
                )
            )
        if response in params.ignored_columns:
            errors.append(
                ValidationMessage(
                    "_response_column",
                    f"Response column `{response}` is listed in ignored_columns.",
                )
            )
        for name in params.ignored_columns:
            if name not in frame:
                errors.append(
                    ValidationMessage(
                        "_ignored_columns", f"Ignored column `{name}` not found in frame."
                    )
                )
        if weights is not None:
            if weights == response:
                errors.append(
                    ValidationMessage(
                        "_weights_column",
                        "Weights column can not be the same as the response column.",
                    )
                )
            elif weights not in frame:
                errors.append(
                    ValidationMessage(
                        "_weights_column", f"Weights column `{weights}` not found in frame."
                    )
                )
            else:
                errors.extend(self._check_weights(frame.vec(weights)))
        if response in frame:
            errors.extend(self._check_response(frame.vec(response)))
        return errors

    @staticmethod
    def _check_weights(vec: Vec) -> List[ValidationMessage]:
        if vec.is_categorical():
            return [ValidationMessage("_weights_column", "Weights column must be numeric.")]
        data = vec.values
        if not np.isfinite(data).all():
            return [
                ValidationMessage(
                    "_weights_column", "Weights column must not contain missing values."
                )
            ]
        if (data < 0).any():
            return [
                ValidationMessage("_weights_column", "Weights column must be non-negative.")
            ]
        return []

    @staticmethod
    def _check_response(vec: Vec) -> List[ValidationMessage]:
        errors = []
        if vec.na_count() > 0:
            errors.append(
                ValidationMessage(
                    "_response_column",
                    f"Response column contains {vec.na_count()} missing values.",
                )
            )
        if vec.is_categorical():
            assert vec.domain is not None
            codes = vec.values[~np.isnan(vec.values)]
            bad = (codes < 0) | (codes >= len(vec.domain)) | (codes != np.floor(codes))
            if bad.any():
                errors.append(
                    ValidationMessage(
                        "_response_column",
                        f"Response column contains {int(bad.sum())} values outside its "
                        f"domain {list(vec.domain)}.",
                    )
                )
            if len(vec.domain) < 2:
                errors.append(
                    ValidationMessage(
                        "_response_column",
                        "Response must have at least two levels for classification.",
                    )
                )
        return errors

    def _select_features(self, frame: Frame) -> FeatureLayout:
        params = self.config.params
        skip = {params.response_column, params.weights_column, *params.ignored_columns}
        columns = []
        for name, vec in frame:
            if name in skip:
                continue
            if params.ignore_const_cols and vec.is_const():
                LOGGER.info("Dropping constant column `%s`.", name)
                continue
            columns.append((name, vec.domain))
        return FeatureLayout.from_columns(columns)

    def detect_sparse(self, frame: Frame, layout: FeatureLayout) -> Tuple[bool, float]:
        """Decide the representation of matrices built from ``frame``.

        Returns
        -------
        sparse :
            Whether to build CSR matrices.
        fill_ratio :
            Share of set cells in the encoded matrix.
        """
        total = frame.nrows * layout.num_features
        if total == 0:
            fill = 1.0
        else:
            cells = sum(_count_set_cells(frame.vec(f.name), f.domain) for f in layout)
            fill = cells / total
        dtype = self.config.dmatrix_type
        if dtype == DMatrixType.dense:
            return False, fill
        if dtype == DMatrixType.sparse:
            return True, fill
        return fill < SPARSE_FILL_RATIO, fill

    def prepare(self, frame: Frame) -> DataInfo:
        """Validate column roles of the training frame and take the encoding decisions.

        Raises
        ------
        InvalidColumnRoleError
            The response, weights or ignored columns are inconsistent with ``frame``.
        IncompatibleParameterError
            The distribution can not model the response.
        """
        params = self.config.params
        errors = self._check_roles(frame)
        layout = None
        if not errors:
            layout = self._select_features(frame)
            if layout.num_features == 0:
                errors.append(
                    ValidationMessage("_train", "There are no usable columns to train on.")
                )
        if errors:
            raise InvalidColumnRoleError(errors, model_id=params.model_id)
        assert layout is not None and params.response_column is not None

        response = frame.vec(params.response_column)
        if response.is_categorical():
            task = Task.binomial if response.cardinality() == 2 else Task.multinomial
        else:
            task = Task.regression
        self.config.distribution_for(task)

        sparse, fill = self.detect_sparse(frame, layout)
        LOGGER.info(
            "Using %s matrix representation, fill ratio: %.4f",
            "sparse" if sparse else "dense",
            fill,
        )
        return DataInfo(
            response=params.response_column,
            task=task,
            layout=layout,
            sparse=sparse,
            response_domain=response.domain,
            weights=params.weights_column,
            ignored=tuple(params.ignored_columns),
            fill_ratio=fill,
        )

    def _encode_sharded(self, frame: Frame, info: DataInfo, rindex: np.ndarray) -> Any:
        encoders = column_encoders(frame, info.layout)
        width = info.layout.num_features
        shards = partition_rows(rindex.shape[0], self.chunk_rows)
        if len(shards) <= 1:
            return _assemble(encoders, rindex, width, info.sparse)
        nthread = self.config.nthread
        workers = min(len(shards), nthread if nthread > 0 else (os.cpu_count() or 1))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            parts = list(
                executor.map(
                    lambda r: _assemble(encoders, rindex[r[0] : r[1]], width, info.sparse),
                    shards,
                )
            )
        return concat(parts)

    def _labels(self, frame: Frame, info: DataInfo, rindex: np.ndarray) -> np.ndarray:
        response = frame.vec(info.response)
        if info.response_domain is not None and response.domain != info.response_domain:
            values = _ColumnEncoder(
                FeatureSpec(info.response, 0, info.response_domain), response
            ).values
            assert values is not None
        else:
            values = response.values
        label = values[rindex]
        if np.isnan(label).any():
            raise InvalidColumnRoleError(
                [
                    ValidationMessage(
                        "_response_column",
                        f"Response column of frame {frame.key} contains "
                        f"{int(np.isnan(label).sum())} missing or unknown values.",
                    )
                ],
                model_id=self.config.model_id,
            )
        return label.astype(np.float32)

    @communicator_bracket
    def build(
        self,
        frame: Frame,
        rows: Optional[RowIndex] = None,
        info: Optional[DataInfo] = None,
        with_label: bool = True,
    ) -> NativeMatrix:
        """Build a native matrix from ``frame``.

        Parameters
        ----------
        frame :
            Source frame, read only.
        rows :
            Row subset, every row when omitted.
        info :
            Encoding decisions of the invocation, taken from ``frame`` when omitted.
        with_label :
            Attach labels and weights.  Frames without the response column always
            yield a matrix without labels.
        """
        if info is None:
            info = self.prepare(frame)
        if rows is None:
            rindex = np.arange(frame.nrows, dtype=np.int64)
        else:
            rindex = np.asarray(rows, dtype=np.int64)
        for spec in info.layout:
            if spec.name not in frame:
                warnings.warn(
                    f"Column `{spec.name}` used in training is missing, filling it with "
                    "missing values.",
                    UserWarning,
                )

        data = self._encode_sharded(frame, info, rindex)

        label = None
        weight = None
        if with_label and info.response in frame:
            label = self._labels(frame, info, rindex)
            if info.weights is not None and info.weights in frame:
                weight = frame.vec(info.weights).values[rindex].astype(np.float32)

        dmatrix = _engine_call(
            "building a native matrix",
            xgboost.DMatrix,
            data,
            label=label,
            weight=weight,
            missing=np.nan,
            nthread=self.config.nthread,
        )
        return NativeMatrix(
            dmatrix=dmatrix,
            sparse=info.sparse,
            layout=info.layout,
            label=label,
            weight=weight,
            rows=rindex,
        )


def build(frame: Frame, rows: Optional[RowIndex], config: ResolvedConfig) -> NativeMatrix:
    """Build a native matrix from ``frame``, see :py:meth:`MatrixBuilder.build`."""
    return MatrixBuilder(config).build(frame, rows)
