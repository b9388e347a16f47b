# pylint: disable=too-many-public-methods
"""In-process columnar frame.

The frame stands in for the platform's distributed frame.  frameboost treats it as a
read-only collaborator: column buffers are non-writeable numpy arrays, and the
:py:class:`FrameMetadata` snapshot is used to prove that training never touched them.

Categorical columns store level codes as floats (``NaN`` for missing) together with a
domain, the ordered tuple of level names.
"""
import hashlib
import logging
import uuid
from typing import (
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np

from ._typing import DataType, Domain, RowIndex
from .compat import is_pandas_df
from .core import FrameMutationInvariantError

LOGGER = logging.getLogger("[frameboost.frame]")

T_NUM = "numeric"
T_CAT = "enum"


def _new_key(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _format_level(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class Vec:
    """A single column of a :py:class:`Frame`.

    Parameters
    ----------
    values :
        Numeric values, or level codes when ``domain`` is given.  ``NaN`` marks a
        missing value.
    domain :
        Ordered level names for a categorical column.
    key :
        Identity of the column, generated when omitted.
    """

    def __init__(
        self,
        values: Any,
        domain: Optional[Sequence[str]] = None,
        key: Optional[str] = None,
    ) -> None:
        data = np.array(values, dtype=np.float64, copy=True)
        if data.ndim != 1:
            raise ValueError("A Vec must be 1-dimensional.")
        data.flags.writeable = False
        self._data = data
        self._domain: Optional[Domain] = (
            tuple(str(level) for level in domain) if domain is not None else None
        )
        self._key = key if key is not None else _new_key("vec")

    @classmethod
    def from_levels(
        cls, levels: Sequence[Optional[str]], domain: Optional[Sequence[str]] = None
    ) -> "Vec":
        """Create a categorical column from level names, ``None`` is missing.  The
        domain defaults to the sorted set of observed levels."""
        if domain is None:
            domain = sorted({str(v) for v in levels if v is not None})
        index = {level: i for i, level in enumerate(domain)}
        codes = np.full(len(levels), np.nan)
        for i, v in enumerate(levels):
            if v is None:
                continue
            if str(v) not in index:
                raise ValueError(f"Level `{v}` is not part of the domain {domain}")
            codes[i] = index[str(v)]
        return cls(codes, domain=domain)

    @property
    def key(self) -> str:
        return self._key

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the column buffer."""
        return self._data

    @property
    def domain(self) -> Optional[Domain]:
        return self._domain

    @property
    def type(self) -> str:
        return T_CAT if self._domain is not None else T_NUM

    def is_categorical(self) -> bool:
        return self._domain is not None

    def is_numeric(self) -> bool:
        return self._domain is None

    def cardinality(self) -> int:
        return len(self._domain) if self._domain is not None else -1

    def __len__(self) -> int:
        return self._data.shape[0]

    def length(self) -> int:
        return len(self)

    def na_count(self) -> int:
        return int(np.isnan(self._data).sum())

    def nz_count(self) -> int:
        """Number of non-zero, non-missing entries."""
        data = self._data
        return int(np.count_nonzero(data[~np.isnan(data)]))

    def is_const(self) -> bool:
        """Whether the column carries no information: a single observed value without
        missing entries, or nothing but missing entries."""
        data = self._data
        mask = np.isnan(data)
        if mask.all():
            return True
        observed = data[~mask]
        return bool(observed.min() == observed.max() and not mask.any())

    def sigma(self) -> float:
        data = self._data[~np.isnan(self._data)]
        if data.size < 2:
            return 0.0
        return float(np.std(data, ddof=1))

    def checksum(self) -> int:
        """Content checksum of the column buffer."""
        digest = hashlib.blake2b(self._data.tobytes(), digest_size=8).digest()
        return int.from_bytes(digest, "little", signed=True)

    def level(self, code: float) -> Optional[str]:
        """Level name of a code, ``None`` for a missing value."""
        if self._domain is None:
            raise TypeError("Not a categorical column.")
        if np.isnan(code):
            return None
        return self._domain[int(code)]

    def to_categorical(self) -> "Vec":
        """Convert a numeric column into a categorical one.  The domain holds the
        sorted distinct values, rendered as strings."""
        if self.is_categorical():
            return Vec(self._data, domain=self._domain)
        data = self._data
        mask = np.isnan(data)
        uniques = np.unique(data[~mask])
        codes = np.full(data.shape[0], np.nan)
        codes[~mask] = np.searchsorted(uniques, data[~mask])
        return Vec(codes, domain=[_format_level(u) for u in uniques])

    def rows(self, index: RowIndex) -> "Vec":
        return Vec(self._data[np.asarray(index, dtype=np.int64)], domain=self._domain)

    def __repr__(self) -> str:
        return f"Vec(key={self._key!r}, type={self.type}, length={len(self)})"


ColumnRef = Union[int, str]


class Frame:
    """Ordered collection of named :py:class:`Vec` of equal length.

    Parameters
    ----------
    names :
        Column names, must be unique.
    vecs :
        Columns.
    key :
        Identity of the frame, generated when omitted.
    """

    def __init__(
        self, names: Sequence[str], vecs: Sequence[Vec], key: Optional[str] = None
    ) -> None:
        names = [str(n) for n in names]
        if len(names) != len(vecs):
            raise ValueError(
                f"Got {len(names)} names for {len(vecs)} columns."
            )
        if len(set(names)) != len(names):
            raise ValueError(f"Column names must be unique, got {names}")
        lengths = {len(v) for v in vecs}
        if len(lengths) > 1:
            raise ValueError(f"Columns must have the same length, got {sorted(lengths)}")
        self._names: List[str] = names
        self._vecs: List[Vec] = list(vecs)
        self._key = key if key is not None else _new_key("frame")

    # constructors
    @classmethod
    def from_dict(
        cls,
        columns: Mapping[str, Any],
        categorical: Sequence[str] = (),
        key: Optional[str] = None,
    ) -> "Frame":
        """Create a frame from a mapping of column name to values.

        Columns holding strings (``None`` is missing) and columns named in
        ``categorical`` become categorical columns, everything else is numeric.
        """
        names, vecs = [], []
        for name, values in columns.items():
            if isinstance(values, Vec):
                vec = values
            else:
                values = list(values) if not isinstance(values, np.ndarray) else values
                if any(isinstance(v, str) for v in values):
                    vec = Vec.from_levels(values)
                else:
                    vec = Vec(np.array(values, dtype=np.float64))
                    if name in categorical:
                        vec = vec.to_categorical()
            names.append(name)
            vecs.append(vec)
        return cls(names, vecs, key=key)

    @classmethod
    def from_numpy(
        cls,
        data: np.ndarray,
        names: Optional[Sequence[str]] = None,
        categorical: Sequence[str] = (),
    ) -> "Frame":
        """Create a numeric frame from a 2-dimensional array, named ``C1..Cn`` by
        default."""
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError("Please reshape the input data into 2-dimensional matrix.")
        if names is None:
            names = [f"C{i + 1}" for i in range(data.shape[1])]
        return cls.from_dict(
            {n: data[:, i] for i, n in enumerate(names)}, categorical=categorical
        )

    @classmethod
    def from_pandas(cls, df: DataType) -> "Frame":
        """Create a frame from a :py:class:`pandas.DataFrame`.  Object, string, bool
        and category columns become categorical."""
        if not is_pandas_df(df):
            raise TypeError(f"Expecting a pandas DataFrame, got {type(df)}")
        names, vecs = [], []
        for name in df.columns:
            series = df[name]
            kind = series.dtype.kind
            if str(series.dtype) == "category":
                domain = [str(c) for c in series.cat.categories]
                codes = series.cat.codes.to_numpy().astype(np.float64)
                codes[codes < 0] = np.nan
                vec = Vec(codes, domain=domain)
            elif kind in ("O", "U", "S", "b"):
                levels = [None if v is None or v != v else str(v) for v in series]
                vec = Vec.from_levels(levels)
            else:
                vec = Vec(series.to_numpy(dtype=np.float64, na_value=np.nan))
            names.append(str(name))
            vecs.append(vec)
        return cls(names, vecs)

    # accessors
    @property
    def key(self) -> str:
        return self._key

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._names)

    @property
    def vecs(self) -> Tuple[Vec, ...]:
        return tuple(self._vecs)

    @property
    def ncols(self) -> int:
        return len(self._vecs)

    @property
    def nrows(self) -> int:
        return len(self._vecs[0]) if self._vecs else 0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.nrows, self.ncols

    def find(self, name: str) -> int:
        """Index of a column, -1 if absent."""
        try:
            return self._names.index(name)
        except ValueError:
            return -1

    def _index(self, col: ColumnRef) -> int:
        if isinstance(col, str):
            idx = self.find(col)
            if idx < 0:
                raise KeyError(f"Column `{col}` not found in frame {self._key}")
            return idx
        if not 0 <= col < len(self._vecs):
            raise IndexError(f"Column index {col} is out of range.")
        return col

    def vec(self, col: ColumnRef) -> Vec:
        return self._vecs[self._index(col)]

    def __getitem__(self, col: ColumnRef) -> Vec:
        return self.vec(col)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __iter__(self) -> Iterator[Tuple[str, Vec]]:
        return iter(zip(self._names, self._vecs))

    def domains(self) -> List[Optional[Domain]]:
        return [v.domain for v in self._vecs]

    # structural edits, used while preparing data and never by training
    def replace(self, col: ColumnRef, vec: Vec) -> Vec:
        """Replace a column, returning the old one."""
        if len(vec) != self.nrows:
            raise ValueError("Replacement column has a different length.")
        idx = self._index(col)
        old = self._vecs[idx]
        self._vecs[idx] = vec
        return old

    def remove(self, col: ColumnRef) -> Vec:
        """Remove a column, returning it."""
        idx = self._index(col)
        self._names.pop(idx)
        return self._vecs.pop(idx)

    def add(self, name: str, vec: Vec) -> "Frame":
        if name in self._names:
            raise ValueError(f"Column `{name}` already exists.")
        if self._vecs and len(vec) != self.nrows:
            raise ValueError("New column has a different length.")
        self._names.append(name)
        self._vecs.append(vec)
        return self

    # row operations
    def rows(self, index: RowIndex) -> "Frame":
        """Extract a row subset as a new frame, domains are preserved."""
        index = np.asarray(index, dtype=np.int64)
        return Frame(self._names, [v.rows(index) for v in self._vecs])

    def split(self, ratios: Sequence[float], seed: int = 0) -> List["Frame"]:
        """Randomly split into ``len(ratios) + 1`` partitions when the ratios sum up to
        less than one, ``len(ratios)`` otherwise."""
        ratios = list(ratios)
        if any(r <= 0 for r in ratios) or sum(ratios) > 1.0 + 1e-12:
            raise ValueError(f"Invalid split ratios: {ratios}")
        if sum(ratios) < 1.0 - 1e-12:
            ratios.append(1.0 - sum(ratios))
        rng = np.random.RandomState(seed)
        perm = rng.permutation(self.nrows)
        bounds = np.round(np.cumsum(ratios) * self.nrows).astype(np.int64)
        bounds[-1] = self.nrows
        parts, start = [], 0
        for stop in bounds:
            parts.append(self.rows(np.sort(perm[start:stop])))
            start = stop
        return parts

    def fold_assignment(
        self, nfolds: int, seed: int = 0, kind: str = "random"
    ) -> np.ndarray:
        """Fold id of every row.

        ``random`` yields balanced folds in random order, ``modulo`` assigns row ``i``
        to fold ``i % nfolds``.
        """
        if nfolds < 2:
            raise ValueError(f"nfolds must be >= 2, got {nfolds}")
        if nfolds > self.nrows:
            raise ValueError(
                f"Cannot split {self.nrows} rows into {nfolds} folds."
            )
        folds = np.arange(self.nrows, dtype=np.int64) % nfolds
        if kind == "modulo":
            return folds
        if kind != "random":
            raise ValueError(f"Unknown fold assignment: {kind}")
        rng = np.random.RandomState(seed)
        assignment = np.empty(self.nrows, dtype=np.int64)
        assignment[rng.permutation(self.nrows)] = folds
        return assignment

    def __repr__(self) -> str:
        return f"Frame(key={self._key!r}, shape={self.shape}, names={self._names})"


class FrameMetadata:
    """Snapshot of column identities, names, checksums and domains of a frame."""

    def __init__(self, frame: Frame) -> None:
        self.frame_key = frame.key
        self.keys: List[str] = [v.key for v in frame.vecs]
        self.names: List[str] = list(frame.names)
        self.checksums: List[int] = [v.checksum() for v in frame.vecs]
        self.domains: List[Optional[Domain]] = [v.domain for v in frame.vecs]

    def diff(self, other: "FrameMetadata") -> List[str]:
        """Human readable list of differences between two snapshots."""
        out: List[str] = []
        if len(self.keys) != len(other.keys):
            out.append(
                f"Training frame vec count has changed from: {len(self.keys)} to: "
                f"{len(other.keys)}"
            )
        for i in range(min(len(self.keys), len(other.keys))):
            if self.keys[i] != other.keys[i]:
                out.append(
                    f"Training frame vec number {i} has changed keys.  Was: "
                    f"{self.keys[i]} , now: {other.keys[i]}"
                )
            if self.names[i] != other.names[i]:
                out.append(
                    f"Training frame vec number {i} has changed names.  Was: "
                    f"{self.names[i]} , now: {other.names[i]}"
                )
            if self.checksums[i] != other.checksums[i]:
                out.append(
                    f"Training frame vec number {i} has changed checksum.  Was: "
                    f"{self.checksums[i]} , now: {other.checksums[i]}"
                )
            if self.domains[i] != other.domains[i]:
                out.append(
                    f"Training frame vec number {i} has changed domain.  Was: "
                    f"{self.domains[i]} , now: {other.domains[i]}"
                )
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FrameMetadata):
            return NotImplemented
        differences = self.diff(other)
        for d in differences:
            LOGGER.warning(d)
        return not differences

    def __hash__(self) -> int:
        return hash((tuple(self.keys), tuple(self.names), tuple(self.checksums)))

    def check(self, frame: Frame) -> None:
        """Raise :py:class:`FrameMutationInvariantError` if ``frame`` no longer matches
        this snapshot."""
        differences = self.diff(FrameMetadata(frame))
        if differences:
            for d in differences:
                LOGGER.warning(d)
            raise FrameMutationInvariantError(
                f"Frame {frame.key} was modified during training: "
                + "; ".join(differences),
                differences,
            )


def frame_info(frame: Frame) -> Dict[str, Any]:
    """Column summary of a frame, used in log messages."""
    return {
        "key": frame.key,
        "rows": frame.nrows,
        "columns": {n: v.type for n, v in frame},
    }
