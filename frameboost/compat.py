# pylint: disable=invalid-name,unused-import
"""For compatibility and optional dependencies."""
import functools
import importlib.util
import types
from typing import TYPE_CHECKING, Sequence, TypeGuard, cast

import numpy as np
import scipy.sparse as scipy_sparse

from ._typing import _T, DataType

if TYPE_CHECKING:
    import pandas as pd


# sklearn
try:
    from sklearn import metrics as skl_metrics

    SKLEARN_INSTALLED = True

except ImportError:
    SKLEARN_INSTALLED = False

    skl_metrics = None


@functools.cache
def is_pandas_available() -> bool:
    """Check the pandas package is available or not."""
    if importlib.util.find_spec("pandas") is None:
        return False
    return True


@functools.cache
def import_pandas() -> types.ModuleType:
    """Import pandas with memory cache."""
    import pandas as pd

    return pd


def import_sklearn_metrics() -> types.ModuleType:
    """Return :py:mod:`sklearn.metrics`, raising a helpful error without sklearn."""
    if not SKLEARN_INSTALLED:
        raise ImportError(
            "`scikit-learn` is required for the default metrics provider, pass a "
            "custom `metrics` callable instead."
        )
    return skl_metrics


def is_pandas_df(data: DataType) -> TypeGuard["pd.DataFrame"]:
    """Whether the input is a :py:class:`pandas.DataFrame`, subclasses included."""
    if not is_pandas_available():
        return False
    return isinstance(data, import_pandas().DataFrame)


def concat(value: Sequence[_T]) -> _T:
    """Concatenate row-wise."""
    if isinstance(value[0], np.ndarray):
        value_arr = cast(Sequence[np.ndarray], value)
        return np.concatenate(value_arr, axis=0)
    if isinstance(value[0], scipy_sparse.csr_matrix):
        return scipy_sparse.vstack(value, format="csr")
    if isinstance(value[0], scipy_sparse.spmatrix):
        # other sparse format will be converted to CSR.
        return scipy_sparse.vstack(value, format="csr")
    raise TypeError(f"Unknown type: {type(value[0])}")
