# pylint: disable=invalid-name
"""Core frameboost definitions: error taxonomy and the native engine guard."""
import functools
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

import xgboost
from xgboost.core import XGBoostError

from ._typing import _T


class FrameBoostError(Exception):
    """Base class of all errors raised by frameboost."""


@dataclass(frozen=True)
class ValidationMessage:
    """A single parameter or column-role complaint, rendered the way the platform
    reports builder errors."""

    field: str
    message: str
    level: str = "ERRR"

    def __str__(self) -> str:
        return f"{self.level} on field: {self.field}: {self.message}"


class _ValidationError(FrameBoostError, ValueError):
    """Error carrying one or more validation messages.

    Attributes
    ----------
    field :
        Name of the first offending parameter.
    value :
        Value of the first offending parameter.
    hint :
        Suggested remediation, if any.
    messages :
        Every message collected during validation.
    """

    _header = "Illegal argument(s)"

    def __init__(
        self,
        messages: Sequence[ValidationMessage],
        *,
        model_id: Optional[str] = None,
        field: Optional[str] = None,
        value: Any = None,
        hint: Optional[str] = None,
    ) -> None:
        if not messages:
            raise ValueError("At least one validation message is required.")
        self.messages: List[ValidationMessage] = list(messages)
        self.model_id = model_id
        self.field = field if field is not None else self.messages[0].field.lstrip("_")
        self.value = value
        self.hint = hint
        details = "".join(f"{m}\n" for m in self.messages)
        super().__init__(
            f"{self._header} for XGBoost model: {model_id}.  Details: {details}"
        )


class IncompatibleParameterError(_ValidationError):
    """Raised before training when the parameter set can not be resolved, e.g. a
    GPU-incompatible setting is requested on the GPU backend."""


class InvalidColumnRoleError(_ValidationError):
    """Raised by the matrix builder when column roles (response, weights, ignored
    columns) are inconsistent with the frame."""

    _header = "Illegal column role(s)"


class TrainingEngineError(FrameBoostError, RuntimeError):
    """Fatal failure inside the native engine.  Never retried."""


class ParityViolationError(FrameBoostError, AssertionError):
    """The native scorer and the portable scorer disagree beyond tolerance."""

    def __init__(self, msg: str, report: Any = None) -> None:
        super().__init__(msg)
        self.report = report


class FrameMutationInvariantError(FrameBoostError, RuntimeError):
    """Training modified its input frame.  Indicates an internal bug."""

    def __init__(self, msg: str, differences: Sequence[str] = ()) -> None:
        super().__init__(msg)
        self.differences = list(differences)


def _py_version() -> str:
    """Get the frameboost version from the version file."""
    VERSION_FILE = os.path.join(os.path.dirname(__file__), "VERSION")
    with open(VERSION_FILE, encoding="ascii") as f:
        return f.read().strip()


def _engine_version() -> str:
    return xgboost.__version__


@functools.cache
def engine_build_info() -> dict:
    """Build information of the native engine."""
    return xgboost.build_info()


def gpu_available() -> bool:
    """Whether the native engine is compiled with CUDA support."""
    return bool(engine_build_info().get("USE_CUDA", False))


@contextmanager
def engine_errors(action: str) -> Iterator[None]:
    """Translate native engine failures raised inside the block into
    :py:class:`TrainingEngineError`."""
    try:
        yield
    except XGBoostError as e:
        raise TrainingEngineError(f"Native engine failed while {action}: {e}") from e


def _engine_call(action: str, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
    """Call into the native engine, see :py:func:`engine_errors`."""
    with engine_errors(action):
        return fn(*args, **kwargs)


def _parse_eval_str(result: str) -> List[Tuple[str, float]]:
    """Parse an eval result string from the booster."""
    splited = result.split()[1:]
    # split up `valid-logloss:0.1234`
    metric_score_str = [tuple(s.split(":")) for s in splited]
    # convert to float
    metric_score = [(n, float(s)) for n, s in metric_score_str]
    return metric_score
