"""Bracketing of the native collective communicator.

Every training or pure-matrix operation runs inside a :py:class:`CommunicatorContext`.
Contexts nest: only the outermost one initializes the engine's communicator and only
the outermost one finalizes it, on every exit path.

"""

import logging
import threading
from functools import wraps
from typing import Any, Dict, Optional, Union, cast

from xgboost import collective as _native_collective

from ._typing import _F
from .core import engine_errors

LOGGER = logging.getLogger("[frameboost.collective]")


_ArgVals = Optional[Union[int, str]]
_Args = Dict[str, _ArgVals]

_lock = threading.Lock()
_depth = 0
_native_initialized = False


def active_depth() -> int:
    """Number of currently open communicator contexts in this process."""
    return _depth


def is_native_initialized() -> bool:
    """Whether the engine's collective communicator is currently initialized."""
    return _native_initialized


def _requires_native(args: _Args) -> bool:
    # Without a tracker or a federated server the engine runs as a single worker and
    # there is nothing to connect to.
    return any(
        args.get(k) is not None
        for k in ("dmlc_tracker_uri", "dmlc_communicator", "federated_server_address")
    )


class CommunicatorContext:
    """A context controlling collective communicator initialization and finalization.

    Parameters
    ----------
    args :
        Keyword arguments passed to :py:func:`xgboost.collective.init` when this is the
        outermost context, e.g. the ``worker_args()`` of a running tracker.  Empty for
        single-process training.

    """

    def __init__(self, **args: _ArgVals) -> None:
        self.args: _Args = {k: v for k, v in args.items() if v is not None}
        self._owner = False

    def __enter__(self) -> _Args:
        global _depth, _native_initialized  # pylint: disable=global-statement
        with _lock:
            if _depth == 0 and _requires_native(self.args):
                with engine_errors("initializing the collective communicator"):
                    _native_collective.init(**self.args)
                _native_initialized = True
                self._owner = True
                LOGGER.debug("-------------- communicator say hello ------------------")
            _depth += 1
        return self.args

    def __exit__(self, *args: Any) -> None:
        global _depth, _native_initialized  # pylint: disable=global-statement
        with _lock:
            _depth -= 1
            if self._owner:
                self._owner = False
                _native_initialized = False
                with engine_errors("finalizing the collective communicator"):
                    _native_collective.finalize()
                LOGGER.debug("--------------- communicator say bye ------------------")


def get_rank() -> int:
    """Rank of the current worker, 0 outside of a native communicator."""
    if not _native_initialized:
        return 0
    return _native_collective.get_rank()


def get_world_size() -> int:
    """Number of workers, 1 outside of a native communicator."""
    if not _native_initialized:
        return 1
    return _native_collective.get_world_size()


def communicator_bracket(func: _F) -> _F:
    """Run ``func`` inside an argument-less :py:class:`CommunicatorContext`.  Nested
    in an open context this only raises the depth."""

    @wraps(func)
    def inner(*args: Any, **kwargs: Any) -> Any:
        with CommunicatorContext():
            return func(*args, **kwargs)

    return cast(_F, inner)
