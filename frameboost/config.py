# pylint: disable=missing-function-docstring
"""Global configuration for frameboost.

Global configuration consists of a small collection of parameters applied in the
process scope:

- ``verbosity``: 0 (silent) to 3 (debug).  Forwarded to the native engine and mapped
  onto the ``[frameboost.*]`` loggers.
- ``nthread``: default number of engine threads, ``-1`` lets the engine decide.
- ``chunk_rows``: number of rows per matrix shard when building native matrices.

Example
-------

.. code-block:: python

    import frameboost as fb

    fb.set_config(verbosity=2)
    assert fb.get_config()["verbosity"] == 2

    with fb.config_context(chunk_rows=1024):
        ...  # matrices are built from 1024-row shards
    assert fb.get_config()["chunk_rows"] != 1024  # old value restored

"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import xgboost

_LOGGER_PREFIX = "[frameboost."

_VERBOSITY_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
}

_DEFAULTS: Dict[str, Any] = {"verbosity": 1, "nthread": -1, "chunk_rows": 65536}

_global_config: Dict[str, Any] = dict(_DEFAULTS)


def _validate(key: str, value: Any) -> None:
    if key not in _DEFAULTS:
        raise ValueError(
            f"Unknown configuration parameter: `{key}`, expecting one of "
            f"{sorted(_DEFAULTS)}"
        )
    if key == "verbosity" and value not in _VERBOSITY_LEVELS:
        raise ValueError(f"verbosity must be in [0, 3], got {value}")
    if key == "nthread" and (not isinstance(value, int) or value == 0 or value < -1):
        raise ValueError(f"nthread must be -1 or a positive integer, got {value}")
    if key == "chunk_rows" and (not isinstance(value, int) or value < 1):
        raise ValueError(f"chunk_rows must be a positive integer, got {value}")


def _apply_verbosity(verbosity: int) -> None:
    level = _VERBOSITY_LEVELS[verbosity]
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(_LOGGER_PREFIX):
            logging.getLogger(name).setLevel(level)
    xgboost.set_config(verbosity=verbosity)


def set_config(**new_config: Any) -> None:
    """Set global configuration.

    Parameters
    ----------
    new_config :
        Keyword arguments representing the parameters and their values.  ``None``
        values are ignored.
    """
    not_none = {k: v for k, v in new_config.items() if v is not None}
    for k, v in not_none.items():
        _validate(k, v)
    _global_config.update(not_none)
    if "verbosity" in not_none:
        _apply_verbosity(not_none["verbosity"])


def get_config() -> Dict[str, Any]:
    """Get current values of the global configuration."""
    return dict(_global_config)


@contextmanager
def config_context(**new_config: Any) -> Iterator[None]:
    """Context manager for global frameboost configuration.

    .. note::

        All settings, not just those presently modified, will be returned to their
        previous values when the context manager is exited. This is not thread-safe.

    """
    old_config = get_config().copy()
    set_config(**new_config)

    try:
        yield
    finally:
        set_config(**old_config)
