"""Serialization of trained models into portable artifacts.

See :py:mod:`frameboost.genmodel.reader` for the layout of an artifact.  Writing an
artifact and reading it back through the native engine both live here; reading it
without the engine lives in :py:mod:`frameboost.genmodel`.

"""
import io
import json
import os
import zipfile
from typing import TYPE_CHECKING, Any, Dict, List

import xgboost

from ._typing import ArtifactIn, PathLike
from .core import _engine_version, _py_version, engine_errors
from .genmodel.reader import (
    ARTIFACT_BOOSTER,
    ARTIFACT_MODEL,
    FORMAT_VERSION,
    ModelArtifact,
    read_artifact,
)

if TYPE_CHECKING:
    from .model import Model


def artifact_metadata(model: "Model") -> Dict[str, Any]:
    """Content of the ``model.json`` member."""
    info = model.output.info
    params = model.config.booster_params(info.task, info.num_class)
    return {
        "format_version": FORMAT_VERSION,
        "key": model.key,
        "task": info.task.value,
        "objective": params["objective"],
        "booster": model.config.booster.value,
        "distribution": model.config.distribution_for(info.task).value,
        "num_class": info.num_class,
        "ntrees": model.output.ntrees,
        "info": info.to_dict(),
        "frameboost_version": _py_version(),
        "engine_version": _engine_version(),
    }


def write_artifact(model: "Model") -> bytes:
    """Serialize ``model`` into artifact bytes."""
    with engine_errors("serializing the booster"):
        raw = model.booster.save_raw(raw_format="json")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(ARTIFACT_MODEL, json.dumps(artifact_metadata(model), indent=2))
        zf.writestr(ARTIFACT_BOOSTER, bytes(raw))
    return buf.getvalue()


def save_artifact(model: "Model", path: PathLike) -> str:
    """Write the artifact of ``model`` to ``path``, returning the path."""
    path = os.fspath(os.path.expanduser(path))
    with open(path, "wb") as fd:
        fd.write(write_artifact(model))
    return path


class NativeModelReader:
    """Reads an artifact back into the native engine.

    Parameters
    ----------
    source :
        Path to an artifact or its bytes.
    """

    def __init__(self, source: ArtifactIn) -> None:
        self.artifact: ModelArtifact = read_artifact(source)
        with engine_errors("loading the booster of an artifact"):
            self.booster = xgboost.Booster(
                model_file=bytearray(self.artifact.booster_json)
            )

    def booster_dump(self, with_stats: bool = False, dump_format: str = "text") -> List[str]:
        """One dump per tree, as produced by the native engine."""
        with engine_errors("dumping the booster"):
            return self.booster.get_dump(with_stats=with_stats, dump_format=dump_format)
