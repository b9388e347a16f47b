"""Reading model artifacts without the native engine.

An artifact is a zip archive holding two members:

- ``model.json``: column layout, response domain, task, objective and sparsity flag.
- ``booster.json``: the booster in the engine's JSON model format.

"""
import io
import json
import os
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

ARTIFACT_MODEL = "model.json"
ARTIFACT_BOOSTER = "booster.json"
FORMAT_VERSION = 1

_Source = Union[str, "os.PathLike[str]", bytes, bytearray]


@dataclass(frozen=True)
class ArtifactColumn:
    """A frame column and its slice of the encoded feature vector."""

    name: str
    offset: int
    domain: Optional[Tuple[str, ...]] = None

    @property
    def width(self) -> int:
        return len(self.domain) if self.domain is not None else 1


@dataclass(frozen=True)
class ModelArtifact:
    """Content of a model artifact."""

    key: str
    task: str
    objective: str
    booster: str
    num_class: int
    sparse: bool
    response: str
    response_domain: Optional[Tuple[str, ...]]
    columns: Tuple[ArtifactColumn, ...]
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    booster_json: bytes = field(default=b"", repr=False)

    @property
    def num_features(self) -> int:
        if not self.columns:
            return 0
        last = self.columns[-1]
        return last.offset + last.width

    def booster_model(self) -> Dict[str, Any]:
        """The engine's JSON model as a dictionary."""
        return json.loads(self.booster_json)


def _columns(info: Dict[str, Any]) -> Tuple[ArtifactColumn, ...]:
    out = []
    for f in info["layout"]["features"]:
        domain = f.get("domain")
        out.append(
            ArtifactColumn(
                name=f["name"],
                offset=int(f["offset"]),
                domain=tuple(domain) if domain is not None else None,
            )
        )
    return tuple(out)


def read_artifact(source: _Source) -> ModelArtifact:
    """Load an artifact from a path or from its bytes.

    Raises
    ------
    ValueError
        The artifact is malformed or written by an unsupported format version.
    """
    if isinstance(source, (bytes, bytearray)):
        fobj: Any = io.BytesIO(bytes(source))
    else:
        fobj = os.fspath(os.path.expanduser(source))
    try:
        with zipfile.ZipFile(fobj) as zf:
            meta = json.loads(zf.read(ARTIFACT_MODEL))
            booster_json = zf.read(ARTIFACT_BOOSTER)
    except (zipfile.BadZipFile, KeyError) as e:
        raise ValueError(f"Invalid model artifact: {e}") from e

    version = meta.get("format_version")
    if version != FORMAT_VERSION:
        raise ValueError(f"Unsupported artifact format version: {version}")
    info = meta["info"]
    domain = info.get("response_domain")
    return ModelArtifact(
        key=meta["key"],
        task=meta["task"],
        objective=meta["objective"],
        booster=meta["booster"],
        num_class=int(meta["num_class"]),
        sparse=bool(info["sparse"]),
        response=info["response"],
        response_domain=tuple(domain) if domain is not None else None,
        columns=_columns(info),
        metadata=meta,
        booster_json=booster_json,
    )
