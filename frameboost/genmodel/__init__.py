"""Portable scorer for frameboost artifacts.

Everything in this package depends on numpy and the standard library only, so that a
model artifact can be scored where the native engine is not installed.

"""
from .predictor import GBLinearPredictor, GBTreePredictor, RegTree, get_objective
from .reader import ArtifactColumn, ModelArtifact, read_artifact
from .scorer import PortableModel

__all__ = [
    "ArtifactColumn",
    "ModelArtifact",
    "read_artifact",
    "RegTree",
    "GBTreePredictor",
    "GBLinearPredictor",
    "get_objective",
    "PortableModel",
]
