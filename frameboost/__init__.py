"""frameboost: gradient boosted trees on columnar frames, with dual-path scoring.
"""

from . import collective, genmodel
from .builder import ModelBuilder, train_model
from .config import config_context, get_config, set_config
from .core import (
    FrameBoostError,
    FrameMutationInvariantError,
    IncompatibleParameterError,
    InvalidColumnRoleError,
    ParityViolationError,
    TrainingEngineError,
    _py_version,
)
from .data import DataInfo, FeatureLayout, MatrixBuilder, NativeMatrix, build
from .frame import Frame, FrameMetadata, Vec
from .model import Model, ModelArtifactManager, get_manager
from .params import (
    Backend,
    BoosterType,
    DMatrixType,
    GrowPolicy,
    ParameterResolver,
    ParameterSet,
    ResolvedConfig,
    ScoringMode,
    TreeMethod,
    gpu_incompatible_params,
    register_incompatibility,
    resolve,
    unregister_incompatibility,
)
from .scoring import (
    ArtifactNativeScorer,
    NativeScorer,
    ParityReport,
    PortableScorer,
    Scorer,
    ScoringParityChecker,
    ScoringResult,
    verify_parity,
)
from .training import TrainingOrchestrator

__version__ = _py_version()


__all__ = [
    # frame
    "Frame",
    "Vec",
    "FrameMetadata",
    # parameters
    "ParameterSet",
    "ParameterResolver",
    "ResolvedConfig",
    "Backend",
    "BoosterType",
    "DMatrixType",
    "GrowPolicy",
    "ScoringMode",
    "TreeMethod",
    "resolve",
    "gpu_incompatible_params",
    "register_incompatibility",
    "unregister_incompatibility",
    # matrices
    "MatrixBuilder",
    "NativeMatrix",
    "DataInfo",
    "FeatureLayout",
    "build",
    # training
    "TrainingOrchestrator",
    "ModelBuilder",
    "train_model",
    # models
    "Model",
    "ModelArtifactManager",
    "get_manager",
    # scoring
    "Scorer",
    "NativeScorer",
    "ArtifactNativeScorer",
    "PortableScorer",
    "ScoringResult",
    "ScoringParityChecker",
    "ParityReport",
    "verify_parity",
    # errors
    "FrameBoostError",
    "IncompatibleParameterError",
    "InvalidColumnRoleError",
    "TrainingEngineError",
    "ParityViolationError",
    "FrameMutationInvariantError",
    # utilities
    "set_config",
    "get_config",
    "config_context",
    "collective",
    "genmodel",
]
