# pylint: disable=too-many-instance-attributes, too-many-branches
"""Model parameters and their resolution into native engine configuration.

A :py:class:`ParameterSet` is the user facing, closed set of hyperparameters.
:py:class:`ParameterResolver` validates it, rejects combinations the selected backend
can not train, and produces a :py:class:`ResolvedConfig` holding the engine flags.
Resolution is a pure function of the parameter set and the incompatibility table.

"""
import dataclasses
import logging
import threading
import types
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from ._typing import BoosterParam
from .config import get_config
from .core import IncompatibleParameterError, ValidationMessage

LOGGER = logging.getLogger("[frameboost.params]")


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return str(self.value)


class Backend(_StrEnum):
    """Hardware the native engine trains on."""

    cpu = "cpu"
    gpu = "gpu"


class TreeMethod(_StrEnum):
    auto = "auto"
    exact = "exact"
    approx = "approx"
    hist = "hist"


class GrowPolicy(_StrEnum):
    depthwise = "depthwise"
    lossguide = "lossguide"


class BoosterType(_StrEnum):
    gbtree = "gbtree"
    gblinear = "gblinear"
    dart = "dart"


class DMatrixType(_StrEnum):
    """Representation of the native matrix, ``auto`` detects it from the data."""

    auto = "auto"
    dense = "dense"
    sparse = "sparse"


class Distribution(_StrEnum):
    AUTO = "AUTO"
    bernoulli = "bernoulli"
    multinomial = "multinomial"
    gaussian = "gaussian"
    poisson = "poisson"
    gamma = "gamma"
    tweedie = "tweedie"


class FoldAssignment(_StrEnum):
    AUTO = "AUTO"
    random = "random"
    modulo = "modulo"


class ScoringMode(_StrEnum):
    """Which scorer re-reads the serialized model during parity checks.

    ``native`` loads the artifact back into the native engine, ``portable`` scores it
    with the engine-free :py:mod:`frameboost.genmodel` re-implementation.
    """

    native = "native"
    portable = "portable"


class Task(_StrEnum):
    """Learning task, derived from the response column."""

    regression = "regression"
    binomial = "binomial"
    multinomial = "multinomial"


_ENUM_FIELDS: Dict[str, Type[_StrEnum]] = {
    "backend": Backend,
    "tree_method": TreeMethod,
    "grow_policy": GrowPolicy,
    "booster": BoosterType,
    "dmatrix_type": DMatrixType,
    "distribution": Distribution,
    "fold_assignment": FoldAssignment,
    "scoring_mode": ScoringMode,
}


@dataclass
class ParameterSet:
    """Hyperparameters of a model.

    Enumerated fields accept either the enum member or its string value.  Engine
    options without a dedicated field can be passed through ``extra_params``, they
    are forwarded to the engine verbatim.

    Parameters
    ----------
    model_id :
        Key of the produced model, generated when omitted.
    response_column :
        Name of the response column.
    ignored_columns :
        Columns excluded from the features.
    weights_column :
        Numeric column holding per-row weights, excluded from the features.
    ignore_const_cols :
        Drop constant feature columns.
    backend :
        ``cpu`` or ``gpu``.
    ntrees :
        Number of boosting rounds.
    min_rows :
        Minimum sum of instance weight in a child, ``min_child_weight`` in the engine.
    max_abs_leafnode_pred :
        ``max_delta_step`` in the engine, 0 means no constraint.
    min_split_improvement :
        ``gamma`` in the engine.
    seed :
        Random seed, -1 leaves the engine default.
    nfolds :
        Number of cross-validation folds, 0 disables cross-validation.
    checkpoint :
        A previously trained :py:class:`~frameboost.model.Model` to continue from.
    scoring_mode :
        Scorer used on the artifact side of parity checks.
    parity_tolerance :
        Absolute tolerance of parity checks, the documented per-model default when
        omitted.
    """

    model_id: Optional[str] = None
    response_column: Optional[str] = None
    ignored_columns: List[str] = field(default_factory=list)
    weights_column: Optional[str] = None
    ignore_const_cols: bool = True

    backend: Backend = Backend.cpu
    gpu_id: int = 0

    tree_method: TreeMethod = TreeMethod.auto
    grow_policy: GrowPolicy = GrowPolicy.depthwise
    booster: BoosterType = BoosterType.gbtree
    ntrees: int = 50
    max_depth: int = 6
    min_rows: float = 1.0
    eta: float = 0.3
    sample_rate: float = 1.0
    col_sample_rate: float = 1.0
    col_sample_rate_per_tree: float = 1.0
    max_abs_leafnode_pred: float = 0.0
    min_split_improvement: float = 0.0
    reg_lambda: float = 1.0
    reg_alpha: float = 0.0
    max_bins: int = 256
    max_leaves: int = 0
    rate_drop: float = 0.0
    skip_drop: float = 0.0

    distribution: Distribution = Distribution.AUTO
    tweedie_power: float = 1.5
    base_score: Optional[float] = None

    dmatrix_type: DMatrixType = DMatrixType.auto

    seed: int = -1
    nfolds: int = 0
    fold_assignment: FoldAssignment = FoldAssignment.AUTO

    checkpoint: Optional[Any] = None

    scoring_mode: ScoringMode = ScoringMode.native
    parity_tolerance: Optional[float] = None

    nthread: Optional[int] = None
    extra_params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        messages = []
        for name, enum_type in _ENUM_FIELDS.items():
            value = getattr(self, name)
            if isinstance(value, enum_type):
                continue
            try:
                setattr(self, name, enum_type(value))
            except ValueError:
                choices = ", ".join(m.value for m in enum_type)
                messages.append(
                    ValidationMessage(
                        f"_{name}", f"Invalid value `{value}`, expecting one of: {choices}"
                    )
                )
        if messages:
            raise IncompatibleParameterError(messages, model_id=self.model_id)
        self.ignored_columns = list(self.ignored_columns or [])
        self.extra_params = dict(self.extra_params or {})


def _render(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


@dataclass(frozen=True)
class IncompatibilityRule:
    """A ``(backend, parameter, value)`` triple the backend can not train with."""

    backend: Backend
    param: str
    value: Any

    def lookup(self, params: ParameterSet) -> Any:
        """Current value of the rule's parameter, falling back to ``extra_params``
        for engine options without a dedicated field."""
        if hasattr(params, self.param):
            return getattr(params, self.param)
        return params.extra_params.get(self.param)

    def matches(self, params: ParameterSet) -> bool:
        return _render(self.lookup(params)) == _render(self.value)


_DEFAULT_RULES: Tuple[IncompatibilityRule, ...] = (
    IncompatibilityRule(Backend.gpu, "grow_policy", GrowPolicy.lossguide),
    IncompatibilityRule(Backend.gpu, "tree_method", TreeMethod.exact),
)

_rules_lock = threading.Lock()
_rules: List[IncompatibilityRule] = list(_DEFAULT_RULES)


def incompatibility_rules() -> Tuple[IncompatibilityRule, ...]:
    """Currently registered incompatibility rules, in registration order."""
    with _rules_lock:
        return tuple(_rules)


def register_incompatibility(
    backend: Any, param: str, value: Any
) -> IncompatibilityRule:
    """Declare that ``backend`` can not train with ``param = value``.

    Returns the registered rule, registering the same rule twice is a no-op.
    """
    rule = IncompatibilityRule(Backend(backend), param, value)
    with _rules_lock:
        if rule not in _rules:
            _rules.append(rule)
    return rule


def unregister_incompatibility(rule: IncompatibilityRule) -> None:
    """Remove a previously registered rule, unknown rules are ignored."""
    with _rules_lock:
        if rule in _rules:
            _rules.remove(rule)


def incompatible_params(
    params: ParameterSet,
    backend: Any,
    rules: Optional[Sequence[IncompatibilityRule]] = None,
) -> Dict[str, Any]:
    """Parameters of ``params`` that conflict with ``backend``.

    Returns
    -------
    A mapping from parameter name to its current value, ordered as the rule table.
    Empty when the parameters are compatible.
    """
    backend = Backend(backend)
    table = incompatibility_rules() if rules is None else rules
    out: Dict[str, Any] = {}
    for rule in table:
        if rule.backend == backend and rule.param not in out and rule.matches(params):
            out[rule.param] = rule.lookup(params)
    return out


def gpu_incompatible_params(
    params: ParameterSet, rules: Optional[Sequence[IncompatibilityRule]] = None
) -> Dict[str, Any]:
    """Parameters that conflict with the GPU backend, regardless of the backend
    currently selected in ``params``."""
    return incompatible_params(params, Backend.gpu, rules)


# Engine names produced from modelled fields.  ``extra_params`` may not shadow them.
_TASK_FLAGS = ("objective", "num_class", "base_score", "tweedie_variance_power")

_OBJECTIVES: Dict[Distribution, Tuple[str, str]] = {
    Distribution.bernoulli: ("binary:logistic", "logloss"),
    Distribution.multinomial: ("multi:softprob", "mlogloss"),
    Distribution.gaussian: ("reg:squarederror", "rmse"),
    Distribution.poisson: ("count:poisson", "poisson-nloglik"),
    Distribution.gamma: ("reg:gamma", "gamma-nloglik"),
    Distribution.tweedie: ("reg:tweedie", "tweedie-nloglik"),
}

_TASK_DISTRIBUTIONS: Dict[Task, Tuple[Distribution, ...]] = {
    Task.binomial: (Distribution.bernoulli,),
    Task.multinomial: (Distribution.multinomial,),
    Task.regression: (
        Distribution.gaussian,
        Distribution.poisson,
        Distribution.gamma,
        Distribution.tweedie,
    ),
}


@dataclass(frozen=True)
class ResolvedConfig:
    """Validated parameters plus the engine configuration derived from them.

    Attributes
    ----------
    params :
        The parameter set this configuration was resolved from.
    tree_method :
        Tree method actually used, ``auto`` never survives resolution.
    device :
        Engine device string, ``cpu`` or ``cuda:<ordinal>``.
    flags :
        Engine parameters independent of the learning task.
    num_boost_round :
        Total number of boosting rounds the model ends up with.
    scoring_mode :
        Scorer on the artifact side of parity checks.
    parity_tolerance :
        Explicit parity tolerance, ``None`` for the per-model default.
    """

    params: ParameterSet
    tree_method: TreeMethod
    device: str
    flags: Mapping[str, Any]
    num_boost_round: int
    scoring_mode: ScoringMode
    parity_tolerance: Optional[float]

    @property
    def model_id(self) -> Optional[str]:
        return self.params.model_id

    @property
    def backend(self) -> Backend:
        return self.params.backend

    @property
    def booster(self) -> BoosterType:
        return self.params.booster

    @property
    def dmatrix_type(self) -> DMatrixType:
        return self.params.dmatrix_type

    @property
    def nthread(self) -> int:
        return int(self.flags["nthread"])

    def distribution_for(self, task: Task) -> Distribution:
        """Concrete distribution for a learning task.

        Raises
        ------
        IncompatibleParameterError
            The requested distribution can not model ``task``.
        """
        dist = self.params.distribution
        allowed = _TASK_DISTRIBUTIONS[Task(task)]
        if dist == Distribution.AUTO:
            return allowed[0]
        if dist not in allowed:
            raise IncompatibleParameterError(
                [
                    ValidationMessage(
                        "_distribution",
                        f"Distribution {_render(dist)} is not compatible with a "
                        f"{_render(task)} response.",
                    )
                ],
                model_id=self.model_id,
                value=dist,
            )
        return dist

    def booster_params(self, task: Task, num_class: int = 1) -> BoosterParam:
        """Full engine parameters for training on ``task``."""
        dist = self.distribution_for(task)
        objective, metric = _OBJECTIVES[dist]
        out: BoosterParam = dict(self.flags)
        out["objective"] = objective
        if dist == Distribution.tweedie:
            out["tweedie_variance_power"] = self.params.tweedie_power
            metric = f"{metric}@{self.params.tweedie_power}"
        out.setdefault("eval_metric", metric)
        if dist == Distribution.multinomial:
            out["num_class"] = num_class
            out["base_score"] = 0.5
        if self.params.base_score is not None:
            out["base_score"] = self.params.base_score
        return out


class ParameterResolver:
    """Validate a :py:class:`ParameterSet` and derive the engine configuration.

    Parameters
    ----------
    rules :
        Backend incompatibility table, the process wide registry when omitted.
    """

    def __init__(self, rules: Optional[Sequence[IncompatibilityRule]] = None) -> None:
        self._rules = tuple(rules) if rules is not None else None

    @property
    def rules(self) -> Tuple[IncompatibilityRule, ...]:
        return self._rules if self._rules is not None else incompatibility_rules()

    def incompatible_params(self, params: ParameterSet, backend: Any) -> Dict[str, Any]:
        return incompatible_params(params, backend, self.rules)

    def gpu_incompatible_params(self, params: ParameterSet) -> Dict[str, Any]:
        return incompatible_params(params, Backend.gpu, self.rules)

    @staticmethod
    def _check_ranges(
        params: ParameterSet, errors: List[Tuple[ValidationMessage, Any]]
    ) -> None:
        def err(name: str, msg: str) -> None:
            errors.append((ValidationMessage(f"_{name}", msg), getattr(params, name)))

        for name in ("ntrees", "max_depth", "max_leaves"):
            if getattr(params, name) < 0:
                err(name, f"{name} must be non-negative.")
        for name in ("eta", "sample_rate", "col_sample_rate", "col_sample_rate_per_tree"):
            value = getattr(params, name)
            if not 0.0 < value <= 1.0:
                err(name, f"{name} must be between 0 (exclusive) and 1 (inclusive).")
        for name in ("rate_drop", "skip_drop"):
            if not 0.0 <= getattr(params, name) <= 1.0:
                err(name, f"{name} must be between 0 and 1.")
        for name in (
            "reg_lambda",
            "reg_alpha",
            "min_split_improvement",
            "max_abs_leafnode_pred",
        ):
            if getattr(params, name) < 0:
                err(name, f"{name} must be non-negative.")
        if params.min_rows <= 0:
            err("min_rows", "min_rows must be positive.")
        if params.max_bins < 2:
            err("max_bins", "max_bins must be at least 2.")
        if params.nfolds < 0 or params.nfolds == 1:
            err("nfolds", "nfolds must be either 0 or >1.")
        if params.distribution == Distribution.tweedie and not (
            1.0 < params.tweedie_power < 2.0
        ):
            err("tweedie_power", "Tweedie power must be between 1 and 2 (exclusive).")
        if params.parity_tolerance is not None and params.parity_tolerance < 0:
            err("parity_tolerance", "parity_tolerance must be non-negative.")
        if params.nthread is not None and (params.nthread == 0 or params.nthread < -1):
            err("nthread", "nthread must be -1 or a positive integer.")
        if params.checkpoint is not None and params.nfolds > 1:
            err("checkpoint", "Cross-validation is not supported together with a checkpoint.")

    def _resolve_tree_method(
        self, params: ParameterSet, errors: List[Tuple[ValidationMessage, Any]]
    ) -> TreeMethod:
        method = params.tree_method
        if params.grow_policy == GrowPolicy.lossguide:
            if method == TreeMethod.auto:
                return TreeMethod.hist
            if method != TreeMethod.hist:
                errors.append(
                    (
                        ValidationMessage(
                            "_tree_method",
                            "Grow policy lossguide requires tree_method hist, got "
                            f"'{_render(method)}'.",
                        ),
                        method,
                    )
                )
            return method
        if method == TreeMethod.auto:
            return TreeMethod.hist
        return method

    @staticmethod
    def _engine_flags(
        params: ParameterSet, tree_method: TreeMethod, device: str
    ) -> Dict[str, Any]:
        nthread = params.nthread if params.nthread is not None else get_config()["nthread"]
        flags: Dict[str, Any] = {
            "booster": params.booster.value,
            "device": device,
            "eta": params.eta,
            "lambda": params.reg_lambda,
            "alpha": params.reg_alpha,
            "nthread": nthread,
        }
        if params.booster != BoosterType.gblinear:
            flags.update(
                {
                    "tree_method": tree_method.value,
                    "grow_policy": params.grow_policy.value,
                    "max_depth": params.max_depth,
                    "min_child_weight": params.min_rows,
                    "subsample": params.sample_rate,
                    "colsample_bylevel": params.col_sample_rate,
                    "colsample_bytree": params.col_sample_rate_per_tree,
                    "max_delta_step": params.max_abs_leafnode_pred,
                    "gamma": params.min_split_improvement,
                    "max_leaves": params.max_leaves,
                }
            )
            if tree_method in (TreeMethod.hist, TreeMethod.approx):
                flags["max_bin"] = params.max_bins
        if params.booster == BoosterType.dart:
            flags.update(
                {
                    "rate_drop": params.rate_drop,
                    "skip_drop": params.skip_drop,
                    "sample_type": "uniform",
                    "normalize_type": "tree",
                }
            )
        if params.seed != -1:
            flags["seed"] = params.seed
        return flags

    def resolve(self, params: ParameterSet) -> ResolvedConfig:
        """Resolve ``params`` into a :py:class:`ResolvedConfig`.

        Raises
        ------
        IncompatibleParameterError
            With every validation message collected.  When the GPU backend is
            selected together with a GPU-incompatible setting, the GPU message comes
            last and names the first offending parameter.
        """
        errors: List[Tuple[ValidationMessage, Any]] = []
        self._check_ranges(params, errors)
        tree_method = self._resolve_tree_method(params, errors)
        device = "cpu" if params.backend == Backend.cpu else f"cuda:{params.gpu_id}"
        flags = self._engine_flags(params, tree_method, device)

        shadowed = sorted(
            k
            for k in params.extra_params
            if k in flags
            or k in _TASK_FLAGS
            or k in ParameterSet.__dataclass_fields__
        )
        for k in shadowed:
            errors.append(
                (
                    ValidationMessage(
                        "_extra_params",
                        f"Engine option `{k}` is controlled by a model parameter and "
                        "can not be passed through extra_params.",
                    ),
                    k,
                )
            )

        field_name: Optional[str] = None
        field_value: Any = None
        hint: Optional[str] = None
        if params.backend == Backend.gpu:
            incompat = self.gpu_incompatible_params(params)
            if incompat:
                field_name, field_value = next(iter(incompat.items()))
                hint = "Use CPU backend instead."
                errors.append(
                    (
                        ValidationMessage(
                            "_backend",
                            "GPU backend is not available for parameter setting "
                            f"'{field_name} = {_render(field_value)}'. {hint}",
                        ),
                        field_value,
                    )
                )

        if errors:
            messages = [m for m, _ in errors]
            if field_name is None:
                field_value = errors[0][1]
            raise IncompatibleParameterError(
                messages,
                model_id=params.model_id,
                field=field_name,
                value=field_value,
                hint=hint,
            )

        for k, v in params.extra_params.items():
            flags[k] = v

        resolved = ResolvedConfig(
            params=dataclasses.replace(params),
            tree_method=tree_method,
            device=device,
            flags=types.MappingProxyType(flags),
            num_boost_round=params.ntrees,
            scoring_mode=params.scoring_mode,
            parity_tolerance=params.parity_tolerance,
        )
        LOGGER.debug("Resolved parameters of %s: %s", params.model_id, flags)
        return resolved


def resolve(params: ParameterSet) -> ResolvedConfig:
    """Resolve ``params`` against the process wide incompatibility table, see
    :py:meth:`ParameterResolver.resolve`."""
    return ParameterResolver().resolve(params)


def replace(params: ParameterSet, **changes: Any) -> ParameterSet:
    """Copy of ``params`` with some fields changed."""
    return dataclasses.replace(params, **changes)
