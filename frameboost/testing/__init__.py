"""Utilities for defining Python tests. The module is private and subject to frequent
change without notice.

The datasets are synthetic stand-ins with the shape and column types of the small
datasets the models are usually exercised on.

"""

# pylint: disable=invalid-name,missing-function-docstring
import importlib.util
from typing import Dict, List, Optional, TypedDict

import numpy as np

from ..core import gpu_available
from ..frame import Frame, Vec

PytestSkip = TypedDict("PytestSkip", {"condition": bool, "reason": str})


def no_mod(name: str) -> PytestSkip:
    spec = importlib.util.find_spec(name)
    return {"condition": spec is None, "reason": f"{name} is not installed."}


def no_sklearn() -> PytestSkip:
    return no_mod("sklearn")


def no_pandas() -> PytestSkip:
    return no_mod("pandas")


def no_cuda() -> PytestSkip:
    return {
        "condition": not gpu_available(),
        "reason": "The native engine is built without CUDA support.",
    }


def has_cuda() -> PytestSkip:
    return {
        "condition": gpu_available(),
        "reason": "Requires an engine built without CUDA support.",
    }


def _with_all(rng: np.random.RandomState, values: np.ndarray, levels: List) -> np.ndarray:
    """Make sure every level occurs at least once."""
    n = min(len(levels), values.shape[0])
    pos = rng.choice(values.shape[0], size=n, replace=False)
    values[pos] = levels[:n]
    return values


def get_prostate(n_samples: int = 380, seed: int = 1994) -> Frame:
    """Prostate cancer study: ID, CAPSULE, AGE, RACE, DPROS, DCAPS, PSA, VOL,
    GLEASON.  Every column is numeric, VOL is zero for a large share of the rows."""
    rng = np.random.RandomState(seed)
    age = rng.randint(43, 80, size=n_samples).astype(np.float64)
    race = rng.choice([0.0, 1.0, 2.0], size=n_samples, p=[0.02, 0.88, 0.10])
    dpros = rng.randint(1, 5, size=n_samples).astype(np.float64)
    dcaps = rng.choice([1.0, 2.0], size=n_samples, p=[0.9, 0.1])
    psa = np.round(rng.lognormal(2.0, 1.0, size=n_samples), 1)
    vol = np.where(
        rng.uniform(size=n_samples) < 0.4,
        0.0,
        np.round(rng.uniform(5.0, 90.0, size=n_samples), 1),
    )
    gleason_levels = [0.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0]
    gleason = rng.choice(
        gleason_levels, size=n_samples, p=[0.01, 0.02, 0.08, 0.40, 0.35, 0.10, 0.04]
    )
    gleason = _with_all(rng, gleason, gleason_levels)
    score = 0.04 * psa + 0.6 * (dpros - 2.5) + 0.8 * (gleason - 6.5) - 0.5
    capsule = (rng.uniform(size=n_samples) < 1.0 / (1.0 + np.exp(-score))).astype(
        np.float64
    )
    capsule = _with_all(rng, capsule, [0.0, 1.0])
    return Frame.from_dict(
        {
            "ID": np.arange(1, n_samples + 1, dtype=np.float64),
            "CAPSULE": capsule,
            "AGE": age,
            "RACE": race,
            "DPROS": dpros,
            "DCAPS": dcaps,
            "PSA": psa,
            "VOL": vol,
            "GLEASON": gleason,
        }
    )


def get_weather(n_samples: int = 366, seed: int = 1994) -> Frame:
    """Daily weather observations.  ``RainTomorrow`` is a numeric 0/1 column,
    ``RainToday`` is categorical and ``Sunshine`` has missing values."""
    rng = np.random.RandomState(seed)
    min_temp = np.round(rng.normal(7.0, 6.0, size=n_samples), 1)
    max_temp = np.round(min_temp + rng.uniform(5.0, 18.0, size=n_samples), 1)
    humidity3 = np.round(rng.uniform(15.0, 95.0, size=n_samples))
    humidity9 = np.round(np.clip(humidity3 + rng.normal(15.0, 10.0, n_samples), 20, 100))
    cloud = rng.randint(0, 9, size=n_samples).astype(np.float64)
    pressure = np.round(rng.normal(1019.0, 6.0, size=n_samples), 1)
    sunshine = np.round(np.clip(13.0 - cloud * 1.3 + rng.normal(0, 1.5, n_samples), 0, 14), 1)
    sunshine[rng.uniform(size=n_samples) < 0.01] = np.nan
    gust = np.round(rng.uniform(13.0, 90.0, size=n_samples))
    rain_today = rng.uniform(size=n_samples) < 0.18
    rainfall = np.where(rain_today, np.round(rng.exponential(5.0, n_samples), 1), 0.0)
    score = 0.08 * (humidity3 - 60.0) + 0.35 * (cloud - 4.0) - 0.15 * (pressure - 1019.0)
    tomorrow = rng.uniform(size=n_samples) < 1.0 / (1.0 + np.exp(-(score - 1.5)))
    risk = np.where(tomorrow, np.round(rng.exponential(4.0, n_samples), 1), 0.0)
    tomorrow_f = _with_all(rng, tomorrow.astype(np.float64), [0.0, 1.0])
    return Frame.from_dict(
        {
            "MinTemp": min_temp,
            "MaxTemp": max_temp,
            "Rainfall": rainfall,
            "Evaporation": np.round(rng.uniform(0.2, 13.0, size=n_samples), 1),
            "Sunshine": sunshine,
            "WindGustSpeed": gust,
            "Humidity9am": humidity9,
            "Humidity3pm": humidity3,
            "Pressure9am": pressure,
            "Cloud9am": cloud,
            "Temp3pm": np.round(max_temp - rng.uniform(0.0, 3.0, n_samples), 1),
            "RainToday": ["Yes" if r else "No" for r in rain_today],
            "RISK_MM": risk,
            "EvapMM": np.round(rng.uniform(0.2, 13.0, size=n_samples), 1),
            "RainTomorrow": tomorrow_f,
        }
    )


def get_cars(n_samples: int = 406, seed: int = 1994) -> Frame:
    """Cars fuel economy.  ``economy (mpg)`` and ``power (hp)`` contain missing
    values."""
    rng = np.random.RandomState(seed)
    cylinders = rng.choice([3.0, 4.0, 5.0, 6.0, 8.0], size=n_samples,
                           p=[0.01, 0.51, 0.01, 0.21, 0.26])
    displacement = np.round(cylinders * rng.uniform(20.0, 50.0, n_samples))
    power = np.round(displacement * rng.uniform(0.3, 0.6, n_samples))
    weight = np.round(1500.0 + displacement * rng.uniform(6.0, 10.0, n_samples))
    economy = np.round(55.0 - weight / 150.0 + rng.normal(0.0, 3.0, n_samples), 1)
    economy[rng.choice(n_samples, size=8, replace=False)] = np.nan
    power[rng.choice(n_samples, size=6, replace=False)] = np.nan
    makes = ["chevrolet", "ford", "plymouth", "amc", "dodge", "toyota", "datsun"]
    names = [f"{makes[i % len(makes)]} {i}" for i in rng.randint(0, 300, n_samples)]
    return Frame.from_dict(
        {
            "name": names,
            "economy (mpg)": economy,
            "cylinders": cylinders,
            "displacement (cc)": displacement,
            "power (hp)": power,
            "weight (lb)": weight,
            "0-60 mph (s)": np.round(rng.uniform(8.0, 25.0, n_samples), 1),
            "year": rng.randint(70, 83, size=n_samples).astype(np.float64),
        }
    )


def get_iris(n_samples: int = 150, seed: int = 1994) -> Frame:
    """Three classes of flowers described by four measurements, ``class`` is
    categorical."""
    rng = np.random.RandomState(seed)
    species = ["Iris-setosa", "Iris-versicolor", "Iris-virginica"]
    labels = np.arange(n_samples) % 3
    centers = np.array(
        [[5.0, 3.4, 1.5, 0.2], [5.9, 2.8, 4.3, 1.3], [6.6, 3.0, 5.6, 2.0]]
    )
    spread = np.array([0.35, 0.35, 0.45, 0.25])
    data = np.round(centers[labels] + rng.normal(size=(n_samples, 4)) * spread, 1)
    return Frame.from_dict(
        {
            "sepal_len": data[:, 0],
            "sepal_wid": data[:, 1],
            "petal_len": data[:, 2],
            "petal_wid": data[:, 3],
            "class": [species[i] for i in labels],
        }
    )


def generate_enum_only(
    ncols: int, nrows: int, nlevels: int, na_ratio: float = 0.0, seed: int = 1994
) -> Frame:
    """Frame of categorical columns ``C1..Cn``, each with ``nlevels`` levels named
    ``c<col>.l<level>``.  Every level occurs at least once when ``nrows >= nlevels``
    and ``na_ratio`` is 0."""
    rng = np.random.RandomState(seed)
    columns: Dict[str, Vec] = {}
    for j in range(ncols):
        domain = [f"c{j}.l{k}" for k in range(nlevels)]
        codes = rng.randint(0, nlevels, size=nrows).astype(np.float64)
        codes = _with_all(rng, codes, [float(k) for k in range(nlevels)])
        if na_ratio > 0:
            codes[rng.uniform(size=nrows) < na_ratio] = np.nan
        columns[f"C{j + 1}"] = Vec(codes, domain=domain)
    return Frame.from_dict(columns)


def make_regression(
    n_samples: int, n_features: int, seed: int = 1994, sparsity: Optional[float] = None
) -> Frame:
    """Numeric features ``C1..Cn`` and a response ``y``.  With ``sparsity`` the given
    share of feature cells is zero."""
    rng = np.random.RandomState(seed)
    X = rng.normal(size=(n_samples, n_features))
    if sparsity is not None:
        X[rng.uniform(size=X.shape) < sparsity] = 0.0
    y = X @ rng.uniform(-1.0, 1.0, size=n_features) + rng.normal(0, 0.1, n_samples)
    frame = Frame.from_numpy(X)
    frame.add("y", Vec(y))
    return frame
