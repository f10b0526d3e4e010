import numpy as np
import pandas as pd
import pytest

import potability_pipeline as pp


def make_samples(n=300, n_potable=120, seed=0):
    """Synthetic table with the water_potability.csv schema and null pattern."""
    rng = np.random.default_rng(seed)
    y = np.r_[np.ones(n_potable, dtype=int), np.zeros(n - n_potable, dtype=int)]
    rng.shuffle(y)

    df = pd.DataFrame({
        "ph":              rng.normal(7.0, 1.5, n) + 0.6 * y,
        "Hardness":        rng.normal(196, 32, n),
        "Solids":          rng.normal(22000, 8700, n),
        "Chloramines":     rng.normal(7.1, 1.6, n) + 0.8 * y,
        "Sulfate":         rng.normal(333, 41, n) - 20 * y,
        "Conductivity":    rng.normal(426, 80, n),
        "Organic_carbon":  rng.normal(14.3, 3.3, n),
        "Trihalomethanes": rng.normal(66, 16, n),
        "Turbidity":       rng.normal(3.97, 0.78, n),
        "Potability":      y,
    })
    for col, frac in [("ph", .15), ("Sulfate", .24), ("Trihalomethanes", .05)]:
        df.loc[rng.random(n) < frac, col] = np.nan
    return df


def single_point(models):
    """Collapse each grid to its first candidate to keep fits quick."""
    return {name: (clf, {k: v[:1] for k, v in grid.items()})
            for name, (clf, grid) in models.items()}


@pytest.fixture
def raw():
    return make_samples()


@pytest.fixture(scope="session")
def prepared():
    df = pp.impute(pp.add_missingness_indicators(
        pp.normalize_target(make_samples())), n_imputations=2)
    feat_names = pp.FEATURES + [f"{c}_missing" for c in pp.INDICATOR_COLS]
    X, y = df[feat_names], df[pp.TARGET]
    Xtr, Xte, ytr, yte = pp.split_data(X, y)
    return {"df": df, "feat_names": feat_names, "X": X,
            "Xtr": Xtr, "Xte": Xte, "ytr": ytr, "yte": yte,
            "folds": pp.make_folds(Xtr, ytr)}


@pytest.fixture(scope="session")
def trained(prepared):
    p = prepared
    results, fitted = pp.train_all(p["Xtr"], p["ytr"], p["Xte"], p["yte"],
                                   p["folds"],
                                   models=single_point(pp.get_models()),
                                   n_jobs=1)
    return results, fitted
