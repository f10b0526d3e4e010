"""
=============================================================================
Water Potability Classification: Comparison of Eight Classifiers

Exploratory pipeline: impute → explore → split → grid-search 8 model
families on shared CV folds → evaluate on a held-out set → tabulate.

Dataset : water_potability.csv (9 physicochemical measurements)
Target  : Potability (binary 0/1, 1 = potable)
=============================================================================
"""

# ── Imports ─────────────────────────────────────────────────────────────────
import warnings
warnings.filterwarnings("ignore")

import os
from contextlib import contextmanager

import joblib
import numpy as np
import pandas as pd
from joblib import parallel_config

from statsmodels.imputation.mice import MICEData

from sklearn.linear_model import LogisticRegression
from sklearn.model_selection import (
    train_test_split, StratifiedKFold, GridSearchCV,
)
from sklearn.preprocessing import StandardScaler
from sklearn.pipeline import Pipeline

# classifiers
from sklearn.naive_bayes import GaussianNB
from sklearn.svm import SVC
from sklearn.neighbors import KNeighborsClassifier
from sklearn.ensemble import RandomForestClassifier
from sklearn.neural_network import MLPClassifier

from xgboost import XGBClassifier
from lightgbm import LGBMClassifier

from sklearn.metrics import (
    accuracy_score, precision_score, recall_score,
    roc_auc_score, confusion_matrix,
)

import potability_analysis as analysis

# ── Constants ───────────────────────────────────────────────────────────────
SEED             = 42
TEST_SIZE        = 0.10
N_FOLDS          = 5
TARGET           = "Potability"
DATA_PATH        = os.environ.get("POTABILITY_DATA",
                                  os.path.join("data", "water_potability.csv"))
MODEL_PATH       = os.path.join("models", "best_potability_model.pkl")
FIG_DIR          = "figures"
RES_DIR          = "results"
MDL_DIR          = "models"

FEATURES = [
    "ph", "Hardness", "Solids", "Chloramines", "Sulfate",
    "Conductivity", "Organic_carbon", "Trihalomethanes", "Turbidity",
]

# Flags kept as model features after imputation
INDICATOR_COLS   = ["ph", "Sulfate"]

# Multiple imputation (chained equations + predictive mean matching)
N_IMPUTATIONS    = 5
IMPUTATION_INDEX = 0
IMPUTE_BURNIN    = 10
IMPUTE_SKIP      = 3
PMM_DONORS       = 5

# Minority/majority ratio accepted without resampling
MIN_CLASS_RATIO  = 0.5

# One core stays free
N_JOBS           = max(1, (os.cpu_count() or 2) - 1)

METRICS = ["Accuracy", "ROC-AUC", "Sensitivity",
           "Specificity", "Precision", "Recall"]

TARGET_LABELS = {
    "no": 0, "yes": 1,
    "false": 0, "true": 1,
    "not potable": 0, "potable": 1,
}

np.random.seed(SEED)


def _banner(title):
    print("\n" + "=" * 72)
    print(title)
    print("=" * 72)


# ═══════════════════════════════════════════════════════════════════════════
# STEP 1 — DATA LOADING
# ═══════════════════════════════════════════════════════════════════════════
def load_data(path=DATA_PATH):
    """Read the raw CSV and check it carries the documented columns."""
    _banner("STEP 1 : DATA LOADING")

    if not os.path.exists(path):
        raise FileNotFoundError(f"Input file not found at {path}")

    df = pd.read_csv(path)
    missing = [c for c in FEATURES + [TARGET] if c not in df.columns]
    if missing:
        raise ValueError(f"{path} is missing required columns: {missing}")

    print(f"  Raw shape   : {df.shape}")
    print(f"  Columns     : {list(df.columns)}\n")
    print(df.head())
    return df[FEATURES + [TARGET]].copy()


# ═══════════════════════════════════════════════════════════════════════════
# STEP 2 — TARGET NORMALISATION
# ═══════════════════════════════════════════════════════════════════════════
def normalize_target(df):
    """Coerce the target to int 0/1; rows without a label are dropped."""
    _banner("STEP 2 : TARGET NORMALISATION")

    df = df.dropna(subset=[TARGET]).copy()
    raw = df[TARGET]
    if pd.api.types.is_numeric_dtype(raw):
        mapped = raw.astype(float)
    else:
        mapped = pd.to_numeric(raw, errors="coerce")
        labels = raw.astype(str).str.strip().str.lower().map(TARGET_LABELS)
        mapped = mapped.fillna(labels)

    bad = ~mapped.isin([0, 1])
    if bad.any():
        raise ValueError(f"Unrecognised {TARGET} labels: "
                         f"{sorted(raw[bad].astype(str).unique())}")

    df[TARGET] = mapped.astype(int)
    print(f"  {TARGET} dtype : {df[TARGET].dtype}   rows : {len(df)}")
    return df


def show_class_dist(y, label=""):
    """Print class distribution."""
    vc = y.value_counts().sort_index()
    total = len(y)
    print(f"  Class distribution ({label}):")
    for cls, cnt in vc.items():
        print(f"    {cls}: {cnt}  ({cnt/total*100:.1f}%)")
    print(f"    Imbalance ratio: {vc.min()/vc.max():.3f}\n")


def check_class_balance(y, tolerance=MIN_CLASS_RATIO):
    """Return (minority/majority ratio, ratio >= tolerance)."""
    vc = y.value_counts()
    if len(vc) < 2:
        return 0.0, False
    ratio = float(vc.min() / vc.max())
    return ratio, ratio >= tolerance


# ═══════════════════════════════════════════════════════════════════════════
# STEP 3-4 — MISSINGNESS & IMPUTATION
# ═══════════════════════════════════════════════════════════════════════════
def add_missingness_indicators(df, cols=INDICATOR_COLS):
    """Add <col>_missing flags recording the pre-imputation null pattern."""
    out = df.copy()
    for c in cols:
        out[f"{c}_missing"] = out[c].isna().astype(int)
    return out


def impute_pmm(df, cols=FEATURES, n_imputations=N_IMPUTATIONS,
               burnin=IMPUTE_BURNIN, skip=IMPUTE_SKIP, n_donors=PMM_DONORS,
               seed=SEED):
    """Multiple imputation by chained equations with predictive mean matching.

    One statsmodels ``MICEData`` chain is burned in for ``burnin`` cycles,
    then a completed copy is taken every ``skip`` cycles. Each cycle draws
    perturbed regression parameters before matching, so the sets differ.
    Returns a list of ``n_imputations`` completed frames on ``df``'s index.
    """
    X = df[cols]
    empty = [c for c in cols if X[c].isna().all()]
    if empty:
        raise ValueError(f"Columns with no observed values: {empty}")

    np.random.seed(seed)
    frame = X.reset_index(drop=True)
    frame.columns = pd.Index(cols, dtype=object)
    mice_data = MICEData(frame, k_pmm=n_donors)
    mice_data.update_all(burnin)

    completed = []
    for i in range(n_imputations):
        if i:
            mice_data.update_all(skip)
        out = mice_data.data[cols].copy()
        out.index = X.index
        completed.append(out)
    return completed


def summarize_imputations(completed, mask):
    """Mean of the imputed cells per column, one row per completed set."""
    cols = [c for c in mask.columns if mask[c].any()]
    rows = [{c: filled.loc[mask[c], c].mean() for c in cols}
            for filled in completed]
    summary = pd.DataFrame(rows, columns=cols)
    summary.index = [f"set {i + 1}" for i in range(len(completed))]
    return summary


def impute(df, n_imputations=N_IMPUTATIONS, index=IMPUTATION_INDEX):
    """Complete the measurement columns.

    All ``n_imputations`` sets are drawn and summarised; only set ``index``
    (the first, by default) is analysed downstream. The imputed sets are
    not pooled.
    """
    _banner("STEP 3-4 : MISSINGNESS INDICATORS & PMM IMPUTATION")

    mask = df[FEATURES].isna()
    before = mask.sum()
    for c, n in before[before > 0].items():
        print(f"  {c:<20s}  {n:>5d} missing  ({n/len(df)*100:.1f}%)")

    completed = impute_pmm(df, FEATURES, n_imputations=n_imputations)
    out = df.copy()
    out[FEATURES] = completed[index]

    print("\n  Mean of imputed cells per set:")
    print(summarize_imputations(completed, mask).to_string())
    print(f"\n  Imputed sets : {len(completed)}  (using #{index + 1})")
    print(f"  NaN remaining: {int(out.isna().sum().sum())}")
    return out


# ═══════════════════════════════════════════════════════════════════════════
# STEP 6 — TRAIN-TEST SPLIT & CV FOLDS
# ═══════════════════════════════════════════════════════════════════════════
def split_data(X, y):
    """Stratified 90 / 10 split."""
    _banner("STEP 6 : TRAIN-TEST SPLIT  (90-10, stratified)")
    Xtr, Xte, ytr, yte = train_test_split(
        X, y, test_size=TEST_SIZE, random_state=SEED, stratify=y)
    print(f"  Train : {Xtr.shape[0]}   Test : {Xte.shape[0]}")
    show_class_dist(ytr, "Train")
    show_class_dist(yte, "Test")
    return Xtr, Xte, ytr, yte


def make_folds(X, y, n_splits=N_FOLDS):
    """Materialise the stratified folds once so every model sees the same."""
    cv = StratifiedKFold(n_splits=n_splits, shuffle=True, random_state=SEED)
    return list(cv.split(X, y))


# ═══════════════════════════════════════════════════════════════════════════
# STEP 7 — MODEL DEFINITIONS  (8 families + grids)
# ═══════════════════════════════════════════════════════════════════════════
def _scaled(clf):
    return Pipeline([("scaler", StandardScaler()), ("clf", clf)])


def get_models():
    """Return ordered dict name -> (estimator, param_grid)."""
    return {
        "Logistic Regression": (
            _scaled(LogisticRegression(max_iter=5000, random_state=SEED)),
            {"clf__C": [0.01, 0.1, 1.0, 10.0]}),
        "Naive Bayes": (
            _scaled(GaussianNB()),
            {"clf__var_smoothing": [1e-9, 1e-7, 1e-5]}),
        "SVM (RBF)": (
            _scaled(SVC(kernel="rbf", probability=True, random_state=SEED)),
            {"clf__C": [0.5, 1.0, 2.0, 4.0],
             "clf__gamma": ["scale", 0.05, 0.1]}),
        "KNN": (
            _scaled(KNeighborsClassifier(n_jobs=1)),
            {"clf__n_neighbors": [5, 9, 15, 21, 27],
             "clf__weights": ["uniform", "distance"]}),
        "Random Forest": (
            _scaled(RandomForestClassifier(n_estimators=300, random_state=SEED,
                                           n_jobs=1)),
            {"clf__max_features": [2, 3, 4, "sqrt"],
             "clf__min_samples_leaf": [1, 3]}),
        "XGBoost": (
            _scaled(XGBClassifier(eval_metric="logloss", random_state=SEED,
                                  verbosity=0, n_jobs=1)),
            {"clf__n_estimators": [200, 400],
             "clf__max_depth": [3, 5],
             "clf__learning_rate": [0.05, 0.1],
             "clf__subsample": [0.8]}),
        "LightGBM": (
            _scaled(LGBMClassifier(random_state=SEED, verbose=-1, n_jobs=1,
                                   force_col_wise=True)),
            {"clf__n_estimators": [200, 400],
             "clf__num_leaves": [15, 31],
             "clf__learning_rate": [0.05, 0.1]}),
        "Neural Network": (
            _scaled(MLPClassifier(max_iter=2000, random_state=SEED,
                                  early_stopping=True)),
            {"clf__hidden_layer_sizes": [(16,), (32,), (32, 16)],
             "clf__alpha": [1e-4, 1e-3, 1e-2]}),
    }


# ═══════════════════════════════════════════════════════════════════════════
# STEP 7-8 — GRID SEARCH + EVALUATE
# ═══════════════════════════════════════════════════════════════════════════
def _shutdown_workers():
    """Stop the reusable loky executor so the next pool starts fresh."""
    # loky is vendored by joblib; this path is not part of its public API
    from joblib.externals.loky import get_reusable_executor
    get_reusable_executor().shutdown(wait=True)


@contextmanager
def worker_pool(n_jobs=N_JOBS):
    """Bounded loky pool, shut down when the block exits."""
    try:
        with parallel_config(backend="loky", n_jobs=n_jobs):
            yield n_jobs
    finally:
        _shutdown_workers()


def fit_model(name, estimator, grid, Xtr, ytr, folds, n_jobs=N_JOBS):
    """Grid-search one model on the shared folds and refit on all of Xtr."""
    if len(folds) != N_FOLDS:
        raise ValueError(f"{name}: expected {N_FOLDS} folds, got {len(folds)}")

    with worker_pool(n_jobs) as workers:
        search = GridSearchCV(estimator, grid, cv=folds, scoring="roc_auc",
                              refit=True, n_jobs=workers, error_score="raise")
        search.fit(Xtr, ytr)
    return search


def evaluate_model(clf, Xte, yte):
    """Held-out metrics; class 1 (potable) is the positive class."""
    yp  = clf.predict(Xte)
    ypr = clf.predict_proba(Xte)[:, 1]
    TN, FP, FN, TP = confusion_matrix(yte, yp, labels=[0, 1]).ravel()

    return {
        "Accuracy":    accuracy_score(yte, yp),
        "ROC-AUC":     roc_auc_score(yte, ypr),
        "Sensitivity": TP / (TP + FN) if (TP + FN) else 0.0,
        "Specificity": TN / (TN + FP) if (TN + FP) else 0.0,
        "Precision":   precision_score(yte, yp, zero_division=0),
        "Recall":      recall_score(yte, yp, zero_division=0),
    }


def train_all(Xtr, ytr, Xte, yte, folds, models=None, n_jobs=N_JOBS):
    """Fit every model through fit_model and collect held-out metrics."""
    _banner(f"STEP 7-8 : GRID SEARCH ({N_FOLDS}-FOLD CV, {n_jobs} WORKERS) "
            "→ TEST EVALUATION")

    models = get_models() if models is None else models
    rows, fitted = [], {}
    total = len(models)

    for i, (name, (clf, grid)) in enumerate(models.items(), 1):
        tag = f"[{i}/{total}]"
        search = fit_model(name, clf, grid, Xtr, ytr, folds, n_jobs)
        row = {
            "Model":      name,
            "CV ROC-AUC": search.best_score_,
            **evaluate_model(search, Xte, yte),
            "Best Params": {k.replace("clf__", ""): v
                            for k, v in search.best_params_.items()},
        }
        rows.append(row)
        fitted[name] = search
        print(f"  {tag} {name:<22s}  CV AUC={row['CV ROC-AUC']:.4f}  "
              f"Test AUC={row['ROC-AUC']:.4f} ✓")

    return pd.DataFrame(rows), fitted


# ═══════════════════════════════════════════════════════════════════════════
# STEP 9 — PERFORMANCE COMPARISON & REPORT
# ═══════════════════════════════════════════════════════════════════════════
def compare(df_res, res_dir=RES_DIR):
    """Rank by Test ROC-AUC, print table and save it."""
    _banner("STEP 9 : PERFORMANCE COMPARISON")

    ranked = (df_res
              .sort_values("ROC-AUC", ascending=False)
              .reset_index(drop=True))
    ranked.index = ranked.index + 1
    ranked.index.name = "Rank"

    pd.set_option("display.max_columns", None)
    pd.set_option("display.width", 220)
    pd.set_option("display.float_format", "{:.4f}".format)
    print("\n", ranked.drop(columns=["Best Params"]).to_string())

    fp = os.path.join(res_dir, "model_comparison.csv")
    ranked.to_csv(fp)
    print(f"\n  Saved → {fp}")
    return ranked


def write_report(ranked, hygiene, figures, path):
    """Markdown report: data checks, metrics table, figure links."""
    base = os.path.dirname(os.path.abspath(path))
    lines = ["# Water Potability: Model Comparison", "",
             "## Data checks", ""]
    for k, v in hygiene.items():
        lines.append(f"- **{k}**: {v}")

    table = ranked.drop(columns=["Best Params"])
    lines += ["", "## Held-out test metrics", "",
              table.to_markdown(floatfmt=".4f"), "",
              "## Selected hyperparameters", ""]
    for _, r in ranked.iterrows():
        lines.append(f"- {r['Model']}: `{r['Best Params']}`")

    lines += ["", "## Figures", ""]
    for fig in figures:
        rel = os.path.relpath(os.path.abspath(fig), base)
        title = os.path.splitext(os.path.basename(fig))[0].replace("_", " ")
        lines.append(f"![{title}]({rel})")

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    print(f"  Saved → {path}")
    return path


def save_best(ranked, fitted, path=MODEL_PATH):
    """Serialise the refit estimator of the top-ranked model."""
    _banner("BEST MODEL SELECTION & SAVING")

    best = ranked.iloc[0]
    name, auc = best["Model"], best["ROC-AUC"]
    print(f"\n  Best Model   : {name}")
    print(f"  Test ROC-AUC : {auc:.4f}")

    joblib.dump(fitted[name].best_estimator_, path)
    print(f"  Saved        : {path}")
    return name, auc


# ═══════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════
def main():
    print("╔════════════════════════════════════════════════════════════════════╗")
    print("║  Water Potability: 8-Model Comparison                             ║")
    print("╚════════════════════════════════════════════════════════════════════╝\n")

    for d in [FIG_DIR, RES_DIR, MDL_DIR]:
        os.makedirs(d, exist_ok=True)

    # 1-2  Load, normalise target
    raw = normalize_target(load_data(DATA_PATH))

    # 3-4  Missingness flags, impute
    figures = [analysis.plot_missingness(raw[FEATURES], FIG_DIR)]
    flagged = add_missingness_indicators(raw)
    df = impute(flagged)

    ratio, balanced = check_class_balance(df[TARGET])
    show_class_dist(df[TARGET], "Full dataset")
    print(f"  Balance ratio {ratio:.3f} "
          f"{'≥' if balanced else '<'} tolerance {MIN_CLASS_RATIO}")

    # 5  Explore
    _banner("STEP 5 : EXPLORATION")
    figures += [
        analysis.plot_class_balance(df[TARGET], FIG_DIR),
        analysis.plot_distributions(df, FEATURES, TARGET, FIG_DIR),
        analysis.plot_correlations(df, FIG_DIR),
    ]

    # 6  Split + shared folds
    feat_names = FEATURES + [f"{c}_missing" for c in INDICATOR_COLS]
    X, y = df[feat_names], df[TARGET]
    Xtr, Xte, ytr, yte = split_data(X, y)
    folds = make_folds(Xtr, ytr)

    # 7-8  Train + evaluate
    res_df, fitted = train_all(Xtr, ytr, Xte, yte, folds)

    # 9  Compare
    ranked = compare(res_df)

    # analyses on the fitted models
    figures += [
        analysis.plot_roc_curves(ranked, fitted, Xte, yte, FIG_DIR),
        analysis.plot_confusion_best(ranked, fitted, Xte, yte,
                                     FIG_DIR, RES_DIR),
        *analysis.plot_feature_importance(fitted, feat_names, FIG_DIR),
        *analysis.shap_summary(fitted, Xte, FIG_DIR),
        analysis.plot_comparison_chart(ranked, METRICS, FIG_DIR),
    ]
    mcn = analysis.mcnemar_test(ranked, fitted, Xte, yte, RES_DIR)

    hygiene = {
        "Samples": len(df),
        "Missing before imputation": int(raw[FEATURES].isna().sum().sum()),
        "Missing after imputation": int(df.isna().sum().sum()),
        "Class ratio (minority/majority)":
            f"{ratio:.3f} (tolerance {MIN_CLASS_RATIO})",
        "Train / test rows": f"{len(Xtr)} / {len(Xte)}",
        "CV folds": f"{len(folds)} (shared by all models)",
        "McNemar (top 2)": f"{mcn['Model_1']} vs {mcn['Model_2']}, "
                           f"p = {mcn['p_value']:.4f}",
    }
    write_report(ranked, hygiene, [f for f in figures if f],
                 os.path.join(RES_DIR, "report.md"))

    bname, bauc = save_best(ranked, fitted)

    # ── Final summary ──────────────────────────────────────────────────
    print("\n" + "=" * 72)
    print("PIPELINE COMPLETE")
    print("=" * 72)
    print(f"  Best Model  : {bname}")
    print(f"  ROC-AUC     : {bauc:.4f}")
    print(f"  Model file  : {MODEL_PATH}")
    print(f"  Figures     : {FIG_DIR}/")
    print(f"  Results     : {RES_DIR}/")
    print(f"    • model_comparison.csv")
    print(f"    • report.md")
    print(f"    • classification_report.txt")
    print(f"    • mcnemar_test.csv")
    print("=" * 72 + "\n")


if __name__ == "__main__":
    main()
