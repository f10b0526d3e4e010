"""
=============================================================================
Water Potability: Exploration Figures & Post-Fit Analyses

Exploration (before the split):
  1. Missing values per measurement
  2. Class balance
  3. Measurement distributions by potability
  4. Correlation matrix

Post-fit (on the held-out set):
  5. ROC curves, all models
  6. Confusion matrix + Sensitivity/Specificity for the best model
  7. Feature importance (tree ensembles + cross-model comparison)
  8. SHAP explainability (XGBoost)
  9. McNemar's test between the top two models
 10. Metric comparison bar chart

Every plotting function saves a PNG @ 300 dpi and returns its path.
=============================================================================
"""

# ── Imports ─────────────────────────────────────────────────────────────────
import os

import numpy as np
import pandas as pd

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import seaborn as sns

import shap
from scipy.stats import chi2 as chi2_dist
from mlxtend.evaluate import mcnemar_table

from sklearn.pipeline import Pipeline
from sklearn.metrics import (
    roc_auc_score, roc_curve, classification_report, confusion_matrix,
)

# Publication style
plt.rcParams.update({
    "font.family":     "serif",
    "font.size":       12,
    "axes.titlesize":  14,
    "axes.labelsize":  13,
    "xtick.labelsize": 11,
    "ytick.labelsize": 11,
    "legend.fontsize": 10,
    "figure.dpi":      150,
    "savefig.dpi":     300,
    "savefig.bbox":    "tight",
})

CLASS_NAMES   = ["Not potable", "Potable"]
CLASS_PALETTE = {0: "#DD3D2D", 1: "#364B9A"}
TREE_MODELS   = ["Random Forest", "XGBoost", "LightGBM"]


def _section(title):
    print(f"\n{'═'*72}\n  {title}\n{'═'*72}")


def _save(fig, out_dir, name):
    p = os.path.join(out_dir, name)
    fig.savefig(p)
    plt.close(fig)
    print(f"  Saved → {p}")
    return p


def _unwrap(model):
    """Refit estimator of a search (or the model itself)."""
    return getattr(model, "best_estimator_", model)


def _final_step(model):
    est = _unwrap(model)
    return est[-1] if isinstance(est, Pipeline) else est


def _transform(model, X):
    """Apply every step before the classifier."""
    est = _unwrap(model)
    return est[:-1].transform(X) if isinstance(est, Pipeline) else np.asarray(X)


# ═══════════════════════════════════════════════════════════════════════════
#  EXPLORATION
# ═══════════════════════════════════════════════════════════════════════════
def plot_missingness(df, out_dir):
    """Missing-value counts per column, before imputation."""
    counts = df.isna().sum().sort_values(ascending=False)
    print("  Missing values per column:")
    print(counts.to_string())

    fig, ax = plt.subplots(figsize=(9, 5))
    sns.barplot(x=counts.values, y=counts.index, color="#457B9D", ax=ax)
    for i, n in enumerate(counts.values):
        ax.text(n, i, f" {int(n)} ({n/len(df)*100:.1f}%)", va="center",
                fontsize=9)
    ax.set_xlabel("Missing values")
    ax.set_title("Missing Values per Measurement", fontweight="bold")
    fig.tight_layout()
    return _save(fig, out_dir, "01_missing_values.png")


def plot_class_balance(y, out_dir):
    counts = y.value_counts().reindex([0, 1], fill_value=0)

    fig, ax = plt.subplots(figsize=(6, 5))
    sns.barplot(x=[CLASS_NAMES[c] for c in counts.index], y=counts.values,
                hue=[CLASS_NAMES[c] for c in counts.index],
                palette=[CLASS_PALETTE[c] for c in counts.index],
                legend=False, ax=ax)
    for i, n in enumerate(counts.values):
        ax.text(i, n, f"n={int(n)}\n({n/counts.sum()*100:.1f}%)",
                ha="center", va="bottom", fontsize=9)
    ax.set_ylabel("Number of Samples")
    ax.set_title("Distribution of Samples by Potability", fontweight="bold")
    ax.set_ylim(0, counts.max() * 1.15)
    fig.tight_layout()
    return _save(fig, out_dir, "02_class_balance.png")


def plot_distributions(df, features, target, out_dir):
    """Histogram + KDE of each measurement, split by class."""
    ncols = 3
    nrows = int(np.ceil(len(features) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(15, 4 * nrows))
    axes = np.atleast_1d(axes).ravel()

    for ax, col in zip(axes, features):
        sns.histplot(data=df, x=col, hue=target, kde=True, stat="density",
                     common_norm=False, palette=CLASS_PALETTE, alpha=.45,
                     ax=ax)
        ax.set_title(col)
        ax.set_ylabel("")
    for ax in axes[len(features):]:
        ax.set_visible(False)

    fig.suptitle("Measurement Distributions by Potability",
                 fontweight="bold", y=1.01)
    fig.tight_layout()
    return _save(fig, out_dir, "03_distributions.png")


def plot_correlations(df, out_dir):
    corr = df.corr(numeric_only=True)

    fig, ax = plt.subplots(figsize=(11, 9))
    sns.heatmap(corr, annot=True, fmt=".2f",
                cmap=sns.color_palette("coolwarm", as_cmap=True),
                vmin=-1.0, vmax=1.0, square=True, linewidths=.5, ax=ax)
    ax.set_title("Correlation Matrix", fontweight="bold")
    fig.tight_layout()
    return _save(fig, out_dir, "04_correlation_matrix.png")


# ═══════════════════════════════════════════════════════════════════════════
#  ROC CURVES
# ═══════════════════════════════════════════════════════════════════════════
def plot_roc_curves(ranked, fitted, Xte, yte, out_dir):
    """ROC curves for every ranked model on one axis."""
    _section("ANALYSIS : ROC CURVES")

    names  = ranked["Model"].tolist()
    colors = sns.color_palette("husl", len(names))

    fig, ax = plt.subplots(figsize=(8, 7))
    for name, c in zip(names, colors):
        ypr = fitted[name].predict_proba(Xte)[:, 1]
        fpr, tpr, _ = roc_curve(yte, ypr)
        auc = roc_auc_score(yte, ypr)
        ax.plot(fpr, tpr, color=c, lw=2, label=f"{name} (AUC = {auc:.4f})")

    ax.plot([0, 1], [0, 1], "k--", lw=1, alpha=.5, label="Random (AUC = 0.5000)")
    ax.set_xlabel("False Positive Rate")
    ax.set_ylabel("True Positive Rate")
    ax.set_title("Receiver Operating Characteristic", fontweight="bold")
    ax.legend(loc="lower right", framealpha=.9)
    ax.set_xlim(-0.01, 1.01); ax.set_ylim(-0.01, 1.01)
    ax.grid(alpha=.25)
    fig.tight_layout()
    return _save(fig, out_dir, "05_roc_curves.png")


# ═══════════════════════════════════════════════════════════════════════════
#  CONFUSION MATRIX + SENSITIVITY / SPECIFICITY
# ═══════════════════════════════════════════════════════════════════════════
def plot_confusion_best(ranked, fitted, Xte, yte, out_dir, res_dir):
    """Best-model confusion matrix with Sensitivity and Specificity;
    also writes the classification report."""
    _section("ANALYSIS : CONFUSION MATRIX (best model)")

    best_name = ranked.iloc[0]["Model"]
    yp = fitted[best_name].predict(Xte)
    cm = confusion_matrix(yte, yp, labels=[0, 1])
    TN, FP, FN, TP = cm.ravel()

    sensitivity = TP / (TP + FN) if (TP + FN) else 0.0
    specificity = TN / (TN + FP) if (TN + FP) else 0.0
    print(f"  Best Model  : {best_name}")
    print(f"  Sensitivity : {sensitivity:.4f}   Specificity : {specificity:.4f}")
    print(f"  TP={TP}  FP={FP}  FN={FN}  TN={TN}")

    fig, ax = plt.subplots(figsize=(6, 5))
    sns.heatmap(cm, annot=True, fmt="d", cmap="Blues",
                xticklabels=CLASS_NAMES, yticklabels=CLASS_NAMES,
                linewidths=.8, linecolor="white", ax=ax,
                annot_kws={"size": 16, "weight": "bold"})
    ax.set_xlabel("Predicted Label")
    ax.set_ylabel("True Label")
    ax.set_title(f"Confusion Matrix — {best_name}", fontweight="bold")
    ax.text(2.6, 1.0,
            f"Sensitivity = {sensitivity:.4f}\nSpecificity = {specificity:.4f}",
            fontsize=10, family="monospace", verticalalignment="center",
            bbox=dict(boxstyle="round,pad=0.4", fc="#f0f0f0", ec="gray"))
    fig.tight_layout()
    p = _save(fig, out_dir, "06_confusion_matrix_best.png")

    rpt = classification_report(yte, yp, labels=[0, 1],
                                target_names=CLASS_NAMES, zero_division=0)
    fp = os.path.join(res_dir, "classification_report.txt")
    with open(fp, "w", encoding="utf-8") as f:
        f.write(f"Classification Report — {best_name}\n{'='*50}\n{rpt}\n\n")
        f.write(f"Sensitivity : {sensitivity:.4f}\n")
        f.write(f"Specificity : {specificity:.4f}\n")
    print(f"  Saved → {fp}")
    return p


# ═══════════════════════════════════════════════════════════════════════════
#  FEATURE IMPORTANCE  (tree ensembles + comparison)
# ═══════════════════════════════════════════════════════════════════════════
def plot_feature_importance(fitted, feat_names, out_dir, top_n=10):
    """Per-model bar plots and a normalised cross-model heatmap."""
    _section("ANALYSIS : FEATURE IMPORTANCE")

    paths, importance = [], {}
    palettes = ["Blues_d", "Oranges_d", "Greens_d"]

    for name, pal in zip(TREE_MODELS, palettes):
        if name not in fitted:
            continue
        imp = np.asarray(_final_step(fitted[name]).feature_importances_,
                         dtype=float)
        idx = np.argsort(imp)[::-1][:top_n]
        top_names = [feat_names[j] for j in idx]
        importance[name] = pd.Series(imp, index=feat_names)

        fig, ax = plt.subplots(figsize=(9, 5))
        sns.barplot(x=imp[idx], y=top_names, hue=top_names, palette=pal,
                    legend=False, ax=ax)
        ax.set_xlabel("Feature Importance")
        ax.set_title(f"Top Features — {name}", fontweight="bold")
        fig.tight_layout()
        paths.append(_save(fig, out_dir,
            f"07_feature_importance_{name.lower().replace(' ', '_')}.png"))

    if len(importance) >= 2:
        heat = pd.DataFrame(importance)
        heat = heat.div(heat.max(axis=0), axis=1).fillna(0)
        heat = heat.loc[heat.max(axis=1).sort_values(ascending=False).index]

        fig, ax = plt.subplots(figsize=(8, max(5, len(heat) * 0.4)))
        sns.heatmap(heat, annot=True, fmt=".2f", cmap="YlOrRd",
                    linewidths=.5, ax=ax)
        ax.set_title("Cross-Model Feature Importance", fontweight="bold")
        ax.set_xlabel("Model"); ax.set_ylabel("Feature")
        fig.tight_layout()
        paths.append(_save(fig, out_dir,
                           "07_feature_importance_comparison.png"))

    return paths


# ═══════════════════════════════════════════════════════════════════════════
#  SHAP EXPLAINABILITY
# ═══════════════════════════════════════════════════════════════════════════
def shap_summary(fitted, Xte, out_dir, model_name="XGBoost", max_samples=500):
    """SHAP beeswarm + bar plots for one tree model."""
    _section("ANALYSIS : SHAP EXPLAINABILITY")

    if model_name not in fitted:
        print(f"  {model_name} not fitted, skipping SHAP.")
        return []

    Xs = Xte.iloc[:max_samples]
    Xs_df = pd.DataFrame(_transform(fitted[model_name], Xs),
                         columns=Xs.columns)
    explainer = shap.TreeExplainer(_final_step(fitted[model_name]))
    shap_vals = explainer.shap_values(Xs_df.to_numpy())

    # binary explainers may return [class0, class1] or (n, f, 2)
    if isinstance(shap_vals, list):
        shap_vals = shap_vals[1]
    elif np.ndim(shap_vals) == 3:
        shap_vals = shap_vals[:, :, 1]

    paths = []
    for kind, fname in [("dot", "08_shap_summary.png"),
                        ("bar", "08_shap_bar.png")]:
        shap.summary_plot(shap_vals, Xs_df, plot_type=kind,
                          max_display=15, show=False)
        fig = plt.gcf()
        fig.suptitle(f"SHAP — {model_name}", fontweight="bold")
        paths.append(_save(fig, out_dir, fname))
    plt.close("all")
    return paths


# ═══════════════════════════════════════════════════════════════════════════
#  STATISTICAL COMPARISON  (McNemar's test)
# ═══════════════════════════════════════════════════════════════════════════
def mcnemar_test(ranked, fitted, Xte, yte, res_dir, alpha=0.05):
    """McNemar's test between the top two models.

    Uses the continuity-corrected chi-squared statistic on the discordant
    cells of the mlxtend contingency table. Returns the result row.
    """
    _section("ANALYSIS : McNEMAR'S TEST (top 2)")

    m1_name = ranked.iloc[0]["Model"]
    m2_name = ranked.iloc[1]["Model"]
    tb = mcnemar_table(y_target=np.asarray(yte),
                       y_model1=np.asarray(fitted[m1_name].predict(Xte)),
                       y_model2=np.asarray(fitted[m2_name].predict(Xte)))

    b = int(tb[0, 1])   # m1 correct, m2 wrong
    c = int(tb[1, 0])   # m1 wrong, m2 correct
    if (b + c) == 0:
        chi2, pval = 0.0, 1.0
    else:
        chi2 = (abs(b - c) - 1) ** 2 / (b + c)
        pval = float(chi2_dist.sf(chi2, df=1))

    print(f"  {m1_name} vs {m2_name}")
    print(f"  Both correct={int(tb[0, 0])}  M1 only={b}  M2 only={c}  "
          f"Both wrong={int(tb[1, 1])}")
    print(f"  χ² = {chi2:.4f}   p = {pval:.6f}   "
          f"significant at {alpha}: {pval < alpha}")

    result = {
        "Model_1": m1_name, "Model_2": m2_name,
        "Chi2": chi2, "p_value": pval, "Significant": pval < alpha,
        "M1_only_correct": b, "M2_only_correct": c,
    }
    fp = os.path.join(res_dir, "mcnemar_test.csv")
    pd.DataFrame([result]).to_csv(fp, index=False)
    print(f"  Saved → {fp}")
    return result


# ═══════════════════════════════════════════════════════════════════════════
#  MODEL COMPARISON BAR CHART
# ═══════════════════════════════════════════════════════════════════════════
def plot_comparison_chart(ranked, metrics, out_dir):
    """Grouped horizontal bar chart of all models."""
    _section("ANALYSIS : MODEL COMPARISON BAR CHART")

    df = ranked.sort_values("ROC-AUC", ascending=True)
    colors = sns.color_palette("Set2", len(metrics))

    fig, ax = plt.subplots(figsize=(14, 10))
    y = np.arange(len(df)); h = 0.8 / len(metrics)
    for i, (m, c) in enumerate(zip(metrics, colors)):
        offset = (i - (len(metrics) - 1) / 2) * h
        ax.barh(y + offset, df[m], height=h, label=m, color=c, alpha=.85)
    ax.set_yticks(y); ax.set_yticklabels(df["Model"])
    ax.set_xlabel("Score")
    ax.set_title("Model Performance Comparison", fontweight="bold")
    ax.legend(loc="lower right")
    ax.set_xlim(0, 1.05); ax.grid(axis="x", alpha=.3)
    fig.tight_layout()
    return _save(fig, out_dir, "09_model_comparison.png")
