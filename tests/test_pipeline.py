import os

import joblib
import numpy as np
import pandas as pd
import pytest
from sklearn.dummy import DummyClassifier

import potability_pipeline as pp
from conftest import make_samples, single_point


# ── loading & target ────────────────────────────────────────────────────────
def test_load_data_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        pp.load_data(str(tmp_path / "absent.csv"))


def test_load_data_rejects_wrong_schema(tmp_path):
    path = tmp_path / "bad.csv"
    make_samples().drop(columns=["Turbidity"]).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Turbidity"):
        pp.load_data(str(path))


def test_load_data_keeps_schema_columns(tmp_path):
    path = tmp_path / "water.csv"
    df = make_samples()
    df["extra"] = 1
    df.to_csv(path, index=False)
    loaded = pp.load_data(str(path))
    assert list(loaded.columns) == pp.FEATURES + [pp.TARGET]
    assert len(loaded) == len(df)


@pytest.mark.parametrize("labels", [
    ["0", "1", "1", "0"],
    ["no", "Yes", "YES", "No"],
    [0.0, 1.0, 1.0, 0.0],
    [False, True, True, False],
    ["not potable", "potable", "Potable", "Not Potable"],
])
def test_normalize_target_accepts_binary_labels(labels):
    df = pd.DataFrame({"ph": [7.0] * 4, pp.TARGET: labels})
    out = pp.normalize_target(df)
    assert out[pp.TARGET].tolist() == [0, 1, 1, 0]
    assert out[pp.TARGET].dtype == int


def test_normalize_target_drops_unlabelled_rows():
    df = pd.DataFrame({"ph": [7.0, 6.0, 8.0], pp.TARGET: [1, None, 0]})
    out = pp.normalize_target(df)
    assert out[pp.TARGET].tolist() == [1, 0]


def test_normalize_target_rejects_unknown_labels():
    df = pd.DataFrame({"ph": [7.0, 6.0], pp.TARGET: ["1", "maybe"]})
    with pytest.raises(ValueError, match="maybe"):
        pp.normalize_target(df)


# ── missingness & imputation ────────────────────────────────────────────────
def test_indicators_match_null_pattern(raw):
    flagged = pp.add_missingness_indicators(raw)
    for c in pp.INDICATOR_COLS:
        flag = flagged[f"{c}_missing"]
        assert set(flag.unique()) <= {0, 1}
        assert (flag == raw[c].isna().astype(int)).all()
    # source columns untouched
    pd.testing.assert_frame_equal(flagged[raw.columns], raw)


def test_indicators_survive_imputation(raw):
    flagged = pp.add_missingness_indicators(raw)
    out = pp.impute(flagged, n_imputations=1)
    for c in pp.INDICATOR_COLS:
        assert (out[f"{c}_missing"] == raw[c].isna().astype(int)).all()


def test_impute_leaves_no_missing_values(raw):
    assert raw[pp.FEATURES].isna().any().any()
    out = pp.impute(pp.add_missingness_indicators(raw), n_imputations=2)
    assert out.isna().sum().sum() == 0
    assert out.shape == (len(raw), raw.shape[1] + len(pp.INDICATOR_COLS))


def test_impute_keeps_observed_values(raw):
    out = pp.impute(raw, n_imputations=1)
    observed = raw[pp.FEATURES].notna()
    mask = observed.to_numpy()
    np.testing.assert_allclose(out[pp.FEATURES].to_numpy()[mask],
                               raw[pp.FEATURES].to_numpy()[mask])


def test_pmm_fills_with_observed_donor_values(raw):
    completed = pp.impute_pmm(raw, pp.FEATURES, n_imputations=3)
    assert len(completed) == 3
    for filled in completed:
        for c in ["ph", "Sulfate", "Trihalomethanes"]:
            miss = raw[c].isna()
            donors = set(raw.loc[~miss, c])
            assert set(filled.loc[miss, c]) <= donors


def test_impute_pmm_rejects_all_missing_column(raw):
    raw["Turbidity"] = np.nan
    with pytest.raises(ValueError, match="Turbidity"):
        pp.impute_pmm(raw, pp.FEATURES, n_imputations=1)


def test_pmm_sets_vary_between_imputations(raw):
    df = raw.copy()
    for c in ["Sulfate", "Trihalomethanes"]:
        df[c] = df[c].fillna(df[c].mean())
    miss = df["ph"].isna()
    assert miss.sum() > 10

    completed = pp.impute_pmm(df, pp.FEATURES, n_imputations=10)
    draws = np.column_stack([filled.loc[miss, "ph"].to_numpy()
                             for filled in completed])
    # not every set is a copy of the first
    assert not (draws == draws[:, :1]).all()
    # parameters are redrawn each cycle, so a cell is not held to a fixed
    # neighbourhood of n_donors candidates
    distinct = max(len(set(row)) for row in draws)
    assert distinct > pp.PMM_DONORS


def test_impute_pmm_is_seeded(raw):
    a = pp.impute_pmm(raw, pp.FEATURES, n_imputations=2)
    b = pp.impute_pmm(raw, pp.FEATURES, n_imputations=2)
    for x, y in zip(a, b):
        pd.testing.assert_frame_equal(x, y)
    assert a[0].index.equals(raw.index)


def test_impute_returns_selected_set(raw):
    completed = pp.impute_pmm(raw, pp.FEATURES, n_imputations=2)
    out = pp.impute(raw, n_imputations=2, index=1)
    np.testing.assert_array_equal(out[pp.FEATURES].to_numpy(),
                                  completed[1].to_numpy())


def test_summarize_imputations_one_row_per_set(raw):
    mask = raw[pp.FEATURES].isna()
    completed = pp.impute_pmm(raw, pp.FEATURES, n_imputations=3)
    summary = pp.summarize_imputations(completed, mask)
    assert list(summary.columns) == ["ph", "Sulfate", "Trihalomethanes"]
    assert list(summary.index) == ["set 1", "set 2", "set 3"]
    assert summary.notna().all().all()
    expected = completed[2].loc[mask["ph"], "ph"].mean()
    assert summary.loc["set 3", "ph"] == pytest.approx(expected)


# ── balance, split, folds ───────────────────────────────────────────────────
def test_class_balance_within_tolerance(raw):
    ratio, ok = pp.check_class_balance(raw[pp.TARGET])
    assert ratio == pytest.approx(120 / 180)
    assert ok


def test_class_balance_flags_skew():
    y = pd.Series([0] * 90 + [1] * 10)
    ratio, ok = pp.check_class_balance(y)
    assert ratio == pytest.approx(10 / 90)
    assert not ok
    assert pp.check_class_balance(pd.Series([1, 1, 1])) == (0.0, False)


def test_split_is_disjoint_and_complete(prepared):
    Xtr, Xte, X = prepared["Xtr"], prepared["Xte"], prepared["X"]
    assert set(Xtr.index).isdisjoint(Xte.index)
    assert set(Xtr.index) | set(Xte.index) == set(X.index)
    assert len(Xte) == pytest.approx(len(X) * pp.TEST_SIZE, abs=1)


def test_split_is_stratified(prepared):
    ytr, yte = prepared["ytr"], prepared["yte"]
    assert ytr.mean() == pytest.approx(yte.mean(), abs=0.05)


def test_folds_partition_training_rows(prepared):
    folds = prepared["folds"]
    assert len(folds) == pp.N_FOLDS
    val = np.concatenate([v for _, v in folds])
    assert sorted(val) == list(range(len(prepared["Xtr"])))
    for tr, va in folds:
        assert set(tr).isdisjoint(va)


def test_make_folds_is_deterministic(prepared):
    again = pp.make_folds(prepared["Xtr"], prepared["ytr"])
    for (a_tr, a_va), (b_tr, b_va) in zip(prepared["folds"], again):
        np.testing.assert_array_equal(a_tr, b_tr)
        np.testing.assert_array_equal(a_va, b_va)


# ── models & training ───────────────────────────────────────────────────────
def test_get_models_covers_eight_families():
    models = pp.get_models()
    assert list(models) == [
        "Logistic Regression", "Naive Bayes", "SVM (RBF)", "KNN",
        "Random Forest", "XGBoost", "LightGBM", "Neural Network",
    ]
    for clf, grid in models.values():
        assert grid and all(k.startswith("clf__") for k in grid)
        assert hasattr(clf, "predict_proba")


def test_fit_model_rejects_wrong_fold_count(prepared):
    clf, grid = pp.get_models()["Naive Bayes"]
    with pytest.raises(ValueError, match="folds"):
        pp.fit_model("Naive Bayes", clf, grid, prepared["Xtr"],
                     prepared["ytr"], prepared["folds"][:3], n_jobs=1)


def test_fit_model_in_worker_pool(prepared):
    clf, grid = pp.get_models()["Logistic Regression"]
    search = pp.fit_model("Logistic Regression", clf, grid, prepared["Xtr"],
                          prepared["ytr"], prepared["folds"], n_jobs=2)
    assert search.cv is prepared["folds"]
    assert len(search.cv_results_["params"]) == len(grid["clf__C"])


def test_worker_pool_shuts_down_once_per_model(prepared, monkeypatch):
    calls = []
    monkeypatch.setattr(pp, "_shutdown_workers", lambda: calls.append(1))
    clf, grid = pp.get_models()["Naive Bayes"]
    pp.fit_model("Naive Bayes", clf, grid, prepared["Xtr"], prepared["ytr"],
                 prepared["folds"], n_jobs=1)
    assert calls == [1]


def test_worker_pool_shuts_down_on_error(monkeypatch):
    calls = []
    monkeypatch.setattr(pp, "_shutdown_workers", lambda: calls.append(1))
    with pytest.raises(RuntimeError):
        with pp.worker_pool(1) as workers:
            assert workers == 1
            raise RuntimeError("fit failed")
    assert calls == [1]


def test_every_model_uses_the_same_folds(prepared, trained):
    _, fitted = trained
    assert len(fitted) == 8
    for search in fitted.values():
        assert search.cv is prepared["folds"]


def test_result_records_hold_six_metrics_in_range(trained):
    results, _ = trained
    assert len(results) == 8
    for m in pp.METRICS:
        assert results[m].notna().all()
        assert results[m].between(0, 1).all()
    assert results["CV ROC-AUC"].between(0, 1).all()
    np.testing.assert_allclose(results["Sensitivity"], results["Recall"])


def test_evaluate_model_handles_single_class_predictions(prepared):
    clf = DummyClassifier(strategy="constant", constant=0)
    clf.fit(prepared["Xtr"], prepared["ytr"])
    m = pp.evaluate_model(clf, prepared["Xte"], prepared["yte"])
    assert set(m) == set(pp.METRICS)
    assert m["Precision"] == 0.0
    assert m["Sensitivity"] == 0.0
    assert m["Specificity"] == 1.0
    assert m["ROC-AUC"] == 0.5


# ── comparison, report, persistence ─────────────────────────────────────────
def test_compare_ranks_by_auc(trained, tmp_path):
    results, _ = trained
    ranked = pp.compare(results, res_dir=str(tmp_path))
    assert ranked["ROC-AUC"].is_monotonic_decreasing
    assert ranked.index[0] == 1
    saved = pd.read_csv(tmp_path / "model_comparison.csv")
    assert saved["Model"].tolist() == ranked["Model"].tolist()


def test_write_report(trained, tmp_path):
    results, _ = trained
    ranked = pp.compare(results, res_dir=str(tmp_path))
    fig = tmp_path / "figures" / "05_roc_curves.png"
    fig.parent.mkdir()
    fig.write_bytes(b"")
    path = pp.write_report(ranked, {"Samples": 300}, [str(fig)],
                           str(tmp_path / "report.md"))
    text = open(path, encoding="utf-8").read()
    assert "**Samples**: 300" in text
    for name in ranked["Model"]:
        assert name in text
    assert "](figures/05_roc_curves.png)" in text


def test_save_best_writes_refit_estimator(trained, prepared, tmp_path):
    results, fitted = trained
    ranked = pp.compare(results, res_dir=str(tmp_path))
    path = tmp_path / "best.pkl"
    name, auc = pp.save_best(ranked, fitted, path=str(path))
    assert name == ranked.iloc[0]["Model"]
    model = joblib.load(path)
    assert model.predict(prepared["Xte"]).shape == (len(prepared["Xte"]),)


def test_main_end_to_end(tmp_path, monkeypatch):
    os.makedirs(tmp_path / "data")
    csv = tmp_path / "data" / "water_potability.csv"
    make_samples().to_csv(csv, index=False)

    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(pp, "DATA_PATH", str(csv))
    fast = single_point(pp.get_models())
    monkeypatch.setattr(pp, "get_models", lambda: fast)

    pp.main()

    for f in ["results/model_comparison.csv", "results/report.md",
              "results/classification_report.txt", "results/mcnemar_test.csv",
              "models/best_potability_model.pkl",
              "figures/05_roc_curves.png"]:
        assert (tmp_path / f).exists(), f
