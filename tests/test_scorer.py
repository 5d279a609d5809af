"""End-to-end tests for score_features / score_differential."""

import threading

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest
from scipy import stats

from methylflux.analysis.errors import (
    DesignRankError,
    DimensionMismatchError,
    EmptyInputError,
    ScoringCancelledError,
)
from methylflux.analysis.report import REPORT_COLUMNS
from methylflux.analysis.scorer import score_differential, score_features
from methylflux.design.designmatrixbuilder import DesignSpecification

from conftest import two_group_design


def test_report_shape_and_columns(signal_matrix):
    report = score_features(signal_matrix, two_group_design(3, 3), 1)

    assert len(report) == 10
    assert list(report.table.columns) == REPORT_COLUMNS
    assert set(report.table.index) == set(signal_matrix.index)
    assert report.n_excluded == 0
    assert report.coefficient == "x1"


def test_shifted_features_rank_first(signal_matrix):
    report = score_features(signal_matrix, two_group_design(3, 3), 1)

    assert set(report.table.index[:2]) == {"sig1", "sig2"}
    npt.assert_allclose(report.table.loc["sig1", "logFC"], 5.0)
    npt.assert_allclose(report.table.loc["sig2", "logFC"], -5.0)
    assert report.table.loc["sig1", "t"] > 0 > report.table.loc["sig2", "t"]


def test_adjusted_pvalues_bounded_and_monotone(random_matrix):
    report = score_features(random_matrix, two_group_design(4, 4), 1)
    adj = report.table["adj.P.Val"].to_numpy()
    raw = report.table["P.Value"].to_numpy()

    assert np.all((adj >= 0) & (adj <= 1))
    assert np.all(adj >= raw - 1e-12)
    # rows are sorted by adjusted p-value
    assert np.all(np.diff(adj) >= 0)
    # sorted by raw p, adjusted values never decrease
    by_p = adj[np.argsort(raw, kind="stable")]
    assert np.all(np.diff(by_p) >= -1e-12)


def test_planted_signal_recovered(random_matrix):
    report = score_features(random_matrix, two_group_design(4, 4), 1)
    top = report.top_table(n=30).index
    shifted = {f"cg{i:05d}" for i in range(30)}
    assert len(shifted & set(top)) >= 20
    assert report.df_prior > 0


def test_deterministic(random_matrix):
    design = two_group_design(4, 4)
    first = score_features(random_matrix, design, 1)
    second = score_features(random_matrix, design, 1)
    pd.testing.assert_frame_equal(first.table, second.table)
    assert first.summary == second.summary


def test_threads_do_not_change_results(random_matrix):
    design = two_group_design(4, 4)
    serial = score_features(random_matrix, design, 1, batch_size=37)
    threaded = score_features(random_matrix, design, 1, batch_size=37, n_workers=4)
    pd.testing.assert_frame_equal(serial.table, threaded.table)


def test_confounded_design_rejected(signal_matrix):
    g = np.repeat([0.0, 1.0], 3)
    design = np.column_stack([np.ones(6), g, g])
    with pytest.raises(DesignRankError):
        score_features(signal_matrix, design, 1)


def test_nonfinite_feature_excluded_not_fatal(signal_matrix):
    matrix = signal_matrix.copy()
    matrix.loc["noise3", "B2"] = np.nan
    matrix.loc["noise5", "A1"] = np.inf

    report = score_features(matrix, two_group_design(3, 3), 1)

    assert len(report) == 10
    assert report.n_excluded == 2
    assert len(report.scored) == 8
    assert report.table.index[-2:].tolist() == ["noise3", "noise5"]
    assert sorted(report.excluded_ids) == ["noise3", "noise5"]
    excluded_stats = report.table.loc[["noise3", "noise5"], ["logFC", "t", "P.Value", "adj.P.Val", "B"]]
    assert excluded_stats.isna().all().all()
    assert report.scored["adj.P.Val"].notna().all()


def test_excluded_features_do_not_affect_others(signal_matrix):
    design = two_group_design(3, 3)
    matrix = signal_matrix.copy()
    matrix.loc["noise3", "B2"] = np.nan

    with_bad = score_features(matrix, design, 1)
    without = score_features(signal_matrix.drop(index="noise3"), design, 1)

    pd.testing.assert_frame_equal(with_bad.scored, without.table, check_exact=False, rtol=1e-10)
    assert with_bad.s2_prior == pytest.approx(without.s2_prior, rel=1e-12)


def test_sample_count_mismatch(signal_matrix):
    with pytest.raises(DimensionMismatchError):
        score_features(signal_matrix, two_group_design(3, 4), 1)


def test_empty_matrix():
    with pytest.raises(EmptyInputError):
        score_features(np.empty((0, 6)), two_group_design(3, 3), 1)


def test_unknown_options(signal_matrix):
    design = two_group_design(3, 3)
    with pytest.raises(ValueError, match="moderation"):
        score_features(signal_matrix, design, 1, moderation="bayes")
    with pytest.raises(ValueError, match="correction"):
        score_features(signal_matrix, design, 1, correction="qvalue")
    with pytest.raises(KeyError):
        score_features(signal_matrix, design, "group")


def test_cancellation_returns_nothing(random_matrix):
    event = threading.Event()
    event.set()
    with pytest.raises(ScoringCancelledError):
        score_features(random_matrix, two_group_design(4, 4), 1, batch_size=50, cancel_event=event)


def test_unmoderated_matches_student_t(signal_matrix):
    report = score_features(signal_matrix, two_group_design(3, 3), 1, moderation="none")

    for fid, row in signal_matrix.iterrows():
        a, b = row.to_numpy()[:3], row.to_numpy()[3:]
        ref = stats.ttest_ind(b, a, equal_var=True)
        npt.assert_allclose(report.table.loc[fid, "t"], ref.statistic, rtol=1e-8)
        npt.assert_allclose(report.table.loc[fid, "P.Value"], ref.pvalue, rtol=1e-8)
    assert report.table["B"].isna().all()
    assert report.summary["moderation"] == "none"


def test_moderated_t_uses_pooled_variance(random_matrix):
    design = two_group_design(4, 4)
    plain = score_features(random_matrix, design, 1, moderation="none")
    moderated = score_features(random_matrix, design, 1)

    assert np.isfinite(moderated.s2_prior)
    ids = random_matrix.index
    # moderated and ordinary t share sign and effect size
    npt.assert_allclose(moderated.table.loc[ids, "logFC"], plain.table.loc[ids, "logFC"])
    same_sign = np.sign(moderated.table.loc[ids, "t"]) == np.sign(plain.table.loc[ids, "t"])
    assert same_sign.all()


def test_design_ids_realigned(signal_matrix):
    X = two_group_design(3, 3)
    order = [3, 0, 4, 1, 5, 2]
    shuffled = pd.DataFrame(X[order], index=signal_matrix.columns[order], columns=["Intercept", "B"])
    aligned = pd.DataFrame(X, index=signal_matrix.columns, columns=["Intercept", "B"])

    r1 = score_features(signal_matrix, shuffled, "B")
    r2 = score_features(signal_matrix, aligned, "B")
    pd.testing.assert_frame_equal(r1.table, r2.table)


def test_design_with_foreign_ids_rejected(signal_matrix):
    design = DesignSpecification.from_matrix(two_group_design(3, 3), sample_ids=list("uvwxyz"))
    with pytest.raises(DimensionMismatchError, match="Sample ids differ"):
        score_features(signal_matrix, design, 1)


def test_score_differential_from_annotation(signal_matrix, annotation):
    report = score_differential(
        signal_matrix, annotation, [{"name": "status", "reference": "normal"}], "tumor_vs_normal"
    )
    baseline = score_features(signal_matrix, two_group_design(3, 3), 1)

    assert report.coefficient == "tumor_vs_normal"
    assert report.summary["design_columns"] == ["Intercept", "status[T.tumor]"]
    npt.assert_allclose(report.table.loc[signal_matrix.index, "t"],
                        baseline.table.loc[signal_matrix.index, "t"], rtol=1e-10)


def test_score_differential_with_continuous_covariate(signal_matrix, annotation):
    report = score_differential(signal_matrix, annotation, ["status", "age"], "status[T.tumor]")
    assert report.summary["design_columns"] == ["Intercept", "status[T.tumor]", "age"]
    assert report.summary["df_residual"] == 3
    assert len(report) == 10


def test_constant_feature_has_no_ordinary_t():
    matrix = np.array([
        [0.7] * 6,
        [1.0, 2.0, 3.0, 7.0, 8.0, 9.0],
        [0.0, 1.0, 0.0, 1.0, 0.0, 1.0],
    ])
    report = score_features(matrix, two_group_design(3, 3), 1, moderation="none")

    row = report.table.loc[0]
    assert not row["excluded"]
    assert np.isnan(row["t"])
    assert np.isnan(row["P.Value"])
    assert np.isnan(row["adj.P.Val"])
    assert report.table.loc[[1, 2], "t"].notna().all()
    assert report.table.index[-1] == 0


def test_all_constant_matrix_is_not_significant():
    matrix = np.repeat([[0.2], [0.5], [0.9], [1.0]], 6, axis=1)
    report = score_features(matrix, two_group_design(3, 3), 1)

    t = report.table["t"]
    adj = report.table["adj.P.Val"]
    assert (t.isna() | (t.abs() < 1e-6)).all()
    assert (adj.isna() | (adj > 0.99)).all()
    assert (report.decide_tests() == 0).all()
