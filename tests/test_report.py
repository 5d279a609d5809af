import numpy as np
import pytest

from methylflux.analysis.report import INDEX_NAME, RankedReport


@pytest.fixture
def report():
    ids = ["p0", "p1", "p2", "p3", "p4", "p5"]
    return RankedReport.from_arrays(
        ids,
        effect=np.array([0.5, -2.0, 1.5, 2.0, 0.1, 3.0]),
        ave_expr=np.array([1.0, 2.0, 3.0, 4.0, 5.0, 6.0]),
        t=np.array([1.0, -6.0, 4.0, 6.0, 0.2, np.nan]),
        p=np.array([0.30, 0.001, 0.01, 0.001, 0.9, np.nan]),
        adj_p=np.array([0.45, 0.003, 0.02, 0.003, 0.9, np.nan]),
        lods=np.array([-4.0, 3.0, 1.0, 3.0, -6.0, np.nan]),
        excluded=np.array([False, False, False, False, False, True]),
        coefficient="groupB",
        s2_prior=0.2,
        df_prior=4.0,
    )


def test_rank_order_with_ties(report):
    # p1 and p3 tie on both p-values and |logFC|: input order decides
    assert report.table.index.tolist() == ["p1", "p3", "p2", "p0", "p4", "p5"]
    assert report.table.index.name == INDEX_NAME


def test_larger_effect_breaks_pvalue_ties():
    rep = RankedReport.from_arrays(
        ["a", "b"],
        effect=np.array([0.5, -1.5]),
        ave_expr=np.zeros(2),
        t=np.array([3.0, -3.0]),
        p=np.array([0.01, 0.01]),
        adj_p=np.array([0.02, 0.02]),
        lods=np.zeros(2),
        excluded=np.zeros(2, dtype=bool),
        coefficient="x",
    )
    assert rep.table.index.tolist() == ["b", "a"]


def test_excluded_rows_get_null_statistics(report):
    row = report.table.loc["p5"]
    assert row["excluded"]
    assert row[["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]].isna().all()
    assert report.excluded_ids == ["p5"]
    assert report.n_excluded == 1
    assert len(report.scored) == 5
    assert len(report) == 6


def test_top_table(report):
    assert report.top_table(n=2).index.tolist() == ["p1", "p3"]
    assert report.top_table(n=None, p_value=0.05).index.tolist() == ["p1", "p3", "p2"]
    assert report.top_table(n=None, p_value=0.05, lfc=1.8).index.tolist() == ["p1", "p3"]
    # excluded features are never listed
    assert "p5" not in report.top_table(n=None).index


def test_decide_tests(report):
    calls = report.decide_tests(p_value=0.05)
    assert calls.index.tolist() == ["p1", "p3", "p2", "p0", "p4", "p5"]
    assert calls.tolist() == [-1, 1, 1, 0, 0, 0]
    assert calls.name == "groupB"
    assert calls.loc["p1"] == -1
    assert calls.loc["p5"] == 0

    strict = report.decide_tests(p_value=0.05, lfc=1.8)
    assert strict.loc["p2"] == 0


def test_summarize(report):
    s = report.summarize(p_value=0.05)
    assert s["n_up"] == 2
    assert s["n_down"] == 1
    assert s["n_features"] == 6
    assert s["n_scored"] == 5
    assert s["n_excluded"] == 1
    assert s["coefficient"] == "groupB"
    assert s["s2_prior"] == 0.2
    assert s["df_prior"] == 4.0


def test_report_is_frozen(report):
    with pytest.raises(AttributeError):
        report.coefficient = "other"
