from __future__ import annotations

import numpy as np
from scipy.stats import norm
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests

# Accepted correction names -> statsmodels method names (BH is computed here).
CORRECTION_METHODS = {
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "fdr_bh": "fdr_bh",
    "BY": "fdr_by",
    "fdr_by": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
    "none": None,
}


def t_sf(x, df):
    """Student t upper tail, falling back to the normal where df is infinite."""
    x = np.asarray(x, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), x.shape)
    inf = np.isinf(df)
    out = t_dist.sf(x, np.where(inf, 1.0, df))
    if np.any(inf):
        out = np.where(inf, norm.sf(x), out)
    return out


def t_isf(q, df):
    """Inverse of t_sf."""
    q = np.asarray(q, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), q.shape)
    inf = np.isinf(df)
    out = t_dist.isf(q, np.where(inf, 1.0, df))
    if np.any(inf):
        out = np.where(inf, norm.isf(q), out)
    return out


def raw_stats_from_fit(
    *,
    effect: np.ndarray,
    stdu: float | np.ndarray,
    sigma: np.ndarray,
    df: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Shared primitive for ordinary and moderated statistics:
      se = stdu * sigma
      t  = effect / se
      p  = 2 * t.sf(|t|, df)
    Zero or non-finite standard errors and zero df give NaN t and p.
    """
    se = stdu * sigma
    with np.errstate(divide="ignore", invalid="ignore"):
        t = effect / se
    bad = ~np.isfinite(se) | (se == 0) | ~(df > 0)
    t = np.where(bad, np.nan, t)
    with np.errstate(invalid="ignore"):
        p = 2 * t_sf(np.abs(t), np.where(df > 0, df, 1.0))
    p = np.where(np.isnan(t), np.nan, p)
    return se, t, p


def bh_adjust(p: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg step-up adjusted p-values.

    NaN entries are not counted among the tests and stay NaN. The result
    keeps the input order.
    """
    p = np.asarray(p, dtype=np.float64)
    if p.ndim != 1:
        raise ValueError(f"Expected 1D p-value array, got shape {p.shape}")

    q = np.full_like(p, np.nan)
    ok = np.flatnonzero(~np.isnan(p))
    n = ok.size
    if n == 0:
        return q

    order = ok[np.argsort(p[ok], kind="stable")]
    ranks = np.arange(1, n + 1)
    scaled = p[order] * n / ranks
    # running minimum from the largest p downwards
    adjusted = np.minimum.accumulate(scaled[::-1])[::-1]
    q[order] = np.clip(adjusted, 0.0, 1.0)
    return q


def adjust_pvalues(p: np.ndarray, method: str = "BH") -> np.ndarray:
    """Multiple-testing correction of a p-value vector; NaN entries are left out."""
    if method not in CORRECTION_METHODS:
        raise ValueError(
            f"Unknown correction method {method!r}; use one of {sorted(CORRECTION_METHODS)}"
        )
    sm_method = CORRECTION_METHODS[method]
    p = np.asarray(p, dtype=np.float64)

    if sm_method == "fdr_bh":
        return bh_adjust(p)
    if sm_method is None:
        return p.copy()

    q = np.full_like(p, np.nan)
    ok = ~np.isnan(p)
    if ok.any():
        q[ok] = multipletests(p[ok], method=sm_method)[1]
    return q
