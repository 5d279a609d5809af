import numpy as np
from scipy.special import polygamma, digamma

from methylflux.analysis.stats_ops import t_sf, t_isf
from methylflux.utils.utils import log_warning


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    # If df is scalar, broadcast it to shape of s2
    s2 = np.asarray(s2, dtype=np.float64)
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df)
    df = np.asarray(df, dtype=np.float64)

    mask = np.isfinite(s2) & (s2 >= 0) & np.isfinite(df) & (df > 1e-15)
    return s2[mask], df[mask]


def trigamma_inverse(y: float, tol: float = 1e-8) -> float:
    """Solve trigamma(x) = y for x > 0 (Newton iteration on 1/trigamma)."""
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if -delta / x < tol:
            break
    return float(x)


def fit_fdist(s2: np.ndarray, df1: np.ndarray) -> tuple[float, float]:
    """
    Moment estimation of a scaled F prior from sample variances.

    Returns (s20, df2): prior variance and prior degrees of freedom.
    df2 is 0 when there is nothing to pool and inf when the observed
    variances are no more dispersed than sampling noise alone explains.
    """
    x, df1 = squeeze_var_input_filter(s2, df1)
    n = x.size
    if n == 0:
        return np.nan, 0.0
    if n == 1:
        return float(x[0]), 0.0

    m = np.median(x)
    if m == 0:
        log_warning("More than half of residual variances are exactly zero: eBayes unreliable.")
        m = 1.0
    elif np.any(x == 0):
        log_warning("Zero sample variances detected, offset away from zero.")
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df1 / 2.0) + np.log(df1 / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, df1 / 2.0))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(df2)


def fit_fdist_moments(s2: np.ndarray, df1: np.ndarray) -> tuple[float, float]:
    """
    Cruder log-variance moment estimator (no digamma correction).
    Same return convention as fit_fdist.
    """
    x, _ = squeeze_var_input_filter(s2, df1)
    x = x[x > 0]
    if x.size < 2:
        return (float(x[0]), 0.0) if x.size == 1 else (np.nan, 0.0)

    lns2 = np.log(x)
    mean_ln = np.mean(lns2)
    var_ln = max(np.var(lns2, ddof=1), 1e-6)

    d0 = max(2 * ((1 / var_ln) - 1), 1.0)
    s20 = np.exp(mean_ln - np.log(d0 / max(d0 - 2, 1e-6)))
    return float(s20), float(d0)


def tmixture_vector(
    t_stat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float = 0.01,
    v0_lim: tuple[float, float] | None = None,
) -> float:
    """
    Estimate the prior variance of a non-zero coefficient from the largest
    moderated t-statistics, assuming `proportion` of features differ.

    Returns NaN when there are too few features to select from.
    """
    t_stat = np.asarray(t_stat, dtype=np.float64)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), t_stat.shape).copy()

    ok = np.isfinite(t_stat) & np.isfinite(stdev_unscaled)
    t_stat, stdev_unscaled, df = np.abs(t_stat[ok]), stdev_unscaled[ok], df[ok]

    n_features = t_stat.size
    n_target = int(np.ceil(proportion / 2 * n_features))
    if n_target < 1:
        return np.nan
    p = max(n_target / n_features, proportion)

    # Put every statistic on the largest df before ranking.
    max_df = np.max(df)
    lower = df < max_df
    if np.any(lower):
        tail = t_sf(t_stat[lower], df[lower])
        t_stat[lower] = t_isf(tail, max_df)

    order = np.argsort(-t_stat, kind="stable")[:n_target]
    t_top = t_stat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, n_target + 1)
    p0 = 2 * t_sf(t_top, max_df)
    p_target = ((r - 0.5) / n_features - (1 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = p_target > p0
    if np.any(pos):
        q_target = t_isf(p_target[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((t_top[pos] / q_target) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))
