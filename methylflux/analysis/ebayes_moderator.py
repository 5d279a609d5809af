from dataclasses import dataclass

import numpy as np

from methylflux.analysis.ebayes_prior import fit_fdist, fit_fdist_moments, tmixture_vector
from methylflux.analysis.stats_ops import raw_stats_from_fit
from methylflux.utils.utils import log_info, log_time, log_warning

MODERATION_METHODS = ("limma", "moments")


@dataclass(frozen=True)
class ModerationResult:
    s2_prior: float
    df_prior: float
    s2_post: np.ndarray   # (n_features,), NaN where the fit was malformed
    df_total: np.ndarray  # (n_features,), 0 where the fit was malformed


class EbayesModerator:
    def __init__(self, sigma2, df_residual, method="limma", proportion=0.01,
                 stdev_coef_lim=(0.1, 4.0)):
        """
        Parameters:
        - sigma2: (n_features,) vector of residual variances, NaN for excluded rows
        - df_residual: (n_features,) residual degrees of freedom, 0 for excluded rows
        - method: "limma" (fitFDist moments with digamma correction) or "moments"
        - proportion: assumed proportion of differential features, for the B statistic
        """
        if method not in MODERATION_METHODS:
            raise ValueError(f"Unknown moderation method: {method!r}; use one of {MODERATION_METHODS}")
        self.sigma2 = np.asarray(sigma2, dtype=np.float64)
        self.df_residual = np.broadcast_to(
            np.asarray(df_residual, dtype=np.float64), self.sigma2.shape
        )
        self.method = method
        self.proportion = proportion
        self.stdev_coef_lim = stdev_coef_lim
        self.valid = np.isfinite(self.sigma2) & (self.df_residual > 0)
        self.s0 = None  # prior variance
        self.d0 = None  # prior df
        self.result = None

    def fit(self):
        s2 = self.sigma2[self.valid]
        d = self.df_residual[self.valid]
        if self.method == "limma":
            s0, d0 = fit_fdist(s2, d)
        else:
            s0, d0 = fit_fdist_moments(s2, d)

        self.s0 = s0
        self.d0 = d0
        return d0, s0

    def moderate(self) -> ModerationResult:
        """Shrink each residual variance towards the pooled prior."""
        if self.s0 is None:
            self.fit()

        d = self.df_residual
        s2 = self.sigma2
        s2_post = np.full_like(s2, np.nan)
        df_total = np.zeros_like(s2)

        ok = self.valid
        if not np.isfinite(self.s0) or self.d0 == 0:
            s2_post[ok] = s2[ok]
            df_total[ok] = d[ok]
        elif np.isinf(self.d0):
            s2_post[ok] = self.s0
            df_total[ok] = np.inf
        else:
            s2_post[ok] = (self.d0 * self.s0 + d[ok] * s2[ok]) / (self.d0 + d[ok])
            df_total[ok] = self.d0 + d[ok]

        # Never claim more df than the whole experiment holds.
        df_pooled = float(np.sum(d[ok]))
        if df_pooled > 0:
            df_total[ok] = np.minimum(df_total[ok], df_pooled)

        self.result = ModerationResult(
            s2_prior=float(self.s0) if self.s0 is not None else np.nan,
            df_prior=float(self.d0),
            s2_post=s2_post,
            df_total=df_total,
        )
        log_info(f"Variance prior: s2_prior={self.result.s2_prior:.4g}, df_prior={self.result.df_prior:.4g} "
                 f"({int(ok.sum())} feature(s) pooled)")
        return self.result

    def _lods(self, t_stat, stdev_unscaled, df_total):
        """Log-odds that the coefficient is non-zero."""
        s2_prior = self.result.s2_prior
        if not np.isfinite(s2_prior) or s2_prior <= 0:
            return np.full_like(t_stat, np.nan)

        lim = (self.stdev_coef_lim[0] ** 2 / s2_prior, self.stdev_coef_lim[1] ** 2 / s2_prior)
        var_prior = tmixture_vector(t_stat, stdev_unscaled, df_total, self.proportion, lim)
        if not np.isfinite(var_prior):
            var_prior = 1.0 / s2_prior
            log_warning("Estimation of var.prior failed - set to default value.")

        r = (stdev_unscaled**2 + var_prior) / stdev_unscaled**2
        t2 = t_stat**2
        with np.errstate(divide="ignore", invalid="ignore"):
            if self.result.df_prior > 1e6:
                kernel = t2 * (1 - 1 / r) / 2
            else:
                kernel = (1 + df_total) / 2 * np.log((t2 + df_total) / (t2 / r + df_total))
            lods = np.log(self.proportion / (1 - self.proportion)) - np.log(r) / 2 + kernel
        return np.where(np.isnan(t_stat), np.nan, lods)

    @log_time("EBayes Computation")
    def apply_to_coefficient(self, effect, stdev_unscaled):
        """
        Moderated t, p and B for one coefficient or contrast.

        Parameters:
        - effect: (n_features,) fitted coefficient / contrast estimate
        - stdev_unscaled: scalar sqrt(c^T (X'X)^-1 c)

        Returns:
        - dict: se, t, p, B (each of shape n_features)
        """
        if self.result is None:
            self.moderate()
        res = self.result

        stdu = np.broadcast_to(np.asarray(stdev_unscaled, dtype=np.float64), res.s2_post.shape)
        se, t_stat, p_val = raw_stats_from_fit(
            effect=np.asarray(effect, dtype=np.float64),
            stdu=stdu,
            sigma=np.sqrt(res.s2_post),
            df=res.df_total,
        )
        lods = self._lods(t_stat, stdu, res.df_total)

        return {
            "se_ebayes": se,
            "t_ebayes": t_stat,
            "p_ebayes": p_val,
            "B": lods,
        }
