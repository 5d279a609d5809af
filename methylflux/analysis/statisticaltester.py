from typing import Dict, Union

import numpy as np

from methylflux.analysis.stats_ops import adjust_pvalues, raw_stats_from_fit
from methylflux.utils.utils import log_time


class StatisticalTester:
    """
    Ordinary (unmoderated) t-statistics for one coefficient or contrast.

    Computes t-statistics, two-sided p-values and adjusted p-values from the
    per-feature residual variances, without any pooling across features.
    """

    def __init__(
        self,
        effect: np.ndarray,
        stdev_unscaled: float,
        sigma: np.ndarray,
        df_residual: Union[np.ndarray, float],
        correction: str = "BH",
    ) -> None:
        """
        Initialize the StatisticalTester.

        Args:
            effect: Coefficient / contrast estimates (n_features,).
            stdev_unscaled: sqrt(c^T (X'X)^-1 c) for the contrast.
            sigma: Residual standard deviations (n_features,).
            df_residual: Residual degrees of freedom, scalar or (n_features,).
            correction: Multiple-testing correction name.
        """
        self.effect = np.asarray(effect, dtype=np.float64)
        self.stdev_unscaled = stdev_unscaled
        self.sigma = np.asarray(sigma, dtype=np.float64)
        self.df_residual = np.broadcast_to(np.asarray(df_residual, dtype=np.float64), self.effect.shape)
        self.correction = correction

    @log_time("Compute statistics")
    def compute(self) -> Dict[str, np.ndarray]:
        """
        Returns:
            A dict containing:
              - 'se': standard errors
              - 't': t-statistics
              - 'p': p-values
              - 'q': adjusted p-values
        """
        se, t_stat, p_val = raw_stats_from_fit(
            effect=self.effect,
            stdu=self.stdev_unscaled,
            sigma=self.sigma,
            df=self.df_residual,
        )
        q_val = adjust_pvalues(p_val, method=self.correction)
        return {"se": se, "t": t_stat, "p": p_val, "q": q_val}
