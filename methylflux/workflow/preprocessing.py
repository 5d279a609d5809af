"""Value preprocessing for methylation matrices.

This module performs:
1) Probe exclusion from a caller-supplied list
2) Beta range check (values outside [0, 1] are clipped)
3) Beta <-> M-value conversion to the scale the model is fitted on

Thresholds and probe lists are configuration; nothing is hard-coded here.
"""

from typing import List, Optional

import numpy as np

from methylflux.dataset.preprocessresults import PreprocessResults
from methylflux.utils.utils import log_info, log_time, log_warning

SCALES = ("beta", "m")


def beta_to_m(beta: np.ndarray, offset: float = 0.0) -> np.ndarray:
    """M = log2((beta + offset) / (1 - beta + offset)); NaN stays NaN."""
    beta = np.asarray(beta, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.log2((beta + offset) / (1.0 - beta + offset))


def m_to_beta(m: np.ndarray) -> np.ndarray:
    """Inverse of beta_to_m with zero offset."""
    m = np.asarray(m, dtype=np.float64)
    return 2.0**m / (2.0**m + 1.0)


class Preprocessor:
    """Turns a raw probe x sample matrix into the values the scorer fits."""

    def __init__(self, config: Optional[dict] = None):
        """Initialize from the `dataset` config section."""
        config = config or {}
        self.input_scale = str(config.get("input_scale", "beta")).lower()
        self.analysis_scale = str(config.get("analysis_scale", "m")).lower()
        for key, scale in (("input_scale", self.input_scale), ("analysis_scale", self.analysis_scale)):
            if scale not in SCALES:
                raise ValueError(f"Invalid {key}='{scale}'. Use one of {SCALES}.")
        if self.input_scale == "m" and self.analysis_scale == "beta":
            log_info("M-values converted back to betas for analysis.")

        self.m_offset = float(config.get("m_offset", 0.0))
        if self.m_offset < 0:
            raise ValueError(f"m_offset must be >= 0, got {self.m_offset}")
        self.exclude_probes: List[str] = [str(p) for p in (config.get("exclude_probes") or [])]

    def _exclude(self, values: np.ndarray, probes: List[str]):
        if not self.exclude_probes:
            return values, probes, 0
        drop = set(self.exclude_probes)
        keep = np.array([p not in drop for p in probes], dtype=bool)
        n_drop = int((~keep).sum())
        log_info(f"Probe exclusion: dropped {n_drop} probe(s) of {len(probes)} "
                 f"({len(drop) - n_drop} listed probe(s) not present).")
        return values[keep], [p for p, k in zip(probes, keep) if k], n_drop

    def _check_beta(self, beta: np.ndarray) -> np.ndarray:
        finite = np.isfinite(beta)
        outside = finite & ((beta < 0) | (beta > 1))
        n_out = int(outside.sum())
        if n_out:
            log_warning(f"{n_out} beta value(s) outside [0, 1] clipped.")
            beta = np.where(outside, np.clip(beta, 0.0, 1.0), beta)
        return beta

    @log_time("Preprocessing")
    def fit_transform(self, values: np.ndarray, probes: List[str], samples: List[str]) -> PreprocessResults:
        """Run exclusion and scale conversion; returns a PreprocessResults bundle."""
        values = np.asarray(values, dtype=np.float64)
        values, probes, n_dropped = self._exclude(values, probes)

        if self.input_scale == "beta":
            beta = self._check_beta(values)
            m_values = beta_to_m(beta, self.m_offset)
            if self.m_offset == 0:
                n_inf = int(np.isinf(m_values).sum())
                if n_inf:
                    log_warning(f"{n_inf} beta value(s) at exactly 0 or 1 give infinite M-values; "
                                "set dataset.m_offset to keep those probes.")
        else:
            m_values = values
            beta = m_to_beta(values)

        processed = m_values if self.analysis_scale == "m" else beta
        log_info(f"Analysis on {self.analysis_scale} scale: {processed.shape[0]} probe(s) x {processed.shape[1]} sample(s)")

        return PreprocessResults(
            processed=processed,
            probes=list(probes),
            samples=list(samples),
            beta=beta,
            m_values=m_values,
            metadata={
                "input_scale": self.input_scale,
                "analysis_scale": self.analysis_scale,
                "m_offset": self.m_offset,
                "n_excluded_probes": n_dropped,
            },
        )
