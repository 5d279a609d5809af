import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from methylflux.analysis.errors import (
    DesignRankError,
    DimensionMismatchError,
    EmptyInputError,
    MalformedFeatureError,
    ScoringCancelledError,
)
from methylflux.utils.utils import log_time, log_warning

# Residual sums of squares below this fraction of the row energy are round-off.
RSS_RELATIVE_TOL = 1e-12


@dataclass(frozen=True)
class FitResult:
    """Per-feature OLS results; rows follow the input feature order."""
    coefficients: np.ndarray        # (n_features x n_covariates)
    residual_variance: np.ndarray   # (n_features,)
    df_residual: np.ndarray         # (n_features,), 0 for malformed rows
    ave_expr: np.ndarray            # (n_features,)
    xtx_inv: np.ndarray             # (n_covariates x n_covariates)
    valid: np.ndarray               # (n_features,) bool
    feature_ids: Tuple
    malformed: Tuple[MalformedFeatureError, ...] = ()

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]

    @property
    def sigma(self) -> np.ndarray:
        return np.sqrt(self.residual_variance)


class LinearModelFitter:
    def __init__(
        self,
        values: np.ndarray,
        design_matrix: np.ndarray,
        feature_ids: Optional[Sequence] = None,
        batch_size: int = 10_000,
        n_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
        progress: bool = False,
    ):
        """
        Parameters:
        - values: (n_features x n_samples) measurement matrix
        - design_matrix: (n_samples x n_covariates) matrix from DesignMatrixBuilder
        - batch_size: rows fitted per batch; batches are the unit of parallelism
          and of cancellation
        - n_workers: >1 dispatches batches to a thread pool
        - cancel_event: checked between batches
        """
        self.Y = np.asarray(values, dtype=np.float64)
        self.X = np.asarray(design_matrix, dtype=np.float64)

        if self.Y.ndim != 2:
            raise ValueError(f"Expected a 2D measurement matrix, got shape {self.Y.shape}")
        if self.X.ndim != 2:
            raise ValueError(f"Expected a 2D design matrix, got shape {self.X.shape}")

        n_features, n_samples = self.Y.shape
        if n_features == 0 or n_samples == 0:
            raise EmptyInputError(n_features, n_samples)
        if self.X.shape[0] != n_samples:
            raise DimensionMismatchError(n_samples, self.X.shape[0])
        if not np.all(np.isfinite(self.X)):
            raise ValueError("Design matrix contains non-finite values.")

        n_cov = self.X.shape[1]
        rank = int(np.linalg.matrix_rank(self.X))
        if rank < n_cov or n_cov >= n_samples:
            raise DesignRankError(rank, n_cov, n_samples)

        self.df_residual = n_samples - rank
        self.feature_ids = tuple(feature_ids) if feature_ids is not None else tuple(range(n_features))
        if len(self.feature_ids) != n_features:
            raise ValueError(
                f"Got {len(self.feature_ids)} feature id(s) for {n_features} feature row(s)."
            )

        self.batch_size = max(int(batch_size), 1)
        self.n_workers = max(int(n_workers), 1)
        self.cancel_event = cancel_event
        self.progress = progress
        self.xtx_inv = None  # (X^T X)^(-1)

    def _batches(self):
        n = self.Y.shape[0]
        return [slice(i, min(i + self.batch_size, n)) for i in range(0, n, self.batch_size)]

    def _check_cancelled(self, n_done: int) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ScoringCancelledError(n_done, self.Y.shape[0])

    def _fit_batch(self, rows: slice, coefs: np.ndarray, rss: np.ndarray) -> None:
        Y = self.Y[rows]
        ok = np.isfinite(Y).all(axis=1)
        if not ok.any():
            return

        Yok = Y[ok]                               # (n_ok x n_samples)
        betas = Yok @ self.X @ self.xtx_inv       # (n_ok x n_covariates)
        resid = Yok - betas @ self.X.T

        batch_rss = np.sum(resid**2, axis=1)
        batch_rss[batch_rss <= RSS_RELATIVE_TOL * np.sum(Yok**2, axis=1)] = 0.0

        idx = np.arange(rows.start, rows.stop)[ok]
        coefs[idx] = betas
        rss[idx] = batch_rss

    def _run(self, coefs: np.ndarray, rss: np.ndarray) -> None:
        batches = self._batches()
        bar = tqdm(total=self.Y.shape[0], desc="OLS", unit="feature", disable=not self.progress)
        n_done = 0
        try:
            if self.n_workers == 1:
                for rows in batches:
                    self._check_cancelled(n_done)
                    self._fit_batch(rows, coefs, rss)
                    n_done += rows.stop - rows.start
                    bar.update(rows.stop - rows.start)
                return

            # Batches write to disjoint row slices, so waves can run unsynchronized.
            with ThreadPoolExecutor(max_workers=self.n_workers) as pool:
                for i in range(0, len(batches), self.n_workers):
                    self._check_cancelled(n_done)
                    wave = batches[i:i + self.n_workers]
                    list(pool.map(lambda rows: self._fit_batch(rows, coefs, rss), wave))
                    n_wave = sum(rows.stop - rows.start for rows in wave)
                    n_done += n_wave
                    bar.update(n_wave)
        finally:
            bar.close()

    @log_time("Linear Regressions")
    def fit(self) -> FitResult:
        """
        Fits OLS for all features, vectorized within each batch.
        Rows with non-finite values are left as NaN with zero df.
        """
        X = self.X
        self.xtx_inv = np.linalg.inv(X.T @ X)

        n_features = self.Y.shape[0]
        coefs = np.full((n_features, X.shape[1]), np.nan)
        rss = np.full(n_features, np.nan)

        self._run(coefs, rss)
        # A cancel requested during the last wave still voids the run.
        self._check_cancelled(n_features)

        valid = np.isfinite(self.Y).all(axis=1)
        malformed = tuple(
            MalformedFeatureError(self.feature_ids[i], int((~np.isfinite(self.Y[i])).sum()))
            for i in np.flatnonzero(~valid)
        )
        if malformed:
            log_warning(f"{len(malformed)} feature(s) with non-finite values excluded from the fit "
                        f"(first: {malformed[0].feature_id!r}).")

        df = np.where(valid, float(self.df_residual), 0.0)
        with np.errstate(invalid="ignore"):
            residual_variance = np.where(valid, rss / self.df_residual, np.nan)
        ave_expr = np.full(n_features, np.nan)
        ave_expr[valid] = self.Y[valid].mean(axis=1)

        return FitResult(
            coefficients=coefs,
            residual_variance=residual_variance,
            df_residual=df,
            ave_expr=ave_expr,
            xtx_inv=self.xtx_inv,
            valid=valid,
            feature_ids=self.feature_ids,
            malformed=malformed,
        )
