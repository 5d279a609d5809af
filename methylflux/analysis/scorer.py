"""Differential signal scoring: fit -> moderate -> test -> correct -> rank.

`score_features` is a pure function of its inputs: it reads the matrix and
design, builds fresh intermediate objects and returns a RankedReport. Fatal
input problems raise before any fitting; features with non-finite values
are excluded from pooling and reported with null statistics.
"""
import threading
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from methylflux.analysis.ebayes_moderator import MODERATION_METHODS, EbayesModerator
from methylflux.analysis.errors import DimensionMismatchError, EmptyInputError, ScoringCancelledError
from methylflux.analysis.linearmodelfitter import LinearModelFitter
from methylflux.analysis.report import RankedReport
from methylflux.analysis.statisticaltester import StatisticalTester
from methylflux.analysis.stats_ops import CORRECTION_METHODS, adjust_pvalues
from methylflux.design.contrast import apply_contrast
from methylflux.design.contrastbuilder import ContrastBuilder
from methylflux.design.designmatrixbuilder import CovariateSpec, DesignMatrixBuilder, DesignSpecification
from methylflux.utils.utils import log_info, log_time

Coefficient = Union[int, str, Sequence[float]]


def _as_matrix(matrix, feature_ids=None, sample_ids=None):
    """Return (values, feature_ids, sample_ids) for a DataFrame or 2D array."""
    if isinstance(matrix, pd.DataFrame):
        feature_ids = list(matrix.index) if feature_ids is None else list(feature_ids)
        sample_ids = list(matrix.columns) if sample_ids is None else list(sample_ids)
        values = matrix.to_numpy(dtype=np.float64)
    else:
        values = np.asarray(matrix, dtype=np.float64)
        if values.ndim != 2:
            raise ValueError(f"Expected a 2D measurement matrix, got shape {values.shape}")
        feature_ids = list(range(values.shape[0])) if feature_ids is None else list(feature_ids)
        sample_ids = list(range(values.shape[1])) if sample_ids is None else list(sample_ids)

    n_features, n_samples = values.shape
    if n_features == 0 or n_samples == 0:
        raise EmptyInputError(n_features, n_samples)
    if len(feature_ids) != n_features or len(sample_ids) != n_samples:
        raise ValueError(
            f"Got {len(feature_ids)} feature id(s) and {len(sample_ids)} sample id(s) "
            f"for a {n_features} x {n_samples} matrix."
        )
    if len(set(feature_ids)) != n_features:
        raise ValueError("Feature identifiers must be unique.")
    if len(set(sample_ids)) != n_samples:
        raise ValueError("Sample identifiers must be unique.")
    return values, feature_ids, sample_ids


def _as_design(design, sample_ids: list) -> DesignSpecification:
    """Wrap and align the design to the matrix sample order."""
    if not isinstance(design, DesignSpecification):
        design = DesignSpecification.from_matrix(design)

    n_samples = len(sample_ids)
    if design.n_samples != n_samples:
        raise DimensionMismatchError(n_samples, design.n_samples)

    design_ids = list(design.sample_ids)
    if design_ids == sample_ids or design_ids == list(range(n_samples)):
        return design
    if set(design_ids) != set(sample_ids):
        unknown = [s for s in sample_ids if s not in set(design_ids)]
        raise DimensionMismatchError(
            n_samples, design.n_samples,
            detail=f"Sample ids differ, e.g. {unknown[:5]} not in the design.",
        )
    order = [design_ids.index(s) for s in sample_ids]
    return DesignSpecification(
        matrix=design.matrix[order],
        column_names=design.column_names,
        sample_ids=tuple(sample_ids),
        covariates=design.covariates,
        levels=design.levels,
        formula=design.formula,
    )


@log_time("Differential scoring")
def score_features(
    matrix,
    design,
    coefficient: Coefficient = -1,
    *,
    moderation: str = "limma",
    correction: str = "BH",
    n_workers: int = 1,
    batch_size: int = 10_000,
    cancel_event: Optional[threading.Event] = None,
    progress: bool = False,
    proportion: float = 0.01,
    feature_ids: Optional[Sequence] = None,
    sample_ids: Optional[Sequence] = None,
) -> RankedReport:
    """
    Rank features by evidence that `coefficient` differs from zero.

    Args:
        matrix: features x samples values, DataFrame or 2D array.
        design: DesignSpecification, or a samples x covariates array / DataFrame.
        coefficient: design column index or name, "A_vs_B" level comparison,
            or a contrast vector over the design columns.
        moderation: "limma", "moments" or "none" (ordinary t-statistics).
        correction: multiple-testing correction, "BH" by default.
        n_workers: threads for the per-feature fit; output does not depend on it.
        batch_size: features per fit batch.
        cancel_event: when set, the run stops between batches and raises
            ScoringCancelledError.
        progress: show a tqdm bar over the fit batches.
        proportion: assumed proportion of differential features (B statistic).
        feature_ids, sample_ids: labels for array input; default to the frame
            index and columns, or to positions.

    Returns:
        RankedReport with one row per feature.
    """
    if moderation != "none" and moderation not in MODERATION_METHODS:
        raise ValueError(f"Unknown moderation method: {moderation!r}; "
                         f"use one of {MODERATION_METHODS + ('none',)}")
    if correction not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method {correction!r}; use one of {sorted(CORRECTION_METHODS)}")

    values, feature_ids, sample_ids = _as_matrix(matrix, feature_ids, sample_ids)
    design = _as_design(design, sample_ids)
    design.check_rank()
    vector, label = ContrastBuilder(design).resolve(coefficient)
    log_info(f"Scoring {len(feature_ids)} feature(s) x {len(sample_ids)} sample(s) on '{label}'")

    fit = LinearModelFitter(
        values, design.matrix, feature_ids,
        batch_size=batch_size, n_workers=n_workers,
        cancel_event=cancel_event, progress=progress,
    ).fit()

    effect, stdu = apply_contrast(fit, vector)

    if moderation == "none":
        stats = StatisticalTester(effect, stdu, fit.sigma, fit.df_residual, correction).compute()
        t_stat, p_val, q_val = stats["t"], stats["p"], stats["q"]
        lods = np.full_like(t_stat, np.nan)
        s2_prior, df_prior = np.nan, 0.0
    else:
        moderator = EbayesModerator(fit.residual_variance, fit.df_residual,
                                    method=moderation, proportion=proportion)
        moderated = moderator.moderate()
        out = moderator.apply_to_coefficient(effect, stdu)
        t_stat, p_val, lods = out["t_ebayes"], out["p_ebayes"], out["B"]
        q_val = adjust_pvalues(p_val, method=correction)
        s2_prior, df_prior = moderated.s2_prior, moderated.df_prior

    if cancel_event is not None and cancel_event.is_set():
        raise ScoringCancelledError(len(feature_ids), len(feature_ids))

    report = RankedReport.from_arrays(
        feature_ids,
        effect=effect,
        ave_expr=fit.ave_expr,
        t=t_stat,
        p=p_val,
        adj_p=q_val,
        lods=lods,
        excluded=~fit.valid,
        coefficient=label,
        correction=correction,
        s2_prior=s2_prior,
        df_prior=df_prior,
        extra={
            "moderation": moderation,
            "df_residual": int(fit.df_residual[fit.valid][0]) if fit.valid.any() else 0,
            "design_columns": list(design.column_names),
        },
    )
    if report.n_excluded:
        log_info(f"{report.n_excluded} feature(s) excluded for non-finite values; "
                 f"{len(report) - report.n_excluded} scored.")
    return report


def score_differential(
    matrix: pd.DataFrame,
    annotation: pd.DataFrame,
    covariates: Sequence[Union[CovariateSpec, str, dict]],
    coefficient: Coefficient = -1,
    *,
    intercept: bool = True,
    **options,
) -> RankedReport:
    """
    Build the design from `annotation` (aligned to the matrix columns) and score.

    `options` are passed to score_features.
    """
    if not isinstance(matrix, pd.DataFrame):
        raise TypeError("score_differential expects a DataFrame with sample ids as columns.")
    if matrix.shape[0] == 0 or matrix.shape[1] == 0:
        raise EmptyInputError(*matrix.shape)
    design = DesignMatrixBuilder(annotation, covariates, intercept=intercept).build(list(matrix.columns))
    return score_features(matrix, design, coefficient, **options)
