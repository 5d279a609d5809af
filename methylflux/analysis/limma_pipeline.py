"""Limma-style differential methylation on a loaded dataset.

This module provides:
  - `run_limma_pipeline`: design from config -> scorer -> results written back
    into the AnnData container
"""

from typing import Tuple

import anndata as ad
import numpy as np
import pandas as pd

from methylflux.analysis.report import REPORT_COLUMNS, RankedReport
from methylflux.analysis.scorer import score_features
from methylflux.design.designmatrixbuilder import DesignMatrixBuilder
from methylflux.utils.utils import log_info, log_time, log_warning


def _coefficient_from_config(analysis_cfg: dict):
    coef = analysis_cfg.get("coefficient", -1)
    if isinstance(coef, str) and coef.lstrip("-").isdigit():
        return int(coef)
    return coef


@log_time("Analysis pipeline")
def run_limma_pipeline(adata: ad.AnnData, config: dict) -> Tuple[ad.AnnData, RankedReport]:
    """Fit the configured design on `adata.X` and rank probes for one coefficient.

    Statistics go to `.var` (one column per report column), run metadata to
    `.uns["differential"]`. The input object is not modified.
    """
    design_cfg = (config or {}).get("design", {}) or {}
    analysis_cfg = (config or {}).get("analysis", {}) or {}

    covariates = design_cfg.get("covariates") or []
    if isinstance(covariates, (str, dict)):
        covariates = [covariates]
    if not covariates:
        raise ValueError("design.covariates must name at least one covariate.")

    sample_ids = adata.obs_names.tolist()
    design = DesignMatrixBuilder(
        adata.obs,
        covariates,
        intercept=bool(design_cfg.get("intercept", True)),
    ).build(sample_ids)

    # Expression: probes × samples
    matrix = pd.DataFrame(np.asarray(adata.X).T, index=adata.var_names, columns=sample_ids)

    report = score_features(
        matrix,
        design,
        _coefficient_from_config(analysis_cfg),
        moderation=analysis_cfg.get("moderation", "limma"),
        correction=analysis_cfg.get("correction", "BH"),
        n_workers=int(analysis_cfg.get("n_workers", 1)),
        batch_size=int(analysis_cfg.get("batch_size", 10_000)),
        progress=bool(analysis_cfg.get("progress", False)),
        proportion=float(analysis_cfg.get("proportion", 0.01)),
    )

    sig = float(analysis_cfg.get("sign_threshold", 0.05))
    lfc = float(analysis_cfg.get("lfc_threshold", 0.0))
    summary = report.summarize(p_value=sig, lfc=lfc)
    log_info(f"{summary['n_up']} up / {summary['n_down']} down at adj.P.Val <= {sig}"
             + (f", |logFC| >= {lfc}" if lfc > 0 else ""))
    if summary["n_excluded"]:
        log_warning(f"{summary['n_excluded']} probe(s) excluded from scoring (non-finite values).")

    # Assemble into AnnData
    out = adata.copy()
    table = report.table.reindex(out.var_names)
    for col in REPORT_COLUMNS:
        out.var[col] = table[col].to_numpy()
    out.var["excluded"] = out.var["excluded"].astype(bool)
    out.var["decision"] = report.decide_tests(p_value=sig, lfc=lfc).reindex(out.var_names).to_numpy()

    out.uns["differential"] = {
        "coefficient": report.coefficient,
        "design_columns": list(design.column_names),
        "formula": design.formula,
        "moderation": summary["moderation"],
        "correction": report.correction,
        "s2_prior": float(report.s2_prior),
        "df_prior": float(report.df_prior),
        "n_excluded": int(summary["n_excluded"]),
        "n_up": summary["n_up"],
        "n_down": summary["n_down"],
        "sign_threshold": sig,
        "lfc_threshold": lfc,
    }
    return out, report
