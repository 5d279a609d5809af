"""Ranked differential report.

One row per input feature, sorted by adjusted p-value (ties: raw p-value,
then larger absolute effect first, then input order). Features excluded for
non-finite input keep null statistics and sit at the bottom, flagged by the
``excluded`` column.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

REPORT_COLUMNS = ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B", "excluded"]
INDEX_NAME = "feature_id"


def rank_order(adj_p: np.ndarray, p: np.ndarray, effect: np.ndarray, excluded: np.ndarray) -> np.ndarray:
    """Row order of the ranked report (NaN statistics sort last within each block)."""
    n = adj_p.shape[0]
    position = np.arange(n)
    abs_effect = np.abs(effect)
    neg_abs = np.where(np.isnan(abs_effect), np.inf, -abs_effect)
    # np.lexsort: last key is the primary key
    return np.lexsort((position, neg_abs, p, adj_p, excluded.astype(np.int8)))


@dataclass(frozen=True)
class RankedReport:
    table: pd.DataFrame
    coefficient: str
    correction: str = "BH"
    s2_prior: float = np.nan
    df_prior: float = np.nan
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_arrays(
        cls,
        feature_ids: Sequence,
        *,
        effect: np.ndarray,
        ave_expr: np.ndarray,
        t: np.ndarray,
        p: np.ndarray,
        adj_p: np.ndarray,
        lods: np.ndarray,
        excluded: np.ndarray,
        **kwargs,
    ) -> "RankedReport":
        excluded = np.asarray(excluded, dtype=bool)
        nullable = lambda a: np.where(excluded, np.nan, np.asarray(a, dtype=np.float64))

        table = pd.DataFrame(
            {
                "logFC": nullable(effect),
                "AveExpr": nullable(ave_expr),
                "t": nullable(t),
                "P.Value": nullable(p),
                "adj.P.Val": nullable(adj_p),
                "B": nullable(lods),
                "excluded": excluded,
            },
            index=pd.Index(list(feature_ids), name=INDEX_NAME),
        )
        order = rank_order(
            table["adj.P.Val"].to_numpy(), table["P.Value"].to_numpy(),
            table["logFC"].to_numpy(), excluded,
        )
        return cls(table=table.iloc[order], **kwargs)

    def __len__(self) -> int:
        return len(self.table)

    @property
    def scored(self) -> pd.DataFrame:
        return self.table[~self.table["excluded"]]

    @property
    def excluded_ids(self) -> list:
        return self.table.index[self.table["excluded"]].tolist()

    @property
    def n_excluded(self) -> int:
        return int(self.table["excluded"].sum())

    def top_table(self, n: Optional[int] = 10, p_value: float = 1.0, lfc: float = 0.0) -> pd.DataFrame:
        """First `n` scored features passing the adjusted p-value and |logFC| cutoffs."""
        df = self.scored
        keep = pd.Series(True, index=df.index)
        if p_value < 1:
            keep &= df["adj.P.Val"] <= p_value
        if lfc > 0:
            keep &= df["logFC"].abs() >= lfc
        df = df[keep]
        return df if n is None else df.head(n)

    def decide_tests(self, p_value: float = 0.05, lfc: float = 0.0) -> pd.Series:
        """-1 / 0 / 1 per feature: significantly down, not significant, up."""
        df = self.table
        sig = (df["adj.P.Val"] <= p_value) & (df["logFC"].abs() >= lfc) & ~df["excluded"]
        calls = np.where(sig, np.sign(df["logFC"].fillna(0.0)), 0).astype(int)
        return pd.Series(calls, index=df.index, name=self.coefficient)

    def summarize(self, p_value: float = 0.05, lfc: float = 0.0) -> Dict[str, Any]:
        calls = self.decide_tests(p_value=p_value, lfc=lfc)
        return {
            **self.summary,
            "p_value": p_value,
            "lfc": lfc,
            "n_up": int((calls == 1).sum()),
            "n_down": int((calls == -1).sum()),
        }

    @property
    def summary(self) -> Dict[str, Any]:
        return {
            "coefficient": self.coefficient,
            "correction": self.correction,
            "n_features": len(self.table),
            "n_scored": len(self.table) - self.n_excluded,
            "n_excluded": self.n_excluded,
            "s2_prior": self.s2_prior,
            "df_prior": self.df_prior,
            **self.extra,
        }
