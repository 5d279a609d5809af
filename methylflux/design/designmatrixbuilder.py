import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import patsy

from methylflux.analysis.errors import DesignRankError, DimensionMismatchError
from methylflux.utils.utils import log_info, log_time

_PLACEHOLDER = re.compile(r"\b_cov(\d+)\b")


class CovariateKind(str, Enum):
    CATEGORICAL = "categorical"
    CONTINUOUS = "continuous"


@dataclass(frozen=True)
class CovariateSpec:
    name: str
    kind: Optional[CovariateKind] = None  # None: decided once from the column dtype
    reference: Optional[str] = None       # baseline level, categorical only

    @classmethod
    def from_config(cls, entry: Union[str, dict]) -> "CovariateSpec":
        """Accept either a bare column name or {name, kind, reference}."""
        if isinstance(entry, str):
            return cls(name=entry)
        kind = entry.get("kind")
        ref = entry.get("reference")
        return cls(
            name=str(entry["name"]),
            kind=CovariateKind(str(kind).lower()) if kind else None,
            reference=str(ref) if ref is not None else None,
        )

    def resolve(self, column: pd.Series) -> "CovariateSpec":
        if self.kind is not None:
            return self
        is_numeric = pd.api.types.is_numeric_dtype(column) and not pd.api.types.is_bool_dtype(column)
        kind = CovariateKind.CONTINUOUS if is_numeric else CovariateKind.CATEGORICAL
        return CovariateSpec(name=self.name, kind=kind, reference=self.reference)


@dataclass(frozen=True)
class DesignSpecification:
    matrix: np.ndarray                   # (n_samples x n_columns)
    column_names: Tuple[str, ...]
    sample_ids: Tuple
    covariates: Tuple[CovariateSpec, ...] = ()
    levels: Dict[str, List[str]] = field(default_factory=dict)
    formula: Optional[str] = None

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_columns(self) -> int:
        return self.matrix.shape[1]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.matrix))

    def check_rank(self) -> None:
        rank = self.rank
        if rank < self.n_columns or self.n_columns >= self.n_samples:
            raise DesignRankError(rank, self.n_columns, self.n_samples, self.column_names)

    def column_index(self, key: Union[int, str]) -> int:
        if isinstance(key, (int, np.integer)):
            k = int(key)
            if not -self.n_columns <= k < self.n_columns:
                raise ValueError(f"Coefficient index {k} out of range for {self.n_columns} design column(s).")
            return k % self.n_columns
        try:
            return self.column_names.index(key)
        except ValueError:
            raise KeyError(f"Coefficient {key!r} not in design columns {list(self.column_names)}") from None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=list(self.sample_ids), columns=list(self.column_names))

    @classmethod
    def from_matrix(cls, matrix, column_names: Optional[Sequence[str]] = None,
                    sample_ids: Optional[Sequence] = None) -> "DesignSpecification":
        """Wrap an already encoded design (numpy array or DataFrame)."""
        if isinstance(matrix, pd.DataFrame):
            column_names = column_names or [str(c) for c in matrix.columns]
            sample_ids = sample_ids if sample_ids is not None else list(matrix.index)
            matrix = matrix.to_numpy()
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise ValueError(f"Expected a 2D design matrix, got shape {matrix.shape}")
        column_names = column_names or [f"x{i}" for i in range(matrix.shape[1])]
        if len(column_names) != matrix.shape[1]:
            raise ValueError(f"Got {len(column_names)} column name(s) for {matrix.shape[1]} design column(s).")
        sample_ids = tuple(sample_ids) if sample_ids is not None else tuple(range(matrix.shape[0]))
        return cls(matrix=matrix, column_names=tuple(column_names), sample_ids=sample_ids)


class DesignMatrixBuilder:
    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        covariates: Sequence[Union[CovariateSpec, str, dict]],
        intercept: bool = True,
    ):
        """
        Parameters:
        - sample_metadata: annotation indexed by sample id, one column per covariate
        - covariates: covariates entering the model, in order
        - intercept: include an intercept column
        """
        if not sample_metadata.index.is_unique:
            dup = sample_metadata.index[sample_metadata.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicated sample id(s) in annotation: {dup[:5]}")
        self.meta = sample_metadata
        self.covariates = [
            c if isinstance(c, CovariateSpec) else CovariateSpec.from_config(c)
            for c in covariates
        ]
        if not self.covariates and not intercept:
            raise ValueError("Design needs at least an intercept or one covariate.")
        self.intercept = intercept
        self.formula: Optional[str] = None

    def _align(self, sample_ids: Sequence) -> pd.DataFrame:
        sample_ids = list(sample_ids)
        missing = [s for s in sample_ids if s not in self.meta.index]
        if missing:
            raise DimensionMismatchError(
                len(sample_ids), len(self.meta),
                detail=f"{len(missing)} sample(s) missing from annotation, e.g. {missing[:5]}.",
            )
        return self.meta.loc[sample_ids]

    def _term(self, code: str, spec: CovariateSpec, column: pd.Series) -> Tuple[str, List[str]]:
        if spec.kind is CovariateKind.CONTINUOUS:
            if column.isna().any():
                raise ValueError(f"Continuous covariate {spec.name!r} has missing values.")
            return code, []

        if column.isna().any():
            raise ValueError(f"Categorical covariate {spec.name!r} has missing values.")
        levels = sorted(column.astype(str).unique())
        if len(levels) < 2:
            raise ValueError(f"Categorical covariate {spec.name!r} has a single level {levels}; "
                             "it carries no contrast.")
        if spec.reference is None:
            return f"C({code})", levels
        if spec.reference not in levels:
            raise ValueError(f"Reference level {spec.reference!r} not found for {spec.name!r}: {levels}")
        return f"C({code}, Treatment(reference={spec.reference!r}))", levels

    @log_time("Design Matrix")
    def build(self, sample_ids: Optional[Sequence] = None) -> DesignSpecification:
        sample_ids = list(self.meta.index) if sample_ids is None else list(sample_ids)
        meta = self._align(sample_ids)

        # Safe placeholder names keep patsy away from arbitrary column labels.
        data = {}
        terms, specs, levels = [], [], {}
        for i, spec in enumerate(self.covariates):
            if spec.name not in meta.columns:
                raise ValueError(f"{spec.name} not found in sample metadata.")
            column = meta[spec.name]
            spec = spec.resolve(column)
            code = f"_cov{i}"
            term, lv = self._term(code, spec, column)
            if spec.kind is CovariateKind.CATEGORICAL:
                data[code] = column.astype(str).to_numpy()
                levels[spec.name] = lv
            else:
                data[code] = pd.to_numeric(column).to_numpy(dtype=np.float64)
            terms.append(term)
            specs.append(spec)

        rhs = " + ".join(terms) if terms else ""
        self.formula = ("1" if self.intercept else "0") + (f" + {rhs}" if rhs else "")
        design_dm = patsy.dmatrix(self.formula, data, NA_action="raise", return_type="dataframe")

        names = []
        for col in design_dm.columns:
            match = _PLACEHOLDER.search(col)
            if match is not None:
                name = specs[int(match.group(1))].name
                col = name + (col[col.index("["):] if "[" in col else "")
            names.append(col)

        design = DesignSpecification(
            matrix=design_dm.to_numpy(dtype=np.float64),
            column_names=tuple(names),
            sample_ids=tuple(sample_ids),
            covariates=tuple(specs),
            levels=levels,
            formula=self.formula,
        )
        design.check_rank()
        log_info(f"Design: {design.n_samples} sample(s) x {design.n_columns} column(s) {list(design.column_names)}")
        return design
