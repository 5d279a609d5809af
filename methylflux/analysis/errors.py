"""Exceptions raised by the differential scoring pipeline.

All scoring errors derive from ValueError, so callers already handling bad
input the usual way keep working.
"""


class ScoringError(ValueError):
    """Base class for scoring failures."""


class EmptyInputError(ScoringError):
    def __init__(self, n_features: int, n_samples: int):
        self.n_features = n_features
        self.n_samples = n_samples
        super().__init__(
            f"Empty measurement matrix: {n_features} feature(s) x {n_samples} sample(s)."
        )


class DimensionMismatchError(ScoringError):
    def __init__(self, n_matrix_samples: int, n_design_samples: int, detail: str = ""):
        self.n_matrix_samples = n_matrix_samples
        self.n_design_samples = n_design_samples
        msg = (f"Sample mismatch: matrix has {n_matrix_samples} sample(s), "
               f"design has {n_design_samples}.")
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)


class DesignRankError(ScoringError):
    def __init__(self, rank: int, n_columns: int, n_samples: int, columns=None):
        self.rank = rank
        self.n_columns = n_columns
        self.n_samples = n_samples
        msg = f"Design matrix has rank {rank} with {n_columns} column(s) and {n_samples} sample(s)"
        if rank < n_columns:
            msg += "; coefficients are not identifiable"
        else:
            msg += "; no residual degrees of freedom left"
        if columns:
            msg += f" (columns: {list(columns)})"
        super().__init__(msg + ".")


class MalformedFeatureError(ScoringError):
    """Recorded, not raised: a feature holding non-finite values."""

    def __init__(self, feature_id, n_nonfinite: int):
        self.feature_id = feature_id
        self.n_nonfinite = n_nonfinite
        super().__init__(f"Feature {feature_id!r} has {n_nonfinite} non-finite value(s).")


class ScoringCancelledError(ScoringError):
    def __init__(self, n_done: int, n_total: int):
        self.n_done = n_done
        self.n_total = n_total
        super().__init__(f"Scoring cancelled after {n_done}/{n_total} feature(s); no report produced.")
