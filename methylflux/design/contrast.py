import numpy as np

from methylflux.analysis.linearmodelfitter import FitResult


def apply_contrast(fit_results: FitResult, contrast_vector: np.ndarray):
    """
    Applies one contrast vector to fitted model results.

    Parameters:
    - fit_results: output of LinearModelFitter.fit()
    - contrast_vector: shape (p,), p = design coefficients

    Returns:
    - effect: (n_features,) contrast estimate (NaN for excluded features)
    - stdev_unscaled: scalar sqrt(c^T (X'X)^-1 c), shared by all features
    """
    B = fit_results.coefficients          # (n_features x p)
    XtX_inv = fit_results.xtx_inv         # (p x p)
    c = np.asarray(contrast_vector, dtype=np.float64)

    if c.shape != (B.shape[1],):
        raise ValueError(f"Contrast has shape {c.shape}; expected ({B.shape[1]},)")

    effect = B @ c
    stdev_unscaled = float(np.sqrt(c @ XtX_inv @ c))
    return effect, stdev_unscaled
