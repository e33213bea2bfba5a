from typing import Tuple

import numpy as np

from deflux.utils.utils import log_time


@log_time("Apply Contrasts")
def apply_contrasts(fit_results, contrast_matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Applies contrast matrix to fitted model results.

    Parameters:
    - fit_results: FitResult (or ModeratedFitResult) from LinearModelFitter
    - contrast_matrix: shape (p x m), p = design coefficients, m = contrasts

    Returns:
    - estimates: (n_features x m) contrast estimates (log2FC)
    - stdev_unscaled: (n_features x m), sqrt(c' V_g c) with V_g the unscaled
      coefficient covariance of feature g
    """
    B = fit_results.coefficients            # (n_features x p)
    V = fit_results.cov_unscaled            # (n_features x p x p)
    C = np.asarray(contrast_matrix, dtype=float)

    if C.ndim != 2 or C.shape[0] != B.shape[1]:
        raise ValueError(
            f"Contrast matrix must be ({B.shape[1]} x m) to match the design, got {C.shape}"
        )

    estimates = B @ C
    var_unscaled = np.einsum("pm,gpq,qm->gm", C, V, C)
    # rounding can leave tiny negatives where c'Vc is 0
    stdev_unscaled = np.sqrt(np.clip(var_unscaled, 0.0, None))
    return estimates, stdev_unscaled
