import numpy as np
from scipy.special import digamma, polygamma
from scipy.stats.mstats import winsorize


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    """Keep the features a prior can be estimated from: finite positive variance, finite df > 0."""
    s2 = np.asarray(s2, dtype=float)
    # If df is scalar, broadcast it to shape of s2
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df)
    df = np.asarray(df, dtype=float)

    mask = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask]


def trigamma_inverse(y: float, tol: float = 1e-8) -> float:
    """Solve trigamma(x) = y for x > 0 (Newton iteration on 1/trigamma, as limma does)."""
    if not np.isfinite(y) or y <= 0:
        return np.nan
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if -delta / x < tol:
            break
    return float(x)


def winsorize_log_variances(z: np.ndarray, lower: float = 0.05, upper: float = 0.10) -> np.ndarray:
    """Clamp the extreme tails of the log variances before the moment fit."""
    return np.asarray(winsorize(np.asarray(z, dtype=float), limits=(lower, upper)))


def fit_fdist(s2: np.ndarray, df1, robust: bool = False) -> tuple[float, float]:
    """
    Moment estimate of the scaled F prior on the residual variances
    (limma's fitFDist): returns (s2_prior, df_prior).

    df_prior is inf when the observed spread of log variances is no larger than
    sampling alone explains. Both are NaN when fewer than two features are usable.
    """
    x, d = squeeze_var_input_filter(s2, df1)
    if x.size < 2:
        return np.nan, np.nan

    # Avoid zeros like limma does
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)
    if robust:
        z = winsorize_log_variances(z)

    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, d / 2.0))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(df2)
