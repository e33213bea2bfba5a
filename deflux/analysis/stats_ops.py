from __future__ import annotations

import numpy as np
from scipy.stats import norm
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests


def two_sided_pvalues(t: np.ndarray, df: np.ndarray) -> np.ndarray:
    """
    2 * t.sf(|t|, df), with the normal tail where df is infinite.
    NaN t or NaN df give NaN.
    """
    t = np.asarray(t, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), t.shape)
    p = np.full(t.shape, np.nan)
    finite = np.isfinite(t) & np.isfinite(df) & (df > 0)
    infinite = np.isfinite(t) & np.isposinf(df)
    p[finite] = 2 * t_dist.sf(np.abs(t[finite]), df=df[finite])
    p[infinite] = 2 * norm.sf(np.abs(t[infinite]))
    return p


def t_quantile(q: float, df: np.ndarray) -> np.ndarray:
    """t quantile per feature, normal quantile where df is infinite."""
    df = np.asarray(df, dtype=float)
    out = np.full(df.shape, np.nan)
    finite = np.isfinite(df) & (df > 0)
    out[finite] = t_dist.ppf(q, df=df[finite])
    out[np.isposinf(df)] = norm.ppf(q)
    return out


def raw_stats_from_fit(
    *,
    coefs: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Ordinary (unmoderated) statistics:
      se = stdu * sigma[:, None]
      t  = coefs / se
      p  = 2 * t.sf(|t|, df=df_res[:, None])
    """
    se = stdu * sigma[:, None]
    with np.errstate(divide="ignore", invalid="ignore"):
        t = coefs / se
    t[~np.isfinite(se) | (se == 0)] = np.nan
    p = two_sided_pvalues(t, df_res[:, None])
    return se, t, p


def bh_qvalues(p: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg q-values per contrast/column, over the finite p-values only."""
    p = np.asarray(p, dtype=float)
    if p.ndim == 1:
        return bh_qvalues(p[:, None])[:, 0]
    if p.ndim != 2:
        raise ValueError(f"Expected 2D p-value array (n_features x n_contrasts), got shape {p.shape}")

    q = np.full(p.shape, np.nan)
    for j in range(p.shape[1]):
        ok = np.isfinite(p[:, j])
        if ok.any():
            q[ok, j] = multipletests(p[ok, j], method="fdr_bh")[1]
    return q
