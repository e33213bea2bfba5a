"""Normalization of the abundance matrix for deflux.

This module performs, depending on the assay type:
1) Intensity data: log transform (log2 / log10), additive median
   equalization, and an optional minimum-observation filter.
2) Count data: optional inverse log, CPM filtering, TMM scale factors and
   voom precision weights.

All steps record intermediate artifacts to `IntermediateResults`, which are then
assembled into a `PreprocessResults` container consumed by downstream code.
"""

from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.stats import rankdata
from statsmodels.nonparametric.smoothers_lowess import lowess

from deflux.dataset.intermediateresults import IntermediateResults
from deflux.dataset.preprocessresults import PreprocessResults
from deflux.utils.analysis_type import normalize_assay_type
from deflux.utils.utils import log_indent, log_info, log_time, log_warning


def cpm(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    """Counts per million, per sample column."""
    return counts * 1e6 / lib_size[None, :]


def cpm_filter_mask(counts: np.ndarray, min_cpm: float, min_samples: int, lib_size: Optional[np.ndarray] = None) -> np.ndarray:
    """True for features with CPM >= min_cpm in at least min_samples samples (bounds inclusive)."""
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        values = cpm(counts, lib_size)
    return (values >= min_cpm).sum(axis=1) >= min_samples


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
) -> float:
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def tmm_factors(
    counts: np.ndarray,
    lib_size: Optional[np.ndarray] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> np.ndarray:
    """
    Trimmed mean of M-values scale factors (edgeR calcNormFactors, method TMM).

    The reference sample is the one whose upper quartile is closest to the mean
    upper quartile. Factors are rescaled to a geometric mean of 1.
    """
    counts = np.asarray(counts, dtype=float)
    if lib_size is None:
        lib_size = counts.sum(axis=0)

    f75 = np.quantile(counts / lib_size[None, :], 0.75, axis=0)
    ref_col = int(np.argmin(np.abs(f75 - f75.mean())))

    factors = np.array([
        _tmm_factor(counts[:, i], counts[:, ref_col], lib_size[i], lib_size[ref_col], logratio_trim, sum_trim)
        for i in range(counts.shape[1])
    ])
    return factors / np.exp(np.mean(np.log(factors)))


def voom_weights(
    counts: np.ndarray,
    design: Optional[np.ndarray] = None,
    lib_size: Optional[np.ndarray] = None,
    span: float = 0.5,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Mean-variance precision weights (limma voom).

    Returns (log-CPM matrix, weights), both features x samples.
    """
    counts = np.asarray(counts, dtype=float)
    n_samples = counts.shape[1]
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    X = np.ones((n_samples, 1)) if design is None else np.asarray(design, dtype=float)
    if X.shape[0] != n_samples:
        raise ValueError(f"Design has {X.shape[0]} rows for {n_samples} samples.")

    y = np.log2((counts + 0.5) / (lib_size[None, :] + 1) * 1e6)

    beta, _, rank, _ = np.linalg.lstsq(X, y.T, rcond=None)    # (p x G)
    fitted = (X @ beta).T                                       # (G x n)
    df_res = n_samples - rank
    if df_res <= 0:
        raise ValueError("voom needs residual degrees of freedom: more samples than design coefficients.")
    sigma = np.sqrt(np.sum((y - fitted) ** 2, axis=1) / df_res)

    sx = y.mean(axis=1) + np.mean(np.log2(lib_size + 1)) - np.log2(1e6)
    sy = np.sqrt(sigma)
    trend = lowess(sy, sx, frac=span, return_sorted=True)

    fitted_count = 1e-6 * 2 ** fitted * (lib_size[None, :] + 1)
    fitted_logcount = np.log2(fitted_count)
    f = np.interp(fitted_logcount, trend[:, 0], trend[:, 1])
    weights = 1 / f ** 4
    return y, weights


class Preprocessor:
    """Handles filtering and normalization of one abundance matrix."""

    available_normalization = ["log2", "log10", "median_equalization", "none"]

    def __init__(self, config: Optional[dict] = None):
        """Initialize from the `preprocessing:` config section."""
        config = config or {}
        self.intermediate_results = IntermediateResults()
        self.assay_type = normalize_assay_type(config.get("assay_type"))

        # Intensity
        normalization = config.get("normalization") or {}
        methods = normalization.get("method", ["log2"])
        if isinstance(methods, str):
            methods = [methods]
        unknown = [m for m in methods if m not in self.available_normalization]
        if unknown:
            raise ValueError(f"Unknown normalization method(s) {unknown}; use {self.available_normalization}.")
        self.normalization_methods: List[str] = list(methods)

        filtering = config.get("filtering") or {}
        self.min_observations = int(filtering.get("min_observations", 0) or 0)

        # Counts
        counts = config.get("counts") or {}
        self.inverse_log = bool(counts.get("inverse_log", False))
        self.log_offset = float(counts.get("log_offset", 1.0))
        self.min_cpm = float(counts.get("min_cpm", 1.0))
        self.min_samples = int(counts.get("min_samples", 2))
        self.use_tmm = bool(counts.get("tmm", True))
        self.use_voom = bool(counts.get("voom", True))
        self.lowess_span = float(counts.get("lowess_span", 0.5))

    def fit_transform(self, matrix: pd.DataFrame, design: Optional[np.ndarray] = None) -> PreprocessResults:
        """
        Normalize `matrix` (features x samples) and return a `PreprocessResults` bundle.

        `design` (samples x coefficients, matrix column order) is only used by
        the voom weights of count data; intercept-only when absent.
        """
        self.intermediate_results.add_matrix("raw", matrix)

        if self.assay_type == "counts":
            self._process_counts(matrix, design)
        else:
            self._process_intensity(matrix)

        ir = self.intermediate_results
        return PreprocessResults(
            normalized=ir.matrices["normalized"],
            raw=ir.matrices["raw"],
            assay_type=self.assay_type,
            weights=ir.matrices.get("weights"),
            lib_size=ir.vectors.get("lib_size"),
            norm_factors=ir.vectors.get("norm_factors"),
            meta_filter=dict(ir.metadata["filtering"]),
            meta_normalization=dict(ir.metadata["normalization"]),
        )

    @log_time("Normalization")
    def _process_intensity(self, matrix: pd.DataFrame) -> None:
        mat = matrix.to_numpy(dtype=float).copy()

        for method in self.normalization_methods:
            if method in ("log2", "log10"):
                nonpos = np.isfinite(mat) & (mat <= 0)
                if nonpos.any():
                    log_info(f"{int(nonpos.sum())} non-positive value(s) set to missing before {method}.")
                mat = np.where(np.isfinite(mat) & (mat > 0), mat, np.nan)
                with np.errstate(divide="ignore", invalid="ignore"):
                    mat = np.log2(mat) if method == "log2" else np.log10(mat)
                self.intermediate_results.add_matrix(
                    "postlog", pd.DataFrame(mat, index=matrix.index, columns=matrix.columns)
                )

            elif method == "median_equalization":
                global_median = np.nanmedian(mat)
                medians = np.nanmedian(mat, axis=0, keepdims=True)
                mat = mat - medians + global_median
                self.intermediate_results.add_metadata("normalization", "global_median", float(global_median))

            log_info(f"Applied {method}")

        self.intermediate_results.add_metadata("normalization", "methods", list(self.normalization_methods))
        normalized = pd.DataFrame(mat, index=matrix.index, columns=matrix.columns)

        if self.min_observations > 0:
            keep = normalized.notna().sum(axis=1) >= self.min_observations
            n_removed = int((~keep).sum())
            with log_indent():
                log_info(f"Min. observations ({self.min_observations}): {n_removed} feature(s) removed.")
            self.intermediate_results.add_metadata("filtering", "min_observations", self.min_observations)
            self.intermediate_results.add_metadata("filtering", "n_removed", n_removed)
            normalized = normalized.loc[keep]

        self.intermediate_results.add_matrix("normalized", normalized)

    @log_time("Count Normalization")
    def _process_counts(self, matrix: pd.DataFrame, design: Optional[np.ndarray]) -> None:
        ir = self.intermediate_results
        counts = matrix.to_numpy(dtype=float).copy()

        if self.inverse_log:
            counts = 2 ** counts - self.log_offset
            log_info(f"Inverse log2 with offset {self.log_offset}")
        # not-observed cells are zero counts
        counts = np.where(np.isfinite(counts), counts, 0.0)
        if (counts < 0).any():
            log_warning(f"{int((counts < 0).sum())} negative count(s) set to 0.")
            counts = np.clip(counts, 0.0, None)

        # Filtering
        lib_full = counts.sum(axis=0)
        keep = cpm_filter_mask(counts, self.min_cpm, self.min_samples, lib_full)
        n_removed = int((~keep).sum())
        log_info(
            f"CPM filter (>= {self.min_cpm} CPM in >= {self.min_samples} samples): "
            f"{n_removed} of {len(keep)} feature(s) removed."
        )
        ir.add_metadata("filtering", "min_cpm", self.min_cpm)
        ir.add_metadata("filtering", "min_samples", self.min_samples)
        ir.add_metadata("filtering", "n_removed", n_removed)
        counts = counts[keep]
        index = matrix.index[keep]
        if counts.shape[0] == 0:
            raise ValueError("No feature passed the CPM filter.")

        lib_size = counts.sum(axis=0)
        ir.add_vector("lib_size", pd.Series(lib_size, index=matrix.columns, name="lib_size"))

        factors = tmm_factors(counts, lib_size) if self.use_tmm else np.ones(counts.shape[1])
        ir.add_vector("norm_factors", pd.Series(factors, index=matrix.columns, name="norm_factors"))
        if self.use_tmm:
            log_info(f"TMM factors: {np.round(factors, 3).tolist()}")
        eff_lib = lib_size * factors

        if self.use_voom:
            logcpm, weights = voom_weights(counts, design, eff_lib, span=self.lowess_span)
            ir.add_matrix("weights", pd.DataFrame(weights, index=index, columns=matrix.columns))
            log_info(f"voom weights: median {np.median(weights):.3g}, range [{weights.min():.3g}, {weights.max():.3g}]")
        else:
            logcpm = np.log2((counts + 0.5) / (eff_lib[None, :] + 1) * 1e6)

        ir.add_metadata("normalization", "methods", ["log_cpm"] + (["tmm"] if self.use_tmm else []))
        ir.add_matrix("normalized", pd.DataFrame(logcpm, index=index, columns=matrix.columns))
