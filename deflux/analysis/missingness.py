from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

from deflux.utils.semantics import MISSINGNESS_PREFIX


@dataclass(frozen=True)
class MissingnessResult:
    df: pd.DataFrame
    source: str
    rule: str


def _missingness_counts(intensity_matrix_GxN: np.ndarray, conditions: list[str]) -> dict[str, np.ndarray]:
    cond_arr = np.asarray(conditions, dtype=str)
    out: dict[str, np.ndarray] = {}
    for cond in np.unique(cond_arr):
        mask = cond_arr == cond
        out[cond] = np.isnan(intensity_matrix_GxN[:, mask]).sum(axis=1)
    return out


def compute_missingness(
    matrix: pd.DataFrame,
    conditions: list[str],
    source: str = "normalized",
) -> MissingnessResult:
    """
    Per-feature count of missing samples per condition.

    `matrix` is features x samples; `conditions` gives one label per sample
    column. Columns are named `Missingness_<condition>`.
    """
    if len(conditions) != matrix.shape[1]:
        raise ValueError(f"{len(conditions)} condition labels for {matrix.shape[1]} samples.")
    counts = _missingness_counts(matrix.to_numpy(dtype=float), list(conditions))
    df = pd.DataFrame(
        {f"{MISSINGNESS_PREFIX}{cond}": n for cond, n in counts.items()},
        index=matrix.index,
    )
    return MissingnessResult(df=df, source=source, rule="nan-is-missing")
