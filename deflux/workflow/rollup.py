"""Peptide to protein rollup.

Both methods remove peptide-specific offsets (ionization efficiency) before
combining peptides, so a protein value is on the scale of its typical
peptide:

- median_polish: Tukey median polish, protein value = overall + column effect
- median_centered: peptides centered on their own median, per-sample median
  of the centered values plus the median peptide level

A protein group backed by a single peptide passes that peptide through.
"""

import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from deflux.utils.semantics import COL_N_PEPTIDES, COL_ORGANISM, COL_PROTEIN_ID, ORGANISM_AMBIGUOUS
from deflux.utils.utils import log_info, log_time, log_warning

ROLLUP_METHODS = ("median_polish", "median_centered")


@dataclass
class MedianPolishResult:
    overall: float
    row_effects: pd.Series
    col_effects: pd.Series
    residuals: pd.DataFrame
    n_iterations: int
    converged: bool

    @property
    def abundances(self) -> pd.Series:
        return self.col_effects + self.overall


@dataclass
class RollupResult:
    matrix: pd.DataFrame        # protein groups x samples
    n_peptides: pd.Series       # peptides per protein group
    annotation: pd.DataFrame    # PROTEIN_ID, N_PEPTIDES[, ORGANISM], indexed by group


def tukey_median_polish(
    matrix: pd.DataFrame,
    max_iter: int = 10,
    tol: float = 1e-4,
) -> MedianPolishResult:
    """
    Apply Tukey's median polish to a peptide x sample matrix.

    Model: y_ij = mu + a_i + b_j + e_ij

    Where:
        - mu = overall effect (grand median)
        - a_i = row/peptide effect
        - b_j = column/sample effect (the protein abundance, relative to mu)
        - e_ij = residual

    Missing values are skipped by every median; a sample with no peptide at
    all keeps a NaN column effect.
    """
    row_idx = matrix.index
    col_idx = matrix.columns

    residuals = matrix.to_numpy(dtype=float).copy()
    overall = 0.0
    row_effects = np.zeros(len(row_idx))
    col_effects = np.zeros(len(col_idx))

    converged = False
    iteration = 0
    with warnings.catch_warnings():
        # all-NaN samples
        warnings.simplefilter("ignore", category=RuntimeWarning)
        for iteration in range(max_iter):
            old_residuals = residuals.copy()

            row_medians = np.nanmedian(residuals, axis=1)
            residuals = residuals - row_medians[:, np.newaxis]
            row_effects += row_medians - np.nanmedian(row_medians)
            overall += np.nanmedian(row_medians)

            col_medians = np.nanmedian(residuals, axis=0)
            residuals = residuals - col_medians[np.newaxis, :]
            col_effects += col_medians - np.nanmedian(col_medians)
            overall += np.nanmedian(col_medians)

            max_change = np.nanmax(np.abs(residuals - old_residuals))
            if max_change < tol:
                converged = True
                break

    return MedianPolishResult(
        overall=float(overall),
        row_effects=pd.Series(row_effects, index=row_idx, name="peptide_effect"),
        col_effects=pd.Series(col_effects, index=col_idx, name="protein_abundance"),
        residuals=pd.DataFrame(residuals, index=row_idx, columns=col_idx),
        n_iterations=iteration + 1,
        converged=converged,
    )


def median_centered(matrix: pd.DataFrame) -> pd.Series:
    """Per-sample median of median-centered peptides, shifted back to the median peptide level."""
    values = matrix.to_numpy(dtype=float)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        row_medians = np.nanmedian(values, axis=1)
        centered = values - row_medians[:, np.newaxis]
        out = np.nanmedian(centered, axis=0) + np.nanmedian(row_medians)
    return pd.Series(out, index=matrix.columns)


def _rollup_group(sub: pd.DataFrame, method: str) -> pd.Series:
    if len(sub) == 1:
        return sub.iloc[0]
    if method == "median_polish":
        return tukey_median_polish(sub).abundances
    return median_centered(sub)


def _group_organism(labels: pd.Series) -> Optional[str]:
    uniq = labels.dropna().unique()
    if len(uniq) == 0:
        return None
    if len(uniq) == 1:
        return uniq[0]
    return ORGANISM_AMBIGUOUS


@log_time("Protein Rollup")
def rollup_to_protein(
    peptides: pd.DataFrame,
    protein_groups: pd.Series,
    method: str = "median_polish",
    annotation: Optional[pd.DataFrame] = None,
    weights: Optional[pd.DataFrame] = None,
) -> RollupResult:
    """
    Roll a peptide x sample matrix (log scale) up to protein groups.

    Args:
        peptides: AbundanceMatrix at peptide level.
        protein_groups: protein-group label per peptide (same index). Labels,
            including ambiguous 'A;B' groups, are kept as-is.
        method: 'median_polish' or 'median_centered'.
        annotation: optional peptide annotation; its ORGANISM column is carried
            to the protein level.
        weights: precision weights of count data. Count data is analysed at
            the level it was counted, so passing weights is an error.

    Returns:
        RollupResult with protein groups sorted by label.
    """
    if weights is not None:
        raise ValueError("Rollup of count data with precision weights is not supported.")
    if method not in ROLLUP_METHODS:
        raise ValueError(f"Unknown rollup method {method!r}; use one of {ROLLUP_METHODS}.")

    groups = protein_groups.reindex(peptides.index)
    unassigned = groups.isna()
    if unassigned.any():
        log_warning(f"{int(unassigned.sum())} peptide(s) without protein group are left out of the rollup.")
    groups = groups[~unassigned].astype(str)
    peps = peptides.loc[groups.index]

    rows = {}
    n_peptides = {}
    for label, idx in groups.groupby(groups, sort=True).groups.items():
        sub = peps.loc[idx]
        rows[label] = _rollup_group(sub, method)
        n_peptides[label] = len(sub)

    matrix = pd.DataFrame.from_dict(rows, orient="index", columns=peptides.columns).astype(float)
    n_pep = pd.Series(n_peptides, name=COL_N_PEPTIDES).reindex(matrix.index)

    prot_annot = pd.DataFrame({COL_PROTEIN_ID: matrix.index, COL_N_PEPTIDES: n_pep.values}, index=matrix.index)
    if annotation is not None and COL_ORGANISM in annotation.columns:
        org = annotation.loc[groups.index, COL_ORGANISM].groupby(groups).agg(_group_organism)
        prot_annot[COL_ORGANISM] = org.reindex(matrix.index).values

    n_single = int((n_pep == 1).sum())
    log_info(
        f"{len(peps)} peptides -> {len(matrix)} protein groups ({method}); "
        f"{n_single} single-peptide group(s) passed through."
    )
    return RollupResult(matrix=matrix, n_peptides=n_pep, annotation=prot_annot)
