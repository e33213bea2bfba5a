"""Column-wise assembly of the per-study result table.

Every input carries its feature-ID index. Inputs are bound positionally only
after their indices are checked against the abundance matrix: the assembler
never re-joins, re-sorts or truncates.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from deflux.utils.errors import RowAlignmentError, fmt_ids
from deflux.utils.semantics import (
    ABUNDANCE_PREFIX,
    COL_FEATURE_ID,
    STAT_CI_HIGH,
    STAT_CI_LOW,
    STAT_LOG2FC,
    STAT_PVALUE,
    STAT_PVALUE_RAW,
    STAT_QVALUE,
    STAT_QVALUE_RAW,
    STAT_SE,
    STAT_T,
)

CONTRAST_STATS = (
    STAT_LOG2FC, STAT_SE, STAT_CI_LOW, STAT_CI_HIGH, STAT_T,
    STAT_PVALUE, STAT_QVALUE, STAT_PVALUE_RAW, STAT_QVALUE_RAW,
)


@dataclass(frozen=True)
class ResultTable:
    table: pd.DataFrame
    design: pd.DataFrame
    contrast_names: tuple
    s2_prior: float = np.nan
    df_prior: float = np.nan

    @property
    def n_features(self) -> int:
        return len(self.table)

    def head(self, n: int = 50) -> pd.DataFrame:
        """First `n` rows in table order (not re-sorted)."""
        return self.table.head(n)

    def contrast_block(self, name: str) -> pd.DataFrame:
        if name not in self.contrast_names:
            raise KeyError(f"Unknown contrast {name!r}; available: {list(self.contrast_names)}")
        cols = {f"{stat}_{name}": stat for stat in CONTRAST_STATS if f"{stat}_{name}" in self.table.columns}
        return self.table[list(cols)].rename(columns=cols)


class ResultTableAssembler:
    def __init__(self, abundance: pd.DataFrame, annotation: Optional[pd.DataFrame] = None):
        """
        Parameters:
        - abundance: AbundanceMatrix (features x samples); its index is the
          authoritative feature order
        - annotation: optional per-feature annotation, same index
        """
        self.abundance = abundance
        self.index = abundance.index
        self.annotation = annotation
        if annotation is not None:
            self._check_alignment(annotation, "annotation")

    def _check_alignment(self, part: pd.DataFrame, label: str) -> None:
        if len(part) != len(self.index):
            raise RowAlignmentError(
                f"{label}: {len(part)} rows, abundance matrix has {len(self.index)} rows."
            )
        if not part.index.equals(self.index):
            diff = [a for a, b in zip(part.index, self.index) if a != b]
            raise RowAlignmentError(
                f"{label}: feature order differs from the abundance matrix "
                f"({len(diff)} mismatching positions, e.g. {fmt_ids(diff, cap=5)})."
            )

    def assemble(
        self,
        contrast_blocks: Dict[str, pd.DataFrame],
        design: pd.DataFrame,
        missingness: Optional[pd.DataFrame] = None,
        s2_prior: float = np.nan,
        df_prior: float = np.nan,
    ) -> ResultTable:
        """
        Column order: annotation (a FEATURE_ID column when there is none), one
        block per contrast (`<STAT>_<contrast>`, in the order of
        `contrast_blocks`), optional missingness counts, then abundance columns
        prefixed `log2_`.
        """
        parts: List[pd.DataFrame] = []
        if self.annotation is not None:
            parts.append(self.annotation)
        else:
            parts.append(pd.DataFrame({COL_FEATURE_ID: self.index}, index=self.index))

        for name, block in contrast_blocks.items():
            self._check_alignment(block, f"contrast {name!r}")
            parts.append(block.rename(columns=lambda c, n=name: f"{c}_{n}"))

        if missingness is not None:
            self._check_alignment(missingness, "missingness")
            parts.append(missingness)

        parts.append(self.abundance.add_prefix(ABUNDANCE_PREFIX))

        table = pd.concat([p.set_axis(self.index, axis=0) for p in parts], axis=1)
        if table.columns.duplicated().any():
            dup = list(table.columns[table.columns.duplicated()])
            raise ValueError(f"Duplicated result columns: {fmt_ids(dup)}")

        return ResultTable(
            table=table,
            design=design,
            contrast_names=tuple(contrast_blocks),
            s2_prior=s2_prior,
            df_prior=df_prior,
        )
