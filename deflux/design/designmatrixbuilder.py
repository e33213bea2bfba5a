from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
import patsy

from deflux.design.specification import ModelSpec, Predictor
from deflux.utils.errors import InsufficientReplicatesError, SchemaMismatchError, fmt_ids
from deflux.utils.semantics import MISSING_LEVEL
from deflux.utils.utils import log_info, log_time


@dataclass(frozen=True)
class DesignMatrix:
    """Design matrix (samples x coefficients) plus what is needed to resolve contrasts."""
    matrix: pd.DataFrame
    model: ModelSpec
    formula: str
    rank: int
    levels: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def columns(self) -> List[str]:
        return list(self.matrix.columns)

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=float)

    @property
    def samples(self) -> List[str]:
        return list(self.matrix.index)


class DesignMatrixBuilder:
    def __init__(self, sample_metadata: pd.DataFrame, model: ModelSpec):
        """
        Parameters:
        - sample_metadata: metadata indexed by sample ID, rows in matrix column order
          (see `align_metadata`)
        - model: typed predictors and intercept flag
        """
        self.meta = sample_metadata.copy()
        self.model = model
        self.formula = None
        self.levels: Dict[str, List[str]] = {}

    def _categorical(self, pred: Predictor) -> pd.Categorical:
        raw = self.meta[pred.name]
        values = raw.astype(str).where(raw.notna(), MISSING_LEVEL)

        if pred.levels:
            levels = list(pred.levels)
            unknown = sorted(set(values) - set(levels) - {MISSING_LEVEL})
            if unknown:
                raise SchemaMismatchError(
                    f"Predictor {pred.name!r}: values {fmt_ids(unknown)} are not among the configured levels {levels}"
                )
        else:
            levels = sorted(v for v in set(values) if v != MISSING_LEVEL)

        if (values == MISSING_LEVEL).any() and MISSING_LEVEL not in levels:
            n_missing = int((values == MISSING_LEVEL).sum())
            log_info(f"Predictor {pred.name!r}: {n_missing} sample(s) without value mapped to level '{MISSING_LEVEL}'.")
            levels.append(MISSING_LEVEL)

        self.levels[pred.name] = levels
        return pd.Categorical(values, categories=levels)

    def _continuous(self, pred: Predictor) -> pd.Series:
        values = pd.to_numeric(self.meta[pred.name], errors="coerce")
        bad = list(self.meta.index[values.isna()])
        if bad:
            raise SchemaMismatchError(
                f"Continuous predictor {pred.name!r} has missing or non-numeric values for samples {fmt_ids(bad)}"
            )
        return values.astype(float)

    def _term(self, pred: Predictor) -> str:
        if pred.kind == "categorical":
            return f"C(Q({pred.name!r}))"
        return f"Q({pred.name!r})"

    def _clean_names(self, columns: List[str]) -> List[str]:
        """Map patsy column names to `name[level]`, `name[T.level]`, `name`."""
        prefixes = {self._term(p): p.name for p in self.model.predictors}
        out = []
        for col in columns:
            new = col
            for prefix, name in prefixes.items():
                if col == prefix:
                    new = name
                    break
                if col.startswith(prefix + "["):
                    new = name + col[len(prefix):]
                    break
            out.append(new)
        return out

    @log_time("Design Matrix")
    def build(self) -> DesignMatrix:
        missing = [n for n in self.model.predictor_names if n not in self.meta.columns]
        if missing:
            raise SchemaMismatchError(
                f"Predictors {missing} not found in sample metadata columns {list(self.meta.columns)}"
            )

        data = pd.DataFrame(index=self.meta.index)
        for pred in self.model.predictors:
            if pred.kind == "categorical":
                data[pred.name] = self._categorical(pred)
            else:
                data[pred.name] = self._continuous(pred)

        terms = " + ".join(self._term(p) for p in self.model.predictors)
        self.formula = ("1 + " if self.model.intercept else "0 + ") + terms
        design_df = patsy.dmatrix(self.formula, data, return_type="dataframe", NA_action="raise")
        design_df.columns = self._clean_names(list(design_df.columns))
        design_df.index = list(self.meta.index)

        n_samples, n_coefs = design_df.shape
        rank = int(np.linalg.matrix_rank(design_df.to_numpy(dtype=float)))
        if rank < n_coefs:
            raise InsufficientReplicatesError(
                f"Design matrix is rank deficient (rank {rank} < {n_coefs} coefficients): "
                f"columns {list(design_df.columns)} are not estimable from {n_samples} samples."
            )
        if rank >= n_samples:
            raise InsufficientReplicatesError(
                f"No residual degrees of freedom: {n_samples} samples for {rank} coefficients. "
                "Add replicates or drop predictors."
            )

        log_info(f"Formula: {self.formula}")
        log_info(f"{n_samples} samples x {n_coefs} coefficients, residual df {n_samples - rank}.")
        return DesignMatrix(
            matrix=design_df,
            model=self.model,
            formula=self.formula,
            rank=rank,
            levels=dict(self.levels),
        )
