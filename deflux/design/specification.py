"""Typed model and contrast specification, plus sample-metadata validation."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from deflux.utils.errors import SchemaMismatchError, fmt_ids

PREDICTOR_KINDS = ("categorical", "continuous")


@dataclass(frozen=True)
class Predictor:
    """One model term. `levels` fixes the level order of a categorical (first = reference)."""
    name: str
    kind: str = "categorical"
    levels: Optional[tuple] = None

    def __post_init__(self):
        if self.kind not in PREDICTOR_KINDS:
            raise ValueError(f"Predictor {self.name!r}: kind must be one of {PREDICTOR_KINDS}, got {self.kind!r}")


@dataclass(frozen=True)
class ModelSpec:
    predictors: tuple
    intercept: bool = False

    def __post_init__(self):
        if not self.predictors:
            raise ValueError("Model specification needs at least one predictor.")
        names = [p.name for p in self.predictors]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicated predictors in model specification: {names}")

    @property
    def predictor_names(self) -> List[str]:
        return [p.name for p in self.predictors]

    @property
    def categorical(self) -> List[Predictor]:
        return [p for p in self.predictors if p.kind == "categorical"]


@dataclass(frozen=True)
class Contrast:
    """
    A named linear combination of design coefficients.

    Either `weights` is given directly (coefficient name -> weight), or the
    contrast is a level comparison `factor: numerator - denominator` that
    `ContrastBuilder` resolves against the design columns.
    """
    name: str
    weights: Dict[str, float] = field(default_factory=dict)
    factor: Optional[str] = None
    numerator: Optional[str] = None
    denominator: Optional[str] = None

    def __post_init__(self):
        by_levels = self.numerator is not None or self.denominator is not None
        if bool(self.weights) == by_levels:
            raise ValueError(
                f"Contrast {self.name!r}: give either 'weights' or 'numerator'/'denominator', not both or neither."
            )

    @classmethod
    def between(cls, factor: str, numerator: str, denominator: str, name: Optional[str] = None) -> "Contrast":
        return cls(
            name=name or f"{numerator}_vs_{denominator}",
            factor=factor,
            numerator=str(numerator),
            denominator=str(denominator),
        )


@dataclass(frozen=True)
class ContrastSpecification:
    model: ModelSpec
    contrasts: tuple = ()
    only_against: Optional[str] = None

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.contrasts]

    @classmethod
    def from_config(cls, design_cfg: dict, contrasts_cfg: Optional[Sequence[dict]] = None) -> "ContrastSpecification":
        """
        Build from the `design:` and `contrasts:` config sections.

        design:
          intercept: false
          predictors:
            - {name: Condition, kind: categorical}
            - {name: Age, kind: continuous}
          only_against: A        # optional, default contrasts vs one level
        contrasts:
          - {name: B_vs_A, factor: Condition, numerator: B, denominator: A}
          - {name: B_minus_A, weights: {"Condition[B]": 1, "Condition[A]": -1}}
        """
        design_cfg = design_cfg or {}
        raw_preds = design_cfg.get("predictors")
        if not raw_preds:
            group_col = design_cfg.get("group_column", "Condition")
            raw_preds = [{"name": group_col, "kind": "categorical"}]

        predictors = []
        for p in raw_preds:
            if isinstance(p, str):
                predictors.append(Predictor(p))
            else:
                levels = p.get("levels")
                predictors.append(Predictor(
                    str(p["name"]),
                    str(p.get("kind", "categorical")).lower(),
                    tuple(str(v) for v in levels) if levels else None,
                ))
        model = ModelSpec(tuple(predictors), bool(design_cfg.get("intercept", False)))

        contrasts = []
        for c in contrasts_cfg or []:
            weights = {str(k): float(v) for k, v in (c.get("weights") or {}).items()}
            if weights:
                contrasts.append(Contrast(name=str(c["name"]), weights=weights))
            else:
                factor = c.get("factor") or (model.categorical[0].name if model.categorical else None)
                contrasts.append(Contrast.between(factor, c["numerator"], c["denominator"], c.get("name")))

        names = [c.name for c in contrasts]
        if len(set(names)) != len(names):
            raise ValueError(f"Contrast names must be unique: {names}")

        return cls(model=model, contrasts=tuple(contrasts), only_against=design_cfg.get("only_against"))


def align_metadata(
    metadata: pd.DataFrame,
    sample_ids: Sequence[str],
    sample_column: str = "Sample",
) -> pd.DataFrame:
    """
    Validate the metadata against the matrix samples and return it indexed by
    sample ID, in matrix column order.

    Raises SchemaMismatchError on duplicated IDs, or when a sample is present
    on one side only.
    """
    if sample_column not in metadata.columns:
        raise SchemaMismatchError(
            f"Sample ID column {sample_column!r} not found in metadata columns {list(metadata.columns)}"
        )
    ids = metadata[sample_column].astype(str)
    dup = sorted(ids[ids.duplicated()].unique())
    if dup:
        raise SchemaMismatchError(f"Duplicated sample IDs in metadata: {fmt_ids(dup)}")

    sample_ids = [str(s) for s in sample_ids]
    dup_matrix = sorted({s for s in sample_ids if sample_ids.count(s) > 1})
    if dup_matrix:
        raise SchemaMismatchError(f"Duplicated sample columns in abundance matrix: {fmt_ids(dup_matrix)}")

    not_in_meta = [s for s in sample_ids if s not in set(ids)]
    not_in_matrix = sorted(set(ids) - set(sample_ids))
    if not_in_meta or not_in_matrix:
        parts = []
        if not_in_meta:
            parts.append(f"Matrix samples missing from metadata ({len(not_in_meta)}): {fmt_ids(not_in_meta)}")
        if not_in_matrix:
            parts.append(f"Metadata samples missing from matrix ({len(not_in_matrix)}): {fmt_ids(not_in_matrix)}")
        raise SchemaMismatchError("Sample / metadata mismatch:\n  " + "\n  ".join(parts))

    out = metadata.copy()
    out.index = ids.values
    out.index.name = None
    return out.loc[sample_ids]
