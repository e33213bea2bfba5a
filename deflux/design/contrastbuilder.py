import itertools
from typing import List, Optional, Tuple

import numpy as np

from deflux.design.designmatrixbuilder import DesignMatrix
from deflux.design.specification import Contrast, ContrastSpecification
from deflux.utils.semantics import MISSING_LEVEL
from deflux.utils.utils import log_info


class ContrastBuilder:
    def __init__(self, design: DesignMatrix):
        """
        Parameters:
        - design: DesignMatrix from DesignMatrixBuilder; contrasts are resolved
          against its column names and categorical levels
        """
        self.design = design
        self.column_names = design.columns
        self.levels = design.levels

    def _unit(self, column: str) -> np.ndarray:
        vec = np.zeros(len(self.column_names))
        vec[self.column_names.index(column)] = 1.0
        return vec

    def _level_vector(self, factor: str, level: str) -> np.ndarray:
        """
        Coefficient combination giving the fitted mean of `level`, up to terms
        shared by every level of `factor`.
        """
        if factor not in self.levels:
            raise ValueError(
                f"Contrast factor {factor!r} is not a categorical predictor; "
                f"categorical predictors: {sorted(self.levels)}"
            )
        levels = self.levels[factor]
        if level not in levels:
            raise ValueError(f"Level {level!r} not found for {factor!r}; levels are {levels}")

        full = f"{factor}[{level}]"
        treatment = f"{factor}[T.{level}]"
        if full in self.column_names:
            return self._unit(full)
        if treatment in self.column_names:
            return self._unit(treatment)
        # reference level of a treatment-coded factor
        return np.zeros(len(self.column_names))

    def _weights_vector(self, contrast: Contrast) -> np.ndarray:
        unknown = [k for k in contrast.weights if k not in self.column_names]
        if unknown:
            raise ValueError(
                f"Contrast {contrast.name!r} references unknown coefficients {unknown}; "
                f"design columns are {self.column_names}"
            )
        vec = np.zeros(len(self.column_names))
        for col, w in contrast.weights.items():
            vec[self.column_names.index(col)] = float(w)
        return vec

    def contrast_vector(self, contrast: Contrast) -> np.ndarray:
        if contrast.weights:
            vec = self._weights_vector(contrast)
        else:
            vec = self._level_vector(contrast.factor, contrast.numerator) - \
                self._level_vector(contrast.factor, contrast.denominator)
        if not np.any(vec):
            raise ValueError(f"Contrast {contrast.name!r} has all-zero weights.")
        return vec

    def default_contrasts(self, only_against: Optional[str] = None) -> List[Contrast]:
        """
        Contrasts used when none are configured, on the first categorical predictor:
        every level against `only_against`, or all pairwise level comparisons.
        """
        categorical = self.design.model.categorical
        if not categorical:
            raise ValueError("No contrasts configured and no categorical predictor to derive them from.")
        factor = categorical[0].name
        levels = [lv for lv in self.levels[factor] if lv != MISSING_LEVEL]

        if only_against is not None:
            base = str(only_against)
            if base not in levels:
                raise ValueError(f"only_against={base!r} not found in {factor!r} levels {levels}")
            log_info(f"Contrasts against {base!r} only.")
            return [Contrast.between(factor, lv, base) for lv in levels if lv != base]

        return [Contrast.between(factor, a, b) for a, b in itertools.combinations(levels, 2)]

    def build(self, spec: ContrastSpecification) -> Tuple[np.ndarray, List[str]]:
        """
        Returns:
        - contrast_matrix: np.ndarray (p x m)
        - contrast_names: list of str, in configured order
        """
        contrasts = list(spec.contrasts) or self.default_contrasts(spec.only_against)
        if not contrasts:
            raise ValueError("No contrast could be built: the first categorical predictor has a single level.")

        names = [c.name for c in contrasts]
        if len(set(names)) != len(names):
            raise ValueError(f"Contrast names must be unique: {names}")

        contrast_matrix = np.vstack([self.contrast_vector(c) for c in contrasts]).T
        log_info(f"{len(names)} contrast(s): {names}")
        return contrast_matrix, names
