from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from deflux.analysis.ebayes_moderator import ModeratedFitResult
from deflux.analysis.stats_ops import bh_qvalues, raw_stats_from_fit, t_quantile, two_sided_pvalues
from deflux.design.contrast import apply_contrasts
from deflux.utils.semantics import (
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
from deflux.utils.utils import log_time


class ContrastEvaluator:
    """
    Moderated t-tests for every contrast of one fit.

    All contrasts share a single fit and moderation pass; with n_jobs > 1 the
    per-contrast work runs in threads over the read-only arrays.
    """

    def __init__(
        self,
        moderated: ModeratedFitResult,
        contrast_matrix: np.ndarray,
        contrast_names: List[str],
        confidence_level: Optional[float] = None,
        include_raw: bool = False,
        n_jobs: int = 1,
    ):
        if contrast_matrix.shape[1] != len(contrast_names):
            raise ValueError(
                f"{contrast_matrix.shape[1]} contrast columns for {len(contrast_names)} names."
            )
        if confidence_level is not None and not 0 < confidence_level < 1:
            raise ValueError(f"confidence_level must lie in (0, 1), got {confidence_level}")

        self.fit = moderated
        self.contrast_matrix = contrast_matrix
        self.contrast_names = list(contrast_names)
        self.confidence_level = confidence_level
        self.include_raw = include_raw
        self.n_jobs = max(1, int(n_jobs or 1))

        self.estimates = None
        self.stdev_unscaled = None

    def _evaluate_one(self, j: int) -> pd.DataFrame:
        fit = self.fit
        est = self.estimates[:, j]
        stdu = self.stdev_unscaled[:, j]

        se = stdu * np.sqrt(fit.s2_post)
        with np.errstate(divide="ignore", invalid="ignore"):
            t_stat = est / se
        t_stat[~np.isfinite(se) | (se == 0)] = np.nan
        p_val = two_sided_pvalues(t_stat, fit.df_total)
        q_val = bh_qvalues(p_val)

        block = {STAT_LOG2FC: est, STAT_SE: se}
        if self.confidence_level is not None:
            crit = t_quantile(1 - (1 - self.confidence_level) / 2, fit.df_total)
            block[STAT_CI_LOW] = est - crit * se
            block[STAT_CI_HIGH] = est + crit * se
        block[STAT_T] = t_stat
        block[STAT_PVALUE] = p_val
        block[STAT_QVALUE] = q_val

        if self.include_raw:
            _, _, p_raw = raw_stats_from_fit(
                coefs=est[:, None],
                stdu=stdu[:, None],
                sigma=np.sqrt(fit.sigma2),
                df_res=fit.df_residual,
            )
            block[STAT_PVALUE_RAW] = p_raw[:, 0]
            block[STAT_QVALUE_RAW] = bh_qvalues(p_raw)[:, 0]

        return pd.DataFrame(block, index=fit.feature_index)

    @log_time("Contrast Statistics")
    def evaluate(self) -> Dict[str, pd.DataFrame]:
        """Returns contrast name -> statistics block (index = feature IDs), in contrast order."""
        self.estimates, self.stdev_unscaled = apply_contrasts(self.fit, self.contrast_matrix)

        indices = range(len(self.contrast_names))
        if self.n_jobs > 1 and len(self.contrast_names) > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                blocks = list(pool.map(self._evaluate_one, indices))
        else:
            blocks = [self._evaluate_one(j) for j in indices]

        return dict(zip(self.contrast_names, blocks))
