"""Limma-style differential analysis of one abundance matrix.

design -> per-feature fit -> empirical-Bayes moderation -> contrasts -> result table
"""

from typing import Optional

import pandas as pd

from deflux.analysis.contrastevaluator import ContrastEvaluator
from deflux.analysis.ebayes_moderator import EbayesModerator
from deflux.analysis.linearmodelfitter import LinearModelFitter
from deflux.analysis.missingness import compute_missingness
from deflux.design.contrastbuilder import ContrastBuilder
from deflux.design.designmatrixbuilder import DesignMatrix, DesignMatrixBuilder
from deflux.design.specification import ContrastSpecification
from deflux.export.result_table import ResultTable, ResultTableAssembler
from deflux.utils.semantics import STAT_QVALUE
from deflux.utils.utils import log_info, log_time


@log_time("Analysis pipeline")
def run_limma_pipeline(
    matrix: pd.DataFrame,
    metadata: pd.DataFrame,
    spec: ContrastSpecification,
    analysis_cfg: Optional[dict] = None,
    weights: Optional[pd.DataFrame] = None,
    annotation: Optional[pd.DataFrame] = None,
    design: Optional[DesignMatrix] = None,
) -> ResultTable:
    """
    Fit, moderate and test every contrast of `spec` on `matrix`.

    Args:
        matrix: AbundanceMatrix (features x samples, log scale).
        metadata: sample metadata aligned to the matrix columns.
        spec: model and contrasts.
        analysis_cfg: the `analysis:` config section (robust, confidence_level,
            include_raw, n_jobs, missingness).
        weights: optional precision weights, same shape as `matrix`.
        annotation: optional per-feature annotation, same index as `matrix`.
        design: a design already built for this metadata (reused as-is).

    Returns:
        ResultTable with rows in `matrix` order.
    """
    cfg = analysis_cfg or {}

    if design is None:
        design = DesignMatrixBuilder(metadata, spec.model).build()
    if weights is not None:
        weights = weights.loc[matrix.index, matrix.columns]

    fitter = LinearModelFitter(matrix, design, weights=weights).fit()
    fit = fitter.get_results()

    moderator = EbayesModerator(fit.sigma2, fit.df_residual, robust=bool(cfg.get("robust", False)))
    moderator.fit()
    moderated = moderator.moderate_fit(fit)

    contrast_matrix, contrast_names = ContrastBuilder(design).build(spec)
    blocks = ContrastEvaluator(
        moderated,
        contrast_matrix,
        contrast_names,
        confidence_level=cfg.get("confidence_level"),
        include_raw=bool(cfg.get("include_raw", False)),
        n_jobs=int(cfg.get("n_jobs", 1) or 1),
    ).evaluate()

    missingness = None
    if cfg.get("missingness", False) and spec.model.categorical:
        group = spec.model.categorical[0].name
        missingness = compute_missingness(matrix, metadata[group].astype(str).tolist()).df

    design_table = design.matrix.join(metadata, how="left", rsuffix="_meta")
    result = ResultTableAssembler(matrix, annotation).assemble(
        blocks,
        design=design_table,
        missingness=missingness,
        s2_prior=moderated.s2_prior,
        df_prior=moderated.df_prior,
    )

    n_sig = {name: int((block[STAT_QVALUE] < 0.05).sum()) for name, block in blocks.items()}
    log_info(f"Features with q < 0.05 per contrast: {n_sig}")
    return result
