from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from deflux.design.designmatrixbuilder import DesignMatrix
from deflux.utils.errors import SchemaMismatchError
from deflux.utils.utils import log_info, log_time


@dataclass
class FitResult:
    coefficients: np.ndarray        # (G x p)
    cov_unscaled: np.ndarray        # (G x p x p), (X'WX)^-1 per feature
    sigma2: np.ndarray              # (G,) residual variance
    df_residual: np.ndarray         # (G,)
    n_obs: np.ndarray               # (G,)
    feature_index: pd.Index
    coef_names: List[str]

    @property
    def n_features(self) -> int:
        return len(self.feature_index)

    def coefficients_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.coefficients, index=self.feature_index, columns=self.coef_names)


class LinearModelFitter:
    def __init__(
        self,
        expression: pd.DataFrame,
        design_matrix: Union[DesignMatrix, pd.DataFrame],
        weights: Optional[Union[pd.DataFrame, np.ndarray]] = None,
    ):
        """
        Parameters:
        - expression: (n_features x n_samples) abundance matrix, NaN = not observed
        - design_matrix: (n_samples x n_coefficients) from DesignMatrixBuilder
        - weights: optional precision weights, same shape as expression
        """
        design_df = design_matrix.matrix if isinstance(design_matrix, DesignMatrix) else design_matrix
        samples = [str(s) for s in expression.columns]
        if [str(s) for s in design_df.index] != samples:
            raise SchemaMismatchError(
                "Design rows and abundance columns must hold the same samples in the same order."
            )

        self.Y = expression.to_numpy(dtype=float)
        self.X = design_df.to_numpy(dtype=float)
        self.feature_index = expression.index
        self.coef_names = [str(c) for c in design_df.columns]

        if weights is not None:
            weights = np.asarray(weights, dtype=float)
            if weights.shape != self.Y.shape:
                raise ValueError(f"Weights shape {weights.shape} differs from expression shape {self.Y.shape}.")
        self.W = weights

        self.coefficients = None
        self.cov_unscaled = None
        self.residual_variance = None
        self.df_residual = None
        self.n_obs = None

    def _fit_complete(self) -> None:
        """All features observed in every sample, no weights: one vectorized solve."""
        X, Y = self.X, self.Y
        n, p = X.shape
        G = Y.shape[0]
        xtx_inv = np.linalg.inv(X.T @ X)

        betas = Y @ X @ xtx_inv             # (G x p)
        resid = Y - betas @ X.T             # (G x n)
        rss = np.sum(resid**2, axis=1)
        df = n - p

        self.coefficients = betas
        self.cov_unscaled = np.broadcast_to(xtx_inv, (G, p, p)).copy()
        self.df_residual = np.full(G, float(df))
        self.n_obs = np.full(G, n, dtype=int)
        self.residual_variance = rss / df if df > 0 else np.full(G, np.nan)

    def _fit_general(self) -> None:
        """Per-feature weighted least squares over the observed samples."""
        X, Y, W = self.X, self.Y, self.W
        G, p = Y.shape[0], X.shape[1]

        coefs = np.full((G, p), np.nan)
        cov = np.full((G, p, p), np.nan)
        sigma2 = np.full(G, np.nan)
        df_res = np.zeros(G)
        n_obs = np.zeros(G, dtype=int)

        for g in range(G):
            y = Y[g]
            mask = np.isfinite(y)
            if W is not None:
                mask &= np.isfinite(W[g]) & (W[g] > 0)
            n = int(mask.sum())
            n_obs[g] = n
            if n == 0:
                continue

            sw = np.sqrt(W[g, mask]) if W is not None else np.ones(n)
            Xw = X[mask] * sw[:, None]
            yw = y[mask] * sw
            rank = int(np.linalg.matrix_rank(Xw))
            df_res[g] = max(n - rank, 0)
            if n < p or rank < p:
                # not estimable
                continue

            beta, _, _, _ = np.linalg.lstsq(Xw, yw, rcond=None)
            coefs[g] = beta
            cov[g] = np.linalg.inv(Xw.T @ Xw)
            if df_res[g] > 0:
                sigma2[g] = np.sum((yw - Xw @ beta) ** 2) / df_res[g]

        self.coefficients = coefs
        self.cov_unscaled = cov
        self.residual_variance = sigma2
        self.df_residual = df_res
        self.n_obs = n_obs

    @log_time("Linear Regressions")
    def fit(self):
        """Fits one (weighted) least-squares model per feature against the shared design."""
        complete = self.W is None and np.isfinite(self.Y).all()
        if complete and np.linalg.matrix_rank(self.X) == self.X.shape[1]:
            self._fit_complete()
        else:
            self._fit_general()

        n_bad = int(np.isnan(self.residual_variance).sum())
        if n_bad:
            log_info(f"{n_bad} feature(s) without residual variance (too few observations).")
        return self

    def get_results(self) -> FitResult:
        if self.coefficients is None:
            raise RuntimeError("fit() must be called before get_results().")
        return FitResult(
            coefficients=self.coefficients,
            cov_unscaled=self.cov_unscaled,
            sigma2=self.residual_variance,
            df_residual=self.df_residual,
            n_obs=self.n_obs,
            feature_index=self.feature_index,
            coef_names=self.coef_names,
        )
