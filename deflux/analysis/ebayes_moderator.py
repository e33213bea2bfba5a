from dataclasses import dataclass

import numpy as np

from deflux.analysis.ebayes_prior import fit_fdist
from deflux.analysis.linearmodelfitter import FitResult
from deflux.utils.utils import log_info, log_time, log_warning


@dataclass
class ModeratedFitResult(FitResult):
    s2_post: np.ndarray = None      # (G,) moderated variance
    df_total: np.ndarray = None     # (G,) df_residual + df_prior
    s2_prior: float = np.nan
    df_prior: float = np.nan


class EbayesModerator:
    def __init__(self, sigma2, df_residual, robust: bool = False):
        """
        Parameters:
        - sigma2: (n_features,) vector of residual variances
        - df_residual: scalar or array of degrees of freedom (per feature)
        - robust: winsorize the log variances before fitting the prior
        """
        self.sigma2 = np.asarray(sigma2, dtype=float)
        self.df_residual = np.broadcast_to(np.asarray(df_residual, dtype=float), self.sigma2.shape).copy()
        self.robust = robust
        self.s2_prior = None
        self.df_prior = None

    def fit(self) -> tuple[float, float]:
        """Estimate (s2_prior, df_prior); both NaN when fewer than two features are usable."""
        self.s2_prior, self.df_prior = fit_fdist(self.sigma2, self.df_residual, robust=self.robust)
        if np.isnan(self.s2_prior):
            log_warning("Fewer than two features with a usable variance: no variance moderation.")
        else:
            log_info(f"Prior: s2_prior = {self.s2_prior:.4g}, df_prior = {self.df_prior:.4g}")
        return self.s2_prior, self.df_prior

    def moderate(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns:
        - moderated variances
        - total degrees of freedom (df_residual + df_prior)
        """
        if self.s2_prior is None:
            self.fit()

        s2, d = self.sigma2, self.df_residual
        ok = np.isfinite(s2) & np.isfinite(d) & (d > 0)
        s2_post = np.full_like(s2, np.nan)
        df_total = np.full_like(s2, np.nan)

        if np.isnan(self.s2_prior):
            s2_post[ok] = s2[ok]
            df_total[ok] = d[ok]
        elif np.isinf(self.df_prior):
            s2_post[ok] = self.s2_prior
            df_total[ok] = np.inf
        else:
            d0, s0 = self.df_prior, self.s2_prior
            s2_post[ok] = (d0 * s0 + d[ok] * s2[ok]) / (d0 + d[ok])
            df_total[ok] = d0 + d[ok]

        return s2_post, df_total

    @log_time("EBayes Computation")
    def moderate_fit(self, fit: FitResult) -> ModeratedFitResult:
        s2_post, df_total = self.moderate()
        return ModeratedFitResult(
            coefficients=fit.coefficients,
            cov_unscaled=fit.cov_unscaled,
            sigma2=fit.sigma2,
            df_residual=fit.df_residual,
            n_obs=fit.n_obs,
            feature_index=fit.feature_index,
            coef_names=fit.coef_names,
            s2_post=s2_post,
            df_total=df_total,
            s2_prior=self.s2_prior,
            df_prior=self.df_prior,
        )
