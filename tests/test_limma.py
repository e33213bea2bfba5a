"""Tests for the linear model fit, empirical-Bayes moderation and contrast statistics."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma
from statsmodels.stats.multitest import multipletests

from deflux.analysis.contrastevaluator import ContrastEvaluator
from deflux.analysis.ebayes_moderator import EbayesModerator
from deflux.analysis.ebayes_prior import fit_fdist, trigamma_inverse
from deflux.analysis.linearmodelfitter import LinearModelFitter
from deflux.analysis.missingness import compute_missingness
from deflux.analysis.stats_ops import bh_qvalues, two_sided_pvalues
from deflux.design.contrast import apply_contrasts
from deflux.design.designmatrixbuilder import DesignMatrixBuilder
from deflux.design.specification import ModelSpec, Predictor
from deflux.utils.errors import SchemaMismatchError


@pytest.fixture
def design(aligned_metadata):
    return DesignMatrixBuilder(aligned_metadata, ModelSpec((Predictor("Condition"),))).build()


def _fit(matrix, design, weights=None):
    return LinearModelFitter(matrix, design, weights=weights).fit().get_results()


class TestLinearModelFitter:
    """Per-feature least squares against a shared design."""

    def test_matches_lstsq(self, log_matrix, design):
        fit = _fit(log_matrix, design)
        expected, *_ = np.linalg.lstsq(design.values, log_matrix.to_numpy().T, rcond=None)

        assert np.allclose(fit.coefficients, expected.T)
        assert np.all(fit.df_residual == 4)
        assert fit.coef_names == ["Condition[A]", "Condition[B]"]

    def test_missing_value_path(self, log_matrix, design):
        """A single NaN switches to the per-feature path without changing complete rows."""
        complete = _fit(log_matrix, design)
        holed = log_matrix.copy()
        holed.iloc[0, 0] = np.nan
        fit = _fit(holed, design)

        assert np.allclose(fit.coefficients[1:], complete.coefficients[1:])
        assert np.allclose(fit.sigma2[1:], complete.sigma2[1:])
        assert fit.df_residual[0] == 3
        assert fit.n_obs[0] == 5
        assert fit.coefficients[0, 0] == pytest.approx(holed.iloc[0, 1:3].mean())

    def test_unit_weights_match_unweighted(self, log_matrix, design):
        weights = np.ones(log_matrix.shape)
        assert np.allclose(_fit(log_matrix, design, weights).coefficients, _fit(log_matrix, design).coefficients)

    def test_not_estimable(self, log_matrix, design):
        """A feature never observed in one group has no coefficients."""
        holed = log_matrix.copy()
        holed.iloc[0, 3:] = np.nan
        fit = _fit(holed, design)

        assert np.isnan(fit.coefficients[0]).all()
        assert np.isnan(fit.sigma2[0])
        assert np.isfinite(fit.coefficients[1:]).all()

    def test_no_residual_df(self, log_matrix, design):
        """One observation per group: estimable, but without variance."""
        holed = log_matrix.copy()
        holed.iloc[0, [1, 2, 4, 5]] = np.nan
        fit = _fit(holed, design)

        assert np.isfinite(fit.coefficients[0]).all()
        assert fit.df_residual[0] == 0
        assert np.isnan(fit.sigma2[0])

    def test_sample_order_checked(self, log_matrix, design):
        with pytest.raises(SchemaMismatchError):
            LinearModelFitter(log_matrix[log_matrix.columns[::-1]], design)

    def test_weights_shape_checked(self, log_matrix, design):
        with pytest.raises(ValueError, match="shape"):
            LinearModelFitter(log_matrix, design, weights=np.ones((3, 6)))


class TestPrior:
    """Moment estimation of the scaled F prior."""

    def test_trigamma_inverse(self):
        for x in (0.3, 1.0, 3.7, 50.0):
            assert trigamma_inverse(float(polygamma(1, x))) == pytest.approx(x, rel=1e-6)

    def test_recovers_prior(self, rng):
        """Variances drawn from a known prior give that prior back."""
        s0, d0, d = 0.5, 10.0, 4.0
        sigma2 = s0 * d0 / rng.chisquare(d0, size=20000)
        s2 = sigma2 * rng.chisquare(d, size=20000) / d

        s2_prior, df_prior = fit_fdist(s2, d)
        assert s2_prior == pytest.approx(s0, rel=0.1)
        assert 6 < df_prior < 16

    def test_no_extra_spread_is_infinite(self):
        """Identical variances leave nothing for the prior to explain."""
        s2_prior, df_prior = fit_fdist(np.full(100, 0.3), 4.0)
        assert np.isinf(df_prior)
        assert np.isfinite(s2_prior)

    def test_too_few_features(self):
        s2_prior, df_prior = fit_fdist(np.array([0.2, np.nan, 0.0]), 4.0)
        assert np.isnan(s2_prior) and np.isnan(df_prior)

    def test_robust_runs(self, rng):
        s2 = 0.5 * rng.chisquare(4, size=500) / 4
        s2[:5] = 50.0
        s2_prior, df_prior = fit_fdist(s2, 4.0, robust=True)
        _, plain_df = fit_fdist(s2, 4.0)
        assert np.isfinite(s2_prior)
        # outliers inflate the spread unless winsorized
        assert df_prior > plain_df


class TestModeration:
    def test_shrinks_toward_prior(self, rng):
        s2 = 0.5 * rng.chisquare(4, size=300) / 4 * np.exp(rng.normal(0, 0.7, size=300))
        moderator = EbayesModerator(s2, 4.0)
        s0, d0 = moderator.fit()
        s2_post, df_total = moderator.moderate()

        assert np.isfinite(d0)
        lo = np.minimum(s2, s0)
        hi = np.maximum(s2, s0)
        assert np.all((s2_post >= lo - 1e-12) & (s2_post <= hi + 1e-12))
        assert np.allclose(df_total, 4.0 + d0)

    def test_infinite_prior(self):
        moderator = EbayesModerator(np.full(50, 0.3), 4.0)
        s2_post, df_total = moderator.moderate()
        assert np.all(np.isposinf(df_total))
        assert np.allclose(s2_post, moderator.s2_prior)

    def test_no_prior(self):
        """Without a usable prior, residual variances pass through."""
        moderator = EbayesModerator(np.array([0.4, np.nan]), np.array([3.0, 0.0]))
        s2_post, df_total = moderator.moderate()
        assert s2_post[0] == 0.4 and df_total[0] == 3.0
        assert np.isnan(s2_post[1]) and np.isnan(df_total[1])

    def test_zero_variance_is_moderated(self, rng):
        s2 = 0.5 * rng.chisquare(4, size=100) / 4
        s2[0] = 0.0
        moderator = EbayesModerator(s2, 4.0)
        s2_post, _ = moderator.moderate()
        assert s2_post[0] > 0


class TestStatistics:
    def test_two_sided(self):
        p = two_sided_pvalues(np.array([0.0, 1.959964, np.nan, 2.0]), np.array([4.0, np.inf, 4.0, np.nan]))
        assert p[0] == pytest.approx(1.0)
        assert p[1] == pytest.approx(0.05, abs=1e-6)
        assert np.isnan(p[2]) and np.isnan(p[3])

    def test_bh_skips_nan(self):
        p = np.array([0.01, np.nan, 0.04, 0.03, np.nan])
        q = bh_qvalues(p)
        expected = multipletests([0.01, 0.04, 0.03], method="fdr_bh")[1]

        assert np.isnan(q[1]) and np.isnan(q[4])
        assert np.allclose(q[[0, 2, 3]], expected)

    def test_apply_contrasts_shape(self, log_matrix, design):
        fit = _fit(log_matrix, design)
        with pytest.raises(ValueError, match="match the design"):
            apply_contrasts(fit, np.ones((3, 1)))


class TestContrastEvaluator:
    """Moderated t statistics per contrast."""

    def _evaluate(self, matrix, design, **kwargs):
        fit = _fit(matrix, design)
        moderator = EbayesModerator(fit.sigma2, fit.df_residual)
        moderated = moderator.moderate_fit(fit)
        contrast = np.array([[-1.0], [1.0]])
        return ContrastEvaluator(moderated, contrast, ["B_vs_A"], **kwargs).evaluate()["B_vs_A"]

    def test_block(self, log_matrix, design):
        block = self._evaluate(log_matrix, design)

        assert list(block.columns) == ["log2FC", "SE", "T", "PVALUE", "QVALUE"]
        assert block.index.equals(log_matrix.index)
        expected_fc = log_matrix.iloc[:, 3:].mean(axis=1) - log_matrix.iloc[:, :3].mean(axis=1)
        assert np.allclose(block["log2FC"], expected_fc)
        assert (block["QVALUE"].iloc[:20] < 0.05).all()
        assert (block["QVALUE"].iloc[20:] < 0.05).sum() <= 3

    def test_confidence_interval_and_raw(self, log_matrix, design):
        block = self._evaluate(log_matrix, design, confidence_level=0.9, include_raw=True)

        assert list(block.columns) == [
            "log2FC", "SE", "CI_LOW", "CI_HIGH", "T", "PVALUE", "QVALUE", "PVALUE_RAW", "QVALUE_RAW",
        ]
        assert (block["CI_LOW"] < block["log2FC"]).all()
        assert (block["CI_HIGH"] > block["log2FC"]).all()

    def test_unusable_feature_is_nan(self, log_matrix, design):
        """A feature without variance keeps its row, with NaN statistics."""
        holed = log_matrix.copy()
        holed.iloc[0, 3:] = np.nan
        block = self._evaluate(holed, design)

        assert len(block) == len(log_matrix)
        assert block.iloc[0].isna().all()
        assert block.iloc[1:]["PVALUE"].notna().all()

    def test_threads_give_same_result(self, log_matrix, design):
        fit = _fit(log_matrix, design)
        moderated = EbayesModerator(fit.sigma2, fit.df_residual).moderate_fit(fit)
        contrasts = np.array([[-1.0, 1.0], [1.0, -1.0]])
        serial = ContrastEvaluator(moderated, contrasts, ["B_vs_A", "A_vs_B"]).evaluate()
        threaded = ContrastEvaluator(moderated, contrasts, ["B_vs_A", "A_vs_B"], n_jobs=2).evaluate()

        for name in serial:
            pd.testing.assert_frame_equal(serial[name], threaded[name])
        assert np.allclose(serial["B_vs_A"]["T"], -serial["A_vs_B"]["T"])


class TestMissingness:
    def test_counts_per_condition(self):
        matrix = pd.DataFrame(
            [[1.0, np.nan, 2.0, np.nan], [np.nan, np.nan, np.nan, 1.0]],
            index=["f1", "f2"],
            columns=["A1", "A2", "B1", "B2"],
        )
        res = compute_missingness(matrix, ["A", "A", "B", "B"])

        assert list(res.df.columns) == ["Missingness_A", "Missingness_B"]
        assert res.df.loc["f1"].tolist() == [1, 1]
        assert res.df.loc["f2"].tolist() == [2, 1]
