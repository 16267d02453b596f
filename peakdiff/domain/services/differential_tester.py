"""
Negative-binomial differential test for the peakdiff pipeline.

Dispersions are estimated by conditional maximum likelihood on
depth-equalized pseudo-counts: a common value, an abundance trend, and
per-window values shrunk towards the trend. Each window is then tested with
an exact test conditioned on the total count of the two groups.
"""

from typing import List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.special import gammaln, logsumexp
from scipy.stats import nbinom
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import fdrcorrection

from peakdiff.domain.exceptions import InputValidationError
from peakdiff.domain.models import (
    AnalysisWarning,
    CountMatrix,
    DifferentialResult,
    DifferentialTestResult,
    DispersionModel,
    NormalizationFactors,
)
from peakdiff.domain.services.normalization import rescale_to_unit_geomean, validate_factors
from peakdiff.infrastructure.logger import Logger

MIN_DISPERSION = 1e-8
MAX_DISPERSION = 10.0


def conditional_loglik(groups: Sequence[np.ndarray], dispersion) -> np.ndarray:
    """
    Per-window NB log-likelihood conditional on the group totals.

    Args:
        groups: One (windows x replicates) pseudo-count array per group
        dispersion: Scalar or per-window dispersion

    Returns:
        np.ndarray: Log-likelihood of each window
    """
    size = 1.0 / np.asarray(dispersion, dtype=float)
    if size.ndim == 1:
        size = size[:, None]
    total = 0.0
    for y in groups:
        n = y.shape[1]
        if n < 2:
            # a single replicate carries no information about dispersion
            continue
        z = y.sum(axis=1, keepdims=True)
        total = total + (
            gammaln(y + size).sum(axis=1, keepdims=True)
            - n * gammaln(size)
            - gammaln(z + n * size)
            + gammaln(n * size)
        )
    if np.isscalar(total):
        return np.zeros(groups[0].shape[0])
    return np.ravel(total)


def _grid_argmax(values: np.ndarray, grid: np.ndarray) -> np.ndarray:
    """Row-wise maximiser of values sampled on grid, refined by a parabola"""
    best = np.argmax(values, axis=1)
    location = grid[best].astype(float)
    interior = (best > 0) & (best < grid.size - 1)
    if interior.any():
        rows = np.nonzero(interior)[0]
        i = best[rows]
        left, mid, right = values[rows, i - 1], values[rows, i], values[rows, i + 1]
        curvature = left - 2 * mid + right
        step = grid[1] - grid[0]
        with np.errstate(divide="ignore", invalid="ignore"):
            shift = np.where(curvature < 0, 0.5 * (left - right) / curvature * step, 0.0)
        location[rows] += np.clip(shift, -step, step)
    return location


def exact_test_pvalue(
    sum_a: int, sum_b: int, n_a: int, n_b: int, dispersion: float
) -> float:
    """
    Double-tail exact test for two NB group sums given their total.

    The sum of n iid NB(mu, phi) counts is NB(n * mu, phi / n); conditioning
    on the total removes mu, which is estimated as total / (n_a + n_b).
    """
    total = sum_a + sum_b
    if total == 0:
        return 1.0
    mu = total / (n_a + n_b)
    size_a, size_b = n_a / dispersion, n_b / dispersion
    x = np.arange(total + 1)
    log_prob = nbinom.logpmf(x, size_a, size_a / (size_a + n_a * mu)) + nbinom.logpmf(
        total - x, size_b, size_b / (size_b + n_b * mu)
    )
    prob = np.exp(log_prob - logsumexp(log_prob))

    expected_a = total * n_a / (n_a + n_b)
    if sum_a < expected_a:
        pvalue = 2 * prob[: sum_a + 1].sum()
    elif sum_a > expected_a:
        pvalue = 2 * prob[sum_a:].sum()
    else:
        pvalue = 1.0
    return float(min(1.0, pvalue))


class DifferentialTester:
    """Pairwise dispersion-aware differential test"""

    def __init__(
        self,
        reference_group: Optional[str] = None,
        prior_count: float = 0.5,
        prior_df: float = 10.0,
        default_dispersion: float = 0.1,
        trend_span: float = 0.3,
        min_windows_for_trend: int = 50,
        grid: Optional[np.ndarray] = None,
    ):
        self.logger = Logger()
        self.reference_group = reference_group
        self.prior_count = prior_count
        self.prior_df = prior_df
        self.default_dispersion = default_dispersion
        self.trend_span = trend_span
        self.min_windows_for_trend = min_windows_for_trend
        # log2 dispersion grid
        self.grid = np.linspace(-12.0, 3.0, 31) if grid is None else np.asarray(grid, dtype=float)

    def resolve_groups(
        self, sample_ids: Sequence[str], groups: Mapping[str, str]
    ) -> Tuple[str, str, np.ndarray, np.ndarray]:
        """
        Validate the group assignment of the tested samples.

        Returns:
            Reference label, contrast label and the column indices of each
        """
        missing = [s for s in sample_ids if s not in groups]
        if missing:
            raise InputValidationError(f"Samples without a group label: {missing}")

        labels: List[str] = []
        for sample_id in sample_ids:
            if groups[sample_id] not in labels:
                labels.append(groups[sample_id])
        if len(labels) < 2:
            raise InputValidationError(
                f"Need two groups to compare, found {labels} among {list(sample_ids)}"
            )
        if len(labels) > 2:
            raise InputValidationError(
                f"Pairwise test takes exactly two groups, found {len(labels)}: {labels}"
            )

        reference = self.reference_group or labels[0]
        if reference not in labels:
            raise InputValidationError(
                f"Reference group {reference!r} not among groups {labels}"
            )
        contrast = labels[1] if reference == labels[0] else labels[0]
        columns_a = np.array([i for i, s in enumerate(sample_ids) if groups[s] == reference])
        columns_b = np.array([i for i, s in enumerate(sample_ids) if groups[s] == contrast])
        return reference, contrast, columns_a, columns_b

    def estimate_dispersion(
        self,
        pseudo_counts: np.ndarray,
        columns_a: np.ndarray,
        columns_b: np.ndarray,
        warnings: List[AnalysisWarning],
    ) -> DispersionModel:
        """
        Estimate common, trended and tagwise dispersions.

        Windows with few reads borrow strength from the trend through a
        weighted likelihood; groups without replicates fall back to the
        common estimate.
        """
        n_windows = pseudo_counts.shape[0]
        residual_df = pseudo_counts.shape[1] - 2
        groups = [pseudo_counts[:, columns_a], pseudo_counts[:, columns_b]]

        if residual_df <= 0 or n_windows == 0:
            message = (
                f"No replicates to estimate dispersion; using default {self.default_dispersion}"
            )
            warning = AnalysisWarning(
                "insufficient_replicates",
                message,
                {"group_sizes": [int(columns_a.size), int(columns_b.size)]},
            )
            self.logger.log_analysis_warning(warning)
            warnings.append(warning)
            fixed = np.full(n_windows, self.default_dispersion)
            return DispersionModel(
                self.default_dispersion, fixed, fixed.copy(), "default", self.prior_df, 0
            )

        informative = pseudo_counts.sum(axis=1) > 0
        informative_groups = [g[informative] for g in groups]

        def negative_loglik(log_dispersion: float) -> float:
            return -float(conditional_loglik(informative_groups, np.exp(log_dispersion)).sum())

        if informative.any():
            fit = minimize_scalar(
                negative_loglik,
                bounds=(np.log(MIN_DISPERSION), np.log(MAX_DISPERSION)),
                method="bounded",
            )
            common = float(np.exp(fit.x))
        else:
            common = self.default_dispersion
        self.logger.log_statistics("Common dispersion", common)

        if min(columns_a.size, columns_b.size) < 2:
            message = (
                "A group has fewer than two samples; using the common dispersion "
                f"{common:.4g} for every window"
            )
            warning = AnalysisWarning(
                "insufficient_replicates",
                message,
                {"group_sizes": [int(columns_a.size), int(columns_b.size)]},
            )
            self.logger.log_analysis_warning(warning)
            warnings.append(warning)
            fixed = np.full(n_windows, common)
            return DispersionModel(common, fixed, fixed.copy(), "common", self.prior_df, residual_df)

        dispersions = np.power(2.0, self.grid)
        loglik = np.column_stack([conditional_loglik(groups, d) for d in dispersions])

        abundance = np.log2(pseudo_counts.mean(axis=1) + self.prior_count)
        if n_windows >= self.min_windows_for_trend and np.ptp(abundance) > 0:
            trend_loglik = np.column_stack(
                [
                    lowess(
                        loglik[:, k],
                        abundance,
                        frac=self.trend_span,
                        it=0,
                        return_sorted=False,
                    )
                    for k in range(loglik.shape[1])
                ]
            )
            # heavily tied abundances can leave lowess without neighbours
            unsmoothed = ~np.isfinite(trend_loglik)
            if unsmoothed.any():
                column_means = np.broadcast_to(loglik.mean(axis=0), loglik.shape)
                trend_loglik = np.where(unsmoothed, column_means, trend_loglik)
        else:
            trend_loglik = np.repeat(loglik.mean(axis=0, keepdims=True), n_windows, axis=0)

        trended = np.power(2.0, _grid_argmax(trend_loglik, self.grid))
        prior_n = self.prior_df / residual_df
        tagwise = np.power(2.0, _grid_argmax(loglik + prior_n * trend_loglik, self.grid))
        self.logger.log_statistics("Median tagwise dispersion", float(np.median(tagwise)))
        return DispersionModel(common, trended, tagwise, "tagwise", self.prior_df, residual_df)

    def test(
        self,
        matrix: CountMatrix,
        factors: Union[NormalizationFactors, Mapping[str, float]],
        groups: Mapping[str, str],
    ) -> DifferentialTestResult:
        """
        Test every window for a difference between the two groups.

        Args:
            matrix: Raw count matrix
            factors: One normalization factor per matrix sample
            groups: Sample id to group label

        Returns:
            DifferentialTestResult: Results sorted by FDR, p-value, window order
        """
        sample_ids = matrix.sample_ids
        reference, contrast, columns_a, columns_b = self.resolve_groups(sample_ids, groups)
        if not isinstance(factors, NormalizationFactors):
            factors = NormalizationFactors("custom", dict(factors))
        validate_factors(factors, sample_ids)

        self.logger.log_step(
            "Differential test",
            f"{contrast} ({columns_b.size}) vs {reference} ({columns_a.size}) "
            f"over {len(matrix.windows)} windows, {factors.strategy} factors",
        )

        scale = rescale_to_unit_geomean(factors.as_array(sample_ids))
        normalized = matrix.counts / scale[None, :]
        pseudo_counts = np.rint(normalized).astype(np.int64)

        warnings: List[AnalysisWarning] = []
        dispersion = self.estimate_dispersion(pseudo_counts, columns_a, columns_b, warnings)
        per_window = dispersion.for_testing()

        mean_a = normalized[:, columns_a].mean(axis=1)
        mean_b = normalized[:, columns_b].mean(axis=1)
        mean_all = normalized.mean(axis=1)
        sums_a = pseudo_counts[:, columns_a].sum(axis=1)
        sums_b = pseudo_counts[:, columns_b].sum(axis=1)
        zero_rows = matrix.counts.sum(axis=1) == 0

        pvalues = np.ones(len(matrix.windows))
        log_fc = np.zeros(len(matrix.windows))
        for row in range(len(matrix.windows)):
            if zero_rows[row]:
                continue
            log_fc[row] = np.log2(
                (mean_b[row] + self.prior_count) / (mean_a[row] + self.prior_count)
            )
            pvalues[row] = exact_test_pvalue(
                int(sums_a[row]),
                int(sums_b[row]),
                columns_a.size,
                columns_b.size,
                max(float(per_window[row]), MIN_DISPERSION),
            )

        if pvalues.size:
            _, fdr = fdrcorrection(pvalues, alpha=0.05, method="indep")
            fdr = np.maximum(fdr, pvalues)
        else:
            fdr = pvalues.copy()

        if zero_rows.any():
            self.logger.log_step(
                "Differential test", f"{int(zero_rows.sum())} windows without reads flagged"
            )

        results = [
            DifferentialResult(
                window=window,
                log_fc=float(log_fc[row]),
                pvalue=float(pvalues[row]),
                fdr=float(fdr[row]),
                conc=float(np.log2(mean_all[row] + self.prior_count)),
                conc_a=float(np.log2(mean_a[row] + self.prior_count)),
                conc_b=float(np.log2(mean_b[row] + self.prior_count)),
                log_fc_defined=not bool(zero_rows[row]),
                index=row,
            )
            for row, window in enumerate(matrix.windows)
        ]
        results.sort(key=lambda r: (r.fdr, r.pvalue, r.index))

        n_significant = sum(1 for r in results if r.fdr <= 0.05)
        self.logger.log_test_summary(len(results), n_significant, 0.05)
        return DifferentialTestResult(results, dispersion, reference, contrast, warnings)
