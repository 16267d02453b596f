"""
Data saving functionality for the peakdiff pipeline.
"""

import os
from typing import Dict, List

import pandas as pd

from peakdiff.domain.models import (
    AnalysisConfig,
    AnalysisResult,
    AnalysisWarning,
    CountMatrix,
    DifferentialTestResult,
    IntervalSet,
    NormalizationFactors,
)
from peakdiff.infrastructure.logger import Logger


class ResultSaver:
    """Responsible for writing analysis tables to disk"""

    def __init__(self):
        self.logger = Logger()

    def _write(self, frame: pd.DataFrame, file_path: str, **kwargs) -> str:
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        frame.to_csv(file_path, sep="\t", **kwargs)
        self.logger.log_save(file_path)
        return file_path

    def save_intervals(self, intervals: IntervalSet, file_path: str) -> str:
        """Write windows as BED (0-based half-open), support in the score column"""
        frame = intervals.to_frame()
        frame["start"] = frame["start"] - 1
        frame.insert(3, "name", intervals.labels)
        if "support" not in frame.columns:
            frame["support"] = 0
        return self._write(frame, file_path, index=False, header=False)

    def save_count_matrix(self, matrix: CountMatrix, file_path: str) -> str:
        frame = matrix.to_frame()
        frame.index.name = "window"
        depth_row = pd.DataFrame([list(matrix.depths)], index=["__depth__"], columns=frame.columns)
        return self._write(pd.concat([frame, depth_row]), file_path, index_label="window")

    def save_factors(self, factors: Dict[str, NormalizationFactors], file_path: str) -> str:
        frame = pd.DataFrame(
            {name: dict(vector.factors) for name, vector in factors.items()}
        )
        frame.index.name = "sample"
        return self._write(frame, file_path, float_format="%.8f")

    def save_results(self, test: DifferentialTestResult, file_path: str) -> str:
        return self._write(test.to_frame(), file_path, index=False, float_format="%.6g")

    def save_significant(
        self, test: DifferentialTestResult, fdr_threshold: float, file_path: str
    ) -> str:
        frame = test.to_frame()
        return self._write(
            frame[frame["fdr"] <= fdr_threshold], file_path, index=False, float_format="%.6g"
        )

    def save_warnings(self, warnings: List[AnalysisWarning], file_path: str) -> str:
        frame = pd.DataFrame(
            {
                "category": [w.category for w in warnings],
                "message": [w.message for w in warnings],
                "context": [repr(dict(w.context)) for w in warnings],
            }
        )
        return self._write(frame, file_path, index=False)

    def save_results_bundle(self, result: AnalysisResult, config: AnalysisConfig) -> List[str]:
        """
        Save all tables of one analysis run.

        Args:
            result: Analysis result
            config: Configuration (output directory and run name)

        Returns:
            List[str]: Written file paths
        """
        prefix = os.path.join(config.out_dir, config.name)
        try:
            written = [
                self.save_intervals(result.consensus, f"{prefix}_consensus.bed"),
                self.save_count_matrix(result.count_matrix, f"{prefix}_counts.tsv"),
                self.save_factors(result.factors, f"{prefix}_factors.tsv"),
                self.save_results(result.test, f"{prefix}_differential.tsv"),
                self.save_significant(
                    result.test, config.fdr_threshold, f"{prefix}_significant.tsv"
                ),
                self.save_warnings(result.warnings, f"{prefix}_warnings.tsv"),
            ]
        except Exception as e:
            self.logger.log_error(e, "Saving results")
            raise

        self.logger.log_success(f"Saved {len(written)} result files")
        return written
