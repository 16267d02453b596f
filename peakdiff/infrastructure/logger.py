"""
Logging for the peakdiff differential analysis pipeline.

All services share the ``peakdiff`` logger. Besides the generic step and
error helpers, the Logger renders the recurring records of an analysis
(per-sample depth, factor vectors, discarded strategies, warnings that end
up in the warnings table) in one consistent format.
"""

import logging
from typing import Mapping, Optional

LOGGER_NAME = "peakdiff"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Logger:
    """Shared logger of the differential analysis pipeline"""

    def __init__(self, log_file: Optional[str] = None, level: int = logging.INFO):
        """Attach console output once, plus a file handler when log_file is given"""
        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(level)

        # services create their own Logger; only the first one (or one
        # asking for a log file) configures handlers
        if self.logger.handlers and log_file is None:
            return
        self.logger.handlers.clear()

        formatter = logging.Formatter(LOG_FORMAT)
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def log_step(self, step: str, details: str) -> None:
        """Log a processing step with details"""
        self.logger.info(f"🔍 {step}: {details}")

    def log_error(self, error: Exception, context: str) -> None:
        """Log an error with context and traceback"""
        self.logger.error(f"❌ Error in {context}: {error}", exc_info=True)

    def log_warning(self, warning: str) -> None:
        self.logger.warning(f"⚠️ {warning}")

    def log_success(self, message: str) -> None:
        self.logger.info(f"✅ {message}")

    def log_save(self, file_path: str) -> None:
        self.logger.info(f"💾 Saved to: {file_path}")

    def log_matrix_shape(self, matrix_name: str, shape: tuple) -> None:
        """Log a windows x samples shape"""
        self.logger.info(f"📊 {matrix_name}: {shape[0]} windows x {shape[1]} samples")

    def log_statistics(self, stat_name: str, value: float) -> None:
        self.logger.info(f"📈 {stat_name}: {value:.6f}")

    def log_sample_counts(self, sample_id: str, depth: int, in_windows: int) -> None:
        """Log the depth of one counted sample and the share falling in windows"""
        share = in_windows / depth if depth else 0.0
        self.logger.info(
            f"🧬 [{sample_id}] depth {depth}, {in_windows} in windows ({share:.1%})"
        )

    def log_excluded_sample(self, sample_id: str, reason: str) -> None:
        self.logger.warning(f"🚫 [{sample_id}] excluded: {reason}")

    def log_factors(self, strategy: str, factors: Mapping[str, float]) -> None:
        """Log a normalization factor vector"""
        rendered = ", ".join(f"{sample}={value:.4f}" for sample, value in factors.items())
        self.logger.info(f"⚖️ [{strategy}] factors: {rendered}")

    def log_strategy_failure(self, strategy: str, error: Exception) -> None:
        """Log a normalization strategy whose factors were discarded"""
        self.logger.warning(f"⚖️ [{strategy}] discarded: {error}")

    def log_analysis_warning(self, warning) -> None:
        """Log an AnalysisWarning under its category"""
        self.logger.warning(f"⚠️ [{warning.category}] {warning.message}")

    def log_test_summary(self, n_tested: int, n_significant: int, fdr: float) -> None:
        self.logger.info(f"✅ {n_significant} of {n_tested} windows at FDR <= {fdr:g}")
