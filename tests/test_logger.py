"""Tests for the pipeline logger."""

import logging

import pytest

from peakdiff.domain.models import AnalysisWarning
from peakdiff.infrastructure.logger import LOGGER_NAME, Logger


@pytest.fixture
def logger():
    return Logger()


def messages(caplog, level=None):
    return [r.getMessage() for r in caplog.records if level is None or r.levelno == level]


class TestLogger:
    """Tests for the analysis-specific log records."""

    def test_shared_named_logger(self, logger):
        assert logger.logger is logging.getLogger(LOGGER_NAME)
        assert logger.logger is Logger().logger

    def test_handlers_not_duplicated(self):
        Logger()
        count = len(logging.getLogger(LOGGER_NAME).handlers)
        Logger()
        assert len(logging.getLogger(LOGGER_NAME).handlers) == count

    def test_log_file(self, tmp_path):
        path = tmp_path / "run.log"
        shared = logging.getLogger(LOGGER_NAME)
        try:
            Logger(log_file=str(path)).log_step("Counting", "4 samples")
        finally:
            for handler in list(shared.handlers):
                handler.close()
                shared.removeHandler(handler)
        assert "Counting: 4 samples" in path.read_text(encoding="utf-8")

    def test_sample_counts(self, logger, caplog):
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            logger.log_sample_counts("ko1", 200, 50)
            logger.log_sample_counts("empty", 0, 0)
        assert "[ko1] depth 200, 50 in windows (25.0%)" in messages(caplog)[0]
        assert "(0.0%)" in messages(caplog)[1]

    def test_excluded_sample_is_a_warning(self, logger, caplog):
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            logger.log_excluded_sample("ko3", "truncated BAM")
        assert any("[ko3] excluded: truncated BAM" in m for m in messages(caplog, logging.WARNING))

    def test_factors_and_strategy_failure(self, logger, caplog):
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            logger.log_factors("library", {"a": 0.5, "b": 2.0})
            logger.log_strategy_failure("background", ValueError("no reads"))
        assert "[library] factors: a=0.5000, b=2.0000" in messages(caplog, logging.INFO)[0]
        assert "[background] discarded: no reads" in messages(caplog, logging.WARNING)[0]

    def test_analysis_warning(self, logger, caplog):
        warning = AnalysisWarning("insufficient_replicates", "using default dispersion")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            logger.log_analysis_warning(warning)
        assert "[insufficient_replicates] using default dispersion" in messages(caplog)[0]

    def test_matrix_shape(self, logger, caplog):
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            logger.log_matrix_shape("Count matrix", (60, 4))
        assert "Count matrix: 60 windows x 4 samples" in messages(caplog)[0]
