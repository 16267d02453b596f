"""
peakdiff command line entry point.

Parses arguments and delegates all processing to the application service.
"""

import sys
from typing import Optional, Sequence

from peakdiff.application.differential_analysis_service import DifferentialAnalysisService
from peakdiff.infrastructure.argument_parser import ArgumentParser
from peakdiff.infrastructure.logger import Logger


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point - no business logic"""
    logger = Logger()

    try:
        logger.log_step("Starting", "peakdiff differential analysis")

        logger.log_step("Parsing", "Command line arguments")
        parser = ArgumentParser()
        config = parser.parse_arguments(argv)

        logger.log_step("Initializing", "Analysis service")
        service = DifferentialAnalysisService(config)

        result = service.process()

        significant = len(result.test.significant(config.fdr_threshold))
        logger.log_success(
            f"Processing completed: {significant} of {len(result.test)} windows "
            f"at FDR <= {config.fdr_threshold}"
        )
        return 0

    except KeyboardInterrupt:
        logger.log_warning("Processing interrupted by user")
        return 130

    except Exception as e:
        logger.log_error(e, "Main execution")
        return 1


if __name__ == "__main__":
    sys.exit(main())
