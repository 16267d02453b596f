"""
Command line argument parsing and validation for the peakdiff pipeline.
"""

import argparse
import os
from typing import List, Optional, Sequence, Union

from peakdiff.domain.models import AnalysisConfig
from peakdiff.domain.services.normalization import STRATEGIES
from peakdiff.infrastructure.logger import Logger


class ArgumentParser:
    """Command line argument parsing and validation"""

    def __init__(self):
        self.logger = Logger()
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create and configure the argument parser"""
        parser = argparse.ArgumentParser(
            description="Differential binding analysis between two groups of samples"
        )

        # Required arguments
        parser.add_argument(
            "-s", "--sample_sheet",
            type=str,
            required=True,
            help="CSV/TSV sample sheet with columns sample, group, bam and optional peaks",
        )
        parser.add_argument(
            "-o", "--out_dir",
            type=str,
            required=True,
            help="Output directory for saving results",
        )

        # Optional arguments with defaults
        parser.add_argument(
            "-n", "--name",
            type=str,
            default="peakdiff",
            help="Prefix of the output files (default: peakdiff)",
        )
        parser.add_argument(
            "-p", "--paired",
            action="store_true",
            help="Count read pairs once per fragment instead of once per mate",
        )
        parser.add_argument(
            "-m", "--min_overlap",
            type=int,
            default=2,
            help="Keep consensus windows supported by at least this many peak sets; 1 keeps all (default: 2)",
        )
        parser.add_argument(
            "-N", "--normalization",
            type=str,
            default="library",
            help=f"Comma-separated normalization strategies to compute, from {sorted(STRATEGIES)} (default: library)",
        )
        parser.add_argument(
            "-T", "--test_normalization",
            type=str,
            default=None,
            help="Strategy whose factors feed the differential test (default: first of --normalization)",
        )
        parser.add_argument(
            "--seed",
            type=int,
            default=42,
            help="Random seed for background region sampling (default: 42)",
        )
        parser.add_argument(
            "--background_chromosomes",
            type=str,
            default=None,
            help="Comma-separated chromosomes background regions are drawn from",
        )
        parser.add_argument(
            "--background_regions",
            type=int,
            default=1000,
            help="Number of random background regions (default: 1000)",
        )
        parser.add_argument(
            "--background_region_size",
            type=int,
            default=5000,
            help="Length of each background region in bp (default: 5000)",
        )
        parser.add_argument(
            "-g", "--chrom_sizes",
            type=str,
            default=None,
            help="Two-column chromosome sizes file; BAM headers are used when omitted",
        )
        parser.add_argument(
            "-q", "--min_mapq",
            type=int,
            default=0,
            help="Minimum mapping quality of counted reads (default: 0)",
        )
        parser.add_argument(
            "-f", "--fdr_threshold",
            type=float,
            default=0.05,
            help="FDR threshold of the significant windows report (default: 0.05)",
        )
        parser.add_argument(
            "-r", "--reference_group",
            type=str,
            default=None,
            help="Group used as denominator of the fold change (default: first group in the sheet)",
        )
        parser.add_argument(
            "-t", "--threads",
            type=int,
            default=1,
            help="Worker threads for counting and normalization (default: 1)",
        )
        parser.add_argument(
            "--exclude_unreadable",
            action="store_true",
            help="Drop samples whose BAM cannot be read instead of aborting",
        )
        parser.add_argument(
            "--log_file",
            type=str,
            default=None,
            help="Also write the log to this file",
        )

        return parser

    def parse_arguments(self, argv: Optional[Sequence[str]] = None) -> AnalysisConfig:
        """Parse command line arguments and return AnalysisConfig"""
        args = self.parser.parse_args(argv)

        config = AnalysisConfig(
            sample_sheet=args.sample_sheet,
            out_dir=args.out_dir,
            name=args.name,
            paired=args.paired,
            min_overlap=args.min_overlap,
            normalization=self._parse_list(args.normalization),
            test_normalization=args.test_normalization,
            seed=args.seed,
            background_chromosomes=self._parse_list(args.background_chromosomes) or None,
            background_regions=args.background_regions,
            background_region_size=args.background_region_size,
            chrom_sizes=args.chrom_sizes,
            min_mapq=args.min_mapq,
            fdr_threshold=args.fdr_threshold,
            reference_group=args.reference_group,
            threads=args.threads,
            exclude_unreadable=args.exclude_unreadable,
            log_file=args.log_file,
        )

        if not self.validate_config(config):
            raise ValueError("Invalid configuration")

        return config

    def _parse_list(self, value: Union[str, List[str], None]) -> List[str]:
        """Parse comma-separated values from string or list input"""
        if value is None:
            return []
        if isinstance(value, str):
            value = value.strip('"').strip("'").split(",")
        return [item.strip().strip('"').strip("'") for item in value if item.strip()]

    def validate_config(self, config: AnalysisConfig) -> bool:
        """Validate the analysis configuration"""
        try:
            os.makedirs(config.out_dir, exist_ok=True)

            for label, path in (("Sample sheet", config.sample_sheet), ("Chromosome sizes", config.chrom_sizes)):
                if path is not None and not os.path.exists(path):
                    self.logger.log_error(
                        FileNotFoundError(f"{label} not found: {path}"),
                        "Configuration validation",
                    )
                    return False

            requested = list(config.normalization)
            if config.test_normalization:
                requested.append(config.test_normalization)
            unknown = [name for name in requested if name not in STRATEGIES]
            if not config.normalization or unknown:
                self.logger.log_error(
                    ValueError(f"Unknown normalization strategies: {unknown or 'none given'}"),
                    "Configuration validation",
                )
                return False

            if config.test_normalization and config.test_normalization not in config.normalization:
                self.logger.log_warning(
                    f"Test normalization {config.test_normalization} added to computed strategies"
                )
                config.normalization.append(config.test_normalization)

            if config.background_regions < 1 or config.background_region_size < 2:
                self.logger.log_error(
                    ValueError(
                        "Background sampling needs at least one region of at least 2 bp, got "
                        f"{config.background_regions} regions of {config.background_region_size} bp"
                    ),
                    "Configuration validation",
                )
                return False

            if config.min_overlap < 1:
                self.logger.log_warning(f"min_overlap {config.min_overlap} raised to 1")
                config.min_overlap = 1

            if config.fdr_threshold <= 0 or config.fdr_threshold > 1:
                self.logger.log_warning(
                    f"FDR threshold {config.fdr_threshold} is outside expected range (0, 1]"
                )

            if config.min_mapq < 0:
                self.logger.log_warning(f"Minimum MAPQ {config.min_mapq} is negative")

            if config.threads < 1:
                self.logger.log_warning(f"Thread count {config.threads} raised to 1")
                config.threads = 1

            self.logger.log_success("Configuration validation passed")
            return True

        except Exception as e:
            self.logger.log_error(e, "Configuration validation")
            return False
