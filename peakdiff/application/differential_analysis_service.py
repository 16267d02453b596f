"""
Main application service orchestrating the differential analysis pipeline.
"""

from typing import List, Mapping, Optional, Sequence

from peakdiff.domain.exceptions import InputValidationError, NormalizationError
from peakdiff.domain.models import (
    AnalysisConfig,
    AnalysisResult,
    AnalysisWarning,
    Sample,
)
from peakdiff.domain.services.count_matrix_builder import CountMatrixBuilder
from peakdiff.domain.services.differential_tester import DifferentialTester
from peakdiff.domain.services.interval_merger import IntervalMerger
from peakdiff.domain.services.normalization import (
    NormalizationContext,
    NormalizationService,
    NormalizationStrategy,
    build_strategy,
)
from peakdiff.infrastructure.data.data_loader import SampleSheetLoader
from peakdiff.infrastructure.data.data_saver import ResultSaver
from peakdiff.infrastructure.logger import Logger


class DifferentialAnalysisService:
    """Main application service orchestrating the entire pipeline"""

    def __init__(self, config: AnalysisConfig):
        self.config = config
        self.logger = Logger(log_file=config.log_file)

        workers = config.threads if config.threads > 1 else None
        self.data_loader = SampleSheetLoader()
        self.data_saver = ResultSaver()
        self.interval_merger = IntervalMerger(max_workers=workers)
        self.count_matrix_builder = CountMatrixBuilder(
            max_workers=workers,
            on_error="exclude" if config.exclude_unreadable else "abort",
        )
        self.normalization_service = NormalizationService(max_workers=workers)
        self.differential_tester = DifferentialTester(reference_group=config.reference_group)

    def build_strategies(self) -> List[NormalizationStrategy]:
        """Instantiate the configured normalization strategies"""
        names = list(self.config.normalization)
        if self.config.chosen_normalization not in names:
            names.append(self.config.chosen_normalization)
        strategies = []
        for name in names:
            if name == "background":
                strategies.append(
                    build_strategy(
                        name,
                        seed=self.config.seed,
                        n_regions=self.config.background_regions,
                        region_size=self.config.background_region_size,
                        chromosomes=self.config.background_chromosomes,
                        builder=CountMatrixBuilder(),
                    )
                )
            else:
                strategies.append(build_strategy(name))
        return strategies

    def process(self) -> AnalysisResult:
        """
        Main processing pipeline: load inputs, analyse, save tables.

        Returns:
            AnalysisResult: Complete analysis results
        """
        self.logger.log_step("Processing pipeline", "Starting differential analysis")

        # Step 1: Load samples, peaks and genome
        samples = self.data_loader.load_samples(self.config)
        chromosome_sizes = None
        if self.config.chrom_sizes:
            chromosome_sizes = self.data_loader.load_chrom_sizes(self.config.chrom_sizes)

        # Step 2: Analyse
        result = self.run(samples, chromosome_sizes)

        # Step 3: Save results
        self.logger.log_step("Result saving", "Saving all analysis tables")
        self.data_saver.save_results_bundle(result, self.config)
        return result

    def run(
        self,
        samples: Sequence[Sample],
        chromosome_sizes: Optional[Mapping[str, int]] = None,
    ) -> AnalysisResult:
        """
        Analyse samples whose alignment sources and peak sets are attached.

        Args:
            samples: Samples with group labels, alignment sources and peaks
            chromosome_sizes: Genome partition for background normalization

        Returns:
            AnalysisResult: Consensus, counts, factors, test results and warnings
        """
        warnings: List[AnalysisWarning] = []
        groups = {sample.id: sample.group for sample in samples}

        # Step 1: Fail fast on the group design
        self.differential_tester.resolve_groups([s.id for s in samples], groups)
        peak_sets = [sample.peaks for sample in samples if sample.peaks is not None]
        if not peak_sets:
            raise InputValidationError("No sample has a peak set to build consensus windows from")

        # Step 2: Consensus windows
        self.logger.log_step("Consensus", f"Merging {len(peak_sets)} peak sets")
        consensus = self.interval_merger.merge(
            peak_sets,
            keep_only_replicated=self.config.keep_only_replicated,
            min_sources=self.config.min_overlap,
        )
        if len(consensus) == 0:
            raise InputValidationError(
                f"No consensus windows supported by {self.config.min_overlap} peak sets"
            )

        # Step 3: Count matrix
        self.logger.log_step("Counting", "Building count matrix")
        matrix = self.count_matrix_builder.build(samples, consensus, self.config.paired)
        warnings.extend(self.count_matrix_builder.warnings)
        kept = [sample for sample in samples if sample.id in matrix.sample_ids]

        # Step 4: Normalization factors
        self.logger.log_step("Normalization", f"Strategies: {self.config.normalization}")
        context = NormalizationContext(
            count_matrix=matrix,
            samples=kept,
            chromosome_sizes=chromosome_sizes,
            chromosomes=self.config.background_chromosomes,
            paired=self.config.paired,
        )
        factors, failed = self.normalization_service.compute_all(
            self.build_strategies(), context
        )
        for name, message in failed.items():
            warnings.append(
                AnalysisWarning("normalization_failed", message, {"strategy": name})
            )

        chosen = self.config.chosen_normalization
        if chosen not in factors:
            error = NormalizationError(
                chosen, f"factors unavailable for the differential test: {failed.get(chosen)}"
            )
            self.logger.log_error(error, "Normalization")
            raise error

        # Step 5: Differential test
        self.logger.log_step("Differential test", f"Using {chosen} factors")
        test = self.differential_tester.test(
            matrix, factors[chosen], {s.id: s.group for s in kept}
        )
        warnings.extend(test.warnings)

        annotated = [
            sample.with_depth(matrix.depth(sample.id)).with_normalization_factor(
                factors[chosen][sample.id]
            )
            for sample in kept
        ]

        self.logger.log_success(
            f"Analysis finished: {len(test.results)} windows, {len(warnings)} warnings"
        )
        return AnalysisResult(
            samples=annotated,
            consensus=consensus,
            count_matrix=matrix,
            factors=factors,
            failed_normalizations=dict(failed),
            normalization=chosen,
            test=test,
            warnings=warnings,
        )
