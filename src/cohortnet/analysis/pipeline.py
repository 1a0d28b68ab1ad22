"""
Signature Pipeline Orchestrator for cohortnet.

This module runs the complete comparative analysis:
1. Alignment - Shared, non-degenerate gene set across the two cohorts
2. Normalization - log2 + per-gene standardization within each cohort
3. Divergence - Blocked correlation and per-gene angular-distance weights
4. Resampling - Uniform vs. divergence-weighted elastic net per cohort
5. Aggregation - Selection frequencies, overlaps and paired metric tests
6. Export - CSV/JSON outputs for plotting and survival analysis

Usage:
    from cohortnet.analysis.pipeline import SignaturePipeline
    pipeline = SignaturePipeline(config)
    results = pipeline.run(brca_cohort, prad_cohort)

Or from command line:
    python -m cohortnet.analysis.pipeline --expression-a brca.csv --clinical-a brca_clin.csv ...
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from ..core.cohort_schema import get_schema
from ..core.config import PipelineConfig, load_config
from ..core.errors import DataIntegrityError
from ..preprocessing.assembler import (
    Cohort,
    CohortAssembler,
    align_cohorts,
    drop_constant_genes,
    load_reference_genes,
)
from ..preprocessing.normalization import normalize_expression
from .correlation import compute_correlation
from .divergence import DivergenceResult, DivergenceWeighter
from .resampling import ResamplingEvaluator, ResamplingRun
from .selection import (
    PairedTestResult,
    SelectionSummary,
    paired_metric_tests,
    selection_table,
    summarize_run,
)


logger = logging.getLogger(__name__)


@dataclass
class PipelineResults:
    """Results from one pipeline execution."""

    # Metadata
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    config: Optional[PipelineConfig] = None

    # Data
    cohorts: Dict[str, Cohort] = field(default_factory=dict)
    cohort_info: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    n_shared_genes: int = 0

    # Analysis
    divergence: Optional[DivergenceResult] = None
    runs: Dict[str, ResamplingRun] = field(default_factory=dict)
    selections: Dict[str, SelectionSummary] = field(default_factory=dict)
    paired_tests: Dict[str, List[PairedTestResult]] = field(default_factory=dict)

    # Generated files
    output_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert results to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "config": self.config.to_dict() if self.config else None,
            "cohorts": self.cohort_info,
            "n_shared_genes": self.n_shared_genes,
            "divergence": self.divergence.to_dict() if self.divergence else None,
            "runs": {name: run.to_dict() for name, run in self.runs.items()},
            "median_metrics": {
                name: run.median_metrics().to_dict("records") for name, run in self.runs.items()
            },
            "selections": {name: s.to_dict() for name, s in self.selections.items()},
            "paired_tests": {
                name: [t.to_dict() for t in tests] for name, tests in self.paired_tests.items()
            },
            "output_files": self.output_files,
        }

    def save(self, path: str) -> None:
        """Save results to JSON file."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


def _cohort_info(cohort: Cohort) -> Dict[str, Any]:
    counts = cohort.class_counts
    return {
        "n_samples": cohort.n_samples,
        "n_genes": cohort.n_genes,
        "n_tumor": counts[1],
        "n_normal": counts[0],
    }


def _normalized(cohort: Cohort, pseudocount: float) -> Cohort:
    return Cohort(
        name=cohort.name,
        expression=normalize_expression(cohort.expression, pseudocount=pseudocount),
        labels=cohort.labels,
        clinical=cohort.clinical,
    )


class SignaturePipeline:
    """
    Orchestrator for the two-cohort signature comparison.

    Example:
        >>> pipeline = SignaturePipeline(PipelineConfig())
        >>> results = pipeline.run(brca, prad)
        >>> results.selections["prad"].comparison.common
        {'ENSG00000...', ...}
    """

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.weighter = DivergenceWeighter(self.config.divergence)
        self.evaluator = ResamplingEvaluator(self.config.resampling, self.config.classifier)

    def run(self, cohort_a: Cohort, cohort_b: Cohort) -> PipelineResults:
        """
        Execute the two-cohort pipeline.

        Args:
            cohort_a: First assembled cohort (raw abundances)
            cohort_b: Second assembled cohort (raw abundances)

        Returns:
            PipelineResults
        """
        logger.info("=" * 60)
        logger.info("COHORTNET SIGNATURE PIPELINE")
        logger.info("=" * 60)
        results = PipelineResults(config=self.config)
        if cohort_a.name == cohort_b.name:
            raise DataIntegrityError(f"Both cohorts are named '{cohort_a.name}'")

        # Step 1: Shared gene set
        logger.info("Step 1: Aligning cohorts...")
        cohort_a, cohort_b = align_cohorts(cohort_a, cohort_b)
        results.n_shared_genes = cohort_a.n_genes

        # Step 2: Normalization
        logger.info("Step 2: Normalizing expression...")
        pseudocount = self.config.correlation.pseudocount
        norm_a = _normalized(cohort_a, pseudocount)
        norm_b = _normalized(cohort_b, pseudocount)

        # Step 3: Divergence weights
        logger.info("Step 3: Computing cross-cohort divergence...")
        divergence = self._divergence(norm_a, norm_b)
        results.divergence = divergence
        genes = divergence.retained_genes
        if not genes:
            raise DataIntegrityError("No gene passed the divergence threshold")

        # Step 4: Resampling per cohort
        for raw, norm in ((cohort_a, norm_a), (cohort_b, norm_b)):
            logger.info(f"Step 4: Resampling {norm.name}...")
            model_ready = norm.subset_genes(genes)
            run = self.evaluator.run_paired(model_ready, weights=divergence.weights)
            results.runs[norm.name] = run
            results.cohorts[raw.name] = raw.subset_genes(genes)
            results.cohort_info[raw.name] = _cohort_info(results.cohorts[raw.name])

            # Step 5: Aggregation
            results.selections[norm.name] = summarize_run(run, self.config.selection)
            results.paired_tests[norm.name] = paired_metric_tests(run)

        logger.info("=" * 60)
        logger.info("PIPELINE COMPLETED SUCCESSFULLY")
        logger.info("=" * 60)
        return results

    def run_single_cohort(self, cohort: Cohort) -> PipelineResults:
        """Uniform-penalty analysis of one cohort with an l1_ratio sweep."""
        logger.info(f"Single-cohort analysis: {cohort.name}")
        results = PipelineResults(config=self.config)

        cohort = drop_constant_genes(cohort)
        results.n_shared_genes = cohort.n_genes
        norm = _normalized(cohort, self.config.correlation.pseudocount)

        run = self.evaluator.run_single(norm)
        results.runs[cohort.name] = run
        results.cohorts[cohort.name] = cohort
        results.cohort_info[cohort.name] = _cohort_info(cohort)
        results.selections[cohort.name] = summarize_run(run, self.config.selection)
        return results

    def _divergence(self, norm_a: Cohort, norm_b: Cohort) -> DivergenceResult:
        corr_config = self.config.correlation
        show_progress = self.config.resampling.show_progress
        if corr_config.storage_dir is None:
            return self.weighter.fit(
                norm_a.expression,
                norm_b.expression,
                block_size=corr_config.block_size,
                n_jobs=corr_config.n_jobs,
                show_progress=show_progress,
            )

        # Keep both matrices on disk for later column queries
        matrices = [
            compute_correlation(
                norm.expression,
                block_size=corr_config.block_size,
                storage_dir=os.path.join(corr_config.storage_dir, norm.name),
                dtype=corr_config.dtype,
                n_jobs=corr_config.n_jobs,
                show_progress=show_progress,
            )
            for norm in (norm_a, norm_b)
        ]
        return self.weighter.fit_matrices(*matrices)

    def export(
        self,
        results: PipelineResults,
        output_dir: Optional[str] = None,
        gene_names: Optional[Mapping[str, str]] = None,
    ) -> List[str]:
        """
        Write tables for downstream plotting and survival analysis.

        Returns:
            List of written file paths
        """
        out = Path(output_dir or self.config.output_dir)
        out.mkdir(parents=True, exist_ok=True)
        written: List[str] = []

        def _write(frame: pd.DataFrame, name: str, index: bool = False) -> None:
            path = out / name
            frame.to_csv(path, index=index)
            written.append(str(path))
            logger.info(f"  Saved: {path}")

        logger.info("Step 6: Exporting results...")
        for name, cohort in results.cohorts.items():
            _write(cohort.expression, f"{name}_expression.csv", index=True)
            _write(cohort.labels.to_frame(), f"{name}_labels.csv", index=True)
            if cohort.clinical is not None:
                _write(cohort.clinical, f"{name}_clinical.csv", index=True)

        if results.divergence is not None:
            _write(results.divergence.to_frame(), "divergence_weights.csv", index=True)

        for name, run in results.runs.items():
            _write(run.metrics_frame(), f"{name}_trial_metrics.csv")
            _write(run.median_metrics(), f"{name}_median_metrics.csv")
            _write(selection_table(results.selections[name], gene_names), f"{name}_selection.csv")

        results.output_files.extend(written)
        results_path = out / "pipeline_results.json"
        results.output_files.append(str(results_path))
        results.save(str(results_path))
        logger.info(f"  Saved: {results_path}")
        return written + [str(results_path)]


# =============================================================================
# Command line
# =============================================================================

def read_expression(path: str, genes_as_rows: bool = False) -> pd.DataFrame:
    """Read an expression CSV/TSV into a samples x genes DataFrame."""
    sep = "\t" if str(path).endswith((".tsv", ".txt")) else ","
    frame = pd.read_csv(path, sep=sep, index_col=0)
    if genes_as_rows:
        frame = frame.T
    frame.index = frame.index.astype(str)
    frame.columns = frame.columns.astype(str)
    return frame


def read_gene_names(path: str) -> Dict[str, str]:
    """Read a gene_id -> gene_name lookup (first two columns)."""
    table = pd.read_csv(path, sep="\t" if str(path).endswith(".tsv") else ",")
    return dict(zip(table.iloc[:, 0].astype(str), table.iloc[:, 1].astype(str)))


def main():
    """Command-line entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="cohortnet: cross-cohort network-weighted signature pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Two-cohort comparison (uniform vs. divergence-weighted penalty)
  python -m cohortnet.analysis.pipeline \\
      --expression-a brca_counts.csv --clinical-a brca_clinical.csv --cohort-a brca-er-positive \\
      --expression-b prad_counts.csv --clinical-b prad_clinical.csv --cohort-b prad \\
      --reference-genes protein_coding.txt --output results/

  # Single cohort with l1_ratio sweep
  python -m cohortnet.analysis.pipeline --single \\
      --expression-a prad_counts.csv --clinical-a prad_clinical.csv --cohort-a prad \\
      --reference-genes protein_coding.txt
        """
    )
    parser.add_argument("--expression-a", required=True, help="Expression table of cohort A")
    parser.add_argument("--clinical-a", required=True, help="Clinical table of cohort A")
    parser.add_argument("--cohort-a", default="brca-er-positive", help="Schema name of cohort A")
    parser.add_argument("--expression-b", help="Expression table of cohort B")
    parser.add_argument("--clinical-b", help="Clinical table of cohort B")
    parser.add_argument("--cohort-b", default="prad", help="Schema name of cohort B")
    parser.add_argument("--reference-genes", "-g", required=True, help="Reference gene list")
    parser.add_argument("--gene-names", help="CSV gene_id,gene_name used for reporting")
    parser.add_argument("--genes-as-rows", action="store_true",
                        help="Expression files are genes x samples")
    parser.add_argument("--config", "-c", help="JSON configuration file")
    parser.add_argument("--output", "-o", help="Output directory (overrides config)")
    parser.add_argument("--trials", "-n", type=int, help="Number of resampling trials")
    parser.add_argument("--seed", type=int, help="Random seed for the run")
    parser.add_argument("--n-jobs", "-j", type=int, help="Parallel workers for trials")
    parser.add_argument("--single", action="store_true",
                        help="Analyze cohort A alone (uniform penalty, l1_ratio sweep)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Disable progress bars")

    args = parser.parse_args()

    config = load_config(args.config)
    if args.output:
        config.output_dir = args.output
    if args.trials is not None:
        config.resampling.n_trials = args.trials
    if args.seed is not None:
        config.resampling.seed = args.seed
    if args.n_jobs is not None:
        config.resampling.n_jobs = args.n_jobs
    if args.quiet:
        config.resampling.show_progress = False

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    reference = load_reference_genes(args.reference_genes)
    gene_names = read_gene_names(args.gene_names) if args.gene_names else None

    def _assemble(expression_path, clinical_path, cohort_name):
        assembler = CohortAssembler(get_schema(cohort_name), reference)
        clinical = pd.read_csv(clinical_path, sep="\t" if clinical_path.endswith(".tsv") else ",")
        return assembler.assemble(read_expression(expression_path, args.genes_as_rows), clinical)

    cohort_a = _assemble(args.expression_a, args.clinical_a, args.cohort_a)
    pipeline = SignaturePipeline(config)

    if args.single:
        results = pipeline.run_single_cohort(cohort_a)
    else:
        if not (args.expression_b and args.clinical_b):
            parser.error("--expression-b and --clinical-b are required unless --single is given")
        cohort_b = _assemble(args.expression_b, args.clinical_b, args.cohort_b)
        results = pipeline.run(cohort_a, cohort_b)

    files = pipeline.export(results, gene_names=gene_names)
    print(f"\nPipeline completed. Generated {len(files)} files in {config.output_dir}.")


if __name__ == "__main__":
    main()
