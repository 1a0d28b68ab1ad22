"""
Selection Aggregator for cohortnet.

Turns per-trial selected-gene records into frequency tallies and gene sets:
- Tallies are built by a pure reduction over trial records (merge_tallies),
  so results from parallel workers can be combined in any order.
- 'Always selected': count >= ceil(always_fraction * N), which for the
  default always_fraction=1.0 is the same as count > N - 1.
- 'Frequently selected': count > frequent_fraction * N (default 75%).
- Overlaps between variants are taken on gene identifiers.

It also provides paired comparisons of per-trial performance between the
uniform and weighted variants (Wilcoxon signed-rank test).
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

import numpy as np
import pandas as pd
from scipy import stats

from ..core.config import SelectionConfig
from .resampling import ResamplingRun, UNIFORM, WEIGHTED


logger = logging.getLogger(__name__)


def tally_trial(selected: Iterable[int], genes: Sequence[str]) -> Counter:
    """Counter of the genes selected in one trial."""
    return Counter(genes[i] for i in set(int(i) for i in selected))


def merge_tallies(left: Counter, right: Counter) -> Counter:
    """Sum two tallies without mutating either."""
    merged = Counter(left)
    merged.update(right)
    return merged


def tally_selections(selections: Iterable[Iterable[int]], genes: Sequence[str]) -> Counter:
    """Reduce per-trial selected indices into gene -> number of trials."""
    return reduce(merge_tallies, (tally_trial(s, genes) for s in selections), Counter())


@dataclass
class VariantSelection:
    """Selection frequencies of one classifier variant."""
    variant: str
    n_trials: int
    counts: Counter
    always: Set[str] = field(default_factory=set)
    frequent: Set[str] = field(default_factory=set)

    def frequency(self, gene: str) -> float:
        return self.counts.get(gene, 0) / self.n_trials if self.n_trials else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant,
            "n_trials": self.n_trials,
            "n_ever_selected": len(self.counts),
            "always": sorted(self.always),
            "frequent": sorted(self.frequent),
        }


def summarize_variant(
    variant: str,
    selections: Sequence[Iterable[int]],
    genes: Sequence[str],
    config: Optional[SelectionConfig] = None,
) -> VariantSelection:
    """Tally one variant and derive its 'always' and 'frequent' gene sets."""
    config = config or SelectionConfig()
    n_trials = len(selections)
    counts = tally_selections(selections, genes)

    if n_trials == 0:
        return VariantSelection(variant=variant, n_trials=0, counts=counts)

    min_always = config.always_min_count(n_trials)
    always = {g for g, c in counts.items() if c >= min_always}
    frequent = {g for g, c in counts.items() if config.is_frequent(c, n_trials)}
    # 'always' is a subset of 'frequent' unless the thresholds are inverted
    if not always <= frequent:
        logger.warning(
            f"{variant}: always_fraction ({config.always_fraction}) is below "
            f"frequent_fraction ({config.frequent_fraction})"
        )
    return VariantSelection(
        variant=variant, n_trials=n_trials, counts=counts, always=always, frequent=frequent
    )


@dataclass
class VariantComparison:
    """Overlap of the 'frequently selected' sets of two variants."""
    common: Set[str]
    only_uniform: Set[str]
    only_weighted: Set[str]

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "common": sorted(self.common),
            "only_uniform": sorted(self.only_uniform),
            "only_weighted": sorted(self.only_weighted),
        }


def compare_variants(uniform: VariantSelection, weighted: VariantSelection) -> VariantComparison:
    """Set intersection and differences of the frequent sets."""
    return VariantComparison(
        common=uniform.frequent & weighted.frequent,
        only_uniform=uniform.frequent - weighted.frequent,
        only_weighted=weighted.frequent - uniform.frequent,
    )


@dataclass
class SelectionSummary:
    """Selection results of one resampling run."""
    cohort: str
    n_trials: int
    variants: Dict[str, VariantSelection]
    comparison: Optional[VariantComparison] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohort": self.cohort,
            "n_trials": self.n_trials,
            "variants": {k: v.to_dict() for k, v in self.variants.items()},
            "comparison": self.comparison.to_dict() if self.comparison else None,
        }


def summarize_run(run: ResamplingRun, config: Optional[SelectionConfig] = None) -> SelectionSummary:
    """Selection tallies for every variant of a run, plus their overlap."""
    variants = {
        name: summarize_variant(name, run.selections(name), run.genes, config)
        for name in run.variants
    }
    comparison = None
    if UNIFORM in variants and WEIGHTED in variants:
        comparison = compare_variants(variants[UNIFORM], variants[WEIGHTED])

    for name, selection in variants.items():
        logger.info(
            f"{run.cohort}/{name}: {len(selection.always)} always, "
            f"{len(selection.frequent)} frequently selected over {selection.n_trials} trials"
        )
    return SelectionSummary(
        cohort=run.cohort, n_trials=run.n_trials, variants=variants, comparison=comparison
    )


def selection_table(
    summary: SelectionSummary,
    gene_names: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """
    One row per (variant, gene ever selected), sorted by decreasing count.

    Args:
        summary: Output of summarize_run
        gene_names: Optional gene id -> display name lookup
    """
    rows = []
    for name, selection in summary.variants.items():
        for gene, count in selection.counts.items():
            row = {
                "cohort": summary.cohort,
                "variant": name,
                "gene": gene,
                "count": count,
                "frequency": selection.frequency(gene),
                "always": gene in selection.always,
                "frequent": gene in selection.frequent,
            }
            if gene_names is not None:
                row["gene_name"] = gene_names.get(gene, gene)
            rows.append(row)

    table = pd.DataFrame(rows)
    if table.empty:
        return table
    return table.sort_values(["variant", "count", "gene"], ascending=[True, False, True]).reset_index(drop=True)


@dataclass
class PairedTestResult:
    """Wilcoxon signed-rank comparison of one test-set metric."""
    metric: str
    n_pairs: int
    median_uniform: float
    median_weighted: float
    median_difference: float
    statistic: float
    p_value: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "metric": self.metric,
            "n_pairs": self.n_pairs,
            "median_uniform": self.median_uniform,
            "median_weighted": self.median_weighted,
            "median_difference": self.median_difference,
            "statistic": self.statistic,
            "p_value": self.p_value,
        }


def paired_metric_tests(
    run: ResamplingRun,
    metrics: Sequence[str] = ("misclassified", "mse", "pr_auc"),
    split: str = "test",
) -> List[PairedTestResult]:
    """
    Compare the weighted variant against the uniform one, trial by trial.

    Pairs with a missing value are dropped; all-zero differences give p = 1.
    A run without contributing trials yields no tests.
    """
    if WEIGHTED not in run.variants:
        return []
    frame = run.metrics_frame()
    if frame.empty:
        logger.warning(f"{run.cohort}: no contributing trials, paired tests skipped")
        return []
    frame = frame[frame["split"] == split]
    results = []
    for metric in metrics:
        wide = frame.pivot(index="trial", columns="variant", values=metric).dropna()
        if wide.empty:
            continue
        uniform = wide[UNIFORM].to_numpy(dtype=float)
        weighted = wide[WEIGHTED].to_numpy(dtype=float)
        diff = weighted - uniform
        if np.allclose(diff, 0.0):
            statistic, p_value = 0.0, 1.0
        else:
            test = stats.wilcoxon(weighted, uniform, zero_method="wilcox")
            statistic, p_value = float(test.statistic), float(test.pvalue)
        results.append(PairedTestResult(
            metric=metric,
            n_pairs=int(len(wide)),
            median_uniform=float(np.median(uniform)),
            median_weighted=float(np.median(weighted)),
            median_difference=float(np.median(diff)),
            statistic=statistic,
            p_value=p_value,
        ))
    return results
