"""Tests for selection tallies, gene sets and paired comparisons."""

from collections import Counter

import numpy as np
import pandas as pd
import pytest

from cohortnet.analysis.resampling import METRIC_COLUMNS, UNIFORM, WEIGHTED, ResamplingEvaluator
from cohortnet.analysis.selection import (
    VariantSelection,
    compare_variants,
    merge_tallies,
    paired_metric_tests,
    selection_table,
    summarize_run,
    summarize_variant,
    tally_selections,
)
from cohortnet.core.config import ClassifierConfig, ResamplingConfig, SelectionConfig

from cohortnet.preprocessing.assembler import Cohort

from conftest import make_predictive_cohort


GENES = ["a", "b", "c", "d"]


def test_tally_counts_each_trial_once():
    counts = tally_selections([[0, 1], [0, 0, 2], [0]], GENES)
    assert counts == Counter({"a": 3, "b": 1, "c": 1})
    assert max(counts.values()) <= 3


def test_merge_is_pure_and_order_free():
    left, right = Counter({"a": 2}), Counter({"a": 1, "b": 4})
    assert merge_tallies(left, right) == merge_tallies(right, left) == Counter({"a": 3, "b": 4})
    assert left == Counter({"a": 2})


def test_always_and_frequent_sets():
    selections = [[0, 1]] * 3 + [[0]]
    summary = summarize_variant(UNIFORM, selections, GENES)
    assert summary.always == {"a"}
    assert summary.frequent == {"a"}  # b: 3 of 4 is not above 75%
    assert summary.always <= summary.frequent
    assert summary.frequency("b") == 0.75


def test_relaxed_always_fraction():
    selections = [[0, 1]] * 9 + [[0]]
    summary = summarize_variant(UNIFORM, selections, GENES, SelectionConfig(always_fraction=0.9))
    assert summary.always == {"a", "b"}


def test_empty_variant():
    summary = summarize_variant(UNIFORM, [], GENES)
    assert summary.n_trials == 0
    assert summary.always == set() and summary.frequent == set()


def test_compare_variants():
    uniform = VariantSelection(UNIFORM, 10, Counter(), frequent={"a", "b"})
    weighted = VariantSelection(WEIGHTED, 10, Counter(), frequent={"b", "c"})
    comparison = compare_variants(uniform, weighted)
    assert comparison.common == {"b"}
    assert comparison.only_uniform == {"a"}
    assert comparison.only_weighted == {"c"}


@pytest.fixture(scope="module")
def zero_weight_run():
    cohort = make_predictive_cohort(seed=6)
    weights = pd.Series(0.0, index=cohort.genes)
    config = ResamplingConfig(n_trials=10, n_folds=5, seed=21, show_progress=False)
    return ResamplingEvaluator(config, ClassifierConfig(n_lambdas=10)).run_paired(cohort, weights)


def test_zero_weights_reproduce_uniform_variant(zero_weight_run):
    run = zero_weight_run
    assert run.n_trials == 10
    for uniform, weighted in zip(run.selections(UNIFORM), run.selections(WEIGHTED)):
        np.testing.assert_array_equal(uniform, weighted)

    summary = summarize_run(run)
    assert summary.variants[UNIFORM].always == summary.variants[WEIGHTED].always
    assert summary.variants[UNIFORM].frequent == summary.variants[WEIGHTED].frequent
    assert not summary.comparison.only_uniform and not summary.comparison.only_weighted


def test_identical_variants_have_no_paired_difference(zero_weight_run):
    tests = paired_metric_tests(zero_weight_run)
    assert [t.metric for t in tests] == ["misclassified", "mse", "pr_auc"]
    for result in tests:
        assert result.p_value == 1.0
        assert result.median_difference == 0.0


def test_selection_table(zero_weight_run):
    summary = summarize_run(zero_weight_run)
    table = selection_table(summary, gene_names={"gene_0": "TP53"})
    assert set(table["variant"]) == {UNIFORM, WEIGHTED}
    assert (table["count"] <= summary.n_trials).all()
    assert table.loc[table["gene"] == "gene_0", "gene_name"].eq("TP53").all()
    assert (table["frequency"] == table["count"] / summary.n_trials).all()


@pytest.mark.slow
def test_strong_genes_always_selected():
    cohort = make_predictive_cohort(n_per_class=10, n_genes=50, predictive=(0, 1), shift=3.0, seed=0)
    rng = np.random.default_rng(1)
    weights = pd.Series(rng.uniform(size=50), index=cohort.genes)
    weights[["gene_0", "gene_1"]] = 0.5

    config = ResamplingConfig(n_trials=100, seed=2024, show_progress=False)
    run = ResamplingEvaluator(config, ClassifierConfig(n_lambdas=12)).run_paired(cohort, weights)
    summary = summarize_run(run)

    assert run.n_trials == 100
    for variant in (UNIFORM, WEIGHTED):
        assert {"gene_0", "gene_1"} <= summary.variants[variant].always
        assert summary.variants[variant].always <= summary.variants[variant].frequent


def test_run_without_contributing_trials():
    rng = np.random.default_rng(0)
    cohort = Cohort.from_arrays("one_tumor", rng.normal(size=(20, 5)), [1] + [0] * 19)
    weights = pd.Series(np.linspace(0.0, 1.0, 5), index=cohort.genes)
    config = ResamplingConfig(n_trials=3, n_folds=5, show_progress=False)
    run = ResamplingEvaluator(config, ClassifierConfig(n_lambdas=5)).run_paired(cohort, weights)

    assert run.n_trials == 0
    assert run.excluded_trials == [0, 1, 2]
    assert list(run.metrics_frame().columns) == METRIC_COLUMNS
    assert run.median_metrics().empty
    assert paired_metric_tests(run) == []

    summary = summarize_run(run)
    assert summary.n_trials == 0
    assert selection_table(summary).empty
