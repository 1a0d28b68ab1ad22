"""Tests for trial planning and the paired resampling runs."""

import numpy as np
import pandas as pd
import pytest

from cohortnet.analysis.resampling import (
    METRIC_COLUMNS,
    UNIFORM,
    WEIGHTED,
    ResamplingEvaluator,
    TrialFailure,
    _init_worker,
    _run_trial_in_worker,
    draw_split,
    make_trial_plans,
    stratified_fold_ids,
)
from cohortnet.core.config import ClassifierConfig, ResamplingConfig
from cohortnet.core.errors import DataIntegrityError, DegenerateSplitError
from cohortnet.preprocessing.assembler import Cohort

from conftest import make_predictive_cohort


LABELS = np.array([0] * 10 + [1] * 10)


def test_draw_split_sizes_and_classes():
    rng = np.random.default_rng(0)
    train, test, attempts = draw_split(LABELS, 0.25, rng)
    assert len(test) == 5 and len(train) == 15
    assert not set(train) & set(test)
    assert set(LABELS[train]) == {0, 1} and set(LABELS[test]) == {0, 1}
    assert attempts >= 1


def test_draw_split_gives_up_after_redraws():
    labels = np.array([1] + [0] * 19)
    with pytest.raises(DegenerateSplitError) as info:
        draw_split(labels, 0.25, np.random.default_rng(0), max_redraws=3, trial_index=7)
    assert info.value.trial_index == 7
    assert info.value.attempts == 4


def test_fold_ids_balanced_when_class_smaller_than_folds():
    labels = np.array([0] * 7 + [1] * 8)
    folds = stratified_fold_ids(labels, 10, np.random.default_rng(1))
    sizes = np.bincount(folds, minlength=10)
    assert sizes.max() - sizes.min() <= 1
    for cls in (0, 1):
        assert len(set(folds[labels == cls])) == (labels == cls).sum()


def test_plans_are_reproducible_for_seed():
    config = ResamplingConfig(n_trials=20, seed=99)
    first, _ = make_trial_plans(LABELS, config)
    second, _ = make_trial_plans(LABELS, config)
    for a, b in zip(first, second):
        np.testing.assert_array_equal(a.test_idx, b.test_idx)
        np.testing.assert_array_equal(a.fold_ids, b.fold_ids)
        assert a.seed == b.seed

    other, _ = make_trial_plans(LABELS, ResamplingConfig(n_trials=20, seed=100))
    assert any(not np.array_equal(a.test_idx, b.test_idx) for a, b in zip(first, other))


def test_unsplittable_labels_skip_every_trial():
    plans, skipped = make_trial_plans(np.array([1] + [0] * 19), ResamplingConfig(n_trials=5))
    assert plans == []
    assert [s.index for s in skipped] == [0, 1, 2, 3, 4]


def test_paired_run_shares_plan(small_resampling_config, fast_classifier_config):
    cohort = make_predictive_cohort(seed=1)
    weights = pd.Series(np.linspace(0.0, 1.0, cohort.n_genes), index=cohort.genes)
    evaluator = ResamplingEvaluator(small_resampling_config, fast_classifier_config)
    run = evaluator.run_paired(cohort, weights=weights)

    assert run.variants == [UNIFORM, WEIGHTED]
    assert run.n_trials + len(run.excluded_trials) == small_resampling_config.n_trials
    for trial in run.trials:
        uniform, weighted = trial.variants[UNIFORM], trial.variants[WEIGHTED]
        assert uniform.test.n_samples == weighted.test.n_samples == len(trial.plan.test_idx)

    frame = run.metrics_frame()
    assert set(frame["split"]) == {"train", "test"}
    medians = run.median_metrics()
    assert set(medians["variant"]) == {UNIFORM, WEIGHTED}
    assert (medians["n_trials"] == run.n_trials).all()


def test_runs_are_reproducible(small_resampling_config, fast_classifier_config):
    cohort = make_predictive_cohort(seed=2)
    evaluator = ResamplingEvaluator(small_resampling_config, fast_classifier_config)
    first = evaluator.run_paired(cohort)
    second = evaluator.run_paired(cohort)
    pd.testing.assert_frame_equal(first.metrics_frame(), second.metrics_frame())
    for a, b in zip(first.selections(UNIFORM), second.selections(UNIFORM)):
        np.testing.assert_array_equal(a, b)


def test_process_pool_matches_sequential(fast_classifier_config):
    cohort = make_predictive_cohort(seed=3)
    config = ResamplingConfig(n_trials=4, n_folds=5, seed=5, show_progress=False)
    sequential = ResamplingEvaluator(config, fast_classifier_config).run_paired(cohort)
    parallel_config = ResamplingConfig(n_trials=4, n_folds=5, seed=5, n_jobs=2, show_progress=False)
    parallel = ResamplingEvaluator(parallel_config, fast_classifier_config).run_paired(cohort)
    pd.testing.assert_frame_equal(sequential.metrics_frame(), parallel.metrics_frame())


def test_missing_weight_raises(small_resampling_config):
    cohort = make_predictive_cohort()
    weights = pd.Series(1.0, index=cohort.genes[:-1])
    with pytest.raises(DataIntegrityError):
        ResamplingEvaluator(small_resampling_config).run_paired(cohort, weights=weights)


def test_failing_trial_is_isolated():
    cohort = make_predictive_cohort()
    X = cohort.expression.to_numpy()
    y = cohort.labels.to_numpy()
    plans, _ = make_trial_plans(y, ResamplingConfig(n_trials=1, n_folds=5))
    # Wrong weight length makes the weighted variant raise inside the trial
    _init_worker(X, y, ClassifierConfig(n_lambdas=5), np.ones(3), None)
    outcome = _run_trial_in_worker(plans[0])
    assert isinstance(outcome, TrialFailure)
    assert outcome.index == 0
    assert "ValueError" in outcome.error


def test_single_run_picks_l1_ratio_from_grid(fast_classifier_config):
    config = ResamplingConfig(n_trials=3, n_folds=5, seed=8, show_progress=False)
    fast_classifier_config.l1_ratio_grid = (0.5, 0.9)
    run = ResamplingEvaluator(config, fast_classifier_config).run_single(make_predictive_cohort(seed=4))

    assert run.variants == [UNIFORM]
    assert run.l1_ratio in (0.5, 0.9)
    assert set(run.l1_ratio_scores) == {0.5, 0.9}
    assert all(t.variants[UNIFORM].l1_ratio == run.l1_ratio for t in run.trials)
    assert run.to_dict()["l1_ratio"] == run.l1_ratio


def test_boundary_and_solver_flags_reach_outputs():
    rng = np.random.default_rng(12)
    noise = Cohort.from_arrays("noise", rng.normal(size=(24, 8)), [0] * 12 + [1] * 12)
    config = ResamplingConfig(n_trials=4, n_folds=5, seed=3, show_progress=False)
    run = ResamplingEvaluator(config, ClassifierConfig(n_lambdas=8)).run_paired(noise)

    frame = run.metrics_frame()
    assert list(frame.columns) == METRIC_COLUMNS
    test_rows = frame[(frame["split"] == "test") & (frame["variant"] == UNIFORM)]
    assert run.boundary_counts()[UNIFORM] == int(test_rows["boundary_hit"].sum())
    assert run.boundary_counts()[UNIFORM] >= 1
    assert run.nonconverged_counts()[UNIFORM] == int((~test_rows["solver_converged"].astype(bool)).sum())

    summary = run.to_dict()
    assert summary["boundary_counts"] == run.boundary_counts()
    assert summary["nonconverged_counts"] == run.nonconverged_counts()
