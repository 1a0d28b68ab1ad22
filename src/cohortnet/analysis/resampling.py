"""
Resampling Evaluator for cohortnet.

Repeated random train/test evaluation of the penalized classifier:

1. All trial plans (25% test split, stratified fold ids within the training
   part, solver seed) are drawn up front from a single seed. Splits, folds
   and solver seeds each come from their own stream of
   numpy.random.SeedSequence(seed), so re-running gives identical plans
   whatever the execution order or number of workers.
2. Each trial fits the 'uniform' variant and, when divergence weights are
   given, the 'weighted' variant on the same plan (paired design).
3. Trials are independent: they run sequentially or in a process pool and
   a failure in one trial is recorded without touching the others.

Usage:
    evaluator = ResamplingEvaluator(ResamplingConfig(n_trials=100, seed=1))
    run = evaluator.run_paired(cohort, weights=divergence.weights)
    run.median_metrics()
"""

from __future__ import annotations

import logging
import os
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from ..core.config import ClassifierConfig, ResamplingConfig
from ..core.errors import ConvergenceWarning, DataIntegrityError, DegenerateSplitError
from ..preprocessing.assembler import Cohort
from .classifier import PenalizedClassifier, PredictionMetrics, fit_and_evaluate


logger = logging.getLogger(__name__)

UNIFORM = "uniform"
WEIGHTED = "weighted"

METRIC_COLUMNS = [
    "cohort", "trial", "variant", "split", "misclassified", "mse", "pr_auc",
    "n_samples", "n_selected", "lambda", "l1_ratio", "boundary_hit", "solver_converged",
]


# =============================================================================
# Trial plans
# =============================================================================

@dataclass(frozen=True)
class TrialPlan:
    """Fixed partition of the samples for one trial."""
    index: int
    train_idx: np.ndarray
    test_idx: np.ndarray
    fold_ids: np.ndarray  # one fold id per entry of train_idx
    seed: int
    attempts: int = 1


@dataclass(frozen=True)
class SkippedTrial:
    """A trial excluded from the aggregates."""
    index: int
    reason: str
    attempts: int = 0


def draw_split(
    labels: np.ndarray,
    test_fraction: float,
    rng: np.random.Generator,
    max_redraws: int = 10,
    trial_index: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Random test split without replacement; both sets must contain both classes.

    Returns:
        (train_idx, test_idx, attempts)

    Raises:
        DegenerateSplitError: If max_redraws + 1 draws all miss a class
    """
    n = len(labels)
    n_test = int(round(test_fraction * n))
    if n_test < 2 or n - n_test < 2:
        raise DegenerateSplitError(
            f"Cannot split {n} samples with test fraction {test_fraction}",
            trial_index=trial_index,
        )

    for attempt in range(1, max_redraws + 2):
        test_idx = np.sort(rng.choice(n, size=n_test, replace=False))
        train_mask = np.ones(n, dtype=bool)
        train_mask[test_idx] = False
        train_idx = np.flatnonzero(train_mask)
        if len(np.unique(labels[train_idx])) == 2 and len(np.unique(labels[test_idx])) == 2:
            return train_idx, test_idx, attempt

    raise DegenerateSplitError(
        f"Split left a class empty after {max_redraws + 1} draws",
        trial_index=trial_index,
        attempts=max_redraws + 1,
    )


def stratified_fold_ids(labels: np.ndarray, n_folds: int, rng: np.random.Generator) -> np.ndarray:
    """
    Fold id per sample, dealing each class round-robin over a random order.

    The round-robin counter carries over from one class to the next, so
    fold sizes differ by at most one even when a class has fewer members
    than there are folds.
    """
    labels = np.asarray(labels)
    fold_ids = np.empty(len(labels), dtype=int)
    offset = 0
    for cls in np.unique(labels):
        members = rng.permutation(np.flatnonzero(labels == cls))
        fold_ids[members] = (np.arange(len(members)) + offset) % n_folds
        offset += len(members)
    return fold_ids


def make_trial_plans(
    labels: Sequence[int],
    config: ResamplingConfig,
) -> Tuple[List[TrialPlan], List[SkippedTrial]]:
    """Draw every trial plan of a run from config.seed."""
    labels = np.asarray(labels, dtype=int)
    split_seq, fold_seq, solver_seq = np.random.SeedSequence(config.seed).spawn(3)
    split_rng = np.random.default_rng(split_seq)
    fold_rng = np.random.default_rng(fold_seq)
    solver_rng = np.random.default_rng(solver_seq)

    plans: List[TrialPlan] = []
    skipped: List[SkippedTrial] = []
    for t in range(config.n_trials):
        try:
            train_idx, test_idx, attempts = draw_split(
                labels, config.test_fraction, split_rng, config.max_redraws, trial_index=t
            )
        except DegenerateSplitError as e:
            skipped.append(SkippedTrial(index=t, reason=str(e), attempts=e.attempts))
            continue
        fold_ids = stratified_fold_ids(labels[train_idx], config.n_folds, fold_rng)
        seed = int(solver_rng.integers(0, 2**31 - 1))
        plans.append(TrialPlan(t, train_idx, test_idx, fold_ids, seed, attempts))

    if skipped:
        logger.warning(
            f"Skipped {len(skipped)} trial(s) with degenerate splits: "
            f"{[s.index for s in skipped]}"
        )
    return plans, skipped


# =============================================================================
# Trial results
# =============================================================================

@dataclass
class VariantResult:
    """Outcome of one classifier variant in one trial."""
    variant: str
    selected: np.ndarray
    train: PredictionMetrics
    test: PredictionMetrics
    lambda_: float
    l1_ratio: float
    cv_mse: float
    boundary_hit: bool = False
    solver_converged: bool = True

    @property
    def n_selected(self) -> int:
        return int(len(self.selected))


@dataclass
class TrialResult:
    """All variants of one trial, evaluated on the same plan."""
    plan: TrialPlan
    variants: Dict[str, VariantResult] = field(default_factory=dict)

    @property
    def index(self) -> int:
        return self.plan.index


@dataclass(frozen=True)
class TrialFailure:
    """A trial that raised during fitting."""
    index: int
    error: str


def run_trial(
    plan: TrialPlan,
    X: np.ndarray,
    y: np.ndarray,
    classifier_config: ClassifierConfig,
    weights: Optional[np.ndarray] = None,
    l1_ratio: Optional[float] = None,
) -> TrialResult:
    """
    Fit the uniform (and, with weights, the weighted) variant on one plan.

    Both variants share the plan and the solver seed.
    """
    X_train, y_train = X[plan.train_idx], y[plan.train_idx]
    X_test, y_test = X[plan.test_idx], y[plan.test_idx]
    ratios = [l1_ratio] if l1_ratio is not None else None

    variants = {UNIFORM: None}
    if weights is not None:
        variants[WEIGHTED] = weights

    result = TrialResult(plan=plan)
    for name, variant_weights in variants.items():
        clf = PenalizedClassifier(classifier_config, random_state=plan.seed)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            model, train_metrics, test_metrics = fit_and_evaluate(
                clf, X_train, y_train, X_test, y_test, plan.fold_ids,
                weights=variant_weights, l1_ratios=ratios,
            )
        result.variants[name] = VariantResult(
            variant=name,
            selected=model.selected,
            train=train_metrics,
            test=test_metrics,
            lambda_=model.lambda_,
            l1_ratio=model.l1_ratio,
            cv_mse=model.cv_mse,
            boundary_hit=model.boundary_hit,
            solver_converged=model.solver_converged,
        )
    return result


# Per-process state for pool workers, set once by the initializer
_WORKER_STATE: Dict[str, Any] = {}


def _init_worker(X, y, classifier_config, weights, l1_ratio) -> None:
    _WORKER_STATE.update(
        X=X, y=y, classifier_config=classifier_config, weights=weights, l1_ratio=l1_ratio
    )


def _run_trial_in_worker(plan: TrialPlan):
    state = _WORKER_STATE
    try:
        return run_trial(
            plan, state["X"], state["y"], state["classifier_config"],
            state["weights"], state["l1_ratio"],
        )
    except Exception as e:
        logger.error(f"Trial {plan.index} failed: {e}")
        return TrialFailure(index=plan.index, error=f"{type(e).__name__}: {e}")


# =============================================================================
# Run container
# =============================================================================

@dataclass
class ResamplingRun:
    """All trials of one resampling run on one cohort."""
    cohort: str
    genes: List[str]
    variants: List[str]
    n_trials_requested: int
    trials: List[TrialResult] = field(default_factory=list)
    skipped: List[SkippedTrial] = field(default_factory=list)
    failures: List[TrialFailure] = field(default_factory=list)
    l1_ratio: Optional[float] = None
    l1_ratio_scores: Dict[float, float] = field(default_factory=dict)

    @property
    def n_trials(self) -> int:
        """Number of trials contributing to the aggregates."""
        return len(self.trials)

    @property
    def excluded_trials(self) -> List[int]:
        return sorted([s.index for s in self.skipped] + [f.index for f in self.failures])

    def selections(self, variant: str) -> List[np.ndarray]:
        """Selected gene indices per contributing trial."""
        return [t.variants[variant].selected for t in self.trials]

    def metrics_frame(self) -> pd.DataFrame:
        """Long table: one row per trial, variant and split."""
        rows = []
        for trial in self.trials:
            for name, result in trial.variants.items():
                for split, metrics in (("train", result.train), ("test", result.test)):
                    rows.append({
                        "cohort": self.cohort,
                        "trial": trial.index,
                        "variant": name,
                        "split": split,
                        "misclassified": metrics.misclassified,
                        "mse": metrics.mse,
                        "pr_auc": metrics.pr_auc,
                        "n_samples": metrics.n_samples,
                        "n_selected": result.n_selected,
                        "lambda": result.lambda_,
                        "l1_ratio": result.l1_ratio,
                        "boundary_hit": result.boundary_hit,
                        "solver_converged": result.solver_converged,
                    })
        return pd.DataFrame(rows, columns=METRIC_COLUMNS)

    def median_metrics(self) -> pd.DataFrame:
        """Median of each metric across trials, with the number of contributing trials."""
        frame = self.metrics_frame()
        if frame.empty:
            return pd.DataFrame(
                columns=["variant", "split", "n_trials", "misclassified", "mse", "pr_auc", "n_selected"]
            )
        grouped = frame.groupby(["variant", "split"])
        summary = grouped[["misclassified", "mse", "pr_auc", "n_selected"]].median()
        summary.insert(0, "n_trials", grouped["trial"].nunique())
        return summary.reset_index()

    def boundary_counts(self) -> Dict[str, int]:
        """Trials per variant whose lambda sat on the edge of the path."""
        return {
            v: sum(1 for t in self.trials if t.variants[v].boundary_hit)
            for v in self.variants
        }

    def nonconverged_counts(self) -> Dict[str, int]:
        """Trials per variant in which the solver hit max_iter at least once."""
        return {
            v: sum(1 for t in self.trials if not t.variants[v].solver_converged)
            for v in self.variants
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohort": self.cohort,
            "n_genes": len(self.genes),
            "variants": self.variants,
            "n_trials_requested": self.n_trials_requested,
            "n_trials": self.n_trials,
            "skipped_trials": [s.index for s in self.skipped],
            "failed_trials": {f.index: f.error for f in self.failures},
            "l1_ratio": self.l1_ratio,
            "l1_ratio_scores": {str(k): v for k, v in self.l1_ratio_scores.items()},
            "boundary_counts": self.boundary_counts(),
            "nonconverged_counts": self.nonconverged_counts(),
        }


# =============================================================================
# Evaluator
# =============================================================================

class ResamplingEvaluator:
    """
    Runs repeated train/test trials and collects per-trial results.

    Example:
        >>> evaluator = ResamplingEvaluator(ResamplingConfig(n_trials=100))
        >>> paired = evaluator.run_paired(brca, weights=divergence.weights)
        >>> single = evaluator.run_single(prad)
        >>> single.l1_ratio
        0.7
    """

    def __init__(
        self,
        config: Optional[ResamplingConfig] = None,
        classifier_config: Optional[ClassifierConfig] = None,
    ):
        self.config = config or ResamplingConfig()
        self.classifier_config = classifier_config or ClassifierConfig()

    def plan(self, labels: Sequence[int]) -> Tuple[List[TrialPlan], List[SkippedTrial]]:
        return make_trial_plans(labels, self.config)

    def run_paired(self, cohort: Cohort, weights: Optional[pd.Series] = None) -> ResamplingRun:
        """
        Uniform vs. weighted penalty on identical plans.

        Args:
            cohort: Model-ready cohort (normalized expression)
            weights: Divergence weight per gene of the cohort; None runs the
                uniform variant only
        """
        weight_vector = None
        if weights is not None:
            aligned = weights.reindex(cohort.genes)
            if aligned.isna().any():
                missing = aligned.index[aligned.isna()].tolist()
                raise DataIntegrityError(
                    f"No divergence weight for {len(missing)} gene(s), e.g. {missing[:5]}"
                )
            weight_vector = aligned.to_numpy(dtype=float)
        return self._run(cohort, weight_vector, l1_ratio=self.classifier_config.l1_ratio)

    def run_single(self, cohort: Cohort) -> ResamplingRun:
        """
        Uniform penalty only; the l1_ratio is chosen first by a sweep over
        config.l1_ratio_grid and then held fixed for every trial.
        """
        ratio, scores = self.select_l1_ratio(cohort)
        run = self._run(cohort, None, l1_ratio=ratio)
        run.l1_ratio_scores = scores
        return run

    def select_l1_ratio(self, cohort: Cohort) -> Tuple[float, Dict[float, float]]:
        """
        Cross-validated MSE for each mixing ratio on the whole cohort.

        The sweep sees samples that later form trial test sets, so the
        single-cohort test metrics are slightly optimistic.
        """
        X = cohort.expression.to_numpy(dtype=float)
        y = cohort.labels.to_numpy(dtype=int)
        tuning_seq = np.random.SeedSequence(self.config.seed).spawn(4)[3]
        rng = np.random.default_rng(tuning_seq)
        fold_ids = stratified_fold_ids(y, self.config.n_folds, rng)

        clf = PenalizedClassifier(self.classifier_config, random_state=self.config.seed)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            model = clf.fit(X, y, fold_ids, l1_ratios=self.classifier_config.l1_ratio_grid)
        scores = {float(c.l1_ratio): float(c.best_mse) for c in model.curves}
        logger.info(
            f"{cohort.name}: l1_ratio sweep "
            + ", ".join(f"{r:.1f}->{m:.4f}" for r, m in scores.items())
            + f"; using {model.l1_ratio:.1f}"
        )
        return float(model.l1_ratio), scores

    def _run(
        self,
        cohort: Cohort,
        weights: Optional[np.ndarray],
        l1_ratio: Optional[float],
    ) -> ResamplingRun:
        X = cohort.expression.to_numpy(dtype=float)
        y = cohort.labels.to_numpy(dtype=int)
        plans, skipped = self.plan(y)

        variants = [UNIFORM] + ([WEIGHTED] if weights is not None else [])
        run = ResamplingRun(
            cohort=cohort.name,
            genes=cohort.genes,
            variants=variants,
            n_trials_requested=self.config.n_trials,
            skipped=skipped,
            l1_ratio=l1_ratio,
        )
        logger.info(
            f"{cohort.name}: {len(plans)} trials, variants={variants}, "
            f"{X.shape[0]} samples x {X.shape[1]} genes"
        )

        outcomes = self._execute(plans, X, y, weights, l1_ratio)
        for outcome in outcomes:
            if isinstance(outcome, TrialFailure):
                run.failures.append(outcome)
            else:
                run.trials.append(outcome)
        run.trials.sort(key=lambda t: t.index)
        run.failures.sort(key=lambda f: f.index)

        if run.failures:
            logger.warning(
                f"{cohort.name}: {len(run.failures)} trial(s) failed and were excluded: "
                f"{[f.index for f in run.failures]}"
            )
        boundary = run.boundary_counts()
        if any(boundary.values()):
            logger.warning(f"{cohort.name}: boundary lambda chosen in {boundary} trial(s)")
        nonconverged = run.nonconverged_counts()
        if any(nonconverged.values()):
            logger.warning(f"{cohort.name}: solver did not converge in {nonconverged} trial(s)")
        logger.info(f"{cohort.name}: {run.n_trials}/{run.n_trials_requested} trials contributed")
        return run

    def _execute(self, plans, X, y, weights, l1_ratio) -> list:
        n_jobs = self.config.n_jobs
        n_workers = n_jobs if n_jobs > 0 else (os.cpu_count() or 1)
        progress = tqdm(
            total=len(plans), desc="resampling trials", disable=not self.config.show_progress
        )
        outcomes = []
        try:
            if n_workers == 1:
                _init_worker(X, y, self.classifier_config, weights, l1_ratio)
                for plan in plans:
                    outcomes.append(_run_trial_in_worker(plan))
                    progress.update(1)
            else:
                with ProcessPoolExecutor(
                    max_workers=n_workers,
                    initializer=_init_worker,
                    initargs=(X, y, self.classifier_config, weights, l1_ratio),
                ) as executor:
                    futures = [executor.submit(_run_trial_in_worker, plan) for plan in plans]
                    for future in as_completed(futures):
                        outcomes.append(future.result())
                        progress.update(1)
        finally:
            progress.close()
            _WORKER_STATE.clear()
        return outcomes
