"""
Penalized Classifier Module for cohortnet.

Elastic-net logistic regression (scikit-learn, saga solver) with:
- A glmnet-style regularization path (lambda_max down to lambda_max * ratio)
- Per-gene penalty factors, applied by rescaling design columns
- Cross-validated choice of lambda on caller-supplied fold ids, minimizing
  the mean squared error of the predicted probability
- Optional sweep over the L1/L2 mixing ratio

The fold ids come from the resampling plan so that the uniform and the
weighted variant of a trial are tuned on exactly the same folds.

Version: 1.0.0
Issued on: October 2026
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.special import expit
from sklearn.exceptions import ConvergenceWarning as SolverConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import auc, precision_recall_curve

from ..core.config import ClassifierConfig
from ..core.errors import ConvergenceWarning, DegenerateSplitError


@dataclass
class PredictionMetrics:
    """Performance of predicted probabilities against true labels."""
    n_samples: int
    misclassified: int
    mse: float
    pr_auc: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "n_samples": self.n_samples,
            "misclassified": self.misclassified,
            "mse": self.mse,
            "pr_auc": self.pr_auc,
        }


def evaluate_predictions(
    y_true: np.ndarray,
    probabilities: np.ndarray,
    threshold: float = 0.5,
) -> PredictionMetrics:
    """
    Misclassification count, MSE and precision-recall AUC.

    Args:
        y_true: Binary labels (tumor=1)
        probabilities: Predicted probability of tumor
        threshold: Class 1 is predicted when probability > threshold

    Returns:
        PredictionMetrics (pr_auc is NaN when y_true has a single class)
    """
    y_true = np.asarray(y_true, dtype=int)
    probabilities = np.asarray(probabilities, dtype=float)
    predicted = (probabilities > threshold).astype(int)

    if len(np.unique(y_true)) < 2:
        pr_auc = float("nan")
    else:
        precision, recall, _ = precision_recall_curve(y_true, probabilities)
        pr_auc = float(auc(recall, precision))

    return PredictionMetrics(
        n_samples=int(len(y_true)),
        misclassified=int(np.sum(predicted != y_true)),
        mse=float(np.mean((probabilities - y_true) ** 2)),
        pr_auc=pr_auc,
    )


def penalty_factors(
    weights: Optional[Sequence[float]],
    n_genes: int,
    min_factor: float = 1e-2,
) -> np.ndarray:
    """
    Per-gene penalty multipliers from divergence weights.

    Weights are rescaled to sum to n_genes and floored at min_factor, so a
    gene with weight 0 keeps a small penalty instead of none (glmnet would
    leave it unpenalized).
    None, or weights that are all equal (including all zero), give uniform
    factors of one.
    """
    if weights is None:
        return np.ones(n_genes)
    w = np.asarray(weights, dtype=float)
    if w.shape != (n_genes,):
        raise ValueError(f"Expected {n_genes} weights, got shape {w.shape}")
    if np.any(w < 0) or not np.all(np.isfinite(w)):
        raise ValueError("Penalty weights must be finite and non-negative")
    if np.allclose(w, w[0]):
        return np.ones(n_genes)
    factors = w * n_genes / w.sum()
    return np.maximum(factors, min_factor)


def lambda_path(
    X: np.ndarray,
    y: np.ndarray,
    l1_ratio: float,
    n_lambdas: int = 30,
    lambda_min_ratio: Optional[float] = None,
) -> np.ndarray:
    """
    Decreasing geometric sequence of penalty strengths.

    lambda_max is the smallest penalty at which every coefficient is zero
    for the binomial elastic net: max_j |x_j' (y - mean(y))| / (n * alpha).
    """
    n, p = X.shape
    residual = y - y.mean()
    lambda_max = np.max(np.abs(X.T @ residual)) / (n * max(l1_ratio, 1e-3))
    if lambda_max <= 0:
        lambda_max = 1.0
    if lambda_min_ratio is None:
        lambda_min_ratio = 0.01 if n < p else 1e-4
    return np.geomspace(lambda_max, lambda_max * lambda_min_ratio, n_lambdas)


@dataclass
class CVCurve:
    """Cross-validated error along the lambda path for one l1_ratio."""
    l1_ratio: float
    lambdas: np.ndarray
    mse: np.ndarray
    n_folds_used: int

    @property
    def best_index(self) -> int:
        # First minimum, i.e. the largest lambda among ties
        return int(np.nanargmin(self.mse))

    @property
    def best_lambda(self) -> float:
        return float(self.lambdas[self.best_index])

    @property
    def best_mse(self) -> float:
        return float(self.mse[self.best_index])

    @property
    def at_boundary(self) -> bool:
        return self.best_index in (0, len(self.lambdas) - 1)


@dataclass
class FittedClassifier:
    """An elastic-net logistic model refit at the CV-optimal lambda."""
    coefficients: np.ndarray  # on the original (unscaled) gene columns
    intercept: float
    lambda_: float
    l1_ratio: float
    cv_mse: float
    boundary_hit: bool = False
    solver_converged: bool = True
    curves: List[CVCurve] = field(default_factory=list)

    @property
    def selected(self) -> np.ndarray:
        """Indices of genes with a nonzero coefficient."""
        return np.flatnonzero(self.coefficients != 0)

    def decision_function(self, X: np.ndarray) -> np.ndarray:
        return np.asarray(X, dtype=float) @ self.coefficients + self.intercept

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Probability of class 1 (tumor)."""
        return expit(self.decision_function(X))


class PenalizedClassifier:
    """
    Elastic-net logistic classifier with penalty factors and fold-based CV.

    Example:
        >>> clf = PenalizedClassifier(ClassifierConfig(l1_ratio=0.9), random_state=7)
        >>> model = clf.fit(X_train, y_train, fold_ids, weights=divergence_weights)
        >>> model.selected
        array([ 3, 17])
    """

    def __init__(self, config: Optional[ClassifierConfig] = None, random_state: int = 0):
        self.config = config or ClassifierConfig()
        self.random_state = random_state
        self._solver_warnings = 0

    def _estimator(self, l1_ratio: float) -> LogisticRegression:
        return LogisticRegression(
            penalty="elasticnet",
            solver="saga",
            l1_ratio=l1_ratio,
            max_iter=self.config.max_iter,
            tol=self.config.tol,
            warm_start=True,
            random_state=self.random_state,
        )

    def _fit_path(
        self,
        X: np.ndarray,
        y: np.ndarray,
        lambdas: np.ndarray,
        l1_ratio: float,
    ) -> List[Tuple[np.ndarray, float]]:
        """Fit along the path with warm starts; one (coef, intercept) per lambda."""
        estimator = self._estimator(l1_ratio)
        n = X.shape[0]
        snapshots = []
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", SolverConvergenceWarning)
            warnings.simplefilter("ignore", FutureWarning)
            for lam in lambdas:
                estimator.set_params(C=1.0 / (n * lam))
                estimator.fit(X, y)
                snapshots.append((estimator.coef_.ravel().copy(), float(estimator.intercept_[0])))
        self._solver_warnings += sum(
            1 for w in caught if issubclass(w.category, SolverConvergenceWarning)
        )
        return snapshots

    def cross_validate(
        self,
        X: np.ndarray,
        y: np.ndarray,
        fold_ids: np.ndarray,
        l1_ratio: float,
    ) -> CVCurve:
        """
        Pooled held-out MSE of predicted probabilities along the lambda path.

        Folds whose training part holds a single class are skipped.

        Raises:
            DegenerateSplitError: If no fold can be fitted
        """
        lambdas = lambda_path(
            X, y, l1_ratio, self.config.n_lambdas, self.config.lambda_min_ratio
        )
        squared_error = np.zeros(len(lambdas))
        n_held_out = 0
        n_folds_used = 0

        for fold in np.unique(fold_ids):
            held_out = fold_ids == fold
            y_fit = y[~held_out]
            if len(np.unique(y_fit)) < 2:
                continue
            snapshots = self._fit_path(X[~held_out], y_fit, lambdas, l1_ratio)
            X_out, y_out = X[held_out], y[held_out]
            for k, (coef, intercept) in enumerate(snapshots):
                prob = expit(X_out @ coef + intercept)
                squared_error[k] += np.sum((prob - y_out) ** 2)
            n_held_out += int(held_out.sum())
            n_folds_used += 1

        if n_folds_used == 0:
            raise DegenerateSplitError("No cross-validation fold has both classes in training")

        return CVCurve(
            l1_ratio=l1_ratio,
            lambdas=lambdas,
            mse=squared_error / n_held_out,
            n_folds_used=n_folds_used,
        )

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        fold_ids: np.ndarray,
        weights: Optional[Sequence[float]] = None,
        l1_ratios: Optional[Sequence[float]] = None,
    ) -> FittedClassifier:
        """
        Tune lambda (and optionally l1_ratio) by CV, then refit on all of X.

        Args:
            X: Samples x genes training matrix (standardized)
            y: Binary labels
            fold_ids: Fold index per training sample
            weights: Per-gene divergence weights; None for a uniform penalty
            l1_ratios: Mixing ratios to sweep; defaults to config.l1_ratio only

        Returns:
            FittedClassifier
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=int)
        fold_ids = np.asarray(fold_ids)
        if len(np.unique(y)) < 2:
            raise DegenerateSplitError("Training labels contain a single class")
        if len(fold_ids) != len(y):
            raise ValueError(f"fold_ids length ({len(fold_ids)}) != sample count ({len(y)})")

        factors = penalty_factors(weights, X.shape[1], self.config.min_penalty_factor)
        X_scaled = X / factors

        self._solver_warnings = 0
        ratios = list(l1_ratios) if l1_ratios else [self.config.l1_ratio]
        curves = [self.cross_validate(X_scaled, y, fold_ids, r) for r in ratios]
        best = min(curves, key=lambda c: c.best_mse)

        (coef, intercept), = self._fit_path(
            X_scaled, y, np.array([best.best_lambda]), best.l1_ratio
        )

        model = FittedClassifier(
            coefficients=coef / factors,
            intercept=intercept,
            lambda_=best.best_lambda,
            l1_ratio=best.l1_ratio,
            cv_mse=best.best_mse,
            boundary_hit=best.at_boundary,
            solver_converged=self._solver_warnings == 0,
            curves=curves,
        )
        if model.boundary_hit:
            warnings.warn(
                f"Cross-validation selected a boundary lambda ({model.lambda_:.4g})",
                ConvergenceWarning,
                stacklevel=2,
            )
        if not model.solver_converged:
            warnings.warn(
                f"saga did not converge in {self._solver_warnings} fit(s); "
                f"consider raising max_iter",
                ConvergenceWarning,
                stacklevel=2,
            )
        return model


def fit_and_evaluate(
    clf: PenalizedClassifier,
    X_train: np.ndarray,
    y_train: np.ndarray,
    X_test: np.ndarray,
    y_test: np.ndarray,
    fold_ids: np.ndarray,
    weights: Optional[Sequence[float]] = None,
    l1_ratios: Optional[Sequence[float]] = None,
) -> Tuple[FittedClassifier, PredictionMetrics, PredictionMetrics]:
    """Fit on train, return the model with train and test metrics."""
    model = clf.fit(X_train, y_train, fold_ids, weights=weights, l1_ratios=l1_ratios)
    threshold = clf.config.threshold
    train_metrics = evaluate_predictions(y_train, model.predict_proba(X_train), threshold)
    test_metrics = evaluate_predictions(y_test, model.predict_proba(X_test), threshold)
    return model, train_metrics, test_metrics
