"""
cohortnet Analysis Module

Correlation, divergence weighting, penalized classification, resampling
evaluation and selection aggregation for the two-cohort signature study.
"""

from .correlation import CorrelationMatrix, compute_correlation
from .divergence import DivergenceWeighter, DivergenceResult, streaming_divergence
from .classifier import PenalizedClassifier, FittedClassifier, evaluate_predictions
from .resampling import ResamplingEvaluator, ResamplingRun, TrialPlan, make_trial_plans
from .selection import SelectionSummary, summarize_run, paired_metric_tests
from .pipeline import SignaturePipeline, PipelineResults

__all__ = [
    "CorrelationMatrix",
    "compute_correlation",
    "DivergenceWeighter",
    "DivergenceResult",
    "streaming_divergence",
    "PenalizedClassifier",
    "FittedClassifier",
    "evaluate_predictions",
    "ResamplingEvaluator",
    "ResamplingRun",
    "TrialPlan",
    "make_trial_plans",
    "SelectionSummary",
    "summarize_run",
    "paired_metric_tests",
    "SignaturePipeline",
    "PipelineResults",
]
