"""
Error taxonomy for the cohortnet pipeline.

Fatal input problems raise DataIntegrityError, trials with a missing class
raise DegenerateSplitError, and boundary hyperparameter choices are reported
through ConvergenceWarning without aborting the run.
"""

from typing import Optional


class CohortNetError(Exception):
    """Base class for all cohortnet errors."""


class DataIntegrityError(CohortNetError, ValueError):
    """Shape or cardinality mismatch in the input data. Aborts the run."""


class DegenerateSplitError(CohortNetError):
    """A train/test split left one class without members."""

    def __init__(self, message: str, trial_index: Optional[int] = None, attempts: int = 0):
        super().__init__(message)
        self.trial_index = trial_index
        self.attempts = attempts


class ConvergenceWarning(UserWarning):
    """Cross-validation chose a boundary value or the solver did not converge."""
