"""Shared fixtures: synthetic cohorts with known structure."""

import numpy as np
import pandas as pd
import pytest

from cohortnet.core.config import ClassifierConfig, ResamplingConfig
from cohortnet.preprocessing.assembler import Cohort


def make_predictive_cohort(
    name="synthetic",
    n_per_class=10,
    n_genes=50,
    predictive=(0, 1),
    shift=2.5,
    seed=0,
):
    """Gaussian noise genes plus a few genes shifted by +/- shift between classes."""
    rng = np.random.default_rng(seed)
    y = np.array([0] * n_per_class + [1] * n_per_class)
    X = rng.normal(size=(len(y), n_genes))
    for j in predictive:
        X[:, j] += np.where(y == 1, shift, -shift)
    return Cohort.from_arrays(name, X, y)


def make_correlated_pair(
    n_samples=200,
    n_genes=30,
    flipped=(27, 28, 29),
    loading=0.9,
    seed=0,
):
    """
    Two cohorts driven by one shared latent factor.

    In cohort B the genes in `flipped` load on the factor with the opposite
    sign, so their correlation profiles point the other way.
    """
    rng = np.random.default_rng(seed)
    signs = np.ones(n_genes)
    signs[list(flipped)] = -1.0
    noise = np.sqrt(1.0 - loading ** 2)

    def _draw(gene_signs):
        factor = rng.normal(size=(n_samples, 1))
        return factor * (loading * gene_signs) + noise * rng.normal(size=(n_samples, n_genes))

    genes = [f"gene_{j}" for j in range(n_genes)]
    a = pd.DataFrame(_draw(np.ones(n_genes)), columns=genes)
    b = pd.DataFrame(_draw(signs), columns=genes)
    return a, b


def to_abundance(frame):
    """Turn a Gaussian matrix into positive, count-like abundances."""
    return np.round(2.0 ** (frame + 8.0))


@pytest.fixture
def predictive_cohort():
    return make_predictive_cohort()


@pytest.fixture
def correlated_pair():
    return make_correlated_pair()


@pytest.fixture
def fast_classifier_config():
    return ClassifierConfig(n_lambdas=12, max_iter=2000)


@pytest.fixture
def small_resampling_config():
    return ResamplingConfig(n_trials=8, n_folds=5, seed=11, show_progress=False)
