"""Shared fixtures for degflow tests."""

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture
def small_counts(rng):
    """Small count matrix: 100 genes x 6 samples, Poisson(10)."""
    counts = rng.poisson(10, (100, 6)).astype(np.float64)
    # Make first 10 genes differentially expressed
    counts[:5, 3:6] *= 3
    counts[5:10, 3:6] = 0
    return counts


@pytest.fixture
def nb_counts(rng):
    """200 genes x 6 samples, negative binomial with mean 50 and dispersion 0.1."""
    size = 10.0
    return rng.negative_binomial(size, size / (size + 50.0), (200, 6)).astype(np.float64)


@pytest.fixture
def sample_ids():
    return [f"S{i+1}" for i in range(6)]


@pytest.fixture
def samples6(sample_ids):
    """Sample sheet for 6 samples: 3 untreated then 3 treated."""
    return pd.DataFrame({'group': ['untrt'] * 3 + ['trt'] * 3}, index=sample_ids)


@pytest.fixture
def count_frame(small_counts, sample_ids):
    """small_counts labelled by gene and sample ids."""
    genes = [f"g{i+1}" for i in range(small_counts.shape[0])]
    return pd.DataFrame(small_counts, index=genes, columns=sample_ids)


@pytest.fixture
def design6():
    """Design matrix for 6 samples with intercept + group."""
    return np.column_stack([np.ones(6), np.array([0, 0, 0, 1, 1, 1])])


@pytest.fixture
def dgelist(count_frame, samples6):
    """DGEList from small_counts with 'untrt' as reference."""
    import degflow as dg
    return dg.make_dgelist(count_frame, samples=samples6, reference='untrt')


@pytest.fixture
def dgelist_disp(dgelist):
    """Normalized DGEList with estimated dispersions."""
    import degflow as dg
    return dg.estimate_disp(dg.calc_norm_factors(dgelist))


@pytest.fixture
def condition_samples(sample_ids):
    """Sample sheet whose 'group' column is a nuisance factor and 'condition' is tested."""
    return pd.DataFrame({
        'group': ['x', 'y', 'x', 'y', 'x', 'y'],
        'condition': ['ctl'] * 3 + ['trt'] * 3,
    }, index=sample_ids)
