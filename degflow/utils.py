"""
Utility functions for degflow.

Matrix expansion, prior counts, moving averages, shrunken fold changes,
design factors, per-gene degeneracy checks and the gene-block worker map.
"""

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs

from .errors import DegenerateGeneError


def expand_as_matrix(x, dim=None, byrow=True):
    """Convert scalar, row/column vector, or matrix to a full matrix.

    A vector whose length matches the number of columns is repeated down the
    rows; one matching the number of rows is repeated across the columns.
    """
    if dim is None:
        return np.atleast_2d(np.asarray(x, dtype=np.float64))
    dim = (int(dim[0]), int(dim[1]))

    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 0 or x.size == 1:
        return np.full(dim, x.ravel()[0])
    if x.ndim == 1:
        lx = len(x)
        if lx == dim[0] and lx == dim[1]:
            if byrow:
                return np.tile(x.reshape(1, -1), (dim[0], 1))
            return np.tile(x.reshape(-1, 1), (1, dim[1]))
        if lx == dim[1]:
            return np.tile(x.reshape(1, -1), (dim[0], 1))
        if lx == dim[0]:
            return np.tile(x.reshape(-1, 1), (1, dim[1]))
        raise ValueError("x of unexpected length")
    if x.ndim == 2:
        if x.shape == dim:
            return x.copy()
        raise ValueError("x is matrix of wrong size")
    raise ValueError("x has wrong dimensions")


def add_prior_count(y, lib_size=None, offset=None, prior_count=1):
    """Add library-size-adjusted prior counts.

    The prior count added to each library is proportional to its size, and
    the library size is increased by twice the added count.

    Returns
    -------
    dict with 'y' (adjusted counts) and 'offset' (adjusted log library sizes).
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)

    if offset is None:
        if lib_size is None:
            lib_size = y.sum(axis=0)
        offset = np.log(lib_size)
    offset = np.asarray(offset, dtype=np.float64)

    lib = np.exp(expand_as_matrix(offset, y.shape))
    prior = expand_as_matrix(prior_count, (y.shape[0], 1))
    scaled_prior = prior * lib / lib.mean(axis=1, keepdims=True)

    return {'y': y + scaled_prior, 'offset': np.log(lib + 2 * scaled_prior)}


def moving_average_by_col(x, width=5, full_length=True):
    """Moving average smoother for columns of a matrix."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    width = int(width)
    if width <= 1:
        return x
    n, m = x.shape
    if width > n:
        width = n

    if full_length:
        half1 = (width + 1) // 2
        half2 = width // 2
        x_pad = np.vstack([np.zeros((half1, m)), x, np.zeros((half2, m))])
    else:
        if width == n:
            return x.mean(axis=0, keepdims=True)
        x_pad = np.vstack([np.zeros((1, m)), x])

    cs = np.cumsum(x_pad, axis=0)
    n2 = cs.shape[0]
    result = cs[width:n2] - cs[:n2 - width]
    n3 = result.shape[0]

    w = np.full(n3, width, dtype=np.float64)
    if full_length:
        if half1 > 1:
            w[:half1 - 1] = width - np.arange(half1 - 1, 0, -1)
        w[n3 - half2:] = width - np.arange(1, half2 + 1)

    return result / w.reshape(-1, 1)


def pred_fc(y, design, prior_count=0.125, offset=None, dispersion=0):
    """Predicted log2 fold changes, shrunk by adding prior counts."""
    from .glm_fit import fit_genewise

    out = add_prior_count(y, offset=offset, prior_count=prior_count)
    design = np.asarray(design, dtype=np.float64)
    disp_mat = expand_as_matrix(dispersion, out['y'].shape)
    fit = fit_genewise(out['y'], design, disp_mat, out['offset'])
    return fit['coefficients'] / np.log(2)


def drop_empty_levels(x):
    """Drop unused factor levels."""
    if isinstance(x, pd.Categorical):
        return x.remove_unused_categories()
    if isinstance(x, pd.Series) and hasattr(x, 'cat'):
        return pd.Categorical(x).remove_unused_categories()
    return pd.Categorical(x)


def design_as_factor(design):
    """Construct a factor from the unique rows of a design matrix."""
    design = np.asarray(design, dtype=np.float64)
    z = (np.e + np.pi) / 5
    powers = z ** np.arange(design.shape[1])
    row_vals = design @ powers
    _, inverse = np.unique(row_vals, return_inverse=True)
    return inverse


def is_oneway(design):
    """True when the design has as many distinct rows as columns."""
    design = np.asarray(design, dtype=np.float64)
    return len(np.unique(design_as_factor(design))) == design.shape[1]


# =====================================================================
# Degenerate genes
# =====================================================================

def check_gene(counts, groups=None, gene=None):
    """Raise DegenerateGeneError if a gene's counts cannot be modelled reliably.

    Reasons, in order of precedence: ``all_zero`` (no reads at all),
    ``zero_variance`` (identical counts in every sample) and ``separated``
    (no reads in every sample of at least one group).
    """
    counts = np.asarray(counts, dtype=np.float64)
    if not np.any(counts > 0):
        raise DegenerateGeneError('all_zero', gene)
    if np.ptp(counts) == 0:
        raise DegenerateGeneError('zero_variance', gene)
    if groups is not None:
        groups = np.asarray(groups)
        levels = np.unique(groups)
        if len(levels) > 1:
            for level in levels:
                if not np.any(counts[groups == level] > 0):
                    raise DegenerateGeneError('separated', gene)


def gene_flags(counts, design=None):
    """Degeneracy reason per gene ('' when the gene is fine)."""
    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim == 1:
        counts = counts.reshape(1, -1)
    groups = None
    if design is not None:
        design = np.asarray(design, dtype=np.float64)
        if design.ndim == 2 and design.shape[1] > 1 and is_oneway(design):
            groups = design_as_factor(design)

    flags = np.full(counts.shape[0], '', dtype=object)
    for g in range(counts.shape[0]):
        try:
            check_gene(counts[g], groups, gene=g)
        except DegenerateGeneError as err:
            flags[g] = err.reason
    return flags


def merge_flags(*flag_arrays):
    """Combine flag arrays, keeping the first non-empty reason per gene."""
    out = np.array(flag_arrays[0], dtype=object, copy=True)
    for flags in flag_arrays[1:]:
        flags = np.asarray(flags, dtype=object)
        empty = out == ''
        out[empty] = flags[empty]
    return out


# =====================================================================
# Per-gene worker map
# =====================================================================

def gene_blocks(ngenes, n_workers=1):
    """Split gene indices into contiguous blocks, one per worker."""
    n_jobs = effective_n_jobs(n_workers) if n_workers else 1
    n_jobs = max(1, min(n_jobs, ngenes))
    return [b for b in np.array_split(np.arange(ngenes), n_jobs) if len(b) > 0]


def map_gene_blocks(func, ngenes, n_workers=1):
    """Apply ``func`` to blocks of gene indices, possibly in parallel.

    ``func`` receives an integer index array and must only read shared
    inputs. Returns a list of ``(index, result)`` pairs in block order so
    callers can write each result into pre-allocated rows.
    """
    blocks = gene_blocks(ngenes, n_workers)
    if len(blocks) <= 1:
        return [(b, func(b)) for b in blocks]
    results = Parallel(n_jobs=len(blocks), prefer='threads')(
        delayed(func)(b) for b in blocks)
    return list(zip(blocks, results))
