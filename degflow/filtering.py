"""
Expression-based gene filtering.
"""

import logging

import numpy as np

from .dgelist import get_group_column, get_norm_lib_sizes
from .expression import cpm

logger = logging.getLogger(__name__)


def _smallest_group(design, group, nlib, large_n, min_prop):
    """Number of samples a gene must be expressed in."""
    if group is not None:
        _, sizes = np.unique(np.asarray(group), return_counts=True)
        n = sizes.min()
    elif design is not None:
        # Inverse of the largest leverage is the smallest group for a one-way layout
        q, _ = np.linalg.qr(np.asarray(design, dtype=np.float64))
        n = 1.0 / np.max(np.sum(q ** 2, axis=1))
    else:
        n = nlib
    if n > large_n:
        n = large_n + (n - large_n) * min_prop
    return n


def filter_by_expr(y, design=None, group=None, lib_size=None,
                   min_count=10, min_total_count=15, large_n=10, min_prop=0.7):
    """Flag genes with enough reads to be worth testing.

    A gene is kept when its CPM reaches the equivalent of ``min_count``
    reads (at the median library size) in at least the smallest group's
    worth of samples, and its total count reaches ``min_total_count``.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix or DGEList.
    design : DataFrame, ndarray, DesignSpec or str, optional
        Design; the minimum group size is taken from its leverages.
        Formulas and DesignSpecs need a DGEList.
    group : array-like, optional
        Group factor. Defaults to the DGEList group factor when no design
        is available.
    lib_size : array-like, optional
        Library sizes. Defaults to the effective library sizes of a
        DGEList, or column sums.
    min_count : float
        Minimum count threshold.
    min_total_count : float
        Minimum total count across all samples.
    large_n : int
        Group size beyond which only ``min_prop`` of the extra samples
        need to pass.
    min_prop : float
        Proportion of samples beyond ``large_n`` required to pass.

    Returns
    -------
    ndarray of bool, True for genes to keep.
    """
    from .design import resolve_design

    if isinstance(y, dict) and 'counts' in y:
        if design is None and group is None:
            design = resolve_design(None, y)
            if design is None:
                group = y['samples'][get_group_column(y)].to_numpy()
        else:
            design = resolve_design(design, y)
        if lib_size is None:
            lib_size = get_norm_lib_sizes(y)
        counts = np.asarray(y['counts'], dtype=np.float64)
    else:
        design = resolve_design(design)
        counts = np.asarray(y, dtype=np.float64)
    if counts.ndim == 1:
        counts = counts.reshape(-1, 1)
    if design is not None:
        design = np.asarray(design, dtype=np.float64)

    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=np.float64)

    min_samples = _smallest_group(design, group, counts.shape[1], large_n, min_prop)
    cpm_cutoff = min_count / np.median(lib_size) * 1e6
    tol = 1e-14
    n_expressed = np.sum(cpm(counts, lib_size=lib_size) >= cpm_cutoff, axis=1)
    keep = (n_expressed >= min_samples - tol) & (counts.sum(axis=1) >= min_total_count - tol)
    logger.debug("expression filter: CPM cutoff %.3g in %.3g samples keeps %d of %d genes",
                 cpm_cutoff, min_samples, int(keep.sum()), len(keep))
    return keep
