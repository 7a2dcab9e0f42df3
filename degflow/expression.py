"""
Expression summaries: counts per million and average log2-CPM.
"""

import numpy as np

from .utils import add_prior_count


def cpm(y, lib_size=None, offset=None, log=False, prior_count=2,
        normalized_lib_sizes=True):
    """Counts per million.

    Parameters
    ----------
    y : array-like or DGEList
        Count matrix or DGEList.
    lib_size : array-like, optional
        Library sizes.
    offset : array-like, optional
        Log-scale offsets (per sample or a full matrix).
    log : bool
        Return log2-CPM.
    prior_count : float
        Prior count added before taking logs.
    normalized_lib_sizes : bool
        Use normalized library sizes (for DGEList input).

    Returns
    -------
    ndarray of CPM values (genes x samples).
    """
    if isinstance(y, dict) and 'counts' in y:
        dge = y
        ls = dge['samples']['lib.size'].to_numpy(dtype=np.float64)
        if normalized_lib_sizes:
            ls = ls * dge['samples']['norm.factors'].to_numpy(dtype=np.float64)
        return _cpm_default(dge['counts'], lib_size=ls, log=log, prior_count=prior_count)

    return _cpm_default(y, lib_size=lib_size, offset=offset, log=log,
                        prior_count=prior_count)


def _cpm_default(y, lib_size=None, offset=None, log=False, prior_count=2):
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    if y.size == 0:
        return y.copy()
    if np.isnan(np.min(y)):
        raise ValueError("NA counts not allowed")
    if np.min(y) < 0:
        raise ValueError("Negative counts not allowed")

    if offset is None:
        if lib_size is None:
            lib_size = y.sum(axis=0)
        lib_size = np.asarray(lib_size, dtype=np.float64)
        if np.any(lib_size <= 0):
            raise ValueError("library sizes should be greater than zero")
        offset = np.log(lib_size)
    offset = np.asarray(offset, dtype=np.float64)
    if offset.ndim == 2 and offset.shape != y.shape:
        raise ValueError("dimensions not consistent between counts and offset")
    if offset.ndim == 1 and len(offset) != y.shape[1]:
        raise ValueError("Length of offset differs from number of libraries")

    if log:
        out = add_prior_count(y, offset=offset, prior_count=prior_count)
        return np.log2(out['y'] / np.exp(out['offset']) * 1e6)
    return y / np.exp(offset) * 1e6


def ave_log_cpm(y, lib_size=None, offset=None, prior_count=2, dispersion=None,
                normalized_lib_sizes=True):
    """Average log2-CPM for each gene.

    The average is the intercept of an intercept-only NB GLM fitted to the
    counts plus a library-size-scaled prior count, so it is defined even for
    genes with no reads.
    """
    if isinstance(y, dict) and 'counts' in y:
        dge = y
        ls = dge['samples']['lib.size'].to_numpy(dtype=np.float64)
        if normalized_lib_sizes:
            ls = ls * dge['samples']['norm.factors'].to_numpy(dtype=np.float64)
        if dispersion is None:
            dispersion = dge.get('common.dispersion')
        return _ave_log_cpm_default(dge['counts'], lib_size=ls, prior_count=prior_count,
                                    dispersion=dispersion)

    return _ave_log_cpm_default(y, lib_size=lib_size, offset=offset,
                                prior_count=prior_count, dispersion=dispersion)


def _ave_log_cpm_default(y, lib_size=None, offset=None, prior_count=2, dispersion=None):
    from .glm_fit import mglm_one_group

    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(-1, 1)
    if y.shape[0] == 0:
        return np.array([], dtype=np.float64)

    if dispersion is None:
        dispersion = 0.05
    dispersion = np.atleast_1d(np.asarray(dispersion, dtype=np.float64))
    if np.all(np.isnan(dispersion)):
        dispersion = np.array([0.05])
    dispersion = np.where(np.isnan(dispersion), np.nanmean(dispersion), dispersion)

    if offset is None:
        if lib_size is None:
            lib_size = y.sum(axis=0)
        offset = np.log(np.asarray(lib_size, dtype=np.float64))

    out = add_prior_count(y, offset=offset, prior_count=prior_count)
    ab = mglm_one_group(out['y'], dispersion=dispersion, offset=out['offset'])
    return (ab + np.log(1e6)) / np.log(2)
