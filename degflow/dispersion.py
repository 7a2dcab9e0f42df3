"""
Negative binomial dispersion estimation.

Dispersions are estimated in two stages. A single common dispersion is
found by maximizing the Cox-Reid adjusted profile likelihood summed over
genes. Each gene's dispersion is then shrunk towards the common value
(or a trend over abundance) by maximizing a weighted combination of its
own likelihood and the shared one.
"""

import logging
import warnings

import numpy as np
import pandas as pd

from .dispersion_lowlevel import adjusted_profile_lik_grid, maximize_interpolant
from .expression import ave_log_cpm
from .utils import expand_as_matrix, moving_average_by_col, gene_flags

logger = logging.getLogger(__name__)

TRENDS = ('none', 'movingave')


def _prepare(y, design, offset, lib_size):
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    nlibs = y.shape[1]
    if design is None:
        design = np.ones((nlibs, 1))
    else:
        design = np.asarray(design, dtype=np.float64)
        if design.ndim == 1:
            design = design.reshape(-1, 1)
    if design.shape[0] != nlibs:
        raise ValueError("nrow(design) disagrees with ncol(y)")
    if offset is None:
        if lib_size is None:
            lib_size = y.sum(axis=0)
        offset = np.log(np.asarray(lib_size, dtype=np.float64))
    return y, design, expand_as_matrix(offset, y.shape)


def _dge_inputs(y, design):
    from .design import resolve_design
    from .dgelist import get_offset

    design_df = resolve_design(design, y)
    if design_df is None:
        design_df = pd.DataFrame(np.ones((y.ncol, 1)), columns=['Intercept'],
                                 index=y['samples'].index)
    return design_df, get_offset(y)


def estimate_common_disp(y, design=None, offset=None, lib_size=None, min_row_sum=5,
                         grid_length=21, grid_range=(-10, 10), n_workers=1):
    """Estimate a common dispersion for all genes.

    The Cox-Reid adjusted profile likelihood is summed over genes with at
    least ``min_row_sum`` reads on the grid ``0.1 * 2**linspace(*grid_range)``
    and the interpolated maximum is taken.

    Parameters
    ----------
    y : ndarray or DGEList
        Count matrix or DGEList.
    design : array-like, optional
        Design matrix. Defaults to the DGEList design, or an intercept.
    offset : array-like, optional
        Log library sizes.
    lib_size : array-like, optional
        Library sizes, used when ``offset`` is not given.
    min_row_sum : float
        Genes with fewer total reads are ignored.
    grid_length : int
        Number of grid points.
    grid_range : tuple
        Range of the grid on the log2 scale around 0.1.
    n_workers : int
        Worker threads for the per-gene likelihoods.

    Returns
    -------
    DGEList (if input is DGEList) or float. NaN if no gene qualifies or the
    design leaves no residual degrees of freedom.
    """
    if isinstance(y, dict) and 'counts' in y:
        design_df, offset = _dge_inputs(y, design)
        common = estimate_common_disp(
            y['counts'], design=design_df.to_numpy(), offset=offset,
            min_row_sum=min_row_sum, grid_length=grid_length,
            grid_range=grid_range, n_workers=n_workers)
        return y._updated({
            'common.dispersion': common,
            'design': design_df,
            'AveLogCPM': ave_log_cpm(y, dispersion=common),
        })

    y, design, offset = _prepare(y, design, offset, lib_size)
    if design.shape[1] >= y.shape[1]:
        warnings.warn("No residual df: setting dispersion to NA")
        return np.nan

    keep = y.sum(axis=1) >= max(min_row_sum, 1e-8)
    if not np.any(keep):
        warnings.warn("No genes with enough reads to estimate a dispersion")
        return np.nan

    spline_pts = np.linspace(grid_range[0], grid_range[1], grid_length)
    grid = 0.1 * 2 ** spline_pts
    apl = adjusted_profile_lik_grid(grid, y[keep], design, offset[keep], n_workers=n_workers)
    best = maximize_interpolant(spline_pts, apl.sum(axis=0, keepdims=True))[0]
    common = float(0.1 * 2 ** best)
    logger.debug("common dispersion %.5f (BCV %.4f) from %d genes",
                 common, np.sqrt(common), int(keep.sum()))
    return common


def _tagwise(y, common, design, offset, prior_df, trend, span, min_row_sum,
             grid_length, grid_range, n_workers):
    """Returns (tagwise, trended) dispersions."""
    ntags, nlibs = y.shape
    if trend not in TRENDS:
        raise ValueError(f"trend must be one of {TRENDS}")
    if common is None or not np.isfinite(common):
        warnings.warn("common dispersion is undefined: tagwise dispersions set to NA")
        return np.full(ntags, np.nan), None
    if design.shape[1] >= nlibs:
        warnings.warn("No residual df: setting dispersion to NA")
        return np.full(ntags, np.nan), None

    all_zero = ~np.any(y > 0, axis=1)
    keep = (y.sum(axis=1) >= min_row_sum) & ~all_zero
    tagwise = np.full(ntags, float(common))
    tagwise[all_zero] = np.nan
    trended = None
    if trend != 'none':
        trended = tagwise.copy()
    nkeep = int(keep.sum())
    if nkeep == 0:
        return tagwise, trended

    spline_pts = np.linspace(grid_range[0], grid_range[1], grid_length)
    grid = common * 2 ** spline_pts
    l0 = adjusted_profile_lik_grid(grid, y[keep], design, offset[keep], n_workers=n_workers)

    if trend == 'none':
        m0 = np.broadcast_to(l0.mean(axis=0), l0.shape)
    else:
        if span is None:
            span = (10 / nkeep) ** 0.23 if nkeep > 10 else 1.0
        alc = ave_log_cpm(y[keep], offset=offset[keep], dispersion=common)
        o = np.argsort(alc, kind='stable')
        width = max(int(np.floor(span * nkeep)), 1)
        m0 = np.empty_like(l0)
        m0[o] = moving_average_by_col(l0[o], width=width)
        trended[keep] = common * 2 ** maximize_interpolant(spline_pts, m0)

    prior_n = prior_df / (nlibs - design.shape[1])
    tagwise[keep] = common * 2 ** maximize_interpolant(spline_pts, l0 + prior_n * m0)
    return tagwise, trended


def estimate_tagwise_disp(y, common_dispersion=None, design=None, offset=None,
                          lib_size=None, prior_df=10, trend='none', span=None,
                          min_row_sum=5, grid_length=11, grid_range=(-6, 6),
                          n_workers=1):
    """Estimate genewise dispersions shrunk towards the common dispersion.

    Each gene maximizes ``l0 + prior_n * m0`` over the grid
    ``common_dispersion * 2**linspace(*grid_range)``, where ``l0`` is its
    own adjusted profile likelihood, ``m0`` the shared likelihood (the
    average over genes, or a moving average by abundance when
    ``trend='movingave'``) and ``prior_n = prior_df / residual df``.

    Genes with no reads get NaN; genes below ``min_row_sum`` keep the
    common value.

    Returns
    -------
    DGEList (if input is DGEList) or ndarray of dispersions.
    """
    if isinstance(y, dict) and 'counts' in y:
        if common_dispersion is None:
            common_dispersion = y.get('common.dispersion')
            if common_dispersion is None:
                raise ValueError("No common.dispersion found. Run estimate_common_disp first.")
        design_df, offset = _dge_inputs(y, design)
        counts, design_mat, offset_mat = _prepare(y['counts'], design_df.to_numpy(), offset, None)
        tagwise, trended = _tagwise(counts, common_dispersion, design_mat, offset_mat,
                                    prior_df, trend, span, min_row_sum, grid_length,
                                    grid_range, n_workers)
        changes = {
            'tagwise.dispersion': tagwise,
            'trended.dispersion': trended,
            'prior.df': prior_df,
            'design': design_df,
            'dispersion.flag': gene_flags(counts, design_mat),
        }
        if y.get('AveLogCPM') is None:
            changes['AveLogCPM'] = ave_log_cpm(y, dispersion=common_dispersion)
        return y._updated(changes)

    y, design, offset = _prepare(y, design, offset, lib_size)
    if common_dispersion is None:
        raise ValueError("common_dispersion is required")
    tagwise, _ = _tagwise(y, common_dispersion, design, offset, prior_df, trend, span,
                          min_row_sum, grid_length, grid_range, n_workers)
    return tagwise


def estimate_disp(y, design=None, offset=None, lib_size=None, prior_df=10,
                  trend='none', span=None, min_row_sum=5, grid_length=21,
                  grid_range=(-10, 10), tagwise_grid_length=11,
                  tagwise_grid_range=(-6, 6), n_workers=1):
    """Estimate common and genewise dispersions in one call.

    Parameters
    ----------
    y : ndarray or DGEList
        Count matrix or DGEList.
    design : array-like, DesignSpec or str, optional
        Design matrix or specification.
    offset, lib_size : array-like, optional
        Log library sizes, or library sizes.
    prior_df : float
        Prior degrees of freedom for shrinkage.
    trend : str
        'none' (shrink towards the common value) or 'movingave'.
    span : float, optional
        Moving-average span as a fraction of genes.
    min_row_sum : float
        Genes with fewer reads are excluded from estimation.
    grid_length, grid_range
        Grid for the common dispersion.
    tagwise_grid_length, tagwise_grid_range
        Grid for genewise dispersions, relative to the common value.
    n_workers : int
        Worker threads. Estimates do not depend on it.

    Returns
    -------
    DGEList (if input is DGEList) or dict with 'common.dispersion',
    'trended.dispersion', 'tagwise.dispersion' and 'dispersion.flag'.
    """
    if isinstance(y, dict) and 'counts' in y:
        design_df, offset = _dge_inputs(y, design)
        out = estimate_disp(y['counts'], design=design_df.to_numpy(), offset=offset,
                            prior_df=prior_df, trend=trend, span=span,
                            min_row_sum=min_row_sum, grid_length=grid_length,
                            grid_range=grid_range,
                            tagwise_grid_length=tagwise_grid_length,
                            tagwise_grid_range=tagwise_grid_range, n_workers=n_workers)
        return y._updated({
            'common.dispersion': out['common.dispersion'],
            'trended.dispersion': out['trended.dispersion'],
            'tagwise.dispersion': out['tagwise.dispersion'],
            'dispersion.flag': out['dispersion.flag'],
            'prior.df': prior_df,
            'design': design_df,
            'AveLogCPM': ave_log_cpm(y, dispersion=out['common.dispersion']),
        })

    y, design, offset = _prepare(y, design, offset, lib_size)
    common = estimate_common_disp(y, design=design, offset=offset, min_row_sum=min_row_sum,
                                  grid_length=grid_length, grid_range=grid_range,
                                  n_workers=n_workers)
    tagwise, trended = _tagwise(y, common, design, offset, prior_df, trend, span,
                                min_row_sum, tagwise_grid_length, tagwise_grid_range,
                                n_workers)
    flags = gene_flags(y, design)
    logger.debug("dispersion: common %.5f, %d genes flagged",
                 common, int(np.sum(flags != '')))
    return {
        'common.dispersion': common,
        'trended.dispersion': trended,
        'tagwise.dispersion': tagwise,
        'dispersion.flag': flags,
    }
