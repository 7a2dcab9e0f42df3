"""
Low-level dispersion estimation: Cox-Reid adjusted profile likelihoods on a
dispersion grid, and per-gene maximization of an interpolated grid.
"""

import numpy as np
from numba import njit
from scipy.special import gammaln

from .utils import map_gene_blocks


def _apl_block(grid, y, design, offset):
    """APL matrix (genes x grid points) for one block of genes."""
    from .glm_fit import fit_genewise

    ngenes, nlibs = y.shape
    lgamma_y1 = gammaln(y + 1)
    apl = np.empty((ngenes, len(grid)))
    for k, d in enumerate(grid):
        disp = np.full(y.shape, d)
        mu = fit_genewise(y, design, disp, offset)['fitted.values']
        mu = np.maximum(mu, 1e-300)
        r = 1.0 / d
        ll = np.sum(gammaln(y + r) - gammaln(r) - lgamma_y1 + r * np.log(r)
                    + y * np.log(mu) - (r + y) * np.log(r + mu), axis=1)

        w = np.maximum(mu / (1.0 + d * mu), 1e-300)
        info = np.einsum('gj,jk,jl->gkl', w, design, design)
        sign, logdet = np.linalg.slogdet(info)
        logdet = np.where(sign > 0, logdet, np.log(1e-300))
        apl[:, k] = ll - 0.5 * logdet
    return apl


def adjusted_profile_lik_grid(grid, y, design, offset, n_workers=1):
    """Cox-Reid adjusted profile log-likelihood on a grid of dispersions.

    For each gene and grid dispersion the GLM is refitted, and the
    adjusted likelihood is the NB log-likelihood minus half the log
    determinant of the Fisher information X'WX.

    Parameters
    ----------
    grid : ndarray of shape (ngrid,)
        Dispersion values (positive).
    y : ndarray (ngenes, nlibs)
        Count matrix.
    design : ndarray (nlibs, ncoefs)
        Design matrix.
    offset : ndarray (ngenes, nlibs)
        Offset matrix.
    n_workers : int
        Worker threads; each block of genes is evaluated independently.

    Returns
    -------
    ndarray of shape (ngenes, ngrid).
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    design = np.asarray(design, dtype=np.float64)
    if design.ndim == 1:
        design = design.reshape(-1, 1)
    offset = np.asarray(offset, dtype=np.float64)
    if offset.ndim == 1:
        offset = np.tile(offset, (y.shape[0], 1))
    grid = np.asarray(grid, dtype=np.float64)

    apl = np.empty((y.shape[0], len(grid)))
    blocks = map_gene_blocks(lambda g: _apl_block(grid, y[g], design, offset[g]),
                             y.shape[0], n_workers)
    for g, res in blocks:
        apl[g] = res
    return apl


@njit(cache=True)
def _grid_maxima(x, y, out):
    ngenes, npts = y.shape
    for g in range(ngenes):
        best = -1
        best_val = -np.inf
        for k in range(npts):
            v = y[g, k]
            if not np.isnan(v) and v > best_val:
                best_val = v
                best = k
        if best < 0:
            out[g] = np.nan
            continue
        if best == 0 or best == npts - 1:
            out[g] = x[best]
            continue

        # Vertex of the parabola through the maximum and its neighbours
        x0, x1, x2 = x[best - 1], x[best], x[best + 1]
        y0, y1, y2 = y[g, best - 1], best_val, y[g, best + 1]
        if not (np.isfinite(y0) and np.isfinite(y2)):
            out[g] = x1
            continue
        denom = (x1 - x0) * (y1 - y2) - (x1 - x2) * (y1 - y0)
        if denom == 0.0:
            out[g] = x1
            continue
        xv = x1 - 0.5 * ((x1 - x0) ** 2 * (y1 - y2) - (x1 - x2) ** 2 * (y1 - y0)) / denom
        out[g] = min(max(xv, x0), x2)


def maximize_interpolant(x, y):
    """Maximizing grid coordinate of each row of ``y``.

    The best grid point is refined by the vertex of the parabola through
    it and its two neighbours. A maximum at either end of the grid is
    returned as that end point. Rows with no finite value give NaN.

    Parameters
    ----------
    x : ndarray
        Grid points (sorted, unique).
    y : ndarray
        Log-likelihood matrix (genes x grid points).

    Returns
    -------
    ndarray of maximizing x values (one per gene).
    """
    x = np.ascontiguousarray(x, dtype=np.float64)
    y = np.ascontiguousarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    if y.shape[1] != len(x):
        raise ValueError("number of columns of y must equal length of x")
    out = np.empty(y.shape[0], dtype=np.float64)
    _grid_maxima(x, y, out)
    return out
