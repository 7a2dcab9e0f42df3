"""
Levenberg-damped Fisher scoring for genewise negative binomial GLMs.

Used for designs that are not one-way layouts. Each gene is fitted on its
own, so fits for a block of genes do not depend on which other genes are
in the block.
"""

import numpy as np

from .utils import expand_as_matrix

# Dispersions below this are treated as Poisson in the deviance
_POISSON_DISP = 1e-10


def nbinom_unit_deviance(y, mean, dispersion=0):
    """Unit deviance of the negative binomial distribution.

    ``dispersion`` must be a scalar or broadcastable to ``y``. Where the
    dispersion is (numerically) zero the Poisson deviance is used.
    """
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mean, dtype=np.float64), 1e-300)
    d = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), y.shape)

    pos = y > 0
    pois = d < _POISSON_DISP
    y_safe = np.where(pos, y, 1.0)
    d_safe = np.where(pois, 1.0, d)

    with np.errstate(divide='ignore', invalid='ignore'):
        ylogy = np.where(pos, y * np.log(y_safe / mu), 0.0)
        nb = 2 * (ylogy - (y + 1 / d_safe) * np.log((1 + d_safe * y) / (1 + d_safe * mu)))
        poisson = 2 * (ylogy - (y - mu))
    dev = np.where(pois, poisson, nb)
    return np.maximum(dev, 0)


def nbinom_deviance(y, mean, dispersion=0):
    """Residual deviance per gene.

    Parameters
    ----------
    y : ndarray
        Count matrix (genes x samples).
    mean : ndarray
        Fitted means, same shape as ``y``.
    dispersion : float or ndarray
        Scalar, one value per gene, or a full matrix.

    Returns
    -------
    ndarray of deviances, one per gene.
    """
    y = np.asarray(y, dtype=np.float64)
    mean = np.asarray(mean, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
        mean = mean.reshape(1, -1)
    disp = np.asarray(dispersion, dtype=np.float64)
    if disp.ndim == 1 and len(disp) == y.shape[0]:
        disp = disp[:, None]
    return np.sum(nbinom_unit_deviance(y, mean, disp), axis=1)


def _start_values(y, offset, design):
    """Least-squares fit of log(y + 0.5) - offset on the design, one gene."""
    beta, *_ = np.linalg.lstsq(design, np.log(y + 0.5) - offset, rcond=None)
    return beta


def _levenberg_gene(y, design, disp, offset, beta, maxit, tol):
    """Fit one gene. Returns (beta, iterations, converged)."""

    def deviance_at(b):
        mu = np.maximum(np.exp(np.clip(design @ b + offset, -500, 500)), 1e-300)
        return np.sum(nbinom_unit_deviance(y, mu, disp)), mu

    dev, mu = deviance_at(beta)
    lev = 1e-3
    for it in range(1, maxit + 1):
        w = mu / (1 + disp * mu)
        info = design.T @ (w[:, None] * design)
        score = design.T @ ((y - mu) / (1 + disp * mu))
        scale = np.diag(info) + 1e-10

        accepted = False
        while lev <= 1e10:
            try:
                step = np.linalg.solve(info + lev * np.diag(scale), score)
            except np.linalg.LinAlgError:
                lev *= 10
                continue
            trial = beta + step
            dev_new, mu_new = deviance_at(trial)
            if np.isfinite(dev_new) and dev_new <= dev:
                accepted = True
                break
            lev *= 10

        if not accepted:
            # No damped step lowers the deviance: already at the optimum
            return beta, it, True

        decrease = dev - dev_new
        beta, dev, mu = trial, dev_new, mu_new
        lev = max(lev / 10, 1e-10)
        if decrease < tol * (abs(dev) + 0.1):
            return beta, it, True

    return beta, maxit, False


def mglm_levenberg(y, design, dispersion=0, offset=0, coef_start=None,
                   maxit=200, tol=1e-06):
    """Fit genewise negative binomial GLMs using Levenberg damping.

    Parameters
    ----------
    y : ndarray
        Count matrix (genes x samples).
    design : ndarray
        Design matrix (samples x coefficients).
    dispersion : float or ndarray
        NB dispersions (scalar, per gene, or full matrix).
    offset : float or ndarray
        Log-scale offsets.
    coef_start : ndarray, optional
        Starting coefficients (genes x coefficients).
    maxit : int
        Maximum iterations per gene.
    tol : float
        Relative deviance change at which a gene is declared converged.

    Returns
    -------
    dict with 'coefficients', 'fitted.values', 'deviance', 'iter',
    'converged'.
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    ngenes, nlibs = y.shape

    design = np.asarray(design, dtype=np.float64)
    if design.ndim == 1:
        design = design.reshape(-1, 1)
    ncoefs = design.shape[1]

    offset_mat = expand_as_matrix(offset, y.shape)
    disp = np.asarray(dispersion, dtype=np.float64)
    if disp.ndim == 1 and len(disp) == ngenes:
        disp = disp[:, None]
    disp_mat = np.broadcast_to(disp, y.shape)
    if np.any(disp_mat < 0):
        raise ValueError("Negative dispersions not allowed")

    if coef_start is not None:
        beta = np.array(coef_start, dtype=np.float64)
        if beta.ndim == 1:
            beta = np.tile(beta, (ngenes, 1))
    else:
        beta = None

    coefficients = np.zeros((ngenes, ncoefs))
    n_iter = np.zeros(ngenes, dtype=int)
    converged = np.zeros(ngenes, dtype=bool)
    fitted = np.zeros(y.shape)
    # Gene by gene so each result is independent of how genes are batched
    for g in range(ngenes):
        start = _start_values(y[g], offset_mat[g], design) if beta is None else beta[g]
        coefficients[g], n_iter[g], converged[g] = _levenberg_gene(
            y[g], design, disp_mat[g], offset_mat[g], start, maxit, tol)
        fitted[g] = np.exp(np.clip(design @ coefficients[g] + offset_mat[g], -500, 500))
    return {
        'coefficients': coefficients,
        'fitted.values': fitted,
        'deviance': nbinom_deviance(y, fitted, disp_mat),
        'iter': n_iter,
        'converged': converged,
    }
