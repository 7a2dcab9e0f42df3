"""
Genewise negative binomial GLM fitting.

One-way layouts are fitted group by group with scalar Fisher scoring; any
other design goes through Levenberg-damped scoring. Genes are fitted
independently and may be split across workers without changing results.
"""

import logging
import warnings

import numpy as np
import pandas as pd

from .classes import DGEGLM
from .errors import ConvergenceWarning
from .glm_levenberg import mglm_levenberg, nbinom_deviance
from .utils import (expand_as_matrix, design_as_factor, is_oneway, pred_fc,
                    gene_flags, merge_flags, map_gene_blocks)

logger = logging.getLogger(__name__)


def _one_group(y, disp_mat, offset_mat, coef_start=None, maxit=50, tol=1e-10):
    """Fisher scoring for an intercept-only model. Returns (beta, converged)."""
    ngenes = y.shape[0]
    total_y = y.sum(axis=1)
    lib = np.exp(offset_mat)

    if coef_start is not None:
        b = np.array(coef_start, dtype=np.float64).ravel()
        if len(b) == 1:
            b = np.full(ngenes, b[0])
    else:
        b = np.full(ngenes, np.nan)
    need_init = np.isnan(b)
    with np.errstate(divide='ignore'):
        b[need_init] = np.log(total_y[need_init] / lib[need_init].sum(axis=1))

    # A gene with no reads has its maximum at -Inf
    empty = total_y <= 0
    b[empty] = -np.inf
    converged = empty.copy()
    active = ~empty

    for _it in range(maxit):
        if not np.any(active):
            break
        mu = np.maximum(np.exp(np.clip(b[active, None] + offset_mat[active], -500, 500)), 1e-300)
        denom = 1.0 + disp_mat[active] * mu
        dl = np.sum((y[active] - mu) / denom, axis=1)
        info = np.sum(mu / denom, axis=1)

        safe = info > 1e-300
        step = np.zeros_like(dl)
        step[safe] = dl[safe] / info[safe]
        done = (np.abs(step) < tol * (np.abs(b[active]) + 0.1)) | ~safe
        b[active] += step

        idx = np.where(active)[0]
        converged[idx[done]] = True
        active[idx[done]] = False

    return b, converged


def mglm_one_group(y, dispersion=0, offset=0, coef_start=None, maxit=50, tol=1e-10):
    """Fit an intercept-only negative binomial GLM to each gene.

    Parameters
    ----------
    y : ndarray
        Count matrix (genes x samples).
    dispersion : float or ndarray
        NB dispersions (scalar, per gene, or full matrix).
    offset : float or ndarray
        Log-scale offsets (scalar, per sample, or full matrix).
    coef_start : ndarray, optional
        Starting values, one per gene.
    maxit : int
        Maximum iterations.
    tol : float
        Convergence tolerance.

    Returns
    -------
    ndarray of coefficients (one per gene). Genes with no reads get -Inf.
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    offset_mat = expand_as_matrix(offset, y.shape)
    disp = np.asarray(dispersion, dtype=np.float64)
    if disp.ndim == 1 and len(disp) == y.shape[0]:
        disp = disp[:, None]
    disp_mat = np.broadcast_to(disp, y.shape)
    b, _ = _one_group(y, disp_mat, offset_mat, coef_start, maxit, tol)
    return b


def mglm_one_way(y, design, dispersion=0, offset=0, coef_start=None,
                 maxit=50, tol=1e-10):
    """Fit genewise NB GLMs for a design equivalent to a one-way layout.

    Each group mean is fitted separately and the group means are mapped back
    to the coefficients of ``design``.

    Returns
    -------
    dict with 'coefficients', 'fitted.values', 'iter' and 'converged'.
    """
    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    ngenes, nlibs = y.shape
    design = np.asarray(design, dtype=np.float64)
    if design.ndim == 1:
        design = design.reshape(-1, 1)

    offset_mat = expand_as_matrix(offset, y.shape)
    disp = np.asarray(dispersion, dtype=np.float64)
    if disp.ndim == 1 and len(disp) == ngenes:
        disp = disp[:, None]
    disp_mat = np.broadcast_to(disp, y.shape)

    group = design_as_factor(design)
    ngroups = group.max() + 1
    if design.shape[1] != ngroups:
        raise ValueError("design matrix is not equivalent to a oneway layout")
    first_of_group = np.array([np.where(group == g)[0][0] for g in range(ngroups)])
    design_unique = design[first_of_group]

    cs = None
    if coef_start is not None:
        cs = np.atleast_2d(np.asarray(coef_start, dtype=np.float64)) @ design_unique.T

    beta = np.zeros((ngenes, ngroups))
    converged = np.ones(ngenes, dtype=bool)
    for g in range(ngroups):
        j = group == g
        beta[:, g], conv = _one_group(y[:, j], disp_mat[:, j], offset_mat[:, j],
                                      None if cs is None else cs[:, g], maxit, tol)
        converged &= conv

    beta = np.maximum(beta, -1e8)
    mu = np.exp(np.clip(beta[:, group] + offset_mat, -500, 500))
    coefficients = np.einsum('gk,jk->gj', beta, np.linalg.inv(design_unique))

    return {
        'coefficients': coefficients,
        'fitted.values': mu,
        'iter': np.zeros(ngenes, dtype=int),
        'converged': converged,
    }


def fit_genewise(y, design, disp_mat, offset_mat, start=None, maxit=250, tol=1e-6):
    """Fit each row of ``y``, choosing the one-way shortcut when possible."""
    if is_oneway(design):
        return mglm_one_way(y, design, dispersion=disp_mat, offset=offset_mat,
                            coef_start=start)
    return mglm_levenberg(y, design, dispersion=disp_mat, offset=offset_mat,
                          coef_start=start, maxit=maxit, tol=tol)


def _information(design, mu, disp_mat):
    """Fisher information X'WX per gene, stacked (genes x p x p)."""
    w = mu / (1 + disp_mat * mu)
    return np.einsum('gj,jk,jl->gkl', w, design, design), w


def coef_standard_errors(design, mu, disp_mat, rcond=1e-10):
    """Standard errors of the (natural log) coefficients.

    Genes whose information matrix is singular relative to ``rcond`` (a
    coefficient running off to infinity when a group has no reads) get NaN.
    """
    info, _ = _information(design, mu, disp_mat)
    cov = np.linalg.pinv(info, hermitian=True)
    se = np.sqrt(np.maximum(np.diagonal(cov, axis1=1, axis2=2), 0))
    eig = np.linalg.eigvalsh(info)
    singular = ~(eig[:, 0] > rcond * eig[:, -1])
    se[singular] = np.nan
    return se


def cooks_distance(y, design, mu, disp_mat):
    """Cook's distance of every observation in its gene's fit.

    Uses Pearson residuals and the leverages of the weighted design, as
    ``r^2 / p * h / (1 - h)^2``.
    """
    p = design.shape[1]
    info, w = _information(design, mu, disp_mat)
    cov = np.linalg.pinv(info, hermitian=True)
    h = w * np.einsum('jk,gkl,jl->gj', design, cov, design)
    h = np.clip(h, 0, 1 - 1e-10)
    with np.errstate(divide='ignore', invalid='ignore'):
        r2 = (y - mu) ** 2 / (mu * (1 + disp_mat * mu))
    r2 = np.where(mu > 0, r2, 0.0)
    return r2 / p * h / (1 - h) ** 2


def glm_fit(y, design=None, dispersion=None, offset=None, lib_size=None,
            prior_count=0.125, start=None, maxit=250, tol=1e-6, n_workers=1):
    """Fit negative binomial GLMs for each gene.

    Parameters
    ----------
    y : ndarray or DGEList
        Count matrix (genes x samples), or DGEList.
    design : DataFrame, ndarray, DesignSpec or str, optional
        Design matrix. Formulas and DesignSpecs are evaluated against the
        DGEList sample metadata.
    dispersion : float or ndarray
        NB dispersions. Taken from the DGEList when not given.
    offset : ndarray, optional
        Log-scale offsets.
    lib_size : ndarray, optional
        Library sizes, used when ``offset`` is not given.
    prior_count : float
        Prior count for shrinking log-fold-changes.
    start : ndarray, optional
        Starting coefficient values.
    maxit : int
        Maximum iterations per gene.
    tol : float
        Convergence tolerance.
    n_workers : int
        Number of worker threads for genewise fitting. Results do not
        depend on it.

    Returns
    -------
    DGEGLM with coefficients, unshrunk.coefficients, se, fitted.values,
    deviance, df.residual, converged, flag, cooks, design, coef.names,
    offset and dispersion.
    """
    from .design import resolve_design

    if isinstance(y, dict) and 'counts' in y:
        from .dgelist import get_dispersion, get_offset
        dge = y
        design = resolve_design(design, dge)
        if dispersion is None:
            dispersion = get_dispersion(dge)
            if dispersion is None:
                raise ValueError("No dispersion values found in DGEList object.")
        fit = glm_fit(dge['counts'], design=design, dispersion=dispersion,
                      offset=get_offset(dge), prior_count=prior_count,
                      start=start, maxit=maxit, tol=tol, n_workers=n_workers)
        changes = {
            'samples': dge['samples'],
            'genes': dge.get('genes'),
            'gene.ids': dge.get('gene.ids'),
            'prior.df': dge.get('prior.df'),
        }
        if dge.get('AveLogCPM') is not None:
            changes['AveLogCPM'] = dge['AveLogCPM']
        return fit._updated(changes)

    y = np.asarray(y, dtype=np.float64)
    if y.ndim == 1:
        y = y.reshape(1, -1)
    ntag, nlib = y.shape

    if design is None:
        design_df = pd.DataFrame(np.ones((nlib, 1)), columns=['Intercept'])
    else:
        design_df = resolve_design(design)
    design = design_df.to_numpy(dtype=np.float64)
    if design.shape[0] != nlib:
        raise ValueError("nrow(design) disagrees with ncol(y)")
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise ValueError("Design matrix not of full rank")
    ncoef = design.shape[1]

    if dispersion is None:
        raise ValueError("No dispersion values provided.")
    dispersion = np.asarray(dispersion, dtype=np.float64)
    if np.any(dispersion < 0):
        raise ValueError("Negative dispersions not allowed")
    disp_gene = dispersion.reshape(-1, 1) if dispersion.ndim == 1 else dispersion
    disp_mat = np.broadcast_to(disp_gene, (ntag, nlib))

    if offset is None:
        if lib_size is None:
            lib_size = y.sum(axis=0)
        offset = np.log(np.asarray(lib_size, dtype=np.float64))
    offset_mat = expand_as_matrix(offset, (ntag, nlib))

    if start is not None:
        start = np.atleast_2d(np.asarray(start, dtype=np.float64))

    # Genes that cannot be fitted keep NaN estimates
    flags = gene_flags(y, design)
    disp_ok = np.all(np.isfinite(disp_mat), axis=1)
    flags = merge_flags(flags, np.where(disp_ok, '', 'no_dispersion'))
    fittable = np.where((flags != 'all_zero') & disp_ok)[0]

    coefficients = np.full((ntag, ncoef), np.nan)
    unshrunk = np.full((ntag, ncoef), np.nan)
    fitted = np.full((ntag, nlib), np.nan)
    n_iter = np.zeros(ntag, dtype=int)
    converged = np.zeros(ntag, dtype=bool)

    def _fit_block(rows):
        g = fittable[rows]
        res = fit_genewise(y[g], design, disp_mat[g], offset_mat[g],
                           start=None if start is None else start[g],
                           maxit=maxit, tol=tol)
        if prior_count > 0:
            shrunk = pred_fc(y[g], design, offset=offset_mat[g], dispersion=disp_mat[g],
                             prior_count=prior_count) * np.log(2)
        else:
            shrunk = res['coefficients']
        return res, shrunk

    for rows, (res, shrunk) in map_gene_blocks(_fit_block, len(fittable), n_workers):
        g = fittable[rows]
        unshrunk[g] = res['coefficients']
        coefficients[g] = shrunk
        fitted[g] = res['fitted.values']
        n_iter[g] = res['iter']
        converged[g] = res['converged']

    not_converged = np.zeros(ntag, dtype=bool)
    not_converged[fittable] = ~converged[fittable]
    if np.any(not_converged):
        warnings.warn(
            f"{int(not_converged.sum())} gene(s) did not converge within {maxit} "
            "iterations; their test results are undefined", ConvergenceWarning,
            stacklevel=2)
        flags = merge_flags(flags, np.where(not_converged, 'not_converged', ''))

    deviance = np.full(ntag, np.nan)
    se = np.full((ntag, ncoef), np.nan)
    cooks = np.full((ntag, nlib), np.nan)
    if len(fittable):
        f = fittable
        deviance[f] = nbinom_deviance(y[f], fitted[f], disp_mat[f])
        se[f] = coef_standard_errors(design, fitted[f], disp_mat[f])
        cooks[f] = cooks_distance(y[f], design, fitted[f], disp_mat[f])
        # Singular information marks separation the group check cannot see
        no_info = np.zeros(ntag, dtype=bool)
        no_info[f] = np.any(np.isnan(se[f]), axis=1)
        flags = merge_flags(flags, np.where(no_info, 'separated', ''))

    from .expression import ave_log_cpm
    disp_fill = disp_mat[:, 0].copy()
    if np.any(~np.isfinite(disp_fill)):
        finite = disp_fill[np.isfinite(disp_fill)]
        disp_fill[~np.isfinite(disp_fill)] = np.mean(finite) if len(finite) else 0.05
    ave = ave_log_cpm(y, offset=offset_mat, dispersion=disp_fill)

    logger.debug("fitted %d of %d genes (%d not converged)",
                 len(fittable), ntag, int(not_converged.sum()))

    fit = DGEGLM()
    fit['coefficients'] = coefficients
    fit['unshrunk.coefficients'] = unshrunk
    fit['se'] = se
    fit['fitted.values'] = fitted
    fit['deviance'] = deviance
    fit['iter'] = n_iter
    fit['converged'] = converged
    fit['flag'] = flags
    fit['cooks'] = cooks
    fit['counts'] = y
    fit['df.residual'] = np.full(ntag, nlib - ncoef)
    fit['design'] = design
    fit['coef.names'] = [str(c) for c in design_df.columns]
    fit['offset'] = offset_mat
    fit['dispersion'] = disp_mat.copy() if dispersion.ndim == 2 else disp_mat[:, 0].copy()
    fit['prior.count'] = prior_count
    fit['AveLogCPM'] = ave
    fit['gene.ids'] = [str(i + 1) for i in range(ntag)]
    fit['n.workers'] = n_workers
    return fit
